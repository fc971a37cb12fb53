"""Scripted doubles for the language-model and transcription boundaries."""

from finance_bot.errors import ProviderError
from finance_bot.llm.prompts import Prompt
from finance_bot.llm.providers import ProviderResponse


class FakeProvider:
    """Returns scripted JSON responses in order; the last one repeats."""

    def __init__(self, name: str = "fake", responses: list[dict] | None = None, error: str | None = None):
        self.name = name
        self.enabled = True
        self.responses = list(responses or [])
        self.error = error
        self.prompts: list[Prompt] = []

    async def complete(self, prompt: Prompt, max_tokens: int, temperature: float) -> ProviderResponse:
        self.prompts.append(prompt)
        if self.error:
            raise ProviderError(self.name, self.error)
        if not self.responses:
            raise ProviderError(self.name, "no scripted response")
        data = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return ProviderResponse(data=data, tokens=42, model=f"{self.name}-model")


class FakeTranscriber:
    def __init__(self, text: str):
        self.text = text

    async def transcribe(self, audio: bytes, filename: str = "voice.ogg") -> str:
        return self.text


LUNCH = {
    "intent": "create_transaction",
    "entities": {"amount": 75000, "currency": "IDR", "type": "expense", "description": "makan siang"},
    "confidence": 0.9,
    "reply": "Catat pengeluaran makan siang Rp 75.000?",
}

GREETING = {"intent": "chat", "reply": "Halo juga!", "confidence": 0.8}
