import openai
from loguru import logger
from openai import AsyncOpenAI

from finance_bot.errors import ProviderError


class VoiceTranscriber:
    def __init__(self, api_key: str, model: str = "whisper-1", base_url: str | None = None):
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url)
        self.model = model

    async def transcribe(self, audio: bytes, filename: str = "voice.ogg") -> str:
        try:
            result = await self.client.audio.transcriptions.create(
                model=self.model,
                file=(filename, audio),
                language="id",
            )
        except openai.OpenAIError as e:
            raise ProviderError("transcription", str(e)) from e
        text = (result.text or "").strip()
        logger.info("Transcribed {} bytes of audio into {} chars", len(audio), len(text))
        return text
