"""Prompt templates, keyed by scenario name.

Templates use ``${name}`` placeholders. Every placeholder must be one of
``PROMPT_VARIABLES``; ``PromptBuilder.validate`` checks this at startup so a
typo in a template fails the boot instead of a user's message.
"""

from string import Template

from pydantic import BaseModel

from finance_bot.errors import PromptTemplateError

PROMPT_VARIABLES = frozenset({"message", "group_settings", "memory_summary", "user_role"})

SYSTEM_PROMPT = """\
You are a finance assistant inside a Telegram group. Members log income and
expenses by chatting in Indonesian or English, sometimes both in one message.
You turn each message into a structured intent.

Return a JSON object matching this schema:

{
  "intent": "create_transaction" | "query_balance" | "query_history" | "chat" | "off_topic" | "clarification_needed",
  "entities": {
    "type": "income" | "expense" | "convert" | "transfer",
    "amount": number,
    "currency": "IDR" | "USD",
    "description": "short description",
    "category": "food" | "transport" | "shopping" | "bills" | "salary" | "other",
    "target_currency": "IDR" | "USD" or null,
    "target_amount": number or null,
    "exchange_rate": number or null
  },
  "confidence": number between 0 and 1,
  "sentiment": "positive" | "neutral" | "negative",
  "reply": "Short message for the user, in the user's language"
}

Rules:
1. Parse Indonesian amount shorthand: "75rb" / "75 ribu" = 75000, "1.5jt" / "1,5 juta" = 1500000, "5k" = 5000, "Rp 75.000" = 75000
2. Default currency is the group currency unless the message says otherwise ("$$", "dolar", "USD")
3. "beli", "bayar", "makan", "jajan", "belanja", "keluar" mean expense; "gaji", "terima", "dapat", "masuk", "pemasukan" mean income
4. "tukar", "convert", "konversi" mean convert: amount/currency is what leaves the wallet, target_amount/target_currency is what arrives. Use the group exchange rate when the message gives none
5. Only use "create_transaction" when there is an amount. If the user clearly wants to record something but the amount or type is missing, use "clarification_needed" and ask for the missing part in "reply"
6. Questions about balance ("saldo", "sisa uang") are "query_balance"; questions about past transactions ("riwayat", "pengeluaran kemarin") are "query_history"
7. Greetings and small talk are "chat" with entities {}
8. Non-financial requests are "off_topic": reply politely that you only handle group finances
9. Use the conversation history for follow-ups. If the user says "salah tadi" (that was wrong) or corrects an earlier amount, produce a new create_transaction with the corrected values
10. Members with role "viewer" can ask questions but cannot record transactions; still return the intent you detect
11. confidence reflects how sure you are about the entities, not about the intent name

Examples:

Input: "makan siang 75rb"
Output:
{
  "intent": "create_transaction",
  "entities": {"type": "expense", "amount": 75000, "currency": "IDR", "description": "makan siang", "category": "food"},
  "confidence": 0.9,
  "reply": "Pengeluaran makan siang Rp 75.000. Simpan?"
}

Input: "gaji bulan ini masuk 5 juta"
Output:
{
  "intent": "create_transaction",
  "entities": {"type": "income", "amount": 5000000, "currency": "IDR", "description": "gaji bulan ini", "category": "salary"},
  "confidence": 0.95,
  "reply": "Pemasukan gaji Rp 5.000.000. Simpan?"
}

Input: "tukar 100 dolar ke rupiah kurs 15500"
Output:
{
  "intent": "create_transaction",
  "entities": {"type": "convert", "amount": 100, "currency": "USD", "target_currency": "IDR", "target_amount": 1550000, "exchange_rate": 15500, "description": "tukar USD ke IDR"},
  "confidence": 0.9,
  "reply": "Konversi $$100.00 menjadi Rp 1.550.000. Simpan?"
}

Input: "tadi beli bensin"
Output:
{
  "intent": "clarification_needed",
  "entities": {"type": "expense", "description": "bensin", "category": "transport"},
  "confidence": 0.6,
  "reply": "Berapa jumlah yang dibayar untuk bensin?"
}

Input: "saldo kita berapa?"
Output:
{"intent": "query_balance", "entities": {}, "confidence": 0.95, "reply": "Saya cek saldo dompet grup dulu."}

Input: "halo bot"
Output:
{"intent": "chat", "entities": {}, "confidence": 0.99, "reply": "Halo! Kirim pesan seperti \\"makan siang 75rb\\" untuk mencatat pengeluaran."}

IMPORTANT: Return ONLY valid JSON. No markdown, no code fences, no explanation text.\
"""

PROMPT_TEMPLATES: dict[str, dict[str, str]] = {
    "transaction_analysis": {
        "system": SYSTEM_PROMPT,
        "user": """\
Group settings:
${group_settings}

Sender role: ${user_role}

Recent conversation:
${memory_summary}

Message: "${message}"\
""",
    },
    "voice_transcript": {
        "system": SYSTEM_PROMPT,
        "user": """\
The following text was transcribed from a voice note and may contain
recognition errors; prefer clarification_needed over guessing amounts.

Group settings:
${group_settings}

Sender role: ${user_role}

Recent conversation:
${memory_summary}

Transcript: "${message}"\
""",
    },
}


class Prompt(BaseModel):
    scenario: str
    system: str
    user: str


class PromptBuilder:
    def __init__(self, templates: dict[str, dict[str, str]] | None = None):
        self.templates = templates if templates is not None else PROMPT_TEMPLATES

    def validate(self) -> None:
        """Fail fast on unknown placeholders or malformed templates."""
        for name, parts in self.templates.items():
            for part in ("system", "user"):
                if part not in parts:
                    raise PromptTemplateError(f"Template {name!r} has no {part} part")
                template = Template(parts[part])
                if not template.is_valid():
                    raise PromptTemplateError(f"Template {name!r} ({part}) is malformed")
                unknown = set(template.get_identifiers()) - PROMPT_VARIABLES
                if unknown:
                    raise PromptTemplateError(
                        f"Template {name!r} ({part}) uses unresolved placeholders: "
                        + ", ".join(sorted(unknown))
                    )

    def build(self, scenario: str, **variables: str) -> Prompt:
        if scenario not in self.templates:
            raise PromptTemplateError(f"Prompt template not found: {scenario}")
        parts = self.templates[scenario]
        values = {name: variables.get(name, "") for name in PROMPT_VARIABLES}
        return Prompt(
            scenario=scenario,
            system=Template(parts["system"]).safe_substitute(values),
            user=Template(parts["user"]).safe_substitute(values),
        )
