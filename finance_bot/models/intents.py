from typing import Any, Literal, Union

from pydantic import BaseModel, Field

from finance_bot.models.schemas import IntentSource, Sentiment, TransactionDraft


class Usage(BaseModel):
    tokens: int = 0
    model: str = ""
    source: IntentSource = "primary"


class _IntentBase(BaseModel):
    reply: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    sentiment: Sentiment = "neutral"
    usage: Usage = Field(default_factory=Usage)


class CreateTransactionIntent(_IntentBase):
    intent: Literal["create_transaction"] = "create_transaction"
    entities: TransactionDraft


class ClarificationIntent(_IntentBase):
    intent: Literal["clarification_needed"] = "clarification_needed"
    missing: list[str] = []
    original: dict[str, Any] = {}


class ChatIntent(_IntentBase):
    intent: Literal["chat"] = "chat"


class OtherIntent(_IntentBase):
    """Any intent the pipeline has no dedicated handling for, including
    "unknown". Entities are kept as returned by the model."""

    intent: str = "unknown"
    entities: dict[str, Any] = {}


Intent = Union[CreateTransactionIntent, ClarificationIntent, ChatIntent, OtherIntent]


def intent_entities(intent: Intent) -> dict[str, Any]:
    if isinstance(intent, CreateTransactionIntent):
        return intent.entities.model_dump(exclude_none=True)
    if isinstance(intent, OtherIntent):
        return intent.entities
    if isinstance(intent, ClarificationIntent):
        entities = intent.original.get("entities")
        return entities if isinstance(entities, dict) else {}
    return {}
