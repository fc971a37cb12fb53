import traceback
from typing import Any

from loguru import logger

from finance_bot.db.repository import LedgerRepository
from finance_bot.errors import FinanceBotError
from finance_bot.models.schemas import utcnow


class AuditLog:
    """Writes error and audit events to the registry sheets.

    A failure to write an event is logged and otherwise ignored; the audit
    trail must never break the request that produced it.
    """

    def __init__(self, repo: LedgerRepository):
        self.repo = repo

    def _write(self, sheet: str, row: dict[str, Any]) -> None:
        try:
            self.repo.append_log(sheet, row)
        except FinanceBotError as e:
            logger.error("Could not write {} row: {}", sheet, e)

    def error(
        self,
        action: str,
        error: BaseException,
        chat_id: int | None = None,
        user_id: int | None = None,
        **details: Any,
    ) -> None:
        logger.error("{} failed (chat={}, user={}): {}", action, chat_id, user_id, error)
        self._write(
            "Error_Logs",
            {
                "timestamp": utcnow().isoformat(),
                "chat_id": chat_id,
                "user_id": user_id,
                "error_type": type(error).__name__,
                "error_message": str(error),
                "stack_trace": "".join(traceback.format_exception(error))[-4000:],
                "action": action,
                "resolved": False,
                **details,
            },
        )

    def record(
        self,
        action: str,
        chat_id: int | None = None,
        user_id: int | None = None,
        entity_type: str = "",
        entity_id: str = "",
        old_value: Any = None,
        new_value: Any = None,
    ) -> None:
        logger.info("Audit {} on {} {} by {}", action, entity_type, entity_id, user_id)
        self._write(
            "Audit_Logs",
            {
                "timestamp": utcnow().isoformat(),
                "chat_id": chat_id,
                "user_id": user_id,
                "action": action,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "old_value": old_value,
                "new_value": new_value,
            },
        )
