"""Sheet-style table store.

Each group owns a "spreadsheet" made of named sheets. Rows are plain dicts
keyed by column name. The store is backed by TinyDB; tables are named
``{sheet_id}/{sheet}`` so one database file holds every spreadsheet.
"""

import json
import uuid
from typing import Any, Callable

from loguru import logger
from tinydb import Query, TinyDB
from tinydb.storages import Storage

from finance_bot.errors import StorageUnavailable
from finance_bot.retry import RetryPolicy

REGISTRY_SHEET_ID = "registry"

GROUP_SHEETS = (
    "Settings",
    "Users",
    "Wallet",
    "Transactions",
    "AI_Memory",
    "Memory_Resets",
    "Daily_Limits",
    "Monthly_Limits",
)

REGISTRY_SHEETS = ("Groups", "Error_Logs", "Audit_Logs")

Row = dict[str, Any]


def _matches(match: Row) -> Any:
    q = Query()
    cond = None
    for key, value in match.items():
        part = q[key] == value
        cond = part if cond is None else cond & part
    return cond if cond is not None else q.noop()


class SheetStore:
    def __init__(
        self,
        db_path: str = "finance_ledger.json",
        storage: type[Storage] | None = None,
        retry: RetryPolicy | None = None,
    ):
        if storage is not None:
            self.db = TinyDB(storage=storage)
        else:
            self.db = TinyDB(db_path, ensure_ascii=False)
        self.retry = retry or RetryPolicy.storage()

    def _run(self, op: Callable[[], Any]) -> Any:
        def guarded() -> Any:
            try:
                return op()
            except StorageUnavailable:
                raise
            except (OSError, json.JSONDecodeError) as e:
                raise StorageUnavailable(str(e)) from e

        return self.retry.call(guarded)

    def _table(self, sheet_id: str, sheet: str):
        return self.db.table(f"{sheet_id}/{sheet}")

    def create_spreadsheet(self, title: str) -> str:
        sheet_id = uuid.uuid4().hex
        logger.info("Creating spreadsheet {} ({})", sheet_id, title)
        return sheet_id

    def read(self, sheet_id: str, sheet: str, match: Row | None = None) -> list[Row]:
        def op() -> list[Row]:
            table = self._table(sheet_id, sheet)
            docs = table.search(_matches(match)) if match else table.all()
            return [dict(doc) for doc in docs]

        return self._run(op)

    def append(self, sheet_id: str, sheet: str, rows: list[Row]) -> None:
        self._run(lambda: self._table(sheet_id, sheet).insert_multiple(rows))

    def update(self, sheet_id: str, sheet: str, match: Row, fields: Row) -> int:
        def op() -> int:
            return len(self._table(sheet_id, sheet).update(fields, _matches(match)))

        return self._run(op)

    def upsert(self, sheet_id: str, sheet: str, match: Row, row: Row) -> None:
        self._run(lambda: self._table(sheet_id, sheet).upsert({**match, **row}, _matches(match)))

    def close(self) -> None:
        self.db.close()
