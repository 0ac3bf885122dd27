"""
Persisted run state.

One record per mint holding its lookup table and whether the bundle for it
has landed, plus a registry of every lookup table the bundler created so
they can all be closed later.
"""

import json
import os
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from loguru import logger

from bundler.solana.models import RunRecord


class RunStateStore(Protocol):
    """Keyed repository of run records."""

    def get(self, mint: str) -> Optional[RunRecord]: ...

    def put(self, mint: str, record: RunRecord) -> None: ...

    def find_by_table(self, table_address: str) -> Optional[RunRecord]: ...

    def remember_table(self, table_address: str) -> None: ...

    def forget_table(self, table_address: str) -> None: ...

    def known_tables(self) -> List[str]: ...


class InMemoryRunStateStore:
    """Run state kept in process memory."""

    def __init__(self):
        self._records: Dict[str, RunRecord] = {}
        self._tables: List[str] = []

    def get(self, mint: str) -> Optional[RunRecord]:
        record = self._records.get(mint)
        return record.model_copy(deep=True) if record else None

    def put(self, mint: str, record: RunRecord) -> None:
        record.updated_at = datetime.now()
        self._records[mint] = record.model_copy(deep=True)
        if record.lookup_table:
            self.remember_table(record.lookup_table.address)
        self._flush()

    def find_by_table(self, table_address: str) -> Optional[RunRecord]:
        for record in self._records.values():
            if record.lookup_table and record.lookup_table.address == table_address:
                return record.model_copy(deep=True)
        return None

    def remember_table(self, table_address: str) -> None:
        if table_address not in self._tables:
            self._tables.append(table_address)
            self._flush()

    def forget_table(self, table_address: str) -> None:
        if table_address in self._tables:
            self._tables.remove(table_address)
            self._flush()

    def known_tables(self) -> List[str]:
        return list(self._tables)

    def _flush(self) -> None:
        pass


class JsonRunStateStore(InMemoryRunStateStore):
    """
    Run state persisted to a JSON file.

    The whole file is rewritten on every change.
    """

    def __init__(self, path: str = "data.json"):
        """
        Initialize the store and load any existing state.

        Args:
            path: JSON file holding the state
        """
        super().__init__()
        self.path = path
        self._load()

    def _load(self) -> None:
        if not os.path.exists(self.path):
            logger.info(f"No run state at {self.path}, starting empty")
            return

        with open(self.path, "r", encoding="utf-8") as f:
            payload = json.load(f)

        for mint, raw in payload.get("runs", {}).items():
            self._records[mint] = RunRecord.model_validate(raw)
        self._tables = list(payload.get("lookup_tables", []))
        logger.info(
            f"Loaded run state for {len(self._records)} mints and {len(self._tables)} lookup tables",
            extra={"path": self.path}
        )

    def _flush(self) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        payload = {
            "runs": {mint: record.model_dump(mode="json") for mint, record in self._records.items()},
            "lookup_tables": self._tables,
        }
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp_path, self.path)
