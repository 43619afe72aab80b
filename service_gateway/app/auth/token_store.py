"""
Persisted credential stores.

Stores only load and save; they never decide when a credential is stale.
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

from shared.logging import get_logger


class CredentialStore(ABC):
    """Load/save interface for the persisted credential payload."""

    @abstractmethod
    async def load(self) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def save(self, payload: Dict[str, Any]) -> None:
        ...


class InMemoryCredentialStore(CredentialStore):
    """Keeps the payload in process memory only."""

    def __init__(self, payload: Optional[Dict[str, Any]] = None):
        self.payload = dict(payload) if payload else None
        self.saves = 0

    async def load(self) -> Optional[Dict[str, Any]]:
        return dict(self.payload) if self.payload else None

    async def save(self, payload: Dict[str, Any]) -> None:
        self.payload = dict(payload)
        self.saves += 1


class FileCredentialStore(CredentialStore):
    """JSON file readable only by the owning user."""

    def __init__(self, path: str):
        self.path = Path(path).expanduser()
        self.logger = get_logger("gateway.auth.token_store")

    async def load(self) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._read)

    async def save(self, payload: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._write, payload)

    def _read(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except ValueError:
            self.logger.warning("Ignoring unreadable credential file", path=str(self.path))
            return None
        if not isinstance(data, dict) or not data.get("exchange_token"):
            return None
        return data

    def _write(self, payload: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle)
        os.replace(tmp_path, self.path)
