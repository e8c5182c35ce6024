"""
Durable storage for quiz session records.

Every mutation is a full read-modify-write of one record performed under a
single lock, so readers never observe a half-applied update.
"""
import asyncio
import copy
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .exceptions import SessionStoreError
from .models import SESSION_DEFAULTS


Records = Dict[str, Dict[str, Any]]


class SessionStore(ABC):
    """Key-value persistence for session records, keyed by session id."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._lock = asyncio.Lock()

    @abstractmethod
    async def _load_records(self) -> Records:
        """Read all stored records."""

    @abstractmethod
    async def _save_records(self, records: Records) -> None:
        """Persist all records."""

    async def get(self, session_id: str) -> Dict[str, Any]:
        """
        Get the record for a session, with defaults for any missing field.

        Args:
            session_id: Session identifier

        Returns:
            A copy of the stored record merged over SESSION_DEFAULTS
        """
        async with self._lock:
            records = await self._load_records()
        record = copy.deepcopy(SESSION_DEFAULTS)
        record.update(copy.deepcopy(records.get(session_id, {})))
        return record

    async def set(
        self,
        session_id: str,
        updates: Mapping[str, Any],
        expected_epoch: Optional[int] = None
    ) -> bool:
        """
        Atomically merge ``updates`` into a session record.

        Args:
            session_id: Session identifier
            updates: Fields to overwrite
            expected_epoch: When given, the write is skipped unless the stored
                epoch still equals this value

        Returns:
            True if the update was applied, False if it was discarded as stale
        """
        async with self._lock:
            records = await self._load_records()
            current = copy.deepcopy(SESSION_DEFAULTS)
            current.update(records.get(session_id, {}))

            if expected_epoch is not None and current.get('epoch') != expected_epoch:
                self.logger.info(
                    f"Discarded stale write to session {session_id}: "
                    f"epoch {expected_epoch} != {current.get('epoch')}",
                    extra={
                        'event_type': 'session_stale_write',
                        'session_id': session_id,
                        'expected_epoch': expected_epoch,
                        'stored_epoch': current.get('epoch'),
                    }
                )
                return False

            current.update(copy.deepcopy(dict(updates)))
            records[session_id] = current
            await self._save_records(records)
            return True

    async def clear(self, session_id: str) -> None:
        """Remove a session record entirely."""
        async with self._lock:
            records = await self._load_records()
            if records.pop(session_id, None) is not None:
                await self._save_records(records)


class InMemorySessionStore(SessionStore):
    """Process-local store; useful for tests and ephemeral sessions."""

    def __init__(self):
        super().__init__()
        self._records: Records = {}

    async def _load_records(self) -> Records:
        return copy.deepcopy(self._records)

    async def _save_records(self, records: Records) -> None:
        self._records = copy.deepcopy(records)


class JsonFileSessionStore(SessionStore):
    """Store that keeps all session records in one JSON file."""

    def __init__(self, path: str = "./data/session.json"):
        """
        Initialize the store.

        Args:
            path: JSON file location; parent directories are created on first write
        """
        super().__init__()
        self.path = Path(path)

    async def _load_records(self) -> Records:
        return await asyncio.to_thread(self._read_file)

    async def _save_records(self, records: Records) -> None:
        await asyncio.to_thread(self._write_file, records)

    def _read_file(self) -> Records:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            self.logger.error(f"Invalid JSON in session file {self.path}, starting fresh: {e}")
            return {}
        except OSError as e:
            raise SessionStoreError(f"Failed to read session file {self.path}: {e}") from e

        if not isinstance(data, dict):
            self.logger.error(f"Session file {self.path} does not contain an object, starting fresh")
            return {}
        return data

    def _write_file(self, records: Records) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # Replace atomically via a sibling temp file
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(records, f, indent=2, ensure_ascii=False)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise SessionStoreError(f"Failed to write session file {self.path}: {e}") from e
