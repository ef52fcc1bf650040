"""Durable peer state: directory bindings and agent sessions.

Both stores keep an in-memory map keyed by :class:`PeerKey` and persist
the whole map to a JSON file on every mutation (write-through). A write
builds a new map, persists it via ``atomic_write`` and only then swaps it
in, so a failed write leaves both the file and the in-memory state
unchanged. File I/O runs in a worker thread; a per-store lock orders
writers without blocking readers or unrelated peers' dispatches.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
import threading
from pathlib import Path
from typing import Any, Generic, TypeVar

from .conventions import DEFAULT_IDENTITY_ID
from .fileutil import read_json, write_json
from .models import BindingRecord, PeerKey, SessionRecord

logger = logging.getLogger(__name__)

R = TypeVar("R", BindingRecord, SessionRecord)


class StoreError(RuntimeError):
    """Persisting peer state failed."""


class _PeerStore(abc.ABC, Generic[R]):
    """JSON-file-backed map of PeerKey -> record."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._records: dict[PeerKey, R] = {}
        self._write_lock = threading.Lock()
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def __len__(self) -> int:
        return len(self._records)

    @abc.abstractmethod
    def _from_row(self, key: PeerKey, row: dict[str, Any]) -> R: ...

    @abc.abstractmethod
    def _to_row(self, record: R) -> dict[str, Any]: ...

    def _load(self) -> None:
        try:
            rows = read_json(self._path, default=[])
        except (OSError, json.JSONDecodeError):
            logger.warning("Corrupt store file %s, starting empty", self._path)
            self._quarantine()
            return
        if not isinstance(rows, list):
            logger.warning("Unexpected store format in %s, starting empty", self._path)
            self._quarantine()
            return

        for row in rows:
            try:
                # Rows written before identities existed belong to the default one
                key = PeerKey(
                    channel=row["channel"],
                    identity_id=row.get("identity_id") or DEFAULT_IDENTITY_ID,
                    peer_id=row["peer_id"],
                )
                self._records[key] = self._from_row(key, row)
            except (KeyError, TypeError, AttributeError):
                logger.warning("Skipping malformed row in %s: %r", self._path, row)
        logger.info("Loaded %d records from %s", len(self._records), self._path)

    def _quarantine(self) -> None:
        """Move an unreadable store file aside so it is not overwritten."""
        target = self._path.with_suffix(self._path.suffix + ".corrupt")
        try:
            self._path.replace(target)
        except OSError:
            logger.warning("Could not move %s aside", self._path, exc_info=True)

    def _commit(self, key: PeerKey, record: R | None) -> bool:
        """Apply one change and persist it. Returns whether *key* existed."""
        with self._write_lock:
            records = dict(self._records)
            existed = key in records
            if record is None:
                if not existed:
                    return False
                del records[key]
            else:
                records[key] = record
            try:
                write_json(self._path, [self._to_row(r) for r in records.values()])
            except OSError as exc:
                raise StoreError(f"Failed to persist {self._path}: {exc}") from exc
            self._records = records
            return existed

    async def _put(self, record: R) -> None:
        await asyncio.to_thread(self._commit, record.key, record)

    async def delete(self, key: PeerKey) -> bool:
        """Remove the record for *key*. Returns False if there was none."""
        return await asyncio.to_thread(self._commit, key, None)

    async def get(self, key: PeerKey) -> R | None:
        return self._records.get(key)


class BindingStore(_PeerStore[BindingRecord]):
    """Peer -> bound directory."""

    def _from_row(self, key: PeerKey, row: dict[str, Any]) -> BindingRecord:
        return BindingRecord(
            key=key,
            directory=str(row["directory"]),
            updated_at=row.get("updated_at", ""),
        )

    def _to_row(self, record: BindingRecord) -> dict[str, Any]:
        return {
            "channel": record.key.channel,
            "identity_id": record.key.identity_id,
            "peer_id": record.key.peer_id,
            "directory": record.directory,
            "updated_at": record.updated_at,
        }

    async def set(self, key: PeerKey, directory: str) -> BindingRecord:
        record = BindingRecord(key=key, directory=directory)
        await self._put(record)
        return record

    def list(
        self,
        channel: str | None = None,
        identity_id: str | None = None,
        directory: str | None = None,
    ) -> list[BindingRecord]:
        """Bindings matching every given filter. Directory match is exact."""
        return [
            r
            for r in self._records.values()
            if (channel is None or r.key.channel == channel)
            and (identity_id is None or r.key.identity_id == identity_id)
            and (directory is None or r.directory == directory)
        ]


class SessionStore(_PeerStore[SessionRecord]):
    """Peer -> live agent session id.

    Sessions are only ever replaced, never closed: ``set`` overwrites the
    previous session for the peer.
    """

    def _from_row(self, key: PeerKey, row: dict[str, Any]) -> SessionRecord:
        return SessionRecord(
            key=key,
            session_id=str(row["session_id"]),
            directory=str(row.get("directory", "")),
            created_at=row.get("created_at", ""),
        )

    def _to_row(self, record: SessionRecord) -> dict[str, Any]:
        return {
            "channel": record.key.channel,
            "identity_id": record.key.identity_id,
            "peer_id": record.key.peer_id,
            "session_id": record.session_id,
            "directory": record.directory,
            "created_at": record.created_at,
        }

    async def set(self, key: PeerKey, session_id: str, directory: str) -> SessionRecord:
        record = SessionRecord(key=key, session_id=session_id, directory=directory)
        await self._put(record)
        return record
