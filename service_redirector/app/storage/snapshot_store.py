"""
Persistent snapshot storage for the Redirector Service.

The snapshot lives under a single key in a local tier (a JSON file) and,
when the snapshot opts into ``sync``, in a best-effort synchronized tier
backed by Redis that is shared between installations.
"""

import asyncio
import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError

from shared.errors import StorageError
from shared.logging import get_logger
from ..rules.models import RuleStore

STORAGE_KEY = "storage"

ChangeListener = Callable[[Dict[str, Any]], Awaitable[None]]


class StorageTier(ABC):
    """A key/value area holding JSON documents."""

    name = "tier"

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Dict[str, Any]) -> None:
        ...


class LocalFileTier(StorageTier):
    """Local tier: one JSON object file, keys at the top level."""

    name = "local"

    def __init__(self, path: str):
        self.path = Path(path)
        self.logger = get_logger("redirector.storage.local")
        self._lock = asyncio.Lock()

    def _read_all(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except ValueError as e:
            raise StorageError("Local storage file is not valid JSON", {"path": str(self.path), "error": str(e)}) from e
        except OSError as e:
            raise StorageError("Local storage file could not be read", {"path": str(self.path), "error": str(e)}) from e
        if not isinstance(data, dict):
            raise StorageError("Local storage file must hold a JSON object", {"path": str(self.path)})
        return data

    def _write_all(self, data: Dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=self.path.name, suffix=".tmp")
        except OSError as e:
            raise StorageError("Local storage file could not be written", {"path": str(self.path), "error": str(e)}) from e
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StorageError("Local storage file could not be written", {"path": str(self.path), "error": str(e)}) from e

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        data = await asyncio.to_thread(self._read_all)
        return data.get(key)

    async def set(self, key: str, value: Dict[str, Any]) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read_all)
            data[key] = value
            await asyncio.to_thread(self._write_all, data)
        self.logger.debug("Local storage written", key=key, path=str(self.path))


class RedisSyncTier(StorageTier):
    """Synchronized tier; every failure degrades to "absent"."""

    name = "sync"

    def __init__(self, redis_url: str, key_prefix: str = "redirector:"):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.logger = get_logger("redirector.storage.sync")
        self.redis: Optional[redis.Redis] = None

    async def start(self):
        """Connect to Redis; an unreachable server leaves the tier unavailable."""
        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )
            await self.redis.ping()
            self.logger.info("Sync storage connected")
        except Exception as e:
            self.logger.warning("Sync storage unavailable", error=str(e))
            self.redis = None

    async def stop(self):
        if self.redis:
            await self.redis.close()
            self.redis = None
            self.logger.info("Sync storage closed")

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        if self.redis is None:
            return None
        try:
            raw = await self.redis.get(self.key_prefix + key)
            if not raw:
                return None
            value = json.loads(raw)
            return value if isinstance(value, dict) else None
        except Exception as e:
            self.logger.warning("Sync storage read failed", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Dict[str, Any]) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.set(self.key_prefix + key, json.dumps(value))
        except Exception as e:
            self.logger.warning("Sync storage write failed", key=key, error=str(e))


class SnapshotStore:
    """Loads and saves the rule snapshot across the local and sync tiers."""

    def __init__(self, local: StorageTier, sync: Optional[StorageTier] = None, key: str = STORAGE_KEY):
        self.local = local
        self.sync = sync
        self.key = key
        self.logger = get_logger("redirector.storage")
        self._listeners: List[ChangeListener] = []

    def subscribe(self, listener: ChangeListener) -> None:
        """Register a coroutine called with the stored document after every save."""
        self._listeners.append(listener)

    async def load_document(self) -> Optional[Dict[str, Any]]:
        """Return the raw stored document, preferring the sync tier when the snapshot asks for it."""
        local_doc = await self.local.get(self.key)

        if local_doc is not None:
            if local_doc.get("sync") and self.sync is not None:
                sync_doc = await self.sync.get(self.key)
                if sync_doc is not None:
                    self.logger.debug("Snapshot loaded", tier=self.sync.name)
                    return sync_doc
                self.logger.info("No synchronized snapshot, using local copy")
            self.logger.debug("Snapshot loaded", tier=self.local.name)
            return local_doc

        # First run on this installation: adopt a synchronized snapshot if any
        if self.sync is not None:
            sync_doc = await self.sync.get(self.key)
            if sync_doc is not None:
                self.logger.info("Snapshot adopted from sync storage")
            return sync_doc
        return None

    async def load(self) -> Optional[RuleStore]:
        document = await self.load_document()
        if document is None:
            return None
        return self.to_store(document)

    @staticmethod
    def to_store(document: Dict[str, Any]) -> RuleStore:
        try:
            return RuleStore.from_dict(document)
        except PydanticValidationError as e:
            raise StorageError("Stored snapshot does not match the schema", {"error": str(e)}) from e

    async def save(self, store: RuleStore) -> Dict[str, Any]:
        document = store.to_dict()
        if store.sync and self.sync is not None:
            await self.sync.set(self.key, document)
        await self.local.set(self.key, document)
        self.logger.info("Snapshot saved", sync=store.sync)

        for listener in list(self._listeners):
            await listener(document)
        return document
