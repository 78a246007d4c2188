"""
redis_store.py — Alert store backed by Redis Streams.

Mapping onto Redis:

    Store concept          Redis primitive
    ─────────────────      ───────────────────────────────────────────
    alert partition        stream   {prefix}:alerts/{community}
    publish                XADD * data=<json>   (id assigned by server)
    tail subscription      XREAD BLOCK from 0-0, then from last seen id
    point value            string   {prefix}:{path} holding JSON
    set_if_absent          SET NX

Each tail subscription owns one daemon reader thread, so records for a
subscription are delivered in stream order on a single thread. A Redis
error inside the reader is terminal: the subscription is released and
the error callback fires once. Reconnecting is the subscriber's call.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Dict, Optional

import redis

from backend.app.alerts.models import PublishResult, PublishStatus
from backend.app.core.config import settings
from backend.app.core.errors import StoreError
from backend.app.store.base import (
    AlertStoreClient,
    ErrorCallback,
    RecordCallback,
    SubscriptionHandle,
)

logger = logging.getLogger(__name__)

_STREAM_START = "0-0"
_READ_COUNT = 100


class _TailReader(threading.Thread):
    """Background XREAD loop for one subscription."""

    def __init__(
        self,
        client: "redis.Redis",
        stream_key: str,
        handle: SubscriptionHandle,
        on_record: RecordCallback,
        on_error: Optional[ErrorCallback],
        block_ms: int,
    ) -> None:
        super().__init__(name=f"tail-{handle.handle_id}", daemon=True)
        self._client = client
        self._stream_key = stream_key
        self._handle = handle
        self._on_record = on_record
        self._on_error = on_error
        self._block_ms = block_ms
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        last_id = _STREAM_START
        while not self._stop_event.is_set():
            try:
                response = self._client.xread(
                    {self._stream_key: last_id},
                    count=_READ_COUNT,
                    block=self._block_ms,
                )
            except redis.RedisError as exc:
                self._fail(exc)
                return

            for _stream, entries in response or []:
                for entry_id, fields in entries:
                    last_id = entry_id
                    if self._stop_event.is_set():
                        return
                    self._dispatch(entry_id, fields)

    def _dispatch(self, entry_id: str, fields: Dict[str, Any]) -> None:
        try:
            record = json.loads(fields.get("data", ""))
        except (TypeError, ValueError):
            logger.debug("Skipping undecodable entry %s in %s", entry_id, self._stream_key)
            return
        try:
            self._on_record(record)
        except Exception:
            logger.exception(
                "Subscriber %s raised while handling %s",
                self._handle.handle_id, entry_id,
            )

    def _fail(self, exc: Exception) -> None:
        self._handle.active = False
        logger.error("Tail subscription on %s lost: %s", self._stream_key, exc)
        if self._on_error is not None:
            self._on_error(
                StoreError("subscribe", str(exc), partition=self._handle.partition_key)
            )


class RedisAlertStore(AlertStoreClient):
    """AlertStoreClient over a synchronous redis-py client."""

    name = "redis"

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        client: Optional["redis.Redis"] = None,
        key_prefix: Optional[str] = None,
        block_ms: Optional[int] = None,
    ) -> None:
        self._client = client or redis.Redis.from_url(
            url or settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
        )
        self._prefix = key_prefix if key_prefix is not None else settings.REDIS_KEY_PREFIX
        self._block_ms = block_ms if block_ms is not None else settings.REDIS_BLOCK_MS
        self._readers: Dict[str, _TailReader] = {}
        self._lock = threading.Lock()

    def _key(self, path: str) -> str:
        return f"{self._prefix}:{path}" if self._prefix else path

    # ── Event log ──

    def publish(self, partition_key: str, record: Dict[str, Any]) -> PublishResult:
        community_id = partition_key.rsplit("/", 1)[-1]
        try:
            entry_id = self._client.xadd(
                self._key(partition_key),
                {"data": json.dumps(record, default=str)},
            )
        except redis.RedisError as exc:
            logger.error("Publish to %s failed: %s", partition_key, exc)
            return PublishResult(
                community_id=community_id,
                status=PublishStatus.FAILED,
                error=str(exc),
            )
        return PublishResult(
            community_id=community_id,
            status=PublishStatus.PUBLISHED,
            key=entry_id,
        )

    def subscribe_tail(
        self,
        partition_key: str,
        on_record: RecordCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> SubscriptionHandle:
        handle = SubscriptionHandle(partition_key=partition_key)
        reader = _TailReader(
            self._client,
            self._key(partition_key),
            handle,
            on_record,
            on_error,
            self._block_ms,
        )
        with self._lock:
            self._readers[handle.handle_id] = reader
        reader.start()
        logger.debug("Tail reader %s started on %s", handle.handle_id, partition_key)
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        handle.active = False
        with self._lock:
            reader = self._readers.pop(handle.handle_id, None)
        if reader is None:
            return
        reader.stop()
        if reader is not threading.current_thread():
            reader.join(timeout=(self._block_ms / 1000) + 1.0)

    # ── Key-value ──

    def get(self, path: str) -> Any:
        try:
            raw = self._client.get(self._key(path))
        except redis.RedisError as exc:
            raise StoreError("get", str(exc), path=path) from exc
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return raw

    def set(self, path: str, value: Any) -> None:
        try:
            self._client.set(self._key(path), json.dumps(value, default=str))
        except redis.RedisError as exc:
            raise StoreError("set", str(exc), path=path) from exc

    def exists(self, path: str) -> bool:
        try:
            return bool(self._client.exists(self._key(path)))
        except redis.RedisError as exc:
            raise StoreError("exists", str(exc), path=path) from exc

    def set_if_absent(self, path: str, value: Any) -> bool:
        try:
            written = self._client.set(
                self._key(path), json.dumps(value, default=str), nx=True,
            )
        except redis.RedisError as exc:
            raise StoreError("set_if_absent", str(exc), path=path) from exc
        return bool(written)

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError as exc:
            logger.warning("Redis ping failed: %s", exc)
            return False

    def close(self) -> None:
        with self._lock:
            readers = list(self._readers.values())
            self._readers.clear()
        for reader in readers:
            reader.stop()
        for reader in readers:
            reader.join(timeout=(self._block_ms / 1000) + 1.0)
        self._client.close()
