"""
EngagementCache — conversation id → last-known inbound activity.

The in-memory map is authoritative for the process lifetime. Every
mutation is written through to the blob store before returning; the
whole map is serialized as one JSON object under a fixed key.

Storage failures never propagate: a failed write is logged and the
in-memory state is kept, a corrupt blob on load is logged and the
cache starts empty.
"""
from __future__ import annotations

import threading
import structlog
from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import ValidationError

from database.store_base import BaseBlobStore
from models.schemas import EngagementAction, EngagementRecord, as_utc

logger = structlog.get_logger()

DEFAULT_CACHE_KEY = "whatsapp_user_engagement_cache"
DEFAULT_RETENTION = timedelta(days=30)


class EngagementCache:

    def __init__(
        self,
        store: BaseBlobStore,
        key: str = DEFAULT_CACHE_KEY,
        retention: timedelta = DEFAULT_RETENTION,
    ):
        self._store = store
        self._key = key
        self.retention = retention
        self._records: dict[str, EngagementRecord] = {}
        self._lock = threading.RLock()

    # ── Reads ─────────────────────────────────────────────────

    def get(self, conversation_id: str) -> Optional[EngagementRecord]:
        with self._lock:
            record = self._records.get(conversation_id)
            return record.model_copy(deep=True) if record else None

    def all(self) -> list[EngagementRecord]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._records.values()]

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._records

    # ── Writes ────────────────────────────────────────────────

    def put(self, conversation_id: str, record: EngagementRecord) -> None:
        """
        Store a record and persist the map before returning.

        Inbound recency and engagement_count never move backwards: if the
        incoming record is older than what we hold, the newer values win.
        """
        with self._lock:
            record = record.model_copy(deep=True)
            record.conversation_id = conversation_id
            existing = self._records.get(conversation_id)
            if existing is not None:
                _keep_monotonic(existing, record)
            self._records[conversation_id] = record
            self.save_all()

    def record_inbound(
        self,
        conversation_id: str,
        timestamp: datetime,
        message_id: Optional[str] = None,
        message_type: str = "text",
    ) -> EngagementRecord:
        """Note an inbound message. Older-than-known messages are ignored."""
        timestamp = as_utc(timestamp)
        with self._lock:
            record = self.get(conversation_id) or EngagementRecord(conversation_id=conversation_id)
            last = record.last_inbound_timestamp
            if last is None or timestamp > last:
                record.last_inbound_timestamp = timestamp
                record.last_inbound_message_id = message_id
                record.last_inbound_message_type = message_type or "text"
                self.put(conversation_id, record)
                logger.debug("inbound_recorded",
                             conversation_id=conversation_id,
                             timestamp=timestamp.isoformat())
            return record

    def record_action(
        self,
        conversation_id: str,
        action: EngagementAction,
        details: dict[str, Any] = None,
        now: datetime = None,
    ) -> EngagementRecord:
        with self._lock:
            record = self.get(conversation_id) or EngagementRecord(conversation_id=conversation_id)
            record.last_action = action
            record.last_action_details = details or {}
            record.last_action_at = now
            record.engagement_count += 1
            self.put(conversation_id, record)
            logger.info("engagement_updated",
                        conversation_id=conversation_id,
                        action=action.value,
                        engagement_count=record.engagement_count)
            return record

    def prune(self, now: datetime) -> int:
        """Drop records with no activity inside the retention period."""
        cutoff = now - self.retention
        with self._lock:
            stale = [
                cid for cid, rec in self._records.items()
                if rec.retention_anchor is None or rec.retention_anchor < cutoff
            ]
            for cid in stale:
                del self._records[cid]
            if stale:
                self.save_all()
                logger.info("engagement_records_pruned", count=len(stale))
            return len(stale)

    def clear(self) -> None:
        """Empty the map and remove the persisted blob."""
        with self._lock:
            self._records.clear()
            try:
                self._store.delete(self._key)
            except Exception as e:
                logger.error("engagement_cache_delete_failed", key=self._key, error=str(e))

    # ── Persistence ───────────────────────────────────────────

    def save_all(self) -> bool:
        with self._lock:
            data = {cid: rec.model_dump(mode="json") for cid, rec in self._records.items()}
            try:
                self._store.save(self._key, data)
                return True
            except Exception as e:
                logger.error("engagement_cache_save_failed",
                             key=self._key, records=len(data), error=str(e))
                return False

    def load_all(self) -> int:
        """Replace the in-memory map with the persisted one. Returns records loaded."""
        try:
            data = self._store.load(self._key)
        except Exception as e:
            logger.warning("engagement_cache_load_failed", key=self._key, error=str(e))
            return 0

        if not isinstance(data, dict):
            if data is not None:
                logger.warning("engagement_cache_blob_invalid", key=self._key,
                               type=type(data).__name__)
            return 0

        loaded: dict[str, EngagementRecord] = {}
        for cid, raw in data.items():
            try:
                loaded[cid] = EngagementRecord.model_validate(raw)
            except ValidationError as e:
                logger.warning("engagement_record_invalid", conversation_id=cid, error=str(e))

        with self._lock:
            self._records = loaded
        logger.info("engagement_cache_loaded", records=len(loaded))
        return len(loaded)


def _keep_monotonic(existing: EngagementRecord, incoming: EngagementRecord) -> None:
    old_ts = existing.last_inbound_timestamp
    if old_ts is not None and (
        incoming.last_inbound_timestamp is None or incoming.last_inbound_timestamp < old_ts
    ):
        incoming.last_inbound_timestamp = old_ts
        incoming.last_inbound_message_id = existing.last_inbound_message_id
        incoming.last_inbound_message_type = existing.last_inbound_message_type
    if incoming.engagement_count < existing.engagement_count:
        incoming.engagement_count = existing.engagement_count
