# fitrep_core/durability.py
"""Write pipeline: commits session snapshots with graceful degradation.

One attempt writes the full snapshot and rotates it into history. A quota
failure falls back to a compact snapshot (no history entry). Anything else
fails the attempt; after the last attempt a compact snapshot goes into a
separately persisted FIFO queue that is flushed when connectivity returns.
Nothing here raises past the public methods: callers get booleans and the
save-status signal.
"""
from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional
import asyncio, json, logging

from .config import (
    HISTORY_CAPACITY,
    HISTORY_KEY,
    QUEUE_KEY,
    RECOVERY_MAX_AGE_HOURS,
    RETRY_ATTEMPTS,
    RETRY_BASE_DELAY_SEC,
    SESSION_KEY,
    STORAGE_KEYS,
)
from .errors import RestoreError
from .snapshot import snapshot_from_dict, snapshot_to_dict, structural_fingerprint
from .store import KeyValueStore, Ok, QuotaExceeded, StorageResult
from .types import SaveStatus, SessionSnapshot


log = logging.getLogger(__name__)

SnapshotSource = Callable[[bool], SessionSnapshot]
StatusListener = Callable[[str], None]

COMPACT_WARNING = "storage full, compact snapshot saved"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(raw: Any) -> Optional[datetime]:
    try:
        ts = datetime.fromisoformat(str(raw))
    except (TypeError, ValueError):
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class SaveStatusTracker:
    """UI-facing save indicator: saved | unsaved | saving | error."""

    def __init__(self, status: SaveStatus = "saved"):
        self.status: SaveStatus = status
        self.last_saved_at: Optional[datetime] = None
        self.warnings: List[str] = []
        self._listeners: List[StatusListener] = []

    def subscribe(self, callback: StatusListener) -> None:
        self._listeners.append(callback)

    def set(self, status: SaveStatus) -> None:
        self.status = status
        for callback in list(self._listeners):
            callback(status)

    def mark_saved(self, when: datetime) -> None:
        self.last_saved_at = when
        self.set("saved")

    def warn(self, message: str) -> None:
        self.warnings.append(message)
        log.warning("save warning: %s", message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "lastSavedAt": self.last_saved_at.isoformat() if self.last_saved_at else None,
            "warnings": list(self.warnings),
        }


class WritePipeline:
    def __init__(
        self,
        store: KeyValueStore,
        snapshot_source: SnapshotSource,
        status: Optional[SaveStatusTracker] = None,
        *,
        history_capacity: int = HISTORY_CAPACITY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.snapshot_source = snapshot_source
        self.status = status or SaveStatusTracker()
        self.history_capacity = max(1, int(history_capacity))
        self._sleep = sleep
        self._clock = clock
        self._lock = asyncio.Lock()
        self._flushing = False
        self._last_fingerprint: Optional[str] = None
        self._last_committed: Optional[datetime] = self._stored_timestamp()
        self.writes = 0
        self._queue: List[Dict[str, Any]] = self.load_queue()

    def _stored_timestamp(self) -> Optional[datetime]:
        raw = self.store.read(SESSION_KEY)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            return None
        return _parse_ts(data.get("timestamp")) if isinstance(data, dict) else None

    # ---- single attempt ----
    def _write(self, key: str, payload: Any) -> StorageResult:
        result = self.store.write(key, json.dumps(payload, sort_keys=True, ensure_ascii=False))
        if isinstance(result, Ok):
            self.writes += 1
        return result

    def _attempt(self) -> str:
        """Returns "saved", "compact", "unchanged" or "failed"."""

        try:
            full = self.snapshot_source(False)
            fingerprint = structural_fingerprint(full)
            if fingerprint == self._last_fingerprint:
                log.debug("save skipped: no change since last commit")
                return "unchanged"
            result = self._write(SESSION_KEY, snapshot_to_dict(full))
            if isinstance(result, Ok):
                self._append_history(full)
                self._last_fingerprint = fingerprint
                self._last_committed = _parse_ts(full.timestamp)
                log.info("saved session snapshot bytes=%d traits=%d", result.size, len(full.ledger))
                return "saved"
            if isinstance(result, QuotaExceeded):
                log.warning("storage quota exceeded (%s); retrying with compact snapshot", result.detail)
                compact = self.snapshot_source(True)
                retry = self._write(SESSION_KEY, snapshot_to_dict(compact))
                if isinstance(retry, Ok):
                    # drafts were dropped from storage, so the next save must write again
                    self._last_fingerprint = None
                    self._last_committed = _parse_ts(compact.timestamp)
                    self.status.warn(COMPACT_WARNING)
                    return "compact"
                log.error("compact save failed: %s", retry)
                return "failed"
            log.error("save failed: %s", result)
            return "failed"
        except Exception:
            log.exception("save attempt raised")
            return "failed"

    def _append_history(self, snapshot: SessionSnapshot) -> None:
        history = self.history()
        entry = {
            "id": int(self._clock().timestamp() * 1000),
            "timestamp": snapshot.timestamp,
            "marineName": snapshot.metadata.marine_name or "Unknown",
            "step": snapshot.current_step,
            "traitCount": len(snapshot.ledger),
            "data": snapshot_to_dict(snapshot),
        }
        history.insert(0, entry)
        del history[self.history_capacity:]
        result = self._write(HISTORY_KEY, history)
        if not isinstance(result, Ok):
            log.error("failed to save session history: %s", result)

    # ---- queue ----
    def load_queue(self) -> List[Dict[str, Any]]:
        raw = self.store.read(QUEUE_KEY)
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except ValueError:
            log.error("save queue is unreadable; starting empty")
            return []
        return [e for e in data if isinstance(e, dict) and "snapshot" in e] if isinstance(data, list) else []

    @property
    def queue(self) -> List[Dict[str, Any]]:
        return list(self._queue)

    def _persist_queue(self) -> None:
        result = self._write(QUEUE_KEY, self._queue)
        if not isinstance(result, Ok):
            log.error("failed to persist save queue (%d entries held in memory): %s", len(self._queue), result)

    def _enqueue(self) -> None:
        """Queue a compact snapshot; the latest one replaces any unchanged tail."""

        try:
            compact = self.snapshot_source(True)
            entry = {
                "enqueuedAt": self._clock().isoformat(),
                "fingerprint": structural_fingerprint(compact),
                "snapshot": snapshot_to_dict(compact),
            }
        except Exception:
            log.exception("could not build compact snapshot for the save queue")
            return
        if self._queue and self._queue[-1].get("fingerprint") == entry["fingerprint"]:
            self._queue[-1] = entry
            log.debug("queued snapshot unchanged; refreshed tail entry")
        else:
            self._queue.append(entry)
        self._persist_queue()
        log.warning("queued compact snapshot for later flush (queue=%d)", len(self._queue))

    # ---- public ----
    def save(self) -> bool:
        """One attempt; a failure queues a compact snapshot."""

        self.status.set("saving")
        outcome = self._attempt()
        if outcome == "failed":
            self._enqueue()
            self.status.set("error")
            return False
        self.status.mark_saved(self._clock())
        return True

    async def perform_save_with_retry(
        self,
        attempts: int = RETRY_ATTEMPTS,
        base_delay: float = RETRY_BASE_DELAY_SEC,
    ) -> bool:
        attempts = max(1, int(attempts))
        async with self._lock:
            self.status.set("saving")
            for n in range(1, attempts + 1):
                if self._attempt() != "failed":
                    self.status.mark_saved(self._clock())
                    return True
                if n < attempts:
                    delay = base_delay * 2 ** (n - 1)
                    log.warning("save attempt %d/%d failed; retrying in %.2fs", n, attempts, delay)
                    await self._sleep(delay)
            log.error("save failed after %d attempts", attempts)
            self._enqueue()
            self.status.set("error")
            return False

    async def flush_queue(self) -> Dict[str, int]:
        """Write queued snapshots in FIFO order; failures stay queued."""

        if self._flushing:
            log.debug("queue flush already running")
            return {"flushed": 0, "dropped": 0, "remaining": len(self._queue)}
        self._flushing = True
        try:
            async with self._lock:
                pending = list(self._queue)
                if not pending:
                    return {"flushed": 0, "dropped": 0, "remaining": 0}
                kept: List[Dict[str, Any]] = []
                flushed = dropped = 0
                for entry in pending:
                    taken = _parse_ts((entry.get("snapshot") or {}).get("timestamp"))
                    if self._last_committed and taken and taken < self._last_committed:
                        dropped += 1
                        log.info("dropping queued snapshot from %s; a newer save is committed", taken.isoformat())
                        continue
                    result = self._write(SESSION_KEY, entry["snapshot"])
                    if isinstance(result, Ok):
                        flushed += 1
                        self._last_committed = taken or self._last_committed
                    else:
                        log.warning("queue flush failed; requeue (%s)", result)
                        kept.append(entry)
                self._queue = kept
                if flushed:
                    self._last_fingerprint = None
                self._persist_queue()
                log.info("queue flush done flushed=%d dropped=%d remaining=%d", flushed, dropped, len(kept))
                return {"flushed": flushed, "dropped": dropped, "remaining": len(kept)}
        finally:
            self._flushing = False

    def history(self) -> List[Dict[str, Any]]:
        raw = self.store.read(HISTORY_KEY)
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except ValueError:
            log.error("session history is unreadable")
            return []
        return data if isinstance(data, list) else []

    def clear_all(self) -> None:
        for key in STORAGE_KEYS.values():
            self.store.remove(key)
        self._queue = []
        self._last_fingerprint = None
        self._last_committed = None
        self.status.set("saved")


# ---- recovery ----
def load_saved_snapshot(store: KeyValueStore) -> Optional[SessionSnapshot]:
    raw = store.read(SESSION_KEY)
    if not raw:
        return None
    try:
        return snapshot_from_dict(json.loads(raw))
    except ValueError as exc:
        log.error("stored session is not valid JSON: %s", exc)
    except RestoreError as exc:
        log.error("stored session discarded: %s", exc)
    return None


def check_for_previous_session(
    store: KeyValueStore,
    now: Optional[datetime] = None,
    max_age_hours: float = RECOVERY_MAX_AGE_HOURS,
) -> Optional[SessionSnapshot]:
    """Saved snapshot worth offering for recovery, i.e. younger than ``max_age_hours``."""

    snapshot = load_saved_snapshot(store)
    if snapshot is None:
        return None
    taken = _parse_ts(snapshot.timestamp)
    if taken is None:
        return None
    age_hours = ((now or _utcnow()) - taken).total_seconds() / 3600.0
    if age_hours >= max_age_hours:
        log.info("saved session is %.1fh old; not offering recovery", age_hours)
        return None
    return snapshot


__all__ = [
    "COMPACT_WARNING",
    "SaveStatusTracker",
    "WritePipeline",
    "check_for_previous_session",
    "load_saved_snapshot",
]
