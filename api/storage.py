"""Where the API keeps evaluation sessions on disk.

Every session id owns a directory under ``DATA_DIR/sessions`` served by a
``JsonFileStore`` (current snapshot, history ring, save queue). Two more
file stores sit next to it: an index of resumable sessions per user, and the
sync payloads of completed evaluations.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from fitrep_core.config import STORE_QUOTA_BYTES
from fitrep_core.store import JsonFileStore, Ok


log = logging.getLogger(__name__)

DATA_ROOT = Path(os.getenv("DATA_DIR", "data")).resolve()
SESSIONS_DIR = DATA_ROOT / "sessions"
EXPORTS_DIR = DATA_ROOT / "exports"
INDEX_KEY = "sessions_active"

_INDEX = JsonFileStore(DATA_ROOT)
_EXPORTS = JsonFileStore(EXPORTS_DIR)
_LOCK = threading.Lock()


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _safe_id(session_id: str) -> str:
    return "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in session_id)


def _decode(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        return default


# ---- per-session stores ----
def session_dir(session_id: str) -> Path:
    return SESSIONS_DIR / _safe_id(session_id)


def open_session_store(session_id: str) -> JsonFileStore:
    return JsonFileStore(session_dir(session_id), STORE_QUOTA_BYTES or None)


def session_exists(session_id: str) -> bool:
    return session_dir(session_id).is_dir()


def delete_session_files(session_id: str) -> None:
    shutil.rmtree(session_dir(session_id), ignore_errors=True)


# ---- completed exports ----
def save_export(session_id: str, payload: Dict[str, Any]) -> bool:
    result = _EXPORTS.write(_safe_id(session_id), json.dumps(payload, indent=2, sort_keys=True))
    if not isinstance(result, Ok):
        log.error("could not store export for %s: %s", session_id, result)
        return False
    return True


def load_export(session_id: str) -> Optional[Dict[str, Any]]:
    return _decode(_EXPORTS.read(_safe_id(session_id)), None)


# ---- resumable session index ----
def _load_index() -> Dict[str, Dict[str, Any]]:
    data = _decode(_INDEX.read(INDEX_KEY), {})
    return data if isinstance(data, dict) else {}


def _store_index(index: Dict[str, Dict[str, Any]]) -> None:
    result = _INDEX.write(INDEX_KEY, json.dumps(index, indent=2, sort_keys=True))
    if not isinstance(result, Ok):
        log.error("could not update the session index: %s", result)


def record_active_session(session_id: str, payload: Dict[str, Any]) -> None:
    if not payload.get("userId"):
        return
    with _LOCK:
        index = _load_index()
        index[session_id] = dict(payload, sessionId=session_id)
        _store_index(index)


def update_active_session(session_id: str, updates: Dict[str, Any]) -> None:
    with _LOCK:
        index = _load_index()
        entry = index.get(session_id)
        if entry is None:
            return
        entry.update(updates)
        _store_index(index)


def clear_active_session(session_id: str) -> None:
    with _LOCK:
        index = _load_index()
        if index.pop(session_id, None) is not None:
            _store_index(index)


def active_sessions_for_user(user_id: str) -> List[Dict[str, Any]]:
    """Resumable sessions of ``user_id``, most recently touched first.

    Entries whose session directory is gone are skipped.
    """

    out = [
        entry for sid, entry in _load_index().items()
        if entry.get("userId") == user_id and session_exists(sid)
    ]
    out.sort(key=lambda r: r.get("lastUpdated") or r.get("startedAt", ""), reverse=True)
    return out


def load_all_active_sessions() -> Dict[str, Dict[str, Any]]:
    return _load_index()
