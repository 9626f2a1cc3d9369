from __future__ import annotations
import os, json, pathlib


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


CORE_SECTIONS: tuple[str, ...] = ("D", "E", "F", "G")
SENIOR_SECTION: str = "H"

RUNGS: tuple[str, ...] = ("B", "D", "F")
GRADES: tuple[str, ...] = ("A", "B", "C", "D", "E", "F", "G")
START_RUNG: str = "B"

# autosave timing, seconds
DEBOUNCE_SEC: float = 1.2
BASE_INTERVAL_SEC: float = 10.0
MIN_INTERVAL_SEC: float = 3.0
MODERATE_INTERVAL_SEC: float = 5.0
MAX_INTERVAL_SEC: float = 15.0
RECALIBRATE_SEC: float = 5.0
ACTIVITY_WINDOW_SEC: float = 20.0
ACTIVITY_HIGH: int = 12
ACTIVITY_MODERATE: int = 6

RETRY_ATTEMPTS: int = 3
RETRY_BASE_DELAY_SEC: float = 0.4

HISTORY_CAPACITY: int = 10
RECOVERY_MAX_AGE_HOURS: float = 24.0

STORAGE_KEYS = {
    "current_session": "fitrep_current_session",
    "session_history": "fitrep_session_history",
    "save_queue": "fitrep_save_queue",
    "preferences": "fitrep_user_preferences",
}
SESSION_KEY: str = STORAGE_KEYS["current_session"]
HISTORY_KEY: str = STORAGE_KEYS["session_history"]
QUEUE_KEY: str = STORAGE_KEYS["save_queue"]

# 0 disables the byte quota on the file store
STORE_QUOTA_BYTES: int = 0

DEBUG_TRACE: bool = False

# // env overrides for staging/ops; defaults match the browser client.
DEBOUNCE_SEC = _env_float("DEBOUNCE_SEC", DEBOUNCE_SEC)
BASE_INTERVAL_SEC = _env_float("BASE_INTERVAL_SEC", BASE_INTERVAL_SEC)
MIN_INTERVAL_SEC = _env_float("MIN_INTERVAL_SEC", MIN_INTERVAL_SEC)
MAX_INTERVAL_SEC = _env_float("MAX_INTERVAL_SEC", MAX_INTERVAL_SEC)
RETRY_ATTEMPTS = _env_int("RETRY_ATTEMPTS", RETRY_ATTEMPTS)
RETRY_BASE_DELAY_SEC = _env_float("RETRY_BASE_DELAY_SEC", RETRY_BASE_DELAY_SEC)
HISTORY_CAPACITY = _env_int("HISTORY_CAPACITY", HISTORY_CAPACITY)
STORE_QUOTA_BYTES = _env_int("STORE_QUOTA_BYTES", STORE_QUOTA_BYTES)
DEBUG_TRACE = _env_bool("DEBUG_TRACE", False)


def _env_true(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1","true","yes","on")
def load_config() -> dict:
    cfg = {}
    p = pathlib.Path("config.json")
    if p.exists():
        try: cfg = json.loads(p.read_text(encoding="utf-8"))
        except Exception: cfg = {}
    e = os.environ
    if e.get("DATA_DIR"): cfg["DATA_DIR"] = e.get("DATA_DIR")
    if e.get("CATALOG_PATH"): cfg["CATALOG_PATH"] = e.get("CATALOG_PATH")
    if e.get("AUTOSAVE_ENABLED"): cfg["AUTOSAVE_ENABLED"] = _env_true("AUTOSAVE_ENABLED")
    for k in ("DEBOUNCE_SEC","BASE_INTERVAL_SEC","RETRY_BASE_DELAY_SEC"):
        if e.get(k): cfg[k] = _env_float(k, 0.0)
    if e.get("RETRY_ATTEMPTS"): cfg["RETRY_ATTEMPTS"] = _env_int("RETRY_ATTEMPTS", RETRY_ATTEMPTS)
    return cfg
def autosave_enabled(cfg: dict) -> bool:
    return bool(cfg.get("AUTOSAVE_ENABLED", True))
