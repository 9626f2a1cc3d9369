from __future__ import annotations
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
import logging, os, uuid, typing as t

# ---- Engine imports ----
from fitrep_core.autosave import AutoSaveScheduler
from fitrep_core.catalog import load_catalog
from fitrep_core.config import (
    BASE_INTERVAL_SEC,
    DEBOUNCE_SEC,
    RETRY_ATTEMPTS,
    RETRY_BASE_DELAY_SEC,
    autosave_enabled,
    load_config,
)
from fitrep_core.durability import WritePipeline, check_for_previous_session
from fitrep_core.errors import OutOfRangeError, ValidationError
from fitrep_core.export import to_csv, to_sync_payload, to_text
from fitrep_core.session import EvaluationSession
from fitrep_core.types import EvaluationMeta, Trait, TraitRef
from .storage import (
    active_sessions_for_user,
    clear_active_session,
    delete_session_files,
    load_all_active_sessions,
    load_export,
    open_session_store,
    record_active_session,
    save_export,
    session_exists,
    update_active_session,
    utcnow_iso,
)

log = logging.getLogger(__name__)

CFG = load_config()
CATALOG = load_catalog(CFG.get("CATALOG_PATH"))
AUTOSAVE = autosave_enabled(CFG)

SESS: dict[str, EvaluationSession] = {}
SCHED: dict[str, AutoSaveScheduler] = {}
SESSION_INFO: dict[str, dict[str, t.Any]] = {}

for sid, payload in load_all_active_sessions().items():
    SESSION_INFO[sid] = {
        "user_id": payload.get("userId"),
        "started_at": payload.get("startedAt"),
    }


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    for sched in list(SCHED.values()):
        if sched.dirty:
            await sched.force_save()
        await sched.close()
    SCHED.clear()
    SESS.clear()


app = FastAPI(title="FITREP Evaluator API", lifespan=lifespan)


@app.get("/")
def root():
    return {"status": "ok", "service": "fitrep-evaluator"}


ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:8000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=False,
)

# ---- Schemas ----
class MetaReq(BaseModel):
    marine_name: str | None = None
    marine_rank: str | None = None
    from_date: str | None = None
    to_date: str | None = None
    evaluator_name: str | None = None
    occasion_type: str | None = None
    started_from_profile: bool | None = None
    section_i_comments: str | None = None
    directed_comments: str | None = None

class StartReq(BaseModel):
    is_reporting_senior: bool = False
    meta: MetaReq | None = None
    user_id: str | None = None

class DecideReq(BaseModel):
    decision: str  # "doesNotMeet" | "meets" | "surpasses"

class FinalizeReq(BaseModel):
    grade: str
    justification: str

class ReevaluateReq(BaseModel):
    trait_key: str
    return_to: str = "review"  # "review" | "directedComments"

class JustificationReq(BaseModel):
    trait_key: str
    justification: str

class NarrativeReq(BaseModel):
    generated_section_i: str | None = None
    directed_comments_data: dict[str, str] | None = None
    selected_directed_comments: list[str] | None = None
    step: str | None = None

# ---- Helpers ----
def _meta_fields(req: MetaReq | None) -> dict[str, t.Any]:
    if req is None:
        return {}
    return {k: v for k, v in req.model_dump(exclude_unset=True).items() if v is not None}


def _serialize_trait(trait: Trait | None, rung: str | None = None) -> dict[str, t.Any] | None:
    if trait is None:
        return None
    out = {
        "key": trait.key,
        "section": trait.ref.section_key,
        "sectionTitle": trait.section_title,
        "name": trait.name,
        "description": trait.description,
        "gradeDescriptions": dict(trait.grade_descriptions),
    }
    if rung:
        out["rung"] = rung
        out["rungDescription"] = trait.grade_descriptions.get(rung, "")
    return out


def _get(sid: str) -> EvaluationSession:
    sess = SESS.get(sid)
    if not sess:
        raise HTTPException(404, "session not found")
    return sess


def _trait(sess: EvaluationSession, key: str) -> Trait:
    trait = sess.find_trait(TraitRef.from_key(key))
    if trait is None:
        raise HTTPException(404, f"trait {key} not in this evaluation")
    return trait


def _guard(fn: t.Callable[..., t.Any], *args: t.Any, **kwargs: t.Any) -> t.Any:
    try:
        return fn(*args, **kwargs)
    except OutOfRangeError as exc:
        raise HTTPException(409, str(exc))
    except (ValidationError, ValueError) as exc:
        raise HTTPException(400, str(exc))


def _state(sid: str) -> dict[str, t.Any]:
    sess = _get(sid)
    st = sess.state
    try:
        current = sess.current_trait()
    except OutOfRangeError:
        current = None
    override = None
    if st.override is not None:
        override = {
            "trait": st.override.active_trait.key,
            "returnTo": st.override.return_destination,
            "startingGrade": st.override.starting_grade,
        }
    sched = SCHED.get(sid)
    return {
        "session_id": sid,
        "pointer": {"index": st.pointer.index, "mode": st.pointer.mode},
        "rung": st.rung,
        "current_trait": _serialize_trait(current, st.rung),
        "override": override,
        "ledger": {k: v.to_dict() for k, v in st.ledger.items()},
        "progress": sess.overall_progress(),
        "section_progress": sess.section_progress(current) if current else None,
        "remaining": sess.remaining_sections() if current and st.override is None else "",
        "complete": sess.is_complete,
        "step": st.current_step,
        "meta": st.meta.to_dict(),
        "save": sched.status.to_dict() if sched else None,
    }


def _attach(sid: str, sess: EvaluationSession) -> AutoSaveScheduler:
    store = open_session_store(sid)
    pipeline = WritePipeline(store, sess.build_snapshot)
    sched = AutoSaveScheduler(
        pipeline,
        debounce=float(CFG.get("DEBOUNCE_SEC") or DEBOUNCE_SEC),
        base_interval=float(CFG.get("BASE_INTERVAL_SEC") or BASE_INTERVAL_SEC),
        attempts=int(CFG.get("RETRY_ATTEMPTS") or RETRY_ATTEMPTS),
        base_delay=float(CFG.get("RETRY_BASE_DELAY_SEC") or RETRY_BASE_DELAY_SEC),
    )
    sess.subscribe(sched.mark_dirty)
    SESS[sid] = sess
    SCHED[sid] = sched
    if AUTOSAVE:
        sched.start()
    return sched


def _touch(sid: str) -> None:
    info = SESSION_INFO.get(sid, {})
    if info.get("user_id"):
        sess = SESS[sid]
        update_active_session(
            sid,
            {
                "lastUpdated": utcnow_iso(),
                "index": sess.state.pointer.index,
                "total": len(sess.sequence),
            },
        )

# ---- Health ----
@app.get("/health")
def health():
    return {
        "autosave": AUTOSAVE,
        "sessions": len(SESS),
        "data_dir": os.getenv("DATA_DIR", "data"),
    }

# ---- Session lifecycle ----
@app.post("/session/start")
async def start(req: StartReq):
    sid = str(uuid.uuid4())
    meta = EvaluationMeta(**_meta_fields(req.meta))
    sess = _guard(EvaluationSession.start, meta, req.is_reporting_senior, CATALOG)
    _attach(sid, sess)
    started_at = utcnow_iso()
    SESSION_INFO[sid] = {"user_id": req.user_id, "started_at": started_at}
    if req.user_id:
        record_active_session(
            sid,
            {
                "sessionId": sid,
                "userId": req.user_id,
                "marineName": meta.marine_name,
                "startedAt": started_at,
                "lastUpdated": started_at,
                "index": 0,
                "total": len(sess.sequence),
            },
        )
    return _state(sid)


@app.get("/session/{sid}/state")
def state(sid: str):
    return _state(sid)


@app.post("/session/{sid}/recover")
async def recover(sid: str):
    """Rebuild a session from its last saved snapshot (only if younger than 24h)."""

    if sid in SESS:
        return _state(sid)
    if not session_exists(sid):
        raise HTTPException(404, "session not found")
    snapshot = check_for_previous_session(open_session_store(sid))
    if snapshot is None:
        raise HTTPException(404, "no recoverable snapshot for this session")
    sess = _guard(EvaluationSession.from_snapshot, snapshot, CATALOG)
    _attach(sid, sess)
    SESSION_INFO.setdefault(sid, {"user_id": None, "started_at": snapshot.timestamp})
    log.info("recovered session %s from snapshot %s", sid, snapshot.timestamp)
    return _state(sid)


@app.delete("/session/{sid}")
async def discard(sid: str):
    sess = SESS.pop(sid, None)
    sched = SCHED.pop(sid, None)
    if sched is not None:
        await sched.close()
        sched.pipeline.clear_all()
    if sess is None and not session_exists(sid):
        raise HTTPException(404, "session not found")
    delete_session_files(sid)
    clear_active_session(sid)
    SESSION_INFO.pop(sid, None)
    return {"ok": True}

# ---- Grading ----
@app.post("/session/{sid}/decide")
async def decide(sid: str, req: DecideReq):
    sess = _get(sid)
    step = _guard(sess.decide, req.decision)
    return {
        "step": {
            "rung": step.rung,
            "decision": step.decision,
            "grade": step.grade,
            "next_rung": step.next_rung,
            "final": step.final,
        },
        "state": _state(sid),
    }


@app.post("/session/{sid}/finalize")
async def finalize(sid: str, req: FinalizeReq):
    sess = _get(sid)
    destination = _guard(sess.finalize_current, req.grade, req.justification)
    _touch(sid)
    return {"return_to": destination, "state": _state(sid)}


@app.post("/session/{sid}/back")
async def back(sid: str):
    sess = _get(sid)
    moved = sess.go_back_one_trait()
    return {"moved": moved, "state": _state(sid)}


@app.post("/session/{sid}/review")
async def review(sid: str):
    sess = _get(sid)
    _guard(sess.enter_review)
    return {"groups": sess.review_groups(), "state": _state(sid)}


@app.post("/session/{sid}/reevaluate")
async def reevaluate(sid: str, req: ReevaluateReq):
    sess = _get(sid)
    trait = _trait(sess, req.trait_key)
    _guard(sess.start_reevaluation, trait, req.return_to)
    return _state(sid)


@app.post("/session/{sid}/reevaluate/cancel")
async def cancel_reevaluation(sid: str):
    sess = _get(sid)
    cancelled = sess.cancel_reevaluation()
    return {"cancelled": cancelled, "state": _state(sid)}


@app.put("/session/{sid}/justification")
async def edit_justification(sid: str, req: JustificationReq):
    sess = _get(sid)
    trait = _trait(sess, req.trait_key)
    _guard(sess.edit_justification, trait, req.justification)
    return _state(sid)


@app.patch("/session/{sid}/meta")
async def update_meta(sid: str, req: MetaReq):
    sess = _get(sid)
    _guard(sess.update_meta, **_meta_fields(req))
    return _state(sid)


@app.put("/session/{sid}/narrative")
async def update_narrative(sid: str, req: NarrativeReq):
    sess = _get(sid)
    sess.set_narrative(
        generated_section_i=req.generated_section_i,
        directed_comments_data=req.directed_comments_data,
        selected_directed_comments=req.selected_directed_comments,
    )
    if req.step:
        sess.set_step(req.step)
    return _state(sid)

# ---- Durability ----
def _sched(sid: str) -> AutoSaveScheduler:
    _get(sid)
    return SCHED[sid]


@app.post("/session/{sid}/save")
async def save(sid: str):
    sched = _sched(sid)
    ok = await sched.force_save()
    return {"ok": ok, **sched.status.to_dict()}


@app.post("/session/{sid}/retry")
async def retry(sid: str):
    sched = _sched(sid)
    ok = await sched.retry_now()
    return {"ok": ok, **sched.status.to_dict()}


@app.post("/session/{sid}/online")
async def online(sid: str):
    sched = _sched(sid)
    result = await sched.pipeline.flush_queue()
    return {"ok": True, **result}


@app.get("/session/{sid}/status")
def save_status(sid: str):
    sched = _sched(sid)
    return {
        **sched.status.to_dict(),
        "dirty": sched.dirty,
        "interval": sched.interval,
        "queued": len(sched.pipeline.queue),
    }


@app.get("/session/{sid}/history")
def history(sid: str):
    sched = _sched(sid)
    entries = [{k: v for k, v in e.items() if k != "data"} for e in sched.pipeline.history()]
    return {"history": entries}

# ---- Export ----
@app.get("/session/{sid}/export")
def export(sid: str, format: str = Query("json", description="json | csv | text")):
    sess = _get(sid)
    if format == "csv":
        return Response(
            content=to_csv(sess.ledger),
            media_type="text/csv",
            headers={"Content-Disposition": f"attachment; filename=\"{sid}_fitrep.csv\""},
        )
    if format == "text":
        return Response(content=to_text(sess), media_type="text/plain")
    if format != "json":
        raise HTTPException(400, f"unknown export format {format!r}")
    return to_sync_payload(sess)


@app.post("/session/{sid}/complete")
async def complete(sid: str):
    sess = _get(sid)
    if not sess.is_complete:
        raise HTTPException(409, "evaluation has ungraded traits")
    payload = to_sync_payload(sess)
    payload["completed_at"] = utcnow_iso()
    save_export(sid, payload)
    await SCHED[sid].force_save()
    clear_active_session(sid)
    return payload


@app.get("/exports/{sid}")
def get_export(sid: str):
    payload = load_export(sid)
    if not payload:
        raise HTTPException(404, "export not found")
    return payload


@app.get("/users/{user_id}/sessions/active")
def list_active_sessions(user_id: str):
    sessions = active_sessions_for_user(user_id)
    return {"sessions": sessions}
