"""Serializable point-in-time captures of a session.

A full snapshot carries everything; a compact one drops the narrative drafts
(directed comment drafts and the generated Section I text), which are the
only fields that can grow large. Pointer, ledger, trait sequence, role flag
and metadata are always present because resuming without them is wrong in
ways the user would not notice.
"""
from __future__ import annotations

import copy
import hashlib
import json
from datetime import datetime
from typing import Any, Dict, List

from .config import RUNGS, START_RUNG
from .errors import RestoreError
from .types import (
    EvaluationMeta,
    GradeResult,
    SessionPointer,
    SessionSnapshot,
    SessionState,
    Trait,
    TraitRef,
)

_REQUIRED = ("timestamp", "pointer", "ledger", "activeTraitSequence", "metadata")
_META_FIELDS = {
    "marineName": "marine_name",
    "marineRank": "marine_rank",
    "fromDate": "from_date",
    "toDate": "to_date",
    "evaluatorName": "evaluator_name",
    "occasionType": "occasion_type",
    "startedFromProfile": "started_from_profile",
    "sectionIComments": "section_i_comments",
    "directedComments": "directed_comments",
}


def build_snapshot(state: SessionState, *, compact: bool, now: datetime) -> SessionSnapshot:
    pointer = copy.deepcopy(state.pointer)
    rung = state.rung
    if state.override is not None:
        # overrides are not persisted; capture the state a cancel would leave behind
        pointer.mode = state.override.previous_mode
        rung = START_RUNG
    return SessionSnapshot(
        timestamp=now.isoformat(),
        pointer=pointer,
        ledger=copy.deepcopy(state.ledger),
        active_trait_sequence=list(state.sequence),
        metadata=copy.deepcopy(state.meta),
        is_reporting_senior=state.is_reporting_senior,
        rung=rung,
        current_step=state.current_step,
        selected_directed_comments=list(state.selected_directed_comments),
        directed_comments_data={} if compact else dict(state.directed_comments_data),
        generated_section_i="" if compact else state.generated_section_i,
        compact=compact,
    )


def restore_state(snapshot: SessionSnapshot) -> SessionState:
    if not snapshot.active_trait_sequence:
        raise RestoreError("snapshot has an empty trait sequence")
    total = len(snapshot.active_trait_sequence)
    if not 0 <= snapshot.pointer.index <= total:
        raise RestoreError(f"pointer index {snapshot.pointer.index} outside 0..{total}")
    return SessionState(
        sequence=list(snapshot.active_trait_sequence),
        is_reporting_senior=snapshot.is_reporting_senior,
        pointer=copy.deepcopy(snapshot.pointer),
        ledger=copy.deepcopy(snapshot.ledger),
        rung=snapshot.rung if snapshot.rung in RUNGS else "B",
        override=None,
        meta=copy.deepcopy(snapshot.metadata),
        current_step=snapshot.current_step,
        selected_directed_comments=list(snapshot.selected_directed_comments),
        directed_comments_data=dict(snapshot.directed_comments_data),
        generated_section_i=snapshot.generated_section_i,
    )


# -------- JSON shape ----------
def _trait_to_dict(trait: Trait) -> Dict[str, Any]:
    return {
        "sectionKey": trait.ref.section_key,
        "traitKey": trait.ref.trait_key,
        "sectionTitle": trait.section_title,
        "name": trait.name,
        "description": trait.description,
        "gradeDescriptions": dict(trait.grade_descriptions),
    }


def _trait_from_dict(raw: Dict[str, Any]) -> Trait:
    return Trait(
        ref=TraitRef(section_key=str(raw["sectionKey"]), trait_key=str(raw["traitKey"])),
        section_title=str(raw.get("sectionTitle", "")),
        name=str(raw.get("name", raw["traitKey"])),
        description=str(raw.get("description", "")),
        grade_descriptions=dict(raw.get("gradeDescriptions") or {}),
    )


def _result_from_dict(raw: Dict[str, Any]) -> GradeResult:
    return GradeResult(
        grade=raw["grade"],
        grade_number=int(raw["gradeNumber"]),
        section_title=str(raw.get("section", "")),
        trait_name=str(raw.get("trait", "")),
        justification=str(raw.get("justification", "")),
    )


def _meta_from_dict(raw: Dict[str, Any]) -> EvaluationMeta:
    kwargs = {attr: raw[key] for key, attr in _META_FIELDS.items() if key in raw}
    if "started_from_profile" in kwargs:
        kwargs["started_from_profile"] = bool(kwargs["started_from_profile"])
    return EvaluationMeta(**kwargs)


def snapshot_to_dict(snapshot: SessionSnapshot) -> Dict[str, Any]:
    return {
        "timestamp": snapshot.timestamp,
        "pointer": {"index": snapshot.pointer.index, "mode": snapshot.pointer.mode},
        "ledger": {k: v.to_dict() for k, v in snapshot.ledger.items()},
        "activeTraitSequence": [_trait_to_dict(t) for t in snapshot.active_trait_sequence],
        "metadata": snapshot.metadata.to_dict(),
        "isReportingSenior": snapshot.is_reporting_senior,
        "rung": snapshot.rung,
        "currentStep": snapshot.current_step,
        "selectedDirectedComments": list(snapshot.selected_directed_comments),
        "directedCommentsData": dict(snapshot.directed_comments_data),
        "generatedSectionI": snapshot.generated_section_i,
        "compact": snapshot.compact,
    }


def snapshot_from_dict(payload: Any) -> SessionSnapshot:
    """Parse a stored snapshot; anything structurally incomplete is a RestoreError."""

    if not isinstance(payload, dict):
        raise RestoreError("snapshot payload is not an object")
    missing = [k for k in _REQUIRED if not payload.get(k) and payload.get(k) != {}]
    if missing:
        raise RestoreError(f"snapshot missing required fields: {', '.join(missing)}")
    if not isinstance(payload["metadata"], dict) or not isinstance(payload["ledger"], dict):
        raise RestoreError("snapshot metadata and ledger must be objects")
    try:
        ptr = payload["pointer"]
        pointer = SessionPointer(index=int(ptr["index"]), mode=ptr.get("mode", "advancing"))
        if pointer.mode not in ("advancing", "reviewing"):
            raise RestoreError(f"unknown pointer mode {pointer.mode!r}")
        sequence = [_trait_from_dict(t) for t in payload["activeTraitSequence"]]
        ledger = {str(k): _result_from_dict(v) for k, v in payload["ledger"].items()}
        meta = _meta_from_dict(payload["metadata"])
    except RestoreError:
        raise
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise RestoreError(f"malformed snapshot: {exc}") from exc
    return SessionSnapshot(
        timestamp=str(payload["timestamp"]),
        pointer=pointer,
        ledger=ledger,
        active_trait_sequence=sequence,
        metadata=meta,
        is_reporting_senior=bool(payload.get("isReportingSenior", False)),
        rung=payload.get("rung", "B"),
        current_step=str(payload.get("currentStep", "evaluation")),
        selected_directed_comments=list(payload.get("selectedDirectedComments") or []),
        directed_comments_data=dict(payload.get("directedCommentsData") or {}),
        generated_section_i=str(payload.get("generatedSectionI") or ""),
        compact=bool(payload.get("compact", False)),
    )


def to_json(snapshot: SessionSnapshot) -> str:
    return json.dumps(snapshot_to_dict(snapshot), sort_keys=True, ensure_ascii=False)


def structural_fingerprint(snapshot: SessionSnapshot) -> str:
    """Hash of everything but the timestamp; equal fingerprints mean nothing to save."""

    body = snapshot_to_dict(snapshot)
    body.pop("timestamp", None)
    raw = json.dumps(body, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def diff_snapshots(prev: Dict[str, Any] | None, nxt: Dict[str, Any]) -> List[str]:
    changed: List[str] = []
    for key, value in nxt.items():
        before = prev.get(key) if prev else None
        if json.dumps(before, sort_keys=True, default=str) != json.dumps(value, sort_keys=True, default=str):
            changed.append(key)
    return changed


__all__ = [
    "build_snapshot",
    "diff_snapshots",
    "restore_state",
    "snapshot_from_dict",
    "snapshot_to_dict",
    "structural_fingerprint",
    "to_json",
]
