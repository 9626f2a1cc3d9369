# fitrep_core/session.py
from __future__ import annotations
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional
import logging

from .types import (
    EvaluationMeta,
    GradeResult,
    LadderStep,
    ReevaluationOverride,
    RETURN_DESTINATIONS,
    SessionSnapshot,
    SessionState,
    Trait,
    TraitRef,
)
from .catalog import Catalog, build_trait_sequence, load_catalog
from .config import DEBUG_TRACE, START_RUNG
from .errors import OutOfRangeError, ValidationError
from .ladder import advance, entry_rung_for, grade_number
from .snapshot import build_snapshot, restore_state


log = logging.getLogger(__name__)

Listener = Callable[[str], None]


def _emit_trace(event: str, **values: object) -> None:
    if not DEBUG_TRACE:
        return
    log.info("trace %s %s", event, " ".join(f"{k}={v}" for k, v in values.items()))


class EvaluationSession:
    """Owns one evaluation's state and every operation that mutates it.

    The pointer only moves forward through ``finalize_current`` and back
    through ``go_back_one_trait``. Re-evaluating a graded trait goes through
    an override that redirects the active trait without touching the pointer.
    Listeners are told about every tracked mutation so the autosave scheduler
    can mark the session dirty.
    """

    def __init__(
        self,
        state: SessionState,
        catalog: Optional[Catalog] = None,
    ):
        if not state.sequence:
            raise ValidationError("trait sequence must not be empty")
        self.state = state
        self.catalog = catalog
        self._listeners: List[Listener] = []

    @classmethod
    def start(
        cls,
        meta: Optional[EvaluationMeta] = None,
        is_reporting_senior: bool = False,
        catalog: Optional[Catalog] = None,
    ) -> "EvaluationSession":
        cat = catalog or load_catalog()
        sequence = build_trait_sequence(cat, is_reporting_senior)
        state = SessionState(
            sequence=sequence,
            is_reporting_senior=bool(is_reporting_senior),
            meta=meta or EvaluationMeta(),
        )
        log.info(
            "session started traits=%d reporting_senior=%s",
            len(sequence),
            bool(is_reporting_senior),
        )
        return cls(state, cat)

    @classmethod
    def from_snapshot(cls, snapshot: SessionSnapshot, catalog: Optional[Catalog] = None) -> "EvaluationSession":
        return cls(restore_state(snapshot), catalog)

    # ---- listeners ----
    def subscribe(self, callback: Listener) -> None:
        self._listeners.append(callback)

    def _changed(self, reason: str) -> None:
        _emit_trace(
            reason,
            index=self.state.pointer.index,
            mode=self.state.pointer.mode,
            rung=self.state.rung,
            override=self.state.override is not None,
        )
        for callback in list(self._listeners):
            callback(reason)

    # ---- read side ----
    @property
    def sequence(self) -> List[Trait]:
        return self.state.sequence

    @property
    def ledger(self) -> Dict[str, GradeResult]:
        return self.state.ledger

    @property
    def is_complete(self) -> bool:
        return self.state.pointer.index >= len(self.state.sequence)

    def current_trait(self) -> Optional[Trait]:
        st = self.state
        if st.override is not None:
            return st.override.active_trait
        if st.pointer.mode == "reviewing":
            return None
        if st.pointer.index >= len(st.sequence):
            raise OutOfRangeError(
                f"pointer {st.pointer.index} is past the last trait ({len(st.sequence)}); enter review first"
            )
        return st.sequence[st.pointer.index]

    def find_trait(self, ref: TraitRef) -> Optional[Trait]:
        for trait in self.state.sequence:
            if trait.ref == ref:
                return trait
        return None

    def result_for(self, trait: Trait) -> Optional[GradeResult]:
        return self.state.ledger.get(trait.key)

    # ---- grading ----
    def decide(self, decision: str) -> LadderStep:
        trait = self.current_trait()
        if trait is None:
            raise ValidationError("no active trait to grade")
        step = advance(self.state.rung, decision)
        if not step.final:
            self.state.rung = step.next_rung  # type: ignore[assignment]
            self._changed("rung")
        log.debug(
            "ladder trait=%s rung=%s decision=%s grade=%s next=%s",
            trait.key,
            step.rung,
            decision,
            step.grade,
            step.next_rung,
        )
        return step

    def finalize_current(self, grade: str, justification: str) -> Optional[str]:
        """Record ``grade`` for the active trait.

        Returns the override's return destination when a re-evaluation was
        finalized, otherwise ``None``.
        """

        text = (justification or "").strip()
        if not text:
            raise ValidationError("justification is required before a grade is recorded")
        trait = self.current_trait()
        if trait is None:
            raise ValidationError("no active trait to finalize")
        number = grade_number(grade)

        st = self.state
        st.ledger[trait.key] = GradeResult(
            grade=grade,  # type: ignore[arg-type]
            grade_number=number,
            section_title=trait.section_title,
            trait_name=trait.name,
            justification=text,
        )
        st.rung = START_RUNG

        destination: Optional[str] = None
        if st.override is not None:
            destination = st.override.return_destination
            st.pointer.mode = st.override.previous_mode
            st.override = None
            log.info("re-evaluated trait=%s grade=%s return_to=%s", trait.key, grade, destination)
        else:
            st.pointer.index += 1
            log.info("finalized trait=%s grade=%s index=%d", trait.key, grade, st.pointer.index)
        self._changed("finalize")
        return destination

    def enter_review(self) -> None:
        st = self.state
        if st.override is not None:
            raise ValidationError("finish or cancel the re-evaluation first")
        if st.pointer.index != len(st.sequence):
            raise ValidationError(
                f"review is available once every trait is graded ({st.pointer.index}/{len(st.sequence)})"
            )
        st.pointer.mode = "reviewing"
        self._changed("review")

    def go_back_one_trait(self) -> bool:
        st = self.state
        if st.override is not None or st.pointer.mode != "advancing" or st.pointer.index <= 0:
            return False
        st.pointer.index -= 1
        st.rung = START_RUNG
        self._changed("back")
        return True

    def start_reevaluation(self, trait: Trait, return_destination: str = "review") -> ReevaluationOverride:
        if return_destination not in RETURN_DESTINATIONS:
            raise ValidationError(f"unknown return destination {return_destination!r}")
        existing = self.state.ledger.get(trait.key)
        if existing is None:
            raise ValidationError(f"trait {trait.key} has not been graded yet")
        st = self.state
        previous_mode = st.override.previous_mode if st.override is not None else st.pointer.mode
        override = ReevaluationOverride(
            active_trait=trait,
            return_destination=return_destination,  # type: ignore[arg-type]
            starting_grade=existing.grade,
            previous_mode=previous_mode,
        )
        st.override = override
        st.rung = entry_rung_for(existing.grade)  # type: ignore[assignment]
        st.pointer.mode = "advancing"
        self._changed("reevaluate")
        return override

    def cancel_reevaluation(self) -> bool:
        st = self.state
        if st.override is None:
            return False
        st.pointer.mode = st.override.previous_mode
        st.override = None
        st.rung = START_RUNG
        self._changed("cancel_reevaluation")
        return True

    def edit_justification(self, trait: Trait, justification: str) -> None:
        """Replace the justification of a graded trait, keeping its grade."""

        existing = self.state.ledger.get(trait.key)
        if existing is None:
            raise ValidationError(f"trait {trait.key} has not been graded yet")
        if not (justification or "").strip():
            raise ValidationError("justification is required before a grade is recorded")
        if self.state.override is not None:
            raise ValidationError("finish or cancel the re-evaluation first")
        self.start_reevaluation(trait, "review")
        self.finalize_current(existing.grade, justification)

    # ---- metadata / narrative drafts ----
    def update_meta(self, **fields: object) -> None:
        known = {k: v for k, v in fields.items() if hasattr(self.state.meta, k)}
        unknown = set(fields) - set(known)
        if unknown:
            raise ValidationError(f"unknown metadata fields: {', '.join(sorted(unknown))}")
        if not known:
            return
        self.state.meta = replace(self.state.meta, **known)
        self._changed("meta")

    def set_narrative(
        self,
        *,
        generated_section_i: Optional[str] = None,
        directed_comments_data: Optional[Dict[str, str]] = None,
        selected_directed_comments: Optional[List[str]] = None,
    ) -> None:
        st = self.state
        if generated_section_i is not None:
            st.generated_section_i = str(generated_section_i)
        if directed_comments_data is not None:
            st.directed_comments_data = {str(k): str(v) for k, v in directed_comments_data.items()}
        if selected_directed_comments is not None:
            st.selected_directed_comments = [str(x) for x in selected_directed_comments]
        self._changed("narrative")

    def set_step(self, step: str) -> None:
        if step == self.state.current_step:
            return
        self.state.current_step = str(step)
        self._changed("step")

    # ---- progress ----
    def section_progress(self, trait: Optional[Trait] = None) -> Dict[str, int]:
        target = trait or self.current_trait()
        if target is None:
            return {"current": 0, "total": 0, "completed": 0}
        index = self.state.pointer.index
        in_section = [
            (pos, t) for pos, t in enumerate(self.state.sequence)
            if t.ref.section_key == target.ref.section_key
        ]
        completed = sum(1 for pos, _ in in_section if pos < index)
        current = next((n for n, (_, t) in enumerate(in_section, 1) if t.ref == target.ref), 0)
        return {"current": current, "total": len(in_section), "completed": completed}

    def overall_progress(self) -> Dict[str, float]:
        total = len(self.state.sequence)
        index = self.state.pointer.index
        return {
            "index": index,
            "total": total,
            "percent": round(100.0 * index / total, 1) if total else 0.0,
        }

    def remaining_sections(self) -> str:
        remaining = self.state.sequence[self.state.pointer.index + 1:]
        titles: List[str] = []
        for trait in remaining:
            if trait.section_title not in titles:
                titles.append(trait.section_title)
        if not titles:
            return "Final trait in evaluation"
        if len(titles) == 1:
            return f"Next: {titles[0]}"
        more = f" +{len(titles) - 2} more" if len(titles) > 2 else ""
        return f"Remaining: {', '.join(titles[:2])}{more}"

    def review_groups(self) -> Dict[str, List[Dict[str, object]]]:
        groups: Dict[str, List[Dict[str, object]]] = {}
        for key, result in self.state.ledger.items():
            row = {"key": key}
            row.update(result.to_dict())
            groups.setdefault(result.section_title or "Unknown Section", []).append(row)
        return groups

    # ---- durability ----
    def build_snapshot(self, compact: bool = False) -> SessionSnapshot:
        return build_snapshot(self.state, compact=compact, now=datetime.now(timezone.utc))
