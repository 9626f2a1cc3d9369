# fitrep_core/ladder.py
"""Three-rung grade ladder.

Each rung (B, D, F) asks one question with three answers. "meets" finalizes
the rung's own grade, "doesNotMeet" finalizes the grade just below it and
"surpasses" climbs to the next rung, or finalizes G at the top.
"""
from __future__ import annotations
from typing import Dict, List, Optional

from .config import GRADES, RUNGS, START_RUNG
from .types import LadderStep

_BELOW: Dict[str, str] = {"B": "A", "D": "C", "F": "E"}
_NEXT_RUNG: Dict[str, Optional[str]] = {"B": "D", "D": "F", "F": None}
_TOP_GRADE = "G"


def _check_rung(rung: str) -> None:
    if rung not in RUNGS:
        raise ValueError(f"unknown rung {rung!r}")


def grade_number(grade: str) -> int:
    """Ordinal of a grade, A=1 .. G=7."""

    if grade not in GRADES:
        raise ValueError(f"unknown grade {grade!r}")
    return GRADES.index(grade) + 1


def meets_grade(rung: str) -> str:
    _check_rung(rung)
    return rung


def allowed_decisions(rung: str) -> List[str]:
    # every rung has a grade below it, so nothing ever drops under A
    _check_rung(rung)
    return ["doesNotMeet", "meets", "surpasses"]


def advance(rung: str, decision: str) -> LadderStep:
    _check_rung(rung)
    if decision == "doesNotMeet":
        return LadderStep(rung=rung, decision=decision, grade=_BELOW[rung])
    if decision == "meets":
        return LadderStep(rung=rung, decision=decision, grade=rung)
    if decision == "surpasses":
        nxt = _NEXT_RUNG[rung]
        if nxt is None:
            return LadderStep(rung=rung, decision=decision, grade=_TOP_GRADE)
        return LadderStep(rung=rung, decision=decision, next_rung=nxt)
    raise ValueError(f"unknown decision {decision!r}")


def run_ladder(decisions: List[str], start: str = START_RUNG) -> LadderStep:
    """Replay a decision path from ``start``; stops at the first final step."""

    rung = start
    step: Optional[LadderStep] = None
    for decision in decisions:
        step = advance(rung, decision)
        if step.final:
            return step
        rung = step.next_rung  # type: ignore[assignment]
    if step is None:
        raise ValueError("empty decision path")
    return step


def entry_rung_for(grade: Optional[str]) -> str:
    """Rung whose "meets" is ``grade``, else the nearest rung below it (B floor)."""

    if not grade or grade not in GRADES:
        return START_RUNG
    target = grade_number(grade)
    best = START_RUNG
    for rung in RUNGS:
        if grade_number(rung) <= target:
            best = rung
    return best


__all__ = [
    "advance",
    "allowed_decisions",
    "entry_rung_for",
    "grade_number",
    "meets_grade",
    "run_ladder",
]
