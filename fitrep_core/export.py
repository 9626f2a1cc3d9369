"""Plain exports of a graded evaluation: sync payload, CSV and text summary."""
from __future__ import annotations

from typing import Any, Dict, Mapping
import csv
import io

from .config import SENIOR_SECTION
from .types import GradeResult, TraitRef

CORE_TRAIT_COUNT = 13

_FIELDS: tuple[str, ...] = (
    "key",
    "section",
    "trait",
    "grade",
    "grade_number",
    "justification",
)


def _has_senior_section(ledger: Mapping[str, GradeResult]) -> bool:
    return any(TraitRef.from_key(k).section_key == SENIOR_SECTION for k in ledger)


def fitrep_average(ledger: Mapping[str, GradeResult]) -> str:
    """Mean grade number over the 13 core traits, 14 when section H is graded.

    Ungraded traits count as 0; returned as a string with two decimals.
    """

    total = sum(int(r.grade_number or 0) for r in ledger.values())
    denom = CORE_TRAIT_COUNT + (1 if _has_senior_section(ledger) else 0)
    return f"{total / denom:.2f}"


def _row(key: str, result: GradeResult) -> Dict[str, Any]:
    return {
        "key": key,
        "section": result.section_title,
        "trait": result.trait_name,
        "grade": result.grade,
        "grade_number": int(result.grade_number),
        "justification": result.justification,
    }


def to_sync_payload(session) -> Dict[str, Any]:
    """Flat upload shape for a completed evaluation; no network I/O here."""

    st = session.state
    meta = st.meta
    return {
        "marine_name": meta.marine_name,
        "marine_rank": meta.marine_rank,
        "evaluation_period_from": meta.from_date,
        "evaluation_period_to": meta.to_date,
        "rs_name": meta.evaluator_name,
        "occasion": meta.occasion_type,
        "section_i_comments": meta.section_i_comments or st.generated_section_i,
        "directed_comments": meta.directed_comments,
        "is_reporting_senior": st.is_reporting_senior,
        "fitrep_average": fitrep_average(st.ledger),
        "trait_evaluations": [
            {
                "section": result.section_title,
                "trait": result.trait_name,
                "grade": result.grade,
                "gradeNumber": int(result.grade_number),
                "justification": result.justification,
            }
            for result in st.ledger.values()
        ],
    }


def to_csv(ledger: Mapping[str, GradeResult]) -> str:
    """Render the ledger as CSV with a fixed header."""

    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=_FIELDS)
    writer.writeheader()
    for key, result in ledger.items():
        writer.writerow(_row(key, result))
    return buf.getvalue()


def to_text(session) -> str:
    st = session.state
    meta = st.meta
    lines = [
        f"Marine: {meta.marine_name or '-'} ({meta.marine_rank or '-'})",
        f"Period: {meta.from_date or '-'} to {meta.to_date or '-'}",
        f"Reporting Senior: {meta.evaluator_name or '-'}",
        f"FITREP Average: {fitrep_average(st.ledger)}",
        "",
    ]
    for section, rows in session.review_groups().items():
        lines.append(section)
        for row in rows:
            lines.append(f"  {row['trait']}: {row['grade']} ({row['gradeNumber']})")
            lines.append(f"    {row['justification']}")
    return "\n".join(lines).rstrip() + "\n"


__all__ = ["CORE_TRAIT_COUNT", "fitrep_average", "to_csv", "to_sync_payload", "to_text"]
