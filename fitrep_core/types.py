from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Literal
Grade = Literal["A","B","C","D","E","F","G"]
Rung = Literal["B","D","F"]
Decision = Literal["doesNotMeet","meets","surpasses"]
Mode = Literal["advancing","reviewing"]
ReturnDestination = Literal["review","directedComments"]
SaveStatus = Literal["saved","unsaved","saving","error"]
DECISIONS: tuple[str, ...] = ("doesNotMeet", "meets", "surpasses")
RETURN_DESTINATIONS: tuple[str, ...] = ("review", "directedComments")


@dataclass(frozen=True)
class TraitRef:
    section_key: str; trait_key: str

    @property
    def key(self) -> str:
        return f"{self.section_key}_{self.trait_key}"

    @classmethod
    def from_key(cls, composite: str) -> "TraitRef":
        # section keys never contain "_", trait keys may
        raw = str(composite)
        idx = raw.find("_")
        if idx == -1:
            return cls(section_key=raw, trait_key="")
        return cls(section_key=raw[:idx], trait_key=raw[idx + 1:])


@dataclass(frozen=True)
class Trait:
    ref: TraitRef; section_title: str; name: str
    description: str = ""
    grade_descriptions: Dict[str, str] = field(default_factory=dict, compare=False, hash=False)

    @property
    def key(self) -> str:
        return self.ref.key


@dataclass
class GradeResult:
    grade: Grade
    grade_number: int
    section_title: str
    trait_name: str
    justification: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "section": self.section_title,
            "trait": self.trait_name,
            "grade": self.grade,
            "gradeNumber": self.grade_number,
            "justification": self.justification,
        }


@dataclass
class SessionPointer:
    index: int = 0
    mode: Mode = "advancing"


@dataclass
class ReevaluationOverride:
    active_trait: Trait
    return_destination: ReturnDestination
    starting_grade: Optional[Grade] = None
    previous_mode: Mode = "reviewing"


@dataclass
class LadderStep:
    """Outcome of one ladder decision: either a final grade or the next rung."""
    rung: Rung
    decision: Decision
    grade: Optional[Grade] = None
    next_rung: Optional[Rung] = None

    @property
    def final(self) -> bool:
        return self.grade is not None


@dataclass
class EvaluationMeta:
    marine_name: str = ""
    marine_rank: str = ""
    from_date: str = ""
    to_date: str = ""
    evaluator_name: str = ""
    occasion_type: str = ""
    started_from_profile: bool = False
    section_i_comments: str = ""
    directed_comments: str = ""

    def to_dict(self) -> Dict[str, object]:
        return {
            "marineName": self.marine_name,
            "marineRank": self.marine_rank,
            "fromDate": self.from_date,
            "toDate": self.to_date,
            "evaluatorName": self.evaluator_name,
            "occasionType": self.occasion_type,
            "startedFromProfile": self.started_from_profile,
            "sectionIComments": self.section_i_comments,
            "directedComments": self.directed_comments,
        }


@dataclass
class SessionState:
    """Everything a session owns; the single aggregate passed between components."""
    sequence: List[Trait]
    is_reporting_senior: bool = False
    pointer: SessionPointer = field(default_factory=SessionPointer)
    ledger: Dict[str, GradeResult] = field(default_factory=dict)
    rung: Rung = "B"
    override: Optional[ReevaluationOverride] = None
    meta: EvaluationMeta = field(default_factory=EvaluationMeta)
    current_step: str = "evaluation"
    selected_directed_comments: List[str] = field(default_factory=list)
    directed_comments_data: Dict[str, str] = field(default_factory=dict)
    generated_section_i: str = ""


@dataclass
class SessionSnapshot:
    timestamp: str
    pointer: SessionPointer
    ledger: Dict[str, GradeResult]
    active_trait_sequence: List[Trait]
    metadata: EvaluationMeta
    is_reporting_senior: bool = False
    rung: Rung = "B"
    current_step: str = "evaluation"
    selected_directed_comments: List[str] = field(default_factory=list)
    directed_comments_data: Dict[str, str] = field(default_factory=dict)
    generated_section_i: str = ""
    compact: bool = False
