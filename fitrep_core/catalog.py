from __future__ import annotations
import json, importlib.resources as ir
from pathlib import Path
from typing import Dict, List, Optional
from .types import Trait, TraitRef
from .config import CORE_SECTIONS, SENIOR_SECTION
from .errors import ValidationError


class Catalog:
    """Read-only trait reference data: ordered sections, traits and grade text."""

    def __init__(self, sections: List[dict], grade_meanings: Optional[Dict[str, str]] = None):
        self.sections: Dict[str, dict] = {}
        self._order: List[str] = []
        for sec in sections:
            key = str(sec["key"])
            self.sections[key] = sec
            self._order.append(key)
        self.grade_meanings: Dict[str, str] = dict(grade_meanings or {})

    def section_title(self, section_key: str) -> str:
        sec = self.sections.get(section_key) or {}
        return str(sec.get("title", ""))

    def traits_in(self, section_key: str) -> List[Trait]:
        sec = self.sections.get(section_key)
        if not sec:
            return []
        title = str(sec.get("title", ""))
        out: List[Trait] = []
        for raw in sec.get("traits", []):
            out.append(Trait(
                ref=TraitRef(section_key=section_key, trait_key=str(raw["key"])),
                section_title=title,
                name=str(raw.get("name", raw["key"])),
                description=str(raw.get("description", "")),
                grade_descriptions=dict(raw.get("grade_descriptions") or {}),
            ))
        return out

    def find(self, ref: TraitRef) -> Optional[Trait]:
        for trait in self.traits_in(ref.section_key):
            if trait.ref == ref:
                return trait
        return None

    def grade_meaning(self, grade: str) -> str:
        return self.grade_meanings.get(grade, "")


def load_catalog(path: Optional[str] = None) -> Catalog:
    if path:
        data = Path(path).read_text(encoding="utf-8")
    else:
        data = ir.files(__package__).joinpath("data/catalog.json").read_text(encoding="utf-8")
    raw = json.loads(data)
    return Catalog(raw.get("sections", []), raw.get("grade_meanings"))


def build_trait_sequence(catalog: Catalog, is_reporting_senior: bool) -> List[Trait]:
    """Core sections in fixed order, plus the senior-only section when flagged."""

    section_keys = list(CORE_SECTIONS)
    if is_reporting_senior:
        section_keys.append(SENIOR_SECTION)
    sequence: List[Trait] = []
    seen: set[str] = set()
    for section_key in section_keys:
        for trait in catalog.traits_in(section_key):
            if trait.key in seen:
                raise ValidationError(f"duplicate trait in catalog: {trait.key}")
            seen.add(trait.key)
            sequence.append(trait)
    if not sequence:
        raise ValidationError("trait catalog produced an empty sequence")
    return sequence
