from __future__ import annotations

import json
from typing import Callable, Optional

import pytest

from fitrep_core.catalog import Catalog
from fitrep_core.store import MemoryStore, OtherFailure, QuotaExceeded, StorageResult


def small_catalog_data(*, with_senior: bool = True) -> dict:
    """Two core traits (plus one senior-only trait) with short rung text."""

    def trait(key: str, name: str) -> dict:
        return {
            "key": key,
            "name": name,
            "description": f"{name} description",
            "grade_descriptions": {
                "B": f"{name} at B",
                "D": f"{name} at D",
                "F": f"{name} at F",
            },
        }

    sections = [
        {"key": "D", "title": "Mission Accomplishment", "traits": [trait("performance", "Performance")]},
        {"key": "E", "title": "Individual Character", "traits": [trait("effectiveness_under_stress", "Effectiveness Under Stress")]},
    ]
    if with_senior:
        sections.append(
            {"key": "H", "title": "Fulfillment of Evaluation Responsibilities", "traits": [trait("evaluations", "Evaluations")]}
        )
    return {"sections": sections, "grade_meanings": {"A": "Adverse", "G": "Top"}}


def build_small_catalog(*, with_senior: bool = True) -> Catalog:
    data = small_catalog_data(with_senior=with_senior)
    return Catalog(data["sections"], data["grade_meanings"])


class FlakyStore(MemoryStore):
    """MemoryStore whose writes can be told to fail.

    ``failing`` maps a key to "quota", "other" or "quota_full" (quota only for
    non-compact snapshots). ``fail_when(key, value)`` can return the same
    kinds for finer control. Successful writes are recorded in ``written``.
    """

    def __init__(self, quota_bytes: Optional[int] = None):
        super().__init__(quota_bytes)
        self.failing: dict[str, str] = {}
        self.fail_when: Optional[Callable[[str, str], Optional[str]]] = None
        self.on_write: Optional[Callable[[str], None]] = None
        self.written: list[tuple[str, str]] = []

    def write(self, key: str, value: str) -> StorageResult:
        if self.on_write is not None:
            self.on_write(key)
        kind = self.failing.get(key)
        if kind is None and self.fail_when is not None:
            kind = self.fail_when(key, value)
        if kind == "quota_full":
            kind = None if json.loads(value).get("compact") else "quota"
        if kind == "quota":
            return QuotaExceeded(key, "quota exceeded")
        if kind == "other":
            return OtherFailure(key, "storage offline")
        result = super().write(key, value)
        self.written.append((key, value))
        return result

    def writes_to(self, key: str) -> list[dict]:
        return [json.loads(v) for k, v in self.written if k == key]


@pytest.fixture
def small_catalog() -> Catalog:
    return build_small_catalog()


@pytest.fixture
def flaky_store() -> FlakyStore:
    return FlakyStore()
