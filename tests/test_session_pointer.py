from __future__ import annotations

import pytest

from fitrep_core.errors import OutOfRangeError, ValidationError
from fitrep_core.session import EvaluationSession
from fitrep_core.types import EvaluationMeta


def _grade(sess: EvaluationSession, decisions: list[str], text: str = "observed"):
    step = None
    for decision in decisions:
        step = sess.decide(decision)
    assert step is not None and step.final, f"{decisions} should finish the ladder"
    return sess.finalize_current(step.grade, text)


def _two_trait_session(small_catalog) -> EvaluationSession:
    return EvaluationSession.start(EvaluationMeta(marine_name="Sgt Doe"), False, small_catalog)


def test_scenario_two_traits_advance(small_catalog):
    sess = _two_trait_session(small_catalog)
    first, second = sess.sequence

    assert sess.current_trait() == first
    sess.decide("surpasses")
    sess.decide("surpasses")
    assert sess.state.rung == "F"
    assert _grade(sess, ["meets"], "led the platoon") is None
    assert sess.state.pointer.index == 1
    assert sess.state.rung == "B", "rung resets for the next trait"

    _grade(sess, ["doesNotMeet"], "struggled")
    assert sess.state.pointer.index == 2
    assert sess.is_complete
    assert sess.ledger[first.key].grade == "F" and sess.ledger[first.key].grade_number == 6
    assert sess.ledger[second.key].grade == "A" and sess.ledger[second.key].grade_number == 1


def test_scenario_reevaluate_from_review(small_catalog):
    sess = _two_trait_session(small_catalog)
    first, _second = sess.sequence
    _grade(sess, ["surpasses", "surpasses", "meets"])
    _grade(sess, ["doesNotMeet"])
    sess.enter_review()

    override = sess.start_reevaluation(first, "review")
    assert override.starting_grade == "F"
    assert sess.state.rung == "F", "re-evaluation starts at the stored grade's rung"
    assert sess.current_trait() == first
    assert sess.state.pointer.index == 2, "override never moves the pointer"

    destination = _grade(sess, ["doesNotMeet"], "revised")
    assert destination == "review"
    assert sess.state.pointer.index == 2
    assert sess.state.pointer.mode == "reviewing"
    assert sess.state.override is None
    assert len(sess.ledger) == 2, "re-evaluation replaces, never duplicates"
    result = sess.ledger[first.key]
    assert (result.grade, result.grade_number, result.justification) == ("E", 5, "revised")


def test_current_trait_past_end_is_out_of_range(small_catalog):
    sess = _two_trait_session(small_catalog)
    _grade(sess, ["meets"])
    _grade(sess, ["meets"])
    with pytest.raises(OutOfRangeError):
        sess.current_trait()
    sess.enter_review()
    assert sess.current_trait() is None


def test_justification_required(small_catalog):
    sess = _two_trait_session(small_catalog)
    sess.decide("meets")
    with pytest.raises(ValidationError):
        sess.finalize_current("B", "   ")
    assert sess.state.pointer.index == 0
    assert not sess.ledger


def test_review_only_after_last_trait(small_catalog):
    sess = _two_trait_session(small_catalog)
    _grade(sess, ["meets"])
    with pytest.raises(ValidationError):
        sess.enter_review()


def test_go_back_one_trait(small_catalog):
    sess = _two_trait_session(small_catalog)
    assert sess.go_back_one_trait() is False, "nothing before the first trait"
    _grade(sess, ["meets"])
    sess.decide("surpasses")
    assert sess.go_back_one_trait() is True
    assert sess.state.pointer.index == 0
    assert sess.state.rung == "B"
    assert sess.ledger, "going back keeps the recorded grade"

    _grade(sess, ["meets"])
    _grade(sess, ["meets"])
    sess.enter_review()
    assert sess.go_back_one_trait() is False, "back is not available from review"
    assert sess.state.pointer.index == 2


def test_cancel_reevaluation_restores_mode(small_catalog):
    sess = _two_trait_session(small_catalog)
    first, _ = sess.sequence
    _grade(sess, ["surpasses", "meets"])
    _grade(sess, ["meets"])
    sess.enter_review()
    sess.start_reevaluation(first, "directedComments")
    assert sess.state.pointer.mode == "advancing"
    sess.decide("surpasses")
    assert sess.cancel_reevaluation() is True
    assert sess.state.pointer.mode == "reviewing"
    assert sess.state.rung == "B"
    assert sess.ledger[first.key].grade == "D", "cancel leaves the ledger alone"
    assert sess.cancel_reevaluation() is False


def test_reevaluation_requires_graded_trait(small_catalog):
    sess = _two_trait_session(small_catalog)
    _first, second = sess.sequence
    with pytest.raises(ValidationError):
        sess.start_reevaluation(second)
    _grade(sess, ["meets"])
    with pytest.raises(ValidationError):
        sess.start_reevaluation(sess.sequence[0], "elsewhere")


def test_reevaluation_mid_sequence_returns_to_advancing(small_catalog):
    sess = _two_trait_session(small_catalog)
    first, second = sess.sequence
    _grade(sess, ["meets"])
    sess.start_reevaluation(first, "review")
    _grade(sess, ["surpasses", "meets"])
    assert sess.state.pointer.index == 1
    assert sess.state.pointer.mode == "advancing"
    assert sess.current_trait() == second


def test_edit_justification_keeps_grade(small_catalog):
    sess = _two_trait_session(small_catalog)
    first, _ = sess.sequence
    _grade(sess, ["surpasses", "surpasses", "surpasses"], "old")
    _grade(sess, ["meets"])
    sess.enter_review()
    sess.edit_justification(first, "new text")
    result = sess.ledger[first.key]
    assert (result.grade, result.justification) == ("G", "new text")
    assert sess.state.pointer.mode == "reviewing"
    assert sess.state.override is None


def test_edit_justification_rejected_while_reevaluating_another_trait(small_catalog):
    sess = _two_trait_session(small_catalog)
    first, second = sess.sequence
    _grade(sess, ["meets"], "first")
    _grade(sess, ["meets"], "second")
    sess.enter_review()
    sess.start_reevaluation(second, "directedComments")

    with pytest.raises(ValidationError):
        sess.edit_justification(first, "rewritten")

    assert sess.ledger[first.key].justification == "first"
    assert sess.state.override.active_trait == second
    assert sess.state.override.return_destination == "directedComments"


def test_listeners_see_tracked_mutations(small_catalog):
    sess = _two_trait_session(small_catalog)
    seen: list[str] = []
    sess.subscribe(seen.append)
    sess.decide("surpasses")
    sess.finalize_current("D", "x")
    sess.update_meta(marine_rank="SSgt")
    sess.set_narrative(generated_section_i="draft")
    assert seen == ["rung", "finalize", "meta", "narrative"]
    assert sess.state.meta.marine_rank == "SSgt"
    with pytest.raises(ValidationError):
        sess.update_meta(call_sign="x")


def test_progress_and_remaining(small_catalog):
    sess = EvaluationSession.start(EvaluationMeta(), True, small_catalog)
    assert sess.overall_progress() == {"index": 0, "total": 3, "percent": 0.0}
    assert sess.remaining_sections().startswith("Remaining:")
    _grade(sess, ["meets"])
    assert sess.remaining_sections() == "Next: Fulfillment of Evaluation Responsibilities"
    _grade(sess, ["meets"])
    assert sess.remaining_sections() == "Final trait in evaluation"
    assert sess.section_progress() == {"current": 1, "total": 1, "completed": 0}
    groups = sess.review_groups()
    assert set(groups) == {"Mission Accomplishment", "Individual Character"}
