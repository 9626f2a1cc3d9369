# tools/manual_cli.py
from __future__ import annotations
import argparse, logging, os, sys
from typing import Callable, List, Optional
from fitrep_core.catalog import load_catalog
from fitrep_core.durability import WritePipeline, check_for_previous_session
from fitrep_core.errors import OutOfRangeError
from fitrep_core.export import to_text
from fitrep_core.session import EvaluationSession
from fitrep_core.store import open_store
from fitrep_core.types import EvaluationMeta

_KEYS = {"n": "doesNotMeet", "m": "meets", "s": "surpasses"}

Ask = Callable[[str], str]


def _ask_choice(ask: Ask, prompt: str, allowed: List[str], default: str) -> str:
    while True:
        try:
            v = ask(prompt).strip().lower()
        except EOFError:
            return default
        if v == "":
            return default
        if v in allowed:
            return v
        print(f"Enter one of: {', '.join(allowed)}")


def _ask_text(ask: Ask, prompt: str) -> str:
    while True:
        try:
            v = ask(prompt).strip()
        except EOFError:
            return ""
        if v:
            return v
        print("A justification is required.")


def grade_trait(sess: EvaluationSession, ask: Ask) -> bool:
    """Walk the ladder for the active trait. Returns False if the user stepped back."""

    trait = sess.current_trait()
    print(f"\n--- {trait.section_title} | {trait.name} ---")
    if trait.description:
        print(trait.description)
    while True:
        rung = sess.state.rung
        print(f"\n[{rung}] {trait.grade_descriptions.get(rung, '')}")
        choice = _ask_choice(ask, "(n)ot met / (m)eets / (s)urpasses / (b)ack: ", ["n", "m", "s", "b"], "m")
        if choice == "b":
            if sess.go_back_one_trait():
                return False
            print("Already at the first trait.")
            continue
        step = sess.decide(_KEYS[choice])
        if step.final:
            print(f"Grade {step.grade}")
            text = _ask_text(ask, "Justification: ")
            sess.finalize_current(step.grade, text)
            return True


def main(argv: Optional[List[str]] = None, ask: Ask = input) -> int:
    ap = argparse.ArgumentParser(description="Walk a FITREP evaluation on the terminal.")
    ap.add_argument("--senior", action="store_true", help="include section H (reporting senior)")
    ap.add_argument("--marine", default="")
    ap.add_argument("--data-dir", default=None, help="save progress here and offer recovery")
    ap.add_argument("--out", default=None, help="write the text summary to this file")
    a = ap.parse_args(argv)
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "WARNING"))

    catalog = load_catalog()
    store = open_store(a.data_dir) if a.data_dir else None
    sess: Optional[EvaluationSession] = None
    if store is not None:
        previous = check_for_previous_session(store)
        if previous is not None:
            name = previous.metadata.marine_name or "Unknown"
            graded = len(previous.ledger)
            if _ask_choice(ask, f"Resume evaluation for {name} ({graded} graded)? [y/N] ", ["y", "n"], "n") == "y":
                sess = EvaluationSession.from_snapshot(previous, catalog)
    if sess is None:
        sess = EvaluationSession.start(EvaluationMeta(marine_name=a.marine), a.senior, catalog)
    pipeline = WritePipeline(store, sess.build_snapshot) if store is not None else None

    print(f"Evaluating {len(sess.sequence)} traits. Ctrl+C to stop.")
    try:
        while not sess.is_complete:
            if grade_trait(sess, ask) and pipeline is not None:
                if not pipeline.save():
                    print("Save failed; progress queued.", file=sys.stderr)
    except (KeyboardInterrupt, OutOfRangeError):
        print("\nStopped.")
        if pipeline is not None:
            pipeline.save()
        return 1

    sess.enter_review()
    if pipeline is not None:
        pipeline.save()
    summary = to_text(sess)
    print("\n" + summary)
    if a.out:
        with open(a.out, "w", encoding="utf-8") as f:
            f.write(summary)
        print(f"Summary: {a.out}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
