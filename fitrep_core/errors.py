"""Exceptions raised by the session engine.

Storage problems are not exceptions: the store adapter returns a
``StorageResult`` and the write pipeline turns it into a status change.
"""
from __future__ import annotations


class EvaluationError(Exception):
    """Base class for engine errors surfaced to the caller."""


class ValidationError(EvaluationError):
    """The requested action is not allowed with the given input or state."""


class OutOfRangeError(EvaluationError):
    """The pointer was read past the end of the trait sequence while advancing."""


class RestoreError(EvaluationError):
    """A stored snapshot is missing structural fields and cannot be restored."""


__all__ = ["EvaluationError", "ValidationError", "OutOfRangeError", "RestoreError"]
