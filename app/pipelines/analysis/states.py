"""Allowed processing-state transitions for sessions and trial sessions."""

from __future__ import annotations

from app.models.processing import ProcessingState

from .errors import InvalidStateTransition
from .types import ProcessingMode

_P = ProcessingState

_SINGLE_PASS: dict[ProcessingState, frozenset[ProcessingState]] = {
    _P.PENDING: frozenset({_P.PROCESSING}),
    _P.PROCESSING: frozenset({_P.PROCESSING, _P.COMPLETED, _P.FAILED}),
    _P.COMPLETED: frozenset(),
    # A fresh run after a failure starts again from pending.
    _P.FAILED: frozenset({_P.PENDING}),
}

_TWO_PHASE: dict[ProcessingState, frozenset[ProcessingState]] = {
    _P.PENDING: frozenset({_P.PROCESSING}),
    _P.PROCESSING: frozenset({_P.PROCESSING, _P.PREVIEW_READY, _P.FAILED}),
    _P.PREVIEW_READY: frozenset({_P.AI_ANALYZING, _P.COMPLETED, _P.FAILED}),
    _P.AI_ANALYZING: frozenset({_P.AI_ANALYZING, _P.COMPLETED, _P.FAILED}),
    _P.COMPLETED: frozenset(),
    _P.FAILED: frozenset({_P.PENDING}),
}

_TABLES = {
    ProcessingMode.SINGLE_PASS: _SINGLE_PASS,
    ProcessingMode.TWO_PHASE: _TWO_PHASE,
}


def can_transition(current: ProcessingState | str, target: ProcessingState | str, mode: ProcessingMode) -> bool:
    current_state = ProcessingState(current)
    target_state = ProcessingState(target)
    return target_state in _TABLES[mode].get(current_state, frozenset())


def ensure_transition(current: ProcessingState | str, target: ProcessingState | str, mode: ProcessingMode) -> ProcessingState:
    """Return the target state or raise when the move is not allowed."""

    if not can_transition(current, target, mode):
        raise InvalidStateTransition(
            f"Cannot move from {ProcessingState(current).value} to "
            f"{ProcessingState(target).value} in {mode.value} mode"
        )
    return ProcessingState(target)


__all__ = ["can_transition", "ensure_transition"]
