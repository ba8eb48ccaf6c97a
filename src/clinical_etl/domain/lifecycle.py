"""Per-record lifecycle shared by all pipeline stages.

RECEIVED -> VALIDATING -> {VALID -> TRANSFORMING -> EMITTED}
                        | {INVALID -> DROPPED | FAILED_FOR_REDELIVERY}

EMITTED and DROPPED are terminal and never redelivered; FAILED_FOR_REDELIVERY
surfaces to the batch runner as a per-item failure.
"""

import logging
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class RecordState(str, Enum):
    RECEIVED = "RECEIVED"
    VALIDATING = "VALIDATING"
    VALID = "VALID"
    INVALID = "INVALID"
    TRANSFORMING = "TRANSFORMING"
    EMITTED = "EMITTED"
    DROPPED = "DROPPED"
    FAILED_FOR_REDELIVERY = "FAILED_FOR_REDELIVERY"


_FAILED = RecordState.FAILED_FOR_REDELIVERY

ALLOWED_TRANSITIONS: dict[RecordState, frozenset[RecordState]] = {
    RecordState.RECEIVED: frozenset({RecordState.VALIDATING, _FAILED}),
    RecordState.VALIDATING: frozenset({RecordState.VALID, RecordState.INVALID, _FAILED}),
    RecordState.VALID: frozenset({RecordState.TRANSFORMING, _FAILED}),
    # output-profile validation happens after mapping
    RecordState.TRANSFORMING: frozenset({RecordState.EMITTED, RecordState.INVALID, _FAILED}),
    RecordState.INVALID: frozenset({RecordState.DROPPED, _FAILED}),
    RecordState.EMITTED: frozenset(),
    RecordState.DROPPED: frozenset(),
    RecordState.FAILED_FOR_REDELIVERY: frozenset(),
}

TERMINAL_STATES = frozenset(state for state, targets in ALLOWED_TRANSITIONS.items() if not targets)


class IllegalTransitionError(RuntimeError):
    """Raised when a record is moved along an edge the lifecycle does not allow."""


class RecordLifecycle:
    """Tracks the state of one record through a stage.

    Parameters:
        record_id: Identifier used in log lines (message id, row index, ...)
        stage: Stage name (ingest, normalize, persist)
    """

    def __init__(self, record_id: str, stage: str):
        self.record_id = record_id
        self.stage = stage
        self.state = RecordState.RECEIVED
        self.history: list[RecordState] = [RecordState.RECEIVED]
        self.reason: Optional[str] = None

    def advance(self, target: RecordState, reason: Optional[str] = None) -> "RecordLifecycle":
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise IllegalTransitionError(
                f"{self.stage} record {self.record_id}: {self.state.value} -> {target.value} is not allowed"
            )
        self.state = target
        self.history.append(target)
        if reason:
            self.reason = reason
        logger.debug(f"{self.stage} record {self.record_id} -> {target.value}")
        return self

    def fail(self, reason: str) -> "RecordLifecycle":
        """Mark the record failed for redelivery from any non-terminal state."""
        return self.advance(RecordState.FAILED_FOR_REDELIVERY, reason)

    def drop(self, reason: str) -> "RecordLifecycle":
        """Mark the record invalid and dropped."""
        if self.state is not RecordState.INVALID:
            self.advance(RecordState.INVALID, reason)
        return self.advance(RecordState.DROPPED, reason)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES
