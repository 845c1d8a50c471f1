from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class ErrorKind(str, Enum):
    ROW_TYPE_MISMATCH = "RowTypeMismatch"
    ROW_FULL = "RowFull"
    MAX_ATTACHMENT_EXCEEDED = "MaxAttachmentExceeded"
    NOT_AUTHORIZED_EQUIPMENT = "NotAuthorizedEquipment"
    CYCLE_DETECTED = "CycleDetected"
    CROSS_JOB_ATTACHMENT = "CrossJobAttachment"
    DOUBLE_SHIFT_CONFLICT = "DoubleShiftConflict"
    MISSING_REQUIRED_ATTACHMENT = "MissingRequiredAttachment"
    PERSISTENCE_FAILURE = "PersistenceFailure"
    STALE_VERSION = "StaleVersion"  # reconciler-internal


@dataclass(frozen=True)
class Decision:
    accepted: bool
    kind: Optional[ErrorKind] = None
    message: str = ""
    violations: Tuple[str, ...] = ()

    def __bool__(self) -> bool:
        return self.accepted


ACCEPTED = Decision(True)


def reject(kind: ErrorKind, message: str = "", violations: Tuple[str, ...] = ()) -> Decision:
    return Decision(False, kind, message, tuple(violations))


@dataclass(frozen=True)
class OperationResult:
    """Outcome of an Assignment Service operation."""

    decision: Decision
    assignment_id: Optional[str] = None
    secondary: Tuple[Decision, ...] = ()  # best-effort follow-ups, never rolled back with the primary

    @property
    def accepted(self) -> bool:
        return self.decision.accepted

    @property
    def kind(self) -> Optional[ErrorKind]:
        return self.decision.kind
