"""Result values returned by webhook handlers

Handlers report what happened instead of raising, so the dispatcher can log,
count and ledger every event the same way.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class ResultStatus(str, Enum):
    SUCCESS = "success"
    IGNORED = "ignored"      # event type we do not act on
    DUPLICATE = "duplicate"  # event id already processed
    DROPPED = "dropped"      # not enough data to act; no retry
    FAILED = "failed"


class ErrorKind(str, Enum):
    MISSING_DATA = "missing_data"
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    PARTIAL_MATERIALIZATION = "partial_materialization"
    SIDE_EFFECT = "side_effect"
    UNEXPECTED = "unexpected"


@dataclass
class HandlerWarning:
    """A non-fatal problem recorded on an otherwise completed handler run"""
    kind: ErrorKind
    message: str


@dataclass
class HandlerResult:
    status: ResultStatus
    kind: Optional[ErrorKind] = None
    message: str = ""
    order_id: Optional[str] = None
    warnings: List[HandlerWarning] = field(default_factory=list)

    @classmethod
    def success(cls, message: str = "", order_id: Optional[str] = None) -> "HandlerResult":
        return cls(ResultStatus.SUCCESS, message=message, order_id=order_id)

    @classmethod
    def ignored(cls, message: str = "") -> "HandlerResult":
        return cls(ResultStatus.IGNORED, message=message)

    @classmethod
    def duplicate(cls, message: str = "") -> "HandlerResult":
        return cls(ResultStatus.DUPLICATE, message=message)

    @classmethod
    def dropped(cls, kind: ErrorKind, message: str) -> "HandlerResult":
        return cls(ResultStatus.DROPPED, kind=kind, message=message)

    @classmethod
    def failed(cls, kind: ErrorKind, message: str, order_id: Optional[str] = None) -> "HandlerResult":
        return cls(ResultStatus.FAILED, kind=kind, message=message, order_id=order_id)

    def extend(self, warnings: List[HandlerWarning]) -> "HandlerResult":
        self.warnings.extend(warnings)
        return self
