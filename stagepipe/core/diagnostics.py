from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, List, Mapping, Optional


class Severity(str, Enum):
    FATAL = "fatal"
    WARNING = "warning"


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    POLICY_FATAL = "policy_fatal"
    POLICY_WARNING = "policy_warning"
    NOTIFIER = "notifier"
    CANCELED = "canceled"


@dataclass(frozen=True)
class ErrorRecord:
    code: str
    message: str
    severity: Severity = Severity.FATAL
    kind: ErrorKind = ErrorKind.PERMANENT
    stage: Optional[str] = None
    location: Optional[str] = None
    attempts: int = 0
    correlation_id: Optional[str] = None
    started_at: Optional[str] = None
    data: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    def stamped(self, correlation_id: str, started_at: str) -> "ErrorRecord":
        return replace(self, correlation_id=correlation_id, started_at=started_at)

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "severity": self.severity.value,
            "kind": self.kind.value,
            "stage": self.stage,
            "location": self.location,
            "attempts": self.attempts,
            "correlationId": self.correlation_id,
            "startedAt": self.started_at,
            "data": dict(self.data),
        }


class StagePipeError(Exception):
    pass


class StageError(StagePipeError):
    """Failure of a single transform attempt.

    ``kind`` drives retry: only ``ErrorKind.TRANSIENT`` is retried.
    """

    kind = ErrorKind.PERMANENT
    code = "E-STAGE"

    def __init__(self, message: str, *, code: Optional[str] = None, data: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.data = dict(data or {})
        self.attempts = 0

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT


class TransientError(StageError):
    kind = ErrorKind.TRANSIENT
    code = "E-STAGE-TRANSIENT"


class PermanentError(StageError):
    kind = ErrorKind.PERMANENT
    code = "E-STAGE-PERMANENT"


class StageTimeout(TransientError):
    code = "E-STAGE-TIMEOUT"


class StageCanceled(StageError):
    kind = ErrorKind.CANCELED
    code = "E-CANCELED"


class InputValidationError(StagePipeError):
    def __init__(self, records: Iterable[ErrorRecord]):
        self.records = list(records)
        message = "; ".join(record.message for record in self.records) or "invalid input"
        super().__init__(message)


class NotifierError(StagePipeError):
    pass


def classify_exception(exc: BaseException) -> StageError:
    """Map an exception raised by a transform onto the stage error taxonomy."""
    if isinstance(exc, StageError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return StageTimeout(str(exc) or "transform timed out")
    if isinstance(exc, ConnectionError):
        return TransientError(f"{type(exc).__name__}: {exc}")
    # json.JSONDecodeError is a ValueError
    if isinstance(exc, (ValueError, TypeError, KeyError)):
        return PermanentError(f"{type(exc).__name__}: {exc}", code="E-STAGE-MALFORMED")
    return PermanentError(f"{type(exc).__name__}: {exc}")


class Diagnostics:
    def __init__(self) -> None:
        self.items: List[ErrorRecord] = []

    def add(self, record: ErrorRecord) -> None:
        self.items.append(record)

    def extend(self, records: Iterable[ErrorRecord] | "Diagnostics") -> None:
        if isinstance(records, Diagnostics):
            self.items.extend(records.items)
        else:
            self.items.extend(records)

    def has_errors(self) -> bool:
        return any(record.severity == Severity.FATAL for record in self.items)

    def errors(self) -> List[ErrorRecord]:
        return [record for record in self.items if record.severity == Severity.FATAL]

    def raise_for_errors(self, error_cls: type = InputValidationError) -> None:
        if self.has_errors():
            raise error_cls(self.errors())

    def to_list(self) -> List[dict]:
        return [record.to_dict() for record in self.items]
