from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .envelope import Envelope


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    SUCCESS_WITH_WARNINGS = "success_with_warnings"
    FAILED = "failed"


@dataclass(frozen=True)
class Outcome:
    status: OutcomeStatus
    envelope: Envelope
    delivered: bool = False
    delivery_error: Optional[str] = None
    steps: Tuple[Dict[str, Any], ...] = ()

    @property
    def ok(self) -> bool:
        return self.status != OutcomeStatus.FAILED

    @property
    def correlation_id(self) -> str:
        return self.envelope.correlation_id


def classify(envelope: Envelope) -> OutcomeStatus:
    if envelope.fatal:
        return OutcomeStatus.FAILED
    if envelope.warnings:
        return OutcomeStatus.SUCCESS_WITH_WARNINGS
    return OutcomeStatus.SUCCESS
