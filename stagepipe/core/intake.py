"""Validation and normalization of caller inputs before the first stage runs.

Every rule is checked; failures accumulate into one :class:`Diagnostics`
so a brief that is too short and a malformed address are both reported.
"""

from __future__ import annotations

import copy
import re
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .diagnostics import Diagnostics, ErrorKind, ErrorRecord, Severity

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
DEFAULT_MAX_LENGTH = 5000


class FieldType(str, Enum):
    TEXT = "text"
    EMAIL = "email"
    ANY = "any"


class InputField(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)
    type: FieldType = FieldType.TEXT
    required: bool = True
    min_length: int = Field(default=0, alias="minLength", ge=0)
    max_length: int = Field(default=DEFAULT_MAX_LENGTH, alias="maxLength", gt=0)
    default: Any = None
    lowercase: bool = False


def parse_rules(rules: Optional[Mapping[str, Any]]) -> Dict[str, InputField]:
    parsed: Dict[str, InputField] = {}
    for name, rule in (rules or {}).items():
        parsed[name] = rule if isinstance(rule, InputField) else InputField.model_validate(rule or {})
    return parsed


def normalize_text(value: str, max_length: int) -> str:
    return re.sub(r"\s+", " ", value).strip()[:max_length]


def validate_inputs(
    inputs: Any, rules: Optional[Mapping[str, Any]] = None
) -> Tuple[Dict[str, Any], Diagnostics]:
    diagnostics = Diagnostics()
    if not isinstance(inputs, Mapping):
        diagnostics.add(
            _record("E-INPUT-TYPE", "Inputs must be a mapping of field names to values", None)
        )
        return {}, diagnostics

    normalized: Dict[str, Any] = copy.deepcopy(dict(inputs))
    for name, rule in parse_rules(rules).items():
        value = normalized.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            if rule.default is not None:
                normalized[name] = copy.deepcopy(rule.default)
                continue
            if rule.required:
                diagnostics.add(_record("E-INPUT-REQUIRED", f"{name} is required", name))
            continue

        if rule.type == FieldType.ANY:
            continue
        if not isinstance(value, str):
            diagnostics.add(
                _record(
                    "E-INPUT-TYPE",
                    f"{name} must be a string, got {type(value).__name__}",
                    name,
                )
            )
            continue

        if rule.type == FieldType.EMAIL:
            cleaned = value.strip().lower()
            if not EMAIL_PATTERN.match(cleaned):
                diagnostics.add(
                    _record("E-INPUT-EMAIL", f"{name} must be a valid email address", name)
                )
                continue
            normalized[name] = cleaned
            continue

        cleaned = normalize_text(value, rule.max_length)
        if rule.lowercase:
            cleaned = cleaned.lower()
        if len(cleaned) < rule.min_length:
            diagnostics.add(
                _record(
                    "E-INPUT-LENGTH",
                    f"{name} must be at least {rule.min_length} characters",
                    name,
                    actual_length=len(cleaned),
                )
            )
            continue
        normalized[name] = cleaned
    return normalized, diagnostics


def _record(code: str, message: str, location: Optional[str], **data: Any) -> ErrorRecord:
    return ErrorRecord(
        code=code,
        message=message,
        severity=Severity.FATAL,
        kind=ErrorKind.VALIDATION,
        location=location,
        data=data,
    )
