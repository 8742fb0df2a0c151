from __future__ import annotations

from stagepipe.core.intake import validate_inputs

RULES = {
    "brief": {"type": "text", "minLength": 10},
    "dest": {"type": "email"},
}


def test_valid_inputs_are_normalized():
    normalized, diagnostics = validate_inputs(
        {"brief": "  build   a\n weekly  digest ", "dest": " Lead@Example.COM "}, RULES
    )
    assert not diagnostics.has_errors()
    assert normalized["brief"] == "build a weekly digest"
    assert normalized["dest"] == "lead@example.com"


def test_all_failures_are_accumulated():
    _, diagnostics = validate_inputs({"brief": "short", "dest": "not-an-address"}, RULES)
    codes = sorted(record.code for record in diagnostics.errors())
    assert codes == ["E-INPUT-EMAIL", "E-INPUT-LENGTH"]
    locations = sorted(record.location for record in diagnostics.errors())
    assert locations == ["brief", "dest"]


def test_missing_required_and_defaults():
    rules = {
        "brief": {"type": "text"},
        "tone": {"type": "text", "default": "neutral"},
        "extra": {"type": "any", "required": False},
    }
    normalized, diagnostics = validate_inputs({}, rules)
    assert [record.code for record in diagnostics.errors()] == ["E-INPUT-REQUIRED"]
    assert normalized["tone"] == "neutral"
    assert "extra" not in normalized


def test_text_is_truncated_to_max_length():
    normalized, diagnostics = validate_inputs(
        {"brief": "x" * 6000}, {"brief": {"type": "text"}}
    )
    assert not diagnostics.has_errors()
    assert len(normalized["brief"]) == 5000


def test_unknown_fields_pass_through_and_non_mapping_rejected():
    rules = dict(RULES, dest={"type": "email", "required": False})
    normalized, diagnostics = validate_inputs({"brief": "long enough text", "ref": 7}, rules)
    assert not diagnostics.has_errors()
    assert normalized["ref"] == 7

    _, diagnostics = validate_inputs(["not", "a", "mapping"], RULES)
    assert [record.code for record in diagnostics.errors()] == ["E-INPUT-TYPE"]


def test_non_string_value_is_a_type_error():
    _, diagnostics = validate_inputs({"brief": 42, "dest": "a@b.io"}, RULES)
    assert [record.code for record in diagnostics.errors()] == ["E-INPUT-TYPE"]
