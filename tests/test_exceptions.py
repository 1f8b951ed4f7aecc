"""
Tests for unit_talk.services.exceptions
=======================================

The typed error hierarchy: kinds, severities, codes, read-only
attributes and serialisation.
"""

import pytest

from unit_talk.services.exceptions import (
    AgentError,
    BusinessLogicError,
    ConfigurationError,
    DatabaseError,
    DeadLetterNotFoundError,
    ErrorKind,
    FatalAgentError,
    LifecycleError,
    MissingCredentialsError,
    ReplayHandlerMissingError,
    RetryKeyInUseError,
    Severity,
    UnknownCommandError,
    ValidationError,
)


class TestAgentError:
    def test_defaults(self) -> None:
        err = AgentError("boom")
        assert err.message == "boom"
        assert err.kind == ErrorKind.UNKNOWN
        assert err.severity == Severity.MEDIUM
        assert err.code == "AGENT_ERROR"
        assert dict(err.context) == {}
        assert err.original_error is None

    def test_str_includes_context(self) -> None:
        err = AgentError("boom", context={"pick_id": "p-1"})
        assert str(err) == "boom [pick_id=p-1]"

    def test_attributes_are_read_only(self) -> None:
        err = AgentError("boom", context={"a": 1})
        with pytest.raises(AttributeError):
            err.severity = Severity.LOW  # type: ignore[misc]
        with pytest.raises(TypeError):
            err.context["a"] = 2  # type: ignore[index]

    def test_context_is_copied(self) -> None:
        ctx = {"a": 1}
        err = AgentError("boom", context=ctx)
        ctx["a"] = 2
        assert err.context["a"] == 1

    def test_accepts_string_enums(self) -> None:
        err = AgentError("boom", kind="database", severity="high")
        assert err.kind is ErrorKind.DATABASE
        assert err.severity is Severity.HIGH

    def test_to_dict(self) -> None:
        cause = ValueError("bad")
        err = AgentError("boom", context={"x": 1}, original_error=cause, code="E1")
        assert err.to_dict() == {
            "error": "boom",
            "kind": "unknown",
            "severity": "medium",
            "code": "E1",
            "context": {"x": 1},
            "original_error": "bad",
        }


class TestSubclasses:
    @pytest.mark.parametrize(
        "error, kind, severity",
        [
            (ValidationError("bad odds", field="odds"), ErrorKind.VALIDATION, Severity.LOW),
            (DatabaseError("timeout", operation="insert", table="picks"), ErrorKind.DATABASE, Severity.HIGH),
            (ConfigurationError("missing", config_key="X"), ErrorKind.CONFIGURATION, Severity.HIGH),
            (BusinessLogicError("rule", agent="grading"), ErrorKind.BUSINESS_LOGIC, Severity.HIGH),
            (FatalAgentError("dead"), ErrorKind.UNKNOWN, Severity.CRITICAL),
        ],
    )
    def test_kind_and_severity(self, error, kind, severity) -> None:
        assert isinstance(error, AgentError)
        assert error.kind == kind
        assert error.severity == severity

    def test_validation_error_records_field(self) -> None:
        assert ValidationError("bad odds", field="odds").context["field"] == "odds"

    def test_lifecycle_error_is_validation(self) -> None:
        err = LifecycleError(agent="grading", state="stopped", action="start")
        assert isinstance(err, ValidationError)
        assert "grading" in err.message
        assert "stopped" in err.message

    def test_database_error_context(self) -> None:
        err = DatabaseError("timeout", operation="insert", table="picks")
        assert err.context["operation"] == "insert"
        assert err.context["table"] == "picks"

    def test_dead_letter_not_found(self) -> None:
        err = DeadLetterNotFoundError("abc")
        assert isinstance(err, DatabaseError)
        assert "abc" in err.message

    def test_missing_credentials(self) -> None:
        err = MissingCredentialsError("Supabase", ["SUPABASE_URL"])
        assert isinstance(err, ConfigurationError)
        assert err.context["required_keys"] == ["SUPABASE_URL"]

    def test_unknown_command_is_medium(self) -> None:
        err = UnknownCommandError("grading", "explode")
        assert err.severity == Severity.MEDIUM
        assert err.context["command_type"] == "explode"

    def test_retry_key_in_use_is_validation(self) -> None:
        assert RetryKeyInUseError("k").kind == ErrorKind.VALIDATION

    def test_replay_handler_missing(self) -> None:
        err = ReplayHandlerMissingError("grading", "grade_pick")
        assert err.kind == ErrorKind.CONFIGURATION
        assert err.context["operation"] == "grade_pick"
