"""
Agent Error Taxonomy
====================

Typed exceptions shared by every Unit Talk agent. All errors derive from
``AgentError`` which carries:

1. An ``ErrorKind`` used for classification and retry policy
2. A ``Severity`` used for escalation (alerting, fatal lifecycle transitions)
3. A read-only context mapping for debugging
4. The original exception when one error wraps another

Worker code that knows exactly what went wrong should raise one of the
subclasses below; anything else is classified heuristically by
``unit_talk.services.error_handler.classify``.
"""

from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional


class ErrorKind(str, Enum):
    """Classification buckets for agent failures."""
    VALIDATION = "validation"
    DATABASE = "database"
    CONFIGURATION = "configuration"
    BUSINESS_LOGIC = "business_logic"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    """Escalation levels, lowest first."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# =============================================================================
# Base Exception
# =============================================================================

class AgentError(Exception):
    """
    Base exception class for all agent errors.

    Attributes are read-only once the error is constructed so a classified
    error can be handed to logging, persistence and escalation without any
    of them changing what the others see.

    Usage:
        try:
            ...
        except KeyError as e:
            raise AgentError(
                message="Pick payload missing odds",
                kind=ErrorKind.VALIDATION,
                severity=Severity.LOW,
                context={"field": "odds"},
            ) from e
    """

    default_code = "AGENT_ERROR"

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        severity: Severity = Severity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[BaseException] = None,
        code: Optional[str] = None,
    ):
        self._message = message
        self._kind = ErrorKind(kind)
        self._severity = Severity(severity)
        self._context = MappingProxyType(dict(context or {}))
        self._original_error = original_error
        self._code = code or self.default_code

        full_message = message
        if context:
            context_str = ", ".join(f"{k}={v}" for k, v in context.items())
            full_message = f"{message} [{context_str}]"

        super().__init__(full_message)

    @property
    def message(self) -> str:
        return self._message

    @property
    def kind(self) -> ErrorKind:
        return self._kind

    @property
    def severity(self) -> Severity:
        return self._severity

    @property
    def context(self) -> Mapping[str, Any]:
        return self._context

    @property
    def original_error(self) -> Optional[BaseException]:
        return self._original_error

    @property
    def code(self) -> str:
        return self._code

    def to_dict(self) -> Dict[str, Any]:
        """Convert the error to a JSON-friendly dictionary."""
        result = {
            "error": self.message,
            "kind": self.kind.value,
            "severity": self.severity.value,
            "code": self.code,
        }
        if self.context:
            result["context"] = dict(self.context)
        if self.original_error:
            result["original_error"] = str(self.original_error)
        return result


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(AgentError):
    """Caller input is wrong; retrying will not help."""

    default_code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[BaseException] = None,
    ):
        ctx = dict(context or {})
        if field:
            ctx["field"] = field

        super().__init__(
            message=message,
            kind=ErrorKind.VALIDATION,
            severity=Severity.LOW,
            context=ctx,
            original_error=original_error,
        )


class LifecycleError(ValidationError):
    """Raised when an agent is asked to do something its state forbids."""

    default_code = "LIFECYCLE_ERROR"

    def __init__(
        self,
        agent: str,
        state: str,
        action: str,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(
            message=f"Cannot {action} agent '{agent}' in state '{state}'",
            field="state",
            context={"agent": agent, "state": state, "action": action},
            original_error=original_error,
        )


# =============================================================================
# Database Errors
# =============================================================================

class DatabaseError(AgentError):
    """Persistence layer failure; usually transient."""

    default_code = "DATABASE_ERROR"

    def __init__(
        self,
        message: str = "Database operation failed",
        operation: Optional[str] = None,
        table: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[BaseException] = None,
    ):
        ctx = dict(context or {})
        if operation:
            ctx["operation"] = operation
        if table:
            ctx["table"] = table

        super().__init__(
            message=message,
            kind=ErrorKind.DATABASE,
            severity=Severity.HIGH,
            context=ctx,
            original_error=original_error,
        )


class DeadLetterNotFoundError(DatabaseError):
    """Raised when a dead-letter entry id does not exist."""

    def __init__(
        self,
        entry_id: str,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(
            message=f"Dead letter not found: {entry_id}",
            operation="select",
            table="dead_letter_queue",
            context={"entry_id": entry_id},
            original_error=original_error,
        )


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(AgentError):
    """Configuration is missing or invalid; needs operator intervention."""

    default_code = "CONFIG_ERROR"

    def __init__(
        self,
        message: str = "Configuration error",
        config_key: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[BaseException] = None,
    ):
        ctx = dict(context or {})
        if config_key:
            ctx["config_key"] = config_key

        super().__init__(
            message=message,
            kind=ErrorKind.CONFIGURATION,
            severity=Severity.HIGH,
            context=ctx,
            original_error=original_error,
        )


class MissingCredentialsError(ConfigurationError):
    """Raised when required credentials are missing."""

    def __init__(
        self,
        service: str,
        required_keys: Optional[list] = None,
        original_error: Optional[BaseException] = None,
    ):
        context: Dict[str, Any] = {"service": service}
        if required_keys:
            context["required_keys"] = required_keys

        super().__init__(
            message=f"Missing credentials for {service}",
            context=context,
            original_error=original_error,
        )


# =============================================================================
# Business Logic Errors
# =============================================================================

class BusinessLogicError(AgentError):
    """A worker-specific rule failed. Retry policy is up to the worker."""

    default_code = "BUSINESS_LOGIC_ERROR"

    def __init__(
        self,
        message: str = "Business rule failed",
        agent: Optional[str] = None,
        severity: Severity = Severity.HIGH,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[BaseException] = None,
    ):
        ctx = dict(context or {})
        if agent:
            ctx["agent"] = agent

        super().__init__(
            message=message,
            kind=ErrorKind.BUSINESS_LOGIC,
            severity=severity,
            context=ctx,
            original_error=original_error,
        )


class UnknownCommandError(BusinessLogicError):
    """Raised when an agent receives a command type it does not handle."""

    def __init__(self, agent: str, command_type: str):
        super().__init__(
            message=f"Unknown command type: {command_type}",
            agent=agent,
            severity=Severity.MEDIUM,
            context={"command_type": command_type},
        )


class FatalAgentError(AgentError):
    """Unrecoverable failure; moves the agent into the ``error`` state."""

    default_code = "FATAL_AGENT_ERROR"

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(
            message=message,
            kind=kind,
            severity=Severity.CRITICAL,
            context=context,
            original_error=original_error,
        )


# =============================================================================
# Retry / Replay Errors
# =============================================================================

class RetryKeyInUseError(AgentError):
    """Raised when ``with_retry`` is called with a key that is still in flight."""

    default_code = "RETRY_KEY_IN_USE"

    def __init__(self, key: str):
        super().__init__(
            message=f"Retry key already in flight: {key}",
            kind=ErrorKind.VALIDATION,
            severity=Severity.MEDIUM,
            context={"key": key},
        )


class ReplayHandlerMissingError(AgentError):
    """Raised when a dead letter is replayed for an agent nobody serves."""

    default_code = "REPLAY_HANDLER_MISSING"

    def __init__(self, agent: str, operation: str):
        super().__init__(
            message=f"No replay handler registered for agent '{agent}'",
            kind=ErrorKind.CONFIGURATION,
            severity=Severity.HIGH,
            context={"agent": agent, "operation": operation},
        )
