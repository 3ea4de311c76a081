from typing import Any, Optional

from pydantic import ValidationError


class DiagnosticsError(Exception):
    pass


class UnknownAxisError(DiagnosticsError, KeyError):
    """A weight, gate or comparison key that does not resolve to a known axis, trait or prototype."""

    def __init__(self, name: str, context: Optional[str] = None):
        self.name = name
        self.context = context
        msg = f"Unknown axis '{name}'"
        if context:
            msg += f" ({context})"
        super().__init__(msg)

    def __str__(self):
        # KeyError quotes its argument otherwise
        return self.args[0]


class MalformedExpressionError(DiagnosticsError, ValueError):
    """An expression node that is missing var path, operator or threshold."""

    def __init__(self, message: str, raw: Any = None):
        self.raw = raw
        if raw is not None:
            message = f"{message}: {raw!r}"
        super().__init__(message)


class MalformedGateError(DiagnosticsError, ValueError):
    pass


class ConfigError(DiagnosticsError):
    """Custom exception for configuration errors."""
    pass


def format_validation_error(error: ValidationError) -> str:
    """Format a ValidationError into a user-friendly string."""
    error_messages = []
    for err in error.errors():
        location = " -> ".join(str(loc) for loc in err['loc'])
        message = f"Error in {location}: {err['msg']}"
        error_messages.append(message)
    return "\n".join(error_messages)
