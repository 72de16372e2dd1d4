"""
Exception taxonomy for ambientdb.

``CommandFailure`` keeps the full command context of a failed execution so
that the error can be logged with everything needed to reproduce it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

if TYPE_CHECKING:
    from ambientdb.core.command import CommandType, Parameter


class AmbientDbError(Exception):
    """Base class for all ambientdb errors."""

    pass


class ConfigurationError(AmbientDbError):
    """Raised when a logical name or provider cannot be resolved."""

    pass


class DriverError(AmbientDbError):
    """Raised when the underlying driver fails to open, begin or execute."""

    pass


class ProgrammingError(AmbientDbError):
    """Raised on API misuse such as committing a dependent transaction."""

    pass


class CommandFailure(DriverError):
    """Raised when a command fails; carries the command for diagnostics."""

    def __init__(
        self,
        original: BaseException,
        command_text: str,
        command_type: "CommandType",
        parameters: Optional[Sequence["Parameter"]] = None,
    ) -> None:
        self.original = original
        self.command_text = command_text
        self.command_type = command_type
        self.parameters = tuple(parameters or ())
        self._message: Optional[str] = None
        super().__init__("sql error")

    @property
    def message(self) -> str:
        if self._message is None:
            self._message = self._format_message()
        return self._message

    def __str__(self) -> str:
        return self.message

    def _format_message(self) -> str:
        lines: List[str] = [f"({self.command_type.label}){self.command_text}"]
        for param in self.parameters:
            lines.append(param.describe())
        lines.append(f"{type(self.original).__name__}: {self.original}")
        return "\n".join(lines) + "\n"

    def as_log_dict(self) -> Dict[str, Any]:
        """Return the failure as keyword context for structured logging."""
        return {
            "command_type": self.command_type.label,
            "command_text": self.command_text,
            "parameters": [param.as_dict() for param in self.parameters],
            "error_type": type(self.original).__name__,
            "error": str(self.original),
        }
