"""
Command descriptors and parameters.

A ``Command`` bundles the text, kind and parameters of one unit of work.
It is immutable once constructed; parameters stay mutable so that output
values of stored procedures can be written back to the caller.
"""

from __future__ import annotations

import datetime as dt
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple


class CommandType(str, Enum):
    """How the command text is interpreted by the driver."""

    TEXT = "Text"
    STORED_PROCEDURE = "StoredProcedure"

    @property
    def label(self) -> str:
        return self.value


class ParameterDirection(str, Enum):
    """Direction of a command parameter."""

    INPUT = "Input"
    OUTPUT = "Output"
    INPUT_OUTPUT = "InputOutput"
    RETURN_VALUE = "ReturnValue"

    @property
    def label(self) -> str:
        return self.value

    @property
    def is_output(self) -> bool:
        return self is not ParameterDirection.INPUT


class DbType(str, Enum):
    """Logical parameter types used for diagnostics and driver hints."""

    STRING = "String"
    INT32 = "Int32"
    INT64 = "Int64"
    DOUBLE = "Double"
    DECIMAL = "Decimal"
    BOOLEAN = "Boolean"
    DATE = "Date"
    DATETIME = "DateTime"
    TIME = "Time"
    BINARY = "Binary"
    GUID = "Guid"
    OBJECT = "Object"

    @property
    def label(self) -> str:
        return self.value


_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1


def infer_db_type(value: Any) -> DbType:
    """Infer a ``DbType`` from a Python value."""
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return DbType.BOOLEAN
    if isinstance(value, int):
        if _INT32_MIN <= value <= _INT32_MAX:
            return DbType.INT32
        return DbType.INT64
    if isinstance(value, float):
        return DbType.DOUBLE
    if isinstance(value, Decimal):
        return DbType.DECIMAL
    if isinstance(value, str):
        return DbType.STRING
    if isinstance(value, (bytes, bytearray, memoryview)):
        return DbType.BINARY
    # datetime before date: datetime is a date subclass
    if isinstance(value, dt.datetime):
        return DbType.DATETIME
    if isinstance(value, dt.date):
        return DbType.DATE
    if isinstance(value, dt.time):
        return DbType.TIME
    if isinstance(value, uuid.UUID):
        return DbType.GUID
    return DbType.OBJECT


@dataclass
class Parameter:
    """A named command parameter."""

    name: str
    value: Any = None
    db_type: Optional[DbType] = None
    direction: ParameterDirection = ParameterDirection.INPUT
    size: int = 0

    def __post_init__(self) -> None:
        if self.db_type is None:
            self.db_type = infer_db_type(self.value)

    @property
    def bind_name(self) -> str:
        """Name without the driver prefix (``@``, ``:``, ``$``)."""
        return self.name.lstrip("@:$")

    def describe(self) -> str:
        return (
            f"({self.db_type.label},{self.size},{self.direction.label})"
            f"{self.name}={self.value}"
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "db_type": self.db_type.label,
            "size": self.size,
            "direction": self.direction.label,
            "value": repr(self.value),
        }


@dataclass(frozen=True)
class Command:
    """Immutable bundle of command text, kind and parameters."""

    text: str
    command_type: CommandType = CommandType.TEXT
    parameters: Tuple[Parameter, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not self.text or not self.text.strip():
            raise ValueError("command text must not be empty")
        object.__setattr__(self, "parameters", tuple(self.parameters or ()))

    @classmethod
    def of(
        cls,
        text: str,
        parameters: Optional[Iterable[Parameter]] = None,
        command_type: CommandType = CommandType.TEXT,
    ) -> "Command":
        return cls(text=text, command_type=command_type, parameters=tuple(parameters or ()))
