"""
Exceptions raised by denorm.
"""
from typing import Any


def _type_name(record_type: Any) -> str:
    return getattr(record_type, "__name__", str(record_type))


class DenormalizationError(RuntimeError):
    """Base class for denorm errors."""


class MissingComputeMethod(DenormalizationError):
    """
    Raised when a denormalized field has no compute function.

    This is a configuration error: the save or recompute that needed the
    value is aborted and nothing retries it.
    """

    def __init__(self, record_type: Any, method_name: str):
        self.record_type = record_type
        self.method_name = method_name
        super().__init__(f"Could not find method {method_name} in class {_type_name(record_type)}")


class UnregisteredRecordType(DenormalizationError, KeyError):
    """Raised when a record type was never registered with the field registry."""

    def __init__(self, record_type: Any):
        self.record_type = record_type
        super().__init__(f"{_type_name(record_type)} is not registered for denormalization")

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.args[0]


class RegistrationError(DenormalizationError, ValueError):
    """Raised when registration options are malformed."""
