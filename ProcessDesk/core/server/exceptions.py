"""
Exceptions raised by the ProcessDesk server components.

Each class carries the ``code`` sent to clients in ``error`` events and
REST error bodies.
"""


class ProcessDeskError(Exception):
    """Base class for ProcessDesk errors."""

    code = "INTERNAL_ERROR"


class InvalidMessageError(ProcessDeskError):
    """A send request is missing its sender, recipient or content, or names an unknown kind."""

    code = "INVALID_MESSAGE"


class StorageUnavailableError(ProcessDeskError):
    """The durable store failed while reading or writing."""

    code = "STORAGE_UNAVAILABLE"


class ProtocolError(ProcessDeskError):
    """An inbound frame could not be parsed."""

    code = "BAD_FRAME"


class RecordNotFoundError(ProcessDeskError):
    code = "NOT_FOUND"


class RecordConflictError(ProcessDeskError):
    code = "CONFLICT"


class RecordValidationError(ProcessDeskError):
    code = "VALIDATION_ERROR"


__all__ = [
    'ProcessDeskError',
    'InvalidMessageError',
    'StorageUnavailableError',
    'ProtocolError',
    'RecordNotFoundError',
    'RecordConflictError',
    'RecordValidationError',
]
