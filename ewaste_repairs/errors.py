from __future__ import annotations


class RepairError(Exception):
    """Base class for errors surfaced to the caller of a lifecycle operation."""

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(RepairError):
    status_code = 400


class AuthorizationError(RepairError):
    status_code = 403


class NotFoundError(RepairError):
    status_code = 404


class InvalidStateError(RepairError):
    status_code = 409
