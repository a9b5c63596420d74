from __future__ import annotations


class EngagementError(Exception):
    """Base class for failures the HTTP layer maps onto a status code."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class MalformedPayloadError(EngagementError):
    status_code = 400


class InvalidIdentifierError(EngagementError):
    status_code = 400


class UnauthorizedError(EngagementError):
    status_code = 401


class NotFoundError(EngagementError):
    status_code = 404


class PreconditionFailedError(EngagementError):
    status_code = 409


class TransientError(EngagementError):
    """Storage or collaborator failure; the caller is expected to retry."""

    status_code = 500
