"""
StagePilot - Error Taxonomy
===========================

Domain errors raised by the stores, the agent gateway and the
orchestrator. The API layer renders every subclass of StagePilotError
as an ErrorResponse with the class' HTTP status.
"""

from typing import Optional


class StagePilotError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    title: str = "Internal Server Error"

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class NotFoundError(StagePilotError):
    """A referenced chat, stage or message does not exist."""

    status_code = 404
    code = "NOT_FOUND"
    title = "Not Found"


class ValidationError(StagePilotError):
    """The request is well-formed JSON but semantically invalid."""

    status_code = 400
    code = "VALIDATION_ERROR"
    title = "Bad Request"


class ConflictError(StagePilotError):
    """The stage is not in a status that allows the requested transition."""

    status_code = 409
    code = "CONFLICT"
    title = "Conflict"


class GatewayError(StagePilotError):
    """The agent service failed, returned garbage or timed out."""

    status_code = 502
    code = "GATEWAY_ERROR"
    title = "Bad Gateway"

    def __init__(self, message: str, *, timeout: bool = False):
        super().__init__(message)
        self.timeout = timeout
        if timeout:
            self.status_code = 504
            self.code = "GATEWAY_TIMEOUT"
            self.title = "Gateway Timeout"
