"""Error taxonomy shared by services, workflows and pipeline stages."""

from typing import Optional


class BotError(Exception):
    code = "error"

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)


class ValidationError(BotError):
    """Bad user input. Re-prompt in place."""

    code = "validation"


class PermissionDeniedError(BotError):
    code = "permission_denied"


class NotFoundError(BotError):
    code = "not_found"


class ConflictError(BotError):
    """Request already processed, token already used, chat already linked."""

    code = "conflict"


class TransientError(BotError):
    """Storage or transport I/O failure; the user may retry the same step."""

    code = "transient"


class FatalPipelineError(BotError):
    code = "fatal"
