from fuelbot.services.errors import (
    BotError,
    ConflictError,
    FatalPipelineError,
    NotFoundError,
    PermissionDeniedError,
    TransientError,
    ValidationError,
)
from fuelbot.services.result import Result

__all__ = [
    "BotError",
    "ConflictError",
    "FatalPipelineError",
    "NotFoundError",
    "PermissionDeniedError",
    "TransientError",
    "ValidationError",
    "Result",
]
