"""
Domain exceptions and their HTTP mapping.

Workflow modules raise these; register_exception_handlers(app) turns them
into {"error": code, "message": ...} responses.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

logger = logging.getLogger(__name__)


class SkillSwapError(Exception):
    error_code = "SKILLSWAP_ERROR"
    status_code = 400

    def __init__(self, message: str, error_code: str = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code

    def to_dict(self):
        return {"error": self.error_code, "message": self.message}


class NotFound(SkillSwapError):
    error_code = "NOT_FOUND"
    status_code = 404


class Forbidden(SkillSwapError):
    error_code = "FORBIDDEN"
    status_code = 403


class ValidationFailed(SkillSwapError):
    error_code = "VALIDATION_ERROR"
    status_code = 400


class InvalidTransition(SkillSwapError):
    """A status change was attempted from a status that does not allow it."""
    error_code = "INVALID_TRANSITION"
    status_code = 409


class DuplicateAction(SkillSwapError):
    error_code = "DUPLICATE_ACTION"
    status_code = 409


class InsufficientCredits(SkillSwapError):
    error_code = "INSUFFICIENT_CREDITS"
    status_code = 409

    def __init__(self, user_id: str, required: int, available: int):
        super().__init__(f"Not enough credits: {required} required, {available} available")
        self.user_id = user_id
        self.required = required
        self.available = available


class WalletNotFound(NotFound):
    error_code = "WALLET_NOT_FOUND"

    def __init__(self, user_id: str):
        super().__init__(f"No wallet for user {user_id}")
        self.user_id = user_id


def _skillswap_exception_handler(request: Request, exc: SkillSwapError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.error_code, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _model_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Document validation failures inside workflow code (not request bodies)."""
    return JSONResponse(
        status_code=400,
        content={"error": "VALIDATION_ERROR", "message": "Invalid document",
                 "details": exc.errors(include_url=False, include_context=False, include_input=False)},
    )


def _generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": "INTERNAL_ERROR", "message": "Internal server error"})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SkillSwapError, _skillswap_exception_handler)
    app.add_exception_handler(ValidationError, _model_validation_handler)
    app.add_exception_handler(Exception, _generic_exception_handler)
