from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from chatbot_api.core.logging_utils import get_logger


class ChatbotError(Exception):
    """Error con status HTTP; se serializa como {"error": message}."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class AuthenticationError(ChatbotError):
    status_code = status.HTTP_401_UNAUTHORIZED


class PermissionDeniedError(ChatbotError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(ChatbotError):
    status_code = status.HTTP_404_NOT_FOUND


class BadRequestError(ChatbotError):
    status_code = status.HTTP_400_BAD_REQUEST


class ConfigurationError(ChatbotError):
    # falta configuración del tenant (p.ej. API key de OpenAI); requiere acción del operador
    status_code = status.HTTP_400_BAD_REQUEST


class UpstreamError(ChatbotError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


def register_exception_handlers(app: FastAPI) -> None:
    logger = get_logger("exception_handler")

    @app.exception_handler(ChatbotError)
    async def handle_chatbot_error(request: Request, exc: ChatbotError):
        if exc.status_code >= 500:
            logger.error("Request failed", extra={"error": exc.message}, exc_info=exc)
        else:
            logger.warning("Request rejected", extra={"error": exc.message, "status_code": exc.status_code})
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"Invalid request: {field} {first.get('msg', '')}".strip()
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": message})

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.error("Unhandled exception", exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": str(exc) or "Internal server error"},
        )
