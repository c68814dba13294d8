"""Error taxonomy shared by the API surfaces and the admin endpoints."""

from enum import Enum
from typing import Optional


class Surface(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    ADMIN = "admin"


class FakeGPTError(Exception):
    status_code = 500
    error_type = "api_error"

    def __init__(self, message: str, surface: Surface = Surface.ADMIN):
        super().__init__(message)
        self.message = message
        self.surface = surface

    def to_body(self) -> dict:
        """JSON body in the shape the calling surface expects."""
        if self.surface is Surface.ANTHROPIC:
            return {"error": {"type": self.error_type, "message": self.message}}
        return {"error": self.message}


class AuthenticationError(FakeGPTError):
    status_code = 401
    error_type = "authentication_error"


class SessionExpiredError(AuthenticationError):
    pass


class ValidationError(FakeGPTError):
    status_code = 400
    error_type = "invalid_request_error"

    def to_body(self) -> dict:
        if self.surface is Surface.OPENAI:
            return {"error": {"message": self.message, "type": self.error_type}}
        return super().to_body()


class NotFoundError(FakeGPTError):
    status_code = 404
    error_type = "not_found_error"


class InternalError(FakeGPTError):
    status_code = 500

    def __init__(self, message: str, surface: Surface = Surface.ADMIN, detail: Optional[str] = None):
        super().__init__(message, surface)
        self.detail = detail

    def to_body(self) -> dict:
        body = super().to_body()
        if self.detail:
            body["detail"] = self.detail
        return body
