"""Application error type shared by the ingestion pipeline and the API layer."""
from enum import Enum


class ErrorKind(str, Enum):
    BAD_REQUEST = "BAD_REQUEST"
    NOT_FOUND = "NOT_FOUND"
    UNSUPPORTED_MEDIA_TYPE = "UNSUPPORTED_MEDIA_TYPE"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    GATEWAY_TIMEOUT = "GATEWAY_TIMEOUT"

    @property
    def status(self) -> int:
        return _STATUS[self]


_STATUS = {
    ErrorKind.BAD_REQUEST: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UNSUPPORTED_MEDIA_TYPE: 415,
    ErrorKind.INTERNAL_ERROR: 500,
    ErrorKind.GATEWAY_TIMEOUT: 504,
}


class AppError(Exception):
    """Tagged error. Carries a kind, a client-safe message and an HTTP status."""

    def __init__(self, kind: ErrorKind, message: str):
        self.kind = kind
        self.message = message
        super().__init__(message)

    @property
    def status(self) -> int:
        return self.kind.status

    def to_dict(self) -> dict:
        return {"error": self.message, "status": self.status, "code": self.kind.value}

    def __repr__(self) -> str:
        return f"AppError({self.kind.value}, {self.message!r})"


def bad_request(message: str) -> AppError:
    return AppError(ErrorKind.BAD_REQUEST, message)


def not_found(resource: str) -> AppError:
    return AppError(ErrorKind.NOT_FOUND, f"{resource} not found")


def unsupported_media_type(message: str) -> AppError:
    return AppError(ErrorKind.UNSUPPORTED_MEDIA_TYPE, message)


def internal_error(message: str = "Internal server error") -> AppError:
    return AppError(ErrorKind.INTERNAL_ERROR, message)


def gateway_timeout(message: str) -> AppError:
    return AppError(ErrorKind.GATEWAY_TIMEOUT, message)
