from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Final

from fastapi import status


class CoreError(Exception):
    """Base class for failures raised by the classification pipeline.

    Each subclass carries a stable ``kind`` string so callers can map it onto
    their own transport without matching on class names.
    """

    kind: ClassVar[str] = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class UnsupportedFormat(CoreError):
    kind: ClassVar[str] = "unsupported_format"


class CorruptData(CoreError):
    kind: ClassVar[str] = "corrupt_data"


class InvalidImageDimensions(CoreError):
    kind: ClassVar[str] = "invalid_image_dimensions"


class ModelCorrupt(CoreError):
    kind: ClassVar[str] = "model_corrupt"


class ModelVersionMismatch(CoreError):
    kind: ClassVar[str] = "model_version_mismatch"


class InternalError(CoreError):
    kind: ClassVar[str] = "internal_error"


# Client-input kinds; model kinds never reach a request handler.
CLIENT_ERROR_KINDS: Final[frozenset[str]] = frozenset(
    {UnsupportedFormat.kind, CorruptData.kind, InvalidImageDimensions.kind}
)


class ErrorCode(str, Enum):
    unsupported_format = "unsupported_format"
    corrupt_data = "corrupt_data"
    invalid_image_dimensions = "invalid_image_dimensions"
    unsupported_media_type = "unsupported_media_type"
    bad_dimensions = "bad_dimensions"
    too_large = "too_large"
    timeout = "timeout"
    internal_error = "internal_error"
    unauthorized = "unauthorized"
    malformed_multipart = "malformed_multipart"
    service_not_ready = "service_not_ready"


_DEFAULT_MESSAGE: Final[dict[ErrorCode, str]] = {
    ErrorCode.unsupported_format: "Unsupported image format.",
    ErrorCode.corrupt_data: "Image data is corrupt or truncated.",
    ErrorCode.invalid_image_dimensions: "Image has zero width or height.",
    ErrorCode.unsupported_media_type: "Invalid file type. Please upload an image.",
    ErrorCode.bad_dimensions: "Image dimensions exceed allowed limits.",
    ErrorCode.too_large: "File exceeds size limit.",
    ErrorCode.timeout: "Request timed out.",
    ErrorCode.internal_error: "Internal server error.",
    ErrorCode.unauthorized: "Unauthorized.",
    ErrorCode.malformed_multipart: "No image file provided.",
    ErrorCode.service_not_ready: "Model not loaded.",
}


@dataclass(frozen=True)
class ErrorResponse:
    code: ErrorCode
    message: str
    request_id: str

    def to_dict(self) -> dict[str, str]:
        return {
            "code": self.code.value,
            "message": self.message,
            "request_id": self.request_id,
        }


class AppError(Exception):
    def __init__(self, code: ErrorCode, http_status: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.http_status = http_status
        self.message = message


def new_error(code: ErrorCode, request_id: str, message: str | None = None) -> ErrorResponse:
    msg = message if message is not None else _DEFAULT_MESSAGE.get(code, "")
    return ErrorResponse(code=code, message=msg, request_id=request_id)


def code_for(exc: CoreError) -> ErrorCode:
    try:
        return ErrorCode(exc.kind)
    except ValueError:
        # Model kinds are startup failures; at request time they are internal.
        return ErrorCode.internal_error


def status_for(code: ErrorCode) -> int:
    if code in (
        ErrorCode.unsupported_format,
        ErrorCode.corrupt_data,
        ErrorCode.invalid_image_dimensions,
        ErrorCode.bad_dimensions,
        ErrorCode.malformed_multipart,
    ):
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.unsupported_media_type:
        return status.HTTP_415_UNSUPPORTED_MEDIA_TYPE
    if code is ErrorCode.too_large:
        return status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    if code is ErrorCode.timeout:
        return status.HTTP_504_GATEWAY_TIMEOUT
    if code is ErrorCode.unauthorized:
        return status.HTTP_401_UNAUTHORIZED
    if code is ErrorCode.service_not_ready:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR
