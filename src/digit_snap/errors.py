from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final

from fastapi import status


class ErrorCode(str, Enum):
    invalid_image = "invalid_image"
    degenerate_image = "degenerate_image"
    oversize = "oversize"
    shape_mismatch = "shape_mismatch"
    unsupported_media_type = "unsupported_media_type"
    bad_dimensions = "bad_dimensions"
    too_large = "too_large"
    preprocessing_failed = "preprocessing_failed"
    timeout = "timeout"
    internal_error = "internal_error"
    unauthorized = "unauthorized"
    malformed_multipart = "malformed_multipart"
    service_not_ready = "service_not_ready"
    invalid_model = "invalid_model"


_DEFAULT_MESSAGE: Final[dict[ErrorCode, str]] = {
    ErrorCode.invalid_image: "Failed to decode image.",
    ErrorCode.degenerate_image: "Image has no usable area.",
    ErrorCode.oversize: "Scaled digit does not fit the canvas.",
    ErrorCode.shape_mismatch: "Tensor shape does not match the model input.",
    ErrorCode.unsupported_media_type: "Unsupported media type.",
    ErrorCode.bad_dimensions: "Image dimensions exceed allowed limits.",
    ErrorCode.too_large: "File exceeds size limit.",
    ErrorCode.preprocessing_failed: "Image preprocessing failed.",
    ErrorCode.timeout: "Request timed out.",
    ErrorCode.internal_error: "Internal server error.",
    ErrorCode.unauthorized: "Unauthorized.",
    ErrorCode.malformed_multipart: "Malformed multipart body.",
    ErrorCode.service_not_ready: "Model not loaded. Install a model artifact.",
    ErrorCode.invalid_model: "Invalid model file.",
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


class DecodeError(AppError):
    """Pixel buffer is malformed or carries fewer than three channels."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.invalid_image, status_for(ErrorCode.invalid_image), message)


class DegenerateImageError(AppError):
    """Zero-area source, or a side that scales down to zero pixels."""

    def __init__(self, message: str) -> None:
        super().__init__(
            ErrorCode.degenerate_image, status_for(ErrorCode.degenerate_image), message
        )


class OversizeError(AppError):
    """Scaled content larger than the canvas. Always a configuration bug."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.oversize, status_for(ErrorCode.oversize), message)


class ShapeError(AppError):
    """Grid or score vector does not match the shape the model declares."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.shape_mismatch, status_for(ErrorCode.shape_mismatch), message)


def new_error(code: ErrorCode, request_id: str, message: str | None = None) -> ErrorResponse:
    msg = message if message is not None else _DEFAULT_MESSAGE.get(code, "")
    return ErrorResponse(code=code, message=msg, request_id=request_id)


def status_for(code: ErrorCode) -> int:
    if code is ErrorCode.invalid_image:
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.degenerate_image:
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.unsupported_media_type:
        return status.HTTP_415_UNSUPPORTED_MEDIA_TYPE
    if code is ErrorCode.bad_dimensions:
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.too_large:
        return status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    if code is ErrorCode.preprocessing_failed:
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.timeout:
        return status.HTTP_504_GATEWAY_TIMEOUT
    if code is ErrorCode.unauthorized:
        return status.HTTP_401_UNAUTHORIZED
    if code is ErrorCode.malformed_multipart:
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.service_not_ready:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if code is ErrorCode.invalid_model:
        return status.HTTP_400_BAD_REQUEST
    # oversize and shape_mismatch are server-side configuration faults
    return status.HTTP_500_INTERNAL_SERVER_ERROR
