from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final

from fastapi import status


class ErrorCode(str, Enum):
    decode_error = "decode_error"
    shape_mismatch = "shape_mismatch"
    invalid_artifact = "invalid_artifact"
    model_load_failed = "model_load_failed"
    service_not_ready = "service_not_ready"
    unknown_validation_set = "unknown_validation_set"
    asset_load_failed = "asset_load_failed"
    preprocessing_failed = "preprocessing_failed"
    inference_failed = "inference_failed"
    page_failed = "page_failed"
    invalid_start_index = "invalid_start_index"
    invalid_transition = "invalid_transition"
    invalid_image = "invalid_image"
    unsupported_media_type = "unsupported_media_type"
    too_large = "too_large"
    timeout = "timeout"
    unauthorized = "unauthorized"
    internal_error = "internal_error"


_DEFAULT_MESSAGE: Final[dict[ErrorCode, str]] = {
    ErrorCode.decode_error: "Failed to decode weight buffer.",
    ErrorCode.shape_mismatch: "Decoded data does not match target shape.",
    ErrorCode.invalid_artifact: "Model artifact is malformed.",
    ErrorCode.model_load_failed: "Failed to load models.",
    ErrorCode.service_not_ready: "Models not loaded.",
    ErrorCode.unknown_validation_set: "Unknown validation set.",
    ErrorCode.asset_load_failed: "Page image could not be loaded.",
    ErrorCode.preprocessing_failed: "Image preprocessing failed.",
    ErrorCode.inference_failed: "Forward pass failed.",
    ErrorCode.page_failed: "Page processing failed.",
    ErrorCode.invalid_start_index: "Start index outside the page list.",
    ErrorCode.invalid_transition: "Action not allowed in current state.",
    ErrorCode.invalid_image: "Failed to decode image.",
    ErrorCode.unsupported_media_type: "Unsupported media type.",
    ErrorCode.too_large: "File exceeds size limit.",
    ErrorCode.timeout: "Request timed out.",
    ErrorCode.unauthorized: "Unauthorized.",
    ErrorCode.internal_error: "Internal server error.",
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


class _CodedError(AppError):
    """AppError with a fixed code; subclasses only set `code`."""

    code_for_class: ErrorCode = ErrorCode.internal_error

    def __init__(self, message: str | None = None) -> None:
        code = type(self).code_for_class
        msg = message if message is not None else _DEFAULT_MESSAGE.get(code, "")
        super().__init__(code, status_for(code), msg)


class DecodeError(_CodedError):
    code_for_class = ErrorCode.decode_error


class Base64DecodeError(DecodeError):
    pass


class ShapeMismatchError(_CodedError):
    code_for_class = ErrorCode.shape_mismatch


class ArtifactError(_CodedError):
    code_for_class = ErrorCode.invalid_artifact


class ModelLoadError(_CodedError):
    code_for_class = ErrorCode.model_load_failed


class ModelNotInitializedError(_CodedError):
    code_for_class = ErrorCode.service_not_ready


class UnknownValidationSetError(_CodedError):
    code_for_class = ErrorCode.unknown_validation_set


class AssetLoadError(_CodedError):
    code_for_class = ErrorCode.asset_load_failed


class PreprocessError(_CodedError):
    code_for_class = ErrorCode.preprocessing_failed


class InferenceError(_CodedError):
    code_for_class = ErrorCode.inference_failed


class InvalidTransitionError(_CodedError):
    code_for_class = ErrorCode.invalid_transition


class StartIndexError(_CodedError):
    code_for_class = ErrorCode.invalid_start_index


class PageProcessingError(_CodedError):
    """Failure of one page during batch processing.

    Keeps the page id and the stage (preprocess, infer, timeout) so the
    failure can be reproduced; the original exception is chained as __cause__.
    A missed deadline carries the `timeout` code instead of `page_failed`.
    """

    code_for_class = ErrorCode.page_failed

    def __init__(self, page_id: str, stage: str, message: str) -> None:
        super().__init__(f"page {page_id} failed at {stage}: {message}")
        self.page_id = page_id
        self.stage = stage
        if stage == "timeout":
            self.code = ErrorCode.timeout
            self.http_status = status_for(ErrorCode.timeout)


def new_error(code: ErrorCode, request_id: str, message: str | None = None) -> ErrorResponse:
    msg = message if message is not None else _DEFAULT_MESSAGE.get(code, "")
    return ErrorResponse(code=code, message=msg, request_id=request_id)


def status_for(code: ErrorCode) -> int:
    if code in (
        ErrorCode.invalid_image,
        ErrorCode.preprocessing_failed,
        ErrorCode.invalid_start_index,
    ):
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.unsupported_media_type:
        return status.HTTP_415_UNSUPPORTED_MEDIA_TYPE
    if code is ErrorCode.too_large:
        return status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    if code is ErrorCode.unauthorized:
        return status.HTTP_401_UNAUTHORIZED
    if code in (ErrorCode.unknown_validation_set, ErrorCode.asset_load_failed):
        return status.HTTP_404_NOT_FOUND
    if code is ErrorCode.invalid_transition:
        return status.HTTP_409_CONFLICT
    if code is ErrorCode.service_not_ready:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if code is ErrorCode.timeout:
        return status.HTTP_504_GATEWAY_TIMEOUT
    return status.HTTP_500_INTERNAL_SERVER_ERROR
