from __future__ import annotations

import pytest

from garment_classifier.errors import (
    CLIENT_ERROR_KINDS,
    AppError,
    CoreError,
    CorruptData,
    ErrorCode,
    InternalError,
    InvalidImageDimensions,
    ModelCorrupt,
    ModelVersionMismatch,
    UnsupportedFormat,
    code_for,
    new_error,
    status_for,
)


@pytest.mark.parametrize(
    ("exc", "kind"),
    [
        (UnsupportedFormat("x"), "unsupported_format"),
        (CorruptData("x"), "corrupt_data"),
        (InvalidImageDimensions("x"), "invalid_image_dimensions"),
        (ModelCorrupt("x"), "model_corrupt"),
        (ModelVersionMismatch("x"), "model_version_mismatch"),
        (InternalError("x"), "internal_error"),
    ],
)
def test_core_error_kinds(exc: CoreError, kind: str) -> None:
    assert exc.kind == kind
    assert exc.to_dict() == {"kind": kind, "message": "x"}
    assert str(exc) == "x"


def test_client_kinds_map_to_400() -> None:
    assert CLIENT_ERROR_KINDS == {"unsupported_format", "corrupt_data", "invalid_image_dimensions"}
    for exc in (UnsupportedFormat("a"), CorruptData("b"), InvalidImageDimensions("c")):
        assert status_for(code_for(exc)) == 400


def test_model_kinds_are_internal_at_request_time() -> None:
    assert code_for(ModelCorrupt("m")) is ErrorCode.internal_error
    assert code_for(ModelVersionMismatch("m")) is ErrorCode.internal_error
    assert status_for(code_for(InternalError("m"))) == 500


def test_transport_statuses() -> None:
    assert status_for(ErrorCode.unsupported_media_type) == 415
    assert status_for(ErrorCode.too_large) == 413
    assert status_for(ErrorCode.timeout) == 504
    assert status_for(ErrorCode.unauthorized) == 401
    assert status_for(ErrorCode.service_not_ready) == 503
    assert status_for(ErrorCode.bad_dimensions) == 400
    assert status_for(ErrorCode.malformed_multipart) == 400


def test_new_error_default_and_custom_message() -> None:
    e = new_error(ErrorCode.timeout, "abc-123")
    assert e.message != "" and e.request_id == "abc-123"
    assert e.to_dict()["code"] == "timeout"
    e2 = new_error(ErrorCode.corrupt_data, "r", message="png truncated")
    assert e2.to_dict() == {"code": "corrupt_data", "message": "png truncated", "request_id": "r"}


def test_app_error_carries_fields() -> None:
    err = AppError(ErrorCode.too_large, 413, "File exceeds size limit")
    assert err.code is ErrorCode.too_large and err.http_status == 413
    assert str(err) == "File exceeds size limit"
