from __future__ import annotations

from digit_snap.errors import (
    AppError,
    DecodeError,
    DegenerateImageError,
    ErrorCode,
    OversizeError,
    ShapeError,
    new_error,
    status_for,
)


def test_pipeline_errors_carry_code_and_status() -> None:
    cases: list[tuple[AppError, ErrorCode, int]] = [
        (DecodeError("x"), ErrorCode.invalid_image, 400),
        (DegenerateImageError("x"), ErrorCode.degenerate_image, 400),
        (OversizeError("x"), ErrorCode.oversize, 500),
        (ShapeError("x"), ErrorCode.shape_mismatch, 500),
    ]
    for err, code, http in cases:
        assert isinstance(err, AppError)
        assert err.code is code
        assert err.http_status == http
        assert err.message == "x"


def test_status_for_service_codes() -> None:
    assert int(status_for(ErrorCode.unsupported_media_type)) == 415
    assert int(status_for(ErrorCode.too_large)) == 413
    assert int(status_for(ErrorCode.timeout)) == 504
    assert int(status_for(ErrorCode.service_not_ready)) == 503
    assert int(status_for(ErrorCode.internal_error)) == 500


def test_new_error_default_message() -> None:
    body = new_error(ErrorCode.degenerate_image, "rid").to_dict()
    assert body == {
        "code": "degenerate_image",
        "message": "Image has no usable area.",
        "request_id": "rid",
    }
    assert new_error(ErrorCode.timeout, "r", message="slow").message == "slow"
