"""Tests for Courier exception hierarchy."""

import pytest

from courier.exceptions import (
    ConfigurationError,
    CourierError,
    NotFoundError,
    SignatureError,
    StorageError,
    ValidationError,
)


class TestCourierError:
    """Tests for the base CourierError class."""

    def test_error_message(self):
        error = CourierError("Something went wrong")
        assert error.message == "Something went wrong"
        assert str(error) == "Something went wrong"

    def test_to_dict(self):
        error = CourierError("boom")
        assert error.to_dict() == {"error": {"code": "courier_error", "message": "boom"}}


class TestValidationError:
    """Tests for ValidationError."""

    def test_field_in_message(self):
        error = ValidationError("url", "must be http or https")
        assert error.field == "url"
        assert error.message == "url: must be http or https"

    def test_to_dict_includes_field(self):
        data = ValidationError("events", "empty").to_dict()
        assert data["error"]["code"] == "validation_error"
        assert data["error"]["field"] == "events"


class TestNotFoundError:
    """Tests for NotFoundError."""

    def test_message_and_dict(self):
        error = NotFoundError("delivery", "dlv_1")
        assert error.message == "delivery not found: dlv_1"
        data = error.to_dict()["error"]
        assert data["resource_type"] == "delivery"
        assert data["resource_id"] == "dlv_1"


class TestHierarchy:
    """All Courier errors share one base class."""

    @pytest.mark.parametrize(
        "error,code",
        [
            (StorageError("down"), "storage_error"),
            (ConfigurationError("bad"), "configuration_error"),
            (SignatureError("unknown scheme"), "signature_error"),
            (ValidationError("f", "m"), "validation_error"),
            (NotFoundError("webhook", "w"), "not_found"),
        ],
    )
    def test_subclasses(self, error, code):
        assert isinstance(error, CourierError)
        assert error.code == code

    def test_catch_all(self):
        with pytest.raises(CourierError):
            raise StorageError("qdrant unreachable")
