"""
Tests for failure classification.
"""

import json

import httpx
import pytest
from pydantic import BaseModel, ValidationError

from studyflow.core.errors import (
    ContentQualityError,
    ErrorKind,
    JobExhaustedError,
    PermanentExternalError,
    TransientExternalError,
    classify_exception,
    classify_status_code,
    is_transient,
)


def _http_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://storage.example.com/units/1/notes.pdf")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError("error", request=request, response=response)


class TestClassifyStatusCode:

    @pytest.mark.parametrize("code", [429, 500, 502, 503])
    def test_rate_limit_and_server_errors_are_transient(self, code):
        assert classify_status_code(code) is ErrorKind.TRANSIENT_EXTERNAL

    @pytest.mark.parametrize("code", [400, 401, 403, 404, 422])
    def test_other_client_errors_are_permanent(self, code):
        assert classify_status_code(code) is ErrorKind.PERMANENT_EXTERNAL


class TestClassifyException:

    def test_own_errors_carry_their_kind(self):
        assert classify_exception(TransientExternalError("x")) is ErrorKind.TRANSIENT_EXTERNAL
        assert classify_exception(PermanentExternalError("x")) is ErrorKind.PERMANENT_EXTERNAL
        assert classify_exception(ContentQualityError("x")) is ErrorKind.CONTENT_QUALITY
        assert classify_exception(JobExhaustedError("x")) is ErrorKind.EXHAUSTED

    def test_httpx_status_errors(self):
        assert classify_exception(_http_error(503)) is ErrorKind.TRANSIENT_EXTERNAL
        assert classify_exception(_http_error(404)) is ErrorKind.PERMANENT_EXTERNAL

    def test_network_failures_are_transient(self):
        request = httpx.Request("GET", "https://storage.example.com")
        assert classify_exception(httpx.ConnectError("refused", request=request)) is ErrorKind.TRANSIENT_EXTERNAL
        assert classify_exception(httpx.ReadTimeout("slow", request=request)) is ErrorKind.TRANSIENT_EXTERNAL

    def test_malformed_output_is_permanent(self):
        with pytest.raises(json.JSONDecodeError) as decode_error:
            json.loads("{not json")

        class Answer(BaseModel):
            count: int

        with pytest.raises(ValidationError) as validation_error:
            Answer(count="many")

        assert classify_exception(decode_error.value) is ErrorKind.PERMANENT_EXTERNAL
        assert classify_exception(validation_error.value) is ErrorKind.PERMANENT_EXTERNAL

    def test_unknown_errors_default_to_transient(self):
        assert classify_exception(RuntimeError("boom")) is ErrorKind.TRANSIENT_EXTERNAL
        assert is_transient(RuntimeError("boom"))

    def test_provider_name_in_message(self):
        error = PermanentExternalError("Object not found", provider_name="storage")
        assert str(error) == "[storage] Object not found"
