"""Tests for chatdelta.core.errors: error kinds, classes and classification."""

import pytest

from chatdelta.core.errors import (
    AllProvidersFailedError,
    ErrorKind,
    PermanentProviderError,
    ProviderUnavailableError,
    TransientProviderError,
    classify_exception,
)
from chatdelta.core.executor import ExecutionResult
from chatdelta.core.providers import Provider
from chatdelta.core.resilience import Failure


class TestErrorKind:
    """Transient/permanent partition."""

    @pytest.mark.parametrize(
        "kind", [ErrorKind.TIMEOUT, ErrorKind.RATE_LIMIT, ErrorKind.NETWORK, ErrorKind.SERVER_ERROR]
    )
    def test_transient_kinds(self, kind):
        assert kind.is_transient()

    @pytest.mark.parametrize(
        "kind",
        [
            ErrorKind.INVALID_CREDENTIAL,
            ErrorKind.MODEL_NOT_FOUND,
            ErrorKind.INVALID_REQUEST,
            ErrorKind.UNAVAILABLE,
            ErrorKind.CANCELLED,
            ErrorKind.UNKNOWN,
        ],
    )
    def test_permanent_kinds(self, kind):
        assert not kind.is_transient()


class TestProviderErrors:
    """Error classes enforce their partition."""

    def test_transient_rejects_permanent_kind(self):
        with pytest.raises(ValueError):
            TransientProviderError("x", kind=ErrorKind.INVALID_CREDENTIAL)

    def test_permanent_rejects_transient_kind(self):
        with pytest.raises(ValueError):
            PermanentProviderError("x", kind=ErrorKind.TIMEOUT)

    def test_unavailable_is_permanent(self):
        error = ProviderUnavailableError("no client", provider="gpt")
        assert error.kind is ErrorKind.UNAVAILABLE
        assert not error.is_transient

    def test_retry_after_kept(self):
        error = TransientProviderError("busy", kind=ErrorKind.RATE_LIMIT, retry_after=3.0)
        assert error.retry_after == 3.0
        assert error.is_transient


class TestClassifyException:
    """Message heuristics for foreign exceptions."""

    @pytest.mark.parametrize(
        "error, expected",
        [
            (TimeoutError(), ErrorKind.TIMEOUT),
            (Exception("Request timed out"), ErrorKind.TIMEOUT),
            (Exception("HTTP 429 Too Many Requests"), ErrorKind.RATE_LIMIT),
            (Exception("rate limit exceeded"), ErrorKind.RATE_LIMIT),
            (ConnectionError("boom"), ErrorKind.NETWORK),
            (Exception("connection refused"), ErrorKind.NETWORK),
            (Exception("502 Bad Gateway"), ErrorKind.SERVER_ERROR),
            (Exception("Invalid API key"), ErrorKind.INVALID_CREDENTIAL),
            (Exception("401 Unauthorized"), ErrorKind.INVALID_CREDENTIAL),
            (Exception("model gpt-9 not found"), ErrorKind.MODEL_NOT_FOUND),
            (Exception("weird"), ErrorKind.UNKNOWN),
        ],
    )
    def test_classification(self, error, expected):
        assert classify_exception(error) is expected

    def test_provider_error_keeps_its_kind(self):
        error = PermanentProviderError("bad", kind=ErrorKind.INVALID_REQUEST)
        assert classify_exception(error) is ErrorKind.INVALID_REQUEST


class TestAllProvidersFailedError:
    """Executor-level total failure."""

    def test_message_lists_every_failure(self):
        results = ExecutionResult(
            [
                Failure(provider=Provider.CLAUDE, error_kind=ErrorKind.TIMEOUT, latency=1.0),
                Failure(provider=Provider.GPT, error_kind=ErrorKind.INVALID_CREDENTIAL, latency=0.1),
            ]
        )

        error = AllProvidersFailedError(results)

        assert "gpt=invalid_credential" in str(error)
        assert "claude=timeout" in str(error)
        assert error.results is results
