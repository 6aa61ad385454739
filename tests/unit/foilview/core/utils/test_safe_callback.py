"""Tests for safe_callback utility."""

import functools
from unittest.mock import MagicMock

import pytest

import foilview.core.utils.safe_callback
from foilview.core.utils.safe_callback import CallbackResult, describe_callable, safe_callback


def test_success():
    result = safe_callback(lambda x, y: x + y, 2, y=3)
    assert result == CallbackResult(success=True, value=5)


def test_failure_is_captured():
    def sampler():
        raise ValueError("camera not ready")

    result = safe_callback(sampler)

    assert result.success is False
    assert isinstance(result.error, ValueError)
    assert "camera not ready" in result.stack_trace
    with pytest.raises(ValueError):
        result.raise_if_error()


def test_on_error_receives_exception_and_trace():
    on_error = MagicMock()

    safe_callback(lambda: 1 / 0, on_error=on_error)

    error, stack = on_error.call_args[0]
    assert isinstance(error, ZeroDivisionError)
    assert "ZeroDivisionError" in stack


def test_failing_on_error_is_contained():
    def on_error(error, stack):
        raise RuntimeError("handler bug")

    result = safe_callback(lambda: 1 / 0, on_error=on_error)
    assert result.success is False


def test_raise_if_error_noop_on_success():
    safe_callback(lambda: None).raise_if_error()


def test_failure_logged_under_label(caplog):
    def sampler():
        raise ValueError("camera not ready")

    with caplog.at_level("ERROR", logger=foilview.core.utils.safe_callback._log.name):
        safe_callback(sampler, label="metric sampler")

    assert "metric sampler raised ValueError: camera not ready" in caplog.text


def test_label_keyword_not_passed_to_callback():
    received = {}

    def on_complete(success, message, **kwargs):
        received.update(kwargs)
        return success

    result = safe_callback(on_complete, True, "Already connected", label="connect on_complete")

    assert result.value is True
    assert received == {}


def test_describe_callable():
    def sampler():
        pass

    assert describe_callable(sampler).endswith("sampler")
    assert "partial" in describe_callable(functools.partial(sampler))
