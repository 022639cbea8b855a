"""Tests for secret redaction in log output."""

import logging

import pytest

from previewdock import redact
from previewdock.redact import SecretRedactingFilter, redact_secrets, register_secret


@pytest.fixture(autouse=True)
def reset_registry(monkeypatch):
    monkeypatch.setattr(redact, "_registered", set())
    monkeypatch.setattr(redact, "_patterns", None)
    for var in redact._SECRET_ENV_VARS:
        monkeypatch.delenv(var, raising=False)


def test_env_var_values_are_redacted(monkeypatch):
    monkeypatch.setenv("KUBE_TOKEN", "supersecrettoken")
    assert redact_secrets("token=supersecrettoken") == "token=***"


def test_short_values_are_ignored(monkeypatch):
    monkeypatch.setenv("KUBE_TOKEN", "abc")
    assert redact_secrets("abc") == "abc"


def test_registered_secret():
    assert redact_secrets("value s3cr3t-value") == "value s3cr3t-value"
    register_secret("s3cr3t-value")
    assert redact_secrets("value s3cr3t-value") == "value ***"


def test_longer_secret_masked_first():
    register_secret("abcdefgh")
    register_secret("abcdefgh-and-more")
    assert redact_secrets("abcdefgh-and-more") == "***"


def test_bearer_tokens():
    assert redact_secrets("Authorization: Bearer eyJhbGciOi.abc") == "Authorization: Bearer ***"


def test_filter_masks_message_and_args():
    register_secret("hunter2-hunter2")
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "login %s with hunter2-hunter2", ("hunter2-hunter2",), None)
    assert SecretRedactingFilter().filter(record)
    assert record.getMessage() == "login *** with ***"
