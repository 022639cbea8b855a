"""Secret redaction for log output.

Two sources of secrets: values of well-known env vars, and values registered
at runtime (tokens read from kubeconfig files, for instance).
"""

import logging
import os
import re

# Env vars whose values should be redacted from all output
_SECRET_ENV_VARS = [
    "PREVIEWDOCK_TELEMETRY_KEY",
    "KUBE_TOKEN",
    "GOOGLE_APPLICATION_CREDENTIALS",
    "CLOUDSDK_AUTH_ACCESS_TOKEN",
]

_MIN_SECRET_LENGTH = 8  # skip short values to avoid false positives

_BEARER = re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+")

_registered: set[str] = set()
_patterns: list[re.Pattern] | None = None


def register_secret(value):
    """Redact *value* from every later log record."""
    global _patterns
    if value and len(value) >= _MIN_SECRET_LENGTH and value not in _registered:
        _registered.add(value)
        _patterns = None


def _get_patterns() -> list[re.Pattern]:
    global _patterns
    if _patterns is None:
        values = {v for v in (os.environ.get(var, "") for var in _SECRET_ENV_VARS) if len(v) >= _MIN_SECRET_LENGTH}
        values |= _registered
        # Longer values first so a secret containing another is fully masked
        _patterns = [re.compile(re.escape(v)) for v in sorted(values, key=len, reverse=True)]
    return _patterns


def redact_secrets(text: str) -> str:
    """Replace known secret values and bearer tokens with '***'."""
    for pattern in _get_patterns():
        text = pattern.sub("***", text)
    return _BEARER.sub(r"\1***", text)


class SecretRedactingFilter(logging.Filter):
    """Logging filter that masks secrets in the message and its args."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact_secrets(str(record.msg))
        if isinstance(record.args, dict):
            record.args = {k: redact_secrets(v) if isinstance(v, str) else v for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(redact_secrets(a) if isinstance(a, str) else a for a in record.args)
        return True
