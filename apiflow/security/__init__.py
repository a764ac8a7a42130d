"""Credential handling helpers."""

from .redaction import SENSITIVE_HEADERS, redact, redact_headers

__all__ = ["SENSITIVE_HEADERS", "redact", "redact_headers"]
