# logtide/domain/errors.py
from __future__ import annotations


class LogtideError(Exception):
    """Base class for every error raised by the pipeline."""


class ConfigurationError(LogtideError):
    """Missing or invalid settings; always fatal, raised before ingestion starts."""


class NoEndpointsConfigured(ConfigurationError):
    pass


class SourceError(LogtideError):
    def __init__(self, message: str, *, endpoint: str | None = None) -> None:
        super().__init__(message)
        self.endpoint = endpoint


class TransientSourceError(SourceError):
    """Timeout, connection refused, 429/5xx: retry or fail over."""


class FatalQueryError(SourceError):
    """Malformed filter or query rejected by the source: never retried."""


class DecodeMismatch(LogtideError):
    """A record does not fit its schema. Caught inside the decoder, never escapes it."""


class SinkWriteError(LogtideError):
    def __init__(self, message: str, *, table: str | None = None) -> None:
        super().__init__(message)
        self.table = table
