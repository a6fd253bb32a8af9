from __future__ import annotations


class PagescribeError(RuntimeError):
    pass


class ConfigurationError(PagescribeError):
    """Invalid page range, empty endpoint pool or bad numeric setting."""


class TransportError(PagescribeError):
    """Request submission failed, non-success status, or truncated stream."""


class DecodeError(PagescribeError):
    """A stream line that is not a valid record. Never leaves the decoder."""


class PersistenceError(PagescribeError):
    """An artifact could not be written or removed."""
