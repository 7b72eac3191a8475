"""Exception taxonomy for the sampling pipeline."""

from __future__ import annotations


class SocwatchError(Exception):
    """Base class for all socwatch errors."""


class ConfigError(SocwatchError):
    """Invalid configuration, rejected before the pipeline starts."""


class SpawnError(SocwatchError):
    """The sampling child could not be created. Fatal, never retried."""


class MalformedRecord(SocwatchError):
    """A delimited record failed structural or type validation.

    Carried inside a ParseResult rather than raised; parsing continues at the
    next record.
    """

    def __init__(self, reason: str, sequence: int = 0, size: int = 0) -> None:
        super().__init__(reason)
        self.reason = reason
        self.sequence = sequence
        self.size = size


class RecoverableFailure(SocwatchError):
    """The child exited unexpectedly; handled by retry with backoff."""

    def __init__(self, status: int | None, attempt: int) -> None:
        super().__init__(f"sampler exited with status {status} (attempt {attempt})")
        self.status = status
        self.attempt = attempt


class FatalFailure(SocwatchError):
    """Retry budget exhausted, or the child could not be reclaimed."""
