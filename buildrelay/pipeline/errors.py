from __future__ import annotations


class RelayError(RuntimeError):
    """Base class for errors that abort an invocation."""


class ConfigurationError(RelayError):
    """The build version or the relay configuration cannot be read."""


class ResumptionError(RelayError):
    """A requested checkpoint is absent, unreadable or inconsistent."""


class ArchiveError(RelayError):
    """Creating or extracting an archive failed."""
