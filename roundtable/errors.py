from __future__ import annotations


class RoundtableError(Exception):
    """Base class for orchestration errors. None of these ever end a session."""


class GenerationFailure(RoundtableError):
    """The text-generation call was rejected or returned nothing usable."""


class ConfigurationError(RoundtableError):
    """Invalid turn-taking mode, speaking mode, unknown party or member."""


class StateInconsistency(RoundtableError):
    """No eligible speaker could be found for the current topology."""


class MalformedAnalysis(RoundtableError):
    """An analysis response could not be parsed as JSON."""
