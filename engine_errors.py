"""
Exception types raised by the journey engine.

All of them derive from ValueError so that pydantic validators can raise
them directly and callers that already guard configuration parsing with
``except ValueError`` keep working.
"""

from typing import List, Optional


class JourneyEngineError(ValueError):
    """Base class for every engine-specific failure."""


class ConfigurationError(JourneyEngineError):
    """Invalid profile, generator or runner configuration (fatal at construction)."""


class DataSourceError(JourneyEngineError):
    """A profile row source could not be found, read or parsed."""


class TransformError(JourneyEngineError):
    """A transform expression was rejected by the sandbox or failed to evaluate."""


class JsonPathError(JourneyEngineError):
    """A JSONPath expression could not be parsed."""


class JourneyStructureError(JourneyEngineError):
    """A journey references step ids that do not exist."""

    def __init__(self, message: str, issues: Optional[List] = None):
        super().__init__(message)
        self.issues = issues or []
