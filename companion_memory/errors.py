"""
Error taxonomy for the cognitive memory engine.

None of these reach the chat path. Each component catches them at its
boundary and degrades to doing less for the current cycle.
"""


class CognitiveEngineError(Exception):
    """Base class for all engine errors."""


class InferenceError(CognitiveEngineError):
    """The reasoning service timed out, rejected the call, or returned an
    unparseable or schema-violating payload. Callers skip the work."""


class StorageConflictError(CognitiveEngineError):
    """A concurrent write raced on the same key. Retried once, then logged."""


class ValidationError(CognitiveEngineError):
    """A single extracted candidate is malformed. Only that candidate is dropped."""


class SchedulingError(CognitiveEngineError):
    """A due trigger could not be dispatched. It stays unsent for the next tick."""
