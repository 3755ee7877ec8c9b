"""Error types for the activities module."""


class CompletionInvariantError(ValueError):
    """Raised when an Activity would violate the done <=> completed_at invariant.

    This is a programming error in an updater, not a user-input condition.
    Unknown ids and similar malformed requests are no-ops, never errors.
    """
