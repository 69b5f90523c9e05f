"""Exception taxonomy shared by the analytics services.

Insufficient sample sizes are not errors: analyzers return results flagged with
``statistically_significant = False`` instead of raising.
"""


class AnalyticsError(Exception):
    """Base class for analytics engine errors."""
    pass


class NotFoundError(AnalyticsError):
    """Raised when a wallet, project or cohort id cannot be resolved."""

    def __init__(self, kind: str, identifier):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class InvalidTransitionError(AnalyticsError):
    """Raised when a privacy mode change targets an unrecognized mode."""
    pass


class UpstreamUnavailableError(AnalyticsError):
    """Raised when a collaborator call times out or keeps failing."""
    pass


class ConcurrentUpdateConflictError(AnalyticsError):
    """Raised when an optimistic wallet write loses its retry against fresh state."""
    pass


class PrivacyViolationError(AnalyticsError):
    """Raised when a record reaches the release path without an owning wallet."""
    pass


class MalformedTransactionError(AnalyticsError):
    """Raised when a raw transaction is missing required fields."""
    pass
