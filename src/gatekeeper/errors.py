"""Error taxonomy for the admission subsystem.

Only infrastructure and input failures use exceptions. Quota and rate
denials are ordinary ``AdmissionResult`` values.
"""


class GatekeeperError(Exception):
    """Base class for admission control errors."""

    pass


class StoreUnavailable(GatekeeperError):
    """Raised when the backing store is unreachable or timed out."""

    def __init__(self, message: str = "Admission store unavailable", backend: str | None = None) -> None:
        super().__init__(message)
        self.backend = backend


class InvalidIdentity(GatekeeperError):
    """Raised for an empty or malformed identity key."""

    pass


class ClockSkew(GatekeeperError):
    """Raised when a stored timestamp cannot be trusted against the clock."""

    pass
