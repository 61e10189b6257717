class SendQueueError(Exception):
    """Base class for scheduler errors."""


class ConfigurationError(SendQueueError, ValueError):
    """Missing, malformed or unresolvable job id, or an invalid setting."""


class ClaimError(SendQueueError, RuntimeError):
    """The batch claim could not acquire exclusivity or commit."""
