class ConciergeError(Exception):
    """Base class for all engine errors."""


class ValidationError(ConciergeError):
    """Malformed, empty or oversized input. Rejected before any provider call."""


class ProviderUnavailable(ConciergeError):
    """A named external capability failed or timed out."""

    def __init__(self, service: str, reason: str = ""):
        self.service = service
        self.reason = reason
        message = f"{service} unavailable"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class InvalidInput(ProviderUnavailable):
    """The provider rejected the payload itself (bad audio, bad text)."""


class InvalidVoice(ProviderUnavailable):
    """The requested synthesis voice does not exist for the provider."""


class ServiceCircuitOpen(ProviderUnavailable):
    """Fail-fast state of a tripped circuit breaker."""

    def __init__(self, service: str, retry_after: float = 0.0):
        self.retry_after = retry_after
        super().__init__(service, f"circuit open, retry after {retry_after:.1f}s")


class SynthesisFailed(ProviderUnavailable):
    """Every speech synthesis stage failed.

    ``transient`` is False when all failures were caused by the request itself
    (unknown voice, rejected text), in which case retrying cannot help.
    """

    def __init__(self, reason: str = "", transient: bool = True):
        self.transient = transient
        super().__init__("tts", reason)


class TurnFailed(ConciergeError):
    """No usable text could be obtained for a turn and no prior context exists."""
