"""Error taxonomy for the integrity and anti-manipulation services.

Signature mismatches and detected violations are routine outcomes, not
exceptions: see ``TrustState.DISTRUSTED`` and ``Classification``.
"""


class IntegrityError(Exception):
    """Base class for whitelist signing and verification failures."""


class KeyFormatError(IntegrityError):
    """Key material could not be parsed or is not an acceptable RSA key."""


class InvalidPayloadError(IntegrityError):
    """The artifact payload is empty or structurally invalid."""


class SignatureFormatError(InvalidPayloadError):
    """The signature is not a hex string."""


class ConfigMissingError(IntegrityError):
    """A build-time input (document or key file) is missing or unusable."""

    def __init__(self, message, path=None):
        super().__init__(message)
        self.path = path


class TrustGateTimeout(IntegrityError):
    """The trust gate did not settle within the allotted time."""


class EscalationNotifyFailure(Exception):
    """An admin alert could not be delivered."""


class ConcurrentUpdateConflict(Exception):
    """A record changed underneath an optimistic read-modify-write."""

    def __init__(self, message, record_id=None):
        super().__init__(message)
        self.record_id = record_id
