"""Error taxonomy for the key lifecycle manager.

Every fallible operation raises a subclass of ``LuksVaultError``. The
``kind`` attribute is the stable, machine-readable name surfaced by the
CLI; ``exit_code`` groups kinds by category:

- Configuration errors (2): rejected at creation time, never coerced
- Authentication errors (4): distinct from I/O so attempt counters work
- State errors (5): illegal state-machine transitions
- Integrity errors (6): fatal to the operation, never auto-corrected
- Resource errors (7): policy-enforced invariant violations
- Not found (8)
"""


class LuksVaultError(Exception):
    """Base exception for all key manager errors."""

    kind = "Error"
    exit_code = 1

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


# ==================== Configuration ====================

class ConfigurationError(LuksVaultError):
    """Invalid configuration."""
    kind = "ConfigurationError"
    exit_code = 2


class InvalidCipherSpec(ConfigurationError):
    """Unsupported algorithm / key size / hash combination."""
    kind = "InvalidCipherSpec"


class InvalidRotationPolicy(ConfigurationError):
    """Rotation policy that could never rotate before hard expiry."""
    kind = "InvalidRotationPolicy"


# ==================== Authentication ====================

class AuthError(LuksVaultError):
    """Authentication failed."""
    kind = "AuthError"
    exit_code = 4


class AuthenticationFailed(AuthError):
    """Sealed blob could not be opened: wrong passphrase or tampered data."""
    kind = "AuthenticationFailed"


class WrongPassphrase(AuthError):
    """No key slot of the volume opens with the supplied passphrase."""
    kind = "WrongPassphrase"


# ==================== State ====================

class StateError(LuksVaultError):
    """Illegal state transition."""
    kind = "StateError"
    exit_code = 5


class AlreadyUnlocked(StateError):
    kind = "AlreadyUnlocked"


class NotUnlocked(StateError):
    kind = "NotUnlocked"


class StillMounted(StateError):
    kind = "StillMounted"


class Busy(StateError):
    """Volume lock held by another operation, or open file handles."""
    kind = "Busy"


class SessionBusy(StateError):
    """A remote unlock session is already in progress."""
    kind = "SessionBusy"


class RestoreNotConfirmed(StateError):
    """Destructive header restore attempted without explicit confirmation."""
    kind = "RestoreNotConfirmed"


class ApprovalRequired(StateError):
    """Rotation is waiting for an external approval."""
    kind = "ApprovalRequired"


# ==================== Integrity ====================

class IntegrityError(LuksVaultError):
    """Data failed an integrity check."""
    kind = "IntegrityError"
    exit_code = 6


class IncompatibleBackup(IntegrityError):
    kind = "IncompatibleBackup"


class BackupIntegrityError(IntegrityError):
    kind = "BackupIntegrityError"


class RotationVerificationFailed(IntegrityError):
    """The freshly added key slot did not unlock the device."""
    kind = "RotationVerificationFailed"


# ==================== Resource ====================

class ResourceError(LuksVaultError):
    """Invariant would be violated."""
    kind = "ResourceError"
    exit_code = 7


class ActiveKeysExist(ResourceError):
    kind = "ActiveKeysExist"


class LastKeySlot(ResourceError):
    """Refusing to remove the only remaining key slot."""
    kind = "LastKeySlot"


class NoFreeSlot(ResourceError):
    kind = "NoFreeSlot"


class InvalidSlot(ResourceError):
    """Slot number outside the header's keyslot range."""
    kind = "InvalidSlot"


class EmptySecret(ResourceError):
    """Empty passphrase or key material."""
    kind = "EmptySecret"


class AlreadyRegistered(ResourceError):
    kind = "AlreadyRegistered"


# ==================== Not found ====================

class NotFound(LuksVaultError):
    kind = "NotFound"
    exit_code = 8


class VolumeNotFound(NotFound):
    kind = "VolumeNotFound"


class DeviceNotFound(NotFound):
    kind = "DeviceNotFound"


class SlotNotFound(NotFound):
    kind = "SlotNotFound"


class BackupNotFound(NotFound):
    kind = "BackupNotFound"


# ==================== I/O ====================

class VaultIOError(LuksVaultError):
    """Reading or writing the key store failed."""
    kind = "VaultIOError"


class DeviceError(LuksVaultError):
    """The device backend (cryptsetup, mount) reported a failure."""
    kind = "DeviceError"


class ProtocolError(LuksVaultError):
    """Malformed or unexpected frame on the remote unlock channel."""
    kind = "ProtocolError"
