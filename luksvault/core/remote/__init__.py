"""Remote unlock bridge and operator client."""

from .authorized_keys import AuthorizedKey, AuthorizedKeys, KeyScope, fingerprint
from .bridge import PreBootAuditBuffer, RemoteUnlockBridge, RemoteUnlockSession, SessionOutcome
from .client import RemoteUnlockClient, load_private_key

__all__ = [
    "AuthorizedKey",
    "AuthorizedKeys",
    "KeyScope",
    "fingerprint",
    "PreBootAuditBuffer",
    "RemoteUnlockBridge",
    "RemoteUnlockSession",
    "SessionOutcome",
    "RemoteUnlockClient",
    "load_private_key",
]
