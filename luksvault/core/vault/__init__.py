"""Key Vault abstraction layer.

Seals per-slot key material under an operator passphrase and persists it:
- File: owner-only JSON records, one per (volume, slot)
- Memory: process memory, tests and development only

Every backend shares the same PBKDF2 + AES-256-GCM sealing, so a record
sealed by one backend unseals with any other.
"""

from .base import KeyVault, KeySlot, SlotPurpose, VaultConfig, VaultBackend, MAX_KEY_SLOTS, check_slot_number
from .file import FileKeyVault
from .memory import InMemoryKeyVault
from .factory import create_key_vault, register_vault_backend
from .ephemeral import ephemeral_key_file, purge_stale_ephemeral

__all__ = [
    "KeyVault",
    "KeySlot",
    "SlotPurpose",
    "VaultConfig",
    "VaultBackend",
    "MAX_KEY_SLOTS",
    "check_slot_number",
    "FileKeyVault",
    "InMemoryKeyVault",
    "create_key_vault",
    "register_vault_backend",
    "ephemeral_key_file",
    "purge_stale_ephemeral",
]
