"""LuksVault - Disk Encryption Key Lifecycle Manager.

Manages the key material of LUKS-encrypted hosts:
- Registry of encrypted volumes and their cipher parameters
- Passphrase-sealed key slot vault (file or in-memory backends)
- Unlock / mount / unmount / lock state machine
- Pre-boot remote unlock bridge with public key allow-listing
- Policy-driven key rotation with add-before-remove ordering
- LUKS header backup and restore
"""

__version__ = "0.1.0"
__author__ = "LuksVault Contributors"
