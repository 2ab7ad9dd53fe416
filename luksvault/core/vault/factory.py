"""Key vault factory.

Creates the configured vault backend. Additional backends (for example an
HSM-backed store) plug in through ``register_vault_backend`` without
modifying this module.
"""

import logging

from luksvault.config import Settings
from luksvault.core.errors import ConfigurationError
from .base import KeyVault, VaultBackend, VaultConfig
from .file import FileKeyVault
from .memory import InMemoryKeyVault

logger = logging.getLogger(__name__)

# Registry of vault backends
_backends: dict[str, type[KeyVault]] = {
    VaultBackend.FILE.value: FileKeyVault,
    VaultBackend.MEMORY.value: InMemoryKeyVault,
}


def register_vault_backend(name: str, backend_class: type[KeyVault]) -> None:
    """Register a key vault implementation.

    Args:
        name: Backend identifier used in LUKSVAULT_VAULT_BACKEND
        backend_class: Class implementing KeyVault
    """
    _backends[name] = backend_class
    logger.info(f"Registered key vault backend: {name}")


def available_backends() -> list[str]:
    return sorted(_backends)


def config_from_settings(settings: Settings) -> VaultConfig:
    """Build vault configuration from settings."""
    return VaultConfig(
        backend=settings.vault_backend.lower(),
        kdf_iterations=settings.kdf_iterations,
        path=settings.key_store_dir,
    )


def create_key_vault(settings: Settings) -> KeyVault:
    """Create the configured key vault.

    Raises:
        ConfigurationError: Unknown backend
    """
    name = settings.vault_backend.lower()
    backend_class = _backends.get(name)
    if backend_class is None:
        raise ConfigurationError(
            f"Unknown key vault backend: {name}. "
            f"Available backends: {', '.join(available_backends())}"
        )
    if name == VaultBackend.MEMORY.value and settings.is_production:
        raise ConfigurationError("The in-memory key vault cannot be used in production")

    vault = backend_class(config_from_settings(settings))
    logger.info(f"Created key vault: {name}")
    return vault
