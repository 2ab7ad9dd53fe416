"""Device backends.

- cryptsetup: real block devices through cryptsetup / mount / umount
- simulated: in-memory LUKS model for tests and dev mode
"""

import logging
import os

from luksvault.config import Settings
from luksvault.core.errors import ConfigurationError
from .base import DeviceBackend
from .cryptsetup import CryptsetupBackend
from .simulated import SimulatedBackend

logger = logging.getLogger(__name__)

__all__ = [
    "DeviceBackend",
    "CryptsetupBackend",
    "SimulatedBackend",
    "create_device_backend",
]


def create_device_backend(settings: Settings) -> DeviceBackend:
    """Create the configured device backend.

    Raises:
        ConfigurationError: Unknown backend, or simulated devices without dev mode
    """
    name = settings.device_backend.lower()
    if name == "cryptsetup":
        return CryptsetupBackend(
            ephemeral_dir=settings.ephemeral_dir,
            cryptsetup_path=settings.cryptsetup_path,
            mount_path=settings.mount_path,
            umount_path=settings.umount_path,
        )
    if name == "simulated":
        if not settings.dev_mode:
            raise ConfigurationError("The simulated device backend requires dev_mode")
        state_path = os.path.join(os.path.dirname(settings.key_store_dir), "simulated-devices.json")
        logger.warning(f"Using simulated devices (state in {state_path})")
        return SimulatedBackend(state_path=state_path)
    raise ConfigurationError(
        f"Unknown device backend: {name}. Available backends: cryptsetup, simulated"
    )
