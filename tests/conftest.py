"""Test configuration and fixtures."""

import os
import pytest

# Set up test environment variables BEFORE importing luksvault modules
os.environ.setdefault("LUKSVAULT_DEV_MODE", "true")
os.environ.setdefault("LUKSVAULT_KDF_ITERATIONS", "100000")

from luksvault.config import Settings
from luksvault.core.devices import SimulatedBackend
from luksvault.core.registry import CipherSpec
from luksvault.core.services import build_services
from luksvault.core.vault import InMemoryKeyVault, VaultConfig
from luksvault.database import Database

DEVICE = "/dev/sim0"
MOUNT_POINT = "/mnt/sim0"
PASSPHRASE = "correct horse battery staple"

# Lowest accepted PBKDF2 cost keeps tests fast
TEST_KDF_ITERATIONS = 100_000


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing every path into a temporary directory."""
    return Settings(
        dev_mode=True,
        database_url="sqlite+aiosqlite:///:memory:",
        vault_backend="memory",
        key_store_dir=str(tmp_path / "keys"),
        ephemeral_dir=str(tmp_path / "ephemeral"),
        kdf_iterations=TEST_KDF_ITERATIONS,
        device_backend="simulated",
        backup_dir=str(tmp_path / "header-backups"),
        backup_retention=5,
        remote_host="127.0.0.1",
        remote_port=0,
        remote_idle_timeout_seconds=10,
        remote_max_session_seconds=30,
        authorized_keys_file=str(tmp_path / "authorized_keys.yaml"),
    )


@pytest.fixture
def vault() -> InMemoryKeyVault:
    return InMemoryKeyVault(VaultConfig(backend="memory", kdf_iterations=TEST_KDF_ITERATIONS))


@pytest.fixture
def backend() -> SimulatedBackend:
    """Simulated devices with one blank disk attached."""
    sim = SimulatedBackend()
    sim.add_device(DEVICE)
    return sim


@pytest.fixture
async def db():
    """In-memory registry database."""
    database = Database("sqlite+aiosqlite:///:memory:")
    await database.init()
    yield database
    await database.close()


@pytest.fixture
async def services(settings, vault, backend, db):
    """Fully wired components over in-memory storage and simulated devices."""
    svc = await build_services(
        settings,
        vault=vault,
        backend=backend,
        db=db,
        sinks=[],
        passphrase_provider=lambda: PASSPHRASE,
    )
    yield svc
    await svc.close()


@pytest.fixture
async def volume(services):
    """A registered volume with no key slots yet."""
    return await services.registry.register(
        DEVICE,
        CipherSpec("aes-xts-plain64", 512, "sha256"),
        mount_point=MOUNT_POINT,
        remote_unlock_eligible=True,
    )


@pytest.fixture
async def enrolled(services, volume):
    """A registered, formatted volume with its primary slot 0 enrolled."""
    await services.keyslots.enroll(DEVICE, PASSPHRASE, format_device=True)
    return volume
