"""Startup wiring.

All components are constructed here, once, and passed to each other
explicitly. Nothing in the package holds a module-level component
instance; tests build their own ``Services`` with in-memory parts.
"""

import os
import ssl
import stat
from dataclasses import dataclass
from typing import Callable, Optional

from luksvault.config import Settings
from luksvault.core.audit import AuditStore
from luksvault.core.devices import DeviceBackend, create_device_backend
from luksvault.core.errors import ConfigurationError
from luksvault.core.header_backup import HeaderBackupManager
from luksvault.core.keyslots import KeySlotService
from luksvault.core.locks import VolumeLocks
from luksvault.core.logging import get_logger
from luksvault.core.notifications import LogSink, MemorySink, Notifier, NotificationSink, WebhookSink
from luksvault.core.registry import VolumeRegistry
from luksvault.core.remote import AuthorizedKeys, PreBootAuditBuffer, RemoteUnlockBridge
from luksvault.core.rotation import RotationApprovals, RotationScheduler
from luksvault.core.unlock_engine import UnlockEngine
from luksvault.core.vault import KeyVault, create_key_vault, purge_stale_ephemeral
from luksvault.database import Database

logger = get_logger(__name__)


def read_passphrase_file(path: str) -> str:
    """Read a passphrase file, dropping the trailing newline.

    Raises:
        ConfigurationError: Missing, empty or unreadable file
    """
    try:
        mode = os.stat(path).st_mode
        with open(path, encoding="utf-8") as f:
            passphrase = f.read().rstrip("\r\n")
    except OSError as e:
        raise ConfigurationError(f"Cannot read passphrase file {path}: {e}")
    if mode & (stat.S_IRWXG | stat.S_IRWXO):
        logger.warning("Passphrase file is accessible by group or others", path=path)
    if not passphrase:
        raise ConfigurationError(f"Passphrase file {path} is empty")
    return passphrase


def passphrase_provider_from_settings(settings: Settings) -> Optional[Callable[[], str]]:
    if not settings.vault_passphrase_file:
        return None
    path = settings.vault_passphrase_file
    return lambda: read_passphrase_file(path)


def server_ssl_context(settings: Settings) -> ssl.SSLContext | None:
    if not settings.tls_cert_file:
        return None
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    try:
        context.load_cert_chain(settings.tls_cert_file, settings.tls_key_file)
    except (OSError, ssl.SSLError) as e:
        raise ConfigurationError(f"Cannot load TLS certificate: {e}")
    return context


@dataclass
class Services:
    """The wired component graph."""
    settings: Settings
    db: Database
    vault: KeyVault
    backend: DeviceBackend
    locks: VolumeLocks
    registry: VolumeRegistry
    audit: AuditStore
    notifier: Notifier
    events: MemorySink
    keyslots: KeySlotService
    engine: UnlockEngine
    backups: HeaderBackupManager
    approvals: RotationApprovals
    rotation: RotationScheduler

    def build_bridge(
        self,
        authorized_keys: AuthorizedKeys | None = None,
        audit_buffer: PreBootAuditBuffer | None = None,
    ) -> RemoteUnlockBridge:
        settings = self.settings
        if authorized_keys is None:
            authorized_keys = AuthorizedKeys.load(settings.authorized_keys_file)
        if audit_buffer is None:
            audit_buffer = PreBootAuditBuffer(settings.remote_audit_buffer_size)
        return RemoteUnlockBridge(
            engine=self.engine,
            registry=self.registry,
            authorized_keys=authorized_keys,
            host=settings.remote_host,
            port=settings.remote_port,
            max_attempts=settings.remote_max_attempts,
            idle_timeout=settings.remote_idle_timeout_seconds,
            max_session_seconds=settings.remote_max_session_seconds,
            ssl_context=server_ssl_context(settings),
            audit_buffer=audit_buffer,
        )

    async def close(self) -> None:
        await self.rotation.stop()
        await self.notifier.close()
        await self.vault.close()
        await self.db.close()


async def build_services(
    settings: Settings,
    vault: KeyVault | None = None,
    backend: DeviceBackend | None = None,
    db: Database | None = None,
    sinks: list[NotificationSink] | None = None,
    passphrase_provider: Callable[[], str] | None = None,
) -> Services:
    """Construct and initialize every component.

    Overrides are used by tests and by dev mode.
    """
    if db is None:
        db = Database(settings.database_url)
    await db.init()

    vault = vault or create_key_vault(settings)
    await vault.initialize()
    purge_stale_ephemeral(settings.ephemeral_dir)

    backend = backend or create_device_backend(settings)
    locks = VolumeLocks(wait_seconds=settings.lock_wait_seconds)
    registry = VolumeRegistry(db)
    audit = AuditStore(db)

    events = MemorySink()
    if sinks is None:
        sinks = [LogSink()]
        if settings.notify_webhook_url:
            sinks.append(WebhookSink(
                settings.notify_webhook_url,
                retries=settings.notify_retries,
                timeout=settings.notify_timeout_seconds,
            ))
    notifier = Notifier([*sinks, events])

    keyslots = KeySlotService(registry, vault, backend, locks, audit)
    engine = UnlockEngine(registry, vault, backend, locks, keyslots, audit)
    backups = HeaderBackupManager(
        registry, backend, locks, engine,
        backup_dir=settings.backup_dir,
        retention=settings.backup_retention,
        notifier=notifier,
        audit=audit,
    )
    approvals = RotationApprovals(db)
    rotation = RotationScheduler(
        registry, vault, keyslots, locks, backups, approvals,
        notifier=notifier,
        passphrase_provider=passphrase_provider or passphrase_provider_from_settings(settings),
        audit=audit,
    )
    logger.debug("Services initialized", vault=settings.vault_backend, devices=backend.name)
    return Services(
        settings=settings,
        db=db,
        vault=vault,
        backend=backend,
        locks=locks,
        registry=registry,
        audit=audit,
        notifier=notifier,
        events=events,
        keyslots=keyslots,
        engine=engine,
        backups=backups,
        approvals=approvals,
        rotation=rotation,
    )
