"""Remote Unlock Bridge.

A minimal pre-boot network service through which an authorized operator
supplies the vault passphrase of a locked volume.

Restrictions:
- Ed25519 challenge/response against the allow-list, no passwords
- one session at a time; a second connection gets SessionBusy and is closed
- the only accepted payload for unlock is {volume, passphrase}
- ``max_attempts`` failed unlocks end the session
- idle timeout between frames and a hard cap on session length
- responses are generic: never key material, never which step failed

Every attempt is recorded in a bounded in-memory buffer because durable
storage may not be mounted yet. ``flush`` moves buffered events to the
audit table once the host has booted.
"""

import asyncio
import secrets
import ssl
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from luksvault.core.audit import AuditStore
from luksvault.core.errors import LuksVaultError, ProtocolError
from luksvault.core.logging import get_logger, log_context
from luksvault.core.metrics import ACTIVE_REMOTE_SESSIONS, REMOTE_SESSIONS_TOTAL
from luksvault.core.registry import VolumeRegistry
from luksvault.core.unlock_engine import UnlockEngine, VolumeState
from .authorized_keys import AuthorizedKey, AuthorizedKeys
from .protocol import (
    CHALLENGE_SIZE,
    MAX_FRAME_BYTES,
    PROTOCOL_VERSION,
    UNLOCK_FIELDS,
    b64decode,
    b64encode,
    read_frame,
    signed_message,
    write_frame,
)

logger = get_logger(__name__)


class SessionOutcome:
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    BUSY = "busy"
    DENIED = "denied"


@dataclass
class RemoteUnlockSession:
    """State of one operator connection."""
    session_id: str
    started_at: datetime
    source: str
    key_fingerprint: Optional[str] = None
    key_name: Optional[str] = None
    scope: Optional[str] = None
    attempts: int = 0
    outcome: Optional[str] = None


@dataclass
class PreBootAuditBuffer:
    """Bounded buffer of audit events awaiting durable storage.

    When full, the oldest events are dropped and counted.
    """
    max_events: int = 1000
    events: deque = field(init=False)
    dropped: int = 0

    def __post_init__(self):
        self.events = deque(maxlen=self.max_events)

    def __len__(self) -> int:
        return len(self.events)

    def record(
        self,
        event_type: str,
        outcome: str,
        source: str | None = None,
        actor: str | None = None,
        device_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        if len(self.events) == self.max_events:
            self.dropped += 1
        self.events.append({
            "timestamp": datetime.now(timezone.utc),
            "event_type": event_type,
            "outcome": outcome,
            "source": source,
            "actor": actor,
            "device_id": device_id,
            "details": details,
        })

    async def flush(self, audit_store: AuditStore) -> int:
        """Write buffered events to the audit table. Returns the count written."""
        pending = list(self.events)
        if self.dropped:
            pending.append({
                "timestamp": datetime.now(timezone.utc),
                "event_type": "remote_audit_overflow",
                "outcome": "failure",
                "source": None,
                "actor": None,
                "device_id": None,
                "details": {"dropped": self.dropped},
            })
        written = await audit_store.record_many(pending)
        self.events.clear()
        self.dropped = 0
        logger.info("Flushed pre-boot audit buffer", events=written)
        return written


class RemoteUnlockBridge:
    """Single-session TCP server for remote unlocks.

    Usage:
        bridge = RemoteUnlockBridge(engine, registry, AuthorizedKeys.load(path))
        await bridge.start()
        ...
        await bridge.stop()
        await bridge.audit_buffer.flush(audit_store)
    """

    def __init__(
        self,
        engine: UnlockEngine,
        registry: VolumeRegistry,
        authorized_keys: AuthorizedKeys,
        host: str = "0.0.0.0",
        port: int = 2222,
        max_attempts: int = 3,
        idle_timeout: float = 300.0,
        max_session_seconds: float = 600.0,
        ssl_context: ssl.SSLContext | None = None,
        audit_buffer: PreBootAuditBuffer | None = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.engine = engine
        self.registry = registry
        self.authorized_keys = authorized_keys
        self.host = host
        self.port = port
        self.max_attempts = max_attempts
        self.idle_timeout = idle_timeout
        self.max_session_seconds = max_session_seconds
        self.ssl_context = ssl_context
        self.audit_buffer = audit_buffer if audit_buffer is not None else PreBootAuditBuffer()
        self._server: asyncio.AbstractServer | None = None
        self._active: RemoteUnlockSession | None = None
        self.sessions: list[RemoteUnlockSession] = []

    @property
    def active_session(self) -> RemoteUnlockSession | None:
        return self._active

    @property
    def bound_port(self) -> int:
        """Actual listening port (useful with port 0)."""
        if self._server is None or not self._server.sockets:
            return self.port
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._handle,
            self.host,
            self.port,
            ssl=self.ssl_context,
            limit=MAX_FRAME_BYTES,
        )
        logger.info(
            "Remote unlock bridge listening",
            host=self.host,
            port=self.bound_port,
            tls=self.ssl_context is not None,
            keys=len(self.authorized_keys),
        )

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("Remote unlock bridge stopped")

    async def serve_until_unlocked(self, device_id: str, poll_interval: float = 1.0) -> None:
        """Run until ``device_id`` has been unlocked through any channel."""
        await self.start()
        try:
            while await self.engine.state(device_id) == VolumeState.LOCKED:
                await asyncio.sleep(poll_interval)
        finally:
            await self.stop()

    # ==================== Session handling ====================

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        source = peer[0] if peer else "unknown"

        if self._active is not None:
            logger.warning("Rejected concurrent remote session", source=source)
            self.audit_buffer.record("remote_session", SessionOutcome.BUSY, source=source)
            REMOTE_SESSIONS_TOTAL.labels(outcome=SessionOutcome.BUSY).inc()
            try:
                await write_frame(writer, {"type": "error", "kind": "SessionBusy"})
            except ConnectionError:
                pass
            await self._close(writer)
            return

        session = RemoteUnlockSession(
            session_id=str(uuid.uuid4()),
            started_at=datetime.now(timezone.utc),
            source=source,
        )
        self._active = session
        self.sessions.append(session)
        ACTIVE_REMOTE_SESSIONS.inc()

        with log_context(session_id=session.session_id):
            logger.info("Remote session opened", source=source)
            try:
                session.outcome = await asyncio.wait_for(
                    self._run_session(session, reader, writer),
                    timeout=self.max_session_seconds,
                )
            except asyncio.TimeoutError:
                session.outcome = SessionOutcome.TIMEOUT
                await self._send_quietly(writer, {"type": "error", "kind": "timeout"})
            except (ConnectionError, asyncio.IncompleteReadError):
                session.outcome = SessionOutcome.CANCELLED
            except ProtocolError as e:
                logger.warning("Remote protocol violation", error=e.message)
                session.outcome = SessionOutcome.DENIED
                await self._send_quietly(writer, {"type": "error", "kind": "denied"})
            except asyncio.CancelledError:
                session.outcome = SessionOutcome.CANCELLED
                raise
            finally:
                self.audit_buffer.record(
                    "remote_session",
                    session.outcome or SessionOutcome.CANCELLED,
                    source=source,
                    actor=session.key_name,
                    details={
                        "session_id": session.session_id,
                        "key_fingerprint": session.key_fingerprint,
                        "attempts": session.attempts,
                    },
                )
                REMOTE_SESSIONS_TOTAL.labels(outcome=session.outcome or SessionOutcome.CANCELLED).inc()
                ACTIVE_REMOTE_SESSIONS.dec()
                self._active = None
                await self._close(writer)
                logger.info("Remote session closed", outcome=session.outcome, attempts=session.attempts)

    async def _run_session(
        self,
        session: RemoteUnlockSession,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> str:
        challenge = secrets.token_bytes(CHALLENGE_SIZE)
        await write_frame(writer, {
            "type": "hello",
            "version": PROTOCOL_VERSION,
            "challenge": b64encode(challenge),
        })

        key = await self._authenticate(session, reader, challenge)
        if key is None:
            await write_frame(writer, {"type": "error", "kind": "denied"})
            return SessionOutcome.DENIED
        await write_frame(writer, {"type": "auth_result", "status": "ok", "scope": key.scope.value})

        while True:
            try:
                frame = await read_frame(reader, timeout=self.idle_timeout)
            except asyncio.TimeoutError:
                await self._send_quietly(writer, {"type": "error", "kind": "timeout"})
                return SessionOutcome.TIMEOUT
            if frame is None:
                return SessionOutcome.CANCELLED

            command = frame["type"]
            if not key.permits_command(command):
                self.audit_buffer.record(
                    "remote_command", SessionOutcome.DENIED, source=session.source,
                    actor=key.name, details={"command": command, "key_fingerprint": session.key_fingerprint},
                )
                await write_frame(writer, {"type": "result", "status": "denied"})
                continue

            if command == "status":
                await write_frame(writer, {"type": "status", "volumes": await self._status()})
                continue

            unlocked = await self._unlock_while_connected(session, key, frame, reader)
            if unlocked is None:
                return SessionOutcome.CANCELLED
            if unlocked:
                await write_frame(writer, {"type": "result", "status": "ok"})
                return SessionOutcome.SUCCESS

            remaining = self.max_attempts - session.attempts
            await write_frame(writer, {"type": "result", "status": "failed", "attempts_remaining": remaining})
            if remaining <= 0:
                logger.warning("Remote session exhausted unlock attempts", attempts=session.attempts)
                return SessionOutcome.FAILURE

    async def _authenticate(
        self,
        session: RemoteUnlockSession,
        reader: asyncio.StreamReader,
        challenge: bytes,
    ) -> AuthorizedKey | None:
        try:
            frame = await read_frame(reader, timeout=self.idle_timeout)
        except asyncio.TimeoutError:
            self.audit_buffer.record("remote_auth", SessionOutcome.TIMEOUT, source=session.source)
            raise
        except ProtocolError as e:
            self.audit_buffer.record(
                "remote_auth", SessionOutcome.DENIED, source=session.source,
                details={"reason": "malformed_frame", "error": e.message},
            )
            raise
        if frame is None or frame["type"] != "auth":
            self.audit_buffer.record("remote_auth", SessionOutcome.DENIED, source=session.source)
            return None

        fingerprint = frame.get("fingerprint")
        session.key_fingerprint = fingerprint if isinstance(fingerprint, str) else None
        key = self.authorized_keys.get(session.key_fingerprint) if session.key_fingerprint else None
        reason = None
        if key is None:
            reason = "unknown_key"
        elif not self._signature_valid(key, frame.get("signature"), challenge):
            reason = "bad_signature"
        elif not key.permits_source(session.source):
            reason = "source_not_allowed"

        details = {"key_fingerprint": session.key_fingerprint}
        if reason:
            logger.warning("Remote authentication denied", source=session.source, reason=reason)
            self.audit_buffer.record(
                "remote_auth", SessionOutcome.DENIED, source=session.source,
                details={**details, "reason": reason},
            )
            return None

        session.key_name = key.name
        session.scope = key.scope.value
        self.audit_buffer.record(
            "remote_auth", SessionOutcome.SUCCESS, source=session.source, actor=key.name,
            details={**details, "scope": key.scope.value},
        )
        logger.info("Remote operator authenticated", actor=key.name, scope=key.scope.value)
        return key

    @staticmethod
    def _signature_valid(key: AuthorizedKey, encoded: Any, challenge: bytes) -> bool:
        try:
            signature = b64decode(encoded)
        except ProtocolError:
            return False
        return key.verify(signature, signed_message(challenge))

    async def _unlock_while_connected(
        self,
        session: RemoteUnlockSession,
        key: AuthorizedKey,
        frame: dict[str, Any],
        reader: asyncio.StreamReader,
    ) -> Optional[bool]:
        """Run an unlock attempt while watching the connection.

        The operator must wait for the result, so any read completing during
        the attempt means the peer hung up or broke protocol. In both cases the
        attempt is cancelled and a volume it opened is closed again.

        Returns None when the peer disconnected.

        Raises:
            ProtocolError: The peer sent data before the result
        """
        volume_id = frame.get("volume")
        was_locked = await self._is_locked(volume_id)
        unlock = asyncio.create_task(self._attempt_unlock(session, key, frame))
        peer = asyncio.create_task(reader.read(1))
        try:
            done, _ = await asyncio.wait({unlock, peer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (unlock, peer):
                task.cancel()
            await asyncio.gather(unlock, peer, return_exceptions=True)

        if peer not in done:
            return unlock.result()

        data = None if peer.cancelled() or peer.exception() else peer.result()
        if was_locked and not await self._is_locked(volume_id):
            await self._relock(volume_id, key.name)
        if data:
            raise ProtocolError("Data received while an unlock was in progress")
        logger.warning("Operator disconnected during unlock", volume=volume_id)
        return None

    async def _is_locked(self, device_id: Any) -> bool:
        if not isinstance(device_id, str) or not await self.registry.exists(device_id):
            return False
        return await self.engine.state(device_id) == VolumeState.LOCKED

    async def _relock(self, device_id: str, actor: str) -> None:
        try:
            await self.engine.lock(device_id, actor=actor)
        except LuksVaultError as e:
            logger.error("Closing volume after disconnect failed", volume=device_id, error_kind=e.kind)
            self.audit_buffer.record(
                "remote_unlock_rollback", SessionOutcome.FAILURE, actor=actor, device_id=device_id,
                details={"reason": e.kind},
            )
            return
        self.audit_buffer.record(
            "remote_unlock_rollback", SessionOutcome.SUCCESS, actor=actor, device_id=device_id,
        )
        logger.warning("Closed volume opened by a disconnected operator", volume=device_id)

    async def _attempt_unlock(
        self,
        session: RemoteUnlockSession,
        key: AuthorizedKey,
        frame: dict[str, Any],
    ) -> bool:
        volume_id = frame.get("volume")
        passphrase = frame.get("passphrase")
        outcome = SessionOutcome.FAILURE
        reason = None
        try:
            if set(frame) != UNLOCK_FIELDS or not isinstance(volume_id, str) or not isinstance(passphrase, str):
                reason = "malformed"
            elif not key.permits_volume(volume_id):
                reason = "volume_not_permitted"
            elif not await self._remote_eligible(volume_id):
                reason = "volume_not_eligible"
            else:
                await self.engine.unlock(volume_id, passphrase, channel="remote", actor=key.name)
                outcome = SessionOutcome.SUCCESS
        except LuksVaultError as e:
            reason = e.kind
        except asyncio.CancelledError:
            outcome = SessionOutcome.CANCELLED
            reason = "disconnected"
            raise
        finally:
            if outcome == SessionOutcome.FAILURE:
                session.attempts += 1
            self.audit_buffer.record(
                "remote_unlock_attempt",
                outcome,
                source=session.source,
                actor=key.name,
                device_id=volume_id if isinstance(volume_id, str) else None,
                details={
                    "session_id": session.session_id,
                    "key_fingerprint": session.key_fingerprint,
                    "attempt": session.attempts,
                    "reason": reason,
                },
            )
        if reason:
            logger.warning("Remote unlock attempt failed", attempt=session.attempts, reason=reason)
        return outcome == SessionOutcome.SUCCESS

    async def _remote_eligible(self, device_id: str) -> bool:
        if not await self.registry.exists(device_id):
            return False
        return (await self.registry.lookup(device_id)).remote_unlock_eligible

    async def _status(self) -> list[dict[str, str]]:
        return [
            {"device_id": v.device_id, "state": (await self.engine.state(v.device_id)).value}
            for v in await self.registry.list()
            if v.remote_unlock_eligible
        ]

    @staticmethod
    async def _send_quietly(writer: asyncio.StreamWriter, message: dict[str, Any]) -> None:
        try:
            await write_frame(writer, message)
        except (ConnectionError, RuntimeError):
            pass

    @staticmethod
    async def _close(writer: asyncio.StreamWriter) -> None:
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, ssl.SSLError):
            pass
