"""Allow-list of operator keys for the remote unlock bridge.

Loaded from YAML:

    keys:
      - name: alice
        public_key: ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAA... alice@laptop
        scope: unlock
        volumes: [/dev/sda2]
      - name: oncall
        public_key: 9vX0kS1m...base64 raw 32 bytes...
        scope: emergency
        allowed_networks: [10.20.0.0/16]

Each key carries exactly one scope:
- unlock: only the unlock command, optionally bound to listed volumes
- emergency: unlock and status on any volume, only from allowed_networks
"""

import base64
import hashlib
import ipaddress
from enum import Enum
from pathlib import Path

import yaml
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from luksvault.core.errors import ConfigurationError


class KeyScope(str, Enum):
    UNLOCK = "unlock"
    EMERGENCY = "emergency"


SCOPE_COMMANDS = {
    KeyScope.UNLOCK: frozenset({"unlock"}),
    KeyScope.EMERGENCY: frozenset({"unlock", "status"}),
}


def parse_public_key(text: str) -> Ed25519PublicKey:
    """Accept OpenSSH ``ssh-ed25519`` lines or base64 raw 32-byte keys."""
    text = text.strip()
    if text.startswith("ssh-ed25519"):
        key = serialization.load_ssh_public_key(text.encode())
        if not isinstance(key, Ed25519PublicKey):
            raise ValueError("Only Ed25519 keys are accepted")
        return key
    raw = base64.b64decode(text, validate=True)
    if len(raw) != 32:
        raise ValueError("Raw Ed25519 public keys are 32 bytes")
    return Ed25519PublicKey.from_public_bytes(raw)


def fingerprint(public_key: Ed25519PublicKey) -> str:
    """OpenSSH-style SHA256 fingerprint of the raw public key."""
    raw = public_key.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)
    return "SHA256:" + base64.b64encode(hashlib.sha256(raw).digest()).decode().rstrip("=")


class AuthorizedKey(BaseModel):
    """One allow-listed operator key."""

    name: str
    public_key: str
    scope: KeyScope
    volumes: list[str] = Field(default_factory=list)
    allowed_networks: list[str] = Field(default_factory=list)

    @field_validator("public_key")
    @classmethod
    def _valid_key(cls, value: str) -> str:
        try:
            parse_public_key(value)
        except UnsupportedAlgorithm as e:
            raise ValueError(f"Unsupported public key: {e}")
        return value

    @field_validator("allowed_networks")
    @classmethod
    def _valid_networks(cls, value: list[str]) -> list[str]:
        for network in value:
            ipaddress.ip_network(network, strict=False)
        return value

    @model_validator(mode="after")
    def _scope_rules(self) -> "AuthorizedKey":
        if self.scope == KeyScope.EMERGENCY and not self.allowed_networks:
            raise ValueError(f"emergency key '{self.name}' must list allowed_networks")
        if self.scope == KeyScope.EMERGENCY and self.volumes:
            raise ValueError(f"emergency key '{self.name}' cannot be bound to volumes")
        return self

    @property
    def key(self) -> Ed25519PublicKey:
        return parse_public_key(self.public_key)

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.key)

    def verify(self, signature: bytes, message: bytes) -> bool:
        try:
            self.key.verify(signature, message)
            return True
        except InvalidSignature:
            return False

    def permits_command(self, command: str) -> bool:
        return command in SCOPE_COMMANDS[self.scope]

    def permits_volume(self, device_id: str) -> bool:
        return not self.volumes or device_id in self.volumes

    def permits_source(self, address: str) -> bool:
        """Emergency keys only from their networks; unlock keys from anywhere."""
        if self.scope != KeyScope.EMERGENCY:
            return True
        try:
            ip = ipaddress.ip_address(address)
        except ValueError:
            return False
        return any(ip in ipaddress.ip_network(n, strict=False) for n in self.allowed_networks)


class AuthorizedKeys:
    """Lookup of authorized keys by fingerprint."""

    def __init__(self, keys: list[AuthorizedKey] | None = None):
        self._by_fingerprint: dict[str, AuthorizedKey] = {}
        for key in keys or []:
            fp = key.fingerprint
            if fp in self._by_fingerprint:
                raise ConfigurationError(f"Duplicate authorized key: {key.name} ({fp})")
            self._by_fingerprint[fp] = key

    def __len__(self) -> int:
        return len(self._by_fingerprint)

    def get(self, fingerprint: str) -> AuthorizedKey | None:
        return self._by_fingerprint.get(fingerprint)

    @classmethod
    def from_dict(cls, data: dict | None) -> "AuthorizedKeys":
        entries = (data or {}).get("keys") or []
        try:
            return cls([AuthorizedKey(**entry) for entry in entries])
        except (ValidationError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid authorized keys: {e}")

    @classmethod
    def load(cls, path: str) -> "AuthorizedKeys":
        """Load the allow-list file.

        Raises:
            ConfigurationError: Missing, unreadable or invalid file
        """
        file = Path(path)
        if not file.exists():
            raise ConfigurationError(f"Authorized keys file not found: {path}")
        try:
            with open(file) as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read authorized keys {path}: {e}")
        return cls.from_dict(data)
