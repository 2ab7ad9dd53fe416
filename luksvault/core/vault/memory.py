"""In-memory key vault for tests and development.

Holds sealed records in process memory only. Sealing is identical to the
file backend, so behaviour differs only in durability.
"""

from luksvault.core.errors import SlotNotFound
from .base import KeySlot, KeyVault, VaultConfig


class InMemoryKeyVault(KeyVault):
    """Key vault keeping sealed slot records in a dict."""

    def __init__(self, config: VaultConfig):
        super().__init__(config)
        self._records: dict[tuple[str, int], KeySlot] = {}

    async def store(self, record: KeySlot) -> None:
        self._records[(record.device_id, record.slot)] = record

    async def load(self, device_id: str, slot: int) -> KeySlot:
        try:
            return self._records[(device_id, slot)]
        except KeyError:
            raise SlotNotFound(f"No key slot {slot} for {device_id}")

    async def delete(self, device_id: str, slot: int) -> None:
        if self._records.pop((device_id, slot), None) is None:
            raise SlotNotFound(f"No key slot {slot} for {device_id}")

    async def list_slots(self, device_id: str) -> list[KeySlot]:
        return sorted(
            (r for (dev, _), r in self._records.items() if dev == device_id),
            key=lambda r: r.slot,
        )
