"""
Client registry: in-process map of client_id -> ClientRecord, written through to storage.
The map is authoritative inside this process, so a completed put is what the next get sees.
"""
import logging
from typing import Optional

from powerwatch.models import ClientRecord
from powerwatch.storage import StorageAdapter

logger = logging.getLogger("powerwatch.registry")


class ClientRegistry:
    def __init__(self, storage: StorageAdapter) -> None:
        self._storage = storage
        self._clients: dict[str, ClientRecord] = {}

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, client_id: str) -> bool:
        return client_id in self._clients

    def load(self, clients: dict[str, ClientRecord]) -> None:
        self._clients = dict(clients)

    async def get(self, client_id: str) -> Optional[ClientRecord]:
        return self._clients.get(client_id)

    async def put(self, client_id: str, record: ClientRecord) -> None:
        self._clients[client_id] = record
        await self._storage.save_client(client_id, record)

    async def list_all(self) -> list[tuple[str, ClientRecord]]:
        return sorted(self._clients.items())

    async def remove(self, client_id: str) -> None:
        await self._storage.delete_client(client_id)
        self._clients.pop(client_id, None)
