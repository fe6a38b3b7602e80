from typing import Callable, Generic, List, Optional, Type, TypeVar
from datetime import datetime
from pydantic import BaseModel

from .base import Document, DocumentStore
from ..models.commands import Command, CommandStatus
from ..models.device import DeviceState
from ..models.lorawan import DownlinkRecord, GatewayMetrics, LoRaWANDevice, UplinkRecord
from ..models.presence import DevicePresence
from ..models.targets import ControlTarget
from ..utils.logging import get_logger

logger = get_logger(__name__)

# Type definitions
T = TypeVar('T', bound=BaseModel)


class BaseRepository(Generic[T]):
    """Typed view of one store collection. Subclasses set collection and model."""
    collection: str = ""
    model: Type[BaseModel] = BaseModel

    def __init__(self, store: DocumentStore):
        self.store = store

    def key_of(self, item: T) -> str:
        raise NotImplementedError

    def _load(self, document: Optional[Document]) -> Optional[T]:
        return self.model.model_validate(document) if document is not None else None

    @staticmethod
    def _dump(item: T) -> Document:
        return item.model_dump(mode="json")

    async def get(self, key: str) -> Optional[T]:
        return self._load(await self.store.get(self.collection, key))

    async def insert(self, item: T) -> bool:
        return await self.store.insert(self.collection, self.key_of(item), self._dump(item))

    async def save(self, item: T) -> T:
        """Unconditional write, for records owned by the CRUD layer"""
        await self.store.upsert(self.collection, self.key_of(item), lambda _: self._dump(item))
        return item

    async def update(self, key: str, fn: Callable[[T], Optional[T]]) -> Optional[T]:
        """Atomic read-modify-write; fn returns the new item or None for no change."""
        def mutator(document: Document) -> Optional[Document]:
            updated = fn(self._load(document))
            return self._dump(updated) if updated is not None else None
        return self._load(await self.store.update(self.collection, key, mutator))

    async def upsert(self, key: str, fn: Callable[[Optional[T]], Optional[T]]) -> Optional[T]:
        def mutator(document: Optional[Document]) -> Optional[Document]:
            updated = fn(self._load(document))
            return self._dump(updated) if updated is not None else None
        return self._load(await self.store.upsert(self.collection, key, mutator))

    async def update_many(self, fn: Callable[[T], Optional[T]]) -> List[T]:
        def mutator(document: Document) -> Optional[Document]:
            updated = fn(self._load(document))
            return self._dump(updated) if updated is not None else None
        return [self._load(d) for d in await self.store.update_many(self.collection, mutator)]

    async def find(self, predicate: Optional[Callable[[T], bool]] = None) -> List[T]:
        items = [self._load(d) for d in await self.store.find(self.collection)]
        return [item for item in items if predicate is None or predicate(item)]


class CommandRepository(BaseRepository[Command]):
    collection = "commands"
    model = Command

    def key_of(self, item: Command) -> str:
        return item.command_id

    async def history(self, target_id: str, limit: int = 50) -> List[Command]:
        commands = await self.find(lambda c: c.target_id == target_id)
        commands.sort(key=lambda c: c.issued_at, reverse=True)
        return commands[:limit]

    async def pending_before(self, channel_key: str, issued_at: datetime) -> int:
        pending = await self.find(
            lambda c: c.channel_key == channel_key
            and c.status == CommandStatus.PENDING
            and c.issued_at < issued_at
        )
        return len(pending)


class TargetRepository(BaseRepository[ControlTarget]):
    collection = "targets"
    model = ControlTarget

    def key_of(self, item: ControlTarget) -> str:
        return item.target_id

    async def find_by_index(self, channel_key: str, target_index: int) -> Optional[ControlTarget]:
        matches = await self.find(
            lambda t: t.channel_key == channel_key and t.target_index == target_index
        )
        return matches[0] if matches else None


class PresenceRepository(BaseRepository[DevicePresence]):
    collection = "presence"
    model = DevicePresence

    def key_of(self, item: DevicePresence) -> str:
        return item.device_key


class DeviceRepository(BaseRepository[DeviceState]):
    collection = "devices"
    model = DeviceState

    def key_of(self, item: DeviceState) -> str:
        return item.device_id


class LoRaWANDeviceRepository(BaseRepository[LoRaWANDevice]):
    collection = "lorawan_devices"
    model = LoRaWANDevice

    def key_of(self, item: LoRaWANDevice) -> str:
        return f"{item.application_id}/{item.device_id}"


class UplinkRepository(BaseRepository[UplinkRecord]):
    collection = "uplinks"
    model = UplinkRecord

    def key_of(self, item: UplinkRecord) -> str:
        return item.uplink_id

    async def recent(self, device_key: str, limit: int = 50) -> List[UplinkRecord]:
        uplinks = await self.find(lambda u: u.device_key == device_key)
        uplinks.sort(key=lambda u: u.received_at, reverse=True)
        return uplinks[:limit]


class GatewayRepository(BaseRepository[GatewayMetrics]):
    collection = "gateways"
    model = GatewayMetrics

    def key_of(self, item: GatewayMetrics) -> str:
        return item.gateway_key


class DownlinkRepository(BaseRepository[DownlinkRecord]):
    collection = "downlinks"
    model = DownlinkRecord

    def key_of(self, item: DownlinkRecord) -> str:
        return item.correlation_id


class Repositories:
    """All repositories over one store, passed to components explicitly"""
    def __init__(self, store: DocumentStore):
        self.store = store
        self.commands = CommandRepository(store)
        self.targets = TargetRepository(store)
        self.presence = PresenceRepository(store)
        self.devices = DeviceRepository(store)
        self.lorawan_devices = LoRaWANDeviceRepository(store)
        self.uplinks = UplinkRepository(store)
        self.gateways = GatewayRepository(store)
        self.downlinks = DownlinkRepository(store)
