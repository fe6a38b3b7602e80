import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from iot_fleet.adapters.base import MessageHandler, Payload, PublishResult, TransportAdapter, encode_payload
from iot_fleet.core.components import FleetComponents
from iot_fleet.core.config import FleetConfig
from iot_fleet.core.event_manager import ALL_CHANNELS, EventManager
from iot_fleet.core.scheduler import AsyncCallback, Scheduler, TimerHandle, run_guarded
from iot_fleet.models.targets import AlarmRule, ControlTarget, TargetMode, TargetStatus
from iot_fleet.storage.memory import MemoryStore
from iot_fleet.utils.exceptions import NotConnectedError, TransportError

T0 = datetime(2025, 1, 6, 12, 0, 0, tzinfo=timezone.utc)


class ManualHandle(TimerHandle):
    def __init__(self):
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler(Scheduler):
    """Clock that only moves when a test calls advance()"""

    def __init__(self, start: datetime = T0):
        self.current = start
        self.one_shots: List[Tuple[datetime, AsyncCallback, str, ManualHandle]] = []
        self.periodic: List[List[Any]] = []

    def now(self) -> datetime:
        return self.current

    def call_at(self, when: datetime, callback: AsyncCallback, name: str = "") -> TimerHandle:
        handle = ManualHandle()
        self.one_shots.append((when, callback, name, handle))
        return handle

    def call_every(self, interval: float, callback: AsyncCallback, name: str = "") -> TimerHandle:
        handle = ManualHandle()
        self.periodic.append([self.current + timedelta(seconds=interval), interval, callback, name, handle])
        return handle

    async def advance(self, seconds: float) -> None:
        target = self.current + timedelta(seconds=seconds)
        while True:
            due = [t for t in self.one_shots if t[0] <= target and not t[3].cancelled]
            due += [p for p in self.periodic if p[0] <= target and not p[4].cancelled]
            if not due:
                break
            first = min(due, key=lambda item: item[0])
            self.current = max(self.current, first[0])
            if len(first) == 4:
                self.one_shots.remove(first)
                await run_guarded(first[1], first[2])
            else:
                first[0] = first[0] + timedelta(seconds=first[1])
                await run_guarded(first[2], first[3])
        self.current = target


class FakeTransport(TransportAdapter):
    """Records publishes; set fail_with to make the next publishes fail"""

    def __init__(self):
        self.connected = True
        self.published: List[Tuple[str, bytes, Optional[int]]] = []
        self.subscriptions: List[str] = []
        self.fail_with: Optional[TransportError] = None
        self.handler: Optional[MessageHandler] = None

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def publish(self, topic: str, payload: Payload, qos: Optional[int] = None,
                      retain: bool = False) -> PublishResult:
        if not self.connected:
            return PublishResult.failure(topic, NotConnectedError("Not connected"))
        if self.fail_with is not None:
            return PublishResult.failure(topic, self.fail_with)
        self.published.append((topic, encode_payload(payload), qos))
        return PublishResult.success(topic)

    async def subscribe(self, topic_pattern: str) -> None:
        self.subscriptions.append(topic_pattern)

    @property
    def is_connected(self) -> bool:
        return self.connected

    def set_message_handler(self, handler: MessageHandler) -> None:
        self.handler = handler


class EventRecorder:
    def __init__(self, event_manager: EventManager):
        self.event_manager = event_manager
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []

    async def __call__(self, channel: str, event_type: str, data: Dict[str, Any]) -> None:
        self.events.append((channel, event_type, data))

    async def collect(self) -> List[Tuple[str, str, Dict[str, Any]]]:
        await self.event_manager.drain()
        return self.events

    async def of_type(self, event_type: str) -> List[Tuple[str, str, Dict[str, Any]]]:
        return [e for e in await self.collect() if e[1] == event_type]


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def event_manager():
    return EventManager()


@pytest.fixture
def fleet_config():
    return FleetConfig()


@pytest_asyncio.fixture
async def recorder(event_manager):
    recorder = EventRecorder(event_manager)
    await event_manager.subscribe(ALL_CHANNELS, recorder)
    return recorder


@pytest.fixture
def components(fleet_config, store, transport, scheduler, event_manager):
    return FleetComponents(fleet_config, store, transport, scheduler, event_manager=event_manager)


@pytest.fixture
def repositories(components):
    return components.repositories


@pytest_asyncio.fixture
async def valve(repositories):
    """Valve 1 on manifold M1, manual, with the default FAULT alarm rule enabled"""
    target = ControlTarget(
        target_id="valve-1",
        channel_key="M1",
        target_index=1,
        mode=TargetMode.MANUAL,
        current_status=TargetStatus.OFF,
        alarm_rule=AlarmRule(enabled=True),
    )
    await repositories.targets.save(target)
    return target
