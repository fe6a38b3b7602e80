# Builds the messaging core from its collaborators. Shared by the service
# entry point and the API tests.
from typing import Any, Dict, Optional

from .alarms import AlarmEvaluator
from .commands import CommandQueueManager
from .config import FleetConfig, StorageConfig
from .downlinks import DownlinkCorrelationTracker
from .event_manager import EventManager
from .gateways import GatewayMetricsAggregator
from .presence import PresenceTracker
from .router import TelemetryIngestRouter
from .scheduler import Scheduler, TimerHandle
from ..adapters.base import TransportAdapter
from ..handlers.device_handlers import DeviceMessageHandlers
from ..handlers.lorawan_handlers import LoRaWANMessageHandlers
from ..handlers.manifold_handlers import ManifoldMessageHandlers
from ..storage.base import DocumentStore
from ..storage.database import SQLiteStore
from ..storage.memory import MemoryStore
from ..storage.repositories import Repositories
from ..utils.logging import get_logger

logger = get_logger(__name__)


def create_store(config: StorageConfig) -> DocumentStore:
    if config.backend == "memory":
        return MemoryStore()
    return SQLiteStore(config.path, max_connections=config.max_connections)


class FleetComponents:
    """Every component, wired to one store, one transport and one scheduler"""

    def __init__(self, config: FleetConfig, store: DocumentStore, transport: TransportAdapter,
                 scheduler: Scheduler, event_manager: Optional[EventManager] = None):
        self.config = config
        self.store = store
        self.transport = transport
        self.scheduler = scheduler
        self.event_manager = event_manager or EventManager()
        self.repositories = Repositories(store)
        self._sweeps: Dict[str, TimerHandle] = {}

        timing = config.timing
        self.presence = PresenceTracker(self.repositories, self.event_manager, scheduler,
                                        timeout=timing.presence_timeout)
        self.commands = CommandQueueManager(self.repositories, transport, self.event_manager, scheduler,
                                            ack_timeout=timing.command_ack_timeout)
        self.alarms = AlarmEvaluator(self.repositories, self.event_manager, scheduler)
        self.gateways = GatewayMetricsAggregator(self.repositories, self.event_manager)
        self.downlinks = DownlinkCorrelationTracker(self.repositories, transport, self.event_manager, scheduler,
                                                    tenant=config.lorawan.tenant)

        self.router = TelemetryIngestRouter(
            self.presence,
            DeviceMessageHandlers(self.presence, self.repositories, self.event_manager),
            ManifoldMessageHandlers(self.presence, self.commands, self.alarms, self.repositories,
                                    self.event_manager),
            LoRaWANMessageHandlers(self.presence, self.gateways, self.downlinks, self.repositories,
                                   self.event_manager),
        )
        transport.set_message_handler(self.router.handle_message)

    async def start(self) -> None:
        """Open the store, subscribe, connect and start both sweeps"""
        await self.store.initialize()
        for pattern in self.config.transport.subscribe_topics:
            await self.transport.subscribe(pattern)
        await self.transport.connect()
        self.start_sweeps()

    def start_sweeps(self) -> None:
        timing = self.config.timing
        self._sweeps["presence"] = self.scheduler.call_every(
            timing.presence_sweep_interval, self.presence.run_sweep, name="presence-sweep"
        )
        self._sweeps["command-expiry"] = self.scheduler.call_every(
            timing.command_sweep_interval, self.commands.run_expiry_sweep, name="command-expiry-sweep"
        )

    async def stop(self) -> None:
        for handle in self._sweeps.values():
            handle.cancel()
        self._sweeps.clear()
        self.commands.cancel_timers()
        await self.scheduler.shutdown()
        await self.transport.disconnect()
        await self.event_manager.drain()
        await self.store.close()
        logger.info("Fleet components stopped")

    def status(self) -> Dict[str, Any]:
        return {
            "transport": {
                "backend": self.config.transport.backend,
                "connected": self.transport.is_connected,
            },
            "storage": self.config.storage.backend,
        }
