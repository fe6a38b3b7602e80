# src/iot_fleet/__main__.py
import asyncio
import signal
import sys
from pathlib import Path
from typing import Dict, Any, Optional
from fastapi import FastAPI
from hypercorn.asyncio import serve
from hypercorn.config import Config as HyperConfig
import traceback

from iot_fleet.adapters.factory import create_transport
from iot_fleet.api.routes import create_api
from iot_fleet.core.components import FleetComponents, create_store
from iot_fleet.core.config import ConfigManager, FleetConfig, create_default_config
from iot_fleet.core.event_manager import ALL_CHANNELS, EventManager
from iot_fleet.core.scheduler import AsyncioScheduler
from iot_fleet.utils.logging import setup_logging, get_logger
from iot_fleet.utils.exceptions import ConfigurationError, InitializationError, TransportError


class APIServer:
    """Handles API server initialization and management"""

    def __init__(self, config: FleetConfig, shutdown_event: asyncio.Event):
        self.config = config
        self.shutdown_event = shutdown_event
        self.logger = get_logger("API Server")
        self.app: Optional[FastAPI] = None

    async def initialize(self, components: FleetComponents) -> FastAPI:
        """Initialize FastAPI application with routes"""
        try:
            self.app = create_api(components)
            # forward every broadcast to the websocket sessions
            await components.event_manager.subscribe(ALL_CHANNELS, self.app.state.ws_manager.on_event)
            return self.app
        except Exception:
            raise InitializationError(f"Failed to initialize API server: {traceback.format_exc()}")

    async def start(self):
        """Start the API server"""
        hypercorn_config = HyperConfig()
        try:
            host = self.config.api.host
            port = self.config.api.port
            hypercorn_config.bind = [f"{host}:{port}"]

            async def shutdown_trigger():
                await self.shutdown_event.wait()
                return

            self.logger.info(f"Starting API server on {host}:{port}")
            await serve(self.app, hypercorn_config, shutdown_trigger=shutdown_trigger)
        except Exception:
            self.logger.error(f"Failed to start API server: {traceback.format_exc()}")
            raise


class IoTFleetApp:
    """Main fleet messaging service"""

    def __init__(self, config_path: str):
        self.logger = get_logger("Main App")
        try:
            self.raw_config: Dict[str, Any] = ConfigManager.load_config(config_path)
            setup_logging(self.raw_config.get('logging', {}))
            self.config = ConfigManager.parse(self.raw_config)
        except ConfigurationError:
            self.logger.error(f"Configuration error: {traceback.format_exc()}")
            sys.exit(1)

        self.shutdown_event = asyncio.Event()
        self.event_manager = EventManager()
        self.api_server = APIServer(self.config, self.shutdown_event)

        # Components to be initialized later
        self.components: Optional[FleetComponents] = None
        self._event_task: Optional[asyncio.Task] = None
        self._stopping = False

    async def initialize_components(self):
        """Initialize all application components"""
        try:
            self._event_task = asyncio.create_task(self.event_manager.process_events())

            transport = create_transport(self.raw_config['transport'])
            self.components = FleetComponents(
                self.config,
                create_store(self.config.storage),
                transport,
                AsyncioScheduler(),
                event_manager=self.event_manager,
            )
            await self.api_server.initialize(self.components)
            await self.components.start()

            self.logger.info("All components initialized successfully")
        except (ConfigurationError, TransportError):
            raise InitializationError(f"Failed to initialize components: {traceback.format_exc()}")

    async def shutdown(self):
        """Gracefully shutdown all components"""
        if self._stopping:
            return
        self._stopping = True
        self.logger.info("Initiating shutdown sequence")
        try:
            if self.components:
                await self.components.stop()
            if self._event_task:
                self._event_task.cancel()
            self.logger.info("Shutdown completed successfully")
        except Exception:
            self.logger.error(f"Error during shutdown: {traceback.format_exc()}")
        finally:
            self.shutdown_event.set()

    def handle_signals(self):
        """Set up signal handlers for graceful shutdown"""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            self.logger.info(f"Received signal {signum}")
            asyncio.create_task(self.shutdown())

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler, sig)

    async def run(self):
        """Main application entry point"""
        try:
            self.handle_signals()
            await self.initialize_components()
            await self.api_server.start()
        except InitializationError:
            self.logger.error(f"Initialization error: {traceback.format_exc()}")
            await self.shutdown()
            sys.exit(1)
        except Exception:
            self.logger.error(f"Unexpected error: {traceback.format_exc()}")
            await self.shutdown()
            sys.exit(1)


def main():
    """Application entry point"""
    config_path = Path(sys.argv[1]) if len(sys.argv) > 1 else Path("config/iot_fleet.yml")
    create_default_config(config_path)

    app = IoTFleetApp(str(config_path))
    asyncio.run(app.run())


if __name__ == "__main__":
    main()
