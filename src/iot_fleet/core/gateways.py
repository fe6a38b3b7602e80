# Per-gateway reception statistics fed by every uplink.
from datetime import datetime
from typing import List, Optional

from .event_manager import EventManager, application_channel
from ..models.lorawan import GatewayMetrics, GeoLocation
from ..storage.repositories import Repositories
from ..utils.logging import get_logger

logger = get_logger(__name__)


class GatewayMetricsAggregator:

    def __init__(self, repositories: Repositories, event_manager: EventManager):
        self.repositories = repositories
        self.event_manager = event_manager

    async def record_uplink(self, gateway_key: str, rssi: float, snr: float, timestamp: datetime,
                            application_id: Optional[str] = None, gateway_eui: Optional[str] = None,
                            location: Optional[GeoLocation] = None) -> GatewayMetrics:
        """Fold one reception into the gateway's exact running averages"""

        def fold(metrics: Optional[GatewayMetrics]) -> GatewayMetrics:
            if metrics is None:
                return GatewayMetrics(
                    gateway_key=gateway_key,
                    application_id=application_id,
                    gateway_eui=gateway_eui,
                    location=location,
                    total_seen=1,
                    avg_rssi=rssi,
                    avg_snr=snr,
                    last_rssi=rssi,
                    last_snr=snr,
                    is_online=True,
                    first_seen=timestamp,
                    last_seen=timestamp,
                )
            seen = metrics.total_seen
            metrics.avg_rssi = (metrics.avg_rssi * seen + rssi) / (seen + 1)
            metrics.avg_snr = (metrics.avg_snr * seen + snr) / (seen + 1)
            metrics.total_seen = seen + 1
            metrics.last_rssi = rssi
            metrics.last_snr = snr
            metrics.is_online = True
            metrics.last_seen = max(metrics.last_seen, timestamp)
            if gateway_eui:
                metrics.gateway_eui = gateway_eui
            if location is not None:
                metrics.location = location
            if application_id:
                metrics.application_id = application_id
            return metrics

        metrics = await self.repositories.gateways.upsert(gateway_key, fold)
        logger.debug(f"Gateway {gateway_key}: seen {metrics.total_seen}, avg rssi {metrics.avg_rssi:.1f}")

        if metrics.application_id:
            await self.event_manager.publish(application_channel(metrics.application_id), "ttnGatewayUpdate", {
                "gatewayKey": metrics.gateway_key,
                "gatewayEui": metrics.gateway_eui,
                "totalSeen": metrics.total_seen,
                "avgRssi": metrics.avg_rssi,
                "avgSnr": metrics.avg_snr,
                "lastRssi": metrics.last_rssi,
                "lastSnr": metrics.last_snr,
                "isOnline": metrics.is_online,
                "lastSeen": metrics.last_seen.isoformat(),
            })
        return metrics

    async def get(self, gateway_key: str) -> Optional[GatewayMetrics]:
        return await self.repositories.gateways.get(gateway_key)

    async def list(self, application_id: Optional[str] = None) -> List[GatewayMetrics]:
        items = await self.repositories.gateways.find(
            lambda g: application_id is None or g.application_id == application_id
        )
        return sorted(items, key=lambda g: g.gateway_key)
