# app/shared/services/routing_client.py
import httpx
import logging
import math
from dataclasses import dataclass
from typing import Dict, Any, Optional, Tuple

from app.config.settings import settings
from app.core.exceptions import UpstreamError

logger = logging.getLogger(__name__)

Coordinates = Tuple[float, float]


@dataclass
class RouteInfo:
    distance_km: float
    duration_minutes: int
    duration_in_traffic_minutes: Optional[int] = None
    polyline: Optional[str] = None

    @property
    def traffic_condition(self) -> str:
        if not self.duration_in_traffic_minutes or not self.duration_minutes:
            return "unknown"
        ratio = self.duration_in_traffic_minutes / self.duration_minutes
        if ratio < 1.1:
            return "light"
        if ratio < 1.3:
            return "moderate"
        return "heavy"

    @property
    def effective_minutes(self) -> int:
        return self.duration_in_traffic_minutes or self.duration_minutes


class RoutingClient:
    """Cliente del proveedor de rutas (API compatible con Google Distance Matrix / Directions)"""

    def __init__(self):
        self.base_url = settings.routing_base_url.rstrip("/")
        self.api_key = settings.google_maps_api_key
        self.timeout = settings.routing_timeout_seconds

    @property
    def enabled(self) -> bool:
        return settings.routing_available

    def _params(self, origin: Coordinates, destination: Coordinates) -> Dict[str, Any]:
        return {
            "origins": f"{origin[0]},{origin[1]}",
            "destinations": f"{destination[0]},{destination[1]}",
            "key": self.api_key,
            "mode": "driving",
            "units": "metric",
            "departure_time": "now",
            "traffic_model": "best_guess",
        }

    async def route(self, origin: Coordinates, destination: Coordinates) -> RouteInfo:
        """
        Distancia y duración entre dos puntos.

        Lanza UpstreamError si el proveedor está deshabilitado, no responde
        o devuelve un estado distinto de OK.
        """
        if not self.enabled:
            raise UpstreamError("routing", "proveedor de rutas deshabilitado")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    f"{self.base_url}/distancematrix/json",
                    params=self._params(origin, destination)
                )
        except httpx.TimeoutException:
            logger.warning(f"⏱️ Timeout consultando rutas {origin} -> {destination}")
            raise UpstreamError("routing", "timeout")
        except httpx.HTTPError as e:
            logger.warning(f"⚠️ Error de red consultando rutas: {e}")
            raise UpstreamError("routing", str(e))

        if response.status_code != 200:
            raise UpstreamError("routing", f"HTTP {response.status_code}")

        data = response.json()
        if data.get("status") != "OK":
            raise UpstreamError("routing", f"estado {data.get('status')}")

        rows = data.get("rows") or [{}]
        elements = rows[0].get("elements") or [{}]
        element = elements[0]
        if element.get("status") != "OK":
            raise UpstreamError("routing", f"elemento {element.get('status')}")

        distance_m = (element.get("distance") or {}).get("value", 0)
        duration_s = (element.get("duration") or {}).get("value", 0)
        traffic_s = (element.get("duration_in_traffic") or {}).get("value")

        return RouteInfo(
            distance_km=distance_m / 1000,
            duration_minutes=math.ceil(duration_s / 60),
            duration_in_traffic_minutes=math.ceil(traffic_s / 60) if traffic_s else None,
            polyline=element.get("polyline")
        )
