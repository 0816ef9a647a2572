# app/modules/deliveries/tracking_service.py
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.config.settings import settings
from app.core.auth.permissions import Capability, ensure_capability, ensure_participant
from app.core.exceptions import AuthorizationError, ConflictError, NotFoundError, UpstreamError
from app.shared.database.models import Courier, Delivery, User
from app.shared.geo import haversine_km, straight_line_minutes
from app.shared.services.realtime import ConnectionManager
from app.shared.services.routing_client import RoutingClient
from app.modules.couriers.repository import CourierRepository
from .lifecycle import DeliveryLifecycle
from .repository import DeliveryRepository
from .schemas import LocationUpdate
from .state_machine import ENGAGED_STATUSES, INBOUND_STATUSES
import logging

logger = logging.getLogger(__name__)

# Reintentos del UPDATE condicional cuando otra actualización gana la carrera
LOCATION_WRITE_ATTEMPTS = 3


class TrackingService:
    """Posición del repartidor durante la entrega y estimación de llegada"""

    def __init__(
        self,
        db: Session,
        company_id: int,
        realtime: Optional[ConnectionManager] = None,
        routing_client: Optional[RoutingClient] = None
    ):
        self.db = db
        self.company_id = company_id
        self.repository = DeliveryRepository(db)
        self.courier_repository = CourierRepository(db)
        self.lifecycle = DeliveryLifecycle(db, company_id, realtime)
        self.routing_client = routing_client or RoutingClient()

    def _get_delivery(self, delivery_id: int) -> Delivery:
        delivery = self.repository.get_delivery(delivery_id, self.company_id)
        if not delivery:
            raise NotFoundError("Entrega", delivery_id)
        return delivery

    # ==================== UBICACIÓN ====================

    @staticmethod
    def _append_to_history(history: Optional[List[Dict[str, Any]]], entry: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Historial acotado: al superar el tope se conservan solo las más recientes"""
        updated = list(history or [])
        updated.append(entry)
        if len(updated) > settings.location_history_cap:
            updated = updated[-settings.location_history_trim:]
        return updated

    async def update_location(
        self,
        delivery_id: int,
        data: LocationUpdate,
        actor: User,
        courier: Optional[Courier]
    ) -> Dict[str, Any]:
        """
        Registrar la posición del repartidor asignado.

        Con `sequence`, una actualización no más nueva que la guardada se ignora
        y se informa como `stale`. Sin `sequence` gana la última escritura.
        """
        ensure_capability(actor, Capability.DRIVE)
        delivery = self._get_delivery(delivery_id)
        if courier is None or delivery.courier_id != courier.id:
            raise AuthorizationError(
                "Solo el repartidor asignado puede reportar la ubicación",
                details={"delivery_id": delivery.id}
            )

        for _ in range(LOCATION_WRITE_ATTEMPTS):
            if delivery.status not in ENGAGED_STATUSES:
                raise ConflictError(
                    f"La entrega no admite ubicación en estado '{delivery.status}'",
                    details={"delivery_id": delivery.id, "status": delivery.status}
                )

            if (
                data.sequence is not None
                and delivery.location_sequence is not None
                and data.sequence <= delivery.location_sequence
            ):
                logger.info(
                    f"🕒 Ubicación obsoleta ignorada en {delivery.delivery_number} "
                    f"(secuencia {data.sequence} <= {delivery.location_sequence})"
                )
                return {
                    "success": True,
                    "message": "Ubicación obsoleta ignorada",
                    "accepted": False,
                    "stale": True,
                    "history_size": len(delivery.location_history or []),
                }

            now = datetime.now()
            entry = {
                "latitude": data.latitude,
                "longitude": data.longitude,
                "timestamp": now.isoformat(),
                "heading": data.heading,
                "speed": data.speed,
                "accuracy": data.accuracy,
                "sequence": data.sequence,
            }
            history = self._append_to_history(delivery.location_history, entry)

            values = {
                "current_latitude": data.latitude,
                "current_longitude": data.longitude,
                "location_updated_at": now,
                "location_history": history,
            }
            if data.sequence is not None:
                values["location_sequence"] = data.sequence

            if delivery.location_updated_at is None:
                unchanged = Delivery.location_updated_at.is_(None)
            else:
                unchanged = Delivery.location_updated_at == delivery.location_updated_at

            conditions = [
                Delivery.courier_id == courier.id,
                Delivery.status.in_(list(ENGAGED_STATUSES)),
                unchanged,
            ]
            if data.sequence is not None:
                conditions.append(or_(
                    Delivery.location_sequence.is_(None),
                    Delivery.location_sequence < data.sequence
                ))

            with self.repository.transaction():
                written = self.repository.conditional_update(delivery.id, conditions, values)
                if written:
                    self.courier_repository.update_position(courier.id, data.latitude, data.longitude, now)

            self.repository.refresh(delivery)
            if written:
                break
        else:
            raise ConflictError(
                "No se pudo registrar la ubicación por actualizaciones concurrentes",
                details={"delivery_id": delivery.id}
            )

        location = {
            "latitude": delivery.current_latitude,
            "longitude": delivery.current_longitude,
            "updated_at": delivery.location_updated_at.isoformat(),
            "sequence": delivery.location_sequence,
        }
        await self.lifecycle.publish(delivery, "delivery:location", {
            "delivery_id": delivery.id,
            "status": delivery.status,
            "heading": data.heading,
            "speed": data.speed,
            **location
        })

        return {
            "success": True,
            "message": "Ubicación actualizada",
            "accepted": True,
            "stale": False,
            "location": location,
            "history_size": len(delivery.location_history or []),
        }

    # ==================== ETA ====================

    def _courier_position(self, delivery: Delivery) -> Optional[Dict[str, Any]]:
        if delivery.current_latitude is not None and delivery.current_longitude is not None:
            return {
                "latitude": delivery.current_latitude,
                "longitude": delivery.current_longitude,
                "updated_at": delivery.location_updated_at,
            }
        if delivery.courier_id:
            courier = self.courier_repository.get_by_id(delivery.courier_id, self.company_id)
            if courier and courier.current_latitude is not None and courier.current_longitude is not None:
                return {
                    "latitude": courier.current_latitude,
                    "longitude": courier.current_longitude,
                    "updated_at": courier.location_updated_at,
                }
        return None

    async def compute_eta(self, delivery: Delivery) -> Dict[str, Any]:
        """
        Estimación de llegada sin escribir nada.

        Destino: restaurante mientras el repartidor va a recoger, cliente después.
        Si el proveedor de rutas falla se usa la distancia en línea recta y el
        resultado sale marcado como `degraded`.
        """
        if delivery.status not in ENGAGED_STATUSES:
            return {"available": False, "reason": "not_trackable", "eta": None}

        position = self._courier_position(delivery)
        if position is None:
            return {"available": False, "reason": "no_location", "eta": None}

        inbound = delivery.status in INBOUND_STATUSES
        if inbound:
            destination = (delivery.pickup_latitude, delivery.pickup_longitude)
        else:
            destination = (delivery.delivery_latitude, delivery.delivery_longitude)
        origin = (position["latitude"], position["longitude"])

        straight_km = haversine_km(origin[0], origin[1], destination[0], destination[1])
        degraded = False
        traffic_condition = "unknown"
        polyline = None
        try:
            route = await self.routing_client.route(origin, destination)
            distance_km = route.distance_km
            minutes = route.effective_minutes
            traffic_condition = route.traffic_condition
            polyline = route.polyline
        except UpstreamError as e:
            logger.warning(f"⚠️ ETA degradada para {delivery.delivery_number}: {e.message}")
            degraded = True
            distance_km = straight_km
            vehicle_type = delivery.courier.vehicle_type if delivery.courier else None
            minutes = straight_line_minutes(distance_km, vehicle_type, settings.average_speed_kmh)

        if inbound:
            minutes += settings.prep_buffer_minutes

        now = datetime.now()
        arrival = now + timedelta(minutes=minutes)
        updated_at = position["updated_at"]

        return {
            "available": True,
            "reason": None,
            "eta": {
                "destination_type": "restaurant" if inbound else "customer",
                "distance_km": round(distance_km, 2),
                "duration_minutes": minutes,
                "estimated_arrival": arrival.isoformat(),
                "is_near": straight_km * 1000 <= settings.arrival_threshold_meters,
                "degraded": degraded,
                "source": "straight_line" if degraded else "routing",
                "traffic_condition": traffic_condition,
                "polyline": polyline,
                "courier_location": {
                    "latitude": position["latitude"],
                    "longitude": position["longitude"],
                    "updated_at": updated_at.isoformat() if updated_at else None,
                },
            },
        }

    async def get_eta(self, delivery_id: int, actor: User, courier: Optional[Courier] = None) -> Dict[str, Any]:
        """ETA para participantes; la estimación queda guardada en la entrega"""
        ensure_capability(actor, Capability.TRACK)
        delivery = self._get_delivery(delivery_id)
        ensure_participant(actor, delivery, courier)

        result = await self.compute_eta(delivery)
        if not result["available"]:
            message = (
                "El repartidor aún no ha reportado ubicación"
                if result["reason"] == "no_location"
                else f"La entrega no es rastreable en estado '{delivery.status}'"
            )
            return {"success": True, "message": message, **result}

        eta = result["eta"]
        field = "estimated_pickup_time" if eta["destination_type"] == "restaurant" else "estimated_delivery_time"
        with self.repository.transaction():
            self.repository.conditional_update(
                delivery.id,
                [Delivery.status == delivery.status],
                {field: datetime.fromisoformat(eta["estimated_arrival"])}
            )

        return {"success": True, "message": "ETA calculada", **result}
