# app/modules/deliveries/dispatch_service.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.config.settings import settings
from app.core.auth.permissions import Capability, ensure_assigned_courier, ensure_capability
from app.core.exceptions import ConflictError, NoCourierAvailableError, NotFoundError, ValidationError
from app.shared.database.models import Courier, Delivery, User
from app.shared.geo import haversine_km, straight_line_minutes
from app.shared.services.realtime import ConnectionManager, user_channel
from app.modules.couriers.repository import CourierRepository
from .lifecycle import DeliveryLifecycle
from .repository import DeliveryRepository
from .schemas import AssignRequest
from .serializers import delivery_to_dict
from .state_machine import DeliveryStatus, HistoryEntry
import logging

logger = logging.getLogger(__name__)


def driver_info(courier: Courier) -> Dict[str, Any]:
    """Datos del repartidor que se muestran en el pedido"""
    return {
        "id": courier.id,
        "name": courier.full_name,
        "photo": courier.photo_url,
        "phone": courier.phone,
        "vehicle_type": courier.vehicle_type,
        "rating": round(courier.average_rating or 0, 1),
    }


class DispatchService:
    """
    Asignación de repartidores.

    La asignación es un UPDATE condicional doble en una sola transacción:
    la entrega debe seguir en 'pending' y el repartidor sin entrega en curso.
    Si cualquiera de las dos condiciones falla no se escribe nada.
    """

    def __init__(self, db: Session, company_id: int, realtime: Optional[ConnectionManager] = None):
        self.db = db
        self.company_id = company_id
        self.repository = DeliveryRepository(db)
        self.courier_repository = CourierRepository(db)
        self.lifecycle = DeliveryLifecycle(db, company_id, realtime)

    def _get_delivery(self, delivery_id: int) -> Delivery:
        delivery = self.repository.get_delivery(delivery_id, self.company_id)
        if not delivery:
            raise NotFoundError("Entrega", delivery_id)
        return delivery

    # ==================== ASIGNACIÓN ====================

    async def assign(self, delivery_id: int, request: AssignRequest, actor: User) -> Dict[str, Any]:
        """Asignación manual (courier_id) o automática (auto_assign)"""
        ensure_capability(actor, Capability.DISPATCH)
        delivery = self._get_delivery(delivery_id)

        if delivery.status != DeliveryStatus.PENDING:
            raise ConflictError(
                f"Solo se pueden asignar entregas en estado 'pending' (actual: {delivery.status})",
                details={"delivery_id": delivery.id, "status": delivery.status}
            )

        if request.auto_assign:
            delivery, courier, distance = await self.auto_assign(delivery, actor)
        else:
            courier = self.courier_repository.get_by_id(request.courier_id, self.company_id)
            if not courier:
                raise NotFoundError("Repartidor", request.courier_id)
            if not courier.is_verified:
                raise ValidationError(
                    "El repartidor no está verificado",
                    field="courier_id",
                    details={"courier_id": courier.id, "verification_status": courier.verification_status}
                )
            if courier.current_delivery_id is not None:
                raise ConflictError(
                    "El repartidor ya tiene una entrega en curso",
                    details={"courier_id": courier.id, "current_delivery_id": courier.current_delivery_id}
                )
            distance = self._distance_to_pickup(courier, delivery)
            if not await self._try_assign(delivery, courier, distance, actor, require_online=False):
                raise ConflictError(
                    "La entrega o el repartidor cambiaron durante la asignación",
                    details={"delivery_id": delivery.id, "courier_id": courier.id}
                )

        return {
            "success": True,
            "message": f"Entrega asignada a {courier.full_name}",
            "delivery": delivery_to_dict(delivery),
            "courier": driver_info(courier),
            "distance_to_pickup_km": round(distance, 2) if distance is not None else None,
        }

    async def auto_assign(self, delivery: Delivery, actor: Optional[User] = None):
        """
        Probar candidatos del más cercano al más lejano; si uno pierde la carrera
        se pasa al siguiente. Sin candidatos la entrega queda en 'pending'.
        """
        candidates = self.courier_repository.find_available_near(
            self.company_id,
            delivery.pickup_latitude,
            delivery.pickup_longitude,
            settings.dispatch_radius_km,
            exclude_ids=list(delivery.rejected_courier_ids or [])
        )

        for candidate in candidates:
            courier = candidate["courier"]
            if await self._try_assign(delivery, courier, candidate["distance_km"], actor, require_online=True):
                return delivery, courier, candidate["distance_km"]
            if delivery.status != DeliveryStatus.PENDING:
                raise ConflictError(
                    "La entrega dejó de estar pendiente durante la asignación",
                    details={"delivery_id": delivery.id, "status": delivery.status}
                )
            logger.info(f"↪️ Repartidor {courier.id} ya no disponible, probando el siguiente")

        logger.warning(
            f"⚠️ Sin repartidores disponibles para {delivery.delivery_number} "
            f"en {settings.dispatch_radius_km} km"
        )
        raise NoCourierAvailableError(delivery.id, settings.dispatch_radius_km)

    @staticmethod
    def _distance_to_pickup(courier: Courier, delivery: Delivery) -> Optional[float]:
        if courier.current_latitude is None or courier.current_longitude is None:
            return None
        return haversine_km(
            courier.current_latitude, courier.current_longitude,
            delivery.pickup_latitude, delivery.pickup_longitude
        )

    async def _try_assign(
        self,
        delivery: Delivery,
        courier: Courier,
        distance_to_pickup: Optional[float],
        actor: Optional[User],
        require_online: bool
    ) -> bool:
        """Una ronda de asignación atómica; False si se perdió la carrera"""
        estimated_km = (distance_to_pickup or 0.0) + (delivery.trip_distance_km or 0.0)
        estimate = self.lifecycle.earnings.estimate(delivery, datetime.now())

        values = {
            "courier_id": courier.id,
            "attempts": Delivery.attempts + 1,
            "estimated_distance_km": round(estimated_km, 2),
            "estimated_duration_minutes": straight_line_minutes(
                estimated_km, None, settings.average_speed_kmh
            ),
            "earnings": estimate.to_dict(),
        }
        order_values = {"driver_info": driver_info(courier)}

        def engage_courier():
            if not self.courier_repository.engage(courier.id, self.company_id, delivery.id, require_online):
                raise ConflictError(
                    "El repartidor ya no está disponible",
                    details={"courier_id": courier.id}
                )

        try:
            await self.lifecycle.transition(
                delivery,
                DeliveryStatus.ASSIGNED,
                actor_user_id=actor.id if actor else None,
                note=f"Assigned to courier {courier.full_name}",
                values=values,
                order_values=order_values,
                within=engage_courier
            )
        except ConflictError:
            self.repository.refresh(delivery)
            return False

        logger.info(f"✅ Entrega {delivery.delivery_number} asignada al repartidor {courier.id}")
        await self.lifecycle.realtime.publish(
            user_channel(courier.user_id),
            "delivery:assigned",
            {"delivery_id": delivery.id, "delivery_number": delivery.delivery_number}
        )
        return True

    # ==================== ACEPTAR / RECHAZAR ====================

    def _assigned_delivery(self, delivery_id: int, actor: User, courier: Optional[Courier]) -> Delivery:
        ensure_capability(actor, Capability.DRIVE)
        delivery = self._get_delivery(delivery_id)
        ensure_assigned_courier(actor, delivery, courier)
        return delivery

    async def accept(self, delivery_id: int, actor: User, courier: Courier) -> Dict[str, Any]:
        delivery = self._assigned_delivery(delivery_id, actor, courier)
        await self.lifecycle.transition(
            delivery,
            DeliveryStatus.ACCEPTED,
            actor_user_id=actor.id,
            extra_conditions=[Delivery.courier_id == courier.id]
        )
        return {
            "success": True,
            "message": "Entrega aceptada",
            "delivery": delivery_to_dict(delivery)
        }

    async def reject(self, delivery_id: int, actor: User, courier: Courier, reason: Optional[str] = None) -> Dict[str, Any]:
        """
        El repartidor rechaza: la entrega vuelve a 'pending' sin repartidor,
        el contador de intentos se conserva y el repartidor queda excluido
        de la siguiente asignación automática.
        """
        delivery = self._assigned_delivery(delivery_id, actor, courier)
        if delivery.status != DeliveryStatus.ASSIGNED:
            raise ConflictError(
                f"Solo se puede rechazar una entrega 'assigned' (actual: {delivery.status})",
                details={"delivery_id": delivery.id, "status": delivery.status}
            )

        rejected: List[int] = list(delivery.rejected_courier_ids or [])
        if courier.id not in rejected:
            rejected.append(courier.id)

        now = datetime.now()
        with self.repository.transaction():
            updated = self.repository.compare_and_set_status(
                delivery.id,
                DeliveryStatus.ASSIGNED,
                {
                    "status": DeliveryStatus.PENDING,
                    "previous_status": DeliveryStatus.ASSIGNED,
                    "courier_id": None,
                    "assigned_at": None,
                    "rejected_courier_ids": rejected,
                },
                extra_conditions=[Delivery.courier_id == courier.id]
            )
            if not updated:
                raise ConflictError(
                    "La entrega cambió de estado durante la operación",
                    details={"delivery_id": delivery.id}
                )
            self.repository.add_history(delivery.id, HistoryEntry(
                event="rejected", timestamp=now, note=reason, actor_user_id=actor.id
            ))
            self.repository.update_order_delivery(delivery.order_id, {
                "delivery_status": DeliveryStatus.PENDING,
                "driver_info": None
            })
            self.courier_repository.release(courier.id, delivery.id)

        self.repository.refresh(delivery)
        logger.info(f"↩️ Repartidor {courier.id} rechazó la entrega {delivery.delivery_number}")
        await self.lifecycle.broadcast_status(delivery, "rejected")

        return {
            "success": True,
            "message": "Entrega rechazada, vuelve a la cola de asignación",
            "delivery": delivery_to_dict(delivery)
        }
