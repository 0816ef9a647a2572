# app/modules/deliveries/service.py
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config.settings import settings
from app.core.auth.permissions import (
    Capability, ensure_assigned_courier, ensure_capability, ensure_participant, is_staff
)
from app.core.exceptions import (
    AuthorizationError, ConflictError, NoCourierAvailableError, NotFoundError, ValidationError
)
from app.shared.database.models import Courier, Delivery, User
from app.shared.geo import haversine_km, straight_line_minutes
from app.shared.services.realtime import ConnectionManager, user_channel
from app.shared.services.routing_client import RoutingClient
from app.modules.couriers.repository import CourierRepository
from app.modules.payouts.earnings_calculator import to_money
from .dispatch_service import DispatchService
from .lifecycle import DeliveryLifecycle
from .proof_service import ensure_completion_requirements, generate_otp
from .repository import DeliveryRepository
from .schemas import ChatMessageCreate, DeliveryCreate, IssueReport, StatusUpdate
from .serializers import delivery_to_dict, tracking_to_dict
from .state_machine import (
    COURIER_DRIVEN_STATUSES, DeliveryStatus, HistoryEntry, TERMINAL_STATUSES
)
from .tracking_service import TrackingService
import logging

logger = logging.getLogger(__name__)

DELIVERY_NUMBER_ATTEMPTS = 3
THREAD_WRITE_ATTEMPTS = 3


class DeliveryService:
    def __init__(
        self,
        db: Session,
        company_id: Optional[int],
        realtime: Optional[ConnectionManager] = None,
        routing_client: Optional[RoutingClient] = None
    ):
        self.db = db
        self.company_id = company_id
        self.routing_client = routing_client
        self.repository = DeliveryRepository(db)
        self.courier_repository = CourierRepository(db)
        self.lifecycle = DeliveryLifecycle(db, company_id, realtime)
        self.dispatch = DispatchService(db, company_id, realtime)
        self.tracking = TrackingService(db, company_id, realtime, routing_client)

    def _get_delivery(self, delivery_id: int) -> Delivery:
        delivery = self.repository.get_delivery(delivery_id, self.company_id)
        if not delivery:
            raise NotFoundError("Entrega", delivery_id)
        return delivery

    # ==================== ALTA ====================

    async def create_delivery(self, data: DeliveryCreate, actor: User) -> Dict[str, Any]:
        """
        Crear la entrega de un pedido a domicilio.

        Recogida desde el restaurante, destino y contacto desde el pedido,
        número público DLV-YYYYMMDD-NNNNN, OTP de 4 dígitos y estimación de
        ganancias. Con `auto_assign` se intenta despachar de inmediato; si no
        hay repartidor la entrega se devuelve igualmente en 'pending'.
        """
        ensure_capability(actor, Capability.CREATE_DELIVERY)

        order = self.repository.get_order(data.order_id, self.company_id)
        if not order:
            raise NotFoundError("Pedido", data.order_id)
        if order.fulfillment_type != "delivery":
            raise ValidationError(
                f"El pedido no es a domicilio (tipo: {order.fulfillment_type})",
                field="order_id"
            )
        if not order.delivery_address or order.delivery_latitude is None or order.delivery_longitude is None:
            raise ValidationError("El pedido no tiene dirección de entrega geolocalizada", field="order_id")

        existing = self.repository.get_open_delivery_for_order(order.id)
        if existing:
            raise ConflictError(
                "El pedido ya tiene una entrega en curso",
                details={"order_id": order.id, "delivery_id": existing.id, "status": existing.status}
            )

        restaurant = self.repository.get_restaurant(order.restaurant_id, self.company_id)
        if not restaurant:
            raise NotFoundError("Restaurante", order.restaurant_id)

        now = datetime.now()
        trip_km = haversine_km(
            restaurant.latitude, restaurant.longitude,
            order.delivery_latitude, order.delivery_longitude
        )
        trip_minutes = straight_line_minutes(trip_km, None, settings.average_speed_kmh)
        base_fee = to_money(data.base_fee if data.base_fee is not None else settings.delivery_base_fee)

        delivery = None
        for attempt in range(DELIVERY_NUMBER_ATTEMPTS):
            candidate = Delivery(
                company_id=self.company_id,
                delivery_number=self.repository.next_delivery_number(now),
                order_id=order.id,
                restaurant_id=restaurant.id,
                customer_id=order.customer_id,
                status=DeliveryStatus.PENDING,
                is_priority=data.is_priority,
                attempts=0,
                rejected_courier_ids=[],
                pickup_address=restaurant.address,
                pickup_latitude=restaurant.latitude,
                pickup_longitude=restaurant.longitude,
                pickup_contact_name=restaurant.name,
                pickup_contact_phone=restaurant.phone,
                delivery_address=order.delivery_address,
                delivery_latitude=order.delivery_latitude,
                delivery_longitude=order.delivery_longitude,
                delivery_instructions=order.delivery_instructions,
                customer_name=order.customer_name,
                customer_phone=order.customer_phone,
                trip_distance_km=round(trip_km, 2),
                estimated_distance_km=round(trip_km, 2),
                estimated_duration_minutes=trip_minutes,
                estimated_delivery_time=now + timedelta(minutes=trip_minutes),
                otp_code=generate_otp(),
                location_history=[],
                chat_messages=[],
                issues=[],
            )
            candidate.earnings = self.lifecycle.earnings.estimate(candidate, now, base_fee).to_dict()

            try:
                delivery = self.repository.create_delivery(
                    candidate,
                    HistoryEntry(event="created", timestamp=now, actor_user_id=actor.id)
                )
                break
            except IntegrityError:
                existing = self.repository.get_open_delivery_for_order(order.id)
                if existing:
                    raise ConflictError(
                        "El pedido ya tiene una entrega en curso",
                        details={"order_id": order.id, "delivery_id": existing.id}
                    )
                logger.warning(f"⚠️ Colisión de número de entrega (intento {attempt + 1}), reintentando")

        if delivery is None:
            raise ConflictError("No se pudo generar un número de entrega único")

        logger.info(f"📦 Entrega {delivery.delivery_number} creada para el pedido {order.order_number}")
        await self.lifecycle.broadcast_status(delivery, "created")

        message = "Entrega creada"
        assignment = None
        if data.auto_assign:
            try:
                delivery, courier, distance = await self.dispatch.auto_assign(delivery, actor)
                assignment = {"courier_id": courier.id, "distance_to_pickup_km": round(distance, 2)}
                message = f"Entrega creada y asignada a {courier.full_name}"
            except NoCourierAvailableError:
                message = "Entrega creada; no hay repartidores disponibles, queda pendiente"

        return {
            "success": True,
            "message": message,
            "delivery": delivery_to_dict(delivery, self.repository.get_history(delivery.id)),
            "assignment": assignment,
        }

    # ==================== CONSULTAS ====================

    def get_delivery(self, delivery_id: int, actor: User, courier: Optional[Courier] = None) -> Dict[str, Any]:
        ensure_capability(actor, Capability.TRACK)
        delivery = self._get_delivery(delivery_id)
        ensure_participant(actor, delivery, courier)
        return {
            "success": True,
            "message": "Entrega obtenida",
            "delivery": delivery_to_dict(delivery, self.repository.get_history(delivery.id)),
        }

    def list_deliveries(
        self,
        actor: User,
        status: Optional[str] = None,
        courier_id: Optional[int] = None,
        skip: int = 0,
        limit: int = 50
    ) -> Dict[str, Any]:
        if not is_staff(actor):
            raise AuthorizationError("Solo el personal del restaurante puede listar entregas")
        if status and status not in DeliveryStatus.ALL:
            raise ValidationError(f"Estado desconocido: {status}", field="status")

        result = self.repository.list_deliveries(
            self.company_id, status=status, courier_id=courier_id, skip=skip, limit=limit
        )
        deliveries = [delivery_to_dict(delivery) for delivery in result["items"]]
        return {
            "success": True,
            "message": f"{len(deliveries)} entregas",
            "deliveries": deliveries,
            "count": len(deliveries),
            "total": result["total"],
        }

    def get_active_deliveries(self, actor: User, courier: Optional[Courier] = None) -> Dict[str, Any]:
        """Entregas no terminales: todas para el personal, las propias para el repartidor"""
        active = [status for status in DeliveryStatus.ALL if status not in TERMINAL_STATUSES]
        if is_staff(actor):
            result = self.repository.list_deliveries(self.company_id, statuses=active, limit=200)
        elif actor.role == "courier" and courier is not None:
            result = self.repository.list_deliveries(
                self.company_id, statuses=active, courier_id=courier.id, limit=200
            )
        else:
            raise AuthorizationError("Sin acceso a entregas activas")

        deliveries = [delivery_to_dict(delivery) for delivery in result["items"]]
        return {
            "success": True,
            "message": f"{len(deliveries)} entregas activas",
            "deliveries": deliveries,
            "count": len(deliveries),
            "total": result["total"],
        }

    async def track_by_code(self, code: str) -> Dict[str, Any]:
        """Vista pública de solo lectura por número de seguimiento"""
        delivery = self.repository.get_by_number(code)
        if not delivery:
            raise NotFoundError("Entrega", code)

        tracking = self.tracking
        if delivery.company_id != self.company_id:
            tracking = TrackingService(self.db, delivery.company_id, self.lifecycle.realtime, self.routing_client)
        eta_result = await tracking.compute_eta(delivery)
        return {
            "success": True,
            "message": "Seguimiento de entrega",
            "tracking": tracking_to_dict(
                delivery,
                self.repository.get_history(delivery.id),
                delivery.courier,
                eta_result["eta"]
            ),
        }

    # ==================== ESTADOS ====================

    async def update_status(
        self,
        delivery_id: int,
        data: StatusUpdate,
        actor: User,
        courier: Optional[Courier] = None
    ) -> Dict[str, Any]:
        """
        Transición solicitada explícitamente.

        'assigned' solo se alcanza por asignación y 'cancelled' por cancelación;
        los estados de ruta solo los declara el repartidor asignado o el personal.
        """
        ensure_capability(actor, Capability.UPDATE_STATUS)
        delivery = self._get_delivery(delivery_id)
        target = data.status

        if target == DeliveryStatus.ASSIGNED:
            raise ValidationError("Usa POST /deliveries/{id}/assign para asignar", field="status")
        if target == DeliveryStatus.CANCELLED:
            return await self.cancel_delivery(delivery_id, data.note or "Cancelada", actor)
        if target == DeliveryStatus.PENDING and not is_staff(actor):
            raise AuthorizationError("Solo el personal puede reprogramar una entrega fallida")

        extra_conditions = None
        if target in COURIER_DRIVEN_STATUSES:
            ensure_assigned_courier(actor, delivery, courier)
            if delivery.courier_id is not None:
                extra_conditions = [Delivery.courier_id == delivery.courier_id]

        if target == DeliveryStatus.DELIVERED:
            order = self.repository.get_order(delivery.order_id, self.company_id)
            ensure_completion_requirements(delivery, order)

        await self.lifecycle.transition(
            delivery,
            target,
            actor_user_id=actor.id,
            note=data.note,
            extra_conditions=extra_conditions
        )
        return {
            "success": True,
            "message": f"Estado actualizado a '{delivery.status}'",
            "delivery": delivery_to_dict(delivery),
        }

    async def cancel_delivery(self, delivery_id: int, reason: str, actor: User) -> Dict[str, Any]:
        ensure_capability(actor, Capability.CANCEL)
        delivery = self._get_delivery(delivery_id)

        await self.lifecycle.transition(
            delivery,
            DeliveryStatus.CANCELLED,
            actor_user_id=actor.id,
            note=reason,
            values={"cancelled_by": actor.id, "cancellation_reason": reason}
        )
        logger.info(f"🛑 Entrega {delivery.delivery_number} cancelada: {reason}")
        return {
            "success": True,
            "message": "Entrega cancelada",
            "delivery": delivery_to_dict(delivery),
        }

    # ==================== CHAT E INCIDENCIAS ====================

    @staticmethod
    def _sender_type(actor: User) -> str:
        if actor.role == "courier":
            return "driver"
        if actor.role == "customer":
            return "customer"
        return "support"

    def _append_to_thread(
        self,
        delivery: Delivery,
        list_field: str,
        version_field: str,
        entry: Dict[str, Any],
        on_written: Optional[Callable[[], None]] = None
    ):
        """
        Añade `entry` a una lista JSON de la entrega (chat o incidencias).

        La escritura es condicional a la versión leída; si otra petición escribió
        antes se relee la entrega y se vuelve a intentar.
        """
        version_column = getattr(Delivery, version_field)
        for _ in range(THREAD_WRITE_ATTEMPTS):
            version = getattr(delivery, version_field) or 0
            items = list(getattr(delivery, list_field) or [])
            items.append(entry)

            with self.repository.transaction():
                written = self.repository.conditional_update(
                    delivery.id,
                    [version_column == version],
                    {list_field: items, version_field: version + 1}
                )
                if written and on_written:
                    on_written()

            self.repository.refresh(delivery)
            if written:
                return
        raise ConflictError(
            "No se pudo guardar por escrituras concurrentes",
            details={"delivery_id": delivery.id}
        )

    async def add_chat_message(
        self,
        delivery_id: int,
        data: ChatMessageCreate,
        actor: User,
        courier: Optional[Courier] = None
    ) -> Dict[str, Any]:
        delivery = self._get_delivery(delivery_id)
        ensure_participant(actor, delivery, courier)

        message = {
            "sender_id": actor.id,
            "sender_type": self._sender_type(actor),
            "message": data.message,
            "timestamp": datetime.now().isoformat(),
            "is_read": False,
        }
        self._append_to_thread(delivery, "chat_messages", "chat_version", message)

        await self.lifecycle.publish(delivery, "delivery:chat", {"delivery_id": delivery.id, **message})
        return {"success": True, "message": "Mensaje enviado", "chat_message": message}

    def get_chat(self, delivery_id: int, actor: User, courier: Optional[Courier] = None) -> Dict[str, Any]:
        delivery = self._get_delivery(delivery_id)
        ensure_participant(actor, delivery, courier)
        messages = delivery.chat_messages or []
        return {"success": True, "message": f"{len(messages)} mensajes", "messages": messages}

    async def report_issue(
        self,
        delivery_id: int,
        data: IssueReport,
        actor: User,
        courier: Optional[Courier] = None
    ) -> Dict[str, Any]:
        """Incidencia del repartidor o del personal; 'order_damaged' se marca urgente"""
        delivery = self._get_delivery(delivery_id)
        ensure_participant(actor, delivery, courier)

        now = datetime.now()
        issue = {
            "type": data.issue_type,
            "description": data.description,
            "photos": data.photo_urls,
            "reported_by": self._sender_type(actor),
            "reported_by_user_id": actor.id,
            "reported_at": now.isoformat(),
            "urgent": data.issue_type == "order_damaged",
            "resolved": False,
        }
        self._append_to_thread(
            delivery, "issues", "issues_version", issue,
            on_written=lambda: self.repository.add_history(delivery.id, HistoryEntry(
                event="issue_reported",
                timestamp=now,
                note=f"Problema reportado: {data.issue_type}",
                actor_user_id=actor.id
            ))
        )
        logger.warning(f"🚨 Incidencia '{data.issue_type}' en {delivery.delivery_number}")
        await self.lifecycle.publish(delivery, "delivery:issue", {"delivery_id": delivery.id, **issue})
        if delivery.customer_id and data.issue_type in ("restaurant_delay", "order_damaged"):
            await self.lifecycle.realtime.publish(
                user_channel(delivery.customer_id), "delivery:issue", {"delivery_id": delivery.id, "type": data.issue_type}
            )

        return {"success": True, "message": "Incidencia registrada", "issue": issue}
