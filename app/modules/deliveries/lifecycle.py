# app/modules/deliveries/lifecycle.py
"""
Aplicación atómica de transiciones de estado.

Un único punto por el que pasan todos los cambios de estado de una entrega:
UPDATE condicional sobre el estado esperado + fila de historial + escritura
en el pedido + liberación del repartidor, todo en la misma transacción.
El broadcast en tiempo real se hace después del commit.
"""
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app.config.settings import settings
from app.core.exceptions import ConflictError
from app.shared.database.models import Delivery
from app.shared.services.realtime import (
    ConnectionManager, company_channel, delivery_channel, get_realtime_manager
)
from app.modules.couriers.repository import CourierRepository
from app.modules.payouts.earnings_service import EarningsService
from .repository import DeliveryRepository
from .state_machine import DeliveryStatus, HistoryEntry, plan_transition
import logging

logger = logging.getLogger(__name__)


class DeliveryLifecycle:
    def __init__(self, db: Session, company_id: int, realtime: Optional[ConnectionManager] = None):
        self.db = db
        self.company_id = company_id
        self.repository = DeliveryRepository(db)
        self.courier_repository = CourierRepository(db)
        self.earnings = EarningsService(db)
        self.realtime = realtime or get_realtime_manager()

    async def transition(
        self,
        delivery: Delivery,
        target: str,
        actor_user_id: Optional[int] = None,
        note: Optional[str] = None,
        values: Optional[Dict[str, Any]] = None,
        order_values: Optional[Dict[str, Any]] = None,
        extra_conditions: Optional[List[Any]] = None,
        within: Optional[Callable[[], None]] = None,
        event: Optional[str] = None
    ) -> Delivery:
        """
        Ejecutar (delivery.status -> target).

        - `values` / `order_values`: columnas extra para la entrega y el pedido.
        - `extra_conditions`: condiciones adicionales del UPDATE condicional.
        - `within`: escrituras adicionales dentro de la misma transacción;
          si lanza, no se escribe nada.
        - `event`: nombre del evento de historial si difiere del estado destino.
        """
        now = datetime.now()
        plan = plan_transition(delivery.status, target, note=note, actor_user_id=actor_user_id, now=now)

        update_values: Dict[str, Any] = {
            "status": plan.new_status,
            "previous_status": plan.previous_status,
        }
        update_values.update(plan.stamps)
        if values:
            update_values.update(values)

        order_update: Dict[str, Any] = {"delivery_status": plan.new_status}
        if order_values:
            order_update.update(order_values)

        settlement = None
        if target == DeliveryStatus.ACCEPTED:
            update_values.setdefault(
                "estimated_delivery_time", now + timedelta(minutes=settings.provisional_eta_minutes)
            )
        elif target == DeliveryStatus.DELIVERED and delivery.settled_at is None:
            settlement = self.earnings.compute_settlement(delivery, now)
            update_values.update(settlement.delivery_values(now))
        elif target == DeliveryStatus.PENDING and plan.previous_status == DeliveryStatus.FAILED:
            update_values["courier_id"] = None
            order_update["driver_info"] = None

        history_entry = plan.history_entry
        if event:
            history_entry = HistoryEntry(
                event=event, timestamp=now, note=note, actor_user_id=actor_user_id
            )

        courier = None
        if plan.releases_courier and delivery.courier_id:
            courier = self.courier_repository.get_by_id(delivery.courier_id, self.company_id)

        with self.repository.transaction():
            if not self.repository.compare_and_set_status(
                delivery.id, plan.previous_status, update_values, extra_conditions
            ):
                raise ConflictError(
                    "La entrega cambió de estado durante la operación",
                    details={"delivery_id": delivery.id, "expected_status": plan.previous_status}
                )
            self.repository.add_history(delivery.id, history_entry)
            self.repository.update_order_delivery(delivery.order_id, order_update)

            if within:
                within()

            if courier is not None:
                self.courier_repository.release(courier.id, delivery.id, outcome=target)
                if settlement is not None:
                    self.earnings.apply_settlement(courier, delivery, settlement)
                elif target == DeliveryStatus.CANCELLED and courier.current_shift_id:
                    self.courier_repository.record_shift_delivery(
                        courier.current_shift_id, delivery.id, 'cancelled'
                    )

        self.repository.refresh(delivery)
        logger.info(
            f"🚚 Entrega {delivery.delivery_number}: {plan.previous_status} → {plan.new_status}"
        )

        await self.broadcast_status(delivery, history_entry.event)
        return delivery

    # ==================== TIEMPO REAL ====================

    async def broadcast_status(self, delivery: Delivery, event: Optional[str] = None):
        data = {
            "delivery_id": delivery.id,
            "delivery_number": delivery.delivery_number,
            "order_id": delivery.order_id,
            "status": delivery.status,
            "previous_status": delivery.previous_status,
            "event": event or delivery.status,
            "courier_id": delivery.courier_id,
        }
        await self.publish(delivery, "delivery:status", data)

    async def publish(self, delivery: Delivery, event: str, data: Dict[str, Any]):
        await self.realtime.publish(delivery_channel(delivery.id), event, data)
        await self.realtime.publish(company_channel(delivery.company_id), event, data)
