# app/modules/deliveries/repository.py
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.shared.database.models import (
    Delivery, DeliveryStatusHistory, Order, Restaurant, Courier
)
from .state_machine import HistoryEntry, TERMINAL_STATUSES
import logging

logger = logging.getLogger(__name__)


class DeliveryRepository:
    def __init__(self, db: Session):
        self.db = db

    # ==================== TRANSACCIONES ====================

    @contextmanager
    def transaction(self):
        """Agrupa varias escrituras en un único commit; rollback ante cualquier error"""
        try:
            yield
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    # ==================== COLABORADORES ====================

    def get_order(self, order_id: int, company_id: int) -> Optional[Order]:
        return self.db.query(Order).filter(
            and_(Order.id == order_id, Order.company_id == company_id)
        ).first()

    def get_restaurant(self, restaurant_id: int, company_id: int) -> Optional[Restaurant]:
        return self.db.query(Restaurant).filter(
            and_(Restaurant.id == restaurant_id, Restaurant.company_id == company_id)
        ).first()

    def update_order_delivery(self, order_id: int, values: Dict[str, Any]):
        """Escritura de vuelta sobre el pedido (sin commit)"""
        self.db.query(Order).filter(Order.id == order_id).update(values, synchronize_session=False)

    # ==================== LECTURAS ====================

    def get_delivery(self, delivery_id: int, company_id: int) -> Optional[Delivery]:
        return self.db.query(Delivery).filter(
            and_(Delivery.id == delivery_id, Delivery.company_id == company_id)
        ).first()

    def get_by_number(self, delivery_number: str) -> Optional[Delivery]:
        return self.db.query(Delivery).filter(Delivery.delivery_number == delivery_number).first()

    def refresh(self, delivery: Delivery) -> Delivery:
        self.db.refresh(delivery)
        return delivery

    def get_open_delivery_for_order(self, order_id: int) -> Optional[Delivery]:
        return self.db.query(Delivery).filter(
            and_(
                Delivery.order_id == order_id,
                Delivery.status.notin_(list(TERMINAL_STATUSES))
            )
        ).first()

    def list_deliveries(
        self,
        company_id: int,
        status: Optional[str] = None,
        courier_id: Optional[int] = None,
        statuses: Optional[List[str]] = None,
        skip: int = 0,
        limit: int = 50
    ) -> Dict[str, Any]:
        query = self.db.query(Delivery).filter(Delivery.company_id == company_id)
        if status:
            query = query.filter(Delivery.status == status)
        if statuses:
            query = query.filter(Delivery.status.in_(statuses))
        if courier_id:
            query = query.filter(Delivery.courier_id == courier_id)

        total = query.count()
        items = query.order_by(desc(Delivery.is_priority), desc(Delivery.created_at), desc(Delivery.id)) \
            .offset(skip).limit(limit).all()
        return {"items": items, "total": total}

    def get_history(self, delivery_id: int) -> List[DeliveryStatusHistory]:
        return self.db.query(DeliveryStatusHistory).filter(
            DeliveryStatusHistory.delivery_id == delivery_id
        ).order_by(DeliveryStatusHistory.id).all()

    # ==================== ALTA ====================

    def next_delivery_number(self, now: datetime) -> str:
        """DLV-YYYYMMDD-NNNNN con secuencia diaria"""
        prefix = f"DLV-{now.strftime('%Y%m%d')}-"
        last = self.db.query(func.max(Delivery.delivery_number)).filter(
            Delivery.delivery_number.like(f"{prefix}%")
        ).scalar()
        sequence = int(last.rsplit("-", 1)[1]) + 1 if last else 1
        return f"{prefix}{sequence:05d}"

    def create_delivery(self, delivery: Delivery, entry: HistoryEntry) -> Delivery:
        """Insertar entrega + evento 'created' + escritura en el pedido en una transacción"""
        try:
            self.db.add(delivery)
            self.db.flush()
            self.add_history(delivery.id, entry)
            self.update_order_delivery(delivery.order_id, {
                "delivery_id": delivery.id,
                "delivery_status": delivery.status
            })
            self.db.commit()
            self.db.refresh(delivery)
            return delivery
        except IntegrityError:
            self.db.rollback()
            raise

    # ==================== ESCRITURAS CONDICIONALES (sin commit) ====================

    def add_history(self, delivery_id: int, entry: HistoryEntry):
        self.db.add(DeliveryStatusHistory(
            delivery_id=delivery_id,
            event=entry.event,
            note=entry.note,
            actor_user_id=entry.actor_user_id,
            created_at=entry.timestamp
        ))

    def compare_and_set_status(
        self,
        delivery_id: int,
        expected_status: str,
        values: Dict[str, Any],
        extra_conditions: Optional[List[Any]] = None
    ) -> bool:
        """UPDATE ... WHERE id = :id AND status = :expected; True si se actualizó una fila"""
        conditions = [Delivery.id == delivery_id, Delivery.status == expected_status]
        if extra_conditions:
            conditions.extend(extra_conditions)
        rows = self.db.query(Delivery).filter(and_(*conditions)).update(values, synchronize_session=False)
        return rows == 1

    def conditional_update(self, delivery_id: int, conditions: List[Any], values: Dict[str, Any]) -> bool:
        rows = self.db.query(Delivery).filter(
            and_(Delivery.id == delivery_id, *conditions)
        ).update(values, synchronize_session=False)
        return rows == 1

    # ==================== CALIFICACIONES ====================

    def courier_rating_stats(self, courier_id: int) -> Dict[str, Any]:
        """Promedio y número de entregas calificadas del repartidor"""
        row = self.db.query(
            func.avg(Delivery.customer_rating),
            func.count(Delivery.customer_rating)
        ).filter(
            and_(Delivery.courier_id == courier_id, Delivery.customer_rating.isnot(None))
        ).one()
        return {"average": float(row[0]) if row[0] is not None else 0.0, "count": int(row[1] or 0)}

    def get_courier(self, courier_id: int, company_id: int) -> Optional[Courier]:
        return self.db.query(Courier).filter(
            and_(Courier.id == courier_id, Courier.company_id == company_id)
        ).first()
