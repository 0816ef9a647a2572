# app/modules/couriers/repository.py
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, cast, desc, Float, or_
from sqlalchemy.orm import Session

from app.shared.database.models import Courier, CourierShift, Delivery, User
from app.shared.geo import bounding_box, haversine_km
import logging

logger = logging.getLogger(__name__)


class CourierRepository:
    def __init__(self, db: Session):
        self.db = db

    @contextmanager
    def transaction(self):
        try:
            yield
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    # ==================== LECTURAS ====================

    def get_by_id(self, courier_id: int, company_id: int) -> Optional[Courier]:
        return self.db.query(Courier).filter(
            and_(Courier.id == courier_id, Courier.company_id == company_id)
        ).first()

    def get_by_user_id(self, user_id: int) -> Optional[Courier]:
        return self.db.query(Courier).filter(Courier.user_id == user_id).first()

    def get_user(self, user_id: int, company_id: int) -> Optional[User]:
        return self.db.query(User).filter(
            and_(User.id == user_id, User.company_id == company_id)
        ).first()

    def list_couriers(
        self,
        company_id: int,
        shift_status: Optional[str] = None,
        verification_status: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> Dict[str, Any]:
        query = self.db.query(Courier).filter(Courier.company_id == company_id)
        if shift_status:
            query = query.filter(Courier.shift_status == shift_status)
        if verification_status:
            query = query.filter(Courier.verification_status == verification_status)
        total = query.count()
        items = query.order_by(Courier.last_name, Courier.first_name).offset(skip).limit(limit).all()
        return {"items": items, "total": total}

    def find_available_near(
        self,
        company_id: int,
        latitude: float,
        longitude: float,
        radius_km: float,
        exclude_ids: Optional[List[int]] = None
    ) -> List[Dict[str, Any]]:
        """
        Repartidores verificados, en línea y libres dentro del radio, del más cercano al más lejano.

        El filtro por caja envolvente usa el índice (lat, lng); la distancia exacta
        se calcula después con haversine.
        """
        min_lat, max_lat, lng_ranges = bounding_box(latitude, longitude, radius_km)

        query = self.db.query(Courier).filter(
            and_(
                Courier.company_id == company_id,
                Courier.verification_status == 'verified',
                Courier.shift_status == 'online',
                Courier.is_available == True,
                Courier.current_delivery_id.is_(None),
                Courier.current_latitude.isnot(None),
                Courier.current_longitude.isnot(None),
                Courier.current_latitude.between(min_lat, max_lat),
                or_(*[Courier.current_longitude.between(low, high) for low, high in lng_ranges])
            )
        )
        if exclude_ids:
            query = query.filter(Courier.id.notin_(exclude_ids))

        candidates = []
        for courier in query.all():
            distance = haversine_km(latitude, longitude, courier.current_latitude, courier.current_longitude)
            if distance <= radius_km:
                candidates.append({"courier": courier, "distance_km": distance})

        candidates.sort(key=lambda c: (c["distance_km"], c["courier"].id))
        return candidates

    # ==================== ESCRITURAS CONDICIONALES (sin commit) ====================

    def engage(self, courier_id: int, company_id: int, delivery_id: int, require_online: bool) -> bool:
        """
        Comprometer al repartidor con la entrega solo si sigue libre.
        UPDATE ... WHERE current_delivery_id IS NULL; True si ganó la carrera.
        """
        conditions = [
            Courier.id == courier_id,
            Courier.company_id == company_id,
            Courier.verification_status == 'verified',
            Courier.current_delivery_id.is_(None)
        ]
        if require_online:
            conditions.append(Courier.shift_status == 'online')
            conditions.append(Courier.is_available == True)

        rows = self.db.query(Courier).filter(and_(*conditions)).update({
            Courier.current_delivery_id: delivery_id,
            Courier.is_available: False,
            Courier.shift_status: 'on_delivery'
        }, synchronize_session=False)
        return rows == 1

    def release(self, courier_id: int, delivery_id: int, outcome: Optional[str] = None) -> bool:
        """
        Liberar al repartidor si sigue comprometido con esta entrega.
        `outcome` (delivered | failed | cancelled) actualiza las estadísticas.
        """
        values: Dict[Any, Any] = {
            Courier.current_delivery_id: None,
            Courier.is_available: True,
            Courier.shift_status: 'online'
        }

        if outcome:
            completed_inc = 1 if outcome == 'delivered' else 0
            values[Courier.total_deliveries] = Courier.total_deliveries + 1
            values[Courier.completed_deliveries] = Courier.completed_deliveries + completed_inc
            values[Courier.completion_rate] = (
                cast(Courier.completed_deliveries + completed_inc, Float) / (Courier.total_deliveries + 1)
            )
            if outcome == 'cancelled':
                values[Courier.cancelled_deliveries] = Courier.cancelled_deliveries + 1

        rows = self.db.query(Courier).filter(
            and_(Courier.id == courier_id, Courier.current_delivery_id == delivery_id)
        ).update(values, synchronize_session=False)
        if rows != 1:
            logger.warning(f"⚠️ Repartidor {courier_id} ya no estaba comprometido con la entrega {delivery_id}")
        return rows == 1

    def credit_earnings(self, courier_id: int, amount: Decimal, tip: Decimal = Decimal("0")):
        self.db.query(Courier).filter(Courier.id == courier_id).update({
            Courier.balance: Courier.balance + amount,
            Courier.lifetime_earnings: Courier.lifetime_earnings + amount,
            Courier.total_earnings: Courier.total_earnings + amount,
            Courier.total_tips: Courier.total_tips + tip
        }, synchronize_session=False)

    def adjust_balance(self, courier_id: int, delta: Decimal):
        """Movimiento de saldo sin tocar ganancias acumuladas (pagos, ajustes)"""
        self.db.query(Courier).filter(Courier.id == courier_id).update({
            Courier.balance: Courier.balance + delta
        }, synchronize_session=False)

    def set_rating(self, courier_id: int, average: float, count: int):
        self.db.query(Courier).filter(Courier.id == courier_id).update({
            Courier.average_rating: average,
            Courier.total_ratings: count
        }, synchronize_session=False)

    def update_position(self, courier_id: int, latitude: float, longitude: float, at: datetime):
        self.db.query(Courier).filter(Courier.id == courier_id).update({
            Courier.current_latitude: latitude,
            Courier.current_longitude: longitude,
            Courier.location_updated_at: at
        }, synchronize_session=False)

    def compare_and_set_shift_status(self, courier_id: int, expected: List[str], values: Dict[Any, Any]) -> bool:
        rows = self.db.query(Courier).filter(
            and_(Courier.id == courier_id, Courier.shift_status.in_(expected))
        ).update(values, synchronize_session=False)
        return rows == 1

    # ==================== TURNOS ====================

    def get_shift(self, shift_id: int) -> Optional[CourierShift]:
        return self.db.query(CourierShift).filter(CourierShift.id == shift_id).first()

    def get_open_shift(self, courier_id: int) -> Optional[CourierShift]:
        return self.db.query(CourierShift).filter(
            and_(CourierShift.courier_id == courier_id, CourierShift.status != 'ended')
        ).order_by(desc(CourierShift.started_at)).first()

    def get_shift_containing(self, courier_id: int, delivery_id: int) -> Optional[CourierShift]:
        for shift in self.db.query(CourierShift).filter(CourierShift.courier_id == courier_id) \
                .order_by(desc(CourierShift.started_at)).limit(20).all():
            if delivery_id in (shift.delivery_ids or []):
                return shift
        return None

    def list_shifts(self, courier_id: int, limit: int = 20) -> List[CourierShift]:
        return self.db.query(CourierShift).filter(CourierShift.courier_id == courier_id) \
            .order_by(desc(CourierShift.started_at)).limit(limit).all()

    def add_shift(self, shift: CourierShift) -> CourierShift:
        self.db.add(shift)
        self.db.flush()
        return shift

    def record_shift_delivery(
        self,
        shift_id: int,
        delivery_id: int,
        outcome: str,
        delivery_fee: Decimal = Decimal("0"),
        bonuses: Decimal = Decimal("0"),
        tips: Decimal = Decimal("0"),
        distance_km: float = 0.0
    ):
        """Acumular una entrega terminada en el turno (sin commit)"""
        shift = self.get_shift(shift_id)
        if shift is None:
            return
        delivery_ids = list(shift.delivery_ids or [])
        if delivery_id not in delivery_ids:
            delivery_ids.append(delivery_id)

        values: Dict[Any, Any] = {CourierShift.delivery_ids: delivery_ids}
        if outcome == 'delivered':
            values[CourierShift.deliveries_completed] = CourierShift.deliveries_completed + 1
            values[CourierShift.delivery_fees] = CourierShift.delivery_fees + delivery_fee
            values[CourierShift.bonuses] = CourierShift.bonuses + bonuses
            values[CourierShift.tips] = CourierShift.tips + tips
            values[CourierShift.total_earnings] = CourierShift.total_earnings + delivery_fee + bonuses + tips
            values[CourierShift.distance_km] = CourierShift.distance_km + distance_km
        elif outcome == 'cancelled':
            values[CourierShift.deliveries_cancelled] = CourierShift.deliveries_cancelled + 1

        self.db.query(CourierShift).filter(CourierShift.id == shift_id).update(values, synchronize_session=False)

    def add_shift_tip(self, shift_id: int, tip: Decimal):
        self.db.query(CourierShift).filter(CourierShift.id == shift_id).update({
            CourierShift.tips: CourierShift.tips + tip,
            CourierShift.total_earnings: CourierShift.total_earnings + tip
        }, synchronize_session=False)

    def update_shift(self, shift_id: int, expected_status: List[str], values: Dict[Any, Any]) -> bool:
        rows = self.db.query(CourierShift).filter(
            and_(CourierShift.id == shift_id, CourierShift.status.in_(expected_status))
        ).update(values, synchronize_session=False)
        return rows == 1

    # ==================== HISTORIAL DEL REPARTIDOR ====================

    def get_courier_deliveries(self, courier_id: int, statuses: Optional[List[str]] = None, limit: int = 50) -> List[Delivery]:
        query = self.db.query(Delivery).filter(Delivery.courier_id == courier_id)
        if statuses:
            query = query.filter(Delivery.status.in_(statuses))
        return query.order_by(desc(Delivery.created_at), desc(Delivery.id)).limit(limit).all()
