# app/modules/payouts/earnings_service.py
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import and_
from sqlalchemy.orm import Session

from app.config.settings import settings
from app.shared.database.models import Courier, Delivery
from app.shared.geo import path_length_km
from app.modules.couriers.repository import CourierRepository
from .earnings_calculator import (
    EarningsBreakdown, calculate_delivery_earnings, courier_credit, to_money
)
import logging

logger = logging.getLogger(__name__)

# Por debajo de esta distancia el recorrido GPS no es fiable
MIN_TRACKED_PATH_KM = 0.1


@dataclass
class Settlement:
    breakdown: EarningsBreakdown
    credit: Decimal
    distance_km: float
    wait_minutes: float
    duration_minutes: Optional[int]

    def delivery_values(self, now: datetime) -> Dict[str, Any]:
        return {
            "earnings": self.breakdown.to_dict(),
            "settled_at": now,
            "actual_distance_km": round(self.distance_km, 2),
            "actual_duration_minutes": self.duration_minutes,
        }


class EarningsService:
    """Precálculo y liquidación de ganancias por entrega"""

    def __init__(self, db: Session):
        self.db = db
        self.courier_repository = CourierRepository(db)

    @staticmethod
    def base_fee_for(delivery: Delivery) -> Decimal:
        if delivery.earnings and "base_fee" in delivery.earnings:
            return to_money(delivery.earnings["base_fee"])
        return to_money(settings.delivery_base_fee)

    def estimate(self, delivery: Delivery, now: Optional[datetime] = None, base_fee: Optional[Decimal] = None) -> EarningsBreakdown:
        """Estimación con la distancia restaurante→cliente y sin espera"""
        return calculate_delivery_earnings(
            base_fee if base_fee is not None else self.base_fee_for(delivery),
            delivery.trip_distance_km or 0,
            0,
            0,
            now or datetime.now()
        )

    @staticmethod
    def _wait_minutes(delivery: Delivery, picked_up_at: Optional[datetime]) -> float:
        if not delivery.arrived_restaurant_at or not picked_up_at:
            return 0.0
        return max(0.0, (picked_up_at - delivery.arrived_restaurant_at).total_seconds() / 60)

    @staticmethod
    def _tracked_distance(delivery: Delivery) -> float:
        if not delivery.actual_pickup_time:
            return 0.0
        points = []
        for entry in delivery.location_history or []:
            recorded_at = datetime.fromisoformat(entry["timestamp"])
            if recorded_at >= delivery.actual_pickup_time:
                points.append((entry["latitude"], entry["longitude"]))
        return path_length_km(points)

    def compute_settlement(self, delivery: Delivery, now: datetime) -> Settlement:
        """Liquidación al pasar a 'delivered' (no escribe)"""
        tracked = self._tracked_distance(delivery)
        distance = tracked if tracked >= MIN_TRACKED_PATH_KM else (delivery.trip_distance_km or 0.0)
        wait = self._wait_minutes(delivery, delivery.actual_pickup_time)

        breakdown = calculate_delivery_earnings(
            self.base_fee_for(delivery),
            round(distance, 2),
            round(wait, 2),
            delivery.tip_amount or 0,
            now
        )
        credit = courier_credit(breakdown, settings.courier_share)

        started = delivery.accepted_at or delivery.assigned_at
        duration = int(round((now - started).total_seconds() / 60)) if started else None

        return Settlement(
            breakdown=breakdown,
            credit=credit,
            distance_km=distance,
            wait_minutes=wait,
            duration_minutes=duration
        )

    def apply_settlement(self, courier: Courier, delivery: Delivery, settlement: Settlement):
        """Abonar al repartidor y a su turno (sin commit)"""
        breakdown = settlement.breakdown
        self.courier_repository.credit_earnings(courier.id, settlement.credit, breakdown.tip)

        if courier.current_shift_id:
            share = Decimal(str(settings.courier_share))
            bonuses = breakdown.distance_bonus + breakdown.wait_time_bonus + breakdown.peak_hour_bonus
            self.courier_repository.record_shift_delivery(
                courier.current_shift_id,
                delivery.id,
                'delivered',
                delivery_fee=to_money(breakdown.base_fee * share),
                bonuses=to_money(bonuses * share),
                tips=breakdown.tip,
                distance_km=settlement.distance_km
            )

        logger.info(
            f"💰 Entrega {delivery.delivery_number} liquidada: total {breakdown.total} "
            f"abono {settlement.credit} al repartidor {courier.id}"
        )

    def credit_tip(self, courier_id: int, delivery_id: int, tip: Decimal):
        """La propina se abona íntegra al repartidor (sin commit)"""
        self.courier_repository.credit_earnings(courier_id, tip, tip)
        shift = self.courier_repository.get_shift_containing(courier_id, delivery_id)
        if shift:
            self.courier_repository.add_shift_tip(shift.id, tip)

    # ==================== RESUMEN DE GANANCIAS ====================

    def earnings_summary(self, courier: Courier, period: str = "week", now: Optional[datetime] = None) -> Dict[str, Any]:
        """Ganancias del repartidor para hoy / semana / mes"""
        now = now or datetime.now()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        if period == "today":
            since = start_of_day
        elif period == "month":
            since = start_of_day.replace(day=1)
        else:
            since = start_of_day - timedelta(days=start_of_day.weekday())

        deliveries = self.db.query(Delivery).filter(
            and_(
                Delivery.courier_id == courier.id,
                Delivery.status == 'delivered',
                Delivery.actual_delivery_time >= since
            )
        ).all()

        share = Decimal(str(settings.courier_share))
        totals = {
            "delivery_fees": Decimal("0"),
            "distance_bonuses": Decimal("0"),
            "wait_time_bonuses": Decimal("0"),
            "peak_hour_bonuses": Decimal("0"),
            "tips": Decimal("0"),
        }
        for delivery in deliveries:
            if not delivery.earnings:
                continue
            breakdown = EarningsBreakdown.from_dict(delivery.earnings)
            totals["delivery_fees"] += to_money(breakdown.base_fee * share)
            totals["distance_bonuses"] += to_money(breakdown.distance_bonus * share)
            totals["wait_time_bonuses"] += to_money(breakdown.wait_time_bonus * share)
            totals["peak_hour_bonuses"] += to_money(breakdown.peak_hour_bonus * share)
            totals["tips"] += breakdown.tip

        total = sum(totals.values(), Decimal("0"))
        return {
            "period": period,
            "since": since.isoformat(),
            "deliveries": len(deliveries),
            "breakdown": {key: float(value) for key, value in totals.items()},
            "total": float(total),
            "currency": settings.currency
        }
