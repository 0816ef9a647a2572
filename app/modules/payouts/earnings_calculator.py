# app/modules/payouts/earnings_calculator.py
from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Union

Number = Union[int, float, Decimal, str]

TWO_PLACES = Decimal("0.01")

DISTANCE_THRESHOLD_KM = Decimal("3")
DISTANCE_RATE_PER_KM = Decimal("0.50")
WAIT_THRESHOLD_MINUTES = Decimal("10")
WAIT_RATE_PER_MINUTE = Decimal("0.15")
PEAK_HOUR_MULTIPLIER = Decimal("0.20")

# Franjas de alta demanda [inicio, fin) en horas locales
PEAK_HOURS = ((11, 14), (18, 22))


def to_money(value: Number) -> Decimal:
    """Convertir a Decimal con 2 decimales (redondeo comercial)"""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def is_peak_hour(timestamp: datetime) -> bool:
    hour = timestamp.hour
    return any(start <= hour < end for start, end in PEAK_HOURS)


@dataclass(frozen=True)
class EarningsBreakdown:
    base_fee: Decimal
    distance_bonus: Decimal
    wait_time_bonus: Decimal
    peak_hour_bonus: Decimal
    tip: Decimal
    total: Decimal

    @property
    def total_without_tip(self) -> Decimal:
        return self.total - self.tip

    def with_tip(self, tip: Number) -> "EarningsBreakdown":
        tip = to_money(tip)
        return EarningsBreakdown(
            base_fee=self.base_fee,
            distance_bonus=self.distance_bonus,
            wait_time_bonus=self.wait_time_bonus,
            peak_hour_bonus=self.peak_hour_bonus,
            tip=tip,
            total=self.base_fee + self.distance_bonus + self.wait_time_bonus + self.peak_hour_bonus + tip
        )

    def to_dict(self) -> Dict[str, float]:
        """Forma persistida en la columna JSON de la entrega"""
        return {key: float(value) for key, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EarningsBreakdown":
        return cls(
            base_fee=to_money(data.get("base_fee", 0)),
            distance_bonus=to_money(data.get("distance_bonus", 0)),
            wait_time_bonus=to_money(data.get("wait_time_bonus", 0)),
            peak_hour_bonus=to_money(data.get("peak_hour_bonus", 0)),
            tip=to_money(data.get("tip", 0)),
            total=to_money(data.get("total", 0))
        )


def calculate_delivery_earnings(
    base_fee: Number,
    distance_km: Number,
    wait_minutes: Number,
    tip: Number,
    timestamp: datetime
) -> EarningsBreakdown:
    """
    Ganancias de una entrega.

    Cada componente se redondea a céntimos antes de sumar, así el total
    coincide siempre con la suma de sus componentes.
    """
    base_fee = to_money(base_fee)
    distance = Decimal(str(distance_km))
    wait = Decimal(str(wait_minutes))
    tip = to_money(tip)

    distance_bonus = to_money(max(Decimal("0"), distance - DISTANCE_THRESHOLD_KM) * DISTANCE_RATE_PER_KM)
    wait_time_bonus = to_money(max(Decimal("0"), wait - WAIT_THRESHOLD_MINUTES) * WAIT_RATE_PER_MINUTE)

    if is_peak_hour(timestamp):
        peak_hour_bonus = to_money((base_fee + distance_bonus) * PEAK_HOUR_MULTIPLIER)
    else:
        peak_hour_bonus = Decimal("0.00")

    total = base_fee + distance_bonus + wait_time_bonus + peak_hour_bonus + tip

    return EarningsBreakdown(
        base_fee=base_fee,
        distance_bonus=distance_bonus,
        wait_time_bonus=wait_time_bonus,
        peak_hour_bonus=peak_hour_bonus,
        tip=tip,
        total=total
    )


def courier_credit(breakdown: EarningsBreakdown, courier_share: Number) -> Decimal:
    """Importe abonado al repartidor: su parte de lo que no es propina + 100% de la propina"""
    share = Decimal(str(courier_share))
    return to_money(breakdown.total_without_tip * share) + breakdown.tip


def platform_commission(breakdown: EarningsBreakdown, courier_share: Number) -> Decimal:
    return breakdown.total_without_tip - to_money(breakdown.total_without_tip * Decimal(str(courier_share)))
