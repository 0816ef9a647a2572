# app/modules/deliveries/state_machine.py
"""
Máquina de estados de una entrega.

`plan_transition` no toca la base de datos: valida el par (actual, destino)
contra la tabla y devuelve el nuevo estado junto con la entrada de historial
que el repositorio persiste en la misma transacción.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional, Union

from app.core.exceptions import TransitionError


class DeliveryStatus:
    PENDING = "pending"
    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    ARRIVING_RESTAURANT = "arriving_restaurant"
    AT_RESTAURANT = "at_restaurant"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    ARRIVED = "arrived"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RETURNED = "returned"

    ALL = (
        PENDING, ASSIGNED, ACCEPTED, ARRIVING_RESTAURANT, AT_RESTAURANT,
        PICKED_UP, IN_TRANSIT, ARRIVED, DELIVERED, FAILED, CANCELLED, RETURNED
    )


ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    DeliveryStatus.PENDING: frozenset({DeliveryStatus.ASSIGNED, DeliveryStatus.CANCELLED}),
    DeliveryStatus.ASSIGNED: frozenset({DeliveryStatus.ACCEPTED, DeliveryStatus.CANCELLED}),
    DeliveryStatus.ACCEPTED: frozenset({DeliveryStatus.ARRIVING_RESTAURANT, DeliveryStatus.CANCELLED}),
    DeliveryStatus.ARRIVING_RESTAURANT: frozenset({DeliveryStatus.AT_RESTAURANT, DeliveryStatus.CANCELLED}),
    DeliveryStatus.AT_RESTAURANT: frozenset({DeliveryStatus.PICKED_UP, DeliveryStatus.CANCELLED}),
    DeliveryStatus.PICKED_UP: frozenset({DeliveryStatus.IN_TRANSIT, DeliveryStatus.CANCELLED}),
    DeliveryStatus.IN_TRANSIT: frozenset({DeliveryStatus.ARRIVED, DeliveryStatus.FAILED}),
    DeliveryStatus.ARRIVED: frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.FAILED}),
    DeliveryStatus.FAILED: frozenset({DeliveryStatus.PENDING}),
    DeliveryStatus.DELIVERED: frozenset(),
    DeliveryStatus.CANCELLED: frozenset(),
    DeliveryStatus.RETURNED: frozenset(),
}

TERMINAL_STATUSES = frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED, DeliveryStatus.RETURNED})

# Estados en los que el repartidor está comprometido con la entrega
ENGAGED_STATUSES = frozenset({
    DeliveryStatus.ASSIGNED, DeliveryStatus.ACCEPTED, DeliveryStatus.ARRIVING_RESTAURANT,
    DeliveryStatus.AT_RESTAURANT, DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT,
    DeliveryStatus.ARRIVED
})

# Estados en los que el repartidor va hacia el restaurante
INBOUND_STATUSES = frozenset({
    DeliveryStatus.ASSIGNED, DeliveryStatus.ACCEPTED,
    DeliveryStatus.ARRIVING_RESTAURANT, DeliveryStatus.AT_RESTAURANT
})

# Transiciones tras las cuales el repartidor queda libre
RELEASING_STATUSES = frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.FAILED, DeliveryStatus.CANCELLED})

# Estados que solo el repartidor asignado puede declarar
COURIER_DRIVEN_STATUSES = frozenset({
    DeliveryStatus.ACCEPTED, DeliveryStatus.ARRIVING_RESTAURANT, DeliveryStatus.AT_RESTAURANT,
    DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT, DeliveryStatus.ARRIVED,
    DeliveryStatus.DELIVERED, DeliveryStatus.FAILED
})


def allowed_next(status: str) -> List[str]:
    return sorted(ALLOWED_TRANSITIONS.get(status, frozenset()))


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class HistoryEntry:
    event: str
    timestamp: datetime
    note: Optional[str] = None
    actor_user_id: Optional[int] = None


@dataclass(frozen=True)
class TransitionPlan:
    """Resultado de validar una transición: estado nuevo + historial + sellos de tiempo"""
    previous_status: str
    new_status: str
    history_entry: HistoryEntry
    stamps: Dict[str, datetime] = field(default_factory=dict)

    @property
    def releases_courier(self) -> bool:
        return self.new_status in RELEASING_STATUSES


def plan_transition(
    current: str,
    target: str,
    note: Optional[str] = None,
    actor_user_id: Optional[int] = None,
    now: Optional[datetime] = None
) -> TransitionPlan:
    """Validar (current -> target) y construir el plan; lanza TransitionError si no está en la tabla"""
    if not can_transition(current, target):
        raise TransitionError(current, target, allowed_next(current))

    now = now or datetime.now()
    stamps: Dict[str, datetime] = {}

    if target == DeliveryStatus.ASSIGNED:
        stamps["assigned_at"] = now
    elif target == DeliveryStatus.ACCEPTED:
        stamps["accepted_at"] = now
    elif target == DeliveryStatus.AT_RESTAURANT:
        stamps["arrived_restaurant_at"] = now
    elif target == DeliveryStatus.PICKED_UP:
        stamps["actual_pickup_time"] = now
    elif target == DeliveryStatus.ARRIVED:
        stamps["arrived_customer_at"] = now
    elif target == DeliveryStatus.DELIVERED:
        stamps["actual_delivery_time"] = now
    elif target == DeliveryStatus.CANCELLED:
        stamps["cancelled_at"] = now

    return TransitionPlan(
        previous_status=current,
        new_status=target,
        history_entry=HistoryEntry(event=target, timestamp=now, note=note, actor_user_id=actor_user_id),
        stamps=stamps
    )


# ==================== REFERENCIA AL REPARTIDOR ====================

@dataclass(frozen=True)
class Unassigned:
    pass


@dataclass(frozen=True)
class Assigned:
    courier_id: int


CourierRef = Union[Unassigned, Assigned]


def courier_ref(courier_id: Optional[int]) -> CourierRef:
    if courier_id is None:
        return Unassigned()
    return Assigned(courier_id)
