# app/core/auth/permissions.py
"""
Capacidades por rol.

Los servicios consultan estas funciones antes de cada operación que modifica
datos, de modo que la regla no depende de la capa HTTP.
"""
from typing import Dict, FrozenSet, Optional

from app.core.exceptions import AuthorizationError


class Capability:
    CREATE_DELIVERY = "create_delivery"
    DISPATCH = "dispatch"
    DRIVE = "drive"
    UPDATE_STATUS = "update_status"
    CANCEL = "cancel"
    TRACK = "track"
    TIP = "tip"
    RATE = "rate"
    MANAGE_PAYOUTS = "manage_payouts"
    VIEW_OWN_EARNINGS = "view_own_earnings"
    MANAGE_COURIERS = "manage_couriers"


_MANAGEMENT = frozenset({
    Capability.CREATE_DELIVERY, Capability.DISPATCH, Capability.UPDATE_STATUS,
    Capability.CANCEL, Capability.TRACK, Capability.MANAGE_PAYOUTS, Capability.MANAGE_COURIERS
})

ROLE_CAPABILITIES: Dict[str, FrozenSet[str]] = {
    "owner": _MANAGEMENT,
    "admin": _MANAGEMENT,
    "staff": frozenset({
        Capability.CREATE_DELIVERY, Capability.DISPATCH, Capability.UPDATE_STATUS,
        Capability.CANCEL, Capability.TRACK
    }),
    "courier": frozenset({
        Capability.DRIVE, Capability.UPDATE_STATUS, Capability.TRACK, Capability.VIEW_OWN_EARNINGS
    }),
    "customer": frozenset({
        Capability.TRACK, Capability.TIP, Capability.RATE
    }),
}

# Roles de gestión: pueden actuar sobre cualquier entrega del tenant
STAFF_ROLES = frozenset({"owner", "admin", "staff"})


def has_capability(user, capability: str) -> bool:
    return capability in ROLE_CAPABILITIES.get(user.role, frozenset())


def ensure_capability(user, capability: str):
    if not has_capability(user, capability):
        raise AuthorizationError(
            f"Rol '{user.role}' sin permiso '{capability}'",
            details={"capability": capability}
        )


def is_staff(user) -> bool:
    return user.role in STAFF_ROLES


def ensure_same_tenant(user, company_id: int):
    if user.company_id != company_id:
        raise AuthorizationError("Recurso de otra empresa")


def ensure_assigned_courier(user, delivery, courier=None):
    """
    Un repartidor solo puede actuar sobre la entrega que tiene asignada.
    El personal del restaurante pasa sin restricción.
    """
    if is_staff(user):
        return
    if user.role != "courier" or courier is None or delivery.courier_id != courier.id:
        raise AuthorizationError(
            "La entrega no está asignada a este repartidor",
            details={"delivery_id": delivery.id}
        )


def ensure_delivery_customer(user, delivery):
    """El cliente solo opera sobre sus propias entregas"""
    if is_staff(user):
        return
    if user.role != "customer" or delivery.customer_id != user.id:
        raise AuthorizationError(
            "La entrega no pertenece a este cliente",
            details={"delivery_id": delivery.id}
        )


def ensure_participant(user, delivery, courier: Optional[object] = None):
    """Personal, cliente dueño o repartidor asignado"""
    if is_staff(user):
        return
    if user.role == "customer" and delivery.customer_id == user.id:
        return
    if user.role == "courier" and courier is not None and delivery.courier_id == courier.id:
        return
    raise AuthorizationError("No participas en esta entrega", details={"delivery_id": delivery.id})
