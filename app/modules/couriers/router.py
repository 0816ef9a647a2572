# app/modules/couriers/router.py
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.orm import Session

from app.config.database import get_db
from app.core.auth.dependencies import get_current_company_id, get_current_courier, get_current_user
from app.shared.database.models import Courier, User
from .service import CourierService
from .schemas import (
    CourierCreate, CourierListResponse, CourierPositionUpdate, CourierResponse,
    ShiftListResponse, ShiftResponse, ShiftStartRequest
)

router = APIRouter()

# ==================== ADMINISTRACIÓN ====================

@router.post("", response_model=CourierResponse)
async def create_courier(
    data: CourierCreate,
    current_user: User = Depends(get_current_user),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """
    CR001: Crear perfil de repartidor

    **Validaciones:**
    - El usuario debe existir en la empresa y tener rol 'courier'
    - Un usuario solo puede tener un perfil
    """
    service = CourierService(db, current_company_id)
    return service.create_courier(data, current_user)


@router.get("", response_model=CourierListResponse)
async def list_couriers(
    shift_status: Optional[str] = Query(None, description="offline | online | on_delivery | on_break"),
    verification_status: Optional[str] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """CR002: Listado de repartidores de la empresa"""
    service = CourierService(db, current_company_id)
    return service.list_couriers(
        current_user, shift_status=shift_status, verification_status=verification_status,
        skip=skip, limit=limit
    )

# ==================== REPARTIDOR AUTENTICADO ====================

@router.get("/me", response_model=CourierResponse)
async def get_my_profile(
    courier: Courier = Depends(get_current_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """CR003: Perfil y estadísticas del repartidor autenticado"""
    service = CourierService(db, current_company_id)
    return service.get_profile(courier)


@router.put("/me/location", response_model=CourierResponse)
async def update_my_location(
    data: CourierPositionUpdate,
    courier: Courier = Depends(get_current_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """
    CR004: Reportar posición sin entrega en curso

    **Funcionalidad:**
    - Alimenta la búsqueda por proximidad de la asignación automática
    """
    service = CourierService(db, current_company_id)
    return service.update_position(courier, data)


@router.get("/me/deliveries")
async def get_my_deliveries(
    status: Optional[str] = Query(None, description="Filtrar por estado"),
    limit: int = Query(50, ge=1, le=200),
    courier: Courier = Depends(get_current_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """CR005: Historial de entregas del repartidor"""
    service = CourierService(db, current_company_id)
    return service.get_my_deliveries(courier, status=status, limit=limit)


@router.get("/me/shifts", response_model=ShiftListResponse)
async def get_my_shifts(
    limit: int = Query(20, ge=1, le=100),
    courier: Courier = Depends(get_current_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """CR006: Turnos recientes con sus acumulados"""
    service = CourierService(db, current_company_id)
    return service.list_my_shifts(courier, limit)

# ==================== TURNOS ====================

@router.post("/me/shift/start", response_model=ShiftResponse)
async def start_shift(
    data: ShiftStartRequest = ShiftStartRequest(),
    courier: Courier = Depends(get_current_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """
    CR007: Iniciar turno

    **Validaciones:**
    - Solo repartidores verificados
    - Un único turno abierto por repartidor
    """
    service = CourierService(db, current_company_id)
    return service.start_shift(courier, data)


@router.post("/me/shift/end", response_model=ShiftResponse)
async def end_shift(
    courier: Courier = Depends(get_current_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """CR008: Terminar turno (rechazado con entrega en curso)"""
    service = CourierService(db, current_company_id)
    return service.end_shift(courier)


@router.post("/me/break/start", response_model=ShiftResponse)
async def start_break(
    courier: Courier = Depends(get_current_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """CR009: Iniciar descanso (solo en línea y sin entrega)"""
    service = CourierService(db, current_company_id)
    return service.start_break(courier)


@router.post("/me/break/end", response_model=ShiftResponse)
async def end_break(
    courier: Courier = Depends(get_current_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """CR010: Terminar descanso"""
    service = CourierService(db, current_company_id)
    return service.end_break(courier)

# ==================== ESTADÍSTICAS ====================

@router.get("/{courier_id}/stats")
async def get_courier_stats(
    courier_id: int = Path(..., description="ID del repartidor"),
    current_user: User = Depends(get_current_user),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """CR011: Estadísticas de rendimiento del repartidor"""
    service = CourierService(db, current_company_id)
    return service.get_stats(courier_id, current_user)
