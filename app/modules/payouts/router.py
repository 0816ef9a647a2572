# app/modules/payouts/router.py
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query
from sqlalchemy.orm import Session

from app.config.database import get_db
from app.config.settings import settings
from app.core.auth.dependencies import (
    get_current_company_id, get_current_courier, get_current_user, get_optional_courier,
    require_capability
)
from app.core.auth.permissions import Capability
from app.core.exceptions import AuthorizationError, ValidationError
from app.shared.database.models import Courier, User
from .schemas import (
    EARNINGS_PERIODS, AdjustmentRequest, CancelPayoutRequest, EarningsSummaryResponse,
    PayoutListResponse, PayoutResponse, PayoutSummaryResponse, PayoutWebhookEvent, WeeklyPayoutRequest
)
from .service import PayoutService, payout_to_dict
import logging

logger = logging.getLogger(__name__)

router = APIRouter()

# ==================== GESTIÓN DE PAGOS ====================

@router.post("/weekly", response_model=PayoutListResponse)
async def create_weekly_payouts(
    data: WeeklyPayoutRequest = WeeklyPayoutRequest(),
    current_user: User = Depends(require_capability(Capability.MANAGE_PAYOUTS)),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """
    PG001: Generar pagos semanales

    **Funcionalidad:**
    - Agrupa entregas completadas y liquidadas de la semana anterior
    - Idempotente por repartidor y periodo: repetir no duplica
    - Opcionalmente envía la transferencia al crear
    """
    service = PayoutService(db, current_company_id)
    if data.courier_id is not None:
        payout = service.create_weekly_payout(data.courier_id, data.period_end)
        payouts = [payout] if payout is not None else []
    else:
        payouts = service.create_weekly_payouts(data.period_end)

    results = []
    for payout in payouts:
        if data.process:
            processed = await service.process_payout(payout.id)
            results.append(processed["payout"])
        else:
            results.append(payout_to_dict(payout))

    return {
        "success": True,
        "message": f"{len(results)} pagos generados",
        "payouts": results,
        "count": len(results),
        "total": len(results),
    }


@router.post("/retry-failed", response_model=PayoutListResponse)
async def retry_failed_payouts(
    current_user: User = Depends(require_capability(Capability.MANAGE_PAYOUTS)),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """PG002: Reintentar pagos fallidos bajo el límite de reintentos"""
    service = PayoutService(db, current_company_id)
    return await service.retry_failed_payouts()


@router.post("/instant", response_model=PayoutResponse)
async def request_instant_payout(
    courier: Courier = Depends(get_current_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """
    PG003: Retiro instantáneo del saldo disponible

    **Validaciones:**
    - Saldo disponible (saldo menos pagos abiertos) sobre el mínimo
    - Cuenta de pago configurada
    - Se descuenta una comisión fija
    """
    service = PayoutService(db, current_company_id)
    return await service.request_instant_payout(courier)


@router.post("/webhook", response_model=PayoutResponse)
async def payout_webhook(
    event: PayoutWebhookEvent,
    x_webhook_secret: Optional[str] = Header(None),
    db: Session = Depends(get_db)
):
    """
    PG004: Notificación del procesador de pagos

    **Funcionalidad:**
    - Completa o marca como fallido el pago de la transferencia
    - Autenticado con el secreto compartido en X-Webhook-Secret
    """
    expected = settings.payment_webhook_secret
    if not expected or not x_webhook_secret or not secrets.compare_digest(x_webhook_secret, expected):
        raise AuthorizationError("Firma de webhook inválida")

    logger.info(f"📨 Webhook de pago: {event.transaction_id} -> {event.status}")
    service = PayoutService(db, company_id=None)
    return service.apply_transfer_update(event.transaction_id, event.status, event.failure_reason)

# ==================== CONSULTAS ====================

@router.get("/summary", response_model=PayoutSummaryResponse)
async def get_payout_summary(
    courier_id: Optional[int] = Query(None, description="Repartidor (solo gestión)"),
    current_user: User = Depends(get_current_user),
    courier: Optional[Courier] = Depends(get_optional_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """PG005: Saldo, pagos pendientes y último pago del repartidor"""
    service = PayoutService(db, current_company_id)
    return service.summary_for(current_user, courier, courier_id)


@router.get("/earnings", response_model=EarningsSummaryResponse)
async def get_earnings(
    period: str = Query("week", description="today | week | month"),
    courier_id: Optional[int] = Query(None, description="Repartidor (solo gestión)"),
    current_user: User = Depends(get_current_user),
    courier: Optional[Courier] = Depends(get_optional_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """
    PG006: Resumen de ganancias

    **Funcionalidad:**
    - Totales de tarifa base, bonos y propinas del periodo
    - Número de entregas y media por entrega
    """
    if period not in EARNINGS_PERIODS:
        raise ValidationError(f"Periodo no válido: {period}", field="period")
    service = PayoutService(db, current_company_id)
    return service.earnings_for(current_user, courier, period, courier_id)


@router.get("", response_model=PayoutListResponse)
async def list_payouts(
    courier_id: Optional[int] = Query(None),
    status: Optional[str] = Query(None, description="pending | processing | completed | failed | cancelled"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    courier: Optional[Courier] = Depends(get_optional_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """PG007: Listado de pagos (el repartidor solo ve los suyos)"""
    service = PayoutService(db, current_company_id)
    return service.list_payouts(current_user, courier, courier_id, status, skip, limit)


@router.get("/{payout_id}", response_model=PayoutResponse)
async def get_payout(
    payout_id: int = Path(..., description="ID del pago"),
    current_user: User = Depends(get_current_user),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """PG008: Detalle de un pago"""
    service = PayoutService(db, current_company_id)
    return service.get_payout(payout_id, current_user)

# ==================== OPERACIONES SOBRE UN PAGO ====================

@router.post("/{payout_id}/process", response_model=PayoutResponse)
async def process_payout(
    payout_id: int = Path(...),
    current_user: User = Depends(require_capability(Capability.MANAGE_PAYOUTS)),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """PG009: Enviar la transferencia de un pago pendiente"""
    service = PayoutService(db, current_company_id)
    return await service.process_payout(payout_id)


@router.post("/{payout_id}/retry", response_model=PayoutResponse)
async def retry_payout(
    payout_id: int = Path(...),
    current_user: User = Depends(require_capability(Capability.MANAGE_PAYOUTS)),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """PG010: Reintentar un pago fallido"""
    service = PayoutService(db, current_company_id)
    return await service.retry_payout(payout_id)


@router.post("/{payout_id}/cancel", response_model=PayoutResponse)
async def cancel_payout(
    payout_id: int = Path(...),
    data: CancelPayoutRequest = CancelPayoutRequest(),
    current_user: User = Depends(require_capability(Capability.MANAGE_PAYOUTS)),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """PG011: Cancelar un pago pendiente o fallido; sus entregas vuelven a ser liquidables"""
    service = PayoutService(db, current_company_id)
    return service.cancel_payout(payout_id, data.reason)


@router.post("/{payout_id}/adjustments", response_model=PayoutResponse)
async def add_adjustment(
    data: AdjustmentRequest,
    payout_id: int = Path(...),
    current_user: User = Depends(require_capability(Capability.MANAGE_PAYOUTS)),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """PG012: Ajuste manual (positivo o negativo) sobre un pago pendiente"""
    service = PayoutService(db, current_company_id)
    return service.add_adjustment(payout_id, data.amount, data.reason)
