# app/modules/payouts/schemas.py
from datetime import datetime
from pydantic import BaseModel, Field, validator
from typing import Optional, Dict, Any, List
from app.shared.schemas.common import BaseResponse

EARNINGS_PERIODS = ("today", "week", "month")

class WeeklyPayoutRequest(BaseModel):
    courier_id: Optional[int] = Field(None, description="Repartidor; todos los de la empresa si se omite")
    period_end: Optional[datetime] = Field(None, description="Fin del periodo (exclusivo); por defecto el lunes actual 00:00")
    process: bool = Field(False, description="Enviar la transferencia al crear el pago")

class AdjustmentRequest(BaseModel):
    amount: float = Field(..., description="Importe del ajuste (negativo para descontar)")
    reason: str = Field(..., min_length=3, max_length=500)

    @validator("amount")
    def non_zero(cls, v):
        if v == 0:
            raise ValueError("El ajuste no puede ser 0")
        return v

class CancelPayoutRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)

class PayoutWebhookEvent(BaseModel):
    transaction_id: str = Field(..., description="ID de la transferencia en el procesador")
    status: str = Field(..., description="paid | failed")
    failure_reason: Optional[str] = None

    @validator("status")
    def known_status(cls, v):
        if v not in ("paid", "failed"):
            raise ValueError(f"Estado de transferencia no soportado: {v}")
        return v

class PayoutResponse(BaseResponse):
    payout: Optional[Dict[str, Any]] = None

class PayoutListResponse(BaseResponse):
    payouts: List[Dict[str, Any]]
    count: int
    total: int

class PayoutSummaryResponse(BaseResponse):
    courier_id: int
    balance: float
    pending_payouts: float
    available_for_instant: float
    lifetime_earnings: float
    currency: str
    last_payout: Optional[Dict[str, Any]] = None

class EarningsSummaryResponse(BaseResponse):
    earnings: Dict[str, Any]
