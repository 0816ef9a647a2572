# app/modules/payouts/service.py
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from dateutil.relativedelta import relativedelta, MO
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config.settings import settings
from app.core.auth.permissions import Capability, ensure_capability, is_staff
from app.core.exceptions import AuthorizationError, ConflictError, NotFoundError, UpstreamError, ValidationError
from app.shared.database.models import Courier, CourierPayout, Delivery, User
from app.shared.services.payment_client import PaymentClient
from app.modules.couriers.repository import CourierRepository
from .earnings_calculator import EarningsBreakdown, courier_credit, platform_commission, to_money
from .earnings_service import EarningsService
from .repository import PayoutRepository
import logging

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

BREAKDOWN_KEYS = (
    "delivery_fees", "distance_bonuses", "wait_time_bonuses", "peak_hour_bonuses", "tips",
    "incentive_bonuses", "referral_bonuses", "adjustments", "deductions"
)


def weekly_period(period_end: Optional[datetime] = None, now: Optional[datetime] = None):
    """
    Semana natural anterior: lunes 00:00 a lunes 00:00.
    Con `period_end` explícito el periodo son los 7 días previos.
    """
    if period_end is None:
        now = now or datetime.now()
        period_end = (now + relativedelta(weekday=MO(-1))).replace(hour=0, minute=0, second=0, microsecond=0)
    period_start = period_end - relativedelta(weeks=1)
    return period_start, period_end


def build_breakdown(deliveries: List[Delivery], share: float) -> Dict[str, Decimal]:
    """Desglose bruto por componente; la comisión de la plataforma va en 'deductions'"""
    totals = {key: ZERO for key in BREAKDOWN_KEYS}
    for delivery in deliveries:
        if not delivery.earnings:
            continue
        breakdown = EarningsBreakdown.from_dict(delivery.earnings)
        totals["delivery_fees"] += breakdown.base_fee
        totals["distance_bonuses"] += breakdown.distance_bonus
        totals["wait_time_bonuses"] += breakdown.wait_time_bonus
        totals["peak_hour_bonuses"] += breakdown.peak_hour_bonus
        totals["tips"] += breakdown.tip
        totals["deductions"] += platform_commission(breakdown, share)
    return totals


def gross_of(breakdown: Dict[str, Decimal]) -> Decimal:
    return sum((value for key, value in breakdown.items() if key != "deductions"), ZERO)


def payout_to_dict(payout: CourierPayout) -> Dict[str, Any]:
    return {
        "id": payout.id,
        "payout_number": payout.payout_number,
        "courier_id": payout.courier_id,
        "payout_type": payout.payout_type,
        "status": payout.status,
        "period_start": payout.period_start.isoformat() if payout.period_start else None,
        "period_end": payout.period_end.isoformat() if payout.period_end else None,
        "breakdown": payout.breakdown,
        "gross_amount": float(payout.gross_amount),
        "fee": float(payout.fee or 0),
        "net_amount": float(payout.net_amount),
        "currency": payout.currency,
        "delivery_count": payout.delivery_count,
        "delivery_ids": payout.delivery_ids or [],
        "notes": payout.notes,
        "transaction_id": payout.transaction_id,
        "failure_reason": payout.failure_reason,
        "retry_count": payout.retry_count,
        "processed_at": payout.processed_at.isoformat() if payout.processed_at else None,
        "completed_at": payout.completed_at.isoformat() if payout.completed_at else None,
        "failed_at": payout.failed_at.isoformat() if payout.failed_at else None,
    }


class PayoutService:
    """
    Pagos a repartidores.

    Un pago agrupa entregas liquidadas que no pertenecen a otro pago; las
    entregas incluidas quedan marcadas con el id del pago. El saldo del
    repartidor se descuenta cuando la transferencia se completa.
    """

    def __init__(
        self,
        db: Session,
        company_id: Optional[int],
        payment_client: Optional[PaymentClient] = None
    ):
        self.db = db
        self.company_id = company_id
        self.repository = PayoutRepository(db)
        self.courier_repository = CourierRepository(db)
        self.earnings = EarningsService(db)
        self.payment_client = payment_client or PaymentClient()

    def _get_payout(self, payout_id: int) -> CourierPayout:
        payout = self.repository.get(payout_id, self.company_id)
        if not payout:
            raise NotFoundError("Pago", payout_id)
        return payout

    def _get_courier(self, courier_id: int) -> Courier:
        courier = self.courier_repository.get_by_id(courier_id, self.company_id)
        if not courier:
            raise NotFoundError("Repartidor", courier_id)
        return courier

    def _ensure_can_view(self, actor: User, courier: Courier):
        if is_staff(actor):
            return
        if actor.role != "courier" or courier.user_id != actor.id:
            raise AuthorizationError("Solo puedes consultar tus propios pagos")

    # ==================== PAGO SEMANAL ====================

    def create_weekly_payout(
        self,
        courier_id: int,
        period_end: Optional[datetime] = None,
        now: Optional[datetime] = None
    ) -> Optional[CourierPayout]:
        """
        Pago semanal idempotente por (repartidor, periodo).

        Devuelve None si ya existe un pago para el periodo o si no hay
        entregas liquidables.
        """
        courier = self._get_courier(courier_id)
        period_start, period_end = weekly_period(period_end, now)

        if self.repository.find_for_period(courier.id, "weekly", period_start, period_end):
            logger.info(f"⏭️ Pago semanal ya existe para repartidor {courier.id} ({period_start:%Y-%m-%d})")
            return None

        deliveries = self.repository.unpaid_deliveries(courier.id, period_start, period_end)
        if not deliveries:
            return None

        breakdown = build_breakdown(deliveries, settings.courier_share)
        gross = gross_of(breakdown)
        net = gross - breakdown["deductions"]
        delivery_ids = [delivery.id for delivery in deliveries]

        try:
            with self.repository.transaction():
                payout = self.repository.add(CourierPayout(
                    company_id=courier.company_id,
                    courier_id=courier.id,
                    payout_number=self.repository.next_payout_number(now or datetime.now()),
                    payout_type="weekly",
                    status="pending",
                    period_start=period_start,
                    period_end=period_end,
                    breakdown={key: float(value) for key, value in breakdown.items()},
                    gross_amount=gross,
                    fee=ZERO,
                    net_amount=net,
                    currency=settings.currency,
                    delivery_count=len(delivery_ids),
                    delivery_ids=delivery_ids,
                ))
                stamped = self.repository.stamp_deliveries(delivery_ids, payout.id)
                if stamped != len(delivery_ids):
                    raise ConflictError(
                        "Algunas entregas ya pertenecen a otro pago",
                        details={"courier_id": courier.id}
                    )
        except IntegrityError:
            logger.info(f"⏭️ Pago semanal concurrente para repartidor {courier.id}, se omite")
            return None

        self.db.refresh(payout)
        logger.info(
            f"🧾 Pago {payout.payout_number} creado: {len(delivery_ids)} entregas, neto {net} {settings.currency}"
        )
        return payout

    def create_weekly_payouts(self, period_end: Optional[datetime] = None) -> List[CourierPayout]:
        """Pago semanal para todos los repartidores de la empresa"""
        created = []
        for courier in self.repository.list_company_couriers(self.company_id):
            payout = self.create_weekly_payout(courier.id, period_end)
            if payout is not None:
                created.append(payout)
        return created

    # ==================== PAGO INSTANTÁNEO ====================

    async def request_instant_payout(self, courier: Courier) -> Dict[str, Any]:
        """Retiro del saldo disponible (saldo menos pagos abiertos) con comisión fija"""
        available = to_money(Decimal(str(courier.balance or 0)) - self.repository.open_amount(courier.id))
        minimum = to_money(settings.instant_payout_minimum)
        if available < minimum:
            raise ValidationError(
                f"Saldo disponible insuficiente (mínimo {minimum} {settings.currency})",
                details={"available": float(available), "minimum": float(minimum)}
            )
        if not courier.payout_account_id:
            raise ValidationError("El repartidor no tiene cuenta de pago configurada")

        now = datetime.now()
        fee = to_money(settings.instant_payout_fee)
        deliveries = self.repository.unpaid_deliveries(courier.id)
        breakdown = build_breakdown(deliveries, settings.courier_share)
        credits = sum(
            (courier_credit(EarningsBreakdown.from_dict(d.earnings), settings.courier_share)
             for d in deliveries if d.earnings),
            ZERO
        )
        breakdown["adjustments"] = available - credits
        delivery_ids = [delivery.id for delivery in deliveries]

        with self.repository.transaction():
            payout = self.repository.add(CourierPayout(
                company_id=courier.company_id,
                courier_id=courier.id,
                payout_number=self.repository.next_payout_number(now),
                payout_type="instant",
                status="pending",
                period_start=now,
                period_end=now,
                breakdown={key: float(value) for key, value in breakdown.items()},
                gross_amount=available,
                fee=fee,
                net_amount=available - fee,
                currency=settings.currency,
                delivery_count=len(delivery_ids),
                delivery_ids=delivery_ids,
            ))
            self.repository.stamp_deliveries(delivery_ids, payout.id)

        self.db.refresh(payout)
        logger.info(f"⚡ Pago instantáneo {payout.payout_number} de {payout.net_amount} para repartidor {courier.id}")
        return await self.process_payout(payout.id)

    # ==================== PROCESAMIENTO ====================

    def _mark_failed(self, payout: CourierPayout, reason: str):
        with self.repository.transaction():
            self.repository.compare_and_set_status(payout.id, ["processing"], {
                CourierPayout.status: "failed",
                CourierPayout.failure_reason: reason,
                CourierPayout.failed_at: datetime.now(),
                CourierPayout.retry_count: CourierPayout.retry_count + 1,
            })
        logger.warning(f"❌ Pago {payout.payout_number} fallido: {reason}")

    def _mark_completed(self, payout: CourierPayout, transaction_id: Optional[str]):
        """processing -> completed y descuento del saldo (una sola vez)"""
        with self.repository.transaction():
            completed = self.repository.compare_and_set_status(payout.id, ["processing"], {
                CourierPayout.status: "completed",
                CourierPayout.completed_at: datetime.now(),
                CourierPayout.transaction_id: transaction_id or payout.transaction_id,
                CourierPayout.failure_reason: None,
            })
            if completed:
                self.courier_repository.adjust_balance(payout.courier_id, -to_money(payout.net_amount + payout.fee))
        if completed:
            logger.info(f"✅ Pago {payout.payout_number} completado")
        return completed

    async def process_payout(self, payout_id: int) -> Dict[str, Any]:
        """
        pending -> processing -> transferencia.

        Respuesta 'paid' completa el pago; 'pending' lo deja en processing
        hasta el webhook; un fallo o timeout lo marca 'failed' para reintento.
        """
        payout = self._get_payout(payout_id)
        courier = self._get_courier(payout.courier_id)

        with self.repository.transaction():
            started = self.repository.compare_and_set_status(payout.id, ["pending"], {
                CourierPayout.status: "processing",
                CourierPayout.processed_at: datetime.now(),
            })
            if not started:
                raise ConflictError(
                    f"Solo se pueden procesar pagos 'pending' (actual: {payout.status})",
                    details={"payout_id": payout.id, "status": payout.status}
                )
        self.db.refresh(payout)

        if not courier.payout_account_id:
            self._mark_failed(payout, "Repartidor sin cuenta de pago")
        else:
            try:
                result = await self.payment_client.transfer(
                    courier.payout_account_id,
                    int(to_money(payout.net_amount) * 100),
                    payout.currency,
                    f"Pago {payout.payout_number}",
                    idempotency_key=f"{payout.payout_number}-{payout.retry_count}"
                )
            except UpstreamError as e:
                self._mark_failed(payout, e.message)
            else:
                if result.status == "paid":
                    self._mark_completed(payout, result.transfer_id)
                elif result.status == "failed":
                    with self.repository.transaction():
                        self.repository.compare_and_set_status(payout.id, ["processing"], {
                            CourierPayout.transaction_id: result.transfer_id or None,
                        })
                    self._mark_failed(payout, result.failure_reason or "Transferencia rechazada")
                else:
                    with self.repository.transaction():
                        self.repository.compare_and_set_status(payout.id, ["processing"], {
                            CourierPayout.transaction_id: result.transfer_id,
                        })
                    logger.info(f"⏳ Pago {payout.payout_number} en proceso ({result.transfer_id})")

        self.db.refresh(payout)
        return {
            "success": payout.status != "failed",
            "message": f"Pago {payout.payout_number}: {payout.status}",
            "payout": payout_to_dict(payout),
        }

    async def retry_payout(self, payout_id: int) -> Dict[str, Any]:
        payout = self._get_payout(payout_id)
        with self.repository.transaction():
            if not self.repository.compare_and_set_status(payout.id, ["failed"], {
                CourierPayout.status: "pending",
                CourierPayout.failed_at: None,
            }):
                raise ConflictError(
                    f"Solo se pueden reintentar pagos 'failed' (actual: {payout.status})",
                    details={"payout_id": payout.id, "status": payout.status}
                )
        logger.info(f"🔁 Reintentando pago {payout.payout_number} (intento {payout.retry_count + 1})")
        return await self.process_payout(payout.id)

    async def retry_failed_payouts(self) -> Dict[str, Any]:
        """Tarea programada: reintenta los pagos fallidos bajo el límite de reintentos"""
        results = []
        for payout in self.repository.list_retryable(self.company_id, settings.payout_max_retries):
            try:
                result = await self.retry_payout(payout.id)
                results.append(result["payout"])
            except ConflictError as e:
                logger.warning(f"⚠️ Pago {payout.payout_number} no reintentado: {e.message}")
        return {
            "success": True,
            "message": f"{len(results)} pagos reintentados",
            "payouts": results,
            "count": len(results),
            "total": len(results),
        }

    def cancel_payout(self, payout_id: int, reason: Optional[str] = None) -> Dict[str, Any]:
        """pending/failed -> cancelled; sus entregas vuelven a quedar liquidables"""
        payout = self._get_payout(payout_id)
        with self.repository.transaction():
            if not self.repository.compare_and_set_status(payout.id, ["pending", "failed"], {
                CourierPayout.status: "cancelled",
                CourierPayout.notes: self._append_note(payout.notes, f"Cancelado: {reason or 'sin motivo'}"),
            }):
                raise ConflictError(
                    f"No se puede cancelar un pago '{payout.status}'",
                    details={"payout_id": payout.id, "status": payout.status}
                )
            released = self.repository.release_deliveries(payout.id)

        self.db.refresh(payout)
        logger.info(f"🚫 Pago {payout.payout_number} cancelado, {released} entregas liberadas")
        return {"success": True, "message": "Pago cancelado", "payout": payout_to_dict(payout)}

    @staticmethod
    def _append_note(notes: Optional[str], line: str) -> str:
        return f"{notes}\n{line}" if notes else line

    def add_adjustment(self, payout_id: int, amount: float, reason: str) -> Dict[str, Any]:
        """Ajuste manual sobre un pago pendiente; también mueve el saldo del repartidor"""
        payout = self._get_payout(payout_id)
        delta = to_money(amount)
        net = to_money(payout.net_amount) + delta
        if net < 0:
            raise ValidationError("El ajuste dejaría el pago en negativo", field="amount")

        breakdown = dict(payout.breakdown or {})
        breakdown["adjustments"] = float(to_money(breakdown.get("adjustments", 0)) + delta)

        with self.repository.transaction():
            if not self.repository.compare_and_set_status(payout.id, ["pending"], {
                CourierPayout.breakdown: breakdown,
                CourierPayout.gross_amount: to_money(payout.gross_amount) + delta,
                CourierPayout.net_amount: net,
                CourierPayout.notes: self._append_note(payout.notes, f"Ajuste {delta}: {reason}"),
            }):
                raise ConflictError(
                    f"Solo se pueden ajustar pagos 'pending' (actual: {payout.status})",
                    details={"payout_id": payout.id, "status": payout.status}
                )
            self.courier_repository.adjust_balance(payout.courier_id, delta)

        self.db.refresh(payout)
        logger.info(f"✏️ Ajuste de {delta} en pago {payout.payout_number}: {reason}")
        return {"success": True, "message": "Ajuste aplicado", "payout": payout_to_dict(payout)}

    # ==================== WEBHOOK ====================

    def apply_transfer_update(self, transaction_id: str, status: str, failure_reason: Optional[str] = None) -> Dict[str, Any]:
        """Notificación del procesador: actualiza el pago por id de transferencia"""
        payout = self.repository.get_by_transaction_id(transaction_id)
        if not payout:
            raise NotFoundError("Transferencia", transaction_id)

        if payout.status != "processing":
            logger.info(f"⏭️ Webhook ignorado para {payout.payout_number} en estado '{payout.status}'")
            return {"success": True, "message": "Evento ya aplicado", "payout": payout_to_dict(payout)}

        if status == "paid":
            self._mark_completed(payout, transaction_id)
        else:
            self._mark_failed(payout, failure_reason or "Transferencia fallida")

        self.db.refresh(payout)
        return {"success": True, "message": f"Pago {payout.status}", "payout": payout_to_dict(payout)}

    # ==================== CONSULTAS ====================

    def get_payout(self, payout_id: int, actor: User) -> Dict[str, Any]:
        payout = self._get_payout(payout_id)
        self._ensure_can_view(actor, self._get_courier(payout.courier_id))
        return {"success": True, "message": "Pago obtenido", "payout": payout_to_dict(payout)}

    def list_payouts(
        self,
        actor: User,
        courier: Optional[Courier] = None,
        courier_id: Optional[int] = None,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> Dict[str, Any]:
        if not is_staff(actor):
            if courier is None:
                raise AuthorizationError("Sin acceso a pagos")
            courier_id = courier.id
        result = self.repository.list_payouts(self.company_id, courier_id, status, skip, limit)
        payouts = [payout_to_dict(payout) for payout in result["items"]]
        return {
            "success": True,
            "message": f"{len(payouts)} pagos",
            "payouts": payouts,
            "count": len(payouts),
            "total": result["total"],
        }

    def get_payout_summary(self, courier: Courier) -> Dict[str, Any]:
        """Saldo, pagos abiertos, ganancias acumuladas y último pago completado"""
        pending = self.repository.open_amount(courier.id)
        balance = to_money(courier.balance or 0)
        last = self.repository.last_completed(courier.id)
        return {
            "success": True,
            "message": "Resumen de pagos",
            "courier_id": courier.id,
            "balance": float(balance),
            "pending_payouts": float(to_money(pending)),
            "available_for_instant": float(max(ZERO, to_money(balance - pending))),
            "lifetime_earnings": float(to_money(courier.lifetime_earnings or 0)),
            "currency": settings.currency,
            "last_payout": payout_to_dict(last) if last else None,
        }

    def summary_for(self, actor: User, courier: Optional[Courier], courier_id: Optional[int]) -> Dict[str, Any]:
        if courier_id is not None:
            target = self._get_courier(courier_id)
            self._ensure_can_view(actor, target)
        elif courier is not None:
            target = courier
        else:
            raise ValidationError("Indica courier_id", field="courier_id")
        return self.get_payout_summary(target)

    def earnings_for(self, actor: User, courier: Optional[Courier], period: str, courier_id: Optional[int] = None) -> Dict[str, Any]:
        if courier_id is not None:
            target = self._get_courier(courier_id)
            self._ensure_can_view(actor, target)
        elif courier is not None:
            ensure_capability(actor, Capability.VIEW_OWN_EARNINGS)
            target = courier
        else:
            raise ValidationError("Indica courier_id", field="courier_id")
        return {
            "success": True,
            "message": "Resumen de ganancias",
            "earnings": self.earnings.earnings_summary(target, period),
        }
