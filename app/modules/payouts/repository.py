# app/modules/payouts/repository.py
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, desc, func
from sqlalchemy.orm import Session

from app.shared.database.models import Courier, CourierPayout, Delivery

# Pagos que aún adeudan su importe al repartidor: su saldo no se ha descontado
OPEN_PAYOUT_STATUSES = ("pending", "processing", "failed")


class PayoutRepository:
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

    def get(self, payout_id: int, company_id: Optional[int]) -> Optional[CourierPayout]:
        query = self.db.query(CourierPayout).filter(CourierPayout.id == payout_id)
        if company_id is not None:
            query = query.filter(CourierPayout.company_id == company_id)
        return query.first()

    def get_by_transaction_id(self, transaction_id: str) -> Optional[CourierPayout]:
        return self.db.query(CourierPayout).filter(CourierPayout.transaction_id == transaction_id).first()

    def find_for_period(self, courier_id: int, payout_type: str, period_start: datetime, period_end: datetime) -> Optional[CourierPayout]:
        return self.db.query(CourierPayout).filter(
            and_(
                CourierPayout.courier_id == courier_id,
                CourierPayout.payout_type == payout_type,
                CourierPayout.period_start == period_start,
                CourierPayout.period_end == period_end
            )
        ).first()

    def list_payouts(
        self,
        company_id: int,
        courier_id: Optional[int] = None,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> Dict[str, Any]:
        query = self.db.query(CourierPayout).filter(CourierPayout.company_id == company_id)
        if courier_id:
            query = query.filter(CourierPayout.courier_id == courier_id)
        if status:
            query = query.filter(CourierPayout.status == status)
        total = query.count()
        items = query.order_by(desc(CourierPayout.created_at), desc(CourierPayout.id)).offset(skip).limit(limit).all()
        return {"items": items, "total": total}

    def list_retryable(self, company_id: int, max_retries: int) -> List[CourierPayout]:
        return self.db.query(CourierPayout).filter(
            and_(
                CourierPayout.company_id == company_id,
                CourierPayout.status == 'failed',
                CourierPayout.retry_count < max_retries
            )
        ).order_by(CourierPayout.id).all()

    def list_company_couriers(self, company_id: int) -> List[Courier]:
        return self.db.query(Courier).filter(Courier.company_id == company_id).order_by(Courier.id).all()

    def open_amount(self, courier_id: int) -> Decimal:
        total = self.db.query(func.coalesce(func.sum(CourierPayout.net_amount + CourierPayout.fee), 0)).filter(
            and_(
                CourierPayout.courier_id == courier_id,
                CourierPayout.status.in_(OPEN_PAYOUT_STATUSES)
            )
        ).scalar()
        return Decimal(str(total or 0))

    def last_completed(self, courier_id: int) -> Optional[CourierPayout]:
        return self.db.query(CourierPayout).filter(
            and_(CourierPayout.courier_id == courier_id, CourierPayout.status == 'completed')
        ).order_by(desc(CourierPayout.completed_at), desc(CourierPayout.id)).first()

    # ==================== ENTREGAS LIQUIDABLES ====================

    def unpaid_deliveries(
        self,
        courier_id: int,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None
    ) -> List[Delivery]:
        """Entregas completadas y liquidadas que aún no pertenecen a ningún pago"""
        conditions = [
            Delivery.courier_id == courier_id,
            Delivery.status == 'delivered',
            Delivery.settled_at.isnot(None),
            Delivery.payout_id.is_(None)
        ]
        if period_start is not None:
            conditions.append(Delivery.actual_delivery_time >= period_start)
        if period_end is not None:
            conditions.append(Delivery.actual_delivery_time < period_end)
        return self.db.query(Delivery).filter(and_(*conditions)).order_by(Delivery.actual_delivery_time).all()

    # ==================== ESCRITURAS (sin commit) ====================

    def next_payout_number(self, now: datetime) -> str:
        """PAY-YYYYMM-NNNNNN con secuencia mensual"""
        prefix = f"PAY-{now.strftime('%Y%m')}-"
        last = self.db.query(func.max(CourierPayout.payout_number)).filter(
            CourierPayout.payout_number.like(f"{prefix}%")
        ).scalar()
        sequence = int(last.rsplit("-", 1)[1]) + 1 if last else 1
        return f"{prefix}{sequence:06d}"

    def add(self, payout: CourierPayout) -> CourierPayout:
        self.db.add(payout)
        self.db.flush()
        return payout

    def stamp_deliveries(self, delivery_ids: List[int], payout_id: int) -> int:
        """Marcar entregas como pagadas; solo las que seguían libres"""
        if not delivery_ids:
            return 0
        return self.db.query(Delivery).filter(
            and_(Delivery.id.in_(delivery_ids), Delivery.payout_id.is_(None))
        ).update({Delivery.payout_id: payout_id}, synchronize_session=False)

    def release_deliveries(self, payout_id: int) -> int:
        return self.db.query(Delivery).filter(Delivery.payout_id == payout_id).update(
            {Delivery.payout_id: None}, synchronize_session=False
        )

    def compare_and_set_status(self, payout_id: int, expected: List[str], values: Dict[Any, Any]) -> bool:
        rows = self.db.query(CourierPayout).filter(
            and_(CourierPayout.id == payout_id, CourierPayout.status.in_(expected))
        ).update(values, synchronize_session=False)
        return rows == 1
