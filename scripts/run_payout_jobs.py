#!/usr/bin/env python3
"""
Tarea programada de pagos a repartidores.

Para cada empresa activa:
1. Genera el pago semanal de cada repartidor (idempotente por periodo)
2. Envía las transferencias de los pagos generados
3. Reintenta los pagos fallidos bajo el límite de reintentos

Uso (desde la raíz del repo): python -m scripts.run_payout_jobs [--no-process]
"""
import argparse
import asyncio
import logging

from app.config.database import SessionLocal
from app.core.exceptions import DeliveryEngineError
from app.shared.database.models import Company
from app.modules.payouts.service import PayoutService

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger("payout_jobs")


async def run_for_company(db, company: Company, process: bool) -> dict:
    service = PayoutService(db, company.id)

    created = service.create_weekly_payouts()
    processed = 0
    if process:
        for payout in created:
            try:
                await service.process_payout(payout.id)
                processed += 1
            except DeliveryEngineError as e:
                logger.warning(f"⚠️ Pago {payout.payout_number} no procesado: {e.message}")

    retried = await service.retry_failed_payouts()
    return {"created": len(created), "processed": processed, "retried": retried["count"]}


async def run_payout_jobs(process: bool = True):
    db = SessionLocal()
    try:
        companies = db.query(Company).filter(Company.is_active == True).all()
        logger.info(f"🧾 Ejecutando pagos para {len(companies)} empresas")
        for company in companies:
            summary = await run_for_company(db, company, process)
            logger.info(
                f"✅ {company.name}: {summary['created']} pagos creados, "
                f"{summary['processed']} procesados, {summary['retried']} reintentados"
            )
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Pagos semanales y reintentos")
    parser.add_argument("--no-process", action="store_true", help="Solo generar pagos, sin transferir")
    args = parser.parse_args()
    asyncio.run(run_payout_jobs(process=not args.no_process))
