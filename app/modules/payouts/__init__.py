# app/modules/payouts/__init__.py
"""
Módulo Payouts - Ganancias y pagos a repartidores

Este módulo implementa:
- Cálculo de ganancias por entrega (tarifa base, bonos de distancia, espera y hora punta)
- PG001-PG002: Pagos semanales y reintentos
- PG003: Retiro instantáneo
- PG004: Webhook del procesador de pagos
- PG005-PG008: Resúmenes y consultas
- PG009-PG012: Procesamiento, cancelación y ajustes

Arquitectura:
- router.py: Endpoints de pagos
- service.py: Generación y procesamiento de pagos
- earnings_calculator.py: Fórmulas puras de ganancias
- earnings_service.py: Liquidación de entregas y resúmenes
- repository.py: Acceso a datos
- schemas.py: Modelos de request/response
"""

from .router import router
from .service import PayoutService
from .earnings_service import EarningsService

__all__ = [
    "router",
    "PayoutService",
    "EarningsService"
]
