# app/modules/couriers/__init__.py
"""
Módulo Couriers - Repartidores y turnos

Este módulo implementa la gestión operativa del repartidor:
- CR001-CR002: Alta y listado de repartidores
- CR003-CR005: Perfil, posición en reposo e historial de entregas
- CR006-CR010: Turnos y descansos
- CR011: Estadísticas de rendimiento

Arquitectura:
- router.py: Endpoints de repartidores
- service.py: Lógica de perfiles y turnos
- repository.py: Acceso a datos, búsqueda por proximidad y escrituras condicionales
- schemas.py: Modelos de request/response
"""

from .router import router
from .service import CourierService
from .repository import CourierRepository

__all__ = [
    "router",
    "CourierService",
    "CourierRepository"
]
