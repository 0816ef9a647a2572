# app/api/v1/router.py
from fastapi import APIRouter
from app.api.v1.auth import router as auth_router
from app.modules.deliveries import router as deliveries_router
from app.modules.couriers import router as couriers_router
from app.modules.payouts import router as payouts_router

# Crear router principal de la API v1
api_router = APIRouter()

api_router.include_router(auth_router, prefix="/auth", tags=["authentication"])

api_router.include_router(
    deliveries_router,
    prefix="/deliveries",
    tags=["Deliveries"]
)

api_router.include_router(
    couriers_router,
    prefix="/couriers",
    tags=["Couriers"]
)

api_router.include_router(
    payouts_router,
    prefix="/payouts",
    tags=["Payouts"]
)
