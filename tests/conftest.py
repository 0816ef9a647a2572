import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("PAYMENT_WEBHOOK_SECRET", "whsec-test")

from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.config.database import get_db
from app.core.auth.service import AuthService
from app.main import app
from app.modules.deliveries.schemas import DeliveryCreate
from app.modules.deliveries.service import DeliveryService
from app.shared.database.models import Base, Company, Courier, Order, Restaurant, User
from app.shared.services.realtime import ConnectionManager
from tests.fakes import FakePaymentClient

RESTAURANT_POSITION = (40.4168, -3.7038)
CUSTOMER_POSITION = (40.4300, -3.7000)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def realtime():
    return ConnectionManager()


def _user(db, company, email, role, first_name="Test"):
    user = User(
        company_id=company.id,
        email=email,
        password_hash=AuthService.get_password_hash("secret123"),
        first_name=first_name,
        last_name="User",
        role=role,
        is_active=True
    )
    db.add(user)
    db.flush()
    return user


def _courier(db, company, user, position, shift_status="online", verified=True):
    courier = Courier(
        company_id=company.id,
        user_id=user.id,
        first_name=user.first_name,
        last_name=user.last_name,
        vehicle_type="scooter",
        verification_status="verified" if verified else "pending",
        shift_status=shift_status,
        is_available=shift_status == "online",
        current_latitude=position[0] if position else None,
        current_longitude=position[1] if position else None,
        balance=Decimal("0"),
        lifetime_earnings=Decimal("0"),
        total_earnings=Decimal("0"),
        total_tips=Decimal("0"),
        payout_account_id="acct_test"
    )
    db.add(courier)
    db.flush()
    return courier


@pytest.fixture
def seed(db):
    """Empresa con restaurante, pedido a domicilio, personal, cliente y dos repartidores"""
    company = Company(name="Pizzería Test", subdomain="pizzeria-test", email="test@pizzeria.com")
    db.add(company)
    db.flush()

    restaurant = Restaurant(
        company_id=company.id,
        name="Pizzería Centro",
        address="Calle Mayor 1",
        latitude=RESTAURANT_POSITION[0],
        longitude=RESTAURANT_POSITION[1],
        phone="+34 600 000 000"
    )
    db.add(restaurant)
    db.flush()

    owner = _user(db, company, "owner@test.com", "owner", "Olga")
    staff = _user(db, company, "staff@test.com", "staff", "Sara")
    customer = _user(db, company, "customer@test.com", "customer", "Carla")
    rider_user = _user(db, company, "rider@test.com", "courier", "Raúl")
    far_rider_user = _user(db, company, "far-rider@test.com", "courier", "Fede")

    courier = _courier(db, company, rider_user, (40.4180, -3.7040))
    far_courier = _courier(db, company, far_rider_user, (40.4400, -3.7100))

    orders = []
    for number in range(1, 4):
        order = Order(
            company_id=company.id,
            restaurant_id=restaurant.id,
            customer_id=customer.id,
            order_number=f"ORD-{number:04d}",
            fulfillment_type="delivery",
            customer_name="Carla Cliente",
            customer_phone="+34 611 111 111",
            delivery_address="Calle Luna 5",
            delivery_latitude=CUSTOMER_POSITION[0],
            delivery_longitude=CUSTOMER_POSITION[1],
            total=Decimal("25.00")
        )
        db.add(order)
        orders.append(order)

    dine_in = Order(
        company_id=company.id,
        restaurant_id=restaurant.id,
        order_number="ORD-9999",
        fulfillment_type="dine_in",
        total=Decimal("12.00")
    )
    db.add(dine_in)
    db.commit()

    return SimpleNamespace(
        company=company,
        restaurant=restaurant,
        owner=owner,
        staff=staff,
        customer=customer,
        rider_user=rider_user,
        far_rider_user=far_rider_user,
        courier=courier,
        far_courier=far_courier,
        orders=orders,
        dine_in=dine_in
    )


def token_for(user) -> str:
    return AuthService.create_access_token(data={
        "user_id": user.id,
        "email": user.email,
        "role": user.role,
        "company_id": user.company_id
    })


@pytest.fixture
def auth_headers():
    """Cabecera Bearer para el usuario dado"""
    def build(user) -> dict:
        return {"Authorization": f"Bearer {token_for(user)}"}

    return build


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def payment_client():
    return FakePaymentClient()


@pytest.fixture
def delivery_service(db, seed, realtime):
    return DeliveryService(db, seed.company.id, realtime)


@pytest.fixture
def new_delivery(delivery_service, seed):
    """Crea una entrega en 'pending' para el pedido indicado y devuelve su id"""
    async def create(order_index=0, auto_assign=False):
        result = await delivery_service.create_delivery(
            DeliveryCreate(order_id=seed.orders[order_index].id, auto_assign=auto_assign),
            seed.staff
        )
        return result["delivery"]["id"]

    return create
