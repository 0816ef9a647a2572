# app/shared/database/models.py
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, Float,
    Numeric, ForeignKey, UniqueConstraint, Index, JSON,
    func, text
)
from sqlalchemy.orm import relationship
from sqlalchemy.ext.declarative import declarative_base

Base = declarative_base()

# =====================================================
# MIXIN PARA TIMESTAMPS
# =====================================================
class TimestampMixin:
    """Mixin que agrega campos created_at y updated_at"""
    created_at = Column(DateTime, nullable=False, server_default=func.current_timestamp())
    updated_at = Column(DateTime, nullable=False, server_default=func.current_timestamp(), onupdate=func.current_timestamp())


# =====================================================
# MODELOS MULTITENANT
# =====================================================

class Company(Base, TimestampMixin):
    """Modelo de Empresa/Tenant (negocio de restauración)"""
    __tablename__ = "companies"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    subdomain = Column(String(100), unique=True, nullable=False, index=True)
    email = Column(String(255), nullable=False)
    phone = Column(String(50))
    settings = Column(JSON, default=dict)
    is_active = Column(Boolean, default=True)

    # Relationships
    users = relationship("User", back_populates="company")
    restaurants = relationship("Restaurant", back_populates="company")


# =====================================================
# USUARIOS
# =====================================================

class User(Base):
    """Modelo de Usuario"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=True, index=True)
    email = Column(String(255), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=False)
    first_name = Column(String(255), nullable=False)
    last_name = Column(String(255), nullable=False)
    phone = Column(String(50))
    # owner | admin | staff | courier | customer
    role = Column(String(50), default='staff', nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, server_default=func.current_timestamp())

    # Relationships
    company = relationship("Company", back_populates="users")
    courier_profile = relationship("Courier", back_populates="user", uselist=False)

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"


# =====================================================
# COLABORADORES: RESTAURANTES Y PEDIDOS
# =====================================================

class Restaurant(Base, TimestampMixin):
    """Restaurante (punto de recogida)"""
    __tablename__ = "restaurants"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    address = Column(Text, nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    phone = Column(String(50))
    is_active = Column(Boolean, default=True)

    company = relationship("Company", back_populates="restaurants")


class Order(Base, TimestampMixin):
    """Pedido. Solo los campos que el motor de despacho lee o actualiza"""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False)
    customer_id = Column(Integer, ForeignKey("users.id"))
    order_number = Column(String(50), nullable=False)
    # dine_in | pickup | delivery
    fulfillment_type = Column(String(20), nullable=False, default='dine_in')
    customer_name = Column(String(255))
    customer_phone = Column(String(50))
    delivery_address = Column(Text)
    delivery_latitude = Column(Float)
    delivery_longitude = Column(Float)
    delivery_instructions = Column(Text)
    total = Column(Numeric(10, 2), nullable=False, default=0)

    # Escritura de vuelta desde el motor de despacho
    delivery_id = Column(Integer)
    delivery_status = Column(String(30))
    driver_info = Column(JSON)

    restaurant = relationship("Restaurant")
    customer = relationship("User", foreign_keys=[customer_id])


# =====================================================
# REPARTIDORES
# =====================================================

class Courier(Base, TimestampMixin):
    """Repartidor con estado de turno, ubicación, estadísticas y saldo"""
    __tablename__ = "couriers"
    __table_args__ = (
        Index("ix_couriers_dispatch_lookup", "company_id", "verification_status", "shift_status", "is_available"),
        Index("ix_couriers_position", "current_latitude", "current_longitude"),
    )

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    first_name = Column(String(255), nullable=False)
    last_name = Column(String(255), nullable=False)
    phone = Column(String(50))
    photo_url = Column(Text)
    # bicycle | scooter | motorcycle | car
    vehicle_type = Column(String(20), nullable=False, default='scooter')

    # pending | verified | rejected | suspended
    verification_status = Column(String(20), nullable=False, default='pending')
    # online | on_delivery | on_break | offline
    shift_status = Column(String(20), nullable=False, default='offline')
    is_available = Column(Boolean, nullable=False, default=False)
    current_delivery_id = Column(Integer, ForeignKey("deliveries.id", use_alter=True, name="fk_couriers_current_delivery"))
    current_shift_id = Column(Integer)

    # Ubicación
    current_latitude = Column(Float)
    current_longitude = Column(Float)
    location_updated_at = Column(DateTime)
    last_online_at = Column(DateTime)

    # Estadísticas
    total_deliveries = Column(Integer, nullable=False, default=0)
    completed_deliveries = Column(Integer, nullable=False, default=0)
    cancelled_deliveries = Column(Integer, nullable=False, default=0)
    completion_rate = Column(Float, nullable=False, default=0.0)
    average_rating = Column(Float, nullable=False, default=0.0)
    total_ratings = Column(Integer, nullable=False, default=0)
    total_earnings = Column(Numeric(10, 2), nullable=False, default=0)
    total_tips = Column(Numeric(10, 2), nullable=False, default=0)

    # Saldo
    balance = Column(Numeric(10, 2), nullable=False, default=0)
    lifetime_earnings = Column(Numeric(10, 2), nullable=False, default=0)
    payout_account_id = Column(String(255))

    user = relationship("User", back_populates="courier_profile")

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"

    @property
    def is_verified(self) -> bool:
        return self.verification_status == 'verified'


# =====================================================
# ENTREGAS
# =====================================================

class Delivery(Base, TimestampMixin):
    """Entrega: ciclo de vida de despacho de un pedido"""
    __tablename__ = "deliveries"
    __table_args__ = (
        Index("ix_deliveries_company_status", "company_id", "status"),
        Index("ix_deliveries_courier_status", "courier_id", "status"),
        # Una sola entrega abierta por pedido
        Index(
            "uq_deliveries_open_order", "order_id", unique=True,
            postgresql_where=text("status NOT IN ('delivered', 'cancelled', 'returned')"),
            sqlite_where=text("status NOT IN ('delivered', 'cancelled', 'returned')")
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    delivery_number = Column(String(30), nullable=False, unique=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False)
    customer_id = Column(Integer, ForeignKey("users.id"))
    courier_id = Column(Integer, ForeignKey("couriers.id"), index=True)

    status = Column(String(30), nullable=False, default='pending')
    previous_status = Column(String(30))
    is_priority = Column(Boolean, nullable=False, default=False)
    attempts = Column(Integer, nullable=False, default=0)
    rejected_courier_ids = Column(JSON, default=list)

    # Recogida
    pickup_address = Column(Text, nullable=False)
    pickup_latitude = Column(Float, nullable=False)
    pickup_longitude = Column(Float, nullable=False)
    pickup_contact_name = Column(String(255))
    pickup_contact_phone = Column(String(50))

    # Destino
    delivery_address = Column(Text, nullable=False)
    delivery_latitude = Column(Float, nullable=False)
    delivery_longitude = Column(Float, nullable=False)
    delivery_instructions = Column(Text)
    customer_name = Column(String(255))
    customer_phone = Column(String(50))

    # Distancias y duraciones
    trip_distance_km = Column(Float)
    estimated_distance_km = Column(Float)
    estimated_duration_minutes = Column(Integer)
    actual_distance_km = Column(Float)
    actual_duration_minutes = Column(Integer)

    # Tiempos
    assigned_at = Column(DateTime)
    accepted_at = Column(DateTime)
    arrived_restaurant_at = Column(DateTime)
    actual_pickup_time = Column(DateTime)
    arrived_customer_at = Column(DateTime)
    actual_delivery_time = Column(DateTime)
    estimated_pickup_time = Column(DateTime)
    estimated_delivery_time = Column(DateTime)

    # Cancelación
    cancelled_at = Column(DateTime)
    cancelled_by = Column(Integer, ForeignKey("users.id"))
    cancellation_reason = Column(Text)

    # Ubicación actual e historial acotado
    current_latitude = Column(Float)
    current_longitude = Column(Float)
    location_updated_at = Column(DateTime)
    location_sequence = Column(Integer)
    location_history = Column(JSON, default=list)

    # Ganancias
    earnings = Column(JSON)
    settled_at = Column(DateTime)
    payout_id = Column(Integer, ForeignKey("courier_payouts.id", use_alter=True, name="fk_deliveries_payout"))

    # Propina y calificación (una sola vez)
    tip_amount = Column(Numeric(10, 2))
    tip_added_at = Column(DateTime)
    customer_rating = Column(Integer)
    customer_comment = Column(Text)
    rated_at = Column(DateTime)

    # Prueba de entrega
    otp_code = Column(String(4))
    pod = Column(JSON)

    chat_messages = Column(JSON, default=list)
    chat_version = Column(Integer, nullable=False, default=0, server_default="0")
    issues = Column(JSON, default=list)
    issues_version = Column(Integer, nullable=False, default=0, server_default="0")

    # Relationships
    order = relationship("Order", foreign_keys=[order_id])
    restaurant = relationship("Restaurant")
    courier = relationship("Courier", foreign_keys=[courier_id])
    status_history = relationship(
        "DeliveryStatusHistory",
        back_populates="delivery",
        order_by="DeliveryStatusHistory.id"
    )


class DeliveryStatusHistory(Base):
    """Historial de estados (solo inserción)"""
    __tablename__ = "delivery_status_history"

    id = Column(Integer, primary_key=True, index=True)
    delivery_id = Column(Integer, ForeignKey("deliveries.id"), nullable=False, index=True)
    event = Column(String(30), nullable=False)
    note = Column(Text)
    actor_user_id = Column(Integer, ForeignKey("users.id"))
    created_at = Column(DateTime, nullable=False, server_default=func.current_timestamp())

    delivery = relationship("Delivery", back_populates="status_history")


# =====================================================
# TURNOS
# =====================================================

class CourierShift(Base, TimestampMixin):
    """Turno de trabajo de un repartidor"""
    __tablename__ = "courier_shifts"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    courier_id = Column(Integer, ForeignKey("couriers.id"), nullable=False, index=True)
    # active | on_break | ended
    status = Column(String(20), nullable=False, default='active')
    started_at = Column(DateTime, nullable=False)
    ended_at = Column(DateTime)
    breaks = Column(JSON, default=list)
    current_break_started_at = Column(DateTime)
    total_break_minutes = Column(Integer, nullable=False, default=0)

    # Estadísticas del turno
    delivery_ids = Column(JSON, default=list)
    deliveries_completed = Column(Integer, nullable=False, default=0)
    deliveries_cancelled = Column(Integer, nullable=False, default=0)
    distance_km = Column(Float, nullable=False, default=0.0)

    # Ganancias del turno
    delivery_fees = Column(Numeric(10, 2), nullable=False, default=0)
    bonuses = Column(Numeric(10, 2), nullable=False, default=0)
    tips = Column(Numeric(10, 2), nullable=False, default=0)
    total_earnings = Column(Numeric(10, 2), nullable=False, default=0)

    courier = relationship("Courier")


# =====================================================
# PAGOS A REPARTIDORES
# =====================================================

class CourierPayout(Base, TimestampMixin):
    """Liquidación periódica de ganancias de un repartidor"""
    __tablename__ = "courier_payouts"
    __table_args__ = (
        UniqueConstraint("courier_id", "payout_type", "period_start", "period_end", name="uq_payout_courier_period"),
    )

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    courier_id = Column(Integer, ForeignKey("couriers.id"), nullable=False, index=True)
    payout_number = Column(String(30), nullable=False, unique=True)
    # weekly | instant | adjustment | bonus
    payout_type = Column(String(20), nullable=False, default='weekly')
    # pending | processing | completed | failed | cancelled
    status = Column(String(20), nullable=False, default='pending', index=True)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)

    breakdown = Column(JSON, nullable=False)
    gross_amount = Column(Numeric(10, 2), nullable=False)
    fee = Column(Numeric(10, 2), nullable=False, default=0)
    net_amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default='EUR')
    delivery_count = Column(Integer, nullable=False, default=0)
    delivery_ids = Column(JSON, default=list)
    notes = Column(Text)

    # Transferencia externa
    transaction_id = Column(String(255), index=True)
    failure_reason = Column(Text)
    retry_count = Column(Integer, nullable=False, default=0)
    processed_at = Column(DateTime)
    completed_at = Column(DateTime)
    failed_at = Column(DateTime)

    courier = relationship("Courier")
