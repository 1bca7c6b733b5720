import uuid
from sqlalchemy import Boolean, Column, Integer, JSON, Numeric, String, TIMESTAMP, Uuid, func
from sqlalchemy.dialects.postgresql import JSONB
from storefront.db import Base

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

class OrderRow(Base):
    __tablename__ = "orders"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    items = Column(JSONType, nullable=False)
    shipping_address = Column(JSONType, nullable=False)
    payment_method = Column(String(32), nullable=False)
    items_price = Column(Numeric(18, 2), nullable=False)
    tax_price = Column(Numeric(18, 2), nullable=False, default=0)
    shipping_price = Column(Numeric(18, 2), nullable=False, default=0)
    total_price = Column(Numeric(18, 2), nullable=False)
    status = Column(String(20), nullable=False, default="Created")
    is_paid = Column(Boolean, nullable=False, default=False)
    paid_at = Column(TIMESTAMP(timezone=True), nullable=True)
    payment_result = Column(JSONType, nullable=True)
    is_delivered = Column(Boolean, nullable=False, default=False)
    delivered_at = Column(TIMESTAMP(timezone=True), nullable=True)
    cancelled_at = Column(TIMESTAMP(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=True)

class OrdersOutbox(Base):
    __tablename__ = "orders_outbox"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    aggregate_id = Column(Uuid(as_uuid=True), nullable=False)
    event_type = Column(String(50), nullable=False)
    payload = Column(JSONType, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    published_at = Column(TIMESTAMP(timezone=True), nullable=True)

class UserRow(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=False)
    is_admin = Column(Boolean, nullable=False, default=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=True)
