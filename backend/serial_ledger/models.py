import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    JSON,
    func,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from .db import Base


def _json_type():
    """JSON type compatible with Postgres and SQLite."""
    return JSON().with_variant(JSONB, "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FulfillmentStatus(str, Enum):
    UNFULFILLED = "UNFULFILLED"
    FULFILLED = "FULFILLED"


class SerialStatus(str, Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"


class StaffRole(str, Enum):
    ADMIN = "admin"
    STAFF = "staff"


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(32), nullable=False, default=StaffRole.STAFF.value)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_login_at = Column(DateTime(timezone=True), nullable=True)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("shop_domain", "external_order_id", name="uq_orders_shop_external_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_domain = Column(String(255), nullable=False, index=True)
    external_order_id = Column(String(64), nullable=False)
    order_name = Column(String(64), nullable=False, index=True)
    # Platform creation time, stored in UTC; the export sorts on it
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    fulfillment_status = Column(String(16), nullable=False, default=FulfillmentStatus.UNFULFILLED.value)
    fulfilled_at = Column(DateTime(timezone=True), nullable=True)
    ingested_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    line_items = relationship(
        "LineItem",
        back_populates="order",
        cascade="all,delete-orphan",
        order_by="LineItem.id",
    )
    serial_numbers = relationship("SerialNumber", back_populates="order", order_by="SerialNumber.id")

    @property
    def saddle_line_items(self):
        return [li for li in self.line_items if li.is_saddle]


class LineItem(Base):
    __tablename__ = "line_items"
    __table_args__ = (
        UniqueConstraint("shop_domain", "external_line_item_id", name="uq_line_items_shop_external_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    shop_domain = Column(String(255), nullable=False)
    external_line_item_id = Column(String(64), nullable=False)
    title = Column(String(512), nullable=False, default="")
    sku = Column(String(255), nullable=True)
    quantity = Column(Integer, nullable=False)
    product_type = Column(String(255), nullable=True)
    tags = Column(_json_type(), nullable=True)
    # Computed once at ingestion and never rewritten
    is_saddle = Column(Boolean, nullable=False, default=False, index=True)

    order = relationship("Order", back_populates="line_items")
    serial_numbers = relationship("SerialNumber", back_populates="line_item", order_by="SerialNumber.id")


class SerialNumber(Base):
    __tablename__ = "serial_numbers"
    __table_args__ = (
        # Serial values are unique across one shop's ledger. Collisions are retried by the assigner,
        # which matches on this constraint name.
        UniqueConstraint("shop_domain", "serial", name="uq_serial_numbers_shop_serial"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    line_item_id = Column(Integer, ForeignKey("line_items.id"), nullable=False, index=True)
    shop_domain = Column(String(255), nullable=False)
    serial = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, default=SerialStatus.ASSIGNED.value)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    order = relationship("Order", back_populates="serial_numbers")
    line_item = relationship("LineItem", back_populates="serial_numbers")
