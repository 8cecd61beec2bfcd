from __future__ import annotations

import enum
from datetime import date, datetime
from typing import Optional

from sqlalchemy import Column, Date, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship

from .utils import utcnow

Base = declarative_base()


class OrderStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PENDING_DIRECTOR = "PENDING_DIRECTOR"
    WAITING_CREATOR_APPROVAL = "WAITING_CREATOR_APPROVAL"
    APPROVED_BY_DIRECTOR = "APPROVED_BY_DIRECTOR"
    PENDING_DISPATCHER = "PENDING_DISPATCHER"
    DISPATCHED = "DISPATCHED"
    IN_DELIVERY = "IN_DELIVERY"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    CANCELED = "CANCELED"


class InvoiceType(str, enum.Enum):
    DELIVERY = "delivery"
    RECEIPT = "receipt"


class InvoiceStatus(str, enum.Enum):
    PENDING = "pending"
    IN_TRANSIT = "in_transit"
    ARRIVED = "arrived"
    DEPARTED = "departed"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELED = "canceled"


class Warehouse(Base):
    """Only the weighbridge-related columns of the plant's warehouse registry."""

    __tablename__ = "warehouses"

    id: int = Column(Integer, primary_key=True, index=True)
    name: str = Column(String, nullable=False, unique=True)
    latitude: Optional[float] = Column(Float, nullable=True)
    longitude: Optional[float] = Column(Float, nullable=True)
    scale_url: Optional[str] = Column(String, nullable=True)
    scale_api_key: Optional[str] = Column(String, nullable=True)
    scale_status: str = Column(String, default="unknown")
    scale_last_seen: Optional[datetime] = Column(DateTime, nullable=True)

    invoices = relationship("Invoice", back_populates="warehouse")


class Order(Base):
    __tablename__ = "orders"

    id: int = Column(Integer, primary_key=True, index=True)
    order_number: str = Column(String, unique=True, nullable=False, index=True)
    customer_id: int = Column(Integer, nullable=False)
    concrete_mark_id: int = Column(Integer, nullable=False)
    # Requested volume in m3; written once at creation
    quantity_m3: float = Column(Float, nullable=False)
    payment_type: str = Column(String, nullable=False, default="CASH")

    delivery_date: date = Column(Date, nullable=False)
    delivery_time: str = Column(String, nullable=False)
    delivery_address: str = Column(String, nullable=False)
    coordinates: Optional[str] = Column(String, nullable=True)

    status: str = Column(String, nullable=False, default=OrderStatus.DRAFT.value, index=True)
    notes: Optional[str] = Column(Text, nullable=True)

    created_by_id: int = Column(Integer, nullable=False, index=True)
    approved_by_id: Optional[int] = Column(Integer, nullable=True)
    dispatched_by_id: Optional[int] = Column(Integer, nullable=True)

    proposed_delivery_date: Optional[date] = Column(Date, nullable=True)
    proposed_delivery_time: Optional[str] = Column(String, nullable=True)
    change_reason: Optional[str] = Column(Text, nullable=True)

    created_at: datetime = Column(DateTime, nullable=False, default=utcnow)
    updated_at: datetime = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    invoices = relationship("Invoice", back_populates="order", order_by="Invoice.id")

    @property
    def status_enum(self) -> OrderStatus:
        return OrderStatus(self.status)


class Invoice(Base):
    __tablename__ = "invoices"

    id: int = Column(Integer, primary_key=True, index=True)
    invoice_number: str = Column(String, unique=True, nullable=False, index=True)
    type: str = Column(String, nullable=False)
    status: str = Column(String, nullable=False, default=InvoiceStatus.PENDING.value, index=True)

    order_id: Optional[int] = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)
    warehouse_id: Optional[int] = Column(Integer, ForeignKey("warehouses.id"), nullable=True)
    driver_id: Optional[int] = Column(Integer, nullable=True, index=True)
    vehicle_id: Optional[int] = Column(Integer, nullable=True)
    created_by_id: int = Column(Integer, nullable=False)

    # m3 for deliveries, kg for receipts
    quantity: float = Column(Float, nullable=False, default=0.0)

    gross_weight_kg: Optional[float] = Column(Float, nullable=True)
    gross_weight_at: Optional[datetime] = Column(DateTime, nullable=True)
    gross_photo_ref: Optional[str] = Column(String, nullable=True)
    tare_weight_kg: Optional[float] = Column(Float, nullable=True)
    tare_weight_at: Optional[datetime] = Column(DateTime, nullable=True)
    tare_photo_ref: Optional[str] = Column(String, nullable=True)
    net_weight_kg: Optional[float] = Column(Float, nullable=True)
    moisture_percent: Optional[float] = Column(Float, nullable=True)
    corrected_weight_kg: Optional[float] = Column(Float, nullable=True)

    accepted_at: Optional[datetime] = Column(DateTime, nullable=True)
    accepted_latitude: Optional[float] = Column(Float, nullable=True)
    accepted_longitude: Optional[float] = Column(Float, nullable=True)
    arrived_site_at: Optional[datetime] = Column(DateTime, nullable=True)
    arrived_site_latitude: Optional[float] = Column(Float, nullable=True)
    arrived_site_longitude: Optional[float] = Column(Float, nullable=True)
    departed_site_at: Optional[datetime] = Column(DateTime, nullable=True)
    departed_site_latitude: Optional[float] = Column(Float, nullable=True)
    departed_site_longitude: Optional[float] = Column(Float, nullable=True)
    arrived_plant_at: Optional[datetime] = Column(DateTime, nullable=True)
    arrived_plant_latitude: Optional[float] = Column(Float, nullable=True)
    arrived_plant_longitude: Optional[float] = Column(Float, nullable=True)
    distance_km: Optional[float] = Column(Float, nullable=True)

    notes: Optional[str] = Column(Text, nullable=True)
    created_at: datetime = Column(DateTime, nullable=False, default=utcnow)

    order = relationship("Order", back_populates="invoices")
    warehouse = relationship("Warehouse", back_populates="invoices")

    def effective_weight(self) -> Optional[float]:
        """Weight used in rollups: corrected, then net, then gross."""
        for value in (self.corrected_weight_kg, self.net_weight_kg, self.gross_weight_kg):
            if value is not None:
                return value
        return None


__all__ = [
    "Base",
    "OrderStatus",
    "InvoiceType",
    "InvoiceStatus",
    "Warehouse",
    "Order",
    "Invoice",
]
