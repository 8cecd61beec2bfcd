from __future__ import annotations

import re
from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .models import InvoiceStatus, InvoiceType, OrderStatus

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def _check_time(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    value = value.strip()
    if not _TIME_PATTERN.match(value):
        raise ValueError("time must be HH:MM")
    return value


class OrderCreate(BaseModel):
    customer_id: int = Field(..., ge=1)
    concrete_mark_id: int = Field(..., ge=1)
    quantity_m3: float = Field(..., gt=0)
    payment_type: str = Field("CASH", pattern="^(CASH|CASHLESS|CARD|TRANSFER)$")
    delivery_date: date
    delivery_time: str
    delivery_address: str = Field(..., min_length=1)
    coordinates: Optional[str] = None
    notes: Optional[str] = None
    submit: bool = False

    @field_validator("delivery_time")
    @classmethod
    def _normalize_time(cls, value: Optional[str]) -> Optional[str]:
        return _check_time(value)


class OrderScheduleUpdate(BaseModel):
    """Fields the creator may still move; quantity is not one of them."""

    model_config = ConfigDict(extra="forbid")

    delivery_date: Optional[date] = None
    delivery_time: Optional[str] = None
    delivery_address: Optional[str] = Field(default=None, min_length=1)
    coordinates: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("delivery_time")
    @classmethod
    def _normalize_time(cls, value: Optional[str]) -> Optional[str]:
        return _check_time(value)


class ProposeChangesRequest(BaseModel):
    delivery_date: date
    delivery_time: str
    change_reason: str = Field(..., min_length=1)
    # Accepted only so that an attempt to move the delivery can be refused loudly
    delivery_address: Optional[str] = None
    coordinates: Optional[str] = None

    @field_validator("delivery_time")
    @classmethod
    def _normalize_time(cls, value: Optional[str]) -> Optional[str]:
        return _check_time(value)


class ReconciliationRead(BaseModel):
    initial_quantity: float
    in_progress_quantity: float
    delivered_quantity: float
    remaining_quantity: float = Field(..., ge=0)
    quota_exceeded: bool
    draft_quantity: float = 0.0


class OrderRead(BaseModel):
    id: int
    order_number: str
    customer_id: int
    concrete_mark_id: int
    quantity_m3: float
    payment_type: str
    delivery_date: date
    delivery_time: str
    delivery_address: str
    coordinates: Optional[str] = None
    status: OrderStatus
    notes: Optional[str] = None
    created_by_id: int
    approved_by_id: Optional[int] = None
    dispatched_by_id: Optional[int] = None
    proposed_delivery_date: Optional[date] = None
    proposed_delivery_time: Optional[str] = None
    change_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OrderDetail(OrderRead):
    reconciliation: ReconciliationRead
    allowed_actions: List[str] = Field(default_factory=list)


class PageMeta(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int


class OrderPage(BaseModel):
    data: List[OrderRead]
    meta: PageMeta


class StatusCount(BaseModel):
    status: str
    count: int


class OrderStats(BaseModel):
    total: int
    by_status: List[StatusCount]


class TypeCount(BaseModel):
    type: str
    count: int


class InvoiceStats(BaseModel):
    total: int
    by_type: List[TypeCount]
    by_status: List[StatusCount]


class InvoiceCreate(BaseModel):
    type: InvoiceType
    order_id: Optional[int] = Field(default=None, ge=1)
    warehouse_id: Optional[int] = Field(default=None, ge=1)
    driver_id: Optional[int] = Field(default=None, ge=1)
    vehicle_id: Optional[int] = Field(default=None, ge=1)
    quantity: Optional[float] = Field(default=None, gt=0)
    gross_weight_kg: Optional[float] = Field(default=None, ge=0)
    gross_weight_at: Optional[datetime] = None
    tare_weight_kg: Optional[float] = Field(default=None, ge=0)
    tare_weight_at: Optional[datetime] = None
    moisture_percent: Optional[float] = Field(default=None, ge=0, lt=100)
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _check_shape(self) -> "InvoiceCreate":
        if self.type is InvoiceType.DELIVERY and self.quantity is None:
            raise ValueError("delivery invoices need a quantity in m3")
        if self.type is InvoiceType.RECEIPT and self.order_id is not None:
            raise ValueError("receipt invoices are not linked to orders")
        if self.tare_weight_kg is not None and self.gross_weight_kg is None:
            raise ValueError("tare weight requires a gross weight")
        return self


class InvoiceRead(BaseModel):
    id: int
    invoice_number: str
    type: InvoiceType
    status: InvoiceStatus
    order_id: Optional[int] = None
    warehouse_id: Optional[int] = None
    driver_id: Optional[int] = None
    vehicle_id: Optional[int] = None
    created_by_id: int
    quantity: float
    gross_weight_kg: Optional[float] = None
    gross_weight_at: Optional[datetime] = None
    tare_weight_kg: Optional[float] = None
    tare_weight_at: Optional[datetime] = None
    net_weight_kg: Optional[float] = None
    moisture_percent: Optional[float] = None
    corrected_weight_kg: Optional[float] = None
    accepted_at: Optional[datetime] = None
    arrived_site_at: Optional[datetime] = None
    departed_site_at: Optional[datetime] = None
    arrived_plant_at: Optional[datetime] = None
    distance_km: Optional[float] = None
    notes: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InvoiceCreated(BaseModel):
    invoice: InvoiceRead
    reconciliation: Optional[ReconciliationRead] = None


class CheckpointRequest(BaseModel):
    at: Optional[datetime] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)

    @model_validator(mode="after")
    def _pair(self) -> "CheckpointRequest":
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude go together")
        return self


class WarehouseScaleConfig(BaseModel):
    name: str = Field(..., min_length=1)
    scale_address: Optional[str] = None
    scale_api_key: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)


class WarehouseRead(BaseModel):
    id: int
    name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    scale_url: Optional[str] = None
    scale_status: str
    scale_last_seen: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class WeightReadingRead(BaseModel):
    weight_kg: float
    is_stable: bool
    is_connected: bool


class WeighingStart(BaseModel):
    order_id: Optional[int] = Field(default=None, ge=1)


class MoistureUpdate(BaseModel):
    moisture_percent: Optional[float] = Field(default=None, ge=0, lt=100)


class WeighingRead(BaseModel):
    session_id: str
    warehouse_id: int
    order_id: Optional[int] = None
    gross_weight_kg: Optional[float] = None
    gross_captured_at: Optional[datetime] = None
    tare_weight_kg: Optional[float] = None
    tare_captured_at: Optional[datetime] = None
    moisture_percent: Optional[float] = None
    net_weight_kg: Optional[float] = None
    corrected_weight_kg: Optional[float] = None
    net_valid: bool = True
    capture_in_progress: bool = False


class WeighingFinalize(BaseModel):
    type: InvoiceType
    order_id: Optional[int] = Field(default=None, ge=1)
    driver_id: Optional[int] = Field(default=None, ge=1)
    vehicle_id: Optional[int] = Field(default=None, ge=1)
    # Required for deliveries (m3); receipts use the weighed mass
    quantity: Optional[float] = Field(default=None, gt=0)
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _check_shape(self) -> "WeighingFinalize":
        if self.type is InvoiceType.DELIVERY and self.quantity is None:
            raise ValueError("delivery invoices need a quantity in m3")
        if self.type is InvoiceType.RECEIPT and self.order_id is not None:
            raise ValueError("receipt invoices are not linked to orders")
        return self
