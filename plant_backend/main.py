import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from .actors import Actor, Role, get_actor
from .config import Config, get_config
from .database import SessionLocal, get_db, init_db
from .errors import DeviceUnavailable, NotFound, PlantError, ValidationFailed
from .invoices import (
    active_invoices_for_driver,
    cancel_invoice,
    create_invoice,
    finalize_session,
    get_invoice,
    list_invoices,
    invoice_stats,
)
from .logging_config import configure_logging
from .models import InvoiceStatus, InvoiceType, OrderStatus, Warehouse
from .notifications import NotificationHub
from .orders import (
    create_order,
    list_orders,
    order_reconciliation,
    order_stats,
    pending_for_director,
    update_schedule,
)
from .route import CHECKPOINTS_BY_NAME, record_checkpoint
from .scale import BridgeConfig, ScaleBridgeAdapter, WeightMonitor, bridge_base_url
from .schemas import (
    CheckpointRequest,
    InvoiceCreate,
    InvoiceCreated,
    InvoiceRead,
    InvoiceStats,
    MoistureUpdate,
    OrderCreate,
    OrderDetail,
    OrderPage,
    OrderRead,
    OrderScheduleUpdate,
    OrderStats,
    ProposeChangesRequest,
    ReconciliationRead,
    WarehouseRead,
    WarehouseScaleConfig,
    WeighingFinalize,
    WeighingRead,
    WeighingStart,
    WeightReadingRead,
)
from .utils import utcnow
from .weighing import WeighingSessionRegistry
from . import workflow

logger = logging.getLogger(__name__)


def _bridge_config(warehouse_id: int) -> BridgeConfig:
    db = SessionLocal()
    try:
        warehouse = db.get(Warehouse, warehouse_id)
        if warehouse is None:
            raise NotFound(f"Warehouse {warehouse_id} not found")
        if not warehouse.scale_url:
            raise ValidationFailed(f"Warehouse {warehouse.name} has no weighbridge configured")
        return BridgeConfig(url=warehouse.scale_url, api_key=warehouse.scale_api_key)
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = get_config()
    configure_logging(config.LOG_LEVEL)
    init_db()
    adapter = ScaleBridgeAdapter(
        _bridge_config,
        timeout=config.SCALE_TIMEOUT_SECONDS,
        token_ttl=config.CAPTURE_TOKEN_TTL_SECONDS,
        disconnect_after=config.SCALE_DISCONNECT_AFTER_FAILURES,
        # Tests put an httpx.MockTransport here before startup
        transport=getattr(app.state, "scale_transport", None),
    )
    app.state.config = config
    app.state.notifier = getattr(app.state, "notifier", None) or NotificationHub()
    app.state.adapter = adapter
    app.state.monitor = WeightMonitor(adapter, interval=config.SCALE_POLL_INTERVAL)
    app.state.weighings = WeighingSessionRegistry(adapter)
    logger.info("plant backend started (strict quota: %s)", config.STRICT_QUOTA)
    try:
        yield
    finally:
        await adapter.aclose()


app = FastAPI(
    title="Concrete Plant Fulfillment API",
    description="Order approval, weighbridge capture, reconciliation and route tracking.",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PlantError)
async def plant_error_handler(request: Request, exc: PlantError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def get_settings(request: Request) -> Config:
    return request.app.state.config


def get_notifier(request: Request) -> NotificationHub:
    return request.app.state.notifier


def _order_detail(db: Session, order_id: int, actor: Actor) -> OrderDetail:
    order = workflow.get_order(db, order_id)
    view = order_reconciliation(db, order_id)
    base = OrderRead.model_validate(order).model_dump()
    return OrderDetail(
        **base,
        reconciliation=ReconciliationRead(**view.to_dict()),
        allowed_actions=workflow.allowed_actions(order, actor),
    )


def _invoice_created(invoice, view) -> InvoiceCreated:
    return InvoiceCreated(
        invoice=InvoiceRead.model_validate(invoice),
        reconciliation=ReconciliationRead(**view.to_dict()) if view is not None else None,
    )


@app.get("/api/health")
def health_check():
    return {"status": "running"}


# -- warehouses / weighbridge ------------------------------------------------


@app.post("/api/warehouses", response_model=WarehouseRead, status_code=201)
def configure_warehouse(
    payload: WarehouseScaleConfig,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    config: Config = Depends(get_settings),
) -> WarehouseRead:
    """Register a warehouse with its weighbridge bridge address (admin setup)."""
    if actor.role not in (Role.ADMIN, Role.DEVELOPER):
        raise HTTPException(status_code=403, detail="Only administrators can configure weighbridges")
    warehouse = db.query(Warehouse).filter(Warehouse.name == payload.name).one_or_none()
    if warehouse is None:
        warehouse = Warehouse(name=payload.name)
        db.add(warehouse)
    if payload.scale_address:
        warehouse.scale_url = bridge_base_url(payload.scale_address, config.SCALE_BRIDGE_PORT)
    warehouse.scale_api_key = payload.scale_api_key
    warehouse.latitude = payload.latitude
    warehouse.longitude = payload.longitude
    db.commit()
    db.refresh(warehouse)
    return warehouse


@app.get("/api/warehouses/{warehouse_id}", response_model=WarehouseRead)
def get_warehouse(warehouse_id: int, db: Session = Depends(get_db)) -> WarehouseRead:
    warehouse = db.get(Warehouse, warehouse_id)
    if warehouse is None:
        raise NotFound(f"Warehouse {warehouse_id} not found")
    return warehouse


def _touch_warehouse(db: Session, warehouse_id: int, connected: bool) -> None:
    warehouse = db.get(Warehouse, warehouse_id)
    if warehouse is None:
        return
    warehouse.scale_status = "connected" if connected else "error"
    if connected:
        warehouse.scale_last_seen = utcnow()
    db.commit()


@app.get("/api/scale/{warehouse_id}/weight", response_model=WeightReadingRead)
async def current_weight(warehouse_id: int, request: Request) -> WeightReadingRead:
    reading = await request.app.state.adapter.read_current_weight(warehouse_id)
    return WeightReadingRead(**reading.to_dict())


@app.get("/api/scale/{warehouse_id}/stream")
async def stream_weight(
    warehouse_id: int,
    request: Request,
    limit: Optional[int] = Query(None, ge=1),
) -> StreamingResponse:
    """Server-sent events with live readings until the client goes away
    (or after *limit* readings, when given)."""
    monitor: WeightMonitor = request.app.state.monitor
    # Resolve the bridge up front so a bad warehouse fails as a normal error
    await run_in_threadpool(_bridge_config, warehouse_id)

    async def events() -> AsyncIterator[str]:
        readings = monitor.stream(warehouse_id, limit=limit)
        try:
            async for reading in readings:
                if await request.is_disconnected():
                    break
                yield f"data: {json.dumps(reading.to_dict())}\n\n"
        finally:
            await readings.aclose()

    return StreamingResponse(events(), media_type="text/event-stream")


@app.get("/api/scale/{warehouse_id}/health")
async def scale_health(warehouse_id: int, request: Request, db: Session = Depends(get_db)) -> dict:
    try:
        health = await request.app.state.adapter.check_health(warehouse_id)
    except DeviceUnavailable:
        await run_in_threadpool(_touch_warehouse, db, warehouse_id, False)
        raise
    await run_in_threadpool(_touch_warehouse, db, warehouse_id, True)
    return health


# -- weighing sessions -------------------------------------------------------


def _session_read(session) -> WeighingRead:
    return WeighingRead(**session.to_dict())


@app.post("/api/weighing/{warehouse_id}/session", response_model=WeighingRead, status_code=201)
def start_weighing(
    warehouse_id: int,
    payload: WeighingStart,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> WeighingRead:
    if db.get(Warehouse, warehouse_id) is None:
        raise NotFound(f"Warehouse {warehouse_id} not found")
    if payload.order_id is not None:
        workflow.get_order(db, payload.order_id)
    session = request.app.state.weighings.open(actor, warehouse_id, order_ref=payload.order_id)
    return _session_read(session)


@app.get("/api/weighing/{warehouse_id}/session", response_model=WeighingRead)
def get_weighing(warehouse_id: int, request: Request, actor: Actor = Depends(get_actor)) -> WeighingRead:
    return _session_read(request.app.state.weighings.get(actor, warehouse_id))


@app.delete("/api/weighing/{warehouse_id}/session", status_code=204)
def abandon_weighing(warehouse_id: int, request: Request, actor: Actor = Depends(get_actor)) -> None:
    request.app.state.weighings.discard(actor, warehouse_id)


@app.post("/api/weighing/{warehouse_id}/gross", response_model=WeighingRead)
async def capture_gross(
    warehouse_id: int,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> WeighingRead:
    session = request.app.state.weighings.get(actor, warehouse_id)
    try:
        await session.record_gross()
    except DeviceUnavailable:
        await run_in_threadpool(_touch_warehouse, db, warehouse_id, False)
        raise
    await run_in_threadpool(_touch_warehouse, db, warehouse_id, True)
    return _session_read(session)


@app.post("/api/weighing/{warehouse_id}/tare", response_model=WeighingRead)
async def capture_tare(
    warehouse_id: int,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> WeighingRead:
    session = request.app.state.weighings.get(actor, warehouse_id)
    try:
        await session.record_tare()
    except DeviceUnavailable:
        await run_in_threadpool(_touch_warehouse, db, warehouse_id, False)
        raise
    await run_in_threadpool(_touch_warehouse, db, warehouse_id, True)
    return _session_read(session)


@app.put("/api/weighing/{warehouse_id}/moisture", response_model=WeighingRead)
def set_moisture(
    warehouse_id: int,
    payload: MoistureUpdate,
    request: Request,
    actor: Actor = Depends(get_actor),
) -> WeighingRead:
    session = request.app.state.weighings.get(actor, warehouse_id)
    session.set_moisture(payload.moisture_percent)
    return _session_read(session)


@app.post("/api/weighing/{warehouse_id}/invoice", response_model=InvoiceCreated, status_code=201)
def save_weighing(
    warehouse_id: int,
    payload: WeighingFinalize,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    config: Config = Depends(get_settings),
    notifier: NotificationHub = Depends(get_notifier),
) -> InvoiceCreated:
    registry: WeighingSessionRegistry = request.app.state.weighings
    session = registry.get(actor, warehouse_id)
    invoice, view = finalize_session(db, session, payload, actor, config, notifier)
    registry.discard(actor, warehouse_id)
    return _invoice_created(invoice, view)


# -- orders ------------------------------------------------------------------


@app.post("/api/orders", response_model=OrderRead, status_code=201)
def open_order(
    payload: OrderCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    notifier: NotificationHub = Depends(get_notifier),
) -> OrderRead:
    return create_order(db, payload, actor, notifier)


@app.get("/api/orders", response_model=OrderPage)
def get_orders(
    page: int = 1,
    limit: int = 10,
    status: Optional[OrderStatus] = None,
    search: Optional[str] = None,
    mine: bool = False,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> OrderPage:
    return list_orders(
        db,
        page=page,
        limit=limit,
        status=status,
        search=search,
        created_by_id=actor.id if mine else None,
        driver_id=actor.id if actor.role is Role.DRIVER else None,
    )


@app.get("/api/orders/pending", response_model=List[OrderRead])
def get_pending_orders(db: Session = Depends(get_db)) -> List[OrderRead]:
    return pending_for_director(db)


@app.get("/api/orders/stats", response_model=OrderStats)
def get_order_stats(db: Session = Depends(get_db)) -> OrderStats:
    return order_stats(db)


@app.get("/api/orders/{order_id}", response_model=OrderDetail)
def get_order_detail(
    order_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> OrderDetail:
    return _order_detail(db, order_id, actor)


@app.patch("/api/orders/{order_id}", response_model=OrderRead)
def edit_order_schedule(
    order_id: int,
    payload: OrderScheduleUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> OrderRead:
    return update_schedule(db, order_id, payload, actor)


@app.delete("/api/orders/{order_id}")
def delete_order(
    order_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    workflow.delete_order(db, order_id, actor)


@app.get("/api/orders/{order_id}/reconciliation", response_model=ReconciliationRead)
def get_reconciliation(
    order_id: int,
    draft_quantity: Optional[float] = Query(default=None, ge=0),
    excluding_invoice_id: Optional[int] = None,
    db: Session = Depends(get_db),
) -> ReconciliationRead:
    """Live ledger; ``draft_quantity`` previews an invoice that is being typed."""
    view = order_reconciliation(
        db, order_id, excluding_invoice_id=excluding_invoice_id, draft_quantity=draft_quantity
    )
    return ReconciliationRead(**view.to_dict())


@app.post("/api/orders/{order_id}/submit", response_model=OrderRead)
def submit_order(
    order_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    notifier: NotificationHub = Depends(get_notifier),
) -> OrderRead:
    return workflow.submit_order(db, order_id, actor, notifier)


@app.post("/api/orders/{order_id}/approve", response_model=OrderRead)
def approve_order(
    order_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    notifier: NotificationHub = Depends(get_notifier),
) -> OrderRead:
    return workflow.approve_order(db, order_id, actor, notifier)


@app.post("/api/orders/{order_id}/reject", response_model=OrderRead)
def reject_order(
    order_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    notifier: NotificationHub = Depends(get_notifier),
) -> OrderRead:
    return workflow.reject_order(db, order_id, actor, notifier)


@app.post("/api/orders/{order_id}/propose-changes", response_model=OrderRead)
def propose_order_changes(
    order_id: int,
    payload: ProposeChangesRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    notifier: NotificationHub = Depends(get_notifier),
) -> OrderRead:
    return workflow.propose_changes(
        db,
        order_id,
        actor,
        delivery_date=payload.delivery_date,
        delivery_time=payload.delivery_time,
        reason=payload.change_reason,
        delivery_address=payload.delivery_address,
        coordinates=payload.coordinates,
        notifier=notifier,
    )


@app.post("/api/orders/{order_id}/accept-changes", response_model=OrderRead)
def accept_order_changes(
    order_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    notifier: NotificationHub = Depends(get_notifier),
) -> OrderRead:
    return workflow.accept_changes(db, order_id, actor, notifier)


@app.post("/api/orders/{order_id}/reject-changes", response_model=OrderRead)
def reject_order_changes(
    order_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    notifier: NotificationHub = Depends(get_notifier),
) -> OrderRead:
    return workflow.reject_changes(db, order_id, actor, notifier)


@app.post("/api/orders/{order_id}/dispatch", response_model=OrderRead)
def dispatch_order(
    order_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    notifier: NotificationHub = Depends(get_notifier),
) -> OrderRead:
    return workflow.dispatch_order(db, order_id, actor, notifier)


# -- invoices ----------------------------------------------------------------


@app.post("/api/invoices", response_model=InvoiceCreated, status_code=201)
def write_invoice(
    payload: InvoiceCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    config: Config = Depends(get_settings),
    notifier: NotificationHub = Depends(get_notifier),
) -> InvoiceCreated:
    invoice, view = create_invoice(db, payload, actor, config, notifier)
    return _invoice_created(invoice, view)


@app.get("/api/invoices", response_model=List[InvoiceRead])
def get_invoices(
    invoice_type: Optional[InvoiceType] = Query(default=None, alias="type"),
    status: Optional[InvoiceStatus] = None,
    order_id: Optional[int] = None,
    driver_id: Optional[int] = None,
    limit: int = 50,
    db: Session = Depends(get_db),
) -> List[InvoiceRead]:
    return list_invoices(
        db,
        invoice_type=invoice_type,
        status=status,
        order_id=order_id,
        driver_id=driver_id,
        limit=limit,
    )


@app.get("/api/invoices/mine/active", response_model=List[InvoiceRead])
def get_my_active_invoices(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> List[InvoiceRead]:
    return active_invoices_for_driver(db, actor.id)


@app.get("/api/invoices/stats", response_model=InvoiceStats)
def get_invoice_stats(db: Session = Depends(get_db)) -> InvoiceStats:
    return invoice_stats(db)


@app.get("/api/invoices/{invoice_id}", response_model=InvoiceRead)
def get_invoice_detail(invoice_id: int, db: Session = Depends(get_db)) -> InvoiceRead:
    return get_invoice(db, invoice_id)


@app.post("/api/invoices/{invoice_id}/cancel", response_model=InvoiceRead)
def cancel_invoice_endpoint(
    invoice_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> InvoiceRead:
    return cancel_invoice(db, invoice_id, actor)


@app.post("/api/invoices/{invoice_id}/checkpoints/{checkpoint}", response_model=InvoiceRead)
def report_checkpoint(
    invoice_id: int,
    checkpoint: str,
    payload: CheckpointRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    config: Config = Depends(get_settings),
    notifier: NotificationHub = Depends(get_notifier),
) -> InvoiceRead:
    if checkpoint not in CHECKPOINTS_BY_NAME:
        raise NotFound(f"Unknown route checkpoint '{checkpoint}'")
    return record_checkpoint(
        db,
        invoice_id,
        checkpoint,
        actor,
        at=payload.at,
        latitude=payload.latitude,
        longitude=payload.longitude,
        config=config,
        notifier=notifier,
    )
