"""
Load warehouses and orders from a JSON file into the plant database.

Usage:
    python -m plant_backend.load_seed              # loads data/seed.json
    python -m plant_backend.load_seed --file path  # load a specific file
    python -m plant_backend.load_seed --reset      # drop invoices and orders before importing
"""

from __future__ import annotations

import argparse
import json
import logging
from datetime import date
from pathlib import Path
from typing import Iterable, Optional, Sequence

from .config import get_config
from .database import SessionLocal, init_db
from .logging_config import configure_logging
from .models import Invoice, Order, OrderStatus, Warehouse
from .orders import generate_order_number
from .scale import bridge_base_url
from .utils import parse_coordinates

logger = logging.getLogger(__name__)

DATA_DIR = Path(__file__).parent / "data"
DEFAULT_JSON = DATA_DIR / "seed.json"


def upsert_warehouses(session, records: Iterable[dict], default_port: int) -> int:
    count = 0
    for entry in records:
        name = entry["name"].strip()
        warehouse = session.query(Warehouse).filter(Warehouse.name == name).one_or_none()
        if warehouse is None:
            warehouse = Warehouse(name=name)
            session.add(warehouse)
        if entry.get("scaleAddress"):
            warehouse.scale_url = bridge_base_url(entry["scaleAddress"], default_port)
        warehouse.scale_api_key = entry.get("scaleApiKey")
        warehouse.latitude = entry.get("latitude")
        warehouse.longitude = entry.get("longitude")
        count += 1
    session.commit()
    return count


def import_orders(session, records: Iterable[dict]) -> int:
    """Insert seed orders; ones whose number already exists are left alone."""
    imported = 0
    for entry in records:
        status = OrderStatus(entry.get("status", OrderStatus.DRAFT.value))
        coordinates = entry.get("coordinates")
        if coordinates and parse_coordinates(coordinates) is None:
            raise ValueError(f"Bad coordinates in seed order: {coordinates!r}")

        number = entry.get("orderNumber")
        if number and session.query(Order).filter(Order.order_number == number).count():
            continue
        session.add(
            Order(
                order_number=number or generate_order_number(session),
                customer_id=int(entry["customerId"]),
                concrete_mark_id=int(entry["concreteMarkId"]),
                quantity_m3=float(entry["quantity"]),
                payment_type=entry.get("paymentType", "CASH"),
                delivery_date=date.fromisoformat(entry["deliveryDate"]),
                delivery_time=entry["deliveryTime"],
                delivery_address=entry["deliveryAddress"],
                coordinates=coordinates,
                notes=entry.get("notes"),
                status=status.value,
                created_by_id=int(entry["createdBy"]),
            )
        )
        # Flush so the next generated number sees this one
        session.flush()
        imported += 1
    session.commit()
    return imported


def load_seed(payload: dict, *, reset: bool = False) -> None:
    config = get_config()
    init_db()
    session = SessionLocal()

    try:
        if reset:
            session.query(Invoice).delete()
            session.query(Order).delete()
            session.commit()

        warehouses = upsert_warehouses(session, payload.get("warehouses", []), config.SCALE_BRIDGE_PORT)
        orders = import_orders(session, payload.get("orders", []))
        logger.info("seed loaded: %s warehouses, %s new orders", warehouses, orders)
    finally:
        session.close()


def load_json_payload(path: Path) -> dict:
    if not path.exists():
        raise FileNotFoundError(f"Seed file not found: {path}")
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def parse_cli_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Load warehouses and orders from JSON into the plant database."
    )
    parser.add_argument(
        "--file",
        "-f",
        type=Path,
        default=DEFAULT_JSON,
        help=f"Path to the seed JSON file (default: {DEFAULT_JSON})",
    )
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Delete existing invoices and orders before importing.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_cli_args(argv)
    configure_logging(get_config().LOG_LEVEL)
    load_seed(load_json_payload(args.file), reset=args.reset)


if __name__ == "__main__":
    main()
