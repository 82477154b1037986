"""Order materializer: Shopify order payload -> local order graph.

WHAT:
    Converts one Shopify REST order into customer, address, package,
    seller snapshot, channel config, order, shipment (+ tracking event)
    and order items inside a single transaction. A repeat sync of the same
    external id takes the update path instead.

WHY:
    - The payload is loosely structured: every field access goes through
      a fallback chain (shipping address -> note attributes -> default)
    - Partial graphs must never be left behind: one commit or one rollback
    - Concurrent batch jobs can race on the same external id; the
      uq_order_channel_order constraint is the backstop and a duplicate
      key at create time resolves to a skip

REFERENCES:
    - Order resource: https://shopify.dev/docs/api/admin-rest/2024-07/resources/order
    - ordersync/models.py
    - ordersync/workers/order_sync_worker.py (process-order job)
"""

from __future__ import annotations

import enum
import logging
import math
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from ordersync.exceptions import (
    MaterializationTimeoutError,
    PrimaryHubNotFoundError,
    TransientSyncError,
)
from ordersync.models import (
    Address,
    ChannelEnum,
    Customer,
    Hub,
    Order,
    OrderChannelConfig,
    OrderItem,
    OrderSellerDetails,
    OrderTypeEnum,
    Package,
    PaymentMethodEnum,
    PLACEHOLDER_CUSTOMER_PHONE,
    Shipment,
    ShipmentStatusEnum,
    TrackingEvent,
    Workspace,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_PHONE = "0000000000"
PLACEHOLDER_PINCODE = "000000"
DEFAULT_COUNTRY = "India"
DEFAULT_CUSTOMER_NAME = "Shopify Customer"
PHONE_COUNTRY_PREFIX = "+91"

# Divisor for volumetric weight in kg from cm^3 (courier standard)
VOLUMETRIC_DIVISOR = 5000

IST = timezone(timedelta(hours=5, minutes=30))


class MaterializeAction(str, enum.Enum):
    created = "created"
    updated = "updated"
    skipped = "skipped"


@dataclass
class MaterializeResult:
    action: MaterializeAction
    order_id: Optional[str]
    external_order_id: str


@dataclass
class ShippingDetails:
    """Contact + address resolved from the payload's fallback chain."""
    name: str
    phone: str
    email: Optional[str]
    address: str
    pincode: str
    city: str
    state: str
    country: str


@dataclass
class PackageDimensions:
    length: float
    breadth: float
    height: float
    dead_weight: float
    volumetric_weight: float
    applicable_weight: float


# =============================================================================
# PAYLOAD HELPERS
# =============================================================================

def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _str(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _to_decimal(value: Any) -> Decimal:
    """Parse a Shopify money string; anything unparseable is 0."""
    if value is None or value == "":
        return Decimal("0")
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")
    return result if result.is_finite() else Decimal("0")


def _to_float(value: Any) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    return result if math.isfinite(result) else 0.0


def _parse_datetime(dt_str: Optional[str]) -> Optional[datetime]:
    """Parse Shopify ISO datetime strings (None when missing or malformed)."""
    if not dt_str or not isinstance(dt_str, str):
        return None
    try:
        return datetime.fromisoformat(dt_str.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None


def normalize_phone(raw: Any) -> str:
    """Canonical phone: +91 followed by the last 10 digits.

    Non-digits are stripped; short numbers are left-padded with zeros so
    the stored value always has the same shape.
    """
    digits = re.sub(r"\D", "", _str(raw))
    if not digits:
        digits = PLACEHOLDER_PHONE
    return PHONE_COUNTRY_PREFIX + digits[-10:].rjust(10, "0")


def note_attributes(order: Dict[str, Any]) -> Dict[str, str]:
    """Map note_attributes [{name, value}] to {name: value}. First name wins."""
    result: Dict[str, str] = {}
    attributes = order.get("note_attributes")
    if not isinstance(attributes, list):
        return result
    for attribute in attributes:
        if not isinstance(attribute, dict):
            continue
        name = _str(attribute.get("name"))
        if name and name not in result:
            result[name] = _str(attribute.get("value"))
    return result


def _first(*values: Any, default: str = "") -> str:
    for value in values:
        text_value = _str(value)
        if text_value:
            return text_value
    return default


def resolve_shipping_details(order: Dict[str, Any]) -> ShippingDetails:
    """Resolve buyer contact and address field by field.

    Structured shipping address (or the customer's default address) wins,
    then the checkout note attributes, then an empty string / sentinel.
    """
    customer = _dict(order.get("customer"))
    shipping = _dict(order.get("shipping_address")) or _dict(customer.get("default_address"))
    notes = note_attributes(order)

    structured_name = _first(
        shipping.get("name"),
        " ".join(p for p in (_str(shipping.get("first_name")), _str(shipping.get("last_name"))) if p),
    )
    customer_name = " ".join(
        p for p in (_str(customer.get("first_name")), _str(customer.get("last_name"))) if p
    )
    street = " ".join(p for p in (_str(shipping.get("address1")), _str(shipping.get("address2"))) if p)

    return ShippingDetails(
        name=_first(structured_name, notes.get("Full name"), customer_name, default=DEFAULT_CUSTOMER_NAME),
        phone=normalize_phone(
            _first(shipping.get("phone"), customer.get("phone"), notes.get("Phone number"), default=PLACEHOLDER_PHONE)
        ),
        email=_first(customer.get("email"), order.get("email"), order.get("contact_email")) or None,
        address=_first(street, notes.get("Address")),
        pincode=_first(shipping.get("zip"), notes.get("zip_code"), default=PLACEHOLDER_PINCODE),
        city=_first(shipping.get("city"), notes.get("City")),
        state=_first(shipping.get("province"), notes.get("State")),
        country=_first(shipping.get("country"), default=DEFAULT_COUNTRY),
    )


def _line_items(order: Dict[str, Any]) -> List[Dict[str, Any]]:
    items = order.get("line_items")
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


def _quantity(item: Dict[str, Any]) -> int:
    try:
        quantity = int(item.get("quantity") or 1)
    except (TypeError, ValueError):
        return 1
    return quantity if quantity > 0 else 1


def compute_package(order: Dict[str, Any]) -> PackageDimensions:
    """Package weights and a synthetic box size from the payload.

    - dead weight: total_weight grams -> kg
    - box: grows with sqrt(total quantity), floored at 10x10x5 cm
    - applicable weight = max(dead weight, volumetric weight)
    """
    dead_weight = round(max(_to_float(order.get("total_weight")), 0.0) / 1000, 3)
    total_quantity = sum(_quantity(item) for item in _line_items(order)) or 1

    side = round(max(10.0, math.sqrt(total_quantity) * 5), 2)
    length = round(max(5.0, math.sqrt(total_quantity) * 3), 2)
    volumetric_weight = round(length * side * side / VOLUMETRIC_DIVISOR, 3)

    return PackageDimensions(
        length=length,
        breadth=side,
        height=side,
        dead_weight=dead_weight,
        volumetric_weight=volumetric_weight,
        applicable_weight=max(dead_weight, volumetric_weight),
    )


def map_payment(order: Dict[str, Any]) -> Tuple[PaymentMethodEnum, Decimal]:
    """Payment method and amount to collect from financial_status.

    Only `paid` is prepaid; every other status (known or not) is COD.
    Pending orders collect the full total, partially paid ones the
    outstanding balance, everything else nothing.
    """
    status = _str(order.get("financial_status")).lower()
    method = PaymentMethodEnum.prepaid if status == "paid" else PaymentMethodEnum.cod

    if status == "pending":
        amount = _to_decimal(order.get("total_price"))
    elif status == "partially_paid":
        amount = _to_decimal(order.get("total_outstanding"))
    else:
        amount = Decimal("0")
    return method, amount


def _item_dimensions(item: Dict[str, Any]) -> Dict[str, Optional[float]]:
    grams = _to_float(item.get("grams"))
    if grams <= 0:
        return {"length": None, "breadth": None, "height": None, "weight": None}
    weight = grams / 1000
    side = round(math.sqrt(weight) * 2, 2)
    return {
        "length": side,
        "breadth": side,
        "height": round(math.sqrt(weight), 2),
        "weight": round(weight, 3),
    }


def financial_year(now: Optional[datetime] = None) -> str:
    """Indian financial year (April-March) in IST, e.g. "2526" for FY 2025-26."""
    now = (now or datetime.now(timezone.utc)).astimezone(IST)
    start = now.year if now.month >= 4 else now.year - 1
    return f"{start % 100:02d}{(start + 1) % 100:02d}"


def generate_order_code(now: Optional[datetime] = None) -> str:
    """Local order code, e.g. "ORD-2526-3F9A1C07BE"."""
    return f"ORD-{financial_year(now)}-{uuid.uuid4().hex[:10].upper()}"


def _as_uuid(value) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


# =============================================================================
# MATERIALIZER
# =============================================================================

class OrderMaterializer:
    """Create or update the local order graph for one Shopify order.

    Usage:
        materializer = OrderMaterializer(SessionLocal, timeout_seconds=10)
        result = materializer.materialize(order_payload, workspace_id, shop)
    """

    channel = ChannelEnum.shopify

    def __init__(self, session_factory: Callable[[], Session], timeout_seconds: float = 10.0):
        self.session_factory = session_factory
        self.timeout_seconds = timeout_seconds

    def materialize(self, order: Dict[str, Any], workspace_id: str | UUID, shop: Any = None) -> MaterializeResult:
        """Materialize one order.

        Args:
            order: Raw Shopify order dict
            workspace_id: Owning workspace
            shop: Connection/shop info; its `name` feeds the seller snapshot

        Returns:
            MaterializeResult (created, updated, or skipped on a lost race)

        Raises:
            PrimaryHubNotFoundError: Workspace has no primary active hub
            MaterializationTimeoutError / TransientSyncError: retryable
            ValueError: Payload has no id
        """
        external_order_id = _str(order.get("id")) if isinstance(order, dict) else ""
        if not external_order_id:
            raise ValueError("Shopify order payload has no id")

        ws_id = _as_uuid(workspace_id)
        db = self.session_factory()
        started = time.monotonic()
        try:
            self._begin(db)
            existing = self._find_existing(db, ws_id, external_order_id)
            if existing is not None:
                result = self._update(db, existing, order)
            else:
                result = self._create(db, ws_id, external_order_id, order, shop)
            self._check_deadline(started, external_order_id)
            db.commit()
        except IntegrityError:
            db.rollback()
            if self._find_existing(db, ws_id, external_order_id) is not None:
                logger.info(
                    "[MATERIALIZER] Order %s created concurrently for workspace %s; skipping",
                    external_order_id,
                    ws_id,
                )
                return MaterializeResult(MaterializeAction.skipped, None, external_order_id)
            raise
        except OperationalError as e:
            db.rollback()
            if "statement timeout" in str(e).lower():
                raise MaterializationTimeoutError(external_order_id, self.timeout_seconds) from e
            raise TransientSyncError(f"Database error while materializing order {external_order_id}: {e}") from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(
            "[MATERIALIZER] Order %s %s (workspace=%s, order_id=%s)",
            external_order_id,
            result.action.value,
            ws_id,
            result.order_id,
        )
        return result

    # -------------------------------------------------------------------------
    # Transaction plumbing
    # -------------------------------------------------------------------------

    def _begin(self, db: Session) -> None:
        if db.get_bind().dialect.name == "postgresql":
            timeout_ms = int(self.timeout_seconds * 1000)
            db.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))

    def _check_deadline(self, started: float, external_order_id: str) -> None:
        if time.monotonic() - started > self.timeout_seconds:
            raise MaterializationTimeoutError(external_order_id, self.timeout_seconds)

    def _find_existing(self, db: Session, workspace_id: UUID, external_order_id: str) -> Optional[Order]:
        return db.query(Order).filter(
            Order.workspace_id == workspace_id,
            Order.channel == self.channel,
            Order.channel_order_id == external_order_id,
        ).first()

    # -------------------------------------------------------------------------
    # Create path
    # -------------------------------------------------------------------------

    def _create(
        self,
        db: Session,
        workspace_id: UUID,
        external_order_id: str,
        order: Dict[str, Any],
        shop: Any,
    ) -> MaterializeResult:
        hub = db.query(Hub).filter(
            Hub.workspace_id == workspace_id,
            Hub.is_primary.is_(True),
            Hub.is_active.is_(True),
        ).first()
        if not hub:
            raise PrimaryHubNotFoundError(str(workspace_id))

        details = resolve_shipping_details(order)
        customer = self._resolve_customer(db, workspace_id, details)
        self._upsert_address(db, customer, details)

        dims = compute_package(order)
        package = Package(
            length=dims.length,
            breadth=dims.breadth,
            height=dims.height,
            dead_weight=dims.dead_weight,
            volumetric_weight=dims.volumetric_weight,
            applicable_weight=dims.applicable_weight,
        )

        workspace = db.get(Workspace, workspace_id)
        seller_details = OrderSellerDetails(
            hub_id=hub.id,
            name=_first(getattr(shop, "name", None), workspace.name if workspace else None, hub.name),
            phone=hub.phone,
            address=hub.address,
            pincode=hub.pincode,
            city=hub.city,
            state=hub.state,
        )
        channel_config = OrderChannelConfig(channel=self.channel, channel_order_id=external_order_id)

        payment_method, amount_to_collect = map_payment(order)
        order_code = generate_order_code()
        order_name = _str(order.get("name"))

        local_order = Order(
            workspace_id=workspace_id,
            code=order_code,
            order_number=order_name or f"SHOP-{external_order_id}",
            type=OrderTypeEnum.b2c,
            payment_method=payment_method,
            total_amount=_to_decimal(order.get("total_price")),
            amount_to_collect=amount_to_collect,
            applicable_weight=dims.applicable_weight,
            order_invoice_date=_parse_datetime(order.get("created_at")),
            order_invoice_number=order_name or None,
            channel=self.channel,
            channel_order_id=external_order_id,
            channel_config=channel_config,
            customer=customer,
            hub_id=hub.id,
            seller_details=seller_details,
            package=package,
        )
        db.add_all([package, seller_details, channel_config, local_order])

        shipment = Shipment(order=local_order, code=f"{external_order_id}-{order_code}", status=ShipmentStatusEnum.new)
        db.add(shipment)
        db.add(TrackingEvent(shipment=shipment, status=ShipmentStatusEnum.new, description="Order Created"))

        for item in _line_items(order):
            db.add(OrderItem(
                order=local_order,
                name=_first(item.get("title"), item.get("name"), default="Item"),
                sku=_str(item.get("sku")),
                units=_quantity(item),
                selling_price=_to_decimal(item.get("price")),
                discount=Decimal("0"),
                tax=Decimal("0"),
                hsn="",
                **_item_dimensions(item),
            ))

        db.flush()
        return MaterializeResult(MaterializeAction.created, str(local_order.id), external_order_id)

    def _resolve_customer(self, db: Session, workspace_id: UUID, details: ShippingDetails) -> Customer:
        """Phone first, then email, else create. Existing values are never blanked.

        The placeholder phone identifies nobody, so it is never used to
        match an existing customer.
        """
        customer = None
        if details.phone != PLACEHOLDER_CUSTOMER_PHONE:
            customer = db.query(Customer).filter(
                Customer.workspace_id == workspace_id,
                Customer.phone == details.phone,
            ).first()
        if customer is None and details.email:
            customer = db.query(Customer).filter(
                Customer.workspace_id == workspace_id,
                Customer.email == details.email,
            ).first()

        if customer is None:
            customer = Customer(
                workspace_id=workspace_id,
                name=details.name,
                phone=details.phone,
                email=details.email,
            )
            db.add(customer)
            return customer

        if details.name and details.name != DEFAULT_CUSTOMER_NAME:
            customer.name = details.name
        if details.email:
            customer.email = details.email
        if details.phone != PLACEHOLDER_CUSTOMER_PHONE and customer.phone != details.phone:
            # Only reachable after an email match; phone lookup found nobody
            customer.phone = details.phone
        return customer

    def _upsert_address(self, db: Session, customer: Customer, details: ShippingDetails) -> Address:
        address = None
        if customer.id is not None:
            address = db.query(Address).filter(Address.customer_id == customer.id).first()

        if address is None:
            address = Address(
                customer=customer,
                name=details.name,
                phone=details.phone,
                address=details.address,
                pincode=details.pincode,
                city=details.city,
                state=details.state,
                country=details.country,
            )
            db.add(address)
            return address

        _apply_address(address, details)
        return address

    # -------------------------------------------------------------------------
    # Update path
    # -------------------------------------------------------------------------

    def _update(self, db: Session, local_order: Order, order: Dict[str, Any]) -> MaterializeResult:
        """Apply the fields that legitimately change on a re-sync.

        Line items are left as first materialized.
        """
        local_order.total_amount = _to_decimal(order.get("total_price"))
        invoice_date = _parse_datetime(order.get("created_at"))
        if invoice_date is not None:
            local_order.order_invoice_date = invoice_date

        payment_method, amount_to_collect = map_payment(order)
        if payment_method != local_order.payment_method:
            local_order.payment_method = payment_method
            local_order.amount_to_collect = amount_to_collect

        customer = local_order.customer
        if customer is not None:
            details = resolve_shipping_details(order)
            if details.email and details.email != customer.email:
                customer.email = details.email
            if details.phone != PLACEHOLDER_CUSTOMER_PHONE and details.phone != customer.phone:
                taken = db.query(Customer.id).filter(
                    Customer.workspace_id == customer.workspace_id,
                    Customer.phone == details.phone,
                    Customer.id != customer.id,
                ).first()
                if taken is None:
                    customer.phone = details.phone
            address = db.query(Address).filter(Address.customer_id == customer.id).first()
            if address is not None:
                _apply_address(address, details)

        db.flush()
        return MaterializeResult(MaterializeAction.updated, str(local_order.id), local_order.channel_order_id)


def _apply_address(address: Address, details: ShippingDetails) -> None:
    """Overwrite address fields only with real values; sentinels keep the old value."""
    if details.name and details.name != DEFAULT_CUSTOMER_NAME:
        address.name = details.name
    if details.phone != PLACEHOLDER_CUSTOMER_PHONE:
        address.phone = details.phone
    if details.address:
        address.address = details.address
    if details.pincode and details.pincode != PLACEHOLDER_PINCODE:
        address.pincode = details.pincode
    if details.city:
        address.city = details.city
    if details.state:
        address.state = details.state
    if details.country and details.country != DEFAULT_COUNTRY:
        address.country = details.country
