"""SQLAlchemy ORM models and enums.

This module defines the order/shipment schema the sync pipeline writes to,
using UUID primary keys and explicit relationships. Storefront credentials
live in a separate `tokens` table so raw secrets never sit on the
`connections` row.
"""

import uuid
from datetime import datetime, timezone
import enum

from sqlalchemy import Column, String, DateTime, Enum, Integer, ForeignKey, Numeric, Float, Text, Boolean, UniqueConstraint, Index, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()

# Canonical phone stored for buyers who gave none
PLACEHOLDER_CUSTOMER_PHONE = "+910000000000"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls):
    return Enum(enum_cls, values_callable=lambda obj: [e.value for e in obj])


# Enums ---------------------------------------------------------

class ProviderEnum(str, enum.Enum):
    shopify = "shopify"
    other = "other"


class ChannelEnum(str, enum.Enum):
    """Order source recorded on the order's channel config."""
    shopify = "SHOPIFY"
    custom = "CUSTOM"


class OrderTypeEnum(str, enum.Enum):
    b2c = "B2C"
    b2b = "B2B"


class PaymentMethodEnum(str, enum.Enum):
    prepaid = "PREPAID"
    cod = "COD"


class ShipmentStatusEnum(str, enum.Enum):
    new = "NEW"
    pickup_scheduled = "PICKUP_SCHEDULED"
    in_transit = "IN_TRANSIT"
    delivered = "DELIVERED"
    cancelled = "CANCELLED"


# Tenancy & credentials -----------------------------------------

class Workspace(Base):
    """Workspace is the tenant: a seller account owning connections, hubs and orders."""
    __tablename__ = "workspaces"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    connections = relationship("Connection", back_populates="workspace")
    hubs = relationship("Hub", back_populates="workspace")

    def __str__(self):
        return self.name


class Connection(Base):
    """Connection links a workspace to its storefront account.

    WHAT:
        One active row per (workspace, provider). Created or refreshed when
        the OAuth flow completes, deleted on disconnect.
    WHY:
        The sync worker needs the shop domain and credentials to pull
        orders, and absence of this row ends any in-flight sync for the
        workspace.
    """
    __tablename__ = "connections"
    __table_args__ = (
        UniqueConstraint("workspace_id", "provider", name="uq_connection_workspace_provider"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider = Column(_enum(ProviderEnum), nullable=False)
    external_account_id = Column(String, nullable=False)  # Shop domain, e.g. store.myshopify.com
    name = Column(String, nullable=False)
    status = Column(String, nullable=False, default="active")  # active, disconnected
    connected_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    # Sync tracking
    last_sync_attempted_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_completed_at = Column(DateTime(timezone=True), nullable=True)
    total_syncs_attempted = Column(Integer, default=0)
    sync_status = Column(String, default="idle")  # idle, syncing, error
    last_sync_error = Column(Text, nullable=True)

    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    workspace = relationship("Workspace", back_populates="connections")

    token_id = Column(UUID(as_uuid=True), ForeignKey("tokens.id"))
    token = relationship("Token", back_populates="connections")

    def __str__(self):
        return f"{self.name} ({self.provider.value})"


class Token(Base):
    """Encrypted storefront credential bundle (see security.encrypt_access_token)."""
    __tablename__ = "tokens"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider = Column(_enum(ProviderEnum), nullable=False)
    access_token_enc = Column(String, nullable=True)
    scope = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    connections = relationship("Connection", back_populates="token")


# Fulfillment ---------------------------------------------------

class Hub(Base):
    """Fulfillment/pickup location. Exactly one active hub should be primary."""
    __tablename__ = "hubs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    address = Column(String, nullable=True)
    pincode = Column(String, nullable=True)
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)
    is_primary = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    workspace = relationship("Workspace", back_populates="hubs")


# Customers -----------------------------------------------------

class Customer(Base):
    """Buyer identity, shared across orders of one workspace.

    Resolved by phone first, then email (see OrderMaterializer). Phone is
    unique per workspace, except the placeholder shared by buyers without one.
    """
    __tablename__ = "customers"
    __table_args__ = (
        Index(
            "uq_customer_workspace_phone",
            "workspace_id",
            "phone",
            unique=True,
            postgresql_where=text(f"phone <> '{PLACEHOLDER_CUSTOMER_PHONE}'"),
            sqlite_where=text(f"phone <> '{PLACEHOLDER_CUSTOMER_PHONE}'"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    phone = Column(String, nullable=False)  # Canonical +91XXXXXXXXXX
    email = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    address = relationship("Address", back_populates="customer", uselist=False)
    orders = relationship("Order", back_populates="customer")


class Address(Base):
    """Latest known shipping address of a customer (one per customer)."""
    __tablename__ = "addresses"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, unique=True)
    name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    address = Column(String, nullable=True)
    landmark = Column(String, nullable=True)
    pincode = Column(String, nullable=False, default="000000")
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)
    country = Column(String, nullable=False, default="India")
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    customer = relationship("Customer", back_populates="address")


# Orders --------------------------------------------------------

class Package(Base):
    """Box dimensions (cm) and weights (kg) of one order."""
    __tablename__ = "packages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    length = Column(Float, nullable=False)
    breadth = Column(Float, nullable=False)
    height = Column(Float, nullable=False)
    dead_weight = Column(Float, nullable=False, default=0)
    volumetric_weight = Column(Float, nullable=False, default=0)
    applicable_weight = Column(Float, nullable=False, default=0)


class OrderSellerDetails(Base):
    """Snapshot of seller/hub details at the time the order was created.

    WHAT: Copied from the hub, never updated afterwards
    WHY: Sellers can edit or move hubs; historical orders must keep the
         pickup details they were booked with
    """
    __tablename__ = "order_seller_details"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    hub_id = Column(UUID(as_uuid=True), ForeignKey("hubs.id"), nullable=True)
    name = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    address = Column(String, nullable=True)
    pincode = Column(String, nullable=True)
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class OrderChannelConfig(Base):
    __tablename__ = "order_channel_configs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    channel = Column(_enum(ChannelEnum), nullable=False)
    channel_order_id = Column(String, nullable=False)


class Order(Base):
    """Canonical order aggregate.

    WHAT: One row per external order per workspace and channel
    WHY: (workspace_id, channel, channel_order_id) is the dedup key of the
         sync pipeline; the unique constraint is the storage-level backstop
         when two batch jobs race on the same external id
    """
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("workspace_id", "channel", "channel_order_id", name="uq_order_channel_order"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False, index=True)

    code = Column(String, nullable=False, unique=True)
    order_number = Column(String, nullable=False)
    type = Column(_enum(OrderTypeEnum), nullable=False, default=OrderTypeEnum.b2c)
    payment_method = Column(_enum(PaymentMethodEnum), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    amount_to_collect = Column(Numeric(12, 2), nullable=False, default=0)
    applicable_weight = Column(Float, nullable=False, default=0)
    order_invoice_date = Column(DateTime(timezone=True), nullable=True)
    order_invoice_number = Column(String, nullable=True)

    # Dedup key (mirrors channel_config for the unique constraint)
    channel = Column(_enum(ChannelEnum), nullable=False)
    channel_order_id = Column(String, nullable=False)

    channel_config_id = Column(UUID(as_uuid=True), ForeignKey("order_channel_configs.id"), nullable=False)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False)
    hub_id = Column(UUID(as_uuid=True), ForeignKey("hubs.id"), nullable=False)
    seller_details_id = Column(UUID(as_uuid=True), ForeignKey("order_seller_details.id"), nullable=False)
    package_id = Column(UUID(as_uuid=True), ForeignKey("packages.id"), nullable=False)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    channel_config = relationship("OrderChannelConfig")
    customer = relationship("Customer", back_populates="orders")
    hub = relationship("Hub")
    seller_details = relationship("OrderSellerDetails")
    package = relationship("Package")
    shipments = relationship("Shipment", back_populates="order")
    items = relationship("OrderItem", back_populates="order")


class Shipment(Base):
    __tablename__ = "shipments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False, index=True)
    code = Column(String, nullable=False, unique=True)
    status = Column(_enum(ShipmentStatusEnum), nullable=False, default=ShipmentStatusEnum.new)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    order = relationship("Order", back_populates="shipments")
    tracking_events = relationship("TrackingEvent", back_populates="shipment")


class TrackingEvent(Base):
    __tablename__ = "tracking_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shipment_id = Column(UUID(as_uuid=True), ForeignKey("shipments.id"), nullable=False, index=True)
    status = Column(_enum(ShipmentStatusEnum), nullable=False)
    description = Column(String, nullable=False)
    occurred_at = Column(DateTime(timezone=True), default=_utcnow)

    shipment = relationship("Shipment", back_populates="tracking_events")


class OrderItem(Base):
    """Line item of an order. Dimensions (cm) and weight (kg) are optional."""
    __tablename__ = "order_items"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    sku = Column(String, nullable=False, default="")
    units = Column(Integer, nullable=False, default=1)
    selling_price = Column(Numeric(12, 2), nullable=False, default=0)
    discount = Column(Numeric(12, 2), nullable=False, default=0)
    tax = Column(Numeric(12, 2), nullable=False, default=0)
    hsn = Column(String, nullable=False, default="")
    length = Column(Float, nullable=True)
    breadth = Column(Float, nullable=True)
    height = Column(Float, nullable=True)
    weight = Column(Float, nullable=True)

    order = relationship("Order", back_populates="items")
