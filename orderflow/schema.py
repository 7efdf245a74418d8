"""
Orderflow — table definitions

Integrity rules that concurrency depends on live here as constraints:
  - orders.order_number UNIQUE
  - webhook_events.external_event_id UNIQUE (the ledger's dedupe key)
  - products.inventory CHECK >= 0 (last line of defence against oversell)
"""

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

products = Table(
    "products",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("price", Integer, nullable=False),
    Column("inventory", Integer, nullable=False, default=0),
    Column("status", String(16), nullable=False, default="ACTIVE"),
    Column("updated_at", DateTime(timezone=True)),
    CheckConstraint("inventory >= 0", name="products_inventory_non_negative"),
    CheckConstraint("price >= 0", name="products_price_non_negative"),
)

cart_items = Table(
    "cart_items",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("product_id", String(64), ForeignKey("products.id"), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("user_id", "product_id", name="cart_items_user_product_key"),
    CheckConstraint("quantity > 0", name="cart_items_quantity_positive"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("order_number", String(64), nullable=False, unique=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("status", String(16), nullable=False),
    Column("subtotal", Integer, nullable=False),
    Column("tax", Integer, nullable=False),
    Column("shipping", Integer, nullable=False),
    Column("total", Integer, nullable=False),
    Column("payment_reference", String(255), nullable=False, index=True),
    Column("shipping_address", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("total = subtotal + tax + shipping", name="orders_total_consistent"),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("order_id", String(64), ForeignKey("orders.id"), nullable=False, index=True),
    Column("product_id", String(64), ForeignKey("products.id"), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("price", Integer, nullable=False),
)

order_status_changes = Table(
    "order_status_changes",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("order_id", String(64), ForeignKey("orders.id"), nullable=False),
    Column("previous_status", String(16)),
    Column("new_status", String(16), nullable=False),
    Column("changed_by", String(255)),
    Column("notes", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("order_status_changes_order_id_idx", "order_id"),
)

webhook_events = Table(
    "webhook_events",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("external_event_id", String(255), nullable=False, unique=True),
    Column("event_type", String(255), nullable=False),
    Column("payload", JSON, nullable=False),
    Column("processed", Boolean, nullable=False, default=False),
    Column("processing_error", Text),
    Column("attempts", Integer, nullable=False, default=1),
    Column("claimed_at", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Index("webhook_events_event_type_idx", "event_type"),
    Index("webhook_events_processed_idx", "processed"),
)
