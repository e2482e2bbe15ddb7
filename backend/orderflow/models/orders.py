from __future__ import annotations

from ..extensions import db
from orderflow.time_utils import to_utc_z


class Order(db.Model):
    """
    One checkout transaction (order aggregate root).

    WHY: Owns the financial totals and the status state machine. Line items are
    created with the order and never edited afterwards.

    TOTALS (minor units, all non-negative):
        total_cents = subtotal_cents - discount_cents + tax_cents
                      + service_charge_cents + delivery_fee_cents

    STATUS vs PAYMENT STATUS:
    - status follows the order lifecycle (DRAFT ... COMPLETED/CANCELLED/REFUNDED)
    - payment_status tracks settlement independently
      (PENDING, PROCESSING, COMPLETED, FAILED, EXPIRED, REFUNDED)

    GATEWAY CORRELATION:
    - gateway_order_id is the identifier sent to the gateway for the current
      attempt (order number, or "<order number>-R<n>" for retries)
    - payment_token_issued_at is written only when a token is issued, so
      unrelated edits never move the token expiry
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_status_payment_status", "status", "payment_status"),
        db.Index("ix_orders_created_at", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-facing number (e.g., "ORD-1704567890123-A4B9X")
    order_number = db.Column(db.String(50), nullable=False, unique=True)

    order_type = db.Column(db.String(16), nullable=False)  # DINE_IN, TAKEAWAY, DELIVERY
    order_source = db.Column(db.String(16), nullable=False, default="CASHIER")  # CUSTOMER, CASHIER, ONLINE, PHONE

    status = db.Column(db.String(32), nullable=False, default="PENDING_PAYMENT", index=True)
    payment_status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)

    # Customer info
    customer_name = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(20), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True)
    customer_address = db.Column(db.Text, nullable=True)
    table_number = db.Column(db.String(20), nullable=True)

    # Amounts (minor units)
    subtotal_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    service_charge_cents = db.Column(db.Integer, nullable=False, default=0)
    delivery_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)
    paid_cents = db.Column(db.Integer, nullable=True)
    change_cents = db.Column(db.Integer, nullable=True)

    # Payment / gateway correlation
    payment_method = db.Column(db.String(32), nullable=True)
    payment_token = db.Column(db.String(255), nullable=True)
    payment_token_issued_at = db.Column(db.DateTime(timezone=True), nullable=True)
    gateway_order_id = db.Column(db.String(64), nullable=True, unique=True)

    notes = db.Column(db.Text, nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)

    # Lifecycle timestamps (each written at most once)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    preparing_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ready_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    cashier_id = db.Column(db.Integer, nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "OrderItem",
        back_populates="order",
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
        lazy=True,
    )
    payments = db.relationship(
        "Payment",
        back_populates="order",
        order_by="Payment.id",
        cascade="all, delete-orphan",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r} status={self.status} payment_status={self.payment_status}>"

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "order_type": self.order_type,
            "order_source": self.order_source,
            "status": self.status,
            "payment_status": self.payment_status,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "customer_email": self.customer_email,
            "customer_address": self.customer_address,
            "table_number": self.table_number,
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "tax_cents": self.tax_cents,
            "service_charge_cents": self.service_charge_cents,
            "delivery_fee_cents": self.delivery_fee_cents,
            "total_cents": self.total_cents,
            "paid_cents": self.paid_cents,
            "change_cents": self.change_cents,
            "payment_method": self.payment_method,
            "gateway_order_id": self.gateway_order_id,
            "payment_token_issued_at": to_utc_z(self.payment_token_issued_at),
            "notes": self.notes,
            "cancellation_reason": self.cancellation_reason,
            "paid_at": to_utc_z(self.paid_at),
            "preparing_at": to_utc_z(self.preparing_at),
            "ready_at": to_utc_z(self.ready_at),
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cashier_id": self.cashier_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """
    Priced line on an order.

    product_name / product_sku are snapshots taken when the order is placed;
    they must not follow later catalog renames.
    """
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    product_name = db.Column(db.String(255), nullable=False)
    product_sku = db.Column(db.String(100), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    cost_price_cents = db.Column(db.Integer, nullable=True)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    subtotal_cents = db.Column(db.Integer, nullable=False)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)

    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", back_populates="items")
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "product_sku": self.product_sku,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "cost_price_cents": self.cost_price_cents,
            "discount_cents": self.discount_cents,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }
