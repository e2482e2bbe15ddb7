from __future__ import annotations

from ..extensions import db
from orderflow.time_utils import to_utc_z


class Payment(db.Model):
    """
    One attempt at settling an order.

    WHY: An order may be attempted several times (gateway retries, expiry,
    cash confirmation). Every attempt is its own row; prior attempts are never
    rewritten into new ones.

    STATUS: PENDING, PROCESSING, COMPLETED, FAILED, EXPIRED, REFUNDED

    SINGLE SETTLEMENT: at most one row per order may be COMPLETED; the partial
    unique index below enforces it in storage as well as in the services.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.Index(
            "uq_payments_order_completed",
            "order_id",
            unique=True,
            sqlite_where=db.text("status = 'COMPLETED'"),
            postgresql_where=db.text("status = 'COMPLETED'"),
        ),
        db.Index("ix_payments_order_status", "order_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)

    payment_method = db.Column(db.String(32), nullable=False)  # CASH, BANK_TRANSFER, QRIS, CREDIT_CARD, DEBIT_CARD, E_WALLET, OTHER
    amount_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)
    transaction_type = db.Column(db.String(16), nullable=False, default="PAYMENT")  # PAYMENT, REFUND

    # Gateway correlation
    gateway_name = db.Column(db.String(50), nullable=True)
    gateway_order_id = db.Column(db.String(64), nullable=True, unique=True)
    gateway_transaction_id = db.Column(db.String(255), nullable=True, unique=True)
    gateway_status = db.Column(db.String(50), nullable=True)
    gateway_response = db.Column(db.JSON, nullable=True)
    reference_number = db.Column(db.String(100), nullable=True, index=True)

    # Cash verification
    verified_by_user_id = db.Column(db.Integer, nullable=True)
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    verification_notes = db.Column(db.Text, nullable=True)

    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expired_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", back_populates="payments")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "payment_method": self.payment_method,
            "amount_cents": self.amount_cents,
            "status": self.status,
            "transaction_type": self.transaction_type,
            "gateway_name": self.gateway_name,
            "gateway_order_id": self.gateway_order_id,
            "gateway_transaction_id": self.gateway_transaction_id,
            "gateway_status": self.gateway_status,
            "reference_number": self.reference_number,
            "verified_by_user_id": self.verified_by_user_id,
            "verified_at": to_utc_z(self.verified_at),
            "verification_notes": self.verification_notes,
            "paid_at": to_utc_z(self.paid_at),
            "failed_at": to_utc_z(self.failed_at),
            "expired_at": to_utc_z(self.expired_at),
            "refunded_at": to_utc_z(self.refunded_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
