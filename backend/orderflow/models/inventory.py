from __future__ import annotations

from ..extensions import db
from orderflow.time_utils import to_utc_z


class InventoryLog(db.Model):
    """
    Append-only ledger of stock movements.

    TYPES: IN, OUT, ADJUSTMENT, DAMAGE, RETURN, STOCK_TAKE

    - quantity is the unsigned size of the movement
    - current_stock = previous_stock + quantity (IN, RETURN, upward counts)
    - current_stock = previous_stock - quantity (OUT, DAMAGE, downward counts)
    - the newest row per product carries the product's live quantity

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "inventory_logs"
    __table_args__ = (
        db.Index("ix_inventory_logs_product_id_desc", "product_id", "id"),
        db.Index("ix_inventory_logs_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    type = db.Column(db.String(16), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    previous_stock = db.Column(db.Integer, nullable=False)
    current_stock = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.Text, nullable=True)
    reference_type = db.Column(db.String(32), nullable=True)  # ORDER, MANUAL
    reference_id = db.Column(db.Integer, nullable=True)
    user_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    product = db.relationship("Product", backref=db.backref("inventory_logs", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "type": self.type,
            "quantity": self.quantity,
            "previous_stock": self.previous_stock,
            "current_stock": self.current_stock,
            "reason": self.reason,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "user_id": self.user_id,
            "created_at": to_utc_z(self.created_at),
        }
