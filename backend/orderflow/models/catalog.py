from __future__ import annotations

from ..extensions import db
from orderflow.time_utils import to_utc_z


class Category(db.Model):
    __tablename__ = "categories"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    slug = db.Column(db.String(120), nullable=False, unique=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "created_at": to_utc_z(self.created_at),
        }


class Product(db.Model):
    """
    Catalog product as seen by the order pipeline.

    Catalog maintenance lives outside this service; the pipeline only reads
    prices/snapshots and mutates `quantity` through the inventory ledger.

    STOCK DESIGN:
    - quantity is the live on-hand count, written only by inventory_service
      together with an InventoryLog row (latest log current_stock == quantity).
    - track_inventory=False products are never decremented or restored.
    - low_stock_alert is an alerting threshold, not a hard cap.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_category_available", "category_id", "is_available"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True, index=True)

    sku = db.Column(db.String(100), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)

    # Authoritative storage in minor units
    price_cents = db.Column(db.Integer, nullable=False)
    cost_price_cents = db.Column(db.Integer, nullable=True)

    track_inventory = db.Column(db.Boolean, nullable=False, default=False)
    quantity = db.Column(db.Integer, nullable=False, default=0)
    low_stock_alert = db.Column(db.Integer, nullable=True)

    is_available = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    category = db.relationship("Category", backref=db.backref("products", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r} quantity={self.quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category_id": self.category_id,
            "sku": self.sku,
            "name": self.name,
            "price_cents": self.price_cents,
            "cost_price_cents": self.cost_price_cents,
            "track_inventory": self.track_inventory,
            "quantity": self.quantity,
            "low_stock_alert": self.low_stock_alert,
            "is_available": self.is_available,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
