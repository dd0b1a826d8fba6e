from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class Customer(db.Model):
    """
    Local projection of a buyer.

    external_ref is the opaque subject identifier issued by the identity
    provider; this service never authenticates anyone itself.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.UniqueConstraint("external_ref", name="uq_customers_external_ref"),
        db.UniqueConstraint("email", name="uq_customers_email"),
        db.UniqueConstraint("stripe_customer_id", name="uq_customers_stripe_customer_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    external_ref = db.Column(db.String(128), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    full_name = db.Column(db.String(255), nullable=True)
    stripe_customer_id = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "external_ref": self.external_ref,
            "email": self.email,
            "full_name": self.full_name,
            "stripe_customer_id": self.stripe_customer_id,
            "created_at": to_utc_z(self.created_at),
        }
