# Overview: Service-layer lookup of customers from identity-provider claims.

from __future__ import annotations

from ..errors import ConflictError, NotFoundError, ValidationError
from ..models import Customer


class CustomerService:
    def __init__(self, session):
        self.session = session

    def get(self, customer_id: int) -> Customer:
        customer = self.session.get(Customer, customer_id)
        if not customer:
            raise NotFoundError("Customer not found", {"customer_id": customer_id})
        return customer

    def resolve(
        self,
        *,
        external_ref: str | None = None,
        email: str | None = None,
        full_name: str | None = None,
    ) -> Customer:
        """
        Find or create the local customer for an opaque identity.

        Looks up by external_ref first, then by e-mail. An e-mail match that
        already carries a different external_ref is a ConflictError. Flushes
        but does not commit; the caller's unit of work owns the transaction.
        """
        external_ref = (external_ref or "").strip() or None
        email = (email or "").strip().lower() or None
        if not external_ref and not email:
            raise ValidationError("customer_id or customer_email is required")

        customer = None
        if external_ref:
            customer = self.session.query(Customer).filter_by(external_ref=external_ref).first()
        if customer is None and email:
            customer = self.session.query(Customer).filter_by(email=email).first()
            if customer is not None and external_ref and customer.external_ref not in (None, external_ref):
                raise ConflictError(
                    "customer_email belongs to another customer",
                    {"customer_email": email},
                )

        if customer is None:
            customer = Customer(external_ref=external_ref, email=email, full_name=full_name)
            self.session.add(customer)
        else:
            if external_ref and not customer.external_ref:
                customer.external_ref = external_ref
            if email and not customer.email:
                customer.email = email
            if full_name and not customer.full_name:
                customer.full_name = full_name

        self.session.flush()
        return customer
