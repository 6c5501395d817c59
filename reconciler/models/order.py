from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, BigInteger, Index

from ..database import Base


def utcnow() -> datetime:
    """Naive UTC, the convention for every DateTime column here."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class OrderMirror(Base):
    """Relational projection of a ledger row. Rebuildable from the ledger."""

    __tablename__ = "orders"

    id = Column(String(255), primary_key=True)  # payment_id
    tenant_id = Column(String(100), nullable=True)
    patient_id = Column(String(100), nullable=True, index=True)
    order_id = Column(String(255), nullable=True)
    product_code = Column(String(100), nullable=True)
    product_name = Column(String(1000), nullable=True)
    amount = Column(BigInteger, nullable=False, default=0)

    paid_at = Column(DateTime, nullable=True)
    payment_status = Column(String(50), nullable=False, default="COMPLETED")

    refund_status = Column(String(50), nullable=True)
    refunded_amount = Column(BigInteger, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    refund_id = Column(String(255), nullable=True)

    shipping_name = Column(String(255), nullable=True)
    postal_code = Column(String(20), nullable=True)
    address = Column(String(1000), nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)

    shipping_status = Column(String(50), nullable=False, default="pending")
    shipping_date = Column(DateTime, nullable=True)
    tracking_number = Column(String(100), nullable=True)
    carrier = Column(String(50), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_orders_payment_status", "payment_status"),
        Index("idx_orders_tenant_patient", "tenant_id", "patient_id"),
    )
