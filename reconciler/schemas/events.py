from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from ..normalize import normalize_key


class EventKind(str, Enum):
    PAYMENT_STATUS = "payment_status"
    PAYMENT_COMPLETED = "payment_completed"
    REFUND = "refund"
    MERGE_PATIENTS = "merge_patients"


def _as_text(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, (list, tuple)):
        return ", ".join(_as_text(x) for x in v if x is not None)
    return str(v).strip()


class WebhookEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: str = ""

    @field_validator("*", mode="before")
    @classmethod
    def coerce_text(cls, v: Any) -> str:
        return _as_text(v)


class PaymentEvent(WebhookEvent):
    payment_id: str

    @field_validator("payment_id")
    @classmethod
    def payment_id_not_empty(cls, v: str) -> str:
        v = normalize_key(v)
        if not v:
            raise ValueError("payment_id cannot be empty")
        return v


class PaymentStatusEvent(PaymentEvent):
    payment_status: str = ""


class PaymentCompletedEvent(PaymentEvent):
    order_id: str = ""
    patient_id: str = ""
    product_code: str = ""
    order_datetime_iso: str = ""
    created_at_iso: str = ""
    amount: str = ""
    ship_name: str = ""
    billing_name: str = ""
    postal: str = ""
    address: str = ""
    email: str = ""
    phone: str = ""
    items: str = ""


class RefundEvent(PaymentEvent):
    refund_status: str = ""
    refunded_amount: str = ""
    refunded_at_iso: str = ""
    refund_id: str = ""


class MergePatientsEvent(WebhookEvent):
    old_patient_id: str = ""
    new_patient_id: str = ""
