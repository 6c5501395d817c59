from typing import Any, Dict, List, Optional

from pydantic import BaseModel, field_validator


class LedgerRow(BaseModel):
    row: Optional[int] = None
    payment_id: str
    patient_id: str = ""
    order_id: str = ""
    order_datetime: str = ""
    ship_name: str = ""
    billing_name: str = ""
    postal: str = ""
    address: str = ""
    email: str = ""
    phone: str = ""
    items: str = ""
    amount: str = ""
    product_code: str = ""
    payment_status: str = ""
    refund_status: str = ""
    refunded_amount: str = ""
    refunded_at: str = ""
    refund_id: str = ""
    shipping_status: str = ""
    shipping_date: str = ""
    tracking_number: str = ""
    carrier: str = ""


class TranscriptionRequest(BaseModel):
    rows: List[Dict[str, Any]]


class TranscriptionSummary(BaseModel):
    total_received: int
    appended: int
    merged: int
    skipped: int
    skipped_by_reason: Dict[str, int] = {}
    mirror_synced: int = 0
    mirror_failed: int = 0


class MirrorSyncSummary(BaseModel):
    total: int
    synced: int
    failed: int
    skipped: int = 0
    errors: List[str] = []


class IndexReport(BaseModel):
    checked: int
    missing: List[str] = []
    stale: List[str] = []
    orphaned: List[str] = []
    consistent: bool = True


class IndexRebuildResponse(BaseModel):
    entries: int
    patients: int


class MergePatientsRequest(BaseModel):
    old_patient_id: str = ""
    new_patient_id: str = ""

    @field_validator("old_patient_id", "new_patient_id", mode="before")
    @classmethod
    def strip_ids(cls, v: Any) -> str:
        return "" if v is None else str(v).strip()


class MergePatientsResponse(BaseModel):
    ok: bool
    updated: int = 0
    error: Optional[str] = None
