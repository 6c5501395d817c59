import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from pydantic import ValidationError

from ..schemas.events import (
    EventKind,
    MergePatientsEvent,
    PaymentCompletedEvent,
    PaymentStatusEvent,
    RefundEvent,
    WebhookEvent,
)
from .guard import ConcurrencyGuard, LedgerLockTimeout
from .ledger import LedgerStore, normalize_record
from .merge import IdentityMergeService, MergeValidationError

logger = logging.getLogger(__name__)

COMPLETED = "COMPLETED"

# Webhook field -> ledger field for payment_completed
COMPLETED_FIELD_MAP = {
    "order_id": "order_id",
    "patient_id": "patient_id",
    "product_code": "product_code",
    "amount": "amount",
    "ship_name": "ship_name",
    "billing_name": "billing_name",
    "postal": "postal",
    "address": "address",
    "email": "email",
    "phone": "phone",
    "items": "items",
}

REFUND_FIELD_MAP = {
    "refund_status": "refund_status",
    "refunded_amount": "refunded_amount",
    "refunded_at_iso": "refunded_at",
    "refund_id": "refund_id",
}


class RouteStatus(str, Enum):
    APPLIED = "APPLIED"
    IGNORED = "IGNORED"
    MALFORMED = "MALFORMED"
    BUSY = "BUSY"
    REJECTED = "REJECTED"


@dataclass
class RouteOutcome:
    kind: str
    status: RouteStatus
    payment_id: Optional[str] = None
    records: List[Dict[str, str]] = field(default_factory=list)
    invalidate_patient_id: Optional[str] = None
    response: Optional[Dict[str, Any]] = None
    detail: Optional[str] = None


def _present(event: WebhookEvent, mapping: Dict[str, str]) -> Dict[str, str]:
    """Ledger fields for the webhook fields the sender actually included."""
    return {
        ledger_name: getattr(event, event_name)
        for event_name, ledger_name in mapping.items()
        if event_name in event.model_fields_set
    }


class EventRouter:
    """Dispatch webhook payloads to ledger mutations by ``kind``.

    Stateless apart from its collaborators. Never raises for sender-side
    problems: unknown kinds, malformed payloads and lock timeouts all come
    back as a RouteOutcome so the webhook can still answer 200.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        guard: ConcurrencyGuard,
        merge_service: IdentityMergeService,
        tz: str = "Asia/Tokyo",
    ):
        self.ledger = ledger
        self.guard = guard
        self.merge_service = merge_service
        self.tz = tz
        self._handlers: Dict[str, Tuple[Type[WebhookEvent], Callable[[Any], RouteOutcome]]] = {
            EventKind.PAYMENT_STATUS.value: (PaymentStatusEvent, self._payment_status),
            EventKind.PAYMENT_COMPLETED.value: (PaymentCompletedEvent, self._payment_completed),
            EventKind.REFUND.value: (RefundEvent, self._refund),
            EventKind.MERGE_PATIENTS.value: (MergePatientsEvent, self._merge_patients),
        }

    def route(self, payload: Any) -> RouteOutcome:
        if not isinstance(payload, dict):
            logger.warning(f"Webhook payload is not an object: {type(payload).__name__}")
            return RouteOutcome(kind="", status=RouteStatus.MALFORMED, detail="payload must be an object")

        kind = str(payload.get("kind") or "")
        entry = self._handlers.get(kind)
        if entry is None:
            logger.info(f"Ignoring webhook with unrecognized kind {kind!r}")
            return RouteOutcome(kind=kind, status=RouteStatus.IGNORED)

        model, handler = entry
        try:
            event = model.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Malformed {kind} webhook: {e.error_count()} error(s): {e.errors()[0]['msg']}")
            return RouteOutcome(kind=kind, status=RouteStatus.MALFORMED, detail=str(e))

        try:
            return handler(event)
        except LedgerLockTimeout as e:
            logger.warning(f"Dropped {kind} webhook, ledger busy: {e}")
            outcome = RouteOutcome(kind=kind, status=RouteStatus.BUSY, detail=str(e))
            if kind == EventKind.MERGE_PATIENTS.value:
                outcome.response = {"ok": False, "error": "ledger_busy"}
            else:
                outcome.payment_id = getattr(event, "payment_id", None)
            return outcome

    def _payment_status(self, event: PaymentStatusEvent) -> RouteOutcome:
        if "payment_status" not in event.model_fields_set:
            logger.warning(f"payment_status webhook for {event.payment_id} carries no status; ledger unchanged")
            return RouteOutcome(
                kind=EventKind.PAYMENT_STATUS.value,
                status=RouteStatus.MALFORMED,
                payment_id=event.payment_id,
                detail="payment_status missing",
            )

        with self.guard.hold():
            result = self.ledger.upsert_row(event.payment_id, {"payment_status": event.payment_status})

        return RouteOutcome(
            kind=EventKind.PAYMENT_STATUS.value,
            status=RouteStatus.APPLIED,
            payment_id=event.payment_id,
            records=[result.record],
        )

    def _payment_completed(self, event: PaymentCompletedEvent) -> RouteOutcome:
        raw = _present(event, COMPLETED_FIELD_MAP)
        ordered_at = event.order_datetime_iso or event.created_at_iso
        if ordered_at:
            raw["order_datetime"] = ordered_at
        raw["payment_status"] = COMPLETED
        fields = normalize_record(raw, self.tz)

        with self.guard.hold():
            result = self.ledger.upsert_row(event.payment_id, fields)

        patient_id = result.record.get("patient_id") or None
        if not patient_id:
            logger.info(f"payment_completed {event.payment_id}: no patient_id, cache not invalidated")

        return RouteOutcome(
            kind=EventKind.PAYMENT_COMPLETED.value,
            status=RouteStatus.APPLIED,
            payment_id=event.payment_id,
            records=[result.record],
            invalidate_patient_id=patient_id,
        )

    def _refund(self, event: RefundEvent) -> RouteOutcome:
        fields = normalize_record(_present(event, REFUND_FIELD_MAP), self.tz)

        with self.guard.hold():
            result = self.ledger.upsert_row(event.payment_id, fields)

        # A stub row created here has no patient linkage until payment_completed arrives
        patient_id = None if result.created else (result.record.get("patient_id") or None)

        return RouteOutcome(
            kind=EventKind.REFUND.value,
            status=RouteStatus.APPLIED,
            payment_id=event.payment_id,
            records=[result.record],
            invalidate_patient_id=patient_id,
        )

    def _merge_patients(self, event: MergePatientsEvent) -> RouteOutcome:
        try:
            result = self.merge_service.merge(event.old_patient_id, event.new_patient_id)
        except MergeValidationError as e:
            logger.info(f"merge_patients rejected: {e.code}")
            return RouteOutcome(
                kind=EventKind.MERGE_PATIENTS.value,
                status=RouteStatus.REJECTED,
                response={"ok": False, "error": e.code},
                detail=e.message,
            )

        return RouteOutcome(
            kind=EventKind.MERGE_PATIENTS.value,
            status=RouteStatus.APPLIED,
            records=result.records,
            response={"ok": True, "updated": result.updated},
        )
