import pytest
from unittest.mock import MagicMock
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from reconciler.config import Settings
from reconciler.database import Base
from reconciler.models import OrderMirror  # noqa: F401
from reconciler.pipeline import PipelineRegistry, ReconciliationPipeline
from reconciler.services.index import IdentityIndex, PatientRowIndex
from reconciler.services.ledger import LedgerStore
from reconciler.services.mirror import SqlMirrorWriter
from reconciler.services.notifier import CacheInvalidationNotifier
from reconciler.sheets import MemorySheet

SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def mirror_db():
    Base.metadata.create_all(bind=engine)
    yield TestingSessionLocal
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(mirror_db):
    db = mirror_db()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def store():
    return LedgerStore(
        MemorySheet("ledger"),
        index=IdentityIndex(MemorySheet("pay_master_index")),
        patient_index=PatientRowIndex(MemorySheet("pid_webhook_index")),
    )


@pytest.fixture
def notifier():
    mock = MagicMock(spec=CacheInvalidationNotifier)
    mock.invalidate.return_value = True
    return mock


@pytest.fixture
def pipeline(mirror_db, notifier):
    return ReconciliationPipeline.in_memory(
        "clinic-a",
        mirror_writer=SqlMirrorWriter(mirror_db),
        notifier=notifier,
        lock_timeout=0.1,
        merge_lock_timeout=0.1,
    )


@pytest.fixture
def registry(mirror_db, notifier):
    settings = Settings(
        ledger_dir="",
        default_tenant="default",
        lock_timeout_seconds=0.1,
        merge_lock_timeout_seconds=0.1,
    )
    return PipelineRegistry(settings, mirror_writer=SqlMirrorWriter(mirror_db), notifier=notifier)


def completed_event(payment_id="pay_001", patient_id="P001", **extra):
    payload = {
        "kind": "payment_completed",
        "payment_id": payment_id,
        "patient_id": patient_id,
        "order_id": f"ord_{payment_id}",
        "product_code": "MJL_2.5mg_1m",
        "amount": "13000",
        "order_datetime_iso": "2025-01-15T09:30:00+09:00",
        "ship_name": "山田 太郎",
        "postal": "123-4567",
        "address": "東京都千代田区1-1",
        "email": "Taro@Example.com",
        "phone": "090-1234-5678",
        "items": "マンジャロ 2.5mg",
    }
    payload.update(extra)
    return payload
