from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

ROOT = Path(__file__).resolve().parent
sys.path.append(str(ROOT))

os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["DATABASE_WRITE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["CONSUMABLES_CENTRAL_STORE_ID"] = "HEAD_OFFICE_STORE"

from assetdb.database import Base, configure_sqlite  # noqa: E402
from assetdb.apps.audit import models as audit_models  # noqa: E402
from assetdb.apps.consumables import models as consumables_models  # noqa: E402


def _build_engine(url: str = "sqlite+pysqlite:///:memory:", **kwargs):
    if url.endswith(":memory:"):
        kwargs.setdefault("poolclass", StaticPool)
    engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30}, **kwargs)
    configure_sqlite(engine)
    Base.metadata.create_all(
        bind=engine,
        tables=[
            audit_models.AuditEvent.__table__,
            consumables_models.ConsumableItem.__table__,
            consumables_models.ConsumableUnit.__table__,
            consumables_models.ConsumableReasonCode.__table__,
            consumables_models.ConsumableLot.__table__,
            consumables_models.ConsumableContainer.__table__,
            consumables_models.ConsumableBalance.__table__,
            consumables_models.ConsumableLedgerEntry.__table__,
        ],
    )
    return engine


@pytest.fixture()
def db_engine():
    engine = _build_engine()
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def file_engine(tmp_path):
    """SQLite on disk: each pooled connection is a separate writer."""
    engine = _build_engine(f"sqlite+pysqlite:///{tmp_path / 'consumables.db'}")
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def db_session(db_engine):
    TestingSession = sessionmaker(
        bind=db_engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_item(db_session):
    def _make_item(
        name: str = "Sodium chloride",
        *,
        base_uom: str = "kg",
        requires_lot_tracking: bool = True,
        requires_container_tracking: bool = False,
        is_controlled: bool = False,
        is_hazardous: bool = False,
    ) -> consumables_models.ConsumableItem:
        item = consumables_models.ConsumableItem(
            name=name,
            base_uom=base_uom,
            requires_lot_tracking=requires_lot_tracking,
            requires_container_tracking=requires_container_tracking,
            is_controlled=is_controlled,
            is_hazardous=is_hazardous,
        )
        db_session.add(item)
        db_session.commit()
        db_session.refresh(item)
        return item

    return _make_item


@pytest.fixture()
def reason_codes(db_session):
    adjust = consumables_models.ConsumableReasonCode(
        code="COUNT_CORRECTION",
        category=consumables_models.ReasonCategoryEnum.ADJUST,
        description="Count correction",
    )
    dispose = consumables_models.ConsumableReasonCode(
        code="EXPIRED",
        category=consumables_models.ReasonCategoryEnum.DISPOSE,
        description="Expired",
    )
    db_session.add_all([adjust, dispose])
    db_session.commit()
    return {"ADJUST": adjust, "DISPOSE": dispose}
