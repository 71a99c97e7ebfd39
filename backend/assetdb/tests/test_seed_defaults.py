from __future__ import annotations

from assetdb.apps.consumables import models, services, units
from assetdb.scripts import seed_consumable_defaults


def test_seed_script_is_idempotent(db_session, monkeypatch):
    monkeypatch.setattr(seed_consumable_defaults, "SessionLocal", lambda: db_session)

    seed_consumable_defaults.main()
    seed_consumable_defaults.main()

    assert db_session.query(models.ConsumableUnit).count() == len(units.DEFAULT_UNITS)
    assert db_session.query(models.ConsumableReasonCode).count() == len(services.DEFAULT_REASON_CODES)
    lost = (
        db_session.query(models.ConsumableReasonCode)
        .filter_by(category=models.ReasonCategoryEnum.ADJUST, code="CONTAINER_LOST")
        .one()
    )
    assert lost.is_active is True


def test_seed_script_honours_skip_flags(db_session, monkeypatch):
    monkeypatch.setattr(seed_consumable_defaults, "SessionLocal", lambda: db_session)
    monkeypatch.setattr(seed_consumable_defaults, "SKIP_UNITS", True)

    seed_consumable_defaults.main()

    assert db_session.query(models.ConsumableUnit).count() == 0
    assert db_session.query(models.ConsumableReasonCode).count() == len(services.DEFAULT_REASON_CODES)
