import logging
import os

from sqlalchemy.orm import Session

from assetdb.database import SessionLocal
from assetdb.apps.consumables import services as consumables_services
from assetdb.apps.consumables import units as consumables_units

SKIP_UNITS = os.getenv("ASSETDB_SEED_SKIP_UNITS", "").lower() in {"1", "true", "yes"}
SKIP_REASON_CODES = os.getenv("ASSETDB_SEED_SKIP_REASON_CODES", "").lower() in {"1", "true", "yes"}

logger = logging.getLogger(__name__)


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    db: Session = SessionLocal()
    try:
        units_created = 0 if SKIP_UNITS else consumables_units.seed_default_units(db)
        reasons_created = 0 if SKIP_REASON_CODES else consumables_services.seed_default_reason_codes(db)
        db.commit()
        logger.info(
            "Seeded consumable defaults",
            extra={"units_created": units_created, "reason_codes_created": reasons_created},
        )
        print(f"Units created: {units_created}; reason codes created: {reasons_created}.")
    finally:
        db.close()


if __name__ == "__main__":
    main()
