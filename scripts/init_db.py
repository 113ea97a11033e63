# scripts/init_db.py

import logging

from billing.db.engine import get_engine, unit_of_work
from billing.db.schema import metadata
from billing.db.seed import seed_payment_methods

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
logger = logging.getLogger(__name__)


def main():
    engine = get_engine()
    metadata.create_all(engine)
    with unit_of_work(engine) as conn:
        added = seed_payment_methods(conn)
    logger.info("DB schema created; %d payment methods seeded.", added)


if __name__ == "__main__":
    main()
