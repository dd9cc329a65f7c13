"""
Seed (or update) the default subscription plans.

Idempotent: existing plans are updated in place, so it is safe to run on
every deploy. The API also seeds on startup.

Usage:
    python scripts/seed_plans.py
    python scripts/seed_plans.py --db storage/gateway.sqlite
"""

import argparse
import logging
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from core.plans import seed_plans
from core.store import get_store, reset_store

logging.basicConfig(level=logging.INFO, format="%(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Seed the default subscription plans")
    parser.add_argument("--db", type=str, default=None, help="SQLite path (default: from config.yaml)")
    args = parser.parse_args()

    store = get_store(args.db)
    try:
        plans = seed_plans(store)
    finally:
        reset_store()

    for plan in plans:
        limit = plan["monthly_request_limit"] or "unlimited"
        logger.info(f"  {plan['code']:<11} {plan['name']:<24} monthly limit: {limit}")
    logger.info(f"Seeded {len(plans)} plans")


if __name__ == "__main__":
    main()
