"""
Promote a user to SUPER_ADMIN.

Usage:
    # Promote by e-mail (fragment match, case-insensitive)
    python scripts/make_superadmin.py --email alice@example.com

    # Promote the first user ever created
    python scripts/make_superadmin.py --first

    # Also move their tenant to the UNLIMITED plan
    python scripts/make_superadmin.py --email alice@example.com --unlimited
"""

import argparse
import logging
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from core.store import get_store, reset_store

logging.basicConfig(level=logging.INFO, format="%(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


def promote(store, email=None, first=False, unlimited=False):
    """
    Promote one user.

    Returns:
        The updated user row, or None if no user matched.
    """
    user = store.get_first_user() if first else store.find_user_by_email(email)
    if user is None:
        return None

    updated = store.update_user(user["id"], system_role="SUPER_ADMIN")
    logger.info(f"{updated['email']} (id {updated['id']}) is now SUPER_ADMIN")

    if unlimited:
        plan = store.get_plan_by_code("UNLIMITED")
        membership = store.get_membership(user["id"])
        if plan is None:
            logger.warning("UNLIMITED plan not found; run scripts/seed_plans.py first")
        elif membership is None:
            logger.warning("User has no tenant; plan left unchanged")
        else:
            store.update_tenant(membership["tenant_id"], plan_id=plan["id"], subscription_status="ACTIVE")
            logger.info(f"Tenant {membership['tenant_id']} moved to UNLIMITED")

    return updated


def main():
    parser = argparse.ArgumentParser(description="Promote a user to SUPER_ADMIN")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--email", type=str, help="E-mail (or fragment) of the user")
    target.add_argument("--first", action="store_true", help="Promote the first user created")
    parser.add_argument("--unlimited", action="store_true", help="Move the user's tenant to UNLIMITED")
    parser.add_argument("--db", type=str, default=None, help="SQLite path (default: from config.yaml)")
    args = parser.parse_args()

    store = get_store(args.db)
    try:
        updated = promote(store, email=args.email, first=args.first, unlimited=args.unlimited)
    finally:
        reset_store()

    if updated is None:
        logger.error("No matching user found")
        sys.exit(1)


if __name__ == "__main__":
    main()
