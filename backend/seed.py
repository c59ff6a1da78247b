"""
Idempotent seed: the default plan catalogue and a test ADMIN user.
Test ADMIN is for local/testing only; override with SEED_ADMIN_EMAIL.
Prints a bearer token for the admin so the API can be exercised directly.
"""
import asyncio
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent / ".env")

from auth import token_for_user
from database import database, get_db_context
from models import UserAccount, UserRole
from services.plan_catalog import plan_catalog

# Test ADMIN (for local/dev)
SEED_ADMIN_EMAIL = os.environ.get("SEED_ADMIN_EMAIL", "admin@edufleet.in")


async def seed_database():
    async with get_db_context() as db:
        database.db = db
        print("Seeding database (idempotent)...")

        # 1) Plan catalogue
        result = await plan_catalog.seed_default_plans()
        print(f"  Plans: {result['created']} created, {result['skipped']} already present")

        # 2) Test ADMIN
        admin = await db.users.find_one({"email": SEED_ADMIN_EMAIL}, {"_id": 0})
        if not admin:
            admin = UserAccount(
                user_id="admin-001",
                name="Marketplace Admin",
                email=SEED_ADMIN_EMAIL,
                role=UserRole.ADMIN,
            ).model_dump(exclude={"subscription"})
            await db.users.insert_one(dict(admin))
            print(f"  ADMIN created: {SEED_ADMIN_EMAIL}")
        else:
            print(f"  ADMIN already exists: {SEED_ADMIN_EMAIL}")

        print(f"  ADMIN token: {token_for_user(admin)}")
        print("Seed complete.")


if __name__ == "__main__":
    asyncio.run(seed_database())
