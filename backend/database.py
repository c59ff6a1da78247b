from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import OperationFailure
from dotenv import load_dotenv
import os
import logging
from pathlib import Path
from contextlib import asynccontextmanager

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            # tz_aware so subscription dates compare against timezone.utc "now"
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes for subscription lookups and reporting."""
        try:
            # Users - the subscription record is embedded here
            await self.db.users.create_index("user_id", unique=True)
            try:
                await self.db.users.create_index("email", unique=True)
            except OperationFailure:
                pass  # Index may already exist with different options
            await self.db.users.create_index("role")
            await self.db.users.create_index("subscription.plan_id", sparse=True)
            await self.db.users.create_index([("subscription.status", 1), ("subscription.end_date", 1)])

            # Plan catalog
            await self.db.subscription_plans.create_index("plan_id", unique=True)
            await self.db.subscription_plans.create_index("name", unique=True)
            await self.db.subscription_plans.create_index([("plan_type", 1), ("is_active", 1), ("price", 1)])

            # Change requests - "one pending request per user" lookups
            await self.db.subscription_requests.create_index("request_id", unique=True)
            await self.db.subscription_requests.create_index([("user_id", 1), ("status", 1)])
            await self.db.subscription_requests.create_index(
                "user_id",
                unique=True,
                partialFilterExpression={"status": "pending"},
                name="one_pending_request_per_user",
            )
            await self.db.subscription_requests.create_index([("status", 1), ("created_at", -1)])

            # Audit trail
            await self.db.audit_logs.create_index([("user_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("resource_type", 1), ("resource_id", 1)])

            logger.info("MongoDB indexes created/verified")
        except OperationFailure as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()

@asynccontextmanager
async def get_db_context():
    """Context manager for standalone scripts to access the database.

    Usage in scripts:
        async with get_db_context() as db:
            # db is now connected and ready to use
            await db.users.find_one(...)
    """
    client = None
    try:
        mongo_url = os.environ['MONGO_URL']
        db_name = os.environ['DB_NAME']
        client = AsyncIOMotorClient(mongo_url, tz_aware=True)
        db = client[db_name]
        # Verify connection
        await db.command("ping")
        logger.info(f"Script connected to MongoDB: {db_name}")
        yield db
    finally:
        if client:
            client.close()
            logger.info("Script MongoDB connection closed")
