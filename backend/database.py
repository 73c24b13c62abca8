from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import OperationFailure
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            # tz_aware so due-date arithmetic never mixes naive and aware datetimes
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
        """Create MongoDB indexes for ledger and lifecycle lookups."""
        try:
            # Vehicles - fleet status filters and VIN lookups
            await self.db.vehicles.create_index("vehicle_id", unique=True)
            await self.db.vehicles.create_index("status")
            await self.db.vehicles.create_index("vin", sparse=True)

            # Subscriptions - sweep by status, lookups by vehicle / customer
            await self.db.subscriptions.create_index("subscription_id", unique=True)
            await self.db.subscriptions.create_index("status")
            await self.db.subscriptions.create_index([("vehicle_id", 1), ("status", 1)])
            await self.db.subscriptions.create_index("customer_email")

            # Payments - ledger history per subscription
            await self.db.payments.create_index("payment_id", unique=True)
            await self.db.payments.create_index([("subscription_id", 1), ("created_date", 1)])
            await self.db.payments.create_index([("subscription_id", 1), ("payment_type", 1), ("status", 1)])
            # Idempotency token per payment attempt - a retried write must not double-record
            try:
                await self.db.payments.create_index("idempotency_key", unique=True)
            except OperationFailure:
                logger.warning("payments.idempotency_key index exists with different options; leaving it in place")

            # Claims
            await self.db.claims.create_index("claim_id", unique=True)
            await self.db.claims.create_index([("subscription_id", 1), ("status", 1)])

            # Activity log - timeline per entity
            await self.db.activity_logs.create_index([("entity_id", 1), ("timestamp", -1)])
            await self.db.activity_logs.create_index([("action", 1), ("timestamp", -1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()
