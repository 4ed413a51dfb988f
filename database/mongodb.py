from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class Database:
    """Process-wide Motor handle, opened and closed by the application lifespan"""
    client: Optional[AsyncIOMotorClient] = None
    db: Optional[AsyncIOMotorDatabase] = None

    async def connect(self, mongo_url: str, db_name: str, timeout_ms: int = 5000):
        self.client = AsyncIOMotorClient(mongo_url, serverSelectionTimeoutMS=timeout_ms, tz_aware=False)
        self.db = self.client[db_name]
        try:
            await self.client.admin.command('ping')
        except PyMongoError as e:
            logger.error(f"MongoDB unreachable at startup ({db_name}): {e}")
            self.client.close()
            self.client = None
            self.db = None
            raise
        logger.info(f"Connected to MongoDB database: {db_name}")

    async def disconnect(self):
        if self.client:
            self.client.close()
            self.client = None
            self.db = None
            logger.info("Disconnected from MongoDB")

    def get_db(self) -> AsyncIOMotorDatabase:
        if self.db is None:
            raise RuntimeError("Database not connected")
        return self.db


db = Database()


async def get_database() -> AsyncIOMotorDatabase:
    """FastAPI dependency"""
    return db.get_db()


async def ensure_indexes(database: AsyncIOMotorDatabase):
    """
    Create the indexes the invoicing core relies on.

    The unique indexes are the authoritative guards: numbering collisions and
    duplicate webhook deliveries are rejected by the storage layer even when the
    application-level lookups race.
    """
    await database.invoices.create_index(
        [("user_id", 1), ("invoice_number", 1)],
        unique=True,
        name="uniq_owner_invoice_number"
    )
    await database.invoices.create_index(
        [("user_id", 1), ("external_reference", 1)],
        unique=True,
        partialFilterExpression={"external_reference": {"$type": "string"}},
        name="uniq_owner_external_reference"
    )
    await database.invoices.create_index([("user_id", 1), ("status", 1)])
    await database.invoices.create_index([("user_id", 1), ("transmission_status", 1)])
    await database.invoices.create_index([("user_id", 1), ("issue_date", -1)])
    await database.invoices.create_index(
        "acknowledgment.mark",
        unique=True,
        partialFilterExpression={"acknowledgment.mark": {"$type": "string"}},
        name="uniq_mark"
    )
    await database.invoice_counters.create_index(
        [("user_id", 1), ("series", 1)],
        unique=True,
        name="uniq_owner_series"
    )
    logger.info("Invoice indexes ensured")
