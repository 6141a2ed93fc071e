import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

logger = logging.getLogger(__name__)


class MongoDatabase:
    """
    MongoDB connection handle.

    Acquired once at application startup and closed at shutdown; the handle
    is passed to repositories instead of being read from module state.
    """

    def __init__(self, url: str, database_name: str):
        self.url = url
        self.database_name = database_name
        self.client: Optional[AsyncIOMotorClient] = None
        self.db: Optional[AsyncIOMotorDatabase] = None

    async def connect(self) -> AsyncIOMotorDatabase:
        """Connect to MongoDB and ensure indexes."""
        self.client = AsyncIOMotorClient(
            self.url,
            serverSelectionTimeoutMS=5000,
            tz_aware=True
        )
        self.db = self.client[self.database_name]
        await create_indexes(self.db)
        logger.info(f"Connected to MongoDB: {self.database_name}")
        return self.db

    def close(self) -> None:
        """Disconnect from MongoDB."""
        if self.client is not None:
            self.client.close()
            self.client = None
            self.db = None
            logger.info("Disconnected from MongoDB")


async def create_indexes(db: AsyncIOMotorDatabase) -> None:
    """Create database indexes."""
    debts = db["debts"]

    # Participant lookups
    await debts.create_index("payer.wallet_address")
    await debts.create_index("owers.identity.wallet_address")

    # Reconciler sweep
    await debts.create_index("settlement_records.status")

    # A broadcast transaction belongs to one debt only
    await debts.create_index(
        "settlement_records.transaction_hash",
        unique=True,
        partialFilterExpression={"settlement_records.transaction_hash": {"$exists": True}}
    )
    # Not unique: every same-chain attempt carries the direct-transfer sentinel
    await debts.create_index("settlement_records.bridge_message_id")
