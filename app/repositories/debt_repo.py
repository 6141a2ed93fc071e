"""
DebtRepository - persistence for debts and their embedded settlement attempts.

Only the settlement ledger writes through this repository. Writes are
either plain inserts (duplicate ids raise DuplicateKeyError) or
version-checked replaces, so concurrent writers never overwrite each other.
"""

from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.models.debt import AttemptStatus, Debt


class DebtRepository:
    """Repository for debt documents."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db["debts"]

    async def get(self, debt_id: str) -> Optional[Debt]:
        """Get a debt by id."""
        doc = await self.collection.find_one({"_id": debt_id})
        if doc:
            return Debt.model_validate(doc)
        return None

    async def insert(self, debt: Debt) -> Debt:
        """
        Insert a new debt.

        Raises pymongo DuplicateKeyError if the id (or one of its
        transaction hashes) already exists.
        """
        await self.collection.insert_one(debt.to_document())
        return debt

    async def replace(self, debt: Debt, expected_version: int) -> bool:
        """
        Replace a debt only if the stored version is still expected_version.

        Returns False when another writer got there first.
        """
        result = await self.collection.replace_one(
            {"_id": debt.id, "version": expected_version},
            debt.to_document()
        )
        return result.matched_count == 1

    async def find_by_transaction_hash(self, tx_hash: str) -> Optional[Debt]:
        doc = await self.collection.find_one({
            "settlement_records.transaction_hash": tx_hash.lower()
        })
        if doc:
            return Debt.model_validate(doc)
        return None

    async def find_by_bridge_message_id(self, message_id: str) -> Optional[Debt]:
        doc = await self.collection.find_one({
            "settlement_records.bridge_message_id": message_id
        })
        if doc:
            return Debt.model_validate(doc)
        return None

    async def find_for_wallet(self, wallet_address: str) -> List[Debt]:
        """Debts where the wallet is the payer or one of the owers, newest first."""
        wallet = wallet_address.lower()
        cursor = self.collection.find({
            "$or": [
                {"payer.wallet_address": wallet},
                {"owers.identity.wallet_address": wallet}
            ]
        }).sort("created_at", -1)
        docs = await cursor.to_list(None)
        return [Debt.model_validate(doc) for doc in docs]

    async def find_in_flight(self) -> List[Debt]:
        """Debts holding at least one submitted (unresolved) attempt."""
        cursor = self.collection.find({
            "settlement_records.status": AttemptStatus.SUBMITTED.value
        })
        docs = await cursor.to_list(None)
        return [Debt.model_validate(doc) for doc in docs]
