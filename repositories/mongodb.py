from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase, AsyncIOMotorCollection
from pymongo import ASCENDING
from pymongo.errors import BulkWriteError, PyMongoError
from typing import Optional, List, Sequence
from datetime import datetime
import structlog

from models.fee_event import FeeCollectedEvent, IndexerState, SkippedRange, normalize_address
from repositories.base import EventRepository
from utils.exceptions import PersistenceError


logger = structlog.get_logger(__name__)

DUPLICATE_KEY_ERROR = 11000


class MongoEventRepository(EventRepository):
    """MongoDB implementation of the event repository."""

    def __init__(self, mongodb_url: str, database_name: str, timeout_ms: int = 10000):
        self.mongodb_url = mongodb_url
        self.database_name = database_name
        self.timeout_ms = timeout_ms
        self.client: Optional[AsyncIOMotorClient] = None
        self.db: Optional[AsyncIOMotorDatabase] = None

        # Collections
        self.events: Optional[AsyncIOMotorCollection] = None
        self.states: Optional[AsyncIOMotorCollection] = None
        self.skipped_ranges: Optional[AsyncIOMotorCollection] = None

    async def connect(self) -> None:
        """Connect to MongoDB."""
        try:
            self.client = AsyncIOMotorClient(
                self.mongodb_url,
                serverSelectionTimeoutMS=self.timeout_ms
            )
            self.db = self.client[self.database_name]

            self.events = self.db.fee_collected_events
            self.states = self.db.indexer_states
            self.skipped_ranges = self.db.skipped_ranges

            await self._create_indexes()

            logger.info("Connected to MongoDB", database=self.database_name)
        except PyMongoError as e:
            logger.error("Failed to connect to MongoDB", error=str(e))
            raise PersistenceError(f"Failed to connect to MongoDB: {e}") from e

    async def disconnect(self) -> None:
        """Disconnect from MongoDB."""
        if self.client:
            self.client.close()
            logger.info("Disconnected from MongoDB")

    async def health_check(self) -> bool:
        """Check MongoDB health."""
        try:
            if not self.client:
                return False
            await self.client.admin.command("ping")
            return True
        except PyMongoError as e:
            logger.error("MongoDB health check failed", error=str(e))
            return False

    async def _create_indexes(self) -> None:
        """Create database indexes."""
        # Natural key of an event
        await self.events.create_index(
            [("chain_id", ASCENDING), ("block_number", ASCENDING), ("tx_hash", ASCENDING), ("log_index", ASCENDING)],
            unique=True
        )
        await self.events.create_index([("integrator", ASCENDING), ("block_number", ASCENDING), ("log_index", ASCENDING)])
        await self.events.create_index([("created_at", ASCENDING)])

        await self.states.create_index([("chain_id", ASCENDING)], unique=True)

        await self.skipped_ranges.create_index(
            [("chain_id", ASCENDING), ("from_block", ASCENDING), ("to_block", ASCENDING)],
            unique=True
        )
        await self.skipped_ranges.create_index([("resolved", ASCENDING)])

        logger.info("Created MongoDB indexes")

    async def get_watermark(self, chain_id: int) -> Optional[int]:
        try:
            doc = await self.states.find_one({"chain_id": chain_id})
        except PyMongoError as e:
            logger.error("Failed to get watermark", chain_id=chain_id, error=str(e))
            raise PersistenceError(f"Failed to get watermark for chain {chain_id}: {e}") from e
        if doc is None:
            return None
        doc.pop("_id", None)
        return IndexerState(**doc).last_processed_block

    async def set_watermark(self, chain_id: int, block_number: int) -> None:
        now = datetime.utcnow()
        try:
            await self.states.update_one(
                {"chain_id": chain_id},
                {
                    "$set": {"last_processed_block": block_number, "updated_at": now},
                    "$setOnInsert": {"chain_id": chain_id, "created_at": now}
                },
                upsert=True
            )
        except PyMongoError as e:
            logger.error("Failed to update watermark",
                         chain_id=chain_id,
                         block_number=block_number,
                         error=str(e))
            raise PersistenceError(f"Failed to update watermark for chain {chain_id}: {e}") from e

        logger.debug("Updated watermark", chain_id=chain_id, last_processed_block=block_number)

    async def save_events(self, events: Sequence[FeeCollectedEvent]) -> None:
        if not events:
            return

        now = datetime.utcnow()
        docs = []
        for event in events:
            doc = event.to_document()
            doc["created_at"] = now
            docs.append(doc)

        try:
            # Unordered so one duplicate does not abort the rest of the batch
            await self.events.insert_many(docs, ordered=False)
        except BulkWriteError as e:
            write_errors = e.details.get("writeErrors", [])
            other_errors = [err for err in write_errors if err.get("code") != DUPLICATE_KEY_ERROR]
            if other_errors or e.details.get("writeConcernErrors"):
                logger.error("Failed to save events",
                             count=len(docs),
                             errors=len(other_errors),
                             error=str(other_errors[:1] or e.details.get("writeConcernErrors")))
                raise PersistenceError(f"Failed to save events: {other_errors[:1]}") from e
            logger.debug("Skipped already stored events",
                         duplicates=len(write_errors),
                         inserted=len(docs) - len(write_errors))
        except PyMongoError as e:
            logger.error("Failed to save events", count=len(docs), error=str(e))
            raise PersistenceError(f"Failed to save events: {e}") from e

    async def list_events_by_integrator(self, integrator: str) -> List[FeeCollectedEvent]:
        query = {"integrator": normalize_address(integrator)}
        try:
            cursor = self.events.find(query).sort([("block_number", ASCENDING), ("log_index", ASCENDING)])
            events = []
            async for doc in cursor:
                doc.pop("_id", None)
                events.append(FeeCollectedEvent(**doc))
            return events
        except PyMongoError as e:
            logger.error("Failed to list events", integrator=query["integrator"], error=str(e))
            raise PersistenceError(f"Failed to list events: {e}") from e

    async def record_skipped_range(self, skipped: SkippedRange) -> None:
        doc = skipped.model_dump()
        try:
            await self.skipped_ranges.update_one(
                {
                    "chain_id": skipped.chain_id,
                    "from_block": skipped.from_block,
                    "to_block": skipped.to_block
                },
                {"$set": doc},
                upsert=True
            )
        except PyMongoError as e:
            logger.error("Failed to record skipped range",
                         chain_id=skipped.chain_id,
                         from_block=skipped.from_block,
                         to_block=skipped.to_block,
                         error=str(e))
            raise PersistenceError(f"Failed to record skipped range: {e}") from e

    async def list_skipped_ranges(
        self,
        chain_id: Optional[int] = None,
        include_resolved: bool = False
    ) -> List[SkippedRange]:
        query = {}
        if chain_id is not None:
            query["chain_id"] = chain_id
        if not include_resolved:
            query["resolved"] = False

        try:
            cursor = self.skipped_ranges.find(query).sort([("chain_id", ASCENDING), ("from_block", ASCENDING)])
            ranges = []
            async for doc in cursor:
                doc.pop("_id", None)
                ranges.append(SkippedRange(**doc))
            return ranges
        except PyMongoError as e:
            logger.error("Failed to list skipped ranges", error=str(e))
            raise PersistenceError(f"Failed to list skipped ranges: {e}") from e

    async def resolve_skipped_ranges(self, chain_id: int, from_block: int, to_block: int) -> int:
        try:
            result = await self.skipped_ranges.update_many(
                {
                    "chain_id": chain_id,
                    "resolved": False,
                    "from_block": {"$gte": from_block},
                    "to_block": {"$lte": to_block}
                },
                {"$set": {"resolved": True, "resolved_at": datetime.utcnow()}}
            )
        except PyMongoError as e:
            logger.error("Failed to resolve skipped ranges", chain_id=chain_id, error=str(e))
            raise PersistenceError(f"Failed to resolve skipped ranges: {e}") from e

        logger.info("Resolved skipped ranges",
                    chain_id=chain_id,
                    from_block=from_block,
                    to_block=to_block,
                    resolved=result.modified_count)
        return result.modified_count
