import motor.motor_asyncio
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError
from bson import ObjectId
from bson.errors import InvalidId
from typing import Optional, List, Dict, Any
from datetime import datetime
import functools
import logging
from urllib.parse import urlparse
from config import settings
from errors import PersistenceError
from gateway import PersistenceGateway, LIVE_DECAY, LIVE_WEIGHT, HEALTH_FAILURE_DECAY
from models import (
    ListingImage,
    ListingRecord,
    ListingStatus,
    ListingType,
    ProxyRecord,
    ScrapeSession,
    SessionCounts,
    SessionStatus,
    UpsertResult,
)

logger = logging.getLogger(__name__)

_PROXY_ORDERING = {
    "last_used": [("last_used", ASCENDING)],
    "last_tested": [("last_tested", ASCENDING)],
    "success_rate": [("success_rate", DESCENDING), ("last_used", ASCENDING)],
}


def mongo_errors(action: str):
    """Re-raise driver errors as PersistenceError so callers handle one storage exception type"""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except (PyMongoError, InvalidId) as e:
                logger.error(f"Error {action}: {e}")
                raise PersistenceError(f"Error {action}: {e}") from e
        return wrapper
    return decorator


def _object_id(value: str) -> ObjectId:
    return value if isinstance(value, ObjectId) else ObjectId(value)


def _from_doc(model, doc: Optional[Dict[str, Any]]):
    if not doc:
        return None
    doc["_id"] = str(doc["_id"])
    return model(**doc)


class Database(PersistenceGateway):
    def __init__(self, uri: Optional[str] = None):
        self.uri = uri or settings.MONGODB_URI
        self.client = None
        self.db = None
        self.listings_collection = None
        self.proxies_collection = None
        self.sessions_collection = None
        self.property_views_collection = None
        self.rate_limit_log_collection = None

    async def connect(self) -> bool:
        """Connect to MongoDB"""
        try:
            # Parse the MongoDB URI to extract database name
            parsed_uri = urlparse(self.uri)
            database_name = parsed_uri.path.lstrip('/').split('?')[0] if parsed_uri.path else ''
            database_name = database_name or 'listings'

            self.client = motor.motor_asyncio.AsyncIOMotorClient(self.uri, serverSelectionTimeoutMS=5000)
            await self.client.admin.command("ping")
            self.db = self.client[database_name]

            # Collections
            self.listings_collection = self.db.listings
            self.proxies_collection = self.db.proxy_pool
            self.sessions_collection = self.db.scraping_log
            self.property_views_collection = self.db.property_views
            self.rate_limit_log_collection = self.db.rate_limit_log

            await self._create_indexes()

            logger.info(f"Connected to MongoDB: {database_name}")
            return True
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            return False

    async def _create_indexes(self):
        """Create necessary indexes for optimal performance"""
        try:
            await self.listings_collection.create_index([("external_id", ASCENDING)], unique=True)
            await self.listings_collection.create_index([("status", ASCENDING), ("last_scraped_at", ASCENDING)])
            await self.listings_collection.create_index([("listing_type", ASCENDING)])

            await self.proxies_collection.create_index([("address", ASCENDING), ("port", ASCENDING)], unique=True)
            await self.proxies_collection.create_index([("active", ASCENDING), ("last_used", ASCENDING)])
            await self.proxies_collection.create_index([("last_tested", ASCENDING)])

            await self.sessions_collection.create_index([("started_at", DESCENDING)])
            await self.sessions_collection.create_index([("status", ASCENDING)])

            await self.property_views_collection.create_index([("viewed_at", ASCENDING)])
            await self.rate_limit_log_collection.create_index([("window_start", ASCENDING)])

            logger.info("Database indexes created successfully")
        except Exception as e:
            logger.warning(f"Error creating indexes: {e}")

    async def disconnect(self):
        """Disconnect from MongoDB"""
        if self.client:
            self.client.close()

    # Listings
    @mongo_errors("getting listing")
    async def get_listing(self, external_id: str) -> Optional[ListingRecord]:
        doc = await self.listings_collection.find_one({"external_id": external_id})
        return _from_doc(ListingRecord, doc)

    @mongo_errors("upserting listing")
    async def upsert_listing(self, listing: ListingRecord) -> UpsertResult:
        now = datetime.utcnow()
        fields = listing.model_dump(exclude={"id", "images", "created_at"})
        fields.update(status=ListingStatus.ACTIVE.value, last_scraped_at=now, updated_at=now)

        result = await self.listings_collection.update_one(
            {"external_id": listing.external_id},
            {"$set": fields, "$setOnInsert": {"created_at": now}},
            upsert=True,
        )
        if result.upserted_id is not None:
            return UpsertResult(id=str(result.upserted_id), was_new=True)

        existing = await self.listings_collection.find_one({"external_id": listing.external_id}, {"_id": 1})
        return UpsertResult(id=str(existing["_id"]), was_new=False)

    @mongo_errors("saving listing images")
    async def upsert_images(self, listing_id: str, images: List[ListingImage]) -> None:
        if not images:
            return
        documents = [
            {
                "url": image.url,
                "category": image.category or "general",
                "caption": image.caption or "",
                "is_primary": index == 0,
                "display_order": index,
            }
            for index, image in enumerate(images)
        ]
        result = await self.listings_collection.update_one(
            {"_id": _object_id(listing_id)},
            {"$set": {"images": documents}},
        )
        if result.matched_count == 0:
            raise PersistenceError(f"Listing {listing_id} not found")

    @mongo_errors("marking stale listings")
    async def mark_stale(self, cutoff: datetime) -> int:
        result = await self.listings_collection.update_many(
            {"status": ListingStatus.ACTIVE.value, "last_scraped_at": {"$lt": cutoff}},
            {"$set": {"status": ListingStatus.INACTIVE.value, "updated_at": datetime.utcnow()}},
        )
        return result.modified_count

    @mongo_errors("finding listings to refresh")
    async def find_listings_for_refresh(self, cutoff: datetime, limit: int) -> List[ListingRecord]:
        if limit <= 0:
            return []
        # Ascending sort puts missing/null last_scraped_at first
        cursor = self.listings_collection.find({
            "status": ListingStatus.ACTIVE.value,
            "$or": [{"last_scraped_at": None}, {"last_scraped_at": {"$lt": cutoff}}],
        }).sort("last_scraped_at", ASCENDING).limit(limit)

        listings = []
        async for doc in cursor:
            listings.append(_from_doc(ListingRecord, doc))
        return listings

    @mongo_errors("counting listings")
    async def listing_counts(self) -> Dict[str, int]:
        return {
            "total": await self.listings_collection.count_documents({}),
            "active": await self.listings_collection.count_documents({"status": ListingStatus.ACTIVE.value}),
            "rental": await self.listings_collection.count_documents({"listing_type": ListingType.RENTAL.value}),
            "purchase": await self.listings_collection.count_documents({"listing_type": ListingType.PURCHASE.value}),
        }

    # Proxies
    @mongo_errors("querying proxies")
    async def query_proxies(
        self,
        active: Optional[bool] = None,
        tested_before: Optional[datetime] = None,
        order_by: str = "last_used",
        limit: Optional[int] = None,
    ) -> List[ProxyRecord]:
        if order_by not in _PROXY_ORDERING:
            raise ValueError(f"Unsupported proxy ordering: {order_by}")

        query: Dict[str, Any] = {}
        if active is not None:
            query["active"] = active
        if tested_before is not None:
            query["$or"] = [{"last_tested": None}, {"last_tested": {"$lt": tested_before}}]

        cursor = self.proxies_collection.find(query).sort(_PROXY_ORDERING[order_by])
        if limit is not None:
            cursor = cursor.limit(limit)

        proxies = []
        async for doc in cursor:
            proxies.append(_from_doc(ProxyRecord, doc))
        return proxies

    @mongo_errors("adding proxy")
    async def add_proxy(self, proxy: ProxyRecord) -> ProxyRecord:
        fields = {
            "protocol": proxy.protocol,
            "username": proxy.username,
            "password": proxy.password,
            "active": True,
        }
        if proxy.country:
            fields["country"] = proxy.country
        doc = await self.proxies_collection.find_one_and_update(
            {"address": proxy.address, "port": proxy.port},
            {
                "$set": fields,
                "$setOnInsert": {
                    "success_rate": proxy.success_rate,
                    "last_used": None,
                    "last_tested": None,
                    "response_time_ms": None,
                    "created_at": datetime.utcnow(),
                },
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        logger.info(f"Added proxy {proxy.label} to database")
        return _from_doc(ProxyRecord, doc)

    @mongo_errors("stamping proxy last_used")
    async def touch_proxy(self, proxy_id: str, used_at: datetime) -> None:
        await self.proxies_collection.update_one({"_id": _object_id(proxy_id)}, {"$set": {"last_used": used_at}})

    @mongo_errors("updating proxy stats")
    async def update_proxy_stats(
        self,
        proxy_id: str,
        success: bool,
        response_time_ms: Optional[float] = None,
        health_check: bool = False,
        threshold: float = 50.0,
    ) -> Optional[ProxyRecord]:
        # Pipeline update: the score is computed from the stored value server-side,
        # so a live fetch and a health check racing on one proxy cannot lose an update.
        score = {"$ifNull": ["$success_rate", 100.0]}
        if health_check and not success:
            new_score = {"$multiply": [score, HEALTH_FAILURE_DECAY]}
        else:
            new_score = {"$add": [{"$multiply": [score, LIVE_DECAY]}, (100.0 if success else 0.0) * LIVE_WEIGHT]}

        first_stage: Dict[str, Any] = {"success_rate": new_score}
        if response_time_ms is not None:
            first_stage["response_time_ms"] = float(response_time_ms)
        if health_check:
            first_stage["last_tested"] = datetime.utcnow()

        doc = await self.proxies_collection.find_one_and_update(
            {"_id": _object_id(proxy_id)},
            [
                {"$set": first_stage},
                {"$set": {"active": {"$gte": ["$success_rate", threshold]}}},
            ],
            return_document=ReturnDocument.AFTER,
        )
        return _from_doc(ProxyRecord, doc)

    # Scrape sessions
    @mongo_errors("logging session start")
    async def log_session_start(self, session: ScrapeSession) -> str:
        result = await self.sessions_collection.insert_one(session.model_dump(by_alias=True, exclude={"id"}))
        return str(result.inserted_id)

    @mongo_errors("logging session end")
    async def log_session_end(
        self,
        session_id: str,
        status: SessionStatus,
        counts: SessionCounts,
        error: Optional[str],
        execution_time_ms: int,
        completed_at: datetime,
    ) -> None:
        result = await self.sessions_collection.update_one(
            {"_id": _object_id(session_id), "status": SessionStatus.STARTED.value},
            {"$set": {
                "status": SessionStatus(status).value,
                "counts": counts.model_dump(),
                "error": error,
                "execution_time_ms": execution_time_ms,
                "completed_at": completed_at,
            }},
        )
        if result.matched_count == 0:
            raise PersistenceError(f"Scrape session {session_id} not found or already finalized")

    @mongo_errors("getting session")
    async def get_session(self, session_id: str) -> Optional[ScrapeSession]:
        doc = await self.sessions_collection.find_one({"_id": _object_id(session_id)})
        return _from_doc(ScrapeSession, doc)

    @mongo_errors("listing recent sessions")
    async def recent_sessions(self, limit: int = 20) -> List[ScrapeSession]:
        cursor = self.sessions_collection.find({}).sort("started_at", DESCENDING).limit(limit)
        sessions = []
        async for doc in cursor:
            sessions.append(_from_doc(ScrapeSession, doc))
        return sessions

    @mongo_errors("getting session stats")
    async def session_stats(self, since: datetime) -> Dict[str, Any]:
        def status_is(status: SessionStatus):
            return {"$cond": [{"$eq": ["$status", status.value]}, 1, 0]}

        pipeline = [
            {"$match": {"started_at": {"$gte": since}}},
            {
                "$group": {
                    "_id": None,
                    "total_sessions": {"$sum": 1},
                    "completed_sessions": {"$sum": status_is(SessionStatus.COMPLETED)},
                    "failed_sessions": {"$sum": status_is(SessionStatus.FAILED)},
                    "running_sessions": {"$sum": status_is(SessionStatus.STARTED)},
                    "avg_execution_time_ms": {"$avg": "$execution_time_ms"},
                    "total_found": {"$sum": "$counts.found"},
                    "total_new_listings": {"$sum": "$counts.new"},
                    "total_updated_listings": {"$sum": "$counts.updated"},
                    "total_removed_listings": {"$sum": "$counts.removed"},
                    "last_started_at": {"$max": "$started_at"},
                    "last_completed_at": {
                        "$max": {"$cond": [{"$eq": ["$status", SessionStatus.COMPLETED.value]}, "$completed_at", None]}
                    },
                }
            },
        ]

        stats = {
            "total_sessions": 0,
            "completed_sessions": 0,
            "failed_sessions": 0,
            "running_sessions": 0,
            "avg_execution_time_ms": None,
            "total_found": 0,
            "total_new_listings": 0,
            "total_updated_listings": 0,
            "total_removed_listings": 0,
            "last_started_at": None,
            "last_completed_at": None,
        }
        async for doc in self.sessions_collection.aggregate(pipeline):
            doc.pop("_id", None)
            stats.update(doc)
        return stats

    # Retention
    @mongo_errors("pruning scrape sessions")
    async def prune_sessions(self, keep: int) -> int:
        cursor = self.sessions_collection.find({}, {"_id": 1}).sort("started_at", DESCENDING).skip(keep)
        doomed = [doc["_id"] async for doc in cursor]
        if not doomed:
            return 0
        result = await self.sessions_collection.delete_many({"_id": {"$in": doomed}})
        return result.deleted_count

    @mongo_errors("pruning property views")
    async def prune_property_views(self, cutoff: datetime) -> int:
        result = await self.property_views_collection.delete_many({"viewed_at": {"$lt": cutoff}})
        return result.deleted_count

    @mongo_errors("recording rate limit window")
    async def record_rate_limit_window(self, window_start: datetime, request_count: int) -> None:
        await self.rate_limit_log_collection.insert_one({
            "window_start": window_start,
            "request_count": request_count,
            "recorded_at": datetime.utcnow(),
        })

    @mongo_errors("pruning rate limit log")
    async def prune_rate_limit_log(self, cutoff: datetime) -> int:
        result = await self.rate_limit_log_collection.delete_many({"window_start": {"$lt": cutoff}})
        return result.deleted_count
