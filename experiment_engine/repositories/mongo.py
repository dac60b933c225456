import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from ..models.experiment import Experiment
from ..models.implementation import ImplementationRecord
from ..models.sample import MetricSample, SampleQuery
from ..models.session import VariantSessionCounts, VisitorSession
from ..models.variant import Variant
from .base import (
    ExperimentRepository,
    ImplementationRepository,
    Repositories,
    SampleRepository,
    SessionRepository,
    VariantRepository,
)

logger = logging.getLogger(__name__)

# Never leak Mongo's ObjectId into the models
NO_OBJECT_ID = {"_id": 0}


class MongoExperimentRepository(ExperimentRepository):
    def __init__(self, db):
        self.collection = db.experiments

    async def insert(self, experiment: Experiment) -> Experiment:
        await self.collection.insert_one(experiment.model_dump())
        return experiment

    async def get(self, experiment_id: str) -> Optional[Experiment]:
        data = await self.collection.find_one({"id": experiment_id}, NO_OBJECT_ID)
        return Experiment(**data) if data else None

    async def save(self, experiment: Experiment) -> Experiment:
        await self.collection.replace_one({"id": experiment.id}, experiment.model_dump())
        return experiment

    async def list(self, site_id: Optional[str] = None, status: Optional[str] = None) -> List[Experiment]:
        query = {}
        if site_id is not None:
            query["site_id"] = site_id
        if status is not None:
            query["status"] = status
        documents = await self.collection.find(query, NO_OBJECT_ID).to_list(None)
        return [Experiment(**doc) for doc in documents]


class MongoVariantRepository(VariantRepository):
    def __init__(self, db):
        self.collection = db.variants

    async def insert_many(self, variants: List[Variant]) -> List[Variant]:
        if variants:
            await self.collection.insert_many([variant.model_dump() for variant in variants])
        return variants

    async def get(self, variant_id: str) -> Optional[Variant]:
        data = await self.collection.find_one({"id": variant_id}, NO_OBJECT_ID)
        return Variant(**data) if data else None

    async def list_by_experiment(self, experiment_id: str) -> List[Variant]:
        documents = await self.collection.find(
            {"experiment_id": experiment_id}, NO_OBJECT_ID
        ).to_list(None)
        return [Variant(**doc) for doc in documents]

    async def save(self, variant: Variant) -> Variant:
        await self.collection.replace_one({"id": variant.id}, variant.model_dump())
        return variant


class MongoSessionRepository(SessionRepository):
    def __init__(self, db):
        self.collection = db.visitor_sessions

    async def upsert_visit(
        self,
        experiment_id: str,
        visitor_id: str,
        variant_id: str,
        context: Dict[str, Any],
        seen_at: datetime
    ) -> VisitorSession:
        key = {"experiment_id": experiment_id, "visitor_id": visitor_id}
        on_insert = {
            "id": str(uuid.uuid4()),
            "variant_id": variant_id,
            "first_seen": seen_at,
            "created_at": seen_at,
        }
        if "is_bot" not in context:
            on_insert["is_bot"] = False
        update = {
            "$setOnInsert": on_insert,
            "$set": {**context, "last_seen": seen_at, "updated_at": seen_at},
            "$inc": {"visit_count": 1},
        }

        try:
            document = await self.collection.find_one_and_update(
                key, update, upsert=True,
                projection=NO_OBJECT_ID,
                return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError:
            # Another writer inserted the key first; its variant stands
            logger.debug(f"Concurrent first visit for {visitor_id} in {experiment_id}, reading back")
            document = await self.collection.find_one_and_update(
                key,
                {"$set": update["$set"], "$inc": update["$inc"]},
                projection=NO_OBJECT_ID,
                return_document=ReturnDocument.AFTER
            )
        return VisitorSession(**document)

    async def get(self, experiment_id: str, visitor_id: str) -> Optional[VisitorSession]:
        data = await self.collection.find_one(
            {"experiment_id": experiment_id, "visitor_id": visitor_id}, NO_OBJECT_ID
        )
        return VisitorSession(**data) if data else None

    async def counts_per_variant(self, experiment_id: str) -> Dict[str, VariantSessionCounts]:
        pipeline = [
            {"$match": {"experiment_id": experiment_id, "is_bot": False}},
            {"$group": {
                "_id": "$variant_id",
                "count": {"$sum": 1},
                "unique_visitors": {"$addToSet": "$visitor_id"}
            }},
            {"$project": {
                "variant_id": "$_id",
                "session_count": "$count",
                "unique_visitor_count": {"$size": "$unique_visitors"},
                "_id": 0
            }}
        ]
        results = await self.collection.aggregate(pipeline).to_list(None)
        return {
            item["variant_id"]: VariantSessionCounts(
                session_count=item["session_count"],
                unique_visitor_count=item["unique_visitor_count"]
            )
            for item in results
        }

    async def count(self, experiment_id: str, include_bots: bool = False) -> int:
        query = {"experiment_id": experiment_id}
        if not include_bots:
            query["is_bot"] = False
        return await self.collection.count_documents(query)


class MongoSampleRepository(SampleRepository):
    def __init__(self, db):
        self.collection = db.metric_samples

    async def insert(self, sample: MetricSample) -> MetricSample:
        await self.collection.insert_one(sample.model_dump())
        return sample

    async def query(self, experiment_id: str, query: SampleQuery) -> List[MetricSample]:
        mongo_query: Dict[str, Any] = {"experiment_id": experiment_id}
        if query.variant_id:
            mongo_query["variant_id"] = query.variant_id
        if query.start_date or query.end_date:
            mongo_query["timestamp"] = {}
            if query.start_date:
                mongo_query["timestamp"]["$gte"] = query.start_date
            if query.end_date:
                mongo_query["timestamp"]["$lte"] = query.end_date

        cursor = self.collection.find(mongo_query, NO_OBJECT_ID).sort(
            "timestamp", DESCENDING if query.sort == "desc" else ASCENDING
        )
        if query.limit:
            cursor = cursor.limit(query.limit)
        documents = await cursor.to_list(None)
        return [MetricSample(**doc) for doc in documents]


class MongoImplementationRepository(ImplementationRepository):
    def __init__(self, db):
        self.collection = db.implementations

    async def insert(self, record: ImplementationRecord) -> ImplementationRecord:
        await self.collection.insert_one(record.model_dump())
        return record

    async def get(self, record_id: str) -> Optional[ImplementationRecord]:
        data = await self.collection.find_one({"id": record_id}, NO_OBJECT_ID)
        return ImplementationRecord(**data) if data else None

    async def save(self, record: ImplementationRecord) -> ImplementationRecord:
        await self.collection.replace_one({"id": record.id}, record.model_dump())
        return record

    async def list_by_experiment(self, experiment_id: str) -> List[ImplementationRecord]:
        documents = await self.collection.find(
            {"experiment_id": experiment_id}, NO_OBJECT_ID
        ).sort("implemented_at", ASCENDING).to_list(None)
        return [ImplementationRecord(**doc) for doc in documents]


async def ensure_indexes(db):
    """Create the indexes the repositories rely on."""
    await db.experiments.create_index("id", unique=True)
    await db.experiments.create_index([("site_id", ASCENDING), ("status", ASCENDING)])
    await db.variants.create_index("id", unique=True)
    await db.variants.create_index("experiment_id")
    await db.visitor_sessions.create_index(
        [("experiment_id", ASCENDING), ("visitor_id", ASCENDING)], unique=True
    )
    await db.visitor_sessions.create_index([("experiment_id", ASCENDING), ("variant_id", ASCENDING)])
    await db.metric_samples.create_index(
        [("experiment_id", ASCENDING), ("variant_id", ASCENDING), ("timestamp", ASCENDING)]
    )
    await db.implementations.create_index("id", unique=True)
    await db.implementations.create_index("experiment_id")
    logger.info("MongoDB indexes ensured")


def mongo_repositories(db) -> Repositories:
    return Repositories(
        experiments=MongoExperimentRepository(db),
        variants=MongoVariantRepository(db),
        sessions=MongoSessionRepository(db),
        samples=MongoSampleRepository(db),
        implementations=MongoImplementationRepository(db)
    )
