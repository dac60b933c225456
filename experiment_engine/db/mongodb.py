from motor.motor_asyncio import AsyncIOMotorClient
from experiment_engine.core.config import settings
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class MongoDB:
    client: Optional[AsyncIOMotorClient] = None

    def __init__(self, uri: Optional[str] = None, db_name: Optional[str] = None):
        self.uri = uri or settings.MONGODB_URI
        self.db_name = db_name or settings.MONGODB_DB_NAME
        self.client = None
        self.db = None

    async def connect(self):
        if not self.uri:
            raise ConnectionError("MongoDB URI not configured")
        try:
            self.client = AsyncIOMotorClient(
                self.uri,
                maxPoolSize=settings.MONGODB_POOL_SIZE,
                connectTimeoutMS=settings.MONGODB_CONNECT_TIMEOUT_MS,
                socketTimeoutMS=settings.MONGODB_SOCKET_TIMEOUT_MS,
                retryWrites=True,
                retryReads=True,
                appname="experiment-engine"
            )
            self.db = self.client[self.db_name]
            await self.db.command('ping')
            logger.info(f"Connected to MongoDB database: {self.db_name}")
        except Exception as e:
            logger.error(f"Could not connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed.")

    def get_db(self):
        if self.db is None:
            raise ConnectionError("Database not initialized")
        return self.db
