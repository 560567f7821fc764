"""
MongoDB database connection and utilities.
"""

import logging
from typing import Optional

from pymongo import ASCENDING, MongoClient
from pymongo.database import Database as MongoDatabase

from encodefleet.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


class Database:
    """MongoDB database connection manager."""

    client: Optional[MongoClient] = None
    db: Optional[MongoDatabase] = None

    @classmethod
    def connect(cls, settings: Optional[Settings] = None) -> MongoDatabase:
        """Connect to MongoDB (idempotent)."""
        if cls.db is not None:
            return cls.db
        settings = settings or get_settings()
        timeout_ms = int(settings.STORE_TIMEOUT_SECONDS * 1000)
        cls.client = MongoClient(
            settings.MONGO_URI,
            tz_aware=True,
            serverSelectionTimeoutMS=timeout_ms,
            connectTimeoutMS=timeout_ms,
            socketTimeoutMS=timeout_ms,
        )
        cls.db = cls.client[settings.MONGO_DB_NAME]

        # Create indexes
        cls._create_indexes()

        logger.info(f"Connected to MongoDB: {settings.MONGO_DB_NAME}")
        return cls.db

    @classmethod
    def disconnect(cls):
        """Disconnect from MongoDB."""
        if cls.client:
            cls.client.close()
            logger.info("Disconnected from MongoDB")
        cls.client = None
        cls.db = None

    @classmethod
    def _create_indexes(cls):
        """Create database indexes for the dispatch queries."""
        # FIFO queue scan
        cls.db.jobs.create_index([("state", ASCENDING), ("created_at", ASCENDING), ("_id", ASCENDING)])
        cls.db.jobs.create_index("assigned_worker")
        cls.db.jobs.create_index("idempotency_key", sparse=True)

        cls.db.workers.create_index("status")
        cls.db.workers.create_index("machine_ref", sparse=True)
