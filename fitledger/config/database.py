"""
Database configuration and connection management for MongoDB
"""
from motor.motor_asyncio import AsyncIOMotorClient
from typing import Optional
import logging
import os
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


class DatabaseConfig:
    """MongoDB database configuration"""

    def __init__(self):
        self.MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
        self.DATABASE_NAME = os.getenv("DATABASE_NAME", "fitledger_db")
        self.client: Optional[AsyncIOMotorClient] = None
        self.database = None

    async def connect_db(self):
        """Connect to MongoDB"""
        try:
            self.client = AsyncIOMotorClient(self.MONGO_URI)
            self.database = self.client[self.DATABASE_NAME]
            # Test connection
            await self.client.admin.command('ping')
            await self.ensure_indexes()
            logger.info("✅ Connected to MongoDB: %s", self.DATABASE_NAME)
        except Exception as e:
            logger.error("❌ Error connecting to MongoDB: %s", e)
            raise

    async def close_db(self):
        """Close MongoDB connection"""
        if self.client:
            self.client.close()
            logger.info("✅ MongoDB connection closed")

    async def ensure_indexes(self):
        """Unique invoice numbers"""
        await self.get_collection(Collections.PLATFORM_INVOICES).create_index("invoice_number", unique=True)

    def use_client(self, client, database_name: Optional[str] = None):
        """Attach an already constructed client (used by tests and tooling)"""
        self.client = client
        self.database = client[database_name or self.DATABASE_NAME]

    def get_collection(self, collection_name: str):
        """Get a specific collection"""
        if self.database is None:
            raise Exception("Database not connected")
        return self.database[collection_name]


# Global database instance
db_config = DatabaseConfig()


# Collection names
class Collections:
    USERS = "users"
    LAB_BOOKINGS = "lab_bookings"
    CLASS_BOOKINGS = "class_bookings"
    PLATFORM_INVOICES = "platform_invoices"
    COMMISSION_CHANGE_REQUESTS = "commission_change_requests"
    BILLING_EVENTS = "billing_events"
