# labbo/db/database.py
from typing import Optional

import motor.motor_asyncio
from beanie import init_beanie
from loguru import logger

from labbo.core.config import MONGODB_URL, DATABASE_NAME
from labbo.models.user import User
from labbo.models.category import Category
from labbo.models.equipment import Equipment, EquipmentImage
from labbo.models.borrowing import Borrowing
from labbo.models.notification import Notification
from labbo.models.token import AuthToken
from labbo.models.counter import SequenceCounter

DOCUMENT_MODELS = [
    User,
    Category,
    Equipment,
    EquipmentImage,
    Borrowing,
    Notification,
    AuthToken,
    SequenceCounter,
]

_client: Optional[motor.motor_asyncio.AsyncIOMotorClient] = None


def get_client() -> motor.motor_asyncio.AsyncIOMotorClient:
    global _client
    if _client is None:
        _client = motor.motor_asyncio.AsyncIOMotorClient(MONGODB_URL, tz_aware=True)
    return _client


async def init_db() -> None:
    """Connect to MongoDB and register the Beanie document models."""
    logger.info("Connecting to MongoDB...")
    database = get_client()[DATABASE_NAME]
    logger.info(f"Using database: {DATABASE_NAME}")
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
    logger.info("Beanie initialization complete for all models.")


def close_db() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None
        logger.info("MongoDB connection closed.")
