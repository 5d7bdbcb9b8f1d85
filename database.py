"""
MongoDB connection for Campus Market.

`db` is None when DATABASE_URL / DATABASE_NAME are not configured; the API
reports that through /test and refuses data routes.
"""

import logging
from typing import Optional

from pymongo import MongoClient
from pymongo.database import Database

import config

logger = logging.getLogger(__name__)


def connect(url: Optional[str], name: Optional[str]) -> Optional[Database]:
    if not url or not name:
        logger.warning("DATABASE_URL or DATABASE_NAME not set, running without a database")
        return None
    client = MongoClient(url)
    return client[name]


def ensure_indexes(database: Database) -> None:
    database["users"].create_index("email", unique=True)
    database["products"].create_index([("status", 1), ("created_at", -1)])
    database["products"].create_index("seller_id")
    database["wishlists"].create_index([("user_id", 1), ("product_id", 1)], unique=True)
    database["messages"].create_index("conversation_key")


db = connect(config.DATABASE_URL, config.DATABASE_NAME)
