"""
Database operations - Generic CRUD functions for all collections
"""
from typing import List, Dict, Optional, Any
from pymongo import ReturnDocument

from fitledger.config.database import db_config
from fitledger.utils.helpers import parse_object_id, utc_now


class DBOperations:
    """Generic database operations for MongoDB collections"""

    @staticmethod
    async def get_all(
        collection_name: str,
        filter_query: Dict = None,
        skip: int = 0,
        limit: int = 100,
        sort: Optional[List] = None,
    ) -> List[Dict]:
        """Get documents from a collection with optional filtering"""
        collection = db_config.get_collection(collection_name)
        filter_query = filter_query or {}
        cursor = collection.find(filter_query)
        if sort:
            cursor = cursor.sort(sort)
        cursor = cursor.skip(skip).limit(limit)
        return await cursor.to_list(length=limit)

    @staticmethod
    async def find_all(collection_name: str, filter_query: Dict = None, sort: Optional[List] = None) -> List[Dict]:
        """Get every matching document (no pagination)"""
        collection = db_config.get_collection(collection_name)
        cursor = collection.find(filter_query or {})
        if sort:
            cursor = cursor.sort(sort)
        return await cursor.to_list(length=None)

    @staticmethod
    async def get_by_id(collection_name: str, doc_id: Any) -> Optional[Dict]:
        """Get a single document by ID"""
        oid = parse_object_id(doc_id)
        if oid is None:
            return None
        collection = db_config.get_collection(collection_name)
        return await collection.find_one({"_id": oid})

    @staticmethod
    async def get_one(collection_name: str, filter_query: Dict) -> Optional[Dict]:
        """Get a single document by filter query"""
        collection = db_config.get_collection(collection_name)
        return await collection.find_one(filter_query)

    @staticmethod
    async def create(collection_name: str, document: Dict) -> Dict:
        """Create a new document"""
        collection = db_config.get_collection(collection_name)
        now = utc_now()
        document.setdefault("created_at", now)
        document.setdefault("updated_at", document["created_at"])
        result = await collection.insert_one(document)
        document["_id"] = result.inserted_id
        return document

    @staticmethod
    async def update(collection_name: str, doc_id: Any, update_data: Dict) -> Optional[Dict]:
        """Update a document by ID"""
        oid = parse_object_id(doc_id)
        if oid is None:
            return None
        collection = db_config.get_collection(collection_name)
        update_data.setdefault("updated_at", utc_now())
        return await collection.find_one_and_update(
            {"_id": oid},
            {"$set": update_data},
            return_document=ReturnDocument.AFTER,
        )

    @staticmethod
    async def compare_and_set(
        collection_name: str,
        doc_id: Any,
        expected: Dict,
        changes: Dict,
    ) -> Optional[Dict]:
        """
        Atomically apply `changes` only while every field in `expected` still
        holds. Returns the updated document, or None when the document is gone
        or one of the expectations was lost to another writer.
        """
        oid = parse_object_id(doc_id)
        if oid is None:
            return None
        collection = db_config.get_collection(collection_name)
        changes.setdefault("updated_at", utc_now())
        return await collection.find_one_and_update(
            {"_id": oid, **expected},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )

    @staticmethod
    async def update_many(collection_name: str, filter_query: Dict, update_data: Dict) -> int:
        """Set fields on every matching document, returning the modified count"""
        collection = db_config.get_collection(collection_name)
        result = await collection.update_many(filter_query, {"$set": update_data})
        return result.modified_count

    @staticmethod
    async def count(collection_name: str, filter_query: Dict = None) -> int:
        """Count documents in a collection"""
        collection = db_config.get_collection(collection_name)
        return await collection.count_documents(filter_query or {})


db_ops = DBOperations()
