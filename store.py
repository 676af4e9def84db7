"""
Repository layer.

The services only talk to a ``Store``. ``MongoStore`` is the production
implementation; ``MemoryStore`` keeps everything in process and is what the
tests run against. Both hand out plain dicts with a string ``id`` and never
expose driver objects.
"""

from __future__ import annotations

import copy
import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from errors import Conflict

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def to_dict(doc):
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def _oid(value) -> Optional[ObjectId]:
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


@dataclass
class ProductFilter:
    search: Optional[str] = None
    category: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    hide_out_of_stock: bool = True
    user_id: Optional[str] = None

    def to_query(self) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if self.search:
            pattern = re.escape(self.search)
            query["$or"] = [
                {"title": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
            ]
        if self.category:
            query["category"] = self.category
        price: Dict[str, float] = {}
        if self.min_price is not None:
            price["$gte"] = self.min_price
        if self.max_price is not None:
            price["$lte"] = self.max_price
        if price:
            query["price"] = price
        if self.hide_out_of_stock:
            query["stock"] = {"$gt": 0}
        if self.user_id:
            query["user_id"] = self.user_id
        return query

    def matches(self, doc: dict) -> bool:
        if self.search:
            needle = self.search.lower()
            haystacks = (doc.get("title") or "", doc.get("description") or "")
            if not any(needle in h.lower() for h in haystacks):
                return False
        if self.category and doc.get("category") != self.category:
            return False
        if self.min_price is not None and doc.get("price", 0) < self.min_price:
            return False
        if self.max_price is not None and doc.get("price", 0) > self.max_price:
            return False
        if self.hide_out_of_stock and doc.get("stock", 0) <= 0:
            return False
        if self.user_id and doc.get("user_id") != self.user_id:
            return False
        return True


class Store:
    """Operations the services need from persistence."""

    def ensure_indexes(self) -> None:
        pass

    # users
    def insert_user(self, doc: dict) -> dict:
        raise NotImplementedError

    def get_user(self, user_id: str) -> Optional[dict]:
        raise NotImplementedError

    def find_user_by_username(self, username: str) -> Optional[dict]:
        raise NotImplementedError

    def update_user(self, user_id: str, fields: dict) -> Optional[dict]:
        raise NotImplementedError

    def list_users(self) -> List[dict]:
        raise NotImplementedError

    # products
    def insert_product(self, doc: dict) -> dict:
        raise NotImplementedError

    def get_product(self, product_id: str) -> Optional[dict]:
        raise NotImplementedError

    def list_products(self, filters: ProductFilter) -> List[dict]:
        raise NotImplementedError

    def update_product(self, product_id: str, fields: dict) -> Optional[dict]:
        raise NotImplementedError

    def delete_product(self, product_id: str) -> bool:
        raise NotImplementedError

    def decrement_stock(self, product_id: str, quantity: int) -> Optional[dict]:
        """Take ``quantity`` units only if that many are left; None otherwise."""
        raise NotImplementedError

    def increment_stock(self, product_id: str, quantity: int) -> bool:
        raise NotImplementedError

    # categories
    def insert_category(self, doc: dict) -> dict:
        raise NotImplementedError

    def list_categories(self) -> List[dict]:
        raise NotImplementedError

    def count_categories(self) -> int:
        raise NotImplementedError

    # orders
    def insert_order(self, doc: dict) -> dict:
        raise NotImplementedError

    def get_order(self, order_id: str) -> Optional[dict]:
        raise NotImplementedError

    def list_orders(self, user_id: Optional[str] = None) -> List[dict]:
        raise NotImplementedError

    def set_order_status(self, order_id: str, status: str) -> Optional[dict]:
        """Write the new status and return the order as it was before."""
        raise NotImplementedError


class MongoStore(Store):
    def __init__(self, database):
        self.db = database

    def ensure_indexes(self) -> None:
        self.db["users"].create_index([("username", ASCENDING)], unique=True)
        self.db["categories"].create_index([("name", ASCENDING)], unique=True)
        self.db["orders"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
        self.db["products"].create_index([("category", ASCENDING)])
        logger.info("MongoDB indexes ensured")

    def _insert(self, collection: str, doc: dict) -> dict:
        doc = dict(doc)
        now = _now()
        doc["created_at"] = now
        doc["updated_at"] = now
        res = self.db[collection].insert_one(doc)
        doc["_id"] = res.inserted_id
        return to_dict(doc)

    def _get(self, collection: str, doc_id: str) -> Optional[dict]:
        oid = _oid(doc_id)
        if oid is None:
            return None
        return to_dict(self.db[collection].find_one({"_id": oid}))

    def _update(self, collection: str, doc_id: str, fields: dict) -> Optional[dict]:
        oid = _oid(doc_id)
        if oid is None:
            return None
        doc = self.db[collection].find_one_and_update(
            {"_id": oid},
            {"$set": {**fields, "updated_at": _now()}},
            return_document=ReturnDocument.AFTER,
        )
        return to_dict(doc)

    def _newest_first(self, collection: str, query: dict) -> List[dict]:
        cursor = self.db[collection].find(query).sort([("created_at", DESCENDING), ("_id", DESCENDING)])
        return [to_dict(d) for d in cursor]

    def insert_user(self, doc):
        try:
            return self._insert("users", doc)
        except DuplicateKeyError as e:
            raise Conflict("Username taken") from e

    def get_user(self, user_id):
        return self._get("users", user_id)

    def find_user_by_username(self, username):
        return to_dict(self.db["users"].find_one({"username": username}))

    def update_user(self, user_id, fields):
        try:
            return self._update("users", user_id, fields)
        except DuplicateKeyError as e:
            raise Conflict("Username taken") from e

    def list_users(self):
        return self._newest_first("users", {})

    def insert_product(self, doc):
        return self._insert("products", doc)

    def get_product(self, product_id):
        return self._get("products", product_id)

    def list_products(self, filters):
        return self._newest_first("products", filters.to_query())

    def update_product(self, product_id, fields):
        return self._update("products", product_id, fields)

    def delete_product(self, product_id):
        oid = _oid(product_id)
        if oid is None:
            return False
        return self.db["products"].delete_one({"_id": oid}).deleted_count == 1

    def decrement_stock(self, product_id, quantity):
        oid = _oid(product_id)
        if oid is None:
            return None
        doc = self.db["products"].find_one_and_update(
            {"_id": oid, "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}, "$set": {"updated_at": _now()}},
            return_document=ReturnDocument.AFTER,
        )
        return to_dict(doc)

    def increment_stock(self, product_id, quantity):
        oid = _oid(product_id)
        if oid is None:
            return False
        res = self.db["products"].update_one(
            {"_id": oid},
            {"$inc": {"stock": quantity}, "$set": {"updated_at": _now()}},
        )
        return res.matched_count == 1

    def insert_category(self, doc):
        try:
            return self._insert("categories", doc)
        except DuplicateKeyError as e:
            raise Conflict("Category already exists") from e

    def list_categories(self):
        return [to_dict(d) for d in self.db["categories"].find().sort("_id", ASCENDING)]

    def count_categories(self):
        return self.db["categories"].count_documents({})

    def insert_order(self, doc):
        return self._insert("orders", doc)

    def get_order(self, order_id):
        return self._get("orders", order_id)

    def list_orders(self, user_id=None):
        return self._newest_first("orders", {"user_id": user_id} if user_id else {})

    def set_order_status(self, order_id, status):
        oid = _oid(order_id)
        if oid is None:
            return None
        doc = self.db["orders"].find_one_and_update(
            {"_id": oid},
            {"$set": {"status": status, "updated_at": _now()}},
            return_document=ReturnDocument.BEFORE,
        )
        return to_dict(doc)


class MemoryStore(Store):
    """In-process store. One lock guards every table."""

    def __init__(self):
        self._lock = threading.RLock()
        self._tables: Dict[str, Dict[str, dict]] = {
            "users": {},
            "products": {},
            "categories": {},
            "orders": {},
        }

    def _insert(self, table: str, doc: dict) -> dict:
        with self._lock:
            doc = copy.deepcopy(doc)
            now = _now()
            doc["id"] = str(ObjectId())
            doc["created_at"] = now
            doc["updated_at"] = now
            self._tables[table][doc["id"]] = doc
            return copy.deepcopy(doc)

    def _get(self, table: str, doc_id) -> Optional[dict]:
        with self._lock:
            doc = self._tables[table].get(str(doc_id))
            return copy.deepcopy(doc) if doc else None

    def _update(self, table: str, doc_id, fields: dict) -> Optional[dict]:
        with self._lock:
            doc = self._tables[table].get(str(doc_id))
            if doc is None:
                return None
            doc.update(copy.deepcopy(fields))
            doc["updated_at"] = _now()
            return copy.deepcopy(doc)

    def _newest_first(self, table: str, predicate=None) -> List[dict]:
        with self._lock:
            # dicts keep insertion order, which is creation order
            rows = [d for d in self._tables[table].values() if predicate is None or predicate(d)]
            return [copy.deepcopy(d) for d in reversed(rows)]

    def _username_taken(self, username: str, exclude_id: Optional[str] = None) -> bool:
        return any(
            u["username"] == username and u["id"] != exclude_id
            for u in self._tables["users"].values()
        )

    def insert_user(self, doc):
        with self._lock:
            if self._username_taken(doc.get("username")):
                raise Conflict("Username taken")
            return self._insert("users", doc)

    def get_user(self, user_id):
        return self._get("users", user_id)

    def find_user_by_username(self, username):
        with self._lock:
            for user in self._tables["users"].values():
                if user["username"] == username:
                    return copy.deepcopy(user)
        return None

    def update_user(self, user_id, fields):
        with self._lock:
            if "username" in fields and self._username_taken(fields["username"], exclude_id=str(user_id)):
                raise Conflict("Username taken")
            return self._update("users", user_id, fields)

    def list_users(self):
        return self._newest_first("users")

    def insert_product(self, doc):
        return self._insert("products", doc)

    def get_product(self, product_id):
        return self._get("products", product_id)

    def list_products(self, filters):
        return self._newest_first("products", filters.matches)

    def update_product(self, product_id, fields):
        return self._update("products", product_id, fields)

    def delete_product(self, product_id):
        with self._lock:
            return self._tables["products"].pop(str(product_id), None) is not None

    def decrement_stock(self, product_id, quantity):
        with self._lock:
            doc = self._tables["products"].get(str(product_id))
            if doc is None or doc.get("stock", 0) < quantity:
                return None
            doc["stock"] -= quantity
            doc["updated_at"] = _now()
            return copy.deepcopy(doc)

    def increment_stock(self, product_id, quantity):
        with self._lock:
            doc = self._tables["products"].get(str(product_id))
            if doc is None:
                return False
            doc["stock"] = doc.get("stock", 0) + quantity
            doc["updated_at"] = _now()
            return True

    def insert_category(self, doc):
        with self._lock:
            if any(c["name"] == doc.get("name") for c in self._tables["categories"].values()):
                raise Conflict("Category already exists")
            return self._insert("categories", doc)

    def list_categories(self):
        with self._lock:
            return [copy.deepcopy(c) for c in self._tables["categories"].values()]

    def count_categories(self):
        with self._lock:
            return len(self._tables["categories"])

    def insert_order(self, doc):
        return self._insert("orders", doc)

    def get_order(self, order_id):
        return self._get("orders", order_id)

    def list_orders(self, user_id=None):
        if user_id is None:
            return self._newest_first("orders")
        return self._newest_first("orders", lambda o: o.get("user_id") == user_id)

    def set_order_status(self, order_id, status):
        with self._lock:
            doc = self._tables["orders"].get(str(order_id))
            if doc is None:
                return None
            before = copy.deepcopy(doc)
            doc["status"] = status
            doc["updated_at"] = _now()
            return before
