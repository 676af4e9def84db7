"""
Product and category catalog.
"""

import logging
import math
from typing import Any, Dict, List, Optional

from auth import Identity
from errors import Conflict, Forbidden, InvalidInput, NotFound
from schemas import DEFAULT_CATEGORIES, Category, Product
from store import ProductFilter, Store

logger = logging.getLogger(__name__)

REQUIRED_PRODUCT_FIELDS = ("title", "description", "price", "category")
TEXT_FIELDS = ("title", "description", "category", "size", "color")


def clean_product_fields(fields: Dict[str, Any], partial: bool) -> Dict[str, Any]:
    """Coerce and validate product fields. Unset (None) fields are dropped."""
    clean: Dict[str, Any] = {}
    for name in TEXT_FIELDS:
        value = fields.get(name)
        if value is None:
            continue
        value = str(value).strip()
        if value or name in ("size", "color"):
            clean[name] = value or None

    if fields.get("price") not in (None, ""):
        try:
            price = round(float(fields["price"]), 2)
        except (TypeError, ValueError):
            raise InvalidInput("Price must be a number", fields=["price"])
        if not math.isfinite(price) or price <= 0:
            raise InvalidInput("Price must be a positive number", fields=["price"])
        clean["price"] = price

    if fields.get("stock") not in (None, ""):
        try:
            stock = int(fields["stock"])
        except (TypeError, ValueError):
            raise InvalidInput("Stock must be an integer", fields=["stock"])
        if stock < 0:
            raise InvalidInput("Stock cannot be negative", fields=["stock"])
        clean["stock"] = stock

    if fields.get("image_uri"):
        clean["image_uri"] = fields["image_uri"]

    if not partial:
        missing = [name for name in REQUIRED_PRODUCT_FIELDS if name not in clean]
        if missing:
            raise InvalidInput("Missing required fields: " + ", ".join(missing), fields=missing)
    return clean


def check_owner(product: dict, identity: Identity) -> None:
    if product.get("user_id") != identity.user_id and not identity.is_admin:
        raise Forbidden("Only the seller or an admin can change this product")


def create_product(store: Store, identity: Identity, fields: Dict[str, Any]) -> str:
    doc = clean_product_fields(fields, partial=False)
    doc = Product(**doc, user_id=identity.user_id).model_dump()
    product = store.insert_product(doc)
    logger.info("Product %s '%s' created by %s", product["id"], product["title"], identity.username)
    return product["id"]


def get_product(store: Store, product_id: str) -> dict:
    product = store.get_product(product_id)
    if not product:
        raise NotFound("Product not found")
    return product


def update_product(store: Store, product_id: str, identity: Identity, patch: Dict[str, Any]) -> dict:
    product = get_product(store, product_id)
    check_owner(product, identity)
    updates = clean_product_fields(patch, partial=True)
    if not updates:
        return product
    updated = store.update_product(product_id, updates)
    if not updated:
        raise NotFound("Product not found")
    return updated


def delete_product(store: Store, product_id: str, identity: Identity) -> None:
    product = get_product(store, product_id)
    check_owner(product, identity)
    if not store.delete_product(product_id):
        raise NotFound("Product not found")
    logger.info("Product %s deleted by %s", product_id, identity.username)


def list_products(store: Store, filters: Optional[ProductFilter] = None) -> List[dict]:
    filters = filters or ProductFilter()
    if (
        filters.min_price is not None
        and filters.max_price is not None
        and filters.min_price > filters.max_price
    ):
        raise InvalidInput("minPrice cannot be greater than maxPrice", fields=["minPrice", "maxPrice"])
    return store.list_products(filters)


# Categories

def list_categories(store: Store) -> List[dict]:
    return store.list_categories()


def create_category(store: Store, name: str, image_uri: Optional[str] = None) -> dict:
    name = (name or "").strip()
    if not name:
        raise InvalidInput("Category name required", fields=["name"])
    return store.insert_category(Category(name=name, image_uri=image_uri).model_dump())


def seed_categories(store: Store) -> int:
    if store.count_categories() > 0:
        return 0
    added = 0
    for name in DEFAULT_CATEGORIES:
        try:
            store.insert_category(Category(name=name).model_dump())
        except Conflict:
            # another worker seeded it first
            continue
        added += 1
    logger.info("Added %d default categories", added)
    return added
