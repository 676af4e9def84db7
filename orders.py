"""
Order workflow.

Creating an order takes stock with one conditional write
(``stock -= q where stock >= q``) before the order row exists. Two buyers
racing for the last unit both pass the early stock check but only one of them
gets through the conditional write, so stock never goes negative.
"""

import logging
from typing import List, Optional

from auth import Identity
from config import settings
from errors import Forbidden, InsufficientStock, Internal, InvalidInput, NotFound
from schemas import ORDER_STATUSES, Order
from store import Store

logger = logging.getLogger(__name__)


def _parse_quantity(quantity) -> int:
    if isinstance(quantity, bool) or (isinstance(quantity, float) and not quantity.is_integer()):
        raise InvalidInput("Quantity must be a positive integer", fields=["quantity"])
    try:
        qty = int(quantity)
    except (TypeError, ValueError):
        raise InvalidInput("Quantity must be a positive integer", fields=["quantity"])
    if qty <= 0:
        raise InvalidInput("Quantity must be a positive integer", fields=["quantity"])
    return qty


def create_order(
    store: Store,
    identity: Identity,
    product_id: str,
    quantity,
    shipping_address: Optional[str] = None,
    payment_method: Optional[str] = None,
    payment_id: Optional[str] = None,
) -> dict:
    if not product_id:
        raise InvalidInput("product_id required", fields=["product_id"])
    qty = _parse_quantity(quantity)

    product = store.get_product(product_id)
    if not product:
        raise NotFound("Product not found")
    if product.get("stock", 0) < qty:
        logger.info("Rejected order for %s x%d, only %d left", product_id, qty, product.get("stock", 0))
        raise InsufficientStock(f"Insufficient stock for {product['title']} ({product.get('stock', 0)} left)")

    unit_price = float(product["price"])
    total_price = round(unit_price * qty, 2)

    if store.decrement_stock(product_id, qty) is None:
        # someone else took the units between the read and the write
        logger.info("Lost stock race for %s x%d", product_id, qty)
        raise InsufficientStock(f"Insufficient stock for {product['title']}")

    try:
        order = store.insert_order(Order(
            user_id=identity.user_id,
            product_id=product_id,
            quantity=qty,
            unit_price=unit_price,
            total_price=total_price,
            shipping_address=shipping_address,
            payment_method=payment_method,
            payment_id=payment_id,
        ).model_dump())
    except Exception as e:
        store.increment_stock(product_id, qty)
        logger.exception("Order insert failed, returned %d units to %s", qty, product_id)
        raise Internal("Failed to create order") from e

    logger.info("Order %s created: %s x%d by %s", order["id"], product_id, qty, identity.username)
    return order


def get_order(store: Store, order_id: str, identity: Identity) -> dict:
    order = store.get_order(order_id)
    if not order:
        raise NotFound("Order not found")
    if order["user_id"] != identity.user_id and not identity.is_admin:
        raise Forbidden("Not your order")
    return _with_details(store, order)


def update_order_status(
    store: Store,
    order_id: str,
    identity: Identity,
    new_status: str,
    restock_on_cancel: Optional[bool] = None,
) -> dict:
    if new_status not in ORDER_STATUSES:
        raise InvalidInput(f"Status must be one of: {', '.join(ORDER_STATUSES)}", fields=["status"])
    order = store.get_order(order_id)
    if not order:
        raise NotFound("Order not found")
    if order["user_id"] != identity.user_id and not identity.is_admin:
        raise Forbidden("Only the buyer or an admin can update this order")

    if restock_on_cancel is None:
        restock_on_cancel = settings.RESTOCK_ON_CANCEL

    took_stock = False
    if restock_on_cancel and order["status"] == "cancelled" and new_status != "cancelled":
        # reviving a cancelled order needs its units back
        if store.decrement_stock(order["product_id"], order["quantity"]) is None:
            raise InsufficientStock("Not enough stock to reopen this order")
        took_stock = True

    before = store.set_order_status(order_id, new_status)
    if before is None:
        if took_stock:
            store.increment_stock(order["product_id"], order["quantity"])
        raise NotFound("Order not found")

    if restock_on_cancel:
        if before["status"] != "cancelled" and new_status == "cancelled":
            store.increment_stock(before["product_id"], before["quantity"])
            logger.info("Returned %d units to %s on cancel", before["quantity"], before["product_id"])
        elif took_stock and before["status"] != "cancelled":
            # another request reopened it first
            store.increment_stock(order["product_id"], order["quantity"])

    logger.info("Order %s: %s -> %s by %s", order_id, before["status"], new_status, identity.username)
    return store.get_order(order_id)


def _with_details(store: Store, order: dict) -> dict:
    """Attach product and seller display fields to an order."""
    product = store.get_product(order["product_id"]) or {}
    seller = store.get_user(product["user_id"]) if product.get("user_id") else None
    buyer = store.get_user(order["user_id"])
    return {
        **order,
        "product_title": product.get("title"),
        "product_image_uri": product.get("image_uri"),
        "product_price": product.get("price"),
        "seller_id": product.get("user_id"),
        "seller_username": seller["username"] if seller else None,
        "buyer_username": buyer["username"] if buyer else None,
    }


def list_orders(store: Store, user_id: str) -> List[dict]:
    return [_with_details(store, o) for o in store.list_orders(user_id)]


def list_all_orders(store: Store) -> List[dict]:
    return [_with_details(store, o) for o in store.list_orders()]
