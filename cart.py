"""
Client cart store and checkout.

The cart is local to the device and independent of the session: a mapping
of product id to ``{..product snapshot, quantity, addedAt}`` persisted under
``user_cart``. Stock is only re-checked by the server when orders are placed.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from api_client import ApiClient, ApiError
from local_store import LocalStorage, Observable

logger = logging.getLogger(__name__)

CART_KEY = "user_cart"


class CheckoutError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotAuthenticated(CheckoutError):
    pass


class EmptyCart(CheckoutError):
    pass


class StockShortage(CheckoutError):
    def __init__(self, items: List[dict]):
        lines = [f"{i['title']} ({i['stock']} left)" for i in items]
        super().__init__("Not enough stock for:\n" + "\n".join(lines))
        self.items = items


class PartialCheckout(CheckoutError):
    """Payment went through but not every order could be placed."""

    def __init__(self, message: str, payment_id: str, orders: List[dict], failed: List[dict]):
        super().__init__(message)
        self.payment_id = payment_id
        self.orders = orders
        self.failed = failed


class CartStore(Observable):
    def __init__(self, storage: LocalStorage):
        super().__init__()
        self.storage = storage
        self._lines: Dict[str, dict] = {}

    def load(self) -> List[dict]:
        data = self.storage.get_json(CART_KEY, {})
        if isinstance(data, list):
            # older builds persisted a plain list of lines
            data = {str(line["id"]): line for line in data if "id" in line}
        self._lines = {str(k): v for k, v in (data or {}).items()}
        self.notify()
        return self.items

    def _save(self) -> None:
        self.storage.set_json(CART_KEY, self._lines)
        self.notify()

    @property
    def items(self) -> List[dict]:
        return [dict(line) for line in self._lines.values()]

    def add_to_cart(self, product: dict, quantity: int = 1) -> dict:
        product_id = str(product["id"])
        line = self._lines.get(product_id)
        if line:
            line["quantity"] += quantity
        else:
            line = {
                **product,
                "id": product_id,
                "quantity": quantity,
                "addedAt": datetime.now(timezone.utc).isoformat(),
            }
            self._lines[product_id] = line
        self._save()
        return dict(line)

    def remove_from_cart(self, product_id) -> None:
        if self._lines.pop(str(product_id), None) is not None:
            self._save()

    def update_quantity(self, product_id, quantity: int) -> None:
        if quantity <= 0:
            self.remove_from_cart(product_id)
            return
        line = self._lines.get(str(product_id))
        if line is None:
            return
        line["quantity"] = quantity
        self._save()

    def clear(self) -> None:
        self._lines = {}
        self.storage.remove_item(CART_KEY)
        self.notify()

    def total_price(self) -> float:
        return round(sum(float(line.get("price") or 0) * line["quantity"] for line in self._lines.values()), 2)

    def total_items(self) -> int:
        return sum(line["quantity"] for line in self._lines.values())

    def is_in_cart(self, product_id) -> bool:
        return str(product_id) in self._lines

    def quantity_of(self, product_id) -> int:
        line = self._lines.get(str(product_id))
        return line["quantity"] if line else 0

    def stock_errors(self) -> List[dict]:
        """Lines asking for more than the snapshot says is available."""
        return [
            {"id": line["id"], "title": line.get("title", line["id"]), "stock": line.get("stock", 0), "quantity": line["quantity"]}
            for line in self._lines.values()
            if line["quantity"] > (line.get("stock") or 0)
        ]


def checkout(
    session,
    cart: CartStore,
    api: ApiClient,
    shipping_address: Optional[str] = None,
    payment_method: str = "mock",
    currency: str = "THB",
) -> dict:
    """Pay for the cart, place one order per line and empty the cart."""
    if not session.is_authenticated:
        raise NotAuthenticated("Please log in before placing an order")
    if not cart.items:
        raise EmptyCart("Your cart is empty")
    shortages = cart.stock_errors()
    if shortages:
        raise StockShortage(shortages)

    total = cart.total_price()
    payment = api.process_payment(total, currency)
    payment_id = payment["paymentId"]

    placed, failed = [], []
    for line in cart.items:
        try:
            order = api.create_order(
                line["id"],
                line["quantity"],
                shipping_address=shipping_address,
                payment_method=payment_method,
                payment_id=payment_id,
            )
        except ApiError as e:
            if e.is_auth_error:
                raise
            failed.append({**line, "error": e.message})
            continue
        placed.append(order)
        cart.remove_from_cart(line["id"])

    if failed:
        logger.warning("Checkout %s placed %d orders, %d failed", payment_id, len(placed), len(failed))
        names = ", ".join(f"{f.get('title', f['id'])}: {f['error']}" for f in failed)
        raise PartialCheckout(f"Some items could not be ordered: {names}", payment_id, placed, failed)

    cart.clear()
    logger.info("Checkout %s placed %d orders for %.2f", payment_id, len(placed), total)
    return {"paymentId": payment_id, "total": total, "orders": placed}
