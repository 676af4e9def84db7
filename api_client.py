"""
HTTP client for the storefront API.

Every call carries the stored bearer token. A 401 from the server wipes the
token (keeping only the avatar) so the next authenticated action asks the
user to log in again.
"""

import json
import logging
import math
import mimetypes
import os
from contextlib import ExitStack
from typing import Any, Callable, Dict, List, Optional

import httpx

from local_store import LocalStorage

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8000/api"
TOKEN_KEY = "token"
USER_KEY = "user"
IMAGE_TYPES = ("jpg", "jpeg", "png")


class ApiError(Exception):
    def __init__(self, message: str, status: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.body = body

    @property
    def is_auth_error(self) -> bool:
        return self.status == 401


def avatar_of(user: Optional[dict]) -> Optional[str]:
    if not user:
        return None
    return user.get("imageUri") or user.get("image_uri")


def _check_image(path: str) -> None:
    ext = path.rsplit(".", 1)[-1].lower() if "." in path else ""
    if ext not in IMAGE_TYPES:
        raise ApiError("Image must be JPG, JPEG, or PNG format")


class ApiClient:
    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        storage: Optional[LocalStorage] = None,
        http: Optional[httpx.Client] = None,
        timeout: float = 15.0,
    ):
        self.storage = storage if storage is not None else LocalStorage()
        self._http = http or httpx.Client(base_url=base_url, timeout=timeout)
        self.on_unauthorized: Optional[Callable[[], None]] = None

    @property
    def base_url(self) -> str:
        return str(self._http.base_url)

    def close(self):
        self._http.close()

    # --- plumbing -------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        token = self.storage.get_item(TOKEN_KEY)
        return {"Authorization": f"Bearer {token}"} if token else {}

    def clear_auth(self) -> None:
        """Drop the token, keep only the avatar of the stored user."""
        image_uri = avatar_of(self.storage.get_json(USER_KEY))
        self.storage.set_json(USER_KEY, {"imageUri": image_uri})
        self.storage.remove_item(TOKEN_KEY)

    def _request(self, method: str, path: str, **kwargs) -> Any:
        headers = {**self._headers(), **kwargs.pop("headers", {})}
        try:
            resp = self._http.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise ApiError("Request timed out, please try again") from e
        except httpx.HTTPError as e:
            raise ApiError("Network error: please check your internet connection") from e

        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = None
            message = None
            if isinstance(body, dict):
                message = body.get("error") or body.get("message") or body.get("detail")
            message = message or f"Server error: {resp.status_code}"
            logger.warning("API %s %s failed: %s %s", method, path, resp.status_code, message)
            if resp.status_code == 401:
                self.clear_auth()
                logger.info("Cleared auth state due to 401")
                if self.on_unauthorized:
                    self.on_unauthorized()
            raise ApiError(message, resp.status_code, body)

        if not resp.content:
            return None
        return resp.json()

    def _send_form(self, method: str, path: str, data: Dict[str, Any], image_path: Optional[str] = None) -> Any:
        data = {k: str(v) for k, v in data.items() if v is not None and v != ""}
        with ExitStack() as stack:
            files = None
            if image_path:
                _check_image(image_path)
                f = stack.enter_context(open(image_path, "rb"))
                mime = mimetypes.guess_type(image_path)[0] or "image/jpeg"
                files = {"image": (os.path.basename(image_path), f, mime)}
            return self._request(method, path, data=data, files=files)

    # --- auth -----------------------------------------------------------

    def register(self, username: str, password: str, email: str, phone: Optional[str] = None) -> dict:
        return self._request("POST", "/register", json={
            "username": username.strip(),
            "password": password,
            "email": email.strip().lower(),
            "phone": phone.strip() if phone else None,
        })

    def login(self, username: str, password: str) -> dict:
        data = self._request("POST", "/login", json={"username": username.strip(), "password": password})
        if data.get("token"):
            user = {**data["user"], "imageUri": avatar_of(data["user"])}
            self.storage.multi_set([(TOKEN_KEY, data["token"]), (USER_KEY, json.dumps(user))])
            logger.info("Login successful, stored token and user data")
        return data

    def logout(self) -> None:
        # tokens are stateless, nothing to tell the server
        self.clear_auth()

    def is_logged_in(self) -> bool:
        return bool(self.storage.get_item(TOKEN_KEY))

    def stored_user(self) -> Optional[dict]:
        return self.storage.get_json(USER_KEY)

    # --- users ----------------------------------------------------------

    def get_current_user(self) -> dict:
        user = self._request("GET", "/users/me")
        self.storage.set_json(USER_KEY, {**user, "imageUri": avatar_of(user)})
        return user

    def update_profile(self, username=None, email=None, phone=None, image_path=None) -> dict:
        user = self._send_form("PUT", "/users/me", {
            "username": username.strip() if username else None,
            "email": email.strip().lower() if email else None,
            "phone": phone.strip() if phone else None,
        }, image_path)
        self.storage.set_json(USER_KEY, {**user, "imageUri": avatar_of(user)})
        return user

    # --- products -------------------------------------------------------

    def get_products(self, search=None, category=None, min_price=None, max_price=None, hide_out_of_stock=None) -> List[dict]:
        params = {
            "search": search,
            "category": category,
            "minPrice": min_price,
            "maxPrice": max_price,
            "hideOutOfStock": hide_out_of_stock,
        }
        params = {k: v for k, v in params.items() if v is not None and v != ""}
        return self._request("GET", "/products", params=params)

    def search_products(self, term: str) -> List[dict]:
        return self.get_products(search=term)

    def get_products_by_category(self, category: str) -> List[dict]:
        return self.get_products(category=category)

    def get_products_by_price_range(self, min_price=None, max_price=None) -> List[dict]:
        return self.get_products(min_price=min_price, max_price=max_price)

    def get_product(self, product_id: str) -> dict:
        if not product_id:
            raise ApiError("Product ID is required")
        return self._request("GET", f"/products/{product_id}")

    def create_product(self, title, description, price, category, size=None, color=None, stock=None, image_path=None) -> dict:
        fields = {"title": title, "description": description, "price": price, "category": category}
        missing = [k for k, v in fields.items() if v in (None, "")]
        if missing:
            raise ApiError(f"Missing required fields: {', '.join(missing)}")
        try:
            price_value = float(price)
        except (TypeError, ValueError):
            price_value = 0
        if not math.isfinite(price_value) or price_value <= 0:
            raise ApiError("Price must be a positive number")
        try:
            stock_value = int(stock) if stock not in (None, "") else 0
        except (TypeError, ValueError):
            raise ApiError("Stock must be a whole number")
        if stock_value < 0:
            raise ApiError("Stock cannot be negative")
        return self._send_form("POST", "/products", {
            "title": str(title).strip(),
            "description": str(description).strip(),
            "price": price,
            "category": str(category).strip(),
            "size": size.strip() if size else None,
            "color": color.strip() if color else None,
            "stock": stock_value or None,
        }, image_path)

    def update_product(self, product_id: str, image_path: Optional[str] = None, **fields) -> dict:
        if not product_id:
            raise ApiError("Product ID is required")
        allowed = ("title", "description", "price", "category", "size", "color", "stock")
        data = {k: fields[k] for k in allowed if fields.get(k) is not None}
        return self._send_form("PUT", f"/products/{product_id}", data, image_path)

    def delete_product(self, product_id: str) -> dict:
        if not product_id:
            raise ApiError("Product ID is required")
        return self._request("DELETE", f"/products/{product_id}")

    # --- categories -----------------------------------------------------

    def get_categories(self) -> List[dict]:
        return self._request("GET", "/categories")

    def create_category(self, name: str, image_path: Optional[str] = None) -> dict:
        if not name:
            raise ApiError("Category name is required")
        return self._send_form("POST", "/categories", {"name": name.strip()}, image_path)

    # --- orders & payments ----------------------------------------------

    def create_order(self, product_id: str, quantity: int, **extra) -> dict:
        return self._request("POST", "/orders", json={"product_id": product_id, "quantity": quantity, **extra})

    def get_orders(self) -> List[dict]:
        return self._request("GET", "/orders")

    def update_order_status(self, order_id: str, status: str) -> dict:
        return self._request("PUT", f"/orders/{order_id}/status", json={"status": status})

    def process_payment(self, amount: float, currency: str = "THB") -> dict:
        return self._request("POST", "/payments", json={"amount": amount, "currency": currency})

    # --- admin ----------------------------------------------------------

    def get_admin_users(self) -> List[dict]:
        return self._request("GET", "/admin/users")

    def get_admin_products(self) -> List[dict]:
        return self._request("GET", "/admin/products")

    def get_admin_orders(self) -> List[dict]:
        return self._request("GET", "/admin/orders")

    def update_user_role(self, user_id: str, role: str) -> dict:
        return self._request("PUT", f"/admin/users/{user_id}/role", json={"role": role})

    def get_admin_stats(self) -> dict:
        users = self.get_admin_users()
        orders = self.get_admin_orders()
        products = self.get_admin_products()
        return {
            "totalUsers": len(users),
            "totalOrders": len(orders),
            "totalProducts": len(products),
            "totalRevenue": round(sum(o.get("total_price") or 0 for o in orders), 2),
            "pendingOrders": sum(1 for o in orders if o.get("status") == "pending"),
            "adminUsers": sum(1 for u in users if u.get("role") == "admin"),
            "outOfStockProducts": sum(1 for p in products if (p.get("stock") or 0) <= 0),
        }

    # --- misc -----------------------------------------------------------

    def check_connectivity(self) -> bool:
        try:
            self._request("GET", "/health", timeout=5.0)
            return True
        except ApiError:
            return False
