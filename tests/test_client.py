import json

import httpx
import pytest

import auth
from api_client import TOKEN_KEY, USER_KEY, ApiClient, ApiError
from cart import CART_KEY, CartStore, EmptyCart, NotAuthenticated, PartialCheckout, StockShortage, checkout
from local_store import LocalStorage
from session import SessionStore


@pytest.fixture
def make_client(api_http):
    def factory():
        return ApiClient(storage=LocalStorage(), http=api_http)
    return factory


def signed_up(make_client, username):
    api = make_client()
    api.register(username, "pw123", f"{username}@x.com")
    api.login(username, "pw123")
    return api


@pytest.fixture
def png(tmp_path):
    path = tmp_path / "avatar.png"
    path.write_bytes(b"\x89PNG fake")
    return str(path)


def test_login_stores_token_and_user(make_client):
    api = make_client()
    api.register("alice", "pw123", " A@X.com ", phone=" 0811 ")
    data = api.login(" alice ", "pw123")
    assert api.is_logged_in()
    assert api.storage.get_item(TOKEN_KEY) == data["token"]
    stored = api.stored_user()
    assert stored["username"] == "alice"
    assert stored["email"] == "a@x.com"
    assert stored["phone"] == "0811"
    assert "imageUri" in stored


def test_bad_credentials_raise_api_error(make_client):
    api = make_client()
    api.register("alice", "pw123", "a@x.com")
    with pytest.raises(ApiError) as exc:
        api.login("alice", "wrong")
    assert exc.value.status == 401
    assert exc.value.message == "Invalid credentials"
    assert not api.is_logged_in()


def test_unauthorized_response_clears_token_but_keeps_avatar(make_client, png):
    api = signed_up(make_client, "alice")
    user = api.update_profile(image_path=png)
    assert user["image_uri"].startswith("/uploads/profile_")

    # simulate a lost token: the server answers 401 and the client forgets the session
    api.storage.remove_item(TOKEN_KEY)
    with pytest.raises(ApiError) as exc:
        api.get_current_user()
    assert exc.value.is_auth_error
    assert api.stored_user() == {"imageUri": user["image_uri"]}


def test_logout_keeps_only_avatar(make_client):
    api = signed_up(make_client, "alice")
    api.logout()
    assert not api.is_logged_in()
    assert api.stored_user() == {"imageUri": None}


def test_client_side_validation(make_client, tmp_path):
    api = signed_up(make_client, "seller")
    with pytest.raises(ApiError, match="Missing required fields: description"):
        api.create_product("Hat", "", 10, "Accessories")
    with pytest.raises(ApiError, match="positive"):
        api.create_product("Hat", "Straw", "free", "Accessories")
    with pytest.raises(ApiError, match="positive"):
        api.create_product("Hat", "Straw", "inf", "Accessories")
    with pytest.raises(ApiError, match="whole number"):
        api.create_product("Hat", "Straw", 10, "Accessories", stock="lots")
    with pytest.raises(ApiError, match="negative"):
        api.create_product("Hat", "Straw", 10, "Accessories", stock=-2)
    gif = tmp_path / "hat.gif"
    gif.write_bytes(b"GIF89a")
    with pytest.raises(ApiError, match="JPG"):
        api.create_product("Hat", "Straw", 10, "Accessories", image_path=str(gif))
    with pytest.raises(ApiError):
        api.get_product("")


def test_product_crud_and_queries(make_client, png):
    api = signed_up(make_client, "seller")
    pid = api.create_product("Straw Hat", "Summer hat", "250", "Accessories", stock=4, image_path=png)["productId"]
    api.create_product("Wool Hat", "Winter hat", 600, "Accessories", stock=0)

    assert api.get_product(pid)["image_uri"].endswith(".png")
    assert [p["title"] for p in api.search_products("hat")] == ["Straw Hat"]
    assert [p["title"] for p in api.get_products(hide_out_of_stock=False)] == ["Wool Hat", "Straw Hat"]
    assert [p["title"] for p in api.get_products_by_category("Accessories")] == ["Straw Hat"]
    assert api.get_products_by_price_range(300, 1000) == []

    updated = api.update_product(pid, title="Straw Hat XL", stock=9)
    assert updated["title"] == "Straw Hat XL"
    assert updated["stock"] == 9
    assert api.delete_product(pid) == {"deleted": True}
    with pytest.raises(ApiError) as exc:
        api.get_product(pid)
    assert exc.value.status == 404


def test_categories(make_client):
    api = signed_up(make_client, "alice")
    assert "Shoes" in [c["name"] for c in api.get_categories()]
    assert api.create_category(" Bags ")["category"]["name"] == "Bags"


def test_admin_stats(make_client, store):
    admin = make_client()
    admin.register("root", "pw123", "root@x.com")
    auth.set_role(store, store.find_user_by_username("root")["id"], "admin")
    admin.login("root", "pw123")

    seller = signed_up(make_client, "seller")
    pid = seller.create_product("Scarf", "Silk", 100, "Accessories", stock=2)["productId"]
    seller.create_product("Gloves", "Leather", 50, "Accessories")
    buyer = signed_up(make_client, "buyer")
    buyer.create_order(pid, 2)

    stats = admin.get_admin_stats()
    assert stats == {
        "totalUsers": 3,
        "totalOrders": 1,
        "totalProducts": 2,
        "totalRevenue": 200.0,
        "pendingOrders": 1,
        "adminUsers": 1,
        "outOfStockProducts": 2,
    }
    with pytest.raises(ApiError) as exc:
        buyer.get_admin_stats()
    assert exc.value.status == 403


def test_network_errors_become_api_errors():
    def boom(request):
        raise httpx.ConnectError("connection refused", request=request)

    api = ApiClient(http=httpx.Client(base_url="http://shop.test/api", transport=httpx.MockTransport(boom)))
    with pytest.raises(ApiError, match="Network error"):
        api.get_categories()
    assert api.check_connectivity() is False


def test_server_error_without_json_body():
    transport = httpx.MockTransport(lambda request: httpx.Response(502, text="bad gateway"))
    api = ApiClient(http=httpx.Client(base_url="http://shop.test/api", transport=transport))
    with pytest.raises(ApiError) as exc:
        api.get_products()
    assert exc.value.message == "Server error: 502"
    assert exc.value.status == 502


# Session

def test_session_load_refreshes_user(make_client):
    api = signed_up(make_client, "alice")
    session = SessionStore(api.storage, api)
    seen = []
    session.subscribe(lambda s: seen.append(s.is_authenticated))

    user = session.load()
    assert user["username"] == "alice"
    assert session.is_authenticated
    assert not session.loading
    assert session.has_role("user")
    assert session.has_any_role(["admin", "user"])
    assert not session.is_admin
    assert seen and seen[-1] is True


def test_session_without_token_is_guest():
    session = SessionStore(LocalStorage())
    session.load()
    assert not session.is_authenticated
    assert session.user is None
    assert session.role is None


def test_session_invalidated_when_refresh_fails(make_client):
    api = make_client()
    api.storage.set_item(TOKEN_KEY, "not.a-token")
    api.storage.set_json(USER_KEY, {"username": "ghost", "imageUri": "/uploads/ghost.png"})
    session = SessionStore(api.storage, api)
    session.load()
    assert not session.is_authenticated
    assert session.token is None
    assert session.image_uri == "/uploads/ghost.png"


def test_session_follows_client_401(make_client):
    api = signed_up(make_client, "alice")
    session = SessionStore(api.storage, api)
    session.load()
    assert session.is_authenticated
    api.storage.remove_item(TOKEN_KEY)
    with pytest.raises(ApiError):
        api.get_orders()
    assert not session.is_authenticated


def test_session_login_update_logout():
    storage = LocalStorage()
    session = SessionStore(storage)
    calls = []
    unsubscribe = session.subscribe(lambda s: calls.append(1))

    session.login({"id": "u1", "username": "alice", "role": "admin", "image_uri": "/uploads/a.png"}, "tok")
    assert session.is_admin
    assert session.token == "tok"
    assert storage.get_json(USER_KEY)["imageUri"] == "/uploads/a.png"

    session.update_user({"phone": "0899"})
    assert storage.get_json(USER_KEY)["phone"] == "0899"

    session.logout()
    assert not session.is_authenticated
    assert storage.get_item(TOKEN_KEY) is None
    assert storage.get_json(USER_KEY) == {"imageUri": "/uploads/a.png"}
    assert len(calls) == 3

    unsubscribe()
    session.update_user({"phone": "0"})
    assert len(calls) == 3


# Cart

SHIRT = {"id": "p1", "title": "Shirt", "price": 199.99, "stock": 3}
PANTS = {"id": "p2", "title": "Pants", "price": 500, "stock": 1}


def test_cart_operations_persist():
    storage = LocalStorage()
    cart = CartStore(storage)
    cart.add_to_cart(SHIRT)
    cart.add_to_cart(SHIRT, 2)
    cart.add_to_cart(PANTS)
    assert cart.quantity_of("p1") == 3
    assert cart.total_items() == 4
    assert cart.total_price() == 1099.97
    assert cart.is_in_cart("p2")

    reloaded = CartStore(storage)
    assert len(reloaded.load()) == 2
    assert reloaded.quantity_of("p1") == 3

    cart.update_quantity("p1", 1)
    assert cart.quantity_of("p1") == 1
    cart.update_quantity("p2", 0)
    assert not cart.is_in_cart("p2")
    cart.remove_from_cart("p1")
    assert cart.items == []
    cart.add_to_cart(SHIRT)
    cart.clear()
    assert storage.get_item(CART_KEY) is None


def test_cart_reads_legacy_list_format():
    storage = LocalStorage()
    storage.set_item(CART_KEY, json.dumps([{**SHIRT, "quantity": 2}]))
    cart = CartStore(storage)
    cart.load()
    assert cart.quantity_of("p1") == 2


def test_cart_stock_errors():
    cart = CartStore(LocalStorage())
    cart.add_to_cart(PANTS, 2)
    cart.add_to_cart(SHIRT, 3)
    assert cart.stock_errors() == [{"id": "p2", "title": "Pants", "stock": 1, "quantity": 2}]


def buyer_session(make_client, username="buyer"):
    api = signed_up(make_client, username)
    session = SessionStore(api.storage, api)
    session.load()
    return api, session


def test_checkout_places_one_order_per_line(make_client):
    seller = signed_up(make_client, "seller")
    shirt = seller.create_product("Shirt", "Cotton", 200, "Shirts", stock=5)["productId"]
    pants = seller.create_product("Pants", "Chino", 350.5, "Pants", stock=2)["productId"]

    api, session = buyer_session(make_client)
    cart = CartStore(api.storage)
    cart.add_to_cart(api.get_product(shirt), 2)
    cart.add_to_cart(api.get_product(pants), 1)

    result = checkout(session, cart, api, shipping_address="1 Main St")
    assert result["total"] == 750.5
    assert result["paymentId"].startswith("PAY-")
    assert len(result["orders"]) == 2
    assert all(o["payment_id"] == result["paymentId"] for o in result["orders"])
    assert cart.items == []
    assert api.get_product(shirt)["stock"] == 3
    assert api.get_product(pants)["stock"] == 1
    assert len(api.get_orders()) == 2


def test_checkout_refuses_guest_and_empty_cart(make_client):
    cart = CartStore(LocalStorage())
    cart.add_to_cart(SHIRT)
    with pytest.raises(NotAuthenticated):
        checkout(SessionStore(LocalStorage()), cart, make_client())

    api, session = buyer_session(make_client)
    with pytest.raises(EmptyCart):
        checkout(session, CartStore(api.storage), api)


def test_checkout_stops_on_stock_shortage_before_paying(make_client):
    seller = signed_up(make_client, "seller")
    pid = seller.create_product("Shirt", "Cotton", 200, "Shirts", stock=1)["productId"]
    api, session = buyer_session(make_client)
    cart = CartStore(api.storage)
    cart.add_to_cart(api.get_product(pid), 2)
    with pytest.raises(StockShortage) as exc:
        checkout(session, cart, api)
    assert "Shirt (1 left)" in exc.value.message
    assert api.get_orders() == []
    assert cart.quantity_of(pid) == 2


def test_checkout_reports_lines_the_server_rejected(make_client):
    seller = signed_up(make_client, "seller")
    shirt = seller.create_product("Shirt", "Cotton", 200, "Shirts", stock=5)["productId"]
    pants = seller.create_product("Pants", "Chino", 300, "Pants", stock=1)["productId"]

    api, session = buyer_session(make_client)
    cart = CartStore(api.storage)
    cart.add_to_cart(api.get_product(shirt), 1)
    cart.add_to_cart(api.get_product(pants), 1)

    # someone else buys the last pair while the cart snapshot still says 1 left
    rival = signed_up(make_client, "rival")
    rival.create_order(pants, 1)

    with pytest.raises(PartialCheckout) as exc:
        checkout(session, cart, api)
    assert len(exc.value.orders) == 1
    assert [f["id"] for f in exc.value.failed] == [pants]
    assert cart.is_in_cart(pants)
    assert not cart.is_in_cart(shirt)


# Local storage

def test_local_storage_file_round_trip(tmp_path):
    path = str(tmp_path / "storage.json")
    storage = LocalStorage(path)
    storage.multi_set([("a", "1"), ("b", "2")])
    storage.set_json("c", {"x": [1, 2]})
    storage.remove_item("a")

    reopened = LocalStorage(path)
    assert reopened.get_item("a") is None
    assert reopened.get_item("b") == "2"
    assert reopened.get_json("c") == {"x": [1, 2]}


def test_local_storage_ignores_corrupt_file(tmp_path):
    path = tmp_path / "storage.json"
    path.write_text("{not json")
    storage = LocalStorage(str(path))
    assert storage.get_item("anything") is None
    storage.set_item("k", "v")
    assert LocalStorage(str(path)).get_item("k") == "v"
