import time

import pytest

import auth
from config import settings
from errors import Conflict, Forbidden, InvalidInput, NotFound, Unauthorized


def test_hash_and_verify_password():
    hashed = auth.hash_password("pw123")
    assert hashed != "pw123"
    assert auth.verify_password("pw123", hashed)
    assert not auth.verify_password("wrong", hashed)
    assert not auth.verify_password("pw123", "not-a-hash")


def test_register_creates_user_without_exposing_hash(store):
    user = auth.register(store, "alice", "pw123", "A@X.com", "0812345678")
    assert user["username"] == "alice"
    assert user["email"] == "a@x.com"
    assert user["role"] == "user"
    assert "password" not in user
    stored = store.find_user_by_username("alice")
    assert stored["password"] != "pw123"


def test_register_duplicate_username_conflicts(store):
    auth.register(store, "alice", "pw123", "a@x.com")
    with pytest.raises(Conflict):
        auth.register(store, "alice", "other", "b@x.com")


def test_register_requires_fields(store):
    with pytest.raises(InvalidInput) as exc:
        auth.register(store, "alice", "", "")
    assert exc.value.fields == ["password", "email"]


def test_login_token_decodes_to_stored_user(store):
    created = auth.register(store, "alice", "pw123", "a@x.com")
    result = auth.login(store, "alice", "pw123")
    assert "password" not in result["user"]
    identity = auth.authenticate(f"Bearer {result['token']}")
    assert identity.user_id == created["id"]
    assert identity.username == "alice"
    assert identity.role == "user"


@pytest.mark.parametrize("username", ["alice", "nobody"])
def test_login_wrong_password_is_unauthorized(store, username):
    auth.register(store, "alice", "pw123", "a@x.com")
    with pytest.raises(Unauthorized):
        auth.login(store, username, "wrong")


def test_login_missing_fields(store):
    with pytest.raises(InvalidInput):
        auth.login(store, "", "pw123")


def test_authenticate_without_bearer_is_unauthorized():
    with pytest.raises(Unauthorized):
        auth.authenticate(None)
    with pytest.raises(Unauthorized):
        auth.authenticate("Basic abc")
    with pytest.raises(Unauthorized):
        auth.authenticate("Bearer ")


def test_tampered_token_is_forbidden():
    token = auth.issue_token({"id": "u1", "username": "alice", "role": "user"})
    data, sig = token.split(".")
    forged = auth.sign_token({"userId": "u1", "username": "alice", "role": "admin", "exp": time.time() + 60}, "x" * 32)
    with pytest.raises(Forbidden):
        auth.authenticate(f"Bearer {forged.split('.')[0]}.{sig}")
    with pytest.raises(Forbidden):
        auth.authenticate("Bearer garbage")
    with pytest.raises(Forbidden):
        auth.authenticate(f"Bearer {data}.{sig}xx")


def test_expired_token_is_forbidden():
    token = auth.sign_token(
        {"userId": "u1", "username": "alice", "role": "user", "exp": int(time.time()) - 1},
        settings.SECRET_KEY,
    )
    with pytest.raises(Forbidden):
        auth.authenticate(f"Bearer {token}")


def test_token_expiry_follows_settings():
    token = auth.issue_token({"id": "u1", "username": "alice"}, expiry_hours=2)
    payload = auth.verify_token(token, settings.SECRET_KEY)
    assert payload["exp"] - payload["iat"] == 7200
    assert payload["role"] == "user"


def test_require_role_rejects_other_roles():
    user_token = auth.issue_token({"id": "u1", "username": "alice", "role": "user"})
    admin_token = auth.issue_token({"id": "u2", "username": "root", "role": "admin"})
    dependency = auth.require_role("admin")
    with pytest.raises(Forbidden):
        dependency(f"Bearer {user_token}")
    assert dependency(f"Bearer {admin_token}").is_admin


def test_update_profile_checks_username(store):
    alice = auth.register(store, "alice", "pw123", "a@x.com")
    auth.register(store, "bob", "pw123", "b@x.com")
    identity = auth.Identity(alice["id"], "alice", "user")
    with pytest.raises(Conflict):
        auth.update_profile(store, identity, {"username": "bob"})
    updated = auth.update_profile(store, identity, {"phone": " 0899 ", "image_uri": "/uploads/a.png"})
    assert updated["phone"] == "0899"
    assert updated["image_uri"] == "/uploads/a.png"
    with pytest.raises(InvalidInput):
        auth.update_profile(store, identity, {})


def test_set_role(store):
    alice = auth.register(store, "alice", "pw123", "a@x.com")
    assert auth.set_role(store, alice["id"], "admin")["role"] == "admin"
    with pytest.raises(InvalidInput):
        auth.set_role(store, alice["id"], "superuser")
    with pytest.raises(NotFound):
        auth.set_role(store, "missing", "admin")
