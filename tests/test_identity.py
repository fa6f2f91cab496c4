import uuid

from cortex_chat.core.identity import (
    ACCESS_TOKEN_COOKIE,
    USER_ID_COOKIE,
    hash_to_uuid,
    normalize_as_uuid,
    resolve_authorization,
    resolve_user_id,
)


def test_hashed_ids_are_stable_v4_shaped_uuids():
    first = hash_to_uuid("auth0|abc")

    assert first == hash_to_uuid("auth0|abc")
    assert first != hash_to_uuid("auth0|abd")
    parsed = uuid.UUID(first)
    assert str(parsed) == first
    assert first[14] == "4"
    assert first[19] == "a"


def test_valid_uuid_is_kept_and_lowercased():
    value = "2F1B5C1E-8D2A-4C7B-9E3F-0A1B2C3D4E5F"

    assert normalize_as_uuid(f"  {value} ") == value.lower()
    assert normalize_as_uuid("alice") == hash_to_uuid("alice")


def test_user_id_precedence():
    cookies = {USER_ID_COOKIE: "cookie-user"}

    assert resolve_user_id({"x-user-id": "direct", "x-auth-sub": "sub"}, cookies) == hash_to_uuid("direct")
    assert resolve_user_id({"x-auth-sub": "sub"}, cookies) == hash_to_uuid("sub")
    assert resolve_user_id({}, cookies) == hash_to_uuid("cookie-user")
    uuid.UUID(resolve_user_id({}, {}))


def test_authorization_prefers_header_then_cookie():
    assert resolve_authorization({"authorization": "Bearer h"}, {ACCESS_TOKEN_COOKIE: "c"}) == "Bearer h"
    assert resolve_authorization({}, {ACCESS_TOKEN_COOKIE: "c"}) == "Bearer c"
    assert resolve_authorization({}, {}) is None
