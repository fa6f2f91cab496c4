import hashlib
import re
import uuid
from typing import Mapping, Optional

from fastapi import Request

ACCESS_TOKEN_COOKIE = "cortex_access_token"
USER_ID_COOKIE = "cortex_user_id"

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    flags=re.IGNORECASE,
)


def hash_to_uuid(value: str) -> str:
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return "-".join(
        [
            digest[0:8],
            digest[8:12],
            f"4{digest[13:16]}",
            f"a{digest[17:20]}",
            digest[20:32],
        ]
    )


def normalize_as_uuid(value: str) -> str:
    trimmed = value.strip()
    if _UUID_RE.match(trimmed):
        return trimmed.lower()
    return hash_to_uuid(trimmed)


def resolve_user_id(headers: Mapping[str, str], cookies: Mapping[str, str]) -> str:
    direct = (headers.get("x-user-id") or "").strip()
    if direct:
        return normalize_as_uuid(direct)
    subject = (headers.get("x-auth-sub") or "").strip()
    if subject:
        return hash_to_uuid(subject)
    cookie_user = (cookies.get(USER_ID_COOKIE) or "").strip()
    if cookie_user:
        return normalize_as_uuid(cookie_user)
    return str(uuid.uuid4())


def resolve_authorization(headers: Mapping[str, str], cookies: Mapping[str, str]) -> Optional[str]:
    incoming = (headers.get("authorization") or "").strip()
    if incoming:
        return incoming
    token = (cookies.get(ACCESS_TOKEN_COOKIE) or "").strip()
    if token:
        return f"Bearer {token}"
    return None


def request_user_id(request: Request) -> str:
    return resolve_user_id(request.headers, request.cookies)


def request_authorization(request: Request) -> Optional[str]:
    return resolve_authorization(request.headers, request.cookies)
