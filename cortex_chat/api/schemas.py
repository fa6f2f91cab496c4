from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class MessageRequest(_Payload):
    text: Any = None


class ThreadCreateRequest(_Payload):
    title: Any = None


class ThreadRenameRequest(_Payload):
    title: Any = None


class ReactionRequest(_Payload):
    reaction: Any = None


class ThreadOut(BaseModel):
    id: str
    userId: str
    title: Optional[str] = None
    createdAt: str


class ThreadListResponse(BaseModel):
    userId: str
    threads: List[ThreadOut] = []
    degraded: Optional[bool] = None
    warning: Optional[str] = None


class ThreadCreateResponse(BaseModel):
    userId: str
    threadId: str
    degraded: Optional[bool] = None
    warning: Optional[str] = None


class ErrorBody(BaseModel):
    message: str
    details: Optional[Dict[str, Any]] = None


class ErrorResponse(BaseModel):
    error: ErrorBody


def text_field(value: Any) -> str:
    """Strings are trimmed; anything else counts as missing."""
    return value.strip() if isinstance(value, str) else ""
