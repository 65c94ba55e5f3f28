from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

MAX_PROPERTIES = 100


class TrackedEvent(BaseModel):
    """Inbound SDK event. Accepts camelCase (``userId``) or snake_case keys."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1, max_length=128)
    type: Literal["identify", "track", "group", "page"] = "track"
    event: str = Field(min_length=1, max_length=256)
    user_id: str | None = Field(None, alias="userId", max_length=128)
    account_id: str | None = Field(None, alias="accountId", max_length=128)
    properties: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


def validate_event(evt: dict) -> tuple[TrackedEvent | None, str | None]:
    try:
        event = TrackedEvent.model_validate(evt)
    except ValidationError as ve:
        first = ve.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ())) or "event"
        return None, f"validation_error:{loc}:{first.get('msg', 'invalid')}"
    if len(event.properties) > MAX_PROPERTIES:
        return None, "too_many_props"
    return event, None
