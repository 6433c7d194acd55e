from typing import Any

from pydantic import BaseModel, Field, field_validator


def _blank_to_none(v):
    if isinstance(v, str) and not v.strip():
        return None
    return v.strip() if isinstance(v, str) else v


class CheckoutRequest(BaseModel):
    """Purchase intent posted by the pricing page."""

    tier: str | None = None
    uid: str | None = None
    email: str | None = None
    price: str | None = None
    # Coerced later: browsers send numbers, strings or nothing
    quantity: Any = None
    metadata: dict[str, Any] | None = None
    request_id: str | None = Field(default=None, max_length=200)

    @field_validator("tier", "uid", "email", "price", "request_id", mode="before")
    @classmethod
    def strip_blank(cls, v):
        return _blank_to_none(v)

    @field_validator("metadata", mode="before")
    @classmethod
    def drop_non_mapping_metadata(cls, v):
        """Ignore metadata that is not a JSON object"""
        return v if isinstance(v, dict) else None


class PortalRequest(BaseModel):
    uid: str | None = None
    email: str | None = None

    @field_validator("uid", "email", mode="before")
    @classmethod
    def strip_blank(cls, v):
        return _blank_to_none(v)


class SessionResponse(BaseModel):
    id: str
    url: str | None = None


class WebhookAck(BaseModel):
    received: bool = True


class ErrorResponse(BaseModel):
    error: str
    message: str


class UsageLimits(BaseModel):
    """Chat quota derived from a user's billing snapshot."""

    unlimited: bool = False
    base_allowance: int | None = None
    courtesy_allowance: int | None = None
    courtesy_used: bool = False
    message_allowance: int | None = None


class UsageResponse(UsageLimits):
    # None while the quota is unlimited
    remaining_messages: int | None = None
