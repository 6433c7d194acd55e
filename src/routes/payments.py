#!/usr/bin/env python3
"""
Stripe Payment Routes
Checkout, billing portal, usage and webhook endpoints
"""

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from src.db.users import get_user
from src.schemas.payments import (
    CheckoutRequest,
    ErrorResponse,
    PortalRequest,
    SessionResponse,
    UsageResponse,
    WebhookAck,
)
from src.services.checkout import create_checkout_session_for_tier, create_portal_session
from src.services.usage_limits import remaining_messages, resolve_usage_limits
from src.services.webhooks import handle_webhook_event, verify_webhook_signature
from src.utils.exceptions import (
    BillingError,
    InvalidRequestError,
    InvalidTierError,
    MissingIdentityError,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Stripe Payments"])

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}


def _error_response(error: BillingError) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def _unexpected_error_response(error: Exception, code: str) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={"error": code, "message": str(error) or "Internal error"},
    )


def parse_json_body(raw: bytes) -> dict[str, Any]:
    """
    Decode a request body that is either a JSON object or a JSON string
    containing one (sent as text/plain to avoid a CORS preflight).

    Raises:
        InvalidRequestError: Body is not valid JSON or not an object
    """
    text = raw.decode("utf-8", errors="replace").strip() if raw else ""
    if not text:
        return {}
    try:
        payload = json.loads(text)
        if isinstance(payload, str):
            payload = json.loads(payload) if payload.strip() else {}
    except ValueError as e:
        raise InvalidRequestError("Request body is not valid JSON", code="invalid_json") from e

    if not isinstance(payload, dict):
        raise InvalidRequestError("Request body must be a JSON object", code="invalid_json")
    return payload


async def _read_model(request: Request, model):
    payload = parse_json_body(await request.body())
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise InvalidRequestError(f"Invalid request: {e.errors()[0].get('msg')}") from e


async def _checkout(request: Request, idempotency_key: str | None) -> JSONResponse:
    try:
        body: CheckoutRequest = await _read_model(request, CheckoutRequest)
        if not body.tier and not body.price:
            raise InvalidTierError("A tier or price is required")

        session = await asyncio.to_thread(
            create_checkout_session_for_tier,
            tier=body.tier,
            uid=body.uid,
            email=body.email,
            price=body.price,
            quantity=body.quantity,
            metadata=body.metadata,
            request_id=body.request_id or idempotency_key,
        )
        return JSONResponse(status_code=200, content={"url": session["url"], "id": session["id"]})

    except BillingError as e:
        logger.warning(f"Checkout failed ({e.code}): {e.message}")
        return _error_response(e)
    except Exception as e:
        logger.error(f"Unexpected checkout error: {e}", exc_info=True)
        return _unexpected_error_response(e, "checkout_failed")


@router.post("/api/pay/checkout", response_model=SessionResponse, responses=ERROR_RESPONSES)
async def pay_checkout(
    request: Request, idempotency_key: str | None = Header(None, alias="Idempotency-Key")
):
    """Create a Stripe Checkout Session and return its redirect URL"""
    return await _checkout(request, idempotency_key)


@router.post(
    "/stripe/create-checkout-session", response_model=SessionResponse, responses=ERROR_RESPONSES
)
async def create_checkout_session(
    request: Request, idempotency_key: str | None = Header(None, alias="Idempotency-Key")
):
    """Create a Stripe Checkout Session for a tier or price"""
    return await _checkout(request, idempotency_key)


@router.post(
    "/stripe/create-portal-session", response_model=SessionResponse, responses=ERROR_RESPONSES
)
async def create_billing_portal_session(request: Request):
    """Open the Stripe Customer Portal for an existing customer"""
    try:
        body: PortalRequest = await _read_model(request, PortalRequest)
        session = await asyncio.to_thread(create_portal_session, uid=body.uid, email=body.email)
        return JSONResponse(status_code=200, content={"url": session["url"], "id": session["id"]})

    except BillingError as e:
        logger.warning(f"Portal session failed ({e.code}): {e.message}")
        return _error_response(e)
    except Exception as e:
        logger.error(f"Unexpected portal error: {e}", exc_info=True)
        return _unexpected_error_response(e, "portal_failed")


@router.get("/billing/usage", response_model=UsageResponse, responses=ERROR_RESPONSES)
async def get_billing_usage(uid: str | None = Query(None)):
    """
    Chat quota for a user

    Unknown users get the free allowance. ``remaining_messages`` is null when
    the plan is unlimited.
    """
    try:
        uid = (uid or "").strip()
        if not uid:
            raise MissingIdentityError("A uid is required")

        profile = await asyncio.to_thread(get_user, uid)
        limits = resolve_usage_limits(profile)
        usage = UsageResponse(**limits.model_dump(), remaining_messages=remaining_messages(profile))
        return JSONResponse(status_code=200, content=usage.model_dump())

    except BillingError as e:
        logger.warning(f"Usage lookup failed ({e.code}): {e.message}")
        return _error_response(e)
    except Exception as e:
        logger.error(f"Unexpected usage lookup error: {e}", exc_info=True)
        return _unexpected_error_response(e, "usage_failed")


@router.post(
    "/stripe/webhook", status_code=200, response_model=WebhookAck, responses=ERROR_RESPONSES
)
async def stripe_webhook(
    request: Request, stripe_signature: str | None = Header(None, alias="stripe-signature")
):
    """
    Stripe webhook endpoint

    Handles checkout.session.completed, checkout.session.async_payment_succeeded,
    invoice.payment_succeeded, invoice.payment_failed and
    customer.subscription.created/updated/deleted. Other event types are
    acknowledged and ignored.

    Responses:
    - 200 {"received": true}: processed, ignored or duplicate delivery
    - 400: signature could not be verified or the event was rejected
    - 500: processing failed; Stripe retries the delivery
    """
    payload = await request.body()

    try:
        event = await asyncio.to_thread(verify_webhook_signature, payload, stripe_signature)
    except BillingError as e:
        logger.error(f"Rejected Stripe webhook ({e.code}): {e.message}")
        return _error_response(e)

    try:
        result = await asyncio.to_thread(handle_webhook_event, event)
    except BillingError as e:
        status_code = e.status_code if e.status_code < 500 else 500
        return JSONResponse(status_code=status_code, content=e.to_dict())
    except Exception as e:
        return _unexpected_error_response(e, "webhook_failed")

    logger.info(f"Stripe webhook {event['id']} ({event['type']}) handled: {result}")
    return JSONResponse(status_code=200, content={"received": True})
