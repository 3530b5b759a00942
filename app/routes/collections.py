# ==== COLLECTION ROUTES ==== #

"""
Payment endpoints: staff-recorded payments, reversals and the payment
gateway webhook.

Gateway callbacks are authenticated by an HMAC-SHA256 signature of the raw
request body, sent as a hex digest in ``X-Gateway-Signature``.
"""

import hashlib
import hmac
from typing import Any, Dict, Union

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError as PydanticValidationError

from app.observability.logging import get_logger
from app.observability.tracing import get_tracer
from app.routes.deps import get_collection_processor
from app.schemas.ledger import (
    CollectionResponse,
    GatewayWebhookEvent,
    PaymentRequest,
    PaymentResponse,
    ReceivableResponse,
    ReversalRequest,
)
from app.security.auth import Actor, gateway_actor, get_current_actor
from app.services.collection_processor import CollectionMode, CollectionProcessor, PaymentOutcome
from app.settings import settings


# ==== ROUTER INITIALIZATION ==== #


router = APIRouter()
tracer = get_tracer(__name__)
logger = get_logger(__name__)

SIGNATURE_HEADER = "x-gateway-signature"


def _payment_response(outcome: PaymentOutcome) -> PaymentResponse:
    return PaymentResponse(
        collection=CollectionResponse.model_validate(outcome.record),
        receivable=ReceivableResponse.build(outcome.receivable),
        duplicate=outcome.duplicate,
    )


# ==== PAYMENTS ==== #


@router.post("", response_model=PaymentResponse, status_code=201)
async def record_payment(
    request: PaymentRequest,
    actor: Actor = Depends(get_current_actor),
    processor: CollectionProcessor = Depends(get_collection_processor)
) -> PaymentResponse:
    """
    Record a payment against a receivable.

    Finance staff may use any mode; a client may only pay its own
    receivables through the gateway mode.

    Args:
        request (PaymentRequest): Receivable, amount, mode and reference

    Returns:
        PaymentResponse: Collection record, updated receivable and whether the
        reference had already been applied
    """
    with tracer.start_as_current_span("api_record_payment") as span:
        span.set_attribute("receivable_id", request.receivable_id)
        outcome = await processor.process_payment(
            actor,
            request.receivable_id,
            request.amount_paise,
            request.mode,
            request.reference,
            request.payment_date,
            request.gateway_payment_id,
        )
        return _payment_response(outcome)


@router.post("/{collection_id}/reverse", response_model=PaymentResponse)
async def reverse_payment(
    collection_id: str,
    request: ReversalRequest,
    actor: Actor = Depends(get_current_actor),
    processor: CollectionProcessor = Depends(get_collection_processor)
) -> PaymentResponse:
    return _payment_response(await processor.reverse_payment(actor, collection_id, request.reason))


# ==== GATEWAY WEBHOOK ==== #


def verify_gateway_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify a gateway callback signature.

    Args:
        body (bytes): Raw request body
        signature (str): Hex digest from the signature header
        secret (str): Shared webhook secret

    Returns:
        bool: True if the signature matches the body
    """
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature or "")


@router.post("/gateway/webhook", response_model=None)
async def gateway_webhook(
    request: Request,
    processor: CollectionProcessor = Depends(get_collection_processor)
) -> Union[PaymentResponse, CollectionResponse, Dict[str, Any]]:
    """
    Handle payment gateway callbacks.

    ``payment.captured`` is applied as a self-service payment by the owning
    client; a repeated callback for the same reference is acknowledged
    without a second effect. ``payment.failed`` is logged as a failed
    collection and leaves the balance untouched.

    Raises:
        HTTPException: 503 if no webhook secret is configured, 401 on a bad signature
    """
    with tracer.start_as_current_span("api_gateway_webhook") as span:
        if not settings.GATEWAY_WEBHOOK_SECRET:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Gateway webhook is not configured"
            )

        body = await request.body()
        if not verify_gateway_signature(
            body, request.headers.get(SIGNATURE_HEADER, ""), settings.GATEWAY_WEBHOOK_SECRET
        ):
            logger.warning("Invalid gateway signature")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid signature"
            )

        try:
            event = GatewayWebhookEvent.model_validate_json(body)
        except PydanticValidationError as e:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Malformed gateway event: {e.error_count()} error(s)"
            )
        payload = event.payload
        span.set_attribute("gateway_event", event.event)
        span.set_attribute("receivable_id", payload.receivable_id)
        actor = gateway_actor(payload.client_id, payload.customer_ref)

        if event.event == "payment.captured":
            outcome = await processor.process_payment(
                actor,
                payload.receivable_id,
                payload.amount_paise,
                CollectionMode.GATEWAY,
                payload.reference,
                gateway_payment_id=payload.gateway_payment_id,
            )
            return _payment_response(outcome)

        if event.event == "payment.failed":
            record = await processor.record_failed_payment(
                actor,
                payload.receivable_id,
                payload.amount_paise,
                payload.reference,
                payload.failure_reason or "unspecified",
                gateway_payment_id=payload.gateway_payment_id,
            )
            return CollectionResponse.model_validate(record)

        logger.info(f"Ignoring gateway event {event.event}")
        return {"status": "ignored", "event": event.event}
