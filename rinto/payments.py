# Payments module: Stripe PaymentIntents for pending bookings and the payment-outcome plumbing.
# Provider events are translated into lifecycle.on_payment_outcome; nothing here changes status directly.
# When STRIPE_SECRET_KEY is absent, runs in deterministic offline mode for local/dev and CI.
from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional, Tuple

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from . import models, repository, schemas
from .clock import as_utc, utcnow
from .db import get_db
from .errors import BookingError, BookingNotFound, InternalError, InvalidTransition, SlotConflict
from .lifecycle import BookingStatus, PaymentOutcome, on_payment_outcome
from .routes.auth import get_current_user_id

router = APIRouter()
logger = logging.getLogger("rinto.payments")

# Environment configuration (blank values disable Stripe calls in dev/tests)
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "").strip()
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "").strip()

# PaymentIntent statuses that mean the client should keep polling
_PROCESSING_STATUSES = ("processing", "requires_action", "requires_payment_method", "requires_confirmation")


def stripe_enabled() -> bool:
    """True only when STRIPE_SECRET_KEY is set; otherwise payment calls are synthesized offline."""
    return bool(STRIPE_SECRET_KEY)


def _init_stripe() -> None:
    if not stripe_enabled():
        raise RuntimeError("Stripe not enabled (STRIPE_SECRET_KEY not set)")
    stripe.api_key = STRIPE_SECRET_KEY


def create_payment_intent(
    amount_cents: int,
    currency: str,
    booking_id: int,
    listing_id: int,
    idempotency_key: str,
) -> Tuple[str, str]:
    """
    Create a PaymentIntent and return (payment_intent_id, client_secret).

    Offline mode returns deterministic synthetic values so flows stay testable without network.
    """
    if not stripe_enabled():
        return f"pi_test_{booking_id}", f"test_client_secret_{booking_id}"

    _init_stripe()
    pi = stripe.PaymentIntent.create(
        amount=int(amount_cents),
        currency=currency.lower(),
        metadata={"booking_id": str(booking_id), "listing_id": str(listing_id)},
        automatic_payment_methods={"enabled": True},
        idempotency_key=idempotency_key,
    )
    client_secret: Optional[str] = getattr(pi, "client_secret", None)
    if not client_secret:
        pi = stripe.PaymentIntent.retrieve(pi.id)
        client_secret = getattr(pi, "client_secret", None)
    if not client_secret:
        raise RuntimeError("Stripe PaymentIntent missing client_secret")
    return pi.id, client_secret


def retrieve_client_secret(payment_intent_id: str) -> str:
    if not stripe_enabled():
        return f"test_client_secret_{payment_intent_id}"

    _init_stripe()
    pi = stripe.PaymentIntent.retrieve(payment_intent_id)
    client_secret: Optional[str] = getattr(pi, "client_secret", None)
    if not client_secret:
        raise RuntimeError("Stripe PaymentIntent missing client_secret")
    return client_secret


def retrieve_payment_intent_status(payment_intent_id: str) -> Optional[str]:
    _init_stripe()
    pi = stripe.PaymentIntent.retrieve(payment_intent_id)
    return getattr(pi, "status", None)


def ensure_payment_intent(db: Session, booking: models.Booking) -> str:
    """
    Make sure a pending booking has a PaymentIntent and return its client_secret.

    The idempotency key is derived from the booking id so provider retries never double-charge.
    """
    if booking.payment_intent_id:
        return retrieve_client_secret(booking.payment_intent_id)

    pi_id, client_secret = create_payment_intent(
        amount_cents=booking.total_price_cents,
        currency=booking.currency,
        booking_id=booking.id,
        listing_id=booking.listing_id,
        idempotency_key=f"booking:{booking.id}:intent",
    )
    booking.payment_intent_id = pi_id
    db.add(booking)
    db.commit()
    db.refresh(booking)
    return client_secret


def _find_booking_for_intent(db: Session, payment_intent: Any) -> Optional[models.Booking]:
    metadata = _get(payment_intent, "metadata") or {}
    booking_id = _get(metadata, "booking_id")
    if booking_id:
        try:
            booking = repository.get_booking(db, int(booking_id))
        except (TypeError, ValueError):
            booking = None
        if booking is not None:
            return booking
    intent_id = _get(payment_intent, "id")
    if not intent_id:
        return None
    return db.query(models.Booking).filter(models.Booking.payment_intent_id == intent_id).first()


def _get(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def handle_payment_event(db: Session, event_type: str, payment_intent: Any) -> Dict[str, Any]:
    """
    Translate a provider event into a payment outcome for the booking.

    Always returns a status dict; domain rejections are reported, not raised, so the
    provider does not retry an event that can never succeed.
    """
    if event_type == "payment_intent.succeeded":
        outcome = PaymentOutcome.SUCCEEDED
    elif event_type in ("payment_intent.payment_failed", "payment_intent.canceled"):
        outcome = PaymentOutcome.FAILED
    else:
        return {"status": "ignored"}

    intent_id = _get(payment_intent, "id")
    if not intent_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing payment_intent id")

    booking = _find_booking_for_intent(db, payment_intent)
    if booking is None:
        logger.warning("payment.unknown_intent", extra={"payment_intent_id": intent_id, "event_type": event_type})
        return {"status": "unknown_intent"}

    booking_id = booking.id
    try:
        updated = on_payment_outcome(db, booking_id, outcome, reference=intent_id)
    except InvalidTransition as exc:
        # Late or duplicate event (e.g., payment after the hold expired); needs manual follow-up/refund
        logger.warning(
            "payment.invalid_status",
            extra={"booking_id": booking_id, "payment_intent_id": intent_id, "outcome": outcome.value, **exc.detail},
        )
        return {"status": "invalid_status", "booking_id": booking_id}
    except SlotConflict:
        return {"status": "overlap_conflict", "booking_id": booking_id}
    except InternalError as exc:
        # Lock timeout or storage failure: answer 5xx so the provider redelivers the event
        logger.error(
            "payment.outcome_failed",
            extra={"booking_id": booking_id, "payment_intent_id": intent_id, "outcome": outcome.value},
        )
        raise HTTPException(status_code=exc.status_code, detail=exc.to_detail()) from exc

    logger.info(
        "payment.outcome_applied",
        extra={"booking_id": booking_id, "payment_intent_id": intent_id, "outcome": outcome.value},
    )
    return {"status": updated.status, "booking_id": booking_id}


def _load_own_booking(db: Session, booking_id: int, user_id: str) -> models.Booking:
    booking = repository.get_booking(db, booking_id)
    if not booking:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=BookingNotFound("Booking not found").to_detail())
    if booking.renter_id != user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    return booking


@router.get("/api/v1/bookings/{booking_id}/payment_info", response_model=schemas.PaymentInfoResponse)
def get_payment_info(
    booking_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> schemas.PaymentInfoResponse:
    """
    Ensure a PaymentIntent exists for a pending booking and return the client_secret
    plus the hold deadline. Only the booking's renter may access.
    """
    booking = _load_own_booking(db, booking_id, user_id)
    if booking.status != BookingStatus.PENDING.value:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Booking is not pending payment")

    expires_at = as_utc(booking.expires_at)
    if expires_at is None or expires_at <= utcnow():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payment hold expired")

    client_secret = ensure_payment_intent(db, booking)
    return schemas.PaymentInfoResponse(
        booking_id=booking.id,
        client_secret=client_secret,
        amount_cents=booking.total_price_cents,
        currency=booking.currency,
        expires_at=expires_at,
    )


@router.post("/api/v1/bookings/{booking_id}/finalize_payment")
def finalize_payment(
    booking_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """
    Finalize a booking after client-side confirmation when webhooks are delayed.

    - Already confirmed: return the booking
    - Provider still processing: {"status": "processing"} so the client can poll
    """
    booking = _load_own_booking(db, booking_id, user_id)
    if booking.status == BookingStatus.CONFIRMED.value:
        return schemas.BookingRead.model_validate(booking)
    if booking.status != BookingStatus.PENDING.value:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Booking is not pending payment")

    if not stripe_enabled():
        return {"status": "stripe_disabled"}
    if not booking.payment_intent_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing payment_intent")

    try:
        pi_status = retrieve_payment_intent_status(booking.payment_intent_id)
    except stripe.StripeError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Unable to retrieve PaymentIntent: {exc}")

    if pi_status in _PROCESSING_STATUSES:
        return {"status": "processing"}
    if pi_status not in ("succeeded", "canceled"):
        return {"status": pi_status or "unknown"}

    outcome = PaymentOutcome.SUCCEEDED if pi_status == "succeeded" else PaymentOutcome.FAILED
    try:
        updated = on_payment_outcome(db, booking.id, outcome, reference=booking.payment_intent_id)
    except BookingError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_detail())
    return schemas.BookingRead.model_validate(updated)


async def _raw_body(request: Request) -> bytes:
    return await request.body()


# Plain def: FastAPI runs it in the threadpool, so waiting on a listing lock never blocks the event loop
@router.post("/payments/webhook")
def stripe_webhook(
    payload: bytes = Depends(_raw_body),
    db: Session = Depends(get_db),
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
) -> dict:
    """
    Verify the Stripe signature and apply payment_intent events to bookings.

    Returns 200 for processed events and safe no-ops, 400 for an invalid payload/signature,
    and 5xx when the outcome could not be applied (the provider retries).
    """
    if not stripe_enabled():
        return {"status": "stripe_disabled"}
    if not STRIPE_WEBHOOK_SECRET:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook secret not configured")

    try:
        event = stripe.Webhook.construct_event(
            payload=payload.decode("utf-8"),
            sig_header=stripe_signature,
            secret=STRIPE_WEBHOOK_SECRET,
        )
    except (ValueError, stripe.SignatureVerificationError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid webhook: {exc}")

    event_type: str = _get(event, "type") or ""
    data = _get(event, "data")
    return handle_payment_event(db, event_type, _get(data, "object"))
