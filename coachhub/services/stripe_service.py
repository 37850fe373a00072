"""Stripe service — all Stripe API calls and webhook handling.

Responsible for:
- Creating Stripe Checkout Sessions for the coach program fee
- Handling incoming webhooks with signature verification
- Dispatching to event-specific handlers
- Idempotency via stripe_events table
"""

import logging

import stripe
from flask import current_app

from coachhub.errors import PaymentError
from coachhub.extensions import db
from coachhub.models.stripe_event import StripeEvent
from coachhub.services import payment_service, pipeline_service
from coachhub.services.unit_of_work import unit_of_work

logger = logging.getLogger(__name__)

CHECKOUT_PURPOSE = "coach_program_fee"


# ──────────────────────────────────────────────
# Checkout Sessions
# ──────────────────────────────────────────────

@unit_of_work
def create_checkout_session(acceptance_token, session=None):
    """Create a Stripe Checkout Session for the program fee.

    The prospect must be in PAYMENT_PENDING. Upserts a PENDING STRIPE
    payment carrying the checkout session id.

    Returns the Stripe checkout session URL.

    Raises:
        NotFound: unknown acceptance token.
        InvalidTransition: the prospect is not awaiting payment.
        PaymentError: already paid, or Stripe rejected the request.
    """
    prospect = pipeline_service.get_prospect_by_token.inner(
        acceptance_token, "acceptance", session=session
    )
    payment = payment_service.upsert_pending_payment(session, prospect, "STRIPE")

    stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]
    app_base_url = current_app.config["APP_BASE_URL"]
    unit_amount = int(payment.amount * 100)

    try:
        checkout = stripe.checkout.Session.create(
            mode="payment",
            customer_email=prospect.email,
            client_reference_id=prospect.id,
            line_items=[{
                "price_data": {
                    "currency": payment.currency,
                    "unit_amount": unit_amount,
                    "product_data": {"name": "Coach Program Fee"},
                },
                "quantity": 1,
            }],
            success_url=(
                f"{app_base_url}/accept/{acceptance_token}/payment-success"
                f"?session_id={{CHECKOUT_SESSION_ID}}"
            ),
            cancel_url=f"{app_base_url}/accept/{acceptance_token}",
            metadata={
                "prospect_id": prospect.id,
                "purpose": CHECKOUT_PURPOSE,
            },
        )
    except stripe.StripeError as e:
        logger.error(f"Stripe checkout failed for prospect {prospect.id}: {e}")
        raise PaymentError("Could not start the payment. Please try again.")

    payment.stripe_session_id = checkout.id
    session.flush()
    logger.info(f"Created checkout session {checkout.id} for prospect {prospect.id}")
    return checkout.url


# ──────────────────────────────────────────────
# Webhook Handling
# ──────────────────────────────────────────────

def verify_webhook_signature(payload, sig_header):
    """Verify Stripe webhook signature and construct the event.

    Returns the verified Stripe event object.
    Raises stripe.SignatureVerificationError on invalid signature.
    """
    webhook_secret = current_app.config["STRIPE_WEBHOOK_SECRET"]
    return stripe.Webhook.construct_event(payload, sig_header, webhook_secret)


def handle_webhook_event(event):
    """Process a verified Stripe webhook event.

    Idempotency: checks stripe_events table before processing.
    If the event was already processed, returns immediately.

    Returns (success: bool, message: str).
    """
    event_id = event["id"]
    event_type = event["type"]

    # --- Idempotency check ---
    existing = StripeEvent.query.filter_by(
        stripe_event_id=event_id
    ).first()
    if existing:
        logger.info(f"Duplicate webhook event {event_id}, skipping")
        return True, "already_processed"

    # --- Route to handler ---
    handlers = {
        "checkout.session.completed": _handle_checkout_completed,
        "checkout.session.async_payment_succeeded": _handle_checkout_completed,
        "checkout.session.async_payment_failed": _handle_checkout_failed,
        "checkout.session.expired": _handle_checkout_failed,
    }

    prospect_id = None
    handler = handlers.get(event_type)
    if handler:
        try:
            prospect_id = handler(event)
        except Exception as e:
            logger.error(f"Error handling {event_type}: {e}", exc_info=True)
            db.session.rollback()
            return False, str(e)

    # --- Record event for idempotency ---
    stripe_event = StripeEvent(
        stripe_event_id=event_id,
        event_type=event_type,
        prospect_id=prospect_id,
    )
    db.session.add(stripe_event)
    db.session.commit()

    return True, "processed"


# ──────────────────────────────────────────────
# Event Handlers
# ──────────────────────────────────────────────

def _program_fee_prospect_id(checkout):
    metadata = checkout.get("metadata") or {}
    if metadata.get("purpose") != CHECKOUT_PURPOSE:
        return None
    return metadata.get("prospect_id")


def _handle_checkout_completed(event):
    """Handle checkout.session.completed (and async success).

    Sessions paid asynchronously complete with payment_status "unpaid"
    and are finished by checkout.session.async_payment_succeeded.
    """
    checkout = event["data"]["object"]
    prospect_id = _program_fee_prospect_id(checkout)
    if not prospect_id:
        logger.warning(f"{event['type']} without a program-fee prospect, ignoring")
        return None

    if checkout.get("payment_status") not in ("paid", "no_payment_required"):
        logger.info(f"Checkout {checkout.get('id')} not paid yet, waiting")
        return prospect_id

    _, error = payment_service.mark_payment_completed(
        prospect_id,
        stripe_session_id=checkout.get("id"),
        stripe_payment_intent_id=checkout.get("payment_intent"),
    )
    if error:
        # Business rejections are not retried by Stripe; keep a trace.
        logger.warning(
            f"Payment for prospect {prospect_id} not applied: {error.code}"
        )
    return prospect_id


def _handle_checkout_failed(event):
    """Handle checkout.session.expired / async_payment_failed."""
    checkout = event["data"]["object"]
    prospect_id = _program_fee_prospect_id(checkout)
    if not prospect_id:
        return None
    reason = (
        "Checkout session expired"
        if event["type"] == "checkout.session.expired"
        else "Payment failed"
    )
    _, error = payment_service.mark_payment_failed(
        prospect_id, stripe_session_id=checkout.get("id"), reason=reason,
    )
    if error:
        logger.warning(f"Could not mark payment failed for {prospect_id}: {error.code}")
    return prospect_id
