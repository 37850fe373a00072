"""Webhooks blueprint — /stripe/webhooks

Receives Stripe webhook events for the coach program fee. CSRF-exempt.
Raw body is required for signature verification.
"""

import logging

import stripe
from flask import Blueprint, jsonify, request

from coachhub.services.stripe_service import handle_webhook_event, verify_webhook_signature

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/stripe")


@webhooks_bp.route("/webhooks", methods=["POST"])
def stripe_webhook():
    """Verify, then process (idempotently) a Stripe event.

    Non-2xx answers make Stripe retry delivery, so only processing
    crashes answer 500.
    """
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature")

    if not sig_header:
        logger.warning("Webhook received without Stripe-Signature header")
        return jsonify({"error": "Missing signature"}), 400

    try:
        event = verify_webhook_signature(payload, sig_header)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        return jsonify({"error": "Invalid signature"}), 400

    success, message = handle_webhook_event(event)
    if success:
        return jsonify({"status": message}), 200

    logger.error(f"Webhook processing failed: {message}")
    return jsonify({"error": message}), 500
