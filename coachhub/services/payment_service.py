"""Payment service — the coach program fee gate.

A prospect in PAYMENT_PENDING pays once, either through Stripe Checkout
(completed by webhook, see stripe_service) or manually (bank transfer,
cheque), in which case an admin approves or rejects the payment.
Completing the payment performs PAYMENT_PENDING -> PAYMENT_COMPLETED.
"""

import logging
from decimal import Decimal

from flask import current_app

from coachhub.errors import InvalidTransition, NotFound, PaymentError, ValidationFailed
from coachhub.models.audit import AuditEvent
from coachhub.models.payment import ProspectPayment
from coachhub.models.prospect import Prospect
from coachhub.services import pipeline_service
from coachhub.services.unit_of_work import unit_of_work
from coachhub.utils import as_utc, sanitize, utcnow

logger = logging.getLogger(__name__)


def program_fee():
    """(amount, currency) of the coach program fee."""
    return (
        Decimal(current_app.config["COACH_PROGRAM_FEE"]),
        current_app.config["COACH_PROGRAM_CURRENCY"],
    )


def _log_payment_audit(session, prospect_id, action, metadata, actor_id=None):
    session.add(AuditEvent(
        actor_user_id=actor_id,
        entity_type="prospect",
        entity_id=prospect_id,
        action=action,
        metadata_=metadata,
    ))


def upsert_pending_payment(session, prospect, method, **fields):
    """Create or reset the prospect's payment as PENDING.

    Flushes but does NOT commit.

    Raises:
        InvalidTransition: the prospect is not awaiting payment.
        PaymentError: the payment is already completed.
    """
    if prospect.status != "PAYMENT_PENDING":
        raise InvalidTransition(
            f"Payment is not expected for a prospect in {prospect.status}."
        )
    amount, currency = program_fee()
    payment = prospect.payment
    if payment is not None and payment.status == "COMPLETED":
        raise PaymentError("This program fee has already been paid.")

    if payment is None:
        payment = ProspectPayment(prospect_id=prospect.id)
        session.add(payment)
    payment.method = method
    payment.amount = amount
    payment.currency = currency
    payment.status = "PENDING"
    payment.failed_at = None
    payment.failure_reason = None
    for key, value in fields.items():
        setattr(payment, key, value)
    session.flush()
    return payment


def _pending_manual_payment(session, prospect_id):
    prospect = session.get(Prospect, prospect_id)
    if prospect is None:
        raise NotFound("Prospect not found.")
    payment = prospect.payment
    if payment is None or payment.method != "MANUAL" or payment.status != "PENDING":
        raise PaymentError("There is no pending manual payment for this prospect.")
    return prospect, payment


@unit_of_work
def record_manual_payment(acceptance_token, reference, session=None):
    """The prospect reports an offline payment, pending admin approval."""
    reference = sanitize(reference)
    if not reference:
        raise ValidationFailed(
            "A payment reference is required.", details={"reference": "Required."}
        )
    prospect = pipeline_service.get_prospect_by_token.inner(
        acceptance_token, "acceptance", session=session
    )
    payment = upsert_pending_payment(
        session, prospect, "MANUAL", manual_reference=reference,
    )
    _log_payment_audit(session, prospect.id, "payment.manual_recorded", {
        "reference": reference,
    })
    session.flush()
    return payment


@unit_of_work
def approve_manual_payment(prospect_id, actor_id=None, now=None, session=None):
    """Approve a pending manual payment and complete the payment step."""
    now = as_utc(now) or utcnow()
    prospect, payment = _pending_manual_payment(session, prospect_id)
    payment.status = "COMPLETED"
    payment.paid_at = now
    payment.approved_at = now
    payment.approved_by_id = actor_id
    session.flush()

    pipeline_service.complete_payment(
        session, prospect, notes="Manual payment approved", actor_id=actor_id,
    )
    _log_payment_audit(session, prospect.id, "payment.manual_approved", {
        "payment_id": payment.id,
        "amount": str(payment.amount),
    }, actor_id=actor_id)
    session.flush()
    return payment


@unit_of_work
def reject_manual_payment(prospect_id, reason=None, actor_id=None, now=None,
                          session=None):
    """Mark a pending manual payment FAILED; the prospect may pay again."""
    prospect, payment = _pending_manual_payment(session, prospect_id)
    payment.status = "FAILED"
    payment.failed_at = as_utc(now) or utcnow()
    payment.failure_reason = sanitize(reason) or "Payment could not be verified."
    _log_payment_audit(session, prospect.id, "payment.manual_rejected", {
        "payment_id": payment.id,
        "reason": payment.failure_reason,
    }, actor_id=actor_id)
    session.flush()
    return payment


@unit_of_work
def mark_payment_completed(prospect_id, stripe_session_id=None,
                           stripe_payment_intent_id=None, now=None, session=None):
    """Complete a Stripe payment (webhook-driven).

    Safe to call again for the same payment: once completed, later calls
    return the payment unchanged.
    """
    prospect = session.get(Prospect, prospect_id)
    if prospect is None:
        raise NotFound("Prospect not found.")

    payment = prospect.payment
    if payment is not None and payment.status == "COMPLETED":
        logger.info(f"Payment for prospect {prospect_id} already completed")
        return payment

    payment = upsert_pending_payment(session, prospect, "STRIPE")
    if stripe_session_id:
        payment.stripe_session_id = stripe_session_id
    payment.stripe_payment_intent_id = stripe_payment_intent_id
    payment.status = "COMPLETED"
    payment.paid_at = as_utc(now) or utcnow()
    session.flush()

    pipeline_service.complete_payment(session, prospect, notes="Paid via Stripe")
    _log_payment_audit(session, prospect.id, "payment.stripe_completed", {
        "payment_id": payment.id,
        "stripe_session_id": stripe_session_id,
    })
    session.flush()
    return payment


@unit_of_work
def mark_payment_failed(prospect_id, stripe_session_id=None, reason=None, now=None,
                        session=None):
    """Record a failed or abandoned Stripe payment.

    Ignored when a newer checkout session has replaced ``stripe_session_id``.
    """
    prospect = session.get(Prospect, prospect_id)
    if prospect is None:
        raise NotFound("Prospect not found.")
    payment = prospect.payment
    if payment is None or payment.status != "PENDING":
        return payment
    if stripe_session_id and payment.stripe_session_id != stripe_session_id:
        return payment
    payment.status = "FAILED"
    payment.failed_at = as_utc(now) or utcnow()
    payment.failure_reason = reason
    session.flush()
    return payment
