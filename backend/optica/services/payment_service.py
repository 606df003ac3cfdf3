# Overview: Service-layer operations for payment; encapsulates business logic and database work.

"""
Payment Reconciliation Service

WHY: Optical sales are rarely paid in one go. A customer leaves a deposit
when ordering lenses and settles the rest on pickup, so a sale accumulates
payments until its balance reaches zero.

DESIGN PRINCIPLES:
- Payments are separate rows owned by the sale (many-to-one)
- Immutable: a payment is appended and never edited
- Totals on the sale are re-derived from ALL payments on every change
- Overpayment is rejected; there is no change/cash-back concept
- The sale is "cancelled" (fully paid) exactly once, on the >0 -> 0 transition
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from flask import current_app

from ..extensions import db
from ..errors import AmountExceedsTotalError, NotFoundError, ValidationError
from ..models import Sale, Payment
from optica.time_utils import parse_iso_datetime, utcnow
from .concurrency import begin_write, lock_for_update, run_with_retry


# =============================================================================
# PAYMENT METHODS (CONSTANTS)
# =============================================================================

METHOD_CASH = "EFECTIVO"
METHOD_YAPE = "YAPE"
METHOD_PLIN = "PLIN"
METHOD_CARD = "TARJETA"
METHOD_TRANSFER = "TRANSFERENCIA"
METHOD_OTHER = "OTRO"

PAYMENT_METHODS = [
    METHOD_CASH,
    METHOD_YAPE,
    METHOD_PLIN,
    METHOD_CARD,
    METHOD_TRANSFER,
    METHOD_OTHER,
]

RECEIPT_REF_MAX_LENGTH = 64


# =============================================================================
# RECONCILIATION ARITHMETIC
# =============================================================================

@dataclass(frozen=True)
class PaymentFold:
    total_paid: int
    remaining_balance: int
    percent_paid: float
    just_cancelled: bool


def percent_of(paid_cents: int, total_cents: int) -> float:
    """Percent of total covered by paid, 2 decimals, clamped to [0, 100]."""
    if total_cents <= 0:
        return 100.0
    percent = round(paid_cents / total_cents * 100, 2)
    return min(100.0, max(0.0, percent))


def fold(existing_amounts: list[int], new_amount: int, sale_total: int) -> PaymentFold:
    """
    Combine the payments already on a sale with one more.

    Pure function: touches no storage. Raises AmountExceedsTotalError when
    the new payment would take the cumulative total past the sale total.
    """
    previous_paid = sum(existing_amounts)
    total_paid = previous_paid + new_amount
    if total_paid > sale_total:
        raise AmountExceedsTotalError(
            "Payment exceeds the sale total",
            details={
                "sale_total_cents": sale_total,
                "already_paid_cents": previous_paid,
                "amount_cents": new_amount,
                "max_allowed_cents": max(0, sale_total - previous_paid),
            },
        )

    previous_balance = max(0, sale_total - previous_paid)
    remaining = max(0, sale_total - total_paid)
    return PaymentFold(
        total_paid=total_paid,
        remaining_balance=remaining,
        percent_paid=percent_of(total_paid, sale_total),
        just_cancelled=previous_balance > 0 and remaining == 0,
    )


# =============================================================================
# INPUT VALIDATION
# =============================================================================

@dataclass(frozen=True)
class PaymentInput:
    amount_cents: int
    method: str
    receipt_ref: str | None = None
    paid_at: datetime | None = None


def validate_payment(payload) -> PaymentInput:
    """
    Check one client payment entry.

    Accepts {"amount_cents", "method", "receipt_ref"?, "paid_at"?}. The
    method is matched case-insensitively and stored upper-case.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Each payment must be an object")

    amount = payload.get("amount_cents")
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(
            "amount_cents must be an integer number of cents",
            details={"field": "amount_cents"},
        )
    if amount <= 0:
        raise ValidationError(
            "Payment amount must be positive",
            details={"field": "amount_cents"},
        )

    method = payload.get("method")
    if not isinstance(method, str) or method.strip().upper() not in PAYMENT_METHODS:
        raise ValidationError(
            f"Invalid payment method: {method}. Must be one of {PAYMENT_METHODS}",
            details={"field": "method"},
        )

    receipt_ref = payload.get("receipt_ref")
    if receipt_ref is not None:
        if not isinstance(receipt_ref, str):
            raise ValidationError("receipt_ref must be a string", details={"field": "receipt_ref"})
        receipt_ref = receipt_ref.strip()[:RECEIPT_REF_MAX_LENGTH] or None

    paid_at = payload.get("paid_at")
    if paid_at is not None:
        try:
            paid_at = parse_iso_datetime(paid_at)
        except (TypeError, ValueError, AttributeError):
            raise ValidationError("paid_at must be an ISO-8601 datetime", details={"field": "paid_at"})

    return PaymentInput(
        amount_cents=amount,
        method=method.strip().upper(),
        receipt_ref=receipt_ref,
        paid_at=paid_at,
    )


# =============================================================================
# APPLYING PAYMENTS
# =============================================================================

def apply_payment(sale: Sale, payment_input: PaymentInput, actor_user_id: int | None = None) -> tuple[Payment, PaymentFold]:
    """
    Append one payment to a sale and re-derive its totals.

    No commit here; the caller owns the transaction and the sale row lock.
    """
    result = fold(
        [p.amount_cents for p in sale.payments],
        payment_input.amount_cents,
        sale.total_cents,
    )

    payment = Payment(
        amount_cents=payment_input.amount_cents,
        method=payment_input.method,
        receipt_ref=payment_input.receipt_ref or sale.ot_number,
        paid_at=payment_input.paid_at or utcnow(),
        created_by_user_id=actor_user_id,
    )
    sale.payments.append(payment)

    sale.total_paid_cents = result.total_paid
    sale.balance_cents = result.remaining_balance
    sale.percent_paid = result.percent_paid
    if result.just_cancelled and sale.cancelled_at is None:
        sale.cancelled_at = payment.paid_at

    db.session.flush()
    return payment, result


def register_payment(sale_id: int, payload, actor_user_id: int | None = None) -> Sale:
    """
    Register a payment against an existing sale.

    One transaction: lock the sale, validate, fold, append, then refresh the
    sale's pickup record. Any failure leaves the sale untouched.
    """
    from .pickup_service import link_pickup

    def _op():
        payment_input = validate_payment(payload)

        begin_write()
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if not sale:
            raise NotFoundError(f"Sale {sale_id} not found")

        payment, result = apply_payment(sale, payment_input, actor_user_id=actor_user_id)
        link_pickup(sale, [payment])

        db.session.commit()
        current_app.logger.info(
            "Payment registered on OT %s: %s %s (paid=%s balance=%s)",
            sale.ot_number,
            payment.method,
            payment.amount_cents,
            result.total_paid,
            result.remaining_balance,
        )
        return sale

    return run_with_retry(_op)


def get_sale_payments(sale_id: int) -> list[Payment]:
    """All payments on a sale, oldest first."""
    if db.session.get(Sale, sale_id) is None:
        raise NotFoundError(f"Sale {sale_id} not found")
    return (
        db.session.query(Payment)
        .filter_by(sale_id=sale_id)
        .order_by(Payment.paid_at.asc(), Payment.id.asc())
        .all()
    )
