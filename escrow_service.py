"""
Escrow Service for TrustWork
Fee calculations, escrow status transitions and freelancer payouts

Escrow:  pending -> held -> released
                  +-> refunded (from pending or held)
                  +-> disputed -> released | refunded
Payout:  pending -> processing -> completed
                              +-> failed -> processing (retry)
"""

from datetime import datetime
import logging

logger = logging.getLogger(__name__)

CURRENCY = 'ZAR'
PLATFORM_FEE_PERCENTAGE = 10

# PayFast processing fees by payment method
PAYFAST_FEES = {
    'eft': 0.005,   # Instant EFT 0.5%
    'card': 0.029   # Credit/debit card 2.9%
}

ESCROW_STATUSES = ['pending', 'held', 'released', 'refunded', 'disputed']
PAYOUT_STATUSES = ['pending', 'processing', 'completed', 'failed']

ESCROW_STATUS_LABELS = {
    'pending': 'Awaiting Payment',
    'held': 'Funds Held in Escrow',
    'released': 'Released to Freelancer',
    'refunded': 'Refunded to Client',
    'disputed': 'Under Dispute'
}

ESCROW_STATUS_COLORS = {
    'pending': 'warning',
    'held': 'info',
    'released': 'success',
    'refunded': 'secondary',
    'disputed': 'danger'
}


class EscrowError(Exception):
    """Raised when an escrow or payout transition is not allowed"""
    pass


def calculate_platform_fee(amount):
    return round(amount * PLATFORM_FEE_PERCENTAGE / 100, 2)


def calculate_processing_fee(amount, payment_method='eft'):
    """Calculate the PayFast processing fee (defaults to instant EFT)"""
    rate = PAYFAST_FEES.get(payment_method, PAYFAST_FEES['card'])
    return round(amount * rate, 2)


def calculate_payment_breakdown(gross_amount):
    """
    Split a gig payment into the platform fee and what the freelancer receives

    Args:
        gross_amount (float): Amount the client pays into escrow

    Returns:
        dict: gross_amount, platform_fee, net_amount, freelancer_receives
    """
    if gross_amount < 0:
        raise ValueError("Payment amount cannot be negative")
    platform_fee = calculate_platform_fee(gross_amount)
    net_amount = round(gross_amount - platform_fee, 2)
    return {
        'gross_amount': round(gross_amount, 2),
        'platform_fee': platform_fee,
        'platform_fee_percentage': PLATFORM_FEE_PERCENTAGE,
        'net_amount': net_amount,
        'freelancer_receives': net_amount,
        'currency': CURRENCY
    }


def get_status_label(status):
    return ESCROW_STATUS_LABELS.get(status, (status or '').title())


def get_status_color(status):
    return ESCROW_STATUS_COLORS.get(status, 'secondary')


def _require(escrow, allowed, action):
    if escrow.status not in allowed:
        raise EscrowError(f"Cannot {action} escrow that is {escrow.status}")


def hold(escrow, payfast_payment_id=None, now=None):
    """Mark funds as received from the payment gateway"""
    _require(escrow, ('pending',), 'hold funds for')
    escrow.status = 'held'
    escrow.held_at = now or datetime.utcnow()
    if payfast_payment_id:
        escrow.payfast_payment_id = payfast_payment_id
    return escrow


def release(escrow, user_id=None, now=None):
    """Release held funds to the freelancer. Only the payer may release."""
    _require(escrow, ('held',), 'release')
    if user_id is not None and escrow.payer_id != user_id:
        raise EscrowError("Only the client who funded the escrow can release it")
    escrow.status = 'released'
    escrow.released_at = now or datetime.utcnow()
    escrow.payout_status = 'pending'
    return escrow


def refund(escrow, now=None):
    _require(escrow, ('held', 'pending'), 'refund')
    escrow.status = 'refunded'
    escrow.refunded_at = now or datetime.utcnow()
    return escrow


def dispute(escrow):
    _require(escrow, ('pending', 'held'), 'dispute')
    escrow.status = 'disputed'
    return escrow


def settle_dispute(escrow, outcome, amount=None, now=None):
    """
    Settle a disputed escrow into 'released' or 'refunded'

    A partial release (split payment) keeps the escrow released for the
    adjusted amount; the platform fee is recalculated on that amount.
    """
    _require(escrow, ('disputed',), 'settle')
    now = now or datetime.utcnow()
    if outcome == 'released':
        if amount is not None and amount != escrow.amount:
            escrow.amount = round(amount, 2)
            escrow.platform_fee = calculate_platform_fee(escrow.amount)
            escrow.net_amount = round(escrow.amount - escrow.platform_fee, 2)
        escrow.status = 'released'
        escrow.released_at = now
        escrow.payout_status = 'pending'
    elif outcome == 'refunded':
        escrow.status = 'refunded'
        escrow.refunded_at = now
    else:
        raise EscrowError(f"Unknown dispute outcome: {outcome}")
    return escrow


def initiate_payout(escrow, now=None):
    if escrow.status != 'released':
        raise EscrowError("Payout can only be initiated after escrow is released")
    if escrow.payout_status not in (None, 'pending', 'failed'):
        raise EscrowError(f"Payout is already {escrow.payout_status}")
    escrow.payout_status = 'processing'
    escrow.payout_initiated_at = now or datetime.utcnow()
    escrow.payout_error = None
    return escrow


def complete_payout(escrow, reference, now=None):
    if escrow.payout_status != 'processing':
        raise EscrowError("Only a processing payout can be completed")
    escrow.payout_status = 'completed'
    escrow.payout_reference = reference
    escrow.payout_completed_at = now or datetime.utcnow()
    return escrow


def fail_payout(escrow, error):
    if escrow.payout_status != 'processing':
        raise EscrowError("Only a processing payout can fail")
    escrow.payout_status = 'failed'
    escrow.payout_error = error
    logger.warning(f"Payout failed for escrow {escrow.id}: {error}")
    return escrow


def calculate_payment_stats(escrows, user_id):
    """
    Aggregate a user's escrow history from both sides of the table

    Returns:
        dict: total_paid, total_received, pending_payments, held_in_escrow, pending_payouts
    """
    stats = {
        'total_paid': 0.0,
        'total_received': 0.0,
        'pending_payments': 0.0,
        'held_in_escrow': 0.0,
        'pending_payouts': 0.0
    }
    for escrow in escrows:
        amount = escrow.amount or 0
        if escrow.payer_id == user_id:
            if escrow.status in ('held', 'released', 'disputed'):
                stats['total_paid'] += amount
            elif escrow.status == 'pending':
                stats['pending_payments'] += amount
            if escrow.status == 'held':
                stats['held_in_escrow'] += amount
        if escrow.recipient_id == user_id and escrow.status == 'released':
            net = escrow.net_amount if escrow.net_amount is not None else amount
            if escrow.payout_status == 'completed':
                stats['total_received'] += net
            else:
                stats['pending_payouts'] += net
    return {key: round(value, 2) for key, value in stats.items()}
