"""
Dispute Resolution rules for TrustWork
Reasons, statuses, response deadlines and how a resolution settles escrow
"""

from datetime import datetime, timedelta
import uuid

RESPONSE_WINDOW_DAYS = 7

DISPUTE_REASONS = {
    'quality_issue': 'Quality of work not as agreed',
    'non_delivery': 'Work not delivered',
    'scope_change': 'Scope changed without agreement',
    'payment_issue': 'Payment problem',
    'communication_breakdown': 'Communication breakdown',
    'deadline_missed': 'Deadline missed',
    'unauthorized_use': 'Unauthorized use of work',
    'other': 'Other'
}

DISPUTE_STATUSES = ['open', 'under_review', 'awaiting_response', 'resolved', 'escalated', 'closed']
ACTIVE_STATUSES = ('open', 'under_review', 'awaiting_response', 'escalated')
FINAL_STATUSES = ('resolved', 'closed')

STATUS_LABELS = {
    'open': 'Open',
    'under_review': 'Under Review',
    'awaiting_response': 'Awaiting Response',
    'resolved': 'Resolved',
    'escalated': 'Escalated',
    'closed': 'Closed'
}

STATUS_COLORS = {
    'open': 'warning',
    'under_review': 'info',
    'awaiting_response': 'primary',
    'resolved': 'success',
    'escalated': 'danger',
    'closed': 'secondary'
}

RESOLUTION_DECISIONS = {
    'favor_freelancer': 'In favour of the freelancer',
    'favor_client': 'In favour of the client',
    'split_payment': 'Payment split between both parties',
    'no_fault': 'No fault found',
    'mutual_agreement': 'Resolved by mutual agreement'
}


def generate_dispute_number(now=None):
    now = now or datetime.utcnow()
    return f"DIS-{now.strftime('%Y%m%d')}-{uuid.uuid4().hex[:8].upper()}"


def get_reason_label(reason):
    return DISPUTE_REASONS.get(reason, (reason or '').replace('_', ' ').title())


def get_status_label(status):
    return STATUS_LABELS.get(status, (status or '').replace('_', ' ').title())


def get_status_color(status):
    return STATUS_COLORS.get(status, 'secondary')


def get_decision_label(decision):
    return RESOLUTION_DECISIONS.get(decision, decision)


def response_deadline(created_at=None):
    return (created_at or datetime.utcnow()) + timedelta(days=RESPONSE_WINDOW_DAYS)


def is_party(dispute, user_id):
    return user_id in (dispute.initiated_by, dispute.respondent_id)


def can_respond(dispute, user_id, now=None):
    now = now or datetime.utcnow()
    if dispute.respondent_id != user_id:
        return False, "Only the other party can respond to this dispute"
    if dispute.status != 'open':
        return False, "This dispute is no longer awaiting a response"
    if dispute.response_deadline and now > dispute.response_deadline:
        return False, "The response deadline has passed"
    return True, "Response allowed"


def is_overdue(dispute, now=None):
    now = now or datetime.utcnow()
    return (dispute.status == 'open'
            and dispute.response_deadline is not None
            and now > dispute.response_deadline)


def can_add_evidence(dispute, user_id):
    if not is_party(dispute, user_id):
        return False, "Only parties to the dispute can add evidence"
    if dispute.status in FINAL_STATUSES:
        return False, "Evidence cannot be added to a closed dispute"
    return True, "Evidence allowed"


def can_propose_resolution(dispute, user_id):
    if not is_party(dispute, user_id):
        return False, "Only parties to the dispute can propose a resolution"
    if dispute.status in FINAL_STATUSES:
        return False, "This dispute has already been resolved"
    return True, "Proposal allowed"


def validate_status_change(dispute, new_status):
    if new_status not in DISPUTE_STATUSES:
        return False, f"Invalid status: {new_status}"
    if dispute.status == 'closed':
        return False, "Closed disputes cannot be reopened"
    if new_status == 'resolved':
        return False, "Use the resolve action to resolve a dispute"
    if dispute.status == 'resolved' and new_status != 'closed':
        return False, "Resolved disputes can only be closed"
    if new_status == 'closed' and dispute.status != 'resolved':
        return False, "Only resolved disputes can be closed; use the resolve action first"
    return True, "Status change allowed"


def apply_status(dispute, new_status, now=None):
    """Set status and stamp reviewed_at / resolved_at the first time they apply"""
    now = now or datetime.utcnow()
    dispute.status = new_status
    if new_status == 'under_review' and dispute.reviewed_at is None:
        dispute.reviewed_at = now
    if new_status in FINAL_STATUSES and dispute.resolved_at is None:
        dispute.resolved_at = now
    return dispute


def evidence_field(dispute, user_id):
    """Column a party writes statements and proposals into"""
    return 'initiator_evidence' if dispute.initiated_by == user_id else 'respondent_evidence'


def escrow_outcome(decision, escrow_amount, payment_adjustment=None):
    """
    Work out how a resolution settles the disputed escrow

    Args:
        decision: one of RESOLUTION_DECISIONS
        escrow_amount: amount held for the gig
        payment_adjustment: amount released to the freelancer for split_payment

    Returns:
        tuple: (outcome: 'released' | 'refunded', amount released to the freelancer)
    """
    if decision not in RESOLUTION_DECISIONS:
        raise ValueError(f"Invalid resolution decision: {decision}")

    if decision == 'favor_client':
        return 'refunded', 0.0
    if decision == 'split_payment':
        if payment_adjustment is None:
            raise ValueError("A split payment needs the amount released to the freelancer")
        if payment_adjustment <= 0 or payment_adjustment >= escrow_amount:
            raise ValueError("Split amount must be between zero and the escrow amount")
        return 'released', round(payment_adjustment, 2)
    if decision == 'mutual_agreement' and payment_adjustment is not None:
        if payment_adjustment < 0 or payment_adjustment > escrow_amount:
            raise ValueError("Agreed amount cannot exceed the escrow amount")
        if payment_adjustment == 0:
            return 'refunded', 0.0
        return 'released', round(payment_adjustment, 2)
    return 'released', round(escrow_amount, 2)
