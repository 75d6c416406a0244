"""
Milestone Workflow for TrustWork
Status machine, revision limits and payment-release gating for gig milestones

Lifecycle:
    pending -> in_progress -> submitted -> approved -> (payment released)
                                  |-> rejected           -> in_progress / submitted
                                  |-> revision_requested -> in_progress / submitted
"""

from datetime import datetime
import json

MAX_REVISIONS_PER_MILESTONE = 3

MILESTONE_STATUSES = ['pending', 'in_progress', 'submitted', 'approved', 'rejected', 'revision_requested']

STARTABLE_STATUSES = ('pending', 'rejected', 'revision_requested')
SUBMITTABLE_STATUSES = ('pending', 'in_progress', 'rejected', 'revision_requested')
ACTIVE_STATUSES = ('in_progress', 'submitted', 'revision_requested')
WORKING_GIG_STATUSES = ('in_progress',)

STATUS_LABELS = {
    'pending': 'Pending',
    'in_progress': 'In Progress',
    'submitted': 'Submitted for Review',
    'approved': 'Approved',
    'rejected': 'Rejected',
    'revision_requested': 'Revision Requested'
}

STATUS_COLORS = {
    'pending': 'secondary',
    'in_progress': 'primary',
    'submitted': 'info',
    'approved': 'success',
    'rejected': 'danger',
    'revision_requested': 'warning'
}


def get_status_label(status):
    return STATUS_LABELS.get(status, (status or '').replace('_', ' ').title())


def get_status_color(status):
    return STATUS_COLORS.get(status, 'secondary')


def _max_revisions(milestone):
    return milestone.max_revisions if milestone.max_revisions is not None else MAX_REVISIONS_PER_MILESTONE


def revisions_remaining(milestone):
    return max(0, _max_revisions(milestone) - (milestone.revision_count or 0))


# Guards return (allowed, message) so routes can answer with the message as-is

def can_work_on(gig):
    if gig.status not in WORKING_GIG_STATUSES:
        return False, f"Milestones cannot change while the gig is {gig.status.replace('_', ' ')}"
    return True, "Gig is in progress"


def can_start(milestone, user_id):
    if milestone.freelancer_id != user_id:
        return False, "Only the assigned freelancer can start this milestone"
    if milestone.status not in STARTABLE_STATUSES:
        return False, f"Cannot start a milestone that is {get_status_label(milestone.status).lower()}"
    return True, "Milestone can be started"


def can_submit(milestone, user_id):
    if milestone.freelancer_id != user_id:
        return False, "Only the assigned freelancer can submit this milestone"
    if milestone.status not in SUBMITTABLE_STATUSES:
        return False, f"Cannot submit a milestone that is {get_status_label(milestone.status).lower()}"
    return True, "Milestone can be submitted"


def _client_review_guard(milestone, user_id, client_id, verb, past):
    if user_id != client_id:
        return False, f"Only the client can {verb} this milestone"
    if milestone.status != 'submitted':
        return False, f"Only submitted milestones can be {past}"
    return True, f"Milestone can be {past}"


def can_approve(milestone, user_id, client_id):
    return _client_review_guard(milestone, user_id, client_id, 'approve', 'approved')


def can_reject(milestone, user_id, client_id, notes=None):
    allowed, message = _client_review_guard(milestone, user_id, client_id, 'reject', 'rejected')
    if not allowed:
        return allowed, message
    if not notes or not notes.strip():
        return False, "A reason is required when rejecting a milestone"
    return True, message


def can_request_revision(milestone, user_id, client_id):
    if user_id != client_id:
        return False, "Only the client can request a revision"
    if milestone.status != 'submitted':
        return False, "Revisions can only be requested on submitted milestones"
    if (milestone.revision_count or 0) >= _max_revisions(milestone):
        return False, f"Maximum of {_max_revisions(milestone)} revisions reached for this milestone"
    return True, "Revision can be requested"


def can_release_payment(milestone, escrow):
    if milestone.status != 'approved':
        return False, "Milestone must be approved before payment is released"
    if milestone.payment_released:
        return False, "Payment has already been released for this milestone"
    if escrow is None or escrow.status != 'held':
        return False, "Escrow funds are not held for this gig"
    return True, "Payment can be released"


# Transitions. Callers check the matching guard first.

def start(milestone, now=None):
    milestone.status = 'in_progress'
    milestone.started_at = now or datetime.utcnow()
    return milestone


def submit(milestone, notes=None, files=None, links=None, now=None):
    now = now or datetime.utcnow()
    if milestone.started_at is None:
        milestone.started_at = now
    milestone.status = 'submitted'
    milestone.submitted_at = now
    milestone.submission_notes = notes
    milestone.deliverable_files = json.dumps(files or [])
    milestone.deliverable_links = json.dumps(links or [])
    milestone.revision_requested = False
    return milestone


def approve(milestone, notes=None, now=None):
    milestone.status = 'approved'
    milestone.approved_at = now or datetime.utcnow()
    if notes:
        milestone.client_notes = notes
    return milestone


def reject(milestone, notes):
    milestone.status = 'rejected'
    milestone.client_notes = notes
    return milestone


def request_revision(milestone, notes=None):
    milestone.status = 'revision_requested'
    milestone.revision_requested = True
    milestone.revision_count = (milestone.revision_count or 0) + 1
    if notes:
        milestone.client_notes = notes
    return milestone


def release_payment(milestone, now=None):
    milestone.payment_released = True
    milestone.payment_released_at = now or datetime.utcnow()
    return milestone


def build_milestones(budget, plan):
    """
    Split a gig budget into milestone rows.

    Args:
        budget: total amount held in escrow
        plan: list of dicts with title, description, percentage and optional due_date

    Returns:
        tuple: (rows: list of dicts or None, error message or None)
    """
    if not plan:
        return None, "At least one milestone is required"

    total_pct = sum(float(item.get('percentage') or 0) for item in plan)
    if abs(total_pct - 100) > 0.01:
        return None, f"Milestone percentages must add up to 100 (got {total_pct:g})"

    rows = []
    allocated = 0.0
    for index, item in enumerate(plan):
        title = (item.get('title') or '').strip()
        if not title:
            return None, f"Milestone {index + 1} needs a title"
        pct = float(item.get('percentage') or 0)
        if pct <= 0:
            return None, f"Milestone {index + 1} must have a positive percentage"

        if index == len(plan) - 1:
            amount = round(budget - allocated, 2)
        else:
            amount = round(budget * pct / 100, 2)
            allocated += amount

        rows.append({
            'order_index': index,
            'title': title,
            'description': item.get('description', ''),
            'percentage': pct,
            'amount': amount,
            'due_date': item.get('due_date')
        })
    return rows, None


def calculate_milestone_stats(milestones):
    total = len(milestones)
    completed = sum(1 for m in milestones if m.status == 'approved')
    in_progress = sum(1 for m in milestones if m.status in ACTIVE_STATUSES)
    pending = total - completed - in_progress

    return {
        'total': total,
        'completed': completed,
        'in_progress': in_progress,
        'pending': pending,
        'percentage_complete': round(completed / total * 100) if total else 0,
        'total_amount': round(sum(m.amount or 0 for m in milestones), 2),
        'released_amount': round(sum(m.amount or 0 for m in milestones
                                     if m.status == 'approved' and m.payment_released), 2)
    }


def all_paid(milestones):
    """True once every milestone is approved and its payment released"""
    return bool(milestones) and all(m.status == 'approved' and m.payment_released for m in milestones)
