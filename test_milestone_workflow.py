#!/usr/bin/env python3
"""Tests for the milestone status machine and budget split"""

import json
from datetime import datetime
from types import SimpleNamespace

import milestone_workflow as mw


def make_milestone(**fields):
    defaults = {
        'freelancer_id': 2,
        'status': 'pending',
        'revision_count': 0,
        'max_revisions': 3,
        'payment_released': False,
        'started_at': None,
        'client_notes': None
    }
    defaults.update(fields)
    return SimpleNamespace(**defaults)


def test_only_assigned_freelancer_can_start():
    milestone = make_milestone()
    assert mw.can_start(milestone, 2)[0]
    allowed, message = mw.can_start(milestone, 99)
    assert not allowed
    assert 'assigned freelancer' in message


def test_cannot_start_submitted_or_approved():
    for status in ('in_progress', 'submitted', 'approved'):
        assert not mw.can_start(make_milestone(status=status), 2)[0]


def test_submit_records_deliverables_and_clears_revision_flag():
    milestone = make_milestone(status='revision_requested', revision_requested=True)
    now = datetime(2026, 3, 1, 10, 0)
    mw.submit(milestone, 'Done', ['https://files.example.com/a.zip'], ['https://demo.example.com'], now)

    assert milestone.status == 'submitted'
    assert milestone.submitted_at == now
    assert milestone.started_at == now
    assert milestone.revision_requested is False
    assert json.loads(milestone.deliverable_files) == ['https://files.example.com/a.zip']
    assert json.loads(milestone.deliverable_links) == ['https://demo.example.com']


def test_client_review_requires_submitted_status():
    milestone = make_milestone(status='in_progress')
    allowed, message = mw.can_approve(milestone, 1, 1)
    assert not allowed
    assert message == "Only submitted milestones can be approved"

    milestone.status = 'submitted'
    assert mw.can_approve(milestone, 1, 1)[0]
    assert not mw.can_approve(milestone, 2, 1)[0]


def test_reject_needs_a_reason():
    milestone = make_milestone(status='submitted')
    assert not mw.can_reject(milestone, 1, 1, '   ')[0]
    assert mw.can_reject(milestone, 1, 1, 'Colours are wrong')[0]

    mw.reject(milestone, 'Colours are wrong')
    assert milestone.status == 'rejected'
    assert milestone.client_notes == 'Colours are wrong'
    assert mw.can_start(milestone, 2)[0]


def test_revision_limit():
    milestone = make_milestone(status='submitted')
    for expected_count in (1, 2, 3):
        assert mw.can_request_revision(milestone, 1, 1)[0]
        mw.request_revision(milestone, 'Please tweak')
        assert milestone.revision_count == expected_count
        milestone.status = 'submitted'

    allowed, message = mw.can_request_revision(milestone, 1, 1)
    assert not allowed
    assert 'Maximum of 3 revisions' in message
    assert mw.revisions_remaining(milestone) == 0


def test_payment_release_needs_approval_and_held_escrow():
    escrow = SimpleNamespace(status='held')
    milestone = make_milestone(status='submitted')
    assert not mw.can_release_payment(milestone, escrow)[0]

    mw.approve(milestone, 'Great work')
    assert mw.can_release_payment(milestone, escrow)[0]
    assert not mw.can_release_payment(milestone, SimpleNamespace(status='pending'))[0]
    assert not mw.can_release_payment(milestone, None)[0]

    mw.release_payment(milestone)
    assert milestone.payment_released
    allowed, message = mw.can_release_payment(milestone, escrow)
    assert not allowed
    assert 'already been released' in message


def test_work_only_on_gigs_in_progress():
    assert mw.can_work_on(SimpleNamespace(status='in_progress'))[0]
    for status in ('open', 'disputed', 'cancelled', 'completed'):
        allowed, message = mw.can_work_on(SimpleNamespace(status=status))
        assert not allowed
        assert status in message


def test_build_milestones_puts_rounding_remainder_on_last():
    rows, error = mw.build_milestones(1000.0, [
        {'title': 'One', 'percentage': 33.33},
        {'title': 'Two', 'percentage': 33.33},
        {'title': 'Three', 'percentage': 33.34}
    ])
    assert error is None
    assert [r['amount'] for r in rows] == [333.3, 333.3, 333.4]
    assert round(sum(r['amount'] for r in rows), 2) == 1000.0
    assert [r['order_index'] for r in rows] == [0, 1, 2]


def test_build_milestones_rejects_bad_plans():
    assert mw.build_milestones(500, [])[1] == "At least one milestone is required"
    assert 'add up to 100' in mw.build_milestones(500, [{'title': 'A', 'percentage': 90}])[1]
    assert 'needs a title' in mw.build_milestones(500, [{'title': '', 'percentage': 100}])[1]
    assert 'positive percentage' in mw.build_milestones(500, [
        {'title': 'A', 'percentage': 110}, {'title': 'B', 'percentage': -10}
    ])[1]


def test_milestone_stats():
    milestones = [
        SimpleNamespace(status='approved', amount=400.0, payment_released=True),
        SimpleNamespace(status='submitted', amount=300.0, payment_released=False),
        SimpleNamespace(status='pending', amount=300.0, payment_released=False)
    ]
    stats = mw.calculate_milestone_stats(milestones)
    assert stats['total'] == 3
    assert stats['completed'] == 1
    assert stats['in_progress'] == 1
    assert stats['pending'] == 1
    assert stats['total_amount'] == 1000.0
    assert stats['released_amount'] == 400.0
    assert not mw.all_paid(milestones)
    assert not mw.all_paid([])


if __name__ == "__main__":
    test_only_assigned_freelancer_can_start()
    test_cannot_start_submitted_or_approved()
    test_submit_records_deliverables_and_clears_revision_flag()
    test_client_review_requires_submitted_status()
    test_reject_needs_a_reason()
    test_revision_limit()
    test_payment_release_needs_approval_and_held_escrow()
    test_build_milestones_puts_rounding_remainder_on_last()
    test_build_milestones_rejects_bad_plans()
    test_milestone_stats()
    print("✓ All milestone workflow tests passed!")
