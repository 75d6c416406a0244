#!/usr/bin/env python3
"""Tests for dispute deadlines, permissions and escrow settlement rules"""

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

import disputes

NOW = datetime(2026, 6, 1, 8, 0)


def make_dispute(**fields):
    defaults = {
        'initiated_by': 1,
        'respondent_id': 2,
        'status': 'open',
        'response_deadline': disputes.response_deadline(NOW),
        'reviewed_at': None,
        'resolved_at': None
    }
    defaults.update(fields)
    return SimpleNamespace(**defaults)


def test_dispute_number_format():
    number = disputes.generate_dispute_number(NOW)
    assert number.startswith('DIS-20260601-')
    assert len(number) == len('DIS-20260601-') + 8


def test_response_deadline_is_seven_days():
    assert disputes.response_deadline(NOW) == NOW + timedelta(days=7)


def test_only_respondent_can_respond_before_deadline():
    dispute = make_dispute()
    assert disputes.can_respond(dispute, 2, NOW)[0]
    assert not disputes.can_respond(dispute, 1, NOW)[0]

    allowed, message = disputes.can_respond(dispute, 2, NOW + timedelta(days=8))
    assert not allowed
    assert message == "The response deadline has passed"

    dispute.status = 'under_review'
    assert not disputes.can_respond(dispute, 2, NOW)[0]


def test_overdue_only_while_open():
    dispute = make_dispute()
    later = NOW + timedelta(days=7, minutes=1)
    assert not disputes.is_overdue(dispute, NOW)
    assert disputes.is_overdue(dispute, later)
    dispute.status = 'under_review'
    assert not disputes.is_overdue(dispute, later)


def test_evidence_and_proposals_blocked_after_resolution():
    dispute = make_dispute()
    assert disputes.can_add_evidence(dispute, 1)[0]
    assert not disputes.can_add_evidence(dispute, 3)[0]
    assert disputes.can_propose_resolution(dispute, 2)[0]

    dispute.status = 'resolved'
    assert not disputes.can_add_evidence(dispute, 1)[0]
    assert not disputes.can_propose_resolution(dispute, 2)[0]


def test_status_changes():
    dispute = make_dispute()
    assert not disputes.validate_status_change(dispute, 'bogus')[0]
    assert not disputes.validate_status_change(dispute, 'resolved')[0]
    assert disputes.validate_status_change(dispute, 'under_review')[0]

    disputes.apply_status(dispute, 'under_review', NOW)
    assert dispute.reviewed_at == NOW
    assert not disputes.validate_status_change(dispute, 'closed')[0]

    disputes.apply_status(dispute, 'resolved', NOW + timedelta(days=1))
    assert dispute.resolved_at == NOW + timedelta(days=1)
    assert not disputes.validate_status_change(dispute, 'open')[0]
    assert disputes.validate_status_change(dispute, 'closed')[0]
    disputes.apply_status(dispute, 'closed', NOW + timedelta(days=2))
    assert dispute.resolved_at == NOW + timedelta(days=1)

    allowed, message = disputes.validate_status_change(dispute, 'open')
    assert not allowed
    assert message == "Closed disputes cannot be reopened"


def test_evidence_field_per_party():
    dispute = make_dispute()
    assert disputes.evidence_field(dispute, 1) == 'initiator_evidence'
    assert disputes.evidence_field(dispute, 2) == 'respondent_evidence'


def test_escrow_outcomes():
    assert disputes.escrow_outcome('favor_freelancer', 1000) == ('released', 1000)
    assert disputes.escrow_outcome('no_fault', 1000) == ('released', 1000)
    assert disputes.escrow_outcome('favor_client', 1000) == ('refunded', 0.0)
    assert disputes.escrow_outcome('split_payment', 1000, 400) == ('released', 400)
    assert disputes.escrow_outcome('mutual_agreement', 1000, 250.5) == ('released', 250.5)
    assert disputes.escrow_outcome('mutual_agreement', 1000, 0) == ('refunded', 0.0)
    assert disputes.escrow_outcome('mutual_agreement', 1000) == ('released', 1000)


def test_invalid_escrow_outcomes():
    with pytest.raises(ValueError):
        disputes.escrow_outcome('coin_toss', 1000)
    with pytest.raises(ValueError):
        disputes.escrow_outcome('split_payment', 1000)
    with pytest.raises(ValueError):
        disputes.escrow_outcome('split_payment', 1000, 1000)
    with pytest.raises(ValueError):
        disputes.escrow_outcome('mutual_agreement', 1000, 1200)
