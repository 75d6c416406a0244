#!/usr/bin/env python3
"""
Tests for the scheduled housekeeping jobs: abandoned skill tests,
overdue disputes and the daily payout batch
"""

import json
from datetime import datetime, timedelta

from app import (app, db, SkillTestAttempt, Dispute, Notification, Escrow, BankAccount, PayoutBatch)
from scheduled_jobs import expire_stale_attempts, escalate_overdue_disputes, process_daily_payouts


class RecordingPayFast:
    """Stands in for the PayFast client; fails payouts to listed references"""

    def __init__(self, failing_references=()):
        self.failing_references = set(failing_references)
        self.calls = []

    def create_payout(self, amount, bank_account, reference):
        self.calls.append((amount, bank_account.account_number, reference))
        if reference in self.failing_references:
            return {'success': False, 'error': 'Account closed'}
        return {'success': True, 'reference': f'PF-{reference}'}


def add_attempt(gig_id, applicant_id, template_id, started_at, answers=None):
    questions = [{'id': 1, 'question_text': 'Q', 'options': {}, 'correct_answer': 'B', 'explanation': None}]
    attempt = SkillTestAttempt(
        applicant_id=applicant_id, template_id=template_id, gig_id=gig_id, difficulty='entry',
        questions_data=json.dumps(questions), answers_data=json.dumps(answers or {}),
        status='in_progress', started_at=started_at
    )
    db.session.add(attempt)
    db.session.commit()
    return attempt.id


def test_expire_stale_attempts(client, make_user, make_gig, make_template):
    template_id = make_template(per_level=0)
    gig_id = make_gig(make_user(role='client'))
    applicant_id = make_user()
    now = datetime.utcnow()

    with app.app_context():
        stale = add_attempt(gig_id, applicant_id, template_id, now - timedelta(hours=1), {'1': 'B'})
        recent = add_attempt(gig_id, applicant_id, template_id, now - timedelta(minutes=10))
        # Past the limit but still inside the submission grace period
        grace = add_attempt(gig_id, applicant_id, template_id, now - timedelta(minutes=40, seconds=10))

    assert expire_stale_attempts(app, db, SkillTestAttempt, now=now) == 1

    with app.app_context():
        attempt = db.session.get(SkillTestAttempt, stale)
        assert attempt.status == 'expired'
        assert attempt.score == 100
        assert not attempt.passed
        assert db.session.get(SkillTestAttempt, recent).status == 'in_progress'
        assert db.session.get(SkillTestAttempt, grace).status == 'in_progress'


def test_escalate_overdue_disputes(client, make_user, make_gig):
    client_id = make_user(role='client')
    freelancer_id = make_user()
    gig_id = make_gig(client_id, status='disputed', accepted_freelancer_id=freelancer_id)
    now = datetime.utcnow()

    with app.app_context():
        for number, deadline, status in (('DIS-1', now - timedelta(days=1), 'open'),
                                         ('DIS-2', now + timedelta(days=3), 'open'),
                                         ('DIS-3', now - timedelta(days=1), 'under_review')):
            db.session.add(Dispute(
                dispute_number=number, gig_id=gig_id, initiated_by=client_id, respondent_id=freelancer_id,
                reason='non_delivery', title='Nothing delivered', description='No files after two weeks.',
                status=status, response_deadline=deadline
            ))
        db.session.commit()

    assert escalate_overdue_disputes(app, db, Dispute, Notification, now=now) == 1

    with app.app_context():
        statuses = {d.dispute_number: d.status for d in Dispute.query.all()}
        assert statuses == {'DIS-1': 'escalated', 'DIS-2': 'open', 'DIS-3': 'under_review'}
        recipients = {n.user_id for n in Notification.query.filter_by(notification_type='dispute_escalated')}
        assert recipients == {client_id, freelancer_id}


def add_released_escrow(gig_id, payer_id, recipient_id, amount):
    escrow = Escrow(gig_id=gig_id, payer_id=payer_id, recipient_id=recipient_id, amount=amount,
                    platform_fee=round(amount * 0.1, 2), net_amount=round(amount * 0.9, 2),
                    status='released', payout_status='pending', released_at=datetime.utcnow())
    db.session.add(escrow)
    db.session.commit()
    return escrow.id


def add_bank_account(user_id, account_number, verified=True):
    db.session.add(BankAccount(user_id=user_id, account_holder_name='Account Holder', bank_name='FNB',
                               account_number=account_number, branch_code='250655', is_verified=verified))
    db.session.commit()


def test_process_daily_payouts_partial(client, make_user, make_gig):
    client_id = make_user(role='client')
    paid = make_user()
    unverified = make_user()
    gig_id = make_gig(client_id, status='completed')

    with app.app_context():
        add_bank_account(paid, '62001234567')
        add_bank_account(unverified, '62007654321', verified=False)
        paid_escrow = add_released_escrow(gig_id, client_id, paid, 1000.0)
        blocked_escrow = add_released_escrow(gig_id, client_id, unverified, 500.0)

    payfast = RecordingPayFast()
    batch = process_daily_payouts(app, db, Escrow, BankAccount, PayoutBatch, payfast)
    assert batch is not None

    with app.app_context():
        batch = PayoutBatch.query.one()
        assert batch.status == 'partial'
        assert batch.payout_count == 2
        assert batch.successful_payouts == 1
        assert batch.failed_payouts == 1
        assert batch.total_amount == 1350.0
        assert batch.total_fees == 150.0

        escrow = db.session.get(Escrow, paid_escrow)
        assert escrow.payout_status == 'completed'
        assert escrow.payout_reference == f'PF-TW-{gig_id}-{paid_escrow}'
        escrow = db.session.get(Escrow, blocked_escrow)
        assert escrow.payout_status == 'failed'
        assert escrow.payout_error == 'No verified bank account'

    assert payfast.calls == [(900.0, '62001234567', f'TW-{gig_id}-{paid_escrow}')]


def test_process_daily_payouts_failure_and_retry(client, make_user, make_gig):
    client_id = make_user(role='client')
    freelancer_id = make_user()
    gig_id = make_gig(client_id, status='completed')

    with app.app_context():
        add_bank_account(freelancer_id, '62001234567')
        escrow_id = add_released_escrow(gig_id, client_id, freelancer_id, 200.0)

    reference = f'TW-{gig_id}-{escrow_id}'
    assert process_daily_payouts(app, db, Escrow, BankAccount, PayoutBatch, RecordingPayFast([reference])) is not None
    with app.app_context():
        assert PayoutBatch.query.one().status == 'failed'
        escrow = db.session.get(Escrow, escrow_id)
        assert escrow.payout_status == 'failed'
        assert escrow.payout_error == 'Account closed'

        # Failed payouts are not retried automatically
        assert process_daily_payouts(app, db, Escrow, BankAccount, PayoutBatch, RecordingPayFast()) is None


def test_nothing_to_pay(client):
    assert process_daily_payouts(app, db, Escrow, BankAccount, PayoutBatch, RecordingPayFast()) is None


if __name__ == "__main__":
    import pytest
    import sys
    sys.exit(pytest.main([__file__, "-v"]))
