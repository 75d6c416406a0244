#!/usr/bin/env python3
"""API tests for opening, negotiating and resolving disputes"""

from datetime import datetime, timedelta

import pytest

from app import app, db, AuditLog, Dispute, Escrow, Gig

DISPUTE = {
    'reason': 'quality_issue',
    'title': 'Design does not match brief',
    'description': 'The mockups ignore the colour palette we agreed on in the brief.',
    'evidence_files': ['https://files.example.com/brief.pdf']
}


@pytest.fixture
def open_dispute(client, hired_gig, fund_escrow, login):
    """The client opens a dispute on a funded gig"""
    assert fund_escrow(hired_gig['escrow_id'], 1500.0).status_code == 200
    login(hired_gig['client_id'])
    response = client.post('/api/disputes', json=dict(DISPUTE, gig_id=hired_gig['gig_id']))
    assert response.status_code == 201
    return dict(hired_gig, dispute_id=response.get_json()['dispute']['id'])


def escrow_status(escrow_id):
    with app.app_context():
        return db.session.get(Escrow, escrow_id).status


def gig_state(gig_id):
    with app.app_context():
        gig = db.session.get(Gig, gig_id)
        return gig.status, gig.payment_status


def test_open_freezes_escrow(client, open_dispute):
    dispute = client.get(f"/api/disputes/{open_dispute['dispute_id']}").get_json()['dispute']
    assert dispute['status'] == 'open'
    assert dispute['dispute_number'].startswith('DIS-')
    assert dispute['respondent_id'] == open_dispute['freelancer_id']
    assert dispute['reason_label'] == 'Quality of work not as agreed'
    assert dispute['evidence_files'][0]['uploaded_by'] == open_dispute['client_id']
    assert not dispute['can_respond']
    assert escrow_status(open_dispute['escrow_id']) == 'disputed'
    assert gig_state(open_dispute['gig_id']) == ('disputed', 'disputed')

    response = client.post('/api/disputes', json=dict(DISPUTE, gig_id=open_dispute['gig_id']))
    assert response.status_code == 400


def test_duplicate_active_dispute(client, hired_gig, login):
    login(hired_gig['freelancer_id'])
    assert client.post('/api/disputes', json=dict(DISPUTE, gig_id=hired_gig['gig_id'])).status_code == 201

    with app.app_context():
        # Put the gig back in progress to reach the active-dispute check
        db.session.get(Gig, hired_gig['gig_id']).status = 'in_progress'
        db.session.commit()
    response = client.post('/api/disputes', json=dict(DISPUTE, gig_id=hired_gig['gig_id']))
    assert response.status_code == 409


def test_open_validation(client, hired_gig, make_user, login):
    gig_id = hired_gig['gig_id']
    login(make_user())
    assert client.post('/api/disputes', json=dict(DISPUTE, gig_id=gig_id)).status_code == 403

    login(hired_gig['client_id'])
    assert client.post('/api/disputes', json=dict(DISPUTE, gig_id=999)).status_code == 404
    assert client.post('/api/disputes', json=dict(DISPUTE, gig_id=gig_id, reason='bored')).status_code == 400
    assert client.post('/api/disputes', json=dict(DISPUTE, gig_id=gig_id, description='Too short')).status_code == 400


def test_unfunded_escrow_is_not_frozen(client, hired_gig, login):
    login(hired_gig['client_id'])
    response = client.post('/api/disputes', json=dict(DISPUTE, gig_id=hired_gig['gig_id']))
    assert response.status_code == 201
    assert escrow_status(hired_gig['escrow_id']) == 'pending'

    login(hired_gig['freelancer_id'])
    dispute_id = response.get_json()['dispute']['id']
    client.post(f'/api/disputes/{dispute_id}/propose', json={'amount': 0})
    login(hired_gig['client_id'])
    assert client.post(f'/api/disputes/{dispute_id}/accept-proposal').status_code == 200

    assert escrow_status(hired_gig['escrow_id']) == 'refunded'
    assert gig_state(hired_gig['gig_id']) == ('cancelled', 'unpaid')


def test_respond_and_add_evidence(client, open_dispute, login):
    dispute_id = open_dispute['dispute_id']

    response = client.post(f'/api/disputes/{dispute_id}/respond', json={'response': 'I followed the brief exactly.'})
    assert response.status_code == 400

    login(open_dispute['freelancer_id'])
    assert client.get(f'/api/disputes/{dispute_id}').get_json()['dispute']['can_respond']
    response = client.post(f'/api/disputes/{dispute_id}/respond', json={'response': 'Short'})
    assert response.status_code == 400

    response = client.post(f'/api/disputes/{dispute_id}/respond', json={'response': 'I followed the brief exactly.'})
    dispute = response.get_json()['dispute']
    assert dispute['status'] == 'under_review'
    assert dispute['reviewed_at'] is not None

    response = client.post(f'/api/disputes/{dispute_id}/evidence', json={
        'files': ['https://files.example.com/v2.png'],
        'statement': 'Version two uses the agreed palette.'
    })
    dispute = response.get_json()['dispute']
    assert len(dispute['evidence_files']) == 2
    assert dispute['respondent_evidence'].endswith('Version two uses the agreed palette.')

    assert client.post(f'/api/disputes/{dispute_id}/evidence', json={}).status_code == 400


def test_outsider_cannot_view(client, open_dispute, make_user, login):
    login(make_user())
    assert client.get(f"/api/disputes/{open_dispute['dispute_id']}").status_code == 403
    assert client.get('/api/disputes').get_json()['disputes'] == []

    with app.app_context():
        entry = AuditLog.query.filter_by(event_category='authorization', resource_type='dispute').one()
        assert entry.status == 'blocked'
        assert entry.resource_id == str(open_dispute['dispute_id'])


def test_proposal_accepted_releases_agreed_amount(client, open_dispute, login):
    dispute_id = open_dispute['dispute_id']
    login(open_dispute['freelancer_id'])

    assert client.post(f'/api/disputes/{dispute_id}/propose', json={'amount': 2000}).status_code == 400
    response = client.post(f'/api/disputes/{dispute_id}/propose', json={'amount': 1000, 'message': 'Half the revisions'})
    dispute = response.get_json()['dispute']
    assert dispute['status'] == 'awaiting_response'
    assert dispute['proposed_amount'] == 1000

    assert client.post(f'/api/disputes/{dispute_id}/accept-proposal').status_code == 400

    login(open_dispute['client_id'])
    dispute = client.post(f'/api/disputes/{dispute_id}/accept-proposal').get_json()['dispute']
    assert dispute['status'] == 'resolved'
    assert dispute['resolution_decision'] == 'mutual_agreement'

    with app.app_context():
        escrow = db.session.get(Escrow, open_dispute['escrow_id'])
        assert escrow.status == 'released'
        assert escrow.amount == 1000
        assert escrow.platform_fee == 100
        assert escrow.net_amount == 900
        assert escrow.payout_status == 'pending'
    assert gig_state(open_dispute['gig_id']) == ('completed', 'paid')


def test_admin_resolves_for_client(client, open_dispute, make_user, login):
    dispute_id = open_dispute['dispute_id']
    assert client.post(f'/api/admin/disputes/{dispute_id}/resolve',
                       json={'decision': 'favor_client', 'summary': 'Work was not delivered.'}).status_code == 403
    with app.app_context():
        assert AuditLog.query.filter_by(event_category='authorization', resource_type='admin').count() == 1

    login(make_user(is_admin=True))
    response = client.post(f'/api/admin/disputes/{dispute_id}/resolve', json={'decision': 'banish', 'summary': 'Work was not delivered.'})
    assert response.status_code == 400

    response = client.post(f'/api/admin/disputes/{dispute_id}/resolve',
                           json={'decision': 'favor_client', 'summary': 'Work was not delivered.'})
    assert response.status_code == 200
    assert response.get_json()['dispute']['resolution_decision_label'] == 'In favour of the client'
    assert escrow_status(open_dispute['escrow_id']) == 'refunded'
    assert gig_state(open_dispute['gig_id']) == ('cancelled', 'refunded')

    response = client.post(f'/api/admin/disputes/{dispute_id}/resolve',
                           json={'decision': 'favor_freelancer', 'summary': 'Changed our mind.'})
    assert response.status_code == 400


def test_admin_split_payment(client, open_dispute, make_user, login):
    dispute_id = open_dispute['dispute_id']
    login(make_user(is_admin=True))

    response = client.post(f'/api/admin/disputes/{dispute_id}/resolve',
                           json={'decision': 'split_payment', 'summary': 'Half of the work was usable.'})
    assert response.status_code == 400
    assert escrow_status(open_dispute['escrow_id']) == 'disputed'

    response = client.post(f'/api/admin/disputes/{dispute_id}/resolve', json={
        'decision': 'split_payment', 'summary': 'Half of the work was usable.', 'payment_adjustment': 750
    })
    assert response.status_code == 200
    with app.app_context():
        escrow = db.session.get(Escrow, open_dispute['escrow_id'])
        assert escrow.status == 'released'
        assert escrow.amount == 750
        assert escrow.net_amount == 675


def test_admin_status_change(client, open_dispute, make_user, login):
    dispute_id = open_dispute['dispute_id']
    login(make_user(is_admin=True))

    response = client.post(f'/api/admin/disputes/{dispute_id}/status', json={'status': 'escalated'})
    assert response.get_json()['dispute']['status'] == 'escalated'
    assert client.post(f'/api/admin/disputes/{dispute_id}/status', json={'status': 'resolved'}).status_code == 400
    assert client.post(f'/api/admin/disputes/{dispute_id}/status', json={'status': 'lost'}).status_code == 400

    disputes = client.get('/api/disputes?all=true').get_json()['disputes']
    assert [d['id'] for d in disputes] == [dispute_id]


def test_closing_requires_resolution_first(client, open_dispute, make_user, login):
    dispute_id = open_dispute['dispute_id']
    login(make_user(is_admin=True))

    response = client.post(f'/api/admin/disputes/{dispute_id}/status', json={'status': 'closed'})
    assert response.status_code == 400
    assert 'resolve action' in response.get_json()['error']
    assert escrow_status(open_dispute['escrow_id']) == 'disputed'

    response = client.post(f'/api/admin/disputes/{dispute_id}/resolve',
                           json={'decision': 'favor_client', 'summary': 'Work was not delivered.'})
    assert response.status_code == 200
    assert escrow_status(open_dispute['escrow_id']) == 'refunded'

    assert client.post(f'/api/admin/disputes/{dispute_id}/status', json={'status': 'escalated'}).status_code == 400
    response = client.post(f'/api/admin/disputes/{dispute_id}/status', json={'status': 'closed'})
    assert response.get_json()['dispute']['status'] == 'closed'
    assert escrow_status(open_dispute['escrow_id']) == 'refunded'


def test_funds_arriving_mid_dispute_stay_frozen(client, hired_gig, fund_escrow, login):
    login(hired_gig['freelancer_id'])
    assert client.post('/api/disputes', json=dict(DISPUTE, gig_id=hired_gig['gig_id'])).status_code == 201

    assert fund_escrow(hired_gig['escrow_id'], 1500.0).status_code == 200
    assert escrow_status(hired_gig['escrow_id']) == 'disputed'
    assert gig_state(hired_gig['gig_id']) == ('disputed', 'disputed')


def test_overdue_flag(client, open_dispute, login):
    with app.app_context():
        dispute = db.session.get(Dispute, open_dispute['dispute_id'])
        dispute.response_deadline = datetime.utcnow() - timedelta(hours=1)
        db.session.commit()

    login(open_dispute['freelancer_id'])
    dispute = client.get(f"/api/disputes/{open_dispute['dispute_id']}").get_json()['dispute']
    assert dispute['is_overdue']
    assert not dispute['can_respond']
