"""
Shared pytest fixtures: an in-memory database, a test client and user/gig factories
"""

import os
import sys
import tempfile

os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['SESSION_SECRET'] = 'test-secret'
os.environ['AUDIT_LOG_DIR'] = tempfile.mkdtemp(prefix='trustwork-audit-')
os.environ.pop('ENABLE_SCHEDULER', None)
os.environ.pop('AUDIT_WEBHOOK_URL', None)
for key in ('SENDGRID_API_KEY', 'SENDGRID_FROM_EMAIL', 'PAYFAST_MERCHANT_ID', 'PAYFAST_MERCHANT_KEY', 'PAYFAST_PASSPHRASE'):
    os.environ.pop(key, None)

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import json
import pytest
from werkzeug.security import generate_password_hash

import app as app_module
from app import app, db, User, Gig, SkillTestTemplate, SkillTestQuestion, login_attempts, api_rate_limits


@pytest.fixture
def client():
    app.config['TESTING'] = True
    with app.app_context():
        db.drop_all()
        db.create_all()
    login_attempts.clear()
    api_rate_limits.clear()

    with app.test_client() as test_client:
        yield test_client

    with app.app_context():
        db.session.remove()


@pytest.fixture
def make_user(client):
    """Create a user and return its id"""
    counter = {'n': 0}

    def _make_user(role='freelancer', is_admin=False, **fields):
        counter['n'] += 1
        username = fields.pop('username', f"user{counter['n']}")
        with app.app_context():
            user = User(
                username=username,
                email=fields.pop('email', f"{username}@example.com"),
                password_hash=generate_password_hash('Password123'),
                role=role,
                is_admin=is_admin,
                **fields
            )
            db.session.add(user)
            db.session.commit()
            return user.id

    return _make_user


@pytest.fixture
def login(client):
    def _login(user_id):
        with client.session_transaction() as sess:
            sess['user_id'] = user_id
    return _login


@pytest.fixture
def make_gig(client):
    """Create an open gig directly in the database and return its id"""
    def _make_gig(client_id, **fields):
        with app.app_context():
            gig = Gig(
                client_id=client_id,
                title=fields.pop('title', 'Build a landing page'),
                description=fields.pop('description', 'A responsive landing page for a Cape Town bakery.'),
                budget_min=fields.pop('budget_min', 1000.0),
                budget_max=fields.pop('budget_max', 2000.0),
                status=fields.pop('status', 'open'),
                **fields
            )
            db.session.add(gig)
            db.session.commit()
            return gig.id
    return _make_gig


@pytest.fixture
def make_template(client):
    """Create a skill test template with `per_level` questions per difficulty; answer is always B"""
    def _make_template(per_level=15):
        with app.app_context():
            template = SkillTestTemplate(name='Python Basics', category='development')
            db.session.add(template)
            db.session.flush()
            for difficulty in ('entry', 'mid', 'senior'):
                for i in range(per_level):
                    db.session.add(SkillTestQuestion(
                        template_id=template.id,
                        difficulty=difficulty,
                        question_text=f'{difficulty} question {i}',
                        option_a='wrong', option_b='right', option_c='wrong', option_d='wrong',
                        correct_answer='B',
                        explanation='B is right'
                    ))
            db.session.commit()
            return template.id
    return _make_template


@pytest.fixture
def hired_gig(client, make_user, make_gig, login):
    """
    A gig with an accepted application: returns ids for client, freelancer,
    gig, escrow and the milestones (two, 40/60)
    """
    client_id = make_user(role='client')
    freelancer_id = make_user(role='freelancer')
    gig_id = make_gig(client_id, milestone_plan=json.dumps([
        {'title': 'Design', 'description': 'Mockups', 'percentage': 40},
        {'title': 'Build', 'description': 'Implementation', 'percentage': 60}
    ]))

    login(freelancer_id)
    response = client.post(f'/api/gigs/{gig_id}/apply', json={
        'proposal': 'I have built many landing pages for small businesses.',
        'bid_amount': 1500
    })
    assert response.status_code == 201
    application_id = response.get_json()['application']['id']

    login(client_id)
    response = client.post(f'/api/applications/{application_id}/review', json={'action': 'accept'})
    assert response.status_code == 200
    body = response.get_json()

    return {
        'client_id': client_id,
        'freelancer_id': freelancer_id,
        'gig_id': gig_id,
        'application_id': application_id,
        'escrow_id': body['escrow']['id'],
        'milestone_ids': [m['id'] for m in body['milestones']]
    }


@pytest.fixture
def fund_escrow(client, monkeypatch):
    """Post a signed COMPLETE notification from a configured PayFast sandbox account"""
    from payfast import PayFastClient, PayFastConfig, generate_signature

    monkeypatch.setenv('PAYFAST_MERCHANT_ID', '10000100')
    monkeypatch.setenv('PAYFAST_MERCHANT_KEY', '46f0cd694581a')
    monkeypatch.setenv('PAYFAST_PASSPHRASE', 'jt7NOE43FZPn')
    monkeypatch.setenv('PAYFAST_SANDBOX', 'true')
    monkeypatch.setattr(app_module, 'payfast_client', PayFastClient(PayFastConfig()))

    def _fund(escrow_id, amount, status='COMPLETE'):
        payload = {
            'm_payment_id': f'ESC-{escrow_id}',
            'pf_payment_id': '1089250',
            'payment_status': status,
            'amount_gross': f'{amount:.2f}',
            'merchant_id': '10000100'
        }
        payload['signature'] = generate_signature(payload, 'jt7NOE43FZPn')
        return client.post('/api/payfast/webhook', data=payload)

    return _fund
