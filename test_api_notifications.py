#!/usr/bin/env python3
"""API tests for notifications, email preferences, search and saved searches"""

import json

from app import app, db, Notification, Gig


def add_notifications(user_id, count):
    with app.app_context():
        for i in range(count):
            db.session.add(Notification(user_id=user_id, notification_type='message',
                                        title=f'Notification {i}', message='Hello'))
        db.session.commit()


def test_notifications_read_flow(client, make_user, login):
    user_id = make_user()
    other_id = make_user()
    add_notifications(user_id, 3)
    add_notifications(other_id, 1)

    assert client.get('/api/notifications').status_code == 401

    login(user_id)
    body = client.get('/api/notifications').get_json()
    assert body['unread_count'] == 3
    assert body['notifications'][0]['title'] == 'Notification 2'

    first_id = body['notifications'][-1]['id']
    assert client.post(f'/api/notifications/{first_id}/read').get_json()['notification']['is_read']
    assert len(client.get('/api/notifications?unread=true').get_json()['notifications']) == 2

    with app.app_context():
        foreign_id = Notification.query.filter_by(user_id=other_id).first().id
    assert client.post(f'/api/notifications/{foreign_id}/read').status_code == 404

    assert client.post('/api/notifications/read-all').get_json()['updated'] == 2
    assert client.get('/api/notifications').get_json()['unread_count'] == 0


def test_notification_preferences(client, make_user, login):
    login(make_user())
    preferences = client.get('/api/notification-preferences').get_json()['preferences']
    assert all(preferences.values())

    response = client.put('/api/notification-preferences', json={'email_message': False, 'unknown': False})
    preferences = response.get_json()['preferences']
    assert preferences['email_message'] is False
    assert preferences['email_payment'] is True
    assert 'unknown' not in preferences


def test_application_notifies_client(client, hired_gig, login):
    login(hired_gig['client_id'])
    types = {n['notification_type'] for n in client.get('/api/notifications').get_json()['notifications']}
    assert 'application_received' in types

    login(hired_gig['freelancer_id'])
    types = {n['notification_type'] for n in client.get('/api/notifications').get_json()['notifications']}
    assert 'application_accepted' in types


def test_search_endpoints(client, make_user, make_gig):
    client_id = make_user(role='client')
    make_gig(client_id, title='Shopify store setup', required_skills=json.dumps(['Shopify']), province='Gauteng')
    make_gig(client_id, title='Accounting catch-up', required_skills=json.dumps(['Xero']), budget_min=4000, budget_max=5000)
    make_user(full_name='Thandi Nkosi', skills=json.dumps(['Shopify', 'Liquid']), rating=4.8)

    body = client.get('/api/search/assignments?query=shopify').get_json()
    assert [g['title'] for g in body['data']] == ['Shopify store setup']
    assert body['total'] == 1

    body = client.get('/api/search/assignments?budget_min=3000').get_json()
    assert [g['title'] for g in body['data']] == ['Accounting catch-up']
    assert client.get('/api/search/assignments?budget_min=lots').status_code == 400

    body = client.get('/api/search/freelancers', query_string={'skills': 'Shopify'}).get_json()
    assert [u['full_name'] for u in body['data']] == ['Thandi Nkosi']

    assert client.get('/api/search/skills?q=sho').get_json()['skills'] == ['Shopify']


def test_saved_search_crud_and_run(client, make_user, make_gig, login):
    client_id = make_user(role='client')
    make_gig(client_id, title='Remote Python scraper', remote_allowed=True)
    make_gig(client_id, title='On-site Python tutor', remote_allowed=False)

    owner = make_user()
    login(owner)
    assert client.post('/api/saved-searches', json={'name': 'Bad', 'search_type': 'gigs'}).status_code == 400

    response = client.post('/api/saved-searches', json={
        'name': 'Remote Python',
        'search_type': 'assignments',
        'filters': {'query': 'python', 'remote_only': True},
        'notify_new_results': True
    })
    assert response.status_code == 201
    saved = response.get_json()['saved_search']
    assert saved['last_run_at'] is None

    body = client.post(f"/api/saved-searches/{saved['id']}/run").get_json()
    assert [g['title'] for g in body['data']] == ['Remote Python scraper']
    assert client.get('/api/saved-searches').get_json()['saved_searches'][0]['last_run_at'] is not None

    response = client.put(f"/api/saved-searches/{saved['id']}", json={'filters': {'query': 'python'}})
    assert response.get_json()['saved_search']['name'] == 'Remote Python'
    body = client.post(f"/api/saved-searches/{saved['id']}/run").get_json()
    assert body['total'] == 2

    login(make_user())
    assert client.post(f"/api/saved-searches/{saved['id']}/run").status_code == 404
    assert client.delete(f"/api/saved-searches/{saved['id']}").status_code == 404

    login(owner)
    assert client.delete(f"/api/saved-searches/{saved['id']}").status_code == 200
    assert client.get('/api/saved-searches').get_json()['saved_searches'] == []
