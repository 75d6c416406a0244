#!/usr/bin/env python3
"""API tests for two-way reviews and rating aggregation"""

from datetime import timedelta

import pytest

from app import app, db, Review, User

REVIEW = {
    'rating': 4,
    'communication_rating': 5,
    'quality_rating': 4,
    'timeliness_rating': 3,
    'professionalism_rating': 4,
    'review_text': 'Delivered a clean design and answered every question quickly.',
    'would_work_again': True
}


@pytest.fixture
def completed_gig(client, make_user, make_gig):
    client_id = make_user(role='client')
    freelancer_id = make_user()
    gig_id = make_gig(client_id, status='completed', accepted_freelancer_id=freelancer_id)
    return client_id, freelancer_id, gig_id


def test_only_completed_gigs(client, make_user, make_gig, login):
    client_id = make_user(role='client')
    freelancer_id = make_user()
    gig_id = make_gig(client_id, status='in_progress', accepted_freelancer_id=freelancer_id)

    login(client_id)
    response = client.post('/api/reviews', json=dict(REVIEW, gig_id=gig_id))
    assert response.status_code == 400
    assert client.get(f'/api/gigs/{gig_id}/can-review').get_json()['can_review'] is False
    assert client.post('/api/reviews', json=dict(REVIEW, gig_id=999)).status_code == 404

    login(make_user())
    assert client.post('/api/reviews', json=dict(REVIEW, gig_id=gig_id)).status_code == 403


def test_both_sides_review_once(client, completed_gig, login):
    client_id, freelancer_id, gig_id = completed_gig

    login(client_id)
    eligibility = client.get(f'/api/gigs/{gig_id}/can-review').get_json()
    assert eligibility['can_review']
    assert eligibility['reviewee_id'] == freelancer_id

    response = client.post('/api/reviews', json=dict(REVIEW, gig_id=gig_id))
    assert response.status_code == 201
    review = response.get_json()['review']
    assert review['review_type'] == 'client_to_freelancer'
    assert review['reviewee_id'] == freelancer_id

    assert client.post('/api/reviews', json=dict(REVIEW, gig_id=gig_id)).status_code == 409
    assert client.get(f'/api/gigs/{gig_id}/can-review').get_json()['can_review'] is False

    login(freelancer_id)
    response = client.post('/api/reviews', json=dict(REVIEW, gig_id=gig_id, rating=5))
    assert response.status_code == 201
    assert response.get_json()['review']['review_type'] == 'freelancer_to_client'

    assert len(client.get(f'/api/gigs/{gig_id}/reviews').get_json()['reviews']) == 2
    given = client.get(f'/api/users/{freelancer_id}/reviews?type=given').get_json()['reviews']
    assert [r['reviewee_id'] for r in given] == [client_id]

    with app.app_context():
        assert db.session.get(User, freelancer_id).rating == 4.0
        assert db.session.get(User, client_id).rating == 5.0


def test_rating_validation(client, completed_gig, login):
    client_id, _, gig_id = completed_gig
    login(client_id)
    for bad in ({'rating': 6}, {'rating': None}, {'rating': True}, {'quality_rating': 0}, {'review_text': 'Meh'}):
        assert client.post('/api/reviews', json=dict(REVIEW, gig_id=gig_id, **bad)).status_code == 400


def test_review_stats(client, completed_gig, make_user, make_gig, login):
    client_id, freelancer_id, gig_id = completed_gig
    login(client_id)
    client.post('/api/reviews', json=dict(REVIEW, gig_id=gig_id))

    other_client = make_user(role='client')
    other_gig = make_gig(other_client, status='completed', accepted_freelancer_id=freelancer_id)
    login(other_client)
    client.post('/api/reviews', json={
        'gig_id': other_gig, 'rating': 2,
        'review_text': 'Missed two deadlines without telling us.', 'would_work_again': False
    })

    stats = client.get(f'/api/users/{freelancer_id}/review-stats').get_json()['stats']
    assert stats['total_reviews'] == 2
    assert stats['average_rating'] == 3.0
    assert stats['rating_distribution'] == {'1': 0, '2': 1, '3': 0, '4': 1, '5': 0}
    assert stats['would_work_again_percentage'] == 50
    assert stats['average_communication_rating'] == 5.0
    assert stats['average_timeliness_rating'] == 3.0

    with app.app_context():
        freelancer = db.session.get(User, freelancer_id)
        assert freelancer.rating == 3.0
        assert freelancer.review_count == 2


def test_update_within_window(client, completed_gig, login):
    client_id, freelancer_id, gig_id = completed_gig
    login(client_id)
    review_id = client.post('/api/reviews', json=dict(REVIEW, gig_id=gig_id)).get_json()['review']['id']

    response = client.put(f'/api/reviews/{review_id}', json={'rating': 2, 'quality_rating': 1})
    assert response.get_json()['review']['rating'] == 2
    assert client.put(f'/api/reviews/{review_id}', json={'rating': 9}).status_code == 400

    with app.app_context():
        assert db.session.get(User, freelancer_id).rating == 2.0
        review = db.session.get(Review, review_id)
        review.created_at = review.created_at - timedelta(hours=25)
        db.session.commit()

    assert client.put(f'/api/reviews/{review_id}', json={'rating': 5}).status_code == 400

    login(freelancer_id)
    assert client.put(f'/api/reviews/{review_id}', json={'rating': 5}).status_code == 403


def test_delete_recalculates_rating(client, completed_gig, login):
    client_id, freelancer_id, gig_id = completed_gig
    login(client_id)
    review_id = client.post('/api/reviews', json=dict(REVIEW, gig_id=gig_id)).get_json()['review']['id']

    login(freelancer_id)
    assert client.delete(f'/api/reviews/{review_id}').status_code == 403

    login(client_id)
    assert client.delete(f'/api/reviews/{review_id}').status_code == 200
    with app.app_context():
        freelancer = db.session.get(User, freelancer_id)
        assert freelancer.rating == 0.0
        assert freelancer.review_count == 0


def test_helpful_votes(client, completed_gig, make_user, login):
    client_id, _, gig_id = completed_gig
    login(client_id)
    review_id = client.post('/api/reviews', json=dict(REVIEW, gig_id=gig_id)).get_json()['review']['id']
    assert client.post(f'/api/reviews/{review_id}/helpful').status_code == 400

    login(make_user())
    assert client.post(f'/api/reviews/{review_id}/helpful').get_json()['helpful_count'] == 1
    assert client.post('/api/reviews/999/helpful').status_code == 404
