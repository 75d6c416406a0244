from flask import Flask, request, jsonify, session
from flask_cors import CORS
from flask_sqlalchemy import SQLAlchemy
from werkzeug.security import generate_password_hash, check_password_hash
from datetime import datetime, timedelta
from functools import wraps
from email_validator import validate_email, EmailNotValidError
from dotenv import load_dotenv
from sqlalchemy import and_, or_
import os
import secrets
import json
import re

import milestone_workflow
import escrow_service
import skill_tests
import disputes as dispute_rules
from escrow_service import EscrowError
from skill_tests import SkillTestError
from search_service import SearchService, validate_saved_search
from payfast import get_payfast_client
from email_service import email_service
from audit_logger import init_audit_logger

load_dotenv()

app = Flask(__name__)

# Set secret key with fallback
app.secret_key = os.environ.get("SESSION_SECRET") or os.environ.get("SECRET_KEY")
if not app.secret_key:
    # In production, always set SESSION_SECRET or SECRET_KEY environment variable
    app.secret_key = secrets.token_hex(32)
    print("WARNING: Using auto-generated SECRET_KEY. Set SESSION_SECRET or SECRET_KEY environment variable in production!")

app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///trustwork.db')
if app.config['SQLALCHEMY_DATABASE_URI'].startswith('postgres://'):
    app.config['SQLALCHEMY_DATABASE_URI'] = app.config['SQLALCHEMY_DATABASE_URI'].replace('postgres://', 'postgresql+psycopg2://', 1)
elif app.config['SQLALCHEMY_DATABASE_URI'].startswith('postgresql://'):
    app.config['SQLALCHEMY_DATABASE_URI'] = app.config['SQLALCHEMY_DATABASE_URI'].replace('postgresql://', 'postgresql+psycopg2://', 1)
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

# Secure session configuration
app.config['SESSION_COOKIE_SECURE'] = os.environ.get('FLASK_ENV') == 'production'
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(hours=24)

BASE_URL = os.environ.get('BASE_URL', 'http://localhost:5000')

db = SQLAlchemy(app)

# Restrict to specific origins in production
allowed_origins = os.environ.get('ALLOWED_ORIGINS', '*').split(',')
CORS(app,
     origins=allowed_origins,
     supports_credentials=True,
     max_age=3600)

# Rate limiting storage (in-memory, per process)
login_attempts = {}
api_rate_limits = {}

# General API rate limiting
def api_rate_limit(requests_per_minute=60):
    """Rate limit decorator for general API endpoints"""
    def decorator(f):
        @wraps(f)
        def wrapped(*args, **kwargs):
            identifier = f"{request.remote_addr}:{f.__name__}"
            current_time = datetime.utcnow()

            if identifier not in api_rate_limits:
                api_rate_limits[identifier] = {'requests': [], 'blocked_until': None}

            rate_data = api_rate_limits[identifier]

            if rate_data['blocked_until'] and current_time < rate_data['blocked_until']:
                remaining = int((rate_data['blocked_until'] - current_time).total_seconds())
                return jsonify({'error': f'Rate limit exceeded. Try again in {remaining} seconds'}), 429

            one_minute_ago = current_time - timedelta(minutes=1)
            rate_data['requests'] = [t for t in rate_data['requests'] if t > one_minute_ago]

            if len(rate_data['requests']) >= requests_per_minute:
                rate_data['blocked_until'] = current_time + timedelta(seconds=60)
                return jsonify({'error': 'Rate limit exceeded. Please wait a moment.'}), 429

            rate_data['requests'].append(current_time)

            return f(*args, **kwargs)
        return wrapped
    return decorator

_last_cleanup = datetime.utcnow()

def cleanup_rate_limits():
    """Remove stale rate limit entries older than 1 hour"""
    global _last_cleanup
    current_time = datetime.utcnow()
    cutoff = current_time - timedelta(hours=1)

    stale_logins = [k for k, v in login_attempts.items()
                    if v['first_attempt'] < cutoff and
                    (v['locked_until'] is None or v['locked_until'] < current_time)]
    for k in stale_logins:
        del login_attempts[k]

    stale_api = [k for k, v in api_rate_limits.items()
                 if not v['requests'] or max(v['requests']) < cutoff]
    for k in stale_api:
        del api_rate_limits[k]

    _last_cleanup = current_time

@app.before_request
def before_request_handler():
    """Run periodic cleanup on rate limit storage"""
    if (datetime.utcnow() - _last_cleanup).total_seconds() > 300:
        cleanup_rate_limits()

@app.after_request
def set_security_headers(response):
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'DENY'
    response.headers['X-XSS-Protection'] = '1; mode=block'
    response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
    response.headers['Content-Security-Policy'] = "default-src 'self'"
    return response

# Input validation functions
def validate_password_strength(password):
    """Validate password meets security requirements"""
    if len(password) < 8:
        return False, "Password must be at least 8 characters long"
    if not re.search(r'[A-Z]', password):
        return False, "Password must contain at least one uppercase letter"
    if not re.search(r'[a-z]', password):
        return False, "Password must contain at least one lowercase letter"
    if not re.search(r'\d', password):
        return False, "Password must contain at least one number"
    return True, "Password is valid"

def validate_username(username):
    """Validate username format"""
    if not username or len(username) < 3 or len(username) > 30:
        return False, "Username must be between 3 and 30 characters"
    if not re.match(r'^[a-zA-Z0-9_]+$', username):
        return False, "Username can only contain letters, numbers, and underscores"
    return True, "Username is valid"

def validate_length(text, field, min_length, max_length):
    length = len((text or '').strip())
    if length < min_length or length > max_length:
        return False, f"{field} must be between {min_length} and {max_length} characters"
    return True, f"{field} is valid"

def sanitize_input(text, max_length=1000):
    """Trim and truncate free-text input"""
    if not text:
        return text
    text = text.strip()
    if len(text) > max_length:
        text = text[:max_length]
    return text

def load_json(value, default):
    if not value:
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default

def isoformat(value):
    return value.isoformat() if value else None

# Rate limiting decorator
def rate_limit(max_attempts=5, window_minutes=15, lockout_minutes=30):
    """Rate limit decorator to prevent brute force attacks"""
    def decorator(f):
        @wraps(f)
        def wrapped(*args, **kwargs):
            identifier = request.remote_addr
            current_time = datetime.utcnow()

            if identifier not in login_attempts:
                login_attempts[identifier] = {'count': 0, 'first_attempt': current_time, 'locked_until': None}

            attempt_data = login_attempts[identifier]

            if attempt_data['locked_until'] and current_time < attempt_data['locked_until']:
                remaining = int((attempt_data['locked_until'] - current_time).total_seconds() / 60)
                return jsonify({'error': f'Too many failed attempts. Account locked for {remaining} more minutes'}), 429

            # Reset if window has passed
            if (current_time - attempt_data['first_attempt']).total_seconds() > window_minutes * 60:
                attempt_data['count'] = 0
                attempt_data['first_attempt'] = current_time
                attempt_data['locked_until'] = None

            if attempt_data['count'] >= max_attempts:
                attempt_data['locked_until'] = current_time + timedelta(minutes=lockout_minutes)
                return jsonify({'error': f'Too many failed attempts. Account locked for {lockout_minutes} minutes'}), 429

            attempt_data['count'] += 1

            return f(*args, **kwargs)
        return wrapped
    return decorator

def reset_rate_limit(identifier):
    """Reset rate limit for successful login"""
    if identifier in login_attempts:
        login_attempts[identifier] = {'count': 0, 'first_attempt': datetime.utcnow(), 'locked_until': None}

# Login required decorator for API routes
def login_required(f):
    """Decorator to require user authentication for API routes"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return jsonify({'error': 'Unauthorized - Please login'}), 401
        return f(*args, **kwargs)
    return decorated_function

# Admin authentication decorator
def admin_required(f):
    """Decorator to require admin authentication"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return jsonify({'error': 'Unauthorized - Please login'}), 401

        user = db.session.get(User, session['user_id'])
        if not user or not user.is_admin:
            return deny_access('admin', request.path, f'Admin access denied: {request.method} {request.path}',
                               'Forbidden - Admin access required')

        return f(*args, **kwargs)
    return decorated_function

# Database Models
class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(120))
    role = db.Column(db.String(20), default='freelancer')  # freelancer, client, both
    is_admin = db.Column(db.Boolean, default=False)
    skills = db.Column(db.Text)  # JSON list
    province = db.Column(db.String(50))
    hourly_rate = db.Column(db.Float)
    experience_level = db.Column(db.String(20))  # entry, intermediate, expert
    bio = db.Column(db.Text)
    is_verified = db.Column(db.Boolean, default=False)
    rating = db.Column(db.Float, default=0.0)
    review_count = db.Column(db.Integer, default=0)
    completed_gigs = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    @property
    def is_freelancer(self):
        return self.role in ('freelancer', 'both')

    @property
    def is_client(self):
        return self.role in ('client', 'both')

    def to_dict(self, include_private=False):
        data = {
            'id': self.id,
            'username': self.username,
            'full_name': self.full_name,
            'role': self.role,
            'skills': load_json(self.skills, []),
            'province': self.province,
            'hourly_rate': self.hourly_rate,
            'experience_level': self.experience_level,
            'bio': self.bio,
            'is_verified': self.is_verified,
            'rating': self.rating,
            'review_count': self.review_count,
            'completed_gigs': self.completed_gigs,
            'created_at': isoformat(self.created_at)
        }
        if include_private:
            data['email'] = self.email
            data['is_admin'] = self.is_admin
        return data

class BankAccount(db.Model):
    """Freelancer bank account used for PayFast payouts"""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, unique=True)
    account_holder_name = db.Column(db.String(120), nullable=False)
    bank_name = db.Column(db.String(100), nullable=False)
    account_number = db.Column(db.String(30), nullable=False)
    branch_code = db.Column(db.String(10), nullable=False)
    account_type = db.Column(db.String(20), default='savings')  # savings, current, transmission
    is_verified = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'account_holder_name': self.account_holder_name,
            'bank_name': self.bank_name,
            'account_number': '****' + self.account_number[-4:] if self.account_number else None,
            'branch_code': self.branch_code,
            'account_type': self.account_type,
            'is_verified': self.is_verified
        }

class Gig(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    accepted_freelancer_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(50))
    budget_min = db.Column(db.Float, nullable=False)
    budget_max = db.Column(db.Float, nullable=False)
    currency = db.Column(db.String(3), default='ZAR')
    required_skills = db.Column(db.Text)  # JSON list
    experience_level = db.Column(db.String(20))
    province = db.Column(db.String(50))
    remote_allowed = db.Column(db.Boolean, default=True)
    urgent = db.Column(db.Boolean, default=False)
    deadline = db.Column(db.DateTime)
    milestone_plan = db.Column(db.Text)  # JSON list of {title, description, percentage}
    status = db.Column(db.String(20), default='open')  # draft, open, in_progress, completed, cancelled, disputed
    payment_status = db.Column(db.String(20), default='unpaid')  # unpaid, paid, partially_paid, refunded, disputed
    requires_skill_test = db.Column(db.Boolean, default=False)
    skill_test_template_id = db.Column(db.Integer, db.ForeignKey('skill_test_template.id'))
    skill_test_difficulty = db.Column(db.String(10))  # entry, mid, senior
    skill_test_passing_score = db.Column(db.Integer, default=skill_tests.DEFAULT_PASSING_SCORE)
    cancel_reason = db.Column(db.Text)
    completed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'client_id': self.client_id,
            'accepted_freelancer_id': self.accepted_freelancer_id,
            'title': self.title,
            'description': self.description,
            'category': self.category,
            'budget_min': self.budget_min,
            'budget_max': self.budget_max,
            'currency': self.currency,
            'required_skills': load_json(self.required_skills, []),
            'experience_level': self.experience_level,
            'province': self.province,
            'remote_allowed': self.remote_allowed,
            'urgent': self.urgent,
            'deadline': isoformat(self.deadline),
            'milestone_plan': load_json(self.milestone_plan, []),
            'status': self.status,
            'payment_status': self.payment_status,
            'requires_skill_test': self.requires_skill_test,
            'skill_test_template_id': self.skill_test_template_id,
            'skill_test_difficulty': self.skill_test_difficulty,
            'skill_test_passing_score': self.skill_test_passing_score,
            'cancel_reason': self.cancel_reason,
            'completed_at': isoformat(self.completed_at),
            'created_at': isoformat(self.created_at)
        }

class GigStatusHistory(db.Model):
    """Timeline of gig status changes"""
    id = db.Column(db.Integer, primary_key=True)
    gig_id = db.Column(db.Integer, db.ForeignKey('gig.id'), nullable=False)
    old_status = db.Column(db.String(20))
    new_status = db.Column(db.String(20), nullable=False)
    changed_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    note = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'old_status': self.old_status,
            'new_status': self.new_status,
            'changed_by': self.changed_by,
            'note': self.note,
            'created_at': isoformat(self.created_at)
        }

class Application(db.Model):
    __table_args__ = (
        db.UniqueConstraint('gig_id', 'freelancer_id', name='unique_application_per_gig'),
    )
    id = db.Column(db.Integer, primary_key=True)
    gig_id = db.Column(db.Integer, db.ForeignKey('gig.id'), nullable=False)
    freelancer_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    proposal = db.Column(db.Text, nullable=False)
    cover_letter = db.Column(db.Text)
    bid_amount = db.Column(db.Float, nullable=False)
    estimated_duration = db.Column(db.String(50))
    status = db.Column(db.String(20), default='pending')  # pending, reviewing, accepted, rejected, withdrawn
    rejection_reason = db.Column(db.Text)
    reviewed_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    reviewed_at = db.Column(db.DateTime)
    skill_test_attempt_id = db.Column(db.Integer, db.ForeignKey('skill_test_attempt.id'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'gig_id': self.gig_id,
            'freelancer_id': self.freelancer_id,
            'proposal': self.proposal,
            'cover_letter': self.cover_letter,
            'bid_amount': self.bid_amount,
            'estimated_duration': self.estimated_duration,
            'status': self.status,
            'rejection_reason': self.rejection_reason,
            'reviewed_by': self.reviewed_by,
            'reviewed_at': isoformat(self.reviewed_at),
            'skill_test_attempt_id': self.skill_test_attempt_id,
            'created_at': isoformat(self.created_at)
        }

class Escrow(db.Model):
    """Funds paid in by the client and held until milestones are approved"""
    id = db.Column(db.Integer, primary_key=True)
    gig_id = db.Column(db.Integer, db.ForeignKey('gig.id'), nullable=False)
    payer_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    recipient_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    platform_fee = db.Column(db.Float, default=0.0)
    net_amount = db.Column(db.Float, nullable=False)
    currency = db.Column(db.String(3), default='ZAR')
    payment_method = db.Column(db.String(20), default='payfast')
    status = db.Column(db.String(20), default='pending')  # pending, held, released, refunded, disputed
    payfast_payment_id = db.Column(db.String(100))
    payout_status = db.Column(db.String(20))  # pending, processing, completed, failed
    payout_reference = db.Column(db.String(100))
    payout_error = db.Column(db.Text)
    payout_batch_id = db.Column(db.Integer, db.ForeignKey('payout_batch.id'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    held_at = db.Column(db.DateTime)
    released_at = db.Column(db.DateTime)
    refunded_at = db.Column(db.DateTime)
    payout_initiated_at = db.Column(db.DateTime)
    payout_completed_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'gig_id': self.gig_id,
            'payer_id': self.payer_id,
            'recipient_id': self.recipient_id,
            'amount': self.amount,
            'platform_fee': self.platform_fee,
            'net_amount': self.net_amount,
            'currency': self.currency,
            'payment_method': self.payment_method,
            'status': self.status,
            'status_label': escrow_service.get_status_label(self.status),
            'status_color': escrow_service.get_status_color(self.status),
            'payfast_payment_id': self.payfast_payment_id,
            'payout_status': self.payout_status,
            'payout_reference': self.payout_reference,
            'payout_error': self.payout_error,
            'created_at': isoformat(self.created_at),
            'held_at': isoformat(self.held_at),
            'released_at': isoformat(self.released_at),
            'refunded_at': isoformat(self.refunded_at),
            'payout_completed_at': isoformat(self.payout_completed_at)
        }

class PayoutBatch(db.Model):
    """One run of the daily payout job"""
    id = db.Column(db.Integer, primary_key=True)
    batch_reference = db.Column(db.String(50), unique=True, nullable=False)
    total_amount = db.Column(db.Float, default=0.0)
    total_fees = db.Column(db.Float, default=0.0)
    payout_count = db.Column(db.Integer, default=0)
    successful_payouts = db.Column(db.Integer, default=0)
    failed_payouts = db.Column(db.Integer, default=0)
    status = db.Column(db.String(20), default='pending')  # pending, processing, completed, partial, failed
    started_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'batch_reference': self.batch_reference,
            'total_amount': self.total_amount,
            'total_fees': self.total_fees,
            'payout_count': self.payout_count,
            'successful_payouts': self.successful_payouts,
            'failed_payouts': self.failed_payouts,
            'status': self.status,
            'started_at': isoformat(self.started_at),
            'completed_at': isoformat(self.completed_at)
        }

class Milestone(db.Model):
    """Payable unit of a gig with its own approval and revision cycle"""
    id = db.Column(db.Integer, primary_key=True)
    gig_id = db.Column(db.Integer, db.ForeignKey('gig.id'), nullable=False)
    escrow_id = db.Column(db.Integer, db.ForeignKey('escrow.id'))
    freelancer_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    order_index = db.Column(db.Integer, nullable=False, default=0)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    percentage = db.Column(db.Float)
    amount = db.Column(db.Float, nullable=False)
    due_date = db.Column(db.DateTime)
    status = db.Column(db.String(30), default='pending')
    started_at = db.Column(db.DateTime)
    submitted_at = db.Column(db.DateTime)
    approved_at = db.Column(db.DateTime)
    deliverable_files = db.Column(db.Text)  # JSON list
    deliverable_links = db.Column(db.Text)  # JSON list
    submission_notes = db.Column(db.Text)
    client_notes = db.Column(db.Text)
    revision_requested = db.Column(db.Boolean, default=False)
    revision_count = db.Column(db.Integer, default=0)
    max_revisions = db.Column(db.Integer, default=milestone_workflow.MAX_REVISIONS_PER_MILESTONE)
    payment_released = db.Column(db.Boolean, default=False)
    payment_released_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'gig_id': self.gig_id,
            'escrow_id': self.escrow_id,
            'freelancer_id': self.freelancer_id,
            'order_index': self.order_index,
            'title': self.title,
            'description': self.description,
            'percentage': self.percentage,
            'amount': self.amount,
            'due_date': isoformat(self.due_date),
            'status': self.status,
            'status_label': milestone_workflow.get_status_label(self.status),
            'status_color': milestone_workflow.get_status_color(self.status),
            'started_at': isoformat(self.started_at),
            'submitted_at': isoformat(self.submitted_at),
            'approved_at': isoformat(self.approved_at),
            'deliverable_files': load_json(self.deliverable_files, []),
            'deliverable_links': load_json(self.deliverable_links, []),
            'submission_notes': self.submission_notes,
            'client_notes': self.client_notes,
            'revision_requested': self.revision_requested,
            'revision_count': self.revision_count,
            'max_revisions': self.max_revisions,
            'revisions_remaining': milestone_workflow.revisions_remaining(self),
            'payment_released': self.payment_released,
            'payment_released_at': isoformat(self.payment_released_at)
        }

class Dispute(db.Model):
    """Dispute between the client and freelancer on a gig"""
    id = db.Column(db.Integer, primary_key=True)
    dispute_number = db.Column(db.String(50), unique=True, nullable=False)
    gig_id = db.Column(db.Integer, db.ForeignKey('gig.id'), nullable=False)
    escrow_id = db.Column(db.Integer, db.ForeignKey('escrow.id'))
    initiated_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    respondent_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    reason = db.Column(db.String(50), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    evidence_files = db.Column(db.Text)  # JSON list of {url, uploaded_by, uploaded_at}
    initiator_evidence = db.Column(db.Text)
    respondent_evidence = db.Column(db.Text)
    proposed_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    proposed_amount = db.Column(db.Float)
    status = db.Column(db.String(30), default='open')
    resolution_decision = db.Column(db.String(30))
    resolution_summary = db.Column(db.Text)
    payment_adjustment = db.Column(db.Float)
    response_deadline = db.Column(db.DateTime)
    reviewed_at = db.Column(db.DateTime)
    resolved_at = db.Column(db.DateTime)
    resolved_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self, viewer_id=None):
        data = {
            'id': self.id,
            'dispute_number': self.dispute_number,
            'gig_id': self.gig_id,
            'escrow_id': self.escrow_id,
            'initiated_by': self.initiated_by,
            'respondent_id': self.respondent_id,
            'reason': self.reason,
            'reason_label': dispute_rules.get_reason_label(self.reason),
            'title': self.title,
            'description': self.description,
            'evidence_files': load_json(self.evidence_files, []),
            'initiator_evidence': self.initiator_evidence,
            'respondent_evidence': self.respondent_evidence,
            'proposed_by': self.proposed_by,
            'proposed_amount': self.proposed_amount,
            'status': self.status,
            'status_label': dispute_rules.get_status_label(self.status),
            'status_color': dispute_rules.get_status_color(self.status),
            'resolution_decision': self.resolution_decision,
            'resolution_decision_label': dispute_rules.get_decision_label(self.resolution_decision) if self.resolution_decision else None,
            'resolution_summary': self.resolution_summary,
            'payment_adjustment': self.payment_adjustment,
            'response_deadline': isoformat(self.response_deadline),
            'is_overdue': dispute_rules.is_overdue(self),
            'reviewed_at': isoformat(self.reviewed_at),
            'resolved_at': isoformat(self.resolved_at),
            'created_at': isoformat(self.created_at)
        }
        if viewer_id is not None:
            data['can_respond'] = dispute_rules.can_respond(self, viewer_id)[0]
        return data

class Conversation(db.Model):
    """Conversation between two users; participant_1_id is always the lower id"""
    __table_args__ = (
        db.UniqueConstraint('participant_1_id', 'participant_2_id', name='unique_conversation_pair'),
    )
    id = db.Column(db.Integer, primary_key=True)
    participant_1_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    participant_2_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    gig_id = db.Column(db.Integer, db.ForeignKey('gig.id'))
    application_id = db.Column(db.Integer, db.ForeignKey('application.id'))
    last_message_at = db.Column(db.DateTime)
    last_message_preview = db.Column(db.String(100))
    participant_1_unread_count = db.Column(db.Integer, default=0)
    participant_2_unread_count = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def has_participant(self, user_id):
        return user_id in (self.participant_1_id, self.participant_2_id)

    def other_participant_id(self, user_id):
        return self.participant_2_id if self.participant_1_id == user_id else self.participant_1_id

    def unread_count_for(self, user_id):
        if user_id == self.participant_1_id:
            return self.participant_1_unread_count or 0
        return self.participant_2_unread_count or 0

    def to_dict(self, viewer_id=None):
        data = {
            'id': self.id,
            'participant_1_id': self.participant_1_id,
            'participant_2_id': self.participant_2_id,
            'gig_id': self.gig_id,
            'application_id': self.application_id,
            'last_message_at': isoformat(self.last_message_at),
            'last_message_preview': self.last_message_preview,
            'created_at': isoformat(self.created_at)
        }
        if viewer_id is not None:
            other = db.session.get(User, self.other_participant_id(viewer_id))
            data['other_participant'] = other.to_dict() if other else None
            data['unread_count'] = self.unread_count_for(viewer_id)
        return data

class Message(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    conversation_id = db.Column(db.Integer, db.ForeignKey('conversation.id'), nullable=False)
    sender_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    content = db.Column(db.Text, nullable=False)
    attachment_url = db.Column(db.String(500))
    attachment_name = db.Column(db.String(255))
    attachment_size = db.Column(db.Integer)
    read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime)
    edited = db.Column(db.Boolean, default=False)
    edited_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'conversation_id': self.conversation_id,
            'sender_id': self.sender_id,
            'content': self.content,
            'attachment_url': self.attachment_url,
            'attachment_name': self.attachment_name,
            'attachment_size': self.attachment_size,
            'read': self.read,
            'read_at': isoformat(self.read_at),
            'edited': self.edited,
            'edited_at': isoformat(self.edited_at),
            'created_at': isoformat(self.created_at)
        }

class Review(db.Model):
    __table_args__ = (
        db.UniqueConstraint('gig_id', 'reviewer_id', 'reviewee_id', name='unique_review_per_gig'),
    )
    id = db.Column(db.Integer, primary_key=True)
    gig_id = db.Column(db.Integer, db.ForeignKey('gig.id'), nullable=False)
    reviewer_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    reviewee_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    review_type = db.Column(db.String(30), nullable=False)  # client_to_freelancer, freelancer_to_client
    rating = db.Column(db.Integer, nullable=False)  # 1-5 stars
    communication_rating = db.Column(db.Integer)
    quality_rating = db.Column(db.Integer)
    timeliness_rating = db.Column(db.Integer)
    professionalism_rating = db.Column(db.Integer)
    review_text = db.Column(db.Text, nullable=False)
    would_work_again = db.Column(db.Boolean)
    helpful_count = db.Column(db.Integer, default=0)
    is_public = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'gig_id': self.gig_id,
            'reviewer_id': self.reviewer_id,
            'reviewee_id': self.reviewee_id,
            'review_type': self.review_type,
            'rating': self.rating,
            'communication_rating': self.communication_rating,
            'quality_rating': self.quality_rating,
            'timeliness_rating': self.timeliness_rating,
            'professionalism_rating': self.professionalism_rating,
            'review_text': self.review_text,
            'would_work_again': self.would_work_again,
            'helpful_count': self.helpful_count,
            'is_public': self.is_public,
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at)
        }

class SkillTestTemplate(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    category = db.Column(db.String(50))
    description = db.Column(db.Text)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        counts = {}
        for difficulty in skill_tests.DIFFICULTY_CONFIG:
            counts[difficulty] = SkillTestQuestion.query.filter_by(template_id=self.id, difficulty=difficulty).count()
        return {
            'id': self.id,
            'name': self.name,
            'category': self.category,
            'description': self.description,
            'is_active': self.is_active,
            'question_counts': counts
        }

class SkillTestQuestion(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(db.Integer, db.ForeignKey('skill_test_template.id'), nullable=False)
    difficulty = db.Column(db.String(10), nullable=False)  # entry, mid, senior
    question_text = db.Column(db.Text, nullable=False)
    option_a = db.Column(db.Text, nullable=False)
    option_b = db.Column(db.Text, nullable=False)
    option_c = db.Column(db.Text, nullable=False)
    option_d = db.Column(db.Text, nullable=False)
    correct_answer = db.Column(db.String(1), nullable=False)  # A, B, C, D
    explanation = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

class SkillTestAttempt(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    applicant_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    template_id = db.Column(db.Integer, db.ForeignKey('skill_test_template.id'), nullable=False)
    gig_id = db.Column(db.Integer, db.ForeignKey('gig.id'), nullable=False)
    difficulty = db.Column(db.String(10), nullable=False)
    questions_data = db.Column(db.Text, nullable=False)  # JSON snapshot of the questions served
    answers_data = db.Column(db.Text)  # JSON {question_id: 'A'}
    score = db.Column(db.Integer)
    passed = db.Column(db.Boolean, default=False)
    passing_score = db.Column(db.Integer, default=skill_tests.DEFAULT_PASSING_SCORE)
    time_limit_seconds = db.Column(db.Integer, default=skill_tests.time_limit_seconds)
    time_taken_seconds = db.Column(db.Integer)
    tab_switches = db.Column(db.Integer, default=0)
    violation_type = db.Column(db.String(30))  # tab_switch, window_blur
    status = db.Column(db.String(20), default='in_progress')  # in_progress, completed, failed_cheat, expired
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)

    def to_dict(self):
        questions = load_json(self.questions_data, [])
        return {
            'id': self.id,
            'applicant_id': self.applicant_id,
            'template_id': self.template_id,
            'gig_id': self.gig_id,
            'difficulty': self.difficulty,
            'total_questions': len(questions),
            'score': self.score,
            'passed': self.passed,
            'passing_score': self.passing_score,
            'time_limit_seconds': self.time_limit_seconds,
            'time_taken_seconds': self.time_taken_seconds,
            'tab_switches': self.tab_switches,
            'violation_type': self.violation_type,
            'status': self.status,
            'started_at': isoformat(self.started_at),
            'expires_at': isoformat(skill_tests.attempt_deadline(self)) if self.started_at else None,
            'completed_at': isoformat(self.completed_at)
        }

class SavedSearch(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    search_type = db.Column(db.String(20), nullable=False)  # assignments, freelancers
    filters = db.Column(db.Text)  # JSON
    notify_new_results = db.Column(db.Boolean, default=False)
    last_run_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'search_type': self.search_type,
            'filters': load_json(self.filters, {}),
            'notify_new_results': self.notify_new_results,
            'last_run_at': isoformat(self.last_run_at),
            'created_at': isoformat(self.created_at)
        }

class Notification(db.Model):
    """Model for user notifications"""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    notification_type = db.Column(db.String(50), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text)
    link = db.Column(db.String(500))
    related_id = db.Column(db.Integer)
    is_read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    read_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'notification_type': self.notification_type,
            'title': self.title,
            'message': self.message,
            'link': self.link,
            'related_id': self.related_id,
            'is_read': self.is_read,
            'created_at': isoformat(self.created_at)
        }

class NotificationPreference(db.Model):
    """Per-user email opt-outs"""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, unique=True)
    email_message = db.Column(db.Boolean, default=True)
    email_payment = db.Column(db.Boolean, default=True)
    email_milestone = db.Column(db.Boolean, default=True)
    email_dispute = db.Column(db.Boolean, default=True)
    email_review = db.Column(db.Boolean, default=True)
    email_application = db.Column(db.Boolean, default=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    PREFERENCE_FIELDS = ('email_message', 'email_payment', 'email_milestone',
                         'email_dispute', 'email_review', 'email_application')

    def to_dict(self):
        return {field: getattr(self, field) for field in self.PREFERENCE_FIELDS}

class AuditLog(db.Model):
    """Audit trail row written by audit_logger"""
    id = db.Column(db.Integer, primary_key=True)
    event_category = db.Column(db.String(30), nullable=False)
    event_type = db.Column(db.String(50), nullable=False)
    severity = db.Column(db.String(10), default='medium')
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    action = db.Column(db.String(255), nullable=False)
    resource_type = db.Column(db.String(50))
    resource_id = db.Column(db.String(50))
    status = db.Column(db.String(20), default='success')
    details = db.Column(db.Text)
    ip_address = db.Column(db.String(45))
    request_path = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'event_category': self.event_category,
            'event_type': self.event_type,
            'severity': self.severity,
            'user_id': self.user_id,
            'action': self.action,
            'resource_type': self.resource_type,
            'resource_id': self.resource_id,
            'status': self.status,
            'details': load_json(self.details, None),
            'created_at': isoformat(self.created_at)
        }

audit = init_audit_logger(app, db, AuditLog)
search = SearchService(db, User, Gig)
payfast_client = get_payfast_client()

# Shared helpers
def current_user():
    return db.session.get(User, session['user_id'])

def deny_access(resource_type, resource_id, action, message='Unauthorized'):
    """Record a blocked access attempt and build the 403 response"""
    audit.log_authorization(resource_type, resource_id, action, 'blocked')
    db.session.commit()
    return jsonify({'error': message}), 403

def notify(user_id, notification_type, title, message, link=None, related_id=None):
    """Create an in-app notification and email it when the user has not opted out"""
    db.session.add(Notification(
        user_id=user_id,
        notification_type=notification_type,
        title=title,
        message=message,
        link=link,
        related_id=related_id
    ))
    user = db.session.get(User, user_id)
    preference = NotificationPreference.query.filter_by(user_id=user_id).first()
    email_service.send_notification_email(user, notification_type, title, message, link, preference)

def change_gig_status(gig, new_status, user_id, note=None):
    old_status = gig.status
    gig.status = new_status
    if new_status == 'completed':
        gig.completed_at = datetime.utcnow()
    db.session.add(GigStatusHistory(
        gig_id=gig.id,
        old_status=old_status,
        new_status=new_status,
        changed_by=user_id,
        note=note
    ))

def complete_gig(gig, user_id, note=None):
    change_gig_status(gig, 'completed', user_id, note)
    freelancer = db.session.get(User, gig.accepted_freelancer_id)
    if freelancer:
        freelancer.completed_gigs = (freelancer.completed_gigs or 0) + 1
    for party_id in (gig.client_id, gig.accepted_freelancer_id):
        notify(party_id, 'gig_completed', 'Gig Completed',
               f'"{gig.title}" has been marked as completed.', f'/gigs/{gig.id}', gig.id)

def gig_escrow(gig_id):
    return Escrow.query.filter_by(gig_id=gig_id).order_by(Escrow.id.desc()).first()

def parse_datetime(value):
    if not value:
        return None
    return datetime.fromisoformat(value.replace('Z', '+00:00')).replace(tzinfo=None)

# ============================================
# AUTH & PROFILE ROUTES
# ============================================

@app.route('/api/health')
def health():
    return jsonify({'status': 'ok', 'time': datetime.utcnow().isoformat()})

@app.route('/api/register', methods=['POST'])
@rate_limit(max_attempts=10, window_minutes=60, lockout_minutes=30)
def register():
    try:
        data = request.get_json(silent=True)

        if not data or not data.get('email') or not data.get('username') or not data.get('password'):
            return jsonify({'error': 'Missing required fields'}), 400

        try:
            email_info = validate_email(data['email'], check_deliverability=False)
            email = email_info.normalized.lower()
        except EmailNotValidError as e:
            return jsonify({'error': f'Invalid email: {str(e)}'}), 400

        is_valid, message = validate_username(data['username'])
        if not is_valid:
            return jsonify({'error': message}), 400

        is_valid, message = validate_password_strength(data['password'])
        if not is_valid:
            return jsonify({'error': message}), 400

        if User.query.filter_by(email=email).first():
            return jsonify({'error': 'Email already registered'}), 400

        if User.query.filter_by(username=data['username']).first():
            return jsonify({'error': 'Username already taken'}), 400

        role = data.get('role', 'freelancer')
        if role not in ['freelancer', 'client', 'both']:
            role = 'freelancer'

        new_user = User(
            username=data['username'],
            email=email,
            password_hash=generate_password_hash(data['password']),
            full_name=sanitize_input(data.get('full_name', ''), max_length=120),
            province=sanitize_input(data.get('province', ''), max_length=50),
            role=role
        )
        db.session.add(new_user)
        db.session.commit()

        session['user_id'] = new_user.id
        session.permanent = True
        reset_rate_limit(request.remote_addr)

        return jsonify({'message': 'Registration successful', 'user': new_user.to_dict(include_private=True)}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Registration error: {str(e)}")
        return jsonify({'error': 'Registration failed'}), 500

@app.route('/api/login', methods=['POST'])
@rate_limit(max_attempts=5, window_minutes=15, lockout_minutes=30)
def login():
    try:
        data = request.get_json(silent=True)

        if not data or not data.get('email') or not data.get('password'):
            return jsonify({'error': 'Missing email or password'}), 400

        try:
            email = validate_email(data['email'], check_deliverability=False).normalized.lower()
        except EmailNotValidError:
            return jsonify({'error': 'Invalid email or password'}), 401

        user = User.query.filter_by(email=email).first()
        if not user or not check_password_hash(user.password_hash, data['password']):
            audit.log_authentication('login_failure', 'failure', details={'email': email})
            db.session.commit()
            return jsonify({'error': 'Invalid email or password'}), 401

        session['user_id'] = user.id
        session.permanent = True
        reset_rate_limit(request.remote_addr)
        audit.log_authentication('login_success', 'success', user_id=user.id)
        db.session.commit()

        return jsonify({'message': 'Login successful', 'user': user.to_dict(include_private=True)})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Login error: {str(e)}")
        return jsonify({'error': 'Login failed'}), 500

@app.route('/api/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({'message': 'Logged out'})

@app.route('/api/me')
@login_required
def me():
    user = current_user()
    if not user:
        session.clear()
        return jsonify({'error': 'Unauthorized - Please login'}), 401
    return jsonify({'user': user.to_dict(include_private=True)})

@app.route('/api/users/<int:user_id>')
def get_user_profile(user_id):
    user = db.session.get(User, user_id)
    if not user:
        return jsonify({'error': 'User not found'}), 404
    return jsonify({'user': user.to_dict()})

@app.route('/api/profile', methods=['PUT'])
@login_required
def update_profile():
    try:
        user = current_user()
        data = request.get_json(silent=True) or {}

        if 'full_name' in data:
            user.full_name = sanitize_input(data['full_name'], max_length=120)
        if 'bio' in data:
            user.bio = sanitize_input(data['bio'], max_length=2000)
        if 'province' in data:
            user.province = sanitize_input(data['province'], max_length=50)
        if 'skills' in data:
            if not isinstance(data['skills'], list):
                return jsonify({'error': 'skills must be a list'}), 400
            user.skills = json.dumps([sanitize_input(str(s), max_length=50) for s in data['skills'] if s])
        if 'hourly_rate' in data:
            rate = data['hourly_rate']
            if rate is not None and (not isinstance(rate, (int, float)) or rate < 0):
                return jsonify({'error': 'hourly_rate must be a positive number'}), 400
            user.hourly_rate = rate
        if 'experience_level' in data:
            if data['experience_level'] not in ('entry', 'intermediate', 'expert', None):
                return jsonify({'error': 'Invalid experience level'}), 400
            user.experience_level = data['experience_level']
        if data.get('role') in ('freelancer', 'client', 'both'):
            user.role = data['role']

        db.session.commit()
        return jsonify({'user': user.to_dict(include_private=True)})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update profile error: {str(e)}")
        return jsonify({'error': 'Failed to update profile'}), 500

@app.route('/api/bank-account', methods=['GET'])
@login_required
def get_bank_account():
    account = BankAccount.query.filter_by(user_id=session['user_id']).first()
    return jsonify({'bank_account': account.to_dict() if account else None})

@app.route('/api/bank-account', methods=['PUT'])
@login_required
def save_bank_account():
    """Add or replace the payout bank account; changes need re-verification"""
    try:
        user_id = session['user_id']
        data = request.get_json(silent=True) or {}

        required = ['account_holder_name', 'bank_name', 'account_number', 'branch_code']
        if not all(data.get(field) for field in required):
            return jsonify({'error': 'All bank account fields are required'}), 400
        if not re.match(r'^\d{6,20}$', str(data['account_number'])):
            return jsonify({'error': 'Account number must be 6 to 20 digits'}), 400
        if not re.match(r'^\d{6}$', str(data['branch_code'])):
            return jsonify({'error': 'Branch code must be 6 digits'}), 400
        account_type = data.get('account_type', 'savings')
        if account_type not in ('savings', 'current', 'transmission'):
            return jsonify({'error': 'Invalid account type'}), 400

        account = BankAccount.query.filter_by(user_id=user_id).first()
        if not account:
            account = BankAccount(user_id=user_id)
            db.session.add(account)
        account.account_holder_name = sanitize_input(data['account_holder_name'], max_length=120)
        account.bank_name = sanitize_input(data['bank_name'], max_length=100)
        account.account_number = str(data['account_number'])
        account.branch_code = str(data['branch_code'])
        account.account_type = account_type
        account.is_verified = False

        audit.log_event('financial', 'bank_account_updated', 'Bank account details changed',
                        severity='high', resource_type='bank_account', user_id=user_id)
        db.session.commit()
        return jsonify({'bank_account': account.to_dict()})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Save bank account error: {str(e)}")
        return jsonify({'error': 'Failed to save bank account'}), 500

@app.route('/api/admin/bank-accounts/<int:account_id>/verify', methods=['POST'])
@admin_required
def verify_bank_account(account_id):
    account = db.session.get(BankAccount, account_id)
    if not account:
        return jsonify({'error': 'Bank account not found'}), 404
    account.is_verified = True
    audit.log_event('financial', 'bank_account_verified', f'Verified bank account {account.id}',
                    severity='high', resource_type='bank_account', resource_id=account.id)
    db.session.commit()
    return jsonify({'bank_account': account.to_dict()})

# ============================================
# GIG ROUTES
# ============================================

def validate_gig_payload(data, partial=False):
    """Returns (error message or None, cleaned fields)"""
    fields = {}

    if not partial or 'title' in data:
        is_valid, message = validate_length(data.get('title'), 'Title', 5, 200)
        if not is_valid:
            return message, None
        fields['title'] = sanitize_input(data['title'], max_length=200)

    if not partial or 'description' in data:
        is_valid, message = validate_length(data.get('description'), 'Description', 20, 5000)
        if not is_valid:
            return message, None
        fields['description'] = sanitize_input(data['description'], max_length=5000)

    if not partial or 'budget_min' in data or 'budget_max' in data:
        try:
            budget_min = float(data.get('budget_min'))
            budget_max = float(data.get('budget_max'))
        except (TypeError, ValueError):
            return 'budget_min and budget_max are required numbers', None
        if budget_min <= 0 or budget_max < budget_min:
            return 'Budget must be positive and budget_max must not be below budget_min', None
        fields['budget_min'] = budget_min
        fields['budget_max'] = budget_max

    for key in ('category', 'province'):
        if key in data:
            fields[key] = sanitize_input(data.get(key) or '', max_length=50) or None

    if 'experience_level' in data:
        if data['experience_level'] not in ('entry', 'intermediate', 'expert', None):
            return 'Invalid experience level', None
        fields['experience_level'] = data['experience_level']

    if 'required_skills' in data:
        if not isinstance(data['required_skills'], list):
            return 'required_skills must be a list', None
        fields['required_skills'] = json.dumps([str(s).strip() for s in data['required_skills'] if s])

    for key in ('remote_allowed', 'urgent'):
        if key in data:
            fields[key] = bool(data[key])

    if 'deadline' in data:
        try:
            fields['deadline'] = parse_datetime(data['deadline'])
        except ValueError:
            return 'Invalid deadline date', None

    if 'milestone_plan' in data:
        plan = data['milestone_plan'] or []
        if plan:
            _, error = milestone_workflow.build_milestones(fields.get('budget_max', 100.0), plan)
            if error:
                return error, None
        fields['milestone_plan'] = json.dumps(plan) if plan else None

    if data.get('requires_skill_test'):
        template = db.session.get(SkillTestTemplate, data.get('skill_test_template_id') or 0)
        if not template or not template.is_active:
            return 'A valid skill test template is required', None
        difficulty = data.get('skill_test_difficulty', 'entry')
        if difficulty not in skill_tests.DIFFICULTY_CONFIG:
            return 'Skill test difficulty must be entry, mid or senior', None
        passing_score = data.get('skill_test_passing_score', skill_tests.DEFAULT_PASSING_SCORE)
        if not isinstance(passing_score, int) or not 1 <= passing_score <= 100:
            return 'Passing score must be between 1 and 100', None
        fields.update({
            'requires_skill_test': True,
            'skill_test_template_id': template.id,
            'skill_test_difficulty': difficulty,
            'skill_test_passing_score': passing_score
        })
    elif 'requires_skill_test' in data:
        fields['requires_skill_test'] = False

    return None, fields

@app.route('/api/gigs', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=20)
def create_gig():
    try:
        user = current_user()
        if not user.is_client:
            return jsonify({'error': 'Only clients can post gigs'}), 403

        data = request.get_json(silent=True) or {}
        error, fields = validate_gig_payload(data)
        if error:
            return jsonify({'error': error}), 400

        status = 'draft' if data.get('draft') else 'open'
        gig = Gig(client_id=user.id, status=status, **fields)
        db.session.add(gig)
        db.session.flush()
        db.session.add(GigStatusHistory(gig_id=gig.id, old_status=None, new_status=status, changed_by=user.id))

        db.session.commit()
        return jsonify({'gig': gig.to_dict()}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create gig error: {str(e)}")
        return jsonify({'error': 'Failed to create gig'}), 500

@app.route('/api/gigs/mine')
@login_required
def my_gigs():
    user_id = session['user_id']
    posted = Gig.query.filter_by(client_id=user_id).order_by(Gig.created_at.desc()).all()
    working = Gig.query.filter_by(accepted_freelancer_id=user_id).order_by(Gig.created_at.desc()).all()
    return jsonify({
        'posted': [g.to_dict() for g in posted],
        'working_on': [g.to_dict() for g in working]
    })

@app.route('/api/gigs/<int:gig_id>')
def get_gig(gig_id):
    gig = db.session.get(Gig, gig_id)
    if not gig or (gig.status == 'draft' and session.get('user_id') != gig.client_id):
        return jsonify({'error': 'Gig not found'}), 404
    client = db.session.get(User, gig.client_id)
    return jsonify({'gig': gig.to_dict(), 'client': client.to_dict() if client else None})

@app.route('/api/gigs/<int:gig_id>', methods=['PUT'])
@login_required
def update_gig(gig_id):
    try:
        gig = db.session.get(Gig, gig_id)
        if not gig:
            return jsonify({'error': 'Gig not found'}), 404
        if gig.client_id != session['user_id']:
            return jsonify({'error': 'Only the client can edit this gig'}), 403
        if gig.status not in ('draft', 'open'):
            return jsonify({'error': 'Only draft or open gigs can be edited'}), 400

        data = request.get_json(silent=True) or {}
        if 'milestone_plan' in data and 'budget_max' not in data:
            data['budget_min'], data['budget_max'] = gig.budget_min, gig.budget_max
        error, fields = validate_gig_payload(data, partial=True)
        if error:
            return jsonify({'error': error}), 400
        for key, value in fields.items():
            setattr(gig, key, value)

        db.session.commit()
        return jsonify({'gig': gig.to_dict()})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update gig error: {str(e)}")
        return jsonify({'error': 'Failed to update gig'}), 500

@app.route('/api/gigs/<int:gig_id>/publish', methods=['POST'])
@login_required
def publish_gig(gig_id):
    gig = db.session.get(Gig, gig_id)
    if not gig:
        return jsonify({'error': 'Gig not found'}), 404
    if gig.client_id != session['user_id']:
        return jsonify({'error': 'Only the client can publish this gig'}), 403
    if gig.status != 'draft':
        return jsonify({'error': 'Only draft gigs can be published'}), 400
    change_gig_status(gig, 'open', session['user_id'])
    db.session.commit()
    return jsonify({'gig': gig.to_dict()})

@app.route('/api/gigs/<int:gig_id>/cancel', methods=['POST'])
@login_required
def cancel_gig(gig_id):
    """Cancel an open or in-progress gig; any escrow still held is refunded"""
    try:
        user_id = session['user_id']
        gig = db.session.get(Gig, gig_id)
        if not gig:
            return jsonify({'error': 'Gig not found'}), 404
        if gig.client_id != user_id:
            return jsonify({'error': 'Only the client can cancel this gig'}), 403
        if gig.status not in ('draft', 'open', 'in_progress'):
            return jsonify({'error': f'A {gig.status} gig cannot be cancelled'}), 400
        if Milestone.query.filter_by(gig_id=gig.id, payment_released=True).count():
            return jsonify({'error': 'Milestone payments have already been released; open a dispute instead'}), 400

        reason = (request.get_json(silent=True) or {}).get('reason', '')
        is_valid, message = validate_length(reason, 'Cancellation reason', 10, 500)
        if not is_valid:
            return jsonify({'error': message}), 400

        gig.cancel_reason = reason.strip()
        escrow = gig_escrow(gig.id)
        if escrow and escrow.status in ('pending', 'held'):
            was_held = escrow.status == 'held'
            escrow_service.refund(escrow)
            if was_held:
                gig.payment_status = 'refunded'
                audit.log_financial('escrow_refunded', f'Refunded escrow {escrow.id} on cancellation',
                                    escrow.amount, 'escrow', escrow.id)

        Application.query.filter(
            Application.gig_id == gig.id,
            Application.status.in_(['pending', 'reviewing'])
        ).update({'status': 'rejected', 'rejection_reason': 'Gig was cancelled'}, synchronize_session=False)

        change_gig_status(gig, 'cancelled', user_id, gig.cancel_reason)
        if gig.accepted_freelancer_id:
            notify(gig.accepted_freelancer_id, 'gig_cancelled', 'Gig Cancelled',
                   f'"{gig.title}" was cancelled: {gig.cancel_reason}', f'/gigs/{gig.id}', gig.id)

        db.session.commit()
        return jsonify({'gig': gig.to_dict()})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Cancel gig error: {str(e)}")
        return jsonify({'error': 'Failed to cancel gig'}), 500

@app.route('/api/gigs/<int:gig_id>/complete', methods=['POST'])
@login_required
def mark_gig_complete(gig_id):
    """Freelancer marks an in-progress gig done once every milestone is approved"""
    try:
        user_id = session['user_id']
        gig = db.session.get(Gig, gig_id)
        if not gig:
            return jsonify({'error': 'Gig not found'}), 404
        if gig.accepted_freelancer_id != user_id:
            return jsonify({'error': 'Only the assigned freelancer can complete this gig'}), 403
        if gig.status != 'in_progress':
            return jsonify({'error': 'Only in-progress gigs can be completed'}), 400

        milestones = Milestone.query.filter_by(gig_id=gig.id).all()
        if any(m.status != 'approved' for m in milestones):
            return jsonify({'error': 'All milestones must be approved before completing the gig'}), 400

        complete_gig(gig, user_id)
        db.session.commit()
        return jsonify({'gig': gig.to_dict()})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Complete gig error: {str(e)}")
        return jsonify({'error': 'Failed to complete gig'}), 500

@app.route('/api/gigs/<int:gig_id>/timeline')
@login_required
def gig_timeline(gig_id):
    gig = db.session.get(Gig, gig_id)
    if not gig:
        return jsonify({'error': 'Gig not found'}), 404
    user_id = session['user_id']
    if user_id not in (gig.client_id, gig.accepted_freelancer_id):
        return deny_access('gig', gig.id, f'Access to timeline of gig {gig.id} denied')
    history = GigStatusHistory.query.filter_by(gig_id=gig.id).order_by(GigStatusHistory.id.asc()).all()
    return jsonify({'timeline': [h.to_dict() for h in history]})

# ============================================
# APPLICATION ROUTES
# ============================================

@app.route('/api/gigs/<int:gig_id>/apply', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=20)
def apply_to_gig(gig_id):
    try:
        user = current_user()
        gig = db.session.get(Gig, gig_id)
        if not gig:
            return jsonify({'error': 'Gig not found'}), 404
        if not user.is_freelancer:
            return jsonify({'error': 'Only freelancers can apply to gigs'}), 403
        if gig.client_id == user.id:
            return jsonify({'error': 'You cannot apply to your own gig'}), 400
        if gig.status != 'open':
            return jsonify({'error': 'This gig is no longer accepting applications'}), 400
        if Application.query.filter_by(gig_id=gig.id, freelancer_id=user.id).first():
            return jsonify({'error': 'You have already applied to this gig'}), 409

        data = request.get_json(silent=True) or {}
        is_valid, message = validate_length(data.get('proposal'), 'Proposal', 20, 5000)
        if not is_valid:
            return jsonify({'error': message}), 400
        bid_amount = data.get('bid_amount')
        if not isinstance(bid_amount, (int, float)) or bid_amount <= 0:
            return jsonify({'error': 'bid_amount must be a positive number'}), 400

        attempt = None
        if gig.requires_skill_test:
            attempt = db.session.get(SkillTestAttempt, data.get('skill_test_attempt_id') or 0)
            if (not attempt or attempt.applicant_id != user.id or attempt.gig_id != gig.id
                    or attempt.status != 'completed' or not attempt.passed):
                return jsonify({'error': 'You must pass the skill test before applying to this gig'}), 403

        application = Application(
            gig_id=gig.id,
            freelancer_id=user.id,
            proposal=sanitize_input(data['proposal'], max_length=5000),
            cover_letter=sanitize_input(data.get('cover_letter', ''), max_length=5000),
            bid_amount=float(bid_amount),
            estimated_duration=sanitize_input(data.get('estimated_duration', ''), max_length=50),
            skill_test_attempt_id=attempt.id if attempt else None
        )
        db.session.add(application)
        db.session.flush()

        notify(gig.client_id, 'application_received', 'New Application',
               f'{user.full_name or user.username} applied to "{gig.title}"',
               f'/gigs/{gig.id}/applications', application.id)

        db.session.commit()
        return jsonify({'application': application.to_dict()}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Apply to gig error: {str(e)}")
        return jsonify({'error': 'Failed to submit application'}), 500

@app.route('/api/gigs/<int:gig_id>/applications')
@login_required
def list_gig_applications(gig_id):
    gig = db.session.get(Gig, gig_id)
    if not gig:
        return jsonify({'error': 'Gig not found'}), 404
    if gig.client_id != session['user_id']:
        return jsonify({'error': 'Only the client can view applications'}), 403

    query = Application.query.filter_by(gig_id=gig.id)
    if request.args.get('status'):
        query = query.filter_by(status=request.args['status'])

    results = []
    for application in query.order_by(Application.created_at.desc()).all():
        item = application.to_dict()
        freelancer = db.session.get(User, application.freelancer_id)
        item['freelancer'] = freelancer.to_dict() if freelancer else None
        if application.skill_test_attempt_id:
            attempt = db.session.get(SkillTestAttempt, application.skill_test_attempt_id)
            item['skill_test_score'] = attempt.score if attempt else None
        results.append(item)
    return jsonify({'applications': results})

@app.route('/api/gigs/<int:gig_id>/applications/stats')
@login_required
def gig_application_stats(gig_id):
    gig = db.session.get(Gig, gig_id)
    if not gig:
        return jsonify({'error': 'Gig not found'}), 404
    if gig.client_id != session['user_id']:
        return jsonify({'error': 'Only the client can view application stats'}), 403

    applications = Application.query.filter_by(gig_id=gig.id).all()
    stats = {status: 0 for status in ('pending', 'reviewing', 'accepted', 'rejected', 'withdrawn')}
    for application in applications:
        stats[application.status] = stats.get(application.status, 0) + 1

    week_ago = datetime.utcnow() - timedelta(days=7)
    considered = [a for a in applications if a.status != 'withdrawn']
    responded = [a for a in considered if a.status != 'pending']
    stats['total'] = len(applications)
    stats['this_week'] = sum(1 for a in applications if a.created_at and a.created_at >= week_ago)
    stats['response_rate'] = round(len(responded) / len(considered) * 100) if considered else 0
    return jsonify({'stats': stats})

@app.route('/api/applications/mine')
@login_required
def my_applications():
    applications = Application.query.filter_by(freelancer_id=session['user_id']).order_by(Application.created_at.desc()).all()
    results = []
    for application in applications:
        item = application.to_dict()
        gig = db.session.get(Gig, application.gig_id)
        item['gig'] = gig.to_dict() if gig else None
        results.append(item)
    return jsonify({'applications': results})

@app.route('/api/applications/<int:application_id>/withdraw', methods=['POST'])
@login_required
def withdraw_application(application_id):
    application = db.session.get(Application, application_id)
    if not application:
        return jsonify({'error': 'Application not found'}), 404
    if application.freelancer_id != session['user_id']:
        return jsonify({'error': 'Only the applicant can withdraw this application'}), 403
    if application.status not in ('pending', 'reviewing'):
        return jsonify({'error': f'A {application.status} application cannot be withdrawn'}), 400
    application.status = 'withdrawn'
    db.session.commit()
    return jsonify({'application': application.to_dict()})

@app.route('/api/applications/<int:application_id>/review', methods=['POST'])
@login_required
def review_application(application_id):
    """
    Client moves an application to reviewing, rejects it, or accepts it.

    Accepting assigns the freelancer, rejects every other open application,
    starts the gig, opens a pending escrow for the bid and creates the
    milestones from the gig's plan.
    """
    try:
        user_id = session['user_id']
        application = db.session.get(Application, application_id)
        if not application:
            return jsonify({'error': 'Application not found'}), 404
        gig = db.session.get(Gig, application.gig_id)
        if gig.client_id != user_id:
            return jsonify({'error': 'Only the client can review applications'}), 403
        if application.status not in ('pending', 'reviewing'):
            return jsonify({'error': f'A {application.status} application cannot be reviewed'}), 400

        data = request.get_json(silent=True) or {}
        action = data.get('action')
        now = datetime.utcnow()

        if action == 'reviewing':
            application.status = 'reviewing'
            application.reviewed_by = user_id
            application.reviewed_at = now
            db.session.commit()
            return jsonify({'application': application.to_dict()})

        if action == 'reject':
            application.status = 'rejected'
            application.rejection_reason = sanitize_input(data.get('reason', ''), max_length=500) or None
            application.reviewed_by = user_id
            application.reviewed_at = now
            notify(application.freelancer_id, 'application_rejected', 'Application Update',
                   f'Your application for "{gig.title}" was not selected.', f'/gigs/{gig.id}', application.id)
            db.session.commit()
            return jsonify({'application': application.to_dict()})

        if action != 'accept':
            return jsonify({'error': "action must be 'reviewing', 'accept' or 'reject'"}), 400

        if gig.status != 'open':
            return jsonify({'error': 'Applications can only be accepted on open gigs'}), 400

        application.status = 'accepted'
        application.reviewed_by = user_id
        application.reviewed_at = now
        gig.accepted_freelancer_id = application.freelancer_id

        others = Application.query.filter(
            Application.gig_id == gig.id,
            Application.id != application.id,
            Application.status.in_(['pending', 'reviewing'])
        ).all()
        for other in others:
            other.status = 'rejected'
            other.rejection_reason = 'Another applicant was selected'
            other.reviewed_by = user_id
            other.reviewed_at = now

        breakdown = escrow_service.calculate_payment_breakdown(application.bid_amount)
        escrow = Escrow(
            gig_id=gig.id,
            payer_id=gig.client_id,
            recipient_id=application.freelancer_id,
            amount=breakdown['gross_amount'],
            platform_fee=breakdown['platform_fee'],
            net_amount=breakdown['net_amount'],
            currency=gig.currency or escrow_service.CURRENCY,
            status='pending'
        )
        db.session.add(escrow)
        db.session.flush()

        plan = load_json(gig.milestone_plan, []) or [
            {'title': 'Complete gig', 'description': gig.title, 'percentage': 100}
        ]
        rows, error = milestone_workflow.build_milestones(escrow.amount, plan)
        if error:
            db.session.rollback()
            return jsonify({'error': error}), 400
        for row in rows:
            row['due_date'] = parse_datetime(row['due_date']) if row['due_date'] else None
            db.session.add(Milestone(gig_id=gig.id, escrow_id=escrow.id,
                                     freelancer_id=application.freelancer_id, **row))

        change_gig_status(gig, 'in_progress', user_id, f'Accepted application {application.id}')
        notify(application.freelancer_id, 'application_accepted', 'Application Accepted',
               f'You have been hired for "{gig.title}"', f'/gigs/{gig.id}', application.id)
        audit.log_workflow('application_accepted', f'Accepted application {application.id} for gig {gig.id}',
                           'application', application.id)

        db.session.commit()
        milestones = Milestone.query.filter_by(gig_id=gig.id).order_by(Milestone.order_index).all()
        return jsonify({
            'application': application.to_dict(),
            'escrow': escrow.to_dict(),
            'milestones': [m.to_dict() for m in milestones]
        })
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Review application error: {str(e)}")
        return jsonify({'error': 'Failed to review application'}), 500

# ============================================
# ESCROW & PAYMENT ROUTES
# ============================================

@app.route('/api/gigs/<int:gig_id>/escrow')
@login_required
def get_gig_escrow(gig_id):
    gig = db.session.get(Gig, gig_id)
    if not gig:
        return jsonify({'error': 'Gig not found'}), 404
    if session['user_id'] not in (gig.client_id, gig.accepted_freelancer_id):
        return deny_access('gig', gig.id, f'Access to escrow of gig {gig.id} denied')
    escrow = gig_escrow(gig.id)
    return jsonify({'escrow': escrow.to_dict() if escrow else None})

@app.route('/api/escrow/<int:escrow_id>/checkout', methods=['POST'])
@login_required
def escrow_checkout(escrow_id):
    """Build the signed PayFast form the client posts to fund the escrow"""
    try:
        escrow = db.session.get(Escrow, escrow_id)
        if not escrow:
            return jsonify({'error': 'Escrow not found'}), 404
        if escrow.payer_id != session['user_id']:
            return deny_access('escrow', escrow.id, f'Checkout of escrow {escrow.id} denied',
                               'Only the client can fund this escrow')
        if escrow.status != 'pending':
            return jsonify({'error': f'Escrow is already {escrow.status}'}), 400

        client = current_user()
        gig = db.session.get(Gig, escrow.gig_id)
        result = payfast_client.build_payment_form(
            amount=escrow.amount,
            payment_id=f"ESC-{escrow.id}",
            item_name=gig.title,
            email_address=client.email,
            return_url=f"{BASE_URL}/gigs/{gig.id}?payment=success",
            cancel_url=f"{BASE_URL}/gigs/{gig.id}?payment=cancelled",
            notify_url=f"{BASE_URL}/api/payfast/webhook",
            name_first=client.full_name,
            custom_str1=str(escrow.id)
        )
        if not result.get('success'):
            return jsonify({'error': result.get('error')}), 503
        return jsonify(result)
    except Exception as e:
        app.logger.error(f"Escrow checkout error: {str(e)}")
        return jsonify({'error': 'Failed to start payment'}), 500

@app.route('/api/payfast/webhook', methods=['POST'])
def payfast_webhook():
    """PayFast ITN: move a pending escrow to held once payment completes"""
    try:
        payload = request.form.to_dict()
        payment_id = payload.get('m_payment_id', '')
        if not payment_id.startswith('ESC-') or not payment_id[4:].isdigit():
            return jsonify({'error': 'Unknown payment reference'}), 400

        escrow = db.session.get(Escrow, int(payment_id[4:]))
        if not escrow:
            return jsonify({'error': 'Escrow not found'}), 404

        result = payfast_client.validate_notification(payload, escrow.amount)
        if not result['valid']:
            app.logger.warning(f"Rejected PayFast notification for escrow {escrow.id}: {result['error']}")
            return jsonify({'error': result['error']}), 400

        if result['payment_status'] == 'COMPLETE' and escrow.status == 'pending':
            escrow_service.hold(escrow, result.get('pf_payment_id'))
            gig = db.session.get(Gig, escrow.gig_id)
            if gig.status == 'disputed':
                # Funds that arrive mid-dispute stay frozen until it is resolved
                escrow_service.dispute(escrow)
            else:
                gig.payment_status = 'paid'
            audit.log_financial('escrow_funded', f'Escrow {escrow.id} funded via PayFast',
                                escrow.amount, 'escrow', escrow.id, user_id=escrow.payer_id)
            notify(escrow.recipient_id, 'payment_received', 'Escrow Funded',
                   f'Payment for "{gig.title}" is now held in escrow.', f'/gigs/{gig.id}', escrow.id)
            db.session.commit()
        elif result['payment_status'] == 'COMPLETE' and result.get('pf_payment_id') != escrow.payfast_payment_id:
            # Money arrived for an escrow that is no longer waiting for it; it must be returned by hand
            app.logger.warning(f"Unexpected PayFast payment {result.get('pf_payment_id')} for {escrow.status} escrow {escrow.id}")
            audit.log_financial('unexpected_payment', f'Payment received for {escrow.status} escrow {escrow.id}',
                                escrow.amount, 'escrow', escrow.id, user_id=escrow.payer_id,
                                details={'pf_payment_id': result.get('pf_payment_id'), 'escrow_status': escrow.status})
            notify(escrow.payer_id, 'payment_received', 'Payment Needs Refund',
                   f'We received R{escrow.amount:.2f} for an escrow that is already {escrow.status}. '
                   'Our team will return it to you.', f'/gigs/{escrow.gig_id}', escrow.id)
            db.session.commit()
        else:
            app.logger.info(f"PayFast notification for escrow {escrow.id}: {result['payment_status']}")

        return '', 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"PayFast webhook error: {str(e)}")
        return jsonify({'error': 'Webhook processing failed'}), 500

@app.route('/api/escrow/<int:escrow_id>/release', methods=['POST'])
@login_required
def release_escrow(escrow_id):
    """Client releases the whole escrow once every milestone is approved"""
    try:
        user_id = session['user_id']
        escrow = db.session.get(Escrow, escrow_id)
        if not escrow:
            return jsonify({'error': 'Escrow not found'}), 404
        if escrow.payer_id != user_id:
            return deny_access('escrow', escrow.id, f'Release of escrow {escrow.id} denied',
                               'Only the client who funded the escrow can release it')

        milestones = Milestone.query.filter_by(escrow_id=escrow.id).all()
        if any(m.status != 'approved' for m in milestones):
            return jsonify({'error': 'All milestones must be approved before releasing the escrow'}), 400

        now = datetime.utcnow()
        escrow_service.release(escrow, user_id, now)
        for milestone in milestones:
            if not milestone.payment_released:
                milestone_workflow.release_payment(milestone, now)

        gig = db.session.get(Gig, escrow.gig_id)
        gig.payment_status = 'paid'
        audit.log_financial('escrow_released', f'Released escrow {escrow.id}', escrow.amount, 'escrow', escrow.id)
        notify(escrow.recipient_id, 'payment_released', 'Payment Released',
               f'R{escrow.net_amount:.2f} for "{gig.title}" has been released to you.', f'/gigs/{gig.id}', escrow.id)
        if gig.status == 'in_progress':
            complete_gig(gig, user_id, 'Escrow released')

        db.session.commit()
        return jsonify({'escrow': escrow.to_dict()})
    except EscrowError as e:
        db.session.rollback()
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Release escrow error: {str(e)}")
        return jsonify({'error': 'Failed to release escrow'}), 500

@app.route('/api/admin/escrow/<int:escrow_id>/refund', methods=['POST'])
@admin_required
def refund_escrow(escrow_id):
    try:
        escrow = db.session.get(Escrow, escrow_id)
        if not escrow:
            return jsonify({'error': 'Escrow not found'}), 404

        escrow_service.refund(escrow)
        gig = db.session.get(Gig, escrow.gig_id)
        gig.payment_status = 'refunded'
        audit.log_financial('escrow_refunded', f'Refunded escrow {escrow.id}', escrow.amount, 'escrow', escrow.id)
        notify(escrow.payer_id, 'payment_refunded', 'Payment Refunded',
               f'R{escrow.amount:.2f} for "{gig.title}" has been refunded.', f'/gigs/{gig.id}', escrow.id)

        db.session.commit()
        return jsonify({'escrow': escrow.to_dict()})
    except EscrowError as e:
        db.session.rollback()
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Refund escrow error: {str(e)}")
        return jsonify({'error': 'Failed to refund escrow'}), 500

@app.route('/api/admin/escrow/<int:escrow_id>/payout', methods=['POST'])
@admin_required
def payout_escrow(escrow_id):
    """Pay out a single released escrow now instead of waiting for the daily batch"""
    try:
        escrow = db.session.get(Escrow, escrow_id)
        if not escrow:
            return jsonify({'error': 'Escrow not found'}), 404

        bank_account = BankAccount.query.filter_by(user_id=escrow.recipient_id, is_verified=True).first()
        if not bank_account:
            return jsonify({'error': 'Freelancer has no verified bank account'}), 400

        escrow_service.initiate_payout(escrow)
        result = payfast_client.create_payout(escrow.net_amount, bank_account, f"TW-{escrow.gig_id}-{escrow.id}")
        if result.get('success'):
            escrow_service.complete_payout(escrow, result.get('reference'))
            audit.log_financial('payout_completed', f'Paid out escrow {escrow.id}', escrow.net_amount, 'escrow', escrow.id)
        else:
            escrow_service.fail_payout(escrow, result.get('error', 'Unknown PayFast error'))
            audit.log_event('financial', 'payout_failed', f'Payout failed for escrow {escrow.id}',
                            severity='high', status='failure', resource_type='escrow', resource_id=escrow.id,
                            details={'error': result.get('error')})

        db.session.commit()
        return jsonify({'escrow': escrow.to_dict(), 'success': bool(result.get('success'))})
    except EscrowError as e:
        db.session.rollback()
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Payout error: {str(e)}")
        return jsonify({'error': 'Failed to process payout'}), 500

@app.route('/api/payments/stats')
@login_required
def payment_stats():
    user_id = session['user_id']
    escrows = Escrow.query.filter(or_(Escrow.payer_id == user_id, Escrow.recipient_id == user_id)).all()
    return jsonify({'stats': escrow_service.calculate_payment_stats(escrows, user_id)})

@app.route('/api/payments/breakdown')
def payment_breakdown():
    try:
        amount = float(request.args.get('amount', ''))
        return jsonify({'breakdown': escrow_service.calculate_payment_breakdown(amount)})
    except ValueError:
        return jsonify({'error': 'amount must be a non-negative number'}), 400

# ============================================
# MILESTONE ROUTES
# ============================================

def load_milestone(milestone_id, changing=False):
    """
    Returns (milestone, gig, error response)

    With changing=True the gig must still be in progress, so a cancelled,
    disputed or completed gig keeps its milestones as they are.
    """
    milestone = db.session.get(Milestone, milestone_id)
    if not milestone:
        return None, None, (jsonify({'error': 'Milestone not found'}), 404)
    gig = db.session.get(Gig, milestone.gig_id)
    if session['user_id'] not in (gig.client_id, milestone.freelancer_id):
        return None, None, deny_access('milestone', milestone.id, f'Access to milestone {milestone.id} denied')
    if changing:
        allowed, message = milestone_workflow.can_work_on(gig)
        if not allowed:
            return None, None, (jsonify({'error': message}), 400)
    return milestone, gig, None

@app.route('/api/gigs/<int:gig_id>/milestones')
@login_required
def list_milestones(gig_id):
    gig = db.session.get(Gig, gig_id)
    if not gig:
        return jsonify({'error': 'Gig not found'}), 404
    if session['user_id'] not in (gig.client_id, gig.accepted_freelancer_id):
        return deny_access('gig', gig.id, f'Access to milestones of gig {gig.id} denied')
    milestones = Milestone.query.filter_by(gig_id=gig.id).order_by(Milestone.order_index).all()
    return jsonify({
        'milestones': [m.to_dict() for m in milestones],
        'stats': milestone_workflow.calculate_milestone_stats(milestones)
    })

@app.route('/api/milestones/<int:milestone_id>')
@login_required
def get_milestone(milestone_id):
    milestone, _, error = load_milestone(milestone_id)
    if error:
        return error
    return jsonify({'milestone': milestone.to_dict()})

@app.route('/api/milestones/<int:milestone_id>/start', methods=['POST'])
@login_required
def start_milestone(milestone_id):
    try:
        milestone, gig, error = load_milestone(milestone_id, changing=True)
        if error:
            return error
        allowed, message = milestone_workflow.can_start(milestone, session['user_id'])
        if not allowed:
            return jsonify({'error': message}), 400

        milestone_workflow.start(milestone)
        audit.log_workflow('milestone_started', f'Milestone {milestone.id} started', 'milestone', milestone.id)
        db.session.commit()
        return jsonify({'milestone': milestone.to_dict()})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Start milestone error: {str(e)}")
        return jsonify({'error': 'Failed to start milestone'}), 500

@app.route('/api/milestones/<int:milestone_id>/submit', methods=['POST'])
@login_required
def submit_milestone(milestone_id):
    try:
        milestone, gig, error = load_milestone(milestone_id, changing=True)
        if error:
            return error
        allowed, message = milestone_workflow.can_submit(milestone, session['user_id'])
        if not allowed:
            return jsonify({'error': message}), 400

        data = request.get_json(silent=True) or {}
        files = data.get('deliverable_files') or []
        links = data.get('deliverable_links') or []
        if not isinstance(files, list) or not isinstance(links, list):
            return jsonify({'error': 'Deliverables must be lists'}), 400

        milestone_workflow.submit(milestone, sanitize_input(data.get('notes', ''), max_length=5000), files, links)
        notify(gig.client_id, 'milestone_submitted', 'Milestone Submitted',
               f'"{milestone.title}" is ready for your review.', f'/gigs/{gig.id}', milestone.id)
        audit.log_workflow('milestone_submitted', f'Milestone {milestone.id} submitted', 'milestone', milestone.id)

        db.session.commit()
        return jsonify({'milestone': milestone.to_dict()})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Submit milestone error: {str(e)}")
        return jsonify({'error': 'Failed to submit milestone'}), 500

@app.route('/api/milestones/<int:milestone_id>/approve', methods=['POST'])
@login_required
def approve_milestone(milestone_id):
    try:
        milestone, gig, error = load_milestone(milestone_id, changing=True)
        if error:
            return error
        allowed, message = milestone_workflow.can_approve(milestone, session['user_id'], gig.client_id)
        if not allowed:
            return jsonify({'error': message}), 400

        notes = sanitize_input((request.get_json(silent=True) or {}).get('notes', ''), max_length=2000)
        milestone_workflow.approve(milestone, notes)
        notify(milestone.freelancer_id, 'milestone_approved', 'Milestone Approved',
               f'"{milestone.title}" was approved.', f'/gigs/{gig.id}', milestone.id)
        audit.log_workflow('milestone_approved', f'Milestone {milestone.id} approved', 'milestone', milestone.id)

        db.session.commit()
        return jsonify({'milestone': milestone.to_dict()})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Approve milestone error: {str(e)}")
        return jsonify({'error': 'Failed to approve milestone'}), 500

@app.route('/api/milestones/<int:milestone_id>/reject', methods=['POST'])
@login_required
def reject_milestone(milestone_id):
    try:
        milestone, gig, error = load_milestone(milestone_id, changing=True)
        if error:
            return error
        notes = sanitize_input((request.get_json(silent=True) or {}).get('notes', ''), max_length=2000)
        allowed, message = milestone_workflow.can_reject(milestone, session['user_id'], gig.client_id, notes)
        if not allowed:
            return jsonify({'error': message}), 400

        milestone_workflow.reject(milestone, notes)
        notify(milestone.freelancer_id, 'milestone_rejected', 'Milestone Rejected',
               f'"{milestone.title}" was rejected: {notes}', f'/gigs/{gig.id}', milestone.id)
        audit.log_workflow('milestone_rejected', f'Milestone {milestone.id} rejected', 'milestone', milestone.id)

        db.session.commit()
        return jsonify({'milestone': milestone.to_dict()})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Reject milestone error: {str(e)}")
        return jsonify({'error': 'Failed to reject milestone'}), 500

@app.route('/api/milestones/<int:milestone_id>/request-revision', methods=['POST'])
@login_required
def request_milestone_revision(milestone_id):
    try:
        milestone, gig, error = load_milestone(milestone_id, changing=True)
        if error:
            return error
        allowed, message = milestone_workflow.can_request_revision(milestone, session['user_id'], gig.client_id)
        if not allowed:
            return jsonify({'error': message}), 400

        notes = sanitize_input((request.get_json(silent=True) or {}).get('notes', ''), max_length=2000)
        milestone_workflow.request_revision(milestone, notes)
        notify(milestone.freelancer_id, 'revision_requested', 'Revision Requested',
               f'The client asked for changes to "{milestone.title}".', f'/gigs/{gig.id}', milestone.id)
        audit.log_workflow('revision_requested', f'Revision {milestone.revision_count} requested on milestone {milestone.id}',
                           'milestone', milestone.id)

        db.session.commit()
        return jsonify({'milestone': milestone.to_dict()})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Request revision error: {str(e)}")
        return jsonify({'error': 'Failed to request revision'}), 500

@app.route('/api/milestones/<int:milestone_id>/release-payment', methods=['POST'])
@login_required
def release_milestone_payment(milestone_id):
    """
    Release one approved milestone's share of the escrow.

    When the last milestone is paid the escrow itself is released for payout
    and the gig is completed.
    """
    try:
        milestone, gig, error = load_milestone(milestone_id)
        if error:
            return error
        user_id = session['user_id']
        if user_id != gig.client_id:
            return deny_access('milestone', milestone.id, f'Payment release for milestone {milestone.id} denied',
                               'Only the client can release milestone payments')

        escrow = db.session.get(Escrow, milestone.escrow_id) if milestone.escrow_id else gig_escrow(gig.id)
        allowed, message = milestone_workflow.can_release_payment(milestone, escrow)
        if not allowed:
            return jsonify({'error': message}), 400

        now = datetime.utcnow()
        milestone_workflow.release_payment(milestone, now)
        audit.log_financial('milestone_payment_released', f'Released payment for milestone {milestone.id}',
                            milestone.amount, 'milestone', milestone.id)
        notify(milestone.freelancer_id, 'payment_released', 'Payment Released',
               f'R{milestone.amount:.2f} for "{milestone.title}" has been released.', f'/gigs/{gig.id}', milestone.id)

        milestones = Milestone.query.filter_by(escrow_id=escrow.id).all()
        if milestone_workflow.all_paid(milestones):
            escrow_service.release(escrow, user_id, now)
            gig.payment_status = 'paid'
            audit.log_financial('escrow_released', f'Released escrow {escrow.id}', escrow.amount, 'escrow', escrow.id)
            if gig.status == 'in_progress':
                complete_gig(gig, user_id, 'All milestones paid')
        else:
            gig.payment_status = 'partially_paid'

        db.session.commit()
        return jsonify({'milestone': milestone.to_dict(), 'escrow': escrow.to_dict()})
    except EscrowError as e:
        db.session.rollback()
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Release milestone payment error: {str(e)}")
        return jsonify({'error': 'Failed to release payment'}), 500

# ============================================
# DISPUTE ROUTES
# ============================================

def load_dispute(dispute_id, allow_admin=True):
    """Returns (dispute, error response); parties and admins may view"""
    dispute = db.session.get(Dispute, dispute_id)
    if not dispute:
        return None, (jsonify({'error': 'Dispute not found'}), 404)
    user = current_user()
    if not dispute_rules.is_party(dispute, user.id) and not (allow_admin and user.is_admin):
        return None, deny_access('dispute', dispute.id, f'Access to dispute {dispute.dispute_number} denied')
    return dispute, None

@app.route('/api/disputes', methods=['POST'])
@login_required
def open_dispute():
    """Either party to an active gig opens a dispute; the escrow is frozen"""
    try:
        user_id = session['user_id']
        data = request.get_json(silent=True) or {}
        gig = db.session.get(Gig, data.get('gig_id') or 0)
        if not gig:
            return jsonify({'error': 'Gig not found'}), 404
        if not gig.accepted_freelancer_id:
            return jsonify({'error': 'Disputes can only be opened once a freelancer is hired'}), 400
        if user_id not in (gig.client_id, gig.accepted_freelancer_id):
            return jsonify({'error': 'Only the client or freelancer can open a dispute'}), 403
        if gig.status != 'in_progress':
            return jsonify({'error': f'Cannot open a dispute on a {gig.status} gig'}), 400

        existing = Dispute.query.filter(
            Dispute.gig_id == gig.id,
            Dispute.status.in_(dispute_rules.ACTIVE_STATUSES)
        ).first()
        if existing:
            return jsonify({'error': 'An active dispute already exists for this gig', 'dispute_id': existing.id}), 409

        if data.get('reason') not in dispute_rules.DISPUTE_REASONS:
            return jsonify({'error': 'Invalid dispute reason'}), 400
        is_valid, message = validate_length(data.get('title'), 'Title', 5, 200)
        if not is_valid:
            return jsonify({'error': message}), 400
        is_valid, message = validate_length(data.get('description'), 'Description', 20, 5000)
        if not is_valid:
            return jsonify({'error': message}), 400

        escrow = gig_escrow(gig.id)
        if escrow and escrow.status == 'held':
            escrow_service.dispute(escrow)

        now = datetime.utcnow()
        respondent_id = gig.accepted_freelancer_id if user_id == gig.client_id else gig.client_id
        dispute = Dispute(
            dispute_number=dispute_rules.generate_dispute_number(now),
            gig_id=gig.id,
            escrow_id=escrow.id if escrow else None,
            initiated_by=user_id,
            respondent_id=respondent_id,
            reason=data['reason'],
            title=sanitize_input(data['title'], max_length=200),
            description=sanitize_input(data['description'], max_length=5000),
            evidence_files=json.dumps([
                {'url': url, 'uploaded_by': user_id, 'uploaded_at': now.isoformat()}
                for url in data.get('evidence_files') or []
            ]),
            status='open',
            response_deadline=dispute_rules.response_deadline(now),
            created_at=now
        )
        db.session.add(dispute)

        change_gig_status(gig, 'disputed', user_id, f'Dispute opened: {dispute.title}')
        gig.payment_status = 'disputed'
        db.session.flush()

        notify(respondent_id, 'dispute_opened', 'Dispute Opened',
               f'A dispute was opened on "{gig.title}". Please respond within '
               f'{dispute_rules.RESPONSE_WINDOW_DAYS} days.', f'/disputes/{dispute.id}', dispute.id)
        audit.log_workflow('dispute_opened', f'Dispute {dispute.dispute_number} opened', 'dispute', dispute.id)

        db.session.commit()
        return jsonify({'dispute': dispute.to_dict(viewer_id=user_id)}), 201
    except EscrowError as e:
        db.session.rollback()
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Open dispute error: {str(e)}")
        return jsonify({'error': 'Failed to open dispute'}), 500

@app.route('/api/disputes')
@login_required
def list_disputes():
    user = current_user()
    query = Dispute.query
    if not (user.is_admin and request.args.get('all') == 'true'):
        query = query.filter(or_(Dispute.initiated_by == user.id, Dispute.respondent_id == user.id))
    if request.args.get('status'):
        query = query.filter_by(status=request.args['status'])
    disputes = query.order_by(Dispute.created_at.desc()).all()
    return jsonify({'disputes': [d.to_dict(viewer_id=user.id) for d in disputes]})

@app.route('/api/disputes/<int:dispute_id>')
@login_required
def get_dispute(dispute_id):
    dispute, error = load_dispute(dispute_id)
    if error:
        return error
    return jsonify({'dispute': dispute.to_dict(viewer_id=session['user_id'])})

@app.route('/api/disputes/<int:dispute_id>/respond', methods=['POST'])
@login_required
def respond_to_dispute(dispute_id):
    try:
        user_id = session['user_id']
        dispute, error = load_dispute(dispute_id, allow_admin=False)
        if error:
            return error
        allowed, message = dispute_rules.can_respond(dispute, user_id)
        if not allowed:
            return jsonify({'error': message}), 400

        data = request.get_json(silent=True) or {}
        is_valid, message = validate_length(data.get('response'), 'Response', 10, 5000)
        if not is_valid:
            return jsonify({'error': message}), 400

        dispute.respondent_evidence = sanitize_input(data['response'], max_length=5000)
        dispute_rules.apply_status(dispute, 'under_review')
        notify(dispute.initiated_by, 'dispute_response', 'Dispute Response',
               f'The other party responded to dispute {dispute.dispute_number}.', f'/disputes/{dispute.id}', dispute.id)

        db.session.commit()
        return jsonify({'dispute': dispute.to_dict(viewer_id=user_id)})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Respond to dispute error: {str(e)}")
        return jsonify({'error': 'Failed to respond to dispute'}), 500

@app.route('/api/disputes/<int:dispute_id>/evidence', methods=['POST'])
@login_required
def add_dispute_evidence(dispute_id):
    try:
        user_id = session['user_id']
        dispute, error = load_dispute(dispute_id, allow_admin=False)
        if error:
            return error
        allowed, message = dispute_rules.can_add_evidence(dispute, user_id)
        if not allowed:
            return jsonify({'error': message}), 400

        data = request.get_json(silent=True) or {}
        urls = data.get('files') or []
        statement = sanitize_input(data.get('statement', ''), max_length=5000)
        if not urls and not statement:
            return jsonify({'error': 'Provide evidence files or a statement'}), 400

        now = datetime.utcnow()
        evidence = load_json(dispute.evidence_files, [])
        evidence.extend({'url': url, 'uploaded_by': user_id, 'uploaded_at': now.isoformat()} for url in urls)
        dispute.evidence_files = json.dumps(evidence)
        if statement:
            field = dispute_rules.evidence_field(dispute, user_id)
            existing = getattr(dispute, field)
            setattr(dispute, field, f"{existing}\n\n{statement}" if existing else statement)

        db.session.commit()
        return jsonify({'dispute': dispute.to_dict(viewer_id=user_id)})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Add dispute evidence error: {str(e)}")
        return jsonify({'error': 'Failed to add evidence'}), 500

@app.route('/api/disputes/<int:dispute_id>/propose', methods=['POST'])
@login_required
def propose_dispute_resolution(dispute_id):
    """A party proposes the amount the freelancer should receive"""
    try:
        user_id = session['user_id']
        dispute, error = load_dispute(dispute_id, allow_admin=False)
        if error:
            return error
        allowed, message = dispute_rules.can_propose_resolution(dispute, user_id)
        if not allowed:
            return jsonify({'error': message}), 400

        data = request.get_json(silent=True) or {}
        amount = data.get('amount')
        escrow = db.session.get(Escrow, dispute.escrow_id) if dispute.escrow_id else None
        maximum = escrow.amount if escrow else None
        if not isinstance(amount, (int, float)) or amount < 0 or (maximum is not None and amount > maximum):
            return jsonify({'error': 'Proposed amount must be between zero and the escrow amount'}), 400

        dispute.proposed_by = user_id
        dispute.proposed_amount = round(float(amount), 2)
        proposal = sanitize_input(data.get('message', ''), max_length=2000)
        if proposal:
            field = dispute_rules.evidence_field(dispute, user_id)
            existing = getattr(dispute, field)
            setattr(dispute, field, f"{existing}\n\nProposal: {proposal}" if existing else f"Proposal: {proposal}")
        dispute_rules.apply_status(dispute, 'awaiting_response')

        other_id = dispute.respondent_id if user_id == dispute.initiated_by else dispute.initiated_by
        notify(other_id, 'dispute_proposal', 'Resolution Proposed',
               f'A settlement of R{dispute.proposed_amount:.2f} was proposed for dispute {dispute.dispute_number}.',
               f'/disputes/{dispute.id}', dispute.id)

        db.session.commit()
        return jsonify({'dispute': dispute.to_dict(viewer_id=user_id)})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Propose resolution error: {str(e)}")
        return jsonify({'error': 'Failed to propose resolution'}), 500

def resolve_dispute(dispute, decision, summary, payment_adjustment, resolved_by):
    """Settle the escrow and gig for a resolution decision. Raises ValueError or EscrowError."""
    escrow = db.session.get(Escrow, dispute.escrow_id) if dispute.escrow_id else None
    gig = db.session.get(Gig, dispute.gig_id)
    outcome, released = dispute_rules.escrow_outcome(decision, escrow.amount if escrow else 0, payment_adjustment)

    if escrow and escrow.status == 'disputed':
        escrow_service.settle_dispute(escrow, outcome, released if outcome == 'released' else None)
        audit.log_financial(f'escrow_{outcome}', f'Dispute {dispute.dispute_number} settled: escrow {outcome}',
                            released if outcome == 'released' else escrow.amount, 'escrow', escrow.id)
        payment_status = 'paid' if outcome == 'released' else 'refunded'
    else:
        # Never funded: close the checkout so it cannot be paid later
        if escrow and escrow.status == 'pending':
            escrow_service.refund(escrow)
        payment_status = 'unpaid'

    dispute.resolution_decision = decision
    dispute.resolution_summary = summary
    dispute.payment_adjustment = payment_adjustment
    dispute.resolved_by = resolved_by
    dispute_rules.apply_status(dispute, 'resolved')

    gig.payment_status = payment_status
    if outcome == 'released':
        complete_gig(gig, resolved_by, f'Dispute {dispute.dispute_number} resolved')
    else:
        change_gig_status(gig, 'cancelled', resolved_by, f'Dispute {dispute.dispute_number} resolved')

    for party_id in (dispute.initiated_by, dispute.respondent_id):
        notify(party_id, 'dispute_resolved', 'Dispute Resolved',
               f'Dispute {dispute.dispute_number} was resolved: {dispute_rules.get_decision_label(decision)}.',
               f'/disputes/{dispute.id}', dispute.id)
    audit.log_workflow('dispute_resolved', f'Dispute {dispute.dispute_number} resolved ({decision})',
                       'dispute', dispute.id)

@app.route('/api/disputes/<int:dispute_id>/accept-proposal', methods=['POST'])
@login_required
def accept_dispute_proposal(dispute_id):
    try:
        user_id = session['user_id']
        dispute, error = load_dispute(dispute_id, allow_admin=False)
        if error:
            return error
        if dispute.status != 'awaiting_response' or dispute.proposed_amount is None:
            return jsonify({'error': 'There is no proposal to accept'}), 400
        if dispute.proposed_by == user_id:
            return jsonify({'error': 'You cannot accept your own proposal'}), 400

        resolve_dispute(dispute, 'mutual_agreement',
                        f'Both parties agreed on R{dispute.proposed_amount:.2f}',
                        dispute.proposed_amount, user_id)

        db.session.commit()
        return jsonify({'dispute': dispute.to_dict(viewer_id=user_id)})
    except (ValueError, EscrowError) as e:
        db.session.rollback()
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Accept proposal error: {str(e)}")
        return jsonify({'error': 'Failed to accept proposal'}), 500

@app.route('/api/admin/disputes/<int:dispute_id>/status', methods=['POST'])
@admin_required
def update_dispute_status(dispute_id):
    try:
        dispute = db.session.get(Dispute, dispute_id)
        if not dispute:
            return jsonify({'error': 'Dispute not found'}), 404

        new_status = (request.get_json(silent=True) or {}).get('status')
        allowed, message = dispute_rules.validate_status_change(dispute, new_status)
        if not allowed:
            return jsonify({'error': message}), 400

        dispute_rules.apply_status(dispute, new_status)
        audit.log_workflow('dispute_status_changed', f'Dispute {dispute.dispute_number} moved to {new_status}',
                           'dispute', dispute.id)
        db.session.commit()
        return jsonify({'dispute': dispute.to_dict()})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update dispute status error: {str(e)}")
        return jsonify({'error': 'Failed to update dispute status'}), 500

@app.route('/api/admin/disputes/<int:dispute_id>/resolve', methods=['POST'])
@admin_required
def admin_resolve_dispute(dispute_id):
    try:
        dispute = db.session.get(Dispute, dispute_id)
        if not dispute:
            return jsonify({'error': 'Dispute not found'}), 404
        if dispute.status in dispute_rules.FINAL_STATUSES:
            return jsonify({'error': 'This dispute has already been resolved'}), 400

        data = request.get_json(silent=True) or {}
        decision = data.get('decision')
        if decision not in dispute_rules.RESOLUTION_DECISIONS:
            return jsonify({'error': 'Invalid resolution decision'}), 400
        is_valid, message = validate_length(data.get('summary'), 'Resolution summary', 10, 5000)
        if not is_valid:
            return jsonify({'error': message}), 400
        adjustment = data.get('payment_adjustment')
        if adjustment is not None and not isinstance(adjustment, (int, float)):
            return jsonify({'error': 'payment_adjustment must be a number'}), 400

        resolve_dispute(dispute, decision, sanitize_input(data['summary'], max_length=5000),
                        adjustment, session['user_id'])

        db.session.commit()
        return jsonify({'dispute': dispute.to_dict()})
    except (ValueError, EscrowError) as e:
        db.session.rollback()
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Resolve dispute error: {str(e)}")
        return jsonify({'error': 'Failed to resolve dispute'}), 500

# ============================================
# MESSAGING ROUTES
# ============================================

def load_conversation(conversation_id):
    conversation = db.session.get(Conversation, conversation_id)
    if not conversation:
        return None, (jsonify({'error': 'Conversation not found'}), 404)
    if not conversation.has_participant(session['user_id']):
        return None, deny_access('conversation', conversation.id, f'Access to conversation {conversation.id} denied')
    return conversation, None

def refresh_preview(conversation):
    last = Message.query.filter_by(conversation_id=conversation.id).order_by(Message.created_at.desc(), Message.id.desc()).first()
    conversation.last_message_at = last.created_at if last else None
    conversation.last_message_preview = last.content[:100] if last else None

@app.route('/api/conversations', methods=['POST'])
@login_required
def start_conversation():
    """Get or create the conversation between the current user and another user"""
    try:
        user_id = session['user_id']
        data = request.get_json(silent=True) or {}
        other_id = data.get('user_id')
        if other_id == user_id:
            return jsonify({'error': 'You cannot message yourself'}), 400
        if not db.session.get(User, other_id or 0):
            return jsonify({'error': 'User not found'}), 404

        low, high = sorted([user_id, other_id])
        conversation = Conversation.query.filter_by(participant_1_id=low, participant_2_id=high).first()
        if conversation:
            return jsonify({'conversation': conversation.to_dict(viewer_id=user_id)})

        conversation = Conversation(
            participant_1_id=low,
            participant_2_id=high,
            gig_id=data.get('gig_id'),
            application_id=data.get('application_id')
        )
        db.session.add(conversation)
        db.session.commit()
        return jsonify({'conversation': conversation.to_dict(viewer_id=user_id)}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Start conversation error: {str(e)}")
        return jsonify({'error': 'Failed to start conversation'}), 500

@app.route('/api/conversations')
@login_required
def list_conversations():
    user_id = session['user_id']
    conversations = Conversation.query.filter(
        or_(Conversation.participant_1_id == user_id, Conversation.participant_2_id == user_id)
    ).order_by(Conversation.last_message_at.desc().nullslast(), Conversation.created_at.desc()).all()

    return jsonify({'conversations': [c.to_dict(viewer_id=user_id) for c in conversations]})

@app.route('/api/conversations/<int:conversation_id>/messages')
@login_required
def list_messages(conversation_id):
    conversation, error = load_conversation(conversation_id)
    if error:
        return error

    try:
        limit = min(max(int(request.args.get('limit', 50)), 1), 100)
        before = parse_datetime(request.args.get('before'))
    except ValueError:
        return jsonify({'error': 'Invalid limit or before parameter'}), 400

    query = Message.query.filter_by(conversation_id=conversation.id)
    if before:
        query = query.filter(Message.created_at < before)
    messages = query.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit).all()
    messages.reverse()
    return jsonify({'messages': [m.to_dict() for m in messages], 'has_more': len(messages) == limit})

@app.route('/api/conversations/<int:conversation_id>/messages', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=60)
def send_message(conversation_id):
    try:
        user_id = session['user_id']
        conversation, error = load_conversation(conversation_id)
        if error:
            return error

        data = request.get_json(silent=True) or {}
        is_valid, message = validate_length(data.get('content'), 'Message', 1, 5000)
        if not is_valid:
            return jsonify({'error': message}), 400

        now = datetime.utcnow()
        msg = Message(
            conversation_id=conversation.id,
            sender_id=user_id,
            content=sanitize_input(data['content'], max_length=5000),
            attachment_url=data.get('attachment_url'),
            attachment_name=data.get('attachment_name'),
            attachment_size=data.get('attachment_size'),
            created_at=now
        )
        db.session.add(msg)

        conversation.last_message_at = now
        conversation.last_message_preview = msg.content[:100]
        recipient_id = conversation.other_participant_id(user_id)
        if recipient_id == conversation.participant_1_id:
            conversation.participant_1_unread_count = (conversation.participant_1_unread_count or 0) + 1
        else:
            conversation.participant_2_unread_count = (conversation.participant_2_unread_count or 0) + 1

        sender = current_user()
        notify(recipient_id, 'message', 'New Message',
               f'{sender.full_name or sender.username}: {msg.content[:100]}',
               f'/messages/{conversation.id}', conversation.id)

        db.session.commit()
        return jsonify({'message': msg.to_dict()}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Send message error: {str(e)}")
        return jsonify({'error': 'Failed to send message'}), 500

@app.route('/api/conversations/<int:conversation_id>/read', methods=['POST'])
@login_required
def mark_conversation_read(conversation_id):
    user_id = session['user_id']
    conversation, error = load_conversation(conversation_id)
    if error:
        return error

    now = datetime.utcnow()
    Message.query.filter(
        Message.conversation_id == conversation.id,
        Message.sender_id != user_id,
        Message.read.is_(False)
    ).update({'read': True, 'read_at': now}, synchronize_session=False)
    if user_id == conversation.participant_1_id:
        conversation.participant_1_unread_count = 0
    else:
        conversation.participant_2_unread_count = 0

    db.session.commit()
    return jsonify({'conversation': conversation.to_dict(viewer_id=user_id)})

@app.route('/api/messages/<int:message_id>', methods=['PUT'])
@login_required
def edit_message(message_id):
    msg = db.session.get(Message, message_id)
    if not msg:
        return jsonify({'error': 'Message not found'}), 404
    if msg.sender_id != session['user_id']:
        return jsonify({'error': 'You can only edit your own messages'}), 403

    content = (request.get_json(silent=True) or {}).get('content')
    is_valid, message = validate_length(content, 'Message', 1, 5000)
    if not is_valid:
        return jsonify({'error': message}), 400

    msg.content = sanitize_input(content, max_length=5000)
    msg.edited = True
    msg.edited_at = datetime.utcnow()
    conversation = db.session.get(Conversation, msg.conversation_id)
    db.session.flush()
    refresh_preview(conversation)
    db.session.commit()
    return jsonify({'message': msg.to_dict()})

@app.route('/api/messages/<int:message_id>', methods=['DELETE'])
@login_required
def delete_message(message_id):
    msg = db.session.get(Message, message_id)
    if not msg:
        return jsonify({'error': 'Message not found'}), 404
    if msg.sender_id != session['user_id']:
        return jsonify({'error': 'You can only delete your own messages'}), 403

    conversation = db.session.get(Conversation, msg.conversation_id)
    recipient_id = conversation.other_participant_id(msg.sender_id)
    if not msg.read:
        if recipient_id == conversation.participant_1_id:
            conversation.participant_1_unread_count = max((conversation.participant_1_unread_count or 0) - 1, 0)
        else:
            conversation.participant_2_unread_count = max((conversation.participant_2_unread_count or 0) - 1, 0)
    db.session.delete(msg)
    db.session.flush()
    refresh_preview(conversation)
    db.session.commit()
    return jsonify({'message': 'Message deleted'})

@app.route('/api/messages/unread-count')
@login_required
def unread_message_count():
    user_id = session['user_id']
    conversations = Conversation.query.filter(
        or_(Conversation.participant_1_id == user_id, Conversation.participant_2_id == user_id)
    ).all()
    return jsonify({'unread_count': sum(c.unread_count_for(user_id) for c in conversations)})

# ============================================
# REVIEW ROUTES
# ============================================

RATING_DIMENSIONS = ('communication_rating', 'quality_rating', 'timeliness_rating', 'professionalism_rating')
REVIEW_EDIT_WINDOW_HOURS = 24

def validate_rating(value, field, required=False):
    if value is None:
        return (False, f"{field} is required") if required else (True, f"{field} is valid")
    if not isinstance(value, int) or isinstance(value, bool) or not 1 <= value <= 5:
        return False, f"{field} must be between 1 and 5"
    return True, f"{field} is valid"

def update_user_rating(user_id):
    """Recalculate a user's average rating from public reviews"""
    user = db.session.get(User, user_id)
    if not user:
        return
    db.session.flush()
    reviews = Review.query.filter_by(reviewee_id=user_id, is_public=True).all()
    user.review_count = len(reviews)
    user.rating = round(sum(r.rating for r in reviews) / len(reviews), 2) if reviews else 0.0

def review_eligibility(gig, user_id):
    """Returns (reason or None, reviewee_id, http status for the refusal)"""
    if not gig:
        return 'Gig not found', None, 404
    if user_id not in (gig.client_id, gig.accepted_freelancer_id):
        return 'Only participants of this gig can leave a review', None, 403
    if gig.status != 'completed':
        return 'Reviews can only be left on completed gigs', None, 400
    reviewee_id = gig.accepted_freelancer_id if user_id == gig.client_id else gig.client_id
    if Review.query.filter_by(gig_id=gig.id, reviewer_id=user_id, reviewee_id=reviewee_id).first():
        return 'You have already reviewed this gig', reviewee_id, 409
    return None, reviewee_id, None

@app.route('/api/reviews', methods=['POST'])
@login_required
def create_review():
    try:
        user_id = session['user_id']
        data = request.get_json(silent=True) or {}
        gig = db.session.get(Gig, data.get('gig_id') or 0)
        reason, reviewee_id, status = review_eligibility(gig, user_id)
        if reason:
            return jsonify({'error': reason}), status

        is_valid, message = validate_rating(data.get('rating'), 'Rating', required=True)
        if not is_valid:
            return jsonify({'error': message}), 400
        for field in RATING_DIMENSIONS:
            is_valid, message = validate_rating(data.get(field), field.replace('_', ' ').capitalize())
            if not is_valid:
                return jsonify({'error': message}), 400
        is_valid, message = validate_length(data.get('review_text'), 'Review', 10, 2000)
        if not is_valid:
            return jsonify({'error': message}), 400

        review = Review(
            gig_id=gig.id,
            reviewer_id=user_id,
            reviewee_id=reviewee_id,
            review_type='client_to_freelancer' if user_id == gig.client_id else 'freelancer_to_client',
            rating=data['rating'],
            review_text=sanitize_input(data['review_text'], max_length=2000),
            would_work_again=data.get('would_work_again'),
            **{field: data.get(field) for field in RATING_DIMENSIONS}
        )
        db.session.add(review)
        update_user_rating(reviewee_id)
        notify(reviewee_id, 'review_received', 'New Review',
               f'You received a {review.rating}-star review for "{gig.title}".', f'/gigs/{gig.id}', gig.id)

        db.session.commit()
        return jsonify({'review': review.to_dict()}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create review error: {str(e)}")
        return jsonify({'error': 'Failed to create review'}), 500

@app.route('/api/users/<int:user_id>/reviews')
def user_reviews(user_id):
    if request.args.get('type') == 'given':
        query = Review.query.filter_by(reviewer_id=user_id)
    else:
        query = Review.query.filter_by(reviewee_id=user_id)
    reviews = query.filter_by(is_public=True).order_by(Review.created_at.desc()).all()
    return jsonify({'reviews': [r.to_dict() for r in reviews]})

@app.route('/api/gigs/<int:gig_id>/reviews')
def gig_reviews(gig_id):
    reviews = Review.query.filter_by(gig_id=gig_id, is_public=True).order_by(Review.created_at.desc()).all()
    return jsonify({'reviews': [r.to_dict() for r in reviews]})

@app.route('/api/users/<int:user_id>/review-stats')
def user_review_stats(user_id):
    reviews = Review.query.filter_by(reviewee_id=user_id, is_public=True).all()

    def average(values):
        values = [v for v in values if v is not None]
        return round(sum(values) / len(values), 2) if values else None

    distribution = {str(star): 0 for star in range(1, 6)}
    for review in reviews:
        distribution[str(review.rating)] += 1
    answered = [r.would_work_again for r in reviews if r.would_work_again is not None]

    stats = {
        'total_reviews': len(reviews),
        'average_rating': average(r.rating for r in reviews) or 0,
        'rating_distribution': distribution,
        'would_work_again_percentage': round(sum(1 for a in answered if a) / len(answered) * 100) if answered else None
    }
    for field in RATING_DIMENSIONS:
        stats[f'average_{field}'] = average(getattr(r, field) for r in reviews)
    return jsonify({'stats': stats})

@app.route('/api/gigs/<int:gig_id>/can-review')
@login_required
def can_review_gig(gig_id):
    gig = db.session.get(Gig, gig_id)
    reason, reviewee_id, _ = review_eligibility(gig, session['user_id'])
    return jsonify({'can_review': reason is None, 'reason': reason, 'reviewee_id': reviewee_id})

@app.route('/api/reviews/<int:review_id>', methods=['PUT'])
@login_required
def update_review(review_id):
    try:
        review = db.session.get(Review, review_id)
        if not review:
            return jsonify({'error': 'Review not found'}), 404
        if review.reviewer_id != session['user_id']:
            return jsonify({'error': 'You can only edit your own reviews'}), 403
        if datetime.utcnow() - review.created_at > timedelta(hours=REVIEW_EDIT_WINDOW_HOURS):
            return jsonify({'error': f'Reviews can only be edited within {REVIEW_EDIT_WINDOW_HOURS} hours'}), 400

        data = request.get_json(silent=True) or {}
        if 'rating' in data:
            is_valid, message = validate_rating(data['rating'], 'Rating', required=True)
            if not is_valid:
                return jsonify({'error': message}), 400
            review.rating = data['rating']
        for field in RATING_DIMENSIONS:
            if field in data:
                is_valid, message = validate_rating(data[field], field.replace('_', ' ').capitalize())
                if not is_valid:
                    return jsonify({'error': message}), 400
                setattr(review, field, data[field])
        if 'review_text' in data:
            is_valid, message = validate_length(data['review_text'], 'Review', 10, 2000)
            if not is_valid:
                return jsonify({'error': message}), 400
            review.review_text = sanitize_input(data['review_text'], max_length=2000)
        if 'would_work_again' in data:
            review.would_work_again = data['would_work_again']

        update_user_rating(review.reviewee_id)
        db.session.commit()
        return jsonify({'review': review.to_dict()})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update review error: {str(e)}")
        return jsonify({'error': 'Failed to update review'}), 500

@app.route('/api/reviews/<int:review_id>', methods=['DELETE'])
@login_required
def delete_review(review_id):
    try:
        review = db.session.get(Review, review_id)
        if not review:
            return jsonify({'error': 'Review not found'}), 404
        if review.reviewer_id != session['user_id']:
            return jsonify({'error': 'You can only delete your own reviews'}), 403

        reviewee_id = review.reviewee_id
        db.session.delete(review)
        update_user_rating(reviewee_id)
        db.session.commit()
        return jsonify({'message': 'Review deleted'})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Delete review error: {str(e)}")
        return jsonify({'error': 'Failed to delete review'}), 500

@app.route('/api/reviews/<int:review_id>/helpful', methods=['POST'])
@login_required
def mark_review_helpful(review_id):
    review = db.session.get(Review, review_id)
    if not review:
        return jsonify({'error': 'Review not found'}), 404
    if review.reviewer_id == session['user_id']:
        return jsonify({'error': 'You cannot mark your own review as helpful'}), 400
    review.helpful_count = (review.helpful_count or 0) + 1
    db.session.commit()
    return jsonify({'helpful_count': review.helpful_count})

# ============================================
# SKILL TEST ROUTES
# ============================================

@app.route('/api/skill-tests/templates')
def list_skill_test_templates():
    templates = SkillTestTemplate.query.filter_by(is_active=True).order_by(SkillTestTemplate.name).all()
    return jsonify({'templates': [t.to_dict() for t in templates]})

@app.route('/api/admin/skill-tests/templates', methods=['POST'])
@admin_required
def create_skill_test_template():
    try:
        data = request.get_json(silent=True) or {}
        is_valid, message = validate_length(data.get('name'), 'Name', 3, 120)
        if not is_valid:
            return jsonify({'error': message}), 400
        template = SkillTestTemplate(
            name=sanitize_input(data['name'], max_length=120),
            category=sanitize_input(data.get('category', ''), max_length=50) or None,
            description=sanitize_input(data.get('description', ''), max_length=2000)
        )
        db.session.add(template)
        db.session.commit()
        return jsonify({'template': template.to_dict()}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create skill test template error: {str(e)}")
        return jsonify({'error': 'Failed to create template'}), 500

@app.route('/api/admin/skill-tests/templates/<int:template_id>/questions', methods=['POST'])
@admin_required
def add_skill_test_questions(template_id):
    """Add one question or a list of questions to a template"""
    try:
        template = db.session.get(SkillTestTemplate, template_id)
        if not template:
            return jsonify({'error': 'Template not found'}), 404

        data = request.get_json(silent=True) or {}
        items = data.get('questions') if isinstance(data.get('questions'), list) else [data]
        created = []
        for index, item in enumerate(items):
            if item.get('difficulty') not in skill_tests.DIFFICULTY_CONFIG:
                return jsonify({'error': f'Question {index + 1}: difficulty must be entry, mid or senior'}), 400
            if not all((item.get(key) or '').strip() for key in ('question_text', 'option_a', 'option_b', 'option_c', 'option_d')):
                return jsonify({'error': f'Question {index + 1}: question text and all four options are required'}), 400
            answer = str(item.get('correct_answer', '')).strip().upper()
            if answer not in skill_tests.ANSWER_OPTIONS:
                return jsonify({'error': f'Question {index + 1}: correct_answer must be A, B, C or D'}), 400

            question = SkillTestQuestion(
                template_id=template.id,
                difficulty=item['difficulty'],
                question_text=item['question_text'].strip(),
                option_a=item['option_a'].strip(),
                option_b=item['option_b'].strip(),
                option_c=item['option_c'].strip(),
                option_d=item['option_d'].strip(),
                correct_answer=answer,
                explanation=item.get('explanation')
            )
            db.session.add(question)
            created.append(question)

        db.session.commit()
        return jsonify({'created': len(created), 'template': template.to_dict()}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Add skill test questions error: {str(e)}")
        return jsonify({'error': 'Failed to add questions'}), 500

def expire_overdue_attempts(attempts, now):
    grace = timedelta(seconds=skill_tests.SUBMISSION_GRACE_SECONDS)
    for attempt in attempts:
        if attempt.status == 'in_progress' and now > skill_tests.attempt_deadline(attempt) + grace:
            skill_tests.expire_attempt(attempt, now)

def load_own_attempt(attempt_id):
    attempt = db.session.get(SkillTestAttempt, attempt_id)
    if not attempt:
        return None, (jsonify({'error': 'Attempt not found'}), 404)
    if attempt.applicant_id != session['user_id']:
        return None, deny_access('skill_test_attempt', attempt.id, f'Access to skill test attempt {attempt.id} denied')
    return attempt, None

@app.route('/api/gigs/<int:gig_id>/skill-test/eligibility')
@login_required
def skill_test_eligibility(gig_id):
    gig = db.session.get(Gig, gig_id)
    if not gig:
        return jsonify({'error': 'Gig not found'}), 404
    if not gig.requires_skill_test:
        return jsonify({'requires_skill_test': False, 'can_attempt': False, 'reason': 'This gig has no skill test'})

    now = datetime.utcnow()
    attempts = SkillTestAttempt.query.filter_by(gig_id=gig.id, applicant_id=session['user_id']).all()
    expire_overdue_attempts(attempts, now)
    db.session.commit()

    result = skill_tests.can_attempt(attempts, now)
    result.update({
        'requires_skill_test': True,
        'difficulty': gig.skill_test_difficulty,
        'question_count': skill_tests.question_count(gig.skill_test_difficulty),
        'time_limit_minutes': skill_tests.TEST_TIME_LIMIT_MINUTES,
        'passing_score': gig.skill_test_passing_score,
        'passed_attempt_id': next((a.id for a in attempts if a.status == 'completed' and a.passed), None)
    })
    return jsonify(result)

@app.route('/api/gigs/<int:gig_id>/skill-test/start', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=10)
def start_skill_test(gig_id):
    """Start a timed attempt; the questions are snapshotted onto the attempt"""
    try:
        user = current_user()
        gig = db.session.get(Gig, gig_id)
        if not gig:
            return jsonify({'error': 'Gig not found'}), 404
        if not gig.requires_skill_test or not gig.skill_test_template_id:
            return jsonify({'error': 'This gig has no skill test'}), 400
        if gig.client_id == user.id:
            return jsonify({'error': 'You cannot take the skill test for your own gig'}), 400
        if gig.status != 'open':
            return jsonify({'error': 'This gig is no longer accepting applications'}), 400

        now = datetime.utcnow()
        attempts = SkillTestAttempt.query.filter_by(gig_id=gig.id, applicant_id=user.id).all()
        expire_overdue_attempts(attempts, now)

        eligibility = skill_tests.can_attempt(attempts, now)
        if not eligibility['can_attempt']:
            db.session.commit()
            return jsonify({'error': eligibility['reason'], **eligibility}), 409

        pool = SkillTestQuestion.query.filter_by(template_id=gig.skill_test_template_id,
                                                 difficulty=gig.skill_test_difficulty).all()
        questions = [skill_tests.snapshot_question(q) for q in skill_tests.select_questions(pool, gig.skill_test_difficulty)]

        attempt = SkillTestAttempt(
            applicant_id=user.id,
            template_id=gig.skill_test_template_id,
            gig_id=gig.id,
            difficulty=gig.skill_test_difficulty,
            questions_data=json.dumps(questions),
            answers_data=json.dumps({}),
            passing_score=gig.skill_test_passing_score,
            time_limit_seconds=skill_tests.time_limit_seconds(),
            status='in_progress',
            started_at=now
        )
        db.session.add(attempt)
        db.session.flush()
        audit.log_skill_test('skill_test_started', f'Skill test attempt {attempt.id} started for gig {gig.id}', attempt.id)

        db.session.commit()
        return jsonify({
            'attempt': attempt.to_dict(),
            'questions': [skill_tests.public_question(q) for q in questions]
        }), 201
    except SkillTestError as e:
        db.session.rollback()
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Start skill test error: {str(e)}")
        return jsonify({'error': 'Failed to start skill test'}), 500

@app.route('/api/skill-tests/attempts/<int:attempt_id>/progress', methods=['PUT'])
@login_required
def save_skill_test_progress(attempt_id):
    """Autosave answers so an abandoned attempt is graded on what was given"""
    attempt, error = load_own_attempt(attempt_id)
    if error:
        return error
    if attempt.status != 'in_progress':
        return jsonify({'error': 'This test has already been submitted'}), 409
    answers = skill_tests.normalize_answers((request.get_json(silent=True) or {}).get('answers'))
    attempt.answers_data = json.dumps(answers)
    db.session.commit()
    return jsonify({'saved': len(answers), 'expires_at': isoformat(skill_tests.attempt_deadline(attempt))})

@app.route('/api/skill-tests/attempts/<int:attempt_id>/submit', methods=['POST'])
@login_required
def submit_skill_test(attempt_id):
    try:
        attempt, error = load_own_attempt(attempt_id)
        if error:
            return error

        data = request.get_json(silent=True) or {}
        tab_switches = data.get('tab_switches') or 0
        if not isinstance(tab_switches, int) or tab_switches < 0:
            return jsonify({'error': 'tab_switches must be a non-negative integer'}), 400

        skill_tests.finalize_attempt(attempt, data.get('answers'), tab_switches)
        severity = 'high' if attempt.status == 'failed_cheat' else 'low'
        if attempt.status == 'failed_cheat':
            attempt.violation_type = 'tab_switch'
        audit.log_skill_test(f'skill_test_{attempt.status}',
                             f'Skill test attempt {attempt.id} finished: {attempt.status}, score {attempt.score}',
                             attempt.id, severity=severity)

        db.session.commit()
        return jsonify({'attempt': attempt.to_dict()})
    except SkillTestError as e:
        db.session.rollback()
        return jsonify({'error': str(e)}), 409
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Submit skill test error: {str(e)}")
        return jsonify({'error': 'Failed to submit skill test'}), 500

@app.route('/api/skill-tests/attempts/<int:attempt_id>/violation', methods=['POST'])
@login_required
def report_skill_test_violation(attempt_id):
    """Browser reports leaving the test tab; the attempt fails immediately"""
    try:
        attempt, error = load_own_attempt(attempt_id)
        if error:
            return error

        violation = (request.get_json(silent=True) or {}).get('type', 'tab_switch')
        if violation not in ('tab_switch', 'window_blur'):
            violation = 'tab_switch'

        answers = load_json(attempt.answers_data, {})
        skill_tests.finalize_attempt(attempt, answers, tab_switches=(attempt.tab_switches or 0) + 1)
        attempt.violation_type = violation
        audit.log_skill_test('skill_test_violation', f'Skill test attempt {attempt.id} failed: {violation}',
                             attempt.id, severity='high')

        db.session.commit()
        return jsonify({'attempt': attempt.to_dict()})
    except SkillTestError as e:
        db.session.rollback()
        return jsonify({'error': str(e)}), 409
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Skill test violation error: {str(e)}")
        return jsonify({'error': 'Failed to record violation'}), 500

@app.route('/api/skill-tests/attempts/<int:attempt_id>/review')
@login_required
def review_skill_test(attempt_id):
    attempt, error = load_own_attempt(attempt_id)
    if error:
        return error
    try:
        review = skill_tests.build_review(attempt)
    except SkillTestError as e:
        return jsonify({'error': str(e)}), 400
    return jsonify({'attempt': attempt.to_dict(), 'review': review})

@app.route('/api/skill-tests/attempts/mine')
@login_required
def my_skill_test_attempts():
    attempts = SkillTestAttempt.query.filter_by(applicant_id=session['user_id']).order_by(SkillTestAttempt.started_at.desc()).all()
    return jsonify({'attempts': [a.to_dict() for a in attempts]})

@app.route('/api/gigs/<int:gig_id>/skill-test/attempts')
@login_required
def gig_skill_test_attempts(gig_id):
    """Employer view of every attempt on a gig"""
    gig = db.session.get(Gig, gig_id)
    if not gig:
        return jsonify({'error': 'Gig not found'}), 404
    if gig.client_id != session['user_id']:
        return jsonify({'error': 'Only the client can view skill test results'}), 403

    attempts = SkillTestAttempt.query.filter_by(gig_id=gig.id).order_by(SkillTestAttempt.started_at.desc()).all()
    results = []
    for attempt in attempts:
        item = attempt.to_dict()
        applicant = db.session.get(User, attempt.applicant_id)
        item['applicant'] = applicant.to_dict() if applicant else None
        results.append(item)
    return jsonify({'attempts': results, 'stats': skill_tests.calculate_attempt_stats(attempts)})

# ============================================
# SEARCH ROUTES
# ============================================

def search_filters_from_args(args):
    filters = {}
    for key in ('query', 'province', 'category', 'experience_level', 'posted_within'):
        if args.get(key):
            filters[key] = args.get(key)
    for key in ('budget_min', 'budget_max', 'min_rating', 'rate_min', 'rate_max'):
        if args.get(key):
            filters[key] = float(args.get(key))
    skills = args.getlist('skills') or [s for s in (args.get('skills_csv') or '').split(',') if s]
    if skills:
        filters['skills'] = skills
    for key in ('remote_only', 'verified_only'):
        if args.get(key) in ('true', '1'):
            filters[key] = True
    return filters

@app.route('/api/search/assignments')
@api_rate_limit(requests_per_minute=60)
def search_assignments():
    try:
        filters = search_filters_from_args(request.args)
    except ValueError:
        return jsonify({'error': 'Numeric filters must be numbers'}), 400
    return jsonify(search.search_assignments(filters, request.args.get('page'), request.args.get('page_size'),
                                             request.args.get('sort_by', 'created_at_desc')))

@app.route('/api/search/freelancers')
@api_rate_limit(requests_per_minute=60)
def search_freelancers():
    try:
        filters = search_filters_from_args(request.args)
    except ValueError:
        return jsonify({'error': 'Numeric filters must be numbers'}), 400
    return jsonify(search.search_freelancers(filters, request.args.get('page'), request.args.get('page_size'),
                                             request.args.get('sort_by', 'rating_desc')))

@app.route('/api/search/skills')
def suggest_skills():
    return jsonify({'skills': search.suggest_skills(request.args.get('q', ''))})

@app.route('/api/saved-searches')
@login_required
def list_saved_searches():
    saved = SavedSearch.query.filter_by(user_id=session['user_id']).order_by(SavedSearch.created_at.desc()).all()
    return jsonify({'saved_searches': [s.to_dict() for s in saved]})

@app.route('/api/saved-searches', methods=['POST'])
@login_required
def create_saved_search():
    try:
        data = request.get_json(silent=True) or {}
        is_valid, message = validate_saved_search(data)
        if not is_valid:
            return jsonify({'error': message}), 400

        saved = SavedSearch(
            user_id=session['user_id'],
            name=data['name'].strip(),
            search_type=data['search_type'],
            filters=json.dumps(data.get('filters') or {}),
            notify_new_results=bool(data.get('notify_new_results'))
        )
        db.session.add(saved)
        db.session.commit()
        return jsonify({'saved_search': saved.to_dict()}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create saved search error: {str(e)}")
        return jsonify({'error': 'Failed to save search'}), 500

def load_saved_search(saved_id):
    saved = db.session.get(SavedSearch, saved_id)
    if not saved or saved.user_id != session['user_id']:
        return None, (jsonify({'error': 'Saved search not found'}), 404)
    return saved, None

@app.route('/api/saved-searches/<int:saved_id>', methods=['PUT'])
@login_required
def update_saved_search(saved_id):
    saved, error = load_saved_search(saved_id)
    if error:
        return error
    data = {**saved.to_dict(), **(request.get_json(silent=True) or {})}
    is_valid, message = validate_saved_search(data)
    if not is_valid:
        return jsonify({'error': message}), 400

    saved.name = data['name'].strip()
    saved.search_type = data['search_type']
    saved.filters = json.dumps(data.get('filters') or {})
    saved.notify_new_results = bool(data.get('notify_new_results'))
    db.session.commit()
    return jsonify({'saved_search': saved.to_dict()})

@app.route('/api/saved-searches/<int:saved_id>', methods=['DELETE'])
@login_required
def delete_saved_search(saved_id):
    saved, error = load_saved_search(saved_id)
    if error:
        return error
    db.session.delete(saved)
    db.session.commit()
    return jsonify({'message': 'Saved search deleted'})

@app.route('/api/saved-searches/<int:saved_id>/run', methods=['POST'])
@login_required
def run_saved_search(saved_id):
    saved, error = load_saved_search(saved_id)
    if error:
        return error
    try:
        result = search.execute_saved_search(saved, request.args.get('page'), request.args.get('page_size'))
    except ValueError:
        return jsonify({'error': 'Saved search has invalid filters'}), 400
    db.session.commit()
    return jsonify(result)

# ============================================
# NOTIFICATION ROUTES
# ============================================

@app.route('/api/notifications')
@login_required
def list_notifications():
    query = Notification.query.filter_by(user_id=session['user_id'])
    if request.args.get('unread') == 'true':
        query = query.filter_by(is_read=False)
    notifications = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(100).all()
    unread = Notification.query.filter_by(user_id=session['user_id'], is_read=False).count()
    return jsonify({'notifications': [n.to_dict() for n in notifications], 'unread_count': unread})

@app.route('/api/notifications/<int:notification_id>/read', methods=['POST'])
@login_required
def mark_notification_read(notification_id):
    notification = db.session.get(Notification, notification_id)
    if not notification or notification.user_id != session['user_id']:
        return jsonify({'error': 'Notification not found'}), 404
    notification.is_read = True
    notification.read_at = datetime.utcnow()
    db.session.commit()
    return jsonify({'notification': notification.to_dict()})

@app.route('/api/notifications/read-all', methods=['POST'])
@login_required
def mark_all_notifications_read():
    updated = Notification.query.filter_by(user_id=session['user_id'], is_read=False).update(
        {'is_read': True, 'read_at': datetime.utcnow()}, synchronize_session=False
    )
    db.session.commit()
    return jsonify({'updated': updated})

@app.route('/api/notification-preferences')
@login_required
def get_notification_preferences():
    preference = NotificationPreference.query.filter_by(user_id=session['user_id']).first()
    if not preference:
        return jsonify({'preferences': {field: True for field in NotificationPreference.PREFERENCE_FIELDS}})
    return jsonify({'preferences': preference.to_dict()})

@app.route('/api/notification-preferences', methods=['PUT'])
@login_required
def update_notification_preferences():
    data = request.get_json(silent=True) or {}
    preference = NotificationPreference.query.filter_by(user_id=session['user_id']).first()
    if not preference:
        preference = NotificationPreference(user_id=session['user_id'])
        db.session.add(preference)
    for field in NotificationPreference.PREFERENCE_FIELDS:
        if field in data:
            setattr(preference, field, bool(data[field]))
    db.session.commit()
    return jsonify({'preferences': preference.to_dict()})

# ============================================
# STARTUP
# ============================================

_db_initialized = False

def init_database():
    """Create tables once per process"""
    global _db_initialized
    if _db_initialized:
        return
    db.create_all()
    _db_initialized = True
    app.logger.info("Database tables created")

with app.app_context():
    init_database()

if os.environ.get('ENABLE_SCHEDULER', 'false').lower() == 'true':
    from scheduled_jobs import init_scheduler
    init_scheduler(app, db, SkillTestAttempt, Dispute, Notification, Escrow, BankAccount, PayoutBatch,
                   payfast_client, audit)

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=os.environ.get('FLASK_ENV') == 'development')
