from flask import Flask, request, jsonify, session
from flask_cors import CORS
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event, func, or_
from sqlalchemy.exc import IntegrityError
from datetime import datetime, date, timedelta
from functools import wraps
from email_validator import validate_email, EmailNotValidError
import click
import os
import secrets
import json
import re

from escrow_service import (
    EscrowService, EscrowError, PaymentNotAllowed, InvalidTransition, InvalidAmount
)
from contract_workflow import (
    ContractWorkflow, WorkflowError, WorkflowForbidden, WorkflowConflict
)
from audit_logger import init_audit_logger

app = Flask(__name__)

# Set secret key with fallback
app.secret_key = os.environ.get("SESSION_SECRET") or os.environ.get("SECRET_KEY")
if not app.secret_key:
    # In production, always set SESSION_SECRET or SECRET_KEY environment variable
    app.secret_key = secrets.token_hex(32)
    print("⚠️  WARNING: Using auto-generated SECRET_KEY. Set SESSION_SECRET or SECRET_KEY environment variable in production!")

app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///marketplace.db')
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

app.config['RATELIMIT_ENABLED'] = os.environ.get('RATELIMIT_ENABLED', 'true').lower() not in ('false', '0', 'no')

db = SQLAlchemy(app)

# Secure CORS configuration - restrict to specific origins in production
allowed_origins = os.environ.get('ALLOWED_ORIGINS', '*').split(',')
CORS(app,
     origins=allowed_origins,
     supports_credentials=True,
     max_age=3600)

PROJECT_STATUSES = ('draft', 'open', 'in_progress', 'completed', 'cancelled')
PAYMENT_STATUSES = ('pending', 'escrowed', 'released', 'refunded')

# Owner-driven project status changes; in_progress/completed come from the contract workflow
PROJECT_STATUS_TRANSITIONS = {
    'draft': ('open', 'cancelled'),
    'open': ('draft', 'cancelled'),
}

BUDGET_FILTERS = ('all', 'under-1000', '1000-5000', 'over-5000')

MAX_AMOUNT = 1000000

# Rate limiting storage (in-memory, consider Redis for production)
api_rate_limits = {}

# General API rate limiting
def api_rate_limit(requests_per_minute=60):
    """Rate limit decorator for general API endpoints"""
    def decorator(f):
        @wraps(f)
        def wrapped(*args, **kwargs):
            if not app.config.get('RATELIMIT_ENABLED', True):
                return f(*args, **kwargs)

            identifier = f"{request.remote_addr}:{f.__name__}"
            current_time = datetime.utcnow()

            if identifier not in api_rate_limits:
                api_rate_limits[identifier] = {'requests': [], 'blocked_until': None}

            rate_data = api_rate_limits[identifier]

            # Check if blocked
            if rate_data['blocked_until'] and current_time < rate_data['blocked_until']:
                remaining = int((rate_data['blocked_until'] - current_time).total_seconds())
                return jsonify({'error': f'Rate limit exceeded. Try again in {remaining} seconds'}), 429

            # Remove old requests (older than 1 minute)
            one_minute_ago = current_time - timedelta(minutes=1)
            rate_data['requests'] = [t for t in rate_data['requests'] if t > one_minute_ago]

            if len(rate_data['requests']) >= requests_per_minute:
                rate_data['blocked_until'] = current_time + timedelta(seconds=60)
                return jsonify({'error': 'Rate limit exceeded. Please wait a moment.'}), 429

            rate_data['requests'].append(current_time)

            return f(*args, **kwargs)
        return wrapped
    return decorator

# Cleanup old rate limit entries periodically
_last_cleanup = datetime.utcnow()

def cleanup_rate_limits():
    """Remove stale rate limit entries older than 1 hour"""
    global _last_cleanup
    current_time = datetime.utcnow()
    cutoff = current_time - timedelta(hours=1)

    stale_api = [k for k, v in api_rate_limits.items()
                 if not v['requests'] or max(v['requests']) < cutoff]
    for k in stale_api:
        del api_rate_limits[k]

    _last_cleanup = current_time

@app.before_request
def before_request_handler():
    """Run periodic cleanup on rate limit storage"""
    current_time = datetime.utcnow()
    # Run cleanup every 5 minutes
    if (current_time - _last_cleanup).total_seconds() > 300:
        cleanup_rate_limits()

# Security headers middleware
@app.after_request
def set_security_headers(response):
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'DENY'
    response.headers['X-XSS-Protection'] = '1; mode=block'
    response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
    response.headers['Content-Security-Policy'] = "default-src 'self'; frame-ancestors 'none'"
    return response

# Input validation functions
def validate_phone(phone):
    """Validate international phone number format"""
    if not phone:
        return True, "Phone is optional"
    cleaned = re.sub(r'[\s\-()]', '', phone)
    if re.match(r'^\+?[1-9]\d{6,14}$', cleaned):
        return True, "Phone is valid"
    return False, "Invalid phone number format. Use international format, e.g. +15551234567"

def validate_website(url):
    if not url:
        return True, "Website is optional"
    if re.match(r'^https?://[^\s/$.?#].[^\s]*$', url):
        return True, "Website is valid"
    return False, "Website must be a valid http:// or https:// URL"

def sanitize_input(text, max_length=1000):
    """Sanitize text input to prevent injection attacks"""
    if not text:
        return text
    text = str(text).strip()
    if len(text) > max_length:
        text = text[:max_length]
    return text

def parse_amount(value, field, allow_zero=False):
    """Parse a money value. Returns (amount, error_message)"""
    try:
        amount = float(value)
    except (ValueError, TypeError):
        return None, f'Invalid {field} format'
    if amount != amount or amount < 0 or amount > MAX_AMOUNT:
        return None, f'Invalid {field}'
    if amount == 0 and not allow_zero:
        return None, f'{field.capitalize()} must be greater than zero'
    return round(amount, 2), None

def parse_skills(value, max_items=20):
    """Accept a list or a comma separated string of skills"""
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(',')
    if not isinstance(value, list):
        return []
    skills = []
    for skill in value:
        if not isinstance(skill, str):
            continue
        skill = sanitize_input(skill, max_length=50)
        if skill and skill not in skills:
            skills.append(skill)
    return skills[:max_items]

def parse_date(value):
    """Parse YYYY-MM-DD into a date. Raises ValueError on bad input"""
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    raise ValueError('Dates must be YYYY-MM-DD strings')

def parse_datetime(value):
    """Parse an ISO timestamp into a naive UTC datetime. Raises ValueError on bad input"""
    if not isinstance(value, str):
        raise ValueError('Timestamps must be ISO 8601 strings')
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is not None:
        parsed = (parsed - parsed.utcoffset()).replace(tzinfo=None)
    return parsed

def escape_like(value):
    """Escape LIKE wildcards so user input matches literally (use with escape='\\')"""
    return value.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')

def load_json_list(text):
    if not text:
        return []
    try:
        data = json.loads(text)
    except (ValueError, TypeError):
        return []
    return data if isinstance(data, list) else []

def get_current_profile():
    """Profile for the session user, or None"""
    user_id = session.get('user_id')
    if user_id is None:
        return None
    return db.session.get(Profile, user_id)

# Login required decorator for API routes
def login_required(f):
    """Decorator to require a signed-in profile for API routes"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return jsonify({'error': 'Unauthorized - Please sign in'}), 401
        if get_current_profile() is None:
            session.pop('user_id', None)
            return jsonify({'error': 'Unauthorized - Please sign in'}), 401
        return f(*args, **kwargs)
    return decorated_function

def role_required(*roles):
    """Decorator to require one of the given profile roles"""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if 'user_id' not in session:
                return jsonify({'error': 'Unauthorized - Please sign in'}), 401

            profile = get_current_profile()
            if profile is None:
                session.pop('user_id', None)
                return jsonify({'error': 'Unauthorized - Please sign in'}), 401
            if profile.role not in roles:
                return jsonify({'error': f'Forbidden - {" or ".join(roles).title()} access required'}), 403

            return f(*args, **kwargs)
        return decorated_function
    return decorator

admin_required = role_required('admin')

# Database Models
class Profile(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    full_name = db.Column(db.String(120), nullable=False)
    role = db.Column(db.String(20), nullable=False)  # client, freelancer, admin
    bio = db.Column(db.Text)
    location = db.Column(db.String(100))
    phone = db.Column(db.String(20))
    website = db.Column(db.String(255))
    avatar_url = db.Column(db.String(255))
    skills = db.Column(db.Text)  # JSON string
    hourly_rate = db.Column(db.Float)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self, include_private=False):
        data = {
            'id': self.id,
            'full_name': self.full_name,
            'role': self.role,
            'bio': self.bio,
            'location': self.location,
            'website': self.website,
            'avatar_url': self.avatar_url,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }
        if self.role == 'freelancer':
            data['skills'] = load_json_list(self.skills)
            data['hourly_rate'] = self.hourly_rate
        if include_private:
            data['email'] = self.email
            data['phone'] = self.phone
        return data

    def summary(self):
        return {'id': self.id, 'full_name': self.full_name, 'avatar_url': self.avatar_url}

class Project(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    budget_min = db.Column(db.Float)
    budget_max = db.Column(db.Float)
    skills_required = db.Column(db.Text, nullable=False)  # JSON string
    deadline = db.Column(db.DateTime)
    status = db.Column(db.String(20), default='open', nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    client = db.relationship('Profile', foreign_keys=[client_id])

    def to_dict(self):
        return {
            'id': self.id,
            'client_id': self.client_id,
            'client': self.client.summary() if self.client else None,
            'title': self.title,
            'description': self.description,
            'budget_min': self.budget_min,
            'budget_max': self.budget_max,
            'skills_required': load_json_list(self.skills_required),
            'deadline': self.deadline.isoformat() if self.deadline else None,
            'status': self.status,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None
        }

class Proposal(db.Model):
    __table_args__ = (
        db.UniqueConstraint('project_id', 'freelancer_id', name='uq_proposal_project_freelancer'),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False, index=True)
    freelancer_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False, index=True)
    cover_letter = db.Column(db.Text, nullable=False)
    proposed_rate = db.Column(db.Float, nullable=False)
    estimated_duration = db.Column(db.Integer)  # hours
    status = db.Column(db.String(20), default='pending', nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    project = db.relationship('Project', backref=db.backref('proposals', lazy=True))
    freelancer = db.relationship('Profile', foreign_keys=[freelancer_id])

    def to_dict(self):
        return {
            'id': self.id,
            'project_id': self.project_id,
            'project_title': self.project.title if self.project else None,
            'freelancer_id': self.freelancer_id,
            'freelancer': self.freelancer.summary() if self.freelancer else None,
            'cover_letter': self.cover_letter,
            'proposed_rate': self.proposed_rate,
            'estimated_duration': self.estimated_duration,
            'status': self.status,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }

class Contract(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False, index=True)
    client_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False, index=True)
    freelancer_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False, index=True)
    proposal_id = db.Column(db.Integer, db.ForeignKey('proposal.id'), nullable=False, unique=True)
    agreed_rate = db.Column(db.Float, nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    project = db.relationship('Project')
    client = db.relationship('Profile', foreign_keys=[client_id])
    freelancer = db.relationship('Profile', foreign_keys=[freelancer_id])
    payment = db.relationship('Payment', backref='contract', uselist=False)

    def is_party(self, profile_id):
        return profile_id in (self.client_id, self.freelancer_id)

    def other_party_id(self, profile_id):
        return self.freelancer_id if profile_id == self.client_id else self.client_id

    def to_dict(self):
        return {
            'id': self.id,
            'project_id': self.project_id,
            'project': {
                'id': self.project.id,
                'title': self.project.title,
                'status': self.project.status
            } if self.project else None,
            'client': self.client.summary() if self.client else None,
            'freelancer': self.freelancer.summary() if self.freelancer else None,
            'proposal_id': self.proposal_id,
            'agreed_rate': self.agreed_rate,
            'start_date': self.start_date.isoformat() if self.start_date else None,
            'end_date': self.end_date.isoformat() if self.end_date else None,
            'payment': self.payment.to_dict() if self.payment else None,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }

class Payment(db.Model):
    """Escrow payment attached to a contract"""
    id = db.Column(db.Integer, primary_key=True)
    contract_id = db.Column(db.Integer, db.ForeignKey('contract.id'), nullable=False, unique=True)
    amount = db.Column(db.Float, nullable=False, default=0.0)
    status = db.Column(db.String(20), default='pending', nullable=False)  # pending, escrowed, released, refunded
    escrow_date = db.Column(db.DateTime)
    release_date = db.Column(db.DateTime)
    refund_date = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self, include_transactions=False):
        data = {
            'id': self.id,
            'contract_id': self.contract_id,
            'amount': self.amount,
            'status': self.status,
            'status_label': self.get_status_label(),
            'escrow_date': self.escrow_date.isoformat() if self.escrow_date else None,
            'release_date': self.release_date.isoformat() if self.release_date else None,
            'refund_date': self.refund_date.isoformat() if self.refund_date else None,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }
        if include_transactions:
            transactions = Transaction.query.filter_by(payment_id=self.id).order_by(
                Transaction.created_at.desc(), Transaction.id.desc()
            ).all()
            data['transactions'] = [t.to_dict() for t in transactions]
        return data

    def get_status_label(self):
        """Get human-readable status label"""
        labels = {
            'pending': 'Awaiting Funding',
            'escrowed': 'Funds Held in Escrow',
            'released': 'Released to Freelancer',
            'refunded': 'Refunded to Client'
        }
        return labels.get(self.status, self.status.title())

class Transaction(db.Model):
    """Append-only ledger of payment status changes"""
    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey('payment.id'), nullable=False, index=True)
    type = db.Column(db.String(20), nullable=False)  # escrow, release, refund
    amount = db.Column(db.Float, nullable=False)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'payment_id': self.payment_id,
            'type': self.type,
            'amount': self.amount,
            'description': self.description,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }

class Message(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    contract_id = db.Column(db.Integer, db.ForeignKey('contract.id'), nullable=False, index=True)
    sender_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    content = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    sender = db.relationship('Profile')

    def to_dict(self):
        return {
            'id': self.id,
            'contract_id': self.contract_id,
            'sender_id': self.sender_id,
            'sender': self.sender.summary() if self.sender else None,
            'content': self.content,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }

class Review(db.Model):
    __table_args__ = (
        db.UniqueConstraint('contract_id', 'reviewer_id', name='uq_review_contract_reviewer'),
    )

    id = db.Column(db.Integer, primary_key=True)
    contract_id = db.Column(db.Integer, db.ForeignKey('contract.id'), nullable=False, index=True)
    reviewer_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    reviewee_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False, index=True)
    rating = db.Column(db.Integer, nullable=False)  # 1-5
    comment = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    reviewer = db.relationship('Profile', foreign_keys=[reviewer_id])
    contract = db.relationship('Contract')

    def to_dict(self):
        return {
            'id': self.id,
            'contract_id': self.contract_id,
            'project_title': self.contract.project.title if self.contract and self.contract.project else None,
            'reviewer': self.reviewer.summary() if self.reviewer else None,
            'reviewee_id': self.reviewee_id,
            'rating': self.rating,
            'comment': self.comment,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }

class AuditLog(db.Model):
    """Audit trail for financial and authorization events"""
    id = db.Column(db.Integer, primary_key=True)
    event_category = db.Column(db.String(50), nullable=False, index=True)  # financial, authorization, admin
    event_type = db.Column(db.String(100), nullable=False, index=True)
    severity = db.Column(db.String(20), nullable=False, default='medium')  # low, medium, high, critical
    status = db.Column(db.String(20), default='success')  # success, failure, blocked
    user_id = db.Column(db.Integer, db.ForeignKey('profile.id'), index=True)
    ip_address = db.Column(db.String(45))
    action = db.Column(db.Text, nullable=False)
    resource_type = db.Column(db.String(50))
    resource_id = db.Column(db.String(100))
    details = db.Column(db.Text)  # JSON string
    request_method = db.Column(db.String(10))
    request_path = db.Column(db.String(500))
    forwarded_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'event_category': self.event_category,
            'event_type': self.event_type,
            'severity': self.severity,
            'status': self.status,
            'user_id': self.user_id,
            'ip_address': self.ip_address,
            'action': self.action,
            'resource_type': self.resource_type,
            'resource_id': self.resource_id,
            'details': json.loads(self.details) if self.details else None,
            'request_method': self.request_method,
            'request_path': self.request_path,
            'forwarded_at': self.forwarded_at.isoformat() if self.forwarded_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }

# Ledger rows and chat messages are write-once
@event.listens_for(Transaction, 'before_update')
@event.listens_for(Transaction, 'before_delete')
def _block_transaction_change(mapper, connection, target):
    raise ValueError(f'Transaction {target.id} is append-only')

@event.listens_for(Message, 'before_update')
@event.listens_for(Message, 'before_delete')
def _block_message_change(mapper, connection, target):
    raise ValueError(f'Message {target.id} cannot be edited or deleted')

escrow_service = EscrowService(db, Payment, Transaction)
contract_workflow = ContractWorkflow(db, Project, Proposal, Contract, escrow_service)
audit_logger = init_audit_logger(app, db, AuditLog)

def get_profile_stats(profile):
    """Rating summary plus role-specific counters for a public profile"""
    avg_rating, total_reviews = db.session.query(
        func.avg(Review.rating), func.count(Review.id)
    ).filter(Review.reviewee_id == profile.id).one()

    stats = {
        'average_rating': round(float(avg_rating), 1) if avg_rating is not None else 0,
        'total_reviews': total_reviews
    }
    if profile.role == 'client':
        stats['total_projects'] = Project.query.filter_by(client_id=profile.id).count()
    elif profile.role == 'freelancer':
        stats['total_contracts'] = Contract.query.filter_by(freelancer_id=profile.id).count()
    return stats

# ============================================================================
# PROFILES AND SESSION
# ============================================================================

@app.route('/api/profiles', methods=['POST'])
@api_rate_limit(requests_per_minute=10)
def create_profile():
    """Sign up as a client or freelancer and start a session"""
    try:
        data = request.get_json(silent=True) or {}

        role = data.get('role')
        if role not in ('client', 'freelancer'):
            return jsonify({'error': 'Role must be client or freelancer'}), 400

        full_name = sanitize_input(data.get('full_name', ''), max_length=120)
        if not full_name:
            return jsonify({'error': 'Full name is required'}), 400

        try:
            email = validate_email(data.get('email') or '', check_deliverability=False).normalized.lower()
        except EmailNotValidError as e:
            return jsonify({'error': f'Invalid email: {str(e)}'}), 400

        if Profile.query.filter_by(email=email).first():
            return jsonify({'error': 'Email already registered'}), 400

        phone = sanitize_input(data.get('phone', ''), max_length=20)
        is_valid, message = validate_phone(phone)
        if not is_valid:
            return jsonify({'error': message}), 400

        website = sanitize_input(data.get('website', ''), max_length=255)
        is_valid, message = validate_website(website)
        if not is_valid:
            return jsonify({'error': message}), 400

        profile = Profile(
            email=email,
            full_name=full_name,
            role=role,
            bio=sanitize_input(data.get('bio', ''), max_length=2000) or None,
            location=sanitize_input(data.get('location', ''), max_length=100) or None,
            phone=phone or None,
            website=website or None
        )

        if role == 'freelancer':
            profile.skills = json.dumps(parse_skills(data.get('skills')), ensure_ascii=False)
            if data.get('hourly_rate') not in (None, ''):
                hourly_rate, error = parse_amount(data['hourly_rate'], 'hourly rate', allow_zero=True)
                if error:
                    return jsonify({'error': error}), 400
                profile.hourly_rate = hourly_rate

        db.session.add(profile)
        db.session.commit()

        session.permanent = True
        session['user_id'] = profile.id

        return jsonify({'message': 'Profile created', 'profile': profile.to_dict(include_private=True)}), 201
    except IntegrityError:
        db.session.rollback()
        return jsonify({'error': 'Email already registered'}), 400
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create profile error: {str(e)}")
        return jsonify({'error': 'Failed to create profile. Please try again.'}), 500

@app.route('/api/session', methods=['DELETE'])
def end_session():
    session.clear()
    return jsonify({'message': 'Signed out'}), 200

@app.route('/api/profile', methods=['GET'])
@login_required
def get_own_profile():
    profile = get_current_profile()
    data = profile.to_dict(include_private=True)
    data['stats'] = get_profile_stats(profile)
    return jsonify(data), 200

@app.route('/api/profile', methods=['PUT'])
@login_required
@api_rate_limit(requests_per_minute=20)
def update_profile():
    """Edit own profile. Role is fixed; freelancer-only fields are ignored for other roles"""
    try:
        profile = get_current_profile()
        data = request.get_json(silent=True) or {}

        if 'role' in data and data['role'] != profile.role:
            return jsonify({'error': 'Role cannot be changed'}), 400

        if 'full_name' in data:
            full_name = sanitize_input(data.get('full_name') or '', max_length=120)
            if not full_name:
                return jsonify({'error': 'Full name cannot be empty'}), 400
            profile.full_name = full_name

        if 'bio' in data:
            profile.bio = sanitize_input(data.get('bio') or '', max_length=2000) or None
        if 'location' in data:
            profile.location = sanitize_input(data.get('location') or '', max_length=100) or None

        if 'phone' in data:
            phone = sanitize_input(data.get('phone') or '', max_length=20)
            is_valid, message = validate_phone(phone)
            if not is_valid:
                return jsonify({'error': message}), 400
            profile.phone = phone or None

        if 'website' in data:
            website = sanitize_input(data.get('website') or '', max_length=255)
            is_valid, message = validate_website(website)
            if not is_valid:
                return jsonify({'error': message}), 400
            profile.website = website or None

        if 'avatar_url' in data:
            avatar_url = sanitize_input(data.get('avatar_url') or '', max_length=255)
            if avatar_url and not re.match(r'^https?://', avatar_url):
                return jsonify({'error': 'Avatar must be a valid URL'}), 400
            profile.avatar_url = avatar_url or None

        if profile.role == 'freelancer':
            if 'skills' in data:
                profile.skills = json.dumps(parse_skills(data.get('skills')), ensure_ascii=False)
            if 'hourly_rate' in data:
                if data['hourly_rate'] in (None, ''):
                    profile.hourly_rate = None
                else:
                    hourly_rate, error = parse_amount(data['hourly_rate'], 'hourly rate', allow_zero=True)
                    if error:
                        return jsonify({'error': error}), 400
                    profile.hourly_rate = hourly_rate

        db.session.commit()
        return jsonify({'message': 'Profile updated', 'profile': profile.to_dict(include_private=True)}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update profile error: {str(e)}")
        return jsonify({'error': 'Failed to update profile'}), 500

@app.route('/api/profiles/<int:profile_id>', methods=['GET'])
def get_public_profile(profile_id):
    """Public profile with rating stats, recent reviews and, for clients, completed projects"""
    try:
        profile = db.session.get(Profile, profile_id)
        if not profile:
            return jsonify({'error': 'Profile not found'}), 404

        data = profile.to_dict()
        data['stats'] = get_profile_stats(profile)

        reviews = Review.query.filter_by(reviewee_id=profile.id).order_by(
            Review.created_at.desc(), Review.id.desc()
        ).limit(10).all()
        data['reviews'] = [r.to_dict() for r in reviews]

        if profile.role == 'client':
            completed = Project.query.filter_by(client_id=profile.id, status='completed').order_by(
                Project.created_at.desc()
            ).limit(10).all()
            data['completed_projects'] = [p.to_dict() for p in completed]

        return jsonify(data), 200
    except Exception as e:
        app.logger.error(f"Get profile error: {str(e)}")
        return jsonify({'error': 'Failed to fetch profile'}), 500

@app.route('/api/profiles/<int:profile_id>/reviews', methods=['GET'])
def get_profile_reviews(profile_id):
    """Get all reviews received by a profile"""
    try:
        profile = db.session.get(Profile, profile_id)
        if not profile:
            return jsonify({'error': 'Profile not found'}), 404

        page = request.args.get('page', 1, type=int)
        per_page = request.args.get('per_page', 10, type=int)

        # Limit per_page to prevent abuse
        per_page = max(1, min(per_page, 50))

        reviews_query = Review.query.filter_by(reviewee_id=profile_id).order_by(
            Review.created_at.desc(), Review.id.desc()
        )
        paginated_reviews = reviews_query.paginate(page=page, per_page=per_page, error_out=False)

        return jsonify({
            'profile': profile.summary(),
            'stats': get_profile_stats(profile),
            'reviews': [r.to_dict() for r in paginated_reviews.items],
            'pagination': {
                'page': page,
                'per_page': per_page,
                'total': paginated_reviews.total,
                'pages': paginated_reviews.pages
            }
        }), 200
    except Exception as e:
        app.logger.error(f"Get profile reviews error: {str(e)}")
        return jsonify({'error': 'Failed to fetch reviews'}), 500

# ============================================================================
# PROJECTS
# ============================================================================

@app.route('/api/projects', methods=['POST'])
@role_required('client')
@api_rate_limit(requests_per_minute=10)
def create_project():
    try:
        data = request.get_json(silent=True) or {}

        title = sanitize_input(data.get('title', ''), max_length=200)
        description = sanitize_input(data.get('description', ''), max_length=5000)
        if not title or not description:
            return jsonify({'error': 'Title and description are required'}), 400

        skills = parse_skills(data.get('skills_required'))
        if not skills:
            return jsonify({'error': 'At least one required skill is needed'}), 400

        budget_min = budget_max = None
        if data.get('budget_min') not in (None, ''):
            budget_min, error = parse_amount(data['budget_min'], 'minimum budget', allow_zero=True)
            if error:
                return jsonify({'error': error}), 400
        if data.get('budget_max') not in (None, ''):
            budget_max, error = parse_amount(data['budget_max'], 'maximum budget', allow_zero=True)
            if error:
                return jsonify({'error': error}), 400
        if budget_min is not None and budget_max is not None and budget_min > budget_max:
            return jsonify({'error': 'Minimum budget cannot exceed maximum budget'}), 400

        deadline = None
        if data.get('deadline'):
            try:
                deadline = parse_datetime(data['deadline'])
            except ValueError:
                return jsonify({'error': 'Invalid deadline format'}), 400
            if deadline <= datetime.utcnow():
                return jsonify({'error': 'Deadline must be in the future'}), 400

        status = data.get('status', 'open')
        if status not in ('open', 'draft'):
            return jsonify({'error': 'New projects must be open or draft'}), 400

        project = Project(
            client_id=session['user_id'],
            title=title,
            description=description,
            budget_min=budget_min,
            budget_max=budget_max,
            skills_required=json.dumps(skills, ensure_ascii=False),
            deadline=deadline,
            status=status
        )
        db.session.add(project)
        db.session.commit()

        return jsonify({'message': 'Project created successfully', 'project': project.to_dict()}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create project error: {str(e)}")
        return jsonify({'error': 'Failed to create project. Please try again.'}), 500

@app.route('/api/projects', methods=['GET'])
def browse_projects():
    """Open projects, newest first, with search, budget and skill filters"""
    try:
        search = sanitize_input(request.args.get('search', ''), max_length=100)
        budget = request.args.get('budget', 'all')
        skill = sanitize_input(request.args.get('skill', ''), max_length=50)

        if budget not in BUDGET_FILTERS:
            return jsonify({'error': f'Budget filter must be one of: {", ".join(BUDGET_FILTERS)}'}), 400

        query = Project.query.filter(Project.status == 'open')

        # SQL narrows the candidates; skill matches are confirmed against the decoded list below
        if search:
            pattern = f'%{escape_like(search)}%'
            query = query.filter(or_(
                Project.title.ilike(pattern, escape='\\'),
                Project.description.ilike(pattern, escape='\\'),
                Project.skills_required.ilike(pattern, escape='\\')
            ))
        if skill:
            query = query.filter(Project.skills_required.ilike(f'%{escape_like(skill)}%', escape='\\'))

        # Projects without a maximum budget count as 0
        budget_max = func.coalesce(Project.budget_max, 0)
        if budget == 'under-1000':
            query = query.filter(budget_max < 1000)
        elif budget == '1000-5000':
            query = query.filter(budget_max >= 1000, budget_max <= 5000)
        elif budget == 'over-5000':
            query = query.filter(budget_max > 5000)

        projects = query.order_by(Project.created_at.desc(), Project.id.desc()).all()

        if search:
            needle = search.lower()
            projects = [
                p for p in projects
                if needle in p.title.lower() or needle in p.description.lower()
                or any(needle in s.lower() for s in load_json_list(p.skills_required))
            ]
        if skill:
            needle = skill.lower()
            projects = [
                p for p in projects
                if any(needle in s.lower() for s in load_json_list(p.skills_required))
            ]

        return jsonify([p.to_dict() for p in projects]), 200
    except Exception as e:
        app.logger.error(f"Browse projects error: {str(e)}")
        return jsonify({'error': 'Failed to fetch projects'}), 500

@app.route('/api/projects/mine', methods=['GET'])
@role_required('client')
def get_my_projects():
    try:
        status = request.args.get('status')
        query = Project.query.filter_by(client_id=session['user_id'])
        if status and status != 'all':
            if status not in PROJECT_STATUSES:
                return jsonify({'error': 'Invalid status filter'}), 400
            query = query.filter_by(status=status)

        projects = query.order_by(Project.created_at.desc(), Project.id.desc()).all()
        result = []
        for project in projects:
            data = project.to_dict()
            data['proposal_count'] = Proposal.query.filter_by(project_id=project.id).count()
            result.append(data)
        return jsonify(result), 200
    except Exception as e:
        app.logger.error(f"Get my projects error: {str(e)}")
        return jsonify({'error': 'Failed to fetch projects'}), 500

@app.route('/api/projects/<int:project_id>', methods=['GET'])
def get_project(project_id):
    """Project detail. Owners see every proposal; freelancers see their own"""
    try:
        project = db.session.get(Project, project_id)
        if not project:
            return jsonify({'error': 'Project not found'}), 404

        viewer = get_current_profile()
        is_owner = viewer is not None and viewer.id == project.client_id

        # Drafts are private to their owner
        if project.status == 'draft' and not is_owner:
            return jsonify({'error': 'Project not found'}), 404

        data = project.to_dict()
        data['is_owner'] = is_owner
        data['can_apply'] = False

        if is_owner:
            proposals = Proposal.query.filter_by(project_id=project.id).order_by(
                Proposal.created_at.desc(), Proposal.id.desc()
            ).all()
            data['proposals'] = [p.to_dict() for p in proposals]
            contract = Contract.query.filter_by(project_id=project.id).first()
            data['contract_id'] = contract.id if contract else None
        elif viewer is not None and viewer.role == 'freelancer':
            mine = Proposal.query.filter_by(project_id=project.id, freelancer_id=viewer.id).first()
            data['my_proposal'] = mine.to_dict() if mine else None
            data['can_apply'] = project.status == 'open' and mine is None

        return jsonify(data), 200
    except Exception as e:
        app.logger.error(f"Get project error: {str(e)}")
        return jsonify({'error': 'Failed to fetch project'}), 500

@app.route('/api/projects/<int:project_id>/status', methods=['PUT'])
@role_required('client')
def update_project_status(project_id):
    try:
        project = db.session.get(Project, project_id)
        if not project:
            return jsonify({'error': 'Project not found'}), 404
        if project.client_id != session['user_id']:
            return jsonify({'error': 'Only the project owner can change its status'}), 403

        data = request.get_json(silent=True) or {}
        new_status = data.get('status')
        if new_status not in PROJECT_STATUSES:
            return jsonify({'error': 'Invalid status'}), 400

        current_status = project.status
        if new_status not in PROJECT_STATUS_TRANSITIONS.get(current_status, ()):
            return jsonify({'error': f'Cannot change project from {current_status} to {new_status}'}), 409

        # Conditional update so a concurrent acceptance cannot be overwritten
        updated = Project.query.filter_by(id=project.id, status=current_status).update(
            {'status': new_status, 'updated_at': datetime.utcnow()}, synchronize_session=False
        )
        if updated != 1:
            db.session.rollback()
            return jsonify({'error': 'Project status changed, please reload'}), 409

        db.session.commit()
        db.session.refresh(project)
        return jsonify({'message': 'Project status updated', 'project': project.to_dict()}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update project status error: {str(e)}")
        return jsonify({'error': 'Failed to update project status'}), 500

# ============================================================================
# PROPOSALS
# ============================================================================

@app.route('/api/projects/<int:project_id>/proposals', methods=['POST'])
@role_required('freelancer')
@api_rate_limit(requests_per_minute=20)
def submit_proposal(project_id):
    try:
        data = request.get_json(silent=True) or {}
        project = db.session.get(Project, project_id)
        if not project or project.status == 'draft':
            return jsonify({'error': 'Project not found'}), 404

        # Check if project is still open
        if project.status != 'open':
            return jsonify({'error': 'This project is no longer accepting proposals'}), 409

        if project.client_id == session['user_id']:
            return jsonify({'error': 'Cannot submit a proposal to your own project'}), 400

        existing = Proposal.query.filter_by(project_id=project_id, freelancer_id=session['user_id']).first()
        if existing:
            return jsonify({'error': 'Already submitted a proposal for this project'}), 400

        cover_letter = sanitize_input(data.get('cover_letter', ''), max_length=5000)
        if not cover_letter:
            return jsonify({'error': 'Cover letter is required'}), 400

        proposed_rate, error = parse_amount(data.get('proposed_rate'), 'proposed rate')
        if error:
            return jsonify({'error': error}), 400

        estimated_duration = None
        if data.get('estimated_duration') not in (None, ''):
            try:
                estimated_duration = int(data['estimated_duration'])
            except (ValueError, TypeError):
                return jsonify({'error': 'Estimated duration must be a whole number of hours'}), 400
            if estimated_duration <= 0:
                return jsonify({'error': 'Estimated duration must be positive'}), 400

        proposal = Proposal(
            project_id=project_id,
            freelancer_id=session['user_id'],
            cover_letter=cover_letter,
            proposed_rate=proposed_rate,
            estimated_duration=estimated_duration
        )
        db.session.add(proposal)
        db.session.commit()

        return jsonify({'message': 'Proposal submitted successfully', 'proposal': proposal.to_dict()}), 201
    except IntegrityError:
        db.session.rollback()
        return jsonify({'error': 'Already submitted a proposal for this project'}), 400
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Submit proposal error: {str(e)}")
        return jsonify({'error': 'Failed to submit proposal. Please try again.'}), 500

@app.route('/api/proposals/mine', methods=['GET'])
@role_required('freelancer')
def get_my_proposals():
    try:
        proposals = Proposal.query.filter_by(freelancer_id=session['user_id']).order_by(
            Proposal.created_at.desc(), Proposal.id.desc()
        ).all()
        return jsonify([p.to_dict() for p in proposals]), 200
    except Exception as e:
        app.logger.error(f"Get my proposals error: {str(e)}")
        return jsonify({'error': 'Failed to fetch proposals'}), 500

@app.route('/api/proposals/<int:proposal_id>/accept', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=10)
def accept_proposal(proposal_id):
    """Accept a proposal: creates the contract and escrows its payment in one transaction"""
    try:
        proposal = db.session.get(Proposal, proposal_id)
        if not proposal:
            return jsonify({'error': 'Proposal not found'}), 404

        data = request.get_json(silent=True) or {}
        kwargs = {}

        if data.get('agreed_rate') not in (None, ''):
            agreed_rate, error = parse_amount(data['agreed_rate'], 'agreed rate')
            if error:
                return jsonify({'error': error}), 400
            kwargs['agreed_rate'] = agreed_rate

        if data.get('payment_amount') not in (None, ''):
            payment_amount, error = parse_amount(data['payment_amount'], 'payment amount', allow_zero=True)
            if error:
                return jsonify({'error': error}), 400
            kwargs['payment_amount'] = payment_amount

        try:
            if data.get('start_date'):
                kwargs['start_date'] = parse_date(data['start_date'])
            if data.get('end_date'):
                kwargs['end_date'] = parse_date(data['end_date'])
        except ValueError:
            return jsonify({'error': 'Dates must use YYYY-MM-DD format'}), 400

        contract, payment = contract_workflow.accept_proposal(proposal, session['user_id'], **kwargs)
    except WorkflowForbidden as e:
        audit_logger.log_authorization('proposal', proposal_id, f'Accept proposal {proposal_id}: {e}')
        return jsonify({'error': str(e)}), 403
    except (WorkflowConflict, InvalidTransition) as e:
        return jsonify({'error': str(e)}), 409
    except (WorkflowError, InvalidAmount) as e:
        return jsonify({'error': str(e)}), 400
    except PaymentNotAllowed as e:
        return jsonify({'error': str(e)}), 403
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Accept proposal error: {str(e)}")
        return jsonify({'error': 'Failed to accept proposal. Please try again.'}), 500

    audit_logger.log_financial(
        'contract_created',
        f'Contract {contract.id} created from proposal {proposal_id}',
        contract.agreed_rate, 'contract', contract.id
    )
    if payment.status == 'escrowed':
        audit_logger.log_financial(
            'payment_escrowed',
            f'Payment {payment.id} placed in escrow for contract {contract.id}',
            payment.amount, 'payment', payment.id
        )

    return jsonify({'message': 'Proposal accepted', 'contract': contract.to_dict()}), 201

@app.route('/api/proposals/<int:proposal_id>/reject', methods=['POST'])
@login_required
def reject_proposal(proposal_id):
    try:
        proposal = db.session.get(Proposal, proposal_id)
        if not proposal:
            return jsonify({'error': 'Proposal not found'}), 404

        contract_workflow.reject_proposal(proposal, session['user_id'])
        return jsonify({'message': 'Proposal rejected', 'proposal': proposal.to_dict()}), 200
    except WorkflowForbidden as e:
        return jsonify({'error': str(e)}), 403
    except WorkflowConflict as e:
        return jsonify({'error': str(e)}), 409
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Reject proposal error: {str(e)}")
        return jsonify({'error': 'Failed to reject proposal'}), 500

# ============================================================================
# CONTRACTS, MESSAGES AND REVIEWS
# ============================================================================

def get_party_contract(contract_id):
    """Load a contract the session user is party to. Returns (contract, error_response)"""
    contract = db.session.get(Contract, contract_id)
    if not contract:
        return None, (jsonify({'error': 'Contract not found'}), 404)
    if not contract.is_party(session['user_id']):
        return None, (jsonify({'error': 'You are not a party to this contract'}), 403)
    return contract, None

@app.route('/api/contracts', methods=['GET'])
@login_required
def get_contracts():
    try:
        user_id = session['user_id']
        contracts = Contract.query.filter(
            or_(Contract.client_id == user_id, Contract.freelancer_id == user_id)
        ).order_by(Contract.created_at.desc(), Contract.id.desc()).all()
        return jsonify([c.to_dict() for c in contracts]), 200
    except Exception as e:
        app.logger.error(f"Get contracts error: {str(e)}")
        return jsonify({'error': 'Failed to fetch contracts'}), 500

@app.route('/api/contracts/<int:contract_id>', methods=['GET'])
@login_required
def get_contract(contract_id):
    try:
        contract, error_response = get_party_contract(contract_id)
        if error_response:
            return error_response

        data = contract.to_dict()
        data['my_review'] = None
        review = Review.query.filter_by(contract_id=contract.id, reviewer_id=session['user_id']).first()
        if review:
            data['my_review'] = review.to_dict()
        data['can_review'] = review is None and contract.project.status == 'completed'
        return jsonify(data), 200
    except Exception as e:
        app.logger.error(f"Get contract error: {str(e)}")
        return jsonify({'error': 'Failed to fetch contract'}), 500

@app.route('/api/contracts/<int:contract_id>/complete', methods=['POST'])
@login_required
def complete_contract(contract_id):
    try:
        contract = db.session.get(Contract, contract_id)
        if not contract:
            return jsonify({'error': 'Contract not found'}), 404

        contract_workflow.complete_contract(contract, session['user_id'])
        return jsonify({'message': 'Contract completed', 'contract': contract.to_dict()}), 200
    except WorkflowForbidden as e:
        return jsonify({'error': str(e)}), 403
    except WorkflowConflict as e:
        return jsonify({'error': str(e)}), 409
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Complete contract error: {str(e)}")
        return jsonify({'error': 'Failed to complete contract'}), 500

@app.route('/api/contracts/<int:contract_id>/messages', methods=['GET'])
@login_required
def get_messages(contract_id):
    """Messages oldest first. Pass after_id to poll for newer ones"""
    try:
        contract, error_response = get_party_contract(contract_id)
        if error_response:
            return error_response

        query = Message.query.filter_by(contract_id=contract.id)
        after_id = request.args.get('after_id', type=int)
        if after_id:
            query = query.filter(Message.id > after_id)

        messages = query.order_by(Message.created_at.asc(), Message.id.asc()).all()
        return jsonify([m.to_dict() for m in messages]), 200
    except Exception as e:
        app.logger.error(f"Get messages error: {str(e)}")
        return jsonify({'error': 'Failed to fetch messages'}), 500

@app.route('/api/contracts/<int:contract_id>/messages', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=60)
def send_message(contract_id):
    try:
        contract, error_response = get_party_contract(contract_id)
        if error_response:
            return error_response

        data = request.get_json(silent=True) or {}
        content = data.get('content')
        if not isinstance(content, str) or not content.strip():
            return jsonify({'error': 'Message cannot be empty'}), 400
        content = content.strip()
        if len(content) > 5000:
            return jsonify({'error': 'Message cannot exceed 5000 characters'}), 400

        message = Message(contract_id=contract.id, sender_id=session['user_id'], content=content)
        db.session.add(message)
        db.session.commit()

        return jsonify(message.to_dict()), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Send message error: {str(e)}")
        return jsonify({'error': 'Failed to send message'}), 500

@app.route('/api/conversations', methods=['GET'])
@login_required
def get_conversations():
    """Contracts of the session user, newest first, each with its latest message"""
    try:
        user_id = session['user_id']
        contracts = Contract.query.filter(
            or_(Contract.client_id == user_id, Contract.freelancer_id == user_id)
        ).order_by(Contract.created_at.desc(), Contract.id.desc()).all()

        conversations = []
        for contract in contracts:
            last_message = Message.query.filter_by(contract_id=contract.id).order_by(
                Message.created_at.desc(), Message.id.desc()
            ).first()
            other = db.session.get(Profile, contract.other_party_id(user_id))
            conversations.append({
                'contract_id': contract.id,
                'project_title': contract.project.title if contract.project else None,
                'other_party': other.summary() if other else None,
                'last_message': last_message.to_dict() if last_message else None
            })
        return jsonify(conversations), 200
    except Exception as e:
        app.logger.error(f"Get conversations error: {str(e)}")
        return jsonify({'error': 'Failed to fetch conversations'}), 500

@app.route('/api/contracts/<int:contract_id>/reviews', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=10)
def create_review(contract_id):
    try:
        contract, error_response = get_party_contract(contract_id)
        if error_response:
            return error_response

        if contract.project.status != 'completed':
            return jsonify({'error': 'Reviews can only be left once the project is completed'}), 400

        reviewer_id = session['user_id']
        if Review.query.filter_by(contract_id=contract.id, reviewer_id=reviewer_id).first():
            return jsonify({'error': 'You have already reviewed this contract'}), 400

        data = request.get_json(silent=True) or {}
        rating = data.get('rating')
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            return jsonify({'error': 'Rating must be a whole number between 1 and 5'}), 400

        comment = sanitize_input(data.get('comment') or '', max_length=1000) or None

        review = Review(
            contract_id=contract.id,
            reviewer_id=reviewer_id,
            reviewee_id=contract.other_party_id(reviewer_id),
            rating=rating,
            comment=comment
        )
        db.session.add(review)
        db.session.commit()

        return jsonify({'message': 'Review submitted successfully', 'review': review.to_dict()}), 201
    except IntegrityError:
        db.session.rollback()
        return jsonify({'error': 'You have already reviewed this contract'}), 400
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create review error: {str(e)}")
        return jsonify({'error': 'Failed to submit review. Please try again.'}), 500

# ============================================================================
# PAYMENTS (ESCROW)
# ============================================================================

@app.route('/api/payments', methods=['GET'])
@login_required
def get_payments():
    try:
        user_id = session['user_id']
        status = request.args.get('status', 'all')

        query = Payment.query.join(Contract, Payment.contract_id == Contract.id).filter(
            or_(Contract.client_id == user_id, Contract.freelancer_id == user_id)
        )
        if status != 'all':
            if status not in PAYMENT_STATUSES:
                return jsonify({'error': 'Invalid status filter'}), 400
            query = query.filter(Payment.status == status)

        payments = query.order_by(Payment.created_at.desc(), Payment.id.desc()).all()
        result = []
        for payment in payments:
            data = payment.to_dict()
            contract = payment.contract
            data['project_title'] = contract.project.title if contract.project else None
            data['role'] = 'client' if contract.client_id == user_id else 'freelancer'
            result.append(data)
        return jsonify(result), 200
    except Exception as e:
        app.logger.error(f"Get payments error: {str(e)}")
        return jsonify({'error': 'Failed to fetch payments'}), 500

@app.route('/api/payments/<int:payment_id>', methods=['GET'])
@login_required
def get_payment(payment_id):
    try:
        payment = db.session.get(Payment, payment_id)
        if not payment:
            return jsonify({'error': 'Payment not found'}), 404
        if not payment.contract.is_party(session['user_id']):
            return jsonify({'error': 'You are not a party to this payment'}), 403

        return jsonify(payment.to_dict(include_transactions=True)), 200
    except Exception as e:
        app.logger.error(f"Get payment error: {str(e)}")
        return jsonify({'error': 'Failed to fetch payment'}), 500

def escrow_error_response(error, payment_id, action):
    """Map escrow service errors onto HTTP responses"""
    if isinstance(error, PaymentNotAllowed):
        audit_logger.log_authorization('payment', payment_id, f'{action.title()} payment {payment_id}: {error}')
        return jsonify({'error': str(error)}), 403
    if isinstance(error, InvalidTransition):
        return jsonify({'error': str(error), 'status': error.current_status}), 409
    return jsonify({'error': str(error)}), 400

@app.route('/api/payments/<int:payment_id>/escrow', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=10)
def escrow_payment(payment_id):
    """Fund a pending payment"""
    try:
        payment = db.session.get(Payment, payment_id)
        if not payment:
            return jsonify({'error': 'Payment not found'}), 404

        data = request.get_json(silent=True) or {}
        amount = None
        if data.get('amount') not in (None, ''):
            amount, error = parse_amount(data['amount'], 'amount')
            if error:
                return jsonify({'error': error}), 400

        escrow_service.escrow(payment, session['user_id'], amount=amount)
    except EscrowError as e:
        db.session.rollback()
        return escrow_error_response(e, payment_id, 'escrow')
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Escrow payment error: {str(e)}")
        return jsonify({'error': 'Failed to fund escrow'}), 500

    audit_logger.log_financial('payment_escrowed', f'Payment {payment_id} placed in escrow',
                               payment.amount, 'payment', payment_id)
    return jsonify({'message': 'Payment placed in escrow', 'payment': payment.to_dict(include_transactions=True)}), 200

@app.route('/api/payments/<int:payment_id>/release', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=10)
def release_payment(payment_id):
    """Release escrowed funds to the freelancer (client only)"""
    try:
        payment = db.session.get(Payment, payment_id)
        if not payment:
            return jsonify({'error': 'Payment not found'}), 404

        escrow_service.release(payment, session['user_id'])
    except EscrowError as e:
        db.session.rollback()
        return escrow_error_response(e, payment_id, 'release')
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Release payment error: {str(e)}")
        return jsonify({'error': 'Failed to release payment'}), 500

    audit_logger.log_financial('payment_released', f'Payment {payment_id} released to freelancer',
                               payment.amount, 'payment', payment_id)
    return jsonify({'message': 'Payment released', 'payment': payment.to_dict(include_transactions=True)}), 200

@app.route('/api/payments/<int:payment_id>/refund', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=10)
def refund_payment(payment_id):
    """Refund escrowed funds to the client (client only)"""
    try:
        payment = db.session.get(Payment, payment_id)
        if not payment:
            return jsonify({'error': 'Payment not found'}), 404

        data = request.get_json(silent=True) or {}
        reason = sanitize_input(data.get('reason') or '', max_length=500) or None

        escrow_service.refund(payment, session['user_id'], reason=reason)
    except EscrowError as e:
        db.session.rollback()
        return escrow_error_response(e, payment_id, 'refund')
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Refund payment error: {str(e)}")
        return jsonify({'error': 'Failed to refund payment'}), 500

    audit_logger.log_financial('payment_refunded', f'Payment {payment_id} refunded to client',
                               payment.amount, 'payment', payment_id,
                               details={'reason': reason} if reason else None)
    return jsonify({'message': 'Payment refunded', 'payment': payment.to_dict(include_transactions=True)}), 200

# ============================================================================
# DASHBOARD AND ADMIN
# ============================================================================

@app.route('/api/dashboard', methods=['GET'])
@login_required
def get_dashboard():
    """Role-specific dashboard summary"""
    try:
        profile = get_current_profile()
        data = {'profile': profile.to_dict(include_private=True)}

        if profile.role == 'client':
            projects = Project.query.filter_by(client_id=profile.id)
            contracts = Contract.query.filter_by(client_id=profile.id)
            data['stats'] = {
                'total_projects': projects.count(),
                'active_projects': projects.filter(Project.status.in_(('open', 'in_progress'))).count(),
                'active_contracts': contracts.join(Project, Contract.project_id == Project.id).filter(
                    Project.status == 'in_progress'
                ).count()
            }
            data['recent_projects'] = [p.to_dict() for p in projects.order_by(
                Project.created_at.desc(), Project.id.desc()
            ).limit(5).all()]
            data['recent_contracts'] = [c.to_dict() for c in contracts.order_by(
                Contract.created_at.desc(), Contract.id.desc()
            ).limit(3).all()]

        elif profile.role == 'freelancer':
            proposals = Proposal.query.filter_by(freelancer_id=profile.id)
            contracts = Contract.query.filter_by(freelancer_id=profile.id)
            data['stats'] = {
                'total_proposals': proposals.count(),
                'active_proposals': proposals.filter(Proposal.status == 'pending').count(),
                'active_contracts': contracts.join(Project, Contract.project_id == Project.id).filter(
                    Project.status == 'in_progress'
                ).count()
            }
            data['open_projects'] = [p.to_dict() for p in Project.query.filter_by(status='open').order_by(
                Project.created_at.desc(), Project.id.desc()
            ).limit(5).all()]
            data['proposals'] = [p.to_dict() for p in proposals.order_by(
                Proposal.created_at.desc(), Proposal.id.desc()
            ).all()]
            data['recent_contracts'] = [c.to_dict() for c in contracts.order_by(
                Contract.created_at.desc(), Contract.id.desc()
            ).limit(3).all()]

        else:
            data['stats'] = {
                'profiles': Profile.query.count(),
                'projects': Project.query.count(),
                'proposals': Proposal.query.count(),
                'contracts': Contract.query.count(),
                'payments': Payment.query.count(),
                'escrowed_payments': Payment.query.filter_by(status='escrowed').count(),
                'transactions': Transaction.query.count(),
                'messages': Message.query.count(),
                'reviews': Review.query.count()
            }

        return jsonify(data), 200
    except Exception as e:
        app.logger.error(f"Dashboard error: {str(e)}")
        return jsonify({'error': 'Failed to load dashboard'}), 500

@app.route('/api/admin/audit-logs', methods=['GET'])
@admin_required
def get_audit_logs():
    try:
        page = request.args.get('page', 1, type=int)
        per_page = max(1, min(request.args.get('per_page', 50, type=int), 100))

        query = AuditLog.query
        category = request.args.get('category')
        if category:
            query = query.filter(AuditLog.event_category == category)
        severity = request.args.get('severity')
        if severity:
            query = query.filter(AuditLog.severity == severity)

        logs = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).paginate(
            page=page, per_page=per_page, error_out=False
        )

        return jsonify({
            'logs': [log.to_dict() for log in logs.items],
            'pagination': {
                'page': page,
                'per_page': per_page,
                'total': logs.total,
                'pages': logs.pages
            }
        }), 200
    except Exception as e:
        app.logger.error(f"Get audit logs error: {str(e)}")
        return jsonify({'error': 'Failed to fetch audit logs'}), 500

@app.cli.command('create-admin')
@click.argument('email')
@click.argument('full_name')
def create_admin_command(email, full_name):
    """Create an admin profile"""
    try:
        email = validate_email(email, check_deliverability=False).normalized.lower()
    except EmailNotValidError as e:
        raise click.ClickException(f'Invalid email: {e}')

    full_name = sanitize_input(full_name, max_length=120)
    if not full_name:
        raise click.ClickException('Full name is required')

    existing = Profile.query.filter_by(email=email).first()
    if existing:
        if existing.role == 'admin':
            click.echo(f"⚠️  Admin {email} already exists (id {existing.id})")
            return
        raise click.ClickException(f'{email} is already registered as a {existing.role}')

    profile = Profile(email=email, full_name=full_name, role='admin')
    db.session.add(profile)
    db.session.commit()
    audit_logger.log_admin_action(f'Admin profile created for {email}', 'profile', profile.id,
                                  user_id=profile.id)
    click.echo(f"✅ Admin {email} created (id {profile.id})")

_db_initialized = False

def init_database():
    """Create tables on first start"""
    global _db_initialized
    if _db_initialized:
        return

    try:
        db.create_all()
        _db_initialized = True
    except Exception as e:
        app.logger.error(f"Database initialization error: {str(e)}")
        raise

with app.app_context():
    init_database()

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=os.environ.get('FLASK_DEBUG', 'False') == 'True')
