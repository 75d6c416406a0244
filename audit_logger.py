"""
Audit Logging Service
Structured audit trail for money movement, workflow transitions and access checks
"""
import json
import logging
import logging.handlers
import os
from datetime import datetime
from flask import has_request_context, request, session
from typing import Optional, Dict, Any
import requests


class AuditLogger:
    """
    Writes each event to the AuditLog table, a rotating JSON log file and,
    when AUDIT_WEBHOOK_URL is set, an external collector
    """

    def __init__(self, app=None, db=None, audit_model=None):
        self.app = app
        self.db = db
        self.AuditLog = audit_model
        self.logger = None
        self.webhook_url = None

        if app:
            self.init_app(app, db, audit_model)

    def init_app(self, app, db, audit_model):
        """Initialize audit logger with Flask app"""
        self.app = app
        self.db = db
        self.AuditLog = audit_model
        self._setup_structured_logging()
        self.webhook_url = os.environ.get('AUDIT_WEBHOOK_URL')

    def _setup_structured_logging(self):
        """Configure JSON-formatted rotating log files"""
        log_dir = os.environ.get('AUDIT_LOG_DIR') or os.path.join(
            os.path.dirname(os.path.abspath(__file__)), 'logs'
        )
        os.makedirs(log_dir, exist_ok=True)

        self.logger = logging.getLogger('audit')
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False
        if self.logger.handlers:
            return

        json_formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "event": %(message)s}'
        )

        # 50MB per file, keep 10 backups
        file_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, 'audit.log'),
            maxBytes=50 * 1024 * 1024,
            backupCount=10,
            encoding='utf-8'
        )
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(json_formatter)
        self.logger.addHandler(file_handler)

        warning_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, 'audit_warnings.log'),
            maxBytes=50 * 1024 * 1024,
            backupCount=10,
            encoding='utf-8'
        )
        warning_handler.setLevel(logging.WARNING)
        warning_handler.setFormatter(json_formatter)
        self.logger.addHandler(warning_handler)

        if self.app and self.app.debug:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.DEBUG)
            console_handler.setFormatter(json_formatter)
            self.logger.addHandler(console_handler)

    def _get_request_context(self) -> Dict[str, Any]:
        context = {'ip_address': None, 'request_path': None, 'user_id': None}
        if not has_request_context():
            return context

        ip_address = request.headers.get('X-Forwarded-For', request.remote_addr)
        if ip_address and ',' in ip_address:
            ip_address = ip_address.split(',')[0].strip()
        context['ip_address'] = ip_address
        context['request_path'] = request.path
        context['user_id'] = session.get('user_id')
        return context

    def log_event(
        self,
        event_category: str,
        event_type: str,
        action: str,
        severity: str = 'medium',
        status: str = 'success',
        resource_type: Optional[str] = None,
        resource_id: Optional[Any] = None,
        details: Optional[Dict] = None,
        user_id: Optional[int] = None
    ):
        """
        Record an audit event

        The AuditLog row joins the caller's session and is committed with the
        caller's own changes.

        Args:
            event_category: financial, workflow, skill_test, authorization, authentication
            event_type: Specific event (escrow_released, milestone_approved, ...)
            action: Human-readable description
            severity: low, medium, high, critical
            status: success, failure, blocked
            resource_type: escrow, milestone, dispute, skill_test_attempt, ...
            resource_id: ID of the affected row
            details: Extra context
            user_id: Acting user when there is no request session
        """
        context = self._get_request_context()
        if user_id:
            context['user_id'] = user_id

        entry = {
            'event_category': event_category,
            'event_type': event_type,
            'severity': severity,
            'user_id': context['user_id'],
            'action': action,
            'resource_type': resource_type,
            'resource_id': str(resource_id) if resource_id is not None else None,
            'status': status,
            'details': details,
            'ip_address': context['ip_address'],
            'request_path': context['request_path'],
            'created_at': datetime.utcnow().isoformat()
        }

        try:
            if self.db is not None and self.AuditLog is not None:
                self.db.session.add(self.AuditLog(
                    event_category=event_category,
                    event_type=event_type,
                    severity=severity,
                    user_id=context['user_id'],
                    action=action,
                    resource_type=resource_type,
                    resource_id=entry['resource_id'],
                    status=status,
                    details=json.dumps(details) if details else None,
                    ip_address=context['ip_address'],
                    request_path=context['request_path']
                ))

            log_level = {
                'low': logging.INFO,
                'medium': logging.INFO,
                'high': logging.WARNING,
                'critical': logging.CRITICAL
            }.get(severity, logging.INFO)
            self.logger.log(log_level, json.dumps(entry, default=str))

            self._forward(entry)
        except Exception as e:
            # Audit failures must not break the request that triggered them
            if self.app:
                self.app.logger.error(f"Audit logging failed: {e}")
                self.app.logger.error(f"Event: {event_category}/{event_type} - {action}")

    def _forward(self, entry):
        if not self.webhook_url:
            return
        try:
            requests.post(
                self.webhook_url,
                json=entry,
                timeout=5,
                headers={'Content-Type': 'application/json'}
            )
        except requests.exceptions.RequestException as e:
            if self.app:
                self.app.logger.warning(f"Audit webhook failed: {e}")

    # Convenience methods for common events

    def log_financial(self, event_type: str, action: str, amount: float, resource_type: str, resource_id, **kwargs):
        """Log money movement (escrow funding, release, refund, payout)"""
        details = kwargs.pop('details', None) or {}
        details['amount'] = amount
        self.log_event(
            event_category='financial',
            event_type=event_type,
            action=action,
            severity='high',
            resource_type=resource_type,
            resource_id=resource_id,
            details=details,
            **kwargs
        )

    def log_workflow(self, event_type: str, action: str, resource_type: str, resource_id, **kwargs):
        """Log a milestone, gig or dispute status change"""
        self.log_event(
            event_category='workflow',
            event_type=event_type,
            action=action,
            severity='low',
            resource_type=resource_type,
            resource_id=resource_id,
            **kwargs
        )

    def log_skill_test(self, event_type: str, action: str, attempt_id, severity: str = 'low', **kwargs):
        self.log_event(
            event_category='skill_test',
            event_type=event_type,
            action=action,
            severity=severity,
            resource_type='skill_test_attempt',
            resource_id=attempt_id,
            **kwargs
        )

    def log_authorization(self, resource_type: str, resource_id, action: str, status: str, **kwargs):
        """Log a denied or allowed access check"""
        severity = 'high' if status == 'blocked' else 'medium'
        self.log_event(
            event_category='authorization',
            event_type='permission_check',
            action=action,
            severity=severity,
            status=status,
            resource_type=resource_type,
            resource_id=resource_id,
            **kwargs
        )

    def log_authentication(self, event_type: str, status: str, user_id: Optional[int] = None, details: Optional[Dict] = None):
        severity = 'high' if status == 'failure' else 'low'
        self.log_event(
            event_category='authentication',
            event_type=event_type,
            action=f"User authentication: {event_type}",
            severity=severity,
            status=status,
            user_id=user_id,
            details=details
        )


# Global instance (will be initialized in app.py)
audit_logger = None


def init_audit_logger(app, db, audit_model):
    """Initialize global audit logger instance"""
    global audit_logger
    audit_logger = AuditLogger(app, db, audit_model)
    app.extensions['audit_logger'] = audit_logger
    return audit_logger
