"""
Audit Event Logging Service
Records financial and authorization events to the database, to rotating
JSON log files and, optionally, to an external webhook collector.
"""
import json
import logging
import logging.handlers
import os
from datetime import datetime
from flask import request, session, has_request_context
from typing import Optional, Dict, Any
import requests


class AuditLogger:
    """
    Audit trail for escrow movements, contract creation and denied actions
    """

    def __init__(self, app=None, db=None, AuditLog=None):
        self.app = app
        self.db = db
        self.AuditLog = AuditLog
        self.logger = None
        self.webhook_url = None

        if app:
            self.init_app(app, db, AuditLog)

    def init_app(self, app, db, AuditLog):
        """Initialize audit logger with Flask app"""
        self.app = app
        self.db = db
        self.AuditLog = AuditLog

        self._setup_structured_logging()
        self.webhook_url = os.environ.get('AUDIT_WEBHOOK_URL')

    def _setup_structured_logging(self):
        """Configure JSON formatted audit logs with file rotation"""
        log_dir = os.environ.get('AUDIT_LOG_DIR') or os.path.join(
            os.path.dirname(os.path.abspath(__file__)), 'logs'
        )
        os.makedirs(log_dir, exist_ok=True)

        self.logger = logging.getLogger('audit')
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False

        # init_app may run more than once in the same process
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        json_formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "message": %(message)s}'
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

        critical_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, 'audit_critical.log'),
            maxBytes=50 * 1024 * 1024,
            backupCount=10,
            encoding='utf-8'
        )
        critical_handler.setLevel(logging.WARNING)
        critical_handler.setFormatter(json_formatter)
        self.logger.addHandler(critical_handler)

        if self.app and self.app.debug:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.DEBUG)
            console_handler.setFormatter(json_formatter)
            self.logger.addHandler(console_handler)

    def _get_request_context(self) -> Dict[str, Any]:
        """Extract caller details from the current request, if any"""
        context = {
            'ip_address': None,
            'request_method': None,
            'request_path': None,
            'user_id': None
        }

        if not has_request_context():
            return context

        ip_address = request.headers.get('X-Forwarded-For', request.remote_addr)
        if ip_address and ',' in ip_address:
            ip_address = ip_address.split(',')[0].strip()

        context['ip_address'] = ip_address
        context['request_method'] = request.method
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
        Record an audit event.

        Must be called after the business change has been committed, since
        the audit row is committed on its own.

        Args:
            event_category: financial, authorization or admin
            event_type: Specific event (payment_escrowed, permission_denied, ...)
            action: Human-readable description
            severity: low, medium, high or critical
            status: success, failure or blocked
            resource_type: Type of affected resource (payment, contract, ...)
            resource_id: ID of affected resource
            details: Extra context
            user_id: Override the session user
        """
        try:
            context = self._get_request_context()
            if user_id:
                context['user_id'] = user_id

            audit_log = self.AuditLog(
                event_category=event_category,
                event_type=event_type,
                severity=severity,
                status=status,
                user_id=context['user_id'],
                ip_address=context['ip_address'],
                action=action,
                resource_type=resource_type,
                resource_id=str(resource_id) if resource_id is not None else None,
                details=json.dumps(details) if details else None,
                request_method=context['request_method'],
                request_path=context['request_path']
            )
            self.db.session.add(audit_log)
            self.db.session.commit()

            log_data = {
                'event_category': event_category,
                'event_type': event_type,
                'severity': severity,
                'status': status,
                'user_id': context['user_id'],
                'ip_address': context['ip_address'],
                'action': action,
                'resource_type': resource_type,
                'resource_id': resource_id,
                'details': details
            }

            log_level = {
                'low': logging.INFO,
                'medium': logging.INFO,
                'high': logging.WARNING,
                'critical': logging.CRITICAL
            }.get(severity, logging.INFO)

            self.logger.log(log_level, json.dumps(log_data, default=str))

            self._forward_to_webhook(audit_log)

        except Exception as e:
            self.db.session.rollback()
            if self.app:
                self.app.logger.error(f"Audit logging failed: {e}")
                self.app.logger.error(f"Event: {event_category}/{event_type} - {action}")

    def _forward_to_webhook(self, audit_log):
        """POST the audit entry to the configured collector"""
        if not self.webhook_url:
            return

        try:
            response = requests.post(
                self.webhook_url,
                json=audit_log.to_dict(),
                timeout=5,
                headers={'Content-Type': 'application/json'}
            )
            if response.status_code == 200:
                audit_log.forwarded_at = datetime.utcnow()
                self.db.session.commit()
        except requests.exceptions.RequestException as e:
            if self.app:
                self.app.logger.warning(f"Audit webhook failed: {e}")

    # Convenience methods for common audit events

    def log_financial(self, event_type: str, action: str, amount: float, resource_type: str, resource_id, **kwargs):
        """Log a money movement"""
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

    def log_authorization(self, resource_type: str, resource_id, action: str, status: str = 'blocked', **kwargs):
        """Log a permission check, usually a denied one"""
        severity = 'high' if status == 'blocked' else 'medium'
        self.log_event(
            event_category='authorization',
            event_type='permission_denied' if status == 'blocked' else 'permission_check',
            action=action,
            severity=severity,
            status=status,
            resource_type=resource_type,
            resource_id=resource_id,
            **kwargs
        )

    def log_admin_action(self, action: str, resource_type: str, resource_id, details: Dict = None, **kwargs):
        """Log an admin operation"""
        self.log_event(
            event_category='admin',
            event_type='admin_operation',
            action=action,
            severity='high',
            resource_type=resource_type,
            resource_id=resource_id,
            details=details,
            **kwargs
        )


# Global instance (initialized in app.py)
audit_logger = None


def init_audit_logger(app, db, AuditLog):
    """Initialize the global audit logger and register it on the app"""
    global audit_logger
    audit_logger = AuditLogger(app, db, AuditLog)
    app.extensions['audit_logger'] = audit_logger
    return audit_logger
