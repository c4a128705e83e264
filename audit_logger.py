"""
Audit Logging Service
Records admin and financial events to the database audit trail, a rotating
structured log file and, when configured, a SIEM webhook.

Audit logging is best effort. A failure here is reported through the app
logger and never propagated: by the time an event is logged the financial
state it describes has already been committed.
"""
import json
import logging
import logging.handlers
import os
from datetime import datetime
from typing import Optional, Dict, Any

import requests
from flask import has_request_context, request, session


class AuditLogger:
    """
    Append-only audit sink backed by the AuditLog model
    """

    def __init__(self, app=None, db=None, AuditLog=None):
        self.app = app
        self.db = db
        self.AuditLog = AuditLog
        self.logger = None
        self.siem_webhook_url = None

        if app:
            self.init_app(app, db, AuditLog)

    def init_app(self, app, db, AuditLog):
        """Initialize audit logger with Flask app"""
        self.app = app
        self.db = db
        self.AuditLog = AuditLog

        self._setup_structured_logging()
        self.siem_webhook_url = app.config.get('SIEM_WEBHOOK_URL') or os.environ.get('SIEM_WEBHOOK_URL')

        app.extensions['audit_logger'] = self

    def _setup_structured_logging(self):
        """Configure structured logging with JSON format and file rotation"""
        self.logger = logging.getLogger('audit')
        self.logger.setLevel(logging.INFO)

        if self.logger.handlers:
            return

        json_formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "message": %(message)s}'
        )

        log_dir = self.app.config.get('AUDIT_LOG_DIR')
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
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

        if self.app.debug:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.DEBUG)
            console_handler.setFormatter(json_formatter)
            self.logger.addHandler(console_handler)

    def _get_request_context(self) -> Dict[str, Any]:
        """Extract context from current request, if there is one"""
        context = {
            'ip_address': None,
            'user_agent': None,
            'request_method': None,
            'request_path': None,
            'user_id': None
        }

        if not has_request_context():
            return context

        forwarded = request.headers.get('X-Forwarded-For', request.remote_addr)
        if forwarded and ',' in forwarded:
            forwarded = forwarded.split(',')[0].strip()
        context['ip_address'] = forwarded
        context['user_agent'] = request.headers.get('User-Agent', '')
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
        message: str = '',
        resource_type: Optional[str] = None,
        resource_id: Optional[Any] = None,
        details: Optional[Dict] = None,
        user_id: Optional[int] = None
    ):
        """
        Log an audit event to database and structured logs

        Args:
            event_category: Category (admin, financial, system)
            event_type: Specific event type (confirm_payment, reject_payment, etc.)
            action: Human-readable action description
            severity: Event severity (low, medium, high, critical)
            status: Event status (success, failure, blocked)
            message: Additional message
            resource_type: Type of resource affected (payment, order, invoice)
            resource_id: ID of affected resource
            details: Additional context as dictionary
            user_id: Actor ID (overrides the session user)

        Returns:
            The AuditLog row, or None if logging failed
        """
        try:
            context = self._get_request_context()
            if user_id:
                context['user_id'] = user_id

            audit_log = self.AuditLog(
                event_category=event_category,
                event_type=event_type,
                severity=severity,
                user_id=context['user_id'],
                ip_address=context['ip_address'],
                user_agent=context['user_agent'],
                action=action,
                resource_type=resource_type,
                resource_id=str(resource_id) if resource_id is not None else None,
                status=status,
                message=message,
                details=json.dumps(details, default=str) if details else None,
                request_method=context['request_method'],
                request_path=context['request_path']
            )

            self.db.session.add(audit_log)
            self.db.session.commit()

            log_data = {
                'event_category': event_category,
                'event_type': event_type,
                'severity': severity,
                'user_id': context['user_id'],
                'ip_address': context['ip_address'],
                'action': action,
                'resource_type': resource_type,
                'resource_id': resource_id,
                'status': status,
                'message': message,
                'details': details
            }

            log_level = {
                'low': logging.INFO,
                'medium': logging.WARNING,
                'high': logging.ERROR,
                'critical': logging.CRITICAL
            }.get(severity, logging.INFO)

            self.logger.log(log_level, json.dumps(log_data, default=str))

            self._forward_to_siem(audit_log)
            return audit_log

        except Exception as e:
            self.db.session.rollback()
            self.app.logger.error(f"Audit logging failed: {e}")
            self.app.logger.error(f"Event: {event_category}/{event_type} - {action}")
            return None

    def _forward_to_siem(self, audit_log):
        """Forward audit log to the SIEM webhook"""
        if not self.siem_webhook_url:
            return

        try:
            response = requests.post(
                self.siem_webhook_url,
                json=audit_log.to_dict(),
                timeout=5,
                headers={'Content-Type': 'application/json'}
            )

            if response.status_code == 200:
                audit_log.siem_forwarded = True
                audit_log.siem_forwarded_at = datetime.utcnow()
                self.db.session.commit()
        except requests.exceptions.RequestException as e:
            self.app.logger.warning(f"SIEM webhook failed: {e}")

    # Convenience methods for common events

    def log_admin_action(self, action: str, resource_type: str, resource_id, details: Dict = None, **kwargs):
        """Log admin operation"""
        return self.log_event(
            event_category='admin',
            event_type='admin_operation',
            action=action,
            severity='high',
            status='success',
            resource_type=resource_type,
            resource_id=resource_id,
            details=details,
            **kwargs
        )

    def log_financial(self, event_type: str, action: str, amount, resource_type: str, resource_id,
                      details: Dict = None, **kwargs):
        """Log financial transaction"""
        payload = {'amount': float(amount) if amount is not None else None}
        if details:
            payload.update(details)
        return self.log_event(
            event_category='financial',
            event_type=event_type,
            action=action,
            severity='high',
            resource_type=resource_type,
            resource_id=resource_id,
            details=payload,
            **kwargs
        )

    def log_system_event(self, event_type: str, action: str, severity: str = 'medium', **kwargs):
        """Log system event"""
        return self.log_event(
            event_category='system',
            event_type=event_type,
            action=action,
            severity=severity,
            status='success',
            **kwargs
        )


def init_audit_logger(app, db, AuditLog):
    """Create the app's audit logger and register it in app.extensions"""
    return AuditLogger(app, db, AuditLog)
