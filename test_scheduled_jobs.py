#!/usr/bin/env python3
"""Tests for the nightly earnings reconciliation job and the audit/notification sinks"""

import json

import app as app_module
from app import AuditLog, Invoice, Notification, Order, User
from scheduled_jobs import reconcile_freelancer_balances


def run_reconciliation(app):
    return reconcile_freelancer_balances(app, app_module.db, User, Order, Invoice)


def test_reconciliation_clean_after_settlement(app, make_user, make_order, make_payment):
    manager = make_user('manager')
    freelancer = make_user('freelancer', assigned_manager_id=manager.id)
    client = make_user('client')
    order = make_order(client, freelancer, pages=2, amount=600.0)
    app_module.settlement_service.confirm_payment(make_payment(order).id, True)

    report = run_reconciliation(app)

    assert report['checked'] == 2
    assert report['mismatches'] == []


def test_reconciliation_reports_without_fixing(app, db, make_user, make_order, make_payment):
    freelancer = make_user('freelancer')
    client = make_user('client')
    order = make_order(client, freelancer, pages=2, amount=600.0)
    app_module.settlement_service.confirm_payment(make_payment(order).id, True)

    freelancer.total_earned = 450.0
    db.session.commit()

    report = run_reconciliation(app)

    assert report['mismatches'] == [{
        'user_id': freelancer.id,
        'role': 'freelancer',
        'expected': 400.0,
        'recorded': 450.0,
        'difference': 50.0,
    }]
    db.session.refresh(freelancer)
    assert freelancer.total_earned == 450.0


def test_reconciliation_ignores_unconfirmed_orders(app, db, make_user, make_order):
    freelancer = make_user('freelancer')
    client = make_user('client')
    order = make_order(client, freelancer, pages=2, amount=600.0)
    db.session.add(Invoice(
        invoice_number='INV-20250101-00001', order_id=order.id, client_id=client.id,
        freelancer_id=freelancer.id, amount=600.0, freelancer_amount=400.0
    ))
    db.session.commit()

    assert run_reconciliation(app)['mismatches'] == []


def test_audit_logger_records_event(app, make_user):
    admin = make_user('admin')

    entry = app_module.audit_logger.log_admin_action(
        'Changed pricing strategy', resource_type='site_settings', resource_id='pricing_strategy',
        details={'new': 'tier'}, user_id=admin.id
    )

    assert entry is not None
    stored = AuditLog.query.one()
    assert stored.event_category == 'admin'
    assert stored.severity == 'high'
    assert stored.user_id == admin.id
    assert json.loads(stored.details) == {'new': 'tier'}
    assert not stored.siem_forwarded


def test_notification_service_skips_missing_user(app):
    assert app_module.notification_service.notify(None, 'payment_failed', 'Failed', 'Try again') is False
    assert Notification.query.count() == 0


def test_notification_service_stores_row(app, make_user):
    client = make_user('client')

    assert app_module.notification_service.notify(client.id, 'payment_failed', 'Failed', 'Try again')
    assert Notification.query.filter_by(user_id=client.id).one().title == 'Failed'


def test_reconciliation_mismatch_is_audited(app, db, make_user):
    freelancer = make_user('freelancer', total_earned=75.0)

    run_reconciliation(app)

    entry = AuditLog.query.filter_by(event_type='earnings_mismatch').one()
    assert entry.event_category == 'system'
    assert json.loads(entry.details)['mismatches'][0]['user_id'] == freelancer.id


def test_clean_reconciliation_writes_no_audit_entry(app, make_user):
    make_user('freelancer')

    run_reconciliation(app)

    assert AuditLog.query.count() == 0
