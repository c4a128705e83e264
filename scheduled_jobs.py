"""
Scheduled Jobs Module for TaskLynk
Handles periodic tasks like the nightly earnings reconciliation
"""

import os
from sqlalchemy import func
import logging

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Differences below this are float noise, not missing money
TOLERANCE = 0.01


def reconcile_freelancer_balances(app, db, User, Order, Invoice):
    """
    Compare every payee's total_earned with what their settled invoices say
    they earned. Read-only: mismatches are reported, never corrected.

    Args:
        app: Flask application instance
        db: SQLAlchemy database instance
        User: User model
        Order: Order model
        Invoice: Invoice model

    Returns:
        dict: {'checked': int, 'mismatches': [{'user_id', 'role', 'expected', 'recorded', 'difference'}]}
    """
    with app.app_context():
        report = {'checked': 0, 'mismatches': []}
        try:
            logger.info("Starting earnings reconciliation job...")

            writer_totals = dict(
                db.session.query(Invoice.freelancer_id, func.coalesce(func.sum(Invoice.freelancer_amount), 0.0))
                .join(Order, Order.id == Invoice.order_id)
                .filter(Order.payment_confirmed.is_(True), Invoice.freelancer_id.isnot(None))
                .group_by(Invoice.freelancer_id)
                .all()
            )
            manager_totals = dict(
                db.session.query(Invoice.manager_id, func.coalesce(func.sum(Invoice.manager_amount), 0.0))
                .join(Order, Order.id == Invoice.order_id)
                .filter(Order.payment_confirmed.is_(True), Invoice.manager_id.isnot(None))
                .group_by(Invoice.manager_id)
                .all()
            )

            payees = db.session.query(User).filter(User.role.in_(['freelancer', 'manager'])).all()

            for user in payees:
                expected = round(writer_totals.get(user.id, 0.0) + manager_totals.get(user.id, 0.0), 2)
                recorded = round(user.total_earned or 0.0, 2)
                report['checked'] += 1

                if abs(expected - recorded) > TOLERANCE:
                    difference = round(recorded - expected, 2)
                    logger.warning(
                        f"Earnings mismatch for {user.role} {user.id}: "
                        f"invoices say {expected:.2f}, total_earned is {recorded:.2f} ({difference:+.2f})"
                    )
                    report['mismatches'].append({
                        'user_id': user.id,
                        'role': user.role,
                        'expected': expected,
                        'recorded': recorded,
                        'difference': difference
                    })

            audit_logger = app.extensions.get('audit_logger')
            if report['mismatches'] and audit_logger is not None:
                audit_logger.log_system_event(
                    'earnings_mismatch',
                    action=f"Earnings reconciliation found {len(report['mismatches'])} mismatched payees",
                    severity='high',
                    resource_type='user',
                    details={'mismatches': report['mismatches']}
                )

            logger.info(
                f"Earnings reconciliation completed: {report['checked']} checked, "
                f"{len(report['mismatches'])} mismatches"
            )

        except Exception as e:
            db.session.rollback()
            logger.error(f"Error in reconcile_freelancer_balances: {str(e)}", exc_info=True)

        return report


def init_scheduler(app, db, User, Order, Invoice):
    """
    Initialize APScheduler with all scheduled jobs

    Args:
        app: Flask application instance
        db: SQLAlchemy database instance
        User: User model
        Order: Order model
        Invoice: Invoice model

    Returns:
        scheduler: Configured APScheduler instance
    """
    from apscheduler.schedulers.background import BackgroundScheduler
    from apscheduler.triggers.cron import CronTrigger
    import atexit

    # Create scheduler
    scheduler = BackgroundScheduler(daemon=True)

    # Get timezone from environment or default to Africa/Nairobi (Kenya)
    timezone = os.getenv('TIMEZONE', 'Africa/Nairobi')

    # Reconcile earnings at 2 AM daily
    scheduler.add_job(
        func=lambda: reconcile_freelancer_balances(app, db, User, Order, Invoice),
        trigger=CronTrigger(hour=2, minute=0, timezone=timezone),
        id='earnings_reconciliation',
        name='Reconcile payee earnings against invoices (2 AM)',
        replace_existing=True
    )

    # Start the scheduler
    scheduler.start()
    logger.info(f"Scheduler started with timezone: {timezone}")
    logger.info("Scheduled jobs:")
    logger.info("  - Earnings reconciliation at 2:00 AM")

    # Shut down the scheduler when exiting the app
    atexit.register(lambda: scheduler.shutdown())

    return scheduler
