import os
import tempfile

# The app reads its configuration at import time
os.environ['DATABASE_URL'] = 'sqlite://'
os.environ.setdefault('SESSION_SECRET', 'test-secret-key')
os.environ['AUDIT_LOG_DIR'] = tempfile.mkdtemp(prefix='tasklynk-audit-')
os.environ['PRICING_STRATEGY'] = 'flat'
os.environ.pop('SIEM_WEBHOOK_URL', None)

import pytest

import app as app_module
from rate_limiter import RateLimiter


@pytest.fixture
def app():
    flask_app = app_module.app
    flask_app.config['TESTING'] = True
    flask_app.extensions['rate_limiter'] = RateLimiter(
        requests_per_minute=flask_app.config['CONFIRM_RATE_LIMIT_PER_MINUTE']
    )

    with flask_app.app_context():
        app_module.db.create_all()
        yield flask_app
        app_module.db.session.remove()
        app_module.db.drop_all()


@pytest.fixture
def db(app):
    return app_module.db


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(db):
    counter = {'n': 0}

    def _make_user(role='client', **kwargs):
        counter['n'] += 1
        user = app_module.User(
            name=kwargs.pop('name', f'{role.title()} {counter["n"]}'),
            email=kwargs.pop('email', f'{role}{counter["n"]}@example.com'),
            role=role,
            **kwargs
        )
        db.session.add(user)
        db.session.commit()
        return user

    return _make_user


@pytest.fixture
def make_order(db):
    def _make_order(client, freelancer=None, pages=5, slides=0, work_type='Essay',
                    amount=1500.0, submitted=True, **kwargs):
        order = app_module.Order(
            title=kwargs.pop('title', 'Research essay'),
            client_id=client.id,
            assigned_freelancer_id=freelancer.id if freelancer else None,
            work_type=work_type,
            pages=pages,
            slides=slides,
            amount=amount,
            status=kwargs.pop('status', 'delivered' if submitted else 'assigned'),
            submitted=submitted,
            **kwargs
        )
        db.session.add(order)
        db.session.flush()
        order.display_id = f"ORD-{order.id:06d}"
        db.session.commit()
        return order

    return _make_order


@pytest.fixture
def make_payment(db):
    def _make_payment(order, amount=None, status='pending', reference='QWE123RTY'):
        payment = app_module.Payment(
            order_id=order.id,
            client_id=order.client_id,
            amount=order.amount if amount is None else amount,
            payment_method='mpesa',
            reference=reference,
            status=status
        )
        db.session.add(payment)
        db.session.commit()
        return payment

    return _make_payment


@pytest.fixture
def login(client):
    def _login(user):
        with client.session_transaction() as sess:
            sess['user_id'] = user.id
    return _login
