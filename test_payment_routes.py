#!/usr/bin/env python3
"""Tests for the order, payment, pricing and invoice API routes"""

import pytest

from app import Invoice, Order, OrderStatusLog, Payment, SiteSettings


@pytest.fixture
def people(make_user):
    manager = make_user('manager')
    return {
        'admin': make_user('admin'),
        'manager': manager,
        'freelancer': make_user('freelancer', assigned_manager_id=manager.id),
        'client': make_user('client'),
    }


def test_create_order(client, login, people):
    login(people['client'])

    response = client.post('/api/orders', json={
        'title': 'Marketing essay', 'work_type': 'Essay', 'pages': 5, 'amount': 1500
    })

    assert response.status_code == 201
    order = response.get_json()['order']
    assert order['display_id'].startswith('ORD-')
    assert order['status'] == 'pending'
    assert order['client_id'] == people['client'].id


def test_create_order_below_minimum(client, login, people):
    login(people['client'])

    response = client.post('/api/orders', json={
        'title': 'Cheap essay', 'work_type': 'Essay', 'pages': 5, 'amount': 900
    })

    assert response.status_code == 400
    assert response.get_json()['code'] == 'PRICE_BELOW_MINIMUM'
    assert Order.query.count() == 0


@pytest.mark.parametrize('payload, code', [
    ({'work_type': 'Essay', 'pages': 1, 'amount': 500}, 'MISSING_TITLE'),
    ({'title': 'X', 'pages': -1, 'amount': 500}, 'INVALID_PAGES'),
    ({'title': 'X', 'pages': 0, 'slides': 0, 'amount': 500}, 'EMPTY_ORDER'),
    ({'title': 'X', 'pages': 1, 'amount': 'lots'}, 'INVALID_AMOUNT'),
])
def test_create_order_validation(client, login, people, payload, code):
    login(people['client'])
    response = client.post('/api/orders', json=payload)
    assert response.status_code == 400
    assert response.get_json()['code'] == code


def test_routes_require_login(client):
    assert client.post('/api/orders', json={}).status_code == 401
    assert client.patch('/api/payments/1/confirm', json={'confirmed': True}).status_code == 401


def test_assign_and_submit(client, login, people, make_order, db):
    order = make_order(people['client'], None, submitted=False, status='pending')

    login(people['client'])
    assert client.post(f'/api/orders/{order.id}/assign',
                       json={'freelancer_id': people['freelancer'].id}).status_code == 403

    login(people['manager'])
    response = client.post(f'/api/orders/{order.id}/assign', json={'freelancer_id': people['freelancer'].id})
    assert response.status_code == 200
    assert response.get_json()['order']['status'] == 'assigned'

    login(people['client'])
    assert client.post(f'/api/orders/{order.id}/submit').status_code == 403

    login(people['freelancer'])
    response = client.post(f'/api/orders/{order.id}/submit')
    assert response.status_code == 200
    assert response.get_json()['order']['submitted'] is True

    statuses = [log.new_status for log in OrderStatusLog.query.order_by(OrderStatusLog.id).all()]
    assert statuses == ['assigned', 'delivered']


def test_full_payment_flow(client, login, people, make_order, db):
    order = make_order(people['client'], people['freelancer'], pages=5, amount=1500.0)

    login(people['client'])
    response = client.post('/api/payments', json={'order_id': order.id, 'reference': 'SGH45KL9PQ'})
    assert response.status_code == 201
    payment_id = response.get_json()['payment']['id']

    login(people['admin'])
    response = client.patch(f'/api/payments/{payment_id}/confirm', json={'confirmed': True})
    assert response.status_code == 200
    body = response.get_json()
    assert body['status'] == 'confirmed'
    assert body['split']['freelancer_amount'] == 1000.0
    assert body['split']['manager_amount'] == 40.0
    assert body['split']['platform_margin'] == 460.0

    response = client.patch(f'/api/payments/{payment_id}/confirm', json={'confirmed': True})
    assert response.status_code == 200
    assert response.get_json()['status'] == 'already-confirmed'
    assert response.get_json()['invoice_number'] == body['invoice_number']

    db.session.refresh(people['freelancer'])
    assert people['freelancer'].balance == 1000.0

    login(people['client'])
    response = client.post('/api/payments', json={'order_id': order.id})
    assert response.status_code == 409


def test_confirm_requires_admin(client, login, people, make_order, make_payment):
    payment = make_payment(make_order(people['client'], people['freelancer']))
    login(people['manager'])

    response = client.patch(f'/api/payments/{payment.id}/confirm', json={'confirmed': True})

    assert response.status_code == 403


@pytest.mark.parametrize('body', [{}, {'confirmed': 'yes'}, {'confirmed': 1}, {'confirmed': None}])
def test_confirm_rejects_non_boolean(client, login, people, make_order, make_payment, body):
    payment = make_payment(make_order(people['client'], people['freelancer']))
    login(people['admin'])

    response = client.patch(f'/api/payments/{payment.id}/confirm', json=body)

    assert response.status_code == 400
    assert response.get_json()['code'] == 'INVALID_CONFIRMED_FIELD'


def test_confirm_unknown_payment(client, login, people):
    login(people['admin'])

    response = client.patch('/api/payments/999/confirm', json={'confirmed': True})

    assert response.status_code == 404
    assert response.get_json()['code'] == 'PAYMENT_NOT_FOUND'


def test_confirm_after_rejection_conflicts(client, login, people, make_order, make_payment, db):
    payment = make_payment(make_order(people['client'], people['freelancer']))
    login(people['admin'])

    response = client.patch(f'/api/payments/{payment.id}/confirm', json={'confirmed': False})
    assert response.status_code == 200
    assert response.get_json()['status'] == 'failed'

    response = client.patch(f'/api/payments/{payment.id}/confirm', json={'confirmed': True})
    assert response.status_code == 409
    assert response.get_json()['code'] == 'INVALID_STATE_TRANSITION'
    assert db.session.get(Payment, payment.id).status == 'failed'


def test_confirm_is_rate_limited(client, login, people):
    # conftest installs a limiter at 30 requests per minute
    login(people['admin'])

    codes = [client.patch('/api/payments/999/confirm', json={'confirmed': True}).status_code
             for _ in range(31)]

    assert codes[:30] == [404] * 30
    assert codes[30] == 429


def test_pricing_quote(client):
    response = client.get('/api/pricing/quote?pages=4&slides=2&work_type=SPSS%20Analysis&amount=1500')

    assert response.status_code == 200
    body = response.get_json()
    assert body['strategy'] == 'flat'
    assert body['quote']['freelancer_amount'] == 1280.0
    assert body['minimum_client_price'] == 1380.0
    assert body['price_valid'] is True
    assert body['split']['platform_margin'] == 1500.0 - 1280.0 - 35.0


def test_pricing_quote_tier(client):
    response = client.get('/api/pricing/quote?pages=2&work_type=Essay&completed_orders=10&strategy=tier')

    body = response.get_json()
    assert body['quote']['freelancer_amount'] == 340.0
    assert body['quote']['level_name'] == 'Established'


def test_pricing_quote_rejects_bad_input(client):
    assert client.get('/api/pricing/quote?pages=-2').status_code == 400
    assert client.get('/api/pricing/quote?pages=2&strategy=surge').status_code == 400


def test_freelancer_cpp(client, people, db):
    people['freelancer'].completed_orders = 5
    db.session.commit()

    response = client.get(f"/api/freelancers/{people['freelancer'].id}/cpp")

    assert response.status_code == 200
    body = response.get_json()
    assert body['cpp_status']['level_name'] == 'Rising'
    assert body['next_level_details']['level_name'] == 'Established'
    assert len(body['cpp_levels']) == 5
    assert client.get(f"/api/freelancers/{people['client'].id}/cpp").status_code == 404


def test_pricing_strategy_setting(client, login, people):
    login(people['admin'])

    assert client.get('/api/admin/settings/pricing-strategy').get_json()['strategy'] == 'flat'
    assert client.post('/api/admin/settings/pricing-strategy', json={'strategy': 'surge'}).status_code == 400

    response = client.post('/api/admin/settings/pricing-strategy', json={'strategy': 'tier'})
    assert response.status_code == 200
    assert SiteSettings.query.filter_by(key='pricing_strategy').one().value == 'tier'
    assert client.get('/api/admin/settings/pricing-strategy').get_json()['strategy'] == 'tier'


def test_list_invoices(client, login, people, make_order, make_payment):
    login(people['admin'])
    for pages in (1, 2, 3):
        order = make_order(people['client'], people['freelancer'], pages=pages, amount=300.0 * pages)
        payment = make_payment(order)
        client.patch(f'/api/payments/{payment.id}/confirm', json={'confirmed': True})

    response = client.get('/api/invoices')
    invoices = response.get_json()['invoices']
    assert len(invoices) == 3
    assert invoices[0]['amount'] == 900.0

    response = client.get('/api/invoices?limit=1&offset=1')
    assert [i['amount'] for i in response.get_json()['invoices']] == [600.0]

    assert client.get('/api/invoices?status=bogus').status_code == 400
    assert client.get('/api/invoices?order_id=abc').status_code == 400
    assert client.get('/api/invoices?status=pending').get_json()['invoices'] != []
    assert Invoice.query.count() == 3


def test_pricing_quote_follows_active_strategy(client, login, people):
    url = '/api/pricing/quote?pages=2&work_type=Essay&completed_orders=10'
    assert client.get(url).get_json()['quote']['freelancer_amount'] == 400.0

    login(people['admin'])
    client.post('/api/admin/settings/pricing-strategy', json={'strategy': 'tier'})

    body = client.get(url).get_json()
    assert body['strategy'] == 'tier'
    assert body['quote']['freelancer_amount'] == 340.0

    # An explicit strategy still overrides the setting
    assert client.get(url + '&strategy=flat').get_json()['strategy'] == 'flat'
