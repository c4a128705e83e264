from flask import Flask, request, jsonify, session
from flask_cors import CORS
from flask_sqlalchemy import SQLAlchemy
from datetime import datetime
from functools import wraps
import os
import secrets

from audit_logger import init_audit_logger
from notification_service import NotificationService
from rate_limiter import RateLimiter, rate_limited
import cpp_levels
import payment_calculations
from payment_calculations import get_pricing_strategy, validate_client_price, PRICING_STRATEGIES
from settlement_service import SettlementService, SettlementError

app = Flask(__name__)

# Set secret key with fallback
app.secret_key = os.environ.get("SESSION_SECRET") or os.environ.get("SECRET_KEY")
if not app.secret_key:
    # In production, always set SESSION_SECRET or SECRET_KEY environment variable
    app.secret_key = secrets.token_hex(32)
    print("⚠️  WARNING: Using auto-generated SECRET_KEY. Set SESSION_SECRET or SECRET_KEY environment variable in production!")

app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///tasklynk.db')
if app.config['SQLALCHEMY_DATABASE_URI'].startswith('postgres://'):
    app.config['SQLALCHEMY_DATABASE_URI'] = app.config['SQLALCHEMY_DATABASE_URI'].replace('postgres://', 'postgresql+psycopg2://', 1)
elif app.config['SQLALCHEMY_DATABASE_URI'].startswith('postgresql://'):
    app.config['SQLALCHEMY_DATABASE_URI'] = app.config['SQLALCHEMY_DATABASE_URI'].replace('postgresql://', 'postgresql+psycopg2://', 1)
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

app.config['SESSION_COOKIE_SECURE'] = os.environ.get('FLASK_ENV') == 'production'
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'

# Settlement configuration
app.config['PRICING_STRATEGY'] = os.environ.get('PRICING_STRATEGY', 'flat')
app.config['CONFIRM_RATE_LIMIT_PER_MINUTE'] = int(os.environ.get('CONFIRM_RATE_LIMIT_PER_MINUTE', 30))
app.config['AUDIT_LOG_DIR'] = os.environ.get(
    'AUDIT_LOG_DIR',
    os.path.join(os.path.dirname(os.path.abspath(__file__)), 'logs')
)
app.config['SIEM_WEBHOOK_URL'] = os.environ.get('SIEM_WEBHOOK_URL')

db = SQLAlchemy(app)

allowed_origins = os.environ.get('ALLOWED_ORIGINS', '*').split(',')
CORS(app,
     origins=allowed_origins,
     supports_credentials=True,
     max_age=3600)

app.extensions['rate_limiter'] = RateLimiter(
    requests_per_minute=app.config['CONFIRM_RATE_LIMIT_PER_MINUTE']
)


@app.before_request
def before_request_handler():
    """Run periodic cleanup on rate limit storage"""
    limiter = app.extensions.get('rate_limiter')
    if limiter is not None:
        limiter.maybe_cleanup()


# Security headers middleware
@app.after_request
def set_security_headers(response):
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'DENY'
    response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
    return response


# Input parsing helpers
def parse_count(value, field):
    """Parse a non-negative integer request field"""
    if value is None or value == '':
        return True, 0, None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return False, None, f"{field} must be a whole number"
    if number < 0:
        return False, None, f"{field} cannot be negative"
    return True, number, None


def parse_amount(value, field='amount'):
    """Parse a positive money request field"""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return False, None, f"{field} must be a number"
    if number <= 0:
        return False, None, f"{field} must be greater than zero"
    return True, round(number, 2), None


def login_required(f):
    """Decorator to require user authentication for API routes"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return jsonify({'error': 'Unauthorized - Please login'}), 401
        return f(*args, **kwargs)
    return decorated_function


def roles_required(*roles):
    """Decorator to require one of the given roles"""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if 'user_id' not in session:
                return jsonify({'error': 'Unauthorized - Please login'}), 401

            user = db.session.get(User, session['user_id'])
            if not user or user.role not in roles:
                return jsonify({'error': f"Forbidden - {' or '.join(roles)} access required"}), 403

            return f(*args, **kwargs)
        return decorated_function
    return decorator


admin_required = roles_required('admin')


# Database Models
class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    role = db.Column(db.String(20), default='client', nullable=False)  # client, freelancer, manager, admin
    balance = db.Column(db.Float, default=0.0, nullable=False)
    total_earned = db.Column(db.Float, default=0.0, nullable=False)
    completed_orders = db.Column(db.Integer, default=0, nullable=False)
    assigned_manager_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    is_work_type_specialized = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'role': self.role,
            'balance': self.balance,
            'total_earned': self.total_earned,
            'completed_orders': self.completed_orders,
            'assigned_manager_id': self.assigned_manager_id
        }


class Order(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    display_id = db.Column(db.String(30), unique=True)
    title = db.Column(db.String(200), nullable=False)
    client_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    assigned_freelancer_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    work_type = db.Column(db.String(100))
    pages = db.Column(db.Integer, default=0, nullable=False)
    slides = db.Column(db.Integer, default=0, nullable=False)
    amount = db.Column(db.Float, nullable=False)  # client price
    status = db.Column(db.String(20), default='pending')  # pending, assigned, delivered, completed, cancelled
    submitted = db.Column(db.Boolean, default=False)
    submitted_at = db.Column(db.DateTime)
    payment_confirmed = db.Column(db.Boolean, default=False)
    freelancer_earnings = db.Column(db.Float)
    manager_earnings = db.Column(db.Float)
    admin_profit = db.Column(db.Float)
    paid_order_confirmed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'display_id': self.display_id,
            'title': self.title,
            'client_id': self.client_id,
            'assigned_freelancer_id': self.assigned_freelancer_id,
            'work_type': self.work_type,
            'pages': self.pages,
            'slides': self.slides,
            'amount': self.amount,
            'status': self.status,
            'submitted': self.submitted,
            'payment_confirmed': self.payment_confirmed,
            'freelancer_earnings': self.freelancer_earnings,
            'manager_earnings': self.manager_earnings,
            'admin_profit': self.admin_profit,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }


class Payment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('order.id'), nullable=False)
    client_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    payment_method = db.Column(db.String(50), default='mpesa')  # mpesa, paystack, bank_transfer
    reference = db.Column(db.String(100))
    status = db.Column(db.String(20), default='pending', nullable=False)  # pending, confirmed, failed
    confirmed_by_admin = db.Column(db.Boolean, default=False)
    confirmed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'order_id': self.order_id,
            'client_id': self.client_id,
            'amount': self.amount,
            'payment_method': self.payment_method,
            'reference': self.reference,
            'status': self.status,
            'confirmed_by_admin': self.confirmed_by_admin,
            'confirmed_at': self.confirmed_at.isoformat() if self.confirmed_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }


class Invoice(db.Model):
    __table_args__ = (
        db.UniqueConstraint('order_id', 'client_id', 'amount', name='unique_invoice_per_order_payment'),
    )
    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(50), unique=True, nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey('order.id'), nullable=False)
    client_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    freelancer_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    manager_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    amount = db.Column(db.Float, nullable=False)
    freelancer_amount = db.Column(db.Float, default=0.0, nullable=False)
    manager_amount = db.Column(db.Float, default=0.0, nullable=False)
    admin_commission = db.Column(db.Float, default=0.0, nullable=False)
    description = db.Column(db.Text)
    status = db.Column(db.String(20), default='pending')  # pending, paid, cancelled
    is_paid = db.Column(db.Boolean, default=False)
    paid_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'invoice_number': self.invoice_number,
            'order_id': self.order_id,
            'client_id': self.client_id,
            'freelancer_id': self.freelancer_id,
            'manager_id': self.manager_id,
            'amount': self.amount,
            'freelancer_amount': self.freelancer_amount,
            'manager_amount': self.manager_amount,
            'admin_commission': self.admin_commission,
            'description': self.description,
            'status': self.status,
            'is_paid': self.is_paid,
            'paid_at': self.paid_at.isoformat() if self.paid_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }


class OrderFinancials(db.Model):
    """Snapshot of the money split recorded when an order is settled"""
    __tablename__ = 'order_financials'
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('order.id'), unique=True, nullable=False)
    client_amount = db.Column(db.Float, nullable=False)
    writer_amount = db.Column(db.Float, nullable=False)
    manager_amount = db.Column(db.Float, nullable=False)
    platform_fee = db.Column(db.Float, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class OrderStatusLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('order.id'), nullable=False)
    old_status = db.Column(db.String(20))
    new_status = db.Column(db.String(20), nullable=False)
    changed_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    note = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class AuditLog(db.Model):
    """Append-only audit trail for admin and financial events"""
    id = db.Column(db.Integer, primary_key=True)
    event_category = db.Column(db.String(30), nullable=False)  # admin, financial, system
    event_type = db.Column(db.String(50), nullable=False)
    severity = db.Column(db.String(10), default='medium')
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    ip_address = db.Column(db.String(45))
    user_agent = db.Column(db.String(255))
    action = db.Column(db.String(255), nullable=False)
    resource_type = db.Column(db.String(30))
    resource_id = db.Column(db.String(50))
    status = db.Column(db.String(20), default='success')
    message = db.Column(db.Text)
    details = db.Column(db.Text)  # JSON string
    request_method = db.Column(db.String(10))
    request_path = db.Column(db.String(255))
    siem_forwarded = db.Column(db.Boolean, default=False)
    siem_forwarded_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'event_category': self.event_category,
            'event_type': self.event_type,
            'severity': self.severity,
            'user_id': self.user_id,
            'ip_address': self.ip_address,
            'action': self.action,
            'resource_type': self.resource_type,
            'resource_id': self.resource_id,
            'status': self.status,
            'message': self.message,
            'details': self.details,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }


class Notification(db.Model):
    """Model for user notifications"""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey('order.id'))
    notification_type = db.Column(db.String(50), nullable=False)  # order_completed, manager_payout, payment_confirmed, payment_failed
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text)
    is_read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'order_id': self.order_id,
            'notification_type': self.notification_type,
            'title': self.title,
            'message': self.message,
            'is_read': self.is_read,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }


class SiteSettings(db.Model):
    """Model for storing site-wide settings including the active pricing strategy"""
    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(100), unique=True, nullable=False)
    value = db.Column(db.Text)
    description = db.Column(db.Text)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    updated_by = db.Column(db.Integer, db.ForeignKey('user.id'))


def get_site_setting(key, default=None):
    """Get a site setting value"""
    setting = SiteSettings.query.filter_by(key=key).first()
    return setting.value if setting else default


def set_site_setting(key, value, description=None, user_id=None):
    """Set a site setting value"""
    setting = SiteSettings.query.filter_by(key=key).first()
    if setting:
        setting.value = value
        if description:
            setting.description = description
        if user_id:
            setting.updated_by = user_id
    else:
        setting = SiteSettings(key=key, value=value, description=description, updated_by=user_id)
        db.session.add(setting)
    db.session.commit()
    return setting


def get_active_pricing_strategy():
    """Strategy used for settlement: site setting first, then app config"""
    name = get_site_setting('pricing_strategy', app.config['PRICING_STRATEGY'])
    try:
        return get_pricing_strategy(name)
    except ValueError:
        app.logger.error(f"Invalid pricing strategy setting '{name}', falling back to flat rate")
        return get_pricing_strategy('flat')


audit_logger = init_audit_logger(app, db, AuditLog)
notification_service = NotificationService(db, Notification)
settlement_service = SettlementService(
    db, Order, Payment, User, Invoice, OrderFinancials, OrderStatusLog,
    audit_logger=audit_logger,
    notifier=notification_service,
    strategy_resolver=get_active_pricing_strategy
)


# ==================== ORDER ROUTES ====================

@app.route('/api/orders', methods=['POST'])
@login_required
def create_order():
    """Client places an order; prices below the platform minimum are rejected"""
    try:
        data = request.get_json() or {}
        title = (data.get('title') or '').strip()
        work_type = (data.get('work_type') or '').strip()

        if not title:
            return jsonify({'error': 'Title is required', 'code': 'MISSING_TITLE'}), 400

        ok, pages, error = parse_count(data.get('pages'), 'pages')
        if not ok:
            return jsonify({'error': error, 'code': 'INVALID_PAGES'}), 400
        ok, slides, error = parse_count(data.get('slides'), 'slides')
        if not ok:
            return jsonify({'error': error, 'code': 'INVALID_SLIDES'}), 400
        if pages == 0 and slides == 0:
            return jsonify({'error': 'An order needs at least one page or slide', 'code': 'EMPTY_ORDER'}), 400

        ok, amount, error = parse_amount(data.get('amount'))
        if not ok:
            return jsonify({'error': error, 'code': 'INVALID_AMOUNT'}), 400

        is_valid, message = validate_client_price(amount, pages, slides, work_type)
        if not is_valid:
            return jsonify({'error': message, 'code': 'PRICE_BELOW_MINIMUM'}), 400

        order = Order(
            title=title,
            client_id=session['user_id'],
            work_type=work_type,
            pages=pages,
            slides=slides,
            amount=amount,
            status='pending'
        )
        db.session.add(order)
        db.session.flush()
        order.display_id = f"ORD-{order.id:06d}"
        db.session.commit()

        return jsonify({'message': 'Order created', 'order': order.to_dict()}), 201

    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create order error: {str(e)}")
        return jsonify({'error': 'Failed to create order'}), 500


@app.route('/api/orders/<int:order_id>', methods=['GET'])
@login_required
def get_order(order_id):
    order = db.session.get(Order, order_id)
    if not order:
        return jsonify({'error': 'Order not found', 'code': 'ORDER_NOT_FOUND'}), 404
    return jsonify({'order': order.to_dict()}), 200


@app.route('/api/orders/<int:order_id>/assign', methods=['POST'])
@roles_required('admin', 'manager')
def assign_order(order_id):
    """Assign a freelancer to an order; this is what earns the manager's assignment fee"""
    try:
        data = request.get_json() or {}
        order = db.session.get(Order, order_id)
        if not order:
            return jsonify({'error': 'Order not found', 'code': 'ORDER_NOT_FOUND'}), 404

        if order.status in ('completed', 'cancelled'):
            return jsonify({'error': f'Order cannot be assigned (status: {order.status})',
                            'code': 'INVALID_STATE_TRANSITION'}), 409

        freelancer_id = data.get('freelancer_id')
        if not freelancer_id:
            return jsonify({'error': 'freelancer_id is required', 'code': 'MISSING_FREELANCER'}), 400

        freelancer = db.session.get(User, freelancer_id)
        if not freelancer or freelancer.role != 'freelancer':
            return jsonify({'error': 'Freelancer not found', 'code': 'FREELANCER_NOT_FOUND'}), 404

        old_status = order.status
        order.assigned_freelancer_id = freelancer.id
        order.status = 'assigned'
        db.session.add(OrderStatusLog(
            order_id=order.id,
            old_status=old_status,
            new_status='assigned',
            changed_by=session['user_id'],
            note=f'Assigned to freelancer {freelancer.id}'
        ))
        db.session.commit()

        return jsonify({'message': 'Freelancer assigned', 'order': order.to_dict()}), 200

    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Assign order error: {str(e)}")
        return jsonify({'error': 'Failed to assign order'}), 500


@app.route('/api/orders/<int:order_id>/submit', methods=['POST'])
@login_required
def submit_order(order_id):
    """Assigned freelancer delivers the work; this earns the manager's submission fee"""
    try:
        order = db.session.get(Order, order_id)
        if not order:
            return jsonify({'error': 'Order not found', 'code': 'ORDER_NOT_FOUND'}), 404

        if order.assigned_freelancer_id != session['user_id']:
            return jsonify({'error': 'Only the assigned freelancer can submit this order'}), 403

        if order.submitted:
            return jsonify({'message': 'Order already submitted', 'order': order.to_dict()}), 200

        old_status = order.status
        order.submitted = True
        order.submitted_at = datetime.utcnow()
        order.status = 'delivered'
        db.session.add(OrderStatusLog(
            order_id=order.id,
            old_status=old_status,
            new_status='delivered',
            changed_by=session['user_id'],
            note='Work submitted by freelancer'
        ))
        db.session.commit()

        return jsonify({'message': 'Order submitted', 'order': order.to_dict()}), 200

    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Submit order error: {str(e)}")
        return jsonify({'error': 'Failed to submit order'}), 500


# ==================== PAYMENT ROUTES ====================

@app.route('/api/payments', methods=['POST'])
@login_required
def create_payment():
    """Client records a payment for admin verification"""
    try:
        data = request.get_json() or {}
        if not data.get('order_id'):
            return jsonify({'error': 'order_id is required', 'code': 'MISSING_ORDER'}), 400

        order = db.session.get(Order, data.get('order_id'))
        if not order:
            return jsonify({'error': 'Order not found', 'code': 'ORDER_NOT_FOUND'}), 404

        if order.client_id != session['user_id']:
            return jsonify({'error': 'Only the client can pay for this order'}), 403

        if order.payment_confirmed:
            return jsonify({'error': 'Order is already paid', 'code': 'ALREADY_PAID'}), 409

        ok, amount, error = parse_amount(data.get('amount', order.amount))
        if not ok:
            return jsonify({'error': error, 'code': 'INVALID_AMOUNT'}), 400

        payment = Payment(
            order_id=order.id,
            client_id=order.client_id,
            amount=amount,
            payment_method=data.get('payment_method', 'mpesa'),
            reference=(data.get('reference') or '').strip() or None,
            status='pending'
        )
        db.session.add(payment)
        db.session.commit()

        return jsonify({'message': 'Payment submitted for verification', 'payment': payment.to_dict()}), 201

    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create payment error: {str(e)}")
        return jsonify({'error': 'Failed to record payment'}), 500


@app.route('/api/payments/<int:payment_id>/confirm', methods=['PATCH'])
@admin_required
@rate_limited()
def confirm_payment(payment_id):
    """Admin confirms (settles) or rejects a pending payment"""
    data = request.get_json(silent=True) or {}
    confirmed = data.get('confirmed')

    if not isinstance(confirmed, bool):
        return jsonify({
            'error': 'Confirmed field is required and must be a boolean',
            'code': 'INVALID_CONFIRMED_FIELD'
        }), 400

    try:
        result = settlement_service.confirm_payment(payment_id, confirmed, actor_id=session['user_id'])
    except SettlementError as e:
        return jsonify({'error': e.message, 'code': e.code}), e.http_status
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Confirm payment error: {str(e)}")
        return jsonify({'error': 'Failed to process payment confirmation'}), 500

    messages = {
        'confirmed': 'Payment confirmed. Order completed. Invoice created and pending payout.',
        'already-confirmed': 'Payment was already confirmed.',
        'failed': 'Payment marked as failed'
    }
    payload = result.to_dict()
    payload['message'] = messages[result.status]
    return jsonify(payload), 200


# ==================== PRICING ROUTES ====================

@app.route('/api/pricing/quote', methods=['GET'])
def pricing_quote():
    """Preview writer payout and minimum client price for an order size"""
    ok, pages, error = parse_count(request.args.get('pages'), 'pages')
    if not ok:
        return jsonify({'error': error}), 400
    ok, slides, error = parse_count(request.args.get('slides'), 'slides')
    if not ok:
        return jsonify({'error': error}), 400
    ok, completed_orders, error = parse_count(request.args.get('completed_orders'), 'completed_orders')
    if not ok:
        return jsonify({'error': error}), 400

    work_type = request.args.get('work_type', '')
    requested = request.args.get('strategy')
    if requested:
        try:
            strategy = get_pricing_strategy(requested)
        except ValueError as e:
            return jsonify({'error': str(e)}), 400
    else:
        strategy = get_active_pricing_strategy()

    quote = strategy.quote(pages, slides, work_type, completed_orders)
    minimum = payment_calculations.minimum_client_price(pages, slides, work_type)
    response = {
        'strategy': strategy.name,
        'quote': quote.to_dict(),
        'minimum_client_price': float(minimum)
    }

    amount = request.args.get('amount')
    if amount:
        is_valid, message = validate_client_price(amount, pages, slides, work_type)
        split = strategy.split(amount, pages, slides, work_type, assigned=True, submitted=True,
                               completed_orders=completed_orders)
        response['price_valid'] = is_valid
        response['price_message'] = message
        response['split'] = split.to_dict()

    return jsonify(response), 200


@app.route('/api/freelancers/<int:freelancer_id>/cpp', methods=['GET'])
def get_freelancer_cpp(freelancer_id):
    """CPP level and progress for a freelancer"""
    freelancer = db.session.get(User, freelancer_id)
    if not freelancer or freelancer.role != 'freelancer':
        return jsonify({'error': 'Freelancer not found'}), 404

    status = cpp_levels.calculate_cpp_progress(freelancer.completed_orders,
                                               bool(freelancer.is_work_type_specialized))
    return jsonify({
        'freelancer': {'id': freelancer.id, 'name': freelancer.name},
        'cpp_status': status,
        'status_message': cpp_levels.get_cpp_status_message(status),
        'cpp_levels': cpp_levels.get_all_cpp_levels(),
        'current_level_details': cpp_levels.get_cpp_level_details(status['current_level']),
        'next_level_details': cpp_levels.get_cpp_level_details(status['current_level'] + 1)
    }), 200


# ==================== ADMIN ROUTES ====================

@app.route('/api/admin/settings/pricing-strategy', methods=['GET'])
@admin_required
def get_pricing_strategy_setting():
    strategy = get_active_pricing_strategy()
    return jsonify({'strategy': strategy.name, 'available': list(PRICING_STRATEGIES)}), 200


@app.route('/api/admin/settings/pricing-strategy', methods=['POST'])
@admin_required
def set_pricing_strategy_setting():
    """Switch the pricing strategy used for new settlements"""
    try:
        data = request.get_json() or {}
        strategy = data.get('strategy')

        if strategy not in PRICING_STRATEGIES:
            return jsonify({'error': f"Invalid strategy. Must be one of: {', '.join(PRICING_STRATEGIES)}"}), 400

        previous = get_active_pricing_strategy().name
        user_id = session.get('user_id')
        set_site_setting(
            'pricing_strategy',
            strategy,
            description=f'Pricing strategy set to {strategy}',
            user_id=user_id
        )
        audit_logger.log_admin_action(
            f'Pricing strategy changed from {previous} to {strategy}',
            resource_type='site_settings',
            resource_id='pricing_strategy',
            details={'old': previous, 'new': strategy},
            user_id=user_id
        )

        return jsonify({'message': f'Pricing strategy set to {strategy}', 'strategy': strategy}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Set pricing strategy error: {str(e)}")
        return jsonify({'error': 'Failed to set pricing strategy'}), 500


@app.route('/api/invoices', methods=['GET'])
@admin_required
def list_invoices():
    """List invoices, newest first, with optional filters"""
    query = Invoice.query

    for field in ('order_id', 'client_id', 'freelancer_id'):
        value = request.args.get(field)
        if value:
            if not value.isdigit():
                return jsonify({'error': f'Invalid {field} parameter', 'code': f'INVALID_{field.upper()}'}), 400
            query = query.filter(getattr(Invoice, field) == int(value))

    status = request.args.get('status')
    if status:
        if status not in ('pending', 'paid', 'cancelled'):
            return jsonify({'error': 'Invalid status. Must be: pending, paid, or cancelled',
                            'code': 'INVALID_STATUS'}), 400
        query = query.filter(Invoice.status == status)

    limit = max(1, min(request.args.get('limit', 50, type=int), 100))
    offset = max(request.args.get('offset', 0, type=int), 0)

    invoices = query.order_by(Invoice.created_at.desc(), Invoice.id.desc()).limit(limit).offset(offset).all()
    return jsonify({'invoices': [invoice.to_dict() for invoice in invoices]}), 200


# Lazy initialization flag
_db_initialized = False


def init_database():
    """Create tables (lazy, once per process)"""
    global _db_initialized
    if _db_initialized:
        return

    try:
        db.create_all()
        _db_initialized = True
    except Exception as e:
        app.logger.error(f"Database initialization error: {str(e)}")


with app.app_context():
    init_database()


if __name__ == '__main__':
    if os.environ.get('ENABLE_SCHEDULER', 'false').lower() == 'true':
        from scheduled_jobs import init_scheduler
        init_scheduler(app, db, User, Order, Invoice)

    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=os.environ.get('FLASK_DEBUG', 'False') == 'True')
