"""
TaskLynk Settlement Service
Turns a confirmed client payment into freelancer and manager balance credits,
an invoice and a per-order financial snapshot, exactly once per payment.

Safety layers against double crediting:
1. The pending -> confirmed transition is a conditional UPDATE; only the
   request whose update touches a row may settle.
2. Invoices are unique per (order, client, amount), so a second settlement
   of the same payment cannot commit even if (1) were bypassed.

Everything financial happens in one database transaction. Audit entries and
notifications are written after the commit and are best effort.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError

from payment_calculations import (
    SettlementSplit,
    ZERO,
    calculate_settlement_split,
    get_pricing_strategy,
    to_money,
)

logger = logging.getLogger(__name__)

PAYMENT_PENDING = 'pending'
PAYMENT_CONFIRMED = 'confirmed'
PAYMENT_FAILED = 'failed'

RESULT_CONFIRMED = 'confirmed'
RESULT_FAILED = 'failed'
RESULT_ALREADY_CONFIRMED = 'already-confirmed'

ORDER_COMPLETED = 'completed'


class SettlementError(Exception):
    """Base class for settlement precondition failures"""
    code = 'SETTLEMENT_ERROR'
    http_status = 400

    def __init__(self, message, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class NotFound(SettlementError):
    code = 'NOT_FOUND'
    http_status = 404


class PaymentNotFound(NotFound):
    code = 'PAYMENT_NOT_FOUND'


class OrderNotFound(NotFound):
    code = 'ORDER_NOT_FOUND'


class InvalidStateTransition(SettlementError):
    code = 'INVALID_STATE_TRANSITION'
    http_status = 409


@dataclass
class SettlementResult:
    status: str
    payment_id: int
    order_id: Optional[int] = None
    split: Optional[SettlementSplit] = None
    invoice_id: Optional[int] = None
    invoice_number: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'status': self.status,
            'payment_id': self.payment_id,
            'order_id': self.order_id,
            'split': self.split.to_dict() if self.split else None,
            'invoice_id': self.invoice_id,
            'invoice_number': self.invoice_number,
        }


def format_invoice_number(day: datetime, sequence: int) -> str:
    """INV-YYYYMMDD-NNNNN"""
    return f"INV-{day.strftime('%Y%m%d')}-{sequence:05d}"


class SettlementService:
    """
    Idempotent payment confirmation workflow.

    Models are passed in rather than imported so the service can be built
    against any app instance.
    """

    MAX_INVOICE_ATTEMPTS = 3

    def __init__(self, db, Order, Payment, User, Invoice, OrderFinancials, OrderStatusLog,
                 audit_logger=None, notifier=None, strategy_resolver=None, clock=None):
        """
        Args:
            db: SQLAlchemy database instance
            Order, Payment, User, Invoice, OrderFinancials, OrderStatusLog: model classes
            audit_logger: AuditLogger (optional, best effort)
            notifier: NotificationService (optional, best effort)
            strategy_resolver: callable returning the active PricingStrategy
            clock: callable returning the current UTC datetime
        """
        self.db = db
        self.Order = Order
        self.Payment = Payment
        self.User = User
        self.Invoice = Invoice
        self.OrderFinancials = OrderFinancials
        self.OrderStatusLog = OrderStatusLog
        self.audit_logger = audit_logger
        self.notifier = notifier
        self.strategy_resolver = strategy_resolver or (lambda: get_pricing_strategy('flat'))
        self.clock = clock or datetime.utcnow

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _get_payment(self, payment_id):
        payment = self.db.session.get(self.Payment, payment_id)
        if payment is None:
            raise PaymentNotFound(f"Payment {payment_id} not found", payment_id=payment_id)
        return payment

    def _get_order(self, order_id):
        order = self.db.session.get(self.Order, order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
        return order

    def _get_user(self, user_id):
        if not user_id:
            return None
        return self.db.session.get(self.User, user_id)

    def resolve_manager_id(self, order, freelancer=None):
        """The freelancer's manager, falling back to the client's manager"""
        if freelancer is None:
            freelancer = self._get_user(order.assigned_freelancer_id)
        if freelancer is not None and freelancer.assigned_manager_id:
            return freelancer.assigned_manager_id

        client = self._get_user(order.client_id)
        if client is not None and client.assigned_manager_id:
            return client.assigned_manager_id
        return None

    def _find_invoice(self, order_id, client_id, amount):
        return self.Invoice.query.filter_by(
            order_id=order_id,
            client_id=client_id,
            amount=amount
        ).first()

    # ------------------------------------------------------------------
    # Computation
    # ------------------------------------------------------------------

    def compute_split(self, order, client_amount, freelancer=None, manager_id=None) -> SettlementSplit:
        """
        Split client_amount for an order using the active pricing strategy.

        A component with nobody to receive it (no assigned freelancer, no
        resolvable manager) is zero, so the split always matches the credits
        actually applied.
        """
        strategy = self.strategy_resolver()
        completed_orders = freelancer.completed_orders if freelancer is not None else 0
        computed = strategy.split(
            client_amount,
            order.pages,
            order.slides,
            order.work_type,
            assigned=order.assigned_freelancer_id is not None,
            submitted=bool(order.submitted),
            completed_orders=completed_orders
        )

        freelancer_amount = computed.freelancer_amount if freelancer is not None else ZERO
        manager_amount = computed.manager_amount if manager_id else ZERO
        return calculate_settlement_split(computed.client_amount, freelancer_amount, manager_amount)

    def preview_settlement(self, order, client_amount=None) -> SettlementSplit:
        """Split an order would settle to right now, without touching any state"""
        freelancer = self._get_user(order.assigned_freelancer_id)
        manager_id = self.resolve_manager_id(order, freelancer)
        amount = order.amount if client_amount is None else client_amount
        return self.compute_split(order, amount, freelancer, manager_id)

    def generate_invoice_number(self, now=None) -> str:
        """Next invoice number for the calendar day of `now` (UTC)"""
        now = now or self.clock()
        day_start = datetime(now.year, now.month, now.day)
        day_end = day_start + timedelta(days=1)
        created_today = self.Invoice.query.filter(
            and_(self.Invoice.created_at >= day_start, self.Invoice.created_at < day_end)
        ).count()
        return format_invoice_number(day_start, created_today + 1)

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _transition_payment(self, payment_id, new_status, now, **values):
        """Conditional pending -> new_status update; returns True if this call won"""
        values.update({'status': new_status, 'updated_at': now})
        updated = self.db.session.query(self.Payment).filter(
            self.Payment.id == payment_id,
            self.Payment.status == PAYMENT_PENDING
        ).update(values, synchronize_session=False)
        return updated == 1

    def _existing_result(self, payment) -> SettlementResult:
        """Result of a settlement that already happened for this payment"""
        invoice = self._find_invoice(payment.order_id, payment.client_id, payment.amount)
        split = None
        if invoice is not None:
            split = calculate_settlement_split(
                invoice.amount, invoice.freelancer_amount, invoice.manager_amount
            )
        else:
            financials = self.OrderFinancials.query.filter_by(order_id=payment.order_id).first()
            if financials is not None:
                split = calculate_settlement_split(
                    financials.client_amount, financials.writer_amount, financials.manager_amount
                )

        return SettlementResult(
            status=RESULT_ALREADY_CONFIRMED,
            payment_id=payment.id,
            order_id=payment.order_id,
            split=split,
            invoice_id=invoice.id if invoice else None,
            invoice_number=invoice.invoice_number if invoice else None,
        )

    def confirm_payment(self, payment_id, confirmed, actor_id=None) -> SettlementResult:
        """
        Apply an admin's decision on a pending payment.

        Args:
            payment_id: Payment to decide on
            confirmed: True to confirm and settle, False to mark failed
            actor_id: Admin performing the action

        Returns:
            SettlementResult with status confirmed, failed or already-confirmed

        Raises:
            PaymentNotFound, OrderNotFound, InvalidStateTransition
        """
        if confirmed:
            return self._confirm(payment_id, actor_id)
        return self._fail(payment_id, actor_id)

    def _confirm(self, payment_id, actor_id) -> SettlementResult:
        for attempt in range(1, self.MAX_INVOICE_ATTEMPTS + 1):
            payment = self._get_payment(payment_id)

            if payment.status == PAYMENT_CONFIRMED:
                logger.info(f"Payment {payment_id} already confirmed, returning existing settlement")
                return self._existing_result(payment)
            if payment.status != PAYMENT_PENDING:
                raise InvalidStateTransition(
                    f"Payment {payment_id} cannot be confirmed (status: {payment.status})",
                    payment_id=payment_id, status=payment.status
                )

            order = self._get_order(payment.order_id)
            if order.payment_confirmed:
                return self._settled_order_payment(payment, order)

            freelancer = self._get_user(order.assigned_freelancer_id)
            manager_id = self.resolve_manager_id(order, freelancer)
            split = self.compute_split(order, payment.amount, freelancer, manager_id)
            now = self.clock()

            try:
                if not self._transition_payment(payment.id, PAYMENT_CONFIRMED, now,
                                                confirmed_by_admin=True, confirmed_at=now):
                    # Another request changed the status between our read and update
                    self.db.session.rollback()
                    self.db.session.expire_all()
                    continue

                invoice = self._settle(payment, order, freelancer, manager_id, split, actor_id, now)
                self.db.session.commit()

            except IntegrityError:
                self.db.session.rollback()
                self.db.session.expire_all()
                existing = self._find_invoice(payment.order_id, payment.client_id, payment.amount)
                if existing is not None:
                    return self._absorb_duplicate_payment(payment_id, existing)
                if self.OrderFinancials.query.filter_by(order_id=payment.order_id).first() is not None:
                    # Another payment settled this order while we were computing
                    raise self._order_already_settled(payment)
                if attempt == self.MAX_INVOICE_ATTEMPTS:
                    logger.error(f"Could not allocate an invoice number for payment {payment_id}")
                    raise
                logger.warning(f"Invoice number collision settling payment {payment_id}, retrying ({attempt})")
                continue
            except Exception:
                self.db.session.rollback()
                raise

            result = SettlementResult(
                status=RESULT_CONFIRMED,
                payment_id=payment_id,
                order_id=order.id,
                split=split,
                invoice_id=invoice.id,
                invoice_number=invoice.invoice_number,
            )
            logger.info(
                f"Payment {payment_id} settled: order {order.id}, invoice {invoice.invoice_number}, "
                f"writer {split.freelancer_amount}, manager {split.manager_amount}, "
                f"platform {split.platform_margin}"
            )
            self._after_settlement(payment, order, freelancer, manager_id, split, invoice, actor_id)
            return result

        # Lost every race: whoever won has settled or failed the payment by now
        payment = self._get_payment(payment_id)
        if payment.status == PAYMENT_CONFIRMED:
            return self._existing_result(payment)
        raise InvalidStateTransition(
            f"Payment {payment_id} cannot be confirmed (status: {payment.status})",
            payment_id=payment_id, status=payment.status
        )

    def _settle(self, payment, order, freelancer, manager_id, split, actor_id, now):
        """All financial writes for one settlement; caller owns the transaction"""
        invoice = self.Invoice(
            invoice_number=self.generate_invoice_number(now),
            order_id=order.id,
            client_id=payment.client_id,
            freelancer_id=order.assigned_freelancer_id,
            manager_id=manager_id,
            amount=payment.amount,
            freelancer_amount=float(split.freelancer_amount),
            manager_amount=float(split.manager_amount),
            admin_commission=float(split.platform_margin),
            description=f"Payment for order {order.display_id or order.id} - {order.title}",
            status='pending',
            is_paid=False,
            created_at=now,
            updated_at=now
        )
        self.db.session.add(invoice)

        financials = self.OrderFinancials(
            order_id=order.id,
            client_amount=float(split.client_amount),
            writer_amount=float(split.freelancer_amount),
            manager_amount=float(split.manager_amount),
            platform_fee=float(split.platform_margin),
            created_at=now
        )
        self.db.session.add(financials)
        # Flush now so a uniqueness violation surfaces before any balance moves
        self.db.session.flush()

        old_status = order.status
        order.status = ORDER_COMPLETED
        order.payment_confirmed = True
        order.freelancer_earnings = float(split.freelancer_amount)
        order.manager_earnings = float(split.manager_amount)
        order.admin_profit = float(split.platform_margin)
        order.paid_order_confirmed_at = now
        order.updated_at = now

        if freelancer is not None:
            self._credit(freelancer.id, split.freelancer_amount, completed_order=True)
        if manager_id and split.manager_amount > ZERO:
            self._credit(manager_id, split.manager_amount)

        self.db.session.add(self.OrderStatusLog(
            order_id=order.id,
            old_status=old_status,
            new_status=ORDER_COMPLETED,
            changed_by=actor_id,
            note='Payment confirmed by admin; order completed',
            created_at=now
        ))
        return invoice

    def _credit(self, user_id, amount, completed_order=False):
        """Atomic in-database increment; never read-modify-write in Python"""
        values = {
            self.User.balance: self.User.balance + float(amount),
            self.User.total_earned: self.User.total_earned + float(amount),
        }
        if completed_order:
            values[self.User.completed_orders] = self.User.completed_orders + 1
        self.db.session.query(self.User).filter(self.User.id == user_id).update(
            values, synchronize_session=False
        )

    def _settled_order_payment(self, payment, order) -> SettlementResult:
        """
        A pending payment on an order that is already paid. The same amount
        from the same client is a duplicate record and is closed without
        credits; anything else is left pending for an admin to reject.
        """
        existing = self._find_invoice(order.id, payment.client_id, payment.amount)
        if existing is not None:
            return self._absorb_duplicate_payment(payment.id, existing)
        raise self._order_already_settled(payment)

    def _order_already_settled(self, payment):
        logger.warning(
            f"Payment {payment.id} of {payment.amount} targets order {payment.order_id}, "
            f"which is already settled"
        )
        return InvalidStateTransition(
            f"Order {payment.order_id} is already paid; payment {payment.id} cannot be confirmed",
            payment_id=payment.id, order_id=payment.order_id
        )

    def _absorb_duplicate_payment(self, payment_id, invoice) -> SettlementResult:
        """
        The order was already settled for this client and amount by another
        payment record. Close this one as confirmed without crediting anyone.
        """
        now = self.clock()
        if self._transition_payment(payment_id, PAYMENT_CONFIRMED, now,
                                    confirmed_by_admin=True, confirmed_at=now):
            self.db.session.commit()
            logger.warning(
                f"Payment {payment_id} duplicates settled invoice {invoice.invoice_number}; "
                f"marked confirmed without crediting balances"
            )
        else:
            self.db.session.rollback()
        return self._existing_result(self._get_payment(payment_id))

    def _fail(self, payment_id, actor_id) -> SettlementResult:
        payment = self._get_payment(payment_id)

        if payment.status == PAYMENT_FAILED:
            return SettlementResult(status=RESULT_FAILED, payment_id=payment.id, order_id=payment.order_id)
        if payment.status != PAYMENT_PENDING:
            raise InvalidStateTransition(
                f"Payment {payment_id} cannot be marked failed (status: {payment.status})",
                payment_id=payment_id, status=payment.status
            )

        now = self.clock()
        try:
            won = self._transition_payment(payment.id, PAYMENT_FAILED, now, confirmed_by_admin=False)
            self.db.session.commit()
        except Exception:
            self.db.session.rollback()
            raise

        if not won:
            # Raced with another decision; report whatever it was
            self.db.session.expire_all()
            return self._fail(payment_id, actor_id)

        logger.info(f"Payment {payment_id} marked failed")
        self._after_failure(payment, actor_id)
        return SettlementResult(status=RESULT_FAILED, payment_id=payment.id, order_id=payment.order_id)

    # ------------------------------------------------------------------
    # Best-effort side effects (never raise)
    # ------------------------------------------------------------------

    def _after_settlement(self, payment, order, freelancer, manager_id, split, invoice, actor_id):
        order_label = order.display_id or f"#{order.id}"

        if self.audit_logger is not None:
            try:
                self.audit_logger.log_financial(
                    event_type='confirm_payment',
                    action=f"Confirmed payment {payment.id} for order {order_label}",
                    amount=payment.amount,
                    resource_type='payment',
                    resource_id=payment.id,
                    details={
                        'order_id': order.id,
                        'client_id': payment.client_id,
                        'writer_amount': float(split.freelancer_amount),
                        'manager_total': float(split.manager_amount),
                        'admin_commission': float(split.platform_margin),
                        'payment_method': payment.payment_method,
                        'reference': payment.reference,
                        'invoice_number': invoice.invoice_number,
                    },
                    user_id=actor_id
                )
            except Exception as e:
                logger.error(f"Audit entry for payment {payment.id} failed: {str(e)}")

        if self.notifier is None:
            return

        try:
            if freelancer is not None:
                self.notifier.notify(
                    freelancer.id, 'order_completed', 'Order Completed - Earnings Credited',
                    f"Order {order_label} is completed. You were credited KSh {split.freelancer_amount}.",
                    order_id=order.id
                )
            if manager_id and split.manager_amount > ZERO:
                self.notifier.notify(
                    manager_id, 'manager_payout', 'Manager Earnings Credited',
                    f"You earned KSh {split.manager_amount} for order {order_label}.",
                    order_id=order.id
                )
            self.notifier.notify(
                payment.client_id, 'payment_confirmed', 'Payment Confirmed - Order Completed',
                f"Your payment for order {order_label} is confirmed. The order is now completed.",
                order_id=order.id
            )
        except Exception as e:
            logger.error(f"Notifications for payment {payment.id} failed: {str(e)}")

    def _after_failure(self, payment, actor_id):
        if self.audit_logger is not None:
            try:
                self.audit_logger.log_financial(
                    event_type='reject_payment',
                    action=f"Marked payment {payment.id} as failed",
                    amount=payment.amount,
                    resource_type='payment',
                    resource_id=payment.id,
                    details={
                        'order_id': payment.order_id,
                        'client_id': payment.client_id,
                        'payment_method': payment.payment_method,
                    },
                    user_id=actor_id
                )
            except Exception as e:
                logger.error(f"Audit entry for payment {payment.id} failed: {str(e)}")

        if self.notifier is not None:
            try:
                self.notifier.notify(
                    payment.client_id, 'payment_failed', 'Payment Verification Failed',
                    'Payment verification failed. Please try again with the correct payment '
                    'reference or use M-Pesa Direct Pay.',
                    order_id=payment.order_id
                )
            except Exception as e:
                logger.error(f"Failure notification for payment {payment.id} failed: {str(e)}")


def settlement_amounts_match(split: SettlementSplit) -> bool:
    """Conservation check: client payment plus absorbed shortfall equals the payouts"""
    return (to_money(split.client_amount) + split.shortfall
            == split.freelancer_amount + split.manager_amount + split.platform_margin)
