#!/usr/bin/env python3
"""
Settlement Integrity Verification Script

Checks that every confirmed payment was settled exactly once and that the
recorded money adds up. Read-only; run it after migrations or whenever
balances look suspicious.

Usage:
    python3 scripts/verify_settlements.py
"""

import os
import sys
from dotenv import load_dotenv

# Colors for terminal output
GREEN = '\033[92m'
RED = '\033[91m'
YELLOW = '\033[93m'
BLUE = '\033[94m'
RESET = '\033[0m'


def print_header(text):
    print(f"\n{BLUE}{'='*60}{RESET}")
    print(f"{BLUE}{text.center(60)}{RESET}")
    print(f"{BLUE}{'='*60}{RESET}\n")


def print_success(text):
    print(f"{GREEN}✅ {text}{RESET}")


def print_error(text):
    print(f"{RED}❌ {text}{RESET}")


def print_warning(text):
    print(f"{YELLOW}⚠️  {text}{RESET}")


def print_info(text):
    print(f"ℹ️  {text}")


def load_app():
    sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    import app as app_module
    return app_module


def check_environment():
    """Check settlement-related environment variables"""
    print_header("Checking Environment Variables")

    if os.getenv('DATABASE_URL'):
        print_success("DATABASE_URL is set")
    else:
        print_warning("DATABASE_URL not set, the local SQLite database will be used")

    strategy = os.getenv('PRICING_STRATEGY', 'flat')
    from payment_calculations import PRICING_STRATEGIES
    if strategy in PRICING_STRATEGIES:
        print_success(f"PRICING_STRATEGY: {strategy}")
        return True

    print_error(f"PRICING_STRATEGY '{strategy}' is not one of: {', '.join(PRICING_STRATEGIES)}")
    return False


def check_confirmed_payments(m):
    """Every confirmed payment has exactly one invoice"""
    print_header("Checking Confirmed Payments")

    all_passed = True
    payments = m.Payment.query.filter_by(status='confirmed').all()
    for payment in payments:
        invoices = m.Invoice.query.filter_by(
            order_id=payment.order_id,
            client_id=payment.client_id,
            amount=payment.amount
        ).count()
        if invoices != 1:
            print_error(f"Payment {payment.id} (order {payment.order_id}) has {invoices} invoices")
            all_passed = False

    if all_passed:
        print_success(f"{len(payments)} confirmed payments, each with one invoice")
    return all_passed


def check_invoice_amounts(m):
    """Invoice components add up to the client amount"""
    print_header("Checking Invoice Amounts")

    from payment_calculations import calculate_settlement_split
    from settlement_service import settlement_amounts_match

    all_passed = True
    invoices = m.Invoice.query.all()
    for invoice in invoices:
        split = calculate_settlement_split(invoice.amount, invoice.freelancer_amount, invoice.manager_amount)
        if not settlement_amounts_match(split) or abs(float(split.platform_margin) - invoice.admin_commission) > 0.01:
            print_error(f"{invoice.invoice_number}: components do not add up to {invoice.amount}")
            all_passed = False
        elif split.shortfall > 0:
            print_warning(f"{invoice.invoice_number}: payouts exceeded the client amount by {split.shortfall}")

    if all_passed:
        print_success(f"{len(invoices)} invoices balance")
    return all_passed


def check_order_financials(m):
    """Completed, paid orders have a financial snapshot"""
    print_header("Checking Order Financials")

    all_passed = True
    orders = m.Order.query.filter_by(payment_confirmed=True).all()
    for order in orders:
        if not m.OrderFinancials.query.filter_by(order_id=order.id).first():
            print_error(f"Order {order.display_id or order.id} has no financial snapshot")
            all_passed = False

    if all_passed:
        print_success(f"{len(orders)} paid orders have financial snapshots")
    return all_passed


def check_balances(m):
    """Payee totals agree with their invoices"""
    print_header("Checking Payee Earnings")

    from scheduled_jobs import reconcile_freelancer_balances

    report = reconcile_freelancer_balances(m.app, m.db, m.User, m.Order, m.Invoice)
    for mismatch in report['mismatches']:
        print_error(
            f"{mismatch['role']} {mismatch['user_id']}: expected {mismatch['expected']:.2f}, "
            f"recorded {mismatch['recorded']:.2f}"
        )

    if not report['mismatches']:
        print_success(f"{report['checked']} payees reconcile")
        return True
    return False


def run_all_checks():
    """Run all verification checks"""
    load_dotenv()

    print(f"\n{BLUE}TaskLynk Settlement Verification{RESET}")

    results = {'environment': check_environment()}

    try:
        m = load_app()
    except Exception as e:
        print_error(f"Could not import app: {str(e)}")
        return 1

    with m.app.app_context():
        results['payments'] = check_confirmed_payments(m)
        results['invoices'] = check_invoice_amounts(m)
        results['financials'] = check_order_financials(m)
    results['balances'] = check_balances(m)

    print_header("Summary")
    for name, passed in results.items():
        if passed:
            print_success(name)
        else:
            print_error(name)

    return 0 if all(results.values()) else 1


if __name__ == '__main__':
    exit_code = run_all_checks()
    sys.exit(exit_code)
