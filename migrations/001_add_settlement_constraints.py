#!/usr/bin/env python3
"""
Database Migration Script to Add Settlement Constraints

This migration adds:
1. updated_at columns to the payment and invoice tables
2. a unique index on invoice (order_id, client_id, amount), so a payment
   can only ever be settled into one invoice
3. a unique index on order_financials.order_id

Existing duplicate invoices are reported and the migration stops without
changing anything; they have to be resolved by hand first.
"""

import sys
from pathlib import Path

# Add parent directory to path to import app
sys.path.insert(0, str(Path(__file__).parent.parent))

from app import app, db
from sqlalchemy import inspect, text


def check_column_exists(table_name, column_name):
    """Check if a column exists in a table"""
    inspector = inspect(db.engine)
    columns = [col['name'] for col in inspector.get_columns(table_name)]
    return column_name in columns


def check_table_exists(table_name):
    """Check if a table exists"""
    inspector = inspect(db.engine)
    return table_name in inspector.get_table_names()


def find_duplicate_invoices():
    """Groups of invoices that would violate the new unique index"""
    return db.session.execute(text("""
        SELECT order_id, client_id, amount, COUNT(*) AS copies
        FROM invoice
        GROUP BY order_id, client_id, amount
        HAVING COUNT(*) > 1
    """)).fetchall()


def add_settlement_constraints():
    """Add settlement constraints to the database"""

    print("\n🔧 Adding settlement constraints...")
    print("-" * 60)

    try:
        timestamp_type = 'TIMESTAMP' if db.engine.dialect.name == 'postgresql' else 'DATETIME'

        for table in ('payment', 'invoice'):
            if not check_column_exists(table, 'updated_at'):
                print(f"➕ Adding updated_at column to {table} table...")
                db.session.execute(text(
                    f"ALTER TABLE {table} ADD COLUMN updated_at {timestamp_type}"
                ))
                db.session.execute(text(
                    f"UPDATE {table} SET updated_at = created_at WHERE updated_at IS NULL"
                ))
                print("   ✅ Added updated_at column")
            else:
                print(f"ℹ️  updated_at column already exists in {table} table")

        duplicates = find_duplicate_invoices()
        if duplicates:
            print(f"❌ Found {len(duplicates)} duplicated invoice groups:")
            for row in duplicates:
                print(f"   order {row.order_id}, client {row.client_id}, amount {row.amount}: {row.copies} invoices")
            print("   Resolve these before re-running the migration.")
            db.session.rollback()
            return False

        print("➕ Creating unique indexes...")
        db.session.execute(text(
            "CREATE UNIQUE INDEX IF NOT EXISTS unique_invoice_per_order_payment "
            "ON invoice(order_id, client_id, amount)"
        ))
        if check_table_exists('order_financials'):
            db.session.execute(text(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_order_financials_order_id "
                "ON order_financials(order_id)"
            ))
        db.session.execute(text("CREATE INDEX IF NOT EXISTS idx_payment_status ON payment(status)"))
        db.session.execute(text("CREATE INDEX IF NOT EXISTS idx_invoice_created_at ON invoice(created_at)"))
        print("   ✅ Created indexes")

        # Commit all changes
        db.session.commit()
        print("\n" + "-" * 60)
        print("✅ Migration completed successfully!")

        return True

    except Exception as e:
        db.session.rollback()
        print(f"\n❌ Error during migration: {e}")
        import traceback
        traceback.print_exc()
        return False


def main():
    """Main migration entry point"""
    print("=" * 60)
    print("TaskLynk Settlement Constraints Migration")
    print("=" * 60)

    success = add_settlement_constraints()

    if success:
        print("\n📝 Summary:")
        print("   - Added updated_at to payment and invoice tables")
        print("   - Invoices are unique per order, client and amount")
        print("   - Order financials are unique per order")
        return 0

    print("\n❌ Migration failed!")
    return 1


if __name__ == '__main__':
    with app.app_context():
        exit_code = main()
        sys.exit(exit_code)
