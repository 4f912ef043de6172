"""
Seed data generator -- creates a two-tenant bookkeeping dataset.

Generates, per organization:
  - ~60 customers
  - ~400 invoices (unpaid / paid / draft / void)
  - one payment for every paid invoice

The ``customers``, ``invoices`` and ``payments`` tables (each carrying the
``organization_id`` tenant column) are created if missing and refilled on
every run, so the gateway can be tried against two tenants sharing tables.
Run:  python -m pipelines.seed.seed_data
"""
from __future__ import annotations

import random
from datetime import date, timedelta

from faker import Faker
from sqlalchemy import (
    Column,
    Date,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    create_engine,
)

from sql_gateway.core.config import get_settings

fake = Faker()
Faker.seed(42)
random.seed(42)

# ── Tunables ─────────────────────────────────────────────
NUM_ORGANIZATIONS = 2
CUSTOMERS_PER_ORG = 60
INVOICES_PER_ORG = 400

STATUSES = ["unpaid", "paid", "draft", "void"]
STATUS_WEIGHTS = [0.35, 0.45, 0.15, 0.05]
PAYMENT_METHODS = ["bank_transfer", "card", "cash", "cheque"]

DATE_START = date(2024, 1, 1)
DATE_RANGE_DAYS = 730

# ── Schema ───────────────────────────────────────────────
metadata = MetaData()

customers = Table(
    "customers", metadata,
    Column("id", Integer, primary_key=True),
    Column("organization_id", String(64), nullable=False, index=True),
    Column("name", String(200), nullable=False),
    Column("email", String(200)),
    Column("country", String(80)),
)

invoices = Table(
    "invoices", metadata,
    Column("id", Integer, primary_key=True),
    Column("organization_id", String(64), nullable=False, index=True),
    Column("customer_id", Integer, ForeignKey("customers.id"), nullable=False),
    Column("invoice_number", String(40), nullable=False),
    Column("issue_date", Date, nullable=False),
    Column("due_date", Date, nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("status", String(20), nullable=False),
)

payments = Table(
    "payments", metadata,
    Column("id", Integer, primary_key=True),
    Column("organization_id", String(64), nullable=False, index=True),
    Column("invoice_id", Integer, ForeignKey("invoices.id"), nullable=False),
    Column("paid_on", Date, nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("method", String(30), nullable=False),
)


def _rand_date() -> date:
    return DATE_START + timedelta(days=random.randint(0, DATE_RANGE_DAYS))


# ── Generators ───────────────────────────────────────────

def gen_organizations() -> list[str]:
    return [fake.uuid4() for _ in range(NUM_ORGANIZATIONS)]


def gen_customers(orgs: list[str]) -> list[dict]:
    rows = []
    cid = 1
    for org in orgs:
        for _ in range(CUSTOMERS_PER_ORG):
            rows.append({
                "id": cid,
                "organization_id": org,
                "name": fake.company(),
                "email": fake.company_email(),
                "country": fake.country(),
            })
            cid += 1
    return rows


def gen_invoices(customer_rows: list[dict]) -> tuple[list[dict], list[dict]]:
    """Returns (invoices, payments)."""
    by_org: dict[str, list[int]] = {}
    for c in customer_rows:
        by_org.setdefault(c["organization_id"], []).append(c["id"])

    invoice_rows: list[dict] = []
    payment_rows: list[dict] = []
    iid = 1
    for org, customer_ids in by_org.items():
        for n in range(1, INVOICES_PER_ORG + 1):
            issued = _rand_date()
            amount = round(random.uniform(20.0, 5000.0), 2)
            status = random.choices(STATUSES, weights=STATUS_WEIGHTS, k=1)[0]
            invoice_rows.append({
                "id": iid,
                "organization_id": org,
                "customer_id": random.choice(customer_ids),
                "invoice_number": f"INV-{n:05d}",
                "issue_date": issued,
                "due_date": issued + timedelta(days=30),
                "amount": amount,
                "status": status,
            })
            if status == "paid":
                payment_rows.append({
                    "id": len(payment_rows) + 1,
                    "organization_id": org,
                    "invoice_id": iid,
                    "paid_on": issued + timedelta(days=random.randint(0, 45)),
                    "amount": amount,
                    "method": random.choice(PAYMENT_METHODS),
                })
            iid += 1
    return invoice_rows, payment_rows


# ── Bulk insert helper ───────────────────────────────────

def _bulk_insert(engine, table: Table, rows: list[dict], batch_size: int = 2000):
    """Insert rows into *table* in executemany batches."""
    if not rows:
        return
    with engine.begin() as conn:
        for i in range(0, len(rows), batch_size):
            conn.execute(table.insert(), rows[i : i + batch_size])
    print(f"  ✓ {table.name}: {len(rows):,} rows")


# ── Main ─────────────────────────────────────────────────

def main():
    print("═══ Seed Data Generator ═══")
    engine = create_engine(get_settings().database_url, echo=False)

    metadata.create_all(engine)
    print("Clearing existing rows …")
    with engine.begin() as conn:
        for table in reversed(metadata.sorted_tables):
            conn.execute(table.delete())

    print("Generating data …")
    orgs = gen_organizations()
    customer_rows = gen_customers(orgs)
    invoice_rows, payment_rows = gen_invoices(customer_rows)

    print("Inserting …")
    _bulk_insert(engine, customers, customer_rows)
    _bulk_insert(engine, invoices, invoice_rows)
    _bulk_insert(engine, payments, payment_rows)

    print(f"\nDone -- seeded {len(orgs)} organizations, {len(customer_rows):,} customers, "
          f"{len(invoice_rows):,} invoices, {len(payment_rows):,} payments.")
    for org in orgs:
        print(f"  organization_id = {org}")


if __name__ == "__main__":
    main()
