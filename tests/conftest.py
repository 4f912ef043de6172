"""
Shared fixtures -- in-memory SQLite bookkeeping database with two tenants.

SQLite has no session settings, so `tenant_connection` skips the PostgreSQL
context statements and isolation rests entirely on the rewritten SQL, which
is exactly what these tests want to observe.
"""
import pytest
from sqlalchemy import Column, Float, ForeignKey, Integer, MetaData, String, Table, create_engine, event, text
from sqlalchemy.pool import StaticPool

from sql_gateway.core.config import Settings
from sql_gateway.core.context import TenantContext
from sql_gateway.gateway.service import SqlGateway
from sql_gateway.governance.policy_loader import parse_policy

TENANT_A = "org-a"
TENANT_B = "org-b"

POLICY_YAML = {
    "version": 1,
    "tenancy": {
        "tenant_column": "organization_id",
        "partitioned_tables": ["customers", "invoices", "payments", "v_customer_revenue", "v_kpi_dashboard"],
    },
    "security": {"blocked_schemas": ["pg_catalog", "information_schema"]},
    "permissions": {
        "viewer": {"allowed_operations": ["read", "schema_info"]},
        "member": {"allowed_operations": ["read", "write", "schema_info"]},
        "admin": {"allowed_operations": "*"},
    },
    "schema_context": {
        "common_tables": ["customers", "invoices"],
        "intents": {
            "payment": ["payments", "invoices"],
            "customer": ["customers"],
        },
        "descriptions": {"invoices": "Sales invoices issued to customers"},
        "views": {
            "descriptions": {"v_customer_revenue": "Invoiced revenue per customer"},
        },
    },
}

CUSTOMERS = [
    {"id": 1, "organization_id": TENANT_A, "name": "Acme Ltd"},
    {"id": 2, "organization_id": TENANT_A, "name": "Bolt & Co"},
    {"id": 3, "organization_id": TENANT_B, "name": "Cobalt GmbH"},
]

# tenant A: 2 unpaid, 1 paid, 1 draft -- tenant B: 2 unpaid, 1 paid, 1 draft
INVOICES = [
    {"id": 1, "organization_id": TENANT_A, "customer_id": 1, "amount": 100.0, "status": "unpaid"},
    {"id": 2, "organization_id": TENANT_A, "customer_id": 1, "amount": 250.0, "status": "paid"},
    {"id": 3, "organization_id": TENANT_A, "customer_id": 2, "amount": 75.0, "status": "unpaid"},
    {"id": 4, "organization_id": TENANT_A, "customer_id": 2, "amount": 20.0, "status": "draft"},
    {"id": 5, "organization_id": TENANT_B, "customer_id": 3, "amount": 900.0, "status": "unpaid"},
    {"id": 6, "organization_id": TENANT_B, "customer_id": 3, "amount": 40.0, "status": "draft"},
    {"id": 7, "organization_id": TENANT_B, "customer_id": 3, "amount": 10.0, "status": "paid"},
    {"id": 123, "organization_id": TENANT_B, "customer_id": 3, "amount": 55.0, "status": "unpaid"},
]

PAYMENTS = [
    {"id": 1, "organization_id": TENANT_A, "invoice_id": 2, "amount": 250.0},
    {"id": 2, "organization_id": TENANT_B, "invoice_id": 7, "amount": 10.0},
]

# tenant-carrying reporting views plus one unpartitioned lookup view
VIEWS = [
    "CREATE VIEW v_customer_revenue AS SELECT organization_id, customer_id, SUM(amount) AS revenue "
    "FROM invoices GROUP BY organization_id, customer_id",
    "CREATE VIEW v_kpi_dashboard AS SELECT organization_id, COUNT(*) AS invoice_count, "
    "SUM(amount) AS invoiced FROM invoices GROUP BY organization_id",
    "CREATE VIEW v_currency_names AS SELECT code, name FROM currencies",
]


class RecordingAuditSink:
    """Audit sink that keeps entries in memory."""

    def __init__(self):
        self.entries = []

    def record(self, entry):
        self.entries.append(entry)


def _schema(metadata: MetaData) -> None:
    Table(
        "customers", metadata,
        Column("id", Integer, primary_key=True),
        Column("organization_id", String(64), nullable=False),
        Column("name", String(200), nullable=False),
    )
    Table(
        "invoices", metadata,
        Column("id", Integer, primary_key=True),
        Column("organization_id", String(64), nullable=False),
        Column("customer_id", Integer, ForeignKey("customers.id")),
        Column("amount", Float, nullable=False),
        Column("status", String(20), nullable=False),
    )
    Table(
        "payments", metadata,
        Column("id", Integer, primary_key=True),
        Column("organization_id", String(64), nullable=False),
        Column("invoice_id", Integer, ForeignKey("invoices.id")),
        Column("amount", Float, nullable=False),
    )
    Table(
        "currencies", metadata,
        Column("code", String(3), primary_key=True),
        Column("name", String(50)),
    )


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    metadata = MetaData()
    _schema(metadata)
    metadata.create_all(eng)
    with eng.begin() as conn:
        conn.execute(metadata.tables["customers"].insert(), CUSTOMERS)
        conn.execute(metadata.tables["invoices"].insert(), INVOICES)
        conn.execute(metadata.tables["payments"].insert(), PAYMENTS)
        conn.execute(
            metadata.tables["currencies"].insert(),
            [{"code": "EUR", "name": "Euro"}, {"code": "USD", "name": "US Dollar"}],
        )
        for ddl in VIEWS:
            conn.execute(text(ddl))
    yield eng
    eng.dispose()


@pytest.fixture
def executed_sql(engine):
    """Every SQL string the engine sends to the driver."""
    seen = []

    def _capture(conn, cursor, statement, parameters, context, executemany):
        seen.append(statement)

    event.listen(engine, "before_cursor_execute", _capture)
    yield seen
    event.remove(engine, "before_cursor_execute", _capture)


@pytest.fixture
def policy():
    return parse_policy(POLICY_YAML)


@pytest.fixture
def settings():
    return Settings(audit_backend="log", sql_row_limit=50, confirmation_ttl_seconds=60)


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def ctx_a():
    return TenantContext(tenant_id=TENANT_A, actor_id="user-a1", permission_level="member")


@pytest.fixture
def ctx_b():
    return TenantContext(tenant_id=TENANT_B, actor_id="user-b1", permission_level="member")


@pytest.fixture
def gateway(engine, policy, settings, audit_sink):
    return SqlGateway(engine=engine, policy=policy, settings=settings, audit_sink=audit_sink)
