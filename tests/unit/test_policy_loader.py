"""
Unit tests -- gateway policy loading and look-ups.
"""
from sql_gateway.core.context import OperationKind
from sql_gateway.governance.policy_loader import GatewayPolicy, load_policy, parse_policy


def test_shipped_policy_loads():
    policy = load_policy()
    assert isinstance(policy, GatewayPolicy)
    assert policy.tenant_column == "organization_id"
    assert policy.is_partitioned("invoices")
    assert policy.is_partitioned("Customers")
    assert "pg_catalog" in policy.blocked_schemas


def test_shipped_policy_permissions():
    policy = load_policy()
    assert policy.permissions["viewer"].allows(OperationKind.READ)
    assert not policy.permissions["viewer"].allows(OperationKind.WRITE)
    assert policy.permissions["admin"].wildcard


def test_load_policy_is_cached():
    assert load_policy() is load_policy()


def test_parse_empty_policy_defaults():
    policy = parse_policy(None)
    assert policy.tenant_column == "organization_id"
    assert policy.partitioned_tables == frozenset()
    assert policy.permissions == {}
    assert policy.blocked_schemas == ("pg_catalog", "information_schema")


def test_parse_lowercases_names():
    policy = parse_policy({
        "tenancy": {"tenant_column": "Tenant_ID", "partitioned_tables": ["Orders"]},
        "security": {"blocked_schemas": ["AUTH"]},
    })
    assert policy.tenant_column == "tenant_id"
    assert policy.partitioned_tables == frozenset({"orders"})
    assert policy.blocked_schemas == ("auth",)


def test_describe_falls_back(policy):
    assert policy.describe("invoices") == "Sales invoices issued to customers"
    assert policy.describe("widgets") == "Table containing widgets data"


def test_tables_for_intent(policy):
    assert policy.tables_for_intent("Show me payment history") == ["payments", "invoices"]
    assert policy.tables_for_intent("top customer by payment") == ["payments", "invoices", "customers"]


def test_tables_for_intent_falls_back_to_common_tables(policy):
    assert policy.tables_for_intent(None) == ["customers", "invoices"]
    assert policy.tables_for_intent("weather forecast") == ["customers", "invoices"]


def test_view_domain_inference():
    views = parse_policy({}).views
    assert views.infer_domain("v_balance_sheet") == "finance"
    assert views.infer_domain("v_cash_flow_statement") == "finance"
    assert views.infer_domain("v_inventory_status") == "inventory"
    assert views.infer_domain("v_order_pipeline") == "sales"
    assert views.infer_domain("v_customer_revenue") == "crm"
    assert views.infer_domain("v_financial_ratios") == "analytics"
    assert views.infer_domain("v_ar_aging_report") == "general"


def test_view_domains_follow_policy_order():
    views = parse_policy({
        "schema_context": {"views": {"domains": {"Receivables": ["aging"], "crm": ["customer"]}}},
    }).views
    assert views.infer_domain("v_customer_aging") == "receivables"
    assert views.infer_domain("v_balance_sheet") == "general"


def test_shipped_policy_views():
    policy = load_policy()
    assert policy.views.schema == "semantic"
    assert policy.views.descriptions["v_ar_aging_report"] == "Accounts receivable aging report"
    assert policy.is_partitioned("v_kpi_dashboard")
