"""
Unit tests -- schema introspection and its cache.
"""
import pytest
from sqlalchemy import text

from sql_gateway.db.schema_introspector import SchemaIntrospector, infer_relationship_type
from sql_gateway.gateway.cache import SchemaCache


@pytest.fixture
def introspector(engine, policy):
    return SchemaIntrospector(engine, policy, SchemaCache(ttl=60))


def test_infer_relationship_type():
    assert infer_relationship_type("invoice_lines", "invoices") == "many-to-one"
    assert infer_relationship_type("invoices", "invoice_lines") == "one-to-many"
    assert infer_relationship_type("invoices", "customers") == "many-to-one"


def test_resolve_tables(introspector):
    assert introspector.resolve_tables(["Invoices"]) == ["invoices"]
    assert introspector.resolve_tables(None, "customer list") == ["customers"]
    assert introspector.resolve_tables() == ["customers", "invoices"]


def test_table_schema_columns(introspector):
    schema = introspector.table_schema("invoices")
    cols = {c.name: c for c in schema.columns}
    assert set(cols) == {"id", "organization_id", "customer_id", "amount", "status"}
    assert cols["id"].is_primary_key
    assert cols["customer_id"].is_foreign_key
    assert cols["organization_id"].nullable is False
    assert schema.description == "Sales invoices issued to customers"
    assert schema.tenant_partitioned is True


def test_relationships_both_directions(introspector):
    rels = introspector.table_schema("invoices").relationships
    outgoing = [r for r in rels if r.to_table == "customers"]
    incoming = [r for r in rels if r.to_table == "payments"]
    assert outgoing[0].from_column == "customer_id"
    assert outgoing[0].type == "many-to-one"
    assert incoming[0].type == "one-to-many"
    assert incoming[0].to_column == "invoice_id"


def test_relationships_can_be_skipped(introspector):
    assert introspector.table_schema("invoices", include_relationships=False).relationships == []


def test_unknown_tables_skipped(introspector):
    result = introspector.schema_info(["invoices", "ghosts"])
    assert [t.table_name for t in result] == ["invoices"]


def test_unpartitioned_table_flag(introspector):
    assert introspector.table_schema("currencies").tenant_partitioned is False


def test_schema_is_cached(introspector):
    introspector.table_schema("invoices")
    loads = introspector.cache.stats()["loads"]
    introspector.table_schema("invoices")
    assert introspector.cache.stats()["loads"] == loads
    assert introspector.cache.stats()["hits"] >= 1


def test_minimal_schema(introspector):
    out = introspector.minimal_schema(["customers", "ghosts"])
    assert out.startswith("customers(")
    assert "name:varchar(200)" in out
    assert "ghosts" not in out


# ── Semantic views ──────────────────────────────────────


def test_list_views(introspector):
    views = {v.name: v for v in introspector.list_views()}
    assert list(views) == ["v_currency_names", "v_customer_revenue", "v_kpi_dashboard"]
    assert views["v_customer_revenue"].domain == "crm"
    assert views["v_customer_revenue"].description == "Invoiced revenue per customer"
    assert views["v_kpi_dashboard"].domain == "analytics"
    assert views["v_kpi_dashboard"].description == "Semantic view: v_kpi_dashboard"
    assert views["v_currency_names"].domain == "general"


@pytest.mark.parametrize("domain, expected", [
    ("crm", ["v_customer_revenue"]),
    ("Analytics", ["v_kpi_dashboard"]),
    ("revenue", ["v_customer_revenue"]),
    ("general", ["v_currency_names"]),
    ("finance", []),
])
def test_list_views_by_domain(introspector, domain, expected):
    assert [v.name for v in introspector.list_views(domain)] == expected


def test_view_names_are_cached(introspector, engine):
    introspector.list_views()
    with engine.begin() as conn:
        conn.execute(text("CREATE VIEW v_order_pipeline AS SELECT id, status FROM invoices"))
    assert "v_order_pipeline" not in [v.name for v in introspector.list_views()]
    introspector.cache.invalidate()
    views = {v.name: v for v in introspector.list_views()}
    assert views["v_order_pipeline"].domain == "sales"
