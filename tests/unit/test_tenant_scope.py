"""
Unit tests -- tenant-scope rewriter.
"""
import pytest
from sqlalchemy import text

from sql_gateway.core.context import OperationKind
from sql_gateway.governance.classifier import classify_statement
from sql_gateway.governance.tenant_scope import TenantScopeError, rewrite_for_tenant
from sql_gateway.governance.violations import RejectionReason

PARTITIONED = {"customers", "invoices", "payments"}
PRED = "organization_id = :tenant_id"


def _rewrite(sql, op=OperationKind.READ, tenant="org-a"):
    stmt, violations = classify_statement(sql, op)
    assert violations == [], violations
    return rewrite_for_tenant(stmt, tenant, PARTITIONED)


def _write(sql, tenant="org-a"):
    return _rewrite(sql, OperationKind.WRITE, tenant)


def _scope_error(sql, op=OperationKind.WRITE):
    with pytest.raises(TenantScopeError) as exc_info:
        _rewrite(sql, op)
    return exc_info.value.violation


# ── SELECT ──────────────────────────────────────────────


def test_select_without_where_gets_one():
    out = _rewrite("SELECT * FROM invoices")
    assert out.sql == "SELECT * FROM invoices WHERE invoices.organization_id = :tenant_id"
    assert out.params == {"tenant_id": "org-a"}
    assert out.tables_scoped == ("invoices",)
    assert out.predicates_added == 1


def test_existing_where_is_wrapped():
    out = _rewrite("SELECT id FROM invoices WHERE status = 'paid' OR amount > 100")
    assert out.sql == (
        "SELECT id FROM invoices WHERE invoices.organization_id = :tenant_id "
        "AND (status = 'paid' OR amount > 100)"
    )


def test_alias_is_used_as_qualifier():
    out = _rewrite("SELECT i.id FROM invoices AS i WHERE i.status = 'unpaid'")
    assert "WHERE i.organization_id = :tenant_id AND (i.status = 'unpaid')" in out.sql


def test_where_synthesised_before_group_by():
    out = _rewrite("SELECT status, COUNT(*) FROM invoices GROUP BY status")
    assert out.sql == (
        "SELECT status, COUNT(*) FROM invoices "
        "WHERE invoices.organization_id = :tenant_id GROUP BY status"
    )


def test_where_region_ends_before_order_by():
    out = _rewrite("SELECT * FROM invoices WHERE status = 'paid' ORDER BY id LIMIT 5")
    assert out.sql.endswith("AND (status = 'paid') ORDER BY id LIMIT 5")


def test_inner_join_scoped_in_on_clause():
    out = _rewrite(
        "SELECT i.id, c.name FROM invoices i JOIN customers c ON c.id = i.customer_id "
        "WHERE i.status = 'unpaid' ORDER BY i.id LIMIT 10"
    )
    assert out.sql == (
        "SELECT i.id, c.name FROM invoices i JOIN customers c "
        "ON c.organization_id = :tenant_id AND (c.id = i.customer_id) "
        "WHERE i.organization_id = :tenant_id AND (i.status = 'unpaid') ORDER BY i.id LIMIT 10"
    )
    assert set(out.tables_scoped) == {"invoices", "customers"}
    assert out.predicates_added == 2


def test_left_join_keeps_outer_rows():
    out = _rewrite(
        "SELECT c.name, p.amount FROM customers c LEFT JOIN payments p ON p.organization_id = c.organization_id"
    )
    # tenant column comparison against another column is not a tenant predicate
    assert "ON p.organization_id = :tenant_id AND (p.organization_id = c.organization_id)" in out.sql
    assert out.sql.endswith("WHERE c.organization_id = :tenant_id")


def test_right_join_scoped_in_where():
    out = _rewrite("SELECT * FROM invoices i RIGHT JOIN customers c ON c.id = i.customer_id")
    assert "ON c.id = i.customer_id" in out.sql
    assert out.sql.endswith("WHERE i.organization_id = :tenant_id AND c.organization_id = :tenant_id")


def test_comma_join_scopes_every_table():
    out = _rewrite("SELECT * FROM invoices i, customers c WHERE c.id = i.customer_id")
    assert (
        "WHERE i.organization_id = :tenant_id AND c.organization_id = :tenant_id AND (c.id = i.customer_id)"
        in out.sql
    )


def test_subquery_is_scoped():
    out = _rewrite("SELECT * FROM customers WHERE id IN (SELECT customer_id FROM invoices)")
    assert out.sql == (
        "SELECT * FROM customers WHERE customers.organization_id = :tenant_id AND "
        "(id IN (SELECT customer_id FROM invoices WHERE invoices.organization_id = :tenant_id))"
    )


def test_derived_table_is_scoped():
    out = _rewrite("SELECT t.total FROM (SELECT SUM(amount) AS total FROM payments) AS t")
    assert "FROM payments WHERE payments.organization_id = :tenant_id) AS t" in out.sql


def test_cte_body_scoped_and_cte_name_skipped():
    out = _rewrite("WITH recent AS (SELECT * FROM invoices WHERE amount > 10) SELECT * FROM recent")
    assert out.sql == (
        "WITH recent AS (SELECT * FROM invoices WHERE invoices.organization_id = :tenant_id "
        "AND (amount > 10)) SELECT * FROM recent"
    )
    assert out.tables_scoped == ("invoices",)


def test_cte_beside_partitioned_table_scopes_both():
    out = _rewrite(
        "WITH recent AS (SELECT id FROM payments) "
        "SELECT * FROM invoices WHERE id IN (SELECT id FROM recent)"
    )
    assert out.sql == (
        "WITH recent AS (SELECT id FROM payments WHERE payments.organization_id = :tenant_id) "
        "SELECT * FROM invoices WHERE invoices.organization_id = :tenant_id "
        "AND (id IN (SELECT id FROM recent))"
    )
    assert out.tables_scoped == ("payments", "invoices")


@pytest.mark.parametrize("sql", [
    "WITH invoices AS (SELECT 1 AS id) SELECT * FROM invoices",
    "SELECT id FROM invoices WHERE id IN (WITH invoices AS (SELECT 5 AS id) SELECT id FROM invoices) OR id > 0",
    'WITH "Payments" AS (SELECT 1 AS id) SELECT * FROM customers',
    "WITH recent AS (SELECT 1), customers AS (SELECT 2) SELECT * FROM recent",
])
def test_cte_shadowing_partitioned_table_rejected(sql):
    violation = _scope_error(sql, OperationKind.READ)
    assert violation.reason is RejectionReason.STRUCTURAL_INVALID
    assert "shadows" in violation.message


def test_update_with_shadowing_cte_in_set_rejected():
    violation = _scope_error(
        "UPDATE invoices SET status = (WITH invoices AS (SELECT 'paid' AS s) SELECT s FROM invoices) "
        "WHERE status = 'unpaid'"
    )
    assert violation.reason is RejectionReason.STRUCTURAL_INVALID


def test_update_target_scoped_beside_nested_cte():
    out = _write(
        "UPDATE invoices SET status = (WITH s AS (SELECT 'paid' AS v) SELECT v FROM s) "
        "WHERE status = 'unpaid'"
    )
    assert out.sql == (
        "UPDATE invoices SET status = (WITH s AS (SELECT 'paid' AS v) SELECT v FROM s) "
        "WHERE invoices.organization_id = :tenant_id AND (status = 'unpaid')"
    )
    assert out.predicates_added == 1


# ── TABLE row sources ───────────────────────────────────


@pytest.mark.parametrize("sql", [
    "SELECT code FROM currencies WHERE EXISTS (TABLE invoices)",
    "SELECT code FROM currencies WHERE (1, 'org-b', 1, 5.0, 'paid') IN (TABLE invoices)",
    "SELECT code FROM currencies WHERE EXISTS (TABLE ONLY public.payments)",
])
def test_table_row_source_on_partitioned_table_rejected(sql):
    violation = _scope_error(sql, OperationKind.READ)
    assert violation.reason is RejectionReason.FORBIDDEN_OPERATION
    assert violation.category == "unscoped_row_source"


def test_table_row_source_on_unpartitioned_table_allowed():
    out = _rewrite("SELECT code FROM currencies WHERE EXISTS (TABLE currencies)")
    assert out.sql == "SELECT code FROM currencies WHERE EXISTS (TABLE currencies)"
    assert out.predicates_added == 0


def test_schema_qualified_table():
    out = _rewrite("SELECT * FROM public.invoices")
    assert out.sql.endswith("WHERE public.invoices.organization_id = :tenant_id")


def test_unpartitioned_table_untouched():
    out = _rewrite("SELECT * FROM currencies")
    assert out.sql == "SELECT * FROM currencies"
    assert out.params == {}
    assert out.predicates_added == 0


def test_select_without_from_untouched():
    assert _rewrite("SELECT 1").sql == "SELECT 1"


def test_parenthesised_join_group_rejected():
    violation = _scope_error(
        "SELECT * FROM (invoices i JOIN customers c ON c.id = i.customer_id)", OperationKind.READ
    )
    assert violation.reason is RejectionReason.STRUCTURAL_INVALID


def test_tenant_id_is_never_spliced():
    out = _rewrite("SELECT * FROM invoices", tenant="evil' OR '1'='1")
    assert "evil" not in out.sql
    assert out.params == {"tenant_id": "evil' OR '1'='1"}


# ── Idempotence ─────────────────────────────────────────


@pytest.mark.parametrize("sql", [
    "SELECT * FROM invoices",
    "SELECT id FROM invoices WHERE status = 'paid' OR amount > 100",
    "SELECT i.id, c.name FROM invoices i JOIN customers c ON c.id = i.customer_id WHERE i.status = 'x'",
    "SELECT * FROM customers WHERE id IN (SELECT customer_id FROM invoices)",
    "SELECT status, COUNT(*) FROM invoices GROUP BY status",
])
def test_rewrite_is_idempotent(sql):
    once = _rewrite(sql)
    twice = _rewrite(once.sql)
    assert twice.sql == once.sql
    assert twice.predicates_added == 0
    assert twice.params == {"tenant_id": "org-a"}


def test_own_tenant_literal_counts_as_scoped():
    out = _rewrite("SELECT * FROM invoices WHERE organization_id = 'org-a' AND status = 'paid'")
    assert out.predicates_added == 0
    assert out.sql == "SELECT * FROM invoices WHERE organization_id = 'org-a' AND status = 'paid'"


def test_foreign_tenant_literal_is_still_scoped():
    out = _rewrite("SELECT * FROM invoices WHERE organization_id = 'org-b'")
    assert out.predicates_added == 1
    assert "invoices.organization_id = :tenant_id AND (organization_id = 'org-b')" in out.sql


def test_tenant_predicate_under_or_does_not_count():
    out = _rewrite("SELECT * FROM invoices WHERE organization_id = :tenant_id OR status = 'paid'")
    assert out.predicates_added == 1


# ── Bind markers ────────────────────────────────────────


def test_only_tenant_marker_is_a_bind_parameter():
    out = _rewrite("SELECT * FROM invoices WHERE status = :status AND note = 'at 10:30 :x'")
    assert "\\:status" in out.sql
    assert "\\:x" in out.sql
    assert set(text(out.sql).compile().binds) == {"tenant_id"}


def test_casts_are_left_alone():
    out = _rewrite("SELECT amount::text FROM invoices")
    assert "amount::text" in out.sql


# ── UPDATE / DELETE ─────────────────────────────────────


def test_update_scoped_in_where():
    out = _write("UPDATE invoices SET status = 'void' WHERE id = 3")
    assert out.sql == (
        "UPDATE invoices SET status = 'void' WHERE invoices.organization_id = :tenant_id AND (id = 3)"
    )


def test_update_returning():
    out = _write("UPDATE invoices SET status = 'void' WHERE id = 3 RETURNING id")
    assert out.sql.endswith("AND (id = 3) RETURNING id")


def test_delete_scoped_in_where():
    out = _write("DELETE FROM invoices WHERE status = 'draft'")
    assert out.sql == (
        "DELETE FROM invoices WHERE invoices.organization_id = :tenant_id AND (status = 'draft')"
    )


def test_delete_using_scopes_both_tables():
    out = _write("DELETE FROM payments p USING invoices i WHERE p.invoice_id = i.id AND i.status = 'void'")
    assert "p.organization_id = :tenant_id AND i.organization_id = :tenant_id AND (" in out.sql


def test_update_moving_rows_to_other_tenant_rejected():
    violation = _scope_error("UPDATE invoices SET organization_id = 'org-b' WHERE id = 1")
    assert violation.reason is RejectionReason.FORBIDDEN_OPERATION
    assert violation.category == "cross_tenant_write"


def test_update_setting_own_tenant_allowed():
    out = _write("UPDATE invoices SET organization_id = 'org-a', status = 'x' WHERE id = 1")
    assert out.predicates_added == 1


def test_tuple_assignment_to_tenant_column_rejected():
    violation = _scope_error("UPDATE invoices SET (organization_id, status) = ('org-a', 'x') WHERE id = 1")
    assert violation.category == "cross_tenant_write"


def test_subquery_value_in_set_is_scoped():
    out = _write(
        "UPDATE invoices SET amount = (SELECT SUM(amount) FROM payments WHERE invoice_id = 1) WHERE id = 1"
    )
    assert "FROM payments WHERE payments.organization_id = :tenant_id AND (invoice_id = 1))" in out.sql
    assert set(out.tables_scoped) == {"invoices", "payments"}


# ── INSERT ──────────────────────────────────────────────


def test_insert_values_gets_tenant_column():
    out = _write("INSERT INTO invoices (id, customer_id, amount, status) VALUES (10, 1, 99.5, 'draft')")
    assert out.sql == (
        "INSERT INTO invoices (id, customer_id, amount, status, organization_id) "
        "VALUES (10, 1, 99.5, 'draft', :tenant_id)"
    )
    assert out.params == {"tenant_id": "org-a"}


def test_insert_multi_row_values():
    out = _write("INSERT INTO invoices (id, amount) VALUES (10, 1), (11, 2)")
    assert out.sql.endswith("VALUES (10, 1, :tenant_id), (11, 2, :tenant_id)")


def test_insert_with_own_tenant_value_kept():
    sql = "INSERT INTO invoices (id, organization_id) VALUES (11, 'org-a')"
    out = _write(sql)
    assert out.sql == sql
    assert out.tables_scoped == ("invoices",)


def test_insert_for_other_tenant_rejected():
    violation = _scope_error("INSERT INTO invoices (id, organization_id) VALUES (11, 'org-b')")
    assert violation.reason is RejectionReason.FORBIDDEN_OPERATION
    assert violation.category == "cross_tenant_write"


def test_insert_without_column_list_rejected():
    violation = _scope_error("INSERT INTO invoices VALUES (1, 'org-a', 1, 5, 'draft')")
    assert violation.reason is RejectionReason.STRUCTURAL_INVALID


def test_insert_select_projection_and_source_scoped():
    out = _write(
        "INSERT INTO invoices (id, customer_id, amount, status) "
        "SELECT id + 100, customer_id, amount, 'copy' FROM invoices WHERE status = 'draft'"
    )
    assert out.sql == (
        "INSERT INTO invoices (id, customer_id, amount, status, organization_id) "
        "SELECT id + 100, customer_id, amount, 'copy', :tenant_id FROM invoices "
        "WHERE invoices.organization_id = :tenant_id AND (status = 'draft')"
    )


def test_insert_select_copying_foreign_tenant_column_rejected():
    violation = _scope_error(
        "INSERT INTO invoices (id, organization_id) SELECT id, organization_id FROM invoices WHERE id = 5"
    )
    assert violation.category == "cross_tenant_write"


def test_upsert_do_update_is_scoped():
    out = _write(
        "INSERT INTO customers (id, name) VALUES (1, 'Acme') "
        "ON CONFLICT (id) DO UPDATE SET name = excluded.name"
    )
    assert out.sql.endswith("DO UPDATE SET name = excluded.name WHERE customers.organization_id = :tenant_id")


def test_insert_into_unpartitioned_table_untouched():
    sql = "INSERT INTO currencies (code, name) VALUES ('GBP', 'Pound')"
    assert _write(sql).sql == sql
