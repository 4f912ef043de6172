"""
Schema introspection for the agent's context.

Tables come from the caller's explicit list, from the intent → table hints
in the gateway policy, or from the policy's common tables.  Columns, keys and
foreign-key relationships are read through SQLAlchemy's inspector and cached
in a `SchemaCache` owned by the introspector.

Semantic reporting views are listed from the policy's view schema, each with
its policy description and a domain inferred from its name.
"""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy import inspect
from sqlalchemy.engine import Engine

from sql_gateway.core.logging import get_logger
from sql_gateway.gateway.cache import SchemaCache
from sql_gateway.governance.policy_loader import GatewayPolicy

logger = get_logger(__name__)

_FK_GRAPH_KEY = "__foreign_keys__"


class ColumnInfo(BaseModel):
    name: str
    type: str
    nullable: bool = True
    default: str | None = None
    is_primary_key: bool = False
    is_foreign_key: bool = False


class Relationship(BaseModel):
    from_table: str
    from_column: str
    to_table: str
    to_column: str
    type: str = "many-to-one"


class TableSchema(BaseModel):
    table_name: str
    description: str = ""
    columns: list[ColumnInfo] = Field(default_factory=list)
    relationships: list[Relationship] = Field(default_factory=list)
    tenant_partitioned: bool = False


class ViewInfo(BaseModel):
    name: str
    description: str = ""
    domain: str = "general"


def infer_relationship_type(from_table: str, to_table: str) -> str:
    """Line-item tables point many-to-one at their parent."""
    if "_lines" in from_table or "_items" in from_table:
        return "many-to-one"
    if "_lines" in to_table or "_items" in to_table:
        return "one-to-many"
    return "many-to-one"


class SchemaIntrospector:
    def __init__(self, engine: Engine, policy: GatewayPolicy, cache: SchemaCache | None = None):
        self._engine = engine
        self._policy = policy
        self._cache = cache or SchemaCache()

    @property
    def cache(self) -> SchemaCache:
        return self._cache

    # ── Public API ──────────────────────────────────────

    def resolve_tables(self, tables: list[str] | None = None, intent: str | None = None) -> list[str]:
        if tables:
            return [t.lower() for t in tables]
        return self._policy.tables_for_intent(intent)

    def schema_info(
        self,
        tables: list[str] | None = None,
        intent: str | None = None,
        include_relationships: bool = True,
    ) -> list[TableSchema]:
        """Describe the requested tables; unknown tables are skipped."""
        names = self.resolve_tables(tables, intent)
        known = set(self._table_names())
        out: list[TableSchema] = []
        for name in names:
            if name not in known:
                logger.debug("Schema info: unknown table %s skipped", name)
                continue
            out.append(self.table_schema(name, include_relationships))
        return out

    def table_schema(self, table: str, include_relationships: bool = True) -> TableSchema:
        key = f"{table}|rel={include_relationships}"
        return self._cache.get_or_load(key, lambda: self._load_table(table, include_relationships))

    def minimal_schema(self, tables: list[str]) -> str:
        """Compact ``table(col:type?, ...)`` lines for prompt context."""
        known = set(self._table_names())
        lines: list[str] = []
        for name in (t.lower() for t in tables):
            if name not in known:
                continue
            schema = self.table_schema(name, include_relationships=False)
            cols = ", ".join(f"{c.name}:{c.type}{'?' if c.nullable else ''}" for c in schema.columns)
            lines.append(f"{schema.table_name}({cols})")
        return "\n".join(lines)

    def list_views(self, domain: str | None = None) -> list[ViewInfo]:
        """Views in the policy's view schema, optionally narrowed to one domain.

        A view matches *domain* when its inferred domain equals it or its name
        contains it (so ``aging`` finds both aging reports).
        """
        rules = self._policy.views
        wanted = domain.strip().lower() if domain else None
        out: list[ViewInfo] = []
        for name in sorted(self._view_names()):
            inferred = rules.infer_domain(name)
            if wanted and wanted != inferred and wanted not in name.lower():
                continue
            out.append(
                ViewInfo(
                    name=name,
                    description=rules.descriptions.get(name.lower(), f"Semantic view: {name}"),
                    domain=inferred,
                )
            )
        return out

    # ── Internals ───────────────────────────────────────

    def _table_names(self) -> list[str]:
        return self._cache.get_or_load("__tables__", lambda: inspect(self._engine).get_table_names())

    def _view_names(self) -> list[str]:
        schema = self._policy.views.schema
        return self._cache.get_or_load(
            f"__views__|{schema or ''}",
            lambda: inspect(self._engine).get_view_names(schema=schema),
        )

    def _foreign_keys(self) -> list[Relationship]:
        def load() -> list[Relationship]:
            insp = inspect(self._engine)
            rels: list[Relationship] = []
            for table in insp.get_table_names():
                for fk in insp.get_foreign_keys(table):
                    for src, dst in zip(fk["constrained_columns"], fk["referred_columns"]):
                        rels.append(
                            Relationship(
                                from_table=table,
                                from_column=src,
                                to_table=fk["referred_table"],
                                to_column=dst,
                                type=infer_relationship_type(table, fk["referred_table"]),
                            )
                        )
            return rels

        return self._cache.get_or_load(_FK_GRAPH_KEY, load)

    def _load_table(self, table: str, include_relationships: bool) -> TableSchema:
        insp = inspect(self._engine)
        pk = set((insp.get_pk_constraint(table) or {}).get("constrained_columns") or [])
        fks = self._foreign_keys()
        fk_cols = {r.from_column for r in fks if r.from_table == table}

        columns = [
            ColumnInfo(
                name=col["name"],
                type=str(col["type"]).lower(),
                nullable=bool(col.get("nullable", True)),
                default=_default_text(col.get("default")),
                is_primary_key=col["name"] in pk,
                is_foreign_key=col["name"] in fk_cols,
            )
            for col in insp.get_columns(table)
        ]

        relationships: list[Relationship] = []
        if include_relationships:
            for r in fks:
                if r.from_table == table:
                    relationships.append(r)
                elif r.to_table == table:
                    relationships.append(
                        Relationship(
                            from_table=table,
                            from_column=r.to_column,
                            to_table=r.from_table,
                            to_column=r.from_column,
                            type="one-to-many",
                        )
                    )

        logger.info("Introspected %s (%d columns, %d relationships)", table, len(columns), len(relationships))
        return TableSchema(
            table_name=table,
            description=self._policy.describe(table),
            columns=columns,
            relationships=relationships,
            tenant_partitioned=self._policy.is_partitioned(table),
        )


def _default_text(value: Any) -> str | None:
    return None if value is None else str(value)
