"""Unit tests for remap_users.schema_graph (topological load order)."""

from __future__ import annotations

from remap_users.schema_graph import (
    SchemaForeignKey,
    SchemaTable,
    StaticSchemaGraph,
    topologically_sort,
)


def _t(name: str, schema: str = "public") -> SchemaTable:
    return SchemaTable(schema, name)


def _fk(source: SchemaTable, target: SchemaTable, column: str = "RefId", name: str | None = None) -> SchemaForeignKey:
    return SchemaForeignKey(
        name=name or f"fk_{source.name}_{target.name}_{column}",
        source_table=source,
        source_column=column,
        target_table=target,
        target_column="Id",
    )


def _names(tables: list[SchemaTable]) -> list[str]:
    return [t.name for t in tables]


# ---------------------------------------------------------------------------
# SchemaTable identity
# ---------------------------------------------------------------------------

class TestSchemaTable:
    def test_equality_is_case_insensitive(self):
        assert SchemaTable("Public", "User") == SchemaTable("public", "user")

    def test_hash_matches_equality(self):
        assert len({SchemaTable("dbo", "Order"), SchemaTable("DBO", "ORDER")}) == 1

    def test_qualified_name_keeps_original_case(self):
        assert SchemaTable("dbo", "OrderLine").qualified_name == "dbo.OrderLine"


# ---------------------------------------------------------------------------
# Topological sort
# ---------------------------------------------------------------------------

class TestTopologicalSort:
    def test_parents_before_children(self):
        user, order, line = _t("User"), _t("Order"), _t("OrderLine")
        fks = [_fk(order, user, "CreatedBy"), _fk(line, order, "OrderId")]
        result = topologically_sort([line, order, user], fks)
        assert _names(result) == ["User", "Order", "OrderLine"]

    def test_independent_tables_alphabetical(self):
        result = topologically_sort([_t("c"), _t("A"), _t("b")], [])
        assert _names(result) == ["A", "b", "c"]

    def test_schema_sorts_before_name(self):
        result = topologically_sort([_t("a", "zeta"), _t("z", "alpha")], [])
        assert [t.qualified_name for t in result] == ["alpha.z", "zeta.a"]

    def test_ready_tables_break_ties_alphabetically(self):
        root, b, a = _t("Root"), _t("B"), _t("A")
        fks = [_fk(b, root), _fk(a, root)]
        assert _names(topologically_sort([b, a, root], fks)) == ["Root", "A", "B"]

    def test_self_reference_ignored(self):
        user = _t("User")
        result = topologically_sort([user], [_fk(user, user, "ManagerId")])
        assert result == [user]

    def test_multi_column_fk_counts_once(self):
        parent, child = _t("Parent"), _t("Child")
        fks = [
            _fk(child, parent, "A", name="fk_multi"),
            _fk(child, parent, "B", name="fk_multi"),
        ]
        assert _names(topologically_sort([child, parent], fks)) == ["Parent", "Child"]

    def test_cycle_appended_alphabetically(self):
        a, b, c, root = _t("A"), _t("B"), _t("C"), _t("Root")
        fks = [_fk(b, c), _fk(c, b), _fk(a, root)]
        result = topologically_sort([c, b, a, root], fks)
        assert _names(result) == ["Root", "A", "B", "C"]

    def test_fk_to_unknown_table_ignored(self):
        a = _t("A")
        result = topologically_sort([a], [_fk(a, _t("Elsewhere"))])
        assert result == [a]

    def test_deterministic_across_input_orders(self):
        tables = [_t(n) for n in ("User", "Order", "OrderLine", "Audit", "Role")]
        fks = [
            _fk(tables[1], tables[0]),
            _fk(tables[2], tables[1]),
            _fk(tables[3], tables[0]),
            _fk(tables[0], tables[4]),
        ]
        first = topologically_sort(tables, fks)
        for _ in range(5):
            assert topologically_sort(list(reversed(tables)), list(reversed(fks))) == first

    def test_duplicate_tables_collapse(self):
        result = topologically_sort([_t("User"), _t("user")], [])
        assert len(result) == 1


class TestStaticSchemaGraph:
    def test_returns_copies(self):
        graph = StaticSchemaGraph([_t("A")])
        graph.get_tables().append(_t("B"))
        assert _names(graph.get_tables()) == ["A"]

    def test_sorted_tables(self):
        user, order = _t("User"), _t("Order")
        graph = StaticSchemaGraph([order, user], [_fk(order, user)])
        assert graph.get_topologically_sorted_tables() == [user, order]
