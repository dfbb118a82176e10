from layoffs.catalog import (
    count_rows,
    count_rows_display,
    list_tables,
    list_views,
    quote_ident,
    relation_exists,
    table_exists,
    view_exists,
)


class TestCatalog:
    def test_list_tables_and_views(self, conn):
        conn.execute("CREATE TABLE b_table AS SELECT 1 AS x")
        conn.execute("CREATE VIEW a_view AS SELECT 1 AS x")
        assert "b_table" in list_tables(conn)
        assert "a_view" in list_views(conn)
        assert "a_view" not in list_tables(conn)

    def test_internal_tables_excluded_by_prefix(self, conn):
        conn.execute("CREATE TABLE layoffs_clean AS SELECT 1 AS x")
        assert "_trace" in list_tables(conn)
        assert list_tables(conn, exclude_prefixes=("_",)) == ["layoffs_clean"]

    def test_exists(self, conn):
        conn.execute("CREATE TABLE t AS SELECT 1 AS x")
        conn.execute("CREATE VIEW v AS SELECT 1 AS x")
        assert table_exists(conn, "t") and not view_exists(conn, "t")
        assert view_exists(conn, "v") and not table_exists(conn, "v")
        assert relation_exists(conn, "t") and relation_exists(conn, "v")
        assert not relation_exists(conn, "nope")

    def test_count_rows(self, conn):
        conn.execute("CREATE TABLE t AS SELECT * FROM range(3)")
        assert count_rows(conn, "t") == 3
        assert count_rows(conn, "nope") is None
        assert count_rows_display(conn, "t") == "3"
        assert count_rows_display(conn, "nope") == "error"

    def test_quote_ident(self, conn):
        assert quote_ident("date") == '"date"'
        assert quote_ident('we"ird') == '"we""ird"'
        conn.execute(f"CREATE TABLE {quote_ident('odd name')} AS SELECT 1 AS x")
        assert count_rows(conn, "odd name") == 1
