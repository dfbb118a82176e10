import json

import duckdb

from tests.conftest import _make_step, _tables
from layoffs.infra import (
    init_infra,
    log_trace,
    persist_pipeline_meta,
    persist_step_meta,
    read_pipeline_meta,
    read_step_meta,
    upsert_pipeline_meta,
)


class TestInfra:
    def test_init_creates_tables(self, conn):
        assert {"_trace", "_step_meta", "_pipeline_meta"} <= _tables(conn)

    def test_init_is_idempotent(self, conn):
        init_infra(conn)
        assert "_trace" in _tables(conn)

    def test_log_trace(self, conn):
        log_trace(
            conn, "DELETE FROM t", True, row_count=3, step_name="s", source="step"
        )
        log_trace(conn, "BAD", False, error="boom", step_name="s")
        rows = conn.execute(
            "SELECT id, query, success, error, row_count FROM _trace ORDER BY id"
        ).fetchall()
        assert [r[1:] for r in rows] == [
            ("DELETE FROM t", True, None, 3),
            ("BAD", False, "boom", None),
        ]
        assert rows[0][0] < rows[1][0]


class TestStepMeta:
    def test_round_trip_and_overwrite(self, conn):
        persist_step_meta(conn, "dedupe", {"validation": "FAIL"})
        persist_step_meta(conn, "dedupe", {"validation": "PASS", "elapsed_s": 0.1})
        assert read_step_meta(conn) == {
            "dedupe": {"validation": "PASS", "elapsed_s": 0.1}
        }

    def test_missing_table(self):
        c = duckdb.connect(":memory:")
        try:
            assert read_step_meta(c) == {}
            assert read_pipeline_meta(c) == {}
        finally:
            c.close()


class TestPipelineMeta:
    def test_persist(self, conn):
        conn.execute("CREATE TABLE layoffs AS SELECT 'Acme' AS company")
        persist_pipeline_meta(
            conn,
            [_make_step(name="a"), _make_step(name="b")],
            config={"top_n": 5},
            source_row_counts={"layoffs": 1},
        )
        meta = read_pipeline_meta(conn)
        assert meta["meta_version"] == "1"
        assert meta["duckdb_version"] == duckdb.__version__
        assert json.loads(meta["steps"]) == ["a", "b"]
        assert json.loads(meta["config"]) == {"top_n": 5}
        assert json.loads(meta["inputs_row_counts"]) == {"layoffs": 1}
        assert json.loads(meta["inputs_schema"]) == {
            "layoffs": [{"name": "company", "type": "VARCHAR"}]
        }

    def test_upsert(self, conn):
        persist_pipeline_meta(conn, [])
        upsert_pipeline_meta(conn, [("exports", "{}")])
        upsert_pipeline_meta(conn, [("exports", '{"attempted": true}')])
        assert read_pipeline_meta(conn)["exports"] == '{"attempted": true}'
