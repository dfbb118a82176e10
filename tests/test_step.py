import pytest

from tests.conftest import _make_step
from layoffs.step import (
    MAX_INLINE_MESSAGES,
    Step,
    execution_order,
    resolve_dag,
    resolve_deps,
    validate_graph,
    validate_step_name,
    validation_view_name,
)


class TestStep:
    def test_step_type(self):
        assert Step(name="raw", source=[{"a": 1}]).step_type() == "source"
        assert _make_step().step_type() == "sql"

    def test_check_sql_accepts_changes(self):
        step = _make_step(
            sql=(
                "CREATE TABLE t_a AS SELECT 1 AS x;"
                "UPDATE t_a SET x = 2;"
                "DELETE FROM t_a WHERE x > 5;"
                "ALTER TABLE t_a RENAME TO t_b;"
                "DROP TABLE t_b;"
            )
        )
        assert step.check_sql() == []

    def test_check_sql_rejects_bare_select(self):
        errors = _make_step(sql="CREATE VIEW t_v AS SELECT 1; SELECT 2").check_sql()
        assert len(errors) == 1
        assert "only allow statements that change the database" in errors[0]

    def test_check_sql_reports_parse_errors(self):
        errors = _make_step(sql="CREAT VIEW x").check_sql()
        assert errors and "parse error" in errors[0].lower()

    def test_check_sql_requires_statements(self):
        assert "no SQL statements" in _make_step(sql="  ").check_sql()[0]

    def test_source_steps_skip_sql_check(self):
        assert Step(name="raw", source=[{"a": 1}]).check_sql() == []

    def test_validation_view_names_sorted(self):
        step = _make_step(name="t", validate={"b": "SELECT 1", "a": "SELECT 1"})
        assert step.validation_view_names() == [
            "t__validation_a",
            "t__validation_b",
        ]
        assert validation_view_name("t", "a") == "t__validation_a"


class TestOutputs:
    def test_missing_output(self, conn):
        errors = _make_step(outputs=["t_out"]).validate_outputs(conn)
        assert errors == ["Required output 't_out' was not created."]

    def test_missing_columns(self, conn):
        conn.execute("CREATE VIEW t_v AS SELECT 1 AS wrong_col")
        step = _make_step(output_columns={"t_v": ["expected_col"]})
        errors = step.validate_outputs(conn)
        assert len(errors) == 1
        assert "expected_col" in errors[0]
        assert "wrong_col" in errors[0]

    def test_outputs_present(self, conn):
        conn.execute("CREATE TABLE t_out AS SELECT 1 AS x")
        step = _make_step(outputs=["t_out"], output_columns={"t_out": ["x"]})
        assert step.validate_outputs(conn) == []


class TestValidationViews:
    def _run(self, conn, **validate):
        step = _make_step(name="chk", validate=validate)
        assert step.define_validation_views(conn) == []
        return step

    def test_pass(self, conn):
        step = self._run(conn, ok="SELECT 'pass' AS status, 'fine' AS message")
        assert step.validate_validation_views(conn) == []

    def test_fail_rows(self, conn):
        step = self._run(
            conn,
            bad=(
                "SELECT 'FAIL' AS status, concat('bad ', i) AS message, "
                "'chk_evidence' AS evidence_view FROM range(3) r(i)"
            ),
        )
        errors = step.validate_validation_views(conn)
        assert len(errors) == 1
        assert "Fail rows in 'chk__validation_bad' (3)" in errors[0]
        assert "[evidence: chk_evidence]" in errors[0]
        assert "bad 2" in errors[0]

    def test_fail_messages_capped(self, conn):
        n = MAX_INLINE_MESSAGES + 5
        step = self._run(
            conn,
            many=(
                "SELECT 'fail' AS status, concat('m', i) AS message "
                f"FROM range({n}) r(i)"
            ),
        )
        (error,) = step.validate_validation_views(conn)
        assert "... and 5 more" in error

    def test_invalid_status(self, conn):
        step = self._run(conn, odd="SELECT 'maybe' AS status, 'x' AS message")
        (error,) = step.validate_validation_views(conn)
        assert "invalid status" in error

    def test_missing_columns(self, conn):
        step = self._run(conn, cols="SELECT 'pass' AS state")
        (error,) = step.validate_validation_views(conn)
        assert "missing required column" in error

    def test_undefined_view(self, conn):
        step = _make_step(name="chk", validate={"x": "SELECT 1"})
        (error,) = step.validate_validation_views(conn)
        assert "does not exist" in error

    def test_bad_query_reported_on_define(self, conn):
        step = _make_step(name="chk", validate={"x": "SELECT * FROM nowhere"})
        errors = step.define_validation_views(conn)
        assert errors and errors[0].startswith("chk__validation_x:")

    def test_warnings(self, conn):
        step = self._run(
            conn,
            w=(
                "SELECT 'warn' AS status, concat('careful ', i) AS message, "
                "'ev' AS evidence_view FROM range(4) r(i)"
            ),
        )
        assert step.validate_validation_views(conn) == []
        total, msgs = step.validation_warnings(conn, limit=2)
        assert total == 4
        assert msgs == ["careful 0 [evidence: ev]", "careful 1 [evidence: ev]"]


class TestGraph:
    def _chain(self):
        return [
            Step(name="raw", source=[{"a": 1}]),
            _make_step(name="b", depends_on=["raw"]),
            _make_step(name="a", depends_on=["raw"]),
            _make_step(name="c", depends_on=["a", "b"]),
        ]

    def test_resolve_deps(self):
        deps = resolve_deps(self._chain())
        assert deps == {"raw": set(), "b": {"raw"}, "a": {"raw"}, "c": {"a", "b"}}

    def test_resolve_dag_layers_sorted(self):
        layers = resolve_dag(self._chain())
        assert [[s.name for s in layer] for layer in layers] == [
            ["raw"],
            ["a", "b"],
            ["c"],
        ]

    def test_execution_order(self):
        assert [s.name for s in execution_order(self._chain())] == [
            "raw",
            "a",
            "b",
            "c",
        ]

    def test_cycle(self):
        steps = [
            _make_step(name="a", depends_on=["b"]),
            _make_step(name="b", depends_on=["a"]),
        ]
        with pytest.raises(ValueError, match="cycle"):
            resolve_dag(steps)
        assert any("cycle" in e for e in validate_graph(steps))

    def test_validate_graph_ok(self):
        assert validate_graph(self._chain()) == []

    def test_unknown_dependency(self):
        errors = validate_graph([_make_step(name="a", depends_on=["ghost"])])
        assert errors == ["Step 'a' depends on unknown step 'ghost'."]

    def test_duplicate_names(self):
        errors = validate_graph([_make_step(name="a"), _make_step(name="a")])
        assert "Duplicate step name: 'a'." in errors

    def test_self_dependency(self):
        errors = validate_graph([_make_step(name="a", depends_on=["a"])])
        assert "Step 'a' depends on itself." in errors

    def test_source_and_sql(self):
        step = Step(name="a", source=[{"x": 1}], sql="DROP TABLE x")
        assert any("both source and sql" in e for e in validate_graph([step]))

    @pytest.mark.parametrize("name", ["Bad", "1x", "a__b", "", "with space"])
    def test_bad_names(self, name):
        assert validate_step_name(name) is not None

    def test_good_name(self):
        assert validate_step_name("company_year_ranking") is None
