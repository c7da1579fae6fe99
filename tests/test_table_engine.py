import pytest

from compliance_registry.table_engine import (
    ASC,
    DESC,
    ActionColumn,
    Column,
    TableEngine,
    natural_key,
    next_sort_state,
    render_table,
)


def make_engine(rows, columns=None):
    columns = columns or [
        Column("a", "A", lambda r: r.get("a"), filterable=True),
        Column("b", "B", lambda r: r.get("b"), filterable=True),
    ]
    return TableEngine(columns, rows, lambda r: str(r["id"]))


def ids(rows):
    return [r["id"] for r in rows]


ROWS = [
    {"id": 1, "a": "foo", "b": "bar"},
    {"id": 2, "a": "foo", "b": "baz"},
    {"id": 3, "a": "qux", "b": None},
]


def test_identity_without_state():
    engine = make_engine(ROWS)
    assert ids(engine.visible_rows()) == [1, 2, 3]


def test_input_rows_are_never_mutated():
    rows = [{"id": 2, "a": "10"}, {"id": 1, "a": "2"}]
    snapshot = list(rows)
    engine = make_engine(rows)
    engine.toggle_sort("a")
    result = engine.visible_rows()
    result.append({"id": 99})
    assert rows == snapshot
    assert ids(engine.visible_rows()) == [1, 2]


def test_search_is_idempotent():
    engine = make_engine(ROWS)
    engine.set_global_search("ba")
    once = ids(engine.visible_rows())
    engine.set_global_search("ba")
    assert ids(engine.visible_rows()) == once == [1, 2]


def test_search_is_trimmed_and_case_insensitive():
    engine = make_engine(ROWS)
    engine.set_global_search("  QUX ")
    assert ids(engine.visible_rows()) == [3]


def test_global_search_matches_any_column():
    engine = make_engine(ROWS)
    engine.set_global_search("baz")
    assert ids(engine.visible_rows()) == [2]


def test_numeric_aware_ordering():
    rows = [{"id": "x", "a": "2"}, {"id": "y", "a": "10"}, {"id": "z", "a": "1"}]
    engine = make_engine(rows)
    engine.toggle_sort("a")
    assert [r["a"] for r in engine.visible_rows()] == ["1", "2", "10"]
    engine.toggle_sort("a")
    assert [r["a"] for r in engine.visible_rows()] == ["10", "2", "1"]


def test_mixed_alphanumeric_values_sort_naturally():
    rows = [{"id": i, "a": tag} for i, tag in enumerate(["A10", "a2", "A1", "B1"])]
    engine = make_engine(rows)
    engine.toggle_sort("a")
    assert [r["a"] for r in engine.visible_rows()] == ["A1", "a2", "A10", "B1"]


def test_sort_is_stable_in_both_directions():
    rows = [
        {"id": 1, "a": "same"},
        {"id": 2, "a": "other"},
        {"id": 3, "a": "same"},
        {"id": 4, "a": "SAME"},
    ]
    engine = make_engine(rows)
    engine.toggle_sort("a")
    assert ids(engine.visible_rows()) == [2, 1, 3, 4]
    engine.toggle_sort("a")
    # Ties keep input order under descending too.
    assert ids(engine.visible_rows()) == [1, 3, 4, 2]


def test_sort_cycle_returns_to_unsorted():
    engine = make_engine([{"id": 1, "a": "b"}, {"id": 2, "a": "a"}])
    engine.toggle_sort("a")
    first = ids(engine.visible_rows())
    assert (engine.sort_column, engine.sort_direction) == ("a", ASC)
    engine.toggle_sort("a")
    assert engine.sort_direction_for("a") == DESC
    engine.toggle_sort("a")
    assert (engine.sort_column, engine.sort_direction) == (None, None)
    assert ids(engine.visible_rows()) == [1, 2]
    engine.toggle_sort("a")
    assert ids(engine.visible_rows()) == first


def test_sorting_another_column_evicts_previous():
    engine = make_engine(ROWS)
    engine.toggle_sort("a")
    engine.toggle_sort("b")
    assert engine.sort_direction_for("b") == ASC
    assert engine.sort_direction_for("a") is None


@pytest.mark.parametrize(
    "current, expected",
    [
        ((None, None), ("x", ASC)),
        (("x", ASC), ("x", DESC)),
        (("x", DESC), (None, None)),
        (("y", DESC), ("x", ASC)),
    ],
)
def test_next_sort_state(current, expected):
    assert next_sort_state(current[0], current[1], "x") == expected


def test_filters_compose_with_and():
    engine = make_engine(ROWS)
    engine.set_column_filter("a", "foo")
    engine.set_column_filter("b", "bar")
    assert ids(engine.visible_rows()) == [1]


def test_filter_value_is_trimmed():
    engine = make_engine(ROWS)
    engine.set_column_filter("a", "  foo  ")
    assert engine.filter_value("a") == "foo"
    assert ids(engine.visible_rows()) == [1, 2]


def test_filter_on_non_filterable_column_is_ignored():
    columns = [Column("a", "A", lambda r: r.get("a")), Column("b", "B", lambda r: r.get("b"), filterable=True)]
    engine = make_engine(ROWS, columns)
    engine.set_column_filter("a", "qux")
    assert engine.filter_value("a") == "qux"
    assert ids(engine.visible_rows()) == [1, 2, 3]


def test_search_and_filters_combine():
    engine = make_engine(ROWS)
    engine.set_global_search("foo")
    engine.set_column_filter("b", "baz")
    assert ids(engine.visible_rows()) == [2]


def test_null_values_never_match_and_never_raise():
    rows = [{"id": 1, "a": None, "b": None}]
    engine = make_engine(rows)
    engine.set_global_search("none")
    assert engine.visible_rows() == []
    engine.set_global_search("")
    engine.set_column_filter("b", "x")
    assert engine.visible_rows() == []
    engine.set_column_filter("b", "")
    engine.toggle_sort("b")
    assert ids(engine.visible_rows()) == [1]


def test_null_sorts_first_ascending():
    engine = make_engine(ROWS)
    engine.toggle_sort("b")
    assert ids(engine.visible_rows()) == [3, 1, 2]


def test_numbers_are_stringified_for_sort_and_search():
    rows = [{"id": 1, "a": 10}, {"id": 2, "a": 9}, {"id": 3, "a": 100}]
    engine = make_engine(rows)
    engine.toggle_sort("a")
    assert ids(engine.visible_rows()) == [2, 1, 3]
    engine.set_global_search("10")
    assert ids(engine.visible_rows()) == [1, 3]


def test_rows_replacement_invalidates_memo():
    engine = make_engine(ROWS)
    assert len(engine.visible_rows()) == 3
    engine.set_rows(ROWS[:1])
    assert ids(engine.visible_rows()) == [1]


def test_natural_key_digits_before_text():
    assert natural_key("2b") < natural_key("b2")
    assert natural_key(None) == natural_key("")


def test_natural_key_ignores_leading_zeros():
    assert natural_key("T-007") == natural_key("T-7")
    assert natural_key("T-0") == natural_key("T-000")
    assert natural_key("T-09") < natural_key("T-10")


def test_very_long_digit_runs_sort_numerically():
    huge = "9" * 5000
    rows = [{"id": 1, "a": huge}, {"id": 2, "a": "1"}, {"id": 3, "a": "1" + "0" * 4999}]
    engine = make_engine(rows)
    engine.toggle_sort("a")
    assert ids(engine.visible_rows()) == [2, 3, 1]
    engine.toggle_sort("a")
    assert ids(engine.visible_rows()) == [1, 3, 2]


def test_direct_state_assignment_is_not_served_stale():
    engine = make_engine(ROWS)
    assert len(engine.visible_rows()) == 3
    engine.search = "qux"
    assert ids(engine.visible_rows()) == [3]
    engine.search = ""
    engine.sort_column, engine.sort_direction = "b", "desc"
    assert ids(engine.visible_rows()) == [2, 1, 3]
    engine.columns = engine.columns[:1]
    engine.sort_column = None
    engine.search = "ba"
    assert engine.visible_rows() == []


def test_from_query_restores_state_and_ignores_bad_sort():
    columns = [
        Column("a", "A", lambda r: r.get("a"), filterable=True),
        Column("b", "B", lambda r: r.get("b"), sortable=False),
    ]
    engine = TableEngine.from_query(columns, ROWS, lambda r: str(r["id"]), {"q": "foo", "f_a": "fo", "f_b": "x", "sort": "a", "dir": "desc"})
    assert engine.search == "foo"
    assert engine.filters == {"a": "fo"}
    assert (engine.sort_column, engine.sort_direction) == ("a", DESC)

    unsortable = TableEngine.from_query(columns, ROWS, lambda r: str(r["id"]), {"sort": "b", "dir": "asc"})
    assert unsortable.sort_column is None
    unknown = TableEngine.from_query(columns, ROWS, lambda r: str(r["id"]), {"sort": "a", "dir": "sideways"})
    assert unknown.sort_column is None


def test_params_after_toggle_does_not_mutate():
    engine = make_engine(ROWS)
    engine.set_column_filter("a", "foo")
    assert engine.params_after_toggle("a") == {"f_a": "foo", "sort": "a", "dir": "asc"}
    assert engine.sort_column is None
    engine.toggle_sort("a")
    engine.toggle_sort("a")
    assert engine.params_after_toggle("a") == {"f_a": "foo"}


def test_render_table_headers_rows_and_actions():
    engine = make_engine(ROWS)
    engine.toggle_sort("a")
    out = render_table(
        engine,
        "/things",
        {"site_id": "s1", "msg": "Saved", "q": "stale"},
        action_column=ActionColumn(lambda r: f"<a href='/things/{r['id']}'>Open</a>"),
        search_placeholder="Search things...",
    )
    assert "data-row-key='1'" in out
    assert "↑" in out and "↕" in out
    assert "/things/3" in out
    # Page params ride along; notices and stale table params do not.
    assert "site_id=s1" in out
    assert "msg=" not in out
    assert "value='stale'" not in out
    assert "sort=a&amp;dir=desc" in out
    # Missing values render the placeholder.
    assert "—" in out


def test_render_table_escapes_cell_values():
    engine = make_engine([{"id": 1, "a": "<script>", "b": "x"}])
    out = render_table(engine, "/t")
    assert "<script>" not in out
    assert "&lt;script&gt;" in out


def test_render_table_empty_state_keeps_filters():
    engine = make_engine(ROWS)
    engine.set_column_filter("a", "zzz")
    out = render_table(engine, "/t", empty_message="Nothing here.")
    assert "Nothing here." in out
    assert "name='f_a' value='zzz'" in out
    assert "Clear search and filters" in out
