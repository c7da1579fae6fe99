"""Generic sortable/filterable table.

A `TableEngine` owns the transient UI state of one table view (global
search, per-column filters, a single sort slot) and derives the visible rows
from it. The derivation is a fixed pipeline:

1. global search across every column,
2. per-column filters on `filterable` columns (AND semantics),
3. a stable, numeric-aware sort on the active column.

The engine never mutates the rows it is given and never raises on odd
accessor output: `None` is treated as the empty string everywhere.

In the server-rendered pages the state round-trips through the query string
(`q`, `sort`, `dir`, `f_<column id>`), see `from_query` and `state_params`.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, Sequence, Tuple, TypeVar
from urllib.parse import urlencode

T = TypeVar("T")

ASC = "asc"
DESC = "desc"
PLACEHOLDER = "—"

SEARCH_PARAM = "q"
SORT_PARAM = "sort"
DIRECTION_PARAM = "dir"
FILTER_PREFIX = "f_"

SORT_ICONS = {None: "↕", ASC: "↑", DESC: "↓"}

_DIGIT_RUN = re.compile(r"(\d+)")


def _escape(value: object) -> str:
    return html.escape(str(value), quote=True)


def cell_text(value: object) -> str:
    """Stringify an accessor value; None becomes the empty string."""
    if value is None:
        return ""
    return str(value)


def natural_key(value: object) -> Tuple[Tuple[int, int, str], ...]:
    """Sort key that compares digit runs by numeric value ("A2" < "A10").

    Text runs compare case-insensitively. Digit runs sort ahead of text at
    the same position, matching the usual collation of "2b" before "b2".
    Digit runs of any length are compared as (length, digits) once leading
    zeros are gone, so no integer conversion is involved.
    """
    parts: List[Tuple[int, int, str]] = []
    # re.split with a capture group alternates text, digits, text, ...
    for idx, chunk in enumerate(_DIGIT_RUN.split(cell_text(value))):
        if not chunk:
            continue
        if idx % 2:
            digits = chunk.lstrip("0")
            parts.append((0, len(digits), digits))
        else:
            parts.append((1, 0, chunk.casefold()))
    return tuple(parts)


def next_sort_state(
    current_column: Optional[str],
    current_direction: Optional[str],
    column_id: str,
) -> Tuple[Optional[str], Optional[str]]:
    """Transition of the single sort slot when `column_id` is clicked.

    unsorted -> asc -> desc -> unsorted for the same column; a different
    column always starts at asc.
    """
    if current_column != column_id or current_direction is None:
        return column_id, ASC
    if current_direction == ASC:
        return column_id, DESC
    return None, None


@dataclass
class Column(Generic[T]):
    id: str
    label: str
    accessor: Callable[[T], Any]
    sortable: bool = True
    filterable: bool = False
    # Returns ready-to-insert markup; the default escapes the accessor value.
    cell: Optional[Callable[[T], str]] = None
    header_class: str = ""
    cell_class: str = ""

    def value_text(self, row: T) -> str:
        return cell_text(self.accessor(row))

    def render_cell(self, row: T) -> str:
        if self.cell is not None:
            return self.cell(row)
        value = self.accessor(row)
        return _escape(PLACEHOLDER if value is None else value)


@dataclass
class ActionColumn(Generic[T]):
    """Trailing column (links, buttons) that is neither sortable nor filterable."""

    render: Callable[[T], str]
    header: str = ""
    cell_class: str = ""


class TableEngine(Generic[T]):
    """Transient search/filter/sort state for one table plus the visible-row query.

    `row_key` must return a unique, stable string per row; duplicates are a
    caller error and are not detected.
    """

    def __init__(self, columns: Sequence[Column[T]], rows: Sequence[T], row_key: Callable[[T], str]):
        self.columns: List[Column[T]] = list(columns)
        self.rows: Sequence[T] = rows
        self.row_key = row_key
        self.search = ""
        self.filters: Dict[str, str] = {}
        self.sort_column: Optional[str] = None
        self.sort_direction: Optional[str] = None
        self._version = 0
        self._cached: Optional[Tuple[Tuple[Any, ...], List[T]]] = None

    @classmethod
    def from_query(
        cls,
        columns: Sequence[Column[T]],
        rows: Sequence[T],
        row_key: Callable[[T], str],
        query: Mapping[str, str],
    ) -> "TableEngine[T]":
        """Rebuild table state from request query parameters.

        Unknown or non-sortable sort columns and unknown directions are
        ignored rather than rejected.
        """
        engine = cls(columns, rows, row_key)
        engine.set_global_search(query.get(SEARCH_PARAM, ""))
        for column in engine.columns:
            raw = query.get(FILTER_PREFIX + column.id)
            if raw is not None and column.filterable:
                engine.set_column_filter(column.id, raw)
        sort_id = query.get(SORT_PARAM, "")
        direction = query.get(DIRECTION_PARAM, ASC)
        column = engine.column(sort_id)
        if column is not None and column.sortable and direction in (ASC, DESC):
            engine.sort_column = sort_id
            engine.sort_direction = direction
        return engine

    # State mutators ------------------------------------------------
    def set_rows(self, rows: Sequence[T]) -> None:
        self.rows = rows
        self._touch()

    def set_global_search(self, text: Optional[str]) -> None:
        self.search = text or ""
        self._touch()

    def set_column_filter(self, column_id: str, text: Optional[str]) -> None:
        self.filters[column_id] = (text or "").strip()
        self._touch()

    def toggle_sort(self, column_id: str) -> None:
        self.sort_column, self.sort_direction = next_sort_state(self.sort_column, self.sort_direction, column_id)
        self._touch()

    def _touch(self) -> None:
        self._version += 1

    # Queries ---------------------------------------------------------
    def column(self, column_id: Optional[str]) -> Optional[Column[T]]:
        for column in self.columns:
            if column.id == column_id:
                return column
        return None

    def sort_direction_for(self, column_id: str) -> Optional[str]:
        if self.sort_column == column_id:
            return self.sort_direction
        return None

    def filter_value(self, column_id: str) -> str:
        return self.filters.get(column_id, "")

    def _state_key(self) -> Tuple[Any, ...]:
        # Covers direct assignment to the public state attributes too.
        return (
            self._version,
            id(self.rows),
            tuple(id(column) for column in self.columns),
            self.search,
            tuple(sorted(self.filters.items())),
            self.sort_column,
            self.sort_direction,
        )

    def visible_rows(self) -> List[T]:
        key = self._state_key()
        if self._cached is None or self._cached[0] != key:
            self._cached = (key, self._derive())
        return list(self._cached[1])

    def _derive(self) -> List[T]:
        result = list(self.rows)

        needle = self.search.strip().lower()
        if needle:
            result = [
                row for row in result if any(needle in column.value_text(row).lower() for column in self.columns)
            ]

        for column in self.columns:
            if not column.filterable:
                continue
            probe = self.filters.get(column.id, "").lower()
            if not probe:
                continue
            result = [row for row in result if probe in column.value_text(row).lower()]

        active = self.column(self.sort_column)
        if active is not None and self.sort_direction:
            # sorted() keeps ties in input order even with reverse=True,
            # which is the same as negating the comparison.
            result = sorted(
                result,
                key=lambda row: natural_key(active.accessor(row)),
                reverse=self.sort_direction == DESC,
            )
        return result

    # Query-string round trip -----------------------------------------
    def state_params(self) -> Dict[str, str]:
        params: Dict[str, str] = {}
        if self.search.strip():
            params[SEARCH_PARAM] = self.search.strip()
        for column in self.columns:
            value = self.filters.get(column.id, "")
            if column.filterable and value:
                params[FILTER_PREFIX + column.id] = value
        if self.sort_column and self.sort_direction:
            params[SORT_PARAM] = self.sort_column
            params[DIRECTION_PARAM] = self.sort_direction
        return params

    def params_after_toggle(self, column_id: str) -> Dict[str, str]:
        params = self.state_params()
        params.pop(SORT_PARAM, None)
        params.pop(DIRECTION_PARAM, None)
        column, direction = next_sort_state(self.sort_column, self.sort_direction, column_id)
        if column and direction:
            params[SORT_PARAM] = column
            params[DIRECTION_PARAM] = direction
        return params


def is_table_param(key: str) -> bool:
    return key in (SEARCH_PARAM, SORT_PARAM, DIRECTION_PARAM) or key.startswith(FILTER_PREFIX)


def render_table(
    engine: TableEngine[T],
    base_path: str,
    page_query: Optional[Mapping[str, str]] = None,
    action_column: Optional[ActionColumn[T]] = None,
    empty_message: str = "No data found.",
    search_placeholder: str = "",
    form_id: str = "table-state",
) -> str:
    """Render search box, sortable headers, filter inputs and rows.

    Search and filter inputs belong to one GET form (via the `form`
    attribute) so they submit together while cells stay free to hold their
    own POST forms. `page_query` carries the page's own parameters (e.g.
    site_id) across sort clicks and filter submissions; table parameters in
    it are replaced by the engine state.
    """
    carried = {k: v for k, v in (page_query or {}).items() if v and not is_table_param(k) and k != "msg"}

    def href(params: Dict[str, str]) -> str:
        merged = dict(carried)
        merged.update(params)
        return f"{base_path}?{urlencode(merged)}" if merged else base_path

    hidden = "".join(
        f"<input type='hidden' name='{_escape(k)}' value='{_escape(v)}' />" for k, v in carried.items()
    )
    if engine.sort_column and engine.sort_direction:
        hidden += f"<input type='hidden' name='{SORT_PARAM}' value='{_escape(engine.sort_column)}' />"
        hidden += f"<input type='hidden' name='{DIRECTION_PARAM}' value='{_escape(engine.sort_direction)}' />"

    search_box = ""
    if search_placeholder:
        search_box = f"""
          <div class='table-search'>
            <input type='search' name='{SEARCH_PARAM}' value='{_escape(engine.search)}' placeholder='{_escape(search_placeholder)}' aria-label='Search' />
            <button type='submit' class='btn ghost'>Search</button>
          </div>
        """
    elif engine.search:
        hidden += f"<input type='hidden' name='{SEARCH_PARAM}' value='{_escape(engine.search)}' />"

    rows = engine.visible_rows()
    if not rows:
        # No header row is drawn, so active filters ride along as hidden fields.
        hidden += "".join(
            f"<input type='hidden' name='{FILTER_PREFIX}{_escape(c.id)}' value='{_escape(engine.filter_value(c.id))}' />"
            for c in engine.columns
            if c.filterable and engine.filter_value(c.id)
        )
        clear_link = f" <a href='{_escape(href({}))}'>Clear search and filters</a>" if engine.state_params() else ""
        return f"""
        <section class='data-table-block'>
          <form id='{_escape(form_id)}' method='get' action='{_escape(base_path)}' class='table-state-form'>{hidden}{search_box}</form>
          <div class='card empty-state'>{_escape(empty_message)}{clear_link}</div>
        </section>
        """

    header_cells: List[str] = []
    for column in engine.columns:
        if column.sortable:
            direction = engine.sort_direction_for(column.id)
            label = (
                f"<a class='sort-link' href='{_escape(href(engine.params_after_toggle(column.id)))}'>"
                f"{_escape(column.label)}<span class='sort-icon' aria-hidden='true'>{SORT_ICONS[direction]}</span></a>"
            )
        else:
            label = f"<span>{_escape(column.label)}</span>"
        filter_input = ""
        if column.filterable:
            filter_input = (
                f"<input type='text' class='column-filter' form='{_escape(form_id)}' "
                f"name='{FILTER_PREFIX}{_escape(column.id)}' value='{_escape(engine.filter_value(column.id))}' "
                f"placeholder='Filter...' aria-label='Filter by {_escape(column.label)}' />"
            )
        header_cells.append(
            f"<th class='{_escape(column.header_class)}'><div class='th-stack'>{label}{filter_input}</div></th>"
        )
    if action_column is not None:
        header_cells.append(f"<th><span class='sr-only'>Actions</span>{action_column.header}</th>")

    body_rows: List[str] = []
    for row in rows:
        cells = "".join(
            f"<td class='{_escape(column.cell_class)}'>{column.render_cell(row)}</td>" for column in engine.columns
        )
        if action_column is not None:
            cells += f"<td class='{_escape(action_column.cell_class)}'>{action_column.render(row)}</td>"
        body_rows.append(f"<tr data-row-key='{_escape(engine.row_key(row))}'>{cells}</tr>")

    return f"""
    <section class='data-table-block'>
      <form id='{_escape(form_id)}' method='get' action='{_escape(base_path)}' class='table-state-form'>
        {hidden}{search_box}
        <button type='submit' class='sr-only'>Apply filters</button>
      </form>
      <div class='table-wrap card'>
        <table class='data-table'>
          <thead><tr>{''.join(header_cells)}</tr></thead>
          <tbody>{''.join(body_rows)}</tbody>
        </table>
      </div>
    </section>
    """
