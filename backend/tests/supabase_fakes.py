"""
In-memory stand-in for the supabase-py client used across the backend tests.

    sb = FakeSupabase({"mv_lead_to_cash_flow": rows})
    sb.script("salesforce_quotes", [Exception("502 Bad Gateway"), []])
    ...
    sb.calls_for("mv_lead_to_cash_flow")  # executed builders, in order

Reads apply eq / neq / gt / gte / lte / lt / in_ / ilike and PostgREST
or_() expressions to rows that carry the column, then each .order() key,
then .range() / .limit(). count is taken after filtering unless overridden
per table. Scripted responses (rows or an exception) are consumed first,
one per .execute().
"""

from __future__ import annotations

import fnmatch
import operator
from collections import defaultdict
from types import SimpleNamespace
from typing import Any, Optional

_COMPARATORS = {
    "eq": operator.eq,
    "neq": operator.ne,
    "gt": operator.gt,
    "gte": operator.ge,
    "lte": operator.le,
    "lt": operator.lt,
    "in_": lambda value, allowed: value in allowed,
    "ilike": lambda value, pattern: fnmatch.fnmatch(str(value).lower(), pattern.replace("%", "*").lower()),
}


def _split_top_level(expr: str) -> list[str]:
    """Split on commas outside parentheses and double quotes."""
    parts, depth, quoted, current = [], 0, False, ""
    for ch in expr:
        if ch == '"':
            quoted = not quoted
        elif not quoted and ch == "(":
            depth += 1
        elif not quoted and ch == ")":
            depth -= 1
        elif not quoted and depth == 0 and ch == ",":
            parts.append(current)
            current = ""
            continue
        current += ch
    parts.append(current)
    return parts


def _logic_matches(row: dict, term: str) -> bool:
    if term.startswith("and(") and term.endswith(")"):
        return all(_logic_matches(row, t) for t in _split_top_level(term[4:-1]))
    if term.startswith("or(") and term.endswith(")"):
        return any(_logic_matches(row, t) for t in _split_top_level(term[3:-1]))
    column, op, value = term.split(".", 2)
    if column not in row:
        return True
    if row[column] is None:
        return False
    return _COMPARATORS[op](row[column], value.strip('"'))


class FakeQuery:
    """Fluent builder for supabase.table(name)...execute()."""

    def __init__(self, client: "FakeSupabase", table: str):
        self._client = client
        self._table = table
        self._range: Optional[tuple[int, int]] = None
        self._limit: Optional[int] = None
        self._orders: list[tuple[str, bool]] = []
        self._single = False
        self.ops: list[tuple] = []

    def _record(self, name: str, *args, **kwargs) -> "FakeQuery":
        self.ops.append((name, args, kwargs))
        return self

    def select(self, *a, **kw): return self._record("select", *a, **kw)
    def eq(self, *a, **kw):     return self._record("eq", *a, **kw)
    def neq(self, *a, **kw):    return self._record("neq", *a, **kw)
    def gt(self, *a, **kw):     return self._record("gt", *a, **kw)
    def gte(self, *a, **kw):    return self._record("gte", *a, **kw)
    def lte(self, *a, **kw):    return self._record("lte", *a, **kw)
    def lt(self, *a, **kw):     return self._record("lt", *a, **kw)
    def in_(self, *a, **kw):    return self._record("in_", *a, **kw)
    def is_(self, *a, **kw):    return self._record("is_", *a, **kw)
    def ilike(self, *a, **kw):  return self._record("ilike", *a, **kw)
    def or_(self, *a, **kw):    return self._record("or_", *a, **kw)
    def insert(self, *a, **kw): return self._record("insert", *a, **kw)
    def update(self, *a, **kw): return self._record("update", *a, **kw)
    def upsert(self, *a, **kw): return self._record("upsert", *a, **kw)
    def delete(self, *a, **kw): return self._record("delete", *a, **kw)

    # `.not_` is an attribute, chained with `.is_()`
    @property
    def not_(self):
        return self._record("not_")

    def order(self, column: str, desc: bool = False):
        self._orders.append((column, desc))
        return self._record("order", column, desc=desc)

    def range(self, start: int, end: int):
        self._range = (start, end)
        return self._record("range", start, end)

    def limit(self, n: int):
        self._limit = n
        return self._record("limit", n)

    def maybe_single(self):
        self._single = True
        return self._record("maybe_single")

    def op_args(self, name: str) -> list[tuple]:
        return [args for op, args, _ in self.ops if op == name]

    def _matches(self, row: dict) -> bool:
        for op, args, _ in self.ops:
            if op == "or_":
                if not any(_logic_matches(row, t) for t in _split_top_level(args[0])):
                    return False
                continue
            compare = _COMPARATORS.get(op)
            if compare is None or args[0] not in row:
                continue
            value = row[args[0]]
            if value is None or not compare(value, args[1]):
                return False
        return True

    def execute(self):
        self._client.executed.append(self)
        scripted = self._client.next_scripted(self._table)
        if isinstance(scripted, BaseException):
            raise scripted
        if scripted is not None:
            rows = list(scripted)
        else:
            rows = [r for r in self._client.tables.get(self._table, []) if self._matches(r)]
        count = self._client.counts.get(self._table, len(rows))

        # least significant key first; sorted() is stable
        for column, desc in reversed(self._orders):
            present = [r for r in rows if r.get(column) is not None]
            missing = [r for r in rows if r.get(column) is None]
            rows = sorted(present, key=lambda r: r[column], reverse=desc) + missing
        if self._range is not None:
            rows = rows[self._range[0]:self._range[1] + 1]
        if self._limit is not None:
            rows = rows[:self._limit]
        if self._single:
            return SimpleNamespace(data=rows[0] if rows else None, count=None)
        return SimpleNamespace(data=rows, count=count)


class FakeRpc:
    def __init__(self, client: "FakeSupabase", name: str, params: dict):
        self._client = client
        self.name = name
        self.params = params

    def execute(self):
        self._client.rpc_calls.append((self.name, self.params))
        result = self._client.rpc_results.get(self.name)
        if isinstance(result, BaseException):
            raise result
        return SimpleNamespace(data=result, count=None)


class FakeSupabase:
    def __init__(self, tables: Optional[dict[str, list[dict]]] = None, counts: Optional[dict[str, int]] = None):
        self.tables = tables or {}
        self.counts = counts or {}
        self.rpc_results: dict[str, Any] = {}
        self.executed: list[FakeQuery] = []
        self.rpc_calls: list[tuple[str, dict]] = []
        self._scripted: dict[str, list] = defaultdict(list)

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rpc(self, name: str, params: Optional[dict] = None) -> FakeRpc:
        return FakeRpc(self, name, params or {})

    def script(self, table: str, responses: list) -> None:
        self._scripted[table].extend(responses)

    def next_scripted(self, table: str):
        queue = self._scripted.get(table)
        if queue:
            return queue.pop(0)
        return None

    def calls_for(self, table: str) -> list[FakeQuery]:
        return [q for q in self.executed if q._table == table]
