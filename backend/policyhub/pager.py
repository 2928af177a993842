import math
from dataclasses import dataclass, field
from typing import Any, Dict, List

from sqlalchemy import text
from sqlalchemy.engine import Connection

from .predicates import PredicateSet


@dataclass
class PagedQuery:
    """A base relation, its select list and one shared predicate set.

    ``page_sql`` and ``count_sql`` both render ``predicates`` from the same
    instance; the count keeps the FROM/WHERE and drops everything the page
    adds (select list, row-preserving LEFT JOINs, ORDER BY, LIMIT/OFFSET).
    """

    base_from: str
    predicates: PredicateSet
    columns: str = "*"
    joins: str = ""
    order_by: str = ""
    extra_params: Dict[str, Any] = field(default_factory=dict)
    count_joins: str = ""

    def page_sql(self) -> str:
        sql = f"SELECT {self.columns} FROM {self.base_from}{self.joins}{self.predicates.where_sql()}"
        if self.order_by:
            sql += f" ORDER BY {self.order_by}"
        return sql + " LIMIT :page_limit OFFSET :page_offset"

    def count_sql(self) -> str:
        return f"SELECT COUNT(*) FROM {self.base_from}{self.count_joins}{self.predicates.where_sql()}"

    def page_params(self, limit: int, offset: int) -> Dict[str, Any]:
        params = dict(self.predicates.params)
        params.update(self.extra_params)
        params.update({"page_limit": limit, "page_offset": offset})
        return params


def fetch_page(conn: Connection, query: PagedQuery, page: int, limit: int) -> List[Dict[str, Any]]:
    offset = (page - 1) * limit
    rows = conn.execute(text(query.page_sql()), query.page_params(limit, offset)).mappings().all()
    return [dict(r) for r in rows]


def count_total(conn: Connection, query: PagedQuery) -> int:
    total = conn.execute(text(query.count_sql()), dict(query.predicates.params)).scalar_one()
    return int(total or 0)


def pagination_block(page: int, limit: int, total: int) -> Dict[str, int]:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": math.ceil(total / limit) if total else 0,
    }
