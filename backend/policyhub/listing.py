"""Policy listing assembly.

Callers hand in an open read-snapshot connection, the resolved caller and a
validated parameter object; everything returned is computed from that one
connection so the rows, the total and the metadata describe the same data.
"""
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy.engine import Connection

from .aggregates import aggregate_join, normalize_counters
from .filter_metadata import get_filter_metadata
from .pager import PagedQuery, count_total, fetch_page, pagination_block
from .portals import authorize_portal, load_portal_assignments, load_tags
from .predicates import compose_predicates, sort_clause
from .schemas import PolicyFilters, PolicyListParams, PortalPolicyListParams
from .scope import AccessScope, Caller, resolve_scope

POLICY_COLUMNS = (
    "p.id AS id, p.title AS title, p.status AS status, p.department AS department, "
    "p.category AS category, p.effective_date AS effective_date, p.review_date AS review_date, "
    "p.expiration_date AS expiration_date, p.organization_id AS organization_id, "
    "p.author_id AS author_id, p.reviewed_by AS reviewed_by, "
    "p.created_at AS created_at, p.updated_at AS updated_at"
)


def build_policy_query(
    scope: AccessScope,
    caller: Caller,
    filters: PolicyFilters,
    sort_by,
    sort_order,
    now: datetime,
    dialect: str,
    acknowledged_by: str = "assignment",
) -> PagedQuery:
    predicates = compose_predicates(scope, filters, dialect, caller=caller)
    agg = aggregate_join(caller, now, acknowledged_by)
    return PagedQuery(
        base_from="policies p",
        predicates=predicates,
        columns=f"{POLICY_COLUMNS}, {agg.columns}",
        joins=agg.joins,
        order_by=sort_clause(sort_by, sort_order),
        extra_params=agg.params,
    )


def _assemble_rows(conn: Connection, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    ids = [int(r["id"]) for r in rows]
    portals_by_policy = load_portal_assignments(conn, ids)
    tags_by_policy = load_tags(conn, ids)
    out = []
    for r in rows:
        row = normalize_counters(r)
        row["tags"] = tags_by_policy.get(int(r["id"]), [])
        row["assigned_portals"] = portals_by_policy.get(int(r["id"]), [])
        out.append(row)
    return out


def run_listing(
    conn: Connection,
    scope: AccessScope,
    caller: Caller,
    params,
    now: datetime,
    acknowledged_by: str = "assignment",
) -> Dict[str, Any]:
    query = build_policy_query(
        scope, caller, params, params.sort_by, params.sort_order, now, conn.dialect.name, acknowledged_by
    )
    rows = fetch_page(conn, query, params.page, params.limit)
    total = count_total(conn, query)
    return {
        "policies": _assemble_rows(conn, rows),
        "pagination": pagination_block(params.page, params.limit, total),
    }


def list_policies(
    conn: Connection,
    caller: Caller,
    params: PolicyListParams,
    now: datetime,
) -> Dict[str, Any]:
    scope = resolve_scope(caller, params.public_only)
    result = run_listing(conn, scope, caller, params, now)
    if params.get_filter_metadata:
        result["filter_metadata"] = get_filter_metadata(conn, scope)
    result["scope"] = scope
    return result


def list_portal_policies(
    conn: Connection,
    caller: Caller,
    portal: Dict[str, Any],
    params: PortalPolicyListParams,
    now: datetime,
) -> Dict[str, Any]:
    scope = authorize_portal(portal, caller, params.password)
    result = run_listing(conn, scope, caller, params, now, acknowledged_by="acknowledgment")
    result["portal"] = {
        "id": int(portal["id"]),
        "name": portal["name"],
        "slug": portal["slug"],
        "access_type": portal["access_type"],
        "requires_acknowledgment": bool(portal.get("requires_acknowledgment")),
    }
    result["scope"] = scope
    return result
