"""Distinct filter values visible under an access scope.

Only the scope predicate applies here; the caller's other filters are ignored
so that picking a department never hides the categories of other departments.
"""
from typing import Any, Dict, List, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Connection

from .predicates import scope_only
from .scope import AccessScope, OrganizationScoped, PublicOnly


def _values(conn: Connection, sql: str, params: Dict[str, Any]) -> List[str]:
    return [r[0] for r in conn.execute(text(sql), params).all() if r[0]]


def portal_names_sql(scope: AccessScope) -> Tuple[str, Dict[str, Any]]:
    sql = "SELECT DISTINCT name FROM portals WHERE is_active = TRUE"
    params: Dict[str, Any] = {}
    if isinstance(scope, PublicOnly):
        sql += " AND access_type = 'public'"
    elif isinstance(scope, OrganizationScoped):
        sql += " AND organization_id = :meta_org_id"
        params["meta_org_id"] = scope.organization_id
    return sql + " ORDER BY name", params


def get_filter_metadata(conn: Connection, scope: AccessScope) -> Dict[str, List[str]]:
    preds = scope_only(scope)
    where = preds.where_sql()
    params = preds.params

    departments = _values(
        conn,
        f"SELECT DISTINCT p.department FROM policies p{where} AND p.department IS NOT NULL ORDER BY p.department",
        params,
    )
    categories = _values(
        conn,
        f"SELECT DISTINCT p.category FROM policies p{where} AND p.category IS NOT NULL ORDER BY p.category",
        params,
    )
    statuses = _values(conn, f"SELECT DISTINCT p.status FROM policies p{where} ORDER BY p.status", params)
    tags = _values(
        conn,
        f"SELECT DISTINCT pt.tag FROM policy_tags pt JOIN policies p ON p.id = pt.policy_id{where} ORDER BY pt.tag",
        params,
    )
    portal_sql, portal_params = portal_names_sql(scope)
    portals = _values(conn, portal_sql, portal_params)

    return {
        "departments": departments,
        "categories": categories,
        "statuses": statuses,
        "tags": tags,
        "portals": portals,
    }
