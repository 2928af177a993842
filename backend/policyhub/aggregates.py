"""Per-policy acknowledgment aggregates.

The counters are computed by a grouped derived table over
``policy_assignments`` left-joined to the distinct acknowledgment pairs, and
attached to the page query with a LEFT JOIN on policy id. Both derived tables
are restricted to the caller's organization even though the base policy set is
already scoped; for an anonymous caller they are empty by construction
(``1 = 0``), which is what makes every counter zero and ``acknowledged``
false in the public view.

``acknowledged`` on the organization listing reports whether the caller has an
*assignment* row for the policy, not whether an acknowledgment exists. Existing
clients depend on that reading, so it is kept as is. Portal listings pass
``acknowledged_by="acknowledgment"`` and get the literal reading: the caller
has an acknowledgment row for the policy.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Tuple

from .db import to_db_timestamp
from .scope import Caller

DUE_SOON_WINDOW = timedelta(days=7)

STATS_ALIAS = "ack_stats"
MINE_ALIAS = "caller_marks"


@dataclass
class AggregateJoin:
    columns: str
    joins: str
    params: Dict[str, Any]


def _org_filter(caller: Caller):
    if caller.is_authenticated:
        return "pa.organization_id = :agg_org_id", {"agg_org_id": caller.organization_id}
    return "1 = 0", {}


def acknowledgment_stats_sql(caller: Caller, now: datetime) -> Tuple[str, Dict[str, Any]]:
    where, params = _org_filter(caller)
    params = dict(params)
    params["agg_now"] = to_db_timestamp(now)
    params["agg_due_soon_until"] = to_db_timestamp(now + DUE_SOON_WINDOW)
    sql = f"""
        SELECT pa.policy_id AS policy_id,
               COUNT(pa.user_id) AS assigned_count,
               SUM(CASE WHEN ack.user_id IS NOT NULL THEN 1 ELSE 0 END) AS acknowledged_count,
               SUM(CASE WHEN ack.user_id IS NULL AND pa.due_date IS NOT NULL
                         AND pa.due_date < :agg_now THEN 1 ELSE 0 END) AS overdue_count,
               SUM(CASE WHEN ack.user_id IS NULL AND pa.due_date IS NOT NULL
                         AND pa.due_date >= :agg_now AND pa.due_date <= :agg_due_soon_until
                         THEN 1 ELSE 0 END) AS due_soon_count
        FROM policy_assignments pa
        LEFT JOIN (
            SELECT DISTINCT policy_id, user_id FROM policy_acknowledgments
        ) ack ON ack.policy_id = pa.policy_id AND ack.user_id = pa.user_id
        WHERE {where}
        GROUP BY pa.policy_id
    """
    return sql, params


def caller_assignments_sql(caller: Caller) -> Tuple[str, Dict[str, Any]]:
    if not caller.is_authenticated:
        return "SELECT pa.policy_id AS policy_id FROM policy_assignments pa WHERE 1 = 0", {}
    sql = (
        "SELECT DISTINCT pa.policy_id AS policy_id FROM policy_assignments pa "
        "WHERE pa.user_id = :agg_caller_id AND pa.organization_id = :agg_caller_org_id"
    )
    return sql, {"agg_caller_id": caller.id, "agg_caller_org_id": caller.organization_id}


def caller_acknowledgments_sql(caller: Caller) -> Tuple[str, Dict[str, Any]]:
    if not caller.is_authenticated:
        return "SELECT pk.policy_id AS policy_id FROM policy_acknowledgments pk WHERE 1 = 0", {}
    sql = "SELECT DISTINCT pk.policy_id AS policy_id FROM policy_acknowledgments pk WHERE pk.user_id = :agg_caller_id"
    return sql, {"agg_caller_id": caller.id}


def aggregate_join(caller: Caller, now: datetime, acknowledged_by: str = "assignment") -> AggregateJoin:
    stats_sql, stats_params = acknowledgment_stats_sql(caller, now)
    if acknowledged_by == "acknowledgment":
        mine_sql, mine_params = caller_acknowledgments_sql(caller)
    else:
        mine_sql, mine_params = caller_assignments_sql(caller)
    columns = f"""
        COALESCE({STATS_ALIAS}.assigned_count, 0) AS assigned_count,
        COALESCE({STATS_ALIAS}.acknowledged_count, 0) AS acknowledged_count,
        COALESCE({STATS_ALIAS}.overdue_count, 0) AS overdue_count,
        COALESCE({STATS_ALIAS}.due_soon_count, 0) AS due_soon_count,
        CASE WHEN {MINE_ALIAS}.policy_id IS NOT NULL THEN 1 ELSE 0 END AS acknowledged,
        CASE WHEN EXISTS (
            SELECT 1 FROM policy_portal_assignments rppa
            JOIN portals rpo ON rpo.id = rppa.portal_id
            WHERE rppa.policy_id = p.id AND rpo.requires_acknowledgment = TRUE
        ) THEN 1 ELSE 0 END AS requires_acknowledgment_from_portals
    """
    joins = (
        f" LEFT JOIN ({stats_sql}) {STATS_ALIAS} ON {STATS_ALIAS}.policy_id = p.id"
        f" LEFT JOIN ({mine_sql}) {MINE_ALIAS} ON {MINE_ALIAS}.policy_id = p.id"
    )
    params = dict(stats_params)
    params.update(mine_params)
    return AggregateJoin(columns=columns, joins=joins, params=params)


def normalize_counters(row: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(row)
    for key in ("assigned_count", "acknowledged_count", "overdue_count", "due_soon_count"):
        out[key] = int(out.get(key) or 0)
    out["acknowledged"] = bool(out.get("acknowledged"))
    out["requires_acknowledgment_from_portals"] = bool(out.get("requires_acknowledgment_from_portals"))
    return out
