"""Policies due for review within the next 30 days.

Admins see every qualifying policy of their organization; editors only those
they wrote or are the designated reviewer of. Viewers and anonymous callers
are rejected before any SQL runs. The list, its count and the dashboard stats
share :func:`review_authorization_predicates`.
"""
import math
from datetime import datetime, timedelta
from typing import Any, Dict

from sqlalchemy import text
from sqlalchemy.engine import Connection

from .db import parse_db_timestamp, to_db_timestamp
from .errors import AuthorizationError
from .pager import PagedQuery, count_total, fetch_page, pagination_block
from .predicates import PredicateSet, equality_predicate
from .schemas import ReviewQueueParams, ReviewSort, ReviewStatus, SortOrder
from .scope import AuthenticatedUser, Caller

REVIEW_WINDOW = timedelta(days=30)
DUE_SOON_WINDOW = timedelta(days=7)
REVIEW_ROLES = ("admin", "editor")

REVIEW_SORT_COLUMNS = {
    ReviewSort.review_date: "p.review_date",
    ReviewSort.title: "p.title",
    ReviewSort.department: "p.department",
}


def authorize_review_caller(caller: Caller) -> AuthenticatedUser:
    if not isinstance(caller, AuthenticatedUser):
        raise AuthorizationError("Authentication required", status_code=401)
    if caller.role not in REVIEW_ROLES:
        raise AuthorizationError("Insufficient role", details={"role": caller.role, "required": list(REVIEW_ROLES)})
    return caller


def review_authorization_predicates(caller: AuthenticatedUser, now: datetime) -> PredicateSet:
    preds = PredicateSet()
    preds.add(("p.organization_id = :review_org_id", {"review_org_id": caller.organization_id}))
    preds.add(("p.review_date IS NOT NULL", {}))
    preds.add(("p.review_date <= :review_window_end", {"review_window_end": to_db_timestamp(now + REVIEW_WINDOW)}))
    if caller.role == "editor":
        preds.add((
            "p.author_id = :review_user_id OR p.reviewed_by = :review_user_id",
            {"review_user_id": caller.id},
        ))
    return preds


def review_status(review_date: datetime, now: datetime) -> ReviewStatus:
    if review_date < now:
        return ReviewStatus.overdue
    if review_date <= now + DUE_SOON_WINDOW:
        return ReviewStatus.due_soon
    return ReviewStatus.upcoming


def days_overdue(review_date: datetime, now: datetime) -> int:
    # Whole days, truncated toward zero; negative means days left
    return math.trunc((now - review_date).total_seconds() / 86400)


def _review_row(row: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    out = dict(row)
    when = parse_db_timestamp(row.get("review_date"))
    out["days_overdue"] = days_overdue(when, now)
    out["review_status"] = review_status(when, now)
    return out


def list_review_queue(conn: Connection, caller: Caller, params: ReviewQueueParams, now: datetime) -> Dict[str, Any]:
    user = authorize_review_caller(caller)
    preds = review_authorization_predicates(user, now)
    preds.add(equality_predicate("department", params.department))
    preds.add(equality_predicate("category", params.category))
    if params.overdue_only:
        preds.add(("p.review_date < :review_now", {"review_now": to_db_timestamp(now)}))

    direction = "ASC" if params.resolved_order == SortOrder.asc else "DESC"
    query = PagedQuery(
        base_from="policies p LEFT JOIN users u ON u.id = p.author_id",
        predicates=preds,
        columns=(
            "p.id AS id, p.title AS title, p.department AS department, p.category AS category, "
            "p.review_date AS review_date, p.author_id AS author_id, u.display_name AS author_display_name"
        ),
        order_by=f"{REVIEW_SORT_COLUMNS[params.sort]} {direction}, p.id {direction}",
    )
    rows = fetch_page(conn, query, params.page, params.limit)
    total = count_total(conn, query)
    return {
        "policies": [_review_row(r, now) for r in rows],
        "pagination": pagination_block(params.page, params.limit, total),
    }


def review_stats(conn: Connection, caller: Caller, now: datetime) -> Dict[str, int]:
    user = authorize_review_caller(caller)
    preds = review_authorization_predicates(user, now)
    params = dict(preds.params)
    params.update({
        "stats_now": to_db_timestamp(now),
        "stats_due_soon_until": to_db_timestamp(now + DUE_SOON_WINDOW),
    })
    row = conn.execute(
        text(
            f"""
            SELECT COUNT(*) AS total_due_for_review,
                   SUM(CASE WHEN p.review_date < :stats_now THEN 1 ELSE 0 END) AS total_overdue,
                   SUM(CASE WHEN p.review_date >= :stats_now AND p.review_date <= :stats_due_soon_until
                            THEN 1 ELSE 0 END) AS due_soon,
                   SUM(CASE WHEN p.review_date > :stats_due_soon_until THEN 1 ELSE 0 END) AS upcoming
            FROM policies p{preds.where_sql()}
            """
        ),
        params,
    ).mappings().first()
    row = row or {}
    return {k: int(row.get(k) or 0) for k in ("total_due_for_review", "total_overdue", "due_soon", "upcoming")}
