from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine, text

from backend.policyhub.aggregates import aggregate_join
from backend.policyhub.db import parse_db_timestamp, read_snapshot, to_db_timestamp
from backend.policyhub.errors import AuthorizationError, StorageError, ValidationError
from backend.policyhub.pager import PagedQuery, pagination_block
from backend.policyhub.portals import authorize_portal, hash_portal_password, verify_portal_password
from backend.policyhub.predicates import (
    PredicateSet,
    compose_predicates,
    scope_predicate,
    search_predicate,
    sort_clause,
)
from backend.policyhub.review_queue import authorize_review_caller, days_overdue, review_status
from backend.policyhub.schemas import (
    PolicyFilters,
    PolicyListParams,
    ReviewQueueParams,
    ReviewStatus,
    SortBy,
    SortOrder,
    parse_params,
)
from backend.policyhub.scope import (
    ANONYMOUS,
    AuthenticatedUser,
    OrganizationScoped,
    PortalScoped,
    PublicOnly,
    resolve_scope,
)

ADMIN = AuthenticatedUser(id="u1", organization_id="org-1", role="admin")
VIEWER = AuthenticatedUser(id="u2", organization_id="org-1", role="viewer")
NOW = datetime(2026, 3, 15, 12, 0, 0)


# --- Scope resolution ---
def test_anonymous_is_always_public():
    assert resolve_scope(ANONYMOUS) == PublicOnly()
    assert resolve_scope(ANONYMOUS, public_only=True) == PublicOnly()


def test_member_scope_and_public_preview():
    assert resolve_scope(ADMIN) == OrganizationScoped("org-1")
    assert resolve_scope(ADMIN, public_only=True) == PublicOnly()


def test_scope_predicates_are_exclusive():
    sql, params = scope_predicate(PublicOnly())
    assert "access_type = 'public'" in sql and "organization_id" not in sql
    assert params == {}
    sql, params = scope_predicate(OrganizationScoped("org-1"))
    assert sql == "p.organization_id = :scope_org_id"
    assert params == {"scope_org_id": "org-1"}
    sql, params = scope_predicate(PortalScoped(portal_id=7))
    assert params == {"scope_portal_id": 7}


# --- Predicate composition ---
def test_compose_skips_absent_filters():
    preds = compose_predicates(OrganizationScoped("org-1"), PolicyFilters(), "sqlite")
    assert len(preds.clauses) == 1
    assert preds.where_sql() == " WHERE (p.organization_id = :scope_org_id)"


def test_compose_binds_every_user_value():
    filters = PolicyFilters(search="o'brien data", department="HR", tags=["a", "b"], requires_acknowledgment=True)
    preds = compose_predicates(OrganizationScoped("org-1"), filters, "sqlite")
    where = preds.where_sql()
    assert "o'brien" not in where
    assert "HR" not in where
    assert preds.params["eq_department"] == "HR"
    assert preds.params["tag_0"] == "a" and preds.params["tag_1"] == "b"
    assert preds.params["search_0"] == "%o'brien%"
    assert preds.params["search_1"] == "%data%"


def test_search_uses_full_text_on_postgres():
    sql, params = search_predicate("  access   control ", "postgresql")
    assert "plainto_tsquery" in sql
    assert params == {"search_query": "access control"}
    assert search_predicate("   ", "postgresql") is None


def test_like_wildcards_are_escaped():
    _, params = search_predicate("100%_done", "sqlite")
    assert params["search_0"] == "%100\\%\\_done%"


def test_sqlite_search_matches_accented_terms():
    engine = create_engine("sqlite://")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE policies (id INTEGER PRIMARY KEY, title TEXT, content TEXT)"))
        conn.execute(text("INSERT INTO policies (title, content) VALUES ('Charte Éthique', NULL)"))
        conn.execute(text("INSERT INTO policies (title, content) VALUES ('Remote Work', 'Be reachable.')"))
        for term in ("Éthique", "ÉTHIQUE"):
            sql, params = search_predicate(term, "sqlite")
            rows = conn.execute(text(f"SELECT p.title FROM policies p WHERE {sql}"), params).scalars().all()
            assert rows == ["Charte Éthique"], term


def test_duplicate_bind_names_rejected():
    preds = PredicateSet().add(("a = :x", {"x": 1}))
    with pytest.raises(ValueError):
        preds.add(("b = :x", {"x": 2}))


def test_sort_clause_has_id_tiebreaker():
    assert sort_clause(SortBy.title, SortOrder.asc) == "p.title ASC, p.id ASC"
    assert sort_clause("created_at", "desc") == "p.created_at DESC, p.id DESC"


# --- Pager ---
def test_page_and_count_share_predicates():
    preds = compose_predicates(OrganizationScoped("org-1"), PolicyFilters(status="draft"), "sqlite")
    query = PagedQuery(base_from="policies p", predicates=preds, columns="p.id", order_by="p.id ASC")
    assert preds.where_sql() in query.page_sql()
    assert query.count_sql() == f"SELECT COUNT(*) FROM policies p{preds.where_sql()}"
    assert "ORDER BY" not in query.count_sql()
    assert query.page_params(10, 20)["page_offset"] == 20


def test_pagination_block():
    assert pagination_block(1, 10, 0) == {"page": 1, "limit": 10, "total": 0, "total_pages": 0}
    assert pagination_block(2, 10, 21)["total_pages"] == 3
    assert pagination_block(1, 5, 5)["total_pages"] == 1


# --- Parameter validation ---
def test_parse_params_defaults():
    params = parse_params(PolicyListParams, page=None, limit=None, tags=None)
    assert params.page == 1 and params.limit == 10
    assert params.sort_by == SortBy.created_at and params.sort_order == SortOrder.desc
    assert params.tags == []


@pytest.mark.parametrize("raw,field", [
    ({"page": 0}, "page"),
    ({"limit": 0}, "limit"),
    ({"limit": 101}, "limit"),
    ({"sort_by": "content"}, "sort_by"),
])
def test_parse_params_rejects(raw, field):
    with pytest.raises(ValidationError) as exc:
        parse_params(PolicyListParams, **raw)
    assert exc.value.field == field
    assert exc.value.status_code == 400


def test_tags_are_cleaned():
    filters = PolicyFilters(tags=["hr", " hr ", "", "__empty", "it"])
    assert filters.tags == ["hr", "it"]
    assert PolicyFilters(tags="solo").tags == ["solo"]
    assert not PolicyFilters(department="__empty").any_set


def test_review_order_defaults():
    assert ReviewQueueParams().resolved_order == SortOrder.asc
    assert ReviewQueueParams(sort="title").resolved_order == SortOrder.desc
    assert ReviewQueueParams(sort="title", order="asc").resolved_order == SortOrder.asc


# --- Aggregates ---
def test_anonymous_aggregates_are_empty_relations():
    agg = aggregate_join(ANONYMOUS, NOW)
    assert "1 = 0" in agg.joins
    assert "agg_org_id" not in agg.params


def test_member_aggregates_scoped_to_organization():
    agg = aggregate_join(ADMIN, NOW)
    assert agg.params["agg_org_id"] == "org-1"
    assert agg.params["agg_caller_id"] == "u1"
    assert agg.params["agg_due_soon_until"] == "2026-03-22T12:00:00"


def test_acknowledged_flag_source_is_selectable():
    by_assignment = aggregate_join(ADMIN, NOW)
    assert "FROM policy_assignments pa WHERE pa.user_id = :agg_caller_id" in by_assignment.joins
    by_ack = aggregate_join(ADMIN, NOW, acknowledged_by="acknowledgment")
    assert "FROM policy_acknowledgments pk WHERE pk.user_id = :agg_caller_id" in by_ack.joins
    assert "FROM policy_acknowledgments pk WHERE 1 = 0" in aggregate_join(ANONYMOUS, NOW, acknowledged_by="acknowledgment").joins


# --- Review queue helpers ---
def test_review_status_boundaries():
    assert review_status(NOW - timedelta(seconds=1), NOW) == ReviewStatus.overdue
    assert review_status(NOW, NOW) == ReviewStatus.due_soon
    assert review_status(NOW + timedelta(days=7), NOW) == ReviewStatus.due_soon
    assert review_status(NOW + timedelta(days=7, seconds=1), NOW) == ReviewStatus.upcoming


def test_days_overdue_truncates_toward_zero():
    assert days_overdue(NOW - timedelta(days=2, hours=23), NOW) == 2
    assert days_overdue(NOW + timedelta(days=2, hours=23), NOW) == -2
    assert days_overdue(NOW, NOW) == 0


def test_review_authorization():
    assert authorize_review_caller(ADMIN) is ADMIN
    with pytest.raises(AuthorizationError) as exc:
        authorize_review_caller(VIEWER)
    assert exc.value.status_code == 403
    with pytest.raises(AuthorizationError) as exc:
        authorize_review_caller(ANONYMOUS)
    assert exc.value.status_code == 401


# --- Portals ---
def test_portal_password_hashing():
    stored = hash_portal_password("letmein")
    assert stored.startswith("$2b$")
    assert verify_portal_password("letmein", stored)
    assert not verify_portal_password("letmeout", stored)
    assert not verify_portal_password(None, stored)
    assert not verify_portal_password("letmein", "garbage")


def test_authorize_portal_access_types():
    public = {"id": 1, "slug": "p", "access_type": "public", "organization_id": "org-1"}
    assert authorize_portal(public, ANONYMOUS, None) == PortalScoped(portal_id=1, organization_id="org-1")

    internal = dict(public, access_type="internal")
    assert authorize_portal(internal, VIEWER, None).portal_id == 1
    with pytest.raises(AuthorizationError) as exc:
        authorize_portal(internal, ANONYMOUS, None)
    assert exc.value.status_code == 401

    locked = dict(public, access_type="password", password_hash=hash_portal_password("pw"))
    assert authorize_portal(locked, ANONYMOUS, "pw").password_verified is True
    with pytest.raises(AuthorizationError):
        authorize_portal(locked, ADMIN, "nope")


# --- Storage ---
def test_timestamps_are_fixed_width():
    assert to_db_timestamp(datetime(2026, 1, 2, 3, 4, 5, 678)) == "2026-01-02T03:04:05"
    assert parse_db_timestamp("2026-01-02 03:04:05") == datetime(2026, 1, 2, 3, 4, 5)
    assert parse_db_timestamp(None) is None


def test_snapshot_wraps_driver_errors():
    engine = create_engine("sqlite://")
    with pytest.raises(StorageError) as exc:
        with read_snapshot(engine) as conn:
            conn.execute(text("SELECT * FROM missing_table"))
    assert exc.value.status_code == 500
    assert exc.value.details["error_type"] == "OperationalError"
