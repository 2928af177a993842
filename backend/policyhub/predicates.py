"""Predicate composition for policy listings.

Each ``*_predicate`` function returns one SQL fragment over the ``policies p``
alias together with the parameters it binds. ``compose_predicates`` collects
them into a single :class:`PredicateSet`; the page query, the count query and
the filter-metadata queries all render from that one object so they cannot
drift apart. User input only ever reaches the database as bound parameters;
the sort clause comes from a fixed lookup table.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .schemas import PolicyFilters, SortBy, SortOrder
from .scope import AccessScope, AuthenticatedUser, Caller, OrganizationScoped, PortalScoped, PublicOnly

Fragment = Tuple[str, Dict[str, Any]]

PUBLIC_PORTAL_POLICY_IDS = (
    "SELECT ppa.policy_id FROM policy_portal_assignments ppa "
    "JOIN portals po ON po.id = ppa.portal_id "
    "WHERE po.is_active = TRUE AND po.access_type = 'public'"
)

ACK_REQUIRED_POLICY_IDS = (
    "SELECT ppa.policy_id FROM policy_portal_assignments ppa "
    "JOIN portals po ON po.id = ppa.portal_id "
    "WHERE po.requires_acknowledgment = TRUE"
)

SORT_COLUMNS = {
    SortBy.title: "p.title",
    SortBy.created_at: "p.created_at",
    SortBy.updated_at: "p.updated_at",
    SortBy.effective_date: "p.effective_date",
}

# Roles that may see drafts inside a portal of their own organization
PORTAL_DRAFT_ROLES = ("admin", "editor")


@dataclass
class PredicateSet:
    clauses: List[str] = field(default_factory=list)
    params: Dict[str, Any] = field(default_factory=dict)

    def add(self, fragment: Optional[Fragment]) -> "PredicateSet":
        if fragment is None:
            return self
        sql, params = fragment
        overlap = set(params) & set(self.params)
        if overlap:
            raise ValueError(f"duplicate bind parameters: {sorted(overlap)}")
        self.clauses.append(sql)
        self.params.update(params)
        return self

    def where_sql(self) -> str:
        if not self.clauses:
            return ""
        return " WHERE " + " AND ".join(f"({c})" for c in self.clauses)


def _placeholders(prefix: str, values: Sequence[Any]) -> Tuple[str, Dict[str, Any]]:
    names = [f"{prefix}_{i}" for i in range(len(values))]
    return ", ".join(f":{n}" for n in names), dict(zip(names, values))


def scope_predicate(scope: AccessScope) -> Fragment:
    if isinstance(scope, PublicOnly):
        return f"p.id IN ({PUBLIC_PORTAL_POLICY_IDS})", {}
    if isinstance(scope, OrganizationScoped):
        return "p.organization_id = :scope_org_id", {"scope_org_id": scope.organization_id}
    if isinstance(scope, PortalScoped):
        return (
            "p.id IN (SELECT ppa.policy_id FROM policy_portal_assignments ppa WHERE ppa.portal_id = :scope_portal_id)",
            {"scope_portal_id": scope.portal_id},
        )
    raise TypeError(f"unknown access scope: {scope!r}")


def search_terms(search: Optional[str]) -> List[str]:
    if not search:
        return []
    return [t for t in search.split() if t]


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def search_predicate(search: Optional[str], dialect: str) -> Optional[Fragment]:
    terms = search_terms(search)
    if not terms:
        return None
    if dialect == "postgresql":
        # plainto_tsquery ANDs every term and ignores tsquery operators in user text
        return (
            "(setweight(to_tsvector('english', coalesce(p.title, '')), 'A') || "
            "setweight(to_tsvector('english', coalesce(p.content, '')), 'B')) "
            "@@ plainto_tsquery('english', :search_query)",
            {"search_query": " ".join(terms)},
        )
    # SQLite LIKE folds ASCII case itself; lower() would not fold accented letters
    parts = []
    params = {}
    for i, term in enumerate(terms):
        name = f"search_{i}"
        params[name] = f"%{_escape_like(term)}%"
        parts.append(
            f"(p.title LIKE :{name} ESCAPE '\\' OR coalesce(p.content, '') LIKE :{name} ESCAPE '\\')"
        )
    return " AND ".join(parts), params


def equality_predicate(column: str, value: Optional[str]) -> Optional[Fragment]:
    if value is None:
        return None
    name = f"eq_{column}"
    return f"p.{column} = :{name}", {name: value}


def tags_predicate(tags: Sequence[str]) -> Optional[Fragment]:
    if not tags:
        return None
    marks, params = _placeholders("tag", list(tags))
    return (
        f"EXISTS (SELECT 1 FROM policy_tags pt WHERE pt.policy_id = p.id AND pt.tag IN ({marks}))",
        params,
    )


def portal_name_predicate(portal: Optional[str]) -> Optional[Fragment]:
    if portal is None:
        return None
    return (
        "p.id IN (SELECT ppa.policy_id FROM policy_portal_assignments ppa "
        "JOIN portals po ON po.id = ppa.portal_id WHERE po.name = :portal_name)",
        {"portal_name": portal},
    )


def ack_required_predicate(required: Optional[bool]) -> Optional[Fragment]:
    if required is None:
        return None
    op = "IN" if required else "NOT IN"
    return f"p.id {op} ({ACK_REQUIRED_POLICY_IDS})", {}


def portal_visibility_predicate(scope: AccessScope, caller: Caller) -> Optional[Fragment]:
    if not isinstance(scope, PortalScoped):
        return None
    if (
        isinstance(caller, AuthenticatedUser)
        and caller.role in PORTAL_DRAFT_ROLES
        and caller.organization_id == scope.organization_id
    ):
        return "p.status IN ('draft', 'published')", {}
    return "p.status = 'published'", {}


def compose_predicates(
    scope: AccessScope,
    filters: PolicyFilters,
    dialect: str,
    caller: Optional[Caller] = None,
) -> PredicateSet:
    preds = PredicateSet()
    preds.add(scope_predicate(scope))
    if caller is not None:
        preds.add(portal_visibility_predicate(scope, caller))
    preds.add(search_predicate(filters.search, dialect))
    preds.add(equality_predicate("status", filters.status))
    preds.add(equality_predicate("department", filters.department))
    preds.add(equality_predicate("category", filters.category))
    preds.add(tags_predicate(filters.tags))
    preds.add(portal_name_predicate(filters.portal))
    preds.add(ack_required_predicate(filters.requires_acknowledgment))
    return preds


def scope_only(scope: AccessScope) -> PredicateSet:
    return PredicateSet().add(scope_predicate(scope))


def sort_clause(sort_by: SortBy, sort_order: SortOrder) -> str:
    column = SORT_COLUMNS[SortBy(sort_by)]
    direction = "ASC" if SortOrder(sort_order) == SortOrder.asc else "DESC"
    return f"{column} {direction}, p.id {direction}"
