from typing import Any, Dict, List, Optional, Sequence

import bcrypt
from sqlalchemy import text
from sqlalchemy.engine import Connection

from .errors import AuthorizationError
from .scope import AuthenticatedUser, Caller, PortalScoped, portal_scope


def _id_placeholders(ids: Sequence[int]):
    names = [f"pid_{i}" for i in range(len(ids))]
    return ", ".join(f":{n}" for n in names), {n: int(v) for n, v in zip(names, ids)}


def load_portal_assignments(conn: Connection, policy_ids: Sequence[int]) -> Dict[int, List[Dict[str, Any]]]:
    """Portals for each policy on the current page, in one query."""
    if not policy_ids:
        return {}
    marks, params = _id_placeholders(policy_ids)
    rows = conn.execute(
        text(
            f"""
            SELECT ppa.policy_id AS policy_id, po.id AS portal_id, po.name AS name, po.slug AS slug,
                   po.requires_acknowledgment AS requires_acknowledgment
            FROM policy_portal_assignments ppa
            JOIN portals po ON po.id = ppa.portal_id
            WHERE ppa.policy_id IN ({marks})
            ORDER BY ppa.policy_id, po.name, po.id
            """
        ),
        params,
    ).mappings().all()
    out: Dict[int, List[Dict[str, Any]]] = {}
    for r in rows:
        out.setdefault(int(r["policy_id"]), []).append({
            "id": int(r["portal_id"]),
            "name": r["name"],
            "slug": r["slug"],
            "requires_acknowledgment": bool(r["requires_acknowledgment"]),
        })
    return out


def load_tags(conn: Connection, policy_ids: Sequence[int]) -> Dict[int, List[str]]:
    if not policy_ids:
        return {}
    marks, params = _id_placeholders(policy_ids)
    rows = conn.execute(
        text(f"SELECT policy_id, tag FROM policy_tags WHERE policy_id IN ({marks}) ORDER BY policy_id, tag"),
        params,
    ).all()
    out: Dict[int, List[str]] = {}
    for policy_id, tag in rows:
        out.setdefault(int(policy_id), []).append(tag)
    return out


# --- Portal passwords ---
def hash_portal_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("ascii")


def verify_portal_password(password: Optional[str], stored: Optional[str]) -> bool:
    if not password or not stored:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), stored.encode("utf-8"))
    except ValueError:
        # not a bcrypt hash
        return False


# --- Portal resolution ---
def find_active_portal(conn: Connection, slug: str, caller: Caller) -> Optional[Dict[str, Any]]:
    """Active portal by slug, preferring the caller's own organization."""
    cols = "id, organization_id, name, slug, access_type, password_hash, is_active, requires_acknowledgment"
    row = None
    if isinstance(caller, AuthenticatedUser):
        row = conn.execute(
            text(
                f"SELECT {cols} FROM portals WHERE slug = :slug AND organization_id = :org "
                "AND is_active = TRUE ORDER BY id DESC LIMIT 1"
            ),
            {"slug": slug, "org": caller.organization_id},
        ).mappings().first()
    if row is None:
        row = conn.execute(
            text(f"SELECT {cols} FROM portals WHERE slug = :slug AND is_active = TRUE ORDER BY id DESC LIMIT 1"),
            {"slug": slug},
        ).mappings().first()
    return dict(row) if row is not None else None


def authorize_portal(portal: Dict[str, Any], caller: Caller, password: Optional[str]) -> PortalScoped:
    access_type = (portal.get("access_type") or "public").lower()
    if access_type == "password":
        if not verify_portal_password(password, portal.get("password_hash")):
            raise AuthorizationError("Invalid portal password", status_code=401, details={"portal": portal["slug"]})
        return portal_scope(portal, password_verified=True)
    if access_type == "internal":
        if not isinstance(caller, AuthenticatedUser) or caller.organization_id != portal.get("organization_id"):
            raise AuthorizationError("Authentication required", status_code=401, details={"portal": portal["slug"]})
        return portal_scope(portal)
    if access_type == "public":
        return portal_scope(portal)
    raise AuthorizationError("Unsupported portal access type", details={"access_type": access_type})
