import importlib
import os
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import jwt
import pytest
from fastapi.testclient import TestClient

HS_SECRET = "policyhub-test-secret-0123456789abcdef"

AUTH_ENV_KEYS = (
    "API_TOKEN",
    "API_ROLE",
    "API_USER_ID",
    "DEFAULT_ORG_ID",
    "OIDC_ISSUER",
    "OIDC_AUDIENCE",
    "OIDC_JWKS_URL",
    "OIDC_JWKS",
    "OIDC_JWKS_PATH",
    "ENV",
)

USERS = {
    "acme-admin": ("acme", "admin", "Acme Admin"),
    "acme-editor": ("acme", "editor", "Acme Editor"),
    "acme-viewer": ("acme", "viewer", "Acme Viewer"),
    "acme-staff": ("acme", "viewer", "Acme Staff"),
    "beta-admin": ("beta", "admin", "Beta Admin"),
}

BOARD_PASSWORD = "open sesame"


def make_token(user_id: str, org_id: str, role: str, **extra) -> str:
    claims = {
        "sub": user_id,
        "org_id": org_id,
        "roles": [role],
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    claims.update(extra)
    return jwt.encode(claims, HS_SECRET, algorithm="HS256")


def auth_headers(user_id: str) -> dict:
    org_id, role, _ = USERS[user_id]
    return {"Authorization": f"Bearer {make_token(user_id, org_id, role)}"}


def _insert(conn, table, **values):
    return conn.execute(table.insert().values(**values)).inserted_primary_key[0]


def seed_dataset(db, now: datetime) -> dict:
    """Two organizations, five portals and a handful of policies with assignments."""
    from backend.policyhub.portals import hash_portal_password

    ts = db.to_db_timestamp
    ids = {}
    with db.engine.begin() as conn:
        for org_id, name in (("acme", "Acme Corp"), ("beta", "Beta Ltd")):
            _insert(conn, db.organizations_table, id=org_id, name=name, created_at=ts(now))
        for user_id, (org_id, role, display_name) in USERS.items():
            _insert(
                conn,
                db.users_table,
                id=user_id,
                organization_id=org_id,
                display_name=display_name,
                email=f"{user_id}@example.org",
                role=role,
                created_at=ts(now),
            )

        def policy(key, org, title, status, department, category, tags, author, created_days_ago,
                   review_in_days=None, reviewed_by=None, content=""):
            pid = _insert(
                conn,
                db.policies_table,
                organization_id=org,
                title=title,
                content=content,
                status=status,
                department=department,
                category=category,
                effective_date=ts(now - timedelta(days=100)),
                review_date=ts(now + timedelta(days=review_in_days)) if review_in_days is not None else None,
                expiration_date=None,
                author_id=author,
                reviewed_by=reviewed_by,
                created_at=ts(now - timedelta(days=created_days_ago)),
                updated_at=ts(now - timedelta(days=1)),
            )
            for tag in tags:
                _insert(conn, db.policy_tags_table, policy_id=pid, tag=tag)
            ids[key] = pid

        policy("remote", "acme", "Remote Work Policy", "published", "HR", "Workplace", ["onboarding", "remote"],
               "acme-admin", 10, review_in_days=-5,
               content="Employees may work remotely up to three days per week.")
        policy("password", "acme", "Password Standard", "published", "IT", "Security", ["onboarding", "security"],
               "acme-editor", 9, review_in_days=3,
               content="Passwords must be rotated every ninety days.")
        policy("retention", "acme", "Data Retention Schedule", "draft", "IT", "Compliance", ["retention", "security"],
               "acme-admin", 8, review_in_days=20, reviewed_by="acme-editor",
               content="Records are kept for seven years.")
        policy("travel", "acme", "Travel Expenses", "published", "Finance", "Expenses", ["finance"],
               "acme-admin", 7, review_in_days=60,
               content="Economy class for flights under six hours.")
        policy("conduct", "acme", "Code of Conduct", "published", "HR", "Ethics", ["ethics"],
               "acme-admin", 6, content="Treat colleagues with respect.")
        policy("vpn", "acme", "Legacy VPN Guide", "archived", "IT", "Security", [],
               "acme-editor", 5, review_in_days=-40, content="Connect through the old concentrator.")
        policy("beta", "beta", "Beta Security Standard", "published", "IT", "Security", ["security"],
               "beta-admin", 4, review_in_days=-1, content="Beta laptops use full disk encryption.")

        def portal(key, org, name, slug, access_type, members, requires_ack=False, active=True, password=None):
            portal_id = _insert(
                conn,
                db.portals_table,
                organization_id=org,
                name=name,
                slug=slug,
                access_type=access_type,
                password_hash=hash_portal_password(password) if password else None,
                is_active=active,
                requires_acknowledgment=requires_ack,
                created_at=ts(now),
            )
            for member in members:
                _insert(conn, db.policy_portal_assignments_table, policy_id=ids[member], portal_id=portal_id)
            ids[f"portal:{key}"] = portal_id

        portal("handbook", "acme", "Employee Handbook", "handbook", "public",
               ["remote", "conduct", "retention"], requires_ack=True)
        portal("it", "acme", "IT Portal", "it-internal", "internal", ["password", "retention"])
        portal("board", "acme", "Board Room", "board", "password", ["travel"], password=BOARD_PASSWORD)
        portal("beta", "beta", "Beta Public", "beta-public", "public", ["beta"])
        portal("retired", "acme", "Retired Portal", "retired", "public", ["travel"], active=False)

        def assign(key, user_id, due_in_days, org="acme"):
            _insert(
                conn,
                db.policy_assignments_table,
                policy_id=ids[key],
                user_id=user_id,
                organization_id=org,
                due_date=ts(now + timedelta(days=due_in_days)),
                created_at=ts(now),
            )

        def acknowledge(key, user_id):
            _insert(conn, db.policy_acknowledgments_table, policy_id=ids[key], user_id=user_id,
                    acknowledged_at=ts(now))

        # remote: one overdue, one due soon, one acknowledged
        assign("remote", "acme-viewer", -2)
        assign("remote", "acme-staff", 3)
        assign("remote", "acme-editor", 3)
        acknowledge("remote", "acme-staff")
        # password: acknowledged twice by the same user, counted once
        assign("password", "acme-viewer", 30)
        acknowledge("password", "acme-viewer")
        acknowledge("password", "acme-viewer")
        # conduct: acknowledged without ever being assigned
        acknowledge("conduct", "acme-admin")
        # beta: another organization's assignment
        assign("beta", "beta-admin", -3, org="beta")
    return ids


@pytest.fixture(scope="module")
def api(tmp_path_factory):
    # Temp SQLite DB per test module; set before the engine is (re)built
    db_path = tmp_path_factory.mktemp("policyhub") / "test.db"
    saved = {k: os.environ.get(k) for k in AUTH_ENV_KEYS + ("DATABASE_URL", "OIDC_HS256_SECRET")}
    for k in AUTH_ENV_KEYS:
        os.environ.pop(k, None)
    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"
    os.environ["OIDC_HS256_SECRET"] = HS_SECRET

    import backend.policyhub.db as db
    importlib.reload(db)
    from backend.policyhub import main

    with TestClient(main.app) as client:
        now = db.utcnow()
        ids = seed_dataset(db, now)
        yield SimpleNamespace(client=client, db=db, main=main, ids=ids, now=now)

    db.engine.dispose()
    for k, v in saved.items():
        if v is None:
            os.environ.pop(k, None)
        else:
            os.environ[k] = v
