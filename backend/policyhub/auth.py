import json
import os
from pathlib import Path
from typing import Optional

import jwt
from fastapi import Header, Request

from .errors import AuthorizationError
from .logging_config import log_event
from .scope import ANONYMOUS, AuthenticatedUser, Caller

ROLE_ORDER = {"viewer": 0, "editor": 1, "admin": 2}


class CredentialsError(AuthorizationError):
    def __init__(self, message: str):
        super().__init__(message, status_code=401)


def _auth_configured() -> bool:
    return any(os.getenv(k) for k in ("API_TOKEN", "OIDC_HS256_SECRET", "OIDC_JWKS_URL", "OIDC_JWKS", "OIDC_JWKS_PATH"))


def _require_bearer(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise CredentialsError("Missing or invalid Authorization header")
    return authorization.split(" ", 1)[1].strip()


def _jwks_key(token: str, header: dict):
    inline = os.getenv("OIDC_JWKS")
    path = os.getenv("OIDC_JWKS_PATH")
    url = os.getenv("OIDC_JWKS_URL")
    if not inline and not path:
        return jwt.PyJWKClient(url).get_signing_key_from_jwt(token).key
    jwks = json.loads(inline) if inline else json.loads(Path(path).read_text(encoding="utf-8"))
    keys = jwks.get("keys", []) if isinstance(jwks, dict) else jwks
    kid = header.get("kid")
    selected = None
    for k in keys:
        if not kid or k.get("kid") == kid:
            selected = k
            if kid:
                break
    if not selected:
        raise CredentialsError("No matching JWK found")
    from jwt.algorithms import RSAAlgorithm
    return RSAAlgorithm.from_jwk(json.dumps(selected))


def decode_token(token: str) -> dict:
    """Validate a bearer token and return its claims.

    A static ``API_TOKEN`` is accepted verbatim when the presented token is
    not JWT-shaped. JWTs are checked against the RS256 JWKS when one is
    configured and the header says RS*, otherwise against the HS256 secret.
    """
    api_token = os.getenv("API_TOKEN")
    hs_secret = os.getenv("OIDC_HS256_SECRET")
    issuer = os.getenv("OIDC_ISSUER")
    audience = os.getenv("OIDC_AUDIENCE")
    has_jwks = any(os.getenv(k) for k in ("OIDC_JWKS_URL", "OIDC_JWKS", "OIDC_JWKS_PATH"))

    if api_token and token.count(".") < 2:
        if token != api_token:
            raise CredentialsError("Invalid token")
        role = os.getenv("API_ROLE", "admin").strip().lower()
        if role not in ROLE_ORDER:
            role = "admin"
        return {
            "auth": "static-token",
            "sub": os.getenv("API_USER_ID", "api-token"),
            "org_id": os.getenv("DEFAULT_ORG_ID"),
            "roles": [role],
        }

    try:
        header = jwt.get_unverified_header(token)
    except jwt.InvalidTokenError:
        raise CredentialsError("Malformed token")
    alg = header.get("alg", "").upper()
    options = {"verify_signature": True, "verify_exp": True, "verify_aud": bool(audience)}
    try:
        if has_jwks and (alg.startswith("RS") or not hs_secret):
            key, algorithms = _jwks_key(token, header), ["RS256"]
        elif hs_secret:
            key, algorithms = hs_secret, ["HS256"]
        else:
            raise CredentialsError("Unauthorized")
        claims = jwt.decode(
            token,
            key,
            algorithms=algorithms,
            audience=audience if audience else None,
            issuer=issuer if issuer else None,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        raise CredentialsError("Token expired")
    except jwt.PyJWTError as e:
        # also covers JWKS fetch failures from PyJWKClient
        raise CredentialsError(f"Invalid token: {str(e)}")
    except (ValueError, OSError) as e:
        # unreadable OIDC_JWKS / OIDC_JWKS_PATH
        raise CredentialsError(f"JWKS unavailable: {str(e)}")
    claims = dict(claims)
    claims["roles"] = list(_extract_roles(claims))
    return claims


def _extract_roles(claims: dict) -> set:
    roles = set()
    for key in ("roles", "role", "scope", "permissions"):
        if key in claims and claims[key]:
            val = claims[key]
            if isinstance(val, str):
                roles.update([p.strip().lower() for p in val.split() if p.strip()])
            elif isinstance(val, (list, tuple)):
                roles.update([str(p).strip().lower() for p in val])
    if not roles:
        roles = {"viewer"}
    return roles


def highest_role(roles) -> str:
    known = [r for r in roles if r in ROLE_ORDER]
    if not known:
        return "viewer"
    return max(known, key=lambda r: ROLE_ORDER[r])


def caller_from_claims(claims: dict) -> Caller:
    user_id = claims.get("sub") or claims.get("user_id")
    org_id = None
    for k in ("org", "org_id", "organization_id", "tenant", "tid"):
        if claims.get(k):
            org_id = str(claims[k])
            break
    if not user_id or not org_id:
        raise CredentialsError("Token carries no user or organization")
    return AuthenticatedUser(id=str(user_id), organization_id=org_id, role=highest_role(claims.get("roles", [])))


def _dev_header_caller(request: Request) -> Caller:
    # Header identities are a development convenience only
    if os.getenv("ENV", "dev").lower() == "prod":
        return ANONYMOUS
    user_id = request.headers.get("X-User-ID")
    org_id = request.headers.get("X-Org-ID") or os.getenv("DEFAULT_ORG_ID")
    if not user_id or not org_id:
        return ANONYMOUS
    role = (request.headers.get("X-User-Role") or "viewer").strip().lower()
    if role not in ROLE_ORDER:
        role = "viewer"
    return AuthenticatedUser(id=user_id, organization_id=org_id, role=role)


def resolve_caller(request: Request, authorization: Optional[str]) -> Caller:
    if not _auth_configured():
        return _dev_header_caller(request)
    token = _require_bearer(authorization)
    return caller_from_claims(decode_token(token))


def optional_caller(request: Request, authorization: Optional[str] = Header(default=None)) -> Caller:
    """Caller identity, or anonymous when there is none or it does not check out."""
    try:
        return resolve_caller(request, authorization)
    except AuthorizationError as exc:
        if authorization:
            log_event("identity_degraded", reason=exc.message, request_id=getattr(request.state, "request_id", None))
        return ANONYMOUS


def require_caller(request: Request, authorization: Optional[str] = Header(default=None)) -> Caller:
    caller = resolve_caller(request, authorization)
    if not caller.is_authenticated:
        raise CredentialsError("Authentication required")
    return caller
