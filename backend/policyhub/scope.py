"""Caller identity and access scope.

A scope is resolved fresh for every request and decides which single set of
policies a query may ever touch: the public-portal set, one organization, or
one portal. The scopes are mutually exclusive; nothing downstream unions them.
"""
from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class Anonymous:
    is_authenticated = False


@dataclass(frozen=True)
class AuthenticatedUser:
    id: str
    organization_id: str
    role: str

    is_authenticated = True


Caller = Union[Anonymous, AuthenticatedUser]

ANONYMOUS = Anonymous()


@dataclass(frozen=True)
class PublicOnly:
    kind = "public"


@dataclass(frozen=True)
class OrganizationScoped:
    organization_id: str

    kind = "organization"


@dataclass(frozen=True)
class PortalScoped:
    portal_id: int
    password_verified: bool = False
    organization_id: Optional[str] = None

    kind = "portal"


AccessScope = Union[PublicOnly, OrganizationScoped, PortalScoped]


def resolve_scope(caller: Caller, public_only: bool = False) -> AccessScope:
    if not caller.is_authenticated:
        return PublicOnly()
    if public_only:
        # Org members may preview exactly what anonymous visitors see
        return PublicOnly()
    return OrganizationScoped(caller.organization_id)


def portal_scope(portal, password_verified: bool = False) -> PortalScoped:
    return PortalScoped(
        portal_id=int(portal["id"]),
        password_verified=password_verified,
        organization_id=portal.get("organization_id"),
    )
