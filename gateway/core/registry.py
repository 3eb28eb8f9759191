"""Known external services, their credential kinds, and the mirroring policy."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from gateway.models import Connection


class ServiceName(str, Enum):
    """External services a device session can connect."""

    KYG = "kyg"
    JIRA = "jira"
    CONFLUENCE = "confluence"
    BITBUCKET = "bitbucket"


class CredentialKind(str, Enum):
    """How a service acquires its stored credential."""

    OAUTH = "oauth"
    API_TOKEN = "api_token"
    LOGIN = "login"


class Provider(str, Enum):
    """Upstream identity providers backing one or more services."""

    ATLASSIAN = "atlassian"
    BITBUCKET = "bitbucket"
    KYG = "kyg"


@dataclass(frozen=True)
class ServiceDefinition:
    """Static description of a connectable service."""

    name: ServiceName
    display_name: str
    provider: Provider
    credential_kind: CredentialKind

    @property
    def requires_oauth(self) -> bool:
        return self.credential_kind is CredentialKind.OAUTH


SERVICE_REGISTRY: dict[ServiceName, ServiceDefinition] = {
    ServiceName.KYG: ServiceDefinition(
        ServiceName.KYG, "KYG", Provider.KYG, CredentialKind.LOGIN
    ),
    ServiceName.JIRA: ServiceDefinition(
        ServiceName.JIRA, "Jira", Provider.ATLASSIAN, CredentialKind.OAUTH
    ),
    ServiceName.CONFLUENCE: ServiceDefinition(
        ServiceName.CONFLUENCE, "Confluence", Provider.ATLASSIAN, CredentialKind.OAUTH
    ),
    ServiceName.BITBUCKET: ServiceDefinition(
        ServiceName.BITBUCKET, "Bitbucket", Provider.BITBUCKET, CredentialKind.API_TOKEN
    ),
}

# Services sharing one upstream identity; each side keeps its own row.
MIRRORED_SERVICES: dict[ServiceName, ServiceName] = {
    ServiceName.JIRA: ServiceName.CONFLUENCE,
    ServiceName.CONFLUENCE: ServiceName.JIRA,
}


@dataclass(frozen=True)
class TokenMaterial:
    """Token pair snapshot used to decide whether two rows are mirrors."""

    access_token: str
    refresh_token: str | None

    @classmethod
    def of(cls, connection: Connection | None) -> TokenMaterial | None:
        if connection is None:
            return None
        return cls(access_token=connection.access_token, refresh_token=connection.refresh_token)


def lookup_service(name: str | None) -> ServiceDefinition | None:
    """Resolve a service definition from its wire name."""
    if not name:
        return None
    try:
        return SERVICE_REGISTRY[ServiceName(name)]
    except ValueError:
        return None


def mirror_of(service: ServiceName) -> ServiceName | None:
    """Return the sibling service sharing credentials with `service`, if any."""
    return MIRRORED_SERVICES.get(service)


def shares_credential(primary: TokenMaterial | None, sibling: Connection | None) -> bool:
    """Return True when the sibling row carries exactly the primary's token material."""
    if primary is None or sibling is None:
        return False
    return TokenMaterial.of(sibling) == primary


def is_dependent_mirror(primary_before: TokenMaterial | None, sibling: Connection | None) -> bool:
    """Decide whether a sibling row follows the primary's lifecycle.

    A missing sibling always follows. An existing sibling follows only while it still
    holds the primary's token material; once re-authenticated on its own it is independent.
    """
    if sibling is None:
        return True
    return shares_credential(primary_before, sibling)
