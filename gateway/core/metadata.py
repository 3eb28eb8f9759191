"""Typed per-provider connection metadata with conversion at the storage edge."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class AtlassianUser(BaseModel):
    """Atlassian account profile returned by the `/me` endpoint."""

    model_config = ConfigDict(extra="ignore")

    account_id: str
    name: str | None = None
    email: str | None = None
    picture: str | None = None
    account_type: str | None = None
    account_status: str | None = None


class AtlassianResource(BaseModel):
    """Cloud site the Atlassian grant can reach."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    url: str
    name: str | None = None
    scopes: list[str] = Field(default_factory=list)
    avatar_url: str | None = Field(default=None, alias="avatarUrl")


class AtlassianMetadata(BaseModel):
    """Metadata stored for Jira and Confluence connections."""

    provider: Literal["atlassian"] = "atlassian"
    account_id: str
    url: str | None = None
    resources: list[AtlassianResource] = Field(default_factory=list)
    user_data: AtlassianUser | None = None

    @property
    def cloud_id(self) -> str | None:
        """Cloud id of the primary site."""
        for resource in self.resources:
            if self.url is None or resource.url == self.url:
                return resource.id
        return None

    def user_summary(self) -> dict[str, Any] | None:
        if self.user_data is None:
            return None
        return self.user_data.model_dump(exclude_none=True)

    def status_metadata(self) -> dict[str, Any]:
        return {"url": self.url} if self.url else {}


class BitbucketMetadata(BaseModel):
    """Metadata stored for Bitbucket API-token connections."""

    provider: Literal["bitbucket"] = "bitbucket"
    account_id: str
    uuid: str
    username: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None
    email: str | None = None
    workspace_id: str | None = None

    def user_summary(self) -> dict[str, Any]:
        summary = {
            "account_id": self.account_id,
            "username": self.username,
            "display_name": self.display_name,
            "name": self.display_name,
            "avatar_url": self.avatar_url,
        }
        return {key: value for key, value in summary.items() if value is not None}

    def status_metadata(self) -> dict[str, Any]:
        return {"workspace_id": self.workspace_id} if self.workspace_id else {}


class KygMetadata(BaseModel):
    """Metadata stored for KYG login connections."""

    provider: Literal["kyg"] = "kyg"
    account_id: str
    user_id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    company_id: str | None = None
    company_name: str | None = None
    roles: list[str] = Field(default_factory=list)

    @property
    def full_name(self) -> str | None:
        parts = [part for part in (self.first_name, self.last_name) if part]
        return " ".join(parts) or None

    def user_summary(self) -> dict[str, Any]:
        summary = {
            "account_id": self.account_id,
            "email": self.email,
            "name": self.full_name,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "user_id": self.user_id,
            "company_id": self.company_id,
            "company_name": self.company_name,
        }
        return {key: value for key, value in summary.items() if value is not None}

    def status_metadata(self) -> dict[str, Any]:
        return {}


ConnectionMetadata = Annotated[
    AtlassianMetadata | BitbucketMetadata | KygMetadata,
    Field(discriminator="provider"),
]

_METADATA_ADAPTER: TypeAdapter[ConnectionMetadata] = TypeAdapter(ConnectionMetadata)


class MetadataError(ValueError):
    """Raised when stored metadata does not match any known provider shape."""


def load_metadata(raw: dict[str, Any] | None) -> ConnectionMetadata:
    """Parse a stored metadata map into its typed variant."""
    try:
        return _METADATA_ADAPTER.validate_python(raw or {})
    except ValidationError as exc:
        raise MetadataError("Stored connection metadata is malformed.") from exc


def dump_metadata(metadata: ConnectionMetadata) -> dict[str, Any]:
    """Serialize a typed metadata variant into a JSON-compatible map."""
    return metadata.model_dump(mode="json", exclude_none=True)
