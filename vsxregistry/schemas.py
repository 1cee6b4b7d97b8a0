from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class NamespaceDetails(BaseModel):
    """Editable namespace profile as submitted by an owner."""

    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    name: str
    display_name: Optional[str] = Field(default=None, alias="displayName")
    description: Optional[str] = None
    logo: Optional[str] = None
    logo_bytes: Optional[bytes] = Field(default=None, alias="logoBytes", repr=False)
    website: Optional[str] = None
    support_link: Optional[str] = Field(default=None, alias="supportLink")
    social_links: Dict[str, str] = Field(default_factory=dict, alias="socialLinks")

    @field_validator("social_links", mode="before")
    @classmethod
    def _drop_empty_links(cls, value: Optional[Dict[str, Optional[str]]]) -> Dict[str, str]:
        if not value:
            return {}
        return {provider: link for provider, link in value.items() if link}


class AccessTokenJson(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    id: int
    value: Optional[str] = None
    created_timestamp: Optional[datetime] = Field(default=None, alias="createdTimestamp")
    accessed_timestamp: Optional[datetime] = Field(default=None, alias="accessedTimestamp")
    description: Optional[str] = None
    delete_token_url: Optional[str] = Field(default=None, alias="deleteTokenUrl")


class ResultJson(BaseModel):
    """Outcome message of a mutating operation; exactly one field is set."""

    success: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def success_result(cls, message: str) -> "ResultJson":
        return cls(success=message)
