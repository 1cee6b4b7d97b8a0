from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")


@dataclass
class User:
    ROLE_PRIVILEGED = "privileged"

    id: int
    provider: Optional[str] = None
    auth_id: Optional[str] = None
    login_name: Optional[str] = None
    full_name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None
    provider_url: Optional[str] = None
    role: Optional[str] = None


@dataclass
class PersonalAccessToken:
    id: int
    user_id: Optional[int] = None
    value: Optional[str] = None
    active: bool = True
    created_timestamp: Optional[datetime] = None
    accessed_timestamp: Optional[datetime] = None
    description: Optional[str] = None
    user: Optional[User] = None


@dataclass
class Namespace:
    id: int
    name: str
    public_id: Optional[str] = None
    display_name: Optional[str] = None
    description: Optional[str] = None
    website: Optional[str] = None
    support_link: Optional[str] = None
    social_links: Dict[str, str] = field(default_factory=dict)
    logo_name: Optional[str] = None
    logo_bytes: Optional[bytes] = None
    logo_storage_type: Optional[str] = None


@dataclass
class NamespaceMembership:
    ROLE_OWNER = "owner"
    ROLE_CONTRIBUTOR = "contributor"

    id: int
    namespace_id: int
    user_id: int
    role: str


@dataclass
class Extension:
    id: int
    name: str
    namespace: Optional[Namespace] = None
    public_id: Optional[str] = None
    average_rating: Optional[float] = None
    review_count: Optional[int] = None
    download_count: int = 0
    published_date: Optional[datetime] = None
    last_updated_date: Optional[datetime] = None
    active: bool = True


@dataclass
class SignatureKeyPair:
    public_id: Optional[str] = None
    id: Optional[int] = None


@dataclass
class ExtensionVersion:
    TYPE_REGULAR = "regular"
    TYPE_MINIMAL = "minimal"
    TYPE_REFERENCE = "reference"

    id: int
    version: str
    extension: Optional[Extension] = None
    target_platform: str = "universal"
    semver_major: Optional[int] = None
    semver_minor: Optional[int] = None
    semver_patch: Optional[int] = None
    semver_is_pre_release: bool = False
    universal_target_platform: bool = True
    preview: bool = False
    pre_release: bool = False
    timestamp: Optional[datetime] = None
    display_name: Optional[str] = None
    description: Optional[str] = None
    engines: List[str] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    extension_kind: List[str] = field(default_factory=list)
    license: Optional[str] = None
    homepage: Optional[str] = None
    repository: Optional[str] = None
    sponsor_link: Optional[str] = None
    bugs: Optional[str] = None
    markdown: Optional[str] = None
    gallery_color: Optional[str] = None
    gallery_theme: Optional[str] = None
    localized_languages: List[str] = field(default_factory=list)
    qna: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)
    bundled_extensions: List[str] = field(default_factory=list)
    active: bool = True
    published_with: Optional[PersonalAccessToken] = None
    signature_key_pair: Optional[SignatureKeyPair] = None
    type: str = TYPE_REGULAR

    @property
    def publisher(self) -> Optional[User]:
        return self.published_with.user if self.published_with else None


@dataclass
class Page(Generic[T]):
    items: List[T]
    page_number: int
    page_size: int
    total: int

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return -(-self.total // self.page_size)


@dataclass
class QueryRequest:
    namespace_uuid: Optional[str] = None
    namespace_name: Optional[str] = None
    extension_uuid: Optional[str] = None
    extension_name: Optional[str] = None
    extension_version: Optional[str] = None
    target_platform: Optional[str] = None
    include_all_versions: bool = False
    offset: int = 0
    size: int = 100

    @property
    def page_number(self) -> int:
        # Callers pass offsets that are multiples of size
        return self.offset // self.size if self.size > 0 else 0


@dataclass
class VersionTargetPlatforms:
    version: str
    target_platforms: List[str] = field(default_factory=list)
