from __future__ import annotations

import copy
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence

from vsxregistry.logging import get_logger
from vsxregistry.storage.common import (
    PRE_RELEASE,
    is_universal,
    is_version_alias,
    all_versions_sort_key,
    collapse_key,
    collapsed_sort_key,
    latest_sort_key,
    parse_semver,
    sql_upper,
    version_string_sort_key,
)
from vsxregistry.storage.errors import ConstraintViolation
from vsxregistry.storage.models import (
    Extension,
    ExtensionVersion,
    Namespace,
    NamespaceMembership,
    Page,
    PersonalAccessToken,
    QueryRequest,
    SignatureKeyPair,
    User,
    VersionTargetPlatforms,
)
from vsxregistry.storage.predicates import (
    EV_EXTENSION_ID,
    EV_VERSION,
    EXT_NAME,
    EXT_PUBLIC_ID,
    NS_NAME,
    NS_PUBLIC_ID,
    ConditionSet,
    Eq,
    EqIgnoreCase,
    active_only,
    extension_ids_filter,
    latest_filter,
    target_platform_filter,
)

_USER_FIELDS = {
    "provider",
    "auth_id",
    "login_name",
    "full_name",
    "email",
    "avatar_url",
    "provider_url",
    "role",
}
_NAMESPACE_FIELDS = {
    "public_id",
    "display_name",
    "description",
    "website",
    "support_link",
    "social_links",
    "logo_name",
    "logo_bytes",
    "logo_storage_type",
}
_TOKEN_FIELDS = {"active", "accessed_timestamp", "description"}
_VERSION_METADATA_FIELDS = {
    "preview",
    "pre_release",
    "display_name",
    "description",
    "engines",
    "categories",
    "tags",
    "extension_kind",
    "license",
    "homepage",
    "repository",
    "sponsor_link",
    "bugs",
    "markdown",
    "gallery_color",
    "gallery_theme",
    "localized_languages",
    "qna",
    "dependencies",
    "bundled_extensions",
}

_TABLES = (
    "users",
    "tokens",
    "namespaces",
    "memberships",
    "extensions",
    "versions",
    "key_pairs",
    "_sequences",
)


class MemoryStore:
    """In-process registry store mirroring ``PostgresStore`` semantics.

    Filters are the same ``ConditionSet`` objects the SQL backend renders,
    and ordering uses the Python renditions of the shared ordering rule.
    Reads return detached copies so callers only change state through the
    store's write methods.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.tokens: Dict[int, PersonalAccessToken] = {}
        self.namespaces: Dict[int, Namespace] = {}
        self.memberships: Dict[int, NamespaceMembership] = {}
        self.extensions: Dict[int, Extension] = {}
        self.versions: Dict[int, ExtensionVersion] = {}
        self.key_pairs: Dict[int, SignatureKeyPair] = {}
        self._sequences: Dict[str, int] = {}
        # RLock so a transaction can wrap calls that take the lock again
        self._data_lock = threading.RLock()
        self._tx_depth = 0

    def _next_id(self, table: str) -> int:
        with self._data_lock:
            self._sequences[table] = self._sequences.get(table, 0) + 1
            return self._sequences[table]

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Unit of work: on error every table is restored to its entry state."""
        with self._data_lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield
                finally:
                    self._tx_depth -= 1
                return
            snapshot = copy.deepcopy({name: getattr(self, name) for name in _TABLES})
            self._tx_depth = 1
            try:
                yield
            except BaseException:
                for name, table in snapshot.items():
                    setattr(self, name, table)
                self.logger.info("memory_transaction_rolled_back")
                raise
            finally:
                self._tx_depth = 0

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------
    def create_user(
        self,
        login_name: Optional[str],
        *,
        provider: Optional[str] = "github",
        auth_id: Optional[str] = None,
        full_name: Optional[str] = None,
        email: Optional[str] = None,
        avatar_url: Optional[str] = None,
        provider_url: Optional[str] = None,
        role: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if auth_id is not None and any(
                existing.provider == provider and existing.auth_id == auth_id
                for existing in self.users.values()
            ):
                raise ConstraintViolation(
                    "user already exists", {"provider": provider, "auth_id": auth_id}
                )
            user = User(
                id=self._next_id("users"),
                provider=provider,
                auth_id=auth_id,
                login_name=login_name,
                full_name=full_name,
                email=email,
                avatar_url=avatar_url,
                provider_url=provider_url,
                role=role,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_login_name(self, provider: str, login_name: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.provider == provider and user.login_name == login_name:
                    return replace(user)
        return None

    def update_user(self, user_id: int, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _USER_FIELDS
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for name, value in fields.items():
                setattr(user, name, value)
            return replace(user)

    # ------------------------------------------------------------------
    # personal access tokens
    # ------------------------------------------------------------------
    def create_access_token(
        self,
        user_id: int,
        value: str,
        *,
        description: Optional[str] = None,
        created_timestamp: Optional[datetime] = None,
        active: bool = True,
    ) -> PersonalAccessToken:
        with self._data_lock:
            if any(token.value == value for token in self.tokens.values()):
                raise ConstraintViolation("token value already exists", {"field": "value"})
            token = PersonalAccessToken(
                id=self._next_id("tokens"),
                user_id=user_id,
                value=value,
                active=active,
                created_timestamp=created_timestamp or datetime.now(timezone.utc),
                description=description,
            )
            self.tokens[token.id] = token
            return replace(token)

    def _hydrate_token(self, token: PersonalAccessToken) -> PersonalAccessToken:
        user = self.users.get(token.user_id) if token.user_id is not None else None
        return replace(token, user=replace(user) if user else None)

    def find_access_token(self, token_id: int) -> Optional[PersonalAccessToken]:
        with self._data_lock:
            token = self.tokens.get(token_id)
            return self._hydrate_token(token) if token else None

    def find_access_token_by_value(self, value: str) -> Optional[PersonalAccessToken]:
        with self._data_lock:
            for token in self.tokens.values():
                if token.value == value:
                    return self._hydrate_token(token)
        return None

    def has_access_token(self, value: str) -> bool:
        with self._data_lock:
            return any(token.value == value for token in self.tokens.values())

    def update_access_token(self, token_id: int, **fields: Any) -> Optional[PersonalAccessToken]:
        unknown = set(fields) - _TOKEN_FIELDS
        if unknown:
            raise ValueError(f"unknown token fields: {sorted(unknown)}")
        with self._data_lock:
            token = self.tokens.get(token_id)
            if not token:
                return None
            for name, value in fields.items():
                setattr(token, name, value)
            return replace(token)

    # ------------------------------------------------------------------
    # namespaces & memberships
    # ------------------------------------------------------------------
    def create_namespace(self, name: str, *, public_id: Optional[str] = None, **fields: Any) -> Namespace:
        unknown = set(fields) - _NAMESPACE_FIELDS
        if unknown:
            raise ValueError(f"unknown namespace fields: {sorted(unknown)}")
        with self._data_lock:
            if any(existing.name == name for existing in self.namespaces.values()):
                raise ConstraintViolation("namespace already exists", {"name": name})
            namespace = Namespace(
                id=self._next_id("namespaces"),
                name=name,
                public_id=public_id or str(uuid.uuid4()),
                **fields,
            )
            self.namespaces[namespace.id] = namespace
            return copy.deepcopy(namespace)

    def find_namespace(self, name: str) -> Optional[Namespace]:
        with self._data_lock:
            for namespace in self.namespaces.values():
                if namespace.name == name:
                    return copy.deepcopy(namespace)
        return None

    def update_namespace(self, namespace_id: int, **fields: Any) -> Optional[Namespace]:
        unknown = set(fields) - _NAMESPACE_FIELDS
        if unknown:
            raise ValueError(f"unknown namespace fields: {sorted(unknown)}")
        with self._data_lock:
            namespace = self.namespaces.get(namespace_id)
            if not namespace:
                return None
            for name, value in fields.items():
                if name == "social_links":
                    value = dict(value or {})
                setattr(namespace, name, value)
            return copy.deepcopy(namespace)

    def find_membership(self, user_id: int, namespace_id: int) -> Optional[NamespaceMembership]:
        with self._data_lock:
            for membership in self.memberships.values():
                if membership.user_id == user_id and membership.namespace_id == namespace_id:
                    return replace(membership)
        return None

    def list_memberships(self, namespace_id: int) -> List[NamespaceMembership]:
        with self._data_lock:
            return [
                replace(membership)
                for membership in sorted(self.memberships.values(), key=lambda m: m.id)
                if membership.namespace_id == namespace_id
            ]

    def create_membership(self, namespace_id: int, user_id: int, role: str) -> NamespaceMembership:
        with self._data_lock:
            if self.find_membership(user_id, namespace_id):
                raise ConstraintViolation(
                    "membership already exists", {"namespace_id": namespace_id, "user_id": user_id}
                )
            membership = NamespaceMembership(
                id=self._next_id("memberships"),
                namespace_id=namespace_id,
                user_id=user_id,
                role=role,
            )
            self.memberships[membership.id] = membership
            return replace(membership)

    def update_membership_role(self, membership_id: int, role: str) -> Optional[NamespaceMembership]:
        with self._data_lock:
            membership = self.memberships.get(membership_id)
            if not membership:
                return None
            membership.role = role
            return replace(membership)

    def delete_membership(self, membership_id: int) -> bool:
        with self._data_lock:
            return self.memberships.pop(membership_id, None) is not None

    def is_namespace_owner(self, user_id: int, namespace_id: int) -> bool:
        membership = self.find_membership(user_id, namespace_id)
        return membership is not None and membership.role == NamespaceMembership.ROLE_OWNER

    def can_publish_in_namespace(self, user_id: int, namespace_id: int) -> bool:
        membership = self.find_membership(user_id, namespace_id)
        return membership is not None and membership.role in (
            NamespaceMembership.ROLE_OWNER,
            NamespaceMembership.ROLE_CONTRIBUTOR,
        )

    # ------------------------------------------------------------------
    # catalog writes
    # ------------------------------------------------------------------
    def create_extension(
        self,
        namespace: Namespace,
        name: str,
        *,
        public_id: Optional[str] = None,
        download_count: int = 0,
        average_rating: Optional[float] = None,
        review_count: Optional[int] = None,
        active: bool = True,
    ) -> Extension:
        with self._data_lock:
            stored_namespace = self.namespaces.get(namespace.id)
            if stored_namespace is None:
                raise ConstraintViolation("namespace not found", {"namespace_id": namespace.id})
            if any(
                existing.namespace is stored_namespace and sql_upper(existing.name) == sql_upper(name)
                for existing in self.extensions.values()
            ):
                raise ConstraintViolation(
                    "extension already exists", {"namespace": namespace.name, "name": name}
                )
            now = datetime.now(timezone.utc)
            extension = Extension(
                id=self._next_id("extensions"),
                name=name,
                namespace=stored_namespace,
                public_id=public_id or str(uuid.uuid4()),
                average_rating=average_rating,
                review_count=review_count,
                download_count=download_count,
                published_date=now,
                last_updated_date=now,
                active=active,
            )
            self.extensions[extension.id] = extension
            return copy.deepcopy(extension)

    def create_signature_key_pair(self, public_id: Optional[str] = None) -> SignatureKeyPair:
        with self._data_lock:
            key_pair = SignatureKeyPair(
                public_id=public_id or str(uuid.uuid4()), id=self._next_id("key_pairs")
            )
            self.key_pairs[key_pair.id] = key_pair
            return replace(key_pair)

    def create_extension_version(
        self,
        extension: Extension,
        version: str,
        *,
        target_platform: str = "universal",
        timestamp: Optional[datetime] = None,
        published_with: Optional[PersonalAccessToken] = None,
        signature_key_pair: Optional[SignatureKeyPair] = None,
        active: bool = True,
        **metadata: Any,
    ) -> ExtensionVersion:
        unknown = set(metadata) - _VERSION_METADATA_FIELDS
        if unknown:
            raise ValueError(f"unknown extension version fields: {sorted(unknown)}")
        semver = parse_semver(version)
        with self._data_lock:
            stored_extension = self.extensions.get(extension.id)
            if stored_extension is None:
                raise ConstraintViolation("extension not found", {"extension_id": extension.id})
            for existing in self.versions.values():
                if (
                    existing.extension is stored_extension
                    and existing.version == version
                    and existing.target_platform == target_platform
                ):
                    raise ConstraintViolation(
                        "extension version already exists",
                        {
                            "extension": extension.name,
                            "version": version,
                            "target_platform": target_platform,
                        },
                    )
            record = ExtensionVersion(
                id=self._next_id("versions"),
                version=version,
                extension=stored_extension,
                target_platform=target_platform,
                semver_major=semver.major,
                semver_minor=semver.minor,
                semver_patch=semver.patch,
                semver_is_pre_release=semver.is_pre_release,
                universal_target_platform=is_universal(target_platform),
                timestamp=timestamp or datetime.now(timezone.utc),
                active=active,
                published_with=PersonalAccessToken(id=published_with.id) if published_with else None,
                signature_key_pair=self.key_pairs.get(signature_key_pair.id) if signature_key_pair else None,
                **metadata,
            )
            self.versions[record.id] = record
            return self._hydrate(record)

    # ------------------------------------------------------------------
    # version query engine
    # ------------------------------------------------------------------
    def _hydrate(
        self,
        version: ExtensionVersion,
        *,
        type: str = ExtensionVersion.TYPE_REGULAR,
        extension: Optional[Extension] = None,
    ) -> ExtensionVersion:
        published_with = None
        if version.published_with is not None:
            token = self.tokens.get(version.published_with.id)
            if token is not None:
                published_with = self._hydrate_token(token)
        key_pair = version.signature_key_pair
        return replace(
            version,
            extension=extension or copy.deepcopy(version.extension),
            published_with=published_with,
            signature_key_pair=replace(key_pair) if key_pair else None,
            engines=list(version.engines),
            categories=list(version.categories),
            tags=list(version.tags),
            extension_kind=list(version.extension_kind),
            localized_languages=list(version.localized_languages),
            dependencies=list(version.dependencies),
            bundled_extensions=list(version.bundled_extensions),
            type=type,
        )

    def _select(self, conditions: ConditionSet) -> List[ExtensionVersion]:
        with self._data_lock:
            return conditions.filter(sorted(self.versions.values(), key=lambda v: v.id))

    def find_active_versions_by_extension_ids(
        self, extension_ids: Sequence[int], target_platform: Optional[str] = None
    ) -> List[ExtensionVersion]:
        if not extension_ids:
            return []
        conditions = active_only()
        conditions.add(extension_ids_filter(list(extension_ids)))
        conditions.extend(target_platform_filter(target_platform))
        with self._data_lock:
            return [
                self._hydrate(version, type=ExtensionVersion.TYPE_MINIMAL)
                for version in self._select(conditions)
            ]

    @staticmethod
    def _distinct_version_strings(versions: List[ExtensionVersion]) -> List[str]:
        ordered: List[str] = []
        seen = set()
        for version in sorted(versions, key=version_string_sort_key):
            if version.version not in seen:
                seen.add(version.version)
                ordered.append(version.version)
        return ordered

    def find_active_version_strings_sorted(
        self,
        namespace_name: str,
        extension_name: str,
        target_platform: Optional[str] = None,
        *,
        page_number: int = 0,
        page_size: int = 100,
    ) -> Page[str]:
        conditions = active_only()
        conditions.add(EqIgnoreCase(NS_NAME, namespace_name))
        conditions.add(EqIgnoreCase(EXT_NAME, extension_name))
        conditions.extend(target_platform_filter(target_platform))
        versions = self._distinct_version_strings(self._select(conditions))
        offset = max(page_number, 0) * max(page_size, 0)
        return Page(
            items=versions[offset : offset + max(page_size, 0)],
            page_number=page_number,
            page_size=page_size,
            total=len(versions),
        )

    def find_version_strings_sorted(
        self,
        extension_id: int,
        target_platform: Optional[str] = None,
        *,
        only_active: bool = True,
        limit: int = 100,
    ) -> List[str]:
        conditions = ConditionSet([Eq(EV_EXTENSION_ID, extension_id)])
        conditions.extend(target_platform_filter(target_platform))
        if only_active:
            conditions.extend(active_only())
        return self._distinct_version_strings(self._select(conditions))[: max(limit, 0)]

    def find_active_version_strings_sorted_bulk(
        self,
        extension_ids: Sequence[int],
        target_platform: Optional[str] = None,
        limit: int = 1,
    ) -> Dict[int, List[str]]:
        result: Dict[int, List[str]] = {}
        for extension_id in dict.fromkeys(extension_ids):
            conditions = active_only().add(Eq(EV_EXTENSION_ID, extension_id))
            conditions.extend(target_platform_filter(target_platform))
            versions = self._distinct_version_strings(self._select(conditions))[: max(limit, 0)]
            if versions:
                result[extension_id] = versions
        return result

    def find_active_version_references_sorted(
        self, extensions: Sequence[Extension], limit: int = 1
    ) -> List[ExtensionVersion]:
        references: List[ExtensionVersion] = []
        with self._data_lock:
            for extension_id in dict.fromkeys(extension.id for extension in extensions):
                conditions = active_only().add(Eq(EV_EXTENSION_ID, extension_id))
                ranked = sorted(self._select(conditions), key=latest_sort_key)
                references.extend(
                    self._hydrate(version, type=ExtensionVersion.TYPE_REFERENCE)
                    for version in ranked[: max(limit, 0)]
                )
        return references

    def find_active_versions(self, request: QueryRequest) -> Page[ExtensionVersion]:
        conditions = active_only()
        if request.namespace_uuid:
            conditions.add(Eq(NS_PUBLIC_ID, request.namespace_uuid))
        if request.namespace_name:
            conditions.add(EqIgnoreCase(NS_NAME, request.namespace_name))
        if request.extension_uuid:
            conditions.add(Eq(EXT_PUBLIC_ID, request.extension_uuid))
        if request.extension_name:
            conditions.add(EqIgnoreCase(EXT_NAME, request.extension_name))
        conditions.extend(target_platform_filter(request.target_platform))
        if request.extension_version:
            conditions.add(Eq(EV_VERSION, request.extension_version))

        with self._data_lock:
            matched = self._select(conditions)
            if request.include_all_versions:
                ordered = sorted(matched, key=all_versions_sort_key)
            else:
                ordered = []
                seen = set()
                for version in sorted(matched, key=collapsed_sort_key):
                    key = collapse_key(version)
                    if key not in seen:
                        seen.add(key)
                        ordered.append(version)
            offset = max(request.offset, 0)
            window = ordered[offset : offset + max(request.size, 0)]
            items = [self._hydrate(version) for version in window]
        return Page(
            items=items,
            page_number=request.page_number,
            page_size=request.size,
            total=len(ordered),
        )

    def _find_all_active(self, conditions: ConditionSet) -> List[ExtensionVersion]:
        with self._data_lock:
            return [self._hydrate(version) for version in self._select(conditions)]

    def find_active_versions_by_version(
        self, version: str, extension_name: str, namespace_name: str
    ) -> List[ExtensionVersion]:
        conditions = active_only().extend(
            [
                Eq(EV_VERSION, version),
                EqIgnoreCase(EXT_NAME, extension_name),
                EqIgnoreCase(NS_NAME, namespace_name),
            ]
        )
        return self._find_all_active(conditions)

    def find_active_versions_by_extension(
        self,
        extension_name: str,
        namespace_name: str,
        target_platform: Optional[str] = None,
    ) -> List[ExtensionVersion]:
        conditions = active_only().extend(
            [EqIgnoreCase(EXT_NAME, extension_name), EqIgnoreCase(NS_NAME, namespace_name)]
        )
        conditions.extend(target_platform_filter(target_platform))
        return self._find_all_active(conditions)

    def find_active_versions_by_namespace(
        self, namespace_name: str, target_platform: Optional[str] = None
    ) -> List[ExtensionVersion]:
        conditions = active_only().add(EqIgnoreCase(NS_NAME, namespace_name))
        conditions.extend(target_platform_filter(target_platform))
        return self._find_all_active(conditions)

    def find_active_versions_by_extension_name(
        self, extension_name: str, target_platform: Optional[str] = None
    ) -> List[ExtensionVersion]:
        conditions = active_only().add(EqIgnoreCase(EXT_NAME, extension_name))
        conditions.extend(target_platform_filter(target_platform))
        return self._find_all_active(conditions)

    def _latest(self, conditions: ConditionSet) -> Optional[ExtensionVersion]:
        ranked = sorted(self._select(conditions), key=latest_sort_key)
        return ranked[0] if ranked else None

    def find_latest_version(
        self,
        extension: Extension,
        target_platform: Optional[str] = None,
        *,
        only_pre_release: bool = False,
        only_active: bool = True,
    ) -> Optional[ExtensionVersion]:
        conditions = latest_filter(target_platform, only_pre_release, only_active)
        conditions.add(Eq(EV_EXTENSION_ID, extension.id))
        with self._data_lock:
            latest = self._latest(conditions)
            return self._hydrate(latest, extension=extension) if latest else None

    def find_latest_version_reference(
        self,
        extension: Extension,
        target_platform: Optional[str] = None,
        *,
        only_pre_release: bool = False,
        only_active: bool = True,
    ) -> Optional[ExtensionVersion]:
        conditions = latest_filter(target_platform, only_pre_release, only_active)
        conditions.add(Eq(EV_EXTENSION_ID, extension.id))
        with self._data_lock:
            latest = self._latest(conditions)
            if latest is None:
                return None
            return ExtensionVersion(
                id=latest.id,
                version=latest.version,
                extension=extension,
                preview=latest.preview,
                type=ExtensionVersion.TYPE_MINIMAL,
            )

    def find_latest_versions_for_namespace(self, namespace: Namespace) -> List[ExtensionVersion]:
        results: List[ExtensionVersion] = []
        with self._data_lock:
            extensions = [
                extension
                for extension in sorted(self.extensions.values(), key=lambda e: e.id)
                if extension.namespace is not None
                and extension.namespace.id == namespace.id
                and extension.active
            ]
            extensions.sort(key=lambda e: e.download_count, reverse=True)
            for extension in extensions:
                latest = self._latest(active_only().add(Eq(EV_EXTENSION_ID, extension.id)))
                if latest is None:
                    continue
                detached = replace(copy.deepcopy(extension), namespace=namespace)
                results.append(self._hydrate(latest, extension=detached))
        return results

    def find_latest_versions_for_user(self, user: User) -> List[ExtensionVersion]:
        results: List[ExtensionVersion] = []
        with self._data_lock:
            token_ids = {
                token.id for token in self.tokens.values() if token.user_id == user.id
            }
            extension_ids = {
                version.extension.id
                for version in self.versions.values()
                if version.published_with is not None
                and version.published_with.id in token_ids
            }
            extensions = sorted(
                (self.extensions[extension_id] for extension_id in extension_ids),
                key=lambda e: (e.namespace.name if e.namespace else "", e.name),
            )
            for extension in extensions:
                latest = self._latest(ConditionSet([Eq(EV_EXTENSION_ID, extension.id)]))
                if latest is not None:
                    results.append(self._hydrate(latest))
        return results

    def find_version(
        self,
        namespace_name: str,
        extension_name: str,
        target_platform: Optional[str],
        version: str,
    ) -> Optional[ExtensionVersion]:
        conditions = latest_filter(
            target_platform, only_pre_release=version == PRE_RELEASE, only_active=True
        )
        conditions.add(EqIgnoreCase(EXT_NAME, extension_name))
        conditions.add(EqIgnoreCase(NS_NAME, namespace_name))
        if not is_version_alias(version):
            conditions.add(Eq(EV_VERSION, version))
        with self._data_lock:
            latest = self._latest(conditions)
            return self._hydrate(latest) if latest else None

    def find_distinct_target_platforms(self, extension: Extension) -> List[str]:
        conditions = active_only().add(Eq(EV_EXTENSION_ID, extension.id))
        return sorted({version.target_platform for version in self._select(conditions)})

    def find_target_platforms_grouped_by_version(
        self, extension: Extension, *, only_active: bool = True
    ) -> List[VersionTargetPlatforms]:
        conditions = ConditionSet([Eq(EV_EXTENSION_ID, extension.id)])
        if only_active:
            conditions.extend(active_only())
        grouped: Dict[str, List[ExtensionVersion]] = {}
        for version in sorted(self._select(conditions), key=version_string_sort_key):
            grouped.setdefault(version.version, []).append(version)
        return [
            VersionTargetPlatforms(
                version=version,
                target_platforms=[
                    row.target_platform
                    for row in sorted(
                        rows, key=lambda r: (not r.universal_target_platform, r.target_platform)
                    )
                ],
            )
            for version, rows in grouped.items()
        ]

    def find_versions_for_urls(
        self, extension: Extension, target_platform: Optional[str], version: str
    ) -> List[ExtensionVersion]:
        conditions = ConditionSet([Eq(EV_EXTENSION_ID, extension.id), Eq(EV_VERSION, version)])
        conditions.extend(target_platform_filter(target_platform))
        return [
            ExtensionVersion(
                id=row.id,
                version=row.version,
                extension=extension,
                target_platform=row.target_platform,
                universal_target_platform=row.universal_target_platform,
                type=ExtensionVersion.TYPE_MINIMAL,
            )
            for row in self._select(conditions)
        ]
