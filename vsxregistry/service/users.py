from __future__ import annotations

import functools
import uuid
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Protocol, TypeVar

from vsxregistry.logging import correlation_scope, get_logger
from vsxregistry.schemas import AccessTokenJson, NamespaceDetails, ResultJson
from vsxregistry.service.errors import (
    BusinessRuleError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from vsxregistry.service.logos import STORAGE_DATABASE, LogoStorage
from vsxregistry.service.namespace_validation import NamespaceDetailsValidator, format_issues
from vsxregistry.storage.errors import ConstraintViolation
from vsxregistry.storage.models import (
    Namespace,
    NamespaceMembership,
    PersonalAccessToken,
    User,
)
from vsxregistry.storage.redis_cache import RegistryCache

logger = get_logger(__name__)

GITHUB_PROVIDER = "github"
REMOVE_ROLE = "remove"

# provider attribute -> user field, in reconciliation order
_GITHUB_ATTRIBUTES = (
    ("login", "login_name"),
    ("name", "full_name"),
    ("email", "email"),
    ("html_url", "provider_url"),
    ("avatar_url", "avatar_url"),
)


_F = TypeVar("_F", bound=Callable[..., Any])


def _operation(func: _F) -> _F:
    """Run a service operation under one correlation ID."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        with correlation_scope():
            return func(*args, **kwargs)

    return wrapper  # type: ignore[return-value]


class RegistryStore(Protocol):
    def transaction(self) -> AbstractContextManager[None]: ...

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
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_login_name(self, provider: str, login_name: str) -> Optional[User]: ...

    def update_user(self, user_id: int, **fields: Any) -> Optional[User]: ...

    def create_access_token(
        self,
        user_id: int,
        value: str,
        *,
        description: Optional[str] = None,
        created_timestamp: Optional[datetime] = None,
        active: bool = True,
    ) -> PersonalAccessToken: ...

    def find_access_token(self, token_id: int) -> Optional[PersonalAccessToken]: ...

    def find_access_token_by_value(self, value: str) -> Optional[PersonalAccessToken]: ...

    def has_access_token(self, value: str) -> bool: ...

    def update_access_token(self, token_id: int, **fields: Any) -> Optional[PersonalAccessToken]: ...

    def find_namespace(self, name: str) -> Optional[Namespace]: ...

    def update_namespace(self, namespace_id: int, **fields: Any) -> Optional[Namespace]: ...

    def find_membership(self, user_id: int, namespace_id: int) -> Optional[NamespaceMembership]: ...

    def create_membership(self, namespace_id: int, user_id: int, role: str) -> NamespaceMembership: ...

    def update_membership_role(self, membership_id: int, role: str) -> Optional[NamespaceMembership]: ...

    def delete_membership(self, membership_id: int) -> bool: ...

    def is_namespace_owner(self, user_id: int, namespace_id: int) -> bool: ...

    def can_publish_in_namespace(self, user_id: int, namespace_id: int) -> bool: ...


@dataclass(frozen=True)
class IdPrincipal:
    """Authenticated principal that carries a registry user id."""

    id: int


@dataclass
class OAuthUser:
    """Identity returned by the OAuth provider after login."""

    name: str
    attributes: Dict[str, Any] = field(default_factory=dict)

    def get_attribute(self, key: str) -> Any:
        return self.attributes.get(key)


class UserService:
    """Users, personal access tokens and namespace membership.

    Every mutation runs in one ``store.transaction()``; cache evictions are
    issued only after that unit of work has committed.
    """

    def __init__(
        self,
        store: RegistryStore,
        cache: Optional[RegistryCache],
        logos: LogoStorage,
        *,
        base_url: str,
        validator: Optional[NamespaceDetailsValidator] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.logos = logos
        self.base_url = base_url.rstrip("/")
        self.validator = validator or NamespaceDetailsValidator()
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------
    def find_logged_in_user(self, principal: Any) -> Optional[User]:
        if not isinstance(principal, IdPrincipal):
            return None
        return self.store.get_user(principal.id)

    @_operation
    def register_new_user(self, oauth_user: OAuthUser) -> User:
        try:
            with self.store.transaction():
                user = self.store.create_user(
                    oauth_user.get_attribute("login"),
                    provider=GITHUB_PROVIDER,
                    auth_id=oauth_user.name,
                    full_name=oauth_user.get_attribute("name"),
                    email=oauth_user.get_attribute("email"),
                    provider_url=oauth_user.get_attribute("html_url"),
                    avatar_url=oauth_user.get_attribute("avatar_url"),
                )
        except ConstraintViolation as exc:
            raise ConflictError(
                f"User already registered: {GITHUB_PROVIDER}/{oauth_user.name}", detail=exc.detail
            ) from exc
        self.logger.info("user_registered", user_id=user.id, provider=GITHUB_PROVIDER)
        return user

    @_operation
    def update_existing_user(self, user: User, oauth_user: OAuthUser) -> User:
        """Copy changed provider attributes onto the stored user."""
        if user.provider != GITHUB_PROVIDER:
            return user
        changes: Dict[str, Any] = {}
        for attribute, field_name in _GITHUB_ATTRIBUTES:
            value = oauth_user.get_attribute(attribute)
            if value is not None and value != getattr(user, field_name):
                changes[field_name] = value
        if not changes:
            return user

        with self.store.transaction():
            updated = self.store.update_user(user.id, **changes) or user
        self.logger.info("user_reconciled", user_id=user.id, fields=sorted(changes))
        if self.cache is not None:
            self.cache.evict_extension_jsons(updated)
        return updated

    def has_publish_permission(self, user: User, namespace: Namespace) -> bool:
        if user.role == User.ROLE_PRIVILEGED:
            return True
        return self.store.can_publish_in_namespace(user.id, namespace.id)

    # ------------------------------------------------------------------
    # access tokens
    # ------------------------------------------------------------------
    @_operation
    def use_access_token(self, value: str) -> Optional[PersonalAccessToken]:
        with self.store.transaction():
            token = self.store.find_access_token_by_value(value)
            if token is None or not token.active:
                return None
            accessed = self._now()
            self.store.update_access_token(token.id, accessed_timestamp=accessed)
        token.accessed_timestamp = accessed
        return token

    def generate_token_value(self) -> str:
        value = str(uuid.uuid4())
        while self.store.has_access_token(value):
            self.logger.debug("token_value_collision")
            value = str(uuid.uuid4())
        return value

    @_operation
    def create_access_token(self, user: User, description: Optional[str]) -> AccessTokenJson:
        with self.store.transaction():
            token = self.store.create_access_token(
                user.id,
                self.generate_token_value(),
                description=description,
                created_timestamp=self._now(),
            )
        self.logger.info("access_token_created", user_id=user.id, token_id=token.id)
        # The raw value is only ever returned here
        return AccessTokenJson(
            id=token.id,
            value=token.value,
            created_timestamp=token.created_timestamp,
            accessed_timestamp=token.accessed_timestamp,
            description=token.description,
            delete_token_url=f"{self.base_url}/user/token/delete/{token.id}",
        )

    @_operation
    def delete_access_token(self, user: User, token_id: int) -> ResultJson:
        with self.store.transaction():
            token = self.store.find_access_token(token_id)
            if token is None or not token.active:
                raise NotFoundError("Token does not exist.", detail={"token_id": token_id})
            owner = self.store.get_user(user.id)
            if owner is None or token.user_id != owner.id:
                raise NotFoundError("Token does not exist.", detail={"token_id": token_id})
            self.store.update_access_token(token.id, active=False)
        self.logger.info("access_token_deleted", user_id=owner.id, token_id=token_id)
        return ResultJson.success_result(f"Deleted access token for user {owner.login_name}.")

    # ------------------------------------------------------------------
    # namespace membership
    # ------------------------------------------------------------------
    @_operation
    def set_namespace_member(
        self,
        requesting_user: User,
        namespace_name: str,
        provider: str,
        user_login: str,
        role: str,
    ) -> ResultJson:
        """Add, re-role or remove a namespace member on behalf of an owner.

        ``role`` is ``owner``, ``contributor`` or ``remove``.
        """
        with self.store.transaction():
            namespace = self.store.find_namespace(namespace_name)
            if namespace is None or not self.store.is_namespace_owner(
                requesting_user.id, namespace.id
            ):
                raise ForbiddenError(
                    "You must be an owner of this namespace.",
                    detail={"namespace": namespace_name},
                )
            target = self.store.get_user_by_login_name(provider, user_login)
            if target is None:
                raise BusinessRuleError(f"User not found: {provider}/{user_login}")

            if role == REMOVE_ROLE:
                result = self._remove_namespace_member(namespace, target)
            else:
                result = self._add_namespace_member(namespace, target, role)
        self.logger.info(
            "namespace_member_set",
            namespace=namespace_name,
            requesting_user_id=requesting_user.id,
            target_user_id=target.id,
            role=role,
        )
        return result

    def _remove_namespace_member(self, namespace: Namespace, user: User) -> ResultJson:
        membership = self.store.find_membership(user.id, namespace.id)
        if membership is None:
            raise BusinessRuleError(f"User {user.login_name} is not a member of {namespace.name}.")
        self.store.delete_membership(membership.id)
        return ResultJson.success_result(
            f"Removed {user.login_name} from namespace {namespace.name}."
        )

    def _add_namespace_member(self, namespace: Namespace, user: User, role: str) -> ResultJson:
        if role not in (NamespaceMembership.ROLE_OWNER, NamespaceMembership.ROLE_CONTRIBUTOR):
            raise BusinessRuleError(f"Invalid role: {role}")
        membership = self.store.find_membership(user.id, namespace.id)
        if membership is not None:
            if membership.role == role:
                raise BusinessRuleError(f"User {user.login_name} already has the role {role}.")
            self.store.update_membership_role(membership.id, role)
            return ResultJson.success_result(
                f"Changed role of {user.login_name} in {namespace.name} to {role}."
            )
        self.store.create_membership(namespace.id, user.id, role)
        return ResultJson.success_result(f"Added {user.login_name} as {role} of {namespace.name}.")

    # ------------------------------------------------------------------
    # namespace details
    # ------------------------------------------------------------------
    @_operation
    def update_namespace_details(self, details: NamespaceDetails) -> ResultJson:
        with self.store.transaction():
            namespace = self.store.find_namespace(details.name)
            if namespace is None:
                raise NotFoundError(
                    f"Namespace not found: {details.name}", detail={"namespace": details.name}
                )

            issues = self.validator.validate(details)
            if issues:
                raise ValidationError(
                    format_issues(issues), detail={"issues": [str(issue) for issue in issues]}
                )

            changes: Dict[str, Any] = {}
            for field_name in ("display_name", "description", "website", "support_link", "social_links"):
                value = getattr(details, field_name)
                if value != getattr(namespace, field_name):
                    changes[field_name] = value
                    setattr(namespace, field_name, value)

            changes.update(self._apply_logo(namespace, details))
            if changes:
                self.store.update_namespace(namespace.id, **changes)

        self.logger.info(
            "namespace_details_updated", namespace=details.name, fields=sorted(changes)
        )
        if self.cache is not None:
            self.cache.evict_namespace_details(details.name)
        return ResultJson.success_result(f"Updated details for namespace {details.name}")

    def _apply_logo(self, namespace: Namespace, details: NamespaceDetails) -> Dict[str, Any]:
        current = self.logos.location_of(namespace) if namespace.logo_storage_type else None
        if details.logo == current:
            return {}

        if details.logo_bytes:
            if namespace.logo_storage_type:
                self.logos.remove(namespace)
            namespace.logo_name = details.logo
            namespace.logo_bytes = details.logo_bytes
            namespace.logo_storage_type = None
            if self.logos.should_store_externally(namespace):
                self.logos.upload(namespace)
                namespace.logo_bytes = None
            else:
                namespace.logo_storage_type = STORAGE_DATABASE
        elif namespace.logo_storage_type:
            self.logos.remove(namespace)
            namespace.logo_name = None
            namespace.logo_bytes = None
            namespace.logo_storage_type = None
        else:
            return {}

        return {
            "logo_name": namespace.logo_name,
            "logo_bytes": namespace.logo_bytes,
            "logo_storage_type": namespace.logo_storage_type,
        }
