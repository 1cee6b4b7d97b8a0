"""Tests for UserService: users, access tokens, membership and namespace details."""

import uuid

import pytest

from vsxregistry.logging import _add_correlation_id, correlation_scope, get_correlation_id
from vsxregistry.schemas import NamespaceDetails
from vsxregistry.service.errors import (
    BusinessRuleError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from vsxregistry.service.logos import STORAGE_DATABASE, STORAGE_LOCAL, FileSystemLogoStorage
from vsxregistry.service.users import IdPrincipal, OAuthUser, UserService
from vsxregistry.storage.memory import MemoryStore
from vsxregistry.storage.models import NamespaceMembership, User

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
BASE_URL = "http://registry.test"


class RecordingCache:
    def __init__(self):
        self.evicted_users = []
        self.evicted_namespaces = []

    def evict_extension_jsons(self, user):
        self.evicted_users.append(user.id)
        return 0

    def evict_namespace_details(self, namespace):
        self.evicted_namespaces.append(namespace)
        return 0


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def cache():
    return RecordingCache()


@pytest.fixture
def logos(tmp_path):
    return FileSystemLogoStorage(tmp_path, BASE_URL, threshold_bytes=1024)


@pytest.fixture
def service(memory_store, cache, logos):
    return UserService(memory_store, cache, logos, base_url=BASE_URL + "/")


@pytest.fixture
def owner(memory_store):
    return memory_store.create_user("owner", auth_id="1", email="owner@example.com")


@pytest.fixture
def namespace(memory_store, owner):
    namespace = memory_store.create_namespace("bar")
    memory_store.create_membership(namespace.id, owner.id, NamespaceMembership.ROLE_OWNER)
    return namespace


@pytest.fixture
def member(memory_store):
    return memory_store.create_user("bob", auth_id="2")


class TestUsers:
    def test_find_logged_in_user_requires_id_principal(self, service, owner):
        assert service.find_logged_in_user(IdPrincipal(owner.id)).login_name == "owner"
        assert service.find_logged_in_user("not-a-principal") is None
        assert service.find_logged_in_user(None) is None

    def test_register_new_user_maps_provider_attributes(self, service):
        oauth_user = OAuthUser(
            name="4242",
            attributes={
                "login": "carol",
                "name": "Carol C",
                "email": "carol@example.com",
                "html_url": "https://github.com/carol",
                "avatar_url": "https://avatars.example/carol.png",
            },
        )
        user = service.register_new_user(oauth_user)
        assert user.provider == "github"
        assert user.auth_id == "4242"
        assert user.login_name == "carol"
        assert user.full_name == "Carol C"
        assert user.provider_url == "https://github.com/carol"
        assert user.avatar_url == "https://avatars.example/carol.png"

    def test_update_existing_user_writes_changed_attributes(self, service, memory_store, owner, cache):
        updated = service.update_existing_user(
            owner, OAuthUser(name="1", attributes={"login": "owner", "name": "New Name", "email": None})
        )
        assert updated.full_name == "New Name"
        assert memory_store.get_user(owner.id).full_name == "New Name"
        assert memory_store.get_user(owner.id).email == "owner@example.com"
        assert cache.evicted_users == [owner.id]

    def test_update_existing_user_without_changes_does_not_evict(self, service, owner, cache):
        service.update_existing_user(owner, OAuthUser(name="1", attributes={"login": "owner"}))
        assert cache.evicted_users == []

    def test_register_twice_is_a_conflict(self, service):
        oauth_user = OAuthUser(name="4242", attributes={"login": "carol"})
        service.register_new_user(oauth_user)
        with pytest.raises(ConflictError) as exc_info:
            service.register_new_user(oauth_user)
        assert exc_info.value.status_code == 409
        assert exc_info.value.message == "User already registered: github/4242"

    def test_update_ignores_other_providers(self, service, memory_store, cache):
        user = memory_store.create_user("eve", provider="gitlab", auth_id="9")
        service.update_existing_user(user, OAuthUser(name="9", attributes={"name": "Eve"}))
        assert memory_store.get_user(user.id).full_name is None
        assert cache.evicted_users == []

    def test_privileged_user_can_publish_anywhere(self, service, memory_store, namespace, member):
        assert service.has_publish_permission(member, namespace) is False
        privileged = memory_store.update_user(member.id, role=User.ROLE_PRIVILEGED)
        assert service.has_publish_permission(privileged, namespace) is True

    def test_contributor_can_publish(self, service, memory_store, namespace, member):
        memory_store.create_membership(namespace.id, member.id, NamespaceMembership.ROLE_CONTRIBUTOR)
        assert service.has_publish_permission(member, namespace) is True


class TestAccessTokens:
    def test_create_returns_value_and_delete_url(self, service, owner):
        token = service.create_access_token(owner, "ci")
        assert token.value
        assert token.description == "ci"
        assert token.delete_token_url == f"{BASE_URL}/user/token/delete/{token.id}"
        assert token.model_dump()["deleteTokenUrl"] == token.delete_token_url

    def test_generate_token_value_retries_on_collision(self, service, memory_store, owner, monkeypatch):
        memory_store.create_access_token(owner.id, "00000000-0000-4000-8000-000000000001")
        values = iter(
            [
                uuid.UUID("00000000-0000-4000-8000-000000000001"),
                uuid.UUID("00000000-0000-4000-8000-000000000002"),
            ]
        )
        monkeypatch.setattr("vsxregistry.service.users.uuid.uuid4", lambda: next(values))
        assert service.generate_token_value() == "00000000-0000-4000-8000-000000000002"

    def test_use_access_token_stamps_access_time(self, service, owner):
        created = service.create_access_token(owner, None)
        used = service.use_access_token(created.value)
        assert used is not None
        assert used.accessed_timestamp is not None
        assert used.user.id == owner.id

    def test_use_unknown_or_inactive_token(self, service, memory_store, owner):
        assert service.use_access_token("missing") is None
        token = memory_store.create_access_token(owner.id, "dead", active=False)
        assert service.use_access_token(token.value) is None

    def test_delete_token_deactivates(self, service, memory_store, owner):
        created = service.create_access_token(owner, None)
        result = service.delete_access_token(owner, created.id)
        assert result.success == "Deleted access token for user owner."
        assert memory_store.find_access_token(created.id).active is False
        with pytest.raises(NotFoundError):
            service.delete_access_token(owner, created.id)

    def test_delete_foreign_token_looks_missing(self, service, owner, member):
        created = service.create_access_token(owner, None)
        with pytest.raises(NotFoundError) as exc_info:
            service.delete_access_token(member, created.id)
        assert exc_info.value.status_code == 404
        with pytest.raises(NotFoundError):
            service.delete_access_token(owner, 999)


class TestNamespaceMembership:
    def test_non_owner_is_forbidden(self, service, namespace, member):
        with pytest.raises(ForbiddenError) as exc_info:
            service.set_namespace_member(member, "bar", "github", "owner", "contributor")
        assert exc_info.value.message == "You must be an owner of this namespace."

    def test_unknown_namespace_is_forbidden(self, service, owner):
        with pytest.raises(ForbiddenError):
            service.set_namespace_member(owner, "missing", "github", "bob", "owner")

    def test_unknown_target_user(self, service, namespace, owner):
        with pytest.raises(BusinessRuleError) as exc_info:
            service.set_namespace_member(owner, "bar", "github", "ghost", "owner")
        assert exc_info.value.message == "User not found: github/ghost"

    def test_add_change_and_remove(self, service, memory_store, namespace, owner, member):
        added = service.set_namespace_member(owner, "bar", "github", "bob", "contributor")
        assert added.success == "Added bob as contributor of bar."

        changed = service.set_namespace_member(owner, "bar", "github", "bob", "owner")
        assert changed.success == "Changed role of bob in bar to owner."
        assert memory_store.find_membership(member.id, namespace.id).role == "owner"

        removed = service.set_namespace_member(owner, "bar", "github", "bob", "remove")
        assert removed.success == "Removed bob from namespace bar."
        assert memory_store.find_membership(member.id, namespace.id) is None

    def test_same_role_twice_is_an_error(self, service, memory_store, namespace, owner, member):
        service.set_namespace_member(owner, "bar", "github", "bob", "contributor")
        with pytest.raises(BusinessRuleError) as exc_info:
            service.set_namespace_member(owner, "bar", "github", "bob", "contributor")
        assert exc_info.value.message == "User bob already has the role contributor."
        assert len(memory_store.list_memberships(namespace.id)) == 2

    def test_invalid_role(self, service, namespace, owner, member):
        with pytest.raises(BusinessRuleError) as exc_info:
            service.set_namespace_member(owner, "bar", "github", "bob", "admin")
        assert exc_info.value.message == "Invalid role: admin"
        assert exc_info.value.error_code == "business_rule_violation"

    def test_remove_non_member_leaves_store_unchanged(self, service, memory_store, namespace, owner, member):
        before = memory_store.list_memberships(namespace.id)
        with pytest.raises(BusinessRuleError) as exc_info:
            service.set_namespace_member(owner, "bar", "github", "bob", "remove")
        assert exc_info.value.message == "User bob is not a member of bar."
        assert memory_store.list_memberships(namespace.id) == before


class TestNamespaceDetails:
    def test_missing_namespace(self, service, cache):
        with pytest.raises(NotFoundError):
            service.update_namespace_details(NamespaceDetails(name="missing"))
        assert cache.evicted_namespaces == []

    def test_updates_changed_fields_and_evicts(self, service, memory_store, namespace, cache):
        result = service.update_namespace_details(
            NamespaceDetails(
                name="bar",
                displayName="Bar Tools",
                website="https://bar.example",
                socialLinks={"github": "https://github.com/bar"},
            )
        )
        assert result.success == "Updated details for namespace bar"
        stored = memory_store.find_namespace("bar")
        assert stored.display_name == "Bar Tools"
        assert stored.website == "https://bar.example"
        assert stored.social_links == {"github": "https://github.com/bar"}
        assert cache.evicted_namespaces == ["bar"]

    def test_single_issue_reported_verbatim(self, service, namespace, cache):
        with pytest.raises(ValidationError) as exc_info:
            service.update_namespace_details(NamespaceDetails(name="bar", website="ftp://bar"))
        assert exc_info.value.message == "Invalid URL in field 'website': ftp://bar"
        assert cache.evicted_namespaces == []

    def test_multiple_issues_are_aggregated(self, service, namespace):
        with pytest.raises(ValidationError) as exc_info:
            service.update_namespace_details(
                NamespaceDetails(name="bar", displayName="x" * 40, supportLink="nope")
            )
        lines = exc_info.value.message.split("\n")
        assert lines[0] == "Multiple issues were found in the extension metadata:"
        assert len(lines) == 3

    def test_small_logo_is_stored_inline(self, service, memory_store, namespace):
        service.update_namespace_details(
            NamespaceDetails(name="bar", logo="logo.png", logoBytes=PNG_BYTES)
        )
        stored = memory_store.find_namespace("bar")
        assert stored.logo_name == "logo.png"
        assert stored.logo_bytes == PNG_BYTES
        assert stored.logo_storage_type == STORAGE_DATABASE

    def test_large_logo_is_stored_externally(self, service, memory_store, namespace, tmp_path):
        large = PNG_BYTES + b"\x01" * 2048
        service.update_namespace_details(NamespaceDetails(name="bar", logo="big.png", logoBytes=large))
        stored = memory_store.find_namespace("bar")
        assert stored.logo_storage_type == STORAGE_LOCAL
        assert stored.logo_bytes is None
        assert (tmp_path / "namespaces" / "bar" / "logo" / "big.png").read_bytes() == large

    def test_unchanged_logo_location_is_kept(self, service, memory_store, namespace, logos):
        service.update_namespace_details(NamespaceDetails(name="bar", logo="logo.png", logoBytes=PNG_BYTES))
        location = logos.location_of(memory_store.find_namespace("bar"))
        service.update_namespace_details(NamespaceDetails(name="bar", logo=location))
        assert memory_store.find_namespace("bar").logo_bytes == PNG_BYTES

    def test_logo_removal_clears_all_logo_fields(self, service, memory_store, namespace, tmp_path):
        large = PNG_BYTES + b"\x01" * 2048
        service.update_namespace_details(NamespaceDetails(name="bar", logo="big.png", logoBytes=large))
        service.update_namespace_details(NamespaceDetails(name="bar"))
        stored = memory_store.find_namespace("bar")
        assert stored.logo_name is None
        assert stored.logo_bytes is None
        assert stored.logo_storage_type is None
        assert not (tmp_path / "namespaces" / "bar" / "logo" / "big.png").exists()

    def test_non_image_logo_rejected(self, service, namespace):
        with pytest.raises(ValidationError) as exc_info:
            service.update_namespace_details(
                NamespaceDetails(name="bar", logo="logo.gif", logoBytes=b"GIF89a....")
            )
        assert exc_info.value.message == "Namespace logo should be a png or jpg file."

    def test_failed_store_write_rolls_back(self, service, memory_store, namespace, monkeypatch, cache):
        original = memory_store.update_namespace

        def write_then_fail(namespace_id, **fields):
            original(namespace_id, **fields)
            raise RuntimeError("write failed")

        monkeypatch.setattr(memory_store, "update_namespace", write_then_fail)
        with pytest.raises(RuntimeError):
            service.update_namespace_details(NamespaceDetails(name="bar", displayName="Bar"))
        assert memory_store.find_namespace("bar").display_name is None
        assert cache.evicted_namespaces == []


class TestCorrelationIds:
    def test_operation_binds_one_id_for_its_store_calls(self, service, memory_store, owner, monkeypatch):
        seen = []
        original = memory_store.create_access_token

        def record(*args, **kwargs):
            seen.append(get_correlation_id())
            return original(*args, **kwargs)

        monkeypatch.setattr(memory_store, "create_access_token", record)
        service.create_access_token(owner, None)
        service.create_access_token(owner, None)

        assert all(seen)
        assert seen[0] != seen[1]
        assert get_correlation_id() is None

    def test_caller_supplied_id_is_kept(self, service, memory_store, owner, monkeypatch):
        seen = []
        original = memory_store.get_user

        def record(*args, **kwargs):
            seen.append(get_correlation_id())
            return original(*args, **kwargs)

        monkeypatch.setattr(memory_store, "get_user", record)
        created = service.create_access_token(owner, None)
        with correlation_scope("req-123"):
            service.delete_access_token(owner, created.id)

        assert seen == ["req-123"]

    def test_log_entries_carry_the_bound_id(self):
        with correlation_scope("req-456"):
            event = _add_correlation_id(None, "info", {"event": "access_token_created"})
        assert event["correlation_id"] == "req-456"
        assert "correlation_id" not in _add_correlation_id(None, "info", {"event": "x"})
