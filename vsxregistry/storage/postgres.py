from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from vsxregistry.logging import get_logger
from vsxregistry.storage.common import (
    PRE_RELEASE,
    is_universal,
    is_version_alias,
    latest_order_sql,
    parse_semver,
    version_string_order_sql,
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


# extension_version columns, grouped by the projections that need them
VERSION_COMMON_COLUMNS = (
    "id",
    "version",
    "target_platform",
    "universal_target_platform",
    "semver_major",
    "semver_minor",
    "semver_patch",
    "semver_is_pre_release",
    "preview",
    "pre_release",
    "timestamp",
    "display_name",
    "description",
    "engines",
    "categories",
    "tags",
    "extension_kind",
    "repository",
    "sponsor_link",
    "gallery_color",
    "gallery_theme",
    "localized_languages",
    "dependencies",
    "bundled_extensions",
)
VERSION_FULL_COLUMNS = VERSION_COMMON_COLUMNS + (
    "license",
    "homepage",
    "bugs",
    "markdown",
    "qna",
    "active",
)
NAMESPACE_REF_COLUMNS = ("id", "name")
NAMESPACE_COLUMNS = ("id", "name", "public_id")
EXTENSION_REF_COLUMNS = ("id", "name")
EXTENSION_COLUMNS = (
    "id",
    "name",
    "public_id",
    "average_rating",
    "review_count",
    "download_count",
    "published_date",
    "last_updated_date",
)
PUBLISHER_COLUMNS = (
    "id",
    "role",
    "login_name",
    "full_name",
    "avatar_url",
    "provider_url",
    "provider",
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

_FULL_FROM = """
    FROM extension_version ev
    JOIN extension e ON e.id = ev.extension_id
    JOIN namespace n ON n.id = e.namespace_id
    LEFT JOIN personal_access_token t ON t.id = ev.published_with_id
    LEFT JOIN user_data u ON u.id = t.user_data
    LEFT JOIN signature_key_pair k ON k.id = ev.signature_key_pair_id
"""

_COLLAPSE_KEY = "ev.extension_id, ev.universal_target_platform, ev.target_platform"


class ColumnSource:
    """Resolves projected columns against a base table.

    Every projection is aliased ``<prefix>_<column>`` so a single row mapper
    reads the same keys whether the data came straight from the table or
    through a derived (LATERAL) table.
    """

    def __init__(self, alias: str, prefix: str) -> None:
        self.alias = alias
        self.prefix = prefix

    def source(self, column: str) -> str:
        return f"{self.alias}.{column}"

    def select(self, columns: Sequence[str]) -> List[str]:
        return [f"{self.source(col)} AS {self.prefix}_{col}" for col in columns]


class DerivedColumnSource(ColumnSource):
    """Columns of a derived table whose inner projection used ``ColumnSource``."""

    def source(self, column: str) -> str:
        return f"{self.alias}.{self.prefix}_{column}"


VERSIONS = ColumnSource("ev", "ev")
EXTENSIONS = ColumnSource("e", "e")
NAMESPACES = ColumnSource("n", "n")
PUBLISHERS = ColumnSource("u", "u")
KEY_PAIRS = ColumnSource("k", "k")


def _select(*groups: List[str]) -> str:
    columns: List[str] = []
    for group in groups:
        columns.extend(group)
    return "SELECT " + ", ".join(columns)


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item for item in value.split(",") if item]
    return list(value)


class PostgresStore:
    """Postgres-backed registry store: identity records and the version query engine."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._tx_conn: ContextVar[Optional[Any]] = ContextVar(
            f"vsxregistry_tx_{id(self)}", default=None
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        conn = self._tx_conn.get()
        if conn is not None:
            yield conn
            return
        with self.pool.connection() as conn:
            yield conn

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed store calls as one unit of work.

        The pooled connection commits when the block exits cleanly and rolls
        back every write of the block otherwise. Nested calls join the
        outer unit.
        """
        if self._tx_conn.get() is not None:
            yield
            return
        with self.pool.connection() as conn:
            token = self._tx_conn.set(conn)
            try:
                yield
            finally:
                self._tx_conn.reset(token)

    def _verify_required_schema(self) -> None:
        """Ensure the registry tables exist before serving requests."""

        required_tables = [
            "user_data",
            "personal_access_token",
            "namespace",
            "namespace_membership",
            "extension",
            "extension_version",
            "signature_key_pair",
        ]

        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    # ------------------------------------------------------------------
    # row mapping
    # ------------------------------------------------------------------
    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=int(row["id"]),
            provider=row.get("provider"),
            auth_id=row.get("auth_id"),
            login_name=row.get("login_name"),
            full_name=row.get("full_name"),
            email=row.get("email"),
            avatar_url=row.get("avatar_url"),
            provider_url=row.get("provider_url"),
            role=row.get("role"),
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any], user: Optional[User] = None) -> PersonalAccessToken:
        return PersonalAccessToken(
            id=int(row["id"]),
            user_id=row.get("user_data"),
            value=row.get("value"),
            active=bool(row.get("active", True)),
            created_timestamp=row.get("created_timestamp"),
            accessed_timestamp=row.get("accessed_timestamp"),
            description=row.get("description"),
            user=user,
        )

    @staticmethod
    def _namespace_from_row(row: Dict[str, Any]) -> Namespace:
        return Namespace(
            id=int(row["id"]),
            name=row["name"],
            public_id=row.get("public_id"),
            display_name=row.get("display_name"),
            description=row.get("description"),
            website=row.get("website"),
            support_link=row.get("support_link"),
            social_links=row.get("social_links") or {},
            logo_name=row.get("logo_name"),
            logo_bytes=bytes(row["logo_bytes"]) if row.get("logo_bytes") is not None else None,
            logo_storage_type=row.get("logo_storage_type"),
        )

    @staticmethod
    def _extension_from_row(row: Dict[str, Any], namespace: Optional[Namespace] = None) -> Extension:
        if namespace is None and row.get("n_id") is not None:
            namespace = Namespace(
                id=int(row["n_id"]),
                name=row.get("n_name"),
                public_id=row.get("n_public_id"),
                display_name=row.get("n_display_name"),
            )
        return Extension(
            id=int(row["e_id"]),
            name=row.get("e_name"),
            namespace=namespace,
            public_id=row.get("e_public_id"),
            average_rating=row.get("e_average_rating"),
            review_count=row.get("e_review_count"),
            download_count=row.get("e_download_count") or 0,
            published_date=row.get("e_published_date"),
            last_updated_date=row.get("e_last_updated_date"),
            active=row.get("e_active", True),
        )

    def _version_from_row(
        self,
        row: Dict[str, Any],
        *,
        extension: Optional[Extension] = None,
        type: str = ExtensionVersion.TYPE_REGULAR,
    ) -> ExtensionVersion:
        if extension is None:
            extension = self._extension_from_row(row)
        published_with = None
        if row.get("u_id") is not None:
            published_with = PersonalAccessToken(
                id=0,
                user_id=int(row["u_id"]),
                user=User(
                    id=int(row["u_id"]),
                    role=row.get("u_role"),
                    login_name=row.get("u_login_name"),
                    full_name=row.get("u_full_name"),
                    avatar_url=row.get("u_avatar_url"),
                    provider_url=row.get("u_provider_url"),
                    provider=row.get("u_provider"),
                ),
            )
        signature_key_pair = None
        if "k_public_id" in row:
            signature_key_pair = SignatureKeyPair(public_id=row.get("k_public_id"))
        target_platform = row.get("ev_target_platform") or "universal"
        return ExtensionVersion(
            id=int(row["ev_id"]),
            version=row["ev_version"],
            extension=extension,
            target_platform=target_platform,
            semver_major=row.get("ev_semver_major"),
            semver_minor=row.get("ev_semver_minor"),
            semver_patch=row.get("ev_semver_patch"),
            semver_is_pre_release=bool(row.get("ev_semver_is_pre_release", False)),
            universal_target_platform=bool(
                row.get("ev_universal_target_platform", is_universal(target_platform))
            ),
            preview=bool(row.get("ev_preview", False)),
            pre_release=bool(row.get("ev_pre_release", False)),
            timestamp=row.get("ev_timestamp"),
            display_name=row.get("ev_display_name"),
            description=row.get("ev_description"),
            engines=_as_list(row.get("ev_engines")),
            categories=_as_list(row.get("ev_categories")),
            tags=_as_list(row.get("ev_tags")),
            extension_kind=_as_list(row.get("ev_extension_kind")),
            license=row.get("ev_license"),
            homepage=row.get("ev_homepage"),
            repository=row.get("ev_repository"),
            sponsor_link=row.get("ev_sponsor_link"),
            bugs=row.get("ev_bugs"),
            markdown=row.get("ev_markdown"),
            gallery_color=row.get("ev_gallery_color"),
            gallery_theme=row.get("ev_gallery_theme"),
            localized_languages=_as_list(row.get("ev_localized_languages")),
            qna=row.get("ev_qna"),
            dependencies=_as_list(row.get("ev_dependencies")),
            bundled_extensions=_as_list(row.get("ev_bundled_extensions")),
            active=bool(row.get("ev_active", True)),
            published_with=published_with,
            signature_key_pair=signature_key_pair,
            type=type,
        )

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_data (provider, auth_id, login_name, full_name, email, avatar_url, provider_url, role)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (provider, auth_id, login_name, full_name, email, avatar_url, provider_url, role),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "user already exists", {"provider": provider, "auth_id": auth_id}
            )
        return self._user_from_row(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_data WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_login_name(self, provider: str, login_name: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_data WHERE provider = %s AND login_name = %s",
                (provider, login_name),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user(self, user_id: int, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _USER_FIELDS
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        assignments = ", ".join(f"{name} = %s" for name in fields)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE user_data SET {assignments} WHERE id = %s RETURNING *",
                (*fields.values(), user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

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
        created = created_timestamp or datetime.now(timezone.utc)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO personal_access_token (user_data, value, active, created_timestamp, description)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, value, active, created, description),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("token value already exists", {"field": "value"})
        return self._token_from_row(row)

    def _find_access_token(self, clause: str, param: Any) -> Optional[PersonalAccessToken]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT t.*, u.id AS u_id, u.provider AS u_provider, u.auth_id AS u_auth_id,
                       u.login_name AS u_login_name, u.full_name AS u_full_name, u.email AS u_email,
                       u.avatar_url AS u_avatar_url, u.provider_url AS u_provider_url, u.role AS u_role
                FROM personal_access_token t
                JOIN user_data u ON u.id = t.user_data
                WHERE {clause}
                """,
                (param,),
            ).fetchone()
        if not row:
            return None
        user = self._user_from_row(
            {key[2:]: value for key, value in row.items() if key.startswith("u_")}
        )
        return self._token_from_row(row, user=user)

    def find_access_token(self, token_id: int) -> Optional[PersonalAccessToken]:
        return self._find_access_token("t.id = %s", token_id)

    def find_access_token_by_value(self, value: str) -> Optional[PersonalAccessToken]:
        return self._find_access_token("t.value = %s", value)

    def has_access_token(self, value: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT EXISTS (SELECT 1 FROM personal_access_token WHERE value = %s) AS present",
                (value,),
            ).fetchone()
        return bool(row and row.get("present"))

    def update_access_token(self, token_id: int, **fields: Any) -> Optional[PersonalAccessToken]:
        unknown = set(fields) - _TOKEN_FIELDS
        if unknown:
            raise ValueError(f"unknown token fields: {sorted(unknown)}")
        if not fields:
            return self.find_access_token(token_id)
        assignments = ", ".join(f"{name} = %s" for name in fields)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE personal_access_token SET {assignments} WHERE id = %s RETURNING *",
                (*fields.values(), token_id),
            ).fetchone()
        return self._token_from_row(row) if row else None

    # ------------------------------------------------------------------
    # namespaces & memberships
    # ------------------------------------------------------------------
    def create_namespace(self, name: str, *, public_id: Optional[str] = None, **fields: Any) -> Namespace:
        unknown = set(fields) - _NAMESPACE_FIELDS
        if unknown:
            raise ValueError(f"unknown namespace fields: {sorted(unknown)}")
        values = {"name": name, "public_id": public_id or str(uuid.uuid4()), **fields}
        if "social_links" in values:
            values["social_links"] = Jsonb(values["social_links"] or {})
        columns = ", ".join(values)
        placeholders = ", ".join(["%s"] * len(values))
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"INSERT INTO namespace ({columns}) VALUES ({placeholders}) RETURNING *",
                    tuple(values.values()),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("namespace already exists", {"name": name})
        return self._namespace_from_row(row)

    def find_namespace(self, name: str) -> Optional[Namespace]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM namespace WHERE name = %s", (name,)
            ).fetchone()
        return self._namespace_from_row(row) if row else None

    def update_namespace(self, namespace_id: int, **fields: Any) -> Optional[Namespace]:
        unknown = set(fields) - _NAMESPACE_FIELDS
        if unknown:
            raise ValueError(f"unknown namespace fields: {sorted(unknown)}")
        if "social_links" in fields:
            fields["social_links"] = Jsonb(fields["social_links"] or {})
        if not fields:
            return None
        assignments = ", ".join(f"{name} = %s" for name in fields)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE namespace SET {assignments} WHERE id = %s RETURNING *",
                (*fields.values(), namespace_id),
            ).fetchone()
        return self._namespace_from_row(row) if row else None

    @staticmethod
    def _membership_from_row(row: Dict[str, Any]) -> NamespaceMembership:
        return NamespaceMembership(
            id=int(row["id"]),
            namespace_id=int(row["namespace"]),
            user_id=int(row["user_data"]),
            role=row["role"],
        )

    def find_membership(self, user_id: int, namespace_id: int) -> Optional[NamespaceMembership]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM namespace_membership WHERE user_data = %s AND namespace = %s",
                (user_id, namespace_id),
            ).fetchone()
        return self._membership_from_row(row) if row else None

    def list_memberships(self, namespace_id: int) -> List[NamespaceMembership]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM namespace_membership WHERE namespace = %s ORDER BY id",
                (namespace_id,),
            ).fetchall()
        return [self._membership_from_row(row) for row in rows]

    def create_membership(self, namespace_id: int, user_id: int, role: str) -> NamespaceMembership:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO namespace_membership (namespace, user_data, role)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (namespace_id, user_id, role),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "membership already exists", {"namespace_id": namespace_id, "user_id": user_id}
            )
        return self._membership_from_row(row)

    def update_membership_role(self, membership_id: int, role: str) -> Optional[NamespaceMembership]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE namespace_membership SET role = %s WHERE id = %s RETURNING *",
                (role, membership_id),
            ).fetchone()
        return self._membership_from_row(row) if row else None

    def delete_membership(self, membership_id: int) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM namespace_membership WHERE id = %s", (membership_id,)
            )
            return result.rowcount > 0

    def is_namespace_owner(self, user_id: int, namespace_id: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT EXISTS (
                    SELECT 1 FROM namespace_membership
                    WHERE user_data = %s AND namespace = %s AND role = %s
                ) AS owner
                """,
                (user_id, namespace_id, NamespaceMembership.ROLE_OWNER),
            ).fetchone()
        return bool(row and row.get("owner"))

    def can_publish_in_namespace(self, user_id: int, namespace_id: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT EXISTS (
                    SELECT 1 FROM namespace_membership
                    WHERE user_data = %s AND namespace = %s AND role = ANY(%s)
                ) AS allowed
                """,
                (
                    user_id,
                    namespace_id,
                    [NamespaceMembership.ROLE_OWNER, NamespaceMembership.ROLE_CONTRIBUTOR],
                ),
            ).fetchone()
        return bool(row and row.get("allowed"))

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
        now = datetime.now(timezone.utc)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO extension (public_id, name, namespace_id, average_rating, review_count,
                                           download_count, published_date, last_updated_date, active)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        public_id or str(uuid.uuid4()),
                        name,
                        namespace.id,
                        average_rating,
                        review_count,
                        download_count,
                        now,
                        now,
                        active,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "extension already exists", {"namespace": namespace.name, "name": name}
            )
        prefixed = {f"e_{key}": value for key, value in row.items()}
        return self._extension_from_row(prefixed, namespace=namespace)

    def create_signature_key_pair(self, public_id: Optional[str] = None) -> SignatureKeyPair:
        with self._connect() as conn:
            row = conn.execute(
                "INSERT INTO signature_key_pair (public_id, created, active) VALUES (%s, %s, TRUE) RETURNING *",
                (public_id or str(uuid.uuid4()), datetime.now(timezone.utc)),
            ).fetchone()
        return SignatureKeyPair(id=int(row["id"]), public_id=row["public_id"])

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
        """Insert a version row; semver columns are derived here, once."""
        semver = parse_semver(version)
        values: Dict[str, Any] = {
            "extension_id": extension.id,
            "version": version,
            "target_platform": target_platform,
            "universal_target_platform": is_universal(target_platform),
            "semver_major": semver.major,
            "semver_minor": semver.minor,
            "semver_patch": semver.patch,
            "semver_is_pre_release": semver.is_pre_release,
            "semver_pre_release": semver.pre_release,
            "semver_build_metadata": semver.build_metadata,
            "timestamp": timestamp or datetime.now(timezone.utc),
            "active": active,
            "published_with_id": published_with.id if published_with else None,
            "signature_key_pair_id": signature_key_pair.id if signature_key_pair else None,
        }
        for key, value in metadata.items():
            if key not in VERSION_FULL_COLUMNS or key in values:
                raise ValueError(f"unknown extension version field: {key}")
            values[key] = value
        columns = ", ".join(values)
        placeholders = ", ".join(["%s"] * len(values))
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"INSERT INTO extension_version ({columns}) VALUES ({placeholders}) RETURNING *",
                    tuple(values.values()),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "extension version already exists",
                {"extension": extension.name, "version": version, "target_platform": target_platform},
            )
        prefixed = {f"ev_{key}": value for key, value in row.items()}
        created = self._version_from_row(prefixed, extension=extension)
        created.published_with = published_with
        created.signature_key_pair = signature_key_pair
        return created

    # ------------------------------------------------------------------
    # version query engine
    # ------------------------------------------------------------------
    def find_active_versions_by_extension_ids(
        self, extension_ids: Sequence[int], target_platform: Optional[str] = None
    ) -> List[ExtensionVersion]:
        """Minimal projection used to rehydrate many extensions at once."""
        if not extension_ids:
            return []
        conditions = active_only()
        conditions.add(extension_ids_filter(list(extension_ids)))
        conditions.extend(target_platform_filter(target_platform))
        where, params = conditions.where()
        query = (
            _select(
                NAMESPACES.select(NAMESPACE_REF_COLUMNS),
                EXTENSIONS.select(EXTENSION_REF_COLUMNS),
                VERSIONS.select(VERSION_COMMON_COLUMNS),
                KEY_PAIRS.select(("public_id",)),
            )
            + """
            FROM extension_version ev
            JOIN extension e ON e.id = ev.extension_id
            JOIN namespace n ON n.id = e.namespace_id
            LEFT JOIN signature_key_pair k ON k.id = ev.signature_key_pair_id
            """
            + where
        )
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [
            self._version_from_row(row, type=ExtensionVersion.TYPE_MINIMAL) for row in rows
        ]

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

        offset = max(page_number, 0) * max(page_size, 0)
        versions = self._find_version_strings_sorted(conditions, page_size, offset)
        where, params = conditions.where()
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(DISTINCT ev.version) AS total
                FROM extension_version ev
                JOIN extension e ON e.id = ev.extension_id
                JOIN namespace n ON n.id = e.namespace_id
                """
                + where,
                tuple(params),
            ).fetchone()
        total = int(row["total"]) if row else 0
        return Page(items=versions, page_number=page_number, page_size=page_size, total=total)

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
        return self._find_version_strings_sorted(conditions, limit, 0)

    def _find_version_strings_sorted(
        self, conditions: ConditionSet, limit: int, offset: int
    ) -> List[str]:
        where, params = conditions.where()
        query = (
            """
            SELECT DISTINCT ev.version, ev.semver_major, ev.semver_minor, ev.semver_patch, ev.semver_is_pre_release
            FROM extension_version ev
            JOIN extension e ON e.id = ev.extension_id
            JOIN namespace n ON n.id = e.namespace_id
            """
            + where
            + f" ORDER BY {version_string_order_sql('ev')} LIMIT %s OFFSET %s"
        )
        with self._connect() as conn:
            rows = conn.execute(query, (*params, max(limit, 0), max(offset, 0))).fetchall()
        return [row["version"] for row in rows]

    def find_active_version_strings_sorted_bulk(
        self,
        extension_ids: Sequence[int],
        target_platform: Optional[str] = None,
        limit: int = 1,
    ) -> Dict[int, List[str]]:
        """Top ``limit`` version strings per extension in a single statement.

        The LATERAL subquery is evaluated once per requested id, so ordering
        and the limit are scoped to each extension rather than globally.
        """
        ids = list(dict.fromkeys(extension_ids))
        if not ids:
            return {}
        conditions = active_only()
        conditions.extend(target_platform_filter(target_platform))
        clause, params = conditions.render()
        query = f"""
            SELECT ids.id AS extension_id, top.version
            FROM unnest(%s::bigint[]) WITH ORDINALITY AS ids(id, ord)
            CROSS JOIN LATERAL (
                SELECT DISTINCT ev.version, ev.semver_major, ev.semver_minor, ev.semver_patch, ev.semver_is_pre_release
                FROM extension_version ev
                WHERE ev.extension_id = ids.id AND {clause}
                ORDER BY {version_string_order_sql('ev')}
                LIMIT %s
            ) AS top
            ORDER BY ids.ord, {version_string_order_sql('top')}
        """
        with self._connect() as conn:
            rows = conn.execute(query, (ids, *params, max(limit, 0))).fetchall()
        result: Dict[int, List[str]] = {}
        for row in rows:
            result.setdefault(int(row["extension_id"]), []).append(row["version"])
        return result

    def find_active_version_references_sorted(
        self, extensions: Sequence[Extension], limit: int = 1
    ) -> List[ExtensionVersion]:
        """Top ``limit`` version references (engines, signature key) per extension."""
        ids = list(dict.fromkeys(extension.id for extension in extensions))
        if not ids:
            return []
        inner_columns = (
            NAMESPACES.select(NAMESPACE_REF_COLUMNS)
            + EXTENSIONS.select(EXTENSION_REF_COLUMNS)
            + VERSIONS.select(("id", "target_platform", "version", "engines"))
            + KEY_PAIRS.select(("public_id",))
        )
        top = {
            "n": DerivedColumnSource("top", "n"),
            "e": DerivedColumnSource("top", "e"),
            "ev": DerivedColumnSource("top", "ev"),
            "k": DerivedColumnSource("top", "k"),
        }
        query = (
            _select(
                top["n"].select(NAMESPACE_REF_COLUMNS),
                top["e"].select(EXTENSION_REF_COLUMNS),
                top["ev"].select(("id", "target_platform", "version", "engines")),
                top["k"].select(("public_id",)),
            )
            + f"""
            FROM unnest(%s::bigint[]) WITH ORDINALITY AS ids(id, ord)
            CROSS JOIN LATERAL (
                SELECT {", ".join(inner_columns)},
                       ROW_NUMBER() OVER (ORDER BY {latest_order_sql('ev')}) AS rank
                FROM extension_version ev
                JOIN extension e ON e.id = ev.extension_id
                JOIN namespace n ON n.id = e.namespace_id
                LEFT JOIN signature_key_pair k ON k.id = ev.signature_key_pair_id
                WHERE ev.extension_id = ids.id AND ev.active = TRUE
                ORDER BY {latest_order_sql('ev')}
                LIMIT %s
            ) AS top
            ORDER BY ids.ord, top.rank
            """
        )
        with self._connect() as conn:
            rows = conn.execute(query, (ids, max(limit, 0))).fetchall()
        return [
            self._version_from_row(row, type=ExtensionVersion.TYPE_REFERENCE) for row in rows
        ]

    def find_active_versions(self, request: QueryRequest) -> Page[ExtensionVersion]:
        """Filtered, paginated listing of active versions.

        Collapsed mode keeps one row per (extension, universal flag, platform),
        the newest under the ordering rule; the count uses the same key.
        """
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

        where, params = conditions.where()
        columns = _select(
            NAMESPACES.select(NAMESPACE_COLUMNS),
            EXTENSIONS.select(EXTENSION_COLUMNS),
            PUBLISHERS.select(PUBLISHER_COLUMNS),
            VERSIONS.select(VERSION_FULL_COLUMNS),
            KEY_PAIRS.select(("public_id",)),
        )
        if request.include_all_versions:
            total_sql = "SELECT COUNT(*) AS total"
            query = columns + _FULL_FROM + where + f" ORDER BY ev.extension_id ASC, {latest_order_sql('ev')}"
        else:
            total_sql = f"SELECT COUNT(DISTINCT ({_COLLAPSE_KEY})) AS total"
            query = (
                columns.replace("SELECT ", f"SELECT DISTINCT ON ({_COLLAPSE_KEY}) ", 1)
                + _FULL_FROM
                + where
                + """
                ORDER BY ev.extension_id ASC,
                         ev.universal_target_platform DESC,
                         ev.target_platform ASC,
                         ev.semver_major DESC,
                         ev.semver_minor DESC,
                         ev.semver_patch DESC,
                         ev.semver_is_pre_release ASC,
                         ev.timestamp DESC NULLS LAST
                """
            )
        query += " OFFSET %s LIMIT %s"

        with self._connect() as conn:
            total_row = conn.execute(total_sql + _FULL_FROM + where, tuple(params)).fetchone()
            rows = conn.execute(
                query, (*params, max(request.offset, 0), max(request.size, 0))
            ).fetchall()
        total = int(total_row["total"]) if total_row else 0
        return Page(
            items=[self._version_from_row(row) for row in rows],
            page_number=request.page_number,
            page_size=request.size,
            total=total,
        )

    def _find_all_active(self, conditions: ConditionSet) -> List[ExtensionVersion]:
        where, params = conditions.where()
        query = (
            _select(
                NAMESPACES.select(NAMESPACE_COLUMNS),
                EXTENSIONS.select(EXTENSION_COLUMNS),
                PUBLISHERS.select(PUBLISHER_COLUMNS),
                VERSIONS.select(VERSION_FULL_COLUMNS),
                KEY_PAIRS.select(("public_id",)),
            )
            + _FULL_FROM
            + where
        )
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._version_from_row(row) for row in rows]

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
        where, params = conditions.where()
        query = (
            _select(
                PUBLISHERS.select(PUBLISHER_COLUMNS),
                VERSIONS.select(VERSION_FULL_COLUMNS),
                KEY_PAIRS.select(("public_id",)),
            )
            + """
            FROM extension_version ev
            LEFT JOIN personal_access_token t ON t.id = ev.published_with_id
            LEFT JOIN user_data u ON u.id = t.user_data
            LEFT JOIN signature_key_pair k ON k.id = ev.signature_key_pair_id
            """
            + where
            + f" ORDER BY {latest_order_sql('ev')} LIMIT 1"
        )
        with self._connect() as conn:
            row = conn.execute(query, tuple(params)).fetchone()
        return self._version_from_row(row, extension=extension) if row else None

    def find_latest_version_reference(
        self,
        extension: Extension,
        target_platform: Optional[str] = None,
        *,
        only_pre_release: bool = False,
        only_active: bool = True,
    ) -> Optional[ExtensionVersion]:
        """Id, version and preview flag of the latest version, for URL building."""
        conditions = latest_filter(target_platform, only_pre_release, only_active)
        conditions.add(Eq(EV_EXTENSION_ID, extension.id))
        where, params = conditions.where()
        query = (
            _select(VERSIONS.select(("id", "version", "preview")))
            + " FROM extension_version ev"
            + where
            + f" ORDER BY {latest_order_sql('ev')} LIMIT 1"
        )
        with self._connect() as conn:
            row = conn.execute(query, tuple(params)).fetchone()
        if not row:
            return None
        return self._version_from_row(
            row, extension=extension, type=ExtensionVersion.TYPE_MINIMAL
        )

    def find_latest_versions_for_namespace(self, namespace: Namespace) -> List[ExtensionVersion]:
        """Latest active version of every active extension, most downloaded first."""
        latest_columns = ("id", "version", "target_platform", "timestamp", "display_name", "description")
        latest = DerivedColumnSource("latest", "ev")
        latest_key = DerivedColumnSource("latest", "k")
        query = (
            _select(
                EXTENSIONS.select(("id", "name", "average_rating", "review_count", "download_count")),
                latest.select(latest_columns),
                latest_key.select(("public_id",)),
            )
            + f"""
            FROM extension e
            CROSS JOIN LATERAL (
                SELECT {", ".join(VERSIONS.select(latest_columns) + KEY_PAIRS.select(("public_id",)))}
                FROM extension_version ev
                LEFT JOIN signature_key_pair k ON k.id = ev.signature_key_pair_id
                WHERE ev.extension_id = e.id AND ev.active = TRUE
                ORDER BY {latest_order_sql('ev')}
                LIMIT 1
            ) AS latest
            WHERE e.namespace_id = %s AND e.active = TRUE
            ORDER BY e.download_count DESC
            """
        )
        with self._connect() as conn:
            rows = conn.execute(query, (namespace.id,)).fetchall()
        return [
            self._version_from_row(
                row, extension=self._extension_from_row(row, namespace=namespace)
            )
            for row in rows
        ]

    def find_latest_versions_for_user(self, user: User) -> List[ExtensionVersion]:
        """Latest version of every extension the user published a version of."""
        latest = DerivedColumnSource("latest", "ev")
        inner = VERSIONS.select(VERSION_FULL_COLUMNS) + VERSIONS.select(
            ("signature_key_pair_id", "published_with_id")
        )
        query = (
            _select(
                NAMESPACES.select(NAMESPACE_COLUMNS + ("display_name",)),
                EXTENSIONS.select(EXTENSION_COLUMNS + ("active",)),
                latest.select(VERSION_FULL_COLUMNS),
                KEY_PAIRS.select(("public_id",)),
                PUBLISHERS.select(PUBLISHER_COLUMNS),
            )
            + f"""
            FROM namespace n
            JOIN extension e ON e.namespace_id = n.id
            CROSS JOIN LATERAL (
                SELECT {", ".join(inner)}
                FROM extension_version ev
                WHERE ev.extension_id = e.id
                ORDER BY {latest_order_sql('ev')}
                LIMIT 1
            ) AS latest
            LEFT JOIN signature_key_pair k ON k.id = {latest.source('signature_key_pair_id')}
            LEFT JOIN personal_access_token t ON t.id = {latest.source('published_with_id')}
            LEFT JOIN user_data u ON u.id = t.user_data
            WHERE EXISTS (
                SELECT 1
                FROM extension_version pv
                JOIN personal_access_token pt ON pt.id = pv.published_with_id
                WHERE pv.extension_id = e.id AND pt.user_data = %s
            )
            ORDER BY n.name COLLATE "C", e.name COLLATE "C"
            """
        )
        with self._connect() as conn:
            rows = conn.execute(query, (user.id,)).fetchall()
        return [self._version_from_row(row) for row in rows]

    def find_version(
        self,
        namespace_name: str,
        extension_name: str,
        target_platform: Optional[str],
        version: str,
    ) -> Optional[ExtensionVersion]:
        """Resolve one version for a URL: exact version, "latest" or "pre-release"."""
        conditions = latest_filter(
            target_platform, only_pre_release=version == PRE_RELEASE, only_active=True
        )
        conditions.add(EqIgnoreCase(EXT_NAME, extension_name))
        conditions.add(EqIgnoreCase(NS_NAME, namespace_name))
        if not is_version_alias(version):
            conditions.add(Eq(EV_VERSION, version))
        where, params = conditions.where()
        query = (
            _select(
                NAMESPACES.select(NAMESPACE_COLUMNS + ("display_name",)),
                EXTENSIONS.select(EXTENSION_COLUMNS),
                PUBLISHERS.select(PUBLISHER_COLUMNS),
                VERSIONS.select(VERSION_FULL_COLUMNS),
                KEY_PAIRS.select(("public_id",)),
            )
            + _FULL_FROM
            + where
            + f" ORDER BY {latest_order_sql('ev')} LIMIT 1"
        )
        with self._connect() as conn:
            row = conn.execute(query, tuple(params)).fetchone()
        return self._version_from_row(row) if row else None

    def find_distinct_target_platforms(self, extension: Extension) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT ev.target_platform
                FROM extension_version ev
                WHERE ev.extension_id = %s AND ev.active = TRUE
                ORDER BY ev.target_platform
                """,
                (extension.id,),
            ).fetchall()
        return [row["target_platform"] for row in rows]

    def find_target_platforms_grouped_by_version(
        self, extension: Extension, *, only_active: bool = True
    ) -> List[VersionTargetPlatforms]:
        query = """
            SELECT ev.version,
                   array_agg(ev.target_platform ORDER BY ev.universal_target_platform DESC, ev.target_platform ASC)
                       AS target_platforms
            FROM extension_version ev
            WHERE ev.extension_id = %s
        """
        if only_active:
            query += " AND ev.active = TRUE"
        query += f"""
            GROUP BY ev.semver_major, ev.semver_minor, ev.semver_patch, ev.semver_is_pre_release, ev.version
            ORDER BY {version_string_order_sql('ev')}
        """
        with self._connect() as conn:
            rows = conn.execute(query, (extension.id,)).fetchall()
        return [
            VersionTargetPlatforms(
                version=row["version"], target_platforms=list(row["target_platforms"] or [])
            )
            for row in rows
        ]

    def find_versions_for_urls(
        self, extension: Extension, target_platform: Optional[str], version: str
    ) -> List[ExtensionVersion]:
        conditions = ConditionSet([Eq(EV_EXTENSION_ID, extension.id), Eq(EV_VERSION, version)])
        conditions.extend(target_platform_filter(target_platform))
        where, params = conditions.where()
        query = (
            _select(VERSIONS.select(("id", "version", "target_platform")))
            + " FROM extension_version ev"
            + where
        )
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [
            self._version_from_row(row, extension=extension, type=ExtensionVersion.TYPE_MINIMAL)
            for row in rows
        ]
