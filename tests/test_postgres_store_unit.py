"""SQL composition tests for PostgresStore using a recording connection."""

from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone

import pytest

from vsxregistry.logging import get_logger
from vsxregistry.storage.models import Extension, ExtensionVersion, Namespace, QueryRequest, User
from vsxregistry.storage.postgres import ColumnSource, DerivedColumnSource, PostgresStore


class RecordingCursor:
    def __init__(self, result):
        self.result = result
        self.rowcount = len(result) if isinstance(result, list) else int(result is not None)

    def fetchone(self):
        if isinstance(self.result, list):
            return self.result[0] if self.result else None
        return self.result

    def fetchall(self):
        if isinstance(self.result, list):
            return self.result
        return [self.result] if self.result is not None else []


class RecordingConnection:
    def __init__(self, results):
        self.results = list(results)
        self.statements = []

    def execute(self, query, params=()):
        self.statements.append((" ".join(query.split()), tuple(params)))
        result = self.results.pop(0) if self.results else []
        return RecordingCursor(result)


class RecordingPool:
    def __init__(self, conn):
        self.conn = conn
        self.checkouts = 0

    @contextmanager
    def connection(self):
        self.checkouts += 1
        yield self.conn


class DummyPool:
    def connection(self):
        raise AssertionError("database access should not happen here")


def _store(results=()):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    conn = RecordingConnection(results)
    store.pool = RecordingPool(conn)
    store.logger = get_logger("test")
    store._tx_conn = ContextVar("test_tx", default=None)
    return store, conn


def _where(statement: str) -> str:
    return statement.split(" WHERE ", 1)[1].split(" ORDER BY ")[0].split(" OFFSET ")[0]


def _version_row(**overrides):
    row = {
        "n_id": 1,
        "n_name": "bar",
        "n_public_id": "ns-uuid",
        "e_id": 7,
        "e_name": "foo",
        "e_public_id": "ext-uuid",
        "e_download_count": 12,
        "u_id": 3,
        "u_login_name": "alice",
        "u_provider": "github",
        "ev_id": 11,
        "ev_version": "1.2.0",
        "ev_target_platform": "universal",
        "ev_universal_target_platform": True,
        "ev_semver_major": 1,
        "ev_semver_minor": 2,
        "ev_semver_patch": 0,
        "ev_semver_is_pre_release": False,
        "ev_timestamp": datetime(2024, 5, 1, tzinfo=timezone.utc),
        "ev_engines": ["vscode@^1.80.0"],
        "ev_categories": None,
        "ev_active": True,
        "k_public_id": "key-uuid",
    }
    row.update(overrides)
    return row


class TestColumnSources:
    def test_table_and_derived_columns_share_aliases(self):
        assert ColumnSource("ev", "ev").select(["version"]) == ["ev.version AS ev_version"]
        assert DerivedColumnSource("top", "ev").select(["version"]) == ["top.ev_version AS ev_version"]


class TestActiveVersions:
    def test_collapsed_mode_shares_filters_between_count_and_page(self):
        store, conn = _store([{"total": 1}, [_version_row()]])
        request = QueryRequest(
            namespace_name="bar", extension_name="foo", target_platform="universal", offset=0, size=50
        )

        page = store.find_active_versions(request)

        (count_sql, count_params), (page_sql, page_params) = conn.statements
        assert "COUNT(DISTINCT (ev.extension_id, ev.universal_target_platform, ev.target_platform))" in count_sql
        assert "SELECT DISTINCT ON (ev.extension_id, ev.universal_target_platform, ev.target_platform)" in page_sql
        assert _where(count_sql) == _where(page_sql)
        assert page_params[:-2] == count_params
        assert page_params[-2:] == (0, 50)
        assert "LEFT JOIN personal_access_token t" in count_sql
        assert page.total == 1
        assert page.items[0].version == "1.2.0"
        assert page.items[0].extension.namespace.name == "bar"
        assert page.items[0].publisher.login_name == "alice"

    def test_all_versions_mode_counts_rows(self):
        store, conn = _store([{"total": 0}, []])
        store.find_active_versions(QueryRequest(namespace_uuid="ns-uuid", include_all_versions=True))

        (count_sql, count_params), (page_sql, _) = conn.statements
        assert count_sql.startswith("SELECT COUNT(*) AS total")
        assert "DISTINCT ON" not in page_sql
        assert count_params == ("ns-uuid",)
        assert "ORDER BY ev.extension_id ASC, ev.semver_major DESC" in page_sql


class TestVersionStrings:
    def test_paged_strings_count_distinct_versions(self):
        store, conn = _store([[{"version": "1.2.0"}], {"total": 3}])
        page = store.find_active_version_strings_sorted("bar", "foo", "linux-x64", page_number=1, page_size=1)

        (page_sql, page_params), (count_sql, count_params) = conn.statements
        assert "SELECT DISTINCT ev.version" in page_sql
        assert "COUNT(DISTINCT ev.version)" in count_sql
        assert _where(page_sql).replace(" LIMIT %s", "") == _where(count_sql)
        assert page_params == count_params + (1, 1)
        assert page.items == ["1.2.0"]
        assert page.total == 3

    def test_bulk_strings_use_one_lateral_statement(self):
        rows = [
            {"extension_id": 5, "version": "2.0.0"},
            {"extension_id": 5, "version": "1.0.0"},
            {"extension_id": 9, "version": "0.1.0"},
        ]
        store, conn = _store([rows])

        result = store.find_active_version_strings_sorted_bulk([5, 9, 5], None, 2)

        assert len(conn.statements) == 1
        sql, params = conn.statements[0]
        assert "unnest(%s::bigint[]) WITH ORDINALITY AS ids(id, ord)" in sql
        assert "CROSS JOIN LATERAL" in sql
        assert params == ([5, 9], 2)
        assert result == {5: ["2.0.0", "1.0.0"], 9: ["0.1.0"]}

    def test_bulk_with_no_ids_skips_database(self):
        store, _ = _store()
        store.pool = DummyPool()
        assert store.find_active_version_strings_sorted_bulk([], None, 3) == {}
        assert store.find_active_versions_by_extension_ids([]) == []
        assert store.find_active_version_references_sorted([], 1) == []

    def test_references_read_through_derived_columns(self):
        row = {
            "n_id": 1,
            "n_name": "bar",
            "e_id": 7,
            "e_name": "foo",
            "ev_id": 11,
            "ev_version": "1.2.0",
            "ev_target_platform": "universal",
            "ev_engines": ["vscode@^1.80.0"],
            "k_public_id": None,
        }
        store, conn = _store([[row]])
        namespace = Namespace(id=1, name="bar")
        references = store.find_active_version_references_sorted(
            [Extension(id=7, name="foo", namespace=namespace)], 1
        )

        sql, params = conn.statements[0]
        assert "top.ev_version AS ev_version" in sql
        assert "ORDER BY ids.ord, top.rank" in sql
        assert params == ([7], 1)
        assert references[0].type == ExtensionVersion.TYPE_REFERENCE
        assert references[0].engines == ["vscode@^1.80.0"]


class TestResolution:
    def test_find_version_alias_omits_version_filter(self):
        store, conn = _store([None])
        assert store.find_version("bar", "foo", None, "latest") is None
        sql, params = conn.statements[0]
        assert "ev.version = %s" not in sql
        assert sql.endswith("LIMIT 1")
        assert params == ("foo", "bar")

    def test_find_version_pre_release_alias(self):
        store, conn = _store([None])
        store.find_version("bar", "foo", "linux-x64", "pre-release")
        sql, params = conn.statements[0]
        assert "ev.pre_release = TRUE" in sql
        assert params == ("linux-x64", "foo", "bar")

    def test_find_version_exact(self):
        store, conn = _store([_version_row()])
        version = store.find_version("bar", "foo", "solaris-sparc", "1.2.0")
        sql, params = conn.statements[0]
        assert "ev.target_platform" not in _where(sql)
        assert params == ("foo", "bar", "1.2.0")
        assert version.signature_key_pair.public_id == "key-uuid"

    def test_latest_for_namespace_uses_lateral(self):
        row = _version_row(u_id=None)
        store, conn = _store([[row]])
        namespace = Namespace(id=1, name="bar")

        latest = store.find_latest_versions_for_namespace(namespace)

        sql, params = conn.statements[0]
        assert "CROSS JOIN LATERAL" in sql
        assert sql.endswith("ORDER BY e.download_count DESC")
        assert params == (1,)
        assert latest[0].extension.namespace is namespace
        assert latest[0].extension.download_count == 12

    def test_latest_for_user_filters_on_publishing_tokens(self):
        store, conn = _store([[]])
        store.find_latest_versions_for_user(User(id=3))
        sql, params = conn.statements[0]
        assert "WHERE EXISTS" in sql
        assert "pt.user_data = %s" in sql
        assert sql.endswith('ORDER BY n.name COLLATE "C", e.name COLLATE "C"')
        assert params == (3,)

    def test_grouped_platforms_respects_only_active(self):
        store, conn = _store([[{"version": "1.0.0", "target_platforms": ["universal", "web"]}], []])
        extension = Extension(id=7, name="foo")
        grouped = store.find_target_platforms_grouped_by_version(extension)
        store.find_target_platforms_grouped_by_version(extension, only_active=False)
        assert "ev.active = TRUE" in conn.statements[0][0]
        assert "ev.active = TRUE" not in conn.statements[1][0]
        assert grouped[0].target_platforms == ["universal", "web"]


class TestWritesAndTransactions:
    def test_create_extension_version_computes_semver_columns(self):
        returned = {
            "id": 4,
            "version": "2.1.0-rc.1",
            "target_platform": "web",
            "universal_target_platform": False,
            "semver_major": 2,
            "semver_minor": 1,
            "semver_patch": 0,
            "semver_is_pre_release": True,
            "active": True,
        }
        store, conn = _store([returned])
        extension = Extension(id=7, name="foo")
        created = store.create_extension_version(extension, "2.1.0-rc.1", target_platform="web")

        sql, params = conn.statements[0]
        assert sql.startswith("INSERT INTO extension_version")
        assert params[:10] == (7, "2.1.0-rc.1", "web", False, 2, 1, 0, True, "rc.1", None)
        assert created.extension is extension
        assert created.semver_is_pre_release is True

    def test_unknown_version_field_rejected(self):
        store, _ = _store()
        with pytest.raises(ValueError):
            store.create_extension_version(Extension(id=1, name="x"), "1.0.0", colour="red")

    def test_update_user_rejects_unknown_fields(self):
        store, _ = _store()
        with pytest.raises(ValueError):
            store.update_user(1, password="secret")

    def test_transaction_reuses_one_connection(self):
        store, conn = _store([{"present": False}, {"present": True}])
        with store.transaction():
            assert store.has_access_token("a") is False
            assert store.has_access_token("b") is True
        assert store.pool.checkouts == 1
        assert len(conn.statements) == 2

    def test_calls_outside_transaction_check_out_separately(self):
        store, _ = _store([{"present": False}, {"present": False}])
        store.has_access_token("a")
        store.has_access_token("b")
        assert store.pool.checkouts == 2
