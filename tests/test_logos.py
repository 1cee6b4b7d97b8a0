import os
from pathlib import Path

import pytest

from vsxregistry.service.logos import (
    STORAGE_DATABASE,
    STORAGE_LOCAL,
    FileSystemLogoStorage,
    PathTraversalError,
    safe_join,
)
from vsxregistry.storage.models import Namespace


def test_safe_join_accepts_child_path(tmp_path: Path):
    result = safe_join(tmp_path, "namespaces/bar/logo/logo.png")

    assert tmp_path.resolve() in result.parents


def test_safe_join_rejects_traversal(tmp_path: Path):
    with pytest.raises(PathTraversalError):
        safe_join(tmp_path, os.path.join("..", "escape.png"))


def test_safe_join_rejects_absolute(tmp_path: Path):
    with pytest.raises(PathTraversalError):
        safe_join(tmp_path, str(Path("/tmp/absolute.png")))


def test_logo_name_cannot_escape_root(tmp_path: Path):
    storage = FileSystemLogoStorage(tmp_path, "http://registry.test", threshold_bytes=1)
    namespace = Namespace(id=1, name="bar", logo_name="../../../../escape.png", logo_bytes=b"x")

    with pytest.raises(PathTraversalError):
        storage.upload(namespace)


def test_threshold_zero_keeps_logos_in_database(tmp_path: Path):
    storage = FileSystemLogoStorage(tmp_path, "http://registry.test")
    namespace = Namespace(id=1, name="bar", logo_name="logo.png", logo_bytes=b"x" * 10_000)

    assert storage.should_store_externally(namespace) is False


def test_threshold_is_inclusive(tmp_path: Path):
    storage = FileSystemLogoStorage(tmp_path, "http://registry.test", threshold_bytes=4)

    assert storage.should_store_externally(Namespace(id=1, name="bar", logo_bytes=b"abcd")) is True
    assert storage.should_store_externally(Namespace(id=1, name="bar", logo_bytes=b"abc")) is False


def test_upload_and_remove_round_trip(tmp_path: Path):
    storage = FileSystemLogoStorage(tmp_path, "http://registry.test/", threshold_bytes=1)
    namespace = Namespace(id=1, name="bar", logo_name="logo.png", logo_bytes=b"png")

    storage.upload(namespace)
    path = tmp_path / "namespaces" / "bar" / "logo" / "logo.png"
    assert namespace.logo_storage_type == STORAGE_LOCAL
    assert path.read_bytes() == b"png"
    assert storage.location_of(namespace) == "http://registry.test/files/namespaces/bar/logo/logo.png"

    storage.remove(namespace)
    assert not path.exists()


def test_remove_ignores_database_logos(tmp_path: Path):
    storage = FileSystemLogoStorage(tmp_path, "http://registry.test")
    namespace = Namespace(
        id=1, name="bar", logo_name="logo.png", logo_bytes=b"png", logo_storage_type=STORAGE_DATABASE
    )

    storage.remove(namespace)

    assert storage.location_of(namespace) == "http://registry.test/api/bar/logo/logo.png"


def test_location_of_namespace_without_logo(tmp_path: Path):
    storage = FileSystemLogoStorage(tmp_path, "http://registry.test")

    assert storage.location_of(Namespace(id=1, name="bar")) is None
