from __future__ import annotations

from pathlib import Path
from typing import Optional, Protocol

from vsxregistry.logging import get_logger
from vsxregistry.storage.models import Namespace

STORAGE_DATABASE = "database"
STORAGE_LOCAL = "local"

logger = get_logger(__name__)


class PathTraversalError(ValueError):
    """Raised when a path escapes the intended base directory."""


def safe_join(base: Path, relative: str) -> Path:
    """Join ``relative`` to ``base`` while preventing path traversal.

    The resulting path must resolve within ``base``; absolute paths or ``..``
    segments that would escape the base directory raise ``PathTraversalError``.
    """

    base_resolved = base.resolve()
    rel_path = Path(relative)
    if rel_path.is_absolute():
        raise PathTraversalError("absolute paths not allowed")

    candidate = (base_resolved / rel_path).resolve()
    if candidate == base_resolved or base_resolved in candidate.parents:
        return candidate

    raise PathTraversalError("path traversal detected")


class LogoStorage(Protocol):
    def should_store_externally(self, namespace: Namespace) -> bool: ...

    def upload(self, namespace: Namespace) -> None: ...

    def remove(self, namespace: Namespace) -> None: ...

    def location_of(self, namespace: Namespace) -> Optional[str]: ...


class FileSystemLogoStorage:
    """Keeps namespace logos under ``<root>/namespaces/<name>/logo/``.

    Logos at or above ``threshold_bytes`` are written to disk; smaller ones
    stay in the namespace row. A threshold of 0 keeps everything in the
    database.
    """

    def __init__(self, root: str | Path, base_url: str, *, threshold_bytes: int = 0) -> None:
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")
        self.threshold_bytes = threshold_bytes

    def _path(self, namespace: Namespace) -> Path:
        if not namespace.logo_name:
            raise ValueError(f"namespace {namespace.name} has no logo name")
        return safe_join(
            self.root, f"namespaces/{namespace.name}/logo/{namespace.logo_name}"
        )

    def should_store_externally(self, namespace: Namespace) -> bool:
        if self.threshold_bytes <= 0 or not namespace.logo_bytes:
            return False
        return len(namespace.logo_bytes) >= self.threshold_bytes

    def upload(self, namespace: Namespace) -> None:
        path = self._path(namespace)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(namespace.logo_bytes or b"")
        namespace.logo_storage_type = STORAGE_LOCAL
        logger.info(
            "namespace_logo_uploaded",
            namespace=namespace.name,
            logo=namespace.logo_name,
            size=len(namespace.logo_bytes or b""),
        )

    def remove(self, namespace: Namespace) -> None:
        if namespace.logo_storage_type != STORAGE_LOCAL:
            return
        path = self._path(namespace)
        path.unlink(missing_ok=True)
        logger.info("namespace_logo_removed", namespace=namespace.name, logo=namespace.logo_name)

    def location_of(self, namespace: Namespace) -> Optional[str]:
        if not namespace.logo_storage_type or not namespace.logo_name:
            return None
        if namespace.logo_storage_type == STORAGE_LOCAL:
            return f"{self.base_url}/files/namespaces/{namespace.name}/logo/{namespace.logo_name}"
        return f"{self.base_url}/api/{namespace.name}/logo/{namespace.logo_name}"
