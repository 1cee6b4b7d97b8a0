from __future__ import annotations

import json
from typing import Any, Optional, Protocol, Sequence

from redis import Redis
from redis.exceptions import RedisError

from vsxregistry.logging import get_logger
from vsxregistry.storage.models import ExtensionVersion, User

EXTENSION_JSON_PREFIX = "extension_json"
NAMESPACE_DETAILS_JSON_PREFIX = "namespace_details_json"

logger = get_logger(__name__)


class PublishedVersionSource(Protocol):
    def find_latest_versions_for_user(self, user: User) -> Sequence[ExtensionVersion]: ...


class RegistryCache:
    """Redis cache for rendered extension and namespace JSON documents.

    Keys:
    - ``extension_json:<namespace>:<extension>:<target_platform>:<version>``
    - ``namespace_details_json:<namespace>``

    Evictions are best effort: a Redis failure is logged and never fails
    the operation that triggered it.
    """

    DEFAULT_TTL_SECONDS = 3600

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        store: Optional[PublishedVersionSource] = None,
        client: Optional[Any] = None,
        socket_timeout: float = 5.0,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> None:
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            client = Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.redis_url = redis_url
        self.client = client
        self.store = store
        self.ttl_seconds = ttl_seconds

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    def close(self) -> None:
        self.client.close()

    @staticmethod
    def extension_json_key(
        namespace: str, extension: str, target_platform: str, version: str
    ) -> str:
        return f"{EXTENSION_JSON_PREFIX}:{namespace}:{extension}:{target_platform}:{version}"

    @staticmethod
    def namespace_details_key(namespace: str) -> str:
        return f"{NAMESPACE_DETAILS_JSON_PREFIX}:{namespace}"

    def get_json(self, key: str) -> Optional[dict]:
        raw = self.client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def put_json(self, key: str, value: dict, *, ttl_seconds: Optional[int] = None) -> None:
        self.client.set(
            key, json.dumps(value, default=str), ex=ttl_seconds or self.ttl_seconds
        )

    def get_extension_json(
        self, namespace: str, extension: str, target_platform: str, version: str
    ) -> Optional[dict]:
        return self.get_json(self.extension_json_key(namespace, extension, target_platform, version))

    def put_extension_json(
        self, namespace: str, extension: str, target_platform: str, version: str, value: dict
    ) -> None:
        self.put_json(self.extension_json_key(namespace, extension, target_platform, version), value)

    def get_namespace_details(self, namespace: str) -> Optional[dict]:
        return self.get_json(self.namespace_details_key(namespace))

    def put_namespace_details(self, namespace: str, value: dict) -> None:
        self.put_json(self.namespace_details_key(namespace), value)

    def evict_extension_jsons(self, user: User) -> int:
        """Drop every cached rendering of extensions the user has published."""
        if self.store is None:
            logger.warning("extension_json_eviction_skipped", user_id=user.id, reason="no_store")
            return 0
        evicted = 0
        try:
            for version in self.store.find_latest_versions_for_user(user):
                extension = version.extension
                if extension is None or extension.namespace is None:
                    continue
                pattern = f"{EXTENSION_JSON_PREFIX}:{extension.namespace.name}:{extension.name}:*"
                keys = list(self.client.scan_iter(match=pattern))
                if keys:
                    evicted += self.client.delete(*keys)
        except RedisError as exc:
            logger.warning("extension_json_eviction_failed", user_id=user.id, error=str(exc))
            return evicted
        logger.info("extension_jsons_evicted", user_id=user.id, keys=evicted)
        return evicted

    def evict_namespace_details(self, namespace: str) -> int:
        try:
            evicted = self.client.delete(self.namespace_details_key(namespace))
        except RedisError as exc:
            logger.warning("namespace_details_eviction_failed", namespace=namespace, error=str(exc))
            return 0
        logger.info("namespace_details_evicted", namespace=namespace, keys=evicted)
        return evicted
