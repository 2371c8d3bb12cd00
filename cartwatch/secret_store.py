"""Secret lookup with an in-memory TTL cache.

Resolution order for :meth:`SecretsProvider.get_secret`: process environment,
then the cache, then the backing :class:`SecretStore`. Values fetched from the
backing store are cached for ``ttl_seconds`` (one hour by default).
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from typing import Callable, Protocol

from cartwatch.errors import SecretResolutionError
from cartwatch.logging_config import get_logger

LOGGER = get_logger(__name__)

DEFAULT_TTL_SECONDS = 3600
PROJECT_ENV_VARS = ("GCLOUD_PROJECT", "GCP_PROJECT", "GOOGLE_CLOUD_PROJECT")


class SecretStore(Protocol):
    def get_secret(self, name: str) -> str:
        ...


@dataclass(frozen=True)
class CachedSecret:
    value: str
    expires_at: float


class SecretCache:
    """Name -> value map whose entries expire after a fixed TTL."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CachedSecret] = {}

    def get(self, name: str) -> str | None:
        entry = self._entries.get(name)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[name]
            return None
        return entry.value

    def put(self, name: str, value: str) -> None:
        self._entries[name] = CachedSecret(value=value, expires_at=self._clock() + self.ttl_seconds)

    def clear(self) -> None:
        self._entries.clear()


def resolve_project_id() -> str:
    for env_name in PROJECT_ENV_VARS:
        value = (os.getenv(env_name) or "").strip()
        if value:
            return value
    raise SecretResolutionError(
        "Could not determine GCP project ID from environment variables "
        f"({', '.join(PROJECT_ENV_VARS)})"
    )


class GoogleSecretManagerStore:
    """Reads the latest version of a secret from Google Cloud Secret Manager."""

    def __init__(self, project_id: str | None = None, client=None) -> None:
        self._project_id = project_id
        self._client = client

    def _get_client(self):
        if self._client is None:
            from google.cloud import secretmanager

            self._client = secretmanager.SecretManagerServiceClient()
        return self._client

    def get_secret(self, name: str) -> str:
        project_id = self._project_id or resolve_project_id()
        resource = f"projects/{project_id}/secrets/{name}/versions/latest"
        try:
            response = self._get_client().access_secret_version(request={"name": resource})
        except Exception as exc:
            raise SecretResolutionError(f"Failed to retrieve secret: {name}") from exc
        LOGGER.info("Retrieved secret %s from Google Cloud Secret Manager", name)
        return response.payload.data.decode("utf-8")


class SecretsProvider:
    """Environment first, then cache, then the backing store."""

    def __init__(
        self,
        store: SecretStore | None = None,
        cache: SecretCache | None = None,
        *,
        environ: Callable[[str], str | None] = os.getenv,
    ) -> None:
        self.store = store
        self.cache = cache or SecretCache()
        self._environ = environ

    def get_secret(self, name: str) -> str:
        env_value = self._environ(name)
        if env_value:
            return env_value

        cached = self.cache.get(name)
        if cached is not None:
            return cached

        if self.store is None:
            raise SecretResolutionError(f"{name} is not configured and no secret store is available")
        try:
            value = self.store.get_secret(name)
        except SecretResolutionError:
            LOGGER.error("Failed to retrieve secret %s", name)
            raise
        if not value:
            raise SecretResolutionError(f"Secret {name} is empty")
        self.cache.put(name, value)
        return value


def build_secrets_provider(backend: str | None = None, *, ttl_seconds: float = DEFAULT_TTL_SECONDS) -> SecretsProvider:
    """Return a provider for ``env`` (default) or ``gcp`` backends."""

    backend = (backend or os.getenv("CARTWATCH_SECRET_BACKEND") or "env").strip().lower()
    cache = SecretCache(ttl_seconds)
    if backend == "gcp":
        return SecretsProvider(GoogleSecretManagerStore(), cache)
    if backend == "env":
        return SecretsProvider(None, cache)
    raise SecretResolutionError(f"Unknown secret backend '{backend}'")
