# ABOUTME: Vault-backed secret resolver for placeholders in rendered manifests
# ABOUTME: Substitutes <path:...#key> references and redacts resolved values from history

"""
Secret resolution.

Rendered manifests may reference secrets with the placeholder syntax used by
argocd-vault-plugin::

    password: <path:secret/data/db#password>

For KV version 2 the ``data/`` segment is part of the path, as in Vault's own
HTTP API. Every placeholder inside a string value is replaced by the value
read from Vault. Values under a Secret's ``data`` map are base64 encoded after
substitution, because that map holds encoded bytes.

Resolved values are cached for ``VaultSettings.cache_ttl`` seconds and
remembered for redaction: ``redact()`` scrubs any of them from text before it
reaches logs or sync history. A value is forgotten once it has not been
resolved for the longer of the cache TTL and ``redact_retention``. Values
shorter than ``MIN_REDACT_LENGTH`` are never masked.
"""

from __future__ import annotations

import base64
import re
import time
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from gitops_sync.errors import AccessDenied, SecretUnavailable
from gitops_sync.utils.safety import MASK

if TYPE_CHECKING:
    from gitops_sync.config import VaultSettings

logger = structlog.get_logger(__name__)

PLACEHOLDER = re.compile(r"<path:([^#<>\s]+)#([^#<>\s]+)>")

MIN_REDACT_LENGTH = 4
DEFAULT_REDACT_RETENTION = 900.0


def has_placeholders(manifest: Any) -> bool:
    if isinstance(manifest, str):
        return PLACEHOLDER.search(manifest) is not None
    if isinstance(manifest, dict):
        return any(has_placeholders(v) for v in manifest.values())
    if isinstance(manifest, list):
        return any(has_placeholders(v) for v in manifest)
    return False


class VaultSecretResolver:
    """Reads secrets from Vault's HTTP API and substitutes them into manifests."""

    def __init__(
        self,
        settings: VaultSettings,
        timeout: float = 10.0,
        redact_retention: float = DEFAULT_REDACT_RETENTION,
    ) -> None:
        self._settings = settings
        self._timeout = timeout
        self._retention = max(settings.cache_ttl, redact_retention)
        self._client: httpx.AsyncClient | None = None
        self._cache: dict[str, tuple[float, dict[str, Any]]] = {}
        # value -> monotonic time after which it is no longer redacted
        self._resolved: dict[str, float] = {}

    async def __aenter__(self) -> VaultSecretResolver:
        if self._settings.enabled:
            self._client = httpx.AsyncClient(
                base_url=f"{self._settings.addr}/v1",
                headers={"X-Vault-Token": self._settings.token.get_secret_value()},
                timeout=self._timeout,
                verify=not self._settings.insecure,
            )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _read(self, path: str) -> dict[str, Any]:
        """Read a secret's key/value map, honouring the cache TTL."""
        self._forget_expired()
        now = time.monotonic()
        cached = self._cache.get(path)
        if cached and cached[0] > now:
            return cached[1]

        if not self._client:
            raise SecretUnavailable("no secret store configured", path)

        try:
            response = await self._client.get(f"/{path.strip('/')}")
        except httpx.HTTPError as e:
            raise SecretUnavailable("secret store unreachable", str(e)) from e

        if response.status_code == 403:
            raise AccessDenied("secret store denied access", path)
        if response.status_code >= 400:
            raise SecretUnavailable(f"secret store answered HTTP {response.status_code}", path)

        data = (response.json() or {}).get("data") or {}
        if self._settings.kv_version == 2:
            data = data.get("data") or {}

        if self._settings.cache_ttl > 0:
            self._cache[path] = (now + self._settings.cache_ttl, data)
        return data

    async def resolve(self, reference: str) -> str:
        """Resolve ``<path>#<key>`` (or a full ``<path:...#...>`` placeholder)."""
        match = PLACEHOLDER.fullmatch(reference)
        if match:
            path, key = match.groups()
        else:
            path, _, key = reference.partition("#")
        if not key:
            raise SecretUnavailable("secret reference has no key", reference)

        data = await self._read(path)
        if key not in data:
            raise SecretUnavailable("secret key not found", f"{path}#{key}")

        value = str(data[key])
        self._resolved[value] = time.monotonic() + self._retention
        return value

    def _forget_expired(self) -> None:
        now = time.monotonic()
        self._cache = {p: entry for p, entry in self._cache.items() if entry[0] > now}
        self._resolved = {v: until for v, until in self._resolved.items() if until > now}

    async def _substitute(self, text: str) -> str:
        parts: list[str] = []
        last = 0
        for match in PLACEHOLDER.finditer(text):
            parts.append(text[last : match.start()])
            parts.append(await self.resolve(match.group(0)))
            last = match.end()
        parts.append(text[last:])
        return "".join(parts)

    async def _walk(self, value: Any, encode: bool = False) -> Any:
        if isinstance(value, str):
            if not PLACEHOLDER.search(value):
                return value
            resolved = await self._substitute(value)
            return base64.b64encode(resolved.encode()).decode() if encode else resolved
        if isinstance(value, dict):
            return {k: await self._walk(v, encode) for k, v in value.items()}
        if isinstance(value, list):
            return [await self._walk(v, encode) for v in value]
        return value

    async def inject(self, manifest: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of ``manifest`` with every placeholder resolved."""
        if not has_placeholders(manifest):
            return manifest

        result: dict[str, Any] = {}
        for key, value in manifest.items():
            encode = manifest.get("kind") == "Secret" and key == "data"
            result[key] = await self._walk(value, encode=encode)
        logger.debug("Injected secrets", kind=manifest.get("kind"))
        return result

    def redact(self, text: str) -> str:
        """Replace every value this resolver has recently handed out with a mask."""
        self._forget_expired()
        for value in sorted(self._resolved, key=len, reverse=True):
            if len(value) >= MIN_REDACT_LENGTH:
                text = text.replace(value, MASK)
        return text
