#!/usr/bin/env python3
"""Async HTTP client for the Kubernetes REST API.

This module provides the IClient implementation every manager talks through:

    - Bearer token authentication (explicit or in-cluster service account)
    - Kind to REST path resolution through a RESTMapper
    - Connection pooling via a shared aiohttp session
    - Typed exceptions for 404/409/5xx and network failures

Design Philosophy:
    This client knows HOW to talk to an API server, but not WHAT to sync.
    It has no knowledge of services, mappings or units. That knowledge
    belongs in the syncer adapters that compose this client.

Usage:
    async with KubernetesClient(ClientConfig.from_values(host, token)) as client:
        svc = await client.get("services", "default", "kubernetes")
        pods = await client.list("pods", "team-a", label_selector="app=web")
"""
from __future__ import annotations

import asyncio
import logging
import os
import ssl
from dataclasses import dataclass, field
from typing import Any, Optional

import aiohttp

from ..syncer.domain.ports import IClient
from .exceptions import (
    APIError,
    ConfigurationError,
    ConflictError,
    NetworkError,
    NotFoundError,
    ServerError,
)

logger = logging.getLogger(__name__)

IN_CLUSTER_HOST = "https://kubernetes.default.svc"
SERVICE_ACCOUNT_DIR = "/var/run/secrets/kubernetes.io/serviceaccount"


# ============================================
# REST Mapping
# ============================================

@dataclass(frozen=True)
class ResourcePath:
    """Where a kind lives in the REST API.

    Attributes:
        group_version: "v1" for the core group, "group/version" otherwise
        plural: Resource name in URLs
        namespaced: Whether objects live in a namespace
    """
    group_version: str
    plural: str
    namespaced: bool = True

    def url(self, namespace: str = "", name: str = "") -> str:
        prefix = "/api/v1" if self.group_version == "v1" else f"/apis/{self.group_version}"
        path = prefix
        if self.namespaced and namespace:
            path += f"/namespaces/{namespace}"
        path += f"/{self.plural}"
        if name:
            path += f"/{name}"
        return path


DEFAULT_RESOURCES: dict[str, ResourcePath] = {
    "configmaps": ResourcePath("v1", "configmaps"),
    "endpoints": ResourcePath("v1", "endpoints"),
    "events": ResourcePath("v1", "events"),
    "namespaces": ResourcePath("v1", "namespaces", namespaced=False),
    "nodes": ResourcePath("v1", "nodes", namespaced=False),
    "persistentvolumeclaims": ResourcePath("v1", "persistentvolumeclaims"),
    "persistentvolumes": ResourcePath("v1", "persistentvolumes", namespaced=False),
    "pods": ResourcePath("v1", "pods"),
    "secrets": ResourcePath("v1", "secrets"),
    "serviceaccounts": ResourcePath("v1", "serviceaccounts"),
    "services": ResourcePath("v1", "services"),
    "statefulsets": ResourcePath("apps/v1", "statefulsets"),
    "customresourcedefinitions": ResourcePath(
        "apiextensions.k8s.io/v1", "customresourcedefinitions", namespaced=False
    ),
    "ingresses": ResourcePath("networking.k8s.io/v1", "ingresses"),
    "ingressclasses": ResourcePath("networking.k8s.io/v1", "ingressclasses", namespaced=False),
    "networkpolicies": ResourcePath("networking.k8s.io/v1", "networkpolicies"),
    "poddisruptionbudgets": ResourcePath("policy/v1", "poddisruptionbudgets"),
    "priorityclasses": ResourcePath("scheduling.k8s.io/v1", "priorityclasses", namespaced=False),
    "storageclasses": ResourcePath("storage.k8s.io/v1", "storageclasses", namespaced=False),
    "volumesnapshots": ResourcePath("snapshot.storage.k8s.io/v1", "volumesnapshots"),
    "volumesnapshotclasses": ResourcePath(
        "snapshot.storage.k8s.io/v1", "volumesnapshotclasses", namespaced=False
    ),
    "volumesnapshotcontents": ResourcePath(
        "snapshot.storage.k8s.io/v1", "volumesnapshotcontents", namespaced=False
    ),
}


class RESTMapper:
    """Resolves kinds to REST paths."""

    def __init__(self, resources: Optional[dict[str, ResourcePath]] = None):
        self._resources = dict(resources or DEFAULT_RESOURCES)

    def resource_for(self, kind: str) -> ResourcePath:
        try:
            return self._resources[kind]
        except KeyError:
            raise ConfigurationError(
                f"no REST mapping for kind {kind!r}",
                details={"kind": kind},
            ) from None

    def is_namespaced(self, kind: str) -> bool:
        return self.resource_for(kind).namespaced

    @property
    def kinds(self) -> frozenset[str]:
        return frozenset(self._resources)


# ============================================
# Configuration
# ============================================

@dataclass
class ClientConfig:
    """Connection settings of one API surface.

    Attributes:
        host: API server URL
        token: Bearer token (may be empty for unauthenticated test servers)
        ca_file: CA bundle used to verify the API server
        verify_ssl: Set to False to skip certificate verification
        timeout: Total request timeout in seconds
    """
    host: str
    token: str = ""
    ca_file: Optional[str] = None
    verify_ssl: bool = True
    timeout: float = 30.0
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def in_cluster(cls, verify_ssl: bool = True) -> "ClientConfig":
        """Config from the pod's service account.

        Raises:
            ConfigurationError: If the service account token is not mounted
        """
        token_file = os.path.join(SERVICE_ACCOUNT_DIR, "token")
        try:
            with open(token_file) as f:
                token = f.read().strip()
        except OSError as e:
            raise ConfigurationError(
                "not running in a cluster and no API server configured",
                missing_keys=["HOST_API_SERVER"],
                cause=e,
            )
        ca_file = os.path.join(SERVICE_ACCOUNT_DIR, "ca.crt")
        return cls(
            host=IN_CLUSTER_HOST,
            token=token,
            ca_file=ca_file if os.path.exists(ca_file) else None,
            verify_ssl=verify_ssl,
        )

    @classmethod
    def from_values(cls, host: str, token: str = "", verify_ssl: bool = True) -> "ClientConfig":
        """Explicit config, falling back to in-cluster when host is empty."""
        if not host:
            return cls.in_cluster(verify_ssl=verify_ssl)
        return cls(host=host.rstrip("/"), token=token, verify_ssl=verify_ssl)


# ============================================
# The Client
# ============================================

class KubernetesClient(IClient):
    """Async Kubernetes REST client.

    The session is created lazily, so the client can be shared by managers
    that live for the whole process. It can also be used as an async
    context manager to scope the session:

        async with KubernetesClient(config) as client:
            await client.list("services")
    """

    def __init__(
        self,
        config: ClientConfig,
        rest_mapper: Optional[RESTMapper] = None,
        namespace: str = "",
    ):
        """Initialize the client.

        Args:
            config: Connection settings
            rest_mapper: Kind to path resolution (default: built-in kinds)
            namespace: If set, list calls without a namespace are scoped to it
        """
        if not config.host:
            raise ConfigurationError("API server host is required", missing_keys=["host"])

        self.config = config
        self.rest_mapper = rest_mapper or RESTMapper()
        self.namespace = namespace
        self._session: Optional[aiohttp.ClientSession] = None

    # ----------------------------------------
    # Context Manager Protocol
    # ----------------------------------------

    async def __aenter__(self) -> "KubernetesClient":
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                base_url=self.config.host,
                connector=aiohttp.TCPConnector(limit=10, ssl=self._ssl_context()),
                timeout=aiohttp.ClientTimeout(total=self.config.timeout, connect=10),
            )
        return self._session

    def _ssl_context(self):
        if not self.config.host.startswith("https"):
            return None
        if not self.config.verify_ssl:
            return False
        return ssl.create_default_context(cafile=self.config.ca_file)

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json", **self.config.headers}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        return headers

    # ----------------------------------------
    # Low-Level Request Method
    # ----------------------------------------

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, str]] = None,
        body: Optional[dict[str, Any]] = None,
    ) -> Any:
        """Make one request and decode the JSON response.

        Raises:
            NotFoundError: On 404
            ConflictError: On 409
            ServerError: On 5xx
            APIError: On any other non-2xx status
            NetworkError: If the server cannot be reached
        """
        session = self._ensure_session()
        logger.debug(f"{method} {path}")
        try:
            async with session.request(
                method,
                path,
                params=params,
                json=body,
                headers=self._headers(),
            ) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise self._error_for(response.status, text, path, method)
                if response.status == 204:
                    return None
                return await response.json(content_type=None)

        except aiohttp.ClientConnectionError as e:
            raise NetworkError(f"cannot reach API server: {e}", endpoint=path, method=method, cause=e)
        except asyncio.TimeoutError as e:
            raise NetworkError(
                f"request timed out after {self.config.timeout}s",
                endpoint=path,
                method=method,
                code="TIMEOUT",
                cause=e,
            )

    @staticmethod
    def _error_for(status: int, text: str, path: str, method: str) -> APIError:
        if status == 404:
            return NotFoundError(f"{path} not found", response_body=text, endpoint=path, method=method)
        if status == 409:
            return ConflictError(f"{path} conflict", response_body=text, endpoint=path, method=method)
        if status >= 500:
            return ServerError(
                f"API server error {status}",
                status_code=status,
                response_body=text,
                endpoint=path,
                method=method,
            )
        return APIError(
            f"API request failed with status {status}",
            status_code=status,
            response_body=text,
            endpoint=path,
            method=method,
        )

    # ----------------------------------------
    # IClient
    # ----------------------------------------

    def _path(self, kind: str, namespace: str = "", name: str = "") -> str:
        return self.rest_mapper.resource_for(kind).url(namespace, name)

    async def get(self, kind: str, namespace: str, name: str) -> dict[str, Any]:
        return await self.request("GET", self._path(kind, namespace, name))

    async def list(
        self,
        kind: str,
        namespace: str = "",
        label_selector: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        params = {"labelSelector": label_selector} if label_selector else None
        body = await self.request("GET", self._path(kind, namespace or self.namespace), params=params)
        return list((body or {}).get("items") or [])

    async def create(self, kind: str, obj: dict[str, Any]) -> dict[str, Any]:
        namespace = (obj.get("metadata") or {}).get("namespace", "")
        return await self.request("POST", self._path(kind, namespace), body=obj)

    async def update(self, kind: str, obj: dict[str, Any]) -> dict[str, Any]:
        metadata = obj.get("metadata") or {}
        path = self._path(kind, metadata.get("namespace", ""), metadata["name"])
        return await self.request("PUT", path, body=obj)

    async def delete(self, kind: str, namespace: str, name: str) -> None:
        await self.request("DELETE", self._path(kind, namespace, name))
