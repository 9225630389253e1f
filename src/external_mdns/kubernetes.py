"""Kubernetes membership source.

Talks to the API server over plain HTTP with ``requests`` and keeps a
list/watch cache per resource type, yielding typed membership events.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

import requests
import yaml

from external_mdns.resource import Action
from external_mdns.sources import MembershipEvent, MembershipSource

logger = logging.getLogger(__name__)

SERVICE_ACCOUNT_DIR = "/var/run/secrets/kubernetes.io/serviceaccount"

API_PATHS = {
    "services": "/api/v1",
    "ingresses": "/apis/networking.k8s.io/v1",
}


class KubeConfigError(RuntimeError):
    """Raised when no usable cluster configuration can be found."""


class WatchExpired(Exception):
    """The watch resource version is too old; a relist is required."""


# =============================================================================
# Cluster Configuration
# =============================================================================


@dataclass(frozen=True)
class ClusterConfig:
    """How to reach and authenticate against an API server."""

    server: str
    token: str = ""
    ca_file: str = ""
    client_cert: str = ""
    client_key: str = ""
    username: str = ""
    password: str = ""
    verify_tls: bool = True


def kubeconfig_path() -> str:
    """Default kubeconfig location, honouring ``$KUBECONFIG``."""
    env_path = os.getenv("KUBECONFIG", "").split(os.pathsep)[0]
    if env_path:
        return env_path
    return str(Path.home() / ".kube" / "config")


def _in_cluster_config() -> Optional[ClusterConfig]:
    host = os.getenv("KUBERNETES_SERVICE_HOST", "")
    port = os.getenv("KUBERNETES_SERVICE_PORT", "")
    if not host or not port:
        return None

    token_path = Path(SERVICE_ACCOUNT_DIR) / "token"
    ca_path = Path(SERVICE_ACCOUNT_DIR) / "ca.crt"
    try:
        token = token_path.read_text("utf-8").strip()
    except OSError as e:
        raise KubeConfigError(f"failed to read service account token: {e}") from e

    if ":" in host:
        host = f"[{host}]"
    return ClusterConfig(
        server=f"https://{host}:{port}",
        token=token,
        ca_file=str(ca_path) if ca_path.exists() else "",
    )


def _materialize(entry: Dict[str, Any], key: str, base_dir: Path) -> str:
    """Resolve a ``<key>`` path or ``<key>-data`` blob to a file path."""
    if entry.get(f"{key}-data"):
        data = base64.b64decode(entry[f"{key}-data"])
        handle = tempfile.NamedTemporaryFile(prefix="external-mdns-", delete=False)
        with handle:
            handle.write(data)
        return handle.name
    if entry.get(key):
        path = Path(os.path.expanduser(entry[key]))
        return str(path if path.is_absolute() else base_dir / path)
    return ""


def _named(items: List[Dict[str, Any]], name: str, kind: str) -> Dict[str, Any]:
    for item in items or []:
        if isinstance(item, dict) and item.get("name") == name:
            return item.get(kind) or {}
    raise KubeConfigError(f"{kind} '{name}' not found in kubeconfig")


def _kubeconfig_file_config(path: str) -> ClusterConfig:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise KubeConfigError(f"failed to load kubeconfig {path}: {e}") from e

    context_name = data.get("current-context") or ""
    if not context_name:
        raise KubeConfigError(f"kubeconfig {path} has no current-context")

    context = _named(data.get("contexts"), context_name, "context")
    cluster = _named(data.get("clusters"), context.get("cluster", ""), "cluster")
    user = _named(data.get("users"), context.get("user", ""), "user") if context.get("user") else {}

    server = cluster.get("server") or ""
    if not server:
        raise KubeConfigError(f"cluster '{context.get('cluster')}' has no server")

    base_dir = Path(os.path.abspath(path)).parent
    token = user.get("token") or ""
    if not token and user.get("tokenFile"):
        try:
            token = Path(user["tokenFile"]).read_text("utf-8").strip()
        except OSError as e:
            raise KubeConfigError(f"failed to read token file {user['tokenFile']}: {e}") from e

    return ClusterConfig(
        server=server,
        token=token,
        ca_file=_materialize(cluster, "certificate-authority", base_dir),
        client_cert=_materialize(user, "client-certificate", base_dir),
        client_key=_materialize(user, "client-key", base_dir),
        username=user.get("username") or "",
        password=user.get("password") or "",
        verify_tls=not cluster.get("insecure-skip-tls-verify", False),
    )


def load_cluster_config(kubeconfig: str = "", master: str = "") -> ClusterConfig:
    """Return in-cluster configuration, falling back to a kubeconfig file.

    ``master`` overrides the API server URL from either source.

    Raises:
        KubeConfigError: if neither source yields a configuration
    """
    config = None if kubeconfig else _in_cluster_config()
    if config is None:
        path = kubeconfig or kubeconfig_path()
        if not Path(path).exists():
            if master:
                return ClusterConfig(server=master)
            raise KubeConfigError(f"not running in-cluster and no kubeconfig at {path}")
        config = _kubeconfig_file_config(path)

    if master:
        config = replace(config, server=master)
    return config


# =============================================================================
# API Client
# =============================================================================


class KubernetesClient:
    """Minimal list/watch client for the resources external-mdns follows."""

    def __init__(self, config: ClusterConfig, timeout_seconds: float = 10.0):
        self._base = config.server.rstrip("/")
        self._timeout = timeout_seconds
        self._session = requests.Session()
        if config.token:
            self._session.headers["Authorization"] = f"Bearer {config.token}"
        elif config.username and config.password:
            self._session.auth = (config.username, config.password)
        if config.client_cert and config.client_key:
            self._session.cert = (config.client_cert, config.client_key)
        self._verify: Union[bool, str] = config.verify_tls
        if config.verify_tls and config.ca_file:
            self._verify = config.ca_file

    def _url(self, resource: str, namespace: str) -> str:
        if resource not in API_PATHS:
            raise ValueError(f"Unsupported resource '{resource}'")
        prefix = f"{self._base}{API_PATHS[resource]}"
        if namespace:
            return f"{prefix}/namespaces/{namespace}/{resource}"
        return f"{prefix}/{resource}"

    def list(self, resource: str, namespace: str = "") -> Tuple[List[Dict[str, Any]], str]:
        """Return ``(items, resourceVersion)`` for a full listing."""
        response = self._session.get(
            self._url(resource, namespace), timeout=self._timeout, verify=self._verify
        )
        response.raise_for_status()
        body = response.json()
        items = body.get("items") or []
        resource_version = (body.get("metadata") or {}).get("resourceVersion", "")
        return items, resource_version

    def watch(
        self,
        resource: str,
        namespace: str = "",
        resource_version: str = "",
        timeout_seconds: int = 60,
    ) -> Iterator[Dict[str, Any]]:
        """Yield raw watch events until the server closes the stream.

        Raises:
            WatchExpired: if the server reports the resource version as gone
        """
        params = {
            "watch": "true",
            "allowWatchBookmarks": "true",
            "timeoutSeconds": str(timeout_seconds),
        }
        if resource_version:
            params["resourceVersion"] = resource_version

        with self._session.get(
            self._url(resource, namespace),
            params=params,
            stream=True,
            timeout=(self._timeout, timeout_seconds + self._timeout),
            verify=self._verify,
        ) as response:
            if response.status_code == 410:
                raise WatchExpired(f"{resource} watch expired")
            response.raise_for_status()
            for line in response.iter_lines():
                if not line:
                    continue
                yield json.loads(line)


# =============================================================================
# Informer
# =============================================================================


def _key(obj: Dict[str, Any]) -> str:
    meta = obj.get("metadata") or {}
    return f"{meta.get('namespace', '')}/{meta.get('name', '')}"


def _version(obj: Optional[Dict[str, Any]]) -> str:
    return ((obj or {}).get("metadata") or {}).get("resourceVersion", "")


class Informer(MembershipSource):
    """List/watch cache for one resource type.

    The first listing yields every object as Added and marks the informer
    synced. Later relists (periodic resync or an expired watch) are diffed
    against the cache, so only real changes are yielded.
    """

    def __init__(
        self,
        client: KubernetesClient,
        resource: str,
        namespace: str = "",
        resync_period: float = 300.0,
        watch_timeout: int = 60,
        retry_backoff: float = 5.0,
    ):
        self._client = client
        self._resource = resource
        self._namespace = namespace
        self._resync_period = resync_period
        self._watch_timeout = watch_timeout
        self._retry_backoff = retry_backoff
        self._cache: Dict[str, Dict[str, Any]] = {}
        self._resource_version = ""
        self._synced = threading.Event()

    @property
    def name(self) -> str:
        return f"kubernetes/{self._resource}"

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def _relist(self) -> List[MembershipEvent]:
        items, resource_version = self._client.list(self._resource, self._namespace)
        fresh = {_key(obj): obj for obj in items}
        events: List[MembershipEvent] = []

        for key, obj in fresh.items():
            old = self._cache.get(key)
            if old is None:
                events.append(MembershipEvent(Action.ADDED, obj))
            elif _version(old) != _version(obj):
                events.append(MembershipEvent(Action.UPDATED, obj, old))
        for key, old in self._cache.items():
            if key not in fresh:
                events.append(MembershipEvent(Action.DELETED, old))

        self._cache = fresh
        self._resource_version = resource_version
        self._synced.set()
        logger.debug(f"Listed {len(fresh)} {self._resource} at version {resource_version}")
        return events

    def _apply(self, event: Dict[str, Any]) -> Optional[MembershipEvent]:
        event_type = event.get("type")
        obj = event.get("object") or {}

        if event_type == "ERROR":
            if obj.get("code") == 410:
                raise WatchExpired(obj.get("message", "resource version expired"))
            logger.warning(f"Watch error for {self._resource}: {obj.get('message', obj)}")
            raise WatchExpired("watch error")

        if _version(obj):
            self._resource_version = _version(obj)
        if event_type == "BOOKMARK":
            return None

        key = _key(obj)
        if event_type == "DELETED":
            old = self._cache.pop(key, None)
            return MembershipEvent(Action.DELETED, old or obj)

        old = self._cache.get(key)
        self._cache[key] = obj
        if event_type in ("ADDED", "MODIFIED"):
            if old is None:
                return MembershipEvent(Action.ADDED, obj)
            if _version(old) == _version(obj):
                return None
            return MembershipEvent(Action.UPDATED, obj, old)

        logger.debug(f"Ignoring unknown watch event type {event_type!r}")
        return None

    def events(self, stop: threading.Event) -> Iterator[MembershipEvent]:
        needs_list = True
        last_list = 0.0

        while not stop.is_set():
            try:
                if needs_list or time.monotonic() - last_list >= self._resync_period:
                    yield from self._relist()
                    needs_list = False
                    last_list = time.monotonic()

                for raw in self._client.watch(
                    self._resource,
                    self._namespace,
                    self._resource_version,
                    self._watch_timeout,
                ):
                    event = self._apply(raw)
                    if event is not None:
                        yield event
                    if stop.is_set():
                        return
            except WatchExpired as e:
                logger.info(f"Relisting {self._resource}: {e}")
                needs_list = True
            except (requests.exceptions.RequestException, ValueError) as e:
                logger.warning(f"Failed to watch {self._resource}: {e}")
                needs_list = True
                stop.wait(self._retry_backoff)
