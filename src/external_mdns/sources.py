"""Source adapters.

An adapter watches one class of membership object (Kubernetes Services or
Ingresses) through a ``MembershipSource`` and translates each notification
into ``Resource`` snapshots on the shared pipeline.
"""

from __future__ import annotations

import logging
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Optional

from external_mdns.config import _parse_bool
from external_mdns.resource import Action, Resource, SourceType

if TYPE_CHECKING:
    from external_mdns.pipeline import EventPipeline

logger = logging.getLogger(__name__)

ANNOTATION_PREFIX = "external-mdns.blakecovarrubias.com/"
HOSTNAME_ANNOTATION = ANNOTATION_PREFIX + "hostname"
WITHOUT_NAMESPACE_ANNOTATION = ANNOTATION_PREFIX + "without-namespace"

LOCAL_SUFFIX = ".local"
LABEL_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$", re.IGNORECASE)


class HostnameError(ValueError):
    """Raised when a host string cannot be turned into an mDNS name."""


# =============================================================================
# Membership Source Interface
# =============================================================================


@dataclass(frozen=True)
class MembershipEvent:
    """A native add/update/delete notification for one object."""

    action: Action
    obj: Dict[str, Any]
    old_obj: Optional[Dict[str, Any]] = None


class MembershipSource(ABC):
    """Something that yields membership events for one object type."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the source name for logging."""
        pass

    @abstractmethod
    def events(self, stop: threading.Event) -> Iterator[MembershipEvent]:
        """Yield events until ``stop`` is set."""
        pass

    @abstractmethod
    def has_synced(self) -> bool:
        """True once the initial full listing has been delivered."""
        pass


# =============================================================================
# Helpers
# =============================================================================


def _metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.get("metadata") or {}


def _object_key(obj: Dict[str, Any]) -> str:
    meta = _metadata(obj)
    return f"{meta.get('namespace', '')}/{meta.get('name', '')}"


def _load_balancer_ips(obj: Dict[str, Any]) -> List[str]:
    status = obj.get("status") or {}
    ingress = (status.get("loadBalancer") or {}).get("ingress") or []
    return [lb["ip"] for lb in ingress if isinstance(lb, dict) and lb.get("ip")]


def _check_labels(labels: List[str], host: str) -> None:
    for label in labels:
        if not LABEL_RE.match(label):
            raise HostnameError(f"invalid label '{label}' in '{host}'")


def validate_hostname(name: str) -> str:
    """Return ``name`` if every dot-separated label is a valid DNS label.

    Raises:
        HostnameError: on an empty or malformed label
    """
    _check_labels(name.split("."), name)
    return name


def parse_local_hostname(host: str) -> str:
    """Extract the advertisable name from a ``.local`` host.

    ``app.example.local`` yields ``app.example`` (subdomain plus domain),
    ``example.local`` yields ``example``.

    Raises:
        HostnameError: if the host is not under ``.local`` or has a
            malformed label
    """
    host = (host or "").strip().rstrip(".")
    if not host.lower().endswith(LOCAL_SUFFIX):
        raise HostnameError(f"'{host}' is not under {LOCAL_SUFFIX}")

    labels = host[: -len(LOCAL_SUFFIX)].split(".")
    _check_labels(labels, host)

    domain = labels[-1]
    subdomain = ".".join(labels[:-1])
    if subdomain:
        return f"{subdomain}.{domain}"
    return domain


# =============================================================================
# Adapter Base
# =============================================================================


class ResourceSource(ABC):
    """Translate membership events into resources on the pipeline."""

    source_type: SourceType

    def __init__(self, membership: MembershipSource, pipeline: "EventPipeline"):
        self.membership = membership
        self.pipeline = pipeline

    @property
    def name(self) -> str:
        return self.source_type.value

    def has_synced(self) -> bool:
        return self.membership.has_synced()

    @abstractmethod
    def build_resources(self, obj: Dict[str, Any], action: Action) -> List[Resource]:
        """Build the snapshots an object contributes, possibly none."""
        pass

    def run(self, stop: threading.Event) -> None:
        """Drain the membership source until ``stop`` is set."""
        logger.info(f"Watching {self.membership.name} for {self.name} resources")
        for event in self.membership.events(stop):
            if event.action == Action.ADDED:
                self.on_add(event.obj, stop)
            elif event.action == Action.DELETED:
                self.on_delete(event.obj, stop)
            else:
                self.on_update(event.old_obj, event.obj, stop)
            if stop.is_set():
                break
        logger.info(f"Stopped watching {self.name} resources")

    def _build(self, obj: Optional[Dict[str, Any]], action: Action) -> List[Resource]:
        if not obj:
            return []
        try:
            resources = self.build_resources(obj, action)
        except Exception as e:
            logger.info(f"Error building {self.name} '{_object_key(obj)}': {e}")
            return []
        return [r for r in resources if r.is_publishable]

    def _send(self, resources: List[Resource], stop: threading.Event) -> None:
        for resource in resources:
            if not self.pipeline.put(resource, stop):
                return

    def on_add(self, obj: Dict[str, Any], stop: threading.Event) -> None:
        self._send(self._build(obj, Action.ADDED), stop)

    def on_delete(self, obj: Dict[str, Any], stop: threading.Event) -> None:
        self._send(self._build(obj, Action.DELETED), stop)

    def on_update(
        self,
        old_obj: Optional[Dict[str, Any]],
        new_obj: Dict[str, Any],
        stop: threading.Event,
    ) -> None:
        # Retract everything the old object published before republishing.
        old_resources = [r.with_action(Action.DELETED) for r in self._build(old_obj, Action.UPDATED)]
        self._send(old_resources, stop)

        new_resources = [r.with_action(Action.ADDED) for r in self._build(new_obj, Action.UPDATED)]
        self._send(new_resources, stop)


# =============================================================================
# Kubernetes Adapters
# =============================================================================


class ServiceSource(ResourceSource):
    """Advertise Kubernetes Services.

    LoadBalancer services are published with their load balancer IPs.
    ClusterIP and NodePort services are published with their cluster IPs
    only when ``publish_internal`` is set.
    """

    source_type = SourceType.SERVICE

    def __init__(
        self,
        membership: MembershipSource,
        pipeline: "EventPipeline",
        publish_internal: bool = False,
    ):
        super().__init__(membership, pipeline)
        self.publish_internal = publish_internal

    def _service_ips(self, service: Dict[str, Any]) -> List[str]:
        spec = service.get("spec") or {}
        service_type = spec.get("type") or "ClusterIP"

        if service_type == "LoadBalancer":
            return _load_balancer_ips(service)

        if service_type in ("ClusterIP", "NodePort"):
            if not self.publish_internal:
                return []
            cluster_ips = spec.get("clusterIPs") or [spec.get("clusterIP")]
            return [ip for ip in cluster_ips if ip and ip != "None"]

        return []

    def build_resources(self, obj: Dict[str, Any], action: Action) -> List[Resource]:
        meta = _metadata(obj)
        ips = self._service_ips(obj)
        if not ips:
            return []

        annotations = meta.get("annotations") or {}
        names = [meta.get("name") or ""]
        if annotations.get(HOSTNAME_ANNOTATION):
            names = [n.strip() for n in annotations[HOSTNAME_ANNOTATION].split(",")]
        valid_names: List[str] = []
        for name in names:
            if not name:
                continue
            try:
                valid_names.append(validate_hostname(name))
            except HostnameError as e:
                logger.info(f"Skipping hostname for service '{_object_key(obj)}': {e}")
        names = valid_names

        return [
            Resource(
                source_type=self.source_type,
                action=action,
                names=tuple(names),
                namespace=meta.get("namespace") or "",
                ips=tuple(ips),
                without_namespace=_parse_bool(
                    annotations.get(WITHOUT_NAMESPACE_ANNOTATION), default=False
                ),
            )
        ]


class IngressSource(ResourceSource):
    """Advertise the ``.local`` hosts of Kubernetes Ingresses.

    One resource is built per matching rule host, each carrying every load
    balancer IP of the ingress.
    """

    source_type = SourceType.INGRESS

    def build_resources(self, obj: Dict[str, Any], action: Action) -> List[Resource]:
        ips = _load_balancer_ips(obj)
        if not ips:
            return []

        meta = _metadata(obj)
        resources: List[Resource] = []
        for rule in (obj.get("spec") or {}).get("rules") or []:
            host = (rule or {}).get("host") or ""
            if not host.endswith(LOCAL_SUFFIX):
                continue
            try:
                hostname = parse_local_hostname(host)
            except HostnameError as e:
                logger.info(f"Unable to parse hostname '{host}': {e}")
                continue
            resources.append(
                Resource(
                    source_type=self.source_type,
                    action=action,
                    names=(hostname,),
                    namespace=meta.get("namespace") or "",
                    ips=tuple(ips),
                )
            )
        return resources
