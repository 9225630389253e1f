"""Record synthesis.

Turns a ``Resource`` into the literal resource-record lines handed to the
mDNS responder. Everything in this module is a pure function of its inputs.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from typing import FrozenSet, List, Union

from external_mdns.resource import Resource, SourceType

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


@dataclass(frozen=True)
class RecordPolicy:
    """Read-only policy applied to every synthesized record.

    ``unqualified_sources`` lists the source types whose names are host-level
    rather than namespace-scoped; those always get bare ``name.local``
    records in addition to the namespaced ones.
    """

    ttl: int = 120
    expose_ipv4: bool = True
    expose_ipv6: bool = False
    default_namespace: str = "default"
    without_namespace: bool = False
    unqualified_sources: FrozenSet[SourceType] = field(
        default_factory=lambda: frozenset({SourceType.INGRESS})
    )


def _normalize(address: str) -> IPAddress:
    ip = ipaddress.ip_address(address.strip())
    # IPv4-mapped IPv6 addresses are published as plain IPv4.
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def reverse_address(address: str) -> str:
    """Return the reverse-lookup owner name for an IP address.

    ``10.0.0.5`` becomes ``5.0.0.10.in-addr.arpa.``; IPv6 addresses expand
    to 32 reversed nibble labels under ``ip6.arpa.``.

    Raises:
        ValueError: if ``address`` is not a literal IPv4/IPv6 address
    """
    return _normalize(address).reverse_pointer + "."


def publishes_unqualified(resource: Resource, policy: RecordPolicy) -> bool:
    """Whether bare ``name.local`` records are emitted for this resource."""
    return (
        resource.namespace == policy.default_namespace
        or resource.without_namespace
        or policy.without_namespace
        or resource.source_type in policy.unqualified_sources
    )


def construct_records(resource: Resource, policy: RecordPolicy) -> List[str]:
    """Build the record lines for a resource.

    Per address the order is: dotted A/AAAA, hyphenated A/AAAA, their two
    PTRs, then (when allowed) the unqualified A/AAAA and its PTR. Both
    namespaced forms are published because some resolvers (Windows) will not
    resolve multi-label names over mDNS.
    """
    records: List[str] = []
    ttl = policy.ttl
    unqualified = publishes_unqualified(resource, policy)

    for raw_ip in resource.ips:
        try:
            ip = _normalize(raw_ip)
        except ValueError:
            logger.warning(f"Skipping unparsable address '{raw_ip}' for {list(resource.names)}")
            continue

        if ip.version == 4:
            if not policy.expose_ipv4:
                continue
            record_type = "A"
        else:
            if not policy.expose_ipv6:
                continue
            record_type = "AAAA"

        reverse_ip = ip.reverse_pointer + "."

        for name in resource.names:
            dotted = f"{name}.{resource.namespace}.local."
            hyphenated = f"{name}-{resource.namespace}.local."
            records.append(f"{dotted} {ttl} IN {record_type} {ip}")
            records.append(f"{hyphenated} {ttl} IN {record_type} {ip}")
            records.append(f"{reverse_ip} {ttl} IN PTR {dotted}")
            records.append(f"{reverse_ip} {ttl} IN PTR {hyphenated}")

        if unqualified:
            for name in resource.names:
                records.append(f"{name}.local. {ttl} IN {record_type} {ip}")
                records.append(f"{reverse_ip} {ttl} IN PTR {name}.local.")

    return records
