"""mDNS responder.

The synchronization core only needs ``publish`` and ``unpublish`` on a
record line; ``MdnsResponder`` is the in-process implementation that holds
the published table and answers multicast queries for it on the local link.
"""

from __future__ import annotations

import logging
import socket
import struct
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from dnslib import QTYPE, RR, DNSHeader, DNSRecord

logger = logging.getLogger(__name__)

MDNS_ADDR = "224.0.0.251"
MDNS_PORT = 5353

RecordKey = Tuple[str, int, str]


class ResponderError(RuntimeError):
    """Raised when a record cannot be published or retracted."""


# =============================================================================
# Publisher Interface
# =============================================================================


class RecordPublisher(ABC):
    """Destination for record lines such as ``foo.local. 120 IN A 10.0.0.5``.

    Both operations must be idempotent: publishing a line that is already
    published, or unpublishing one that is absent, is not an error.
    """

    @abstractmethod
    def publish(self, record: str) -> None:
        """Publish a record line."""
        pass

    @abstractmethod
    def unpublish(self, record: str) -> None:
        """Retract a record line."""
        pass


# =============================================================================
# Multicast Responder
# =============================================================================


def _parse_record(record: str) -> RR:
    try:
        rrs = RR.fromZone(record)
    except Exception as e:
        raise ResponderError(f"Unable to parse record '{record}': {e}") from e
    if len(rrs) != 1:
        raise ResponderError(f"Expected exactly one record in '{record}', got {len(rrs)}")
    return rrs[0]


def _record_key(rr: RR) -> RecordKey:
    return (str(rr.rname).lower(), rr.rtype, str(rr.rdata).lower())


class MdnsResponder(RecordPublisher):
    """Answer mDNS queries for a table of published records.

    New records are announced with an unsolicited response; retracted ones
    with a goodbye packet (TTL 0). Without ``start()`` the table is still
    maintained but nothing is sent.
    """

    def __init__(self, interface: str = "0.0.0.0", port: int = MDNS_PORT):
        self._interface = interface
        self._port = port
        self._records: Dict[RecordKey, RR] = {}
        self._lock = threading.Lock()
        self._sock: Optional[socket.socket] = None
        self._closed = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -- lifecycle ------------------------------------------------------------

    def start(self) -> None:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if hasattr(socket, "SO_REUSEPORT"):
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        sock.bind(("", self._port))
        mreq = struct.pack("4s4s", socket.inet_aton(MDNS_ADDR), socket.inet_aton(self._interface))
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 255)
        sock.settimeout(0.5)
        self._sock = sock

        self._thread = threading.Thread(target=self._serve, name="mdns-responder", daemon=True)
        self._thread.start()
        logger.info(f"mDNS responder listening on {MDNS_ADDR}:{self._port}")

    def close(self) -> None:
        self._closed.set()
        if self._thread is not None:
            self._thread.join(timeout=2)
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    # -- publisher ------------------------------------------------------------

    def publish(self, record: str) -> None:
        rr = _parse_record(record)
        key = _record_key(rr)
        with self._lock:
            if key in self._records:
                return
            self._records[key] = rr
        self._announce([rr])

    def unpublish(self, record: str) -> None:
        rr = _parse_record(record)
        with self._lock:
            existing = self._records.pop(_record_key(rr), None)
        if existing is None:
            return
        self._announce([RR(existing.rname, existing.rtype, existing.rclass, 0, existing.rdata)])

    def records(self) -> List[str]:
        """Return the published table as zone lines."""
        with self._lock:
            return [rr.toZone() for rr in self._records.values()]

    # -- query handling -------------------------------------------------------

    def _lookup(self, qname: str, qtype: int) -> List[RR]:
        name = qname.lower()
        with self._lock:
            return [
                rr
                for (owner, rtype, _), rr in self._records.items()
                if owner == name and (qtype == QTYPE.ANY or qtype == rtype)
            ]

    def answer(self, data: bytes, legacy_unicast: bool = False) -> Optional[bytes]:
        """Build the response packet for a query, or None if nothing matches."""
        request = DNSRecord.parse(data)
        if request.header.qr:
            return None

        answers: List[RR] = []
        for question in request.questions:
            answers.extend(self._lookup(str(question.qname), question.qtype))
        if not answers:
            return None

        if legacy_unicast:
            reply = request.reply(ra=0, aa=1)
        else:
            reply = DNSRecord(DNSHeader(id=0, qr=1, aa=1, ra=0))
        for rr in answers:
            reply.add_answer(rr)
        return reply.pack()

    def _serve(self) -> None:
        while not self._closed.is_set():
            sock = self._sock
            if sock is None:
                return
            try:
                data, (addr, port) = sock.recvfrom(9000)
            except socket.timeout:
                continue
            except OSError as e:
                if not self._closed.is_set():
                    logger.warning(f"mDNS receive failed: {e}")
                return

            legacy = port != MDNS_PORT
            try:
                packet = self.answer(data, legacy_unicast=legacy)
            except Exception as e:
                logger.debug(f"Ignoring malformed mDNS packet from {addr}: {e}")
                continue
            if packet is None:
                continue

            target = (addr, port) if legacy else (MDNS_ADDR, MDNS_PORT)
            try:
                sock.sendto(packet, target)
            except OSError as e:
                logger.warning(f"Failed to send mDNS response to {target[0]}: {e}")

    def _announce(self, rrs: List[RR]) -> None:
        sock = self._sock
        if sock is None:
            return
        packet = DNSRecord(DNSHeader(id=0, qr=1, aa=1, ra=0))
        for rr in rrs:
            packet.add_answer(rr)
        try:
            sock.sendto(packet.pack(), (MDNS_ADDR, MDNS_PORT))
        except OSError as e:
            raise ResponderError(f"Failed to announce {rrs[0].toZone()}: {e}") from e
