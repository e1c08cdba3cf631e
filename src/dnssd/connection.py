"""mDNS multicast transport.

Brief:
  MDNSConn binds one IPv4 and one IPv6 UDP socket to port 5353, joins the
  mDNS group on every selected interface and exposes:
    - send_query(): transmit a Query on its interface only
    - read(): lazy stream of inbound messages tagged with their interface
    - close(): release sockets and reader threads (idempotent)

Inputs:
  - A list of MulticastInterface objects (defaults to all usable ones).

Outputs:
  - Request objects carrying parsed dnspython messages.

Notes:
  - The arrival interface is derived from the sender address: the IPv6
    scope id when present, otherwise the interface whose subnet contains
    the sender.
  - Reader threads start on the first read() call and run until close().
"""

from __future__ import annotations

import contextlib
import ipaddress
import logging
import queue
import select
import socket
import struct
import threading
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Protocol, Sequence, Tuple

import dns.exception
import dns.message

from .context import Context
from .errors import ConnectionOpenError, SendError
from .interfaces import MulticastInterface, multicast_interfaces
from .query import Query

logger = logging.getLogger(__name__)

MDNS_PORT = 5353
MDNS_GROUP_V4 = "224.0.0.251"
MDNS_GROUP_V6 = "ff02::fb"

_MAX_DATAGRAM = 9000
_OPT_RDTYPE = 41
# Top bit of the class field: unicast-response in questions, cache-flush in
# records (RFC 6762 sections 5.4 and 10.2).
_CLASS_UNIQUE = 0x8000
_CLASS_MASK = 0x7FFF
IP_VERSIONS = ("v4", "v6", "all")


@dataclass(frozen=True)
class Request:
    """Brief: One inbound message and the interface it arrived on."""

    message: dns.message.Message
    interface: MulticastInterface
    source: Tuple[str, int]

    @property
    def interface_name(self) -> str:
        return self.interface.name


class MDNSConnProtocol(Protocol):
    """Brief: What the browsing engine needs from a connection."""

    @property
    def interfaces(self) -> Sequence[MulticastInterface]: ...

    def send_query(self, query: Query) -> None: ...

    def read(self, ctx: Context) -> Iterator[Request]: ...

    def close(self) -> None: ...


def _skip_name(data: bytearray, offset: int) -> int:
    while True:
        length = data[offset]
        if length & 0xC0 == 0xC0:
            return offset + 2
        offset += 1
        if length == 0:
            return offset
        offset += length


def _clear_class(data: bytearray, offset: int) -> None:
    (rdclass,) = struct.unpack_from("!H", data, offset)
    if rdclass & _CLASS_UNIQUE:
        struct.pack_into("!H", data, offset, rdclass & _CLASS_MASK)


def clear_mdns_class_bits(wire: bytes) -> bytes:
    """Brief: Strip the mDNS-specific top bit from every class field.

    Inputs:
      - wire: Raw datagram.

    Outputs:
      - bytes: Same datagram with the unicast-response bit (questions) and
        the cache-flush bit (records) cleared, so a stock DNS parser sees
        plain class IN. Malformed tails are left untouched for the parser
        to reject.
    """

    data = bytearray(wire)
    if len(data) < 12:
        return bytes(data)
    qdcount, ancount, nscount, arcount = struct.unpack_from("!HHHH", data, 4)
    offset = 12
    try:
        for _ in range(qdcount):
            offset = _skip_name(data, offset)
            _clear_class(data, offset + 2)
            offset += 4
        for _ in range(ancount + nscount + arcount):
            offset = _skip_name(data, offset)
            rdtype, _, _, rdlen = struct.unpack_from("!HHIH", data, offset)
            if rdtype != _OPT_RDTYPE:
                _clear_class(data, offset + 2)
            offset += 10 + rdlen
    except (IndexError, struct.error):
        pass
    return bytes(data)


def _open_ipv4(interfaces: Sequence[MulticastInterface]) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if hasattr(socket, "SO_REUSEPORT"):
            with contextlib.suppress(OSError):
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 255)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, 1)
        sock.bind(("", MDNS_PORT))

        joined = 0
        for iface in interfaces:
            if not iface.ipv4:
                continue
            mreq = socket.inet_aton(MDNS_GROUP_V4) + socket.inet_aton(str(iface.ipv4[0]))
            try:
                sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
                joined += 1
            except OSError as exc:
                logger.debug("IPv4 join failed on %s: %s", iface.name, exc)
        if not joined:
            raise OSError("could not join %s on any interface" % MDNS_GROUP_V4)
    except OSError:
        sock.close()
        raise
    return sock


def _open_ipv6(interfaces: Sequence[MulticastInterface]) -> socket.socket:
    sock = socket.socket(socket.AF_INET6, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if hasattr(socket, "SO_REUSEPORT"):
            with contextlib.suppress(OSError):
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
        sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_MULTICAST_HOPS, 255)
        sock.bind(("::", MDNS_PORT))

        group = socket.inet_pton(socket.AF_INET6, MDNS_GROUP_V6)
        joined = 0
        for iface in interfaces:
            if not (iface.ipv6 and iface.index):
                continue
            try:
                sock.setsockopt(
                    socket.IPPROTO_IPV6,
                    socket.IPV6_JOIN_GROUP,
                    group + struct.pack("@I", iface.index),
                )
                joined += 1
            except OSError as exc:
                logger.debug("IPv6 join failed on %s: %s", iface.name, exc)
        if not joined:
            raise OSError("could not join %s on any interface" % MDNS_GROUP_V6)
    except OSError:
        sock.close()
        raise
    return sock


class MDNSConn:
    """Brief: Multicast DNS sockets bound on a fixed set of interfaces.

    Inputs:
      - interfaces: Interfaces the sockets joined the mDNS group on.
      - sock4 / sock6: Bound sockets (either may be None, not both).
      - poll_interval: Seconds between close/cancellation checks while idle.

    Outputs:
      - MDNSConn instance; use MDNSConn.open() to create one.
    """

    def __init__(
        self,
        interfaces: Sequence[MulticastInterface],
        sock4: Optional[socket.socket] = None,
        sock6: Optional[socket.socket] = None,
        *,
        poll_interval: float = 0.25,
    ) -> None:
        self._interfaces: List[MulticastInterface] = list(interfaces)
        self._sock4 = sock4
        self._sock6 = sock6
        self._poll_interval = poll_interval
        self._send_lock = threading.Lock()
        self._readers_lock = threading.Lock()
        self._readers: List[threading.Thread] = []
        self._inbox: "queue.Queue[Request]" = queue.Queue()
        self._closed = threading.Event()

    @classmethod
    def open(
        cls,
        interfaces: Optional[Iterable[MulticastInterface]] = None,
        ip_version: str = "all",
    ) -> "MDNSConn":
        """Brief: Bind mDNS sockets on the given (or all) interfaces.

        Inputs:
          - interfaces: Interfaces to use; None enumerates every usable one.
          - ip_version: "v4", "v6" or "all".

        Outputs:
          - MDNSConn.

        Raises:
          - ValueError for an unknown ip_version.
          - ConnectionOpenError when no socket could be bound.
        """

        if ip_version not in IP_VERSIONS:
            raise ValueError(f"ip_version must be one of {IP_VERSIONS}, got {ip_version!r}")
        ifaces = list(interfaces) if interfaces is not None else multicast_interfaces()
        if not ifaces:
            raise ConnectionOpenError("no multicast-capable interface available")

        sock4: Optional[socket.socket] = None
        sock6: Optional[socket.socket] = None
        errors: List[OSError] = []
        if ip_version in ("v4", "all"):
            try:
                sock4 = _open_ipv4(ifaces)
            except OSError as exc:
                logger.debug("IPv4 mDNS socket unavailable: %s", exc)
                errors.append(exc)
        if ip_version in ("v6", "all"):
            try:
                sock6 = _open_ipv6(ifaces)
            except OSError as exc:
                logger.debug("IPv6 mDNS socket unavailable: %s", exc)
                errors.append(exc)

        if sock4 is None and sock6 is None:
            raise ConnectionOpenError(
                f"failed to bind mDNS sockets: {errors[0]}"
            ) from errors[0]

        logger.info(
            "mDNS connection open on %s (ipv4=%s ipv6=%s)",
            ", ".join(i.name for i in ifaces),
            sock4 is not None,
            sock6 is not None,
        )
        return cls(ifaces, sock4, sock6)

    @property
    def interfaces(self) -> List[MulticastInterface]:
        return list(self._interfaces)

    def send_query(self, query: Query) -> None:
        """Brief: Multicast ``query`` on its bound interface only.

        Inputs:
          - query: Query to send.

        Outputs:
          - None.

        Raises:
          - SendError when neither address family could transmit.
        """

        iface = query.interface
        wire = query.pack()
        errors: List[OSError] = []
        sent = False
        with self._send_lock:
            if self._closed.is_set():
                raise SendError("connection closed")
            if self._sock4 is not None and iface.ipv4:
                try:
                    self._sock4.setsockopt(
                        socket.IPPROTO_IP,
                        socket.IP_MULTICAST_IF,
                        socket.inet_aton(str(iface.ipv4[0])),
                    )
                    self._sock4.sendto(wire, (MDNS_GROUP_V4, MDNS_PORT))
                    sent = True
                except OSError as exc:
                    errors.append(exc)
            if self._sock6 is not None and iface.ipv6 and iface.index:
                try:
                    self._sock6.setsockopt(
                        socket.IPPROTO_IPV6,
                        socket.IPV6_MULTICAST_IF,
                        struct.pack("@I", iface.index),
                    )
                    self._sock6.sendto(wire, (MDNS_GROUP_V6, MDNS_PORT, 0, iface.index))
                    sent = True
                except OSError as exc:
                    errors.append(exc)
        if not sent:
            reason = errors[0] if errors else "no usable address"
            raise SendError(f"send on {iface.name} failed: {reason}")

    def read(self, ctx: Context) -> Iterator[Request]:
        """Brief: Yield inbound messages until ``ctx`` is done or close().

        Inputs:
          - ctx: Cancellation context ending the stream.

        Outputs:
          - Iterator[Request]; datagrams that fail to parse are dropped.
        """

        self._start_readers()
        while not ctx.done() and not self._closed.is_set():
            try:
                req = self._inbox.get(timeout=self._poll_interval)
            except queue.Empty:
                continue
            yield req

    def _start_readers(self) -> None:
        with self._readers_lock:
            if self._readers:
                return
            for sock in (self._sock4, self._sock6):
                if sock is None:
                    continue
                t = threading.Thread(
                    target=self._reader_loop,
                    args=(sock,),
                    name=f"mdns-reader-{sock.family.name}",
                    daemon=True,
                )
                self._readers.append(t)
                t.start()

    def _reader_loop(self, sock: socket.socket) -> None:
        while not self._closed.is_set():
            try:
                readable, _, _ = select.select([sock], [], [], self._poll_interval)
            except (OSError, ValueError):
                break
            if not readable:
                continue
            try:
                data, addr = sock.recvfrom(_MAX_DATAGRAM)
            except OSError as exc:
                if self._closed.is_set():
                    break
                logger.debug("recvfrom failed: %s", exc)
                continue
            req = self._decode(data, addr)
            if req is not None:
                self._inbox.put(req)

    def _decode(self, data: bytes, addr: tuple) -> Optional[Request]:
        try:
            # One rrset per record so every record keeps its own TTL.
            msg = dns.message.from_wire(
                clear_mdns_class_bits(data),
                ignore_trailing=True,
                one_rr_per_rrset=True,
            )
        except (dns.exception.DNSException, ValueError) as exc:
            logger.debug("dropping malformed datagram from %s: %s", addr[0], exc)
            return None

        iface = self.interface_for(addr)
        if iface is None:
            logger.debug("dropping datagram from %s: no matching interface", addr[0])
            return None
        return Request(message=msg, interface=iface, source=(str(addr[0]), int(addr[1])))

    def interface_for(self, addr: tuple) -> Optional[MulticastInterface]:
        """Brief: Map a recvfrom() address to the interface it arrived on.

        Inputs:
          - addr: (host, port) or (host, port, flowinfo, scope_id).

        Outputs:
          - MulticastInterface or None when no interface matches.
        """

        try:
            source = ipaddress.ip_address(str(addr[0]).split("%", 1)[0])
        except ValueError:
            return None
        scope_id = int(addr[3]) if len(addr) > 3 else 0
        for iface in self._interfaces:
            if iface.owns(source, scope_id):
                return iface
        return None

    def close(self) -> None:
        """Brief: Stop reader threads and close sockets. Safe to call twice."""

        if self._closed.is_set():
            return
        with self._send_lock:
            self._closed.set()
        for t in self._readers:
            t.join(timeout=max(1.0, self._poll_interval * 4))
        for sock in (self._sock4, self._sock6):
            if sock is not None:
                sock.close()
        logger.debug("mDNS connection closed")

    def __enter__(self) -> "MDNSConn":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
