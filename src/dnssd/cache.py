"""Resource-record cache aggregating mDNS records into service views.

Brief:
  Raw PTR/SRV/TXT/A/AAAA records from inbound messages are folded into one
  entry per service instance plus a table of host addresses keyed by the
  interface they were learned on. Every entry expires on its own TTL via
  ``cachetools.TLRUCache``; a record with TTL 0 is a goodbye (RFC 6762
  section 10.1) and withdraws the entry immediately.

Notes:
  - The cache is not thread-safe. The browsing engine owns one cache per
    operation and only touches it from its control loop.
  - ``services()`` returns fresh ``Service`` objects; mutating them does not
    affect the cache.
"""

from __future__ import annotations

import ipaddress
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Tuple

import dns.message
import dns.name
import dns.rdatatype
import dns.rrset
from cachetools import TLRUCache

from .interfaces import IPAddress, MulticastInterface
from .names import instance_name, labels_to_text, split_instance_name

logger = logging.getLogger(__name__)

# Instances must exist before SRV/TXT attach to them, and hosts are only
# useful once an SRV names them.
_RECORD_ORDER: Dict[int, int] = {
    dns.rdatatype.PTR: 0,
    dns.rdatatype.SRV: 1,
    dns.rdatatype.TXT: 2,
    dns.rdatatype.A: 3,
    dns.rdatatype.AAAA: 4,
}


@dataclass
class Service:
    """Brief: Aggregated view of one discovered service instance.

    Inputs:
      - name: Escaped instance label (for example ``Printer\\ 1``).
      - type: Service type without domain (for example ``_ipp._tcp``).
      - domain: Domain without trailing dot (for example ``local``).
      - host: SRV target host name with trailing dot, empty until known.
      - port: SRV port, 0 until known.
      - text: TXT key/value pairs.
      - ttl: Most recently advertised TTL.
      - addresses_by_interface: interface name -> addresses of ``host``
        learned on that interface.

    Outputs:
      - Service instance.
    """

    name: str
    type: str
    domain: str
    host: str = ""
    port: int = 0
    text: Dict[str, str] = field(default_factory=dict)
    ttl: timedelta = timedelta(0)
    addresses_by_interface: Dict[str, List[IPAddress]] = field(default_factory=dict)

    def key(self) -> Tuple[str, str, str]:
        return (self.type.lower(), self.name.lower(), self.domain.lower())

    def service_name(self) -> str:
        """Brief: Return ``<type>.<domain>.``, the name browse queries ask for."""

        return f"{self.type}.{self.domain}."

    def service_instance_name(self) -> str:
        return instance_name(self.name, self.type, self.domain)


@dataclass
class _InstanceRecord:
    name: str
    type: str
    domain: str
    ttl: int
    host: str = ""
    port: int = 0
    text: Dict[str, str] = field(default_factory=dict)


class _AddressRecord(NamedTuple):
    ttl: int


def _expires_at(_key: object, value: object, now: float) -> float:
    return now + getattr(value, "ttl", 0)


def _name_key(name: dns.name.Name) -> str:
    return labels_to_text(name.labels).lower()


def parse_txt(strings: Iterable[bytes]) -> Dict[str, str]:
    """Brief: Decode DNS-SD TXT strings into a key/value mapping.

    Inputs:
      - strings: Character strings of one TXT record.

    Outputs:
      - dict[str, str]. Keys without ``=`` map to ``""``; when a key repeats
        only the first occurrence counts (RFC 6763 section 6.4).
    """

    text: Dict[str, str] = {}
    for raw in strings:
        entry = bytes(raw).decode("utf-8", errors="replace")
        key, _, value = entry.partition("=")
        if not key or key in text:
            continue
        text[key] = value
    return text


class Cache:
    """Brief: TTL-aware aggregate of mDNS records seen on all interfaces.

    Inputs:
      - max_services: Upper bound on tracked instances; the entry closest to
        expiry is dropped first when the bound is hit.
      - max_addresses: Upper bound on (host, interface, address) entries.
      - timer: Monotonic clock returning seconds; injectable for tests.

    Outputs:
      - Cache instance.

    Example:
      >>> cache = Cache()
      >>> cache.services()
      []
    """

    def __init__(
        self,
        *,
        max_services: int = 4096,
        max_addresses: int = 4096,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._instances: TLRUCache = TLRUCache(
            maxsize=max_services, ttu=_expires_at, timer=timer
        )
        self._addresses: TLRUCache = TLRUCache(
            maxsize=max_addresses, ttu=_expires_at, timer=timer
        )

    def __len__(self) -> int:
        return len(self.services())

    def update_from(
        self, message: dns.message.Message, interface: MulticastInterface
    ) -> None:
        """Brief: Merge the answer and additional records of one message.

        Inputs:
          - message: Parsed inbound mDNS message. Queries and unrelated
            records are ignored.
          - interface: Interface the message arrived on; addresses are
            recorded against its name.

        Outputs:
          - None.
        """

        rrsets: List[dns.rrset.RRset] = [
            rrset
            for section in (message.answer, message.additional)
            for rrset in section
            if rrset.rdtype in _RECORD_ORDER
        ]
        rrsets.sort(key=lambda r: _RECORD_ORDER[r.rdtype])

        for rrset in rrsets:
            ttl = int(rrset.ttl)
            if rrset.rdtype == dns.rdatatype.PTR:
                for rd in rrset:
                    self._touch(rd.target, ttl)
            elif rrset.rdtype == dns.rdatatype.SRV:
                for rd in rrset:
                    rec = self._touch(rrset.name, ttl)
                    if rec is not None:
                        rec.host = labels_to_text(rd.target.labels)
                        rec.port = int(rd.port)
            elif rrset.rdtype == dns.rdatatype.TXT:
                self._update_text(rrset, ttl)
            else:
                self._update_addresses(rrset, ttl, interface)

    def _touch(self, name: dns.name.Name, ttl: int) -> Optional[_InstanceRecord]:
        """Brief: Create or refresh the instance named ``name``.

        Outputs:
          - The live record, or None when the record was a goodbye or the
            name is not a service instance name.
        """

        key = _name_key(name)
        rec = self._instances.get(key)
        if ttl <= 0:
            if rec is not None:
                del self._instances[key]
                logger.debug("goodbye for %s", key)
            return None

        if rec is None:
            parts = split_instance_name(name.labels)
            if parts is None:
                return None
            rec = _InstanceRecord(*parts, ttl=ttl)
            logger.debug("new service instance %s", key)
        rec.ttl = ttl
        # Re-inserting recomputes the expiry from the fresh TTL.
        self._instances[key] = rec
        return rec

    def _update_text(self, rrset: dns.rrset.RRset, ttl: int) -> None:
        key = _name_key(rrset.name)
        rec = self._instances.get(key)
        if rec is None:
            return
        if ttl <= 0:
            del self._instances[key]
            logger.debug("goodbye (TXT) for %s", key)
            return
        text: Dict[str, str] = {}
        for rd in rrset:
            for k, v in parse_txt(rd.strings).items():
                text.setdefault(k, v)
        rec.text = text
        rec.ttl = ttl
        self._instances[key] = rec

    def _update_addresses(
        self, rrset: dns.rrset.RRset, ttl: int, interface: MulticastInterface
    ) -> None:
        host = _name_key(rrset.name)
        for rd in rrset:
            try:
                ip = ipaddress.ip_address(rd.address)
            except ValueError:
                continue
            key = (host, interface.name, ip)
            if ttl <= 0:
                self._addresses.pop(key, None)
            else:
                self._addresses[key] = _AddressRecord(ttl)

    def services(self) -> List[Service]:
        """Brief: Snapshot of every unexpired service instance.

        Inputs:
          - None.

        Outputs:
          - list[Service] in first-seen order. A service whose host has no
            known address has an empty ``addresses_by_interface``.
        """

        self._instances.expire()
        self._addresses.expire()

        by_host: Dict[str, Dict[str, List[IPAddress]]] = {}
        for host, iface_name, ip in list(self._addresses.keys()):
            by_host.setdefault(host, {}).setdefault(iface_name, []).append(ip)

        result: List[Service] = []
        for key in list(self._instances.keys()):
            rec = self._instances.get(key)
            if rec is None:
                continue
            addrs = by_host.get(rec.host.lower(), {}) if rec.host else {}
            result.append(
                Service(
                    name=rec.name,
                    type=rec.type,
                    domain=rec.domain,
                    host=rec.host,
                    port=rec.port,
                    text=dict(rec.text),
                    ttl=timedelta(seconds=rec.ttl),
                    addresses_by_interface={k: list(v) for k, v in addrs.items()},
                )
            )
        return result
