"""Enumeration of local multicast-capable network interfaces.

Brief:
  Interfaces are discovered with ``ifaddr`` so the same code runs on Linux,
  macOS and Windows. ``ifaddr`` does not expose interface flags, so an
  adapter counts as multicast capable when it has at least one
  non-loopback address: IPv4 for IP_ADD_MEMBERSHIP, or an interface index
  for IPV6_JOIN_GROUP.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple, Union

import ifaddr

logger = logging.getLogger(__name__)

IPInterface = Union[ipaddress.IPv4Interface, ipaddress.IPv6Interface]
IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


@dataclass(frozen=True)
class MulticastInterface:
    """Brief: One local interface usable for mDNS.

    Inputs:
      - name: OS interface name (for example ``eth0`` or ``en0``).
      - index: OS interface index (0 when unknown).
      - addresses: Configured addresses with their prefix lengths.

    Outputs:
      - MulticastInterface instance.
    """

    name: str
    index: int = 0
    addresses: Tuple[IPInterface, ...] = field(default_factory=tuple)

    @property
    def ipv4(self) -> List[ipaddress.IPv4Address]:
        return [a.ip for a in self.addresses if a.version == 4]

    @property
    def ipv6(self) -> List[ipaddress.IPv6Address]:
        return [a.ip for a in self.addresses if a.version == 6]

    def owns(self, source: IPAddress, scope_id: int = 0) -> bool:
        """Brief: Return True when a datagram from ``source`` arrived here.

        Inputs:
          - source: Sender address.
          - scope_id: IPv6 scope id from recvfrom(); matched against index.

        Outputs:
          - bool.
        """

        if scope_id and self.index:
            return scope_id == self.index
        return any(source in a.network for a in self.addresses)


def _adapter_addresses(adapter: "ifaddr.Adapter") -> Tuple[IPInterface, ...]:
    out: List[IPInterface] = []
    for ip in adapter.ips:
        try:
            # IPv6 entries carry (address, flowinfo, scope_id).
            host = ip.ip[0] if isinstance(ip.ip, tuple) else ip.ip
            iface = ipaddress.ip_interface(f"{host}/{ip.network_prefix}")
        except ValueError:
            logger.debug("skipping unparsable address %r on %s", ip.ip, adapter.name)
            continue
        if iface.ip.is_loopback:
            continue
        out.append(iface)
    return tuple(out)


def multicast_interfaces(
    names: Optional[Iterable[str]] = None,
) -> List[MulticastInterface]:
    """Brief: Return the interfaces mDNS queries should be sent on.

    Inputs:
      - names: Optional interface names to restrict the result to. When None
        or empty, every usable interface is returned.

    Outputs:
      - list[MulticastInterface] in adapter enumeration order.
    """

    wanted = {n for n in (names or []) if n}
    result: List[MulticastInterface] = []
    for adapter in ifaddr.get_adapters():
        name = str(adapter.name)
        if wanted and name not in wanted:
            continue
        addresses = _adapter_addresses(adapter)
        if not addresses:
            continue
        index = int(getattr(adapter, "index", 0) or 0)
        result.append(MulticastInterface(name=name, index=index, addresses=addresses))

    logger.debug(
        "multicast interfaces: %s", ", ".join(i.name for i in result) or "<none>"
    )
    return result
