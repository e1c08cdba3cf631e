"""
Brief: Tests for dnssd.interfaces enumeration over ifaddr adapters.

Inputs:
  - None

Outputs:
  - None
"""

import ipaddress
from types import SimpleNamespace

import ifaddr

from dnssd.interfaces import MulticastInterface, multicast_interfaces


def _adapter(name, index, *ips):
    return SimpleNamespace(
        name=name,
        index=index,
        ips=[SimpleNamespace(ip=ip, network_prefix=prefix) for ip, prefix in ips],
    )


def test_multicast_interfaces_skips_loopback_and_parses_ipv6(monkeypatch):
    """
    Brief: Loopback-only adapters are skipped; IPv6 tuples are unpacked.

    Inputs:
      - fake ifaddr adapters

    Outputs:
      - None: Asserts resulting interfaces
    """
    adapters = [
        _adapter("lo", 1, ("127.0.0.1", 8), (("::1", 0, 0), 128)),
        _adapter("eth0", 2, ("192.168.1.10", 24), (("fe80::10", 0, 2), 64)),
        _adapter("wlan0", 3, ("10.0.0.5", 24)),
    ]
    monkeypatch.setattr(ifaddr, "get_adapters", lambda: adapters)

    result = multicast_interfaces()
    assert [i.name for i in result] == ["eth0", "wlan0"]
    eth0 = result[0]
    assert eth0.index == 2
    assert eth0.ipv4 == [ipaddress.ip_address("192.168.1.10")]
    assert eth0.ipv6 == [ipaddress.ip_address("fe80::10")]


def test_multicast_interfaces_filters_by_name(monkeypatch):
    adapters = [
        _adapter("eth0", 2, ("192.168.1.10", 24)),
        _adapter("wlan0", 3, ("10.0.0.5", 24)),
    ]
    monkeypatch.setattr(ifaddr, "get_adapters", lambda: adapters)
    assert [i.name for i in multicast_interfaces(["wlan0"])] == ["wlan0"]
    assert multicast_interfaces(["nope"]) == []


def test_owns_prefers_scope_id_over_subnet():
    iface = MulticastInterface(
        name="eth0",
        index=2,
        addresses=(ipaddress.ip_interface("192.168.1.10/24"),),
    )
    assert iface.owns(ipaddress.ip_address("192.168.1.77"))
    assert not iface.owns(ipaddress.ip_address("192.168.2.77"))
    assert iface.owns(ipaddress.ip_address("fe80::1"), scope_id=2)
    assert not iface.owns(ipaddress.ip_address("fe80::1"), scope_id=5)
