"""Outbound mDNS browse queries.

Brief:
  A browse sends the same question set on every interface; only the egress
  interface differs between the Query objects of one dispatch burst.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

import dns.message
import dns.name
import dns.rdataclass
import dns.rdatatype

from .interfaces import MulticastInterface


def browse_message(service_types: Iterable[str]) -> dns.message.Message:
    """Brief: Build the multicast question message for a browse.

    Inputs:
      - service_types: Service type names such as ``_http._tcp.local.``.

    Outputs:
      - dns.message.Message with one PTR/IN question per distinct service
        type, message id 0 and no flags set (RFC 6762 section 18). Known
        answers are never included.
    """

    msg = dns.message.Message(id=0)
    msg.flags = 0
    seen = set()
    for service in service_types:
        qname = dns.name.from_text(str(service))
        if qname in seen:
            continue
        seen.add(qname)
        msg.find_rrset(
            msg.question,
            qname,
            dns.rdataclass.IN,
            dns.rdatatype.PTR,
            create=True,
            force_unique=True,
        )
    return msg


@dataclass(frozen=True)
class Query:
    """Brief: A question message bound to one egress interface."""

    message: dns.message.Message
    interface: MulticastInterface

    @property
    def interface_name(self) -> str:
        return self.interface.name

    def pack(self) -> bytes:
        return self.message.to_wire()
