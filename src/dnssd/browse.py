"""Browsing engine: discover DNS-SD service instances over mDNS.

Brief:
  One browse operation multicasts a PTR question for every requested
  service type on every interface, folds every inbound message into a
  record cache and reports instance appearance/disappearance through two
  callbacks. It runs until its Context is cancelled and then raises the
  context error.

Inputs:
  - ctx: dnssd.context.Context controlling the lifetime of the operation.
  - service types such as ``_http._tcp.local.``.
  - add / rmv callbacks receiving BrowseEntry values.

Outputs:
  - Never returns normally; raises Cancelled / DeadlineExceeded (carrying
    the cancellation cause) or ConnectionOpenError on setup failure.

Example:
  from dnssd import Context, ContextError, lookup_type

  with Context.background().with_timeout(5) as ctx:
      try:
          lookup_type(ctx, "_http._tcp.local.", print, print)
      except ContextError:
          pass
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from typing import (
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    NoReturn,
    Optional,
    Sequence,
    Tuple,
)

import dns.message

from .cache import Cache, Service
from .config import BrowseConfig
from .connection import MDNSConn, MDNSConnProtocol, Request
from .context import Context
from .interfaces import IPAddress, multicast_interfaces
from .names import instance_name, normalize_service_type, unescape
from .query import Query, browse_message

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BrowseEntry:
    """Brief: A discovered service instance as seen on one interface.

    Inputs:
      - ips: Addresses of ``host`` learned on ``interface_name``.
      - host: SRV target host name.
      - port: SRV port.
      - interface_name: Interface the instance was seen on.
      - name: Escaped instance name (for example ``Printer\\ 1``).
      - type: Service type (for example ``_ipp._tcp``).
      - domain: Domain (for example ``local``).
      - text: TXT key/value pairs.
      - ttl: Advertised TTL when the entry was first reported.

    Outputs:
      - BrowseEntry instance.
    """

    ips: Tuple[IPAddress, ...]
    host: str
    port: int
    interface_name: str
    name: str
    type: str
    domain: str
    text: Mapping[str, str] = field(default_factory=dict)
    ttl: timedelta = timedelta(0)

    def key(self) -> Tuple[str, str, str]:
        return (self.type, self.name, self.interface_name)

    def service_instance_name(self) -> str:
        """Brief: Return ``<name>.<type>.<domain>.``.

        Example:
          >>> e = BrowseEntry((), "", 0, "en0", "Printer\\\\ 1", "_ipp._tcp", "local")
          >>> e.service_instance_name()
          'Printer\\\\ 1._ipp._tcp.local.'
        """

        return instance_name(self.name, self.type, self.domain)

    def unescaped_name(self) -> str:
        return unescape(self.name)

    def unescaped_service_instance_name(self) -> str:
        """Brief: Same as service_instance_name() with the name unescaped.

        Example:
          >>> e = BrowseEntry((), "", 0, "en0", "Printer\\\\ 1", "_ipp._tcp", "local")
          >>> e.unescaped_service_instance_name()
          'Printer 1._ipp._tcp.local.'
        """

        return instance_name(self.unescaped_name(), self.type, self.domain)


AddFunc = Callable[[BrowseEntry], None]
RmvFunc = Callable[[BrowseEntry], None]


def entry_from_service(
    service: Service, interface_name: str, ips: Iterable[IPAddress]
) -> BrowseEntry:
    """Brief: Project one (service, interface) pair onto a BrowseEntry."""

    return BrowseEntry(
        ips=tuple(ips),
        host=service.host,
        port=service.port,
        interface_name=interface_name,
        name=service.name,
        type=service.type,
        domain=service.domain,
        text=dict(service.text),
        ttl=service.ttl,
    )


class EntryTracker:
    """Brief: Set of live entries and the add/remove diff against the cache.

    Inputs:
      - service_types: Requested service types; services of other types are
        never reported.

    Outputs:
      - EntryTracker instance.

    Notes:
      - Entries are keyed by (type, name, interface_name). A key is reported
        once through ``add`` and once through ``rmv``; newer cache data for a
        live key is not reported.
    """

    def __init__(self, service_types: Iterable[str]) -> None:
        self._types = {normalize_service_type(s) for s in service_types}
        self._entries: Dict[Tuple[str, str, str], BrowseEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def entries(self) -> List[BrowseEntry]:
        return list(self._entries.values())

    def wants(self, service: Service) -> bool:
        return normalize_service_type(service.service_name()) in self._types

    def reconcile(
        self, services: Sequence[Service], add: AddFunc, rmv: RmvFunc
    ) -> None:
        """Brief: Report new entries, then entries whose service vanished.

        Inputs:
          - services: Current cache snapshot.
          - add: Called for every newly seen key, in snapshot order.
          - rmv: Called with the last reported entry of every key whose
            instance is no longer in the snapshot.

        Outputs:
          - None; the live set is updated in place.
        """

        for service in services:
            if not self.wants(service):
                continue
            for iface_name, ips in service.addresses_by_interface.items():
                key = (service.type, service.name, iface_name)
                if key in self._entries:
                    continue
                entry = entry_from_service(service, iface_name, ips)
                self._entries[key] = entry
                add(entry)

        present = {s.service_instance_name() for s in services}
        kept: Dict[Tuple[str, str, str], BrowseEntry] = {}
        for key, entry in self._entries.items():
            if entry.service_instance_name() in present:
                kept[key] = entry
            else:
                rmv(entry)
        self._entries = kept


@dataclass
class BrowseOptions:
    """Brief: Parameters of one browse operation.

    Inputs:
      - service_types: One or more service type names.
      - add: Callback for appearing entries.
      - rmv: Callback for disappearing entries.

    Outputs:
      - BrowseOptions instance; raises ValueError when invalid.
    """

    service_types: Sequence[str]
    add: AddFunc
    rmv: RmvFunc

    def __post_init__(self) -> None:
        if isinstance(self.service_types, str):
            self.service_types = [self.service_types]
        types = [str(s).strip() for s in (self.service_types or []) if str(s).strip()]
        if not types:
            raise ValueError("at least one service type is required")
        self.service_types = types
        if not callable(self.add) or not callable(self.rmv):
            raise ValueError("add and rmv must be callable")


# Event kinds on the control loop queue.
_QUERY = "query"
_MESSAGE = "message"
_DISPATCH_DONE = "dispatch_done"
_READ_DONE = "read_done"
_WAKE = "wake"


class Browser:
    """Brief: Runs one browse operation on a connection.

    Inputs:
      - options: BrowseOptions bundle.
      - config: Optional BrowseConfig for cache bounds and thread joins.
      - cache: Optional Cache; a fresh one is created per run when omitted.

    Outputs:
      - Browser instance. ``run()`` blocks the calling thread.

    Notes:
      - Three producers feed one unbounded queue: a dispatch thread (one
        Query per interface, then a completion marker), a reader thread
        draining ``conn.read()``, and the context's done callback. The
        calling thread is the only consumer and the only writer of the
        cache and the tracked entries.
    """

    def __init__(
        self,
        options: BrowseOptions,
        *,
        config: Optional[BrowseConfig] = None,
        cache: Optional[Cache] = None,
    ) -> None:
        self.options = options
        self.config = config or BrowseConfig()
        self._cache = cache
        self.tracker = EntryTracker(options.service_types)

    def run(self, ctx: Context, conn: MDNSConnProtocol) -> NoReturn:
        """Brief: Browse until ``ctx`` is done.

        Inputs:
          - ctx: Cancellation context.
          - conn: Open connection; the caller keeps ownership.

        Outputs:
          - Never returns; raises ctx.err() once the context is done.
        """

        cache = self._cache if self._cache is not None else Cache(
            max_services=self.config.max_services,
            max_addresses=self.config.max_addresses,
        )
        message = browse_message(self.options.service_types)
        events: "queue.Queue[Tuple[str, object]]" = queue.Queue()

        read_ctx = ctx.with_cancel()
        def wake(_ctx: Context) -> None:
            events.put((_WAKE, None))

        ctx.add_done_callback(wake)

        dispatcher = threading.Thread(
            target=self._dispatch,
            args=(conn, message, events),
            name="dnssd-dispatch",
            daemon=True,
        )
        reader = threading.Thread(
            target=self._pump,
            args=(conn, read_ctx, events),
            name="dnssd-reader",
            daemon=True,
        )

        logger.debug("browsing for %s", ", ".join(self.options.service_types))
        try:
            dispatcher.start()
            reader.start()
            while True:
                if ctx.done():
                    break
                kind, payload = events.get()
                if ctx.done():
                    break
                if kind == _QUERY and isinstance(payload, Query):
                    self._send(conn, payload)
                elif kind == _MESSAGE and isinstance(payload, Request):
                    logger.debug(
                        "Receive message at %s\n%s", payload.interface_name, payload.message
                    )
                    cache.update_from(payload.message, payload.interface)
                    self.tracker.reconcile(
                        cache.services(), self.options.add, self.options.rmv
                    )
                elif kind == _DISPATCH_DONE:
                    logger.debug("query dispatch finished")
                elif kind == _READ_DONE:
                    logger.debug("receive stream ended")
        finally:
            ctx.remove_done_callback(wake)
            read_ctx.cancel()
            dispatcher.join(self.config.join_timeout)
            reader.join(self.config.join_timeout)

        err = ctx.err()
        logger.debug("browsing stopped: %s", err)
        assert err is not None
        raise err

    @staticmethod
    def _send(conn: MDNSConnProtocol, query: Query) -> None:
        logger.debug("Send browsing query at %s\n%s", query.interface_name, query.message)
        try:
            conn.send_query(query)
        except OSError as exc:
            logger.debug("SendQuery on %s failed: %s", query.interface_name, exc)

    @staticmethod
    def _dispatch(
        conn: MDNSConnProtocol,
        message: dns.message.Message,
        events: "queue.Queue[Tuple[str, object]]",
    ) -> None:
        try:
            for iface in conn.interfaces:
                events.put((_QUERY, Query(message=message, interface=iface)))
        except Exception:
            logger.exception("enumerating interfaces for query dispatch failed")
        finally:
            events.put((_DISPATCH_DONE, None))

    @staticmethod
    def _pump(
        conn: MDNSConnProtocol,
        ctx: Context,
        events: "queue.Queue[Tuple[str, object]]",
    ) -> None:
        try:
            for req in conn.read(ctx):
                events.put((_MESSAGE, req))
        except Exception:
            if not ctx.done():
                logger.exception("receive stream failed")
        finally:
            events.put((_READ_DONE, None))


def lookup_types(
    ctx: Context,
    services: Sequence[str],
    add: AddFunc,
    rmv: RmvFunc,
    *,
    config: Optional[BrowseConfig] = None,
) -> NoReturn:
    """Brief: Browse for instances of several service types.

    Inputs:
      - ctx: Cancellation context; compose a deadline with with_timeout().
      - services: Service type names (for example ``_http._tcp.local.``);
        a single string is accepted.
      - add / rmv: Callbacks run synchronously on the calling thread.
      - config: Optional BrowseConfig (interfaces, IP version, cache bounds).

    Outputs:
      - Never returns normally.

    Raises:
      - ValueError for empty service types or non-callable callbacks.
      - ConnectionOpenError when the mDNS sockets cannot be bound.
      - Cancelled / DeadlineExceeded once ``ctx`` is done.
    """

    options = BrowseOptions(services, add, rmv)
    cfg = config or BrowseConfig()
    interfaces = multicast_interfaces(cfg.interfaces or None)
    with MDNSConn.open(interfaces, ip_version=cfg.ip_version) as conn:
        Browser(options, config=cfg).run(ctx, conn)


def lookup_type(
    ctx: Context,
    service: str,
    add: AddFunc,
    rmv: RmvFunc,
    *,
    config: Optional[BrowseConfig] = None,
) -> NoReturn:
    """Brief: Browse for instances of a single service type.

    See lookup_types() for inputs and raised errors.
    """

    lookup_types(ctx, [service], add, rmv, config=config)
