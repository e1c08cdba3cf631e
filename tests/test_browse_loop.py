"""
Brief: Tests for the dnssd.browse control loop with an in-memory connection.

Inputs:
  - None

Outputs:
  - None
"""

import queue
import threading
import time

import pytest

import dnssd.browse as browse_mod
from dnssd.browse import Browser, BrowseOptions, lookup_type, lookup_types
from dnssd.cache import Cache
from dnssd.config import BrowseConfig
from dnssd.connection import Request
from dnssd.context import Context
from dnssd.errors import Cancelled, ConnectionOpenError, DeadlineExceeded
from mdns_records import ETH0, WLAN0, FakeClock, announce, goodbye, response


class FakeConn:
    """Brief: In-memory MDNSConn replacement recording sent queries.

    Inputs:
      - interfaces: interfaces reported by the connection
      - fail_on: interface names whose send_query raises OSError

    Outputs:
      - FakeConn instance
    """

    def __init__(self, interfaces=(ETH0,), fail_on=()):
        self._interfaces = list(interfaces)
        self.fail_on = set(fail_on)
        self.sent = []
        self.attempts = []
        self.inbox = queue.Queue()
        self.closed = False

    @property
    def interfaces(self):
        return list(self._interfaces)

    def send_query(self, query):
        self.attempts.append(query.interface_name)
        if query.interface_name in self.fail_on:
            raise OSError("network is unreachable")
        self.sent.append(query)

    def read(self, ctx):
        while not ctx.done():
            try:
                yield self.inbox.get(timeout=0.02)
            except queue.Empty:
                continue

    def deliver(self, message, iface=ETH0):
        self.inbox.put(Request(message=message, interface=iface, source=("192.168.1.20", 5353)))

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class Run:
    """Brief: Browser.run() executing on a background thread."""

    def __init__(self, conn, ctx, types=("_ipp._tcp.local.",), add=None, rmv=None, cache=None):
        self.adds = []
        self.rmvs = []
        self.error = None
        options = BrowseOptions(
            list(types),
            add or self.adds.append,
            rmv or self.rmvs.append,
        )
        self.browser = Browser(options, config=BrowseConfig(join_timeout=1.0), cache=cache)
        self.thread = threading.Thread(target=self._run, args=(conn, ctx), daemon=True)

    def _run(self, conn, ctx):
        try:
            self.browser.run(ctx, conn)
        except BaseException as exc:
            self.error = exc

    def start(self):
        self.thread.start()
        return self

    def join(self, timeout=3.0):
        self.thread.join(timeout)
        assert not self.thread.is_alive()


def wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_queries_sent_once_per_interface_then_cancel_raises():
    """
    Brief: One query per interface is sent and cancel ends run() with Cancelled.

    Inputs:
      - connection with eth0 and wlan0

    Outputs:
      - None: Asserts sent queries and raised error cause
    """
    conn = FakeConn(interfaces=(ETH0, WLAN0))
    ctx = Context.background().with_cancel()
    run = Run(conn, ctx, types=("_ipp._tcp.local.", "_http._tcp.local.")).start()

    assert wait_for(lambda: len(conn.sent) == 2)
    assert [q.interface_name for q in conn.sent] == ["eth0", "wlan0"]
    assert conn.sent[0].message is conn.sent[1].message
    assert len(conn.sent[0].message.question) == 2

    ctx.cancel("test finished")
    run.join()
    assert isinstance(run.error, Cancelled)
    assert run.error.cause == "test finished"
    assert conn.closed is False


def test_send_failure_on_one_interface_is_ignored():
    """
    Brief: A failing interface does not stop dispatch or message handling.

    Inputs:
      - eth0 send raises OSError

    Outputs:
      - None: Asserts wlan0 query sent and a later message processed
    """
    conn = FakeConn(interfaces=(ETH0, WLAN0), fail_on={"eth0"})
    ctx = Context.background().with_cancel()
    run = Run(conn, ctx).start()

    assert wait_for(lambda: len(conn.attempts) == 2)
    assert [q.interface_name for q in conn.sent] == ["wlan0"]

    conn.deliver(announce("Printer 1", "printer.local.", 631, "10.0.0.20"), WLAN0)
    assert wait_for(lambda: len(run.adds) == 1)
    ctx.cancel()
    run.join()
    assert isinstance(run.error, Cancelled)


def test_repeated_message_reports_single_add():
    """
    Brief: Receiving the same announcement twice yields one add.

    Inputs:
      - announcement delivered twice, followed by a marker instance

    Outputs:
      - None: Asserts adds in order without duplicates
    """
    conn = FakeConn()
    ctx = Context.background().with_cancel()
    run = Run(conn, ctx).start()

    msg = announce("Printer 1", "printer.local.", 631, "192.168.1.20")
    conn.deliver(msg)
    conn.deliver(msg)
    conn.deliver(announce("marker", "marker.local.", 1, "192.168.1.30"))
    assert wait_for(lambda: len(run.adds) == 2)
    ctx.cancel()
    run.join()

    assert [e.unescaped_name() for e in run.adds] == ["Printer 1", "marker"]
    assert run.rmvs == []


def test_instance_on_two_interfaces_reports_two_entries():
    conn = FakeConn(interfaces=(ETH0, WLAN0))
    ctx = Context.background().with_cancel()
    run = Run(conn, ctx).start()

    conn.deliver(announce("Printer 1", "printer.local.", 631, "192.168.1.20"), ETH0)
    conn.deliver(announce("Printer 1", "printer.local.", 631, "10.0.0.20"), WLAN0)
    assert wait_for(lambda: len(run.adds) == 2)
    ctx.cancel()
    run.join()
    assert sorted(e.interface_name for e in run.adds) == ["eth0", "wlan0"]


def test_goodbye_reports_removal():
    conn = FakeConn()
    ctx = Context.background().with_cancel()
    run = Run(conn, ctx).start()

    conn.deliver(announce("Printer 1", "printer.local.", 631, "192.168.1.20"))
    assert wait_for(lambda: len(run.adds) == 1)
    conn.deliver(goodbye("Printer 1"))
    assert wait_for(lambda: len(run.rmvs) == 1)
    ctx.cancel()
    run.join()
    assert run.rmvs[0] == run.adds[0]


def test_already_cancelled_context_runs_no_callbacks():
    """
    Brief: A context cancelled before run() processes nothing.

    Inputs:
      - queued announcement and cancelled context

    Outputs:
      - None: Asserts no callbacks and Cancelled with cause
    """
    conn = FakeConn()
    conn.deliver(announce("Printer 1", "printer.local.", 631, "192.168.1.20"))
    ctx = Context.background().with_cancel()
    ctx.cancel("early")
    run = Run(conn, ctx).start()
    run.join()

    assert run.adds == [] and run.rmvs == []
    assert isinstance(run.error, Cancelled)
    assert run.error.cause == "early"


def test_cancel_from_callback_stops_further_processing():
    """
    Brief: Cancelling inside add stops the loop before the next message.

    Inputs:
      - two queued announcements; add cancels the context

    Outputs:
      - None: Asserts only the first add happened
    """
    conn = FakeConn()
    conn.deliver(announce("first", "first.local.", 1, "192.168.1.21"))
    conn.deliver(announce("second", "second.local.", 2, "192.168.1.22"))
    ctx = Context.background().with_cancel()
    adds = []

    def add(entry):
        adds.append(entry)
        ctx.cancel("seen one")

    run = Run(conn, ctx, add=add).start()
    run.join()

    assert [e.name for e in adds] == ["first"]
    assert isinstance(run.error, Cancelled)
    assert run.error.cause == "seen one"


def test_deadline_raises_deadline_exceeded():
    conn = FakeConn()
    ctx = Context.background().with_timeout(0.05)
    run = Run(conn, ctx).start()
    run.join()
    assert isinstance(run.error, DeadlineExceeded)
    assert run.error.cause


def test_lookup_types_closes_owned_connection(monkeypatch):
    """
    Brief: lookup_types opens the connection itself and closes it on exit.

    Inputs:
      - MDNSConn.open patched to return a FakeConn

    Outputs:
      - None: Asserts FakeConn closed and ip_version forwarded
    """
    conn = FakeConn()
    seen = {}

    def fake_open(interfaces, ip_version="all"):
        seen["interfaces"] = interfaces
        seen["ip_version"] = ip_version
        return conn

    monkeypatch.setattr(browse_mod, "multicast_interfaces", lambda names=None: [ETH0])
    monkeypatch.setattr(browse_mod.MDNSConn, "open", staticmethod(fake_open))

    ctx = Context.background().with_timeout(0.05)
    with pytest.raises(DeadlineExceeded):
        lookup_type(ctx, "_ipp._tcp.local.", print, print, config=BrowseConfig(ip_version="v4"))
    assert conn.closed is True
    assert seen == {"interfaces": [ETH0], "ip_version": "v4"}


def test_lookup_types_setup_failure_raises_without_callbacks(monkeypatch):
    monkeypatch.setattr(browse_mod, "multicast_interfaces", lambda names=None: [])
    calls = []
    with pytest.raises(ConnectionOpenError):
        lookup_types(
            Context.background().with_cancel(),
            ["_ipp._tcp.local."],
            calls.append,
            calls.append,
        )
    assert calls == []


def test_lookup_types_rejects_empty_service_list():
    with pytest.raises(ValueError):
        lookup_types(Context.background(), [], print, print)


def test_injected_cache_expiry_reports_one_removal():
    """
    Brief: A caller-supplied cache is used, and TTL expiry becomes one rmv.

    Inputs:
      - cache on a fake clock, announcement with TTL 10, clock advanced 11s

    Outputs:
      - None: Asserts a single removal carrying the reported entry
    """
    clock = FakeClock()
    cache = Cache(timer=clock)
    conn = FakeConn()
    ctx = Context.background().with_cancel()
    run = Run(conn, ctx, cache=cache).start()

    conn.deliver(announce("Printer 1", "printer.local.", 631, "192.168.1.20", ttl=10))
    assert wait_for(lambda: len(run.adds) == 1)
    assert len(cache) == 1

    clock.advance(11)
    conn.deliver(response())
    assert wait_for(lambda: len(run.rmvs) == 1)
    conn.deliver(response())
    conn.deliver(announce("marker", "marker.local.", 1, "192.168.1.30"))
    assert wait_for(lambda: len(run.adds) == 2)
    ctx.cancel()
    run.join()

    assert run.rmvs == [run.adds[0]]


def test_run_detaches_from_long_lived_context():
    """
    Brief: Finished runs leave no callbacks on a reused parent context.

    Inputs:
      - three runs under one background context, one ending in a callback error

    Outputs:
      - None: Asserts the parent holds no pending callbacks
    """
    parent = Context.background()
    for _ in range(2):
        ctx = parent.with_cancel()
        run = Run(FakeConn(), ctx).start()
        ctx.cancel()
        run.join()

    def failing_add(entry):
        raise RuntimeError("callback failed")

    conn = FakeConn()
    conn.deliver(announce("Printer 1", "printer.local.", 631, "192.168.1.20"))
    run = Run(conn, parent, add=failing_add).start()
    run.join()

    assert isinstance(run.error, RuntimeError)
    assert not parent.done()
    assert parent._callbacks == []


def test_lookup_types_accepts_single_string(monkeypatch):
    """
    Brief: A bare service type string is browsed as one type.

    Inputs:
      - lookup_types called with a str

    Outputs:
      - None: Asserts a single PTR question for that type
    """
    conn = FakeConn()
    monkeypatch.setattr(browse_mod, "multicast_interfaces", lambda names=None: [ETH0])
    monkeypatch.setattr(
        browse_mod.MDNSConn, "open", staticmethod(lambda interfaces, ip_version="all": conn)
    )

    ctx = Context.background().with_timeout(0.2)
    with pytest.raises(DeadlineExceeded):
        lookup_types(ctx, "_ipp._tcp.local.", print, print)
    questions = conn.sent[0].message.question
    assert [q.name.to_text() for q in questions] == ["_ipp._tcp.local."]
