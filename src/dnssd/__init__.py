"""dnssd: browse DNS-SD service instances over multicast DNS."""

from .browse import (
    AddFunc,
    BrowseEntry,
    BrowseOptions,
    Browser,
    EntryTracker,
    RmvFunc,
    lookup_type,
    lookup_types,
)
from .cache import Cache, Service
from .config import BrowseConfig, load_config
from .connection import MDNSConn, Request
from .context import Context
from .errors import (
    Cancelled,
    ConnectionOpenError,
    ContextError,
    DeadlineExceeded,
    DnssdError,
    SendError,
)
from .interfaces import MulticastInterface, multicast_interfaces
from .query import Query, browse_message

__all__ = [
    "AddFunc",
    "BrowseConfig",
    "BrowseEntry",
    "BrowseOptions",
    "Browser",
    "Cache",
    "Cancelled",
    "ConnectionOpenError",
    "Context",
    "ContextError",
    "DeadlineExceeded",
    "DnssdError",
    "EntryTracker",
    "MDNSConn",
    "MulticastInterface",
    "Query",
    "Request",
    "RmvFunc",
    "SendError",
    "Service",
    "browse_message",
    "load_config",
    "lookup_type",
    "lookup_types",
    "multicast_interfaces",
]
