"""DNS name helpers for DNS-SD instance names.

Brief:
  Raw wire labels are turned into presentation strings the same way zone
  files write them: characters with a meaning in presentation format get a
  backslash, control bytes become ``\\DDD``. Instance labels are free-form
  UTF-8 (RFC 6763 section 4.3), so spaces and dots inside them are common.
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

_ESCAPED_CHARS = frozenset('.\\ "();@$')


def escape_label(raw: bytes) -> str:
    """Brief: Render one wire-format label in escaped presentation form.

    Inputs:
      - raw: Label bytes as found on the wire (no length prefix).

    Outputs:
      - str: Escaped label text.

    Example:
      >>> escape_label(b"Printer 1")
      'Printer\\\\ 1'
    """

    try:
        text = bytes(raw).decode("utf-8")
    except UnicodeDecodeError:
        # Not UTF-8: escape every byte outside printable ASCII.
        out = []
        for b in bytes(raw):
            c = chr(b)
            if c in _ESCAPED_CHARS:
                out.append("\\" + c)
            elif 0x20 < b < 0x7F:
                out.append(c)
            else:
                out.append("\\%03d" % b)
        return "".join(out)

    out = []
    for c in text:
        if c in _ESCAPED_CHARS:
            out.append("\\" + c)
        elif ord(c) < 0x20 or ord(c) == 0x7F:
            out.append("\\%03d" % ord(c))
        else:
            out.append(c)
    return "".join(out)


def unescape(text: str) -> str:
    """Brief: Remove presentation-format escapes from a name or label.

    Inputs:
      - text: Escaped text; ``\\X`` yields X and ``\\DDD`` yields the byte DDD.

    Outputs:
      - str: Unescaped text. Byte escapes are decoded as UTF-8.

    Example:
      >>> unescape("Printer\\\\ 1")
      'Printer 1'
    """

    if "\\" not in text:
        return text

    buf = bytearray()
    i = 0
    n = len(text)
    while i < n:
        c = text[i]
        if c != "\\" or i + 1 >= n:
            buf += c.encode("utf-8")
            i += 1
            continue
        digits = text[i + 1 : i + 4]
        if len(digits) == 3 and digits.isdigit() and int(digits) <= 255:
            buf.append(int(digits))
            i += 4
        else:
            buf += text[i + 1].encode("utf-8")
            i += 2
    return buf.decode("utf-8", errors="replace")


def labels_to_text(labels: Sequence[bytes]) -> str:
    """Brief: Join wire labels into an escaped FQDN with a trailing dot."""

    return ".".join(escape_label(lbl) for lbl in labels if lbl) + "."


def split_instance_name(
    labels: Sequence[bytes],
) -> Optional[Tuple[str, str, str]]:
    """Brief: Split a service instance name into (name, type, domain).

    Inputs:
      - labels: Wire labels of ``<instance>.<_service>.<_proto>.<domain>``.

    Outputs:
      - (name, type, domain) in escaped presentation form without trailing
        dots, or None when the labels do not form an instance name.

    Example:
      - ``(b"Printer 1", b"_ipp", b"_tcp", b"local")`` ->
        ``("Printer\\\\ 1", "_ipp._tcp", "local")``
    """

    parts: List[bytes] = [bytes(lbl) for lbl in labels if lbl]
    if len(parts) < 4:
        return None
    service, proto = parts[1], parts[2]
    if not (service.startswith(b"_") and proto.startswith(b"_")):
        return None

    name = escape_label(parts[0])
    service_type = escape_label(service) + "." + escape_label(proto)
    domain = ".".join(escape_label(p) for p in parts[3:])
    return name, service_type, domain


def instance_name(name: str, service_type: str, domain: str) -> str:
    """Brief: Compose ``<name>.<type>.<domain>.`` (trailing dot included)."""

    return f"{name}.{service_type}.{domain}."


def normalize_service_type(service: str) -> str:
    """Brief: Canonical comparison form of a service type name.

    Inputs:
      - service: Service type such as ``_http._tcp.local`` or ``_HTTP._tcp.local.``.

    Outputs:
      - str: Lowercased name with exactly one trailing dot.
    """

    s = str(service or "").strip().lower().rstrip(".")
    return s + "." if s else ""
