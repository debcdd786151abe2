"""
CoAP request producer and the response header layout the benchmark relies on.

Only three fields of a response are inspected by the virtual clients:

    offset 1        response code (class << 5 | detail)
    offsets 2-3     message id, big endian, echoed from the request
    offset 8..      location string returned by a registration (LWM2M rd)

Everything else about the datagram is opaque to the benchmark.
"""
import random
import struct
from collections import namedtuple
from urllib.parse import unquote, urlsplit

DEFAULT_PORT = 5683
VERSION = 1
HEADER_LENGTH = 4
CODE_OFFSET = 1
MID_OFFSET = 2
LOCATION_OFFSET = 8
PAYLOAD_MARKER = 0xFF

# message types
CON = 0
NON = 1
ACK = 2
RST = 3

URI_PATH = 11
URI_QUERY = 15


def make_code(cls, detail):
    return (cls << 5) | detail


METHODS = {
    "GET": make_code(0, 1),
    "POST": make_code(0, 2),
    "PUT": make_code(0, 3),
    "DELETE": make_code(0, 4),
}

CREATED = make_code(2, 1)
DELETED = make_code(2, 2)
VALID = make_code(2, 3)
CHANGED = make_code(2, 4)
CONTENT = make_code(2, 5)
BAD_REQUEST = make_code(4, 0)
NOT_FOUND = make_code(4, 4)
METHOD_NOT_ALLOWED = make_code(4, 5)
INTERNAL_SERVER_ERROR = make_code(5, 0)
SERVICE_UNAVAILABLE = make_code(5, 3)

CODE_NAMES = {
    CREATED: "CREATED",
    DELETED: "DELETED",
    VALID: "VALID",
    CHANGED: "CHANGED",
    CONTENT: "CONTENT",
    BAD_REQUEST: "BAD_REQUEST",
    NOT_FOUND: "NOT_FOUND",
    METHOD_NOT_ALLOWED: "METHOD_NOT_ALLOWED",
    INTERNAL_SERVER_ERROR: "INTERNAL_SERVER_ERROR",
    SERVICE_UNAVAILABLE: "SERVICE_UNAVAILABLE",
}

_SUCCESS = frozenset((CREATED, CHANGED, CONTENT))


def accepted_codes(method):
    """Response codes that count as success for a request method."""
    if method.upper() == "DELETE":
        return _SUCCESS | {DELETED}
    return _SUCCESS


def code_name(code):
    return "{0}.{1:02d} {2}".format(code >> 5, code & 0x1F, CODE_NAMES.get(code, "UNKNOWN"))


def response_code(datagram):
    return datagram[CODE_OFFSET]


def message_id(datagram):
    return struct.unpack_from("!H", datagram, MID_OFFSET)[0]


def location(datagram):
    """The registration location carried after the fixed offset, None if there is none."""
    if len(datagram) <= LOCATION_OFFSET:
        return None
    return bytes(datagram[LOCATION_OFFSET:]).decode("utf-8", errors="replace")


def _nibble(value):
    if value < 13:
        return value, b""
    if value < 269:
        return 13, struct.pack("!B", value - 13)
    return 14, struct.pack("!H", value - 269)


def encode_options(options):
    """Encodes (number, value) pairs with delta/length nibbles; equal numbers keep their order."""
    out = bytearray()
    last = 0
    for number, value in sorted(options, key=lambda o: o[0]):
        delta, delta_ext = _nibble(number - last)
        length, length_ext = _nibble(len(value))
        out.append((delta << 4) | length)
        out += delta_ext + length_ext + value
        last = number
    return bytes(out)


def _read_extended(nibble, data, pos):
    if nibble < 13:
        return nibble, pos
    if nibble == 13:
        if pos + 1 > len(data):
            raise ValueError("truncated option header")
        return data[pos] + 13, pos + 1
    if nibble == 14:
        if pos + 2 > len(data):
            raise ValueError("truncated option header")
        return struct.unpack_from("!H", data, pos)[0] + 269, pos + 2
    raise ValueError("reserved option nibble 15")


class CoapMessage(namedtuple("CoapMessage", ["version", "type", "code", "mid", "token", "options", "payload"])):
    __slots__ = ()

    @property
    def uri_path(self):
        return "/".join(v.decode("utf-8") for n, v in self.options if n == URI_PATH)

    @property
    def uri_query(self):
        return [v.decode("utf-8") for n, v in self.options if n == URI_QUERY]


def decode(datagram):
    """Parses a datagram into a CoapMessage, raising ValueError when it is malformed."""
    data = bytes(datagram)
    if len(data) < HEADER_LENGTH:
        raise ValueError(f"datagram too short: {len(data)} bytes")
    first, code, mid = struct.unpack_from("!BBH", data)
    tkl = first & 0x0F
    if tkl > 8:
        raise ValueError(f"invalid token length {tkl}")
    pos = HEADER_LENGTH + tkl
    if pos > len(data):
        raise ValueError("truncated token")
    token = data[HEADER_LENGTH:pos]
    options = []
    number = 0
    payload = b""
    while pos < len(data):
        byte = data[pos]
        pos += 1
        if byte == PAYLOAD_MARKER:
            payload = data[pos:]
            if not payload:
                raise ValueError("payload marker without payload")
            break
        delta, pos = _read_extended(byte >> 4, data, pos)
        length, pos = _read_extended(byte & 0x0F, data, pos)
        number += delta
        if pos + length > len(data):
            raise ValueError("truncated option value")
        options.append((number, data[pos:pos + length]))
        pos += length
    return CoapMessage(first >> 6, (first >> 4) & 0x03, code, mid, token, options, payload)


class MessageProducer:
    """Builds confirmable requests for one target, each with a fresh message id."""

    def __init__(self, uri=None, method="GET", payload=None, mid=None):
        self.mid = random.randrange(0x10000) if mid is None else mid & 0xFFFF
        self.uri = None
        self.method = None
        self.payload = None
        self.host = None
        self.port = DEFAULT_PORT
        self.code = METHODS["GET"]
        self.options = b""
        if uri is not None:
            self.set_uri(uri, method, payload)

    def set_uri(self, uri, method="GET", payload=None):
        method = (method or "GET").upper()
        if method not in METHODS:
            raise ValueError(f"Unknown method {method}")
        parts = urlsplit(uri)
        if parts.scheme not in ("", "coap"):
            raise ValueError(f"Unsupported scheme '{parts.scheme}' in {uri}")
        if not parts.hostname:
            raise ValueError(f"No host in {uri}")
        port = parts.port
        options = [(URI_PATH, unquote(seg).encode("utf-8")) for seg in parts.path.split("/") if seg]
        options += [(URI_QUERY, unquote(q).encode("utf-8")) for q in parts.query.split("&") if q]
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        self.options = encode_options(options)
        self.code = METHODS[method]
        self.uri = uri
        self.method = method
        self.payload = payload or None
        self.host = parts.hostname
        self.port = port if port is not None else DEFAULT_PORT

    def next(self):
        self.mid = (self.mid + 1) & 0xFFFF
        message = struct.pack("!BBH", (VERSION << 6) | (CON << 4), self.code, self.mid) + self.options
        if self.payload:
            message += bytes([PAYLOAD_MARKER]) + self.payload
        return message
