"""DNS-over-HTTPS request handling (RFC 8484 GET and POST)."""

from __future__ import annotations

import base64
import binascii
import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional
from urllib.parse import parse_qs, urlsplit

import dns.exception
import dns.message

from dnsrelay.dns_handler import Handler
from dnsrelay.pool import pack_buffer
from dnsrelay.query_context import RequestMeta

DNS_MEDIA_TYPE = "application/dns-message"
MAX_MSG_SIZE = 65535

_INVALID_MEDIA_TYPE = "missing or invalid media type header"


@dataclass
class HttpRequest:
    """An HTTP request as the handler sees it."""

    method: str
    target: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""
    remote_addr: str = ""

    @property
    def path(self) -> str:
        return urlsplit(self.target).path

    @property
    def query_string(self) -> str:
        return urlsplit(self.target).query

    def header(self, name: str) -> str:
        """The value of header name, looked up case-insensitively, or ""."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return ""


@dataclass
class HttpResponse:
    """The status, headers and body to send back."""

    status: int
    headers: dict = field(default_factory=dict)
    body: bytes = b""


def _parse_addr_port(s: str):
    host, sep, port = s.rpartition(":")
    if not sep or not port.isdigit() or int(port) > 0xFFFF:
        raise ValueError(f"invalid addr port {s!r}")
    if host.startswith("[") and host.endswith("]"):
        addr = ipaddress.ip_address(host[1:-1])
        if addr.version != 6:
            raise ValueError(f"invalid addr port {s!r}")
        return addr
    addr = ipaddress.ip_address(host)
    if addr.version != 4:
        raise ValueError(f"invalid addr port {s!r}")
    return addr


def _read_client_addr_from_xff(s: str):
    i = s.find(",")
    if i > 0:
        return ipaddress.ip_address(s[:i])
    return ipaddress.ip_address(s)


def _decode_raw_urlsafe_b64(s: str) -> bytes:
    if "=" in s:
        raise ValueError("padding is not allowed")
    std = s.translate(str.maketrans("-_", "+/"))
    return base64.b64decode(std + "=" * (-len(std) % 4), validate=True)


def _minimal_ttl(msg) -> int:
    ttls = [rrset.ttl for section in (msg.answer, msg.authority, msg.additional) for rrset in section]
    return min(ttls, default=0)


def read_msg_from_request(request: HttpRequest):
    """Extract the DNS query from a DoH request; raises ValueError if invalid."""
    method = request.method.upper()
    if method == "GET":
        if request.header("Accept") != DNS_MEDIA_TYPE:
            raise ValueError(_INVALID_MEDIA_TYPE)
        values = parse_qs(request.query_string, keep_blank_values=True).get("dns")
        s = values[0] if values else ""
        if not s:
            raise ValueError("no dns parameter")
        msg_size = len(s) * 6 // 8
        if msg_size > MAX_MSG_SIZE:
            raise ValueError(f"msg length {msg_size} is too big")
        try:
            wire = _decode_raw_urlsafe_b64(s)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"failed to decode base64 query: {e}") from e
    elif method == "POST":
        if request.header("Content-Type") != DNS_MEDIA_TYPE:
            raise ValueError(_INVALID_MEDIA_TYPE)
        wire = bytes(request.body[:MAX_MSG_SIZE])
    else:
        raise ValueError(f"unsupported method: {request.method}")

    try:
        return dns.message.from_wire(wire)
    except (dns.exception.DNSException, ValueError) as e:
        raise ValueError(f"failed to unpack msg [{wire.hex()}], {e}") from e


class DohHandler:
    """Serves DNS queries carried in HTTP requests."""

    def __init__(
        self,
        dns_handler: Optional[Handler],
        path: str = "",
        src_ip_header: str = "",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if dns_handler is None:
            raise ValueError("nil dns handler")
        self.dns_handler = dns_handler
        self.path = path
        self.src_ip_header = src_ip_header
        self.logger = logger or logging.getLogger(__name__)

    def _warn(self, request: HttpRequest, msg: str, err: object) -> None:
        self.logger.warning(
            "%s: from %s, method %s, url %s: %s",
            msg, request.remote_addr, request.method, request.target, err,
        )

    def serve_http(self, request: HttpRequest) -> HttpResponse:
        """Answer one request. Errors of the DNS handler propagate, so that
        the server closes the connection."""
        try:
            client_addr = _parse_addr_port(request.remote_addr)
        except ValueError as e:
            self.logger.error("failed to parse request remote addr %s: %s", request.remote_addr, e)
            return HttpResponse(500)

        if self.src_ip_header:
            xff = request.header(self.src_ip_header)
            if xff:
                try:
                    client_addr = _read_client_addr_from_xff(xff)
                except ValueError as e:
                    self._warn(
                        request,
                        "failed to get client ip from header",
                        f"failed to parse header {self.src_ip_header}: {xff}, {e}",
                    )
                    return HttpResponse(400)

        if self.path and request.path != self.path:
            self._warn(request, "invalid request", f"invalid request path {request.path}")
            return HttpResponse(404)

        try:
            q = read_msg_from_request(request)
        except ValueError as e:
            self._warn(request, "invalid request", e)
            return HttpResponse(400)

        r = self.dns_handler.serve_dns(q, RequestMeta(client_addr=client_addr))

        try:
            wire, buf = pack_buffer(r)
        except dns.exception.DNSException as e:
            self._warn(request, "failed to pack handler's response", e)
            return HttpResponse(500)
        try:
            body = bytes(wire)
        finally:
            buf.release()

        headers = {
            "Content-Type": DNS_MEDIA_TYPE,
            "Cache-Control": f"max-age={_minimal_ttl(r)}",
        }
        return HttpResponse(200, headers, body)