import base64
import ipaddress

import dns.message
import dns.rrset
import pytest

from dnsrelay.dns_handler import DummyServerHandler, Handler
from dnsrelay.http_handler import (
    DNS_MEDIA_TYPE,
    DohHandler,
    HttpRequest,
    read_msg_from_request,
)


class RecordingHandler(Handler):
    def __init__(self):
        self.metas = []

    def serve_dns(self, req, meta):
        self.metas.append(meta)
        return dns.message.make_response(req)


def _b64(wire):
    return base64.urlsafe_b64encode(wire).rstrip(b"=").decode()


def _get(query, path="/dns-query", **kwargs):
    headers = kwargs.pop("headers", {"Accept": DNS_MEDIA_TYPE})
    return HttpRequest(
        "GET",
        f"{path}?dns={_b64(query.to_wire())}",
        headers=headers,
        remote_addr=kwargs.pop("remote_addr", "127.0.0.1:5353"),
    )


def _post(query):
    return HttpRequest(
        "POST",
        "/dns-query",
        headers={"content-type": DNS_MEDIA_TYPE},
        body=query.to_wire(),
        remote_addr="[::1]:443",
    )


def test_read_msg_get_and_post_round_trip():
    q = dns.message.make_query("example.com.", "A")
    assert read_msg_from_request(_get(q)) == q
    assert read_msg_from_request(_post(q)) == q


def test_read_msg_errors():
    q = dns.message.make_query("example.com.", "A")
    with pytest.raises(ValueError, match="media type"):
        read_msg_from_request(_get(q, headers={}))
    with pytest.raises(ValueError, match="no dns parameter"):
        read_msg_from_request(HttpRequest("GET", "/x", headers={"Accept": DNS_MEDIA_TYPE}))
    with pytest.raises(ValueError, match="base64"):
        read_msg_from_request(
            HttpRequest("GET", "/x?dns=AAAA%3D", headers={"Accept": DNS_MEDIA_TYPE})
        )
    with pytest.raises(ValueError, match="unsupported method"):
        read_msg_from_request(HttpRequest("PUT", "/x"))
    with pytest.raises(ValueError, match="failed to unpack"):
        read_msg_from_request(
            HttpRequest("POST", "/x", headers={"Content-Type": DNS_MEDIA_TYPE}, body=b"\x01")
        )


def test_read_msg_too_big():
    long_param = "A" * 90000
    with pytest.raises(ValueError, match="too big"):
        read_msg_from_request(
            HttpRequest("GET", f"/x?dns={long_param}", headers={"Accept": DNS_MEDIA_TYPE})
        )


def test_handler_requires_dns_handler():
    with pytest.raises(ValueError):
        DohHandler(None)


@pytest.mark.parametrize("method", ["get", "post"])
def test_serve_http_ok(method):
    h = DohHandler(DummyServerHandler(), path="/dns-query")
    q = dns.message.make_query("example.com.", "A")
    resp = h.serve_http(_get(q) if method == "get" else _post(q))
    assert resp.status == 200
    assert resp.headers["Content-Type"] == DNS_MEDIA_TYPE
    r = dns.message.from_wire(resp.body)
    assert r.id == q.id
    assert r.question == q.question


def test_cache_control_uses_minimal_ttl():
    want = dns.message.make_response(dns.message.make_query("example.com.", "A"))
    want.answer.append(dns.rrset.from_text("example.com.", 300, "IN", "A", "1.2.3.4"))
    want.answer.append(dns.rrset.from_text("example.com.", 600, "IN", "AAAA", "::1"))
    h = DohHandler(DummyServerHandler(want_msg=want))
    resp = h.serve_http(_get(dns.message.make_query("example.com.", "A")))
    assert resp.headers["Cache-Control"] == "max-age=300"


def test_wrong_path_is_404():
    h = DohHandler(DummyServerHandler(), path="/dns-query")
    resp = h.serve_http(_get(dns.message.make_query("example.com.", "A"), path="/other"))
    assert resp.status == 404


def test_bad_request_is_400():
    h = DohHandler(DummyServerHandler())
    q = dns.message.make_query("example.com.", "A")
    assert h.serve_http(_get(q, headers={})).status == 400


def test_bad_remote_addr_is_500():
    h = DohHandler(DummyServerHandler())
    q = dns.message.make_query("example.com.", "A")
    assert h.serve_http(_get(q, remote_addr="not-an-addr")).status == 500


def test_client_addr_from_remote_and_header():
    rec = RecordingHandler()
    h = DohHandler(rec, src_ip_header="X-Forwarded-For")
    q = dns.message.make_query("example.com.", "A")

    h.serve_http(_get(q))
    assert rec.metas[-1].client_addr == ipaddress.ip_address("127.0.0.1")

    req = _get(q, headers={"Accept": DNS_MEDIA_TYPE, "x-forwarded-for": "10.0.0.1,10.0.0.2"})
    assert h.serve_http(req).status == 200
    assert rec.metas[-1].client_addr == ipaddress.ip_address("10.0.0.1")

    bad = _get(q, headers={"Accept": DNS_MEDIA_TYPE, "X-Forwarded-For": "junk"})
    assert h.serve_http(bad).status == 400


def test_dns_handler_error_propagates():
    h = DohHandler(DummyServerHandler(want_err=ConnectionResetError("x")))
    with pytest.raises(ConnectionResetError):
        h.serve_http(_get(dns.message.make_query("example.com.", "A")))