"""A DNS server over UDP, TCP, DNS-over-TLS and DNS-over-HTTP(S).

The ``serve_*`` methods block until the server is closed or the socket
fails. They close the socket they were given before returning, and they
never return normally. Once the server is closed they raise
``ServerClosedError``.
"""

from __future__ import annotations

import copy
import http.server
import ipaddress
import logging
import socket
import ssl
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

import dns.exception
import dns.flags
import dns.message

from dnsrelay.dns_handler import Handler
from dnsrelay.http_handler import HttpRequest, MAX_MSG_SIZE
from dnsrelay.pool import pack_buffer
from dnsrelay.query_context import RequestMeta

DEFAULT_TCP_IDLE_TIMEOUT = 10.0
TCP_FIRST_READ_TIMEOUT = 0.5
TLS_HANDSHAKE_TIMEOUT = 5.0
MIN_MSG_SIZE = 512
UDP_READ_SIZE = 64 * 1024

# How often blocking accept/recv calls wake up to look for a close.
_POLL_INTERVAL = 0.2


class ServerClosedError(Exception):
    """The server was closed."""

    def __init__(self) -> None:
        super().__init__("server closed")


@dataclass
class ServerOptions:
    """Settings of a Server.

    ``dns_handler`` is needed by UDP, TCP and TLS serving; ``http_handler``
    (an object with ``serve_http(HttpRequest) -> HttpResponse``) by HTTP and
    HTTPS serving. TLS needs ``tls_context`` or the ``cert`` and ``key``
    files; the files are loaded into the context when both are given.
    A non-positive ``idle_timeout`` means the default.
    """

    dns_handler: Optional[Handler] = None
    http_handler: Any = None
    tls_context: Optional[ssl.SSLContext] = None
    cert: str = ""
    key: str = ""
    idle_timeout: float = DEFAULT_TCP_IDLE_TIMEOUT
    logger: Optional[logging.Logger] = None

    def __post_init__(self) -> None:
        if self.logger is None:
            self.logger = logging.getLogger(__name__)
        if not self.idle_timeout or self.idle_timeout <= 0:
            self.idle_timeout = DEFAULT_TCP_IDLE_TIMEOUT


def get_udp_size(msg) -> int:
    """The UDP payload size a query allows, never less than 512."""
    size = msg.payload if getattr(msg, "edns", -1) >= 0 else 0
    return max(int(size), MIN_MSG_SIZE)


def _shutdown_close(sock: Any) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    try:
        sock.close()
    except OSError:
        pass


def _client_addr(addr: Any):
    try:
        return ipaddress.ip_address(str(addr[0]).split("%", 1)[0])
    except (ValueError, IndexError, TypeError):
        return None


def _remote_addr_text(addr: Any) -> str:
    host = str(addr[0]).split("%", 1)[0]
    port = addr[1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _truncated_wire(msg, size: int) -> bytes:
    """Wire form of msg that fits into size bytes, with TC set if cut."""
    try:
        return msg.to_wire(max_size=size)
    except dns.exception.TooBig:
        truncated = copy.deepcopy(msg)
        truncated.flags |= dns.flags.TC
        truncated.answer = []
        truncated.authority = []
        truncated.additional = []
        return truncated.to_wire(max_size=size)


def _recv_exact(conn: Any, n: int) -> bytes:
    chunks = []
    remaining = n
    while remaining > 0:
        chunk = conn.recv(remaining)
        if not chunk:
            raise ConnectionError("connection closed by peer")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _read_msg_from_tcp(conn: Any):
    length = int.from_bytes(_recv_exact(conn, 2), "big")
    return dns.message.from_wire(_recv_exact(conn, length))


class Server:
    """A DNS server that can serve on several sockets at once."""

    def __init__(self, opts: Optional[ServerOptions] = None) -> None:
        self.opts = opts if opts is not None else ServerOptions()
        self._lock = threading.Lock()
        self._closed = False
        self._closers: set = set()

    @property
    def closed(self) -> bool:
        """True once the server was closed."""
        with self._lock:
            return self._closed

    def _track(self, closer: Any, add: bool) -> bool:
        """Add or remove closer; False if adding to a closed server."""
        with self._lock:
            if add:
                if self._closed:
                    return False
                self._closers.add(closer)
            else:
                self._closers.discard(closer)
            return True

    def close(self) -> None:
        """Close the server and every socket it is serving on."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            closers = list(self._closers)
        for closer in closers:
            _shutdown_close(closer)

    def __enter__(self) -> "Server":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # UDP

    def serve_udp(self, sock: socket.socket) -> None:
        """Serve DNS over the bound UDP socket sock."""
        try:
            handler = self.opts.dns_handler
            if handler is None:
                raise ValueError("missing dns handler")
            if not self._track(sock, True):
                raise ServerClosedError()
            try:
                sock.settimeout(_POLL_INTERVAL)
                while True:
                    try:
                        data, addr = sock.recvfrom(UDP_READ_SIZE)
                    except socket.timeout:
                        if self.closed:
                            raise ServerClosedError() from None
                        continue
                    except OSError as e:
                        if self.closed:
                            raise ServerClosedError() from e
                        raise OSError(f"unexpected read err: {e}") from e

                    try:
                        q = dns.message.from_wire(data)
                    except Exception as e:
                        self.opts.logger.warning(
                            "invalid msg from %s: %s, msg: %s", addr, e, data.hex()
                        )
                        continue
                    threading.Thread(
                        target=self._handle_udp_query,
                        args=(sock, handler, q, addr),
                        daemon=True,
                    ).start()
            finally:
                self._track(sock, False)
        finally:
            _shutdown_close(sock)

    def _handle_udp_query(self, sock: socket.socket, handler: Handler, q, addr) -> None:
        meta = RequestMeta(client_addr=_client_addr(addr))
        try:
            r = handler.serve_dns(q, meta)
        except Exception as e:
            self.opts.logger.warning("handler err: %s", e)
            return
        if r is None:
            return
        try:
            wire = _truncated_wire(r, get_udp_size(q))
        except dns.exception.DNSException as e:
            self.opts.logger.error("failed to pack handler's response: %s, msg: %s", e, r)
            return
        try:
            sock.sendto(wire, addr)
        except OSError as e:
            self.opts.logger.warning("failed to write response to %s: %s", addr, e)

    # TCP and TLS

    def serve_tcp(self, sock: socket.socket) -> None:
        """Serve DNS over the listening TCP socket sock."""
        self._serve_dns_stream(sock, None)

    def serve_tls(self, sock: socket.socket) -> None:
        """Serve DNS-over-TLS on the listening TCP socket sock."""
        try:
            context = self._server_tls_context()
        except BaseException:
            _shutdown_close(sock)
            raise
        self._serve_dns_stream(sock, context)

    def _server_tls_context(self) -> ssl.SSLContext:
        context = self.opts.tls_context
        if self.opts.cert or self.opts.key:
            if context is None:
                context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            context.load_cert_chain(self.opts.cert, self.opts.key or None)
        if context is None:
            raise ValueError("missing certificate for tls listener")
        return context

    def _serve_dns_stream(
        self, sock: socket.socket, tls_context: Optional[ssl.SSLContext]
    ) -> None:
        handler = self.opts.dns_handler
        if handler is None:
            _shutdown_close(sock)
            raise ValueError("missing dns handler")

        def handle(conn: Any, addr: Any) -> None:
            self._handle_tcp_conn(conn, addr, handler)

        self._serve_stream(sock, handle, tls_context)

    def _serve_stream(
        self,
        sock: socket.socket,
        conn_handler: Callable[[Any, Any], None],
        tls_context: Optional[ssl.SSLContext],
    ) -> None:
        try:
            if not self._track(sock, True):
                raise ServerClosedError()
            try:
                sock.settimeout(_POLL_INTERVAL)
                while True:
                    try:
                        conn, addr = sock.accept()
                    except socket.timeout:
                        if self.closed:
                            raise ServerClosedError() from None
                        continue
                    except OSError as e:
                        if self.closed:
                            raise ServerClosedError() from e
                        raise OSError(f"unexpected listener err: {e}") from e
                    threading.Thread(
                        target=self._conn_worker,
                        args=(conn, addr, conn_handler, tls_context),
                        daemon=True,
                    ).start()
            finally:
                self._track(sock, False)
        finally:
            _shutdown_close(sock)

    def _conn_worker(
        self,
        conn: socket.socket,
        addr: Any,
        conn_handler: Callable[[Any, Any], None],
        tls_context: Optional[ssl.SSLContext],
    ) -> None:
        if not self._track(conn, True):
            _shutdown_close(conn)
            return
        tracked: Any = conn
        try:
            if tls_context is not None:
                conn.settimeout(TLS_HANDSHAKE_TIMEOUT)
                try:
                    tls_conn = tls_context.wrap_socket(conn, server_side=True)
                except (OSError, ValueError) as e:
                    self.opts.logger.debug("tls handshake with %s failed: %s", addr, e)
                    return
                self._track(conn, False)
                tracked = tls_conn
                if not self._track(tls_conn, True):
                    return
            conn_handler(tracked, addr)
        finally:
            self._track(tracked, False)
            _shutdown_close(tracked)

    def _handle_tcp_conn(self, conn: Any, addr: Any, handler: Handler) -> None:
        idle_timeout = self.opts.idle_timeout
        timeout = min(TCP_FIRST_READ_TIMEOUT, idle_timeout)
        meta = RequestMeta(client_addr=_client_addr(addr))
        write_lock = threading.Lock()
        while True:
            conn.settimeout(timeout)
            timeout = idle_timeout
            try:
                req = _read_msg_from_tcp(conn)
            except Exception:
                return  # read err, close the connection
            threading.Thread(
                target=self._handle_tcp_query,
                args=(conn, addr, write_lock, handler, req, meta),
                daemon=True,
            ).start()

    def _handle_tcp_query(
        self,
        conn: Any,
        addr: Any,
        write_lock: threading.Lock,
        handler: Handler,
        req,
        meta: RequestMeta,
    ) -> None:
        try:
            r = handler.serve_dns(req, meta)
        except Exception as e:
            self.opts.logger.warning("handler err: %s", e)
            _shutdown_close(conn)
            return
        if r is None:
            return
        try:
            wire, buf = pack_buffer(r)
        except dns.exception.DNSException as e:
            self.opts.logger.error("failed to pack handler's response: %s, msg: %s", e, r)
            return
        try:
            frame = len(wire).to_bytes(2, "big") + bytes(wire)
            with write_lock:
                conn.sendall(frame)
        except (OSError, OverflowError) as e:
            self.opts.logger.warning("failed to write response to %s: %s", addr, e)
        finally:
            buf.release()

    # HTTP and HTTPS

    def serve_http(self, sock: socket.socket) -> None:
        """Serve DNS-over-HTTP on the listening TCP socket sock."""
        self._serve_http(sock, tls=False)

    def serve_https(self, sock: socket.socket) -> None:
        """Serve DNS-over-HTTPS on the listening TCP socket sock."""
        self._serve_http(sock, tls=True)

    def _serve_http(self, sock: socket.socket, tls: bool) -> None:
        try:
            if self.opts.http_handler is None:
                raise ValueError("missing http handler")
            context = self._server_tls_context() if tls else None
        except BaseException:
            _shutdown_close(sock)
            raise
        request_handler = self._make_http_request_handler()

        def handle(conn: Any, addr: Any) -> None:
            try:
                request_handler(conn, addr, self)
            except OSError as e:
                self.opts.logger.debug("http connection with %s ended: %s", addr, e)

        self._serve_stream(sock, handle, context)

    def _make_http_request_handler(self):
        server = self
        http_handler = self.opts.http_handler
        logger = self.opts.logger

        class _RequestHandler(http.server.BaseHTTPRequestHandler):
            protocol_version = "HTTP/1.1"
            timeout = server.opts.idle_timeout

            def log_message(self, format: str, *args: Any) -> None:
                logger.debug("http %s: " + format, self.client_address, *args)

            def _serve(self) -> None:
                length_text = self.headers.get("Content-Length") or "0"
                try:
                    length = int(length_text)
                except ValueError:
                    self.send_error(400)
                    self.close_connection = True
                    return
                body = b""
                if length > 0:
                    body = self.rfile.read(min(length, MAX_MSG_SIZE))
                    if length > MAX_MSG_SIZE:
                        self.close_connection = True

                request = HttpRequest(
                    method=self.command,
                    target=self.path,
                    headers=dict(self.headers.items()),
                    body=body,
                    remote_addr=_remote_addr_text(self.client_address),
                )
                try:
                    response = http_handler.serve_http(request)
                except Exception as e:
                    logger.warning("http handler err: %s", e)
                    self.close_connection = True
                    return

                self.send_response(response.status)
                for name, value in response.headers.items():
                    self.send_header(name, value)
                self.send_header("Content-Length", str(len(response.body)))
                self.end_headers()
                if response.body:
                    self.wfile.write(response.body)

            do_GET = _serve
            do_POST = _serve
            do_PUT = _serve
            do_DELETE = _serve
            do_PATCH = _serve

        return _RequestHandler