"""A DNS message transport for UDP, TCP and TLS style connections.

UDP sockets can be reused. For TCP and TLS it can reuse connections one query
at a time or pipeline queries over shared connections (RFC 7766 6.2.1.1),
matching out-of-order responses to their queries by message id.

The transport knows nothing about sockets itself. It is given three functions:
``dial_func(timeout)`` opens a connection, ``write_func(conn, msg)`` writes one
DNS message to it and ``read_func(conn)`` reads one DNS message from it.
A connection needs a ``close()`` method; ``settimeout`` and ``shutdown`` are
used when present.
"""

from __future__ import annotations

import copy
import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

DEFAULT_IDLE_TIMEOUT = 10.0
DEFAULT_DIAL_TIMEOUT = 5.0
DEFAULT_NO_CONN_REUSE_QUERY_TIMEOUT = 5.0
DEFAULT_MAX_CONNS = 2
DEFAULT_MAX_QUERY_PER_CONN = 65535

CONN_TOO_OLD_THRESHOLD = 0.5
_MAX_RETRY = 3


class TransportClosedError(ConnectionError):
    """The transport has been closed."""

    def __init__(self) -> None:
        super().__init__("transport has been closed")


class _EndOfLifeError(ConnectionError):
    def __init__(self) -> None:
        super().__init__("end of life")


@dataclass
class TransportOptions:
    """Settings of a Transport.

    A zero timeout or count means "use the default". A negative
    ``idle_timeout`` disables connection reuse. Pipelining is used only when
    ``enable_pipeline`` is set and ``idle_timeout`` is positive.
    """

    dial_func: Optional[Callable[[Optional[float]], Any]] = None
    write_func: Optional[Callable[[Any, Any], Any]] = None
    read_func: Optional[Callable[[Any], Any]] = None
    logger: Optional[logging.Logger] = None
    dial_timeout: float = DEFAULT_DIAL_TIMEOUT
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT
    enable_pipeline: bool = False
    max_conns: int = DEFAULT_MAX_CONNS
    max_query_per_conn: int = DEFAULT_MAX_QUERY_PER_CONN

    def __post_init__(self) -> None:
        if self.dial_func is None or self.write_func is None or self.read_func is None:
            raise ValueError("opts missing required func(s)")
        if self.logger is None:
            self.logger = logging.getLogger(__name__)
        if not self.dial_timeout:
            self.dial_timeout = DEFAULT_DIAL_TIMEOUT
        if not self.idle_timeout:
            self.idle_timeout = DEFAULT_IDLE_TIMEOUT
        if not self.max_conns:
            self.max_conns = DEFAULT_MAX_CONNS
        if not self.max_query_per_conn:
            self.max_query_per_conn = DEFAULT_MAX_QUERY_PER_CONN


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())


def _close_raw_conn(conn: Any) -> None:
    shutdown = getattr(conn, "shutdown", None)
    if shutdown is not None:
        try:
            shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
    try:
        conn.close()
    except OSError:
        pass


def _set_timeout(conn: Any, timeout: Optional[float]) -> None:
    settimeout = getattr(conn, "settimeout", None)
    if settimeout is not None and timeout is not None and timeout > 0:
        settimeout(timeout)


class _PipelineStatus:
    """Counts queries served by a pipeline connection and those in flight."""

    def __init__(self) -> None:
        self.served = 0
        self._in_flight = 0
        self._cond = threading.Condition()

    def add(self) -> None:
        with self._cond:
            self._in_flight += 1

    def done(self) -> None:
        with self._cond:
            self._in_flight -= 1
            if self._in_flight <= 0:
                self._cond.notify_all()

    def wait(self) -> None:
        with self._cond:
            self._cond.wait_for(lambda: self._in_flight <= 0)


class _DnsConn:
    """One connection, dialled and read in a background thread."""

    def __init__(self, transport: "Transport") -> None:
        self._t = transport
        self._cond = threading.Condition()
        self._write_lock = threading.Lock()
        self._pending: set[int] = set()
        self._results: dict[int, Any] = {}
        self._conn: Any = None
        self._dialed = False
        self._closed = False
        self._close_err: BaseException = TransportClosedError()
        self.last_read: Optional[float] = None
        threading.Thread(target=self._dial_and_read, daemon=True).start()

    def exchange(self, q: Any, deadline: Optional[float]) -> Any:
        with self._cond:
            ready = self._cond.wait_for(
                lambda: self._dialed or self._closed, _remaining(deadline)
            )
            if self._closed:
                raise self._close_err
            if not ready:
                raise TimeoutError("query deadline exceeded")
            qid = q.id
            self._pending.add(qid)

        try:
            try:
                with self._write_lock:
                    self._t.opts.write_func(self._conn, q)
            except Exception as e:
                # A write error is usually fatal for the connection.
                self.close_with_err(e)
                raise

            with self._cond:
                self._cond.wait_for(
                    lambda: qid in self._results or self._closed, _remaining(deadline)
                )
                if qid in self._results:
                    return self._results.pop(qid)
                if self._closed:
                    raise self._close_err
                raise TimeoutError("query deadline exceeded")
        finally:
            with self._cond:
                self._pending.discard(qid)
                self._results.pop(qid, None)

    def exchange_pipeline(self, q: Any, qid: int, deadline: Optional[float]) -> Any:
        q_send = copy.copy(q)
        q_send.id = qid
        r = self.exchange(q_send, deadline)
        r.id = q.id
        return r

    def _dial_and_read(self) -> None:
        try:
            conn = self._t.opts.dial_func(self._t.opts.dial_timeout)
        except Exception as e:
            self.close_with_err(e)
            return

        with self._cond:
            if self._closed:
                closed_before_dial = True
            else:
                closed_before_dial = False
                self._conn = conn
                self._dialed = True
                self._cond.notify_all()
        if closed_before_dial:
            _close_raw_conn(conn)
            return
        self._read_loop(conn)

    def _read_loop(self, conn: Any) -> None:
        _set_timeout(conn, self._t.opts.idle_timeout)
        while True:
            try:
                r = self._t.opts.read_func(conn)
            except Exception as e:
                self.close_with_err(e)
                return
            with self._cond:
                self.last_read = time.monotonic()
                if r.id in self._pending and r.id not in self._results:
                    self._results[r.id] = r
                    self._cond.notify_all()

    def is_closed(self) -> bool:
        with self._cond:
            return self._closed

    def close_with_err(self, err: Optional[BaseException]) -> None:
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._close_err = err if err is not None else TransportClosedError()
            self._cond.notify_all()
            conn = self._conn
        if conn is not None:
            _close_raw_conn(conn)

    def queue_len(self) -> int:
        with self._cond:
            return len(self._pending)


class Transport:
    """Exchanges DNS messages over connections opened by the option functions."""

    def __init__(self, opts: TransportOptions) -> None:
        self.opts = opts
        self._lock = threading.Lock()
        self._closed = False
        self._pipeline_conns: dict[_DnsConn, _PipelineStatus] = {}
        self._idled_reusable_conns: set[_DnsConn] = set()
        self._reusable_conns: set[_DnsConn] = set()

    def _is_closed(self) -> bool:
        with self._lock:
            return self._closed

    def exchange(self, q: Any, timeout: Optional[float] = None) -> Any:
        """Send q and return the response; raises on failure or timeout.

        q itself is not modified.
        """
        if self._is_closed():
            raise TransportClosedError()
        deadline = None if timeout is None else time.monotonic() + timeout

        if self.opts.idle_timeout <= 0:
            return self._exchange_without_conn_reuse(q, deadline)
        if self.opts.enable_pipeline:
            return self._exchange_with_pipeline_conn(q, deadline)
        return self._exchange_with_reusable_conn(q, deadline)

    def close(self) -> None:
        """Close the transport and all its connections; pending queries fail."""
        with self._lock:
            self._closed = True
            conns = list(self._pipeline_conns) + list(self._reusable_conns)
            self._pipeline_conns.clear()
            self._reusable_conns.clear()
            self._idled_reusable_conns.clear()
        for conn in conns:
            conn.close_with_err(TransportClosedError())

    def __enter__(self) -> "Transport":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _exchange_with_pipeline_conn(self, q: Any, deadline: Optional[float]) -> Any:
        attempt = 0
        latest_err: Optional[BaseException] = None
        while True:
            attempt += 1
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError("query deadline exceeded")
            if latest_err is not None:
                self.opts.logger.debug(
                    "retrying pipeline connection, previous err: %s, attempt %d",
                    latest_err, attempt,
                )
            conn, qid, is_new_conn, status = self._get_pipeline_conn()
            try:
                return conn.exchange_pipeline(q, qid, deadline)
            except Exception as e:
                if not is_new_conn and attempt <= _MAX_RETRY:
                    latest_err = e
                    continue
                raise
            finally:
                status.done()

    def _exchange_without_conn_reuse(self, q: Any, deadline: Optional[float]) -> Any:
        if deadline is None:
            deadline = time.monotonic() + DEFAULT_NO_CONN_REUSE_QUERY_TIMEOUT
        remaining = _remaining(deadline)
        if not remaining:
            raise TimeoutError("query deadline exceeded")
        conn = self.opts.dial_func(remaining)
        try:
            _set_timeout(conn, _remaining(deadline))
            self.opts.write_func(conn, q)

            outcome: dict[str, Any] = {}
            finished = threading.Event()

            def reader() -> None:
                try:
                    outcome["msg"] = self.opts.read_func(conn)
                except BaseException as e:
                    outcome["err"] = e
                finally:
                    finished.set()

            threading.Thread(target=reader, daemon=True).start()
            if not finished.wait(_remaining(deadline)):
                raise TimeoutError("query deadline exceeded")
            if "err" in outcome:
                raise outcome["err"]
            return outcome["msg"]
        finally:
            _close_raw_conn(conn)

    def _exchange_with_reusable_conn(self, q: Any, deadline: Optional[float]) -> Any:
        attempt = 0
        latest_err: Optional[BaseException] = None
        while True:
            attempt += 1
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError("query deadline exceeded")
            if latest_err is not None:
                self.opts.logger.debug(
                    "retrying reusable connection, previous err: %s, attempt %d",
                    latest_err, attempt,
                )
            conn, reused = self._get_reusable_conn()
            try:
                r = conn.exchange(q, deadline)
            except Exception as e:
                self._release_reusable_conn(conn, e)
                if reused and attempt <= _MAX_RETRY:
                    latest_err = e
                    continue
                raise
            self._release_reusable_conn(conn, None)
            return r

    def _get_reusable_conn(self) -> tuple[_DnsConn, bool]:
        """Return an idle connection (reused=True) or a new one.

        The caller must hand it back with ``_release_reusable_conn``.
        """
        with self._lock:
            if self._closed:
                raise TransportClosedError()
            while self._idled_reusable_conns:
                conn = self._idled_reusable_conns.pop()
                if conn.is_closed() or self._conn_too_old(conn):
                    self._reusable_conns.discard(conn)
                    continue
                return conn, True
            conn = _DnsConn(self)
            self._reusable_conns.add(conn)
            return conn, False

    def _release_reusable_conn(
        self, conn: _DnsConn, err: Optional[BaseException]
    ) -> None:
        """Return conn to the idle pool, or close it if err is set."""
        with self._lock:
            if err is not None:
                self._reusable_conns.discard(conn)
            if not self._closed and err is None:
                self._idled_reusable_conns.add(conn)
                close_conn = False
            else:
                close_conn = True
        if close_conn:
            conn.close_with_err(err)

    def _get_pipeline_conn(self) -> tuple[_DnsConn, int, bool, _PipelineStatus]:
        """Return a connection for pipelining, the query id allocated on it,
        whether it is new, and its status; call ``status.done()`` afterwards."""
        with self._lock:
            if self._closed:
                raise TransportClosedError()

            conn: Optional[_DnsConn] = None
            status: Optional[_PipelineStatus] = None
            for c, s in list(self._pipeline_conns.items()):
                if c.is_closed() or self._conn_too_old(c):
                    del self._pipeline_conns[c]
                    continue
                conn, status = c, s
                break

            is_new_conn = False
            if conn is None or (
                conn.queue_len() > 0 and len(self._pipeline_conns) < self.opts.max_conns
            ):
                conn = _DnsConn(self)
                status = _PipelineStatus()
                self._pipeline_conns[conn] = status
                is_new_conn = True

            status.served += 1
            status.add()
            qid = status.served & 0xFFFF
            if status.served >= self.opts.max_query_per_conn:
                # Close only after every query on this connection has finished.
                del self._pipeline_conns[conn]
                retired, retired_status = conn, status

                def close_when_idle() -> None:
                    retired_status.wait()
                    retired.close_with_err(_EndOfLifeError())

                threading.Thread(target=close_when_idle, daemon=True).start()
            return conn, qid, is_new_conn, status

    def _conn_too_old(self, conn: _DnsConn) -> bool:
        """True if conn's last read is close to its idle deadline."""
        last_read = conn.last_read
        if last_read is None:
            return False
        too_old_timeout = self.opts.idle_timeout - CONN_TOO_OLD_THRESHOLD
        if too_old_timeout > 0:
            return time.monotonic() > last_read + too_old_timeout
        return False