# Copyright 2011-present MongoDB, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License"); you
# may not use this file except in compliance with the License.  You
# may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or
# implied.  See the License for the specific language governing
# permissions and limitations under the License.

"""Connections to one server and the pool that hands them out.

A :class:`Pool` enforces ``maxPoolSize`` (requests in flight) and
``maxConnecting`` (connections being opened at once), keeps idle connections
in LIFO order and throws away connections from before the last
:meth:`Pool.reset`. Every step is published to the CMAP listeners and logged
on the ``mongo_sdam.connection`` logger.
"""
from __future__ import annotations

import collections
import contextlib
import copy
import logging
import os
import platform
import socket
import sys
import threading
import time
import weakref
from typing import TYPE_CHECKING, Any, Callable, Generator, Optional

from bson.son import SON
from mongo_sdam._version import __version__
from mongo_sdam.common import (
    MAX_CONNECTING,
    MAX_IDLE_TIME_SEC,
    MAX_MESSAGE_SIZE,
    MAX_POOL_SIZE,
    MAX_WIRE_VERSION,
    MIN_POOL_SIZE,
    WAIT_QUEUE_TIMEOUT,
)
from mongo_sdam.errors import (
    AutoReconnect,
    ConnectionFailure,
    MongoSdamError,
    NetworkTimeout,
    NotPrimaryError,
    OperationCancelled,
    OperationFailure,
    WaitQueueTimeoutError,
)
from mongo_sdam.hello import Hello, HelloCompat
from mongo_sdam.logger import (
    _CONNECTION_LOGGER,
    _ConnectionStatusMessage,
    _debug_log,
    _verbose_connection_error_reason,
)
from mongo_sdam.message import _UNICODE_REPLACE_CODEC_OPTIONS
from mongo_sdam.monitoring import ConnectionCheckOutFailedReason, ConnectionClosedReason
from mongo_sdam.network import command
from mongo_sdam.socket_checker import SocketChecker

if TYPE_CHECKING:
    from bson.objectid import ObjectId
    from mongo_sdam.cluster import _ErrorHandler
    from mongo_sdam.monitoring import _EventListeners
    from mongo_sdam.server_description import _Address


def _set_non_inheritable_non_atomic(fd: int) -> None:
    """Keep child processes from inheriting the file descriptor."""
    os.set_inheritable(fd, False)


# Upper bounds for the kernel's keepalive timers, in seconds.
_KEEPALIVE_LIMITS = (("TCP_KEEPIDLE", 120), ("TCP_KEEPINTVL", 10), ("TCP_KEEPCNT", 9))


def _set_keepalive_times(sock: socket.socket) -> None:
    if sys.platform == "win32":
        # Windows' default probe interval is already one second.
        values = (1, 120 * 1000, 1000)
        sock.ioctl(socket.SIO_KEEPALIVE_VALS, values)  # type: ignore[attr-defined]
        return
    for name, limit in _KEEPALIVE_LIMITS:
        option = getattr(socket, name, None)
        if option is None:
            continue
        try:
            if sock.getsockopt(socket.IPPROTO_TCP, option) > limit:
                sock.setsockopt(socket.IPPROTO_TCP, option, limit)
        except OSError:
            # NetBSD has no getsockopt for these options.
            continue


def _os_metadata() -> dict[str, Any]:
    system = platform.system()
    if sys.platform == "darwin":
        # The macOS release rather than the darwin kernel version.
        name, version = system, platform.mac_ver()[0]
    elif sys.platform == "win32":
        name = f"{system} {platform.release()}"
        version = "-".join(platform.win32_ver()[1:3])
    else:
        # The kernel release, e.g. 6.1.0-18-amd64.
        name, version = system, platform.release()
    return {"type": system, "name": name, "architecture": platform.machine(), "version": version}


_METADATA: dict[str, Any] = {
    "driver": {"name": "mongo-sdam", "version": __version__},
    "os": _os_metadata(),
    "platform": f"{platform.python_implementation()} {platform.python_version()}",
}

# getaddrinfo on a thread can deadlock importing the IDNA codec while another
# thread holds the import lock, so import it now.
"foo".encode("idna")


def _raise_connection_failure(
    address: _Address, error: Exception, msg_prefix: Optional[str] = None
) -> None:
    """Convert an OSError to NetworkTimeout or AutoReconnect and raise it."""
    host, port = address
    # Unix domain sockets have no port.
    msg = f"{host}:{port}: {error}" if port is not None else f"{host}: {error}"
    if msg_prefix:
        msg = msg_prefix + msg
    if isinstance(error, socket.timeout):
        raise NetworkTimeout(msg) from error
    raise AutoReconnect(msg) from error


def _cond_wait(condition: threading.Condition, deadline: Optional[float]) -> bool:
    timeout = deadline - time.monotonic() if deadline else None
    return condition.wait(timeout)


class PoolOptions:
    """Read only connection pool options for a Cluster.

    Applications read them from
    :attr:`~mongo_sdam.client_options.ClientOptions.pool_options`::

      cluster.options.pool_options.max_pool_size
    """

    __slots__ = (
        "__max_pool_size",
        "__min_pool_size",
        "__max_idle_time_seconds",
        "__connect_timeout",
        "__socket_timeout",
        "__wait_queue_timeout",
        "__event_listeners",
        "__appname",
        "__metadata",
        "__max_connecting",
    )

    def __init__(
        self,
        max_pool_size: int = MAX_POOL_SIZE,
        min_pool_size: int = MIN_POOL_SIZE,
        max_idle_time_seconds: Optional[float] = MAX_IDLE_TIME_SEC,
        connect_timeout: Optional[float] = None,
        socket_timeout: Optional[float] = None,
        wait_queue_timeout: Optional[float] = WAIT_QUEUE_TIMEOUT,
        event_listeners: Optional[_EventListeners] = None,
        appname: Optional[str] = None,
        max_connecting: int = MAX_CONNECTING,
    ):
        self.__max_pool_size = max_pool_size
        self.__min_pool_size = min_pool_size
        self.__max_idle_time_seconds = max_idle_time_seconds
        self.__connect_timeout = connect_timeout
        self.__socket_timeout = socket_timeout
        self.__wait_queue_timeout = wait_queue_timeout
        self.__event_listeners = event_listeners
        self.__appname = appname
        self.__max_connecting = max_connecting
        self.__metadata = copy.deepcopy(_METADATA)
        if appname:
            self.__metadata["application"] = {"name": appname}

    @property
    def non_default_options(self) -> dict[str, Any]:
        """The options that differ from the defaults, in URI naming.

        Reported by :class:`~mongo_sdam.monitoring.PoolCreatedEvent`.
        """
        opts: dict[str, Any] = {}
        if self.__max_pool_size != MAX_POOL_SIZE:
            opts["maxPoolSize"] = self.__max_pool_size
        if self.__min_pool_size != MIN_POOL_SIZE:
            opts["minPoolSize"] = self.__min_pool_size
        if self.__max_idle_time_seconds != MAX_IDLE_TIME_SEC:
            opts["maxIdleTimeMS"] = self.__max_idle_time_seconds * 1000
        if self.__wait_queue_timeout != WAIT_QUEUE_TIMEOUT:
            opts["waitQueueTimeoutMS"] = self.__wait_queue_timeout * 1000
        if self.__max_connecting != MAX_CONNECTING:
            opts["maxConnecting"] = self.__max_connecting
        return opts

    @property
    def max_pool_size(self) -> int:
        """The most connections checked out of one server's pool at once.

        Further checkouts block, for at most ``waitQueueTimeoutMS`` when it is
        set. 0 means no limit. Defaults to 100.
        """
        return self.__max_pool_size

    @property
    def min_pool_size(self) -> int:
        """How many connections the background task keeps open. Default 0."""
        return self.__min_pool_size

    @property
    def max_connecting(self) -> int:
        """How many connections one pool may be opening at once. Default 2."""
        return self.__max_connecting

    @property
    def max_idle_time_seconds(self) -> Optional[float]:
        """Idle connections older than this are closed. None means never."""
        return self.__max_idle_time_seconds

    @property
    def connect_timeout(self) -> Optional[float]:
        return self.__connect_timeout

    @property
    def socket_timeout(self) -> Optional[float]:
        return self.__socket_timeout

    @property
    def wait_queue_timeout(self) -> Optional[float]:
        """How long a checkout waits for a free connection. None means forever."""
        return self.__wait_queue_timeout

    @property
    def _event_listeners(self) -> Optional[_EventListeners]:
        return self.__event_listeners

    @property
    def appname(self) -> Optional[str]:
        """The application name sent in the handshake."""
        return self.__appname

    @property
    def metadata(self) -> dict[str, Any]:
        """The ``client`` document of the handshake."""
        return self.__metadata.copy()


class CancellationContext:
    """Lets one thread abort another thread's blocking wait.

    Server selection and connection checkout accept a context; calling
    :meth:`cancel` wakes the waiter, which raises
    :exc:`~mongo_sdam.errors.OperationCancelled`.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], Any]] = []

    def cancel(self) -> None:
        """Cancel this context."""
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    @property
    def cancelled(self) -> bool:
        """Was cancel called?"""
        return self._cancelled

    def add_callback(self, callback: Callable[[], Any]) -> None:
        """Call `callback` with no arguments when this context is cancelled.

        Runs `callback` immediately if the context is already cancelled.
        """
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], Any]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)


class _ConnectionEvents:
    """CMAP event publishing and logging shared by pools and connections."""

    address: _Address
    listeners: Optional[_EventListeners]
    enabled_for_cmap: bool
    enabled_for_logging: bool
    _client_id: Optional[ObjectId]

    def _log(self, message: _ConnectionStatusMessage, **fields: Any) -> None:
        if self.enabled_for_logging and _CONNECTION_LOGGER.isEnabledFor(logging.DEBUG):
            _debug_log(
                _CONNECTION_LOGGER,
                clientId=self._client_id,
                message=message,
                serverHost=self.address[0],
                serverPort=self.address[1],
                **fields,
            )

    def _publish_closed(self, conn_id: int, reason: str) -> None:
        if self.enabled_for_cmap:
            assert self.listeners is not None
            self.listeners.publish_connection_closed(self.address, conn_id, reason)
        self._log(
            _ConnectionStatusMessage.CONN_CLOSED,
            driverConnectionId=conn_id,
            reason=_verbose_connection_error_reason(reason),
            error=reason,
        )


class Connection(_ConnectionEvents):
    """A socket to one server and what its last hello reported.

    :param sock: a connected socket
    :param pool: the Pool that opened it
    :param address: the server's (host, port)
    :param id: the id of this connection within its pool
    """

    def __init__(self, sock: socket.socket, pool: Pool, address: _Address, id: int):
        self.pool_ref = weakref.ref(pool)
        self.sock = sock
        self.address = address
        self.id = id
        self.opts = pool.opts
        self.listeners = pool.listeners
        self.enabled_for_cmap = pool.enabled_for_cmap
        self.enabled_for_logging = pool.enabled_for_logging
        self._client_id = pool._client_id
        self.socket_checker = SocketChecker()
        self.closed = False
        # Set once the handshake succeeded. Until then a failure publishes
        # its own closed event.
        self.ready = False
        self.active = False
        self.last_checkin_time = time.monotonic()
        self.cancel_context = CancellationContext()
        # The pool generation this connection was opened in.
        self.generation = pool.gen.get()
        self.performed_handshake = False
        self.hello_ok: Optional[bool] = None
        self.is_writable = False
        self.max_wire_version = MAX_WIRE_VERSION
        self.max_message_size = MAX_MESSAGE_SIZE
        self.server_connection_id: Optional[int] = None

    def hello(self) -> Hello:
        """Run hello and record what the server reported.

        The first call on a connection is the handshake and carries the
        client metadata. The legacy command is used until the server says it
        supports "hello".
        """
        if self.hello_ok:
            cmd = SON([(HelloCompat.CMD, 1)])
        else:
            cmd = SON([(HelloCompat.LEGACY_CMD, 1), ("helloOk", True)])
        if not self.performed_handshake:
            self.performed_handshake = True
            cmd["client"] = self.opts.metadata

        hello = Hello(self.command("admin", cmd))
        self.hello_ok = hello.hello_ok
        self.is_writable = hello.is_writable
        self.max_wire_version = hello.max_wire_version
        self.max_message_size = hello.max_message_size
        self.server_connection_id = hello.connection_id
        return hello

    def command(
        self,
        dbname: str,
        spec: Any,
        read_preference: Any = None,
        codec_options: Any = _UNICODE_REPLACE_CODEC_OPTIONS,
        check: bool = True,
        allowable_errors: Any = None,
    ) -> dict[str, Any]:
        """Run a command and return the reply document.

        Server errors leave the connection open. Any other failure closes it;
        an OSError is raised as :exc:`~mongo_sdam.errors.AutoReconnect` or
        :exc:`~mongo_sdam.errors.NetworkTimeout`.

        :param dbname: the database to run the command on
        :param spec: the command document; its first key names the command
        :param read_preference: sent as ``$readPreference`` unless primary
        :param codec_options: for decoding the reply
        :param check: raise OperationFailure if the command failed
        :param allowable_errors: codes or messages `check` ignores
        """
        spec = SON(spec)
        try:
            return command(
                self,
                dbname,
                spec,
                read_preference,
                codec_options,
                check,
                allowable_errors,
                self.max_message_size,
            )
        except (OperationFailure, NotPrimaryError):
            raise
        except BaseException as error:
            # Also reached by KeyboardInterrupt during a socket call. Checkin
            # publishes the closed event of a checked out connection.
            self.close_conn(None if self.ready else ConnectionClosedReason.ERROR)
            if isinstance(error, OSError):
                _raise_connection_failure(self.address, error)
            raise

    def close_conn(self, reason: Optional[str]) -> None:
        """Close the socket. A `reason` publishes a connection closed event."""
        if self.closed:
            return
        self.closed = True
        self.cancel_context.cancel()
        try:
            self.sock.close()
        except Exception:  # noqa: S110
            # Can fail at interpreter shutdown.
            pass
        if reason:
            self._publish_closed(self.id, reason)

    def socket_closed(self) -> bool:
        """Return True if we know socket has been closed, False otherwise."""
        return self.socket_checker.socket_closed(self.sock)

    def update_last_checkin_time(self) -> None:
        self.last_checkin_time = time.monotonic()

    def update_is_writable(self, is_writable: Optional[bool]) -> None:
        self.is_writable = is_writable

    def idle_time_seconds(self) -> float:
        """Seconds since this connection was last checked into its pool."""
        return time.monotonic() - self.last_checkin_time

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, Connection) and self.sock == other.sock

    def __hash__(self) -> int:
        return hash(self.sock)

    def __repr__(self) -> str:
        state = " CLOSED" if self.closed else ""
        return f"Connection({self.sock!r}){state} at {id(self)}"


def _connect_unix(path: str) -> socket.socket:
    if not hasattr(socket, "AF_UNIX"):
        raise ConnectionFailure("UNIX-sockets are not supported on this system")
    sock = socket.socket(socket.AF_UNIX)
    _set_non_inheritable_non_atomic(sock.fileno())
    try:
        sock.connect(path)
    except OSError:
        sock.close()
        raise
    return sock


def _create_connection(address: _Address, options: PoolOptions) -> socket.socket:
    """Open a socket to `address`, trying each resolved address in turn.

    Raises the last OSError when none of them accepts.
    """
    host, port = address
    if host.endswith(".sock"):
        return _connect_unix(host)

    # Resolving "localhost" to ::1 first makes connects slow on some hosts.
    family = socket.AF_UNSPEC if socket.has_ipv6 and host != "localhost" else socket.AF_INET
    err: Optional[OSError] = None
    for af, socktype, proto, _, sockaddr in socket.getaddrinfo(
        host, port, family, socket.SOCK_STREAM
    ):
        sock = socket.socket(af, socktype, proto)
        _set_non_inheritable_non_atomic(sock.fileno())
        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            sock.settimeout(options.connect_timeout)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, True)
            _set_keepalive_times(sock)
            sock.connect(sockaddr)
            return sock
        except OSError as exc:
            err = exc
            sock.close()

    if err is not None:
        raise err
    # Only IPv6 addresses on a system without IPv6.
    raise OSError("getaddrinfo failed")


def _configured_socket(address: _Address, options: PoolOptions) -> socket.socket:
    """A connected socket with the pool's socket timeout applied."""
    sock = _create_connection(address, options)
    sock.settimeout(options.socket_timeout)
    return sock


class _PoolClosedError(MongoSdamError):
    """Raised by a checkout from a closed pool."""


class _PoolGeneration:
    """Counts a pool's resets."""

    def __init__(self) -> None:
        self._generation = 0

    def get(self) -> int:
        return self._generation

    def inc(self) -> None:
        self._generation += 1

    def stale(self, gen: int) -> bool:
        return gen != self._generation


# Checkout errors that publish their own checkout failed event.
_PUBLISHED_CHECKOUT_ERRORS = (_PoolClosedError, OperationCancelled, WaitQueueTimeoutError)


class Pool(_ConnectionEvents):
    """The connections to one server.

    :param address: the server's (host, port)
    :param options: a PoolOptions
    :param handshake: run hello on each new connection. Monitor pools pass
        False and publish neither events nor logs.
    :param client_id: the topology id, for log messages
    """

    def __init__(
        self,
        address: _Address,
        options: PoolOptions,
        handshake: bool = True,
        client_id: Optional[ObjectId] = None,
    ):
        self.address = address
        self.opts = options
        self.handshake = handshake
        self._client_id = client_id
        self.listeners = options._event_listeners
        self.enabled_for_cmap = bool(
            handshake and self.listeners is not None and self.listeners.enabled_for_cmap
        )
        self.enabled_for_logging = handshake
        self._closed = False
        # How idle a connection must be before checkout polls its socket.
        # 0 polls every time, None never does.
        self._check_interval_seconds: Optional[float] = 1
        # Idle connections. Checkout and checkin use the left end, so the
        # longest idle connections sit at the right end.
        self.conns: collections.deque[Connection] = collections.deque()
        self.lock = threading.Lock()
        self.next_connection_id = 1
        # The server's writability, copied onto connections at checkin.
        self.is_writable: Optional[bool] = None
        self.gen = _PoolGeneration()
        self.pid = os.getpid()

        # Waiters for a request slot (maxPoolSize).
        self.size_cond = threading.Condition(self.lock)
        self.requests = 0
        self.active_sockets = 0
        self.max_pool_size: float = options.max_pool_size or float("inf")
        # Waiters for an idle connection or an opening slot (maxConnecting).
        self._max_connecting_cond = threading.Condition(self.lock)
        self._max_connecting = options.max_connecting
        self._pending = 0

        if self.enabled_for_cmap:
            assert self.listeners is not None
            self.listeners.publish_pool_created(self.address, options.non_default_options)
        self._log(_ConnectionStatusMessage.POOL_CREATED, **options.non_default_options)

    @property
    def closed(self) -> bool:
        return self._closed

    def _reset(self, close: bool) -> None:
        with self.size_cond:
            if self._closed:
                return
            self.gen.inc()
            if self.pid != os.getpid():
                # Connections checked out before a fork are never returned.
                self.pid = os.getpid()
                self.active_sockets = 0
            conns, self.conns = self.conns, collections.deque()
            if close:
                self._closed = True
            # Wake every waiter.
            self._max_connecting_cond.notify_all()
            self.size_cond.notify_all()

        if close:
            # Idle connections close before the pool closed event.
            for conn in conns:
                conn.close_conn(ConnectionClosedReason.POOL_CLOSED)
            if self.enabled_for_cmap:
                assert self.listeners is not None
                self.listeners.publish_pool_closed(self.address)
            self._log(_ConnectionStatusMessage.POOL_CLOSED)
        else:
            # Idle connections close after the pool cleared event.
            if self.enabled_for_cmap:
                assert self.listeners is not None
                self.listeners.publish_pool_cleared(self.address)
            self._log(_ConnectionStatusMessage.POOL_CLEARED)
            for conn in conns:
                conn.close_conn(ConnectionClosedReason.STALE)

    def reset(self) -> None:
        """Close the idle connections and mark the checked out ones stale."""
        self._reset(close=False)

    def close(self) -> None:
        self._reset(close=True)

    def update_is_writable(self, is_writable: Optional[bool]) -> None:
        """Record whether the server is writable, on the pool and its idle
        connections.
        """
        self.is_writable = is_writable
        with self.lock:
            for conn in self.conns:
                conn.update_is_writable(is_writable)

    def stale_generation(self, gen: int) -> bool:
        return self.gen.stale(gen)

    def remove_stale_sockets(self, reference_generation: int) -> None:
        """Close connections idle for too long, then open connections until
        there are ``minPoolSize``.

        Nothing is opened once the pool's generation moves past
        `reference_generation`, the generation when this run was requested.
        """
        if self._closed:
            return
        max_idle = self.opts.max_idle_time_seconds
        if max_idle is not None:
            with self.lock:
                while self.conns and self.conns[-1].idle_time_seconds() > max_idle:
                    self.conns.pop().close_conn(ConnectionClosedReason.IDLE)

        while self._add_min_pool_conn(reference_generation):
            pass

    def _add_min_pool_conn(self, reference_generation: int) -> bool:
        """Open one connection toward ``minPoolSize``. False when done."""
        min_size = self.opts.min_pool_size
        with self.size_cond:
            if len(self.conns) + self.active_sockets >= min_size or self.requests >= min_size:
                return False
            self.requests += 1
        reserved = False
        try:
            with self._max_connecting_cond:
                # Try again on the next run instead of waiting.
                if self._pending >= self._max_connecting:
                    return False
                self._pending += 1
                reserved = True
            conn = self.connect()
            with self.lock:
                if self.gen.get() != reference_generation:
                    conn.close_conn(ConnectionClosedReason.STALE)
                    return False
                self.conns.appendleft(conn)
            return True
        finally:
            if reserved:
                with self._max_connecting_cond:
                    self._pending -= 1
                    self._max_connecting_cond.notify()
            with self.size_cond:
                self.requests -= 1
                self.size_cond.notify()

    def connect(self, handler: Optional[_ErrorHandler] = None) -> Connection:
        """Open a new connection and run the handshake. The pool does not
        track it: the caller must check it in.

        Can raise ConnectionFailure.
        """
        with self.lock:
            conn_id = self.next_connection_id
            self.next_connection_id += 1

        if self.enabled_for_cmap:
            assert self.listeners is not None
            self.listeners.publish_connection_created(self.address, conn_id)
        self._log(_ConnectionStatusMessage.CONN_CREATED, driverConnectionId=conn_id)

        try:
            sock = _configured_socket(self.address, self.opts)
        except BaseException as error:
            self._publish_closed(conn_id, ConnectionClosedReason.ERROR)
            if isinstance(error, OSError):
                _raise_connection_failure(self.address, error)
            raise

        conn = Connection(sock, self, self.address, conn_id)
        try:
            if self.handshake:
                conn.hello()
                self.is_writable = conn.is_writable
            if handler is not None:
                handler.contribute_socket(conn, completed_handshake=False)
        except BaseException:
            conn.close_conn(ConnectionClosedReason.ERROR)
            raise

        conn.ready = True
        return conn

    @contextlib.contextmanager
    def checkout(
        self,
        handler: Optional[_ErrorHandler] = None,
        cancel_context: Optional[CancellationContext] = None,
    ) -> Generator[Connection, None, None]:
        """Check out a connection for the duration of a with-statement::

            with pool.checkout() as conn:
                reply = conn.command("admin", {"ping": 1})

        The connection returns to the pool when the block exits, unless it
        was closed. Errors raised inside the block go to `handler` first,
        while the connection is still checked out.

        Can raise ConnectionFailure, OperationFailure or OperationCancelled.

        :param handler: a :class:`~mongo_sdam.cluster._ErrorHandler`
        :param cancel_context: aborts the wait for a connection when cancelled
        """
        started = time.monotonic()
        if self.enabled_for_cmap:
            assert self.listeners is not None
            self.listeners.publish_connection_check_out_started(self.address)
        self._log(_ConnectionStatusMessage.CHECKOUT_STARTED)

        conn = self._get_conn(started, handler, cancel_context)

        if self.enabled_for_cmap:
            assert self.listeners is not None
            self.listeners.publish_connection_checked_out(self.address, conn.id)
        self._log(
            _ConnectionStatusMessage.CHECKOUT_SUCCEEDED,
            driverConnectionId=conn.id,
            durationMS=time.monotonic() - started,
        )
        if handler is not None:
            handler.contribute_socket(conn)
        try:
            yield conn
        except BaseException as exc:
            if handler is not None:
                handler.handle(type(exc), exc)
            if conn.active:
                self.checkin(conn)
            raise
        if conn.active:
            self.checkin(conn)

    def _checkout_failed(self, started: float, reason: str) -> None:
        if self.enabled_for_cmap:
            assert self.listeners is not None
            self.listeners.publish_connection_check_out_failed(self.address, reason)
        self._log(
            _ConnectionStatusMessage.CHECKOUT_FAILED,
            reason=_verbose_connection_error_reason(reason),
            error=reason,
            durationMS=time.monotonic() - started,
        )

    def _raise_if_unavailable(
        self, started: float, cancel_context: Optional[CancellationContext]
    ) -> None:
        if self._closed:
            self._checkout_failed(started, ConnectionCheckOutFailedReason.POOL_CLOSED)
            raise _PoolClosedError(
                "Attempted to check out a connection from closed connection pool"
            )
        if cancel_context is not None and cancel_context.cancelled:
            self._checkout_failed(started, ConnectionCheckOutFailedReason.CONN_ERROR)
            raise OperationCancelled("Connection checkout was cancelled")

    def _raise_wait_queue_timeout(self, started: float) -> None:
        self._checkout_failed(started, ConnectionCheckOutFailedReason.TIMEOUT)
        raise WaitQueueTimeoutError(
            "Timed out while checking out a connection from connection pool. "
            f"maxPoolSize: {self.opts.max_pool_size}, "
            f"wait_queue_timeout: {self.opts.wait_queue_timeout}"
        )

    def _wait_for(
        self,
        cond: threading.Condition,
        ready: Callable[[], bool],
        started: float,
        deadline: Optional[float],
        cancel_context: Optional[CancellationContext],
    ) -> None:
        """Wait on `cond`, which the caller holds, until `ready()` is true."""
        self._raise_if_unavailable(started, cancel_context)
        while not ready():
            if not _cond_wait(cond, deadline):
                # Pass on a notification that arrived with the timeout.
                if ready():
                    cond.notify()
                self._raise_wait_queue_timeout(started)
            self._raise_if_unavailable(started, cancel_context)

    def _get_conn(
        self,
        started: float,
        handler: Optional[_ErrorHandler] = None,
        cancel_context: Optional[CancellationContext] = None,
    ) -> Connection:
        """Get or create a Connection. Can raise ConnectionFailure."""
        if self.pid != os.getpid():
            self.reset()

        wait_queue_timeout = self.opts.wait_queue_timeout
        deadline = started + wait_queue_timeout if wait_queue_timeout else None

        def wake_waiters() -> None:
            with self.lock:
                self.size_cond.notify_all()
                self._max_connecting_cond.notify_all()

        if cancel_context is not None:
            cancel_context.add_callback(wake_waiters)
        try:
            return self._get_conn_or_wait(started, deadline, handler, cancel_context)
        finally:
            if cancel_context is not None:
                cancel_context.remove_callback(wake_waiters)

    def _get_conn_or_wait(
        self,
        started: float,
        deadline: Optional[float],
        handler: Optional[_ErrorHandler],
        cancel_context: Optional[CancellationContext],
    ) -> Connection:
        with self.size_cond:
            self._wait_for(
                self.size_cond,
                lambda: self.requests < self.max_pool_size,
                started,
                deadline,
                cancel_context,
            )
            self.requests += 1
            self.active_sockets += 1

        # The request slot must be released on any error from here on.
        conn: Optional[Connection] = None
        try:
            while conn is None:
                with self._max_connecting_cond:
                    self._wait_for(
                        self._max_connecting_cond,
                        lambda: bool(self.conns) or self._pending < self._max_connecting,
                        started,
                        deadline,
                        cancel_context,
                    )
                    if self.conns:
                        conn = self.conns.popleft()
                    else:
                        self._pending += 1
                if conn is None:
                    conn = self._connect_pending(handler)
                elif self._perished(conn):
                    conn = None
        except BaseException as exc:
            if conn is not None:
                conn.close_conn(ConnectionClosedReason.ERROR)
            with self.size_cond:
                self.requests -= 1
                self.active_sockets -= 1
                self.size_cond.notify()
            if not isinstance(exc, _PUBLISHED_CHECKOUT_ERRORS):
                self._checkout_failed(started, ConnectionCheckOutFailedReason.CONN_ERROR)
            raise

        conn.active = True
        return conn

    def _connect_pending(self, handler: Optional[_ErrorHandler]) -> Connection:
        """Open a connection in the maxConnecting slot the caller reserved."""
        try:
            return self.connect(handler=handler)
        finally:
            with self._max_connecting_cond:
                self._pending -= 1
                self._max_connecting_cond.notify()

    def checkin(self, conn: Connection) -> None:
        """Return a checked out connection, or discard it if it was closed.

        :param conn: The connection to check into the pool.
        """
        conn.active = False
        if self.enabled_for_cmap:
            assert self.listeners is not None
            self.listeners.publish_connection_checked_in(self.address, conn.id)
        self._log(_ConnectionStatusMessage.CHECKEDIN, driverConnectionId=conn.id)

        if self.pid != os.getpid():
            self.reset()
        elif self._closed:
            conn.close_conn(ConnectionClosedReason.POOL_CLOSED)
        elif conn.closed:
            # Closed while checked out: the closed event follows the checkin.
            self._publish_closed(conn.id, ConnectionClosedReason.ERROR)
        else:
            # Under the lock so a concurrent reset() can't miss it.
            with self.lock:
                if self.stale_generation(conn.generation):
                    conn.close_conn(ConnectionClosedReason.STALE)
                else:
                    conn.update_last_checkin_time()
                    conn.update_is_writable(self.is_writable)
                    self.conns.appendleft(conn)
                    self._max_connecting_cond.notify()

        with self.size_cond:
            self.requests -= 1
            self.active_sockets -= 1
            self.size_cond.notify()

    def _perished(self, conn: Connection) -> bool:
        """Close `conn` and return True if it can't be handed out.

        A connection perishes when it was idle longer than
        ``maxIdleTimeMS``, when its socket was closed by the peer, or when
        it predates the last reset. The socket is only polled after
        ``_check_interval_seconds`` of idleness.
        """
        idle_time_seconds = conn.idle_time_seconds()
        max_idle = self.opts.max_idle_time_seconds
        if max_idle is not None and idle_time_seconds > max_idle:
            conn.close_conn(ConnectionClosedReason.IDLE)
            return True

        interval = self._check_interval_seconds
        if interval is not None and (interval == 0 or idle_time_seconds > interval):
            if conn.socket_closed():
                conn.close_conn(ConnectionClosedReason.ERROR)
                return True

        if self.stale_generation(conn.generation):
            conn.close_conn(ConnectionClosedReason.STALE)
            return True

        return False

    def __del__(self) -> None:
        # Taking a lock in __del__ is unsafe, so close without reset().
        for conn in self.conns:
            conn.close_conn(None)
