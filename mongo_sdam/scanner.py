# Copyright 2024-present MongoDB, Inc.
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

"""Check every server of a topology from the calling thread.

In single-threaded monitoring mode no monitor threads run. Instead the thread
that selects a server calls :meth:`TopologyScanner.scan`, which sends a
handshake to every due server at once over non-blocking sockets and waits for
all of them together, bounded by one shared connect timeout.
"""
from __future__ import annotations

import errno
import selectors
import socket
import time
from typing import TYPE_CHECKING, Any, Optional

from bson.son import SON
from mongo_sdam import common, helpers, message
from mongo_sdam.errors import AutoReconnect, NetworkTimeout, ProtocolError
from mongo_sdam.hello import Hello, HelloCompat
from mongo_sdam.logger import _SDAM_LOGGER, _debug_log, _SDAMStatusMessage
from mongo_sdam.monitor import MonitorBase
from mongo_sdam.pool import _set_keepalive_times, _set_non_inheritable_non_atomic

if TYPE_CHECKING:
    from mongo_sdam.server_description import ServerDescription
    from mongo_sdam.settings import TopologySettings
    from mongo_sdam.topology import Topology

_Address = tuple[str, int]

_IN_PROGRESS = (errno.EINPROGRESS, errno.EWOULDBLOCK, errno.EAGAIN, errno.EALREADY)


def _connection_error(address: _Address, error: Any) -> AutoReconnect:
    host, port = address
    if port is not None:
        msg = "%s:%d: %s" % (host, port, error)
    else:
        msg = "%s: %s" % (host, error)
    if isinstance(error, socket.timeout):
        return NetworkTimeout(msg)
    return AutoReconnect(msg)


class _ScanNode:
    """Socket and buffers for one server's in-flight handshake.

    The socket stays open between scans and is dropped after any error.
    """

    def __init__(self, address: _Address, metadata: Any, max_message_size: int):
        self.address = address
        self.metadata = metadata
        self.max_message_size = max_message_size
        self.sock: Optional[socket.socket] = None
        self.connecting = False
        self.performed_handshake = False
        self.hello_ok = False
        self.request_id: Optional[int] = None
        self.outgoing = memoryview(b"")
        self.incoming = bytearray()
        self.started: Optional[float] = None
        # Resolved addresses not tried yet by the connect in progress.
        self.addrinfos: list[tuple[Any, ...]] = []

    def _connect(self) -> None:
        host, port = self.address
        if host.endswith(".sock"):
            self.addrinfos = [(socket.AF_UNIX, socket.SOCK_STREAM, 0, "", host)]
        else:
            family = socket.AF_INET
            if socket.has_ipv6 and host != "localhost":
                family = socket.AF_UNSPEC
            self.addrinfos = list(socket.getaddrinfo(host, port, family, socket.SOCK_STREAM))
            if not self.addrinfos:
                raise OSError("getaddrinfo failed")
        self.connect_next()

    def connect_next(self) -> None:
        """Start connecting to the next resolved address.

        Addresses refused right away are skipped. Raises the error of the last
        one when none is left.
        """
        self.close_socket()
        while True:
            af, socktype, proto, _, target = self.addrinfos.pop(0)
            sock = socket.socket(af, socktype, proto)
            if af != getattr(socket, "AF_UNIX", None):
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, True)
                _set_keepalive_times(sock)
            _set_non_inheritable_non_atomic(sock.fileno())
            sock.setblocking(False)
            err = sock.connect_ex(target)
            if not err or err in _IN_PROGRESS:
                break
            sock.close()
            if not self.addrinfos:
                raise OSError(err, errno.errorcode.get(err, str(err)))
        self.sock = sock
        self.connecting = bool(err)
        self.performed_handshake = False
        self.hello_ok = False
        if not self.connecting:
            self._connected()

    def _connected(self) -> None:
        # The round trip time covers the hello alone, not the TCP connect.
        self.connecting = False
        self.addrinfos = []
        self.started = time.monotonic()

    def _hello_cmd(self) -> SON:
        if self.hello_ok:
            cmd = SON([(HelloCompat.CMD, 1)])
        else:
            cmd = SON([(HelloCompat.LEGACY_CMD, 1), ("helloOk", True)])
        if not self.performed_handshake:
            cmd["client"] = self.metadata
        return cmd

    def start(self) -> None:
        """Open the socket if needed and queue a hello. Can raise OSError."""
        self.started = time.monotonic()
        if self.sock is None:
            self._connect()
        request_id, msg, _ = message._op_msg(0, self._hello_cmd(), "admin")
        self.request_id = request_id
        self.outgoing = memoryview(msg)
        self.incoming = bytearray()

    @property
    def events(self) -> int:
        if self.connecting or self.outgoing:
            return selectors.EVENT_WRITE
        return selectors.EVENT_READ

    def on_writable(self) -> None:
        assert self.sock is not None
        if self.connecting:
            err = self.sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
            if err:
                raise OSError(err, errno.errorcode.get(err, str(err)))
            self._connected()
        try:
            sent = self.sock.send(self.outgoing)
        except BlockingIOError:
            return
        self.outgoing = self.outgoing[sent:]

    def on_readable(self) -> Optional[Hello]:
        """Read what is available. Return the Hello once the reply is whole."""
        assert self.sock is not None
        try:
            chunk = self.sock.recv(65536)
        except BlockingIOError:
            return None
        if not chunk:
            raise AutoReconnect("connection closed")
        self.incoming.extend(chunk)
        if len(self.incoming) < 16:
            return None
        length, _, response_to, op_code = message._UNPACK_HEADER(bytes(self.incoming[:16]))
        if response_to != self.request_id:
            raise ProtocolError(
                f"Got response id {response_to!r} but expected {self.request_id!r}"
            )
        if length <= 16 or length > self.max_message_size:
            raise ProtocolError(f"Invalid message length ({length!r})")
        if len(self.incoming) < length:
            return None
        reply = message.unpack_reply(op_code, bytes(self.incoming[16:length]))
        doc = reply.unpack_response()[0]
        helpers._check_command_response(doc, None)
        self.performed_handshake = True
        hello = Hello(doc)
        self.hello_ok = hello.hello_ok
        self.max_message_size = hello.max_message_size
        self.request_id = None
        return hello

    def close_socket(self) -> None:
        if self.sock is not None:
            try:
                self.sock.close()
            finally:
                self.sock = None

    def close(self) -> None:
        self.close_socket()
        self.connecting = False
        self.addrinfos = []
        self.request_id = None
        self.outgoing = memoryview(b"")
        self.incoming = bytearray()


class _ScannerMonitor(MonitorBase):
    """The per-server handle a topology holds in single-threaded mode.

    There is no thread: :meth:`request_check` only marks the server due and
    the next :meth:`TopologyScanner.scan` checks it.
    """

    def __init__(
        self,
        server_description: ServerDescription,
        topology: Topology,
        topology_settings: TopologySettings,
        scanner: TopologyScanner,
    ):
        super().__init__(server_description, topology, topology_settings)
        options = topology_settings.pool_options
        self._node = _ScanNode(
            server_description.address, options.metadata, common.MAX_MESSAGE_SIZE
        )
        self._scanner = scanner
        self._opened = False
        self.due = True

    @property
    def address(self) -> _Address:
        return self._server_description.address

    def open(self) -> None:
        self._opened = True

    def close(self) -> None:
        self._opened = False
        self._scanner._remove(self)
        # A scan in progress closes the socket once it unregisters it.
        if not self._scanner._scanning(self):
            self._node.close()

    def join(self, timeout: Optional[float] = None) -> None:
        pass

    def request_check(self) -> None:
        self.due = True

    def cancel_check(self) -> None:
        if not self._scanner._scanning(self):
            self._node.close()

    @property
    def opened(self) -> bool:
        return self._opened

    def _succeeded(self, response: Hello) -> None:
        assert self._node.started is not None
        round_trip_time = time.monotonic() - self._node.started
        try:
            description = self._heartbeat_succeeded(response, round_trip_time)
        except Exception as exc:
            self._failed(exc)
            return
        self._report(description)

    def _failed(self, error: Exception) -> None:
        started = self._node.started
        duration = time.monotonic() - started if started is not None else 0.0
        self._node.close()
        self._report(self._heartbeat_failed(error, duration))


class TopologyScanner:
    def __init__(self, topology: Topology, topology_settings: TopologySettings):
        """Scan all servers of a topology with non-blocking sockets.

        :param topology: the Topology to report to; referenced weakly by
            each server's handle
        :param topology_settings: a TopologySettings
        """
        self._topology = topology
        self._settings = topology_settings
        self._monitors: dict[_Address, _ScannerMonitor] = {}
        self._last_scan: Optional[float] = None
        # Set only while scan() runs.
        self._selector: Optional[selectors.BaseSelector] = None
        self._in_flight: dict[_Address, _ScannerMonitor] = {}

    def create_monitor(self, server_description: ServerDescription) -> _ScannerMonitor:
        """Return the handle for a server newly added to the topology."""
        monitor = _ScannerMonitor(server_description, self._topology, self._settings, self)
        self._monitors[server_description.address] = monitor
        return monitor

    def _remove(self, monitor: _ScannerMonitor) -> None:
        if self._monitors.get(monitor.address) is monitor:
            del self._monitors[monitor.address]

    def _scanning(self, monitor: _ScannerMonitor) -> bool:
        return self._in_flight.get(monitor.address) is monitor

    @property
    def last_scan(self) -> Optional[float]:
        """Monotonic time the last full scan finished, or None."""
        return self._last_scan

    def stale(self) -> bool:
        """True before the first scan and once heartbeat_frequency has
        elapsed since the last one.
        """
        if self._last_scan is None:
            return True
        return time.monotonic() - self._last_scan >= self._settings.heartbeat_frequency

    def request_check_all(self) -> None:
        for monitor in list(self._monitors.values()):
            monitor.request_check()

    def has_due(self) -> bool:
        """Is any open server waiting to be checked?"""
        return bool(self._due(set()))

    def _due(self, checked: set[_Address]) -> list[_ScannerMonitor]:
        return [
            m
            for m in list(self._monitors.values())
            if m.opened and m.due and m.address not in checked
        ]

    def scan(self, deadline: Optional[float] = None) -> None:
        """Check every due server once and report each outcome.

        Servers discovered while scanning are checked in the same call.
        Returns once every started check has completed or timed out.

        :param deadline: optional monotonic time to give up by, in addition
            to the connect timeout shared by all checks
        """
        connect_timeout = self._settings.pool_options.connect_timeout
        if connect_timeout is None:
            connect_timeout = common.CONNECT_TIMEOUT
        timeout_at = time.monotonic() + connect_timeout
        if deadline is not None:
            timeout_at = min(timeout_at, deadline)

        checked: set[_Address] = set()
        self._selector = selectors.DefaultSelector()
        try:
            while True:
                for monitor in self._due(checked):
                    checked.add(monitor.address)
                    self._start(monitor)

                self._drop_closed()
                if not self._in_flight:
                    break

                remaining = timeout_at - time.monotonic()
                if remaining <= 0:
                    for monitor in list(self._in_flight.values()):
                        self._finish(monitor)
                        monitor._failed(
                            _connection_error(monitor.address, socket.timeout("timed out"))
                        )
                    break

                for key, mask in self._selector.select(remaining):
                    if self._scanning(key.data):
                        self._step(key.data, mask)
        finally:
            for monitor in list(self._in_flight.values()):
                self._finish(monitor)
                monitor._node.close()
            self._selector.close()
            self._selector = None
        self._last_scan = time.monotonic()

    def _start(self, monitor: _ScannerMonitor) -> None:
        assert self._selector is not None
        if not monitor.opened:
            return
        monitor.due = False
        monitor._heartbeat_started()
        try:
            monitor._node.start()
        except OSError as exc:
            monitor._failed(_connection_error(monitor.address, exc))
            return
        _debug_log(
            _SDAM_LOGGER,
            topologyId=self._settings.get_topology_id(),
            serverHost=monitor.address[0],
            serverPort=monitor.address[1],
            awaited=False,
            message=_SDAMStatusMessage.HEARTBEAT_START,
        )
        self._in_flight[monitor.address] = monitor
        self._selector.register(monitor._node.sock, monitor._node.events, monitor)

    def _drop_closed(self) -> None:
        """Abandon checks of servers the topology removed meanwhile."""
        for monitor in list(self._in_flight.values()):
            if not monitor.opened:
                self._finish(monitor)
                monitor._node.close()

    def _step(self, monitor: _ScannerMonitor, mask: int) -> None:
        assert self._selector is not None
        node = monitor._node
        try:
            response = None
            if mask & selectors.EVENT_WRITE:
                node.on_writable()
            elif mask & selectors.EVENT_READ:
                response = node.on_readable()
        except OSError as exc:
            self._finish(monitor)
            if node.connecting and node.addrinfos:
                self._connect_next(monitor)
            else:
                monitor._failed(_connection_error(monitor.address, exc))
            return
        except Exception as exc:
            self._finish(monitor)
            monitor._failed(exc)
            return

        if response is not None:
            self._finish(monitor)
            monitor._succeeded(response)
        else:
            self._selector.modify(node.sock, node.events, monitor)

    def _connect_next(self, monitor: _ScannerMonitor) -> None:
        assert self._selector is not None
        try:
            monitor._node.connect_next()
        except OSError as exc:
            monitor._failed(_connection_error(monitor.address, exc))
            return
        self._in_flight[monitor.address] = monitor
        self._selector.register(monitor._node.sock, monitor._node.events, monitor)

    def _finish(self, monitor: _ScannerMonitor) -> None:
        assert self._selector is not None
        self._in_flight.pop(monitor.address, None)
        if monitor._node.sock is not None:
            self._selector.unregister(monitor._node.sock)

    def close(self) -> None:
        for monitor in list(self._monitors.values()):
            monitor.close()
