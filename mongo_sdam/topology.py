# Copyright 2014-present MongoDB, Inc.
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

"""Internal class to monitor a topology of one or more servers."""
from __future__ import annotations

import logging
import os
import queue
import random
import threading
import time
import warnings
import weakref
from typing import TYPE_CHECKING, Any, Callable, Mapping, Optional

from mongo_sdam import common, helpers, max_staleness_selectors
from mongo_sdam.errors import (
    ConnectionFailure,
    InvalidOperation,
    MongoSdamError,
    NetworkTimeout,
    NotPrimaryError,
    OperationCancelled,
    OperationFailure,
    ServerSelectionTimeoutError,
)
from mongo_sdam.logger import (
    _SDAM_LOGGER,
    _SERVER_SELECTION_LOGGER,
    _debug_log,
    _SDAMStatusMessage,
    _ServerSelectionStatusMessage,
)
from mongo_sdam.pool import Pool, PoolOptions
from mongo_sdam.read_preferences import _ServerMode
from mongo_sdam.scanner import TopologyScanner
from mongo_sdam.server import Server
from mongo_sdam.server_description import ServerDescription
from mongo_sdam.server_selectors import (
    Selection,
    any_server_selector,
    arbiter_server_selector,
    secondary_server_selector,
    writable_server_selector,
)
from mongo_sdam.server_type import SERVER_TYPE
from mongo_sdam.topology_description import (
    TOPOLOGY_TYPE,
    TopologyDescription,
    updated_topology_description,
)

if TYPE_CHECKING:
    from mongo_sdam.pool import CancellationContext
    from mongo_sdam.settings import TopologySettings

_Address = tuple[str, int]
_Selector = Callable[[Selection], Selection]


def process_events_queue(events: Optional[queue.Queue]) -> None:
    """Publish every queued event. Call without holding the topology lock."""
    if events is None:
        return
    while True:
        try:
            fn, args = events.get_nowait()
        except queue.Empty:
            break
        else:
            fn(*args)


class Topology:
    """Monitor a topology of one or more servers."""

    def __init__(self, topology_settings: TopologySettings):
        self._topology_id = topology_settings.get_topology_id()
        self._listeners = topology_settings.pool_options._event_listeners
        self._publish_server = self._listeners is not None and self._listeners.enabled_for_server
        self._publish_tp = self._listeners is not None and self._listeners.enabled_for_topology

        # Events are queued while holding the lock and published after
        # releasing it.
        self._events: Optional[queue.Queue] = None
        if self._publish_server or self._publish_tp:
            self._events = queue.Queue()

        if self._publish_tp:
            assert self._events is not None
            self._events.put((self._listeners.publish_topology_opened, (self._topology_id,)))
        self._settings = topology_settings
        topology_description = TopologyDescription(
            topology_settings.get_topology_type(),
            topology_settings.get_server_descriptions(),
            topology_settings.replica_set_name,
            None,
            None,
            topology_settings,
        )

        self._description = topology_description
        # Incremented on every change so waiters can tell snapshots apart.
        self._description_version = 0
        if self._publish_tp:
            assert self._events is not None
            initial_td = TopologyDescription(
                TOPOLOGY_TYPE.Unknown, {}, None, None, None, self._settings
            )
            self._events.put(
                (
                    self._listeners.publish_topology_description_changed,
                    (initial_td, self._description, self._topology_id),
                )
            )

        # Store the seed list to help diagnose errors in _error_message().
        self._seed_addresses = list(topology_description.server_descriptions())
        self._opened = False
        self._closed = False
        self._lock = threading.Lock()
        self._condition = self._settings.condition_class(self._lock)
        self._servers: dict[_Address, Server] = {}
        self._pid: Optional[int] = None

        self._scanner: Optional[TopologyScanner] = None
        # Serializes scans in single-threaded mode.
        self._scan_lock = threading.Lock()
        if topology_settings.single_threaded:
            self._scanner = TopologyScanner(self, topology_settings)

    def open(self) -> None:
        """Start monitoring, or restart after a fork.

        No effect if called multiple times.

        .. warning:: Topology is shared among multiple threads and is protected
          by mutual exclusion. Using Topology from a process other than the one
          that initialized it will emit a warning and may result in deadlock.
        """
        pid = os.getpid()
        if self._pid is None:
            self._pid = pid
        elif pid != self._pid:
            self._pid = pid
            warnings.warn(
                "Cluster opened before fork. May not be entirely fork-safe, "
                "proceed with caution.",
                stacklevel=2,
            )
            with self._lock:
                # Close servers and clear the pools.
                for server in self._servers.values():
                    server.close()

        with self._lock:
            self._ensure_opened()
        self._process_events()

    @property
    def description(self) -> TopologyDescription:
        """The current TopologyDescription. Never blocks."""
        return self._description

    def _validate_selector(self, selector: Any) -> None:
        if isinstance(selector, _ServerMode):
            max_staleness_selectors.validate(
                selector.max_staleness, self._settings.heartbeat_frequency
            )

    def select_servers(
        self,
        selector: _Selector,
        server_selection_timeout: Optional[float] = None,
        address: Optional[_Address] = None,
        cancel_context: Optional[CancellationContext] = None,
    ) -> list[Server]:
        """Return a list of Servers matching selector, or time out.

        :param selector: function that takes a Selection and returns a
            narrowed Selection, e.g. a read preference
        :param server_selection_timeout: maximum seconds to wait.
            If not provided, the default value common.SERVER_SELECTION_TIMEOUT
            is used.
        :param address: optional server address to select.
        :param cancel_context: optional CancellationContext. Cancelling it
            wakes this call, which raises OperationCancelled.

        Calls self.open() if needed.

        Raises exc:`ServerSelectionTimeoutError` after
        `server_selection_timeout` if no matching servers are found, and
        :exc:`IncompatibleTopologyError` as soon as a server's wire version
        range is incompatible.
        """
        if server_selection_timeout is None:
            server_timeout = self._settings.server_selection_timeout
        else:
            server_timeout = server_selection_timeout

        # Fail fast on a bad maxStalenessSeconds, before taking the lock.
        self._validate_selector(selector)

        try:
            if self._scanner is not None:
                return self._select_servers_scanning(
                    selector, server_timeout, address, cancel_context
                )
            return self._select_servers_waiting(selector, server_timeout, address, cancel_context)
        finally:
            self._process_events()

    def _log_selection(self, message: str, selector: Any, **fields: Any) -> None:
        _debug_log(
            _SERVER_SELECTION_LOGGER,
            message=message,
            selector=selector,
            topologyDescription=self.description,
            clientId=self._topology_id,
            **fields,
        )

    def _apply_selector(
        self, selector: _Selector, address: Optional[_Address], rejections: dict
    ) -> list[ServerDescription]:
        """Hold the lock when calling this."""
        self._description.check_compatible()
        return self._description.apply_selector(selector, address, rejections=rejections)

    def _select_servers_waiting(
        self,
        selector: _Selector,
        timeout: float,
        address: Optional[_Address],
        cancel_context: Optional[CancellationContext],
    ) -> list[Server]:
        """Wait on the condition for monitor threads to find a server."""

        def wake() -> None:
            with self._lock:
                self._condition.notify_all()

        if cancel_context is not None:
            cancel_context.add_callback(wake)
        try:
            with self._lock:
                server_descriptions = self._select_servers_loop(
                    selector, timeout, address, cancel_context
                )
                return [self._servers[sd.address] for sd in server_descriptions]
        finally:
            if cancel_context is not None:
                cancel_context.remove_callback(wake)

    def _select_servers_loop(
        self,
        selector: _Selector,
        timeout: float,
        address: Optional[_Address],
        cancel_context: Optional[CancellationContext],
    ) -> list[ServerDescription]:
        """select_servers() guts. Hold the lock when calling this."""
        now = time.monotonic()
        end_time = now + timeout
        logged_waiting = False

        if _SERVER_SELECTION_LOGGER.isEnabledFor(logging.DEBUG):
            self._log_selection(_ServerSelectionStatusMessage.STARTED, selector)

        self._ensure_opened()
        rejections: dict[_Address, str] = {}
        server_descriptions = self._apply_selector(selector, address, rejections)

        while not server_descriptions:
            if cancel_context is not None and cancel_context.cancelled:
                raise OperationCancelled("Server selection was cancelled")

            # No suitable servers.
            if timeout == 0 or now > end_time:
                raise self._selection_failed(selector, timeout, rejections)

            if not logged_waiting:
                if _SERVER_SELECTION_LOGGER.isEnabledFor(logging.DEBUG):
                    self._log_selection(
                        _ServerSelectionStatusMessage.WAITING,
                        selector,
                        remainingTimeMS=end_time - now,
                    )
                logged_waiting = True

            self._ensure_opened()
            self._request_check_all()

            # Release the lock and wait for the topology description to
            # change, or for a timeout. We won't miss any changes that
            # came after our most recent apply_selector call, since we've
            # held the lock until now.
            self._condition.wait(min(common.MIN_HEARTBEAT_INTERVAL, max(end_time - now, 0)))
            now = time.monotonic()
            rejections = {}
            server_descriptions = self._apply_selector(selector, address, rejections)

        return server_descriptions

    def _select_servers_scanning(
        self,
        selector: _Selector,
        timeout: float,
        address: Optional[_Address],
        cancel_context: Optional[CancellationContext],
    ) -> list[Server]:
        """Drive blocking scans from this thread until a server matches."""
        assert self._scanner is not None
        end_time = time.monotonic() + timeout
        try_once = self._settings.server_selection_try_once
        scanned = False
        logged_waiting = False
        wakeup = threading.Event()
        if cancel_context is not None:
            cancel_context.add_callback(wakeup.set)

        if _SERVER_SELECTION_LOGGER.isEnabledFor(logging.DEBUG):
            self._log_selection(_ServerSelectionStatusMessage.STARTED, selector)

        try:
            while True:
                with self._lock:
                    self._ensure_opened()
                if self._scanner.stale():
                    self._scan(end_time, check_all=True)
                    scanned = True
                elif self._scanner.has_due():
                    self._scan(end_time)

                rejections: dict[_Address, str] = {}
                with self._lock:
                    server_descriptions = self._apply_selector(selector, address, rejections)
                    if server_descriptions:
                        return [self._servers[sd.address] for sd in server_descriptions]
                self._process_events()

                if cancel_context is not None and cancel_context.cancelled:
                    raise OperationCancelled("Server selection was cancelled")
                now = time.monotonic()
                if now >= end_time or (try_once and scanned):
                    with self._lock:
                        raise self._selection_failed(selector, timeout, rejections)

                if not logged_waiting:
                    if _SERVER_SELECTION_LOGGER.isEnabledFor(logging.DEBUG):
                        self._log_selection(
                            _ServerSelectionStatusMessage.WAITING,
                            selector,
                            remainingTimeMS=end_time - now,
                        )
                    logged_waiting = True

                # Don't scan more often than minHeartbeatFrequency.
                last_scan = self._scanner.last_scan or now
                pause = min(last_scan + common.MIN_HEARTBEAT_INTERVAL, end_time) - now
                if pause > 0:
                    wakeup.wait(pause)
                    if cancel_context is not None and cancel_context.cancelled:
                        raise OperationCancelled("Server selection was cancelled")
                self._scan(end_time, check_all=True)
                scanned = True
        finally:
            if cancel_context is not None:
                cancel_context.remove_callback(wakeup.set)

    def _scan(self, deadline: Optional[float] = None, check_all: bool = False) -> None:
        """Run one cooperative scan. Never hold the topology lock here."""
        assert self._scanner is not None
        with self._scan_lock:
            if check_all:
                self._scanner.request_check_all()
            self._scanner.scan(deadline)

    def _selection_failed(
        self, selector: Any, timeout: float, rejections: Mapping[_Address, str]
    ) -> ServerSelectionTimeoutError:
        """Build the error for a failed selection. Hold the lock."""
        message = self._error_message(selector)
        if _SERVER_SELECTION_LOGGER.isEnabledFor(logging.DEBUG):
            self._log_selection(_ServerSelectionStatusMessage.FAILED, selector, failure=message)
        reasons = "; ".join(
            "%s:%s: %s" % (addr[0], addr[1], reason) for addr, reason in sorted(rejections.items())
        )
        if reasons:
            message = f"{message}, Rejected: [{reasons}]"
        return ServerSelectionTimeoutError(
            f"{message}, Timeout: {timeout}s, Topology Description: {self.description!r}",
            topology_description=self._description,
            rejections=rejections,
        )

    def select_server(
        self,
        selector: _Selector,
        server_selection_timeout: Optional[float] = None,
        address: Optional[_Address] = None,
        cancel_context: Optional[CancellationContext] = None,
    ) -> Server:
        """Like select_servers, but choose a random server if several match."""
        servers = self.select_servers(selector, server_selection_timeout, address, cancel_context)
        server = random.choice(servers)  # noqa: S311
        if _SERVER_SELECTION_LOGGER.isEnabledFor(logging.DEBUG):
            self._log_selection(
                _ServerSelectionStatusMessage.SUCCEEDED,
                selector,
                serverHost=server.description.address[0],
                serverPort=server.description.address[1],
            )
        return server

    def select_server_by_address(
        self,
        address: _Address,
        server_selection_timeout: Optional[float] = None,
        cancel_context: Optional[CancellationContext] = None,
    ) -> Server:
        """Return a Server for "address", reconnecting if necessary.

        If the server's type is not known, request an immediate check of all
        servers. Time out after "server_selection_timeout" if the server
        cannot be reached.

        :param address: A (host, port) pair.
        :param server_selection_timeout: maximum seconds to wait.
            If not provided, the default value
            common.SERVER_SELECTION_TIMEOUT is used.

        Calls self.open() if needed.

        Raises exc:`ServerSelectionTimeoutError` after
        `server_selection_timeout` if no matching servers are found.
        """
        return self.select_server(
            any_server_selector, server_selection_timeout, address, cancel_context
        )

    def wait_for(
        self,
        predicate: Callable[[TopologyDescription], bool],
        timeout: float,
        cancel_context: Optional[CancellationContext] = None,
    ) -> TopologyDescription:
        """Return the first TopologyDescription for which predicate is true.

        Raises :exc:`ServerSelectionTimeoutError` if no such description is
        seen within `timeout` seconds, or :exc:`OperationCancelled` once
        `cancel_context` is cancelled.
        """
        end_time = time.monotonic() + timeout
        wakeup = threading.Event()

        def wake() -> None:
            wakeup.set()
            with self._lock:
                self._condition.notify_all()

        if cancel_context is not None:
            cancel_context.add_callback(wake)
        try:
            while True:
                with self._lock:
                    self._ensure_opened()
                    description = self._description
                    if predicate(description):
                        return description
                    if cancel_context is not None and cancel_context.cancelled:
                        raise OperationCancelled("Wait for topology was cancelled")
                    remaining = end_time - time.monotonic()
                    if remaining <= 0:
                        raise ServerSelectionTimeoutError(
                            "Timed out after %ss waiting for the topology, "
                            "Topology Description: %r" % (timeout, description),
                            topology_description=description,
                        )
                    if self._scanner is None:
                        self._request_check_all()
                        self._condition.wait(min(remaining, common.MIN_HEARTBEAT_INTERVAL))
                        continue
                # Single-threaded: check the servers from this thread.
                self._process_events()
                last_scan = self._scanner.last_scan
                if last_scan is not None:
                    pause = last_scan + common.MIN_HEARTBEAT_INTERVAL - time.monotonic()
                    if pause > 0:
                        wakeup.wait(min(pause, remaining))
                        continue
                self._scan(end_time, check_all=True)
        finally:
            if cancel_context is not None:
                cancel_context.remove_callback(wake)
            self._process_events()

    def _process_change(
        self, server_description: ServerDescription, reset_pool: bool = False
    ) -> None:
        """Process a new ServerDescription on an opened topology.

        Hold the lock when calling this.
        """
        td_old = self._description
        sd_old = td_old._server_descriptions[server_description.address]
        new_td = updated_topology_description(self._description, server_description)

        suppress_event = sd_old == server_description
        if self._publish_server and not suppress_event:
            assert self._events is not None
            self._events.put(
                (
                    self._listeners.publish_server_description_changed,
                    (sd_old, server_description, server_description.address, self._topology_id),
                )
            )

        self._description = new_td
        self._description_version += 1
        self._update_servers()

        if not suppress_event:
            if self._publish_tp:
                assert self._events is not None
                self._events.put(
                    (
                        self._listeners.publish_topology_description_changed,
                        (td_old, self._description, self._topology_id),
                    )
                )
            _debug_log(
                _SDAM_LOGGER,
                message=_SDAMStatusMessage.TOPOLOGY_CHANGE,
                topologyId=self._topology_id,
                previousDescription=repr(td_old),
                newDescription=repr(self._description),
            )

        # Clear the pool from a failed heartbeat.
        if reset_pool:
            server = self._servers.get(server_description.address)
            if server:
                server.pool.reset()

        # A secondary named this server as its primary. Check it right away.
        for address, sd in self._description.server_descriptions().items():
            if sd.server_type == SERVER_TYPE.PossiblePrimary and address in self._servers:
                self._servers[address].request_check()

        # Wake waiters in select_servers().
        self._condition.notify_all()

    def on_change(self, server_description: ServerDescription, reset_pool: bool = False) -> None:
        """Process a new ServerDescription after an hello call completes."""
        # We do no I/O holding the lock.
        with self._lock:
            # Monitors may continue working on hello calls for some time
            # after a call to Topology.close, so this method may be called at
            # any time. Ensure the topology is open before processing the
            # change.
            # Any monitored server was definitely in the topology description
            # once. Check if it's still in the description or if some state-
            # change removed it. E.g., we got a host list from the primary
            # that didn't include this server.
            if self._opened and self._description.has_server(server_description.address):
                self._process_change(server_description, reset_pool)
        self._process_events()

    def get_server_by_address(self, address: _Address) -> Optional[Server]:
        """Get a Server or None.

        Returns the current version of the server immediately, even if it's
        Unknown or absent from the topology. Only use this in unittests.
        In driver code, use select_server_by_address, since then you're
        assured a recent view of the server's type and wire protocol version.
        """
        return self._servers.get(address)

    def has_server(self, address: _Address) -> bool:
        return address in self._servers

    def get_primary(self) -> Optional[_Address]:
        """Return primary's address or None."""
        # Implemented here in Topology instead of Cluster, so it can lock.
        with self._lock:
            topology_type = self._description.topology_type
            if topology_type != TOPOLOGY_TYPE.ReplicaSetWithPrimary:
                return None

            return writable_server_selector(self._new_selection())[0].address

    def _get_replica_set_members(self, selector: _Selector) -> set[_Address]:
        """Return set of replica set member addresses."""
        # Implemented here in Topology instead of Cluster, so it can lock.
        with self._lock:
            topology_type = self._description.topology_type
            if topology_type not in (
                TOPOLOGY_TYPE.ReplicaSetWithPrimary,
                TOPOLOGY_TYPE.ReplicaSetNoPrimary,
            ):
                return set()

            return {sd.address for sd in selector(self._new_selection())}

    def get_secondaries(self) -> set[_Address]:
        """Return set of secondary addresses."""
        return self._get_replica_set_members(secondary_server_selector)

    def get_arbiters(self) -> set[_Address]:
        """Return set of arbiter addresses."""
        return self._get_replica_set_members(arbiter_server_selector)

    def request_check(self, address: _Address) -> None:
        """Ask the monitor of one server to check it soon."""
        with self._lock:
            server = self._servers.get(address)
            if server is not None:
                server.request_check()

    def request_check_all(self, wait_time: float = 5) -> None:
        """Wake all monitors, wait for at least one to check its server.

        In single-threaded mode, check every server from this thread.
        """
        if self._scanner is not None:
            with self._lock:
                self._ensure_opened()
            self._scan(time.monotonic() + wait_time, check_all=True)
        else:
            with self._lock:
                self._request_check_all()
                self._condition.wait(wait_time)
        self._process_events()

    def data_bearing_servers(self) -> list[ServerDescription]:
        """Return a list of all data-bearing servers.

        This includes any server that might be selected for an operation.
        """
        if self._description.topology_type == TOPOLOGY_TYPE.Single:
            return self._description.known_servers
        return self._description.readable_servers

    def update_pool(self) -> None:
        # Remove any stale sockets and add new sockets if pool is too small.
        servers = []
        with self._lock:
            # Only update pools for data-bearing servers.
            for sd in self.data_bearing_servers():
                server = self._servers[sd.address]
                servers.append((server, server.pool.gen.get()))

        for server, generation in servers:
            try:
                server.pool.remove_stale_sockets(generation)
            except MongoSdamError as exc:
                ctx = _ErrorContext(exc, 0, generation, False)
                self.handle_error(server.description.address, ctx)
                raise

    def close(self) -> None:
        """Clear pools and terminate monitors. Topology does not reopen on
        demand. Any further operations will raise
        :exc:`~.errors.InvalidOperation`.
        """
        with self._lock:
            for server in self._servers.values():
                server.close()

            # Mark all servers Unknown.
            self._description = self._description.reset()
            self._description_version += 1
            for address, sd in self._description.server_descriptions().items():
                if address in self._servers:
                    self._servers[address].description = sd

            was_opened = self._opened
            self._opened = False
            self._closed = True
            # Wake waiters so they notice the topology is closed.
            self._condition.notify_all()

        # Publish only after releasing the lock.
        if self._publish_tp:
            assert self._events is not None
            self._events.put((self._listeners.publish_topology_closed, (self._topology_id,)))
        if was_opened:
            _debug_log(
                _SDAM_LOGGER, message=_SDAMStatusMessage.STOP_TOPOLOGY, topologyId=self._topology_id
            )
        self._process_events()

    def reset_pool(self, address: _Address) -> None:
        """Clear the connection pool of one server."""
        with self._lock:
            server = self._servers.get(address)
            if server:
                server.pool.reset()

    def reset_server(self, address: _Address) -> None:
        """Clear our pool for a server and mark it Unknown.

        Do *not* request an immediate check.
        """
        with self._lock:
            self._reset_server(address)
        self._process_events()

    def reset_server_and_request_check(self, address: _Address) -> None:
        """Clear our pool for a server, mark it Unknown, and check it soon."""
        with self._lock:
            self._reset_server(address)
            server = self._servers.get(address)
            if server:
                server.request_check()
        self._process_events()

    def _reset_server(self, address: _Address) -> None:
        """Clear our pool for a server and mark it Unknown.

        Hold the lock when calling this.
        """
        if address in self._servers and self._description.has_server(address):
            self._process_change(ServerDescription(address), reset_pool=True)

    def _new_selection(self) -> Selection:
        """A Selection object, initially including all known servers.

        Hold the lock when calling this.
        """
        return Selection.from_topology_description(self._description)

    def _ensure_opened(self) -> None:
        """Start monitors, or restart after a fork.

        Hold the lock when calling this.
        """
        if self._closed:
            raise InvalidOperation("Cannot use Cluster after close")

        if not self._opened:
            self._opened = True
            _debug_log(
                _SDAM_LOGGER,
                message=_SDAMStatusMessage.START_TOPOLOGY,
                topologyId=self._topology_id,
            )
            self._update_servers()

        # Ensure that the monitors are open.
        for server in self._servers.values():
            server.open()

    def _is_stale_error(self, address: _Address, err_ctx: _ErrorContext) -> bool:
        server = self._servers.get(address)
        if server is None:
            # Another thread removed this server from the topology.
            return True

        # This is an outdated error from a previous pool version.
        return server.pool.stale_generation(err_ctx.sock_generation)

    def _handle_error(self, address: _Address, err_ctx: _ErrorContext) -> None:
        if self._is_stale_error(address, err_ctx):
            return

        server = self._servers[address]
        error = err_ctx.error

        if isinstance(error, NetworkTimeout) and err_ctx.completed_handshake:
            # The connection has been closed. Don't reset the server, but
            # check it soon.
            server.request_check()
        elif isinstance(error, (NotPrimaryError, OperationFailure)):
            # A "not primary" or "node is recovering" error keeps the pool
            # unless the server is shutting down or older than 4.2. Either
            # way the server is marked Unknown and checked immediately.
            err_code = error.code
            if err_code is None and isinstance(error, NotPrimaryError):
                err_code = 10107
            if err_code in helpers._NOT_PRIMARY_CODES:
                is_shutting_down = err_code in helpers._SHUTDOWN_CODES
                self._process_change(ServerDescription(address, error=error))
                if is_shutting_down or (err_ctx.max_wire_version <= 7):
                    # Clear the pool.
                    server.reset()
                server.request_check()
            elif not err_ctx.completed_handshake:
                # Unknown command error during the connection handshake.
                self._process_change(ServerDescription(address, error=error))
                # Clear the pool.
                server.reset()
        elif isinstance(error, ConnectionFailure):
            # Mark the server Unknown, clear the pool, and close the current
            # monitoring connection before checking again.
            self._process_change(ServerDescription(address, error=error))
            server.reset()
            server._monitor.cancel_check()
            server.request_check()

    def handle_error(self, address: _Address, err_ctx: _ErrorContext) -> None:
        """Handle an application error.

        May reset the server to Unknown, clear the pool, and request an
        immediate check depending on the error and the context.
        """
        with self._lock:
            if self._opened:
                self._handle_error(address, err_ctx)
        self._process_events()

    def _request_check_all(self) -> None:
        """Wake all monitors. Hold the lock when calling this."""
        for server in self._servers.values():
            server.request_check()

    def _update_servers(self) -> None:
        """Sync our Servers from TopologyDescription.server_descriptions.

        Hold the lock while calling this.
        """
        for address, sd in self._description.server_descriptions().items():
            if address not in self._servers:
                if self._scanner is not None:
                    monitor: Any = self._scanner.create_monitor(sd)
                else:
                    monitor = self._settings.monitor_class(
                        server_description=sd,
                        topology=self,
                        pool=self._create_pool_for_monitor(address),
                        topology_settings=self._settings,
                    )

                weak = None
                if self._publish_server and self._events is not None:
                    weak = weakref.ref(self._events)
                server = Server(
                    server_description=sd,
                    pool=self._create_pool_for_server(address),
                    monitor=monitor,
                    topology_id=self._topology_id,
                    listeners=self._listeners,
                    events=weak,
                )

                self._servers[address] = server
                if self._publish_server:
                    assert self._events is not None
                    self._events.put(
                        (self._listeners.publish_server_opened, (address, self._topology_id))
                    )
                _debug_log(
                    _SDAM_LOGGER,
                    message=_SDAMStatusMessage.START_SERVER,
                    topologyId=self._topology_id,
                    serverHost=address[0],
                    serverPort=address[1],
                )
                server.open()
            else:
                # Cache old is_writable value.
                was_writable = self._servers[address].description.is_writable
                # Update server description.
                self._servers[address].description = sd
                # Update is_writable value of the pool, if it changed.
                if was_writable != sd.is_writable:
                    self._servers[address].pool.update_is_writable(sd.is_writable)

        for address, server in list(self._servers.items()):
            if not self._description.has_server(address):
                server.close()
                self._servers.pop(address)

    def _create_pool_for_server(self, address: _Address) -> Pool:
        return self._settings.pool_class(
            address, self._settings.pool_options, client_id=self._topology_id
        )

    def _create_pool_for_monitor(self, address: _Address) -> Pool:
        options = self._settings.pool_options

        # Monitors use connect_timeout for both connect_timeout and
        # socket_timeout. The pool only has one socket so maxPoolSize and so
        # on aren't needed.
        monitor_pool_options = PoolOptions(
            connect_timeout=options.connect_timeout,
            socket_timeout=options.connect_timeout,
            event_listeners=options._event_listeners,
            appname=options.appname,
        )

        return self._settings.pool_class(
            address, monitor_pool_options, handshake=False, client_id=self._topology_id
        )

    def _process_events(self) -> None:
        process_events_queue(self._events)

    def _error_message(self, selector: Any) -> str:
        """Format an error message if server selection fails.

        Hold the lock when calling this.
        """
        is_replica_set = self._description.topology_type in (
            TOPOLOGY_TYPE.ReplicaSetWithPrimary,
            TOPOLOGY_TYPE.ReplicaSetNoPrimary,
        )

        if is_replica_set:
            server_plural = "replica set members"
        elif self._description.topology_type == TOPOLOGY_TYPE.Sharded:
            server_plural = "mongoses"
        else:
            server_plural = "servers"

        if self._description.known_servers:
            # We've connected, but no servers match the selector.
            if selector is writable_server_selector:
                if is_replica_set:
                    return "No primary available for writes"
                else:
                    return "No %s available for writes" % server_plural
            else:
                return f'No {server_plural} match selector "{selector}"'
        else:
            addresses = list(self._description.server_descriptions())
            servers = list(self._description.server_descriptions().values())
            if not servers:
                if is_replica_set:
                    # We removed all servers because of the wrong setName?
                    return 'No {} available for replica set name "{}"'.format(
                        server_plural,
                        self._settings.replica_set_name,
                    )
                else:
                    return "No %s available" % server_plural

            # 1 or more servers, all Unknown. Are they unknown for one reason?
            error = servers[0].error
            same = all(server.error == error for server in servers[1:])
            if same:
                if error is None:
                    # We're still discovering.
                    return "No %s found yet" % server_plural

                if is_replica_set and not set(addresses).intersection(self._seed_addresses):
                    # We replaced our seeds with new hosts but can't reach any.
                    return (
                        "Could not reach any servers in %s. Replica set is"
                        " configured with internal hostnames or IPs?" % addresses
                    )

                return str(error)
            else:
                return ",".join(str(server.error) for server in servers if server.error)

    def __repr__(self) -> str:
        msg = ""
        if not self._opened:
            msg = "CLOSED "
        return f"<{self.__class__.__name__} {msg}{self._description!r}>"

    def eq_props(self) -> tuple[tuple[_Address, ...], Optional[str], Optional[str]]:
        """The properties to use for Cluster/Topology equality checks."""
        ts = self._settings
        return (tuple(sorted(ts.seeds)), ts.replica_set_name, ts.fqdn)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, self.__class__):
            return self.eq_props() == other.eq_props()
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.eq_props())


class _ErrorContext:
    """An error with context for SDAM error handling."""

    def __init__(
        self,
        error: BaseException,
        max_wire_version: int,
        sock_generation: int,
        completed_handshake: bool,
    ):
        self.error = error
        self.max_wire_version = max_wire_version
        self.sock_generation = sock_generation
        self.completed_handshake = completed_handshake
