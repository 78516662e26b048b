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

"""Threaded server monitoring, and the heartbeat reporting both monitoring
modes share.
"""
from __future__ import annotations

import atexit
import time
import weakref
from typing import TYPE_CHECKING, Any, Optional

from mongo_sdam import common, periodic_executor
from mongo_sdam.errors import HandshakeError, MongoSdamError
from mongo_sdam.logger import _SDAM_LOGGER, _debug_log, _SDAMStatusMessage
from mongo_sdam.periodic_executor import _shutdown_executors
from mongo_sdam.read_preferences import MovingAverage
from mongo_sdam.server_description import ServerDescription

if TYPE_CHECKING:
    from mongo_sdam.hello import Hello
    from mongo_sdam.pool import CancellationContext, Connection, Pool
    from mongo_sdam.settings import TopologySettings
    from mongo_sdam.topology import Topology


def _sanitize(error: Exception) -> Exception:
    """Wrap errors raised outside this package in HandshakeError."""
    if isinstance(error, MongoSdamError):
        return error
    return HandshakeError(f"{type(error).__name__}: {error}")


class MonitorBase:
    """Turns the outcome of a hello check into a ServerDescription.

    Publishes the heartbeat events and logs, keeps the round trip time
    average and reports to the topology. The threaded :class:`Monitor` and
    the single-threaded scanner both build on it.
    """

    def __init__(
        self,
        server_description: ServerDescription,
        topology: Topology,
        topology_settings: TopologySettings,
    ):
        self._server_description = server_description
        self._settings = topology_settings
        self._topology_id = topology_settings.get_topology_id()
        self._listeners = topology_settings.pool_options._event_listeners
        self._publish = bool(
            self._listeners is not None and self._listeners.enabled_for_server_heartbeat
        )
        self._avg_round_trip_time = MovingAverage()
        # The topology owns its monitors.
        self._topology = weakref.proxy(topology)

    @property
    def description(self) -> ServerDescription:
        """The last ServerDescription this monitor reported."""
        return self._server_description

    def _log_heartbeat(
        self, message: _SDAMStatusMessage, conn_id: Optional[int], **fields: Any
    ) -> None:
        host, port = self._server_description.address
        _debug_log(
            _SDAM_LOGGER,
            message=message,
            topologyId=self._topology_id,
            driverConnectionId=conn_id,
            serverHost=host,
            serverPort=port,
            awaited=False,
            **fields,
        )

    def _heartbeat_started(self) -> None:
        if self._publish:
            assert self._listeners is not None
            self._listeners.publish_server_heartbeat_started(self._server_description.address)

    def _log_heartbeat_started(self, conn_id: Optional[int], server_conn_id: Any = None) -> None:
        self._log_heartbeat(
            _SDAMStatusMessage.HEARTBEAT_START, conn_id, serverConnectionId=server_conn_id
        )

    def _heartbeat_succeeded(
        self,
        response: Hello,
        round_trip_time: float,
        conn_id: Optional[int] = None,
    ) -> ServerDescription:
        """Publish a successful check and return the server's new description."""
        address = self._server_description.address
        self._avg_round_trip_time.add_sample(round_trip_time)
        description = ServerDescription(
            address, hello=response, round_trip_time=self._avg_round_trip_time.get()
        )
        if self._publish:
            assert self._listeners is not None
            self._listeners.publish_server_heartbeat_succeeded(
                address, round_trip_time, response
            )
        self._log_heartbeat(
            _SDAMStatusMessage.HEARTBEAT_SUCCESS,
            conn_id,
            serverConnectionId=response.connection_id,
            durationMS=round_trip_time,
            reply=response.document,
        )
        return description

    def _heartbeat_failed(
        self, error: Exception, duration: float, conn_id: Optional[int] = None
    ) -> ServerDescription:
        """Publish a failed check and return an Unknown description with the error."""
        error = _sanitize(error)
        address = self._server_description.address
        if self._publish:
            assert self._listeners is not None
            self._listeners.publish_server_heartbeat_failed(address, duration, error)
        self._log_heartbeat(
            _SDAMStatusMessage.HEARTBEAT_FAIL, conn_id, durationMS=duration, failure=error
        )
        self._avg_round_trip_time.reset()
        return ServerDescription(address, error=error)

    def _report(self, server_description: ServerDescription) -> None:
        """Hand a new description to the topology, which clears the server's
        pool when the check failed.
        """
        self._server_description = server_description
        self._topology.on_change(
            server_description, reset_pool=server_description.error is not None
        )


class Monitor(MonitorBase):
    """Checks one server with hello on a background thread.

    :param server_description: the server's initial description
    :param topology: the Topology to report to, weakly referenced
    :param pool: a pool used by this monitor alone, without handshake
    :param topology_settings: a TopologySettings
    """

    def __init__(
        self,
        server_description: ServerDescription,
        topology: Topology,
        pool: Pool,
        topology_settings: TopologySettings,
    ):
        super().__init__(server_description, topology, topology_settings)
        self._pool = pool
        self._conn_id: Optional[int] = None
        self._cancel_context: Optional[CancellationContext] = None

        # The executor holds only a weak reference to the monitor and stops
        # once the monitor is collected.
        def target() -> bool:
            monitor = self_ref()
            if monitor is None:
                return False
            monitor._run()
            return True

        self._executor = periodic_executor.PeriodicExecutor(
            interval=topology_settings.heartbeat_frequency,
            min_interval=common.MIN_HEARTBEAT_INTERVAL,
            target=target,
            name="mongo_sdam_server_monitor_thread",
        )

        def on_topology_gc(_: Any = None) -> None:
            # Don't make the collector wait for a hello in flight.
            monitor = self_ref()
            if monitor is not None:
                monitor.gc_safe_close()

        self_ref = weakref.ref(self, self._executor.close)
        self._topology = weakref.proxy(topology, on_topology_gc)
        _register(self)

    def open(self) -> None:
        """Start the thread, or restart it after a fork. Calling it again has
        no effect.
        """
        self._executor.open()

    def gc_safe_close(self) -> None:
        self._executor.close()
        self.cancel_check()

    def close(self) -> None:
        """Stop the thread and clear the pool. open() restarts it."""
        self.gc_safe_close()
        # A connection checked out by the thread is closed at its checkin.
        self._pool.reset()

    def join(self, timeout: Optional[float] = None) -> None:
        self._executor.join(timeout)

    def request_check(self) -> None:
        """Wake the thread if it is sleeping between checks."""
        self._executor.wake()

    def cancel_check(self) -> None:
        """Interrupt a check in progress by closing its connection."""
        if self._cancel_context is not None:
            self._cancel_context.cancel()

    def _run(self) -> None:
        try:
            self._report(self._check_server())
        except ReferenceError:
            # The topology was collected.
            self.close()

    def _check_server(self) -> ServerDescription:
        """Check the server once. A failure clears the pool and returns an
        Unknown description rather than raising.
        """
        self._conn_id = None
        start = time.monotonic()
        try:
            return self._check_once()
        except ReferenceError:
            raise
        except Exception as error:
            self._pool.reset()
            return self._heartbeat_failed(error, time.monotonic() - start, self._conn_id)

    def _check_once(self) -> ServerDescription:
        self._heartbeat_started()
        if self._cancel_context is not None and self._cancel_context.cancelled:
            self._pool.reset()
        with self._pool.checkout() as conn:
            self._log_heartbeat_started(conn.id, conn.server_connection_id)
            self._watch_cancellation(conn)
            # Kept for the failure log.
            self._conn_id = conn.id
            start = time.monotonic()
            response = conn.hello()
            return self._heartbeat_succeeded(response, time.monotonic() - start, conn.id)

    def _watch_cancellation(self, conn: Connection) -> None:
        if conn.cancel_context is self._cancel_context:
            return
        self._cancel_context = conn.cancel_context
        conn.cancel_context.add_callback(lambda: conn.close_conn(None))


# Monitors still alive, closed at exit before the executor threads are
# joined so no hello keeps a thread busy.
_MONITORS: set[weakref.ReferenceType[Monitor]] = set()


def _register(monitor: Monitor) -> None:
    _MONITORS.add(weakref.ref(monitor, _MONITORS.discard))


def _shutdown_monitors() -> None:
    # Closing a monitor can drop it from the set.
    for ref in list(_MONITORS):
        monitor = ref()
        if monitor is not None:
            monitor.gc_safe_close()


def _shutdown_resources() -> None:
    _shutdown_monitors()
    _shutdown_executors()


atexit.register(_shutdown_resources)
