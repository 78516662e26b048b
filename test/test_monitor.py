# Copyright 2014-present MongoDB, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Test the monitor module and the heartbeats it publishes."""
from __future__ import annotations

import gc
import sys
from functools import partial

sys.path[0:0] = [""]

from test import client_knobs, unittest
from test.mock_server import MockServer
from test.utils import HeartbeatEventListener, MockPool, wait_until

import pytest

from mongo_sdam import Cluster
from mongo_sdam.errors import AutoReconnect, ConnectionFailure, HandshakeError
from mongo_sdam.hello import Hello
from mongo_sdam.monitor import Monitor, _sanitize
from mongo_sdam.monitoring import (
    ServerHeartbeatFailedEvent,
    ServerHeartbeatStartedEvent,
    ServerHeartbeatSucceededEvent,
)
from mongo_sdam.periodic_executor import _EXECUTORS
from mongo_sdam.server_type import SERVER_TYPE
from mongo_sdam.settings import TopologySettings
from mongo_sdam.topology import Topology


def unregistered(ref):
    gc.collect()
    return ref not in _EXECUTORS


def get_executors(cluster):
    executors = []
    for server in cluster._topology._servers.values():
        executors.append(server._monitor._executor)
    executors.append(cluster._maintenance_executor)
    return [e for e in executors if e is not None]


def server_type(cluster, address):
    return cluster.topology_description.server_descriptions()[address].server_type


@pytest.mark.mock_server
class TestMonitor(unittest.TestCase):
    def setUp(self):
        self.server = MockServer().start()
        self.listener = HeartbeatEventListener()

    def tearDown(self):
        self.server.stop()

    def create_cluster(self, **kwargs):
        with client_knobs(heartbeat_frequency=0.1, min_heartbeat_interval=0.1):
            cluster = Cluster(
                self.server.address_string, event_listeners=[self.listener], **kwargs
            )
        self.addCleanup(cluster.close)
        return cluster

    def test_heartbeat_events(self):
        self.create_cluster()
        self.listener.wait_for_event(ServerHeartbeatSucceededEvent, 2)

        started = self.listener.events_by_type(ServerHeartbeatStartedEvent)
        succeeded = self.listener.events_by_type(ServerHeartbeatSucceededEvent)
        self.assertIsInstance(self.listener.events[0], ServerHeartbeatStartedEvent)
        self.assertEqual(self.server.address, started[0].connection_id)
        self.assertEqual(self.server.address, succeeded[0].connection_id)
        self.assertIsInstance(succeeded[0].reply, Hello)
        self.assertGreaterEqual(succeeded[0].duration, 0)
        self.assertFalse(self.listener.events_by_type(ServerHeartbeatFailedEvent))

    def test_discovers_standalone(self):
        cluster = self.create_cluster()
        wait_until(
            lambda: server_type(cluster, self.server.address) == SERVER_TYPE.Standalone,
            "discover the standalone",
        )
        sd = cluster.topology_description.server_descriptions()[self.server.address]
        self.assertIsNotNone(sd.round_trip_time)
        self.assertEqual(17, sd.max_wire_version)

    def test_heartbeat_failure(self):
        cluster = self.create_cluster()
        wait_until(
            lambda: server_type(cluster, self.server.address) == SERVER_TYPE.Standalone,
            "discover the standalone",
        )
        pool = cluster._topology.get_server_by_address(self.server.address).pool
        generation = pool.gen.get()

        self.server.stop()
        self.listener.wait_for_event(ServerHeartbeatFailedEvent, 1)
        failed = self.listener.events_by_type(ServerHeartbeatFailedEvent)[0]
        self.assertIsInstance(failed.reply, ConnectionFailure)

        wait_until(
            lambda: server_type(cluster, self.server.address) == SERVER_TYPE.Unknown,
            "mark the server Unknown",
        )
        sd = cluster.topology_description.server_descriptions()[self.server.address]
        self.assertIsInstance(sd.error, AutoReconnect)
        self.assertIsNone(sd.round_trip_time)
        # A failed check clears the application pool.
        self.assertGreater(pool.gen.get(), generation)

    def test_failed_reply(self):
        self.server.set_reply("hello", {"ok": 0, "errmsg": "not ready", "code": 2})
        cluster = self.create_cluster()
        self.listener.wait_for_event(ServerHeartbeatFailedEvent, 1)
        sd = cluster.topology_description.server_descriptions()[self.server.address]
        self.assertEqual(SERVER_TYPE.Unknown, sd.server_type)

    def test_cancel_check_closes_connection(self):
        with client_knobs(heartbeat_frequency=999999, min_heartbeat_interval=0.1):
            cluster = Cluster(self.server.address_string, event_listeners=[self.listener])
        self.addCleanup(cluster.close)
        self.listener.wait_for_event(ServerHeartbeatSucceededEvent, 1)
        monitor = cluster._topology.get_server_by_address(self.server.address)._monitor
        wait_until(lambda: len(monitor._pool.conns) == 1, "check in the monitor connection")
        conn = monitor._pool.conns[0]
        generation = monitor._pool.gen.get()

        monitor.cancel_check()
        self.assertTrue(conn.closed)

        # The next check starts from a fresh connection.
        monitor.request_check()
        self.listener.wait_for_event(ServerHeartbeatSucceededEvent, 2)
        self.assertGreater(monitor._pool.gen.get(), generation)

    def test_cleanup_executors_on_cluster_close(self):
        cluster = self.create_cluster()
        executors = get_executors(cluster)
        self.assertEqual(len(executors), 2)

        cluster.close()

        for executor in executors:
            wait_until(lambda: executor._stopped, f"closed executor: {executor._name}", timeout=5)

    def test_cleanup_executors_on_cluster_del(self):
        with client_knobs(heartbeat_frequency=0.1, min_heartbeat_interval=0.1):
            cluster = Cluster(self.server.address_string)
        executors = get_executors(cluster)
        self.assertEqual(len(executors), 2)

        # Each executor stores a weakref to itself in _EXECUTORS.
        executor_refs = [(r, r()._name) for r in _EXECUTORS.copy() if r() in executors]

        del executors
        del cluster

        for ref, name in executor_refs:
            wait_until(partial(unregistered, ref), f"unregister executor: {name}", timeout=5)


class TestMonitorErrors(unittest.TestCase):
    def test_sanitize(self):
        error = AutoReconnect("closed")
        self.assertIs(error, _sanitize(error))
        wrapped = _sanitize(ValueError("boom"))
        self.assertIsInstance(wrapped, HandshakeError)
        self.assertEqual("ValueError: boom", str(wrapped))

    def test_unexpected_error_becomes_unknown(self):
        class ErrorMonitor(Monitor):
            def _check_once(self):
                self._heartbeat_started()
                raise ValueError("unexpected")

        settings = TopologySettings(
            seeds=[("a", 27017)],
            pool_class=MockPool,
            monitor_class=ErrorMonitor,
            heartbeat_frequency=999999,
        )
        topology = Topology(settings)
        self.addCleanup(topology.close)
        topology.open()

        def has_error():
            sd = topology.description.server_descriptions()[("a", 27017)]
            return sd.error is not None

        wait_until(has_error, "record the monitor error")
        sd = topology.description.server_descriptions()[("a", 27017)]
        self.assertIsInstance(sd.error, HandshakeError)
        self.assertIn("ValueError: unexpected", str(sd.error))
        self.assertEqual(SERVER_TYPE.Unknown, sd.server_type)


if __name__ == "__main__":
    unittest.main()
