# Copyright 2024-present MongoDB, Inc.
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

"""Test single-threaded monitoring, where selecting threads scan servers."""
from __future__ import annotations

import socket
import sys
import time
from unittest import mock

sys.path[0:0] = [""]

from test import unittest
from test.mock_server import STANDALONE, MockServer
from test.utils import HeartbeatEventListener

import pytest

from mongo_sdam import Cluster
from mongo_sdam.errors import (
    AutoReconnect,
    HandshakeError,
    NetworkTimeout,
    ServerSelectionTimeoutError,
)
from mongo_sdam.monitoring import ServerHeartbeatStartedEvent, ServerHeartbeatSucceededEvent
from mongo_sdam.read_preferences import ReadPreference
from mongo_sdam.scanner import TopologyScanner, _ScannerMonitor
from mongo_sdam.server_type import SERVER_TYPE

pytestmark = pytest.mark.mock_server


def rs_hello(primary, hosts):
    doc = dict(STANDALONE)
    doc.update(
        {
            "isWritablePrimary": primary,
            "ismaster": primary,
            "secondary": not primary,
            "setName": "rs",
            "hosts": hosts,
        }
    )
    return doc


class TestScanner(unittest.TestCase):
    def setUp(self):
        self.server = MockServer().start()
        self.addCleanup(self.server.stop)

    def create_cluster(self, *servers, **kwargs):
        kwargs.setdefault("monitoringMode", "single_threaded")
        hosts = [s.address_string for s in servers or [self.server]]
        cluster = Cluster(hosts, **kwargs)
        self.addCleanup(cluster.close)
        return cluster

    def sd(self, cluster, address=None):
        address = address or self.server.address
        return cluster.topology_description.server_descriptions()[address]

    def test_no_background_threads(self):
        cluster = self.create_cluster()
        self.assertIsNone(cluster._maintenance_executor)
        scanner = cluster._topology._scanner
        self.assertIsInstance(scanner, TopologyScanner)
        server = cluster._topology.get_server_by_address(self.server.address)
        self.assertIsInstance(server._monitor, _ScannerMonitor)
        # Nothing is checked until a thread selects a server.
        time.sleep(0.2)
        self.assertEqual([], self.server.requests)
        self.assertEqual(SERVER_TYPE.Unknown, self.sd(cluster).server_type)

    def test_select_server_scans(self):
        cluster = self.create_cluster()
        self.assertEqual(self.server.address, cluster.select_server())
        sd = self.sd(cluster)
        self.assertEqual(SERVER_TYPE.Standalone, sd.server_type)
        self.assertIsNotNone(sd.round_trip_time)
        self.assertEqual(["ismaster"], self.server.command_names())
        # The first check carries the handshake metadata.
        self.assertIn("client", self.server.requests[0])
        self.assertTrue(self.server.requests[0]["helloOk"])

    def test_connection_reused_between_scans(self):
        cluster = self.create_cluster(heartbeatFrequencyMS=500)
        cluster.select_server()
        cluster._topology.request_check_all()
        self.assertEqual(["ismaster", "hello"], self.server.command_names())
        self.assertNotIn("client", self.server.requests[1])
        self.assertEqual(1, self.server.connection_count)

    def test_stale_and_due(self):
        cluster = self.create_cluster(heartbeatFrequencyMS=60000)
        scanner = cluster._topology._scanner
        self.assertTrue(scanner.stale())
        self.assertIsNone(scanner.last_scan)
        cluster.select_server()
        self.assertFalse(scanner.stale())
        self.assertIsNotNone(scanner.last_scan)
        self.assertFalse(scanner.has_due())

        # Selecting again within heartbeatFrequencyMS does not scan.
        cluster.select_server()
        self.assertEqual(1, len(self.server.requests))

        scanner.request_check_all()
        self.assertTrue(scanner.has_due())

    def test_heartbeat_events(self):
        listener = HeartbeatEventListener()
        cluster = self.create_cluster(event_listeners=[listener])
        cluster.select_server()
        self.assertEqual(
            [ServerHeartbeatStartedEvent, ServerHeartbeatSucceededEvent],
            [type(e) for e in listener.events],
        )
        self.assertEqual(self.server.address, listener.events[1].connection_id)

    def test_try_once_fails_fast(self):
        address = self.server.address_string
        self.server.stop()
        cluster = Cluster(address, monitoringMode="single_threaded")
        self.addCleanup(cluster.close)
        self.assertTrue(cluster._topology_settings.server_selection_try_once)

        start = time.monotonic()
        with self.assertRaises(ServerSelectionTimeoutError):
            cluster.select_server()
        self.assertLess(time.monotonic() - start, 10)

    def test_hangup_marks_unknown(self):
        self.server.set_reply("hello", None)
        cluster = self.create_cluster(serverSelectionTimeoutMS=2000)
        self.assertRaises(ServerSelectionTimeoutError, cluster.select_server)
        sd = self.sd(cluster)
        self.assertEqual(SERVER_TYPE.Unknown, sd.server_type)
        self.assertIsInstance(sd.error, AutoReconnect)

    def test_check_timeout(self):
        self.server.delay = 2
        cluster = self.create_cluster(connectTimeoutMS=200)
        start = time.monotonic()
        self.assertRaises(ServerSelectionTimeoutError, cluster.select_server)
        self.assertLess(time.monotonic() - start, 2)
        self.assertIsInstance(self.sd(cluster).error, NetworkTimeout)

    def test_bad_hello_marks_unknown(self):
        # A reply that fails to parse is a failed check, not an error out of
        # server selection.
        self.server.hello = dict(STANDALONE, hosts=["a:notaport"])
        cluster = self.create_cluster()
        self.assertRaises(ServerSelectionTimeoutError, cluster.select_server)
        sd = self.sd(cluster)
        self.assertEqual(SERVER_TYPE.Unknown, sd.server_type)
        self.assertIsInstance(sd.error, HandshakeError)
        self.assertIn("ValueError", str(sd.error))

    def test_tries_each_resolved_address(self):
        unused = socket.socket()
        unused.bind(("127.0.0.1", 0))
        closed_port = unused.getsockname()[1]
        unused.close()
        resolved = socket.getaddrinfo(
            "localhost", self.server.address[1], socket.AF_INET, socket.SOCK_STREAM
        )
        refused = (socket.AF_INET, socket.SOCK_STREAM, 6, "", ("127.0.0.1", closed_port))

        cluster = self.create_cluster()
        with mock.patch.object(socket, "getaddrinfo", return_value=[refused, *resolved]):
            self.assertEqual(self.server.address, cluster.select_server())
        self.assertEqual(SERVER_TYPE.Standalone, self.sd(cluster).server_type)
        self.assertEqual(1, self.server.connection_count)

    def test_without_try_once(self):
        self.server.set_reply("hello", None)
        cluster = self.create_cluster(serverSelectionTryOnce=False, serverSelectionTimeoutMS=1000)
        start = time.monotonic()
        self.assertRaises(ServerSelectionTimeoutError, cluster.select_server)
        self.assertGreaterEqual(time.monotonic() - start, 0.9)
        # Rescans at most once per minHeartbeatFrequencyMS.
        self.assertGreater(len(self.server.requests), 1)
        self.assertLess(len(self.server.requests), 30)


class TestScannerReplicaSet(unittest.TestCase):
    def setUp(self):
        self.primary = MockServer().start()
        self.secondary = MockServer().start()
        self.addCleanup(self.primary.stop)
        self.addCleanup(self.secondary.stop)
        hosts = [self.primary.address_string, self.secondary.address_string]
        self.primary.hello = rs_hello(True, hosts)
        self.secondary.hello = rs_hello(False, hosts)

    def test_discovers_members_in_one_scan(self):
        # Seed only the primary. The secondary it reports is checked in the
        # same scan.
        cluster = Cluster(
            self.primary.address_string, replicaSet="rs", monitoringMode="single_threaded"
        )
        self.addCleanup(cluster.close)
        address = cluster.select_server(ReadPreference.SECONDARY)
        self.assertEqual(self.secondary.address, address)
        self.assertEqual(self.primary.address, cluster.primary)
        self.assertEqual({self.secondary.address}, cluster.secondaries)
        self.assertEqual(1, len(self.secondary.requests))

    def test_select_writable_server(self):
        cluster = Cluster(
            [self.primary.address_string, self.secondary.address_string],
            replicaSet="rs",
            monitoringMode="single_threaded",
        )
        self.addCleanup(cluster.close)
        self.assertEqual(self.primary.address, cluster.select_writable_server())
        self.assertEqual(
            "ReplicaSetWithPrimary", cluster.topology_description.topology_type_name
        )


if __name__ == "__main__":
    unittest.main()
