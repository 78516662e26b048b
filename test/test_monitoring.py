# Copyright 2015-present MongoDB, Inc.
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

"""Test the monitoring module: listener registration and event publishing."""
from __future__ import annotations

import contextlib
import io
import sys

sys.path[0:0] = [""]

from test import unittest
from test.utils import (
    CMAPListener,
    DummyMonitor,
    HeartbeatEventListener,
    MockPool,
    ServerAndTopologyEventListener,
)

from mongo_sdam import monitoring
from mongo_sdam.errors import AutoReconnect
from mongo_sdam.hello import Hello
from mongo_sdam.monitoring import (
    ConnectionCheckOutFailedEvent,
    ConnectionClosedEvent,
    PoolCreatedEvent,
    ServerClosedEvent,
    ServerDescriptionChangedEvent,
    ServerHeartbeatFailedEvent,
    ServerHeartbeatStartedEvent,
    ServerHeartbeatSucceededEvent,
    ServerOpeningEvent,
    TopologyClosedEvent,
    TopologyDescriptionChangedEvent,
    TopologyOpenedEvent,
    _EventListeners,
)
from mongo_sdam.pool import PoolOptions
from mongo_sdam.server_description import ServerDescription
from mongo_sdam.settings import TopologySettings
from mongo_sdam.topology import Topology

ADDRESS = ("a", 27017)


class TestEventListeners(unittest.TestCase):
    def test_listeners_by_kind(self):
        heartbeat = HeartbeatEventListener()
        cmap = CMAPListener()
        both = ServerAndTopologyEventListener()
        listeners = _EventListeners([heartbeat, cmap, both])
        self.assertTrue(listeners.enabled_for_server_heartbeat)
        self.assertTrue(listeners.enabled_for_cmap)
        self.assertTrue(listeners.enabled_for_server)
        self.assertTrue(listeners.enabled_for_topology)
        self.assertEqual([heartbeat, both, both, cmap], listeners.event_listeners())

    def test_no_listeners(self):
        listeners = _EventListeners(None)
        self.assertFalse(listeners.enabled_for_server_heartbeat)
        self.assertFalse(listeners.enabled_for_cmap)
        self.assertFalse(listeners.enabled_for_server)
        self.assertFalse(listeners.enabled_for_topology)

    def test_register(self):
        saved = [lst[:] for lst in monitoring._LISTENERS]

        def restore():
            for current, old in zip(monitoring._LISTENERS, saved):
                current[:] = old

        self.addCleanup(restore)
        listener = HeartbeatEventListener()
        monitoring.register(listener)
        self.assertIn(listener, monitoring._LISTENERS.server_heartbeat_listeners)
        # Global listeners are included by default.
        listeners = _EventListeners([])
        self.assertTrue(listeners.enabled_for_server_heartbeat)
        listeners.publish_server_heartbeat_started(ADDRESS)
        self.assertEqual(1, len(listener.events))

    def test_register_invalid(self):
        self.assertRaises(TypeError, monitoring.register, object())

    def test_validate(self):
        listener = HeartbeatEventListener()
        self.assertEqual([listener], monitoring._validate_event_listeners("x", [listener]))
        self.assertRaises(TypeError, monitoring._validate_event_listeners, "x", listener)
        self.assertRaises(TypeError, monitoring._validate_event_listeners, "x", [object()])

    def test_listener_error_is_printed(self):
        class BadListener(monitoring.ServerHeartbeatListener):
            def started(self, event):
                raise ValueError("listener failed")

        good = HeartbeatEventListener()
        listeners = _EventListeners([BadListener(), good])
        stderr = io.StringIO()
        with contextlib.redirect_stderr(stderr):
            listeners.publish_server_heartbeat_started(ADDRESS)
        self.assertIn("listener failed", stderr.getvalue())
        # Later listeners still get the event.
        self.assertEqual(1, len(good.events))

    def test_publish_heartbeats(self):
        listener = HeartbeatEventListener()
        listeners = _EventListeners([listener])
        reply = Hello({"ok": 1})
        error = AutoReconnect("closed")
        listeners.publish_server_heartbeat_started(ADDRESS)
        listeners.publish_server_heartbeat_succeeded(ADDRESS, 0.5, reply)
        listeners.publish_server_heartbeat_failed(ADDRESS, 1.5, error)
        started, succeeded, failed = listener.events
        self.assertIsInstance(started, ServerHeartbeatStartedEvent)
        self.assertEqual(ADDRESS, succeeded.connection_id)
        self.assertEqual(0.5, succeeded.duration)
        self.assertIs(reply, succeeded.reply)
        self.assertIsInstance(failed, ServerHeartbeatFailedEvent)
        self.assertIs(error, failed.reply)
        self.assertEqual(1.5, failed.duration)

    def test_publish_cmap(self):
        listener = CMAPListener()
        listeners = _EventListeners([listener])
        listeners.publish_pool_created(ADDRESS, {"maxPoolSize": 5})
        listeners.publish_connection_closed(ADDRESS, 1, monitoring.ConnectionClosedReason.IDLE)
        listeners.publish_connection_check_out_failed(
            ADDRESS, monitoring.ConnectionCheckOutFailedReason.TIMEOUT
        )
        created, closed, failed = listener.events
        self.assertEqual({"maxPoolSize": 5}, created.options)
        self.assertEqual("idle", closed.reason)
        self.assertEqual(1, closed.connection_id)
        self.assertEqual("timeout", failed.reason)


class TestEventRepr(unittest.TestCase):
    def test_pool_events(self):
        self.assertEqual(
            "PoolCreatedEvent(('a', 27017), {'maxPoolSize': 5})",
            repr(PoolCreatedEvent(ADDRESS, {"maxPoolSize": 5})),
        )
        self.assertEqual(
            "ConnectionClosedEvent(('a', 27017), 1, 'stale')",
            repr(ConnectionClosedEvent(ADDRESS, 1, "stale")),
        )
        self.assertEqual(
            "ConnectionCheckOutFailedEvent(('a', 27017), 'poolClosed')",
            repr(ConnectionCheckOutFailedEvent(ADDRESS, "poolClosed")),
        )

    def test_heartbeat_events(self):
        self.assertEqual(
            "<ServerHeartbeatStartedEvent ('a', 27017)>",
            repr(ServerHeartbeatStartedEvent(ADDRESS)),
        )
        self.assertEqual(
            "<ServerHeartbeatFailedEvent ('a', 27017) duration: 1, reply: AutoReconnect('x')>",
            repr(ServerHeartbeatFailedEvent(1, AutoReconnect("x"), ADDRESS)),
        )

    def test_topology_events(self):
        self.assertEqual(
            "<TopologyOpenedEvent topology_id: 1>", repr(TopologyOpenedEvent(1))
        )
        event = ServerDescriptionChangedEvent(
            ServerDescription(ADDRESS), ServerDescription(ADDRESS), ADDRESS, 1
        )
        self.assertTrue(repr(event).startswith("<ServerDescriptionChangedEvent ('a', 27017)"))


class TestTopologyLifecycleEvents(unittest.TestCase):
    def test_open_and_close(self):
        listener = ServerAndTopologyEventListener()
        settings = TopologySettings(
            seeds=[ADDRESS],
            pool_class=MockPool,
            monitor_class=DummyMonitor,
            pool_options=PoolOptions(event_listeners=_EventListeners([listener])),
        )
        topology = Topology(settings)
        topology.open()
        topology.close()

        types = [type(e) for e in listener.results]
        self.assertEqual(TopologyOpenedEvent, types[0])
        self.assertIn(ServerOpeningEvent, types)
        self.assertIn(TopologyDescriptionChangedEvent, types)
        self.assertEqual(ServerClosedEvent, types[-2])
        self.assertEqual(TopologyClosedEvent, types[-1])
        for event in listener.results:
            self.assertEqual(settings.get_topology_id(), event.topology_id)


if __name__ == "__main__":
    unittest.main()
