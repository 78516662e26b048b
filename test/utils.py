# Copyright 2012-present MongoDB, Inc.
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

"""Utilities for testing mongo_sdam without a real deployment."""
from __future__ import annotations

import contextlib
import random
import threading
import time
from collections import defaultdict

from mongo_sdam import monitoring
from mongo_sdam.pool import CancellationContext, _PoolGeneration


def wait_until(predicate, success_description, timeout=10):
    """Wait up to 10 seconds (by default) for predicate to be true.

    E.g.:

        wait_until(lambda: cluster.primary == ('a', 1),
                   'connect to the primary')

    If the lambda-expression isn't true after 10 seconds, we raise
    AssertionError("Didn't ever connect to the primary").

    Returns the predicate's first true value.
    """
    start = time.time()
    interval = min(float(timeout) / 100, 0.1)
    while True:
        retval = predicate()
        if retval:
            return retval

        if time.time() - start > timeout:
            raise AssertionError("Didn't ever %s" % success_description)

        time.sleep(interval)


class MockConnection:
    def __init__(self):
        self.cancel_context = CancellationContext()
        self.id = random.randint(0, 100)
        self.server_connection_id = random.randint(0, 100)
        self.max_wire_version = 17
        self.closed = False

    def close_conn(self, reason):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        pass


class MockPool:
    def __init__(self, address, options, handshake=True, client_id=None):
        self.address = address
        self.gen = _PoolGeneration()
        self._lock = threading.Lock()
        self.opts = options
        self.handshake = handshake
        self.is_writable = None
        self.closed = False

    def stale_generation(self, gen):
        return self.gen.stale(gen)

    @contextlib.contextmanager
    def checkout(self, handler=None, cancel_context=None):
        yield MockConnection()

    def checkin(self, *args, **kwargs):
        pass

    def _reset(self):
        with self._lock:
            self.gen.inc()

    def reset(self):
        self._reset()

    def close(self):
        self._reset()
        self.closed = True

    def update_is_writable(self, is_writable):
        self.is_writable = is_writable

    def remove_stale_sockets(self, *args, **kwargs):
        pass


class DummyMonitor:
    def __init__(self, server_description, topology, pool, topology_settings):
        self._server_description = server_description
        self.opened = False
        self.check_requests = 0
        self.cancelled = 0

    def cancel_check(self):
        self.cancelled += 1

    def join(self, timeout=None):
        pass

    def open(self):
        self.opened = True

    def request_check(self):
        self.check_requests += 1

    def close(self):
        self.opened = False


class BaseListener:
    def __init__(self):
        self.events = []

    def reset(self):
        self.events = []

    def add_event(self, event):
        self.events.append(event)

    def event_count(self, event_type):
        return len(self.events_by_type(event_type))

    def events_by_type(self, event_type):
        """Return the matching events by event class.

        event_type can be a single class or a tuple of classes.
        """
        return self.matching(lambda e: isinstance(e, event_type))

    def matching(self, matcher):
        """Return the matching events."""
        return [event for event in self.events[:] if matcher(event)]

    def wait_for_event(self, event, count):
        """Wait for a number of events to be published, or fail."""
        wait_until(lambda: self.event_count(event) >= count, f"find {count} {event} event(s)")


class CMAPListener(BaseListener, monitoring.ConnectionPoolListener):
    def connection_created(self, event):
        assert isinstance(event, monitoring.ConnectionCreatedEvent)
        self.add_event(event)

    def connection_closed(self, event):
        assert isinstance(event, monitoring.ConnectionClosedEvent)
        self.add_event(event)

    def connection_check_out_started(self, event):
        assert isinstance(event, monitoring.ConnectionCheckOutStartedEvent)
        self.add_event(event)

    def connection_check_out_failed(self, event):
        assert isinstance(event, monitoring.ConnectionCheckOutFailedEvent)
        self.add_event(event)

    def connection_checked_out(self, event):
        assert isinstance(event, monitoring.ConnectionCheckedOutEvent)
        self.add_event(event)

    def connection_checked_in(self, event):
        assert isinstance(event, monitoring.ConnectionCheckedInEvent)
        self.add_event(event)

    def pool_created(self, event):
        assert isinstance(event, monitoring.PoolCreatedEvent)
        self.add_event(event)

    def pool_cleared(self, event):
        assert isinstance(event, monitoring.PoolClearedEvent)
        self.add_event(event)

    def pool_closed(self, event):
        assert isinstance(event, monitoring.PoolClosedEvent)
        self.add_event(event)


class TopologyEventListener(monitoring.TopologyListener):
    def __init__(self):
        self.results = defaultdict(list)

    def closed(self, event):
        self.results["closed"].append(event)

    def description_changed(self, event):
        self.results["description_changed"].append(event)

    def opened(self, event):
        self.results["opened"].append(event)

    def reset(self):
        """Reset the state of this listener."""
        self.results.clear()


class _ServerEventListener:
    """Listens to all events."""

    def __init__(self):
        self.results = []

    def opened(self, event):
        self.results.append(event)

    def description_changed(self, event):
        self.results.append(event)

    def closed(self, event):
        self.results.append(event)

    def matching(self, matcher):
        """Return the matching events."""
        results = self.results[:]
        return [event for event in results if matcher(event)]

    def reset(self):
        self.results = []


class ServerEventListener(_ServerEventListener, monitoring.ServerListener):
    """Listens to Server events."""


class ServerAndTopologyEventListener(  # type: ignore[misc]
    ServerEventListener, monitoring.TopologyListener
):
    """Listens to Server and Topology events."""


class HeartbeatEventListener(BaseListener, monitoring.ServerHeartbeatListener):
    """Listens to only server heartbeat events."""

    def started(self, event):
        self.add_event(event)

    def succeeded(self, event):
        self.add_event(event)

    def failed(self, event):
        self.add_event(event)
