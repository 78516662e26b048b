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

"""A monitored server: its latest description, its monitor and its pool."""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, ContextManager, Optional

from mongo_sdam.logger import _SDAM_LOGGER, _debug_log, _SDAMStatusMessage

if TYPE_CHECKING:
    from queue import Queue
    from weakref import ReferenceType

    from bson.objectid import ObjectId
    from mongo_sdam.cluster import _ErrorHandler
    from mongo_sdam.monitoring import _EventListeners
    from mongo_sdam.pool import CancellationContext, Connection, Pool
    from mongo_sdam.server_description import ServerDescription


class Server:
    """One server of a topology.

    `monitor` is a threaded :class:`~mongo_sdam.monitor.Monitor` or a handle
    into the single-threaded scanner; both offer open, close and
    request_check. The ServerClosedEvent goes through the topology's event
    queue, which `events` weakly references.
    """

    def __init__(
        self,
        server_description: ServerDescription,
        pool: Pool,
        monitor: Any,
        topology_id: Optional[ObjectId] = None,
        listeners: Optional[_EventListeners] = None,
        events: Optional[ReferenceType[Queue]] = None,
    ) -> None:
        self._description = server_description
        self._pool = pool
        self._monitor = monitor
        self._topology_id = topology_id
        self._listeners = listeners
        self._events: Optional[Queue] = None
        if listeners is not None and listeners.enabled_for_server and events is not None:
            self._events = events()

    @property
    def address(self) -> tuple[str, Optional[int]]:
        return self._description.address

    def open(self) -> None:
        """Start the monitor. Calling it again has no effect."""
        self._monitor.open()

    def reset(self) -> None:
        self._pool.reset()

    def close(self) -> None:
        """Stop the monitor and close the pool. open() starts them again."""
        if self._events is not None:
            assert self._listeners is not None
            self._events.put(
                (self._listeners.publish_server_closed, (self.address, self._topology_id))
            )
        host, port = self.address
        _debug_log(
            _SDAM_LOGGER,
            message=_SDAMStatusMessage.STOP_SERVER,
            topologyId=self._topology_id,
            serverHost=host,
            serverPort=port,
        )
        self._monitor.close()
        self._pool.close()

    def request_check(self) -> None:
        """Ask the monitor to check the server soon."""
        self._monitor.request_check()

    def checkout(
        self,
        handler: Optional[_ErrorHandler] = None,
        cancel_context: Optional[CancellationContext] = None,
    ) -> ContextManager[Connection]:
        return self._pool.checkout(handler, cancel_context)

    @property
    def description(self) -> ServerDescription:
        return self._description

    @description.setter
    def description(self, server_description: ServerDescription) -> None:
        if server_description.address != self.address:
            raise ValueError(
                f"description of {server_description.address!r} given to server {self.address!r}"
            )
        self._description = server_description

    @property
    def pool(self) -> Pool:
        return self._pool

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self._description!r}>"
