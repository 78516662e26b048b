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

"""Tools to parse cluster options."""
from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence

from mongo_sdam import common
from mongo_sdam.common import validate
from mongo_sdam.monitoring import _EventListeners
from mongo_sdam.pool import PoolOptions
from mongo_sdam.read_preferences import (
    _ServerMode,
    make_read_preference,
    read_pref_mode_from_name,
)


def _parse_read_preference(options: Mapping[str, Any]) -> _ServerMode:
    """Parse read preference options."""
    if "read_preference" in options:
        return options["read_preference"]

    name = options.get("readpreference", "primary")
    mode = read_pref_mode_from_name(name)
    tags = options.get("readpreferencetags")
    max_staleness = options.get("maxstalenessseconds", -1)
    return make_read_preference(mode, tags, max_staleness)


def _parse_pool_options(options: Mapping[str, Any]) -> PoolOptions:
    """Parse connection pool options."""
    max_pool_size = options.get("maxpoolsize", common.MAX_POOL_SIZE)
    min_pool_size = options.get("minpoolsize", common.MIN_POOL_SIZE)
    max_idle_time_seconds = options.get("maxidletimems", common.MAX_IDLE_TIME_SEC)
    if max_pool_size is not None and min_pool_size > max_pool_size:
        raise ValueError("minPoolSize must be smaller or equal to maxPoolSize")
    connect_timeout = options.get("connecttimeoutms", common.CONNECT_TIMEOUT)
    socket_timeout = options.get("sockettimeoutms")
    wait_queue_timeout = options.get("waitqueuetimeoutms", common.WAIT_QUEUE_TIMEOUT)
    event_listeners: Sequence = options.get("event_listeners", [])
    appname = options.get("appname")
    max_connecting = options.get("maxconnecting", common.MAX_CONNECTING)
    return PoolOptions(
        max_pool_size,
        min_pool_size,
        max_idle_time_seconds,
        connect_timeout,
        socket_timeout,
        wait_queue_timeout,
        _EventListeners(event_listeners),
        appname,
        max_connecting,
    )


class ClientOptions:
    """Read only configuration options for a Cluster.

    Should not be instantiated directly by application developers. Access
    a cluster's options via :attr:`mongo_sdam.cluster.Cluster.options`
    instead.
    """

    def __init__(self, options: Mapping[str, Any]):
        self.__options = options
        self.__pool_options = _parse_pool_options(options)
        self.__read_preference = _parse_read_preference(options)
        self.__replica_set_name = options.get("replicaset")
        self.__server_selection_timeout = options.get(
            "serverselectiontimeoutms", common.SERVER_SELECTION_TIMEOUT
        )
        self.__heartbeat_frequency = options.get(
            "heartbeatfrequencyms", common.HEARTBEAT_FREQUENCY
        )
        self.__local_threshold_ms = options.get("localthresholdms", common.LOCAL_THRESHOLD_MS)
        self.__direct_connection = options.get("directconnection")
        self.__monitoring_mode = options.get("monitoringmode", common.THREADED)
        self.__server_selection_try_once = options.get("serverselectiontryonce")
        if self.__server_selection_try_once is None:
            self.__server_selection_try_once = self.__monitoring_mode == common.SINGLE_THREADED

    @property
    def _options(self) -> Mapping[str, Any]:
        """The original options used to create this ClientOptions."""
        return self.__options

    @property
    def connect(self) -> Optional[bool]:
        """Whether to begin discovering a MongoDB topology automatically."""
        return self.__options.get("connect")

    @property
    def pool_options(self) -> PoolOptions:
        """A :class:`~mongo_sdam.pool.PoolOptions` instance."""
        return self.__pool_options

    @property
    def read_preference(self) -> _ServerMode:
        """A read preference instance."""
        return self.__read_preference

    @property
    def replica_set_name(self) -> Optional[str]:
        """Replica set name or None."""
        return self.__replica_set_name

    @property
    def server_selection_timeout(self) -> float:
        """The server selection timeout for this instance in seconds."""
        return self.__server_selection_timeout

    @property
    def heartbeat_frequency(self) -> float:
        """The monitoring frequency in seconds."""
        return self.__heartbeat_frequency

    @property
    def local_threshold_ms(self) -> float:
        """The local threshold for this instance."""
        return self.__local_threshold_ms

    @property
    def direct_connection(self) -> Optional[bool]:
        """Whether to connect to the deployment in 'Single' topology."""
        return self.__direct_connection

    @property
    def monitoring_mode(self) -> str:
        """``"threaded"`` or ``"single_threaded"``."""
        return self.__monitoring_mode

    @property
    def server_selection_try_once(self) -> bool:
        """Give up after one scan when no server is suitable."""
        return self.__server_selection_try_once

    @property
    def event_listeners(self) -> list:
        """The event listeners registered for this cluster.

        See :mod:`~mongo_sdam.monitoring` for details.
        """
        assert self.__pool_options._event_listeners is not None
        return self.__pool_options._event_listeners.event_listeners()
