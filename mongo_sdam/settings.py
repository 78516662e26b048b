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

"""Represent a Cluster's configuration."""
from __future__ import annotations

import threading
import traceback
from typing import Any, Collection, Optional, Type, Union

from bson.objectid import ObjectId
from mongo_sdam import common, monitor, pool
from mongo_sdam.errors import ConfigurationError
from mongo_sdam.pool import Pool, PoolOptions
from mongo_sdam.server_description import ServerDescription
from mongo_sdam.topology_description import TOPOLOGY_TYPE


class TopologySettings:
    def __init__(
        self,
        seeds: Optional[Collection[tuple[str, int]]] = None,
        replica_set_name: Optional[str] = None,
        pool_class: Optional[Type[Pool]] = None,
        pool_options: Optional[PoolOptions] = None,
        monitor_class: Optional[Type[monitor.Monitor]] = None,
        condition_class: Optional[Type[threading.Condition]] = None,
        local_threshold_ms: Optional[int] = None,
        server_selection_timeout: Optional[float] = None,
        heartbeat_frequency: Optional[float] = None,
        direct_connection: Optional[bool] = False,
        monitoring_mode: str = common.THREADED,
        server_selection_try_once: Optional[bool] = None,
        fqdn: Optional[str] = None,
    ):
        """Represent a Cluster's configuration.

        Take a list of (host, port) pairs and optional replica set name.
        Timing options left as None follow the module defaults in
        :mod:`mongo_sdam.common` at the time they are read.
        """
        if heartbeat_frequency is not None and heartbeat_frequency < common.MIN_HEARTBEAT_INTERVAL:
            raise ConfigurationError(
                "heartbeatFrequencyMS cannot be less than %d"
                % (common.MIN_HEARTBEAT_INTERVAL * 1000,)
            )
        if monitoring_mode not in common.MONITORING_MODES:
            raise ConfigurationError("unknown monitoring mode %r" % (monitoring_mode,))

        self._seeds: Collection[tuple[str, int]] = seeds or [("localhost", common.DEFAULT_PORT)]
        self._replica_set_name = replica_set_name
        self._pool_class: Type[Pool] = pool_class or pool.Pool
        self._pool_options: PoolOptions = pool_options or PoolOptions()
        self._monitor_class: Type[monitor.Monitor] = monitor_class or monitor.Monitor
        self._condition_class: Type[threading.Condition] = condition_class or threading.Condition
        self._local_threshold_ms = local_threshold_ms
        self._server_selection_timeout = server_selection_timeout
        self._heartbeat_frequency = heartbeat_frequency
        self._direct = direct_connection
        self._monitoring_mode = monitoring_mode
        if server_selection_try_once is None:
            server_selection_try_once = monitoring_mode == common.SINGLE_THREADED
        self._server_selection_try_once = server_selection_try_once
        self._fqdn = fqdn

        self._topology_id = ObjectId()
        # Store the allocation traceback to catch unclosed clusters in the
        # test suite.
        self._stack = "".join(traceback.format_stack())

    @property
    def seeds(self) -> Collection[tuple[str, int]]:
        """List of server addresses."""
        return self._seeds

    @property
    def replica_set_name(self) -> Optional[str]:
        return self._replica_set_name

    @property
    def pool_class(self) -> Type[Pool]:
        return self._pool_class

    @property
    def pool_options(self) -> PoolOptions:
        return self._pool_options

    @property
    def monitor_class(self) -> Type[monitor.Monitor]:
        return self._monitor_class

    @property
    def condition_class(self) -> Type[threading.Condition]:
        return self._condition_class

    @property
    def local_threshold_ms(self) -> int:
        if self._local_threshold_ms is None:
            return common.LOCAL_THRESHOLD_MS
        return self._local_threshold_ms

    @property
    def server_selection_timeout(self) -> float:
        if self._server_selection_timeout is None:
            return common.SERVER_SELECTION_TIMEOUT
        return self._server_selection_timeout

    @property
    def heartbeat_frequency(self) -> float:
        if self._heartbeat_frequency is None:
            return common.HEARTBEAT_FREQUENCY
        return self._heartbeat_frequency

    @property
    def direct(self) -> Optional[bool]:
        """Connect directly to a single server, or use a set of servers?"""
        return self._direct

    @property
    def monitoring_mode(self) -> str:
        """Either ``"threaded"`` (one monitor thread per server) or
        ``"single_threaded"`` (servers are checked by the selecting thread).
        """
        return self._monitoring_mode

    @property
    def single_threaded(self) -> bool:
        return self._monitoring_mode == common.SINGLE_THREADED

    @property
    def server_selection_try_once(self) -> bool:
        """In single-threaded mode, fail after one scan rather than retrying
        until serverSelectionTimeoutMS.
        """
        return self._server_selection_try_once

    @property
    def fqdn(self) -> Optional[str]:
        """The host name from a ``mongodb+srv://`` URI, or None."""
        return self._fqdn

    def get_topology_type(self) -> int:
        if self.direct:
            return TOPOLOGY_TYPE.Single
        elif self.replica_set_name is not None:
            return TOPOLOGY_TYPE.ReplicaSetNoPrimary
        else:
            return TOPOLOGY_TYPE.Unknown

    def get_server_descriptions(self) -> dict[Union[tuple[str, int], Any], ServerDescription]:
        """Initial dict of (address, ServerDescription) for all seeds."""
        return {address: ServerDescription(address) for address in self.seeds}

    def get_topology_id(self) -> ObjectId:
        """The ObjectId identifying this topology in events and log messages."""
        return self._topology_id
