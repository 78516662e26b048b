# Copyright 2009-present MongoDB, Inc.
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

"""Server discovery, monitoring and selection for MongoDB deployments."""
from __future__ import annotations

from mongo_sdam._version import __version__, get_version_string, version, version_tuple
from mongo_sdam.cluster import Cluster
from mongo_sdam.common import (
    MAX_SUPPORTED_WIRE_VERSION,
    MIN_SUPPORTED_WIRE_VERSION,
    MONITORING_MODES,
    SINGLE_THREADED,
    THREADED,
)
from mongo_sdam.pool import CancellationContext
from mongo_sdam.read_preferences import ReadPreference
from mongo_sdam.server_type import SERVER_TYPE
from mongo_sdam.topology_description import TOPOLOGY_TYPE

__all__ = [
    "__version__",
    "version",
    "version_tuple",
    "get_version_string",
    "Cluster",
    "CancellationContext",
    "ReadPreference",
    "SERVER_TYPE",
    "TOPOLOGY_TYPE",
    "MAX_SUPPORTED_WIRE_VERSION",
    "MIN_SUPPORTED_WIRE_VERSION",
    "MONITORING_MODES",
    "SINGLE_THREADED",
    "THREADED",
]
