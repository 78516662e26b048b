# Copyright 2023-present MongoDB, Inc.
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
from __future__ import annotations

import enum
import logging
import os
from collections.abc import Mapping
from typing import Any

from bson import UuidRepresentation, json_util
from bson.json_util import JSONOptions
from mongo_sdam.monitoring import ConnectionCheckOutFailedReason, ConnectionClosedReason


class _SDAMStatusMessage(str, enum.Enum):
    START_TOPOLOGY = "Starting topology monitoring"
    STOP_TOPOLOGY = "Stopped topology monitoring"
    START_SERVER = "Starting server monitoring"
    STOP_SERVER = "Stopped server monitoring"
    TOPOLOGY_CHANGE = "Topology description changed"
    HEARTBEAT_START = "Server heartbeat started"
    HEARTBEAT_SUCCESS = "Server heartbeat succeeded"
    HEARTBEAT_FAIL = "Server heartbeat failed"


class _ServerSelectionStatusMessage(str, enum.Enum):
    STARTED = "Server selection started"
    SUCCEEDED = "Server selection succeeded"
    FAILED = "Server selection failed"
    WAITING = "Waiting for suitable server to become available"


class _ConnectionStatusMessage(str, enum.Enum):
    POOL_CREATED = "Connection pool created"
    POOL_CLEARED = "Connection pool cleared"
    POOL_CLOSED = "Connection pool closed"
    CONN_CREATED = "Connection created"
    CONN_CLOSED = "Connection closed"
    CHECKOUT_STARTED = "Connection checkout started"
    CHECKOUT_SUCCEEDED = "Connection checked out"
    CHECKOUT_FAILED = "Connection checkout failed"
    CHECKEDIN = "Connection checked in"


_DEFAULT_DOCUMENT_LENGTH = 1000
_DOCUMENT_NAMES = ["reply", "failure"]
_JSON_OPTIONS = JSONOptions(uuid_representation=UuidRepresentation.STANDARD)
_SDAM_LOGGER = logging.getLogger("mongo_sdam.topology")
_SERVER_SELECTION_LOGGER = logging.getLogger("mongo_sdam.serverSelection")
_CONNECTION_LOGGER = logging.getLogger("mongo_sdam.connection")

_VERBOSE_CONNECTION_ERROR_REASONS = {
    ConnectionClosedReason.POOL_CLOSED: "Connection pool was closed",
    ConnectionCheckOutFailedReason.POOL_CLOSED: "Connection pool was closed",
    ConnectionClosedReason.STALE: "Connection pool was stale",
    ConnectionClosedReason.ERROR: "An error occurred while using the connection",
    ConnectionCheckOutFailedReason.CONN_ERROR: (
        "An error occurred while trying to establish a new connection"
    ),
    ConnectionClosedReason.IDLE: "Connection was idle too long",
    ConnectionCheckOutFailedReason.TIMEOUT: "Connection exceeded the specified timeout",
}


def _debug_log(logger: logging.Logger, **fields: Any) -> None:
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(LogMessage(**fields))


def _verbose_connection_error_reason(reason: str) -> str:
    return _VERBOSE_CONNECTION_ERROR_REASONS.get(reason, reason)


class LogMessage:
    __slots__ = ["_kwargs"]

    def __init__(self, **kwargs: Any):
        self._kwargs = kwargs

        if "durationMS" in self._kwargs:
            self._kwargs["durationMS"] = self._kwargs["durationMS"] * 1000
        if "remainingTimeMS" in self._kwargs:
            self._kwargs["remainingTimeMS"] = int(self._kwargs["remainingTimeMS"] * 1000)

    def __str__(self) -> str:
        self._redact()
        return "%s" % (
            json_util.dumps(
                self._kwargs, json_options=_JSON_OPTIONS, default=lambda o: o.__repr__()
            )
        )

    def _redact(self) -> None:
        document_length = int(
            os.getenv("MONGO_SDAM_LOG_MAX_DOCUMENT_LENGTH", _DEFAULT_DOCUMENT_LENGTH)
        )
        if document_length < 0:
            document_length = _DEFAULT_DOCUMENT_LENGTH

        for doc_name in _DOCUMENT_NAMES:
            doc = self._kwargs.get(doc_name)
            if doc:
                if isinstance(doc, Mapping):
                    doc = json_util.dumps(
                        doc,
                        json_options=_JSON_OPTIONS,
                        default=lambda o: o.__repr__(),
                    )
                else:
                    doc = repr(doc)
                if len(doc) > document_length:
                    doc = doc[:document_length] + "..."
                self._kwargs[doc_name] = doc
