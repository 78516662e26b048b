# Copyright 2009-present MongoDB, Inc.
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

"""Exceptions raised by mongo_sdam."""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterable, List, Mapping, Optional, Sequence, Union

if TYPE_CHECKING:
    from mongo_sdam.topology_description import TopologyDescription


class MongoSdamError(Exception):
    """Base class for all mongo_sdam exceptions."""

    def __init__(self, message: str = "", error_labels: Optional[Iterable[str]] = None) -> None:
        super().__init__(message)
        self._message = message
        self._error_labels = set(error_labels or [])

    def has_error_label(self, label: str) -> bool:
        """Return True if this error contains the given label."""
        return label in self._error_labels

    @property
    def timeout(self) -> bool:
        """True if this error was caused by a timeout."""
        return False


class ProtocolError(MongoSdamError):
    """Raised for failures related to the wire protocol."""


class ConnectionFailure(MongoSdamError):
    """Raised when a connection to the database cannot be made or is lost."""


class WaitQueueTimeoutError(ConnectionFailure):
    """Raised when an operation times out waiting to check out a connection
    from the pool.

    Subclass of :exc:`~mongo_sdam.errors.ConnectionFailure`.
    """

    @property
    def timeout(self) -> bool:
        return True


class AutoReconnect(ConnectionFailure):
    """Raised when a connection to the database is lost and an attempt to
    auto-reconnect will be made.

    The operation which caused it has not necessarily succeeded. Later
    operations open a new connection to the server and keep raising this
    exception until a connection succeeds.

    Subclass of :exc:`~mongo_sdam.errors.ConnectionFailure`.
    """

    errors: Union[Mapping[str, Any], Sequence]
    details: Union[Mapping[str, Any], Sequence]

    def __init__(
        self, message: str = "", errors: Optional[Union[Mapping[str, Any], Sequence]] = None
    ) -> None:
        error_labels = None
        if errors is not None:
            if isinstance(errors, dict):
                error_labels = errors.get("errorLabels")
        super().__init__(message, error_labels)
        self.errors = self.details = errors or []


class NetworkTimeout(AutoReconnect):
    """An operation on an open connection exceeded socketTimeoutMS.

    The remaining connections in the pool stay open.

    Subclass of :exc:`~mongo_sdam.errors.AutoReconnect`.
    """

    @property
    def timeout(self) -> bool:
        return True


class HandshakeError(AutoReconnect):
    """A server check failed for a reason other than the network.

    Monitors record this error on the server's description, e.g. when a
    server answers the handshake with a malformed or failed reply. It is never
    raised to application code directly.

    Subclass of :exc:`~mongo_sdam.errors.AutoReconnect`.
    """


def _format_detailed_error(message: str, details: Optional[Union[Mapping[str, Any], List]]) -> str:
    if details is not None:
        message = "%s, full error: %s" % (message, details)
    return message


class NotPrimaryError(AutoReconnect):
    """The server responded "not primary" or "node is recovering".

    The operation failed because the client thought it was using the primary
    but the primary has stepped down, or the client thought it was using a
    healthy secondary but the secondary is stale and trying to recover.

    The server is marked Unknown and checked again as soon as possible after
    this exception is raised.

    Subclass of :exc:`~mongo_sdam.errors.AutoReconnect`.
    """

    def __init__(
        self, message: str = "", errors: Optional[Union[Mapping[str, Any], List]] = None
    ) -> None:
        super().__init__(_format_detailed_error(message, errors), errors=errors)

    @property
    def code(self) -> Optional[int]:
        """The server's error code, or None."""
        if isinstance(self.details, Mapping):
            return self.details.get("code")
        return None


class ServerSelectionTimeoutError(AutoReconnect):
    """Thrown when no server is available for an operation.

    If there is no suitable server for an operation mongo_sdam tries for
    ``serverSelectionTimeoutMS`` (default 30 seconds) to find one, then
    throws this exception. The message describes the last topology seen and
    why each known server was rejected.
    """

    def __init__(
        self,
        message: str = "",
        errors: Optional[Union[Mapping[str, Any], Sequence]] = None,
        topology_description: Optional[TopologyDescription] = None,
        rejections: Optional[Mapping[Any, str]] = None,
    ) -> None:
        super().__init__(message, errors)
        self.topology_description = topology_description
        self.rejections = dict(rejections or {})

    @property
    def timeout(self) -> bool:
        return True


class ConfigurationError(MongoSdamError):
    """Raised when something is incorrectly configured."""


class IncompatibleTopologyError(ConfigurationError):
    """Raised when the wire protocol versions of a server and of mongo_sdam
    do not overlap.

    Selection fails immediately with this error; it is not retried.
    """


class InvalidURI(ConfigurationError):
    """Raised when trying to parse an invalid mongodb URI."""


class OperationFailure(MongoSdamError):
    """Raised when a command fails on the server."""

    def __init__(
        self,
        error: str,
        code: Optional[int] = None,
        details: Optional[Mapping[str, Any]] = None,
        max_wire_version: Optional[int] = None,
    ) -> None:
        error_labels = None
        if details is not None:
            error_labels = details.get("errorLabels")
        super().__init__(_format_detailed_error(error, details), error_labels=error_labels)
        self.__code = code
        self.__details = details
        self.__max_wire_version = max_wire_version

    @property
    def _max_wire_version(self) -> Optional[int]:
        return self.__max_wire_version

    @property
    def code(self) -> Optional[int]:
        """The error code returned by the server, if any."""
        return self.__code

    @property
    def details(self) -> Optional[Mapping[str, Any]]:
        """The complete error document returned by the server."""
        return self.__details


class InvalidOperation(MongoSdamError):
    """Raised when a client attempts to perform an invalid operation."""


class OperationCancelled(MongoSdamError):
    """Raised when a blocked selection or checkout is cancelled by its
    caller's :class:`~mongo_sdam.pool.CancellationContext`.
    """

    @property
    def timeout(self) -> bool:
        return True
