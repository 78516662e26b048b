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

"""Tools for discovering and monitoring a MongoDB deployment.

To get a :class:`~mongo_sdam.cluster.Cluster` and select a server:

  >>> from mongo_sdam import Cluster
  >>> c = Cluster()
  >>> c.select_server()
  ('localhost', 27017)
"""
from __future__ import annotations

import contextlib
import threading
import weakref
from types import TracebackType
from typing import (
    TYPE_CHECKING,
    Any,
    FrozenSet,
    Generator,
    Mapping,
    Optional,
    Sequence,
    Type,
    Union,
)

from mongo_sdam import common, monitoring, periodic_executor, uri_parser
from mongo_sdam.client_options import ClientOptions
from mongo_sdam.errors import ConfigurationError, InvalidOperation
from mongo_sdam.read_preferences import ReadPreference, _ServerMode
from mongo_sdam.server_selectors import writable_server_selector
from mongo_sdam.server_type import SERVER_TYPE
from mongo_sdam.settings import TopologySettings
from mongo_sdam.topology import Topology, _ErrorContext
from mongo_sdam.topology_description import TOPOLOGY_TYPE, TopologyDescription

if TYPE_CHECKING:
    from mongo_sdam.monitor import Monitor
    from mongo_sdam.pool import CancellationContext, Connection, Pool
    from mongo_sdam.server import Server

_Address = tuple[str, int]


class Cluster:
    """A view of a MongoDB deployment: standalone, replica set, or
    sharded cluster.
    """

    HOST = "localhost"
    PORT = 27017

    def __init__(
        self,
        host: Optional[Union[str, Sequence[str]]] = None,
        port: Optional[int] = None,
        connect: Optional[bool] = None,
        **kwargs: Any,
    ) -> None:
        """Discover and monitor a MongoDB deployment.

        The `host` parameter can be a full `mongodb URI
        <https://dochub.mongodb.org/core/connections>`_, in addition to
        a simple hostname. It can also be a list of hostnames but no more
        than one URI. Any port specified in the host string(s) will override
        the `port` parameter. For username and passwords reserved characters
        like ':', '/', '+' and '@' must be percent encoded following RFC
        2396::

            from urllib.parse import quote_plus

            uri = "mongodb://%s:%s@%s" % (
                quote_plus(user), quote_plus(password), host)
            cluster = Cluster(uri)

        Unix domain sockets are also supported. The socket path must be
        percent encoded in the URI::

            uri = "mongodb://%s@%s" % (quote_plus(user), quote_plus(socket_path))
            cluster = Cluster(uri)

        Credentials are parsed but never sent: authentication is not
        supported.

        .. note:: Starting with version 3.0 the :class:`Cluster`
          constructor no longer blocks while connecting to the server or
          servers, and it no longer raises
          :class:`~mongo_sdam.errors.ConnectionFailure` if they are
          unavailable, nor :class:`~mongo_sdam.errors.ConfigurationError`
          if the user's credentials are wrong. Instead, the constructor
          returns immediately and launches the connection process on
          background threads. Selecting a server blocks until a suitable
          server is discovered or raises
          :exc:`~mongo_sdam.errors.ServerSelectionTimeoutError`.

        :param host: hostname or IP address or Unix domain socket
            path of a single mongod or mongos instance to connect to, or a
            mongodb URI, or a list of hostnames (but no more than one mongodb
            URI). If `host` is an IPv6 literal it must be enclosed in '['
            and ']' characters following the RFC2732 URL syntax (e.g. '[::1]'
            for localhost). Multihomed and round robin DNS addresses are
            **not** supported.
        :param port: port number on which to connect
        :param connect: If ``True`` (the default), immediately
            begin connecting to MongoDB in the background. Otherwise connect
            on the first operation.
        :param kwargs: Options from the URI (``replicaSet``,
            ``heartbeatFrequencyMS``, ``serverSelectionTimeoutMS``,
            ``localThresholdMS``, ``connectTimeoutMS``, ``socketTimeoutMS``,
            ``maxPoolSize``, ``minPoolSize``, ``maxIdleTimeMS``,
            ``maxConnecting``, ``waitQueueTimeoutMS``, ``directConnection``,
            ``readPreference``, ``readPreferenceTags``,
            ``maxStalenessSeconds``, ``appname``, ``monitoringMode``,
            ``serverSelectionTryOnce``), plus ``event_listeners`` (a list of
            :mod:`~mongo_sdam.monitoring` listeners), ``read_preference``
            (a read preference instance) and, for tests, ``pool_class``,
            ``monitor_class`` and ``condition_class``. Keyword arguments
            override the same option in the URI.
        """
        if host is None:
            host = self.HOST
        if isinstance(host, str):
            host = [host]
        if port is None:
            port = self.PORT
        if not isinstance(port, int):
            raise TypeError(f"port must be an instance of int, not {type(port)}")

        pool_class: Optional[Type[Pool]] = kwargs.pop("pool_class", None)
        monitor_class: Optional[Type[Monitor]] = kwargs.pop("monitor_class", None)
        condition_class: Optional[Type[threading.Condition]] = kwargs.pop(
            "condition_class", None
        )

        # _CaseInsensitiveDictionary preserves the case of the keys the
        # user passed in.
        keyword_opts = common._CaseInsensitiveDictionary(kwargs)

        seeds = set()
        opts = common._CaseInsensitiveDictionary()
        fqdn = None
        if len([h for h in host if "/" in h]) > 1:
            raise ConfigurationError("host must not contain multiple MongoDB URIs")
        for entity in host:
            # A hostname can only include a-z, 0-9, '-' and '.'. If we find
            # a '/' it must be a URI.
            if "/" in entity:
                # Determine connection timeout from kwargs.
                timeout = keyword_opts.get("connecttimeoutms")
                if timeout is not None:
                    timeout = common.validate_timeout_or_none_or_zero(
                        keyword_opts.cased_key("connecttimeoutms"), timeout
                    )
                res = uri_parser.parse_uri(
                    entity,
                    port,
                    validate=True,
                    warn=True,
                    normalize=False,
                    connect_timeout=timeout,
                )
                seeds.update(res["nodelist"])
                opts = res["options"]
                fqdn = res["fqdn"]
            else:
                seeds.update(uri_parser.split_hosts(entity, port))
        if not seeds:
            raise ConfigurationError("need to specify at least one host")

        if connect is None:
            connect = opts.get("connect", True)
        keyword_opts["connect"] = connect

        # Validate kwarg options.
        keyword_opts = common._CaseInsensitiveDictionary(
            dict(common.validate(keyword_opts.cased_key(k), v) for k, v in keyword_opts.items())
        )

        # Override connection string options with kwarg options.
        opts.update(keyword_opts)
        # Normalize combined options.
        opts = uri_parser._normalize_options(opts)
        uri_parser._check_options(seeds, opts)

        self._options = options = ClientOptions(opts)
        self._lock = threading.Lock()
        self._event_listeners = options.pool_options._event_listeners

        self._topology_settings = TopologySettings(
            seeds=seeds,
            replica_set_name=options.replica_set_name,
            pool_class=pool_class,
            pool_options=options.pool_options,
            monitor_class=monitor_class,
            condition_class=condition_class,
            local_threshold_ms=options.local_threshold_ms,
            server_selection_timeout=options.server_selection_timeout,
            heartbeat_frequency=options.heartbeat_frequency,
            direct_connection=options.direct_connection,
            monitoring_mode=options.monitoring_mode,
            server_selection_try_once=options.server_selection_try_once,
            fqdn=fqdn,
        )

        self._opened = False
        self._closed = False
        self._init_background()

        if connect:
            self._get_topology()

    def _init_background(self) -> None:
        self._topology = Topology(self._topology_settings)
        self._maintenance_executor: Optional[periodic_executor.PeriodicExecutor] = None
        if self._topology_settings.single_threaded:
            return

        def target() -> bool:
            cluster = self_ref()
            if cluster is None:
                return False  # Stop the executor.
            Cluster._process_periodic_tasks(cluster)
            return True

        executor = periodic_executor.PeriodicExecutor(
            interval=common.POOL_MAINTENANCE_FREQUENCY,
            min_interval=common.MIN_HEARTBEAT_INTERVAL,
            target=target,
            name="mongo_sdam_pool_maintenance_thread",
        )

        # We strongly reference the executor and it weakly references us via
        # this closure. When the cluster is freed, stop the executor soon.
        self_ref: Any = weakref.ref(self, executor.close)
        self._maintenance_executor = executor

    def _get_topology(self) -> Topology:
        """Get the internal :class:`~mongo_sdam.topology.Topology` object.

        If this cluster was created with "connect=False", calling
        _get_topology launches the connection process in the background.
        """
        if not self._opened:
            self._topology.open()
            with self._lock:
                if self._maintenance_executor is not None:
                    self._maintenance_executor.open()
            self._opened = True
        return self._topology

    # This method is run periodically by a background thread.
    def _process_periodic_tasks(self) -> None:
        """Maintain connection pool parameters."""
        try:
            self._topology.update_pool()
        except Exception as exc:
            if isinstance(exc, InvalidOperation) and self._topology._closed:
                return
            else:
                monitoring._handle_exception()

    @property
    def options(self) -> ClientOptions:
        """The configuration options for this cluster.

        :return: An instance of
            :class:`~mongo_sdam.client_options.ClientOptions`.
        """
        return self._options

    @property
    def read_preference(self) -> _ServerMode:
        """The default read preference for :meth:`select_server`."""
        return self._options.read_preference

    @property
    def topology_description(self) -> TopologyDescription:
        """The description of the connected MongoDB deployment.

        >>> cluster.topology_description.topology_type_name
        'ReplicaSetWithPrimary'
        >>> [sd.address for sd in cluster.topology_description.known_servers]
        [('localhost', 27017), ('localhost', 27018), ('localhost', 27019)]

        The returned object never changes. Monitoring replaces it, so read
        this property again for a newer description.
        """
        return self._topology.description

    @property
    def primary(self) -> Optional[_Address]:
        """The (host, port) of the current primary of the replica set.

        Returns ``None`` if this cluster is not connected to a replica set,
        there is no primary, or this cluster was created without the
        `replicaSet` option.
        """
        return self._topology.get_primary()

    @property
    def secondaries(self) -> set[_Address]:
        """The secondary members known to this cluster.

        A sequence of (host, port) pairs. Empty if this cluster is not
        connected to a replica set, there are no visible secondaries, or this
        cluster was created without the `replicaSet` option.
        """
        return self._topology.get_secondaries()

    @property
    def arbiters(self) -> set[_Address]:
        """Arbiters in the replica set.

        A sequence of (host, port) pairs. Empty if this cluster is not
        connected to a replica set, there are no arbiters, or this cluster
        was created without the `replicaSet` option.
        """
        return self._topology.get_arbiters()

    @property
    def nodes(self) -> FrozenSet[_Address]:
        """Set of all currently connected servers.

        .. warning:: When connected to a replica set the value of
          :attr:`nodes` can change over time as :class:`Cluster`'s view of
          the replica set changes. :attr:`nodes` can also be an empty set
          when :class:`Cluster` is first instantiated and hasn't yet
          connected to any servers, or a network partition causes it to lose
          connection to all servers.
        """
        description = self._topology.description
        return frozenset(s.address for s in description.known_servers)

    def _select_server(
        self,
        selector: Any,
        server_selection_timeout: Optional[float] = None,
        address: Optional[_Address] = None,
        cancel_context: Optional[CancellationContext] = None,
    ) -> Server:
        topology = self._get_topology()
        if address:
            return topology.select_server_by_address(
                address, server_selection_timeout, cancel_context
            )
        return topology.select_server(
            selector, server_selection_timeout, cancel_context=cancel_context
        )

    def select_server(
        self,
        read_preference: Optional[_ServerMode] = None,
        server_selection_timeout: Optional[float] = None,
        cancel_context: Optional[CancellationContext] = None,
    ) -> _Address:
        """Select a server for a read and return its (host, port).

        Blocks until a server matching `read_preference` is discovered or
        `server_selection_timeout` seconds pass.

        :param read_preference: a read preference, or any callable that
            narrows a :class:`~mongo_sdam.server_selectors.Selection`.
            Defaults to this cluster's read preference.
        :param server_selection_timeout: seconds to wait, or None for the
            ``serverSelectionTimeoutMS`` option.
        :param cancel_context: a
            :class:`~mongo_sdam.pool.CancellationContext` that interrupts the
            wait when cancelled.

        Raises :exc:`~mongo_sdam.errors.ServerSelectionTimeoutError`,
        :exc:`~mongo_sdam.errors.IncompatibleTopologyError` or
        :exc:`~mongo_sdam.errors.OperationCancelled`.
        """
        if read_preference is None:
            read_preference = self._options.read_preference
        server = self._select_server(
            read_preference, server_selection_timeout, cancel_context=cancel_context
        )
        return server.description.address

    def select_writable_server(
        self,
        server_selection_timeout: Optional[float] = None,
        cancel_context: Optional[CancellationContext] = None,
    ) -> _Address:
        """The (host, port) of a standalone, primary, or mongos."""
        server = self._select_server(
            writable_server_selector, server_selection_timeout, cancel_context=cancel_context
        )
        return server.description.address

    @contextlib.contextmanager
    def checkout(
        self,
        address: Optional[_Address] = None,
        server_selection_timeout: Optional[float] = None,
        cancel_context: Optional[CancellationContext] = None,
    ) -> Generator[Connection, None, None]:
        """Check out a connection to `address`. Use with a "with" statement.

        With no address, check out a connection to a writable server. Errors
        raised inside the block update the topology before they propagate::

            with cluster.checkout(("localhost", 27017)) as conn:
                conn.command("admin", {"ping": 1})
        """
        if address is None:
            server = self._select_server(
                writable_server_selector, server_selection_timeout, cancel_context=cancel_context
            )
        else:
            server = self._select_server(
                None, server_selection_timeout, address, cancel_context=cancel_context
            )
        with self._checkout(server, cancel_context) as conn:
            yield conn

    @contextlib.contextmanager
    def _checkout(
        self, server: Server, cancel_context: Optional[CancellationContext] = None
    ) -> Generator[Connection, None, None]:
        with _ErrorHandler(self, server) as err_handler:
            with server.checkout(handler=err_handler, cancel_context=cancel_context) as conn:
                err_handler.contribute_socket(conn)
                yield conn

    def command(
        self,
        dbname: str,
        spec: Mapping[str, Any],
        read_preference: Optional[_ServerMode] = None,
        server_selection_timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        """Select a server, check out a connection, and run one command.

        :param dbname: name of the database to run the command on
        :param spec: the command document, command name first
        :param read_preference: which server to run it on. Defaults to this
            cluster's read preference.

        Raises :exc:`~mongo_sdam.errors.OperationFailure` if the command
        fails on the server.
        """
        if read_preference is None:
            read_preference = self._options.read_preference
        server = self._select_server(read_preference, server_selection_timeout)
        # Thread safe: if the type is single it cannot change.
        if self._topology.description.topology_type == TOPOLOGY_TYPE.Single:
            server_type = server.description.server_type
            if server_type == SERVER_TYPE.Standalone:
                # Don't send read preference to standalones.
                read_preference = ReadPreference.PRIMARY
            elif server_type != SERVER_TYPE.Mongos:
                # Any replica set member can answer with primaryPreferred.
                read_preference = ReadPreference.PRIMARY_PREFERRED
        with self._checkout(server) as conn:
            return conn.command(dbname, spec, read_preference=read_preference)

    def close(self) -> None:
        """Close all sockets in the connection pools and stop the monitor
        threads.

        Once closed, the cluster cannot be used again and any attempt will
        raise :exc:`~mongo_sdam.errors.InvalidOperation`.
        """
        if self._maintenance_executor is not None:
            self._maintenance_executor.close()
        self._topology.close()
        self._closed = True

    def __enter__(self) -> Cluster:
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Cluster({self._repr_helper()})"

    def _repr_helper(self) -> str:
        def option_repr(option: str, value: Any) -> str:
            """Fix options whose __repr__ isn't usable in a constructor."""
            if option == "event_listeners":
                return "{}={!r}".format(option, list(value))
            return f"{option}={value!r}"

        # Host first...
        options = [
            "host=%r"
            % [
                "%s:%d" % (host, port) if port is not None else host
                for host, port in self._topology_settings.seeds
            ]
        ]
        # ... then everything in self._options._options.
        options.extend(
            option_repr(key, self._options._options[key]) for key in self._options._options
        )
        return ", ".join(options)

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, self.__class__):
            return self._topology == other._topology
        return NotImplemented

    def __ne__(self, other: Any) -> bool:
        return not self == other

    def __hash__(self) -> int:
        return hash(self._topology)


class _ErrorHandler:
    """Handle errors raised when using a checked out connection."""

    __slots__ = (
        "cluster",
        "server_address",
        "max_wire_version",
        "sock_generation",
        "completed_handshake",
        "handled",
    )

    def __init__(self, cluster: Cluster, server: Server):
        self.cluster = cluster
        self.server_address = server.description.address
        self.max_wire_version = common.MIN_WIRE_VERSION
        # A connection that fails before its handshake completes reports the
        # generation of the pool when the attempt started.
        self.sock_generation = server.pool.gen.get()
        self.completed_handshake = False
        self.handled = False

    def contribute_socket(self, conn: Connection, completed_handshake: bool = True) -> None:
        """Provide socket information to the error handler."""
        self.max_wire_version = conn.max_wire_version
        self.sock_generation = conn.generation
        self.completed_handshake = completed_handshake

    def handle(
        self, exc_type: Optional[Type[BaseException]], exc_val: Optional[BaseException]
    ) -> None:
        if self.handled or exc_val is None:
            return
        self.handled = True
        err_ctx = _ErrorContext(
            exc_val,
            self.max_wire_version,
            self.sock_generation,
            self.completed_handshake,
        )
        self.cluster._topology.handle_error(self.server_address, err_ctx)

    def __enter__(self) -> _ErrorHandler:
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[Exception]],
        exc_val: Optional[Exception],
        exc_tb: Optional[TracebackType],
    ) -> None:
        return self.handle(exc_type, exc_val)
