# Copyright 2012-present MongoDB, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License",
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

"""Utilities for choosing which member of a replica set to read from."""
from __future__ import annotations

from collections import abc
from typing import TYPE_CHECKING, Any, Callable, Mapping, Optional, Sequence

from mongo_sdam import max_staleness_selectors
from mongo_sdam.errors import ConfigurationError
from mongo_sdam.server_selectors import (
    Rejections,
    apply_tag_sets,
    readable_server_selector,
    record_rejections,
    secondary_server_selector,
)

if TYPE_CHECKING:
    from mongo_sdam.server_selectors import Selection

_PRIMARY = 0
_PRIMARY_PREFERRED = 1
_SECONDARY = 2
_SECONDARY_PREFERRED = 3
_NEAREST = 4


_MONGOS_MODES = (
    "primary",
    "primaryPreferred",
    "secondary",
    "secondaryPreferred",
    "nearest",
)

_TagSets = Sequence[Mapping[str, Any]]


def _validate_tag_sets(tag_sets: Optional[_TagSets]) -> Optional[_TagSets]:
    """Validate tag sets for a Cluster."""
    if tag_sets is None:
        return tag_sets

    if not isinstance(tag_sets, (list, tuple)):
        raise TypeError(f"Tag sets {tag_sets!r} invalid, must be a sequence")
    if len(tag_sets) == 0:
        raise ValueError(
            f"Tag sets {tag_sets!r} invalid, must be None or contain at least one set of tags"
        )

    for tags in tag_sets:
        if not isinstance(tags, abc.Mapping):
            raise TypeError(
                f"Tag set {tags!r} invalid, must be an instance of dict, "
                "bson.son.SON or other type that inherits from "
                "collection.Mapping"
            )

    return list(tag_sets)


def _invalid_max_staleness_msg(max_staleness: Any) -> str:
    return "maxStalenessSeconds must be a positive integer, not %s" % max_staleness


# Some duplication with common.py to avoid import cycle.
def _validate_max_staleness(max_staleness: Any) -> int:
    """Validate max_staleness."""
    if max_staleness == -1:
        return -1

    if not isinstance(max_staleness, int) or isinstance(max_staleness, bool):
        raise TypeError(_invalid_max_staleness_msg(max_staleness))

    if max_staleness <= 0:
        raise ValueError(_invalid_max_staleness_msg(max_staleness))

    return max_staleness


class _ServerMode:
    """Base class for all read preferences."""

    __slots__ = ("__mongos_mode", "__mode", "__tag_sets", "__max_staleness")

    def __init__(
        self,
        mode: int,
        tag_sets: Optional[_TagSets] = None,
        max_staleness: int = -1,
    ) -> None:
        self.__mongos_mode = _MONGOS_MODES[mode]
        self.__mode = mode
        self.__tag_sets = _validate_tag_sets(tag_sets)
        self.__max_staleness = _validate_max_staleness(max_staleness)

    @property
    def name(self) -> str:
        """The name of this read preference."""
        return self.__class__.__name__

    @property
    def mongos_mode(self) -> str:
        """The mongos mode of this read preference."""
        return self.__mongos_mode

    @property
    def document(self) -> dict[str, Any]:
        """Read preference as a document."""
        doc: dict[str, Any] = {"mode": self.__mongos_mode}
        if self.__tag_sets not in (None, [{}]):
            doc["tags"] = self.__tag_sets
        if self.__max_staleness != -1:
            doc["maxStalenessSeconds"] = self.__max_staleness
        return doc

    @property
    def mode(self) -> int:
        """The mode of this read preference instance."""
        return self.__mode

    @property
    def tag_sets(self) -> _TagSets:
        """Set ``tag_sets`` to a list of dictionaries like [{'dc': 'ny'}] to
        read only from members whose ``dc`` tag has the value ``"ny"``.
        To specify a priority-order for tag sets, provide a list of
        tag sets: ``[{'dc': 'ny'}, {'dc': 'la'}, {}]``. A final, empty tag
        set, ``{}``, means "read from any member that matches the mode,
        ignoring tags." The selector tries each set of tags in turn
        until it finds a set of tags with at least one matching member.
        """
        return list(self.__tag_sets) if self.__tag_sets else [{}]

    @property
    def max_staleness(self) -> int:
        """The maximum estimated length of time (in seconds) a replica set
        secondary can fall behind the primary in replication before it will
        no longer be selected for operations, or -1 for no maximum.
        """
        return self.__max_staleness

    @property
    def min_wire_version(self) -> int:
        """The wire protocol version the server must support.

        Some read preferences impose version requirements on all servers
        (e.g. maxStalenessSeconds requires MongoDB 3.4 / maxWireVersion 5).

        All servers' maxWireVersion must be at least this read preference's
        `min_wire_version`, or the driver raises
        :exc:`~mongo_sdam.errors.ConfigurationError`.
        """
        return 0 if self.__max_staleness == -1 else 5

    def _select_members(
        self,
        selection: Selection,
        role_selector: Callable[[Selection], Selection],
        role_reason: str,
        rejections: Optional[Rejections],
    ) -> Selection:
        """Filter by role, then max staleness, then tag sets."""
        members = record_rejections(rejections, selection, role_selector(selection), role_reason)
        fresh = record_rejections(
            rejections,
            members,
            max_staleness_selectors.select(self.max_staleness, members),
            "estimated staleness exceeds maxStalenessSeconds=%d" % self.max_staleness,
        )
        return record_rejections(
            rejections,
            fresh,
            apply_tag_sets(self.tag_sets, fresh),
            "does not match tag sets %r" % (self.tag_sets,),
        )

    def __repr__(self) -> str:
        return "{}(tag_sets={!r}, max_staleness={!r})".format(
            self.name,
            self.__tag_sets,
            self.__max_staleness,
        )

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, _ServerMode):
            return (
                self.mode == other.mode
                and self.tag_sets == other.tag_sets
                and self.max_staleness == other.max_staleness
            )
        return NotImplemented

    def __ne__(self, other: Any) -> bool:
        return not self == other

    def __getstate__(self) -> dict[str, Any]:
        """Return value of object for pickling.

        Needed explicitly because __slots__() defined.
        """
        return {
            "mode": self.__mode,
            "tag_sets": self.__tag_sets,
            "max_staleness": self.__max_staleness,
        }

    def __setstate__(self, value: Mapping[str, Any]) -> None:
        """Restore from pickling."""
        self.__mode = value["mode"]
        self.__mongos_mode = _MONGOS_MODES[self.__mode]
        self.__tag_sets = _validate_tag_sets(value["tag_sets"])
        self.__max_staleness = _validate_max_staleness(value["max_staleness"])

    def __call__(self, selection: Selection, rejections: Optional[Rejections] = None) -> Selection:
        return selection


class Primary(_ServerMode):
    """Primary read preference.

    * When directly connected to one mongod queries are allowed if the server
      is standalone or a replica set primary.
    * When connected to a mongos queries are sent to the primary of a shard.
    * When connected to a replica set queries are sent to the primary of
      the replica set.
    """

    __slots__ = ()

    def __init__(self) -> None:
        super().__init__(_PRIMARY)

    def __call__(self, selection: Selection, rejections: Optional[Rejections] = None) -> Selection:
        """Apply this read preference to a Selection."""
        return record_rejections(
            rejections, selection, selection.primary_selection, "not the primary"
        )

    def __repr__(self) -> str:
        return "Primary()"

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, _ServerMode):
            return other.mode == _PRIMARY
        return NotImplemented


class PrimaryPreferred(_ServerMode):
    """PrimaryPreferred read preference.

    * When directly connected to one mongod queries are allowed to standalone
      servers, to a replica set primary, or to replica set secondaries.
    * When connected to a mongos queries are sent to the primary of a shard if
      available, otherwise a shard secondary.
    * When connected to a replica set queries are sent to the primary if
      available, otherwise a secondary.

    :param tag_sets: The :attr:`~tag_sets` to use if the primary is not
        available.
    :param max_staleness: (integer, in seconds) The maximum estimated
        length of time a replica set secondary can fall behind the primary in
        replication before it will no longer be selected for operations.
        Default -1, meaning no maximum. If it is set, it must be at least
        twice the heartbeat frequency.
    """

    __slots__ = ()

    def __init__(self, tag_sets: Optional[_TagSets] = None, max_staleness: int = -1) -> None:
        super().__init__(_PRIMARY_PREFERRED, tag_sets, max_staleness)

    def __call__(self, selection: Selection, rejections: Optional[Rejections] = None) -> Selection:
        """Apply this read preference to Selection."""
        if selection.primary:
            return record_rejections(
                rejections, selection, selection.primary_selection, "not the primary"
            )
        else:
            return self._select_members(
                selection, secondary_server_selector, "not a secondary", rejections
            )


class Secondary(_ServerMode):
    """Secondary read preference.

    * When directly connected to one mongod queries are allowed to standalone
      servers, to a replica set primary, or to replica set secondaries.
    * When connected to a mongos queries are distributed among shard
      secondaries. An error is raised if no secondaries are available.
    * When connected to a replica set queries are distributed among
      secondaries. An error is raised if no secondaries are available.

    :param tag_sets: The :attr:`~tag_sets` for this read preference.
    :param max_staleness: (integer, in seconds) The maximum estimated
        length of time a replica set secondary can fall behind the primary in
        replication before it will no longer be selected for operations.
        Default -1, meaning no maximum. If it is set, it must be at least
        twice the heartbeat frequency.
    """

    __slots__ = ()

    def __init__(self, tag_sets: Optional[_TagSets] = None, max_staleness: int = -1) -> None:
        super().__init__(_SECONDARY, tag_sets, max_staleness)

    def __call__(self, selection: Selection, rejections: Optional[Rejections] = None) -> Selection:
        """Apply this read preference to Selection."""
        return self._select_members(
            selection, secondary_server_selector, "not a secondary", rejections
        )


class SecondaryPreferred(_ServerMode):
    """SecondaryPreferred read preference.

    * When directly connected to one mongod queries are allowed to standalone
      servers, to a replica set primary, or to replica set secondaries.
    * When connected to a mongos queries are distributed among shard
      secondaries, or the shard primary if no secondary is available.
    * When connected to a replica set queries are distributed among
      secondaries, or the primary if no secondary is available.

    :param tag_sets: The :attr:`~tag_sets` for this read preference.
    :param max_staleness: (integer, in seconds) The maximum estimated
        length of time a replica set secondary can fall behind the primary in
        replication before it will no longer be selected for operations.
        Default -1, meaning no maximum. If it is set, it must be at least
        twice the heartbeat frequency.
    """

    __slots__ = ()

    def __init__(self, tag_sets: Optional[_TagSets] = None, max_staleness: int = -1) -> None:
        super().__init__(_SECONDARY_PREFERRED, tag_sets, max_staleness)

    def __call__(self, selection: Selection, rejections: Optional[Rejections] = None) -> Selection:
        """Apply this read preference to Selection."""
        secondary_rejections: dict = {}
        secondaries = self._select_members(
            selection, secondary_server_selector, "not a secondary", secondary_rejections
        )

        if secondaries:
            result = secondaries
        else:
            result = selection.primary_selection

        if rejections is not None:
            chosen = set(result.addresses)
            for address, reason in secondary_rejections.items():
                if address not in chosen:
                    rejections.setdefault(address, reason)
        return result


class Nearest(_ServerMode):
    """Nearest read preference.

    * When directly connected to one mongod queries are allowed to standalone
      servers, to a replica set primary, or to replica set secondaries.
    * When connected to a mongos queries are distributed among all members of
      a shard.
    * When connected to a replica set queries are distributed among all
      members.

    :param tag_sets: The :attr:`~tag_sets` for this read preference.
    :param max_staleness: (integer, in seconds) The maximum estimated
        length of time a replica set secondary can fall behind the primary in
        replication before it will no longer be selected for operations.
        Default -1, meaning no maximum. If it is set, it must be at least
        twice the heartbeat frequency.
    """

    __slots__ = ()

    def __init__(self, tag_sets: Optional[_TagSets] = None, max_staleness: int = -1) -> None:
        super().__init__(_NEAREST, tag_sets, max_staleness)

    def __call__(self, selection: Selection, rejections: Optional[Rejections] = None) -> Selection:
        """Apply this read preference to Selection."""
        return self._select_members(
            selection, readable_server_selector, "not a data-bearing member", rejections
        )


_ALL_READ_PREFERENCES = (Primary, PrimaryPreferred, Secondary, SecondaryPreferred, Nearest)


def make_read_preference(
    mode: int, tag_sets: Optional[_TagSets], max_staleness: int = -1
) -> _ServerMode:
    if mode == _PRIMARY:
        if tag_sets not in (None, [{}]):
            raise ConfigurationError("Read preference primary cannot be combined with tags")
        if max_staleness != -1:
            raise ConfigurationError(
                "Read preference primary cannot be combined with maxStalenessSeconds"
            )
        return Primary()
    return _ALL_READ_PREFERENCES[mode](tag_sets, max_staleness)  # type: ignore


class ReadPreference:
    """An enum that defines some commonly used read preference modes.

    Apps can also create a custom read preference, for example::

       Nearest(tag_sets=[{"node":"analytics"}])

    A read preference is used in three cases:

    A :class:`~mongo_sdam.cluster.Cluster` connected directly to a single
    mongod:

    - ``PRIMARY``: Queries are allowed if the server is standalone or a replica
      set primary.
    - All other modes allow queries to standalone servers, to a replica set
      primary, or to replica set secondaries.

    A :class:`~mongo_sdam.cluster.Cluster` connected to a mongos, with a
    sharded cluster of replica sets:

    - All modes are passed through to the mongos; every mongos is a
      candidate regardless of mode.

    A :class:`~mongo_sdam.cluster.Cluster` connected to a replica set:

    - ``PRIMARY``: Queries are sent to the primary of the replica set.
    - ``PRIMARY_PREFERRED``: Queries are sent to the primary if available,
      otherwise a secondary.
    - ``SECONDARY``: Queries are distributed among secondaries. An error
      is raised if no secondaries are available.
    - ``SECONDARY_PREFERRED``: Queries are distributed among secondaries,
      or the primary if no secondary is available.
    - ``NEAREST``: Queries are distributed among all members.
    """

    PRIMARY = Primary()
    PRIMARY_PREFERRED = PrimaryPreferred()
    SECONDARY = Secondary()
    SECONDARY_PREFERRED = SecondaryPreferred()
    NEAREST = Nearest()


def read_pref_mode_from_name(name: str) -> int:
    """Get the read preference mode from mongos/uri name."""
    return _MONGOS_MODES.index(name)


class MovingAverage:
    """Tracks an exponentially-weighted moving average."""

    average: Optional[float]

    def __init__(self) -> None:
        self.average = None

    def add_sample(self, sample: float) -> None:
        if sample < 0:
            # Likely system time change while waiting for hello response
            # and not using time.monotonic. Ignore it.
            return
        if self.average is None:
            self.average = sample
        else:
            # Exponentially weighted average with alpha = 0.2.
            self.average = 0.8 * self.average + 0.2 * sample

    def get(self) -> Optional[float]:
        """Get the calculated average, or None if no samples yet."""
        return self.average

    def reset(self) -> None:
        self.average = None
