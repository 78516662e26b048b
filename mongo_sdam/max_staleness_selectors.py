# Copyright 2016-present MongoDB, Inc.
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

"""Criteria to select ServerDescriptions based on maxStalenessSeconds.

When there is a known primary P, a secondary S's staleness is estimated
with this formula:

  (S.lastUpdateTime - S.lastWriteDate) - (P.lastUpdateTime - P.lastWriteDate)
  + heartbeatFrequency

When there is no known primary, a secondary S's staleness is estimated with:

  SMax.lastWriteDate - S.lastWriteDate + heartbeatFrequency

where "SMax" is the secondary with the greatest lastWriteDate.

A secondary that has not reported a lastWriteDate is never filtered out.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from mongo_sdam.errors import ConfigurationError
from mongo_sdam.server_type import SERVER_TYPE

if TYPE_CHECKING:
    from mongo_sdam.server_selectors import Selection


def validate(max_staleness: int, heartbeat_frequency: float) -> None:
    """Raise ConfigurationError if max_staleness is set and too small."""
    if max_staleness == -1:
        return

    if max_staleness < 2 * heartbeat_frequency:
        raise ConfigurationError(
            "maxStalenessSeconds must be at least twice heartbeatFrequencyMS "
            "(%d seconds), not %d" % (2 * heartbeat_frequency, max_staleness)
        )


def _with_primary(max_staleness: int, selection: Selection) -> Selection:
    """Apply max_staleness, in seconds, to a Selection with a known primary."""
    primary = selection.primary
    assert primary
    if primary.last_write_date is None:
        return selection

    sds = []
    for s in selection.server_descriptions:
        if s.server_type == SERVER_TYPE.RSSecondary and s.last_write_date is not None:
            staleness = (
                (s.last_update_time - s.last_write_date)
                - (primary.last_update_time - primary.last_write_date)
                + selection.heartbeat_frequency
            )

            if staleness <= max_staleness:
                sds.append(s)
        else:
            sds.append(s)

    return selection.with_server_descriptions(sds)


def _no_primary(max_staleness: int, selection: Selection) -> Selection:
    """Apply max_staleness, in seconds, to a Selection with no known primary."""
    smax = selection.secondary_with_max_last_write_date()
    if not smax:
        # No secondary has reported a lastWriteDate.
        return selection
    assert smax.last_write_date is not None

    sds = []
    for s in selection.server_descriptions:
        if s.server_type == SERVER_TYPE.RSSecondary and s.last_write_date is not None:
            staleness = smax.last_write_date - s.last_write_date + selection.heartbeat_frequency

            if staleness <= max_staleness:
                sds.append(s)
        else:
            sds.append(s)

    return selection.with_server_descriptions(sds)


def select(max_staleness: int, selection: Selection) -> Selection:
    """Apply max_staleness, in seconds, to a Selection."""
    if max_staleness == -1:
        return selection

    # Server Selection: "A driver MUST raise an error if the TopologyType is
    # ReplicaSetWithPrimary or ReplicaSetNoPrimary and maxStalenessSeconds
    # is less than twice heartbeatFrequencyMS."
    validate(max_staleness, selection.heartbeat_frequency)

    if selection.primary:
        return _with_primary(max_staleness, selection)
    else:
        return _no_primary(max_staleness, selection)
