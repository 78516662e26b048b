# Copyright 2016-present MongoDB, Inc.
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

"""Test maxStalenessSeconds support."""
from __future__ import annotations

import datetime
import sys

sys.path[0:0] = [""]

from test import unittest

from mongo_sdam import max_staleness_selectors
from mongo_sdam.errors import ConfigurationError
from mongo_sdam.hello import Hello, HelloCompat
from mongo_sdam.read_preferences import Nearest, Secondary, SecondaryPreferred
from mongo_sdam.server_description import ServerDescription
from mongo_sdam.server_selectors import Selection
from mongo_sdam.settings import TopologySettings
from mongo_sdam.topology_description import TOPOLOGY_TYPE, TopologyDescription

NOW = datetime.datetime(2020, 6, 1, 12, 0, 0)


def member(host, primary=False, seconds_behind=None):
    doc = {
        "ok": 1,
        HelloCompat.LEGACY_CMD: primary,
        "secondary": not primary,
        "setName": "rs",
        "hosts": ["a", "b", "c", "d"],
        "maxWireVersion": 17,
    }
    if seconds_behind is not None:
        doc["lastWrite"] = {"lastWriteDate": NOW - datetime.timedelta(seconds=seconds_behind)}
    return ServerDescription((host, 27017), Hello(doc), 0.001)


def make_description(*server_descriptions):
    settings = TopologySettings(
        seeds=[sd.address for sd in server_descriptions], heartbeat_frequency=10
    )
    sds = {sd.address: sd for sd in server_descriptions}
    if any(sd.server_type_name == "RSPrimary" for sd in server_descriptions):
        topology_type = TOPOLOGY_TYPE.ReplicaSetWithPrimary
    else:
        topology_type = TOPOLOGY_TYPE.ReplicaSetNoPrimary
    return TopologyDescription(topology_type, sds, "rs", None, None, settings)


def hosts(selection):
    return sorted(sd.address[0] for sd in selection)


class TestMaxStaleness(unittest.TestCase):
    def test_validate(self):
        max_staleness_selectors.validate(-1, 10)
        max_staleness_selectors.validate(20, 10)
        with self.assertRaises(ConfigurationError) as ctx:
            max_staleness_selectors.validate(19, 10)
        self.assertIn("twice heartbeatFrequencyMS", str(ctx.exception))

    def test_no_primary(self):
        td = make_description(
            member("a", seconds_behind=0),
            member("b", seconds_behind=30),
            member("c", seconds_behind=100),
        )
        selection = Selection.from_topology_description(td)
        # Staleness is 10, 40 and 110 seconds.
        self.assertEqual(["a", "b"], hosts(max_staleness_selectors.select(90, selection)))
        self.assertEqual(["a"], hosts(max_staleness_selectors.select(30, selection)))
        self.assertEqual(
            ["a", "b", "c"], hosts(max_staleness_selectors.select(-1, selection))
        )

    def test_with_primary(self):
        td = make_description(
            member("a", primary=True, seconds_behind=0),
            member("b", seconds_behind=5),
            member("c", seconds_behind=50),
        )
        selection = Selection.from_topology_description(td)
        self.assertEqual(["a", "b", "c"], hosts(max_staleness_selectors.select(90, selection)))
        # The primary is never filtered.
        self.assertEqual(["a", "b"], hosts(max_staleness_selectors.select(30, selection)))

    def test_primary_without_last_write_date(self):
        td = make_description(
            member("a", primary=True),
            member("b", seconds_behind=500),
        )
        selection = Selection.from_topology_description(td)
        self.assertEqual(["a", "b"], hosts(max_staleness_selectors.select(30, selection)))

    def test_secondary_without_last_write_date(self):
        td = make_description(
            member("a", seconds_behind=0),
            member("b", seconds_behind=100),
            member("c"),
        )
        selection = Selection.from_topology_description(td)
        self.assertEqual(["a", "c"], hosts(max_staleness_selectors.select(30, selection)))

    def test_select_validates(self):
        td = make_description(member("a", seconds_behind=0))
        selection = Selection.from_topology_description(td)
        self.assertRaises(ConfigurationError, max_staleness_selectors.select, 5, selection)


class TestMaxStalenessReadPreference(unittest.TestCase):
    def setUp(self):
        self.td = make_description(
            member("a", primary=True, seconds_behind=0),
            member("b", seconds_behind=5),
            member("c", seconds_behind=200),
        )

    def test_secondary(self):
        result = self.td.apply_selector(Secondary(max_staleness=60))
        self.assertEqual(["b"], hosts(result))

    def test_rejection_reason(self):
        rejections = {}
        self.td.apply_selector(Nearest(max_staleness=60), rejections=rejections)
        self.assertEqual(
            "estimated staleness exceeds maxStalenessSeconds=60", rejections[("c", 27017)]
        )

    def test_secondary_preferred_falls_back_to_primary(self):
        td = make_description(
            member("a", primary=True, seconds_behind=0),
            member("c", seconds_behind=200),
        )
        result = td.apply_selector(SecondaryPreferred(max_staleness=60))
        self.assertEqual(["a"], hosts(result))

    def test_too_small(self):
        self.assertRaises(
            ConfigurationError, self.td.apply_selector, Secondary(max_staleness=15)
        )


if __name__ == "__main__":
    unittest.main()
