# Copyright 2024-present MongoDB, Inc.
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

"""Test the transitions of updated_topology_description."""
from __future__ import annotations

import sys

sys.path[0:0] = [""]

from test import unittest

from bson.objectid import ObjectId

from mongo_sdam.hello import Hello, HelloCompat
from mongo_sdam.server_description import ServerDescription
from mongo_sdam.server_type import SERVER_TYPE
from mongo_sdam.settings import TopologySettings
from mongo_sdam.topology_description import (
    TOPOLOGY_TYPE,
    TopologyDescription,
    updated_topology_description,
)

E1 = ObjectId("000000000000000000000001")
E2 = ObjectId("000000000000000000000002")


def addr(host):
    return (host, 27017)


def create_description(seeds=("a", "b", "c"), replica_set_name=None):
    settings = TopologySettings([addr(s) for s in seeds], replica_set_name=replica_set_name)
    return TopologyDescription(
        settings.get_topology_type(),
        settings.get_server_descriptions(),
        settings.replica_set_name,
        None,
        None,
        settings,
    )


def member(host, **fields):
    doc = {"ok": 1, "minWireVersion": 0, "maxWireVersion": 6}
    doc.update(fields)
    return ServerDescription(addr(host), Hello(doc), 0)


def rs_primary(host, set_version=None, election_id=None, hosts=("a", "b", "c"), set_name="rs"):
    fields = {HelloCompat.LEGACY_CMD: True, "setName": set_name, "hosts": list(hosts)}
    if set_version is not None:
        fields["setVersion"] = set_version
    if election_id is not None:
        fields["electionId"] = election_id
    return member(host, **fields)


def rs_secondary(host, hosts=("a", "b", "c"), set_name="rs", **fields):
    fields.update(
        {
            HelloCompat.LEGACY_CMD: False,
            "secondary": True,
            "setName": set_name,
            "hosts": list(hosts),
        }
    )
    return member(host, **fields)


def standalone(host):
    return member(host, **{HelloCompat.LEGACY_CMD: True})


def apply(td, *server_descriptions):
    for sd in server_descriptions:
        td = updated_topology_description(td, sd)
    return td


def primaries(td):
    return sorted(
        address
        for address, sd in td.server_descriptions().items()
        if sd.server_type == SERVER_TYPE.RSPrimary
    )


def server_type(td, host):
    return td.server_descriptions()[addr(host)].server_type


class TestPrimaryRules(unittest.TestCase):
    def test_primary_discovered(self):
        td = apply(create_description(), rs_primary("a", 1, E1))
        self.assertEqual(TOPOLOGY_TYPE.ReplicaSetWithPrimary, td.topology_type)
        self.assertEqual("rs", td.replica_set_name)
        self.assertEqual([addr("a")], primaries(td))
        self.assertEqual(1, td.max_set_version)
        self.assertEqual(E1, td.max_election_id)

    def test_stale_primary_becomes_unknown(self):
        td = apply(create_description(), rs_primary("a", 2, E2))
        td = apply(td, rs_primary("b", 1, E1))
        self.assertEqual([addr("a")], primaries(td))
        self.assertEqual(SERVER_TYPE.Unknown, server_type(td, "b"))
        self.assertEqual(TOPOLOGY_TYPE.ReplicaSetWithPrimary, td.topology_type)
        self.assertEqual(2, td.max_set_version)
        self.assertEqual(E2, td.max_election_id)

    def test_stale_primary_without_election_id(self):
        td = apply(create_description(), rs_primary("a", 2, E2))
        td = apply(td, rs_primary("b", 1))
        self.assertEqual([addr("a")], primaries(td))
        self.assertEqual(SERVER_TYPE.Unknown, server_type(td, "b"))
        self.assertEqual((2, E2), (td.max_set_version, td.max_election_id))

    def test_stale_primary_without_set_version(self):
        td = apply(create_description(), rs_primary("a", 1, E1))
        td = apply(td, rs_primary("b"))
        self.assertEqual([addr("a")], primaries(td))
        self.assertEqual(SERVER_TYPE.Unknown, server_type(td, "b"))

    def test_lower_election_id_same_set_version(self):
        td = apply(create_description(), rs_primary("a", 1, E2))
        td = apply(td, rs_primary("b", 1, E1))
        self.assertEqual([addr("a")], primaries(td))

    def test_stale_primary_does_not_change_hosts(self):
        td = apply(create_description(), rs_primary("a", 2, E2))
        td = apply(td, rs_primary("b", 1, E1, hosts=("b", "d")))
        self.assertEqual({addr("a"), addr("b"), addr("c")}, set(td.server_descriptions()))

    def test_new_primary_replaces_old(self):
        td = apply(create_description(), rs_primary("a", 1, E1))
        td = apply(td, rs_primary("b", 2, E2))
        self.assertEqual([addr("b")], primaries(td))
        self.assertEqual(SERVER_TYPE.Unknown, server_type(td, "a"))
        self.assertEqual((2, E2), (td.max_set_version, td.max_election_id))

    def test_higher_set_version_without_election_id(self):
        td = apply(create_description(), rs_primary("a", 1, E1))
        td = apply(td, rs_primary("b", 2))
        self.assertEqual([addr("b")], primaries(td))
        self.assertEqual((2, None), (td.max_set_version, td.max_election_id))

    def test_primary_without_version_accepted_when_none_recorded(self):
        td = apply(create_description(), rs_primary("a"))
        td = apply(td, rs_primary("b"))
        self.assertEqual([addr("b")], primaries(td))
        self.assertIsNone(td.max_set_version)
        self.assertIsNone(td.max_election_id)

    def test_primary_lost_then_new_primary(self):
        td = apply(create_description(), rs_primary("a", 1, E1))
        self.assertEqual(TOPOLOGY_TYPE.ReplicaSetWithPrimary, td.topology_type)

        # A network error makes the primary Unknown.
        td = apply(td, ServerDescription(addr("a"), error=OSError("reset")))
        self.assertEqual(TOPOLOGY_TYPE.ReplicaSetNoPrimary, td.topology_type)
        self.assertEqual(SERVER_TYPE.Unknown, server_type(td, "a"))
        self.assertEqual(SERVER_TYPE.Unknown, server_type(td, "b"))
        self.assertEqual(SERVER_TYPE.Unknown, server_type(td, "c"))
        self.assertEqual([], primaries(td))

        # The same pair the old primary had is not stale.
        td = apply(td, rs_primary("b", 1, E1))
        self.assertEqual(TOPOLOGY_TYPE.ReplicaSetWithPrimary, td.topology_type)
        self.assertEqual([addr("b")], primaries(td))

    def test_primary_prunes_unlisted_hosts(self):
        td = apply(create_description(), rs_primary("a", hosts=("a", "b", "d")))
        self.assertEqual({addr("a"), addr("b"), addr("d")}, set(td.server_descriptions()))
        self.assertEqual(SERVER_TYPE.Unknown, server_type(td, "d"))

    def test_primary_with_wrong_set_name_removed(self):
        td = create_description(replica_set_name="rs")
        self.assertEqual(TOPOLOGY_TYPE.ReplicaSetNoPrimary, td.topology_type)
        td = apply(td, rs_primary("a", set_name="other"))
        self.assertNotIn(addr("a"), td.server_descriptions())
        self.assertEqual(TOPOLOGY_TYPE.ReplicaSetNoPrimary, td.topology_type)
        self.assertEqual("rs", td.replica_set_name)


class TestMemberRules(unittest.TestCase):
    def test_standalone_removed_with_several_seeds(self):
        td = apply(create_description(), standalone("a"))
        self.assertNotIn(addr("a"), td.server_descriptions())
        self.assertEqual(TOPOLOGY_TYPE.Unknown, td.topology_type)

    def test_standalone_single_seed(self):
        td = apply(create_description(seeds=("a",)), standalone("a"))
        self.assertEqual(TOPOLOGY_TYPE.Single, td.topology_type)
        self.assertEqual(SERVER_TYPE.Standalone, server_type(td, "a"))

    def test_secondary_with_wrong_set_name_removed(self):
        td = apply(create_description(replica_set_name="rs"), rs_secondary("b", set_name="other"))
        self.assertNotIn(addr("b"), td.server_descriptions())
        self.assertEqual(TOPOLOGY_TYPE.ReplicaSetNoPrimary, td.topology_type)

    def test_secondary_with_wrong_set_name_removed_with_primary(self):
        td = apply(create_description(), rs_primary("a", 1, E1))
        td = apply(td, rs_secondary("b", set_name="other"))
        self.assertNotIn(addr("b"), td.server_descriptions())
        self.assertEqual([addr("a")], primaries(td))

    def test_secondary_adds_hosts_without_removing(self):
        td = apply(create_description(), rs_secondary("b", hosts=("b", "d")))
        self.assertEqual(TOPOLOGY_TYPE.ReplicaSetNoPrimary, td.topology_type)
        self.assertEqual(
            {addr("a"), addr("b"), addr("c"), addr("d")}, set(td.server_descriptions())
        )

    def test_mongos_removed_from_replica_set(self):
        td = apply(create_description(), rs_primary("a", 1, E1))
        td = apply(td, member("b", msg="isdbgrid", **{HelloCompat.LEGACY_CMD: True}))
        self.assertNotIn(addr("b"), td.server_descriptions())
        self.assertEqual(TOPOLOGY_TYPE.ReplicaSetWithPrimary, td.topology_type)


class TestInvariants(unittest.TestCase):
    def updates(self):
        return [
            rs_primary("a", 1, E1),
            rs_secondary("b"),
            rs_primary("b", 2, E1),
            rs_primary("a", 1, E2),
            ServerDescription(addr("b")),
            rs_primary("c", 2, E2),
            rs_primary("a", 2, E1),
            rs_primary("b"),
            rs_secondary("c", hosts=("a", "b", "c", "d")),
            rs_primary("d", 3, E1, hosts=("a", "d")),
            rs_primary("a", 3, E1, hosts=("a", "d")),
        ]

    def test_at_most_one_primary(self):
        td = create_description()
        for sd in self.updates():
            td = updated_topology_description(td, sd)
            self.assertLessEqual(len(primaries(td)), 1, td)

    def test_applying_twice_is_idempotent(self):
        td = create_description()
        for sd in self.updates():
            once = updated_topology_description(td, sd)
            twice = updated_topology_description(once, sd)
            self.assertEqual(once, twice)
            td = once

    def test_lower_pair_never_changes_primary(self):
        td = apply(create_description(), rs_primary("a", 2, E2))
        for sd in [
            rs_primary("b", 2, E1),
            rs_primary("b", 1, E2),
            rs_primary("b", 1),
            rs_primary("b", None, E2),
            rs_primary("b"),
        ]:
            updated = updated_topology_description(td, sd)
            self.assertEqual([addr("a")], primaries(updated), sd)

    def test_input_not_modified(self):
        td = create_description()
        before = td.server_descriptions()
        apply(td, rs_primary("a", hosts=("a", "d")))
        self.assertEqual(before, td.server_descriptions())
        self.assertEqual(TOPOLOGY_TYPE.Unknown, td.topology_type)


if __name__ == "__main__":
    unittest.main()
