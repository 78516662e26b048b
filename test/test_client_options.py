# Copyright 2020-present MongoDB, Inc.
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

import sys

sys.path[0:0] = [""]

from test import unittest
from test.utils import HeartbeatEventListener

from mongo_sdam import common
from mongo_sdam.client_options import ClientOptions
from mongo_sdam.common import _CaseInsensitiveDictionary
from mongo_sdam.read_preferences import Nearest, ReadPreference, SecondaryPreferred


class TestClientOptions(unittest.TestCase):
    def test_defaults(self):
        opts = ClientOptions({})
        self.assertEqual(ReadPreference.PRIMARY, opts.read_preference)
        self.assertIsNone(opts.replica_set_name)
        self.assertEqual(common.SERVER_SELECTION_TIMEOUT, opts.server_selection_timeout)
        self.assertEqual(common.HEARTBEAT_FREQUENCY, opts.heartbeat_frequency)
        self.assertEqual(common.LOCAL_THRESHOLD_MS, opts.local_threshold_ms)
        self.assertIsNone(opts.direct_connection)
        self.assertEqual(common.THREADED, opts.monitoring_mode)
        self.assertFalse(opts.server_selection_try_once)
        self.assertEqual([], opts.event_listeners)
        pool = opts.pool_options
        self.assertEqual(common.MAX_POOL_SIZE, pool.max_pool_size)
        self.assertEqual(common.CONNECT_TIMEOUT, pool.connect_timeout)
        self.assertEqual({}, pool.non_default_options)

    def test_values(self):
        listener = HeartbeatEventListener()
        opts = ClientOptions(
            _CaseInsensitiveDictionary(
                {
                    "replicaSet": "rs",
                    "serverSelectionTimeoutMS": 5,
                    "heartbeatFrequencyMS": 1,
                    "localThresholdMS": 30,
                    "directConnection": False,
                    "maxPoolSize": 10,
                    "minPoolSize": 2,
                    "maxConnecting": 4,
                    "appname": "app",
                    "event_listeners": [listener],
                }
            )
        )
        self.assertEqual("rs", opts.replica_set_name)
        self.assertEqual(5, opts.server_selection_timeout)
        self.assertEqual(1, opts.heartbeat_frequency)
        self.assertEqual(30, opts.local_threshold_ms)
        self.assertFalse(opts.direct_connection)
        self.assertEqual([listener], opts.event_listeners)
        self.assertEqual(
            {"maxPoolSize": 10, "minPoolSize": 2, "maxConnecting": 4},
            opts.pool_options.non_default_options,
        )
        self.assertEqual("app", opts.pool_options.appname)

    def test_read_preference(self):
        opts = ClientOptions(
            {
                "readpreference": "secondaryPreferred",
                "readpreferencetags": [{"dc": "ny"}, {}],
                "maxstalenessseconds": 90,
            }
        )
        self.assertEqual(SecondaryPreferred([{"dc": "ny"}, {}], 90), opts.read_preference)
        # An instance wins over the URI style options.
        opts = ClientOptions({"read_preference": Nearest(), "readpreference": "secondary"})
        self.assertEqual(Nearest(), opts.read_preference)

    def test_min_pool_size_above_max(self):
        self.assertRaises(ValueError, ClientOptions, {"maxpoolsize": 1, "minpoolsize": 2})

    def test_try_once(self):
        opts = ClientOptions({"monitoringmode": "single_threaded"})
        self.assertTrue(opts.server_selection_try_once)
        self.assertFalse(
            ClientOptions(
                {"monitoringmode": "single_threaded", "serverselectiontryonce": False}
            ).server_selection_try_once
        )
        self.assertTrue(ClientOptions({"serverselectiontryonce": True}).server_selection_try_once)


if __name__ == "__main__":
    unittest.main()
