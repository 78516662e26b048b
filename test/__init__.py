# Copyright 2010-present MongoDB, Inc.
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

"""Test suite for mongo_sdam."""
from __future__ import annotations

import gc
import logging
import traceback
import unittest
from functools import wraps
from typing import no_type_check

from mongo_sdam import common, periodic_executor

__all__ = ["client_knobs", "setup", "teardown", "unittest"]


class client_knobs:
    def __init__(
        self,
        heartbeat_frequency=None,
        min_heartbeat_interval=None,
        pool_maintenance_frequency=None,
        server_selection_timeout=None,
    ):
        self.heartbeat_frequency = heartbeat_frequency
        self.min_heartbeat_interval = min_heartbeat_interval
        self.pool_maintenance_frequency = pool_maintenance_frequency
        self.server_selection_timeout = server_selection_timeout

        self.old_heartbeat_frequency = None
        self.old_min_heartbeat_interval = None
        self.old_pool_maintenance_frequency = None
        self.old_server_selection_timeout = None
        self._enabled = False
        self._stack = None

    def enable(self):
        self.old_heartbeat_frequency = common.HEARTBEAT_FREQUENCY
        self.old_min_heartbeat_interval = common.MIN_HEARTBEAT_INTERVAL
        self.old_pool_maintenance_frequency = common.POOL_MAINTENANCE_FREQUENCY
        self.old_server_selection_timeout = common.SERVER_SELECTION_TIMEOUT

        if self.heartbeat_frequency is not None:
            common.HEARTBEAT_FREQUENCY = self.heartbeat_frequency

        if self.min_heartbeat_interval is not None:
            common.MIN_HEARTBEAT_INTERVAL = self.min_heartbeat_interval

        if self.pool_maintenance_frequency is not None:
            common.POOL_MAINTENANCE_FREQUENCY = self.pool_maintenance_frequency

        if self.server_selection_timeout is not None:
            common.SERVER_SELECTION_TIMEOUT = self.server_selection_timeout
        self._enabled = True
        # Store the allocation traceback to catch non-disabled client_knobs.
        self._stack = "".join(traceback.format_stack())

    def __enter__(self):
        self.enable()

    @no_type_check
    def disable(self):
        common.HEARTBEAT_FREQUENCY = self.old_heartbeat_frequency
        common.MIN_HEARTBEAT_INTERVAL = self.old_min_heartbeat_interval
        common.POOL_MAINTENANCE_FREQUENCY = self.old_pool_maintenance_frequency
        common.SERVER_SELECTION_TIMEOUT = self.old_server_selection_timeout
        self._enabled = False

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disable()

    def __call__(self, func):
        def make_wrapper(f):
            @wraps(f)
            def wrap(*args, **kwargs):
                with self:
                    return f(*args, **kwargs)

            return wrap

        return make_wrapper(func)

    def __del__(self):
        if self._enabled:
            msg = (
                "ERROR: client_knobs still enabled! HEARTBEAT_FREQUENCY=%s, "
                "MIN_HEARTBEAT_INTERVAL=%s, POOL_MAINTENANCE_FREQUENCY=%s, "
                "SERVER_SELECTION_TIMEOUT=%s, stack:\n%s"
                % (
                    common.HEARTBEAT_FREQUENCY,
                    common.MIN_HEARTBEAT_INTERVAL,
                    common.POOL_MAINTENANCE_FREQUENCY,
                    common.SERVER_SELECTION_TIMEOUT,
                    self._stack,
                )
            )
            self.disable()
            raise Exception(msg)


def setup():
    logging.getLogger("mongo_sdam").addHandler(logging.NullHandler())


def teardown():
    gc.collect()
    # Stop any executor threads a test left behind.
    periodic_executor._shutdown_executors()
