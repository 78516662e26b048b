# Copyright 2019-present MongoDB, Inc.
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

"""DNS lookups behind ``mongodb+srv://`` URIs, using dnspython."""
from __future__ import annotations

import ipaddress
from typing import Any, Optional, Union

from dns import resolver

from mongo_sdam.common import CONNECT_TIMEOUT
from mongo_sdam.errors import ConfigurationError


def _as_str(text: Union[str, bytes]) -> str:
    # dnspython returns bytes from some calls, depending on its version.
    return text.decode() if isinstance(text, bytes) else text


def _resolve(*args: Any, **kwargs: Any) -> resolver.Answer:
    return resolver.resolve(*args, **kwargs)


def _invalid_host(what: str) -> ConfigurationError:
    return ConfigurationError(
        f"Invalid URI host: {what} is not a valid hostname for 'mongodb+srv://'. "
        "Did you mean to use 'mongodb://'?"
    )


def _is_ip_address(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


class _SrvResolver:
    """Looks up the SRV and TXT records of one ``mongodb+srv://`` host.

    :param fqdn: the host name from the URI. It needs at least three labels,
        since every SRV target must share its parent domain.
    :param connect_timeout: seconds allowed for each lookup
    """

    def __init__(
        self,
        fqdn: str,
        connect_timeout: Optional[float],
        srv_service_name: str = "mongodb",
    ):
        if _is_ip_address(fqdn):
            raise _invalid_host("an IP address")
        self._fqdn = fqdn
        self._service = srv_service_name
        self._lifetime = connect_timeout or CONNECT_TIMEOUT
        self._parent = fqdn.split(".")[1:]
        if len(self._parent) < 2:
            raise _invalid_host(fqdn)

    def _query(self, name: str, record_type: str) -> resolver.Answer:
        try:
            return _resolve(name, record_type, lifetime=self._lifetime)
        except Exception as exc:
            raise ConfigurationError(str(exc)) from None

    def get_options(self) -> Optional[str]:
        """The URI options in the host's TXT record, or None without one."""
        try:
            records = _resolve(self._fqdn, "TXT", lifetime=self._lifetime)
        except (resolver.NoAnswer, resolver.NXDOMAIN):
            return None
        except Exception as exc:
            raise ConfigurationError(str(exc)) from None
        if len(records) > 1:
            raise ConfigurationError("Only one TXT record is supported")
        return "&".join(b"".join(record.strings).decode("utf-8") for record in records)

    def get_hosts(self) -> list[tuple[str, Any]]:
        """The seed list from the SRV records.

        Raises ConfigurationError for a target outside the parent domain of
        the URI's host.
        """
        records = self._query(f"_{self._service}._tcp.{self._fqdn}", "SRV")
        nodes = []
        for record in records:
            host = _as_str(record.target.to_text(omit_final_dot=True))
            if host.lower().split(".")[1:][-len(self._parent) :] != self._parent:
                raise ConfigurationError(f"Invalid SRV host: {host}")
            nodes.append((host, record.port))
        return nodes
