# Copyright 2011-present MongoDB, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License"); you
# may not use this file except in compliance with the License.  You
# may obtain a copy of the License at
#
# https://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or
# implied.  See the License for the specific language governing
# permissions and limitations under the License.


"""Parse and validate ``mongodb://`` and ``mongodb+srv://`` connection strings.

Only the parts a cluster needs are kept: the seed list, the options and, for
SRV URIs, the host name that was resolved. Credentials and the database name
are parsed so that malformed URIs are rejected, but nothing uses them.
"""
from __future__ import annotations

import re
import warnings
from typing import Any, Mapping, MutableMapping, Optional, Sized
from urllib.parse import unquote_plus

from mongo_sdam.common import (
    _ALLOWED_TXT_OPTS,
    DEFAULT_PORT,
    INTERNAL_URI_OPTION_NAME_MAP,
    _CaseInsensitiveDictionary,
    get_validated_options,
)
from mongo_sdam.errors import ConfigurationError, InvalidURI
from mongo_sdam.server_description import _Address
from mongo_sdam.srv_resolver import _SrvResolver

SCHEME = "mongodb://"
SRV_SCHEME = "mongodb+srv://"

# A '%' not followed by two hex digits.
_UNQUOTED_PERCENT = re.compile(r"%(?![0-9A-Fa-f]{2})")
# "[v6 literal]" optionally followed by ":port".
_IPV6_LITERAL = re.compile(r"^\[(?P<host>[^\[\]]+)\](?::(?P<port>.*))?$")
# Prohibited characters in a database name. "db.collection" is allowed.
_BAD_DB_CHARS = re.compile(r'[/ "$]')

_ESCAPE_HINT = "use urllib.parse.quote_plus"


def parse_userinfo(userinfo: str) -> tuple[str, str]:
    """Validate and unescape the ``user:password`` part of a URI.

    The gen-delimiters of RFC 3986 (":", "/", "?", "#", "[", "]", "@") must be
    percent-encoded. The password may be empty.

    :param userinfo: A string of the form <username>:<password>
    """
    if "@" in userinfo or userinfo.count(":") > 1 or _UNQUOTED_PERCENT.search(userinfo):
        raise InvalidURI(
            f"Username and password must be escaped according to RFC 3986, {_ESCAPE_HINT}"
        )
    user, _, passwd = userinfo.partition(":")
    if not user:
        raise InvalidURI("The empty string is not valid username")
    return unquote_plus(user), unquote_plus(passwd)


def _validate_port(port: str) -> int:
    if not port.isdigit():
        whitespace = [c for c in port if c.isspace()]
        if whitespace and all(c.isspace() or c.isdigit() for c in port):
            # Usually a trailing space copied along with the URI.
            raise ValueError(f"Port contains whitespace character: {whitespace[0]!r}")
        raise ValueError(
            "Port contains non-digit characters. Hint: username and password must be "
            f"escaped according to RFC 3986, {_ESCAPE_HINT}"
        )
    value = int(port)
    if not 0 < value <= 65535:
        raise ValueError("Port must be an integer between 0 and 65535")
    return value


def parse_host(entity: str, default_port: Optional[int] = DEFAULT_PORT) -> _Address:
    """Split one ``host[:port]`` entry into a ``(host, port)`` pair.

    The host is lower-cased, since a seed "FOO.com" must match the "foo.com"
    a server reports about itself. Unix domain sockets keep `default_port`.

    :param entity: A host name, IPv4 address, "[IPv6 literal]" or socket
        path, optionally followed by ":port".
    :param default_port: The port to use when `entity` has none.
    """
    if entity.endswith(".sock"):
        return entity, default_port  # type: ignore[return-value]

    port: Optional[str] = None
    if entity.startswith("["):
        match = _IPV6_LITERAL.match(entity)
        if match is None:
            raise ValueError(
                "an IPv6 address literal must be enclosed in '[' and ']' according to RFC 2732."
            )
        host, port = match.group("host"), match.group("port")
    elif entity.count(":") > 1:
        raise ValueError(
            "Reserved characters such as ':' must be escaped according RFC 2396. "
            "An IPv6 address literal must be enclosed in '[' and ']' according to RFC 2732."
        )
    else:
        host, sep, port_part = entity.partition(":")
        if sep:
            port = port_part

    if port is None:
        return host.lower(), default_port  # type: ignore[return-value]
    return host.lower(), _validate_port(port)


def split_hosts(hosts: str, default_port: Optional[int] = DEFAULT_PORT) -> list[_Address]:
    """Split ``host1[:port],host2[:port],...`` into a list of addresses.

    Socket paths get a port of None.
    """
    nodes = []
    for entity in hosts.split(","):
        if not entity:
            raise ConfigurationError("Empty host (or extra comma in host list)")
        nodes.append(parse_host(entity, None if entity.endswith(".sock") else default_port))
    return nodes


def _parse_options(opts: str, delim: Optional[str]) -> _CaseInsensitiveDictionary:
    options = _CaseInsensitiveDictionary()
    for pair in opts.split(delim):
        # Raises ValueError unless there is exactly one "=".
        key, value = pair.split("=")
        if key.lower() == "readpreferencetags":
            # Repeatable: one tag set per occurrence.
            options.setdefault(key, []).append(value)
            continue
        if key in options:
            warnings.warn(f"Duplicate URI option '{key}'.", stacklevel=2)
        options[key] = unquote_plus(value)
    return options


def _normalize_options(options: _CaseInsensitiveDictionary) -> _CaseInsensitiveDictionary:
    """Rename keyword-style option names to the names used internally."""
    for name in list(options):
        internal = INTERNAL_URI_OPTION_NAME_MAP.get(name.lower())
        if internal is not None:
            options[internal] = options.pop(name)
    return options


def split_options(
    opts: str, validate: bool = True, warn: bool = False, normalize: bool = True
) -> MutableMapping[str, Any]:
    """Parse the query string of a URI into a case-insensitive dict.

    Pairs may be separated by "&" or ";", but not both.

    :param opts: The part of the URI after "?".
    :param validate: Validate and convert each value (the default).
    :param warn: When validating, warn about and drop invalid options instead
        of raising.
    :param normalize: Rename options to their internal names (the default).
    """
    if "&" in opts and ";" in opts:
        raise InvalidURI("Can not mix '&' and ';' for option separators")
    delim = "&" if "&" in opts else ";" if ";" in opts else None
    try:
        options = _parse_options(opts, delim)
    except ValueError:
        raise InvalidURI("MongoDB URI options are key=value pairs") from None

    if normalize:
        options = _normalize_options(options)
    if validate:
        return get_validated_options(options, warn)
    return options


def _check_options(nodes: Sized, options: Mapping[str, Any]) -> None:
    if len(nodes) > 1 and options.get("directconnection"):
        raise ConfigurationError("Cannot specify multiple hosts with directConnection=true")


def _split_database(path: str) -> tuple[Optional[str], Optional[str]]:
    if not path:
        return None, None
    dbase, _, collection = unquote_plus(path).partition(".")
    if _BAD_DB_CHARS.search(dbase):
        raise InvalidURI(f'Bad database name "{dbase}"')
    return dbase, collection or None


def _resolve_srv(
    hosts: str,
    options: _CaseInsensitiveDictionary,
    connect_timeout: Optional[float],
    validate: bool,
    warn: bool,
    normalize: bool,
) -> tuple[list[_Address], str]:
    """Seed list and TXT options for the single host of an SRV URI.

    Options already in `options` take precedence over the TXT record.
    """
    if options.get("directConnection"):
        raise ConfigurationError(f"Cannot specify directConnection=true with {SRV_SCHEME} URIs")
    entries = split_hosts(hosts, default_port=None)
    if len(entries) != 1:
        raise InvalidURI(f"{SRV_SCHEME} URIs must include one, and only one, hostname")
    fqdn, port = entries[0]
    if port is not None:
        raise InvalidURI(f"{SRV_SCHEME} URIs must not include a port number")

    # A connectTimeoutMS keyword argument wins over the URI's.
    srv = _SrvResolver(fqdn, connect_timeout or options.get("connectTimeoutMS"))
    nodes = srv.get_hosts()
    txt = srv.get_options()
    if txt:
        txt_options = split_options(txt, validate, warn, normalize)
        if {name.lower() for name in txt_options} - _ALLOWED_TXT_OPTS:
            raise ConfigurationError("Only replicaSet is supported from DNS")
        for name, value in txt_options.items():
            options.setdefault(name, value)
    return nodes, fqdn


def parse_uri(
    uri: str,
    default_port: Optional[int] = DEFAULT_PORT,
    validate: bool = True,
    warn: bool = False,
    normalize: bool = True,
    connect_timeout: Optional[float] = None,
) -> dict[str, Any]:
    """Parse and validate a MongoDB URI.

    Returns a dict with the keys ``nodelist`` (a list of ``(host, port)``),
    ``username``, ``password``, ``database``, ``collection``, ``options``
    (a case-insensitive dict) and ``fqdn`` (the SRV host name, or None).

    A "mongodb+srv://" URI is resolved with DNS SRV and TXT lookups.

    :param uri: The URI to parse.
    :param default_port: The port for hosts that don't name one.
    :param validate: Validate and convert each option (the default).
    :param warn: When validating, warn about and drop invalid options instead
        of raising.
    :param normalize: Rename options to their internal names (the default).
    :param connect_timeout: Seconds to wait for the DNS server.
    """
    if uri.startswith(SCHEME):
        is_srv, rest = False, uri[len(SCHEME) :]
    elif uri.startswith(SRV_SCHEME):
        is_srv, rest = True, uri[len(SRV_SCHEME) :]
    else:
        raise InvalidURI(f"Invalid URI scheme: URI must begin with '{SCHEME}' or '{SRV_SCHEME}'")
    if not rest:
        raise InvalidURI("Must provide at least one hostname or IP")

    location, _, query = rest.partition("?")
    host_part, _, path = location.partition("/")
    dbase, collection = _split_database(path)

    options = _CaseInsensitiveDictionary()
    if query:
        options.update(split_options(query, validate, warn, normalize))

    user = passwd = None
    userinfo, at, hosts = host_part.rpartition("@")
    if at:
        user, passwd = parse_userinfo(userinfo)
    if "/" in hosts:
        raise InvalidURI(f"Any '/' in a unix domain socket must be percent-encoded: {host_part}")
    hosts = unquote_plus(hosts)

    fqdn = None
    if is_srv:
        nodes, fqdn = _resolve_srv(hosts, options, connect_timeout, validate, warn, normalize)
    else:
        nodes = split_hosts(hosts, default_port=default_port)
    _check_options(nodes, options)

    return {
        "nodelist": nodes,
        "username": user,
        "password": passwd,
        "database": dbase,
        "collection": collection,
        "options": options,
        "fqdn": fqdn,
    }
