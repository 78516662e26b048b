# Copyright 2015-present MongoDB, Inc.
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

"""Internal network layer helper methods."""
from __future__ import annotations

import errno
from typing import (
    TYPE_CHECKING,
    Any,
    Container,
    MutableMapping,
    Optional,
    Union,
)

from bson import CodecOptions
from mongo_sdam import helpers, message
from mongo_sdam.common import MAX_MESSAGE_SIZE
from mongo_sdam.errors import AutoReconnect, ProtocolError
from mongo_sdam.message import _UNPACK_HEADER, _OpMsg, _OpReply

if TYPE_CHECKING:
    from mongo_sdam.pool import Connection
    from mongo_sdam.read_preferences import _ServerMode


def command(
    conn: Connection,
    dbname: str,
    spec: MutableMapping[str, Any],
    read_preference: Optional[_ServerMode] = None,
    codec_options: CodecOptions = message._UNICODE_REPLACE_CODEC_OPTIONS,
    check: bool = True,
    allowable_errors: Optional[Container[Union[int, str]]] = None,
    max_message_size: int = MAX_MESSAGE_SIZE,
) -> dict[str, Any]:
    """Execute a command over the socket, or raise socket.error.

    :param conn: a Connection instance
    :param dbname: name of the database on which to run the command
    :param spec: a command document as an ordered dict type
    :param read_preference: a read preference, sent as ``$readPreference``
        unless it is primary
    :param codec_options: a CodecOptions instance
    :param check: raise OperationFailure if there are errors
    :param allowable_errors: errors to ignore if `check` is True
    :param max_message_size: the largest reply this server may send
    """
    request_id, msg, _ = message._op_msg(0, spec, dbname, read_preference, codec_options)
    conn.sock.sendall(msg)
    reply = receive_message(conn.sock, request_id, max_message_size)
    response_doc = reply.unpack_response(codec_options=codec_options)[0]
    if check:
        helpers._check_command_response(response_doc, conn.max_wire_version, allowable_errors)
    return response_doc


def receive_message(
    sock: Any, request_id: Optional[int], max_message_size: int = MAX_MESSAGE_SIZE
) -> Union[_OpReply, _OpMsg]:
    """Receive a raw BSON message or raise socket.error."""
    length, _, response_to, op_code = _UNPACK_HEADER(_receive_data_on_socket(sock, 16))
    # No request_id for exhaust cursor "getMore".
    if request_id is not None:
        if request_id != response_to:
            raise ProtocolError(f"Got response id {response_to!r} but expected {request_id!r}")
    if length <= 16:
        raise ProtocolError(
            f"Message length ({length!r}) not longer than standard message header size (16)"
        )
    if length > max_message_size:
        raise ProtocolError(
            f"Message length ({length!r}) is larger than server max "
            f"message size ({max_message_size!r})"
        )

    return message.unpack_reply(op_code, _receive_data_on_socket(sock, length - 16))


def _receive_data_on_socket(sock: Any, length: int) -> memoryview:
    buf = bytearray(length)
    mv = memoryview(buf)
    bytes_read = 0
    while bytes_read < length:
        try:
            chunk_length = sock.recv_into(mv[bytes_read:])
        except OSError as exc:
            if _errno_from_exception(exc) == errno.EINTR:
                continue
            raise
        if chunk_length == 0:
            raise AutoReconnect("connection closed")

        bytes_read += chunk_length

    return mv


def _errno_from_exception(exc: BaseException) -> Optional[int]:
    if hasattr(exc, "errno"):
        return exc.errno
    if exc.args:
        return exc.args[0]
    return None
