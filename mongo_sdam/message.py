# Copyright 2009-present MongoDB, Inc.
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

"""Encoding of command requests and decoding of their replies in the MongoDB
`wire protocol <https://www.mongodb.com/docs/manual/reference/mongodb-wire-protocol/>`_.

Requests are always OP_MSG with a single body section. Replies may be OP_MSG
or, from servers answering a legacy handshake, OP_REPLY.

.. note:: This module is for internal use and is generally not needed by
   application developers.
"""
from __future__ import annotations

import random
import struct
from typing import TYPE_CHECKING, Any, Callable, Mapping, MutableMapping, Optional, Union

import bson
from bson import CodecOptions

from mongo_sdam.errors import NotPrimaryError, OperationFailure, ProtocolError
from mongo_sdam.hello import HelloCompat

if TYPE_CHECKING:
    from mongo_sdam.read_preferences import _ServerMode

_UNICODE_REPLACE_CODEC_OPTIONS: CodecOptions[Mapping[str, Any]] = CodecOptions(
    unicode_decode_error_handler="replace"
)

# messageLength, requestID, responseTo, opCode.
_HEADER = struct.Struct("<iiii")
_UNPACK_HEADER = _HEADER.unpack
# OP_MSG flagBits, then the kind byte of the body section.
_MSG_PREFIX = struct.Struct("<IB")

OP_REPLY = 1
OP_MSG = 2013


def _randint() -> int:
    """A random request id."""
    return random.randint(-(2**31), 2**31 - 1)  # noqa: S311


class _Reply:
    """A decoded reply holding one or more BSON documents."""

    __slots__ = ("flags",)

    def __init__(self, flags: int):
        self.flags = flags

    def unpack_response(
        self, codec_options: CodecOptions = _UNICODE_REPLACE_CODEC_OPTIONS
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    def command_response(
        self, codec_options: CodecOptions = _UNICODE_REPLACE_CODEC_OPTIONS
    ) -> dict[str, Any]:
        """The single reply document of a command."""
        docs = self.unpack_response(codec_options=codec_options)
        if len(docs) != 1:
            raise ProtocolError(
                f"Expected exactly one document in command reply, got {len(docs)}"
            )
        return docs[0]

    @property
    def more_to_come(self) -> bool:
        return False


class _OpReply(_Reply):
    """An OP_REPLY message: the legacy reply format."""

    __slots__ = ("cursor_id", "number_returned", "documents")

    OP_CODE = OP_REPLY
    # responseFlags, cursorID, startingFrom, numberReturned.
    _FIELDS = struct.Struct("<iqii")
    QUERY_FAILURE = 1 << 1

    def __init__(self, flags: int, cursor_id: int, number_returned: int, documents: bytes):
        super().__init__(flags)
        self.cursor_id = cursor_id
        self.number_returned = number_returned
        self.documents = documents

    def unpack_response(
        self, codec_options: CodecOptions = _UNICODE_REPLACE_CODEC_OPTIONS
    ) -> list[dict[str, Any]]:
        """Decode the documents.

        A reply with the QueryFailure flag raises NotPrimaryError or
        OperationFailure instead.
        """
        if self.flags & self.QUERY_FAILURE:
            error = bson.decode(self.documents)
            error.setdefault("ok", 0)
            errmsg = error.get("$err", "")
            if errmsg.startswith(HelloCompat.LEGACY_ERROR):
                raise NotPrimaryError(errmsg, error)
            raise OperationFailure(f"database error: {errmsg}", error.get("code"), error)
        return bson.decode_all(self.documents, codec_options)

    def command_response(
        self, codec_options: CodecOptions = _UNICODE_REPLACE_CODEC_OPTIONS
    ) -> dict[str, Any]:
        if self.number_returned != 1:
            raise ProtocolError(
                f"Expected exactly one document in command reply, got {self.number_returned}"
            )
        return super().command_response(codec_options)

    @classmethod
    def unpack(cls, body: bytes) -> _OpReply:
        flags, cursor_id, _, number_returned = cls._FIELDS.unpack_from(body)
        return cls(flags, cursor_id, number_returned, bytes(body[cls._FIELDS.size :]))


class _OpMsg(_Reply):
    """An OP_MSG reply with a single body section."""

    __slots__ = ("payload_document",)

    OP_CODE = OP_MSG
    CHECKSUM_PRESENT = 1
    MORE_TO_COME = 1 << 1

    def __init__(self, flags: int, payload_document: bytes):
        super().__init__(flags)
        self.payload_document = payload_document

    def unpack_response(
        self, codec_options: CodecOptions = _UNICODE_REPLACE_CODEC_OPTIONS
    ) -> list[dict[str, Any]]:
        return bson.decode_all(self.payload_document, codec_options)

    @property
    def more_to_come(self) -> bool:
        return bool(self.flags & self.MORE_TO_COME)

    @classmethod
    def unpack(cls, body: bytes) -> _OpMsg:
        flags, kind = _MSG_PREFIX.unpack_from(body)
        if flags & cls.CHECKSUM_PRESENT:
            raise ProtocolError(f"Unsupported OP_MSG flag checksumPresent: 0x{flags:x}")
        if flags & ~cls.MORE_TO_COME:
            raise ProtocolError(f"Unsupported OP_MSG flags: 0x{flags:x}")
        if kind != 0:
            raise ProtocolError(f"Unsupported OP_MSG payload type: 0x{kind:x}")
        payload = bytes(body[_MSG_PREFIX.size :])
        (doc_size,) = struct.unpack_from("<i", payload)
        if doc_size != len(payload):
            raise ProtocolError("Unsupported OP_MSG reply: >1 section")
        return cls(flags, payload)


_UNPACK_REPLY: dict[int, Callable[[bytes], _Reply]] = {
    OP_REPLY: _OpReply.unpack,
    OP_MSG: _OpMsg.unpack,
}


def unpack_reply(op_code: int, data: bytes) -> Union[_OpReply, _OpMsg]:
    """Decode the body of a reply, the bytes after its header."""
    unpack = _UNPACK_REPLY.get(op_code)
    if unpack is None:
        raise ProtocolError(f"Got opcode {op_code!r} but expected {list(_UNPACK_REPLY)!r}")
    return unpack(data)  # type: ignore[return-value]


def _op_msg(
    flags: int,
    command: MutableMapping[str, Any],
    dbname: str,
    read_preference: Optional[_ServerMode] = None,
    opts: CodecOptions = _UNICODE_REPLACE_CODEC_OPTIONS,
    request_id: Optional[int] = None,
) -> tuple[int, bytes, int]:
    """Encode `command` as an OP_MSG request.

    Adds ``$db`` to `command`, and ``$readPreference`` unless the read
    preference is primary. Returns the request id, the message and the size
    of the encoded command.
    """
    command["$db"] = dbname
    if read_preference is not None and read_preference.mode:
        command.setdefault("$readPreference", read_preference.document)
    body = _MSG_PREFIX.pack(flags, 0) + bson.encode(command, False, opts)
    rid = _randint() if request_id is None else request_id
    header = _HEADER.pack(_HEADER.size + len(body), rid, 0, OP_MSG)
    return rid, header + body, len(body) - _MSG_PREFIX.size
