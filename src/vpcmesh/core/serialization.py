# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import codecs
import zlib
from typing import Any, Generic, Optional, TypeVar

import dill as pickle

"""Module to contain our Serialization primitives.

Requirements:
- our serializer should not call __init__ on new objects during deserialization.
"""

VPCMESH_COMPRESSION_MAGIC: str = "_VPCMesh_ZIP_"


def loads(dump_str: str) -> Any:
    if dump_str.startswith(VPCMESH_COMPRESSION_MAGIC):
        dump_str = dump_str[len(VPCMESH_COMPRESSION_MAGIC) :]
        decoded_dump = zlib.decompress(codecs.decode(dump_str.encode(), "base64"))
    else:
        decoded_dump = codecs.decode(dump_str.encode(), "base64")
    return pickle.loads(decoded_dump)


def dumps(obj: Any, compress: Optional[bool] = False) -> str:
    pickled: bytes = pickle.dumps(obj)
    if compress:
        pickled = codecs.encode(zlib.compress(pickled), "base64").decode()
        return VPCMESH_COMPRESSION_MAGIC + pickled
    return codecs.encode(pickled, "base64").decode()


_Serialized = TypeVar("_Serialized")


class Serializable(Generic[_Serialized]):
    def serialize(self, compress: bool = False) -> str:
        return dumps(self, compress)

    @classmethod
    def deserialize(cls, serialized_str: str) -> _Serialized:  # type: ignore
        return loads(serialized_str)
