"""
Codecs: Encode/decode collaborators for values without a fixed layout.

A codec appends encoded values to a shared byte stream and reads them back
in the order they were appended. Decoding reads from a binary stream holding
exactly the region one rank sent, positioned at the next value, so a value
that runs past its region fails instead of reading a neighbour's bytes.
"""

import pickle
from abc import ABC, abstractmethod
from typing import Any, BinaryIO


class Codec(ABC):
    """Converts values to and from a byte stream, one value at a time."""

    @abstractmethod
    def encode(self, value: Any, stream: bytearray) -> None:
        """Append the encoding of value to stream."""
        ...

    @abstractmethod
    def decode(self, stream: BinaryIO) -> Any:
        """
        Read the next value from stream.

        Args:
            stream: Readable binary stream positioned at the start of the
                    value. Left positioned just past it.

        Returns:
            The decoded value
        """
        ...


class PickleCodec(Codec):
    """
    Pickle based codec, the default for encodable values.

    Pickles are self-delimiting, so values are concatenated without framing.
    """

    def __init__(self, protocol: int = pickle.HIGHEST_PROTOCOL):
        self.protocol = protocol

    def encode(self, value: Any, stream: bytearray) -> None:
        stream += pickle.dumps(value, protocol=self.protocol)

    def decode(self, stream: BinaryIO) -> Any:
        return pickle.Unpickler(stream).load()
