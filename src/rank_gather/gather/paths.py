"""
Gather paths: the two ways a chunk of values reaches the root.

gather_fixed moves fixed-layout values as one tensor through the transport's
fixed-size gather. gather_serialized encodes values, gathers the encoded
sizes through gather_fixed, then gathers the bytes variable-size and decodes
them at the root.

Both paths share a signature. At the root `out` is a mutable sequence with at
least size * n slots and slot [r*n, r*n+n) receives rank r's values. On every
other rank `out` is None and the call is send-only.
"""

import io
import logging
from typing import Any, List, MutableSequence, Optional, Sequence

import torch

from ..errors import DecodingError, EncodingError
from ..group.communication import GroupTransport
from ..utilities import sizes_to_offsets, total_size
from .layouts import EncodedLayout, FixedLayout, resolve_layout

logger = logging.getLogger(__name__)

SIZE_LAYOUT = resolve_layout(int)


def gather_fixed(
    transport: GroupTransport,
    values: Sequence[Any],
    layout: FixedLayout,
    root: int,
    out: Optional[MutableSequence[Any]] = None,
) -> None:
    """
    Gather fixed-layout values using the transport's native fixed-size gather.

    Args:
        transport: Group to gather over
        values: This rank's n values
        layout: Fixed layout of the values
        root: Rank receiving the result
        out: Root only. Receives size * n values in rank order.

    Raises:
        EncodingError: If a value cannot be represented in the layout's dtype
        TransportError: If the exchange fails
    """
    n = len(values)
    call_id = transport.next_call_id()
    logger.debug("call %d: fixed gather of %d x %s to rank %d", call_id, n, layout.dtype, root)

    try:
        local = layout.pack(values)
    except (RuntimeError, TypeError, ValueError, OverflowError) as e:
        raise EncodingError(f"Cannot pack {n} values as {layout.dtype}: {e}") from e

    if out is None:
        transport.fixed_size_exchange(local, None, root, call_id)
        return

    received = torch.empty(transport.size * n, dtype=layout.dtype)
    transport.fixed_size_exchange(local, received, root, call_id)
    out[:transport.size * n] = layout.unpack(received)


def gather_sizes(
    transport: GroupTransport,
    size: int,
    root: int,
    is_root: bool,
) -> Optional[List[int]]:
    """Gather one byte length per rank; the list is only returned at the root."""
    if not is_root:
        gather_fixed(transport, [size], SIZE_LAYOUT, root)
        return None
    sizes = [0] * transport.size
    gather_fixed(transport, [size], SIZE_LAYOUT, root, sizes)
    return sizes


def encode_values(values: Sequence[Any], layout: EncodedLayout) -> bytearray:
    """Encode all values, in order, into one contiguous byte buffer."""
    stream = bytearray()
    for index, value in enumerate(values):
        try:
            layout.codec.encode(value, stream)
        except Exception as e:
            raise EncodingError(f"Cannot encode value {index} ({type(value).__name__}): {e}") from e
    return stream


def decode_values(region: memoryview, n: int, layout: EncodedLayout, src: int) -> List[Any]:
    """
    Decode exactly n values from one rank's byte region.

    The region is copied into a stream once and every value is read from
    it in turn; the stream ends with the region, so no value can read past it.

    Raises:
        DecodingError: If decoding fails, runs out of bytes, or leaves
                       bytes of the region unconsumed
    """
    stream = io.BytesIO(region)
    values = []
    for index in range(n):
        try:
            values.append(layout.codec.decode(stream))
        except Exception as e:
            raise DecodingError(f"Cannot decode value {index} from rank {src}: {e}") from e
    position = stream.tell()
    if position != len(region):
        raise DecodingError(
            f"Rank {src} sent {len(region)} bytes but its {n} values used {position}"
        )
    return values


def gather_serialized(
    transport: GroupTransport,
    values: Sequence[Any],
    layout: EncodedLayout,
    root: int,
    out: Optional[MutableSequence[Any]] = None,
) -> None:
    """
    Gather encodable values: encode, gather sizes, gather bytes, decode at root.

    The root's own values are copied into their slots directly and never
    go through the codec.

    Args:
        transport: Group to gather over
        values: This rank's n values
        layout: Encoded layout carrying the codec
        root: Rank receiving the result
        out: Root only. Receives size * n values in rank order.

    Raises:
        EncodingError: If a local value cannot be encoded
        DecodingError: If a received region cannot be decoded
        TransportError: If either exchange fails
    """
    n = len(values)
    is_root = out is not None

    # Encode, then exchange sizes so the root can lay out the receive buffer
    local = encode_values(values, layout)
    sizes = gather_sizes(transport, len(local), root, is_root)

    call_id = transport.next_call_id()
    if not is_root:
        logger.debug("call %d: sending %d encoded bytes to rank %d", call_id, len(local), root)
        transport.variable_size_exchange(local, None, None, None, root, call_id)
        return

    offsets = sizes_to_offsets(sizes)
    recv = bytearray(total_size(sizes))
    logger.debug("call %d: receiving %d encoded bytes from %d ranks", call_id, len(recv), transport.size)
    transport.variable_size_exchange(local, recv, sizes, offsets, root, call_id)

    view = memoryview(recv)
    for src in range(transport.size):
        if src == root:
            out[src * n:(src + 1) * n] = list(values)
        else:
            region = view[offsets[src]:offsets[src] + sizes[src]]
            out[src * n:(src + 1) * n] = decode_values(region, n, layout, src)
