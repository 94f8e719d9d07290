"""
Public gather API.

Every rank of the group calls the same function with the same root and the
same number of values; the root gets back all values ordered by rank and
every other rank gets None.

    gather(transport, value, root)          one value per rank
    gather_n(transport, values, root)       n values per rank
    gather_send / gather_n_send             non-root call sites, no result

At the root, `out` may be passed to receive the result. A list is resized to
exactly size * n; any other mutable sequence (numpy array, tensor, ...) must
already have room for size * n values and is filled from the front.

The value type decides the path: fixed-layout types go straight through the
transport's fixed-size gather, everything else is encoded. Pass value_type to
override the inferred type, and codec to choose how encodable values are
encoded.
"""

import logging
from typing import Any, Callable, Dict, MutableSequence, Optional, Sequence

from ..group.communication import GroupTransport
from .codec import Codec
from .layouts import ValueLayout, resolve_layout
from .paths import gather_fixed, gather_serialized

logger = logging.getLogger(__name__)

_PATHS: Dict[bool, Callable[..., None]] = {
    True: gather_fixed,
    False: gather_serialized,
}


def _layout_for(values: Sequence[Any], value_type: Optional[type], codec: Optional[Codec]) -> ValueLayout:
    if value_type is None:
        # Every rank holds the same n, so an empty chunk resolves alike everywhere
        value_type = type(values[0]) if len(values) > 0 else object
    return resolve_layout(value_type, codec)


def _check_root(transport: GroupTransport, root: int) -> None:
    if not 0 <= root < transport.size:
        raise ValueError(f"Root {root} is not a rank of a group of size {transport.size}")


def _prepare_out(out: Optional[MutableSequence[Any]], length: int) -> MutableSequence[Any]:
    """Return the root's result container, resized or checked for length."""
    if out is None:
        return [None] * length
    if isinstance(out, list):
        del out[length:]
        out.extend([None] * (length - len(out)))
        return out
    if len(out) < length:
        raise ValueError(f"Output buffer holds {len(out)} values but the gather produces {length}")
    return out


def gather_n(
    transport: GroupTransport,
    values: Sequence[Any],
    root: int,
    out: Optional[MutableSequence[Any]] = None,
    value_type: Optional[type] = None,
    codec: Optional[Codec] = None,
) -> Optional[MutableSequence[Any]]:
    """
    Gather n values from every rank to the root.

    Args:
        transport: Group to gather over
        values: This rank's n values; n must be equal on every rank
        root: Rank receiving the result
        out: Root only, optional. Container or buffer for the result.
        value_type: Type of the values. Inferred from values[0] when None.
        codec: Codec for encodable values. Defaults to pickle.

    Returns:
        At the root, size * n values where slot [r*n, r*n+n) holds rank r's
        values. None on every other rank.

    Raises:
        ValueError: If root is out of range or out is too small
        EncodingError: If a local value cannot be converted for sending
        DecodingError: If a received chunk cannot be decoded
        TransportError: If the group transport fails
    """
    _check_root(transport, root)
    if transport.rank != root:
        gather_n_send(transport, values, root, value_type=value_type, codec=codec)
        return None

    n = len(values)
    result = _prepare_out(out, transport.size * n)
    if n == 0:
        return result

    layout = _layout_for(values, value_type, codec)
    logger.debug("Gathering %d x %r from %d ranks at root %d", n, layout, transport.size, root)
    _PATHS[layout.is_fixed](transport, values, layout, root, result)
    return result


def gather_n_send(
    transport: GroupTransport,
    values: Sequence[Any],
    root: int,
    value_type: Optional[type] = None,
    codec: Optional[Codec] = None,
) -> None:
    """
    Send n values to the root of a gather. Must not be called by the root.

    Args:
        transport: Group to gather over
        values: This rank's n values; n must be equal on every rank
        root: Rank receiving the result
        value_type: Type of the values. Inferred from values[0] when None.
        codec: Codec for encodable values. Defaults to pickle.
    """
    assert transport.rank != root, f"Rank {root} is the root and must receive the gather"
    _check_root(transport, root)
    if len(values) == 0:
        return

    layout = _layout_for(values, value_type, codec)
    _PATHS[layout.is_fixed](transport, values, layout, root, None)


def gather(
    transport: GroupTransport,
    value: Any,
    root: int,
    out: Optional[MutableSequence[Any]] = None,
    value_type: Optional[type] = None,
    codec: Optional[Codec] = None,
) -> Optional[MutableSequence[Any]]:
    """
    Gather one value from every rank to the root.

    Returns:
        At the root, one value per rank in rank order. None elsewhere.
    """
    return gather_n(transport, [value], root, out, value_type, codec)


def gather_send(
    transport: GroupTransport,
    value: Any,
    root: int,
    value_type: Optional[type] = None,
    codec: Optional[Codec] = None,
) -> None:
    """Send one value to the root of a gather. Must not be called by the root."""
    gather_n_send(transport, [value], root, value_type, codec)
