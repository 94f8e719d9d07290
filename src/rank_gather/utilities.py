"""Centralized utilities, such as the size to offset conversion used by gathers"""
# rank_gather/utilities.py

from typing import List, Sequence


def sizes_to_offsets(sizes: Sequence[int]) -> List[int]:
    """
    Convert a per-rank sequence of byte sizes into exclusive prefix-sum offsets,
    so that offsets[0] == 0 and offsets[k + 1] == offsets[k] + sizes[k].

    Args:
        sizes: Byte size of each rank's payload, in rank order

    Returns:
        List of the same length giving where each rank's payload starts
        in the concatenated buffer

    Raises:
        ValueError: If any size is negative
    """
    offsets = []
    position = 0
    for size in sizes:
        if size < 0:
            raise ValueError(f"Payload sizes must be non-negative, got {size}")
        offsets.append(position)
        position += size
    return offsets


def total_size(sizes: Sequence[int]) -> int:
    """Length of the buffer holding every payload back to back."""
    return sum(sizes)
