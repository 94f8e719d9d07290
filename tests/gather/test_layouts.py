"""
Tests for capability resolution: which types travel fixed-layout and which
are encoded, and how fixed-layout values pack into tensors.
"""

import numpy
import pytest
import torch

from src.rank_gather.gather.codec import PickleCodec
from src.rank_gather.gather.layouts import (
    EncodedLayout,
    FixedLayout,
    is_fixed_layout,
    register_fixed_layout,
    resolve_layout,
    unregister_fixed_layout,
)


class Celsius:
    """Small value type used to exercise registration."""

    def __init__(self, degrees):
        self.degrees = degrees

    def __eq__(self, other):
        return isinstance(other, Celsius) and other.degrees == self.degrees


class TestBuiltinResolution:

    @pytest.mark.parametrize("value_type, dtype", [
        (int, torch.int64),
        (float, torch.float64),
        (bool, torch.uint8),
        (numpy.float32, torch.float32),
        (numpy.int16, torch.int16),
        (numpy.bool_, torch.uint8),
    ])
    def test_fixed_types(self, value_type, dtype):
        layout = resolve_layout(value_type)

        assert isinstance(layout, FixedLayout)
        assert layout.dtype == dtype

    @pytest.mark.parametrize("value_type", [str, bytes, dict, list, tuple, object, complex, Celsius])
    def test_encodable_types(self, value_type):
        layout = resolve_layout(value_type)

        assert isinstance(layout, EncodedLayout)
        assert not is_fixed_layout(value_type)

    def test_bool_is_not_treated_as_int(self):
        """bool subclasses int but keeps its own layout."""
        assert resolve_layout(bool).value_type is bool

    def test_fixed_layout_is_resolved_once(self):
        assert resolve_layout(float) is resolve_layout(float)

    def test_encoded_layout_uses_default_codec(self):
        assert isinstance(resolve_layout(str).codec, PickleCodec)

    def test_encoded_layout_uses_given_codec(self):
        codec = PickleCodec(protocol=2)
        assert resolve_layout(str, codec).codec is codec


class TestFixedLayoutPacking:

    def test_ints_pack_and_unpack(self):
        layout = resolve_layout(int)
        tensor = layout.pack([1, -2, 3])

        assert tensor.dtype == torch.int64
        assert layout.unpack(tensor) == [1, -2, 3]

    def test_bools_keep_their_type(self):
        layout = resolve_layout(bool)
        values = layout.unpack(layout.pack([True, False]))

        assert values == [True, False]
        assert all(type(v) is bool for v in values)

    def test_numpy_scalars_keep_their_type(self):
        layout = resolve_layout(numpy.float32)
        values = layout.unpack(layout.pack([numpy.float32(0.25), numpy.float32(-1.5)]))

        assert values == [numpy.float32(0.25), numpy.float32(-1.5)]
        assert all(type(v) is numpy.float32 for v in values)

    def test_empty_chunk_packs_to_empty_tensor(self):
        assert resolve_layout(int).pack([]).numel() == 0

    def test_int_beyond_int64_fails_to_pack(self):
        with pytest.raises((RuntimeError, OverflowError)):
            resolve_layout(int).pack([2 ** 70])


class TestRegistration:

    def test_registered_type_becomes_fixed(self):
        try:
            register_fixed_layout(Celsius, torch.float64, to_wire=lambda c: c.degrees)
            layout = resolve_layout(Celsius)

            assert is_fixed_layout(Celsius)
            assert layout.unpack(layout.pack([Celsius(21.5)])) == [Celsius(21.5)]
        finally:
            unregister_fixed_layout(Celsius)

    def test_unregister_restores_encoding(self):
        register_fixed_layout(Celsius, torch.float64, to_wire=lambda c: c.degrees)
        unregister_fixed_layout(Celsius)

        assert not is_fixed_layout(Celsius)

    def test_registration_overrides_builtin_rule(self):
        try:
            register_fixed_layout(float, torch.float32)
            assert resolve_layout(float).dtype == torch.float32
        finally:
            unregister_fixed_layout(float)

        assert resolve_layout(float).dtype == torch.float64
