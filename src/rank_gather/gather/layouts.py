"""
Layouts: Capability resolution for gathered value types.

Every Python type is either fixed-layout (it maps onto a torch dtype and
travels through the transport's native fixed-size gather) or encodable (it
goes through a Codec and a variable-size byte gather). The decision is made
once per type by LayoutRule subclasses and cached; gathers never branch on
the value type inside their per-value loops.

WARNING: Like any first-match registry, rule order matters. Rules are tried
in the order they are defined in this file. BoolRule must precede IntRule
since bool is an int, and EncodedRule catches everything and must be last.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy
import torch

from .codec import Codec, PickleCodec

logger = logging.getLogger(__name__)


class ValueLayout(ABC):
    """How values of one type are moved through a gather."""

    is_fixed: bool = False


class FixedLayout(ValueLayout):
    """
    Values carried as elements of a 1-D tensor.

    Args:
        value_type: Python type of the values
        dtype: torch dtype used on the wire
        to_wire: Conversion applied to each value before packing. None to
                 pass values to torch.tensor unchanged.
        from_wire: Conversion applied to each unpacked element. Defaults to
                   value_type, so unpacked values keep their original type.
    """

    is_fixed = True

    def __init__(
        self,
        value_type: type,
        dtype: torch.dtype,
        to_wire: Optional[Callable[[Any], Any]] = None,
        from_wire: Optional[Callable[[Any], Any]] = None,
    ):
        self.value_type = value_type
        self.dtype = dtype
        self.to_wire = to_wire
        self.from_wire = value_type if from_wire is None else from_wire

    def pack(self, values: Sequence[Any]) -> torch.Tensor:
        """
        Pack values into a 1-D tensor of self.dtype.

        Raises:
            TypeError: If any value is not exactly of self.value_type. torch
                       would otherwise coerce it silently.
        """
        for index, value in enumerate(values):
            if type(value) is not self.value_type:
                raise TypeError(
                    f"Value {index} is {type(value).__name__}, expected {self.value_type.__name__}"
                )
        if self.to_wire is not None:
            values = [self.to_wire(v) for v in values]
        return torch.tensor(list(values), dtype=self.dtype)

    def unpack(self, tensor: torch.Tensor) -> List[Any]:
        """Turn a 1-D tensor back into values of self.value_type."""
        return [self.from_wire(v) for v in tensor.tolist()]

    def __repr__(self) -> str:
        return f"FixedLayout({self.value_type.__name__}, {self.dtype})"


class EncodedLayout(ValueLayout):
    """Values carried as a codec byte stream."""

    is_fixed = False

    def __init__(self, codec: Codec):
        self.codec = codec

    def __repr__(self) -> str:
        return f"EncodedLayout({type(self.codec).__name__})"


DEFAULT_CODEC = PickleCodec()


# -------------------------------------------------------------------------
# Rules
# -------------------------------------------------------------------------

class LayoutRule(ABC):
    """
    Dispatch layer deciding the fixed layout of a type.

    Use resolve_layout() rather than calling rules directly. Internally the
    first rule in _registry whose _predicate matches the type provides the
    layout; None from _layout means the type is encodable.
    """

    _registry: list = []

    def __init_subclass__(cls, **kwargs):
        """Subclass registry"""
        super().__init_subclass__(**kwargs)
        LayoutRule._registry.append(cls)

    @staticmethod
    @abstractmethod
    def _predicate(value_type: type) -> bool:
        """Return True if this rule decides the given type."""
        ...

    @staticmethod
    @abstractmethod
    def _layout(value_type: type) -> Optional[FixedLayout]:
        """Return the fixed layout of the type, or None if it is encodable."""
        ...

    @classmethod
    def find(cls, value_type: type) -> Optional[FixedLayout]:
        for rule in cls._registry:
            if rule._predicate(value_type):
                return rule._layout(value_type)
        return None


_registered: Dict[type, FixedLayout] = {}


class RegisteredRule(LayoutRule):
    """Types declared through register_fixed_layout()."""

    @staticmethod
    def _predicate(value_type: type) -> bool:
        return value_type in _registered

    @staticmethod
    def _layout(value_type: type) -> Optional[FixedLayout]:
        return _registered[value_type]


class BoolRule(LayoutRule):
    """Python bools travel as uint8, which every backend can gather."""

    @staticmethod
    def _predicate(value_type: type) -> bool:
        return value_type is bool

    @staticmethod
    def _layout(value_type: type) -> Optional[FixedLayout]:
        return FixedLayout(bool, torch.uint8)


class IntRule(LayoutRule):
    """
    Python ints travel as int64. Ints outside the int64 range fail to
    pack rather than silently switching to the encoded path, since the
    other ranks could not know about the switch.
    """

    @staticmethod
    def _predicate(value_type: type) -> bool:
        return value_type is int

    @staticmethod
    def _layout(value_type: type) -> Optional[FixedLayout]:
        return FixedLayout(int, torch.int64)


class FloatRule(LayoutRule):
    """Python floats travel as float64."""

    @staticmethod
    def _predicate(value_type: type) -> bool:
        return value_type is float

    @staticmethod
    def _layout(value_type: type) -> Optional[FixedLayout]:
        return FixedLayout(float, torch.float64)


_NUMPY_DTYPES: Dict[type, torch.dtype] = {
    numpy.bool_: torch.uint8,
    numpy.int8: torch.int8,
    numpy.int16: torch.int16,
    numpy.int32: torch.int32,
    numpy.int64: torch.int64,
    numpy.uint8: torch.uint8,
    numpy.float16: torch.float16,
    numpy.float32: torch.float32,
    numpy.float64: torch.float64,
}


class NumpyScalarRule(LayoutRule):
    """Numpy scalar types with a matching torch dtype."""

    @staticmethod
    def _predicate(value_type: type) -> bool:
        return value_type in _NUMPY_DTYPES

    @staticmethod
    def _layout(value_type: type) -> Optional[FixedLayout]:
        return FixedLayout(value_type, _NUMPY_DTYPES[value_type])


class EncodedRule(LayoutRule):
    """Catch-all; everything else is encodable. Must be defined last."""

    @staticmethod
    def _predicate(value_type: type) -> bool:
        return True

    @staticmethod
    def _layout(value_type: type) -> Optional[FixedLayout]:
        return None


# -------------------------------------------------------------------------
# Public interface
# -------------------------------------------------------------------------

_resolved: Dict[type, Optional[FixedLayout]] = {}


def register_fixed_layout(
    value_type: type,
    dtype: torch.dtype,
    to_wire: Optional[Callable[[Any], Any]] = None,
    from_wire: Optional[Callable[[Any], Any]] = None,
) -> None:
    """
    Declare a type as fixed-layout.

    Must be done identically on every rank before the type is gathered.

    Args:
        value_type: Type to declare
        dtype: torch dtype the values travel as
        to_wire: Per-value conversion before packing
        from_wire: Per-element conversion after unpacking, default value_type
    """
    _registered[value_type] = FixedLayout(value_type, dtype, to_wire, from_wire)
    _resolved.pop(value_type, None)


def unregister_fixed_layout(value_type: type) -> None:
    """Undo register_fixed_layout(); the type falls back to the built-in rules."""
    _registered.pop(value_type, None)
    _resolved.pop(value_type, None)


def resolve_layout(value_type: type, codec: Optional[Codec] = None) -> ValueLayout:
    """
    Resolve how values of value_type are gathered.

    Args:
        value_type: Type of the gathered values
        codec: Codec for encodable types. Defaults to PickleCodec.

    Returns:
        A FixedLayout, or an EncodedLayout over codec
    """
    if value_type not in _resolved:
        _resolved[value_type] = LayoutRule.find(value_type)
        logger.debug("Resolved %s as %s", value_type.__name__, _resolved[value_type] or "encodable")
    layout = _resolved[value_type]
    if layout is not None:
        return layout
    return EncodedLayout(DEFAULT_CODEC if codec is None else codec)


def is_fixed_layout(value_type: type) -> bool:
    """True if values of value_type travel without encoding."""
    return resolve_layout(value_type).is_fixed
