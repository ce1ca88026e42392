"""Autotune session configuration and bitmask decoding."""

from .autotune_config import (
    AutotuneConfig,
    Axis,
    TuneType,
    AXIS_ORDER,
    decode_axis_bitmask,
    decode_tune_sequence,
)

__all__ = [
    'AutotuneConfig',
    'Axis',
    'TuneType',
    'AXIS_ORDER',
    'decode_axis_bitmask',
    'decode_tune_sequence',
]
