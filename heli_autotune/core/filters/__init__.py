from .response_filters import (
    LowPassFilter,
    LowPassFilter2D,
    ResponseFilterBank,
    FilteredSample,
)

__all__ = ['LowPassFilter', 'LowPassFilter2D', 'ResponseFilterBank', 'FilteredSample']
