"""
Frequency Response Measurement for In-Flight Autotune

Gain and phase of the closed rate and attitude loops are estimated at the
excitation frequency from tick-by-tick samples, either at a single dwell
frequency or continuously over a frequency sweep.

Mathematical Foundation
-----------------------
1. Excite the loop with a sinusoid of known accumulated phase θ(t)
2. Recenter input and output to remove trim and slow drift
3. Correlate both against e^{-jθ} over whole cycles (single-bin DFT)
4. Gain = |Y|/|U|, phase lag = -∠(Y/U)

The resulting points drive a step-and-interpolate search for the
frequencies at which the response reaches given phase lags.
"""

from .freq_resp_estimator import (
    FreqRespEstimator,
    FreqRespInput,
    FreqRespCalcType,
    InputType,
    ResponseType,
    SweepInfo,
    SweepProgress,
    MaxGainRecord,
)

from .frequency_search import (
    FrequencySearch,
    PHASE_TOLERANCE_DEG,
)

__all__ = [
    # Estimator
    'FreqRespEstimator',
    'FreqRespInput',
    'FreqRespCalcType',
    'InputType',
    'ResponseType',
    'SweepInfo',
    'SweepProgress',
    'MaxGainRecord',
    # Search
    'FrequencySearch',
    'PHASE_TOLERANCE_DEG',
]
