"""
Autotune Failure Taxonomy

Every failure raised while a single (axis, tune type) pair is being tested
derives from ``TuneTestFailure``. The sequencer treats these as local: the
pair is marked non-convergent, the axis working gains are restored to their
pre-test values and tuning moves on. Only disarm or an explicit user stop end
the whole session.
"""


class AutotuneError(Exception):
    """Base class for all autotune errors."""


class TuneTestFailure(AutotuneError):
    """A test for one (axis, tune type) pair could not converge."""


class FrequencyRangeExceeded(TuneTestFailure):
    """The next requested test frequency lies outside [min_sweep_freq, max_sweep_freq]."""

    def __init__(self, frequency: float, min_freq: float, max_freq: float):
        self.frequency = frequency
        self.min_freq = min_freq
        self.max_freq = max_freq
        super().__init__(
            f"frequency {frequency:.3f} Hz outside range "
            f"[{min_freq:.3f}, {max_freq:.3f}] Hz"
        )


class TestTimeout(TuneTestFailure):
    """A test ran longer than the testing step timeout."""

    # Not a pytest test class despite the name
    __test__ = False

    def __init__(self, elapsed_ms: float, timeout_ms: float):
        self.elapsed_ms = elapsed_ms
        self.timeout_ms = timeout_ms
        super().__init__(f"test timed out after {elapsed_ms:.0f} ms (limit {timeout_ms:.0f} ms)")


class SearchNonConvergence(TuneTestFailure):
    """A search used up its step or test budget without converging."""


class EstimateNotReady(AutotuneError):
    """A frequency-response point was requested before its cycles completed."""


class UnsupportedTuneType(AutotuneError, ValueError):
    """The selected tune type has no update algorithm for this vehicle class."""
