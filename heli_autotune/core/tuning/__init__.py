"""
Helicopter Autotune Sequencing and Gain Updates

The sequencer runs the per-axis tune types, the update engine turns each
test's frequency response into new gains and the gain store switches the
controllers between original, test and tuned gain sets.
"""

from .gain_store import (
    GainStore,
    GainSetKind,
    RateGains,
    AngleGains,
    AxisGainSet,
    TuneGains,
)

from .gain_updates import (
    GainUpdateEngine,
    UpdateGainState,
    UpdateResult,
)

from .vehicle import (
    VehicleControl,
    VehicleSample,
    AutotuneCommand,
    VehicleTuneStrategy,
    HeliTuneStrategy,
    TestConfig,
)

from .sequencer import (
    AutotuneSequencer,
    TuneState,
    TuneOutcome,
    TestState,
)

__all__ = [
    # Gain store
    'GainStore',
    'GainSetKind',
    'RateGains',
    'AngleGains',
    'AxisGainSet',
    'TuneGains',
    # Gain updates
    'GainUpdateEngine',
    'UpdateGainState',
    'UpdateResult',
    # Vehicle
    'VehicleControl',
    'VehicleSample',
    'AutotuneCommand',
    'VehicleTuneStrategy',
    'HeliTuneStrategy',
    'TestConfig',
    # Sequencer
    'AutotuneSequencer',
    'TuneState',
    'TuneOutcome',
    'TestState',
]
