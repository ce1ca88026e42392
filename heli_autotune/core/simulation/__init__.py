from .heli_axis_sim import (
    HeliAxisParams,
    SimulatedHeliAxis,
    SimulatedHelicopter,
    SimulationState,
    RatePID,
    build_axis_model,
    default_axis_params,
)

__all__ = [
    'HeliAxisParams',
    'SimulatedHeliAxis',
    'SimulatedHelicopter',
    'SimulationState',
    'RatePID',
    'build_axis_model',
    'default_axis_params',
]
