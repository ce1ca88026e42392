from .autotune_logger import (
    AutotuneLogger,
    LoggerConfig,
    SummaryRecord,
    DetailRecord,
    SweepRecord,
)

__all__ = ['AutotuneLogger', 'LoggerConfig', 'SummaryRecord', 'DetailRecord', 'SweepRecord']
