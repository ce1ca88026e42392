"""
Autotune Telemetry Logger

In-memory sink for the three autotune record types, with persistence for
post-flight analysis:

- **Summary** (one per completed test): tune type, test frequency, measured
  gain/phase and the resulting FF, P, D, angle P and max acceleration
- **Detail** (per tick while a test excites the aircraft): command, target
  rate, achieved rate, target angle, achieved angle
- **Sweep** (per frequency-response point): frequency, gain and phase for the
  motor- and target-referenced pipelines

Writes never fail back into the engine; the records are only read after the
session.

Data Schema
-----------
{
    "metadata": {
        "timestamp": "2026-10-19T12:00:00",
        "version": "1.0.0",
        "config": { ... },
        "checksums": { "summary": "...", "details": "...", "sweep": "..." }
    },
    "records": {
        "summary": [{...}, ...],
        "details": [{...}, ...],
        "sweep": [{...}, ...]
    }
}
"""

import csv
import hashlib
import json
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np
import pandas as pd


class NumpyEncoder(json.JSONEncoder):
    """JSON encoder that handles numpy values and enums."""

    def default(self, obj):
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, (np.bool_,)):
            return bool(obj)
        if isinstance(obj, Enum):
            return obj.name
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


@dataclass
class SummaryRecord:
    """Result of one test."""
    time_ms: float
    axis: str
    tune_type: str
    freq: float
    gain: float
    phase: float
    rate_ff: float
    rate_p: float
    rate_d: float
    angle_p: float
    max_accel: float


@dataclass
class DetailRecord:
    """Time-history sample during an active test."""
    time_ms: float
    command: float
    target_rate: float
    rate: float
    target_angle: float
    angle: float


@dataclass
class SweepRecord:
    """Frequency-response point from both pipelines."""
    time_ms: float
    freq_mtr: float
    gain_mtr: float
    phase_mtr: float
    freq_tgt: float
    gain_tgt: float
    phase_tgt: float


RECORD_TYPES = {
    'summary': SummaryRecord,
    'details': DetailRecord,
    'sweep': SweepRecord,
}


@dataclass
class LoggerConfig:
    """
    Configuration for the autotune logger.

    Attributes
    ----------
    output_dir : Path
        Directory for saved data files
    base_filename : str
        Base name for output files
    save_json : bool
        Save JSON format
    save_csv : bool
        Save one CSV per record type
    detail_decimation : int
        Keep every n-th detail sample
    include_checksums : bool
        Add integrity checksums to metadata
    pretty_print : bool
        Format JSON with indentation
    version : str
        Data format version string
    """
    output_dir: Path = field(default_factory=lambda: Path('autotune_logs'))
    base_filename: str = 'autotune'
    save_json: bool = True
    save_csv: bool = True
    detail_decimation: int = 1
    include_checksums: bool = True
    pretty_print: bool = True
    version: str = '1.0.0'


class AutotuneLogger:
    """
    Telemetry sink for an autotune session.

    Example Usage
    -------------
    >>> logger = AutotuneLogger(LoggerConfig(output_dir=Path('logs')))
    >>> logger.set_session_config(autotune_config)
    >>> ...  # run the session with this logger
    >>> logger.save()
    >>> df = logger.to_dataframe('summary')

    Parameters
    ----------
    config : LoggerConfig
        Logger configuration
    """

    def __init__(self, config: Optional[LoggerConfig] = None):
        self.config = config or LoggerConfig()
        self.summary: List[SummaryRecord] = []
        self.details: List[DetailRecord] = []
        self.sweep: List[SweepRecord] = []
        self._session_config: Optional[Dict] = None
        self._detail_count = 0
        self._start_time = datetime.now()

    def write_autotune(
        self,
        time_ms: float,
        axis,
        tune_type,
        freq: float,
        gain: float,
        phase: float,
        rate_ff: float,
        rate_p: float,
        rate_d: float,
        angle_p: float,
        max_accel: float
    ) -> None:
        """Record the outcome of one test."""
        self.summary.append(SummaryRecord(
            time_ms=float(time_ms),
            axis=getattr(axis, 'name', str(axis)),
            tune_type=getattr(tune_type, 'name', str(tune_type)),
            freq=float(freq),
            gain=float(gain),
            phase=float(phase),
            rate_ff=float(rate_ff),
            rate_p=float(rate_p),
            rate_d=float(rate_d),
            angle_p=float(angle_p),
            max_accel=float(max_accel),
        ))

    def write_details(
        self,
        time_ms: float,
        command: float,
        target_rate: float,
        rate: float,
        target_angle: float,
        angle: float
    ) -> None:
        """Record one time-history sample, decimated by ``detail_decimation``."""
        self._detail_count += 1
        if (self._detail_count - 1) % max(self.config.detail_decimation, 1):
            return
        self.details.append(DetailRecord(
            float(time_ms), float(command), float(target_rate),
            float(rate), float(target_angle), float(angle)
        ))

    def write_sweep(self, time_ms: float, point_mtr, point_tgt) -> None:
        """Record one point from each pipeline (``SweepInfo``)."""
        self.sweep.append(SweepRecord(
            time_ms=float(time_ms),
            freq_mtr=float(point_mtr.freq),
            gain_mtr=float(point_mtr.gain),
            phase_mtr=float(point_mtr.phase),
            freq_tgt=float(point_tgt.freq),
            gain_tgt=float(point_tgt.gain),
            phase_tgt=float(point_tgt.phase),
        ))

    def set_session_config(self, config: Any) -> None:
        """Attach the session configuration for reproducibility."""
        if hasattr(config, '__dataclass_fields__'):
            self._session_config = asdict(config)
        elif isinstance(config, dict):
            self._session_config = dict(config)
        else:
            self._session_config = {'raw': str(config)}

    def clear(self) -> None:
        self.summary.clear()
        self.details.clear()
        self.sweep.clear()
        self._detail_count = 0

    def records(self, kind: str) -> List:
        if kind not in RECORD_TYPES:
            raise ValueError(f"unknown record type '{kind}', expected one of {list(RECORD_TYPES)}")
        return getattr(self, kind)

    def to_dataframe(self, kind: str) -> pd.DataFrame:
        """
        Records of one type as a DataFrame.

        Parameters
        ----------
        kind : str
            'summary', 'details' or 'sweep'
        """
        columns = [f.name for f in fields(RECORD_TYPES[kind])] if kind in RECORD_TYPES else None
        rows = [asdict(r) for r in self.records(kind)]
        return pd.DataFrame(rows, columns=columns)

    def save(self, suffix: Optional[str] = None) -> Dict[str, Any]:
        """
        Save all records to disk.

        Parameters
        ----------
        suffix : str, optional
            Optional suffix for filename

        Returns
        -------
        Dict[str, Any]
            'json' -> Path, 'csv' -> List[Path]
        """
        saved_files: Dict[str, Any] = {}
        self.config.output_dir.mkdir(parents=True, exist_ok=True)

        timestamp = self._start_time.strftime('%Y%m%d_%H%M%S')
        base = f"{self.config.base_filename}_{timestamp}"
        if suffix:
            base = f"{base}_{suffix}"

        if self.config.save_json:
            json_path = self.config.output_dir / f"{base}.json"
            self._save_json(self._build_data_structure(), json_path)
            saved_files['json'] = json_path

        if self.config.save_csv:
            saved_files['csv'] = self._save_csv(base)

        return saved_files

    def _build_data_structure(self) -> Dict[str, Any]:
        records = {kind: [asdict(r) for r in self.records(kind)] for kind in RECORD_TYPES}
        metadata = {
            'timestamp': self._start_time.isoformat(),
            'version': self.config.version,
        }
        if self._session_config:
            metadata['config'] = self._session_config
        if self.config.include_checksums:
            metadata['checksums'] = {
                kind: _checksum(rows) for kind, rows in records.items()
            }
        return {'metadata': metadata, 'records': records}

    def _save_json(self, data: Dict, filepath: Path) -> None:
        indent = 2 if self.config.pretty_print else None
        with open(filepath, 'w') as f:
            json.dump(data, f, cls=NumpyEncoder, indent=indent)
        print(f"  [JSON] Saved: {filepath}")

    def _save_csv(self, base: str) -> List[Path]:
        csv_paths = []
        for kind, record_type in RECORD_TYPES.items():
            filepath = self.config.output_dir / f"{base}_{kind}.csv"
            header = [f.name for f in fields(record_type)]
            with open(filepath, 'w', newline='') as f:
                writer = csv.writer(f)
                writer.writerow(header)
                for record in self.records(kind):
                    writer.writerow([getattr(record, name) for name in header])
            csv_paths.append(filepath)
            print(f"  [CSV] Saved: {filepath}")
        return csv_paths

    @staticmethod
    def load_json(filepath: Union[str, Path]) -> Dict[str, Any]:
        """Load a saved session from JSON."""
        with open(filepath, 'r') as f:
            return json.load(f)

    @staticmethod
    def verify_checksum(filepath: Union[str, Path]) -> bool:
        """
        Verify data integrity using stored checksums.

        Returns
        -------
        bool
            True if all checksums match
        """
        data = AutotuneLogger.load_json(filepath)
        stored_checksums = data.get('metadata', {}).get('checksums')
        if stored_checksums is None:
            print("No checksums found in file")
            return True

        for kind, rows in data.get('records', {}).items():
            computed = _checksum(rows)
            stored = stored_checksums.get(kind, '')
            if computed != stored:
                print(f"Checksum mismatch for {kind}: {computed} != {stored}")
                return False

        print("All checksums verified successfully")
        return True


def _checksum(rows: List[Dict[str, Any]]) -> str:
    """md5 over the numeric fields of a record list."""
    values = [
        float(v) for row in rows for v in row.values()
        if isinstance(v, (int, float)) and not isinstance(v, bool)
    ]
    combined = np.nan_to_num(np.asarray(values, dtype=float), nan=0.0)
    return hashlib.md5(combined.tobytes()).hexdigest()
