from __future__ import annotations
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional, Tuple

"""Snapshot data model.

Accumulator entries (everything except Metrics) are mutable and updated in
place while lines stream in. A Metrics value is what leaves the parser: it is
frozen and every nested entry is a deep copy, so consumers can keep it around
while the accumulator moves on.

Residency maps are keyed by frequency in MHz (float) and hold percent of the
sample interval spent at that frequency.
"""


@dataclass
class SystemSample:
    cpu_power_watts: float = 0.0
    cpu_frequency_mhz: float = 0.0
    gpu_busy_percent: float = 0.0
    gpu_power_watts: float = 0.0
    gpu_frequency_mhz: float = 0.0
    gpu_temperature_c: float = 0.0
    cpu_temperature_c: float = 0.0
    ane_busy_percent: float = 0.0
    ane_power_watts: float = 0.0
    dram_power_watts: float = 0.0
    combined_power_watts: float = 0.0
    battery_percent: float = 0.0


@dataclass
class ClusterInfo:
    name: str
    type: str  # Performance | Efficiency
    online_percent: float = 0.0
    hw_active_freq_mhz: float = 0.0


@dataclass
class CPUResidencyMetrics:
    cpu_id: int
    active_residency: Dict[float, float] = field(default_factory=dict)
    idle_residency: float = 0.0
    down_residency: float = 0.0
    frequency_mhz: float = 0.0


@dataclass
class ClusterResidencyMetrics:
    name: str
    type: str
    online_percent: float = 0.0
    hw_active_freq_mhz: float = 0.0
    hw_active_residency: float = 0.0
    hw_active_freq_residency: Dict[float, float] = field(default_factory=dict)
    idle_residency: float = 0.0
    down_residency: float = 0.0


@dataclass
class GPUResidencyMetrics:
    hw_active_residency: float = 0.0
    hw_active_freq_residency: Dict[float, float] = field(default_factory=dict)
    sw_requested_states: Dict[str, float] = field(default_factory=dict)
    sw_states: Dict[str, float] = field(default_factory=dict)
    idle_residency: float = 0.0
    power_milliwatts: float = 0.0

    def has_data(self) -> bool:
        return bool(
            self.hw_active_residency > 0
            or self.idle_residency > 0
            or self.hw_active_freq_residency
            or self.sw_states
            or self.sw_requested_states
        )


@dataclass
class NetworkMetrics:
    in_packets_per_sec: float = 0.0
    in_bytes_per_sec: float = 0.0
    out_packets_per_sec: float = 0.0
    out_bytes_per_sec: float = 0.0


@dataclass
class DiskMetrics:
    read_ops_per_sec: float = 0.0
    read_bytes_per_sec: float = 0.0
    write_ops_per_sec: float = 0.0
    write_bytes_per_sec: float = 0.0


@dataclass
class InterruptMetrics:
    cpu_id: int
    total_irq: float = 0.0
    ipi: float = 0.0
    timer: float = 0.0


@dataclass(frozen=True)
class GPUProcessSample:
    pid: int
    name: str
    busy_percent: float
    active_nanos: int
    frequency_mhz: float


@dataclass(frozen=True)
class ProcessSample:
    """One row of the "Running tasks" table."""
    pid: int
    name: str
    cpu_ms_per_sec: float
    user_percent: float
    deadlines_lt_2ms: float = 0.0
    deadlines_2_to_5ms: float = 0.0
    wakeups_interrupts: float = 0.0
    wakeups_pkg_idle: float = 0.0
    gpu_ms_per_sec: Optional[float] = None


@dataclass(frozen=True)
class Metrics:
    system: Optional[SystemSample] = None
    gpu_processes: Tuple[GPUProcessSample, ...] = ()
    processes: Tuple[ProcessSample, ...] = ()
    clusters: Tuple[ClusterInfo, ...] = ()
    cpu_residencies: Tuple[CPUResidencyMetrics, ...] = ()
    cluster_residencies: Tuple[ClusterResidencyMetrics, ...] = ()
    gpu_residency: Optional[GPUResidencyMetrics] = None
    network: Optional[NetworkMetrics] = None
    disk: Optional[DiskMetrics] = None
    interrupts: Tuple[InterruptMetrics, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly view; residency map keys become strings."""
        return jsonable(asdict(self))


def calculate_total_active(residency: Dict[float, float]) -> float:
    """Sum of a frequency residency map (total active percent)."""
    return sum(residency.values())


def jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {_key(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    return value


def _key(k: Any) -> str:
    if isinstance(k, float) and k.is_integer():
        return str(int(k))
    return str(k)
