from __future__ import annotations
import copy
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from .models import (
    ClusterInfo,
    ClusterResidencyMetrics,
    CPUResidencyMetrics,
    DiskMetrics,
    GPUProcessSample,
    GPUResidencyMetrics,
    InterruptMetrics,
    Metrics,
    NetworkMetrics,
    ProcessSample,
    SystemSample,
)


def cluster_type(name: str) -> str:
    return 'Efficiency' if name.upper().startswith('E-') else 'Performance'


class Accumulator:
    """Long-lived owner of everything parsed so far for one session.

    Keyed stores only grow: ensure_* accessors are get-or-create and nothing is
    ever removed. network/disk stay None until their first line arrives so a
    consumer can tell "never seen" from "seen with zero traffic".

    Not thread safe; a parser (and therefore its accumulator) belongs to a
    single reading thread.
    """

    def __init__(self):
        self.system = SystemSample()
        self.clusters: Dict[str, ClusterInfo] = {}
        self.cpu_residencies: Dict[int, CPUResidencyMetrics] = {}
        self.cluster_residencies: Dict[str, ClusterResidencyMetrics] = {}
        self.gpu_residency = GPUResidencyMetrics()
        self.interrupts: Dict[int, InterruptMetrics] = {}
        self.network: Optional[NetworkMetrics] = None
        self.disk: Optional[DiskMetrics] = None
        # last GPU HW active frequency; stamped onto GPU process samples
        self.gpu_frequency_mhz: float = 0.0
        self.pending_processes: List[ProcessSample] = []

    def ensure_cluster(self, name: str) -> ClusterInfo:
        cluster = self.clusters.get(name)
        if cluster is None:
            cluster = ClusterInfo(name=name, type=cluster_type(name))
            self.clusters[name] = cluster
        return cluster

    def ensure_cpu_residency(self, cpu_id: int) -> CPUResidencyMetrics:
        cpu = self.cpu_residencies.get(cpu_id)
        if cpu is None:
            cpu = CPUResidencyMetrics(cpu_id=cpu_id)
            self.cpu_residencies[cpu_id] = cpu
        return cpu

    def ensure_cluster_residency(self, name: str) -> ClusterResidencyMetrics:
        residency = self.cluster_residencies.get(name)
        if residency is None:
            residency = ClusterResidencyMetrics(name=name, type=cluster_type(name))
            info = self.clusters.get(name)
            if info is not None:
                residency.online_percent = info.online_percent
                residency.hw_active_freq_mhz = info.hw_active_freq_mhz
            self.cluster_residencies[name] = residency
        return residency

    def ensure_interrupt(self, cpu_id: int) -> InterruptMetrics:
        entry = self.interrupts.get(cpu_id)
        if entry is None:
            entry = InterruptMetrics(cpu_id=cpu_id)
            self.interrupts[cpu_id] = entry
        return entry

    def ensure_network(self) -> NetworkMetrics:
        if self.network is None:
            self.network = NetworkMetrics()
        return self.network

    def ensure_disk(self) -> DiskMetrics:
        if self.disk is None:
            self.disk = DiskMetrics()
        return self.disk

    # --- snapshots (deep copies; nothing returned aliases accumulator state) ---

    def cluster_snapshot(self) -> Tuple[ClusterInfo, ...]:
        return tuple(replace(c) for _, c in sorted(self.clusters.items()))

    def cpu_snapshot(self) -> Tuple[CPUResidencyMetrics, ...]:
        return tuple(copy.deepcopy(c) for c in self.cpu_residencies.values())

    def cluster_residency_snapshot(self) -> Tuple[ClusterResidencyMetrics, ...]:
        return tuple(copy.deepcopy(c) for c in self.cluster_residencies.values())

    def interrupt_snapshot(self) -> Tuple[InterruptMetrics, ...]:
        return tuple(replace(i) for i in self.interrupts.values())

    def gpu_residency_snapshot(self) -> Optional[GPUResidencyMetrics]:
        if not self.gpu_residency.has_data():
            return None
        return copy.deepcopy(self.gpu_residency)

    def snapshot(self, processes: Tuple[ProcessSample, ...] = ()) -> Metrics:
        """Cumulative view of everything seen so far.

        The system sample is always present; every other section is left empty
        (or None) until data for it has arrived.
        """
        return Metrics(
            system=replace(self.system),
            processes=tuple(processes),
            clusters=self.cluster_snapshot(),
            cpu_residencies=self.cpu_snapshot(),
            cluster_residencies=self.cluster_residency_snapshot(),
            gpu_residency=self.gpu_residency_snapshot(),
            network=replace(self.network) if self.network is not None else None,
            disk=replace(self.disk) if self.disk is not None else None,
            interrupts=self.interrupt_snapshot(),
        )

    @staticmethod
    def gpu_process_snapshot(sample: GPUProcessSample) -> Metrics:
        return Metrics(gpu_processes=(sample,))
