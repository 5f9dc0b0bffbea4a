"""Text / JSON formatting of Metrics snapshots for the CLI.

A view selects one section of a snapshot. render() returns None when the
snapshot carries nothing for the requested view so the caller can skip it.
"""
from __future__ import annotations
import json
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from .ingestion.models import Metrics, calculate_total_active, jsonable

VIEWS = ('all', 'system', 'process', 'cpu_residency', 'gpu_residency', 'network', 'disk', 'battery', 'interrupts')


def _freq_map(residency: Dict[float, float]) -> str:
    return ' '.join(f'{freq:.0f}MHz:{pct:.2f}%' for freq, pct in sorted(residency.items()))


def _state_map(states: Dict[str, float]) -> str:
    return ' '.join(f'{name}:{pct:.2f}%' for name, pct in states.items())


def system_line(m: Metrics, with_ane_power: bool = False) -> str:
    s = m.system
    ane = f', ANE Power: {s.ane_power_watts:.2f} W' if with_ane_power else ''
    return (
        f'CPU Power: {s.cpu_power_watts:.2f} W, GPU Power: {s.gpu_power_watts:.2f} W{ane}, '
        f'CPU Freq: {s.cpu_frequency_mhz:.0f} MHz, GPU Freq: {s.gpu_frequency_mhz:.0f} MHz, '
        f'CPU Temp: {s.cpu_temperature_c:.2f}°C, GPU Temp: {s.gpu_temperature_c:.2f}°C, '
        f'ANE Busy: {s.ane_busy_percent:.2f}%, Battery: {s.battery_percent:.2f}%'
    )


def process_lines(m: Metrics) -> List[str]:
    out: List[str] = []
    if m.gpu_processes:
        out.append(f'GPU Processes: {len(m.gpu_processes)}')
        for p in m.gpu_processes:
            out.append(f'  PID: {p.pid}, Name: {p.name}, Busy: {p.busy_percent:.2f}%, Active: {p.active_nanos} ns')
    if m.processes:
        out.append(f'Tasks: {len(m.processes)}')
        for p in m.processes:
            gpu = f', GPU {p.gpu_ms_per_sec:.2f} ms/s' if p.gpu_ms_per_sec is not None else ''
            out.append(
                f'  PID: {p.pid}, Name: {p.name}, CPU {p.cpu_ms_per_sec:.2f} ms/s, User {p.user_percent:.2f}%, '
                f'Wakeups {p.wakeups_interrupts:.2f}/s{gpu}'
            )
    return out


def cpu_residency_lines(m: Metrics, detailed: bool = False) -> List[str]:
    out = [f'CPU Residencies: {len(m.cpu_residencies)}']
    for cpu in sorted(m.cpu_residencies, key=lambda c: c.cpu_id):
        out.append(
            f'  CPU {cpu.cpu_id}: Freq {cpu.frequency_mhz:.0f} MHz, Active: {calculate_total_active(cpu.active_residency):.2f}%, '
            f'Idle: {cpu.idle_residency:.2f}%, Down: {cpu.down_residency:.2f}%'
        )
        if detailed and cpu.active_residency:
            out.append(f'    Frequency Residency: {_freq_map(cpu.active_residency)}')
    return out


def gpu_residency_lines(m: Metrics, detailed: bool = False) -> List[str]:
    g = m.gpu_residency
    out = [f'GPU Residency: HW Active: {g.hw_active_residency:.2f}%, Idle: {g.idle_residency:.2f}%, Power: {g.power_milliwatts:.2f} mW']
    if detailed:
        if g.hw_active_freq_residency:
            out.append(f'  Frequency Residency: {_freq_map(g.hw_active_freq_residency)}')
        if g.sw_requested_states:
            out.append(f'  SW Requested States: {_state_map(g.sw_requested_states)}')
        if g.sw_states:
            out.append(f'  SW States: {_state_map(g.sw_states)}')
    return out


def network_line(m: Metrics) -> str:
    n = m.network
    return (
        f'Network: Out {int(n.out_packets_per_sec)} packets/s, {int(n.out_bytes_per_sec)} bytes/s | '
        f'In {int(n.in_packets_per_sec)} packets/s, {int(n.in_bytes_per_sec)} bytes/s'
    )


def disk_line(m: Metrics) -> str:
    d = m.disk
    return (
        f'Disk: Read {int(d.read_ops_per_sec)} ops/s, {int(d.read_bytes_per_sec)} bytes/s | '
        f'Write {int(d.write_ops_per_sec)} ops/s, {int(d.write_bytes_per_sec)} bytes/s'
    )


def interrupt_lines(m: Metrics) -> List[str]:
    out = [f'Interrupts: {len(m.interrupts)} CPUs']
    for i in sorted(m.interrupts, key=lambda x: x.cpu_id):
        out.append(f'  CPU {i.cpu_id}: Total IRQs {i.total_irq:.2f}/s, IPI {i.ipi:.2f}/s, TIMER {i.timer:.2f}/s')
    return out


def cluster_lines(m: Metrics) -> List[str]:
    out = [f'CPU Clusters: {len(m.clusters)}']
    for c in m.clusters:
        out.append(f'  Name: {c.name}, Type: {c.type}, Online: {c.online_percent:.2f}%, Freq: {c.hw_active_freq_mhz:.0f} MHz')
    return out


def _section(m: Metrics, view: str) -> Any:
    """Structured payload for a single-section view, or None if absent."""
    if view == 'system':
        return asdict(m.system) if m.system is not None else None
    if view == 'process':
        if not (m.gpu_processes or m.processes):
            return None
        return {
            'gpu_processes': [asdict(p) for p in m.gpu_processes],
            'processes': [asdict(p) for p in m.processes],
        }
    if view == 'cpu_residency':
        return [asdict(c) for c in m.cpu_residencies] or None
    if view == 'gpu_residency':
        return asdict(m.gpu_residency) if m.gpu_residency is not None else None
    if view == 'network':
        return asdict(m.network) if m.network is not None else None
    if view == 'disk':
        return asdict(m.disk) if m.disk is not None else None
    if view == 'battery':
        if m.system is None or m.system.battery_percent <= 0:
            return None
        return {'battery_percent': m.system.battery_percent}
    if view == 'interrupts':
        return [asdict(i) for i in m.interrupts] or None
    raise ValueError(f'unknown view {view!r}')


def _all_payload(m: Metrics) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if m.system is not None:
        out['system'] = asdict(m.system)
    if m.gpu_processes:
        out['gpu_processes'] = [asdict(p) for p in m.gpu_processes]
    if m.processes:
        out['processes'] = [asdict(p) for p in m.processes]
    if m.clusters:
        out['clusters'] = [asdict(c) for c in m.clusters]
    if m.cpu_residencies:
        out['cpu_residencies'] = [asdict(c) for c in m.cpu_residencies]
    if m.cluster_residencies:
        out['cluster_residencies'] = [asdict(c) for c in m.cluster_residencies]
    if m.gpu_residency is not None:
        out['gpu_residency'] = asdict(m.gpu_residency)
    if m.network is not None:
        out['network'] = asdict(m.network)
    if m.disk is not None:
        out['disk'] = asdict(m.disk)
    if m.interrupts:
        out['interrupts'] = [asdict(i) for i in m.interrupts]
    return out


def render_json(m: Metrics, view: str = 'all') -> Optional[str]:
    payload = _all_payload(m) if view == 'all' else _section(m, view)
    if payload is None:
        return None
    return json.dumps(jsonable(payload))


def render_text(m: Metrics, view: str = 'all') -> Optional[str]:
    lines: List[str] = []
    if view == 'all':
        if m.system is not None:
            lines.append(system_line(m))
        lines.extend(process_lines(m))
        if m.clusters:
            lines.extend(cluster_lines(m))
        if m.cpu_residencies:
            lines.extend(cpu_residency_lines(m))
        if m.gpu_residency is not None:
            lines.extend(gpu_residency_lines(m))
        if m.network is not None:
            lines.append(network_line(m))
        if m.disk is not None:
            lines.append(disk_line(m))
        if m.interrupts:
            lines.extend(interrupt_lines(m))
    elif _section(m, view) is None:
        return None
    elif view == 'system':
        lines.append(system_line(m, with_ane_power=True))
    elif view == 'process':
        lines.extend(process_lines(m))
    elif view == 'cpu_residency':
        lines.extend(cpu_residency_lines(m, detailed=True))
    elif view == 'gpu_residency':
        lines.extend(gpu_residency_lines(m, detailed=True))
    elif view == 'network':
        lines.append(network_line(m))
    elif view == 'disk':
        lines.append(disk_line(m))
    elif view == 'battery':
        lines.append(f'Battery: {m.system.battery_percent:.2f}%')
    elif view == 'interrupts':
        lines.extend(interrupt_lines(m))
    return '\n'.join(lines) if lines else None


def render(m: Metrics, view: str = 'all', as_json: bool = False) -> Optional[str]:
    return render_json(m, view) if as_json else render_text(m, view)
