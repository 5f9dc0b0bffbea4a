from __future__ import annotations
import subprocess
import threading
from collections import deque
from typing import IO, Deque, Iterable, List, Optional, Tuple

from ..config import Config, normalize_config
from ..debug_util import dbg, trace
from ..errors import PowermetricsError, ProducerExitError
from . import extractors as ex
from .accumulator import Accumulator
from .models import GPUProcessSample, Metrics, ProcessSample
from .stream import Channel, MetricsStream, stream_from_reader

"""powermetrics text parser

Dispatch order per line:
    1. blank lines, '--' comments and '**** ... ****' banners are inert
    2. 'pid <n> <name> <time><us|ms|s> [(<pct>%)]' GPU process lines are a
       complete datum: they produce a snapshot holding just that sample
    3. rows of the "Running tasks" table are buffered; the ALL_TASKS row
       closes the table and flushes the rows as one snapshot. The table
       header decides whether rows carry a trailing GPU ms/s column
    4. everything else goes through every section updater

Each updater reports whether it stored something. A line emits a cumulative
snapshot iff at least one updater stored data, so restating an unchanged value
still emits while unrecognised text never does.

Interrupt association:
'Total IRQ' / 'IPI' / 'TIMER' lines do not repeat the CPU id. In first_unset
mode (default) the value goes to the first CPU, in sighting order, whose field
is still zero. That is correct only while the tool prints CPUs in order with
all three sub-lines present, and a long-lived accumulator fed a second
sampling cycle keeps the first cycle's values. current_cpu mode attaches to
the CPU named by the most recent 'CPU n:' header instead.
"""


class PowermetricsParser:
    def __init__(self, config: Optional[Config] = None):
        self.config = normalize_config(config)
        self.acc = Accumulator()
        self._current_interrupt_cpu: Optional[int] = None
        self._task_gpu_column: Optional[bool] = None

    # ------------------------------------------------------------------ lines

    def parse_line(self, line: str) -> Optional[Metrics]:
        line = line.strip()
        if not line or line.startswith('--') or ex.is_section_banner(line):
            return None
        trace(line)

        proc = self._parse_gpu_process_line(line)
        if proc is not None:
            return proc

        gpu_column = ex.task_table_has_gpu_column(line)
        if gpu_column is not None:
            self._task_gpu_column = gpu_column
            return None

        row = ex.match_task_row(line, self._task_gpu_column)
        if row is not None:
            return self._buffer_task_row(row)

        lower = line.lower()
        # every updater runs; no short-circuit
        wrote = [
            self._update_cluster_info(line),
            self._update_cpu_info(line),
            self._update_cluster_residency(line),
            self._update_network(line),
            self._update_disk(line),
            self._update_interrupts(line),
            self._update_gpu_residency(line, lower),
            self._update_battery(line),
            self._update_system(line, lower),
        ]
        if not any(wrote):
            return None
        return self.acc.snapshot()

    def flush_process_samples(self) -> Optional[Metrics]:
        """Snapshot of buffered task rows (clearing the buffer), or None."""
        if not self.acc.pending_processes:
            return None
        rows = tuple(self.acc.pending_processes)
        self.acc.pending_processes = []
        dbg(f'flushing {len(rows)} task rows')
        return self.acc.snapshot(processes=rows)

    def _parse_gpu_process_line(self, line: str) -> Optional[Metrics]:
        m = ex.match_gpu_process(line)
        if m is None:
            return None
        active_ns = ex.convert_to_nanoseconds(m.value, m.unit)
        sample = GPUProcessSample(
            pid=m.pid,
            name=m.name.strip('()'),
            busy_percent=ex.derive_busy_percent(active_ns, m.percent, self.config.sample_window_ns),
            active_nanos=active_ns,
            frequency_mhz=self.acc.gpu_frequency_mhz,
        )
        return self.acc.gpu_process_snapshot(sample)

    def _buffer_task_row(self, row: ex.TaskRowMatch) -> Optional[Metrics]:
        self.acc.pending_processes.append(ProcessSample(
            pid=row.pid,
            name=row.name,
            cpu_ms_per_sec=row.cpu_ms_per_sec,
            user_percent=row.user_percent,
            deadlines_lt_2ms=row.deadlines_lt_2ms,
            deadlines_2_to_5ms=row.deadlines_2_to_5ms,
            wakeups_interrupts=row.wakeups_interrupts,
            wakeups_pkg_idle=row.wakeups_pkg_idle,
            gpu_ms_per_sec=row.gpu_ms_per_sec,
        ))
        if row.name == ex.ALL_TASKS:
            return self.flush_process_samples()
        return None

    # --------------------------------------------------------------- updaters

    def _update_cluster_info(self, line: str) -> bool:
        m = ex.CLUSTER_ONLINE_RE.search(line)
        if m:
            value = ex.to_float(m.group(2))
            if value is None:
                return False
            name = f'{m.group(1)}-Cluster'
            self.acc.ensure_cluster(name).online_percent = ex.clamp_percent(value)
            if name in self.acc.cluster_residencies:
                self.acc.cluster_residencies[name].online_percent = ex.clamp_percent(value)
            return True
        m = ex.CLUSTER_HW_FREQ_RE.search(line)
        if m:
            value = ex.to_float(m.group(2))
            if value is None:
                return False
            name = f'{m.group(1)}-Cluster'
            self.acc.ensure_cluster(name).hw_active_freq_mhz = value
            if name in self.acc.cluster_residencies:
                self.acc.cluster_residencies[name].hw_active_freq_mhz = value
            return True
        return False

    def _update_cpu_info(self, line: str) -> bool:
        m = ex.CPU_FREQ_RE.search(line)
        if m:
            value = ex.to_float(m.group(2))
            if value is None:
                return False
            self.acc.ensure_cpu_residency(int(m.group(1))).frequency_mhz = value
            return True
        m = ex.INTERRUPT_CPU_RE.match(line)
        if m:
            # interrupt headers also register the CPU
            self.acc.ensure_cpu_residency(int(m.group(1)))
            return True
        m = ex.CPU_ACTIVE_RE.search(line)
        if m:
            cpu = self.acc.ensure_cpu_residency(int(m.group(1)))
            body = ex.parenthetical_body(line)
            if body is not None:
                cpu.active_residency = ex.parse_freq_residency(body)
            return True
        for regex, attr in ((ex.CPU_IDLE_RE, 'idle_residency'), (ex.CPU_DOWN_RE, 'down_residency')):
            m = regex.search(line)
            if m:
                value = ex.to_float(m.group(2))
                if value is None:
                    return False
                setattr(self.acc.ensure_cpu_residency(int(m.group(1))), attr, ex.clamp_percent(value))
                return True
        return False

    def _update_cluster_residency(self, line: str) -> bool:
        m = ex.CLUSTER_HW_RESIDENCY_RE.match(line)
        if m:
            value, ok = ex.parse_trailing_value(line, '%')
            if not ok:
                return False
            cluster = self.acc.ensure_cluster_residency(m.group(1))
            cluster.hw_active_residency = ex.clamp_percent(value)
            body = ex.parenthetical_body(line)
            if body is not None:
                cluster.hw_active_freq_residency = ex.parse_freq_residency(body)
            return True
        for regex, attr in ((ex.CLUSTER_IDLE_RE, 'idle_residency'), (ex.CLUSTER_DOWN_RE, 'down_residency')):
            m = regex.match(line)
            if m:
                value = ex.to_float(m.group(2))
                if value is None:
                    return False
                setattr(self.acc.ensure_cluster_residency(m.group(1)), attr, ex.clamp_percent(value))
                return True
        return False

    def _update_network(self, line: str) -> bool:
        wrote = False
        for regex, direction in ((ex.NET_OUT_RE, 'out'), (ex.NET_IN_RE, 'in')):
            m = regex.search(line)
            if not m:
                continue
            packets, nbytes = ex.to_float(m.group(1)), ex.to_float(m.group(2))
            if packets is None or nbytes is None:
                continue
            net = self.acc.ensure_network()
            setattr(net, f'{direction}_packets_per_sec', packets)
            setattr(net, f'{direction}_bytes_per_sec', nbytes)
            wrote = True
        return wrote

    def _update_disk(self, line: str) -> bool:
        wrote = False
        for regex, direction in ((ex.DISK_READ_RE, 'read'), (ex.DISK_WRITE_RE, 'write')):
            m = regex.search(line)
            if not m:
                continue
            ops, kbytes = ex.to_float(m.group(1)), ex.to_float(m.group(2))
            if ops is None or kbytes is None:
                continue
            disk = self.acc.ensure_disk()
            setattr(disk, f'{direction}_ops_per_sec', ops)
            setattr(disk, f'{direction}_bytes_per_sec', kbytes * 1024)
            wrote = True
        return wrote

    def _update_interrupts(self, line: str) -> bool:
        m = ex.INTERRUPT_CPU_RE.match(line)
        if m:
            cpu_id = int(m.group(1))
            self.acc.ensure_interrupt(cpu_id)
            self._current_interrupt_cpu = cpu_id
            return True
        m = ex.INTERRUPT_TOTAL_RE.search(line)
        if m:
            return self._assign_interrupt('total_irq', m.group(1))
        m = ex.INTERRUPT_IPI_TIMER_RE.search(line)
        if m:
            field_name = 'ipi' if m.group(1) == 'IPI' else 'timer'
            return self._assign_interrupt(field_name, m.group(2))
        return False

    def _assign_interrupt(self, field_name: str, raw: str) -> bool:
        value = ex.to_float(raw)
        if value is None:
            return False
        if self.config.interrupt_association == 'current_cpu':
            if self._current_interrupt_cpu is None:
                return False
            setattr(self.acc.ensure_interrupt(self._current_interrupt_cpu), field_name, value)
            return True
        for entry in self.acc.interrupts.values():
            if getattr(entry, field_name) == 0:
                setattr(entry, field_name, value)
                return True
        return False

    def _update_gpu_residency(self, line: str, lower: str) -> bool:
        gpu = self.acc.gpu_residency
        m = ex.GPU_HW_ACTIVE_RE.search(line)
        if m:
            value = ex.to_float(m.group(1))
            if value is None:
                return False
            gpu.hw_active_residency = ex.clamp_percent(value)
            body = ex.parenthetical_body(line)
            if body is not None:
                gpu.hw_active_freq_residency = ex.parse_freq_residency(body)
            return True
        m = ex.GPU_IDLE_RE.search(line)
        if m:
            value = ex.to_float(m.group(1))
            if value is None:
                return False
            gpu.idle_residency = ex.clamp_percent(value)
            return True
        m = ex.GPU_SW_STATE_RE.search(line)
        if m:
            if m.group(1) == 'requested state':
                gpu.sw_requested_states = ex.parse_gpu_states(m.group(2), 'P')
            else:
                gpu.sw_states = ex.parse_gpu_states(m.group(2), 'SW_P')
            return True
        if ex.has_all(lower, 'gpu', 'power') and ex.has_none(lower, 'combined'):
            parsed = self._parse_power(line, lower)
            if parsed is not None:
                value, milli = parsed
                gpu.power_milliwatts = value if milli else value * 1000
                return True
        return False

    def _update_battery(self, line: str) -> bool:
        m = ex.BATTERY_RE.search(line)
        if not m:
            return False
        value = ex.to_float(m.group(1))
        if value is None:
            return False
        self.acc.system.battery_percent = value
        return True

    # ------------------------------------------------------ system gauges

    @staticmethod
    def _parse_power(line: str, lower: str) -> Optional[Tuple[float, bool]]:
        """(value, is_milliwatts) from the trailing W or mW figure."""
        # mW first: a plain 'w' search would also hit the W of 'mW'
        if 'mw' in lower:
            value, ok = ex.parse_trailing_value(line, 'mw')
            if ok:
                return value, True
        value, ok = ex.parse_trailing_value(line, 'w')
        if ok:
            return value, False
        return None

    def _parse_power_watts(self, line: str, lower: str) -> Optional[float]:
        parsed = self._parse_power(line, lower)
        if parsed is None:
            return None
        value, milli = parsed
        return value / 1000.0 if milli else value

    def _update_system(self, line: str, lower: str) -> bool:
        sample = self.acc.system
        updated = False

        if ex.has_all(lower, 'combined', 'power'):
            # label carries a parenthetical "(CPU + GPU + ANE)"
            tail = line.rsplit(':', 1)[-1]
            watts = self._parse_power_watts(tail, tail.lower())
            if watts is not None:
                sample.combined_power_watts = watts
                return True

        if ex.has_all(lower, 'cpu', 'power') and ex.has_none(lower, 'gpu'):
            watts = self._parse_power_watts(line, lower)
            if watts is not None:
                sample.cpu_power_watts = watts
                updated = True

        if ex.has_all(lower, 'cpu', 'frequency') and ex.has_none(lower, 'gpu'):
            value, ok = ex.parse_trailing_value(line, 'mhz')
            if ok:
                sample.cpu_frequency_mhz = value
                updated = True

        if ex.has_all(lower, 'gpu', 'busy'):
            value, ok = ex.parse_trailing_value(line, '%')
            if ok:
                sample.gpu_busy_percent = ex.clamp_percent(value)
                updated = True

        if ex.has_all(lower, 'gpu', 'hw active residency'):
            value, ok = ex.parse_leading_value_after_colon(line, '%')
            if ok:
                sample.gpu_busy_percent = ex.clamp_percent(value)
                updated = True

        if ex.has_all(lower, 'gpu', 'idle residency'):
            value, ok = ex.parse_leading_value_after_colon(line, '%')
            if ok:
                if sample.gpu_busy_percent == 0:
                    sample.gpu_busy_percent = ex.clamp_percent(100 - value)
                updated = True

        if ex.has_all(lower, 'ane', 'busy'):
            value, ok = ex.parse_trailing_value(line, '%')
            if ok:
                sample.ane_busy_percent = ex.clamp_percent(value)
                updated = True

        if ex.has_all(lower, 'ane', 'power'):
            watts = self._parse_power_watts(line, lower)
            if watts is not None:
                sample.ane_power_watts = watts
                updated = True

        if ex.has_all(lower, 'gpu', 'power'):
            watts = self._parse_power_watts(line, lower)
            if watts is not None:
                sample.gpu_power_watts = watts
                updated = True

        if ex.has_all(lower, 'dram', 'power'):
            watts = self._parse_power_watts(line, lower)
            if watts is not None:
                sample.dram_power_watts = watts
                updated = True

        if ex.has_all(lower, 'gpu', 'frequency'):
            value, ok = ex.parse_trailing_value(line, 'mhz')
            if ok:
                self.acc.gpu_frequency_mhz = value
                sample.gpu_frequency_mhz = value
                updated = True

        if 'temp' in lower:
            updated = self._update_temperatures(line, lower) or updated

        return updated

    def _update_temperatures(self, line: str, lower: str) -> bool:
        """Temperature labels drift between machines; route by keywords.

        '... temperature: N C' lines go to the CPU when they mention
        cpu/package/processor, to the GPU for gpu/graphics, and to both when
        neither is named. Short 'temp' forms are only trusted with a die or
        junction qualifier.
        """
        value, ok = ex.parse_trailing_value(line, 'c')
        if not ok:
            return False
        sample = self.acc.system
        if 'temperature' in lower:
            if ex.has_any(lower, 'cpu', 'package', 'processor'):
                sample.cpu_temperature_c = value
            elif ex.has_any(lower, 'gpu', 'graphics'):
                sample.gpu_temperature_c = value
            else:
                sample.cpu_temperature_c = value
                sample.gpu_temperature_c = value
            return True
        if ex.has_all(lower, 'gpu', 'die') or ex.has_all(lower, 'gpu', 'junction'):
            sample.gpu_temperature_c = value
            return True
        if ex.has_all(lower, 'cpu', 'die') or ex.has_all(lower, 'cpu', 'junction') or 'package' in lower:
            sample.cpu_temperature_c = value
            return True
        return False

    # ---------------------------------------------------------------- running

    def run_with_reader(self, reader: Iterable, wait=None, terminate=None) -> MetricsStream:
        """Parse an existing source (log file, pipe, list of lines) in the background."""
        return stream_from_reader(
            self, reader, wait=wait, terminate=terminate,
            metrics_buffer=self.config.metrics_buffer,
            errors_buffer=self.config.errors_buffer,
        )

    def run_with_errors(self) -> MetricsStream:
        """Spawn powermetrics and stream its output with both channels."""
        cmd = [self.config.powermetrics_path, *self.config.powermetrics_args]
        dbg(f'starting {" ".join(cmd)}')
        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except OSError as e:
            raise PowermetricsError(f'failed to start {cmd[0]}: {e}') from e
        stderr = StderrTail(proc.stderr)
        return self.run_with_reader(proc.stdout, wait=_process_waiter(proc, stderr), terminate=proc.kill)

    def run(self) -> Channel:
        """Like run_with_errors but drops errors; returns only the metrics channel."""
        stream = self.run_with_errors()
        _drain_errors(stream)
        return stream.metrics


def _process_waiter(proc: subprocess.Popen, stderr: StderrTail):
    def wait() -> None:
        rc = proc.wait()
        detail = stderr.text()
        if proc.stdout is not None:
            proc.stdout.close()
        if rc != 0:
            raise ProducerExitError(rc, detail)
    return wait


STDERR_TAIL_CHUNKS = 32
STDERR_CHUNK_BYTES = 4096


class StderrTail:
    """Drains a child's stderr in the background, keeping only the tail.

    The pipe is read for the whole life of the process so a chatty producer
    never blocks on a full stderr pipe while stdout is being parsed.
    """

    def __init__(self, stream: Optional[IO[bytes]], maxlen: int = STDERR_TAIL_CHUNKS):
        self._chunks: Deque[bytes] = deque(maxlen=maxlen)
        self._thread: Optional[threading.Thread] = None
        if stream is not None:
            self._thread = threading.Thread(
                target=self._read, args=(stream,), name='PowermetricsStderr', daemon=True
            )
            self._thread.start()

    def _read(self, stream: IO[bytes]) -> None:
        try:
            for chunk in iter(lambda: stream.readline(STDERR_CHUNK_BYTES), b''):
                self._chunks.append(chunk)
        except (OSError, ValueError) as e:
            dbg(f'stderr read stopped: {e}')
        finally:
            stream.close()

    def text(self, timeout: Optional[float] = 5.0) -> str:
        if self._thread is not None:
            self._thread.join(timeout)
        return b''.join(self._chunks).decode('utf-8', errors='replace').strip()


def _drain_errors(stream: MetricsStream) -> None:
    def drain():
        for err in stream.errors:
            dbg(f'dropped stream error: {err}')

    threading.Thread(target=drain, name='PowermetricsErrorDrain', daemon=True).start()


# Module-level conveniences -------------------------------------------------

def run_with_config(config: Config) -> Channel:
    return PowermetricsParser(config).run()


def run_with_config_stream(config: Config) -> MetricsStream:
    return PowermetricsParser(config).run_with_errors()


def run_default() -> Channel:
    return PowermetricsParser(Config()).run()


def run_default_stream() -> MetricsStream:
    return PowermetricsParser(Config()).run_with_errors()


def run_reader(config: Optional[Config], reader: Iterable) -> MetricsStream:
    return PowermetricsParser(config).run_with_reader(reader)


def parse_lines(lines: Iterable[str], config: Optional[Config] = None) -> List[Metrics]:
    """Synchronous helper: every snapshot a line sequence produces, EOF flush included."""
    parser = PowermetricsParser(config)
    out: List[Metrics] = []
    for line in lines:
        snapshot = parser.parse_line(line)
        if snapshot is not None:
            out.append(snapshot)
    final = parser.flush_process_samples()
    if final is not None:
        out.append(final)
    return out
