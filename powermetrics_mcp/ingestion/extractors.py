"""Stateless line classifiers and field extractors for powermetrics text.

Every function here is pure and never raises on content: a pattern that does
not match (or matches but carries an unparseable number) yields "not found"
and the caller moves on to the next interpretation.

Regex notes:
The text format is undocumented and drifts between macOS releases. Patterns
are deliberately loose about whitespace runs ("active residency:  55.11%")
and anchored only where a prefix is unambiguous (pid lines, task rows).
Token gates (has_all / has_none / has_any) are plain substring checks over
the lower-cased line, not word-boundary matches: a label containing
"cpu-power" satisfies a ("cpu", "power") gate.
"""
from __future__ import annotations
import re
from typing import Dict, NamedTuple, Optional, Tuple

NUMBER_RE = re.compile(r"([0-9]+(?:\.[0-9]+)?)")

GPU_PROCESS_RE = re.compile(
    r"^pid\s+(\d+)\s+(.+?)\s+([0-9]+(?:\.[0-9]+)?)\s*(us|ms|s)(?:\s+\(([0-9]+(?:\.[0-9]+)?)\s*%\))?(?:\s+.*)?$"
)
# Name  ID  CPU ms/s  User%  Deadlines (<2 ms, 2-5 ms)  Wakeups (Intr, Pkg idle)  [GPU ms/s]
TASK_HEADER_RE = re.compile(r"^Name\s+ID\s+CPU ms/s")
_TASK_ROW = r"^(\S.*?)\s+(-?\d+)" + r"\s+([0-9.]+)" * 6
TASK_ROW_RE = re.compile(_TASK_ROW + r"$")
TASK_ROW_GPU_RE = re.compile(_TASK_ROW + r"\s+([0-9.]+)$")
SECTION_BANNER_RE = re.compile(r"^\*{3,}.*\*{3,}$")

CLUSTER_ONLINE_RE = re.compile(r"([A-Z0-9-]+)-Cluster Online: +([\d.]+)%")
CLUSTER_HW_FREQ_RE = re.compile(r"([A-Z0-9-]+)-Cluster HW active frequency: +([\d.]+) MHz")
CLUSTER_HW_RESIDENCY_RE = re.compile(r"^([A-Z0-9-]+-Cluster) HW active residency: +([\d.]+)%")
CLUSTER_IDLE_RE = re.compile(r"^([A-Z0-9-]+-Cluster) idle residency: +([\d.]+)%")
CLUSTER_DOWN_RE = re.compile(r"^([A-Z0-9-]+-Cluster) down residency: +([\d.]+)%")
FREQ_RESIDENCY_RE = re.compile(r"(\d+) MHz: +([\d.]+)%")

CPU_FREQ_RE = re.compile(r"CPU (\d+) frequency: +([\d.]+) MHz")
CPU_ACTIVE_RE = re.compile(r"CPU (\d+) active residency: +([\d.]+)%")
CPU_IDLE_RE = re.compile(r"CPU (\d+) idle residency: +([\d.]+)%")
CPU_DOWN_RE = re.compile(r"CPU (\d+) down residency: +([\d.]+)%")
INTERRUPT_CPU_RE = re.compile(r"^CPU (\d+):$")
INTERRUPT_TOTAL_RE = re.compile(r"Total IRQ: +([\d.]+) interrupts/sec")
INTERRUPT_IPI_TIMER_RE = re.compile(r"\|-> (IPI|TIMER): +([\d.]+) interrupts/sec")

BATTERY_RE = re.compile(r"Battery: percent_charge: +([\d.]+)")
NET_OUT_RE = re.compile(r"out: +([\d.]+) packets/s, +([\d.]+) bytes/s")
NET_IN_RE = re.compile(r"in: +([\d.]+) packets/s, +([\d.]+) bytes/s")
DISK_READ_RE = re.compile(r"read: +([\d.]+) ops/s +([\d.]+) KBytes/s")
DISK_WRITE_RE = re.compile(r"write: +([\d.]+) ops/s +([\d.]+) KBytes/s")

GPU_HW_ACTIVE_RE = re.compile(r"GPU HW active residency: +([\d.]+)%")
GPU_IDLE_RE = re.compile(r"GPU idle residency: +([\d.]+)%")
GPU_SW_STATE_RE = re.compile(r"GPU SW (requested state|state): \(([^)]+)\)")

ALL_TASKS = 'ALL_TASKS'


class GPUProcessMatch(NamedTuple):
    pid: int
    name: str
    value: float
    unit: str
    percent: str  # '' when the line carries no explicit percentage


class TaskRowMatch(NamedTuple):
    name: str
    pid: int
    cpu_ms_per_sec: float
    user_percent: float
    deadlines_lt_2ms: float
    deadlines_2_to_5ms: float
    wakeups_interrupts: float
    wakeups_pkg_idle: float
    gpu_ms_per_sec: Optional[float]


def to_float(text: Optional[str]) -> Optional[float]:
    if text is None:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def has_all(text: str, *tokens: str) -> bool:
    return all(t in text for t in tokens)


def has_none(text: str, *tokens: str) -> bool:
    return not any(t in text for t in tokens)


def has_any(text: str, *tokens: str) -> bool:
    return any(t in text for t in tokens)


def clamp_percent(value: float) -> float:
    if value < 0:
        return 0.0
    if value > 100:
        return 100.0
    return value


def is_section_banner(line: str) -> bool:
    """True for stanza headers such as '**** GPU usage ****'."""
    return bool(SECTION_BANNER_RE.match(line))


def parse_trailing_value(line: str, unit: str) -> Tuple[float, bool]:
    """Rightmost number immediately preceding the last occurrence of unit.

    'Total: 10.0 W out of 100.0 W' -> (100.0, True). Parenthetical annotations
    before the unit are dropped and only text after the last colon counts.
    """
    idx = line.lower().rfind(unit.lower())
    if idx == -1:
        return 0.0, False
    segment = line[:idx]
    paren = segment.find('(')
    if paren != -1:
        segment = segment[:paren]
    colon = segment.rfind(':')
    if colon != -1:
        segment = segment[colon + 1:]
    numbers = NUMBER_RE.findall(segment)
    if not numbers:
        return 0.0, False
    value = to_float(numbers[-1])
    if value is None:
        return 0.0, False
    return value, True


def parse_leading_value_after_colon(line: str, unit: str) -> Tuple[float, bool]:
    """First number before unit in 'Label: VALUE<unit> (breakdown...)' lines."""
    colon = line.find(':')
    segment = line[colon + 1:] if colon != -1 else line
    paren = segment.find('(')
    if paren != -1:
        segment = segment[:paren]
    idx = segment.lower().find(unit.lower())
    if idx == -1:
        return 0.0, False
    numbers = NUMBER_RE.findall(segment[:idx])
    if not numbers:
        return 0.0, False
    value = to_float(numbers[0])
    if value is None:
        return 0.0, False
    return value, True


def parenthetical_body(line: str) -> Optional[str]:
    """Text after the first '(' with trailing ')' stripped; None if absent."""
    open_idx = line.find('(')
    if open_idx == -1:
        return None
    return line[open_idx + 1:].rstrip(')')


def parse_freq_residency(body: str) -> Dict[float, float]:
    """'1020 MHz:  39% 1404 MHz: 2.2%' -> {1020.0: 39.0, 1404.0: 2.2}."""
    residency: Dict[float, float] = {}
    for freq_s, pct_s in FREQ_RESIDENCY_RE.findall(body):
        freq, pct = to_float(freq_s), to_float(pct_s)
        if freq is None or pct is None:
            continue
        residency[freq] = clamp_percent(pct)
    return residency


def parse_gpu_states(body: str, prefix: str = 'P') -> Dict[str, float]:
    """Positional (NAME, ':', 'value%') triples; other names are skipped.

    SW requested states are named P1..P15 and SW states SW_P1..SW_P15; both
    are checked against the prefix so a drifted name is ignored, not fatal.
    """
    states: Dict[str, float] = {}
    tokens = body.split()
    for i in range(0, len(tokens) - 2, 3):
        name = tokens[i].strip(': ')
        if not name.startswith(prefix):
            continue
        value = to_float(tokens[i + 2].rstrip('%'))
        if value is None:
            continue
        states[name] = clamp_percent(value)
    return states


def convert_to_nanoseconds(value: float, unit: str) -> int:
    scale = {'us': 1_000, 'ms': 1_000_000, 's': 1_000_000_000}.get(unit.lower())
    if scale is None:
        return 0
    return int(round(value * scale))


def derive_busy_percent(active_ns: int, explicit_percent: Optional[str], window_ns: int) -> float:
    """Busy percent for a GPU process line.

    An explicit '(NN.N%)' on the line wins. Otherwise the active time is
    divided by the sample window; a non-positive window yields 0.
    """
    if explicit_percent:
        parsed = to_float(explicit_percent)
        if parsed is not None:
            return clamp_percent(parsed)
    if window_ns <= 0 or active_ns <= 0:
        return 0.0
    return clamp_percent((active_ns / window_ns) * 100)


def match_gpu_process(line: str) -> Optional[GPUProcessMatch]:
    m = GPU_PROCESS_RE.match(line)
    if not m:
        return None
    try:
        pid = int(m.group(1))
    except ValueError:
        return None
    value = to_float(m.group(3))
    if value is None:
        return None
    return GPUProcessMatch(pid, m.group(2).strip(), value, m.group(4), m.group(5) or '')


def task_table_has_gpu_column(line: str) -> Optional[bool]:
    """None unless line is the task table header; else whether it lists GPU ms/s."""
    if not TASK_HEADER_RE.match(line):
        return None
    return 'GPU ms/s' in line


def _task_row(regex: re.Pattern, line: str) -> Optional[TaskRowMatch]:
    m = regex.match(line)
    if not m:
        return None
    nums = [to_float(g) for g in m.groups()[2:8]]
    if any(n is None for n in nums):
        return None
    try:
        pid = int(m.group(2))
    except ValueError:
        return None
    gpu = to_float(m.group(9)) if regex.groups > 8 else None
    return TaskRowMatch(m.group(1).strip(), pid, *nums, gpu)


def match_task_row(line: str, gpu_column: Optional[bool] = None) -> Optional[TaskRowMatch]:
    """Match a "Running tasks" row.

    gpu_column comes from the table header. Names may end in a number, so the
    column count has to be fixed up front; with no header seen yet the row is
    tried without the GPU column first.
    """
    if gpu_column is None:
        return _task_row(TASK_ROW_RE, line) or _task_row(TASK_ROW_GPU_RE, line)
    return _task_row(TASK_ROW_GPU_RE if gpu_column else TASK_ROW_RE, line)
