"""Collector configuration.

Constructor arguments always win; environment variables only replace values
the caller left at their defaults:

    POWERMETRICS_PATH                   binary to execute
    POWERMETRICS_SAMPLE_MS              sample window / -i interval in ms
    POWERMETRICS_INTERRUPT_ASSOCIATION  first_unset | current_cpu
    POWERMETRICS_METRICS_BUFFER         snapshot channel capacity
    POWERMETRICS_ERRORS_BUFFER          error channel capacity
"""
from __future__ import annotations
import os
from dataclasses import dataclass, field, replace
from typing import List, Optional

from .errors import ConfigError

DEFAULT_POWERMETRICS_PATH = '/usr/bin/powermetrics'
DEFAULT_POWERMETRICS_ARGS = ['--samplers', 'default', '--show-process-gpu', '-i', '1000']
DEFAULT_SAMPLE_WINDOW_MS = 1000
DEFAULT_METRICS_BUFFER = 128
DEFAULT_ERRORS_BUFFER = 16

# Total IRQ / IPI / TIMER lines never repeat the CPU id.
#   first_unset: attach to the first known CPU whose field is still zero
#   current_cpu: attach to the CPU named by the last "CPU n:" header
INTERRUPT_ASSOCIATION_MODES = ('first_unset', 'current_cpu')


@dataclass
class Config:
    powermetrics_path: str = ''
    powermetrics_args: List[str] = field(default_factory=list)
    sample_window_ms: int = 0
    interrupt_association: str = ''
    metrics_buffer: int = 0
    errors_buffer: int = 0

    @property
    def sample_window_ns(self) -> int:
        return int(self.sample_window_ms) * 1_000_000


def _env_int(name: str) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == '':
        return None
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f'{name} must be an integer, got {raw!r}')


def ensure_interval_argument(args: List[str], window_ms: int) -> List[str]:
    """Force the -i argument to match the sample window (appending it if absent)."""
    interval = str(int(window_ms))
    for i in range(len(args) - 1):
        if args[i] == '-i':
            args[i + 1] = interval
            return args
    return args + ['-i', interval]


def normalize_config(cfg: Optional[Config] = None) -> Config:
    """Return a copy of cfg with defaults and environment overrides applied.

    The argument list is always copied so callers can keep mutating their own.
    """
    cfg = cfg or Config()
    path = cfg.powermetrics_path or os.environ.get('POWERMETRICS_PATH') or DEFAULT_POWERMETRICS_PATH
    args = list(cfg.powermetrics_args) if cfg.powermetrics_args else list(DEFAULT_POWERMETRICS_ARGS)

    window = cfg.sample_window_ms
    if window <= 0:
        window = _env_int('POWERMETRICS_SAMPLE_MS') or DEFAULT_SAMPLE_WINDOW_MS
    if window <= 0:
        window = DEFAULT_SAMPLE_WINDOW_MS

    mode = cfg.interrupt_association or os.environ.get('POWERMETRICS_INTERRUPT_ASSOCIATION') or 'first_unset'
    if mode not in INTERRUPT_ASSOCIATION_MODES:
        raise ConfigError(f'unknown interrupt association {mode!r}; expected one of {INTERRUPT_ASSOCIATION_MODES}')

    metrics_buffer = cfg.metrics_buffer or _env_int('POWERMETRICS_METRICS_BUFFER') or DEFAULT_METRICS_BUFFER
    errors_buffer = cfg.errors_buffer or _env_int('POWERMETRICS_ERRORS_BUFFER') or DEFAULT_ERRORS_BUFFER

    return replace(
        cfg,
        powermetrics_path=path,
        powermetrics_args=ensure_interval_argument(args, window),
        sample_window_ms=window,
        interrupt_association=mode,
        metrics_buffer=max(1, metrics_buffer),
        errors_buffer=max(1, errors_buffer),
    )
