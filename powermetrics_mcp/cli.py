"""powermetrics-mcp command line tool.

Live mode spawns powermetrics (needs root) and prints at most one snapshot
per interval. --file replays a captured log at full speed.

    sudo powermetrics-mcp --interval 500 --json
    powermetrics-mcp --file capture.log --cpu-residency
"""
from __future__ import annotations
import argparse
import os
import signal
import sys
import threading
import time
from typing import Callable, List, Optional, TextIO

from .config import Config
from .errors import PowermetricsError, ProducerExitError
from .ingestion.parser import PowermetricsParser
from .ingestion.stream import MetricsStream
from .render import render

LIVE_SAMPLERS = 'tasks,battery,network,disk,interrupts,cpu_power,gpu_power,ane_power,thermal'

# flag -> render view
VIEW_FLAGS = (
    ('system', 'system'),
    ('process', 'process'),
    ('cpu_residency', 'cpu_residency'),
    ('gpu_residency', 'gpu_residency'),
    ('network', 'network'),
    ('disk', 'disk'),
    ('battery', 'battery'),
    ('interrupts', 'interrupts'),
)


def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog='powermetrics-mcp', description='Stream parsed macOS powermetrics samples')
    ap.add_argument('--interval', type=int, default=1000, help='sampling interval in ms (default 1000)')
    ap.add_argument('--json', action='store_true', help='output metrics as JSON')
    only = ap.add_mutually_exclusive_group()
    only.add_argument('--system', action='store_true', help='only show system metrics')
    only.add_argument('--process', action='store_true', help='only show process metrics')
    only.add_argument('--cpu-residency', action='store_true', help='only show CPU residency metrics')
    only.add_argument('--gpu-residency', action='store_true', help='only show GPU residency metrics')
    only.add_argument('--network', action='store_true', help='only show network metrics')
    only.add_argument('--disk', action='store_true', help='only show disk metrics')
    only.add_argument('--battery', action='store_true', help='only show battery metrics')
    only.add_argument('--interrupts', action='store_true', help='only show interrupt metrics')
    ap.add_argument('--file', help='replay a captured powermetrics log instead of running the tool')
    ap.add_argument('--powermetrics-path', default='', help='powermetrics binary (default /usr/bin/powermetrics)')
    ap.add_argument('--debug', action='store_true', help='verbose diagnostics (same as DEBUG_VERBOSE=1)')
    return ap


def selected_view(args: argparse.Namespace) -> str:
    for attr, view in VIEW_FLAGS:
        if getattr(args, attr):
            return view
    return 'all'


def live_config(args: argparse.Namespace) -> Config:
    return Config(
        powermetrics_path=args.powermetrics_path,
        powermetrics_args=['--samplers', LIVE_SAMPLERS, '--show-process-gpu', '--show-initial-usage', '-i', str(args.interval)],
        sample_window_ms=args.interval,
    )


def consume(
    stream: MetricsStream,
    out: TextIO,
    view: str = 'all',
    as_json: bool = False,
    min_interval_s: float = 0.0,
    clock: Callable[[], float] = time.monotonic,
) -> int:
    """Render snapshots from stream to out; returns how many were printed.

    With min_interval_s > 0 snapshots arriving sooner than that after the last
    printed one are skipped.
    """
    printed = 0
    last = clock()
    for snapshot in stream.metrics:
        if min_interval_s > 0:
            now = clock()
            if now - last < min_interval_s:
                continue
            last = now
        text = render(snapshot, view, as_json)
        if text is None:
            continue
        print(text, file=out, flush=True)
        printed += 1
    return printed


def _report_errors(stream: MetricsStream, failures: List[BaseException], err: TextIO) -> threading.Thread:
    def drain():
        for e in stream.errors:
            failures.append(e)
            print(f'powermetrics-mcp: {e}', file=err, flush=True)

    t = threading.Thread(target=drain, name='PowermetricsCliErrors', daemon=True)
    t.start()
    return t


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    if args.interval <= 0:
        print('powermetrics-mcp: --interval must be positive', file=sys.stderr)
        return 2
    if args.debug:
        os.environ['DEBUG_VERBOSE'] = '1'
    view = selected_view(args)

    source = None
    try:
        if args.file:
            parser = PowermetricsParser(Config(sample_window_ms=args.interval))
            source = open(args.file, 'rb')
            stream = parser.run_with_reader(source)
            min_interval_s = 0.0
        else:
            parser = PowermetricsParser(live_config(args))
            stream = parser.run_with_errors()
            min_interval_s = args.interval / 1000.0
    except (OSError, PowermetricsError) as e:
        print(f'powermetrics-mcp: failed to start: {e}', file=sys.stderr)
        return 1

    def _on_signal(signum, frame):
        print('\nReceived signal, stopping...', file=sys.stderr)
        stream.cancel(f'signal {signum}')

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    failures: List[BaseException] = []
    errors_thread = _report_errors(stream, failures, sys.stderr)
    try:
        consume(stream, sys.stdout, view, args.json, min_interval_s)
    finally:
        stream.join(timeout=5)
        errors_thread.join(timeout=1)
        if source is not None:
            source.close()
    if any(isinstance(e, ProducerExitError) for e in failures):
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
