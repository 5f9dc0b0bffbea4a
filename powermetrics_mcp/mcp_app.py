import os, time, threading
from collections import deque
from dataclasses import asdict
from typing import Any, Deque, Dict, List, Optional

from .config import Config
from .debug_util import dbg
from .errors import PowermetricsError
from .ingestion.models import Metrics, jsonable
from .ingestion.parser import PowermetricsParser, parse_lines
from .ingestion.stream import MetricsStream
from fastmcp import FastMCP

# ----------------- System Prompt Guidance -----------------
SYSTEM_PROMPT = (
    "Workflow (single sampling session):\n"
    "1. start_sampling(interval_ms=1000) runs powermetrics (requires root) in the background.\n"
    "   start_sampling(log_path=...) replays a captured powermetrics log instead.\n"
    "2. latest_sample(section=optional) returns the newest cumulative snapshot.\n"
    "   Sections: system, clusters, cpu_residencies, cluster_residencies, gpu_residency, network, disk, interrupts, gpu_processes, processes.\n"
    "3. sampling_status() reports whether a session is running, sample counts and stream errors.\n"
    "4. stop_sampling() cancels the session and kills powermetrics.\n"
    "5. parse_powermetrics_text(text=...) parses pasted output without starting a session.\n"
    "Units: power in watts (GPU residency power in mW), frequency in MHz, residency/busy in percent of the sample window, disk rates in bytes/s.\n"
)

mcp = FastMCP("powermetrics-mcp")

RECENT_GPU_PROCESSES = 64


class SamplingSession:
    """One running stream plus the latest state published to tool callers.

    Reader threads update the fields below while tool calls read them from
    other threads, so every access goes through _lock.
    """

    def __init__(self, stream: MetricsStream, source: Optional[str] = None, source_file=None):
        self.stream = stream
        self.source = source or 'powermetrics'
        self._source_file = source_file
        self._lock = threading.Lock()
        self.started_ms = int(time.time() * 1000)
        self.latest: Optional[Metrics] = None
        self.latest_ms: Optional[int] = None
        self.latest_processes: Optional[Metrics] = None
        self.gpu_processes: Deque[Dict[str, Any]] = deque(maxlen=RECENT_GPU_PROCESSES)
        self.snapshots = 0
        self.errors: List[str] = []
        self._threads = [
            threading.Thread(target=self._consume_metrics, name='PowermetricsSessionMetrics', daemon=True),
            threading.Thread(target=self._consume_errors, name='PowermetricsSessionErrors', daemon=True),
        ]
        for t in self._threads:
            t.start()

    def _consume_metrics(self):
        for snap in self.stream.metrics:
            with self._lock:
                self.snapshots += 1
                if snap.system is None:
                    self.gpu_processes.extend(jsonable(asdict(p)) for p in snap.gpu_processes)
                    continue
                self.latest = snap
                self.latest_ms = int(time.time() * 1000)
                if snap.processes:
                    self.latest_processes = snap
        if self._source_file is not None:
            self._source_file.close()

    def _consume_errors(self):
        for err in self.stream.errors:
            dbg(f'session error: {err}')
            with self._lock:
                self.errors.append(f'{err.__class__.__name__}: {err}')

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def stop(self, timeout: float = 5.0):
        self.stream.cancel('stop_sampling')
        for t in self._threads:
            t.join(timeout)

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'running': self.running,
                'source': self.source,
                'started_ms': self.started_ms,
                'last_sample_ms': self.latest_ms,
                'snapshots': self.snapshots,
                'gpu_process_samples': len(self.gpu_processes),
                'errors': list(self.errors),
            }

    def latest_payload(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            if self.latest is None and not self.gpu_processes:
                return None
            out = self.latest.to_dict() if self.latest is not None else {}
            out['gpu_processes'] = list(self.gpu_processes)
            if self.latest_processes is not None:
                out['processes'] = self.latest_processes.to_dict()['processes']
            out['ts_ms'] = self.latest_ms
            return out


_SESSION: Optional[SamplingSession] = None
_SESSION_LOCK = threading.Lock()


def _current_session() -> Optional[SamplingSession]:
    with _SESSION_LOCK:
        return _SESSION


def healthz() -> dict:
    s = _current_session()
    return {'status': 'ok', 'sampling': bool(s and s.running), 'time': int(time.time() * 1000)}


def _start_sampling_impl(interval_ms: int = 1000, powermetrics_path: Optional[str] = None, log_path: Optional[str] = None,
                         interrupt_association: Optional[str] = None) -> dict:
    global _SESSION
    if interval_ms <= 0:
        return {'error': 'invalid_interval', 'detail': 'interval_ms must be positive'}
    if log_path and not os.path.isfile(log_path):
        return {'error': 'log_not_found', 'path': log_path}
    try:
        cfg = Config(
            powermetrics_path=powermetrics_path or '',
            sample_window_ms=interval_ms,
            interrupt_association=interrupt_association or '',
        )
        parser = PowermetricsParser(cfg)
    except PowermetricsError as e:
        return {'error': e.__class__.__name__, 'detail': str(e)}
    fh = None
    if log_path:
        try:
            fh = open(log_path, 'rb')
        except OSError as e:
            return {'error': 'log_unreadable', 'path': log_path, 'detail': str(e)}
    with _SESSION_LOCK:
        previous, _SESSION = _SESSION, None
    if previous is not None:
        previous.stop()
    try:
        if fh is not None:
            session = SamplingSession(parser.run_with_reader(fh), source=log_path, source_file=fh)
        else:
            session = SamplingSession(parser.run_with_errors(), source=parser.config.powermetrics_path)
    except PowermetricsError as e:
        return {'error': e.__class__.__name__, 'detail': str(e)}
    with _SESSION_LOCK:
        _SESSION = session
    dbg(f'sampling started source={session.source} interval_ms={interval_ms}')
    return {'started': True, 'source': session.source, 'interval_ms': parser.config.sample_window_ms,
            'args': parser.config.powermetrics_args if not log_path else []}


def _stop_sampling_impl() -> dict:
    global _SESSION
    with _SESSION_LOCK:
        session, _SESSION = _SESSION, None
    if session is None:
        return {'stopped': False, 'reason': 'not_running'}
    session.stop()
    status = session.status()
    return {'stopped': True, 'snapshots': status['snapshots'], 'errors': status['errors']}


def _sampling_status_impl() -> dict:
    session = _current_session()
    if session is None:
        return {'running': False}
    return session.status()


SECTIONS = ('system', 'clusters', 'cpu_residencies', 'cluster_residencies', 'gpu_residency', 'network', 'disk',
            'interrupts', 'gpu_processes', 'processes')


def _latest_sample_impl(section: Optional[str] = None) -> dict:
    session = _current_session()
    if session is None:
        return {'error': 'not_running'}
    payload = session.latest_payload()
    if payload is None:
        return {'error': 'no_sample_yet'}
    if section:
        if section not in SECTIONS:
            return {'error': 'unknown_section', 'sections': list(SECTIONS)}
        return {section: payload.get(section), 'ts_ms': payload.get('ts_ms')}
    return payload


def _parse_text_impl(text: str, sample_window_ms: int = 0, interrupt_association: Optional[str] = None) -> dict:
    try:
        cfg = Config(sample_window_ms=sample_window_ms, interrupt_association=interrupt_association or '')
        snapshots = parse_lines(text.splitlines(), cfg)
    except PowermetricsError as e:
        return {'error': e.__class__.__name__, 'detail': str(e)}
    cumulative = [s for s in snapshots if s.system is not None]
    gpu_processes = [p for s in snapshots for p in s.gpu_processes]
    processes = [p for s in snapshots for p in s.processes]
    out: Dict[str, Any] = {'snapshots': len(snapshots)}
    out['final'] = cumulative[-1].to_dict() if cumulative else None
    out['gpu_processes'] = jsonable([asdict(p) for p in gpu_processes])
    out['processes'] = jsonable([asdict(p) for p in processes])
    return out


@mcp.tool()
def start_sampling(interval_ms: int = 1000, powermetrics_path: Optional[str] = None, log_path: Optional[str] = None,
                   interrupt_association: Optional[str] = None) -> dict:
    """Start a background sampling session (replaces any running one).

    Runs powermetrics with the given interval (root required) or, when
    log_path is set, replays a captured log. Returns {started, source,
    interval_ms, args} or {'error':...}."""
    return _start_sampling_impl(interval_ms, powermetrics_path, log_path, interrupt_association)


@mcp.tool()
def stop_sampling() -> dict:
    """Cancel the running session; returns {stopped, snapshots, errors}."""
    return _stop_sampling_impl()


@mcp.tool()
def sampling_status() -> dict:
    """Whether a session is running, its source, snapshot counts and stream errors."""
    return _sampling_status_impl()


@mcp.tool()
def latest_sample(section: Optional[str] = None) -> dict:
    """Newest cumulative snapshot, optionally narrowed to one section."""
    return _latest_sample_impl(section)


@mcp.tool()
def parse_powermetrics_text(text: str, sample_window_ms: int = 0, interrupt_association: Optional[str] = None) -> dict:
    """Parse pasted powermetrics output.

    Returns {snapshots, final, gpu_processes, processes}: final is the last
    cumulative snapshot, the lists collect every process sample seen."""
    return _parse_text_impl(text, sample_window_ms, interrupt_association)


# --------------- HTTP Runner via mcp.run ---------------

if __name__ == '__main__':
    host = os.environ.get('HOST', '0.0.0.0')
    port = int(os.environ.get('PORT', '8000'))
    print(f'Starting FastMCP on {host}:{port}')
    mcp.run(transport="http", host=host, port=port, stateless_http=True)
