import os
import time
import pytest
from powermetrics_mcp import mcp_app

SAMPLE_LOG = os.path.join(os.path.dirname(__file__), 'data', 'sample_powermetrics.log')


def _tool(t):
    """Helper to get the underlying function from MCP tool wrapper"""
    return getattr(t, 'fn', t)


@pytest.fixture(autouse=True)
def clean_session():
    _tool(mcp_app.stop_sampling)()
    yield
    _tool(mcp_app.stop_sampling)()


def _wait_until_idle(timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if not _tool(mcp_app.sampling_status)()['running']:
            return
        time.sleep(0.05)
    pytest.fail('replay session did not finish')


def test_parse_powermetrics_text():
    with open(SAMPLE_LOG) as f:
        text = f.read()
    res = _tool(mcp_app.parse_powermetrics_text)(text=text)
    assert res['snapshots'] > 0
    assert res['final']['system']['battery_percent'] == 36
    assert res['final']['system']['combined_power_watts'] == pytest.approx(0.983)
    assert [p['pid'] for p in res['gpu_processes']] == [1234, 88]
    assert [p['name'] for p in res['processes']] == ['DEAD_TASKS', 'iTerm2', 'WindowServer', 'ALL_TASKS']


def test_parse_text_nothing_recognised():
    res = _tool(mcp_app.parse_powermetrics_text)(text='hello\nworld\n')
    assert res == {'snapshots': 0, 'final': None, 'gpu_processes': [], 'processes': []}


def test_parse_text_window_drives_busy_percent():
    res = _tool(mcp_app.parse_powermetrics_text)(text='pid 7 worker 250ms', sample_window_ms=500)
    assert res['gpu_processes'][0]['busy_percent'] == 50.0
    assert res['final'] is None


def test_parse_text_rejects_unknown_association():
    res = _tool(mcp_app.parse_powermetrics_text)(text='', interrupt_association='nearest')
    assert res['error'] == 'ConfigError'


def test_errors_without_session():
    assert _tool(mcp_app.latest_sample)() == {'error': 'not_running'}
    assert _tool(mcp_app.sampling_status)() == {'running': False}
    assert _tool(mcp_app.stop_sampling)() == {'stopped': False, 'reason': 'not_running'}
    assert mcp_app.healthz()['sampling'] is False


def test_start_sampling_argument_errors():
    assert _tool(mcp_app.start_sampling)(interval_ms=0)['error'] == 'invalid_interval'
    res = _tool(mcp_app.start_sampling)(log_path='/nonexistent/powermetrics.log')
    assert res['error'] == 'log_not_found'


def test_replay_session_lifecycle():
    res = _tool(mcp_app.start_sampling)(interval_ms=1000, log_path=SAMPLE_LOG)
    assert res['started'] is True
    assert res['source'] == SAMPLE_LOG
    _wait_until_idle()

    status = _tool(mcp_app.sampling_status)()
    assert status['snapshots'] > 0
    assert status['gpu_process_samples'] == 2
    assert status['errors'] == []

    latest = _tool(mcp_app.latest_sample)()
    assert latest['system']['battery_percent'] == 36
    assert latest['network']['in_bytes_per_sec'] == 113827.21
    assert len(latest['processes']) == 4
    assert [p['name'] for p in latest['gpu_processes']] == ['Safari', 'WindowServer']
    assert latest['ts_ms'] is not None

    only = _tool(mcp_app.latest_sample)(section='clusters')
    assert [c['name'] for c in only['clusters']] == ['E-Cluster', 'P0-Cluster']
    assert _tool(mcp_app.latest_sample)(section='fans')['error'] == 'unknown_section'

    stopped = _tool(mcp_app.stop_sampling)()
    assert stopped['stopped'] is True
    assert stopped['snapshots'] == status['snapshots']
    assert _tool(mcp_app.latest_sample)() == {'error': 'not_running'}


def test_start_replaces_running_session():
    _tool(mcp_app.start_sampling)(log_path=SAMPLE_LOG)
    first = mcp_app._current_session()
    _tool(mcp_app.start_sampling)(log_path=SAMPLE_LOG)
    second = mcp_app._current_session()
    assert first is not second
    assert not first.running


def test_unreadable_log_keeps_running_session(monkeypatch):
    _tool(mcp_app.start_sampling)(log_path=SAMPLE_LOG)
    first = mcp_app._current_session()

    def denied(path, mode='r', *args, **kwargs):
        raise PermissionError(13, 'Permission denied', path)

    monkeypatch.setattr(mcp_app, 'open', denied, raising=False)
    res = _tool(mcp_app.start_sampling)(log_path=SAMPLE_LOG)
    assert res['error'] == 'log_unreadable'
    assert res['path'] == SAMPLE_LOG
    assert 'Permission denied' in res['detail']
    assert mcp_app._current_session() is first


@pytest.mark.parametrize('tool', [
    mcp_app.start_sampling, mcp_app.stop_sampling, mcp_app.sampling_status,
    mcp_app.latest_sample, mcp_app.parse_powermetrics_text,
])
def test_every_tool_is_described(tool):
    assert (_tool(tool).__doc__ or '').strip()
