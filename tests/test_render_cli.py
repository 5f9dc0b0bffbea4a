import io
import json
import os
import signal
from types import SimpleNamespace
import pytest
from powermetrics_mcp import cli
from powermetrics_mcp.ingestion.parser import parse_lines
from powermetrics_mcp.render import VIEWS, render

SAMPLE_LOG = os.path.join(os.path.dirname(__file__), 'data', 'sample_powermetrics.log')

with open(SAMPLE_LOG) as _fh:
    snapshots = parse_lines(_fh.read().splitlines())
final = [s for s in snapshots if s.system is not None][-1]
gpu_proc = [s for s in snapshots if s.gpu_processes][0]
tasks = [s for s in snapshots if s.processes][0]


def test_battery_view():
    assert render(final, 'battery') == 'Battery: 36.00%'
    assert json.loads(render(final, 'battery', as_json=True)) == {'battery_percent': 36.0}


def test_system_view_includes_ane_power():
    text = render(final, 'system')
    assert text.startswith('CPU Power: 0.95 W, GPU Power: 0.03 W, ANE Power: 0.00 W')
    assert 'Battery: 36.00%' in text
    # 'all' omits ANE power from the system line
    assert 'ANE Power' not in render(final, 'all').splitlines()[0]


def test_network_and_disk_lines():
    assert render(final, 'network') == (
        'Network: Out 57 packets/s, 4586 bytes/s | In 86 packets/s, 113827 bytes/s'
    )
    assert render(final, 'disk') == 'Disk: Read 8 ops/s, 46766 bytes/s | Write 73 ops/s, 2120550 bytes/s'


def test_cpu_residency_detailed():
    lines = render(final, 'cpu_residency').splitlines()
    assert lines[0] == 'CPU Residencies: 2'
    assert lines[1].startswith('  CPU 0: Freq 1338 MHz, Active: 55.00%, Idle: 44.89%')
    assert lines[2].startswith('    Frequency Residency: 1020MHz:39.00% 1404MHz:2.20%')


def test_gpu_residency_detailed():
    text = render(final, 'gpu_residency')
    assert text.startswith('GPU Residency: HW Active: 1.63%, Idle: 98.37%, Power: 28.00 mW')
    assert 'SW Requested States: P1:100.00%' in text
    assert 'SW States: SW_P1:1.60%' in text


def test_interrupts_json():
    data = json.loads(render(final, 'interrupts', as_json=True))
    assert [i['cpu_id'] for i in data] == [0, 1]
    assert data[0]['total_irq'] == 2977.12


def test_process_view():
    assert render(final, 'process') is None
    assert 'PID: 1234, Name: Safari, Busy: 85.50%' in render(gpu_proc, 'process')
    text = render(tasks, 'process')
    assert text.splitlines()[0] == 'Tasks: 4'
    assert 'PID: 24739, Name: iTerm2' in text


def test_views_skip_snapshots_without_section():
    assert render(gpu_proc, 'system') is None
    assert render(gpu_proc, 'network', as_json=True) is None
    for view in VIEWS:
        if view not in ('all', 'process'):
            assert render(gpu_proc, view) is None


def test_all_json_keys():
    data = json.loads(render(final, 'all', as_json=True))
    assert {'system', 'clusters', 'cpu_residencies', 'cluster_residencies', 'gpu_residency',
            'network', 'disk', 'interrupts'} <= set(data)
    assert 'gpu_processes' not in data
    assert data['cpu_residencies'][0]['active_residency']['1020'] == 39.0


def test_unknown_view_rejected():
    with pytest.raises(ValueError):
        render(final, 'fans')
    with pytest.raises(ValueError):
        render(final, 'fans', as_json=True)


def test_consume_rate_limits_output():
    ticks = iter([0.0, 0.5, 1.0, 1.2, 2.5])
    out = io.StringIO()
    stream = SimpleNamespace(metrics=[final, final, final, final])
    printed = cli.consume(stream, out, 'battery', min_interval_s=1.0, clock=lambda: next(ticks))
    assert printed == 2
    assert out.getvalue().splitlines() == ['Battery: 36.00%', 'Battery: 36.00%']


def test_consume_without_limit_prints_every_renderable_snapshot():
    out = io.StringIO()
    stream = SimpleNamespace(metrics=[final, gpu_proc, final])
    assert cli.consume(stream, out, 'system') == 2


def test_selected_view_and_live_config():
    args = cli.build_arg_parser().parse_args(['--gpu-residency', '--interval', '250'])
    assert cli.selected_view(args) == 'gpu_residency'
    cfg = cli.live_config(args)
    assert cfg.powermetrics_args[-2:] == ['-i', '250']
    assert '--show-process-gpu' in cfg.powermetrics_args
    assert cfg.sample_window_ms == 250
    assert cli.selected_view(cli.build_arg_parser().parse_args([])) == 'all'


def test_view_flags_are_exclusive():
    with pytest.raises(SystemExit):
        cli.build_arg_parser().parse_args(['--system', '--disk'])


@pytest.fixture
def no_signals(monkeypatch):
    monkeypatch.setattr(signal, 'signal', lambda *a: None)


def test_main_replays_file_as_json(capsys, no_signals):
    rc = cli.main(['--file', SAMPLE_LOG, '--json', '--battery'])
    assert rc == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines
    assert all(json.loads(line) == {'battery_percent': 36.0} for line in lines)


def test_main_rejects_bad_interval(capsys):
    assert cli.main(['--interval', '0']) == 2
    assert 'must be positive' in capsys.readouterr().err


def test_main_missing_file(capsys, no_signals, tmp_path):
    assert cli.main(['--file', str(tmp_path / 'missing.log')]) == 1
    assert 'failed to start' in capsys.readouterr().err
