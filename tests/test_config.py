import pytest
from powermetrics_mcp.config import (
    Config, DEFAULT_POWERMETRICS_ARGS, DEFAULT_POWERMETRICS_PATH, ensure_interval_argument, normalize_config,
)
from powermetrics_mcp.errors import ConfigError

ENV_VARS = (
    'POWERMETRICS_PATH', 'POWERMETRICS_SAMPLE_MS', 'POWERMETRICS_INTERRUPT_ASSOCIATION',
    'POWERMETRICS_METRICS_BUFFER', 'POWERMETRICS_ERRORS_BUFFER',
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    cfg = normalize_config(Config())
    assert cfg.powermetrics_path == DEFAULT_POWERMETRICS_PATH
    assert cfg.powermetrics_args == ['--samplers', 'default', '--show-process-gpu', '-i', '1000']
    assert cfg.sample_window_ms == 1000
    assert cfg.sample_window_ns == 1_000_000_000
    assert cfg.interrupt_association == 'first_unset'
    assert (cfg.metrics_buffer, cfg.errors_buffer) == (128, 16)


def test_interval_argument_follows_window():
    cfg = normalize_config(Config(sample_window_ms=250))
    assert cfg.powermetrics_args[-2:] == ['-i', '250']
    # module default list is never mutated
    assert DEFAULT_POWERMETRICS_ARGS[-1] == '1000'


def test_interval_argument_appended_when_missing():
    assert ensure_interval_argument(['--samplers', 'gpu_power'], 500) == ['--samplers', 'gpu_power', '-i', '500']
    assert ensure_interval_argument(['-i', '10', '--x'], 500) == ['-i', '500', '--x']


def test_caller_args_are_copied():
    mine = ['--samplers', 'cpu_power', '-i', '1']
    cfg = normalize_config(Config(powermetrics_args=mine, sample_window_ms=2000))
    assert cfg.powermetrics_args == ['--samplers', 'cpu_power', '-i', '2000']
    assert mine == ['--samplers', 'cpu_power', '-i', '1']


@pytest.mark.parametrize('window', [0, -5])
def test_non_positive_window_falls_back(window):
    assert normalize_config(Config(sample_window_ms=window)).sample_window_ms == 1000


def test_env_overrides_only_defaults(monkeypatch):
    monkeypatch.setenv('POWERMETRICS_PATH', '/opt/pm')
    monkeypatch.setenv('POWERMETRICS_SAMPLE_MS', '750')
    monkeypatch.setenv('POWERMETRICS_INTERRUPT_ASSOCIATION', 'current_cpu')
    monkeypatch.setenv('POWERMETRICS_METRICS_BUFFER', '8')
    cfg = normalize_config(Config())
    assert cfg.powermetrics_path == '/opt/pm'
    assert cfg.sample_window_ms == 750
    assert cfg.interrupt_association == 'current_cpu'
    assert cfg.metrics_buffer == 8
    explicit = normalize_config(Config(powermetrics_path='/usr/local/bin/pm', sample_window_ms=100))
    assert explicit.powermetrics_path == '/usr/local/bin/pm'
    assert explicit.sample_window_ms == 100


def test_bad_env_integer(monkeypatch):
    monkeypatch.setenv('POWERMETRICS_SAMPLE_MS', 'soon')
    with pytest.raises(ConfigError):
        normalize_config(Config())


def test_unknown_interrupt_association():
    with pytest.raises(ConfigError):
        normalize_config(Config(interrupt_association='round_robin'))


def test_config_error_is_value_error():
    assert issubclass(ConfigError, ValueError)
