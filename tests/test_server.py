import os
import time
import pytest
from fastapi.testclient import TestClient
from powermetrics_mcp import mcp_app
from powermetrics_mcp.server import app

SAMPLE_LOG = os.path.join(os.path.dirname(__file__), 'data', 'sample_powermetrics.log')

client = TestClient(app)


@pytest.fixture(autouse=True)
def no_session():
    mcp_app._stop_sampling_impl()
    yield
    mcp_app._stop_sampling_impl()


def test_root_and_healthz():
    assert client.get('/').json()['status'] == 'ok'
    body = client.get('/healthz').json()
    assert body['status'] == 'ok'
    assert body['sampling'] is False


def test_parse_endpoint():
    with open(SAMPLE_LOG) as f:
        r = client.post('/parse', json={'text': f.read(), 'interrupt_association': 'current_cpu'})
    assert r.status_code == 200
    data = r.json()
    assert data['final']['system']['battery_percent'] == 36
    assert data['final']['interrupts'][1]['timer'] == 504.58
    assert len(data['processes']) == 4


def test_parse_endpoint_bad_association():
    r = client.post('/parse', json={'text': 'CPU 0:', 'interrupt_association': 'nearest'})
    assert r.status_code == 400


def test_latest_without_session_is_404():
    r = client.get('/sample/latest')
    assert r.status_code == 404
    assert r.json()['detail'] == 'not_running'


def test_latest_section_from_replay():
    assert mcp_app._start_sampling_impl(log_path=SAMPLE_LOG)['started']
    deadline = time.time() + 5
    while mcp_app._sampling_status_impl()['running'] and time.time() < deadline:
        time.sleep(0.05)
    r = client.get('/sample/latest', params={'section': 'disk'})
    assert r.status_code == 200
    assert r.json()['disk']['read_ops_per_sec'] == 8.56
    assert client.get('/sample/latest', params={'section': 'fans'}).status_code == 400
