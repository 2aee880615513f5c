import sys, os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))
import pytest
import pytest_asyncio

from http_driver import HttpDriverFactory
from journey_runner import run_load_test
from runner_config import LoadTestConfig
from tests.e2e.mock_server import create_mock_server, shutdown_mock_server


async def no_sleep(_seconds):
    return None


@pytest_asyncio.fixture
async def mock_server():
    runner, base_url, app = await create_mock_server()
    yield {'base_url': base_url, 'app': app}
    await shutdown_mock_server(runner)


@pytest_asyncio.fixture
async def broken_server():
    runner, base_url, app = await create_mock_server(broken_questions={3})
    yield {'base_url': base_url, 'app': app}
    await shutdown_mock_server(runner)


def make_config(base_url, vus, **kwargs):
    return LoadTestConfig(target_url=f"{base_url}/tk03", vus=vus, duration=1, driver="http", seed=1, **kwargs)


@pytest.mark.asyncio
async def test_http_journey_completes_for_every_vu(mock_server):
    app = mock_server['app']
    result = await run_load_test(make_config(mock_server['base_url'], 5), HttpDriverFactory(), unit_seconds=0.05, sleep=no_sleep)

    assert result.vus_spawned == 5
    assert result.completed_count == 5
    assert result.metrics.counter("journey.completed") == 5
    assert len(result.metrics.samples("journey.step.question.submit.all")) == 30
    assert len(result.metrics.samples("journey.step.end")) == 5

    # one server-side session per VU, each with its own answers and info
    assert len(app['sessions']) == 5
    assert all(len(state['answers']) == 6 for state in app['sessions'].values())
    assert all(answer in ('a', 'b') for state in app['sessions'].values() for answer in state['answers'].values())
    emails = sorted(sub['email'] for sub in app['submissions'])
    assert emails == sorted(f"loadtest+vu-{i}@example.com" for i in range(1, 6))
    assert {sub['session'] for sub in app['submissions']} == set(app['sessions'])
    assert all(sub['phone'] == "+447700900123" for sub in app['submissions'])
    assert app['hits']['/tk03/end'] == 5


@pytest.mark.asyncio
async def test_http_journey_server_error_is_classified(broken_server):
    result = await run_load_test(make_config(broken_server['base_url'], 3), HttpDriverFactory(), unit_seconds=0.05, sleep=no_sleep)

    assert result.completed_count == 0
    assert result.failed_count == 3
    assert result.metrics.counter("journey.failed") == 3
    assert result.metrics.counter("journey.errors.NavigationError") == 3
    assert {record.step_at_failure for record in result.error_records} == {"Question(2)"}
    assert len(result.metrics.samples("journey.step.question1.submit")) == 3
    assert result.metrics.samples("journey.step.question2.submit") == []


@pytest.mark.asyncio
async def test_http_journey_unreachable_target(unused_tcp_port):
    cfg = LoadTestConfig(target_url=f"http://127.0.0.1:{unused_tcp_port}/tk03", vus=2, duration=1, driver="http", step_timeout_ms=2000)
    result = await run_load_test(cfg, HttpDriverFactory(), unit_seconds=0.05, sleep=no_sleep)

    assert result.failed_count == 2
    assert result.metrics.counter("journey.errors.NavigationError") == 2
    assert {record.step_at_failure for record in result.error_records} == {"Landing"}
