import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))
import logging
from unittest.mock import MagicMock

from http_driver import HttpDriverFactory
from journey_runner_cli import build_overrides, create_driver_factory, main, parse_args, process_stats
from playwright_driver import PlaywrightDriverFactory
from runner_config import LoadTestConfig


def test_cli_overrides_only_include_given_flags():
    args = parse_args(["--vus", "3", "--driver", "http", "--headed"])
    assert build_overrides(args) == {"vus": 3, "driver": "http", "headless": False}


def test_cli_debug_log_level_enables_debug():
    args = parse_args(["--log-level", "debug"])
    assert build_overrides(args) == {"debug": True}


def test_cli_main_exits_nonzero_without_target(monkeypatch):
    monkeypatch.delenv("TARGET_URL", raising=False)
    monkeypatch.delenv("JOURNEY_RUNNER_CONFIG", raising=False)
    assert main([]) == 1


def test_cli_main_reports_bad_target(monkeypatch, caplog):
    monkeypatch.setenv("TARGET_URL", "https://example.test/")
    logger = logging.getLogger("JourneyRunner")
    logger.addHandler(caplog.handler)
    try:
        assert main([]) == 1
    finally:
        logger.removeHandler(caplog.handler)
    assert any("Failed to extract slug" in r.getMessage() for r in caplog.records)


def test_create_driver_factory_by_config():
    http_cfg = LoadTestConfig(target_url="https://example.test/tk03", driver="http", vus=80, step_timeout_ms=3000)
    factory = create_driver_factory(http_cfg)
    assert isinstance(factory, HttpDriverFactory)
    assert factory.timeout_ms == 3000
    assert factory.max_connections == 160

    browser_cfg = LoadTestConfig(target_url="https://example.test/tk03", headless=False)
    factory = create_driver_factory(browser_cfg)
    assert isinstance(factory, PlaywrightDriverFactory)
    assert factory.headless is False


def test_process_stats_reads_primed_cpu_without_sampling_interval():
    proc = MagicMock()
    proc.cpu_percent.return_value = 12.5
    proc.memory_info.return_value.rss = 10 * 1024 * 1024
    proc.num_threads.return_value = 4

    stats = process_stats(proc)

    proc.cpu_percent.assert_called_once_with(interval=None)
    assert stats["cpu_percent"] == 12.5
    assert stats["rss_mb"] == 10.0
    assert stats["threads"] == 4
    assert 0 <= stats["system_memory_percent"] <= 100
