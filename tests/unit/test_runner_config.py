import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))
import pytest

from journey_errors import ConfigurationError, TargetUrlError
from runner_config import LoadTestConfig, load_config, parse_target_url


# ---------------------------
# Target URL parsing
# ---------------------------
@pytest.mark.parametrize(
    "url,base,slug",
    [
        ("https://example.test/tk03", "https://example.test", "tk03"),
        ("https://example.test/tk03/", "https://example.test", "tk03"),
        ("http://localhost:8080/abc/question/1", "http://localhost:8080", "abc"),
        ("https://example.test//tk03", "https://example.test", "tk03"),
    ],
)
def test_parse_target_url(url, base, slug):
    target = parse_target_url(url)
    assert target.base_url == base
    assert target.slug == slug


def test_target_address_paths():
    target = parse_target_url("https://example.test/tk03")
    assert target.path() == "https://example.test/tk03/"
    assert target.path("submit-info") == "https://example.test/tk03/submit-info"
    assert target.url_pattern("question/1") == "**/tk03/question/1"


@pytest.mark.parametrize("url", ["https://example.test/", "https://example.test"])
def test_parse_target_url_without_slug(url):
    with pytest.raises(TargetUrlError) as exc_info:
        parse_target_url(url)
    assert "Failed to extract slug from URL" in str(exc_info.value)


@pytest.mark.parametrize("url", ["", "not a url", "/tk03"])
def test_parse_target_url_rejects_non_absolute(url):
    with pytest.raises(TargetUrlError):
        parse_target_url(url)


# ---------------------------
# LoadTestConfig / load_config
# ---------------------------
def test_load_config_from_environment():
    cfg = load_config(environ={"TARGET_URL": "https://example.test/tk03", "VUS": "25", "DURATION": "120"})
    assert cfg.vus == 25
    assert cfg.duration == 120
    assert cfg.driver == "playwright"
    assert cfg.headless is True
    assert cfg.target.slug == "tk03"


def test_load_config_defaults():
    cfg = load_config(environ={"TARGET_URL": "https://example.test/tk03"})
    assert (cfg.vus, cfg.duration, cfg.step_timeout_ms) == (10, 60, 10000)
    assert (cfg.think_time_min_ms, cfg.think_time_max_ms) == (300, 800)
    assert (cfg.submit_delay_min_ms, cfg.submit_delay_max_ms) == (200, 500)
    assert cfg.seed is None and cfg.deadline_s is None


def test_load_config_requires_target_url():
    with pytest.raises(ConfigurationError) as exc_info:
        load_config(environ={"VUS": "5"})
    assert "TARGET_URL" in str(exc_info.value)


def test_load_config_bad_target_url_is_configuration_error():
    with pytest.raises(ConfigurationError):
        load_config(environ={"TARGET_URL": "https://example.test/"})


@pytest.mark.parametrize("raw,expected", [("1", 1), ("0", 1), ("-30", 1), ("2.9", 2), ("", 60)])
def test_duration_is_floored_to_at_least_one(raw, expected):
    cfg = load_config(environ={"TARGET_URL": "https://example.test/tk03"}, overrides={"duration": raw} if raw else None)
    assert cfg.duration == expected


@pytest.mark.parametrize("env", [{"VUS": "0"}, {"VUS": "many"}, {"DURATION": "soon"}, {"DRIVER": "selenium"}])
def test_invalid_values_raise_configuration_error(env):
    env = dict(env, TARGET_URL="https://example.test/tk03")
    with pytest.raises(ConfigurationError) as exc_info:
        load_config(environ=env)
    assert "Invalid configuration" in str(exc_info.value)


def test_delay_ranges_must_be_ordered():
    with pytest.raises(ConfigurationError):
        load_config(environ={"TARGET_URL": "https://example.test/tk03", "THINK_TIME_MIN_MS": "900"})


def test_direct_construction_with_field_names():
    cfg = LoadTestConfig(target_url=" https://example.test/tk03 ", vus=3, seed="")
    assert cfg.target_url == "https://example.test/tk03"
    assert cfg.seed is None


def test_yaml_config_with_env_expansion_and_precedence(tmp_path):
    config_file = tmp_path / "loadtest.yml"
    config_file.write_text(
        "TARGET_URL: https://${TARGET_HOST}/tk03\n"
        "VUS: 4\n"
        "DURATION: 30\n"
        "driver: http\n"
        "seed: 99\n",
        encoding="utf-8",
    )
    env = {"TARGET_HOST": "staging.example.test", "DURATION": "45"}
    cfg = load_config(environ=env, config_file=config_file, overrides={"vus": 8})

    assert cfg.target_url == "https://staging.example.test/tk03"
    assert cfg.vus == 8  # override beats file
    assert cfg.duration == 45  # environment beats file
    assert cfg.driver == "http"
    assert cfg.seed == 99


def test_yaml_config_errors(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(environ={}, config_file=tmp_path / "missing.yml")

    not_a_mapping = tmp_path / "list.yml"
    not_a_mapping.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_config(environ={}, config_file=not_a_mapping)

    broken = tmp_path / "broken.yml"
    broken.write_text("TARGET_URL: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_config(environ={}, config_file=broken)
