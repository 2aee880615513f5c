# runner_config.py
"""
Run configuration for the journey runner.

Sources, lowest to highest precedence:
  1. optional YAML file (``${VAR}`` placeholders expanded from the environment),
  2. environment variables (TARGET_URL, VUS, DURATION, ...),
  3. explicit overrides (CLI flags).
"""

import logging
import math
import os
from pathlib import Path
from string import Template
from typing import Any, Dict, Literal, Mapping, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from ruamel.yaml import YAML

from journey_errors import ConfigurationError, TargetUrlError

logger = logging.getLogger("JourneyRunner.config")

# field name -> environment-style alias
ENV_ALIASES = {
    'target_url': 'TARGET_URL',
    'vus': 'VUS',
    'duration': 'DURATION',
    'step_timeout_ms': 'STEP_TIMEOUT_MS',
    'think_time_min_ms': 'THINK_TIME_MIN_MS',
    'think_time_max_ms': 'THINK_TIME_MAX_MS',
    'submit_delay_min_ms': 'SUBMIT_DELAY_MIN_MS',
    'submit_delay_max_ms': 'SUBMIT_DELAY_MAX_MS',
    'question_count': 'QUESTION_COUNT',
    'driver': 'DRIVER',
    'headless': 'HEADLESS',
    'seed': 'SEED',
    'deadline_s': 'DEADLINE_S',
    'debug': 'DEBUG',
}


# ---------------------------
# Target addressing
# ---------------------------
class TargetAddress(BaseModel):
    target_url: str
    base_url: str = Field(..., description="scheme://host[:port] of the target")
    slug: str = Field(..., description="First non-empty path segment of TARGET_URL")

    def path(self, suffix: str = "") -> str:
        """Absolute URL for /{slug}/{suffix}."""
        return f"{self.base_url}/{self.slug}/{suffix}"

    def url_pattern(self, suffix: str) -> str:
        """Glob matching any URL ending in /{slug}/{suffix}."""
        return f"**/{self.slug}/{suffix}"


def parse_target_url(url: str) -> TargetAddress:
    """
    Split TARGET_URL into base URL and slug.
    Example: https://example.test/tk03 -> base 'https://example.test', slug 'tk03'.
    """
    if not url or not isinstance(url, str):
        raise TargetUrlError("TARGET_URL is required (e.g. 'https://host/slug')")
    try:
        parsed = urlparse(url.strip())
    except ValueError as e:
        raise TargetUrlError(f"Invalid URL: {url}. Error: {e}") from e
    if not parsed.scheme or not parsed.netloc:
        raise TargetUrlError(f"Invalid URL: {url}. TARGET_URL must be absolute (e.g. 'https://host/slug')")

    path_parts = [part for part in parsed.path.split('/') if part]
    if not path_parts:
        raise TargetUrlError(f"Failed to extract slug from URL: {url}. Error: No slug found in URL path")

    return TargetAddress(
        target_url=url,
        base_url=f"{parsed.scheme}://{parsed.netloc}",
        slug=path_parts[0],
    )


# ---------------------------
# Configuration model
# ---------------------------
class LoadTestConfig(BaseModel):
    """Runtime configuration for one load-test run."""
    target_url: str = Field(..., description="Target of the form {scheme}://{host}/{slug}")
    vus: int = Field(default=10, ge=1, description="Number of virtual users started in the burst phase")
    duration: int = Field(default=60, description="Total run duration in seconds (values < 1 are treated as 1)")
    step_timeout_ms: int = Field(default=10000, ge=1, description="Bound for every navigation / selector wait")
    think_time_min_ms: int = Field(default=300, ge=0, description="Minimum reading delay before answering a question")
    think_time_max_ms: int = Field(default=800, ge=0, description="Maximum reading delay before answering a question")
    submit_delay_min_ms: int = Field(default=200, ge=0, description="Minimum delay before submitting a form")
    submit_delay_max_ms: int = Field(default=500, ge=0, description="Maximum delay before submitting a form")
    question_count: int = Field(default=6, ge=1, description="Number of question pages in the journey")
    driver: Literal['playwright', 'http'] = Field(default='playwright', description="Session driver implementation")
    headless: bool = Field(default=True, description="Run browsers headless (playwright driver only)")
    seed: Optional[int] = Field(default=None, description="Seed for think times, answers and fake user data")
    deadline_s: Optional[float] = Field(default=None, gt=0, description="Hard wall-clock cutoff for the whole run")
    debug: bool = Field(default=False, description="Enable debug logging")

    model_config = ConfigDict(
        populate_by_name=True,
        alias_generator=lambda field_name: ENV_ALIASES.get(field_name, field_name),
        extra="ignore",
    )

    @field_validator('target_url')
    def validate_target_url(cls, v):
        parse_target_url(v)  # raises with a descriptive message
        return v.strip()

    @field_validator('duration', mode='before')
    def floor_duration(cls, v):
        if v is None or v == "":
            return 60
        try:
            floored = math.floor(float(v))
        except (TypeError, ValueError):
            raise ValueError(f"DURATION must be a number of seconds, got '{v}'")
        return max(floored, 1)

    @field_validator('seed', 'deadline_s', mode='before')
    def empty_as_none(cls, v):
        if v == "":
            return None
        return v

    @model_validator(mode='after')
    def check_delay_ranges(self) -> 'LoadTestConfig':
        if self.think_time_min_ms > self.think_time_max_ms:
            raise ValueError(f"think_time_min_ms ({self.think_time_min_ms}) cannot be greater than think_time_max_ms ({self.think_time_max_ms})")
        if self.submit_delay_min_ms > self.submit_delay_max_ms:
            raise ValueError(f"submit_delay_min_ms ({self.submit_delay_min_ms}) cannot be greater than submit_delay_max_ms ({self.submit_delay_max_ms})")
        return self

    @property
    def target(self) -> TargetAddress:
        return parse_target_url(self.target_url)


# ---------------------------
# Loading
# ---------------------------
def load_yaml_config(path: Union[str, Path], environ: Mapping[str, str]) -> Dict[str, Any]:
    """Read a YAML config file, expanding ${VAR} placeholders from `environ` first."""
    cfg_path = Path(path)
    try:
        raw = cfg_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found at '{cfg_path}'")
    expanded = Template(raw).safe_substitute(environ)
    try:
        data = YAML(typ="safe").load(expanded)
    except Exception as e:
        raise ConfigurationError(f"Error parsing config file '{cfg_path}': {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file '{cfg_path}' must contain a mapping, got {type(data).__name__}")
    logger.debug(f"Loaded {len(data)} settings from {cfg_path}")
    return data


def load_config(
    environ: Optional[Mapping[str, str]] = None,
    config_file: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> LoadTestConfig:
    """Build and validate a LoadTestConfig. Raises ConfigurationError on any problem."""
    env = os.environ if environ is None else environ
    values: Dict[str, Any] = {}

    if config_file:
        values.update(load_yaml_config(config_file, env))

    for field_name, alias in ENV_ALIASES.items():
        if alias in env and env[alias] != "":
            values.pop(field_name, None)
            values[alias] = env[alias]

    for field_name, value in (overrides or {}).items():
        if value is None:
            continue
        values.pop(ENV_ALIASES.get(field_name, field_name), None)
        values[field_name] = value

    if not values.get('TARGET_URL') and not values.get('target_url'):
        raise ConfigurationError("TARGET_URL environment variable is required")

    try:
        return LoadTestConfig(**values)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(loc) for loc in err['loc']) or 'config'}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {problems}") from e
