"""
Pytest Configuration and Shared Fixtures
========================================

Fixtures wire the fakes from tests/fakes.py into real components.
"""

import random

import pytest

from monitoring.metrics import MetricsCollector
from triage_engine.config import AppConfig
from triage_engine.engine.cache import TTLCache
from triage_engine.engine.resilience import CircuitRegistry, ResilienceDecorator, RetryPolicy
from triage_engine.github.auth import Credential, CredentialSource

from tests.fakes import FakeClock, FakeSleep


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper(clock) -> FakeSleep:
    return FakeSleep(clock)


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0, jitter=0.5)


@pytest.fixture
def resilience(policy, clock, sleeper, metrics) -> ResilienceDecorator:
    circuits = CircuitRegistry(failure_threshold=5, reset_timeout=60.0, clock=clock, metrics=metrics)
    return ResilienceDecorator(policy, circuits, sleep=sleeper, rng=random.Random(7), metrics=metrics)


@pytest.fixture
def cache(tmp_path, clock, metrics) -> TTLCache:
    return TTLCache(cache_dir=tmp_path / "cache", clock=clock, metrics=metrics)


@pytest.fixture
def credential() -> Credential:
    return Credential(token="ghp_testtoken1234567890", source=CredentialSource.ENVIRONMENT)


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    config = AppConfig()
    config.cache.cache_dir = str(tmp_path / "cache")
    return config
