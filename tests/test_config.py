import pytest

from reqflow.config import (
    OrchestratorConfig,
    build_config,
    build_options,
    config_from_env,
)
from reqflow.exceptions import ConfigurationError
from reqflow.request import Priority, Verb


def test_default_config():
    config = OrchestratorConfig()
    assert config.cache_enabled is True
    assert config.cacheable_verbs == frozenset({Verb.GET, Verb.HEAD})
    assert config.max_concurrent == 6
    assert config.batch_endpoint is None


def test_base_url_is_normalized():
    assert OrchestratorConfig(base_url=" https://api.test/v1/ ").base_url == "https://api.test/v1"


def test_build_config_applies_overrides_on_base():
    base = OrchestratorConfig(max_concurrent=2)
    config = build_config(base, cache_ttl=5)
    assert config.max_concurrent == 2
    assert config.cache_ttl == 5
    assert build_config(base) is base


@pytest.mark.parametrize(
    "overrides",
    [
        {"unknown_key": 1},
        {"max_concurrent": 0},
        {"retry_base_delay": 5, "retry_max_delay": 1},
        {"cacheable_verbs": ["FETCH"]},
    ],
)
def test_build_config_rejects_invalid_values(overrides):
    with pytest.raises(ConfigurationError):
        build_config(**overrides)


def test_build_options():
    options = build_options(priority="low", ttl=3, headers={"x-a": "1"})
    assert options.priority is Priority.LOW
    assert options.ttl == 3
    with pytest.raises(ConfigurationError):
        build_options(cache=False)


def test_config_from_env():
    config = config_from_env(
        {
            "REQFLOW_BASE_URL": "https://api.test/",
            "REQFLOW_MAX_CONCURRENT": "3",
            "REQFLOW_CACHE_ENABLED": "false",
            "REQFLOW_CACHEABLE_VERBS": "get, head, post",
            "REQFLOW_IGNORED_KEY_PARAMS": "_ts,nonce",
            "REQFLOW_QUEUE_TIMEOUT": "none",
            "UNRELATED": "1",
        }
    )
    assert config.base_url == "https://api.test"
    assert config.max_concurrent == 3
    assert config.cache_enabled is False
    assert Verb.POST in config.cacheable_verbs
    assert config.ignored_key_params == frozenset({"_ts", "nonce"})
    assert config.queue_timeout is None


def test_config_from_env_rejects_bad_values():
    with pytest.raises(ConfigurationError):
        config_from_env({"REQFLOW_MAX_ATTEMPTS": "zero"})
