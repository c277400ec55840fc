"""
Tests for configuration loading
"""

import pytest

from suiguard.chain.dependency_resolver import DependencyLookupMode
from suiguard.chain.sui_client import DEFAULT_RPC_URLS
from suiguard.config import DEFAULT_MODEL, AnalyzerConfig, env_flag, normalize_network

ENV_VARS = [
    "OPENAI_API_KEY",
    "OPENAI_BASE_URL",
    "OPENAI_MODEL",
    "SUIGUARD_LLM_SCORING",
    "SUIGUARD_MAX_CONCURRENCY",
    "SUIGUARD_DEPENDENCY_LOOKUP",
    "SUIGUARD_CACHE_BACKEND",
    "SUIGUARD_FEED_ENABLED",
    "SUIGUARD_FEED_NETWORK",
    "SUI_RPC_URL_TESTNET",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestNormalizeNetwork:
    """Test network normalisation."""

    @pytest.mark.parametrize("value,expected", [
        ("mainnet", "mainnet"),
        ("testnet", "testnet"),
        (" TestNet ", "testnet"),
        ("devnet", "mainnet"),
        ("", "mainnet"),
        (None, "mainnet"),
        (7, "mainnet"),
    ])
    def test_values(self, value, expected):
        assert normalize_network(value) == expected


class TestEnvFlag:
    """Test boolean environment variables."""

    @pytest.mark.parametrize("value", ["1", "true", "YES", " on "])
    def test_true_values(self, monkeypatch, value):
        monkeypatch.setenv("SUIGUARD_FEED_ENABLED", value)
        assert env_flag("SUIGUARD_FEED_ENABLED") is True

    @pytest.mark.parametrize("value", ["0", "false", "No", "off"])
    def test_false_values(self, monkeypatch, value):
        monkeypatch.setenv("SUIGUARD_FEED_ENABLED", value)
        assert env_flag("SUIGUARD_FEED_ENABLED", default=True) is False

    def test_unset_and_unknown_use_default(self, monkeypatch):
        assert env_flag("SUIGUARD_FEED_ENABLED", default=True) is True
        monkeypatch.setenv("SUIGUARD_FEED_ENABLED", "maybe")
        assert env_flag("SUIGUARD_FEED_ENABLED") is False


class TestAnalyzerConfig:
    """Test building the config from the environment."""

    def test_defaults(self):
        config = AnalyzerConfig.from_env()
        assert config.llm_api_key == ""
        assert config.llm_model == DEFAULT_MODEL
        assert config.dependency_lookup == DependencyLookupMode.CROSS_NETWORK
        assert config.cache_backend == "memory"
        assert config.feed_enabled is False
        assert config.publish_tx_kind == "ProgrammableTransaction"
        assert config.rpc_url("testnet") == DEFAULT_RPC_URLS["testnet"]

    def test_environment_values(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        monkeypatch.setenv("OPENAI_MODEL", "deepseek-chat")
        monkeypatch.setenv("SUIGUARD_LLM_SCORING", "true")
        monkeypatch.setenv("SUIGUARD_MAX_CONCURRENCY", "4")
        monkeypatch.setenv("SUIGUARD_DEPENDENCY_LOOKUP", "network")
        monkeypatch.setenv("SUIGUARD_CACHE_BACKEND", "Redis")
        monkeypatch.setenv("SUIGUARD_FEED_NETWORK", "devnet")
        monkeypatch.setenv("SUI_RPC_URL_TESTNET", "http://localhost:9000")
        monkeypatch.setenv("SUIGUARD_PUBLISH_TX_KIND", "all")

        config = AnalyzerConfig.from_env()
        assert config.llm_api_key == "sk-test"
        assert config.llm_model == "deepseek-chat"
        assert config.llm_scoring is True
        assert config.max_concurrency == 4
        assert config.dependency_lookup == DependencyLookupMode.NETWORK
        assert config.cache_backend == "redis"
        assert config.feed_network == "mainnet"
        assert config.rpc_url("testnet") == "http://localhost:9000"
        assert config.publish_tx_kind == "all"

    def test_overrides_win(self, monkeypatch):
        monkeypatch.setenv("OPENAI_MODEL", "deepseek-chat")
        config = AnalyzerConfig.from_env(llm_model="gpt-4o", llm_base_url=None, verbose=True)
        assert config.llm_model == "gpt-4o"
        assert config.llm_base_url is None
        assert config.verbose is True

    def test_unknown_override_rejected(self):
        with pytest.raises(TypeError):
            AnalyzerConfig.from_env(not_a_field=1)

    def test_invalid_integer(self, monkeypatch):
        monkeypatch.setenv("SUIGUARD_MAX_CONCURRENCY", "many")
        with pytest.raises(ValueError, match="SUIGUARD_MAX_CONCURRENCY"):
            AnalyzerConfig.from_env()
