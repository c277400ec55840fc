#!/usr/bin/env python3
"""
运行配置

所有字段都可以由环境变量提供，命令行参数覆盖环境变量。
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from .chain.dependency_resolver import DependencyLookupMode
from .chain.sui_client import DEFAULT_RPC_URLS, PUBLISH_TX_KIND

DEFAULT_MODEL = "gpt-4o-mini"
SUPPORTED_NETWORKS = ("mainnet", "testnet")
DEFAULT_NETWORK = "mainnet"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def env_flag(name: str, default: bool = False) -> bool:
    """读取布尔环境变量，无法识别的值按默认值处理"""
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got {value!r}")


def normalize_network(network: Optional[str]) -> str:
    """只接受 mainnet / testnet，其他取值一律视为 mainnet"""
    if isinstance(network, str) and network.strip().lower() in SUPPORTED_NETWORKS:
        return network.strip().lower()
    return DEFAULT_NETWORK


@dataclass
class AnalyzerConfig:
    """Configuration for SafetyAnalyzer"""
    llm_api_key: str = ""
    llm_base_url: Optional[str] = None
    llm_model: str = DEFAULT_MODEL
    temperature: float = 0.1
    llm_timeout: float = 120.0
    llm_scoring: bool = False

    rpc_urls: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_RPC_URLS))
    rpc_timeout: int = 30
    max_concurrency: int = 10

    dependency_lookup: DependencyLookupMode = DependencyLookupMode.CROSS_NETWORK
    knowledge_base_path: Optional[str] = None

    cache_backend: str = "memory"
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None

    feed_enabled: bool = False
    feed_network: str = DEFAULT_NETWORK
    feed_poll_interval: float = 15.0
    publish_tx_kind: str = PUBLISH_TX_KIND

    llm_log_db: Optional[str] = None
    verbose: bool = False

    def rpc_url(self, network: str) -> str:
        return self.rpc_urls.get(network) or DEFAULT_RPC_URLS[normalize_network(network)]

    @classmethod
    def from_env(cls, **overrides) -> "AnalyzerConfig":
        """从环境变量构建配置，overrides 中非 None 的值优先"""
        config = cls(
            llm_api_key=os.getenv("OPENAI_API_KEY", ""),
            llm_base_url=os.getenv("OPENAI_BASE_URL") or None,
            llm_model=os.getenv("OPENAI_MODEL") or DEFAULT_MODEL,
            temperature=_env_float("SUIGUARD_TEMPERATURE", 0.1),
            llm_timeout=_env_float("SUIGUARD_LLM_TIMEOUT", 120.0),
            llm_scoring=env_flag("SUIGUARD_LLM_SCORING", False),
            rpc_urls={
                "mainnet": os.getenv("SUI_RPC_URL_MAINNET") or DEFAULT_RPC_URLS["mainnet"],
                "testnet": os.getenv("SUI_RPC_URL_TESTNET") or DEFAULT_RPC_URLS["testnet"],
            },
            rpc_timeout=_env_int("SUIGUARD_RPC_TIMEOUT", 30),
            max_concurrency=_env_int("SUIGUARD_MAX_CONCURRENCY", 10),
            dependency_lookup=DependencyLookupMode.parse(
                os.getenv("SUIGUARD_DEPENDENCY_LOOKUP") or DependencyLookupMode.CROSS_NETWORK
            ),
            knowledge_base_path=os.getenv("SUIGUARD_KNOWLEDGE_BASE") or None,
            cache_backend=(os.getenv("SUIGUARD_CACHE_BACKEND") or "memory").strip().lower(),
            redis_host=os.getenv("REDIS_HOST") or "localhost",
            redis_port=_env_int("REDIS_PORT", 6379),
            redis_db=_env_int("REDIS_DB", 0),
            redis_password=os.getenv("REDIS_PASSWORD") or None,
            feed_enabled=env_flag("SUIGUARD_FEED_ENABLED", False),
            feed_network=normalize_network(os.getenv("SUIGUARD_FEED_NETWORK")),
            feed_poll_interval=_env_float("SUIGUARD_FEED_POLL_INTERVAL", 15.0),
            publish_tx_kind=os.getenv("SUIGUARD_PUBLISH_TX_KIND") or PUBLISH_TX_KIND,
            llm_log_db=os.getenv("SUIGUARD_LLM_LOG_DB") or None,
        )
        for name, value in overrides.items():
            if value is None:
                continue
            if not hasattr(config, name):
                raise TypeError(f"Unknown config field: {name}")
            setattr(config, name, value)
        return config


__all__ = [
    "DEFAULT_MODEL",
    "SUPPORTED_NETWORKS",
    "DEFAULT_NETWORK",
    "env_flag",
    "normalize_network",
    "AnalyzerConfig",
]
