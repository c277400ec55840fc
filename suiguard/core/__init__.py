#!/usr/bin/env python3
"""
核心模块

包含 JSON LLM 客户端、结果缓存、异常与日志管理功能
"""

from .exceptions import (
    AnalysisError,
    ChainQueryError,
    PackageNotFoundError,
    UpstreamServiceError,
    StageTimeoutError,
    SchemaViolationError,
)

from .json_llm_client import (
    JSONLLMClient,
    extract_json_object,
)

from .llm_logger import (
    get_log_manager,
    LLMLogManager,
    LogStorageType,
    LLMLogEntry,
    SQLiteLogStorage,
    MemoryLogStorage,
)

from .cache import (
    make_cache_key,
    MemoryStore,
    RedisStore,
    ResultCache,
    create_store,
)

from .cli_logger import CLILogger, format_duration

__all__ = [
    # 异常
    'AnalysisError',
    'ChainQueryError',
    'PackageNotFoundError',
    'UpstreamServiceError',
    'StageTimeoutError',
    'SchemaViolationError',
    # JSON LLM 客户端
    'JSONLLMClient',
    'extract_json_object',
    # LLM 日志管理
    'get_log_manager',
    'LLMLogManager',
    'LogStorageType',
    'LLMLogEntry',
    'SQLiteLogStorage',
    'MemoryLogStorage',
    # 结果缓存
    'make_cache_key',
    'MemoryStore',
    'RedisStore',
    'ResultCache',
    'create_store',
    # 日志
    'CLILogger',
    'format_duration',
]
