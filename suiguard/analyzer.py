#!/usr/bin/env python3
"""
SafetyAnalyzer - 分析服务入口

负责把一次分析请求串起来:
    拉取 package 快照 -> 流水线 -> 写入结果缓存

HTTP 接口、实时订阅与命令行扫描共用同一个实例，
从而共享结果缓存与进行中的分析。
"""

import asyncio
from typing import Dict, Optional, Tuple

from langchain_openai import ChatOpenAI

from .agents.backend import LLMReasoningBackend, ReasoningBackend
from .chain.dependency_resolver import DependencyRiskResolver
from .chain.struct_resolver import StructResolver
from .chain.sui_client import SuiRPCClient
from .config import AnalyzerConfig, normalize_network
from .core.cache import ResultCache, create_store, make_cache_key
from .core.cli_logger import CLILogger
from .core.json_llm_client import JSONLLMClient
from .core.llm_logger import LLMLogManager, LogStorageType, get_log_manager
from .engines.pipeline import AnalysisPipeline, PipelineResult
from .knowledge.base import RiskPatternKnowledgeBase, get_knowledge_base
from .models.safety_card import SafetyCard


class SafetyAnalyzer:
    """
    Safety Card 分析服务

    示例:
        ```python
        analyzer = SafetyAnalyzer(AnalyzerConfig.from_env())
        card, from_cache = await analyzer.analyze("0x...", "mainnet")
        await analyzer.close()
        ```
    """

    def __init__(
            self,
            config: Optional[AnalyzerConfig] = None,
            cache: Optional[ResultCache] = None,
            backend: Optional[ReasoningBackend] = None,
            knowledge_base: Optional[RiskPatternKnowledgeBase] = None,
            clients: Optional[Dict[str, SuiRPCClient]] = None,
            log_manager: Optional[LLMLogManager] = None,
    ):
        """
        参数:
            config: 运行配置，默认从环境变量读取
            cache: 结果缓存，默认按配置创建内存或 Redis 存储
            backend: 推理后端，默认基于 ChatOpenAI
            knowledge_base: 风险模式知识库，默认使用配置中的路径或内置知识库
            clients: 按网络预先创建的 RPC 客户端
            log_manager: LLM 交互日志管理器
        """
        self.config = config or AnalyzerConfig.from_env()
        self.logger = CLILogger(component="SafetyAnalyzer", verbose=self.config.verbose)
        self.kb = knowledge_base or get_knowledge_base(self.config.knowledge_base_path)
        self.cache = cache if cache is not None else self._create_cache()
        self.log_manager = log_manager or self._create_log_manager()
        self.backend = backend

        self._clients: Dict[str, SuiRPCClient] = dict(clients or {})
        self._pipelines: Dict[str, AnalysisPipeline] = {}

    # ============ 组件构建 ============

    def _create_cache(self) -> ResultCache:
        kwargs = {}
        if self.config.cache_backend == "redis":
            kwargs = {
                "host": self.config.redis_host,
                "port": self.config.redis_port,
                "db": self.config.redis_db,
                "password": self.config.redis_password,
            }
        store = create_store(self.config.cache_backend, **kwargs)
        return ResultCache(store=store, verbose=self.config.verbose)

    def _create_log_manager(self) -> LLMLogManager:
        if self.config.llm_log_db:
            return LLMLogManager(LogStorageType.SQLITE, self.config.llm_log_db)
        return get_log_manager()

    def _create_llm(self) -> ChatOpenAI:
        return ChatOpenAI(
            api_key=self.config.llm_api_key,
            base_url=self.config.llm_base_url,
            model=self.config.llm_model,
            temperature=self.config.temperature,
            model_kwargs={"response_format": {"type": "json_object"}},
        )

    def _get_backend(self) -> ReasoningBackend:
        if self.backend is None:
            client = JSONLLMClient(
                self._create_llm(),
                timeout=self.config.llm_timeout,
                verbose=self.config.verbose,
                log_manager=self.log_manager,
            )
            self.backend = LLMReasoningBackend(client, self.kb)
        return self.backend

    def get_client(self, network: str) -> SuiRPCClient:
        network = normalize_network(network)
        client = self._clients.get(network)
        if client is None:
            client = SuiRPCClient(
                self.config.rpc_url(network),
                network=network,
                timeout=self.config.rpc_timeout,
                verbose=self.config.verbose,
            )
            self._clients[network] = client
        return client

    def get_pipeline(self, network: str) -> AnalysisPipeline:
        network = normalize_network(network)
        pipeline = self._pipelines.get(network)
        if pipeline is None:
            pipeline = AnalysisPipeline(
                backend=self._get_backend(),
                struct_resolver=StructResolver(
                    self.get_client(network),
                    max_concurrency=self.config.max_concurrency,
                    verbose=self.config.verbose,
                ),
                dependency_resolver=DependencyRiskResolver(
                    self.cache,
                    mode=self.config.dependency_lookup,
                    verbose=self.config.verbose,
                ),
                knowledge_base=self.kb,
                llm_scoring=self.config.llm_scoring,
                verbose=self.config.verbose,
            )
            self._pipelines[network] = pipeline
        return pipeline

    # ============ 分析 ============

    async def run_pipeline(self, package_id: str, network: str) -> PipelineResult:
        """不经过缓存执行一次完整分析"""
        network = normalize_network(network)
        snapshot = await self.get_client(network).fetch_package_snapshot(package_id)
        return await self.get_pipeline(network).run(snapshot)

    async def analyze(self, package_id: str, network: Optional[str] = None) -> Tuple[SafetyCard, bool]:
        """
        分析 package 并返回 (card, from_cache)

        同一个 "{package_id}@{network}" 的并发请求只会触发一次计算。

        Raises:
            ValueError: package_id 为空
            AnalysisError 的子类: 拉取或任一推理阶段失败
        """
        package_id = (package_id or "").strip()
        if not package_id:
            raise ValueError("package_id is required")
        network = normalize_network(network)
        key = make_cache_key(package_id, network)

        async def _compute() -> SafetyCard:
            result = await self.run_pipeline(package_id, network)
            return result.card

        self.logger.info("analyze.request", "收到分析请求", package_id=package_id, network=network)
        return await self.cache.get_or_compute(key, _compute)

    def is_cached(self, package_id: str, network: Optional[str] = None) -> bool:
        return self.cache.contains(make_cache_key(package_id, normalize_network(network)))

    async def close(self):
        clients = list(self._clients.values())
        self._clients.clear()
        self._pipelines.clear()
        await asyncio.gather(*(client.close() for client in clients))

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


__all__ = ["SafetyAnalyzer"]
