#!/usr/bin/env python3
"""
结果缓存模块

以 "{package_id}@{network}" 为键缓存最终 Safety Card，
相同请求直接返回缓存结果，不再调用文本生成服务。

存储后端:
- MemoryStore: 进程内字典（默认，无过期与淘汰）
- RedisStore: Redis 存储，Safety Card 以 JSON 序列化，可选 TTL

并发控制:
get_or_compute 为每个键维护一个进行中的 Future，同一键的并发请求共享一次计算；
计算失败时所有等待者都收到同一异常，且不写入缓存。
Redis 后端下该保护仍是进程级的，跨进程的重复计算以最后一次写入为准。
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..models.safety_card import SafetyCard
from .cli_logger import CLILogger


KEY_SEPARATOR = "@"


def make_cache_key(package_id: str, network: str) -> str:
    """生成缓存键"""
    return f"{package_id}{KEY_SEPARATOR}{network}"


def split_cache_key(key: str) -> Tuple[str, str]:
    package_id, _, network = key.rpartition(KEY_SEPARATOR)
    return package_id, network


class BaseStore:
    """缓存存储基类，值为可 JSON 序列化的字典"""

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def set(self, key: str, value: Dict[str, Any]) -> bool:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def keys_with_prefix(self, prefix: str) -> List[str]:
        raise NotImplementedError


class MemoryStore(BaseStore):
    """进程内存储"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        return self._data.get(key)

    def set(self, key: str, value: Dict[str, Any]) -> bool:
        self._data[key] = value
        return True

    def exists(self, key: str) -> bool:
        return key in self._data

    def keys_with_prefix(self, prefix: str) -> List[str]:
        return [k for k in self._data if k.startswith(prefix)]

    def __len__(self) -> int:
        return len(self._data)


class RedisStore(BaseStore):
    """
    Redis 存储

    使用 JSON 序列化，便于其他语言的服务直接读取缓存结果。
    """

    def __init__(
        self,
        namespace: str = "suiguard:safety_card",
        ttl: Optional[int] = None,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        socket_timeout: float = 5.0,
        max_connections: int = 50,
        client: Any = None,
    ):
        self.namespace = namespace
        self.ttl = ttl
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.socket_timeout = socket_timeout
        self.max_connections = max_connections
        self._redis = client
        self._available_checked = client is not None
        self._available = client is not None
        self._last_unavailable_message = ""
        self._logger = CLILogger(component="RedisStore")

    def ensure_available(self) -> None:
        """确保 Redis 可用，不可用时只提示一次并抛错"""
        if self._available_checked and self._available:
            return
        if self._available_checked and not self._available:
            raise RuntimeError(self._last_unavailable_message)
        try:
            client = self._get_redis()
            client.ping()
            self._available_checked = True
            self._available = True
        except Exception as e:
            self._available_checked = True
            self._available = False
            message = (
                f"Redis 未就绪，无法连接 {self.host}:{self.port}。"
                "请先启动 Redis 服务，或将 SUIGUARD_CACHE_BACKEND 设为 memory。"
            )
            self._last_unavailable_message = f"{message} 原因: {e}"
            self._logger.error("cache.redis.unavailable", self._last_unavailable_message, host=self.host, port=self.port)
            raise RuntimeError(self._last_unavailable_message) from e

    def _make_key(self, key: str) -> str:
        """生成带命名空间的键"""
        return f"{self.namespace}:{key}"

    def _get_redis(self):
        """获取 Redis 连接（延迟初始化）"""
        if self._redis is None:
            import redis
            self._redis = redis.Redis(
                host=self.host,
                port=self.port,
                db=self.db,
                password=self.password,
                socket_timeout=self.socket_timeout,
                max_connections=self.max_connections,
                decode_responses=True,
            )
        return self._redis

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        self.ensure_available()
        try:
            data = self._get_redis().get(self._make_key(key))
            if data is None:
                return None
            return json.loads(data)
        except Exception as e:
            self._logger.warning("cache.redis.get_failed", str(e), key=key)
            return None

    def set(self, key: str, value: Dict[str, Any]) -> bool:
        self.ensure_available()
        try:
            data = json.dumps(value, ensure_ascii=False)
            if self.ttl:
                self._get_redis().setex(self._make_key(key), self.ttl, data)
            else:
                self._get_redis().set(self._make_key(key), data)
            return True
        except Exception as e:
            self._logger.warning("cache.redis.set_failed", str(e), key=key)
            return False

    def exists(self, key: str) -> bool:
        self.ensure_available()
        try:
            return self._get_redis().exists(self._make_key(key)) > 0
        except Exception as e:
            self._logger.warning("cache.redis.exists_failed", str(e), key=key)
            return False

    def keys_with_prefix(self, prefix: str) -> List[str]:
        self.ensure_available()
        ns_prefix = f"{self.namespace}:"
        try:
            keys = self._get_redis().scan_iter(match=f"{ns_prefix}{prefix}*")
            return [k[len(ns_prefix):] for k in keys]
        except Exception as e:
            self._logger.warning("cache.redis.scan_failed", str(e), prefix=prefix)
            return []


ComputeFunc = Callable[[], Awaitable[SafetyCard]]


class ResultCache:
    """
    Safety Card 结果缓存

    示例:
        ```python
        cache = ResultCache()
        card, from_cache = await cache.get_or_compute(
            make_cache_key(package_id, "mainnet"),
            lambda: analyzer.run(package_id, "mainnet"),
        )
        ```
    """

    def __init__(
        self,
        store: Optional[BaseStore] = None,
        compute_timeout: Optional[float] = None,
        verbose: bool = False,
    ):
        self.store = store if store is not None else MemoryStore()
        self.compute_timeout = compute_timeout
        self._inflight: Dict[str, "asyncio.Future[SafetyCard]"] = {}
        self._logger = CLILogger(component="ResultCache", verbose=verbose)

    def get(self, key: str) -> Optional[SafetyCard]:
        data = self.store.get(key)
        if data is None:
            return None
        return SafetyCard.model_validate(data)

    def set(self, key: str, card: SafetyCard) -> None:
        self.store.set(key, card.to_dict())
        self._logger.debug("cache.set", "写入缓存", key=key, risk_score=card.risk_score)

    def contains(self, key: str) -> bool:
        return self.store.exists(key)

    def find_any_network(self, package_id: str) -> Dict[str, SafetyCard]:
        """返回该 package 在所有网络上的缓存结论: network -> SafetyCard"""
        results: Dict[str, SafetyCard] = {}
        for key in self.store.keys_with_prefix(f"{package_id}{KEY_SEPARATOR}"):
            found_id, network = split_cache_key(key)
            if found_id != package_id:
                continue
            card = self.get(key)
            if card is not None:
                results[network] = card
        return results

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    async def get_or_compute(self, key: str, compute: ComputeFunc) -> Tuple[SafetyCard, bool]:
        """
        获取缓存结果，未命中时计算并写入

        Returns:
            (card, from_cache)，等待其他请求的计算结果时 from_cache 也为 True
        """
        cached = self.get(key)
        if cached is not None:
            self._logger.info("cache.hit", "命中缓存", key=key)
            return cached, True

        pending = self._inflight.get(key)
        if pending is not None:
            self._logger.info("cache.wait", "等待进行中的分析", key=key)
            card = await asyncio.shield(pending)
            return card, True

        loop = asyncio.get_running_loop()
        future: "asyncio.Future[SafetyCard]" = loop.create_future()
        self._inflight[key] = future
        try:
            if self.compute_timeout:
                card = await asyncio.wait_for(compute(), timeout=self.compute_timeout)
            else:
                card = await compute()
            self.set(key, card)
            future.set_result(card)
            return card, False
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # 没有等待者时避免 "exception was never retrieved" 警告
            future.exception()
            self._logger.warning("cache.compute_failed", "分析失败，不写入缓存", key=key, error=str(e))
            raise
        finally:
            self._inflight.pop(key, None)


def create_store(backend: str = "memory", ttl: Optional[int] = None, **kwargs) -> BaseStore:
    """
    按名称创建存储后端

    参数:
        backend: "memory" 或 "redis"
        ttl: Redis 过期时间（秒），None 表示不过期
        **kwargs: Redis 连接参数 host / port / db / password
    """
    if backend == "memory":
        return MemoryStore()
    if backend == "redis":
        return RedisStore(ttl=ttl, **kwargs)
    raise ValueError(f"Unknown cache backend: {backend}. Use 'memory' or 'redis'.")


__all__ = [
    "make_cache_key",
    "split_cache_key",
    "BaseStore",
    "MemoryStore",
    "RedisStore",
    "ResultCache",
    "create_store",
]
