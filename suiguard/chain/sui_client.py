#!/usr/bin/env python3
"""
Sui JSON-RPC 异步客户端

支持：
- 异步 HTTP 请求（aiohttp，连接池复用）
- 自动重试（可按调用关闭）
- 批量请求（信号量限制并发）
- 新发布 package 轮询（交易块 objectChanges）
"""

import asyncio
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import aiohttp

from ..core.cli_logger import CLILogger
from ..core.exceptions import ChainQueryError, PackageNotFoundError
from ..models.package import PackageSnapshot


DEFAULT_RPC_URLS = {
    "mainnet": "https://fullnode.mainnet.sui.io:443",
    "testnet": "https://fullnode.testnet.sui.io:443",
}

# 发布 package 的交易都是可编程交易；"all" 表示不过滤
PUBLISH_TX_KIND = "ProgrammableTransaction"
TRANSACTION_OPTIONS = {"showObjectChanges": True, "showEffects": True, "showInput": True}

PACKAGE_NOT_FOUND_MESSAGE = "Could not retrieve package content or disassembled bytecode."


def transaction_filter(tx_kind: Optional[str]) -> Optional[Dict[str, Any]]:
    """suix_queryTransactionBlocks 的过滤条件，tx_kind 为空或 "all" 时不过滤"""
    if not tx_kind or tx_kind.strip().lower() == "all":
        return None
    return {"TransactionKind": tx_kind.strip()}


def published_packages(tx: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    从交易块中取出新发布的 package

    只看 objectChanges 中 type == "published" 的条目；执行失败的交易不计。
    每条记录包含 packageId、sender、digest、timestampMs、checkpoint。
    """
    status = ((tx.get("effects") or {}).get("status") or {}).get("status")
    if status and status != "success":
        return []
    sender = ((tx.get("transaction") or {}).get("data") or {}).get("sender")

    records = []
    seen = set()
    for change in tx.get("objectChanges") or []:
        if not isinstance(change, dict) or change.get("type") != "published":
            continue
        package_id = change.get("packageId")
        if not package_id or package_id in seen:
            continue
        seen.add(package_id)
        records.append({
            "packageId": package_id,
            "sender": sender,
            "digest": tx.get("digest"),
            "timestampMs": tx.get("timestampMs"),
            "checkpoint": tx.get("checkpoint"),
        })
    return records


class SuiRPCClient:
    """
    Sui 全节点 JSON-RPC 客户端

    示例:
        ```python
        async with SuiRPCClient(DEFAULT_RPC_URLS["mainnet"], network="mainnet") as client:
            snapshot = await client.fetch_package_snapshot("0x...")
        ```
    """

    def __init__(
            self,
            url: str,
            network: str = "mainnet",
            timeout: float = 30,
            max_retries: int = 3,
            retry_delay: float = 1.0,
            verbose: bool = False,
    ):
        self.url = url
        self.network = network
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay

        self._session: Optional[aiohttp.ClientSession] = None
        self._request_id = 0
        self._lock = asyncio.Lock()
        self._logger = CLILogger(component=f"SuiRPC:{network}", verbose=verbose)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            connector = aiohttp.TCPConnector(limit=100, limit_per_host=20)
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                connector=connector,
            )
        return self._session

    async def close(self):
        """关闭连接池"""
        if self._session:
            await self._session.close()
            self._session = None

    async def _get_request_id(self) -> int:
        """获取唯一的请求 ID"""
        async with self._lock:
            self._request_id += 1
            return self._request_id

    async def call(self, method: str, params: Optional[List[Any]] = None, retry: bool = True) -> Any:
        """
        异步调用 RPC 方法

        参数:
            method: 方法名
            params: 位置参数列表
            retry: 失败时是否重试

        返回:
            result 字段内容

        Raises:
            ChainQueryError: 传输失败、HTTP 非 200 或 RPC 返回 error
        """
        session = await self._get_session()
        request_id = await self._get_request_id()
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params or [],
            "id": request_id,
        }

        attempts = self.max_retries if retry else 1
        last_error: Optional[Exception] = None
        for attempt in range(attempts):
            try:
                async with session.post(self.url, json=payload) as response:
                    if response.status != 200:
                        raise ChainQueryError(f"{method} failed: HTTP {response.status}", method=method)

                    data = await response.json(content_type=None)

                    if data.get("error"):
                        raise ChainQueryError(f"{method} failed: RPC Error: {data['error']}", method=method)

                    return data.get("result")

            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, ChainQueryError) as e:
                last_error = e
                if attempt < attempts - 1:
                    self._logger.warning("chain.rpc", "RPC 调用失败，准备重试", kind="retry",
                                         method=method, attempt=attempt + 1, error=str(e) or type(e).__name__)
                    await asyncio.sleep(self.retry_delay * (attempt + 1))
                continue

        self._logger.error("chain.rpc", "RPC 调用失败", kind="error", method=method,
                           error=str(last_error) or type(last_error).__name__)
        if isinstance(last_error, ChainQueryError):
            raise last_error
        raise ChainQueryError(
            f"{method} failed: {last_error or type(last_error).__name__}", method=method
        ) from last_error

    async def batch_call(
            self,
            calls: List[Tuple[str, List[Any]]],
            max_concurrency: int = 10,
            retry: bool = True,
    ) -> List[Any]:
        """
        批量异步调用

        返回:
            结果列表，失败的调用以异常对象占位
        """
        semaphore = asyncio.Semaphore(max_concurrency)

        async def _call_one(method: str, params: List[Any]) -> Any:
            async with semaphore:
                return await self.call(method, params, retry=retry)

        tasks = [_call_one(m, p) for m, p in calls]
        return await asyncio.gather(*tasks, return_exceptions=True)

    # ============ 便捷方法 ============

    async def get_object(self, object_id: str) -> Dict[str, Any]:
        """获取对象（含内容、所有者、类型）"""
        return await self.call(
            "sui_getObject",
            [object_id, {"showContent": True, "showOwner": True, "showType": True}],
        )

    async def get_normalized_modules(self, package_id: str) -> Dict[str, Any]:
        """获取 package 的规范化模块描述"""
        return await self.call("sui_getNormalizedMoveModulesByPackage", [package_id])

    async def get_normalized_struct(
            self,
            package_id: str,
            module_name: str,
            struct_name: str,
            retry: bool = False,
    ) -> Dict[str, Any]:
        """获取结构体定义，默认不重试"""
        return await self.call(
            "sui_getNormalizedMoveStruct",
            [package_id, module_name, struct_name],
            retry=retry,
        )

    async def query_transaction_blocks(
            self,
            tx_kind: Optional[str] = PUBLISH_TX_KIND,
            cursor: Optional[str] = None,
            limit: int = 50,
            descending: bool = False,
    ) -> Dict[str, Any]:
        """按交易类型查询交易块，附带 objectChanges"""
        return await self.call(
            "suix_queryTransactionBlocks",
            [{"filter": transaction_filter(tx_kind), "options": TRANSACTION_OPTIONS}, cursor, limit, descending],
        )

    async def fetch_package_snapshot(self, package_id: str) -> PackageSnapshot:
        """
        拉取 package 反汇编内容与规范化模块

        Raises:
            PackageNotFoundError: 对象不存在、不是 package 或没有反汇编内容
            ChainQueryError: RPC 调用失败
        """
        obj = await self.get_object(package_id) or {}
        data = obj.get("data") or {}
        content = data.get("content") or {}
        disassembled = content.get("disassembled") if content.get("dataType") == "package" else None
        if not disassembled:
            raise PackageNotFoundError(PACKAGE_NOT_FOUND_MESSAGE, method="sui_getObject")

        owner = data.get("owner")
        publisher = owner.get("AddressOwner") if isinstance(owner, dict) else None
        self._logger.debug("chain.package", "已获取 package 内容", package_id=package_id,
                           modules=len(disassembled), publisher=publisher or "Unknown")

        modules = await self.get_normalized_modules(package_id) or {}
        return PackageSnapshot(
            package_id=package_id,
            network=self.network,
            modules=modules,
            disassembled=dict(disassembled),
            publisher=publisher,
        )

    async def latest_transaction_cursor(self, tx_kind: Optional[str] = PUBLISH_TX_KIND) -> Optional[str]:
        """最新一笔交易的 digest，作为轮询起点"""
        page = await self.query_transaction_blocks(tx_kind, cursor=None, limit=1, descending=True) or {}
        blocks = page.get("data") or []
        if not blocks:
            return None
        return blocks[0].get("digest")

    async def poll_publishes(
            self,
            tx_kind: Optional[str] = PUBLISH_TX_KIND,
            poll_interval: float = 15.0,
            cursor: Optional[str] = None,
            limit: int = 50,
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        持续轮询新发布的 package（异步生成器）

        按交易块轮询，从 objectChanges 的 published 条目中取出 package，
        产出 published_packages 返回的发布记录。
        未指定 cursor 时从最新交易之后开始。单次轮询失败只记录日志，等待下一个周期继续。
        """
        bootstrapped = cursor is not None
        while True:
            try:
                if not bootstrapped:
                    cursor = await self.latest_transaction_cursor(tx_kind)
                    bootstrapped = True
                    self._logger.info("feed.poll", "交易轮询起点已确定", kind="cursor", cursor=cursor)

                page = await self.query_transaction_blocks(tx_kind, cursor=cursor, limit=limit) or {}
            except ChainQueryError as e:
                self._logger.warning("feed.poll", "交易查询失败", kind="error", error=str(e))
                await asyncio.sleep(poll_interval)
                continue

            blocks = page.get("data") or []
            published = 0
            for tx in blocks:
                for record in published_packages(tx):
                    published += 1
                    yield record
                cursor = tx.get("digest") or cursor
            if published:
                self._logger.debug("feed.poll", "发现新发布的 package", kind="event", count=published,
                                   transactions=len(blocks))

            if not page.get("hasNextPage"):
                await asyncio.sleep(poll_interval)

    async def __aenter__(self):
        await self._get_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


__all__ = [
    "DEFAULT_RPC_URLS",
    "PUBLISH_TX_KIND",
    "TRANSACTION_OPTIONS",
    "PACKAGE_NOT_FOUND_MESSAGE",
    "SuiRPCClient",
    "transaction_filter",
    "published_packages",
]
