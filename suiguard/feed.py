#!/usr/bin/env python3
"""
LiveIngestionFeed - 实时订阅新发布的 package 并自动分析

轮询单个网络上新发布的 package（交易块 objectChanges 中的 published 条目），
未缓存的 package 走与 HTTP 请求相同的分析流程，
单个 package 失败只记录日志，订阅本身不会停止。
"""

import asyncio
import time
from typing import Any, Dict, Optional

from .analyzer import SafetyAnalyzer
from .chain.sui_client import PUBLISH_TX_KIND, published_packages
from .config import normalize_network
from .core.cli_logger import CLILogger, format_duration
from .models.safety_card import SafetyCard


def event_package_id(event: Dict[str, Any]) -> Optional[str]:
    """
    从发布记录中取出新 package 的 ID

    - 发布记录 / objectChanges 条目: packageId
    - 交易块: objectChanges 中第一个 published 条目
    - Move 事件: 顶层 packageId 是发出事件的 package（如 0x2），只看 parsedJson
    """
    if "parsedJson" in event:
        parsed = event.get("parsedJson")
        if isinstance(parsed, dict):
            return parsed.get("package_id") or parsed.get("packageId") or None
        return None
    if "objectChanges" in event:
        records = published_packages(event)
        return records[0]["packageId"] if records else None
    return event.get("packageId") or None


class LiveIngestionFeed:
    """
    实时分析订阅

    示例:
        ```python
        feed = LiveIngestionFeed(analyzer, network="mainnet")
        feed.start()
        ...
        await feed.stop()
        ```
    """

    def __init__(
            self,
            analyzer: SafetyAnalyzer,
            network: str = "mainnet",
            tx_kind: Optional[str] = PUBLISH_TX_KIND,
            poll_interval: float = 15.0,
            verbose: bool = False,
    ):
        self.analyzer = analyzer
        self.network = normalize_network(network)
        self.tx_kind = tx_kind
        self.poll_interval = poll_interval
        self.logger = CLILogger(component="LiveIngestionFeed", verbose=verbose)

        self._task: Optional[asyncio.Task] = None
        self.processed = 0
        self.skipped = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def process_event(self, event: Dict[str, Any]) -> Optional[SafetyCard]:
        """
        处理单条发布记录

        已缓存或无法识别的记录返回 None；缓存检查或分析失败只记录日志，同样返回 None。
        """
        package_id = event_package_id(event)
        if not package_id:
            self.logger.warning("feed.event_invalid", "发布记录中没有 package ID", digest=event.get("digest"))
            self.skipped += 1
            return None

        log = self.logger.bind(package_id=package_id, network=self.network)
        log.info("feed.package_published", "发现新发布的 package", sender=event.get("sender"),
                 digest=event.get("digest"))

        start = time.perf_counter()
        try:
            if self.analyzer.is_cached(package_id, self.network):
                log.info("feed.skip_cached", "已有缓存结果，跳过")
                self.skipped += 1
                return None
            card, _ = await self.analyzer.analyze(package_id, self.network)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failed += 1
            log.error("feed.analysis_failed", "自动分析失败", error=str(e), error_type=type(e).__name__)
            return None

        self.processed += 1
        log.success(
            "feed.analysis_done",
            "自动分析完成并写入缓存",
            risk_score=card.risk_score,
            risk_level=card.risk_level.value,
            duration=format_duration(time.perf_counter() - start),
        )
        return card

    async def run(self):
        """持续运行直到被取消"""
        client = self.analyzer.get_client(self.network)
        self.logger.info("feed.start", "开始订阅新发布的 package", network=self.network,
                         tx_kind=self.tx_kind or "all", poll_interval=self.poll_interval)
        async for event in client.poll_publishes(self.tx_kind, poll_interval=self.poll_interval):
            await self.process_event(event)

    def _on_task_done(self, task: asyncio.Task):
        """订阅任务结束回调：非取消的退出都是意外"""
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.exception("feed.crashed", exc, processed=self.processed, failed=self.failed)
        else:
            self.logger.warning("feed.exited", "发布轮询意外结束", processed=self.processed)

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._task = asyncio.create_task(self.run())
        self._task.add_done_callback(self._on_task_done)
        return self._task

    async def stop(self):
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            # 任务此前已异常退出，回调中已记录
            self.logger.warning("feed.stop", "订阅任务此前已异常退出", error=str(e))
        self.logger.info("feed.stop", "订阅已停止", processed=self.processed, skipped=self.skipped,
                         failed=self.failed)


__all__ = ["event_package_id", "LiveIngestionFeed"]
