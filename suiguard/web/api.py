#!/usr/bin/env python3
"""
SuiGuard Web API

使用 FastAPI 提供分析接口与 LLM 交互日志查询接口
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..analyzer import SafetyAnalyzer
from ..config import AnalyzerConfig, normalize_network
from ..core.cli_logger import CLILogger
from ..feed import LiveIngestionFeed

ANALYSIS_FAILED = "Analysis failed"


# API 模型
class AnalyzeRequest(BaseModel):
    """分析请求"""
    package_id: str = Field(default="", description="待分析的 package ID")
    network: Optional[Any] = Field(default=None, description="mainnet 或 testnet，其他取值按 mainnet 处理")


class AnalyzeResponse(BaseModel):
    """分析成功响应"""
    message: str
    safetyCard: Dict[str, Any]


class LogEntryResponse(BaseModel):
    """日志条目响应"""
    id: str
    timestamp: str
    session_id: str
    call_type: str
    model: str
    prompt: str
    response: Optional[Dict[str, Any]]
    error: Optional[str]
    latency_ms: float
    retry_count: int
    status: str
    success: bool
    metadata: Dict[str, Any]


def analysis_message(network: str, from_cache: bool) -> str:
    if from_cache:
        return f"Analysis successful (from cache - {network})"
    return f"Analysis successful ({network})"


def create_app(
        analyzer: Optional[SafetyAnalyzer] = None,
        config: Optional[AnalyzerConfig] = None,
) -> FastAPI:
    """
    创建 FastAPI 应用

    参数:
        analyzer: 分析服务，默认按配置创建
        config: 运行配置，默认从环境变量读取
    """
    config = config or (analyzer.config if analyzer is not None else AnalyzerConfig.from_env())
    analyzer = analyzer or SafetyAnalyzer(config)
    logger = CLILogger(component="web.api", verbose=config.verbose)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        feed: Optional[LiveIngestionFeed] = None
        if config.feed_enabled:
            feed = LiveIngestionFeed(
                analyzer,
                network=config.feed_network,
                tx_kind=config.publish_tx_kind,
                poll_interval=config.feed_poll_interval,
                verbose=config.verbose,
            )
            feed.start()
        app.state.feed = feed
        llm_db = getattr(analyzer.log_manager.storage, "db_path", "N/A (Memory Storage)")
        logger.info("startup", "服务已启动", llm_logs_db=llm_db, feed=bool(feed))
        try:
            yield
        finally:
            if feed is not None:
                await feed.stop()
            await analyzer.close()
            logger.info("shutdown", "服务已停止")

    app = FastAPI(
        title="SuiGuard",
        description="Sui Move package 多阶段安全评估 (Safety Card) API",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.analyzer = analyzer
    app.state.feed = None

    # ==================== API 路由 ====================

    @app.post("/analyze", response_model=AnalyzeResponse)
    async def analyze(request: AnalyzeRequest):
        """分析 package 并返回 Safety Card"""
        network = normalize_network(request.network)
        try:
            card, from_cache = await analyzer.analyze(request.package_id, network)
        except Exception as e:
            logger.error("analyze.failed", "分析失败", package_id=request.package_id, network=network,
                         error=str(e))
            return JSONResponse(status_code=500, content={"error": ANALYSIS_FAILED, "details": str(e)})
        return AnalyzeResponse(message=analysis_message(network, from_cache), safetyCard=card.to_dict())

    @app.get("/api/health")
    async def health_check():
        """健康检查"""
        return {"status": "ok", "timestamp": datetime.now().isoformat()}

    @app.get("/api/logs", response_model=List[LogEntryResponse])
    async def get_logs(
        session_id: Optional[str] = None,
        call_type: Optional[str] = None,
        success: Optional[bool] = None,
        limit: int = Query(default=100, ge=1, le=1000),
        offset: int = Query(default=0, ge=0),
    ):
        """获取各推理阶段的 LLM 交互日志"""
        entries = analyzer.log_manager.query(
            session_id=session_id,
            call_type=call_type,
            success=success,
            limit=limit,
            offset=offset,
        )
        return [LogEntryResponse(**e.to_dict()) for e in entries]

    @app.get("/api/logs/{entry_id}", response_model=LogEntryResponse)
    async def get_log_entry(entry_id: str):
        """获取单个日志条目详情"""
        entry = analyzer.log_manager.get_entry(entry_id)
        if entry is None:
            raise HTTPException(status_code=404, detail="Log entry not found")
        return LogEntryResponse(**entry.to_dict())

    return app


def start_server(host: str = "0.0.0.0", port: int = 3000, reload: bool = False):
    """启动 API 服务器"""
    import uvicorn
    uvicorn.run("suiguard.web.api:create_app", host=host, port=port, reload=reload, factory=True)


__all__ = ["AnalyzeRequest", "AnalyzeResponse", "analysis_message", "create_app", "start_server"]
