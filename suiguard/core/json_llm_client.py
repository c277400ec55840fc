#!/usr/bin/env python3
"""
JSON 输出 LLM 客户端

每个推理阶段都通过提示词要求模型只返回一个 JSON 对象，
客户端负责提取 JSON、按 pydantic 模型校验，并记录交互日志。

调用策略:
1. 每次调用都有超时控制（asyncio.wait_for）
2. 返回内容不是合法 JSON 或不符合结构时，追加纠错提示重试一次
3. 服务本身报错或超时不重试，直接向上抛出
"""

import asyncio
import json
import time
from typing import Any, Dict, List, Optional, Type, TypeVar

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel, ValidationError

from .cli_logger import CLILogger, format_duration
from .exceptions import SchemaViolationError, StageTimeoutError, UpstreamServiceError
from .llm_logger import LLMLogManager, get_log_manager

T = TypeVar("T", bound=BaseModel)

CORRECTION_HINT = (
    "Your previous reply could not be used: {error}\n"
    "Reply again with ONLY the JSON object described in the schema. "
    "Do not add markdown fences, comments or any other text."
)


def extract_json_object(content: str) -> Dict[str, Any]:
    """
    从响应内容中提取 JSON 对象

    支持以下格式:
    1. ```json\\n{...}\\n```
    2. ```\\n{...}\\n```
    3. 前后夹杂说明文字的 {...}
    """
    content = (content or "").strip()
    if not content:
        raise ValueError("Empty response")

    candidates: List[str] = []
    if "```json" in content:
        start = content.find("```json") + 7
        end = content.find("```", start)
        if end > start:
            candidates.append(content[start:end].strip())
    if content.startswith("```"):
        start = content.find("\n") + 1
        end = content.rfind("```")
        if end > start:
            candidates.append(content[start:end].strip())

    start = content.find("{")
    end = content.rfind("}")
    if start != -1 and end > start:
        candidates.append(content[start:end + 1])

    if not candidates:
        raise ValueError("No JSON object found in response")

    last_error: Optional[Exception] = None
    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError as e:
            last_error = e
            continue
        if not isinstance(data, dict):
            last_error = ValueError(f"Expected a JSON object, got {type(data).__name__}")
            continue
        return data

    raise ValueError(f"Invalid JSON in response: {last_error}")


def _message_text(response: Any) -> str:
    """兼容字符串内容与多段内容（content blocks）两种返回形式"""
    content = response.content if hasattr(response, "content") else response
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return str(content)


class JSONLLMClient:
    """
    JSON 输出 LLM 客户端

    示例:
        ```python
        client = JSONLLMClient(llm, timeout=60)
        result = await client.ajson_call(
            prompt=build_triage_prompt(...),
            schema=TriageResult,
            stage="triage",
        )
        ```
    """

    def __init__(
        self,
        llm: BaseChatModel,
        timeout: Optional[float] = 120.0,
        max_malformed_retries: int = 1,
        verbose: bool = False,
        log_manager: Optional[LLMLogManager] = None,
        enable_logging: bool = True,
    ):
        """
        Args:
            llm: LangChain 聊天模型（通常是 ChatOpenAI）
            timeout: 单次调用超时（秒），None 表示不限制
            max_malformed_retries: JSON 不合法时的重试次数
            verbose: 是否打印详细日志
            log_manager: LLM 交互日志管理器，默认使用进程共享实例
            enable_logging: 是否记录交互日志
        """
        self.llm = llm
        self.timeout = timeout
        self.max_malformed_retries = max(0, max_malformed_retries)
        self.verbose = verbose
        self._logger = CLILogger(component="JSONLLMClient", verbose=verbose)
        self._log_manager = (log_manager or get_log_manager()) if enable_logging else None

    @property
    def model_name(self) -> str:
        return getattr(self.llm, "model_name", None) or getattr(self.llm, "model", None) or type(self.llm).__name__

    async def _invoke(self, messages: List[BaseMessage], stage: str) -> str:
        try:
            if self.timeout:
                response = await asyncio.wait_for(self.llm.ainvoke(messages), timeout=self.timeout)
            else:
                response = await self.llm.ainvoke(messages)
        except asyncio.TimeoutError as e:
            raise StageTimeoutError(
                f"Text generation timed out after {self.timeout}s during {stage}",
                stage=stage,
            ) from e
        except Exception as e:
            raise UpstreamServiceError(
                f"Text generation failed during {stage}: {e}",
                stage=stage,
            ) from e
        return _message_text(response)

    async def ajson_call(
        self,
        prompt: str,
        schema: Type[T],
        stage: str,
        system_prompt: Optional[str] = None,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> T:
        """
        调用模型并按 schema 解析 JSON 结果

        Raises:
            StageTimeoutError: 调用超时
            UpstreamServiceError: 模型服务报错
            SchemaViolationError: 重试后仍无法得到合法 JSON
        """
        messages: List[BaseMessage] = []
        if system_prompt:
            messages.append(SystemMessage(content=system_prompt))
        messages.append(HumanMessage(content=prompt))

        log_entry = None
        if self._log_manager:
            log_entry = self._log_manager.log_start(
                call_type=stage,
                model=self.model_name,
                prompt=prompt,
                session_id=session_id,
                metadata={**(metadata or {}), "schema": schema.__name__},
            )

        start_time = time.perf_counter()
        raw = ""
        last_error: Optional[Exception] = None
        attempts = 1 + self.max_malformed_retries

        for attempt in range(attempts):
            try:
                raw = await self._invoke(messages, stage)
            except UpstreamServiceError as e:
                self._finish_log(log_entry, start_time, attempt, error=str(e))
                raise

            try:
                data = extract_json_object(raw)
                result = schema.model_validate(data)
            except (ValidationError, ValueError) as e:
                last_error = e
                self._logger.warning(
                    "llm.malformed_json",
                    "阶段返回内容无法解析",
                    stage=stage,
                    attempt=f"{attempt + 1}/{attempts}",
                    error=str(e)[:300],
                )
                messages = messages + [
                    AIMessage(content=raw),
                    HumanMessage(content=CORRECTION_HINT.format(error=str(e)[:500])),
                ]
                continue

            self._finish_log(log_entry, start_time, attempt, response=result.model_dump(mode="json"))
            self._logger.debug(
                "llm.call_done",
                "阶段调用完成",
                stage=stage,
                duration=format_duration(time.perf_counter() - start_time),
            )
            return result

        self._finish_log(log_entry, start_time, attempts - 1, error=str(last_error))
        raise SchemaViolationError(
            f"{stage} stage returned a reply that is not valid JSON for {schema.__name__}: {last_error}",
            stage=stage,
            raw_response=raw,
        )

    def _finish_log(
        self,
        entry,
        start_time: float,
        retry_count: int,
        response: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ):
        if not self._log_manager or entry is None:
            return
        self._log_manager.log_end(
            entry=entry,
            response=response,
            error=error,
            latency_ms=(time.perf_counter() - start_time) * 1000,
            retry_count=retry_count,
            success=error is None,
        )


__all__ = [
    "JSONLLMClient",
    "extract_json_object",
]
