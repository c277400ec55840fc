#!/usr/bin/env python3
"""
控制台日志

服务端、实时订阅与命令行扫描共用同一种单行格式:

    [时间] [级别] [组件] 事件 | 消息 | 字段=值, ...

日志模式由 SUIGUARD_LOG_MODE 决定（normal / verbose / debug），
未设置时按 verbose 参数选择 normal 或 verbose。
"""

from __future__ import annotations

import os
import sys
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, TextIO

LOG_MODE_ENV = "SUIGUARD_LOG_MODE"

# 级别 -> 优先级
LEVELS = {
    "DEBUG": 10,
    "INFO": 20,
    "SUCCESS": 25,
    "WARNING": 30,
    "ERROR": 40,
}

# 各模式下的最低输出级别
_MODE_THRESHOLD = {
    "normal": LEVELS["INFO"],
    "verbose": LEVELS["INFO"],
    "debug": LEVELS["DEBUG"],
}

# 轮询与 RPC 重试属于高频事件，按 kind 过滤；debug 模式全部输出
_EVENT_KINDS = {
    "feed.poll": {
        "normal": frozenset({"event", "error"}),
        "verbose": frozenset({"event", "error", "cursor"}),
    },
    "chain.rpc": {
        "normal": frozenset({"error"}),
        "verbose": frozenset({"error", "retry"}),
    },
}

MAX_FIELD_LENGTH = 500


def format_duration(seconds: float) -> str:
    """把秒数格式化为 ms / s / m 形式"""
    if seconds < 0:
        return "0ms"
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.2f}s"
    minutes, remain = divmod(seconds, 60)
    return f"{int(minutes)}m{remain:.2f}s"


def _one_line(value: Any, limit: Optional[int] = None) -> str:
    text = str(value).replace("\r", "\\r").replace("\n", "\\n")
    if limit and len(text) > limit:
        return text[:limit] + "..."
    return text


def resolve_mode(mode: str = "", verbose: bool = False) -> str:
    """显式 mode > 环境变量 > verbose 参数"""
    for candidate in (mode, os.getenv(LOG_MODE_ENV, "")):
        candidate = (candidate or "").strip().lower()
        if candidate == "default":
            return "normal"
        if candidate in _MODE_THRESHOLD:
            return candidate
    return "verbose" if verbose else "normal"


@dataclass
class CLILogger:
    """单行结构化日志器，context 中的字段会附加到每一行"""

    component: str
    verbose: bool = False
    mode: str = ""
    stream: TextIO = sys.stdout
    context: Dict[str, Any] = field(default_factory=dict)

    def bind(self, **context: Any) -> "CLILogger":
        """返回携带额外上下文字段（如 package_id、network）的新日志器"""
        return CLILogger(
            component=self.component,
            verbose=self.verbose,
            mode=self.mode,
            stream=self.stream,
            context={**self.context, **context},
        )

    def enabled(self, level: str) -> bool:
        return LEVELS.get(level.upper(), LEVELS["INFO"]) >= _MODE_THRESHOLD[resolve_mode(self.mode, self.verbose)]

    def _event_allowed(self, event: str, kind: str) -> bool:
        kinds = _EVENT_KINDS.get(event)
        mode = resolve_mode(self.mode, self.verbose)
        if kinds is None or mode == "debug":
            return True
        return kind in kinds.get(mode, kinds["normal"])

    def log(self, level: str, event: str, message: str = "", **fields: Any) -> None:
        level = level.upper()
        if level == "WARN":
            level = "WARNING"
        if level not in LEVELS:
            level = "INFO"
        if not self.enabled(level):
            return

        kind = str(fields.pop("kind", "") or "").strip().lower()
        if not self._event_allowed(event, kind):
            return

        ts = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        line = f"[{ts}] [{level}] [{self.component}] {event.strip() or 'event'}"
        if message:
            line += f" | {_one_line(message)}"

        merged = {**self.context, **fields}
        if kind and resolve_mode(self.mode, self.verbose) == "debug":
            merged["kind"] = kind
        items = [f"{k}={_one_line(v, MAX_FIELD_LENGTH)}" for k, v in merged.items() if v is not None]
        if items:
            line += " | " + ", ".join(items)

        print(line, file=self.stream, flush=True)

    def debug(self, event: str, message: str = "", **fields: Any) -> None:
        self.log("DEBUG", event, message, **fields)

    def info(self, event: str, message: str = "", **fields: Any) -> None:
        self.log("INFO", event, message, **fields)

    def success(self, event: str, message: str = "", **fields: Any) -> None:
        self.log("SUCCESS", event, message, **fields)

    def warning(self, event: str, message: str = "", **fields: Any) -> None:
        self.log("WARNING", event, message, **fields)

    def error(self, event: str, message: str = "", **fields: Any) -> None:
        self.log("ERROR", event, message, **fields)

    def exception(self, event: str, exc: BaseException, **fields: Any) -> None:
        """记录异常；verbose / debug 模式下附带堆栈"""
        self.error(event, str(exc) or type(exc).__name__, error_type=type(exc).__name__, **fields)
        if resolve_mode(self.mode, self.verbose) == "normal":
            return
        trace = traceback.format_exception(type(exc), exc, exc.__traceback__)
        for line in "".join(trace).splitlines():
            if line.strip():
                self.log("ERROR", "traceback", line)
