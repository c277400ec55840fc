#!/usr/bin/env python3
"""
LLM 交互日志

记录每一次推理阶段调用（提示词、解析结果或错误、耗时、重试次数），
支持内存存储（默认）与 SQLite 存储两种模式。
"""

import json
import sqlite3
import threading
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union


class LogStorageType(Enum):
    """日志存储类型"""
    SQLITE = "sqlite"
    MEMORY = "memory"


class LogStatus(str, Enum):
    """日志交互状态"""
    RUNNING = "running"      # 进行中
    COMPLETED = "completed"  # 成功完成
    FAILED = "failed"        # 失败


@dataclass
class LLMLogEntry:
    """LLM 交互日志条目"""
    id: str
    timestamp: str
    session_id: str          # 一次分析运行的 ID
    call_type: str           # 推理阶段名: triage, technical_analysis, ...
    model: str
    prompt: str
    response: Optional[Dict[str, Any]]
    error: Optional[str]
    latency_ms: float
    retry_count: int
    status: str
    success: bool
    metadata: Dict[str, Any]

    @classmethod
    def create(
        cls,
        call_type: str,
        model: str,
        prompt: str,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "LLMLogEntry":
        """创建新的日志条目"""
        return cls(
            id=str(uuid.uuid4()),
            timestamp=datetime.now().isoformat(),
            session_id=session_id or str(uuid.uuid4()),
            call_type=call_type,
            model=model,
            prompt=prompt,
            response=None,
            error=None,
            latency_ms=0.0,
            retry_count=0,
            status=LogStatus.RUNNING.value,
            success=False,
            metadata=metadata or {},
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class BaseLogStorage:
    """日志存储基类"""

    def save_entry(self, entry: LLMLogEntry) -> str:
        raise NotImplementedError

    def update_entry(self, entry_id: str, **kwargs) -> bool:
        raise NotImplementedError

    def get_entry(self, entry_id: str) -> Optional[LLMLogEntry]:
        raise NotImplementedError

    def query_entries(
        self,
        session_id: Optional[str] = None,
        call_type: Optional[str] = None,
        success: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[LLMLogEntry]:
        raise NotImplementedError


_UPDATABLE_FIELDS = ("response", "error", "latency_ms", "retry_count", "status", "success")


class SQLiteLogStorage(BaseLogStorage):
    """SQLite 日志存储"""

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """获取线程本地连接"""
        if getattr(self._local, "conn", None) is None:
            self._local.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._local.conn.row_factory = sqlite3.Row
        return self._local.conn

    def _init_db(self):
        conn = self._get_conn()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS llm_logs (
                id TEXT PRIMARY KEY,
                timestamp TEXT NOT NULL,
                session_id TEXT NOT NULL,
                call_type TEXT NOT NULL,
                model TEXT NOT NULL,
                prompt TEXT NOT NULL,
                response TEXT,
                error TEXT,
                latency_ms REAL NOT NULL,
                retry_count INTEGER NOT NULL,
                status TEXT NOT NULL,
                success INTEGER NOT NULL,
                metadata TEXT NOT NULL
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_timestamp ON llm_logs(timestamp)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_session ON llm_logs(session_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_call_type ON llm_logs(call_type)")
        conn.commit()

    def save_entry(self, entry: LLMLogEntry) -> str:
        conn = self._get_conn()
        conn.execute("""
            INSERT OR REPLACE INTO llm_logs
            (id, timestamp, session_id, call_type, model, prompt, response, error,
             latency_ms, retry_count, status, success, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            entry.id,
            entry.timestamp,
            entry.session_id,
            entry.call_type,
            entry.model,
            entry.prompt,
            json.dumps(entry.response, ensure_ascii=False) if entry.response is not None else None,
            entry.error,
            entry.latency_ms,
            entry.retry_count,
            entry.status,
            1 if entry.success else 0,
            json.dumps(entry.metadata, ensure_ascii=False),
        ))
        conn.commit()
        return entry.id

    def update_entry(self, entry_id: str, **kwargs) -> bool:
        updates = {k: v for k, v in kwargs.items() if k in _UPDATABLE_FIELDS}
        if not updates:
            return False

        if updates.get("response") is not None:
            updates["response"] = json.dumps(updates["response"], ensure_ascii=False)
        if "success" in updates:
            updates["success"] = 1 if updates["success"] else 0

        set_clause = ", ".join(f"{k} = ?" for k in updates)
        conn = self._get_conn()
        conn.execute(
            f"UPDATE llm_logs SET {set_clause} WHERE id = ?",
            [*updates.values(), entry_id],
        )
        conn.commit()
        return True

    def get_entry(self, entry_id: str) -> Optional[LLMLogEntry]:
        row = self._get_conn().execute(
            "SELECT * FROM llm_logs WHERE id = ?", (entry_id,)
        ).fetchone()
        return self._row_to_entry(row) if row else None

    def query_entries(
        self,
        session_id: Optional[str] = None,
        call_type: Optional[str] = None,
        success: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[LLMLogEntry]:
        conditions = []
        params: List[Any] = []
        if session_id:
            conditions.append("session_id = ?")
            params.append(session_id)
        if call_type:
            conditions.append("call_type = ?")
            params.append(call_type)
        if success is not None:
            conditions.append("success = ?")
            params.append(1 if success else 0)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = self._get_conn().execute(
            f"SELECT * FROM llm_logs {where} ORDER BY timestamp DESC LIMIT ? OFFSET ?",
            [*params, limit, offset],
        ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def _row_to_entry(self, row: sqlite3.Row) -> LLMLogEntry:
        return LLMLogEntry(
            id=row["id"],
            timestamp=row["timestamp"],
            session_id=row["session_id"],
            call_type=row["call_type"],
            model=row["model"],
            prompt=row["prompt"],
            response=json.loads(row["response"]) if row["response"] else None,
            error=row["error"],
            latency_ms=row["latency_ms"],
            retry_count=row["retry_count"],
            status=row["status"],
            success=bool(row["success"]),
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        )


class MemoryLogStorage(BaseLogStorage):
    """内存日志存储"""

    def __init__(self, max_entries: int = 1000):
        self.max_entries = max_entries
        self._entries: Dict[str, LLMLogEntry] = {}
        self._lock = threading.Lock()

    def save_entry(self, entry: LLMLogEntry) -> str:
        with self._lock:
            self._entries[entry.id] = entry
            # 超出上限时淘汰最早插入的条目
            while len(self._entries) > self.max_entries:
                self._entries.pop(next(iter(self._entries)))
        return entry.id

    def update_entry(self, entry_id: str, **kwargs) -> bool:
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return False
            for key, value in kwargs.items():
                if key in _UPDATABLE_FIELDS:
                    setattr(entry, key, value)
        return True

    def get_entry(self, entry_id: str) -> Optional[LLMLogEntry]:
        return self._entries.get(entry_id)

    def query_entries(
        self,
        session_id: Optional[str] = None,
        call_type: Optional[str] = None,
        success: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[LLMLogEntry]:
        with self._lock:
            entries = list(self._entries.values())

        if session_id:
            entries = [e for e in entries if e.session_id == session_id]
        if call_type:
            entries = [e for e in entries if e.call_type == call_type]
        if success is not None:
            entries = [e for e in entries if e.success == success]

        entries.sort(key=lambda x: x.timestamp, reverse=True)
        return entries[offset:offset + limit]


class LLMLogManager:
    """LLM 日志管理器"""

    def __init__(
        self,
        storage_type: LogStorageType = LogStorageType.MEMORY,
        storage_path: Optional[Union[str, Path]] = None,
        enable_logging: bool = True,
    ):
        self.enable_logging = enable_logging
        if storage_type == LogStorageType.SQLITE:
            if storage_path is None:
                storage_path = Path.home() / ".suiguard" / "llm_logs.db"
            self.storage: BaseLogStorage = SQLiteLogStorage(storage_path)
        else:
            self.storage = MemoryLogStorage()

    def log_start(
        self,
        call_type: str,
        model: str,
        prompt: str,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[LLMLogEntry]:
        """记录调用开始"""
        if not self.enable_logging:
            return None
        entry = LLMLogEntry.create(
            call_type=call_type,
            model=model,
            prompt=prompt,
            session_id=session_id,
            metadata=metadata,
        )
        self.storage.save_entry(entry)
        return entry

    def log_end(
        self,
        entry: Optional[LLMLogEntry],
        response: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        latency_ms: float = 0,
        retry_count: int = 0,
        success: bool = False,
    ):
        """记录调用结束"""
        if not self.enable_logging or entry is None:
            return
        status = LogStatus.COMPLETED.value if success else LogStatus.FAILED.value
        self.storage.update_entry(
            entry.id,
            response=response,
            error=error,
            latency_ms=latency_ms,
            retry_count=retry_count,
            status=status,
            success=success,
        )

    def get_entry(self, entry_id: str) -> Optional[LLMLogEntry]:
        """按 ID 获取单条日志"""
        return self.storage.get_entry(entry_id)

    def query(
        self,
        session_id: Optional[str] = None,
        call_type: Optional[str] = None,
        success: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[LLMLogEntry]:
        """查询日志"""
        return self.storage.query_entries(
            session_id=session_id,
            call_type=call_type,
            success=success,
            limit=limit,
            offset=offset,
        )


_default_manager: Optional[LLMLogManager] = None
_default_lock = threading.Lock()


def get_log_manager(
    storage_type: LogStorageType = LogStorageType.MEMORY,
    storage_path: Optional[Union[str, Path]] = None,
    enable_logging: bool = True,
) -> LLMLogManager:
    """获取进程级共享的日志管理器，首次调用时按参数创建"""
    global _default_manager
    if _default_manager is None:
        with _default_lock:
            if _default_manager is None:
                _default_manager = LLMLogManager(storage_type, storage_path, enable_logging)
    return _default_manager


__all__ = [
    "LogStorageType",
    "LogStatus",
    "LLMLogEntry",
    "SQLiteLogStorage",
    "MemoryLogStorage",
    "LLMLogManager",
    "get_log_manager",
]
