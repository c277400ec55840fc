#!/usr/bin/env python3
"""
结构体定义解析

为函数参数中引用到的每个结构体拉取字段定义。
单个结构体获取失败时使用占位字段，不影响整体分析。
"""

import asyncio
import json
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..core.cli_logger import CLILogger, format_duration
from ..models.package import StructField, UNKNOWN_STRUCT_FIELDS

StructDefinitions = Dict[str, Tuple[StructField, ...]]


def _field_type_text(field_type: Any) -> str:
    if isinstance(field_type, str):
        return field_type
    return json.dumps(field_type, separators=(",", ":"))


class StructResolver:
    """
    结构体解析器

    每个结构体在一次分析中只请求一次（RPC 调用不重试），
    并发数由 max_concurrency 限制。
    """

    def __init__(self, client, max_concurrency: int = 10, verbose: bool = False):
        """
        Args:
            client: 提供 get_normalized_struct(package, module, struct) 的链上客户端
            max_concurrency: 最大并发请求数
        """
        self.client = client
        self.max_concurrency = max(1, max_concurrency)
        self._logger = CLILogger(component="StructResolver", verbose=verbose)

    async def resolve(self, struct_ids: Iterable[str]) -> StructDefinitions:
        unique_ids: List[str] = list(dict.fromkeys(struct_ids))
        if not unique_ids:
            return {}

        start = asyncio.get_running_loop().time()
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _resolve_one(struct_id: str) -> Tuple[str, Tuple[StructField, ...]]:
            async with semaphore:
                return struct_id, await self._fetch(struct_id)

        results = await asyncio.gather(*[_resolve_one(s) for s in unique_ids])
        definitions: StructDefinitions = dict(results)

        unresolved = sum(1 for fields in definitions.values() if fields == UNKNOWN_STRUCT_FIELDS)
        self._logger.info(
            "struct.resolved",
            "结构体定义解析完成",
            total=len(definitions),
            unresolved=unresolved,
            duration=format_duration(asyncio.get_running_loop().time() - start),
        )
        return definitions

    async def _fetch(self, struct_id: str) -> Tuple[StructField, ...]:
        parts = struct_id.split("::")
        if len(parts) != 3 or not all(parts):
            self._logger.warning("struct.malformed_id", "结构体 ID 格式不正确", struct_id=struct_id)
            return UNKNOWN_STRUCT_FIELDS

        package_addr, module_name, struct_name = parts
        try:
            definition: Optional[Dict[str, Any]] = await self.client.get_normalized_struct(
                package_addr, module_name, struct_name
            )
        except Exception as e:
            self._logger.warning("struct.fetch_failed", "无法获取结构体定义", struct_id=struct_id, error=str(e))
            return UNKNOWN_STRUCT_FIELDS

        fields = (definition or {}).get("fields")
        if not isinstance(fields, list):
            self._logger.warning("struct.fetch_failed", "结构体定义缺少字段", struct_id=struct_id)
            return UNKNOWN_STRUCT_FIELDS

        return tuple(
            StructField(name=str(f.get("name", "unknown")), type=_field_type_text(f.get("type", "unknown")))
            for f in fields
            if isinstance(f, dict)
        )


__all__ = ["StructDefinitions", "StructResolver"]
