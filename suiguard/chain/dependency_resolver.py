#!/usr/bin/env python3
"""
依赖风险继承

只查询结果缓存，不触发任何新分析：依赖 package 此前已被判定为
high / moderate 的，把该结论作为上下文传给推理阶段。
"""

from enum import Enum
from typing import Iterable, List, Optional, Union

from ..core.cache import ResultCache, make_cache_key
from ..core.cli_logger import CLILogger
from ..models.safety_card import DependencyRisk, RiskLevel, SafetyCard

_INHERITED_LEVELS = (RiskLevel.HIGH, RiskLevel.MODERATE)


class DependencyLookupMode(str, Enum):
    """依赖结论的查找范围"""
    NETWORK = "network"              # 只查 "{dep}@{network}"
    CROSS_NETWORK = "cross_network"  # 任意网络上的结论，取最高分

    @classmethod
    def parse(cls, value: Union[str, "DependencyLookupMode"]) -> "DependencyLookupMode":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower().replace("-", "_")
        for member in cls:
            if member.value == text:
                return member
        raise ValueError(f"Unknown dependency lookup mode: {value!r}. Use 'network' or 'cross_network'.")


class DependencyRiskResolver:
    """依赖风险解析器，任何查找失败都只记录日志并视为无结论"""

    def __init__(
        self,
        cache: ResultCache,
        mode: DependencyLookupMode = DependencyLookupMode.CROSS_NETWORK,
        verbose: bool = False,
    ):
        self.cache = cache
        self.mode = DependencyLookupMode.parse(mode)
        self._logger = CLILogger(component="DependencyResolver", verbose=verbose)

    def resolve(self, dependencies: Iterable[str], network: str) -> List[DependencyRisk]:
        risks: List[DependencyRisk] = []
        for dep_id in dict.fromkeys(dependencies):
            try:
                card = self._lookup(dep_id, network)
            except Exception as e:
                self._logger.warning("dependency.lookup_failed", "依赖结论查询失败", dependency=dep_id, error=str(e))
                continue
            if card is None or card.risk_level not in _INHERITED_LEVELS:
                continue
            risks.append(DependencyRisk(id=dep_id, risk_score=card.risk_score, level=card.risk_level))

        if risks:
            self._logger.warning("dependency.risky", "发现高风险依赖", count=len(risks), mode=self.mode.value)
        else:
            self._logger.debug("dependency.clean", "缓存中没有高风险依赖", mode=self.mode.value)
        return risks

    def _lookup(self, dep_id: str, network: str) -> Optional[SafetyCard]:
        if self.mode == DependencyLookupMode.NETWORK:
            return self.cache.get(make_cache_key(dep_id, network))

        cards = self.cache.find_any_network(dep_id)
        if not cards:
            return None
        return max(cards.values(), key=lambda c: c.risk_score)


__all__ = ["DependencyLookupMode", "DependencyRiskResolver"]
