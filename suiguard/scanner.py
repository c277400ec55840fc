#!/usr/bin/env python3
"""
命令行扫描入口

Usage:
    suiguard-scan 0xPACKAGE_ID                      # 分析 mainnet 上的 package
    suiguard-scan 0xA 0xB --network testnet -v      # 批量分析 testnet 上的多个 package
"""

import argparse
import asyncio
import json
import os
import sys
from typing import Dict, List, Optional

from .analyzer import SafetyAnalyzer
from .chain.dependency_resolver import DependencyLookupMode
from .config import DEFAULT_MODEL, SUPPORTED_NETWORKS, AnalyzerConfig
from .core.cli_logger import CLILogger


async def scan_packages(analyzer: SafetyAnalyzer, package_ids: List[str], network: str,
                        logger: CLILogger) -> Dict[str, Optional[dict]]:
    """依次分析多个 package，单个失败不影响其余"""
    results: Dict[str, Optional[dict]] = {}
    total = len(package_ids)
    for idx, package_id in enumerate(package_ids):
        log = logger.bind(package_id=package_id)
        log.info("scan.item_start", "开始分析", index=f"{idx + 1}/{total}")
        try:
            card, from_cache = await analyzer.analyze(package_id, network)
        except Exception as e:
            log.exception("scan.item_failed", e)
            results[package_id] = None
            continue
        results[package_id] = card.to_dict()
        log.success("scan.item_done", "分析完成", risk_score=card.risk_score,
                    risk_level=card.risk_level.value, from_cache=from_cache)
    return results


def main():
    """命令行入口"""
    cli_logger = CLILogger(component="suiguard.scanner.cli")
    parser = argparse.ArgumentParser(description='SuiGuard Scanner - Sui package 安全评估工具')
    parser.add_argument('package_ids', nargs='+', help='要分析的 package ID')
    parser.add_argument('--network', default='mainnet', choices=list(SUPPORTED_NETWORKS),
                        help='目标网络 (默认: mainnet)')
    parser.add_argument('--llm-api-key', default=os.getenv('OPENAI_API_KEY', ''),
                        help='LLM API Key (默认从环境变量 OPENAI_API_KEY 读取)')
    parser.add_argument('--llm-base-url', default=os.getenv('OPENAI_BASE_URL'),
                        help='LLM Base URL (默认从环境变量 OPENAI_BASE_URL 读取)')
    parser.add_argument('--llm-model', default=os.getenv('OPENAI_MODEL', DEFAULT_MODEL),
                        help=f'LLM 模型名称 (默认: {DEFAULT_MODEL})')
    parser.add_argument('--temperature', type=float, default=None,
                        help='LLM 温度参数 (默认: 0.1)')
    parser.add_argument('--llm-timeout', type=float, default=None,
                        help='单个阶段的 LLM 调用超时秒数 (默认: 120)')
    parser.add_argument('--llm-scoring', action='store_true', default=None,
                        help='同时让 LLM 按同一算法评分并与确定性结果比对')
    parser.add_argument('--dependency-lookup', default=None,
                        choices=[m.value for m in DependencyLookupMode],
                        help='依赖结论查找范围 (默认: cross_network)')
    parser.add_argument('--knowledge-base', dest='knowledge_base_path', default=None,
                        help='自定义风险模式知识库 YAML 路径')
    parser.add_argument('--max-concurrency', type=int, default=None,
                        help='结构体解析最大并发数 (默认: 10)')
    parser.add_argument('-o', '--output', default=None,
                        help='将结果写入 JSON 文件')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='显示详细日志')

    args = parser.parse_args()

    if not args.llm_api_key:
        parser.error('缺少 LLM API Key，请通过 --llm-api-key 提供或设置 OPENAI_API_KEY 环境变量')

    config = AnalyzerConfig.from_env(
        llm_api_key=args.llm_api_key,
        llm_base_url=args.llm_base_url,
        llm_model=args.llm_model,
        temperature=args.temperature,
        llm_timeout=args.llm_timeout,
        llm_scoring=args.llm_scoring,
        dependency_lookup=DependencyLookupMode.parse(args.dependency_lookup) if args.dependency_lookup else None,
        knowledge_base_path=args.knowledge_base_path,
        max_concurrency=args.max_concurrency,
        verbose=args.verbose,
    )

    async def run_scan() -> Dict[str, Optional[dict]]:
        async with SafetyAnalyzer(config) as analyzer:
            logger = CLILogger(component="suiguard.scanner", verbose=args.verbose)
            return await scan_packages(analyzer, args.package_ids, args.network, logger)

    results = asyncio.run(run_scan())

    payload = json.dumps(results, indent=2, ensure_ascii=False)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(payload)
        cli_logger.success("scan.output", "结果已写入文件", path=args.output)
    else:
        cli_logger.info("scan.result.payload", payload)

    failed = [pid for pid, card in results.items() if card is None]
    if failed:
        cli_logger.warning("scan.failed", "部分 package 分析失败", failed=len(failed), total=len(results))
        sys.exit(1)


if __name__ == '__main__':
    main()
