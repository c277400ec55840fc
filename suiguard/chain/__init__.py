"""
链上数据层：Sui RPC 客户端、package 提取、结构体与依赖解析
"""

from .sui_client import (
    DEFAULT_RPC_URLS,
    PUBLISH_TX_KIND,
    PACKAGE_NOT_FOUND_MESSAGE,
    SuiRPCClient,
    published_packages,
)
from .extractor import (
    FRAMEWORK_ADDRESSES,
    normalize_address,
    resolve_param_type,
    PackageDataExtractor,
    extract_package_data,
)
from .struct_resolver import StructDefinitions, StructResolver
from .dependency_resolver import DependencyLookupMode, DependencyRiskResolver

__all__ = [
    "DEFAULT_RPC_URLS",
    "PUBLISH_TX_KIND",
    "PACKAGE_NOT_FOUND_MESSAGE",
    "SuiRPCClient",
    "published_packages",
    "FRAMEWORK_ADDRESSES",
    "normalize_address",
    "resolve_param_type",
    "PackageDataExtractor",
    "extract_package_data",
    "StructDefinitions",
    "StructResolver",
    "DependencyLookupMode",
    "DependencyRiskResolver",
]
