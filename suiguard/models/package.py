#!/usr/bin/env python3
"""
Package 接口数据模型

描述从链上规范化模块中提取出的公开函数、参数类型形状与依赖集合。
所有模型在一次分析中只生成一次，生成后不可变。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ParamKind(str, Enum):
    """参数类型标签"""
    PRIMITIVE = "primitive"
    STRUCT = "struct"
    VECTOR = "vector"
    REFERENCE = "reference"
    TYPE_PARAMETER = "type_parameter"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ParamType:
    """
    参数类型（带标签的联合类型）

    - primitive: value 为原始类型名，如 "U64"、"Address"
    - struct: value 为 address::module::name，type_args 保留泛型实参
    - vector: value 为元素类型的文本表示
    - reference: mutable 标记是否为 &mut，referent 为被引用的类型标签
    - type_parameter: value 为 "T0"、"T1" 等
    """
    kind: ParamKind
    value: Optional[str] = None
    type_args: Tuple[str, ...] = ()
    mutable: Optional[bool] = None
    referent: Optional[ParamKind] = None

    @property
    def struct_id(self) -> Optional[str]:
        """参数直接或经引用指向的结构体 ID"""
        if self.kind == ParamKind.STRUCT:
            return self.value
        if self.kind == ParamKind.REFERENCE and self.referent == ParamKind.STRUCT:
            return self.value
        return None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.kind.value}
        if self.value is not None:
            data["value"] = self.value
        if self.type_args:
            data["typeArgs"] = list(self.type_args)
        if self.mutable is not None:
            data["mutable"] = self.mutable
        if self.referent is not None:
            data["referent"] = self.referent.value
        return data


@dataclass(frozen=True)
class ExtractedFunction:
    """一个可公开调用的入口函数"""
    module: str
    name: str
    params: Tuple[ParamType, ...] = ()
    is_entry: bool = False
    type_parameter_count: int = 0

    @property
    def qualified_name(self) -> str:
        return f"{self.module}::{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "module": self.module,
            "name": self.name,
            "params": [p.to_dict() for p in self.params],
        }


@dataclass(frozen=True)
class StructField:
    """结构体字段"""
    name: str
    type: str

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "type": self.type}


UNKNOWN_STRUCT_FIELDS: Tuple[StructField, ...] = (StructField(name="unknown", type="unknown"),)


@dataclass(frozen=True)
class ExtractedPackage:
    """提取结果：公开函数、依赖 package ID 集合与反汇编代码"""
    functions: Tuple[ExtractedFunction, ...] = ()
    dependencies: Tuple[str, ...] = ()
    disassembled_code: Dict[str, str] = field(default_factory=dict)

    @property
    def is_library(self) -> bool:
        """没有任何公开函数，视为库 package"""
        return not self.functions

    def referenced_structs(self) -> List[str]:
        """参数中引用到的结构体 ID（含泛型实参中的结构体），去重且保持顺序"""
        seen: Dict[str, None] = {}
        for func in self.functions:
            for param in func.params:
                struct_id = param.struct_id
                if struct_id:
                    seen.setdefault(struct_id, None)
                for arg in param.type_args:
                    if arg.count("::") == 2:
                        seen.setdefault(arg, None)
        return list(seen)

    def function_names(self) -> List[str]:
        return [f.name for f in self.functions]


@dataclass(frozen=True)
class PackageSnapshot:
    """从链上拉取的原始 package 描述"""
    package_id: str
    network: str
    modules: Dict[str, Any]
    disassembled: Dict[str, str]
    publisher: Optional[str] = None


__all__ = [
    "ParamKind",
    "ParamType",
    "ExtractedFunction",
    "StructField",
    "UNKNOWN_STRUCT_FIELDS",
    "ExtractedPackage",
    "PackageSnapshot",
]
