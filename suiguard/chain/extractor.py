#!/usr/bin/env python3
"""
Package 数据提取器

从规范化模块描述中提取全部 Public 函数及其参数类型，
并汇总 package 的依赖集合。纯转换，不访问网络。
"""

import json
import re
from typing import Any, Dict, List, Optional, Tuple

from ..core.cli_logger import CLILogger
from ..models.package import ExtractedFunction, ExtractedPackage, ParamKind, ParamType


# Sui 框架地址：不作为依赖上报
FRAMEWORK_ADDRESSES = frozenset({"0x1", "0x2", "0x3", "0x5", "0x6", "0xdee9"})

_USE_LINE = re.compile(r"^\s*use\s+(?:0x)?([0-9a-fA-F]+)::", re.MULTILINE)


def normalize_address(address: str) -> str:
    """去掉前导零: 0x000...02 -> 0x2"""
    text = str(address or "").strip().lower()
    if text.startswith("0x"):
        text = text[2:]
    return "0x" + (text.lstrip("0") or "0")


def is_framework_address(address: str) -> bool:
    return normalize_address(address) in FRAMEWORK_ADDRESSES


def _struct_id(struct: Dict[str, Any]) -> str:
    return f"{struct['address']}::{struct['module']}::{struct['name']}"


def _struct_type_args(struct: Dict[str, Any]) -> List[Any]:
    args = struct.get("typeArguments")
    if args is None:
        args = struct.get("type_arguments")
    return list(args or [])


def render_type(type_desc: Any) -> str:
    """把规范化类型描述渲染为可读文本"""
    if isinstance(type_desc, str):
        return type_desc
    if isinstance(type_desc, dict):
        if "Struct" in type_desc:
            struct = type_desc["Struct"]
            text = _struct_id(struct)
            args = _struct_type_args(struct)
            if args:
                text += "<" + ", ".join(render_type(a) for a in args) + ">"
            return text
        if "Vector" in type_desc:
            return f"vector<{render_type(type_desc['Vector'])}>"
        if "Reference" in type_desc:
            return "&" + render_type(type_desc["Reference"])
        if "MutableReference" in type_desc:
            return "&mut " + render_type(type_desc["MutableReference"])
        if "TypeParameter" in type_desc:
            return f"T{type_desc['TypeParameter']}"
    return json.dumps(type_desc, separators=(",", ":"), sort_keys=True)


def _type_arg_text(arg: Any) -> str:
    # 泛型实参中的结构体只保留 address::module::name
    if isinstance(arg, dict) and "Struct" in arg:
        return _struct_id(arg["Struct"])
    if isinstance(arg, dict) and "TypeParameter" in arg:
        return f"T{arg['TypeParameter']}"
    if isinstance(arg, str):
        return arg
    return render_type(arg)


def _unwrap_reference(param: Any) -> Tuple[Any, Optional[bool]]:
    """
    剥离引用层，返回 (被引用类型, 是否可变)，非引用返回 (param, None)

    兼容两种形式:
    - {"Reference": T} / {"MutableReference": T}
    - {"Reference": {"MutableReference": T}}
    """
    if not isinstance(param, dict):
        return param, None
    if "MutableReference" in param:
        return param["MutableReference"], True
    if "Reference" in param:
        inner = param["Reference"]
        if isinstance(inner, dict) and "MutableReference" in inner:
            return inner["MutableReference"], True
        return inner, False
    return param, None


def resolve_param_type(param: Any) -> ParamType:
    """解析单个参数的类型形状"""
    inner, mutable = _unwrap_reference(param)

    if mutable is not None:
        if isinstance(inner, str):
            return ParamType(kind=ParamKind.REFERENCE, value=inner, mutable=mutable,
                             referent=ParamKind.PRIMITIVE)
        if isinstance(inner, dict) and "Struct" in inner:
            struct = inner["Struct"]
            return ParamType(
                kind=ParamKind.REFERENCE,
                value=_struct_id(struct),
                type_args=tuple(_type_arg_text(a) for a in _struct_type_args(struct)),
                mutable=mutable,
                referent=ParamKind.STRUCT,
            )
        if isinstance(inner, dict) and "Vector" in inner:
            return ParamType(kind=ParamKind.REFERENCE, value=render_type(inner["Vector"]),
                             mutable=mutable, referent=ParamKind.VECTOR)
        if isinstance(inner, dict) and "TypeParameter" in inner:
            return ParamType(kind=ParamKind.REFERENCE, value=f"T{inner['TypeParameter']}",
                             mutable=mutable, referent=ParamKind.TYPE_PARAMETER)
        return ParamType(kind=ParamKind.REFERENCE, value=render_type(inner), mutable=mutable,
                         referent=ParamKind.UNKNOWN)

    if isinstance(param, str):
        return ParamType(kind=ParamKind.PRIMITIVE, value=param)

    if isinstance(param, dict):
        if "Struct" in param:
            struct = param["Struct"]
            return ParamType(
                kind=ParamKind.STRUCT,
                value=_struct_id(struct),
                type_args=tuple(_type_arg_text(a) for a in _struct_type_args(struct)),
            )
        if "Vector" in param:
            return ParamType(kind=ParamKind.VECTOR, value=render_type(param["Vector"]))
        if "TypeParameter" in param:
            return ParamType(kind=ParamKind.TYPE_PARAMETER, value=f"T{param['TypeParameter']}")

    return ParamType(kind=ParamKind.UNKNOWN, value=render_type(param))


class PackageDataExtractor:
    """
    Package 数据提取器

    示例:
        ```python
        extractor = PackageDataExtractor()
        extracted = extractor.extract(snapshot.modules, snapshot.disassembled, snapshot.package_id)
        if extracted.is_library:
            ...
        ```
    """

    def __init__(self, verbose: bool = False):
        self._logger = CLILogger(component="Extractor", verbose=verbose)

    def extract(
            self,
            modules: Optional[Dict[str, Any]],
            disassembled: Optional[Dict[str, str]] = None,
            package_id: Optional[str] = None,
    ) -> ExtractedPackage:
        """
        提取 Public 函数与依赖

        单个模块结构异常时跳过该模块并记录日志，其他模块照常提取。
        """
        disassembled = dict(disassembled or {})
        if not modules:
            return ExtractedPackage(functions=(), dependencies=(), disassembled_code=disassembled)

        functions: List[ExtractedFunction] = []
        dependencies: Dict[str, str] = {}
        excluded = set(FRAMEWORK_ADDRESSES)
        if package_id:
            excluded.add(normalize_address(package_id))

        def _add_dependency(address: str):
            key = normalize_address(address)
            if key in excluded:
                return
            dependencies.setdefault(key, address)

        for module_name, module in modules.items():
            try:
                module_functions = self._extract_module(module_name, module)
                for dep in module.get("dependencies") or []:
                    _add_dependency(dep["address"] if isinstance(dep, dict) else dep)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                self._logger.warning(
                    "extract.module_failed",
                    "模块结构异常，已跳过",
                    module=module_name,
                    error=f"{type(e).__name__}: {e}",
                )
                continue
            functions.extend(module_functions)

        for func in functions:
            for param in func.params:
                struct_id = param.struct_id
                if struct_id:
                    _add_dependency(struct_id.split("::", 1)[0])
                for arg in param.type_args:
                    if arg.count("::") == 2:
                        _add_dependency(arg.split("::", 1)[0])

        for code in disassembled.values():
            if not isinstance(code, str):
                continue
            for match in _USE_LINE.finditer(code):
                _add_dependency("0x" + match.group(1))

        self._logger.debug(
            "extract.done",
            "提取完成",
            functions=len(functions),
            dependencies=len(dependencies),
        )
        return ExtractedPackage(
            functions=tuple(functions),
            dependencies=tuple(dependencies.values()),
            disassembled_code=disassembled,
        )

    def _extract_module(self, module_name: str, module: Dict[str, Any]) -> List[ExtractedFunction]:
        result: List[ExtractedFunction] = []
        exposed = module.get("exposedFunctions") or module.get("exposed_functions") or {}
        for func_name, func in exposed.items():
            if func.get("visibility") != "Public":
                continue
            params = tuple(resolve_param_type(p) for p in func.get("parameters") or [])
            result.append(ExtractedFunction(
                module=module_name,
                name=func_name,
                params=params,
                is_entry=bool(func.get("isEntry") or func.get("is_entry")),
                type_parameter_count=len(func.get("typeParameters") or func.get("type_parameters") or []),
            ))
        return result


def extract_package_data(
        modules: Optional[Dict[str, Any]],
        disassembled: Optional[Dict[str, str]] = None,
        package_id: Optional[str] = None,
) -> ExtractedPackage:
    """便捷函数"""
    return PackageDataExtractor().extract(modules, disassembled, package_id)


__all__ = [
    "FRAMEWORK_ADDRESSES",
    "normalize_address",
    "is_framework_address",
    "render_type",
    "resolve_param_type",
    "PackageDataExtractor",
    "extract_package_data",
]
