"""
Tests for package data extraction
"""

from suiguard.chain.extractor import (
    PackageDataExtractor,
    extract_package_data,
    is_framework_address,
    normalize_address,
    render_type,
    resolve_param_type,
)
from suiguard.models.package import ParamKind

from .conftest import ADMIN_CAP, DISASSEMBLY, PACKAGE_ID, VAULT, make_modules

EE = "0x00000000000000000000000000000000000000000000000000000000000000ee"
FF = "0x00000000000000000000000000000000000000000000000000000000000000ff"


class TestAddresses:
    """Test address normalization helpers."""

    def test_leading_zeros_are_stripped(self):
        assert normalize_address("0x0000000000000000000000000000000000000000000000000000000000000002") == "0x2"
        assert normalize_address("00ee") == "0xee"
        assert normalize_address("0x0") == "0x0"

    def test_framework_addresses(self):
        for addr in ("0x1", "0x2", "0x3", "0x5", "0x6", "0xdee9"):
            assert is_framework_address(addr)
        assert is_framework_address("0x0000000000000000000000000000000000000000000000000000000000000006")
        assert not is_framework_address("0x7")


class TestResolveParamType:
    """Test parameter type shape resolution."""

    def test_primitive(self):
        param = resolve_param_type("U64")
        assert param.kind == ParamKind.PRIMITIVE
        assert param.value == "U64"
        assert param.struct_id is None

    def test_struct_with_type_arguments(self):
        param = resolve_param_type({
            "Struct": {
                "address": "0x2",
                "module": "coin",
                "name": "Coin",
                "typeArguments": [{"Struct": {"address": "0xbeef", "module": "usdc", "name": "USDC",
                                              "typeArguments": []}}],
            }
        })
        assert param.kind == ParamKind.STRUCT
        assert param.value == "0x2::coin::Coin"
        assert param.type_args == ("0xbeef::usdc::USDC",)

    def test_snake_case_type_arguments(self):
        param = resolve_param_type({
            "Struct": {"address": "0x2", "module": "balance", "name": "Balance",
                       "type_arguments": [{"TypeParameter": 0}]},
        })
        assert param.type_args == ("T0",)

    def test_immutable_reference(self):
        param = resolve_param_type({"Reference": {"Struct": {"address": "0x1", "module": "m", "name": "Cap"}}})
        assert param.kind == ParamKind.REFERENCE
        assert param.mutable is False
        assert param.referent == ParamKind.STRUCT
        assert param.struct_id == "0x1::m::Cap"

    def test_mutable_reference(self):
        param = resolve_param_type({"MutableReference": {"Struct": {"address": "0x1", "module": "m",
                                                                    "name": "Pool"}}})
        assert param.mutable is True
        assert param.struct_id == "0x1::m::Pool"

    def test_nested_mutable_reference(self):
        param = resolve_param_type({"Reference": {"MutableReference": {"Struct": {"address": "0x1",
                                                                                  "module": "m",
                                                                                  "name": "Pool"}}}})
        assert param.mutable is True
        assert param.referent == ParamKind.STRUCT

    def test_reference_to_primitive(self):
        param = resolve_param_type({"Reference": "U8"})
        assert param.referent == ParamKind.PRIMITIVE
        assert param.value == "U8"

    def test_vector(self):
        param = resolve_param_type({"Vector": "U8"})
        assert param.kind == ParamKind.VECTOR
        assert param.value == "U8"
        assert render_type({"Vector": {"Vector": "U8"}}) == "vector<vector<U8>>"

    def test_type_parameter(self):
        param = resolve_param_type({"TypeParameter": 1})
        assert param.kind == ParamKind.TYPE_PARAMETER
        assert param.value == "T1"
        assert param.struct_id is None

    def test_unknown_shape(self):
        param = resolve_param_type({"Signer": None})
        assert param.kind == ParamKind.UNKNOWN


class TestPackageDataExtractor:
    """Test the extractor over whole module maps."""

    def test_only_public_functions(self):
        extracted = extract_package_data(make_modules(), {"vault": DISASSEMBLY}, PACKAGE_ID)
        assert [f.qualified_name for f in extracted.functions] == ["vault::withdraw_all"]
        func = extracted.functions[0]
        assert func.is_entry is True
        assert func.type_parameter_count == 1
        assert [p.mutable for p in func.params] == [False, True, True]

    def test_dependencies_exclude_framework_and_self(self):
        extracted = extract_package_data(make_modules(), {"vault": DISASSEMBLY}, PACKAGE_ID)
        assert extracted.dependencies == (EE, FF)

    def test_dependency_entries_as_objects(self):
        modules = make_modules()
        modules["vault"]["dependencies"] = [{"address": "0xcafe", "name": "lib"}]
        extracted = extract_package_data(modules, {}, PACKAGE_ID)
        assert extracted.dependencies == ("0xcafe",)

    def test_referenced_structs(self):
        extracted = extract_package_data(make_modules(), {}, PACKAGE_ID)
        assert extracted.referenced_structs() == [ADMIN_CAP, VAULT, "0x2::tx_context::TxContext"]

    def test_empty_modules_is_library(self):
        extracted = extract_package_data({}, {"m": "module m {}"})
        assert extracted.is_library
        assert extracted.dependencies == ()
        assert extracted.disassembled_code == {"m": "module m {}"}

    def test_module_without_public_functions_is_library(self):
        modules = make_modules()
        modules["vault"]["exposedFunctions"].pop("withdraw_all")
        assert extract_package_data(modules).is_library

    def test_malformed_module_is_skipped(self):
        modules = make_modules()
        modules["broken"] = {"exposedFunctions": {"f": {"visibility": "Public", "parameters": 5}}}
        extracted = PackageDataExtractor().extract(modules, {}, PACKAGE_ID)
        assert [f.name for f in extracted.functions] == ["withdraw_all"]

    def test_to_dict_shape(self):
        func = extract_package_data(make_modules()).functions[0]
        data = func.to_dict()
        assert data["module"] == "vault"
        assert data["params"][0] == {"kind": "reference", "value": ADMIN_CAP, "mutable": False,
                                     "referent": "struct"}
