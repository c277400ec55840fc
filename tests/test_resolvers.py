"""
Tests for struct resolution and dependency risk inheritance
"""

from unittest.mock import Mock

import pytest

from suiguard.chain.dependency_resolver import DependencyLookupMode, DependencyRiskResolver
from suiguard.chain.struct_resolver import StructResolver
from suiguard.core.cache import ResultCache, make_cache_key
from suiguard.models.package import StructField, UNKNOWN_STRUCT_FIELDS
from suiguard.models.safety_card import RiskLevel, SafetyCard

from .conftest import ADMIN_CAP, VAULT, FakeSuiClient


class TestStructResolver:
    """Test struct definition resolution."""

    async def test_resolves_fields(self):
        client = FakeSuiClient(structs={
            ADMIN_CAP: {"fields": [{"name": "id", "type": "UID"}, {"name": "owner", "type": "Address"}]},
        })
        defs = await StructResolver(client).resolve([ADMIN_CAP])
        assert defs[ADMIN_CAP] == (StructField("id", "UID"), StructField("owner", "Address"))

    async def test_non_string_field_types_rendered_as_json(self):
        client = FakeSuiClient()
        defs = await StructResolver(client).resolve([VAULT])
        assert defs[VAULT][0].name == "id"
        assert defs[VAULT][0].type == '{"Struct":{"address":"0x2","module":"object","name":"UID"}}'

    async def test_failure_yields_placeholder(self):
        client = FakeSuiClient(failing_structs=[VAULT])
        defs = await StructResolver(client).resolve([ADMIN_CAP, VAULT])
        assert defs[VAULT] == UNKNOWN_STRUCT_FIELDS
        assert defs[ADMIN_CAP] != UNKNOWN_STRUCT_FIELDS

    async def test_malformed_id_yields_placeholder_without_call(self):
        client = FakeSuiClient()
        defs = await StructResolver(client).resolve(["not-a-struct"])
        assert defs["not-a-struct"] == UNKNOWN_STRUCT_FIELDS
        assert client.struct_calls == []

    async def test_missing_fields_yields_placeholder(self):
        client = FakeSuiClient(structs={ADMIN_CAP: {"abilities": {}}})
        defs = await StructResolver(client).resolve([ADMIN_CAP])
        assert defs[ADMIN_CAP] == UNKNOWN_STRUCT_FIELDS

    async def test_each_struct_requested_once(self):
        client = FakeSuiClient(failing_structs=[VAULT])
        await StructResolver(client, max_concurrency=2).resolve([VAULT, ADMIN_CAP, VAULT, ADMIN_CAP])
        assert sorted(client.struct_calls) == sorted([VAULT, ADMIN_CAP])

    async def test_empty_input(self):
        assert await StructResolver(FakeSuiClient()).resolve([]) == {}


class TestDependencyLookupMode:
    """Test lookup mode parsing."""

    def test_parse(self):
        assert DependencyLookupMode.parse("network") == DependencyLookupMode.NETWORK
        assert DependencyLookupMode.parse("cross-network") == DependencyLookupMode.CROSS_NETWORK
        assert DependencyLookupMode.parse(DependencyLookupMode.NETWORK) == DependencyLookupMode.NETWORK

    def test_parse_rejects_unknown(self):
        with pytest.raises(ValueError):
            DependencyLookupMode.parse("everywhere")


class TestDependencyRiskResolver:
    """Test cache-only dependency risk inheritance."""

    @pytest.fixture
    def populated_cache(self) -> ResultCache:
        cache = ResultCache()
        cache.set(make_cache_key("0xdep", "testnet"), SafetyCard(summary="t", risk_score=80,
                                                                  risk_level=RiskLevel.CRITICAL))
        cache.set(make_cache_key("0xdep", "mainnet"), SafetyCard(summary="m", risk_score=55,
                                                                  risk_level=RiskLevel.HIGH))
        cache.set(make_cache_key("0xmod", "mainnet"), SafetyCard(summary="m", risk_score=35,
                                                                  risk_level=RiskLevel.MODERATE))
        cache.set(make_cache_key("0xsafe", "mainnet"), SafetyCard(summary="s", risk_score=10,
                                                                   risk_level=RiskLevel.LOW))
        cache.set(make_cache_key("0xtestonly", "testnet"), SafetyCard(summary="x", risk_score=60,
                                                                       risk_level=RiskLevel.HIGH))
        return cache

    def test_network_mode_uses_exact_key(self, populated_cache):
        resolver = DependencyRiskResolver(populated_cache, mode=DependencyLookupMode.NETWORK)
        risks = resolver.resolve(["0xdep", "0xmod", "0xsafe", "0xtestonly", "0xunknown"], "mainnet")
        assert [(r.id, r.risk_score, r.level) for r in risks] == [
            ("0xdep", 55, RiskLevel.HIGH),
            ("0xmod", 35, RiskLevel.MODERATE),
        ]

    def test_cross_network_mode_takes_highest_score(self, populated_cache):
        resolver = DependencyRiskResolver(populated_cache, mode="cross_network")
        risks = resolver.resolve(["0xdep", "0xsafe", "0xtestonly"], "mainnet")
        assert [(r.id, r.risk_score) for r in risks] == [("0xtestonly", 60)]

    def test_critical_verdicts_are_not_inherited(self, populated_cache):
        resolver = DependencyRiskResolver(populated_cache, mode=DependencyLookupMode.NETWORK)
        assert resolver.resolve(["0xdep"], "testnet") == []

    def test_lookup_failure_is_ignored(self):
        cache = Mock()
        cache.find_any_network.side_effect = RuntimeError("redis down")
        resolver = DependencyRiskResolver(cache)
        assert resolver.resolve(["0xdep"], "mainnet") == []

    def test_duplicates_collapsed(self, populated_cache):
        resolver = DependencyRiskResolver(populated_cache, mode=DependencyLookupMode.NETWORK)
        risks = resolver.resolve(["0xmod", "0xmod"], "mainnet")
        assert len(risks) == 1
        assert risks[0].to_dict() == {"id": "0xmod", "risk_score": 35, "level": "moderate"}
