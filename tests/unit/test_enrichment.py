# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Tests for the enrichment stages and the stage pipeline."""

from __future__ import annotations

import ipaddress
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from tiace.cache.manager import CacheManager
from tiace.cache.memory import MemoryCacheBackend
from tiace.core.constants import ATTRIBUTED_TO, Severity
from tiace.core.exceptions import ConfigurationError
from tiace.enrichment.attribution import RULES_ORIGIN, AttributionRules, AttributionStage
from tiace.enrichment.base import EnrichmentStage
from tiace.enrichment.context import EnrichmentContext
from tiace.enrichment.geo import GeoEntry, GeoTable
from tiace.enrichment.lookup import ContextStage
from tiace.enrichment.pipeline import EnrichmentPipeline
from tiace.enrichment.scoring import ScoringStage
from tiace.enrichment.synthesis import SYNTHESIZED_TAG, SynthesisStage, registrable_domain
from tiace.models.indicator import Attribution
from tiace.models.tenant import TenantContext

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _context(tenant: TenantContext, indicator) -> EnrichmentContext:
    return EnrichmentContext(tenant=tenant, indicator=indicator)


@pytest.fixture
def geo() -> GeoTable:
    return GeoTable(
        [
            GeoEntry(network=ipaddress.ip_network("203.0.113.0/24"), country="NL", asn="AS64500"),
            GeoEntry(
                network=ipaddress.ip_network("203.0.113.128/25"),
                country="DE",
                city="Berlin",
                asn="AS64501",
                organization="Example Hosting",
            ),
        ]
    )


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


class TestScoring:
    def _stage(self, reliability: float = 0.5) -> ScoringStage:
        return ScoringStage(lambda tenant, feed: reliability, half_life_days=30, saturation=4, clock=lambda: NOW)

    async def test_scores_for_single_feed(self, tenant: TenantContext, make_indicator) -> None:
        indicator = make_indicator(severity=Severity.HIGH, confidence=0.5)
        outcome = await self._stage(0.6).enrich(_context(tenant, indicator))
        assert outcome.startswith("threat=")
        assert indicator.scoring.reputation == pytest.approx(0.6)
        assert indicator.scoring.prevalence == pytest.approx(0.25)
        assert indicator.scoring.freshness == pytest.approx(1.0)
        assert indicator.scoring.threat == pytest.approx(0.6 * 0.75 + 0.4 * 0.5)

    async def test_reputation_combines_feeds(self, tenant: TenantContext, make_indicator) -> None:
        indicator = make_indicator(source_feeds={"a", "b"})
        await self._stage(0.5).enrich(_context(tenant, indicator))
        assert indicator.scoring.reputation == pytest.approx(0.75)
        assert indicator.scoring.prevalence == pytest.approx(0.5)

    def test_freshness_decays_linearly(self) -> None:
        stage = self._stage()
        assert stage.freshness(NOW) == pytest.approx(1.0)
        assert stage.freshness(NOW - timedelta(days=30)) == pytest.approx(0.5)
        assert stage.freshness(NOW - timedelta(days=60)) == 0.0
        assert stage.freshness(NOW - timedelta(days=400)) == 0.0
        assert stage.freshness(NOW + timedelta(days=1)) == pytest.approx(1.0)

    async def test_deterministic(self, tenant: TenantContext, make_indicator) -> None:
        a, b = make_indicator(), make_indicator()
        await self._stage().enrich(_context(tenant, a))
        await self._stage().enrich(_context(tenant, b))
        assert a.scoring == b.scoring


# ---------------------------------------------------------------------------
# Context lookup
# ---------------------------------------------------------------------------


class TestGeoTable:
    def test_longest_prefix_wins(self, geo: GeoTable) -> None:
        assert geo.lookup("203.0.113.200").country == "DE"
        assert geo.lookup("203.0.113.5").country == "NL"
        assert geo.lookup("198.51.100.1") is None
        assert geo.lookup("not-an-ip") is None

    def test_load(self, tmp_path: Path) -> None:
        path = tmp_path / "geo.yaml"
        path.write_text(
            "networks:\n  - cidr: 198.51.100.0/24\n    country: US\n    asn: '64496'\n",
            encoding="utf-8",
        )
        table = GeoTable.load(path)
        assert len(table) == 1
        assert table.lookup("198.51.100.7").asn == "AS64496"

    def test_load_rejects_bad_cidr(self, tmp_path: Path) -> None:
        path = tmp_path / "geo.yaml"
        path.write_text("networks:\n  - cidr: nope\n", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            GeoTable.load(path)


class TestContextStage:
    async def test_ip_gets_geo_and_asn(self, geo: GeoTable, tenant: TenantContext, make_indicator) -> None:
        indicator = make_indicator("ip", "203.0.113.130")
        assert await ContextStage(geo).enrich(_context(tenant, indicator)) == "resolved"
        assert indicator.context.geo.country == "DE"
        assert indicator.context.geo.city == "Berlin"
        assert indicator.context.asn == "AS64501"
        assert indicator.context.organization == "Example Hosting"

    async def test_unknown_address(self, geo: GeoTable, tenant: TenantContext, make_indicator) -> None:
        indicator = make_indicator("ip", "192.0.2.1")
        assert await ContextStage(geo).enrich(_context(tenant, indicator)) == "unknown"
        assert indicator.context.geo is None

    async def test_url_port_and_protocol(self, geo: GeoTable, tenant: TenantContext, make_indicator) -> None:
        indicator = make_indicator("url", "https://evil.example.com/payload")
        await ContextStage(geo).enrich(_context(tenant, indicator))
        assert indicator.context.ports == [443]
        assert indicator.context.protocols == ["https"]

    async def test_url_with_address_host_resolves(
        self, geo: GeoTable, tenant: TenantContext, make_indicator
    ) -> None:
        indicator = make_indicator("url", "http://203.0.113.9:8080/x")
        await ContextStage(geo).enrich(_context(tenant, indicator))
        assert indicator.context.ports == [8080]
        assert indicator.context.asn == "AS64500"

    async def test_other_kinds_skipped(self, geo: GeoTable, tenant: TenantContext, make_indicator) -> None:
        assert await ContextStage(geo).enrich(_context(tenant, make_indicator())) == "skipped"

    async def test_results_and_misses_are_cached(
        self, geo: GeoTable, tenant: TenantContext, make_indicator
    ) -> None:
        cache = CacheManager(MemoryCacheBackend())
        stage = ContextStage(geo, cache=cache)
        for _ in range(2):
            await stage.enrich(_context(tenant, make_indicator("ip", "203.0.113.5")))
            await stage.enrich(_context(tenant, make_indicator("ip", "192.0.2.1")))
        assert cache.stats.misses == 2
        assert cache.stats.hits == 2
        assert await cache.size() == 2


# ---------------------------------------------------------------------------
# Attribution
# ---------------------------------------------------------------------------


RULES_YAML = """\
rules:
  - actor: Example Panda
    aliases: [APT-X]
    campaign: Op Example
    tags: [panda]
    value_patterns: ['\\.panda\\.example$']
    kinds: [domain]
    confidence: 0.7
"""


class TestAttribution:
    @pytest.fixture
    def rules(self, tmp_path: Path) -> AttributionRules:
        path = tmp_path / "rules.yaml"
        path.write_text(RULES_YAML, encoding="utf-8")
        return AttributionRules.load(path)

    async def test_feed_assertions_become_edges(self, tenant: TenantContext, make_indicator) -> None:
        indicator = make_indicator(
            attributions=[Attribution(actor="Example Panda", feed_id="feed-a", confidence=0.8)]
        )
        context = _context(tenant, indicator)
        assert await AttributionStage().enrich(context) == "edges=1"
        [edge] = context.relationships
        assert edge.target == ("actor", "Example Panda")
        assert edge.relationship_type == ATTRIBUTED_TO
        assert edge.confidence == pytest.approx(0.8)

    async def test_rule_match_by_pattern(
        self, rules: AttributionRules, tenant: TenantContext, make_indicator
    ) -> None:
        context = _context(tenant, make_indicator("domain", "c2.panda.example"))
        assert await AttributionStage(rules).enrich(context) == "edges=2"
        assert [a.name for a in context.actors] == ["Example Panda"]
        assert {r.target[0] for r in context.relationships} == {"actor", "campaign"}
        assert all(r.origin == RULES_ORIGIN for r in context.relationships)

    async def test_rule_match_by_tag(self, rules: AttributionRules, tenant: TenantContext, make_indicator) -> None:
        context = _context(tenant, make_indicator(tags={"panda"}))
        await AttributionStage(rules).enrich(context)
        assert context.actors

    async def test_rule_kind_restriction(
        self, rules: AttributionRules, tenant: TenantContext, make_indicator
    ) -> None:
        context = _context(tenant, make_indicator("url", "http://c2.panda.example/", tags={"panda"}))
        assert await AttributionStage(rules).enrich(context) == "edges=0"

    def test_rules_require_actor(self, tmp_path: Path) -> None:
        path = tmp_path / "rules.yaml"
        path.write_text("rules:\n  - tags: [x]\n", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            AttributionRules.load(path)


# ---------------------------------------------------------------------------
# Synthesis
# ---------------------------------------------------------------------------


class TestSynthesis:
    def test_registrable_domain(self) -> None:
        assert registrable_domain("a.b.example.com") == "example.com"
        assert registrable_domain("a.example.co.uk") == "example.co.uk"
        assert registrable_domain("example.com") == "example.com"

    async def test_ip_related_to_network(self, tenant: TenantContext, make_indicator) -> None:
        context = _context(tenant, make_indicator("ip", "203.0.113.77", confidence=0.9))
        assert await SynthesisStage().enrich(context) == "cidr:203.0.113.0/24"
        [derived] = context.derived
        assert derived.kind == "cidr"
        assert derived.confidence == pytest.approx(0.5)
        assert SYNTHESIZED_TAG in derived.tags
        [edge] = context.relationships
        assert edge.source == ("indicator", "ip", "203.0.113.77")
        assert edge.target == ("indicator", "cidr", "203.0.113.0/24")

    async def test_ipv6_uses_64(self, tenant: TenantContext, make_indicator) -> None:
        context = _context(tenant, make_indicator("ip", "2001:db8::1"))
        assert await SynthesisStage().enrich(context) == "cidr:2001:db8::/64"

    async def test_url_related_to_domain(self, tenant: TenantContext, make_indicator) -> None:
        context = _context(tenant, make_indicator("url", "https://cdn.evil.example.com/x"))
        await SynthesisStage().enrich(context)
        assert (context.derived[0].kind, context.derived[0].value) == ("domain", "example.com")

    async def test_url_with_ip_host(self, tenant: TenantContext, make_indicator) -> None:
        context = _context(tenant, make_indicator("url", "http://203.0.113.9/x"))
        await SynthesisStage().enrich(context)
        assert (context.derived[0].kind, context.derived[0].value) == ("ip", "203.0.113.9")

    async def test_domains_not_synthesized(self, tenant: TenantContext, make_indicator) -> None:
        context = _context(tenant, make_indicator())
        assert await SynthesisStage().enrich(context) == "skipped"
        assert context.derived == []


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class _ExplodingStage(EnrichmentStage):
    @property
    def stage_name(self) -> str:
        return "exploding"

    @property
    def order(self) -> int:
        return 15

    async def enrich(self, context: EnrichmentContext) -> str:
        raise RuntimeError("lookup service down")


class TestPipeline:
    def _pipeline(self, geo: GeoTable) -> EnrichmentPipeline:
        return EnrichmentPipeline(
            [
                SynthesisStage(),
                ContextStage(geo),
                ScoringStage(lambda t, f: 0.5, clock=lambda: NOW),
                AttributionStage(),
            ]
        )

    def test_stages_run_in_order(self, geo: GeoTable) -> None:
        assert self._pipeline(geo).stage_names == ["scoring", "context", "attribution", "synthesis"]

    async def test_failing_stage_is_isolated(self, geo: GeoTable, tenant: TenantContext, make_indicator) -> None:
        pipeline = self._pipeline(geo)
        pipeline.register_stage(_ExplodingStage())
        context = await pipeline.run(tenant, make_indicator("ip", "203.0.113.5"))
        assert "exploding" in context.errors
        assert "RuntimeError" in context.errors["exploding"]
        assert set(context.stages) == {"scoring", "context", "attribution", "synthesis"}
        assert context.indicator.context.asn == "AS64500"

        record = EnrichmentPipeline.record(context)
        assert not record.complete

    async def test_skip(self, geo: GeoTable, tenant: TenantContext, make_indicator) -> None:
        context = await self._pipeline(geo).run(tenant, make_indicator("ip", "203.0.113.5"), skip={"synthesis"})
        assert "synthesis" not in context.stages
        assert context.derived == []
