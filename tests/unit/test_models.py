# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Tests for normalization, fingerprints, the indicator model and tenant contexts."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from tiace.core.constants import Permission, Severity
from tiace.core.exceptions import PermissionDeniedError
from tiace.models.entities import Cluster, Relationship, derived_id
from tiace.models.feed import FeedConfiguration, SyncJob
from tiace.models.indicator import Indicator, format_timestamp, parse_timestamp
from tiace.models.normalize import (
    canonical_kind,
    custom_kind,
    fingerprint,
    hash_algorithm,
    normalize,
)
from tiace.models.tenant import TenantContext

# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


class TestNormalize:
    def test_domain_lowercased_and_refanged(self) -> None:
        assert normalize("domain", " EVIL[.]Example.COM. ") == "evil.example.com"

    def test_ipv4_and_ipv6_compressed(self) -> None:
        assert normalize("ip", "10.0.0.1") == "10.0.0.1"
        assert normalize("ip", "2001:0DB8:0000:0000:0000:0000:0000:0001") == "2001:db8::1"

    def test_ip_defanged(self) -> None:
        assert normalize("ip", "192.168[.]1[.]1") == "192.168.1.1"

    def test_cidr_uses_network_address(self) -> None:
        assert normalize("cidr", "10.1.2.3/24") == "10.1.2.0/24"

    def test_hash_strips_separators(self) -> None:
        assert normalize("hash", "D4:1D:8C:D9 8F00B204E9800998ECF8427E") == "d41d8cd98f00b204e9800998ecf8427e"

    def test_url_scheme_host_and_default_port(self) -> None:
        assert normalize("url", "hxxp://Evil.EXAMPLE.com:80") == "http://evil.example.com/"
        assert normalize("url", "HTTPS://Host.example:8443/Path?q=A") == "https://host.example:8443/Path?q=A"

    def test_asn_forms(self) -> None:
        assert normalize("asn", "as0064500") == "AS64500"
        assert normalize("asn", "64500") == "AS64500"

    def test_email_refanged(self) -> None:
        assert normalize("email", "Bad[at]Example[.]com") == "bad@example.com"

    def test_unmodelled_kinds_are_only_trimmed(self) -> None:
        assert normalize("mutex", "  Global\\Mutex  ") == "Global\\Mutex"
        assert normalize("custom:cve", " CVE-2024-1 ") == "CVE-2024-1"

    @pytest.mark.parametrize(
        ("kind", "raw"),
        [
            ("domain", "WWW.Example.Com."),
            ("url", "hxxps://a.example:443"),
            ("ip", "::ffff:10.0.0.1"),
            ("hash", "AB:CD"),
            ("asn", "AS 7"),
            ("domain", "evil[[.]]com"),
            ("email", "a[[@]]b.com"),
            ("domain", "x. ."),
        ],
    )
    def test_idempotent(self, kind: str, raw: str) -> None:
        once = normalize(kind, raw)
        assert normalize(kind, once) == once

    def test_nested_defang_fully_unwrapped(self) -> None:
        assert normalize("domain", "evil[[.]]com") == "evil.com"
        assert normalize("email", "a[[@]]b.com") == "a@b.com"
        assert normalize("domain", "x. .") == "x"


class TestKinds:
    def test_builtin_kinds_are_canonical(self) -> None:
        assert canonical_kind("IP") == "ip"
        assert canonical_kind("user-agent") == "user-agent"

    def test_unknown_kind_becomes_custom(self) -> None:
        assert canonical_kind("Registry Key") == "custom:registry-key"
        assert canonical_kind("custom:CVE") == "custom:cve"

    def test_custom_kind_never_empty(self) -> None:
        assert custom_kind("  !!  ") == "custom:unknown"

    def test_hash_algorithm_by_length(self) -> None:
        assert hash_algorithm("a" * 32) == "MD5"
        assert hash_algorithm("a" * 40) == "SHA-1"
        assert hash_algorithm("a" * 64) == "SHA-256"
        assert hash_algorithm("a" * 128) == "SHA-512"
        assert hash_algorithm("abc") is None


class TestFingerprint:
    def test_same_kind_and_value_collide(self) -> None:
        a = Indicator(kind="domain", value="EVIL.example.com")
        b = Indicator(kind="domain", value="evil.example.com")
        assert a.fingerprint() == b.fingerprint()

    def test_kind_separates_identical_values(self) -> None:
        assert fingerprint("domain", "x") != fingerprint("custom:domain", "x")

    def test_no_prefix_ambiguity(self) -> None:
        assert fingerprint("ab", "c") != fingerprint("a", "bc")


# ---------------------------------------------------------------------------
# Indicator model
# ---------------------------------------------------------------------------


class TestIndicator:
    def test_value_normalized_on_construction(self) -> None:
        indicator = Indicator(kind="Domain", value="Evil.Example.com")
        assert indicator.kind == "domain"
        assert indicator.value == "evil.example.com"

    def test_last_seen_never_before_first_seen(self) -> None:
        first = datetime(2026, 1, 2, tzinfo=UTC)
        indicator = Indicator(kind="ip", value="10.0.0.1", first_seen=first, last_seen=first - timedelta(days=1))
        assert indicator.last_seen == first

    def test_tags_and_severity_are_lowercased(self) -> None:
        indicator = Indicator(kind="ip", value="10.0.0.1", tags=["C2", " Botnet "], severity="HIGH")
        assert indicator.tags == {"c2", "botnet"}
        assert indicator.severity is Severity.HIGH

    def test_confidence_out_of_range_rejected(self) -> None:
        with pytest.raises(ValueError):
            Indicator(kind="ip", value="10.0.0.1", confidence=1.5)

    def test_rank_score(self) -> None:
        indicator = Indicator(kind="ip", value="10.0.0.1", confidence=0.5)
        indicator.scoring.threat = 0.8
        assert indicator.rank_score == pytest.approx(0.4)

    def test_canonical_shape_is_stable(self, make_indicator) -> None:
        indicator = make_indicator(tags={"b", "a"}, source_feeds={"z", "y"})
        indicator.indicator_id = "ind-1"
        data = indicator.to_canonical()
        assert data["tags"] == ["a", "b"]
        assert data["source_feeds"] == ["y", "z"]
        assert data["first_seen"] == "2026-03-01T12:00:00Z"
        assert set(data) == {
            "id",
            "kind",
            "value",
            "confidence",
            "severity",
            "first_seen",
            "last_seen",
            "source_feeds",
            "tags",
            "context",
            "scoring",
        }

    def test_canonical_round_trip_keeps_identity_fields(self, make_indicator) -> None:
        original = make_indicator(kind="custom:cve", value="CVE-2024-0001", severity=Severity.CRITICAL)
        restored = Indicator.from_canonical(original.to_canonical())
        assert restored.kind == "custom:cve"
        assert restored.fingerprint() == original.fingerprint()
        assert restored.severity is Severity.CRITICAL
        assert restored.first_seen == original.first_seen


class TestTimestamps:
    def test_format_is_second_precision_utc(self) -> None:
        assert format_timestamp(datetime(2026, 3, 1, 12, 0, 5, 999, tzinfo=UTC)) == "2026-03-01T12:00:05Z"

    def test_parse_accepts_common_forms(self) -> None:
        expected = datetime(2026, 3, 1, tzinfo=UTC)
        assert parse_timestamp("2026-03-01T00:00:00Z") == expected
        assert parse_timestamp("2026-03-01") == expected
        assert parse_timestamp(int(expected.timestamp())) == expected
        assert parse_timestamp(str(int(expected.timestamp()))) == expected

    def test_parse_rejects_garbage(self) -> None:
        assert parse_timestamp("not a date") is None
        assert parse_timestamp("") is None


# ---------------------------------------------------------------------------
# Entities, feeds and jobs
# ---------------------------------------------------------------------------


class TestEntities:
    def test_unknown_relationship_type_becomes_custom(self) -> None:
        edge = Relationship(source_id="a", target_id="b", relationship_type="Attributed_To")
        assert edge.relationship_type == "custom:attributed-to"

    def test_builtin_relationship_type_kept(self) -> None:
        edge = Relationship(source_id="a", target_id="b", relationship_type="RELATED_TO")
        assert edge.relationship_type == "related-to"
        assert edge.key == ("a", "b", "related-to")

    def test_derived_ids_are_deterministic(self) -> None:
        assert derived_id("x", "y") == derived_id("x", "y")
        assert derived_id("x", "y") != derived_id("xy")
        assert Cluster.id_for("t", "rep") == Cluster.id_for("t", "rep")


class TestFeedModels:
    def test_name_defaults_to_feed_id(self, make_feed) -> None:
        assert make_feed("abc").name == "abc"

    def test_configuration_is_frozen(self, make_feed) -> None:
        config = make_feed()
        with pytest.raises(ValueError):
            config.reliability = 0.1  # type: ignore[misc]

    def test_interval_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            FeedConfiguration(
                feed_id="f", tenant_id="t", url="https://x", feed_type="custom", format="json", interval_minutes=0
            )

    def test_job_partial_when_items_errored(self) -> None:
        job = SyncJob(feed_id="f", tenant_id="t", status="succeeded", items_errored=1)
        assert job.is_partial
        assert job.summary()["errored"] == 1


# ---------------------------------------------------------------------------
# Tenant contexts
# ---------------------------------------------------------------------------


class TestTenantContext:
    def test_missing_tenant_is_denied(self) -> None:
        with pytest.raises(PermissionDeniedError):
            TenantContext(tenant_id="  ")

    def test_permissions_enforced(self) -> None:
        ctx = TenantContext(tenant_id="t", permissions=frozenset({Permission.READ}))
        ctx.require(Permission.READ)
        with pytest.raises(PermissionDeniedError):
            ctx.require(Permission.WRITE)

    def test_admin_implies_everything(self) -> None:
        ctx = TenantContext(tenant_id="t", permissions=frozenset({Permission.ADMIN}))
        ctx.require(Permission.EXPORT)

    def test_cross_tenant_rejected(self) -> None:
        ctx = TenantContext(tenant_id="t")
        ctx.check_tenant(None)
        ctx.check_tenant("t")
        with pytest.raises(PermissionDeniedError):
            ctx.check_tenant("u")
