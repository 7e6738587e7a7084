# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Tests for the feed format parsers."""

from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from tiace.core.constants import FeedFormat, FeedType, Severity
from tiace.core.exceptions import (
    ConfigurationError,
    MalformedRecordError,
    SchemaDriftError,
)
from tiace.models.feed import FeedFilters, RawRecord
from tiace.parsers.base import coerce_confidence, coerce_severity, make_indicator
from tiace.parsers.canonical import parse_canonical
from tiace.parsers.cve import parse_cve
from tiace.parsers.extract import extract_indicators, infer_kind, refang
from tiace.parsers.misp import parse_misp
from tiace.parsers.osint import parse_csv, parse_text, parse_tsv
from tiace.parsers.registry import ParserRegistry, default_registry
from tiace.parsers.rss import parse_rss
from tiace.parsers.stix import parse_stix, pattern_observables
from tiace.parsers.vendor import parse_vendor_json

SHA256_ABC = "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
MD5_EMPTY = "d41d8cd98f00b204e9800998ecf8427e"


def _record(payload, feed_id: str = "feed-a") -> RawRecord:
    return RawRecord.now(feed_id, payload)


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------


class TestCoercion:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (9.8, Severity.CRITICAL),
            (7, Severity.HIGH),
            ("5.0", Severity.MEDIUM),
            (0.1, Severity.LOW),
            (0, Severity.INFO),
            ("severity:High", Severity.HIGH),
            ("moderate", Severity.MEDIUM),
            ("informational", Severity.INFO),
        ],
    )
    def test_severity(self, value, expected: Severity) -> None:
        assert coerce_severity(value) is expected

    def test_severity_default(self) -> None:
        assert coerce_severity(None) is Severity.MEDIUM
        assert coerce_severity("bogus", Severity.LOW) is Severity.LOW

    @pytest.mark.parametrize(
        ("value", "expected"),
        [(0.4, 0.4), (85, 0.85), ("70", 0.7), (250, 1.0), (-1, 0.0), (True, 0.5), ("x", 0.5), (None, 0.5)],
    )
    def test_confidence(self, value, expected: float) -> None:
        assert coerce_confidence(value, 0.5) == pytest.approx(expected)

    def test_make_indicator_stamps_feed_origin(self, make_feed) -> None:
        config = make_feed(reliability=0.7)
        indicator = make_indicator(
            config,
            "domain",
            "Evil.Example.COM.",
            item={"raw": True},
            first_seen="2026-02-01T00:00:00Z",
            tags=["Phish"],
            actors=["Example Panda", " "],
        )
        assert indicator.value == "evil.example.com"
        assert indicator.tenant_id == "tenant-a"
        assert indicator.confidence == pytest.approx(0.7)
        assert indicator.source_feeds == {"feed-a"}
        assert indicator.raw_payloads == {"feed-a": {"raw": True}}
        assert indicator.tags == {"phish"}
        assert indicator.first_seen == indicator.last_seen == datetime(2026, 2, 1, tzinfo=UTC)
        assert indicator.threat_actors == {"Example Panda"}
        [attribution] = indicator.attributions
        assert attribution.feed_id == "feed-a"
        assert attribution.confidence == pytest.approx(0.7)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


class TestExtraction:
    def test_refang(self) -> None:
        assert refang("hxxp://evil[.]example[.]com") == "http://evil.example.com"
        assert refang("admin[@]evil.example.com") == "admin@evil.example.com"

    @pytest.mark.parametrize(
        ("value", "kind"),
        [
            ("hxxps://evil[.]example.com/a", "url"),
            ("203.0.113.5", "ip"),
            ("2001:db8::1", "ip"),
            ("10.0.0.0/8", "cidr"),
            ("AS64500", "asn"),
            (MD5_EMPTY, "hash"),
            (SHA256_ABC, "hash"),
            ("admin@evil.example.com", "email"),
            ("evil[.]example.com", "domain"),
            ("invoice.pdf", None),
            ("not a value", None),
            ("", None),
        ],
    )
    def test_infer_kind(self, value: str, kind: str | None) -> None:
        assert infer_kind(value) == kind

    def test_host_inside_url_or_email_is_not_reported(self) -> None:
        found = extract_indicators("mail admin@evil.example.com or visit hxxp://evil[.]example.com/login.")
        assert found == [("url", "http://evil.example.com/login"), ("email", "admin@evil.example.com")]

    def test_extracts_every_kind_once(self) -> None:
        text = f"Seen 203.0.113.9 and 203.0.113.9 again, dropper {MD5_EMPTY} on 198.51.100.0/24 via bad.example.net"
        found = extract_indicators(text)
        assert ("ip", "203.0.113.9") in found
        assert ("hash", MD5_EMPTY) in found
        assert ("cidr", "198.51.100.0/24") in found
        assert ("domain", "bad.example.net") in found
        assert len(found) == 4


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


class TestFilters:
    def test_min_confidence_skips(self, make_feed) -> None:
        config = make_feed(filters=FeedFilters(min_confidence=0.7))
        result = parse_text(_record("evil.example.com\n203.0.113.5\n"), config)
        assert result.indicators == []
        assert result.skipped == 2

    def test_tag_filter_is_case_insensitive(self, make_feed) -> None:
        config = make_feed(format=FeedFormat.CSV, filters=FeedFilters(tags=frozenset({"C2"})))
        payload = "value,tags\nevil.example.com,c2\ngood.example.com,benign\n"
        result = parse_csv(_record(payload), config)
        assert [i.value for i in result.indicators] == ["evil.example.com"]
        assert result.skipped == 1

    def test_severity_filter(self, make_feed) -> None:
        config = make_feed(format=FeedFormat.CSV, filters=FeedFilters(severity_levels=frozenset({Severity.HIGH})))
        payload = "value,severity\na.example.com,high\nb.example.com,low\n"
        result = parse_csv(_record(payload), config)
        assert [i.value for i in result.indicators] == ["a.example.com"]

    def test_time_window(self, make_feed) -> None:
        config = make_feed(
            format=FeedFormat.CSV,
            filters=FeedFilters(start_time=datetime(2026, 2, 1, tzinfo=UTC)),
        )
        payload = "value,timestamp\nold.example.com,2026-01-01T00:00:00Z\nnew.example.com,2026-02-15T00:00:00Z\n"
        result = parse_csv(_record(payload), config)
        assert [i.value for i in result.indicators] == ["new.example.com"]

    def test_organization_filter(self, make_feed) -> None:
        config = make_feed(
            feed_type=FeedType.COMMERCIAL,
            format=FeedFormat.JSON,
            filters=FeedFilters(organizations=frozenset({"ACME CERT"})),
        )
        payload = [
            {"indicator": "a.example.com", "organization": "acme cert"},
            {"indicator": "b.example.com", "organization": "someone else"},
            {"indicator": "c.example.com"},
        ]
        result = parse_vendor_json(_record(payload), config)
        assert [i.value for i in result.indicators] == ["a.example.com"]
        assert result.skipped == 2


# ---------------------------------------------------------------------------
# OSINT lists
# ---------------------------------------------------------------------------


class TestTextList:
    def test_comments_and_inline_notes(self, make_feed) -> None:
        payload = "# blocklist\n; also a comment\n203.0.113.5  # scanner\n\nhxxp://evil[.]example.com/x\n"
        result = parse_text(_record(payload), make_feed())
        assert [(i.kind, i.value) for i in result.indicators] == [
            ("ip", "203.0.113.5"),
            ("url", "http://evil.example.com/x"),
        ]
        assert result.failures == []

    def test_unrecognized_line_is_an_item_failure(self, make_feed) -> None:
        result = parse_text(_record(b"evil.example.com\n???\n"), make_feed())
        assert len(result.indicators) == 1
        [failure] = result.failures
        assert isinstance(failure, MalformedRecordError)
        assert "line 2" in str(failure)

    def test_non_text_payload_is_malformed(self, make_feed) -> None:
        with pytest.raises(MalformedRecordError):
            parse_text(_record({"not": "text"}), make_feed())


class TestDelimited:
    def test_export_header_round_trips(self, make_feed) -> None:
        payload = (
            "type,value,confidence,severity,source,timestamp,tags\n"
            "ip,203.0.113.5,0.9,high,feed-x,2026-03-01T12:00:00Z,c2;botnet\n"
        )
        result = parse_csv(_record(payload), make_feed(format=FeedFormat.CSV))
        [indicator] = result.indicators
        assert indicator.kind == "ip"
        assert indicator.confidence == pytest.approx(0.9)
        assert indicator.severity is Severity.HIGH
        assert indicator.first_seen == datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        assert indicator.tags == {"c2", "botnet"}
        assert indicator.source_feeds == {"feed-a"}

    def test_positional_without_header(self, make_feed) -> None:
        payload = "203.0.113.5,scanner\nevil.example.com,phishing\n"
        result = parse_csv(_record(payload), make_feed(format=FeedFormat.CSV))
        assert [i.kind for i in result.indicators] == ["ip", "domain"]

    def test_empty_value_cell_fails_item(self, make_feed) -> None:
        payload = "indicator,type\n,domain\nevil.example.com,domain\n"
        result = parse_csv(_record(payload), make_feed(format=FeedFormat.CSV))
        assert len(result.indicators) == 1
        assert len(result.failures) == 1

    def test_tsv_with_declared_type(self, make_feed) -> None:
        payload = "indicator\ttype\tfirst_seen\nevil.example.com\tdomain\t2026-02-01\n"
        result = parse_tsv(_record(payload), make_feed(format=FeedFormat.TSV))
        [indicator] = result.indicators
        assert indicator.kind == "domain"
        assert indicator.first_seen.date().isoformat() == "2026-02-01"

    def test_only_comments(self, make_feed) -> None:
        result = parse_csv(_record("# nothing here\n"), make_feed(format=FeedFormat.CSV))
        assert result.indicators == [] and result.failures == []


# ---------------------------------------------------------------------------
# Canonical JSON
# ---------------------------------------------------------------------------


class TestCanonical:
    def test_identity_is_reset_to_importer(self, make_feed) -> None:
        item = {
            "id": "abc",
            "kind": "domain",
            "value": "evil.example.com",
            "confidence": 0.8,
            "severity": "high",
            "first_seen": "2026-02-01T00:00:00Z",
            "last_seen": "2026-02-02T00:00:00Z",
            "source_feeds": ["elsewhere"],
            "tags": ["c2"],
        }
        config = make_feed("import-1", format=FeedFormat.CANONICAL_JSON)
        result = parse_canonical(_record(json.dumps([item]), "import-1"), config)
        [indicator] = result.indicators
        assert indicator.indicator_id == ""
        assert indicator.tenant_id == "tenant-a"
        assert indicator.source_feeds == {"import-1"}
        assert indicator.severity is Severity.HIGH
        assert indicator.tags == {"c2"}

    def test_wrapped_and_single_objects(self, make_feed) -> None:
        config = make_feed(format=FeedFormat.CANONICAL_JSON)
        wrapped = parse_canonical(_record({"indicators": [{"kind": "ip", "value": "203.0.113.5"}]}), config)
        single = parse_canonical(_record({"kind": "ip", "value": "203.0.113.5"}), config)
        assert len(wrapped.indicators) == len(single.indicators) == 1

    def test_item_failures(self, make_feed) -> None:
        config = make_feed(format=FeedFormat.CANONICAL_JSON)
        payload = [{"kind": "ip"}, {"kind": "ip", "value": "203.0.113.5", "severity": "apocalyptic"}, "x"]
        result = parse_canonical(_record(payload), config)
        assert result.indicators == []
        assert len(result.failures) == 3

    def test_non_array_is_schema_drift(self, make_feed) -> None:
        with pytest.raises(SchemaDriftError):
            parse_canonical(_record({"unexpected": 1}), make_feed(format=FeedFormat.CANONICAL_JSON))

    def test_bad_json_is_malformed(self, make_feed) -> None:
        with pytest.raises(MalformedRecordError):
            parse_canonical(_record("[{"), make_feed(format=FeedFormat.CANONICAL_JSON))


# ---------------------------------------------------------------------------
# MISP
# ---------------------------------------------------------------------------


def _misp_event(**overrides) -> dict:
    event = {
        "uuid": "ev-1",
        "info": "Phishing wave",
        "date": "2026-02-01",
        "threat_level_id": "1",
        "Orgc": {"name": "ACME CERT"},
        "Tag": [{"name": "tlp:amber"}],
        "Galaxy": [
            {"type": "threat-actor", "GalaxyCluster": [{"value": "Example Panda"}]},
            {"type": "mitre-attack-pattern", "GalaxyCluster": [{"value": "Phishing - T1566"}]},
            {"type": "ransomware", "GalaxyCluster": [{"value": "ExampleLocker"}]},
        ],
        "Attribute": [
            {"uuid": "a1", "type": "ip-dst", "value": "203.0.113.5", "to_ids": True},
            {"uuid": "a2", "type": "domain", "value": "evil.example.com", "to_ids": False},
            {"uuid": "a3", "type": "domain", "value": "gone.example.com", "deleted": True},
        ],
        "Object": [
            {"Attribute": [{"uuid": "a4", "type": "filename|sha256", "value": f"evil.exe|{SHA256_ABC}", "to_ids": "1"}]},
        ],
    }
    event.update(overrides)
    return {"Event": event}


class TestMisp:
    def test_event_attributes(self, make_feed) -> None:
        config = make_feed(feed_type=FeedType.MISP, format=FeedFormat.MISP_JSON)
        result = parse_misp(_record(_misp_event()), config)
        by_value = {i.value: i for i in result.indicators}
        assert set(by_value) == {"203.0.113.5", "evil.example.com", SHA256_ABC}
        assert by_value[SHA256_ABC].kind == "hash"
        assert all(i.severity is Severity.HIGH for i in result.indicators)

    def test_to_ids_drives_confidence(self, make_feed) -> None:
        config = make_feed(feed_type=FeedType.MISP, format=FeedFormat.MISP_JSON, reliability=0.6)
        by_value = {i.value: i for i in parse_misp(_record(_misp_event()), config).indicators}
        assert by_value["203.0.113.5"].confidence == pytest.approx(0.6)
        assert by_value["evil.example.com"].confidence == pytest.approx(0.3)

    def test_galaxies(self, make_feed) -> None:
        config = make_feed(feed_type=FeedType.MISP, format=FeedFormat.MISP_JSON)
        result = parse_misp(_record(_misp_event()), config)
        assert [a.name for a in result.actors] == ["Example Panda"]
        indicator = result.indicators[0]
        assert indicator.threat_actors == {"Example Panda"}
        assert indicator.mitre_techniques == {"T1566"}
        assert indicator.malware_families == {"ExampleLocker"}
        assert indicator.tags == {"tlp:amber"}
        assert indicator.external_ids["misp_event"] == "ev-1"

    @pytest.mark.parametrize(
        ("attr_type", "value", "expected"),
        [
            ("ip-dst", "198.51.100.0/24", [("cidr", "198.51.100.0/24")]),
            ("ip-dst|port", "203.0.113.5|443", [("ip", "203.0.113.5")]),
            ("domain|ip", "evil.example.com|203.0.113.5", [("domain", "evil.example.com"), ("ip", "203.0.113.5")]),
            ("btc", "1BoatSLRHtKNngkdXEeobR76b53LETtpyT", [("custom:btc", "1BoatSLRHtKNngkdXEeobR76b53LETtpyT")]),
        ],
    )
    def test_attribute_types(self, make_feed, attr_type: str, value: str, expected: list) -> None:
        config = make_feed(feed_type=FeedType.MISP, format=FeedFormat.MISP_JSON)
        event = _misp_event(Attribute=[{"type": attr_type, "value": value, "to_ids": True}], Object=[])
        result = parse_misp(_record(event), config)
        assert [(i.kind, i.value) for i in result.indicators] == expected

    def test_attribute_without_type_fails_item(self, make_feed) -> None:
        config = make_feed(feed_type=FeedType.MISP, format=FeedFormat.MISP_JSON)
        event = _misp_event(Attribute=[{"value": "x"}, {"type": "domain", "value": "ok.example.com"}], Object=[])
        result = parse_misp(_record(event), config)
        assert len(result.indicators) == 1
        assert isinstance(result.failures[0], SchemaDriftError)

    def test_rest_search_response(self, make_feed) -> None:
        config = make_feed(feed_type=FeedType.MISP, format=FeedFormat.MISP_JSON)
        second = _misp_event(uuid="ev-2", Attribute=[{"type": "domain", "value": "two.example.com"}], Object=[])
        result = parse_misp(_record({"response": [_misp_event(), second]}), config)
        assert "two.example.com" in {i.value for i in result.indicators}

    def test_missing_event_is_schema_drift(self, make_feed) -> None:
        config = make_feed(feed_type=FeedType.MISP, format=FeedFormat.MISP_JSON)
        with pytest.raises(SchemaDriftError):
            parse_misp(_record({"foo": 1}), config)


# ---------------------------------------------------------------------------
# STIX
# ---------------------------------------------------------------------------


def _bundle(*objects: dict) -> dict:
    return {"type": "bundle", "id": "bundle--1", "objects": list(objects)}


def _stix_indicator(pattern: str, **extra) -> dict:
    obj = {
        "type": "indicator",
        "id": "indicator--1",
        "pattern": pattern,
        "pattern_type": "stix",
        "valid_from": "2026-02-01T00:00:00Z",
    }
    obj.update(extra)
    return obj


class TestStix:
    def test_pattern_observables(self) -> None:
        pattern = (
            "[ipv4-addr:value = '203.0.113.5'] OR [domain-name:value = 'evil.example.com'] "
            f"OR [file:hashes.'SHA-256' = '{SHA256_ABC}'] OR [x-thing:value = 'it\\'s']"
        )
        assert pattern_observables(pattern) == [
            ("ip", "203.0.113.5"),
            ("domain", "evil.example.com"),
            ("hash", SHA256_ABC),
            ("custom:x-thing", "it's"),
        ]

    def test_indicator_fields(self, make_feed) -> None:
        config = make_feed(feed_type=FeedType.TAXII, format=FeedFormat.STIX2)
        obj = _stix_indicator(
            "[url:value = 'http://evil.example.com/a']",
            confidence=85,
            labels=["severity:critical", "APT"],
            indicator_types=["malicious-activity", "c2"],
            kill_chain_phases=[{"kill_chain_name": "lockheed", "phase_name": "delivery"}],
            external_references=[{"source_name": "blog", "url": "https://blog.example.org/post"}],
        )
        [indicator] = parse_stix(_record(_bundle(obj)), config).indicators
        assert indicator.kind == "url"
        assert indicator.confidence == pytest.approx(0.85)
        assert indicator.severity is Severity.CRITICAL
        assert indicator.tags == {"apt", "c2"}
        assert indicator.kill_chain_phases == {"delivery"}
        assert indicator.references == ["https://blog.example.org/post"]
        assert indicator.external_ids == {"stix": "indicator--1"}

    def test_declared_kind_overrides_single_observable(self, make_feed) -> None:
        config = make_feed(feed_type=FeedType.TAXII, format=FeedFormat.STIX2)
        obj = _stix_indicator("[x-thing:value = 'Global\\\\EvilMutex']", x_tiace_kind="mutex")
        [indicator] = parse_stix(_record(_bundle(obj)), config).indicators
        assert indicator.kind == "mutex"

    def test_relationships(self, make_feed) -> None:
        config = make_feed(feed_type=FeedType.TAXII, format=FeedFormat.STIX2)
        objects = [
            _stix_indicator("[domain-name:value = 'evil.example.com']"),
            _stix_indicator("[ipv4-addr:value = '203.0.113.5']", id="indicator--2"),
            {"type": "threat-actor", "id": "threat-actor--1", "name": "Example Panda", "aliases": ["APT-X"]},
            {"type": "campaign", "id": "campaign--1", "name": "Op Example"},
            {"type": "malware", "id": "malware--1", "name": "ExampleLocker"},
            {"type": "relationship", "relationship_type": "indicates", "source_ref": "indicator--1", "target_ref": "threat-actor--1"},
            {"type": "relationship", "relationship_type": "indicates", "source_ref": "indicator--1", "target_ref": "malware--1"},
            {"type": "relationship", "relationship_type": "attributed-to", "source_ref": "campaign--1", "target_ref": "threat-actor--1"},
            {"type": "relationship", "relationship_type": "duplicate-of", "source_ref": "indicator--1", "target_ref": "indicator--2"},
        ]
        result = parse_stix(_record(_bundle(*objects)), config)

        domain = next(i for i in result.indicators if i.kind == "domain")
        assert domain.threat_actors == {"Example Panda"}
        assert domain.malware_families == {"ExampleLocker"}
        assert [a.actor for a in domain.attributions] == ["Example Panda"]
        assert [(a.name, a.aliases) for a in result.actors] == [("Example Panda", {"APT-X"})]
        assert result.campaigns[0].actor == "Example Panda"
        [edge] = result.relationships
        assert edge.relationship_type == "same-as"
        assert edge.source == ("indicator", "domain", "evil.example.com")
        assert edge.target == ("indicator", "ip", "203.0.113.5")

    def test_pattern_problems(self, make_feed) -> None:
        config = make_feed(feed_type=FeedType.TAXII, format=FeedFormat.STIX2)
        objects = [
            {"type": "indicator", "id": "indicator--a"},
            _stix_indicator("title: sigma rule", id="indicator--b", pattern_type="sigma"),
            _stix_indicator("[process:pid > 4]", id="indicator--c"),
        ]
        result = parse_stix(_record(_bundle(*objects)), config)
        assert result.indicators == []
        assert [type(f) for f in result.failures] == [SchemaDriftError, MalformedRecordError]

    def test_bare_indicator_and_list(self, make_feed) -> None:
        config = make_feed(feed_type=FeedType.TAXII, format=FeedFormat.STIX2)
        single = _stix_indicator("[domain-name:value = 'evil.example.com']")
        assert len(parse_stix(_record(single), config).indicators) == 1
        assert len(parse_stix(_record([single]), config).indicators) == 1

    def test_missing_objects_is_schema_drift(self, make_feed) -> None:
        config = make_feed(feed_type=FeedType.TAXII, format=FeedFormat.STIX2)
        with pytest.raises(SchemaDriftError):
            parse_stix(_record({"type": "bundle"}), config)


# ---------------------------------------------------------------------------
# CVE, vendor JSON, RSS
# ---------------------------------------------------------------------------


class TestCve:
    def test_nvd_response(self, make_feed) -> None:
        payload = {
            "vulnerabilities": [
                {
                    "cve": {
                        "id": "cve-2026-0001",
                        "published": "2026-01-10T00:00:00.000",
                        "lastModified": "2026-01-12T00:00:00.000",
                        "descriptions": [{"lang": "es", "value": "hola"}, {"lang": "en", "value": "XSS in widget"}],
                        "metrics": {"cvssMetricV31": [{"cvssData": {"baseScore": 9.8, "baseSeverity": "CRITICAL"}}]},
                        "weaknesses": [{"description": [{"lang": "en", "value": "CWE-79"}]}],
                        "references": [{"url": "https://nvd.example.org/b"}, {"url": "https://nvd.example.org/a"}],
                    }
                },
                {"nope": True},
            ]
        }
        result = parse_cve(_record(payload), make_feed(format=FeedFormat.CVE_JSON))
        [indicator] = result.indicators
        assert (indicator.kind, indicator.value) == ("custom:cve", "CVE-2026-0001")
        assert indicator.severity is Severity.CRITICAL
        assert indicator.tags == {"cve", "cwe-79"}
        assert indicator.description == "XSS in widget"
        assert indicator.references == ["https://nvd.example.org/a", "https://nvd.example.org/b"]
        assert len(result.failures) == 1

    def test_cve5_record_uses_score(self, make_feed) -> None:
        payload = {
            "cveMetadata": {"cveId": "CVE-2026-0002", "datePublished": "2026-01-01T00:00:00Z"},
            "containers": {"cna": {"metrics": [{"cvssV3_1": {"baseScore": 7.5}}]}},
        }
        [indicator] = parse_cve(_record(payload), make_feed(format=FeedFormat.CVE_JSON)).indicators
        assert indicator.severity is Severity.HIGH

    def test_unknown_shape(self, make_feed) -> None:
        with pytest.raises(SchemaDriftError):
            parse_cve(_record({"results": []}), make_feed(format=FeedFormat.CVE_JSON))


class TestVendorJson:
    def test_field_spellings(self, make_feed) -> None:
        payload = {
            "data": [
                {
                    "indicator": "Evil.Example.com",
                    "type": "hostname",
                    "score": 85,
                    "threat_level": "high",
                    "labels": "phish; c2",
                    "actor": {"name": "Example Panda"},
                    "malware_family": "ExampleLocker",
                    "firstSeen": "2026-02-01T00:00:00Z",
                },
                {"ioc": "203.0.113.9"},
                {"description": "no value here"},
                "junk",
                {"value": "???"},
            ]
        }
        config = make_feed(feed_type=FeedType.COMMERCIAL, format=FeedFormat.JSON)
        result = parse_vendor_json(_record(payload), config)
        first, second = result.indicators
        assert (first.kind, first.value) == ("domain", "evil.example.com")
        assert first.confidence == pytest.approx(0.85)
        assert first.severity is Severity.HIGH
        assert first.tags == {"phish", "c2"}
        assert first.threat_actors == {"Example Panda"}
        assert first.malware_families == {"ExampleLocker"}
        assert (second.kind, second.confidence) == ("ip", pytest.approx(0.6))
        assert len(result.failures) == 3

    def test_no_list_is_schema_drift(self, make_feed) -> None:
        config = make_feed(feed_type=FeedType.COMMERCIAL, format=FeedFormat.JSON)
        with pytest.raises(SchemaDriftError):
            parse_vendor_json(_record({"status": "ok"}), config)


RSS_DOC = f"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Example Advisories</title>
    <link>https://blog.example.org/</link>
    <description>Advisories</description>
    <item>
      <title>Campaign abuses evil[.]example.com</title>
      <link>https://blog.example.org/post</link>
      <category>phishing</category>
      <pubDate>Sun, 01 Feb 2026 10:00:00 GMT</pubDate>
      <description>Payload at hxxp://203.0.113.7/payload.exe with hash {SHA256_ABC}</description>
    </item>
  </channel>
</rss>
"""


class TestRss:
    def test_entry_indicators(self, make_feed) -> None:
        result = parse_rss(_record(RSS_DOC), make_feed(format=FeedFormat.RSS))
        found = {(i.kind, i.value) for i in result.indicators}
        assert found == {
            ("url", "http://203.0.113.7/payload.exe"),
            ("hash", SHA256_ABC),
            ("domain", "evil.example.com"),
        }
        indicator = result.indicators[0]
        assert indicator.references == ["https://blog.example.org/post"]
        assert indicator.tags == {"phishing"}
        assert indicator.first_seen == datetime(2026, 2, 1, 10, 0, tzinfo=UTC)

    def test_unreadable_document(self, make_feed) -> None:
        with pytest.raises(MalformedRecordError):
            parse_rss(_record("<<< definitely not a feed"), make_feed(format=FeedFormat.RSS))


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_default_registry_covers_formats(self) -> None:
        registry = default_registry()
        for fmt in FeedFormat:
            assert registry.supports(FeedType.CUSTOM, fmt)

    def test_unknown_format(self) -> None:
        with pytest.raises(ConfigurationError):
            ParserRegistry().get(FeedType.MISP, FeedFormat.CSV)

    def test_feed_type_registration_wins(self, make_feed) -> None:
        registry = default_registry()
        calls = []

        def special(record, config):
            calls.append(config.feed_id)
            return parse_text(record, config)

        registry.register(FeedFormat.TXT, special, feed_type=FeedType.COMMERCIAL)
        registry.parse(_record("evil.example.com"), make_feed(feed_type=FeedType.COMMERCIAL))
        registry.parse(_record("evil.example.com"), make_feed())
        assert calls == ["feed-a"]
