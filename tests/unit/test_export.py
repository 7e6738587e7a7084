# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Tests for STIX, MISP, TAXII and flat exports."""

from __future__ import annotations

import csv
import io
import json
from datetime import UTC, datetime, timedelta

import pytest

from tiace.core.constants import ExportFormat, Permission, Severity
from tiace.core.exceptions import PermissionDeniedError, ValidationError
from tiace.export.exporter import Exporter
from tiace.export.flat import CSV_HEADER, render_csv, render_json, render_yara, yara_rule
from tiace.export.misp import attribute_type, build_misp_event
from tiace.export.stix import build_stix_bundle, build_stix_pattern, indicator_to_stix
from tiace.export.taxii import (
    DEFAULT_COLLECTION_ID,
    format_taxii_collections,
    format_taxii_discovery,
    format_taxii_objects,
)
from tiace.models.entities import Campaign, Relationship, ThreatActor
from tiace.models.tenant import TenantContext
from tiace.storage.base import SearchCriteria

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

SHA256_ABC = "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
SHA1_ABC = "a9993e364706816aba3e25717850c26c9cd0d89d"
MD5_EMPTY = "d41d8cd98f00b204e9800998ecf8427e"
SHA512_FAKE = "ab" * 64


# ---------------------------------------------------------------------------
# Flat formats
# ---------------------------------------------------------------------------


class TestFlat:
    def test_csv(self, make_indicator) -> None:
        indicator = make_indicator(tags={"C2", "botnet"}, source_feeds={"feed-b", "feed-a"})
        rows = list(csv.reader(io.StringIO(render_csv([indicator]))))
        assert tuple(rows[0]) == CSV_HEADER
        assert rows[1] == [
            "domain",
            "evil.example.com",
            "0.6000",
            "medium",
            "feed-a;feed-b",
            "2026-03-01T12:00:00Z",
            "botnet;c2",
        ]

    def test_csv_header_only(self) -> None:
        assert render_csv([]) == "type,value,confidence,severity,source,timestamp,tags\n"

    def test_json_is_canonical(self, make_indicator) -> None:
        indicator = make_indicator(indicator_id="id-1", tags={"c2"})
        [document] = json.loads(render_json([indicator]))
        assert document["id"] == "id-1"
        assert document["kind"] == "domain"
        assert document["tags"] == ["c2"]
        assert document["first_seen"] == "2026-03-01T12:00:00Z"

    def test_yara_covers_expressible_hashes_only(self, make_indicator) -> None:
        indicators = [
            make_indicator(kind="hash", value=SHA256_ABC, malware_families={"Emotet"}),
            make_indicator(kind="hash", value=MD5_EMPTY),
            make_indicator(kind="hash", value=SHA512_FAKE),
            make_indicator(),
        ]
        text = render_yara(indicators)
        assert text.startswith('import "hash"\n')
        assert f"rule tiace_sha256_{SHA256_ABC}" in text
        assert f'hash.md5(0, filesize) == "{MD5_EMPTY}"' in text
        assert 'family = "Emotet"' in text
        assert SHA512_FAKE not in text
        assert "evil.example.com" not in text

    def test_yara_rule_none_for_non_hash(self, make_indicator) -> None:
        assert yara_rule(make_indicator()) is None

    def test_yara_empty(self) -> None:
        assert render_yara([]) == 'import "hash"\n'


# ---------------------------------------------------------------------------
# STIX
# ---------------------------------------------------------------------------


class TestStixPattern:
    @pytest.mark.parametrize(
        ("kind", "value", "expected"),
        [
            ("domain", "evil.example.com", "[domain-name:value = 'evil.example.com']"),
            ("ip", "203.0.113.5", "[ipv4-addr:value = '203.0.113.5']"),
            ("ip", "2001:db8::1", "[ipv6-addr:value = '2001:db8::1']"),
            ("cidr", "203.0.113.0/24", "[ipv4-addr:value = '203.0.113.0/24']"),
            ("hash", MD5_EMPTY, f"[file:hashes.'MD5' = '{MD5_EMPTY}']"),
            ("hash", SHA1_ABC, f"[file:hashes.'SHA-1' = '{SHA1_ABC}']"),
            ("email", "admin@evil.example.com", "[email-addr:value = 'admin@evil.example.com']"),
            ("mutex", "Global\\lock", "[mutex:name = 'Global\\\\lock']"),
            ("url", "http://evil.example.com/it's", "[url:value = 'http://evil.example.com/it\\'s']"),
            ("asn", "AS64500", "[autonomous-system:number = '64500']"),
            ("custom:btc", "1abc", "[x-tiace-btc:value = '1abc']"),
        ],
    )
    def test_pattern(self, kind, value, expected) -> None:
        assert build_stix_pattern(kind, value) == expected


class TestStixIndicator:
    def test_fields(self, make_indicator) -> None:
        indicator = make_indicator(
            tags={"c2"},
            severity=Severity.HIGH,
            description="Panel",
            kill_chain_phases={"command-and-control"},
            references=["https://b.example", "https://a.example", "https://a.example"],
        )
        sdo = indicator_to_stix(indicator)
        assert sdo["type"] == "indicator"
        assert sdo["confidence"] == 60
        assert sdo["labels"] == ["severity:high", "c2"]
        assert sdo["valid_from"] == "2026-03-01T12:00:00.000Z"
        assert sdo["x_tiace_kind"] == "domain"
        assert sdo["x_tiace_severity"] == "high"
        assert sdo["description"] == "Panel"
        assert sdo["kill_chain_phases"] == [{"kill_chain_name": "mitre-attack", "phase_name": "command-and-control"}]
        assert [r["url"] for r in sdo["external_references"]] == ["https://a.example", "https://b.example"]

    def test_id_depends_only_on_content_key(self, make_indicator) -> None:
        first = indicator_to_stix(make_indicator(confidence=0.2))
        second = indicator_to_stix(make_indicator(confidence=0.9))
        other = indicator_to_stix(make_indicator(value="other.example.com"))
        assert first["id"] == second["id"]
        assert first["id"] != other["id"]
        assert first["id"].startswith("indicator--")


class TestStixBundle:
    def test_entities_and_links(self, make_indicator) -> None:
        indicator = make_indicator(
            indicator_id="id-a",
            malware_families={"Emotet"},
            threat_actors={"Example Panda"},
            campaigns={"Operation X"},
        )
        actors = {
            "example panda": ThreatActor(
                name="Example Panda", aliases={"APT-X"}, motivations={"espionage", "financial-gain"}
            )
        }
        campaigns = {"operation x": Campaign(name="Operation X", actor="Example Panda")}

        bundle = build_stix_bundle([indicator], actors=actors, campaigns=campaigns)
        objects = bundle["objects"]
        assert bundle["type"] == "bundle"
        assert bundle["id"].startswith("bundle--")
        assert objects[0]["type"] == "identity"

        by_type: dict[str, list[dict]] = {}
        for obj in objects:
            by_type.setdefault(obj["type"], []).append(obj)
        [actor] = by_type["threat-actor"]
        assert actor["aliases"] == ["APT-X"]
        assert actor["primary_motivation"] == "espionage"
        assert actor["secondary_motivations"] == ["financial-gain"]
        assert by_type["malware"][0]["is_family"] is True
        assert by_type["campaign"][0]["name"] == "Operation X"

        relationship_types = sorted(r["relationship_type"] for r in by_type["relationship"])
        assert relationship_types == ["attributed-to", "indicates", "indicates", "indicates"]
        [attribution] = [r for r in by_type["relationship"] if r["relationship_type"] == "attributed-to"]
        assert attribution["source_ref"] == by_type["campaign"][0]["id"]
        assert attribution["target_ref"] == actor["id"]

    def test_indicator_edges(self, make_indicator) -> None:
        a = make_indicator(indicator_id="id-a")
        b = make_indicator(indicator_id="id-b", value="evil2.example.com")
        edges = [
            Relationship(source_id="id-a", target_id="id-b", relationship_type="same-as", confidence=0.9, created_at=NOW),
            Relationship(source_id="id-a", target_id="id-b", relationship_type="attributed-to", created_at=NOW),
            Relationship(source_id="id-a", target_id="id-gone", relationship_type="related-to", created_at=NOW),
        ]
        bundle = build_stix_bundle([a, b], relationships=edges)
        [link] = [o for o in bundle["objects"] if o["type"] == "relationship"]
        assert link["relationship_type"] == "duplicate-of"
        assert link["confidence"] == 90
        assert link["source_ref"] == indicator_to_stix(a)["id"]

    def test_deterministic(self, make_indicator) -> None:
        indicators = [make_indicator(threat_actors={"Example Panda"}), make_indicator(kind="hash", value=MD5_EMPTY)]
        assert json.dumps(build_stix_bundle(indicators)) == json.dumps(build_stix_bundle(indicators))


# ---------------------------------------------------------------------------
# MISP
# ---------------------------------------------------------------------------


class TestMisp:
    @pytest.mark.parametrize(
        ("kind", "value", "expected"),
        [
            ("ip", "203.0.113.5", ("ip-dst", "Network activity")),
            ("cidr", "203.0.113.0/24", ("ip-dst", "Network activity")),
            ("domain", "evil.example.com", ("domain", "Network activity")),
            ("email", "admin@evil.example.com", ("email-src", "Payload delivery")),
            ("hash", MD5_EMPTY, ("md5", "Payload delivery")),
            ("hash", SHA256_ABC, ("sha256", "Payload delivery")),
            ("certificate", SHA1_ABC, ("x509-fingerprint-sha1", "Network activity")),
            ("custom:btc", "1abc", ("btc", "Other")),
        ],
    )
    def test_attribute_type(self, make_indicator, kind, value, expected) -> None:
        assert attribute_type(make_indicator(kind=kind, value=value)) == expected

    def test_event(self, make_indicator) -> None:
        indicators = [
            make_indicator(
                severity=Severity.HIGH,
                tags={"c2"},
                malware_families={"Emotet"},
                threat_actors={"Example Panda"},
                last_seen=NOW + timedelta(days=1),
            ),
            make_indicator(kind="ip", value="203.0.113.5", severity=Severity.LOW, confidence=0.3),
        ]
        event = build_misp_event("tenant-a", indicators)["Event"]
        assert event["threat_level_id"] == "1"
        assert event["date"] == "2026-03-02"
        assert event["Orgc"] == {"name": "tenant-a"}
        assert [a["to_ids"] for a in event["Attribute"]] == [True, False]
        assert event["Attribute"][0]["Tag"] == [{"name": "c2"}]
        galaxies = {g["type"]: [c["value"] for c in g["GalaxyCluster"]] for g in event["Galaxy"]}
        assert galaxies == {"threat-actor": ["Example Panda"], "malpedia": ["Emotet"]}

    def test_empty_event(self) -> None:
        event = build_misp_event("tenant-a", [])["Event"]
        assert event["date"] == "1970-01-01"
        assert event["threat_level_id"] == "4"
        assert event["Attribute"] == []

    def test_uuids_are_stable(self, make_indicator) -> None:
        indicators = [make_indicator()]
        first = build_misp_event("tenant-a", indicators)["Event"]
        second = build_misp_event("tenant-a", indicators)["Event"]
        other = build_misp_event("tenant-b", indicators)["Event"]
        assert first["uuid"] == second["uuid"] != other["uuid"]
        assert first["Attribute"][0]["uuid"] == other["Attribute"][0]["uuid"]


# ---------------------------------------------------------------------------
# TAXII
# ---------------------------------------------------------------------------


class TestTaxii:
    def test_discovery_and_collections(self) -> None:
        discovery = format_taxii_discovery()
        assert discovery["default"] == "/api/v1/taxii"
        [collection] = format_taxii_collections()["collections"]
        assert collection["id"] == DEFAULT_COLLECTION_ID
        assert collection["can_read"] and not collection["can_write"]

    def test_paging(self) -> None:
        bundle = {"type": "bundle", "objects": [{"id": str(i)} for i in range(5)]}
        first = format_taxii_objects(bundle, limit=2)
        assert [o["id"] for o in first["objects"]] == ["0", "1"]
        assert first["more"] is True
        assert first["next"] == "2"

        last = format_taxii_objects(bundle, limit=2, offset=4)
        assert [o["id"] for o in last["objects"]] == ["4"]
        assert last["more"] is False
        assert "next" not in last

    def test_unbounded(self) -> None:
        envelope = format_taxii_objects({"objects": [{"id": "x"}]})
        assert envelope == {"more": False, "objects": [{"id": "x"}]}


# ---------------------------------------------------------------------------
# Exporter
# ---------------------------------------------------------------------------


@pytest.fixture
async def populated(store, tenant, make_indicator):
    stored = [
        await store.store(tenant, make_indicator(kind="url", value="http://evil.example.com/login")),
        await store.store(tenant, make_indicator(kind="hash", value=SHA256_ABC, threat_actors={"Example Panda"})),
        await store.store(tenant, make_indicator(kind="domain", value="b.example.com")),
        await store.store(tenant, make_indicator(kind="domain", value="a.example.com", tags={"c2"})),
    ]
    return {i.value: i for i in stored}


class TestExporter:
    async def test_select_orders_by_kind_and_value(self, store, tenant, populated) -> None:
        selected = await Exporter(store).select(tenant)
        assert [(i.kind, i.value) for i in selected] == [
            ("domain", "a.example.com"),
            ("domain", "b.example.com"),
            ("hash", SHA256_ABC),
            ("url", "http://evil.example.com/login"),
        ]

    async def test_csv(self, store, tenant, populated) -> None:
        result = await Exporter(store).export(tenant, "CSV")
        assert result.format is ExportFormat.CSV
        assert result.count == 4
        assert result.media_type == "text/csv"
        assert result.filename == "tiace-export.csv"
        assert result.content.splitlines()[1].startswith("domain,a.example.com,")

    async def test_yara_counts_rules(self, store, tenant, populated) -> None:
        result = await Exporter(store).export(tenant, ExportFormat.YARA)
        assert result.count == 1
        assert result.filename == "tiace-export.yar"

    async def test_stix_counts_indicators(self, store, tenant, populated) -> None:
        a = populated["a.example.com"]
        b = populated["b.example.com"]
        await store.store_edges(
            tenant, [Relationship(source_id=a.indicator_id, target_id=b.indicator_id, relationship_type="related-to")]
        )
        result = await Exporter(store).export(tenant, "stix")
        bundle = json.loads(result.content)
        assert result.count == 4
        types = [o["type"] for o in bundle["objects"]]
        assert types.count("threat-actor") == 1
        assert any(
            o.get("relationship_type") == "related-to" for o in bundle["objects"] if o["type"] == "relationship"
        )

    async def test_criteria(self, store, tenant, populated) -> None:
        result = await Exporter(store).export(tenant, "json", SearchCriteria(tags={"c2"}))
        assert [d["value"] for d in json.loads(result.content)] == ["a.example.com"]

    async def test_repeat_exports_are_identical(self, store, tenant, populated) -> None:
        exporter = Exporter(store)
        for fmt in ExportFormat:
            first = await exporter.export(tenant, fmt)
            second = await exporter.export(tenant, fmt)
            assert first.content == second.content, fmt

    async def test_tenant_scoped(self, store, other_tenant, populated) -> None:
        result = await Exporter(store).export(other_tenant, "json")
        assert result.count == 0
        assert json.loads(result.content) == []

    async def test_unknown_format(self, store, tenant) -> None:
        with pytest.raises(ValidationError):
            await Exporter(store).export(tenant, "pdf")

    async def test_requires_export_permission(self, store) -> None:
        reader = TenantContext(tenant_id="tenant-a", caller="ro", permissions=frozenset({Permission.READ}))
        with pytest.raises(PermissionDeniedError):
            await Exporter(store).export(reader, "csv")
