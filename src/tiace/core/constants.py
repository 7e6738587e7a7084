# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Enumerations, severity weights, and threshold constants."""

from enum import StrEnum


class Severity(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class IndicatorKind(StrEnum):
    """Built-in indicator kinds.  Custom kinds are spelled ``custom:<tag>``."""

    IP = "ip"
    DOMAIN = "domain"
    URL = "url"
    HASH = "hash"
    EMAIL = "email"
    USER_AGENT = "user-agent"
    MUTEX = "mutex"
    CERTIFICATE = "certificate"
    ASN = "asn"
    CIDR = "cidr"


CUSTOM_KIND_PREFIX = "custom:"


class RelationshipType(StrEnum):
    SAME_AS = "same-as"
    RELATED_TO = "related-to"
    INDICATES_PRESENCE_OF = "indicates-presence-of"
    DERIVED_FROM = "derived-from"
    PARENT_OF = "parent-of"
    CHILD_OF = "child-of"


ATTRIBUTED_TO = "custom:attributed-to"


class FeedType(StrEnum):
    MISP = "misp"
    TAXII = "taxii"
    COMMERCIAL = "commercial"
    OPEN_SOURCE = "open-source"
    CUSTOM = "custom"


class FeedFormat(StrEnum):
    STIX2 = "stix2"
    MISP_JSON = "misp-json"
    JSON = "json"
    CSV = "csv"
    TSV = "tsv"
    TXT = "txt"
    CVE_JSON = "cve-json"
    RSS = "rss"
    ATOM = "atom"
    CANONICAL_JSON = "canonical-json"


class AuthType(StrEnum):
    NONE = "none"
    API_KEY = "api-key"
    BASIC = "basic"
    BEARER = "bearer"
    OAUTH2 = "oauth2"
    CERTIFICATE = "certificate"


class SyncStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FeedState(StrEnum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    BACKOFF = "backoff"
    QUARANTINED = "quarantined"
    DISABLED = "disabled"


class ChangeKind(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    CLUSTERED = "clustered"


class EntityType(StrEnum):
    INDICATOR = "indicator"
    THREAT_ACTOR = "threat-actor"
    CAMPAIGN = "campaign"


class Permission(StrEnum):
    READ = "read"
    WRITE = "write"
    SYNC = "sync"
    EXPORT = "export"
    ADMIN = "admin"


class ExportFormat(StrEnum):
    STIX = "stix"
    MISP = "misp"
    JSON = "json"
    CSV = "csv"
    YARA = "yara"


SEVERITY_ORDER: dict[Severity, int] = {
    Severity.INFO: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}

# Severity contribution to the threat score.
SEVERITY_WEIGHTS: dict[Severity, float] = {
    Severity.CRITICAL: 1.0,
    Severity.HIGH: 0.75,
    Severity.MEDIUM: 0.5,
    Severity.LOW: 0.25,
    Severity.INFO: 0.05,
}

# Tags that mark an indicator as known-bad for infrastructure correlation.
MALICIOUS_TAGS = frozenset({"malicious", "malware", "c2", "botnet", "phishing", "ransomware"})

HIGH_CONFIDENCE_THRESHOLD = 0.8
TOP_N_DEFAULT = 10
