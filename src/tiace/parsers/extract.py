# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Kind inference and indicator extraction from free text.

Used by plain-text OSINT lists and by RSS/ATOM advisories, where values
arrive without a declared type and are frequently defanged
(``hxxp://evil[.]example``).
"""

from __future__ import annotations

import ipaddress
import re

from tiace.core.constants import IndicatorKind

_URL_RE = re.compile(r"\b(?:https?|ftp)://[^\s\"'<>]+", re.IGNORECASE)
_EMAIL_RE = re.compile(r"\b[a-z0-9._%+-]+@[a-z0-9.-]+\.[a-z]{2,63}\b", re.IGNORECASE)
_IPV4_RE = re.compile(r"\b(?:(?:25[0-5]|2[0-4]\d|1?\d?\d)\.){3}(?:25[0-5]|2[0-4]\d|1?\d?\d)(?:/\d{1,2})?\b")
_HASH_RE = re.compile(r"\b(?:[a-f0-9]{128}|[a-f0-9]{64}|[a-f0-9]{40}|[a-f0-9]{32})\b", re.IGNORECASE)
_DOMAIN_RE = re.compile(
    r"\b(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+(?:[a-z]{2,24}|xn--[a-z0-9-]{2,59})\b",
    re.IGNORECASE,
)
_ASN_RE = re.compile(r"^as\d+$", re.IGNORECASE)
_HEX_RE = re.compile(r"^[a-f0-9]+$", re.IGNORECASE)

# File extensions that look like TLDs in prose.
_NOT_TLDS = frozenset(
    {"exe", "dll", "js", "ps1", "bat", "doc", "docx", "xls", "xlsx", "pdf", "zip", "txt", "php", "html", "htm", "png", "jpg"}
)

# Scanned in this order; later patterns skip text already claimed.
_EXTRACTORS: tuple[tuple[str, re.Pattern[str]], ...] = (
    (IndicatorKind.URL.value, _URL_RE),
    (IndicatorKind.EMAIL.value, _EMAIL_RE),
    (IndicatorKind.HASH.value, _HASH_RE),
    (IndicatorKind.IP.value, _IPV4_RE),
    (IndicatorKind.DOMAIN.value, _DOMAIN_RE),
)


def refang(text: str) -> str:
    text = re.sub(r"\[\.\]|\(\.\)|\{\.\}|\[dot\]", ".", text, flags=re.IGNORECASE)
    text = re.sub(r"\[@\]|\[at\]", "@", text, flags=re.IGNORECASE)
    text = text.replace("[://]", "://").replace("[:]", ":")
    return re.sub(r"\bhxxp", "http", text, flags=re.IGNORECASE)


def _is_domain(value: str) -> bool:
    return bool(_DOMAIN_RE.fullmatch(value)) and value.rsplit(".", 1)[-1].lower() not in _NOT_TLDS


def infer_kind(value: str) -> str | None:
    """Best-effort kind for a bare value, or ``None`` when nothing fits."""
    candidate = refang(value.strip())
    if not candidate:
        return None
    if "://" in candidate:
        return IndicatorKind.URL.value
    try:
        ipaddress.ip_network(candidate, strict=False)
    except ValueError:
        pass
    else:
        return IndicatorKind.CIDR.value if "/" in candidate else IndicatorKind.IP.value
    if _ASN_RE.match(candidate):
        return IndicatorKind.ASN.value
    if _HEX_RE.match(candidate) and len(candidate) in (32, 40, 64, 128):
        return IndicatorKind.HASH.value
    if _EMAIL_RE.fullmatch(candidate):
        return IndicatorKind.EMAIL.value
    if _is_domain(candidate):
        return IndicatorKind.DOMAIN.value
    return None


def extract_indicators(text: str) -> list[tuple[str, str]]:
    """Return ``(kind, value)`` pairs found in *text*, in discovery order.

    Text is refanged first.  A host that only appears inside an extracted
    URL or email address is not reported on its own.
    """
    plain = refang(text)
    claimed: list[tuple[int, int]] = []
    found: dict[tuple[str, str], None] = {}

    for kind, pattern in _EXTRACTORS:
        for match in pattern.finditer(plain):
            start, end = match.span()
            if any(s < end and start < e for s, e in claimed):
                continue
            value = match.group(0).rstrip(".,;:)]")
            if kind == IndicatorKind.DOMAIN.value and not _is_domain(value):
                continue
            found_kind = IndicatorKind.CIDR.value if kind == IndicatorKind.IP.value and "/" in value else kind
            claimed.append((start, end))
            found.setdefault((found_kind, value), None)
    return list(found)
