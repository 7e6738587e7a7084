# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Per-kind value normalization and content-addressed fingerprints.

``normalize`` is total: values that cannot be parsed for their kind are
still returned in a trimmed, defanged form rather than raising.  Every
branch is idempotent, so ``normalize(k, normalize(k, v)) == normalize(k, v)``.
"""

from __future__ import annotations

import hashlib
import ipaddress
import re
from urllib.parse import urlsplit, urlunsplit

from tiace.core.constants import CUSTOM_KIND_PREFIX, IndicatorKind

_DEFANG_DOT = re.compile(r"\[\.\]|\(\.\)|\{\.\}|\[dot\]|\(dot\)", re.IGNORECASE)
_DEFANG_AT = re.compile(r"\[@\]|\(@\)|\[at\]|\(at\)", re.IGNORECASE)
_DEFANG_SCHEME = re.compile(r"^(hxxp|hxxps|fxp)(?=\[?:)", re.IGNORECASE)
_ASN_RE = re.compile(r"^(?:as)?\s*(\d+)$", re.IGNORECASE)
_HEX_SEPARATORS = re.compile(r"[\s:]")
_CUSTOM_TAG_RE = re.compile(r"[^a-z0-9._-]+")

_DEFAULT_PORTS = {"http": 80, "https": 443, "ftp": 21}


def custom_kind(tag: str) -> str:
    """Return the ``custom:<tag>`` kind string for *tag*."""
    cleaned = _CUSTOM_TAG_RE.sub("-", tag.strip().lower().replace("\x00", "")).strip("-")
    return f"{CUSTOM_KIND_PREFIX}{cleaned or 'unknown'}"


def is_custom_kind(kind: str) -> bool:
    return kind.startswith(CUSTOM_KIND_PREFIX)


def canonical_kind(kind: str) -> str:
    """Map a kind spelling onto a built-in kind or a ``custom:`` kind."""
    lowered = kind.strip().lower()
    try:
        return IndicatorKind(lowered).value
    except ValueError:
        pass
    if lowered.startswith(CUSTOM_KIND_PREFIX):
        return custom_kind(lowered[len(CUSTOM_KIND_PREFIX):])
    return custom_kind(lowered)


def _undefang(value: str) -> str:
    # nested brackets ("[[.]]") unwrap one layer per pass
    while True:
        refanged = _DEFANG_DOT.sub(".", value)
        refanged = _DEFANG_AT.sub("@", refanged)
        refanged = refanged.replace("[:]", ":").replace("[://]", "://")
        if refanged == value:
            return value
        value = refanged


def _normalize_domain(value: str) -> str:
    value = _undefang(value).lower()
    # "x. ." needs whitespace and trailing dots trimmed until neither remains
    return value.strip().rstrip(". \t\r\n")


def _normalize_email(value: str) -> str:
    return _undefang(value).strip().lower()


def _normalize_ip(value: str) -> str:
    value = _undefang(value).strip()
    try:
        return ipaddress.ip_address(value).compressed
    except ValueError:
        return value.lower()


def _normalize_cidr(value: str) -> str:
    value = _undefang(value).strip()
    try:
        return ipaddress.ip_network(value, strict=False).compressed
    except ValueError:
        return value.lower()


def _normalize_hash(value: str) -> str:
    return _HEX_SEPARATORS.sub("", value).lower()


def _normalize_url(value: str) -> str:
    value = _DEFANG_SCHEME.sub(lambda m: m.group(1).lower().replace("xx", "tt").replace("fxp", "ftp"), value.strip())
    value = _undefang(value)
    try:
        parts = urlsplit(value)
    except ValueError:
        return value
    if not parts.scheme or not parts.netloc:
        return value
    scheme = parts.scheme.lower()
    netloc = parts.netloc
    userinfo, sep, hostport = netloc.rpartition("@")
    host, port = hostport, ""
    if not hostport.startswith("[") and hostport.count(":") == 1:
        host, _, port = hostport.partition(":")
    elif hostport.startswith("[") and "]:" in hostport:
        host, _, port = hostport.rpartition(":")
    host = host.lower().rstrip(".")
    if port and port.isdigit() and _DEFAULT_PORTS.get(scheme) == int(port):
        port = ""
    hostport = f"{host}:{port}" if port else host
    netloc = f"{userinfo}{sep}{hostport}"
    path = parts.path or "/"
    return urlunsplit((scheme, netloc, path, parts.query, parts.fragment))


def _normalize_asn(value: str) -> str:
    match = _ASN_RE.match(value.strip())
    if match:
        return f"AS{int(match.group(1))}"
    return value.strip().upper()


def _normalize_certificate(value: str) -> str:
    return _HEX_SEPARATORS.sub("", value).lower()


_NORMALIZERS = {
    IndicatorKind.IP.value: _normalize_ip,
    IndicatorKind.DOMAIN.value: _normalize_domain,
    IndicatorKind.URL.value: _normalize_url,
    IndicatorKind.HASH.value: _normalize_hash,
    IndicatorKind.EMAIL.value: _normalize_email,
    IndicatorKind.ASN.value: _normalize_asn,
    IndicatorKind.CIDR.value: _normalize_cidr,
    IndicatorKind.CERTIFICATE.value: _normalize_certificate,
}


def normalize(kind: str, raw: str) -> str:
    """Return the canonical value of *raw* for indicator *kind*.

    Kinds without a dedicated rule (user-agent, mutex, custom kinds) are
    only trimmed.
    """
    normalizer = _NORMALIZERS.get(kind)
    if normalizer is None:
        return raw.strip()
    return normalizer(raw)


def fingerprint(kind: str, value: str) -> bytes:
    """SHA-256 over ``kind || 0x00 || value``.

    Kinds never contain NUL, so two fingerprints collide only when both the
    kind and the normalized value are equal.
    """
    return hashlib.sha256(kind.encode("utf-8") + b"\x00" + value.encode("utf-8")).digest()


def hash_algorithm(value: str) -> str | None:
    """Guess the digest algorithm of a normalized hex hash from its length."""
    return {32: "MD5", 40: "SHA-1", 64: "SHA-256", 128: "SHA-512"}.get(len(value))
