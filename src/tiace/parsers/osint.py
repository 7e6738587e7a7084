# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""OSINT list parsers: plain text, CSV and TSV.

Plain text is one value per line with ``#``/``;`` comments; kinds are
inferred.  Delimited files are read with :class:`csv.DictReader` when the
header names a value column (the CSV export header
``type,value,confidence,severity,source,timestamp,tags`` included), and
positionally (first column is the value) otherwise.
"""

from __future__ import annotations

import csv
import io

from tiace.core.exceptions import MalformedRecordError
from tiace.models.feed import FeedConfiguration, RawRecord
from tiace.parsers.base import ParseResult, coerce_confidence, make_indicator
from tiace.parsers.decode import load_text
from tiace.parsers.extract import infer_kind

_VALUE_COLUMNS = ("value", "indicator", "ioc", "ioc_value", "observable")
_KIND_COLUMNS = ("type", "kind", "ioc_type", "indicator_type")
_SEEN_COLUMNS = ("timestamp", "first_seen", "date", "dateadded", "firstseen")
_TAG_COLUMNS = ("tags", "tag", "threat", "category")


def _pick(row: dict[str, str], names: tuple[str, ...]) -> str:
    for name in names:
        value = row.get(name)
        if value:
            return value.strip()
    return ""


def _emit_value(
    result: ParseResult,
    config: FeedConfiguration,
    value: str,
    *,
    kind: str = "",
    line: int,
    **fields: object,
) -> None:
    kind = kind or infer_kind(value) or ""
    if not kind:
        result.fail(MalformedRecordError(f"line {line}: cannot determine indicator kind for {value[:80]!r}"))
        return
    result.emit(make_indicator(config, kind, value, item={"line": line, "value": value}, **fields), config)


def parse_text(record: RawRecord, config: FeedConfiguration) -> ParseResult:
    result = ParseResult()
    for number, line in enumerate(load_text(record.payload).splitlines(), start=1):
        value = line.split("#", 1)[0].strip()
        if not value or value.startswith(";"):
            continue
        # Some lists append a comment after whitespace ("1.2.3.4  # scanner").
        value = value.split()[0]
        _emit_value(result, config, value, line=number)
    return result


def _parse_delimited(record: RawRecord, config: FeedConfiguration, delimiter: str) -> ParseResult:
    result = ParseResult()
    lines = [ln for ln in load_text(record.payload).splitlines() if ln.strip() and not ln.lstrip().startswith("#")]
    if not lines:
        return result

    header = [h.strip().lower() for h in next(csv.reader([lines[0]], delimiter=delimiter))]
    if any(col in header for col in _VALUE_COLUMNS):
        reader = csv.DictReader(io.StringIO("\n".join(lines)), delimiter=delimiter)
        reader.fieldnames = header
        for number, row in enumerate(reader, start=2):
            value = _pick(row, _VALUE_COLUMNS)
            if not value:
                result.fail(MalformedRecordError(f"line {number}: empty value column"))
                continue
            tags_cell = _pick(row, _TAG_COLUMNS)
            _emit_value(
                result,
                config,
                value,
                kind=_pick(row, _KIND_COLUMNS),
                line=number,
                confidence=coerce_confidence(row.get("confidence"), config.reliability),
                severity=row.get("severity") or None,
                first_seen=_pick(row, _SEEN_COLUMNS) or None,
                last_seen=row.get("last_seen") or _pick(row, _SEEN_COLUMNS) or None,
                tags={t.strip() for t in tags_cell.replace(";", ",").split(",") if t.strip()},
                description=row.get("description") or "",
            )
        return result

    for number, row in enumerate(csv.reader(lines, delimiter=delimiter), start=1):
        if row and row[0].strip():
            _emit_value(result, config, row[0].strip(), line=number)
    return result


def parse_csv(record: RawRecord, config: FeedConfiguration) -> ParseResult:
    return _parse_delimited(record, config, ",")


def parse_tsv(record: RawRecord, config: FeedConfiguration) -> ParseResult:
    return _parse_delimited(record, config, "\t")
