"""Parses IIS log lines into typed records.

Expected layout (whitespace separated)::

    2025-04-14 10:22:31 10.0.0.5 GET /app/page - 200 512 128 45 cs_cookie=teammsiuid=bob

    date time client method uri-path [uri-query] status bytes-sent
    bytes-received time-taken [name=value ...]

The query token is optional; ``-`` means no query. Trailing ``name=value``
attributes carry the extended fields (cookie, referer, host, server name).
Any mismatch, including an unparsable timestamp, produces a FailureRecord
instead of raising.
"""

import ipaddress
import logging
import re
from datetime import datetime, timezone, tzinfo
from typing import Callable

from iis_ingest.models import (
    GRAMMAR_MISMATCH,
    FailureRecord,
    ParsedRecord,
    RawLine,
)

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
USERNAME_COOKIE = "teammsiuid"

_NUMERIC_FIELDS = ("status", "bytes_sent", "bytes_received", "elapsed_ms")

# Largest value a BIGINT column accepts.
_BIGINT_MAX = 2**63 - 1

_ATTRIBUTES = {
    "cs_cookie": "cookie_raw",
    "cs_referer": "referer",
    "cs_host": "host",
    "s_computername": "server_name",
}

_HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}$)[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*$"
)


class _Mismatch(Exception):
    """Raised internally when a token does not fit the grammar."""


def parse_cookie(cookie: str) -> dict[str, str]:
    """Split a cookie string into key/value pairs.

    Pairs are separated by ``;`` and split on their first ``=``. Pairs
    without ``=`` are ignored. IIS encodes spaces as ``+``, so keys are
    stripped of both.
    """
    pairs: dict[str, str] = {}
    for chunk in cookie.split(";"):
        key, sep, value = chunk.partition("=")
        if not sep:
            continue
        key = key.strip(" +")
        if key:
            pairs[key] = value.strip()
    return pairs


def _parse_timestamp(date: str, time: str, tz: tzinfo) -> datetime:
    if len(date) != 10 or len(time) != 8:
        raise _Mismatch(f"timestamp: unexpected layout {date} {time!r}")
    try:
        naive = datetime.strptime(f"{date} {time}", TIMESTAMP_FORMAT)
    except ValueError as exc:
        raise _Mismatch(f"timestamp: {exc}") from exc
    return naive.replace(tzinfo=tz)


def _parse_client(token: str) -> str:
    try:
        ipaddress.ip_address(token)
        return token
    except ValueError:
        pass
    if _HOSTNAME_RE.match(token):
        return token
    raise _Mismatch(f"client: not an IP address or hostname: {token!r}")


def _parse_method(token: str) -> str:
    if token.isascii() and token.isalpha():
        return token
    raise _Mismatch(f"method: not a method token: {token!r}")


def _parse_path(token: str) -> str:
    if token.startswith("/"):
        return token
    raise _Mismatch(f"uri_path: must start with '/': {token!r}")


def _parse_uint(name: str, token: str) -> int:
    if not (token.isascii() and token.isdigit()):
        raise _Mismatch(f"{name}: not a non-negative integer: {token!r}")
    value = int(token)
    if value > _BIGINT_MAX:
        raise _Mismatch(f"{name}: out of range: {token!r}")
    return value


def _parse_status(token: str) -> int:
    if len(token) != 3:
        raise _Mismatch(f"status: expected a 3-digit code: {token!r}")
    return _parse_uint("status", token)


def _parse_fields(text: str, tz: tzinfo) -> dict:
    if "\x00" in text:
        raise _Mismatch("line contains NUL characters")
    tokens = text.split()
    if len(tokens) < 9:
        raise _Mismatch(f"expected at least 9 fields, got {len(tokens)}")

    # Numeric fields never contain '=', so the last token without one closes
    # the positional block and everything after it is a name=value attribute.
    last_plain = max(
        (i for i, tok in enumerate(tokens) if "=" not in tok), default=-1
    )
    numeric_start = last_plain - len(_NUMERIC_FIELDS) + 1
    if numeric_start < 5:
        raise _Mismatch("missing status, byte count or time-taken fields")
    if numeric_start > 6:
        raise _Mismatch(f"unexpected token after uri query: {tokens[6]!r}")

    fields = {
        "event_time": _parse_timestamp(tokens[0], tokens[1], tz),
        "client_ip": _parse_client(tokens[2]),
        "method": _parse_method(tokens[3]),
        "uri_path": _parse_path(tokens[4]),
    }
    if numeric_start == 6 and tokens[5] != "-":
        fields["uri_query"] = tokens[5]

    numeric = tokens[numeric_start:last_plain + 1]
    fields["status"] = _parse_status(numeric[0])
    for name, token in zip(_NUMERIC_FIELDS[1:], numeric[1:]):
        fields[name] = _parse_uint(name, token)

    for token in tokens[last_plain + 1:]:
        name, _, value = token.partition("=")
        field = _ATTRIBUTES.get(name)
        if field is None or value == "-":
            continue
        fields[field] = value

    cookie = fields.get("cookie_raw")
    if cookie:
        username = parse_cookie(cookie).get(USERNAME_COOKIE)
        if username:
            fields["username"] = username
    return fields


def extract(
    line: RawLine | str,
    tz: tzinfo = timezone.utc,
    now: Callable[[], datetime] | None = None,
) -> ParsedRecord | FailureRecord:
    """Parse one log line into a ParsedRecord, or a FailureRecord if it does
    not match the grammar. Never raises for malformed input."""
    text = line.text if isinstance(line, RawLine) else line
    text = text.rstrip("\r\n")
    try:
        return ParsedRecord(**_parse_fields(text, tz))
    except _Mismatch as exc:
        failure_time = now() if now is not None else datetime.now(timezone.utc)
        logger.debug("Grammar mismatch (%s): %r", exc, text)
        return FailureRecord(
            reason=GRAMMAR_MISMATCH,
            # TEXT columns reject NUL.
            raw_log=text.replace("\x00", "\ufffd"),
            failure_time=failure_time,
            detail=str(exc),
        )
