"""Record types flowing through the ingest pipeline."""

from dataclasses import dataclass
from datetime import datetime

# Destination streams
LOGS = "logs"
LOG_FAILURES = "log_failures"
STATIC = "static"
STREAMS = (LOGS, LOG_FAILURES, STATIC)

# Failure reasons
GRAMMAR_MISMATCH = "grammar mismatch"

STATIC_CATEGORY = "static"
DYNAMIC_CATEGORY = "dynamic"


@dataclass(frozen=True)
class RawLine:
    source: str
    offset: int     # byte offset of the line start
    line_no: int
    text: str


@dataclass(frozen=True)
class ParsedRecord:
    event_time: datetime
    client_ip: str
    method: str
    uri_path: str
    status: int
    bytes_sent: int
    bytes_received: int
    elapsed_ms: int
    uri_query: str | None = None
    cookie_raw: str | None = None
    referer: str | None = None
    host: str | None = None
    server_name: str | None = None
    username: str | None = None


@dataclass(frozen=True)
class FailureRecord:
    reason: str
    raw_log: str
    failure_time: datetime
    detail: str = ""


@dataclass(frozen=True)
class ClassifiedRecord:
    record: ParsedRecord
    category: str

    @property
    def is_static(self) -> bool:
        return self.category == STATIC_CATEGORY
