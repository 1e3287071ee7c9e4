"""Destination streams and per-stream row projections."""

from iis_ingest.models import (
    LOG_FAILURES,
    LOGS,
    STATIC,
    ClassifiedRecord,
    FailureRecord,
)

COLUMNS: dict[str, tuple[str, ...]] = {
    LOGS: (
        "event_time", "client_ip", "cookie_raw", "host", "referer",
        "uri_query", "uri_path", "username", "server_name", "status",
        "elapsed_ms", "bytes_sent", "bytes_received",
    ),
    LOG_FAILURES: ("reason", "raw_log"),
    STATIC: ("event_time", "username", "uri_path"),
}


def destinations(result: ClassifiedRecord | FailureRecord) -> frozenset[str]:
    """Return the set of streams a single extraction result is written to."""
    if isinstance(result, FailureRecord):
        return frozenset({LOG_FAILURES})
    if result.is_static:
        return frozenset({LOGS, STATIC})
    return frozenset({LOGS})


def to_row(stream: str, result: ClassifiedRecord | FailureRecord) -> tuple:
    """Project a result onto the column list of *stream*, in column order."""
    if stream == LOG_FAILURES:
        if not isinstance(result, FailureRecord):
            raise TypeError(f"{stream} rows are built from FailureRecord, got {type(result).__name__}")
        return (result.reason, result.raw_log)
    if isinstance(result, FailureRecord):
        raise TypeError(f"{stream} rows are built from ClassifiedRecord, got FailureRecord")
    record = result.record
    return tuple(getattr(record, column) for column in COLUMNS[stream])


def row_size(row: tuple) -> int:
    """Rough encoded size of a row, used for the byte-size flush trigger."""
    return sum(len(str(value).encode("utf-8")) for value in row if value is not None)
