"""Static/dynamic content classification by URI path extension."""

from iis_ingest.models import (
    DYNAMIC_CATEGORY,
    STATIC_CATEGORY,
    ClassifiedRecord,
    ParsedRecord,
)

STATIC_EXTENSIONS = frozenset({"css", "js", "png", "jpg", "gif", "ico"})


def is_static_path(path: str, extensions=STATIC_EXTENSIONS) -> bool:
    """Case-sensitive suffix match: ``/a/app.js`` is static, ``/a/APP.JS`` is not."""
    return path.endswith(tuple("." + ext for ext in extensions))


def classify(record: ParsedRecord, extensions=STATIC_EXTENSIONS) -> ClassifiedRecord:
    category = STATIC_CATEGORY if is_static_path(record.uri_path, extensions) else DYNAMIC_CATEGORY
    return ClassifiedRecord(record=record, category=category)
