"""End-to-end tests for the pipeline coordinator with an in-memory store."""

import json
import threading
import time
from datetime import datetime, timezone

import pytest

from iis_ingest.models import LOG_FAILURES, LOGS, STATIC, RawLine
from iis_ingest.pipeline import Pipeline
from iis_ingest.routing import COLUMNS


def _raw(text, line_no=1):
    return RawLine(source="/var/log/iis/u_ex.log", offset=0, line_no=line_no, text=text)


def _as_dicts(store, table):
    return [dict(zip(COLUMNS[table], row)) for row in store.rows(table)]


@pytest.fixture
def pipeline_for(make_config, store):
    def _make(sources, **overrides):
        return Pipeline(make_config(sources, **overrides), store, threading.Event())

    return _make


class TestProcessLine:
    def test_dynamic_line_goes_to_logs_only(self, pipeline_for, store, tmp_path):
        p = pipeline_for([tmp_path / "a.log"])
        line = "2025-04-14 10:22:31 10.0.0.5 GET /app/page 200 512 128 45 cs_cookie=teammsiuid=bob"
        assert p.process_line(_raw(line)) == {LOGS}
        p.checkpoint(timeout=2)

        [row] = _as_dicts(store, LOGS)
        assert row["event_time"] == datetime(2025, 4, 14, 10, 22, 31, tzinfo=timezone.utc)
        assert row["client_ip"] == "10.0.0.5"
        assert row["uri_path"] == "/app/page"
        assert row["username"] == "bob"
        assert row["status"] == 200
        assert store.rows(STATIC) == []
        assert store.rows(LOG_FAILURES) == []

    def test_malformed_line_goes_to_failures_only(self, pipeline_for, store, tmp_path):
        p = pipeline_for([tmp_path / "a.log"])
        assert p.process_line(_raw("not a valid log line")) == {LOG_FAILURES}
        p.checkpoint(timeout=2)

        assert store.rows(LOG_FAILURES) == [("grammar mismatch", "not a valid log line")]
        assert store.rows(LOGS) == []
        assert p.metrics.get("records_failed") == 1

    def test_static_line_goes_to_logs_and_static(self, pipeline_for, store, tmp_path, iis_line):
        p = pipeline_for([tmp_path / "a.log"])
        assert p.process_line(_raw(iis_line("/static/app.js"))) == {LOGS, STATIC}
        p.checkpoint(timeout=2)

        assert len(store.rows(LOGS)) == 1
        assert _as_dicts(store, STATIC)[0]["uri_path"] == "/static/app.js"
        assert p.metrics.get("records_static") == 1

    def test_custom_static_extensions(self, pipeline_for, store, tmp_path, iis_line):
        p = pipeline_for([tmp_path / "a.log"], static_extensions=frozenset({"woff2"}))
        assert p.process_line(_raw(iis_line("/fonts/a.woff2"))) == {LOGS, STATIC}
        assert p.process_line(_raw(iis_line("/static/app.js"))) == {LOGS}


class TestRun:
    def _write_source(self, path, lines):
        with open(path, "w") as f:
            for line in lines:
                f.write(line + "\n")

    def test_every_line_parsed_or_failed(self, pipeline_for, store, tmp_path, iis_line):
        src = tmp_path / "u_ex.log"
        lines = [
            iis_line("/app/page"),
            iis_line("/static/site.css"),
            "garbage",
            iis_line("/index.html"),
            "2025-99-99 10:22:31 10.0.0.5 GET / 200 1 1 1",
        ]
        self._write_source(src, ["#Fields: date time c-ip"] + lines)
        p = pipeline_for([src])
        p.run()

        parsed = p.metrics.get("records_parsed")
        failed = p.metrics.get("records_failed")
        assert parsed == 3 and failed == 2
        assert parsed + failed == len(lines)
        assert len(store.rows(LOGS)) == 3
        assert len(store.rows(STATIC)) == 1
        assert [r[1] for r in store.rows(LOG_FAILURES)] == ["garbage", lines[4]]

    def test_within_source_order_preserved(self, pipeline_for, store, tmp_path, iis_line):
        src = tmp_path / "u_ex.log"
        paths = [f"/page/{i}" for i in range(25)]
        self._write_source(src, [iis_line(path) for path in paths])
        p = pipeline_for([src])
        p.run()
        assert [row[6] for row in store.rows(LOGS)] == paths

    def test_restart_resumes_after_last_read(self, make_config, store, tmp_path, iis_line):
        src = tmp_path / "u_ex.log"
        self._write_source(src, [iis_line("/first")])
        config = make_config([src])
        Pipeline(config, store, threading.Event()).run()

        with open(src, "a") as f:
            f.write(iis_line("/second") + "\n")
        Pipeline(config, store, threading.Event()).run()

        assert [row[6] for row in store.rows(LOGS)] == ["/first", "/second"]
        with open(config.registry_file) as f:
            assert json.load(f)[str(src)]["offset"] == src.stat().st_size

    def test_failing_source_does_not_stop_others(self, pipeline_for, store, tmp_path, iis_line):
        good = tmp_path / "good.log"
        self._write_source(good, [iis_line("/ok")])
        p = pipeline_for([tmp_path / "missing.log", good])
        p.run()

        assert [row[6] for row in store.rows(LOGS)] == ["/ok"]
        assert p.metrics.get("source_errors") == 1

    def test_metrics_file_written(self, pipeline_for, tmp_path, iis_line, make_config):
        src = tmp_path / "u_ex.log"
        self._write_source(src, [iis_line()])
        p = pipeline_for([src])
        p.run()
        with open(make_config([src]).metrics_file) as f:
            data = json.load(f)
        assert data["counters"]["rows_written.logs"] == 1

    def test_shutdown_in_follow_mode_flushes(self, make_config, store, tmp_path, iis_line):
        src = tmp_path / "u_ex.log"
        self._write_source(src, [iis_line("/a"), iis_line("/b")])
        shutdown = threading.Event()
        p = Pipeline(make_config([src], mode="follow"), store, shutdown)
        t = threading.Thread(target=p.run, daemon=True)
        t.start()

        for _ in range(200):
            if p.metrics.get("records_parsed") == 2:
                break
            time.sleep(0.01)
        shutdown.set()
        t.join(timeout=5)

        assert not t.is_alive()
        assert [row[6] for row in store.rows(LOGS)] == ["/a", "/b"]
