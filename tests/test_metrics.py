"""Tests for metrics collection and export."""

from maintrack.metrics import MetricsCollector


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_counter_increment():
    m = MetricsCollector()
    m.inc("feed_events_total")
    m.inc("feed_events_total")
    assert m.get("feed_events_total") == 2


def test_unknown_metric_reads_zero():
    m = MetricsCollector()
    assert m.get("refreshes_total") == 0
    assert "refreshes_total" not in m.snapshot()


def test_gauge_set():
    m = MetricsCollector()
    m.set_gauge("tasks_cached", 12)
    m.set_gauge("tasks_cached", 11)
    assert m.get("tasks_cached") == 11


def test_snapshot_uses_short_names():
    clock = FakeClock()
    m = MetricsCollector(clock=clock)
    m.inc("mutation_failures_total")
    m.set_gauge("tasks_cached", 3)
    clock.now += 42.0

    assert m.snapshot() == {
        "mutation_failures_total": 1,
        "tasks_cached": 3,
        "uptime_seconds": 42.0,
    }


def test_render_exposition_text():
    m = MetricsCollector(clock=FakeClock())
    m.inc("refreshes_total", 5)
    m.set_gauge("tasks_cached", 2)

    assert m.render().splitlines() == [
        "# HELP maintrack_refreshes_total Task list fetches completed by the listener.",
        "# TYPE maintrack_refreshes_total counter",
        "maintrack_refreshes_total 5",
        "# HELP maintrack_tasks_cached Tasks in the last delivered list.",
        "# TYPE maintrack_tasks_cached gauge",
        "maintrack_tasks_cached 2",
        "# HELP maintrack_uptime_seconds Seconds since the collector was created.",
        "# TYPE maintrack_uptime_seconds gauge",
        "maintrack_uptime_seconds 0.0",
    ]


def test_write_textfile_replaces_file(tmp_path):
    target = tmp_path / "collector" / "maintrack.prom"
    m = MetricsCollector(clock=FakeClock())
    m.inc("feed_events_total")
    m.write_textfile(target)
    m.inc("feed_events_total")
    m.write_textfile(target)

    assert "maintrack_feed_events_total 2" in target.read_text()
    assert [p.name for p in target.parent.iterdir()] == ["maintrack.prom"]
