import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

from relay_agent.observability.metrics import MetricsStore


def test_snapshot_aggregates_turns_and_deliveries(tmp_path: Path):
    store = MetricsStore(tmp_path / "metrics" / "events.jsonl")
    store.record_turn(session_key="cli", model="anthropic/claude-sonnet-4-5", success=True, latency_ms=120, attempts=1)
    store.record_turn(
        session_key="cli", model="openai/gpt-4o", success=True, latency_ms=900, attempts=3
    )
    store.record_turn(
        session_key="cli",
        model="openai/gpt-4o",
        success=False,
        latency_ms=50,
        attempts=4,
        reason="rate_limit",
        error="exhausted retries",
    )
    store.record_delivery(channel="webhook", chunks=3, sent=3)
    store.record_delivery(channel="webhook", chunks=2, sent=1, error="down")

    snapshot = store.snapshot(hours=24)
    turns = snapshot["turns"]
    assert turns["count"] == 3
    assert turns["success"] == 2
    assert turns["errors"] == 1
    assert turns["success_rate"] == 66.67
    assert turns["retried"] == 2
    assert turns["failure_reasons"] == {"rate_limit": 1}
    assert turns["models"] == {"anthropic/claude-sonnet-4-5": 1, "openai/gpt-4o": 2}
    assert snapshot["delivery"] == {"count": 2, "success": 1, "errors": 1, "chunks_sent": 4}

    text = store.prometheus_text()
    assert "relay_agent_turns_total 3" in text
    assert 'relay_agent_turn_failures{reason="rate_limit"} 1' in text


def test_snapshot_window_and_prune(tmp_path: Path):
    path = tmp_path / "events.jsonl"
    store = MetricsStore(path)
    old = (datetime.now(timezone.utc) - timedelta(hours=48)).isoformat()
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps({"type": "turn", "success": True, "ts": old}) + "\n")
        handle.write("not json\n")
    store.record_turn(session_key="cli", model="m", success=True, latency_ms=1)

    assert store.snapshot(hours=24)["turns"]["count"] == 1
    assert store.snapshot(hours=72)["turns"]["count"] == 2

    result = store.prune_events(keep_hours=24)
    assert result == {"ok": True, "before": 2, "after": 1}
    assert len(path.read_text(encoding="utf-8").splitlines()) == 1
