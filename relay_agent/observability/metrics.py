"""Turn and delivery metrics backed by an append-only JSONL file."""

from __future__ import annotations

import json
from collections import Counter
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from relay_agent.utils.helpers import ensure_dir


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def _event_time(event: dict[str, Any]) -> datetime | None:
    """UTC timestamp of an event; naive stamps are taken as UTC."""
    raw = str(event.get("ts") or "").strip()
    if not raw:
        return None
    try:
        stamp = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if stamp.tzinfo is None:
        return stamp.replace(tzinfo=timezone.utc)
    return stamp.astimezone(timezone.utc)


def _rate(part: int, whole: int) -> float:
    return round(part * 100.0 / whole, 2) if whole > 0 else 0.0


def _percentile(values: list[float], fraction: float = 0.95) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    return round(ordered[int(fraction * (len(ordered) - 1))], 2)


def _label(value: str) -> str:
    escaped = str(value or "").replace("\\", "\\\\")
    return escaped.replace("\n", "\\n").replace('"', '\\"')


class MetricsStore:
    """Append-only turn events with windowed snapshots."""

    def __init__(self, events_path: Path):
        self.events_path = events_path
        ensure_dir(events_path.parent)

    def _write_event(self, kind: str, fields: dict[str, Any]) -> bool:
        record = {"type": kind, "ts": _utcnow().isoformat(), **fields}
        try:
            with self.events_path.open("a", encoding="utf-8") as stream:
                stream.write(json.dumps(record, ensure_ascii=False) + "\n")
        except OSError:
            return False
        return True

    def record_turn(
        self,
        *,
        session_key: str,
        model: str,
        success: bool,
        latency_ms: float,
        attempts: int = 1,
        reason: str = "",
        error: str = "",
    ) -> bool:
        return self._write_event(
            "turn",
            {
                "session_key": (session_key or "").strip(),
                "model": (model or "").strip(),
                "success": bool(success),
                "latency_ms": round(float(latency_ms), 2),
                "attempts": max(0, int(attempts)),
                "reason": (reason or "").strip(),
                "error": (error or "").strip()[:500],
            },
        )

    def record_delivery(self, *, channel: str, chunks: int, sent: int, error: str = "") -> bool:
        return self._write_event(
            "delivery",
            {
                "channel": (channel or "").strip(),
                "chunks": max(0, int(chunks)),
                "sent": max(0, int(sent)),
                "success": int(sent) >= int(chunks),
                "error": (error or "").strip()[:500],
            },
        )

    def _load(self) -> list[dict[str, Any]]:
        try:
            text = self.events_path.read_text(encoding="utf-8")
        except OSError:
            return []
        events: list[dict[str, Any]] = []
        for line in text.splitlines():
            if not line.strip():
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(event, dict):
                events.append(event)
        return events

    def _window(self, hours: int) -> list[dict[str, Any]]:
        since = _utcnow() - timedelta(hours=hours)
        window = []
        for event in self._load():
            stamp = _event_time(event)
            if stamp is not None and stamp >= since:
                window.append(event)
        return window

    def snapshot(self, hours: int = 24) -> dict[str, Any]:
        """Aggregate turn and delivery events for the last `hours`."""
        window_hours = max(1, int(hours))
        events = self._window(window_hours)
        turns = [e for e in events if e.get("type") == "turn"]
        deliveries = [e for e in events if e.get("type") == "delivery"]

        ok_turns = [e for e in turns if e.get("success")]
        models = Counter(str(e.get("model") or "unknown") for e in turns)
        reasons = Counter(str(e.get("reason") or "unknown") for e in turns if not e.get("success"))
        ok_deliveries = sum(1 for e in deliveries if e.get("success"))

        return {
            "window_hours": window_hours,
            "generated_at": _utcnow().isoformat(),
            "events_file": str(self.events_path),
            "totals": {"events": len(events)},
            "turns": {
                "count": len(turns),
                "success": len(ok_turns),
                "errors": len(turns) - len(ok_turns),
                "success_rate": _rate(len(ok_turns), len(turns)),
                "latency_ms_p95": _percentile([float(e.get("latency_ms") or 0.0) for e in turns]),
                "retried": sum(1 for e in turns if int(e.get("attempts") or 0) > 1),
                "failure_reasons": dict(sorted(reasons.items())),
                "models": dict(sorted(models.items())),
            },
            "delivery": {
                "count": len(deliveries),
                "success": ok_deliveries,
                "errors": len(deliveries) - ok_deliveries,
                "chunks_sent": sum(int(e.get("sent") or 0) for e in deliveries),
            },
        }

    def prometheus_text(self, hours: int = 24) -> str:
        """Render the snapshot in Prometheus text exposition format."""
        data = self.snapshot(hours=hours)
        turns = data["turns"]
        delivery = data["delivery"]
        lines = [
            "# HELP relay_agent_turns_total Turns in snapshot window",
            "# TYPE relay_agent_turns_total gauge",
            f"relay_agent_turns_total {turns['count']}",
            f"relay_agent_turn_success_total {turns['success']}",
            f"relay_agent_turn_errors_total {turns['errors']}",
            f"relay_agent_turn_success_rate_pct {turns['success_rate']}",
            f"relay_agent_turn_latency_p95_ms {turns['latency_ms_p95']}",
            f"relay_agent_turn_retried_total {turns['retried']}",
            "# HELP relay_agent_deliveries_total Outbound deliveries in snapshot window",
            "# TYPE relay_agent_deliveries_total gauge",
            f"relay_agent_deliveries_total {delivery['count']}",
            f"relay_agent_delivery_errors_total {delivery['errors']}",
            f"relay_agent_chunks_sent_total {delivery['chunks_sent']}",
        ]
        lines.extend(
            f'relay_agent_turn_failures{{reason="{_label(reason)}"}} {count}'
            for reason, count in turns["failure_reasons"].items()
        )
        return "\n".join(lines) + "\n"

    def prune_events(self, *, keep_hours: int = 168, max_events: int = 50000) -> dict[str, Any]:
        """Drop events older than `keep_hours` and cap the file at `max_events`."""
        cutoff = _utcnow() - timedelta(hours=max(1, int(keep_hours)))
        events = self._load()
        kept = [e for e in events if (stamp := _event_time(e)) is None or stamp >= cutoff]
        limit = max(0, int(max_events))
        if limit and len(kept) > limit:
            kept = kept[-limit:]

        result: dict[str, Any] = {"ok": True, "before": len(events), "after": len(kept)}
        if len(kept) == len(events):
            return result

        staging = self.events_path.with_name(self.events_path.name + ".tmp")
        try:
            staging.write_text("".join(json.dumps(e, ensure_ascii=False) + "\n" for e in kept), encoding="utf-8")
            staging.replace(self.events_path)
        except OSError as e:
            result.update(ok=False, error=str(e))
        return result
