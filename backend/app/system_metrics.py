import threading
import time
from typing import Any


_lock = threading.Lock()
_DISCONNECT_REASONS = (
    "client_disconnect",
    "heartbeat_timeout",
    "session_ended",
    "init_failed",
    "message_too_large",
)
_metrics: dict[str, float] = {
    "ws_connections_active": 0.0,
    "ws_disconnects_total": 0.0,
    **{f"ws_disconnect_{reason}": 0.0 for reason in _DISCONNECT_REASONS},
    "ws_disconnect_other": 0.0,
    "transcripts_stored": 0.0,
    "assistant_responses_sent": 0.0,
    "bridge_failures": 0.0,
    "tokens_issued": 0.0,
    "token_failures": 0.0,
    "response_latency_total_ms": 0.0,
    "response_latency_samples": 0.0,
}


def increment_metric(name: str, amount: float = 1.0) -> None:
    key = str(name or "").strip()
    if not key:
        return
    with _lock:
        _metrics[key] = float(_metrics.get(key, 0.0)) + float(amount)


def decrement_metric(name: str, amount: float = 1.0) -> None:
    key = str(name or "").strip()
    if not key:
        return
    with _lock:
        next_value = float(_metrics.get(key, 0.0)) - float(amount)
        _metrics[key] = max(0.0, next_value)


def observe_response_latency_ms(value_ms: float) -> None:
    latency = max(0.0, float(value_ms or 0.0))
    with _lock:
        _metrics["response_latency_total_ms"] = float(_metrics.get("response_latency_total_ms", 0.0)) + latency
        _metrics["response_latency_samples"] = float(_metrics.get("response_latency_samples", 0.0)) + 1.0


def record_ws_disconnect(reason: str) -> None:
    normalized = str(reason or "").strip().lower().replace(" ", "_").replace("-", "_")
    metric_key = f"ws_disconnect_{normalized}" if normalized in _DISCONNECT_REASONS else "ws_disconnect_other"
    with _lock:
        _metrics["ws_disconnects_total"] = float(_metrics.get("ws_disconnects_total", 0.0)) + 1.0
        _metrics[metric_key] = float(_metrics.get(metric_key, 0.0)) + 1.0


def get_metrics_snapshot(extra: dict[str, Any] | None = None) -> dict[str, Any]:
    with _lock:
        data = dict(_metrics)

    latency_samples = max(1.0, float(data.get("response_latency_samples") or 0.0))

    payload: dict[str, Any] = {"generated_at": time.time()}
    for key, value in data.items():
        if key == "response_latency_total_ms":
            payload[key] = float(value or 0.0)
        else:
            payload[key] = int(value or 0.0)
    payload["avg_response_latency_ms"] = round(float(data.get("response_latency_total_ms") or 0.0) / latency_samples, 2)

    if extra:
        payload.update(extra)
    return payload
