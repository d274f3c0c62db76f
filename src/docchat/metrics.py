"""
Performance metrics collector for the DocChat API service.

Tracks: latency, throughput, memory usage, streamed fragments, sources and
errors by kind. Logs structured metrics to <METRICS_DIR>/metrics.jsonl.
"""
from __future__ import annotations

import json
import os
import threading
import time
from collections import Counter
from pathlib import Path

import psutil

from .config import METRICS_DIR


class MetricsCollector:
    """Thread-safe request metrics tracker with JSONL file logging."""

    def __init__(self, log_dir: str | Path = METRICS_DIR):
        self._lock = threading.Lock()
        self._start_time: float = time.time()

        # Counters.
        self._total_requests: int = 0
        self._total_latency_ms: float = 0.0
        self._error_count: int = 0
        self._errors_by_kind: Counter[str] = Counter()
        self._min_latency_ms: float = float("inf")
        self._max_latency_ms: float = 0.0

        # Stream tracking.
        self._total_fragments: int = 0
        self._total_sources: int = 0
        self._cut_off_streams: int = 0
        self._cancelled_streams: int = 0

        # Logging.
        self._log_dir = Path(log_dir)
        self._log_dir.mkdir(parents=True, exist_ok=True)
        self._log_path = self._log_dir / "metrics.jsonl"

        # Process handle for memory tracking.
        self._process = psutil.Process(os.getpid())

    def record_request(
        self,
        latency_ms: float,
        success: bool,
        error_kind: str = "",
        sources: int = 0,
        fragments: int = 0,
        streamed: bool = False,
        cancelled: bool = False,
    ) -> None:
        """Records a single request's outcome and appends to JSONL log.

        ``streamed`` marks failures that happened after the body started, i.e.
        answers the caller saw cut off. ``cancelled`` marks streams the caller
        abandoned; those are counted apart and are not errors.
        """
        entry = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "latency_ms": round(latency_ms, 2),
            "success": success,
            "cancelled": cancelled,
            "error_kind": error_kind or None,
            "sources": sources,
            "fragments": fragments,
        }

        with self._lock:
            self._total_requests += 1
            self._total_latency_ms += latency_ms
            if latency_ms < self._min_latency_ms:
                self._min_latency_ms = latency_ms
            if latency_ms > self._max_latency_ms:
                self._max_latency_ms = latency_ms
            if cancelled:
                self._cancelled_streams += 1
            elif not success:
                self._error_count += 1
                self._errors_by_kind[error_kind or "unknown"] += 1
                if streamed:
                    self._cut_off_streams += 1
            self._total_fragments += fragments
            self._total_sources += sources

        # Append to JSONL file outside the lock.
        try:
            with open(self._log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=True) + "\n")
        except OSError:
            pass

    def get_summary(self) -> dict:
        """Returns comprehensive metrics snapshot."""
        with self._lock:
            total = self._total_requests
            avg_lat = (self._total_latency_ms / total) if total > 0 else 0.0
            min_lat = self._min_latency_ms if total > 0 else 0.0
            max_lat = self._max_latency_ms if total > 0 else 0.0
            errors = self._error_count
            by_kind = dict(self._errors_by_kind)
            fragments = self._total_fragments
            sources = self._total_sources
            cut_off = self._cut_off_streams
            cancelled = self._cancelled_streams

        # Throughput.
        uptime_s = time.time() - self._start_time
        throughput_rps = (total / uptime_s) if uptime_s > 0 else 0.0

        # Memory usage.
        mem_info = self._process.memory_info()
        mem_rss_mb = mem_info.rss / (1024 * 1024)
        mem_vms_mb = mem_info.vms / (1024 * 1024)

        return {
            "latency": {
                "avg_ms": round(avg_lat, 2),
                "min_ms": round(min_lat, 2),
                "max_ms": round(max_lat, 2),
            },
            "throughput": {
                "total_requests": total,
                "requests_per_second": round(throughput_rps, 4),
                "uptime_seconds": round(uptime_s, 1),
            },
            "memory": {
                "rss_mb": round(mem_rss_mb, 1),
                "vms_mb": round(mem_vms_mb, 1),
            },
            "streaming": {
                "total_fragments": fragments,
                "avg_sources_per_query": round((sources / total) if total > 0 else 0.0, 2),
                "cut_off_streams": cut_off,
                "cancelled_streams": cancelled,
            },
            "errors": {
                "count": errors,
                "by_kind": by_kind,
                "rate_percent": round((errors / total * 100) if total > 0 else 0.0, 2),
            },
        }


# Module-level singleton used by the API server.
metrics_collector = MetricsCollector()
