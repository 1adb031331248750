"""
Prometheus Metrics Exporter module for cl-batch-open

Lightweight, thread-safe Prometheus exporter built on the standard library
(no prometheus_client). Counters and gauges with labels, served on /metrics
from a background HTTP server.

All metric names are prefixed with 'cl_batchopen_' to avoid collisions.
"""

import socket
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Dict, Optional


class MetricType:
    """Metric type constants."""
    GAUGE = "gauge"
    COUNTER = "counter"


class PrometheusExporter:
    """
    Lightweight Prometheus metrics exporter.

    Usage:
        exporter = PrometheusExporter(port=9810, plugin=plugin)
        exporter.start_server()
        exporter.inc_counter(MetricNames.OPEN_FAILURES_TOTAL, 1,
                             {"reason": "not_online"})
    """

    def __init__(self, port: int = 9810, plugin=None):
        self.port = port
        self.plugin = plugin

        self._lock = threading.Lock()
        # name -> {"type": ..., "help": ..., "values": {frozenset(labels): value}}
        self._metrics: Dict[str, Dict[str, Any]] = {}

        self._server: Optional[HTTPServer] = None
        self._server_thread: Optional[threading.Thread] = None
        self._running = False

    def _log(self, message: str, level: str = 'info'):
        if self.plugin:
            self.plugin.log(message, level=level)

    def _series(self, name: str, metric_type: str, help_text: str) -> Dict[Any, float]:
        # Caller holds the lock
        if name not in self._metrics:
            self._metrics[name] = {
                "type": metric_type,
                "help": help_text or METRIC_HELP.get(name, ""),
                "values": {}
            }
        return self._metrics[name]["values"]

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None,
                  help_text: str = "") -> None:
        """Set a gauge to value."""
        label_key = frozenset((labels or {}).items())
        with self._lock:
            self._series(name, MetricType.GAUGE, help_text)[label_key] = value

    def inc_counter(self, name: str, value: float = 1, labels: Optional[Dict[str, str]] = None,
                    help_text: str = "") -> None:
        """Increment a counter by value (default 1)."""
        label_key = frozenset((labels or {}).items())
        with self._lock:
            values = self._series(name, MetricType.COUNTER, help_text)
            values[label_key] = values.get(label_key, 0) + value

    def get_metric(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Current value for an exact label match, or None."""
        label_key = frozenset((labels or {}).items())
        with self._lock:
            if name in self._metrics:
                return self._metrics[name]["values"].get(label_key)
        return None

    def format_prometheus(self) -> str:
        """Render all metrics in the Prometheus text exposition format."""
        lines = []
        with self._lock:
            for name, metric in sorted(self._metrics.items()):
                if metric["help"]:
                    lines.append(f"# HELP {name} {metric['help']}")
                lines.append(f"# TYPE {name} {metric['type']}")

                for label_key, value in sorted(metric["values"].items(), key=lambda x: str(x[0])):
                    if label_key:
                        label_part = ", ".join(f'{k}="{v}"' for k, v in sorted(label_key))
                        lines.append(f"{name}{{{label_part}}} {value}")
                    else:
                        lines.append(f"{name} {value}")
                lines.append("")
        return "\n".join(lines)

    def _create_request_handler(self):
        exporter = self

        class MetricsHandler(BaseHTTPRequestHandler):
            def log_message(self, format, *args):
                # Keep the plugin's stdout clean, lightningd owns it
                pass

            def do_GET(self):
                try:
                    if self.path not in ('/', '/metrics'):
                        self.send_response(404)
                        self.send_header('Content-Type', 'text/plain')
                        self.end_headers()
                        self.wfile.write(b'Not Found. Try /metrics')
                        return

                    content = exporter.format_prometheus().encode('utf-8')
                    self.send_response(200)
                    self.send_header('Content-Type', 'text/plain; charset=utf-8')
                    self.send_header('Content-Length', str(len(content)))
                    self.end_headers()
                    self.wfile.write(content)
                except (BrokenPipeError, ConnectionResetError):
                    # Client went away mid-response
                    pass

        return MetricsHandler

    def start_server(self) -> bool:
        """
        Start the HTTP server in a background thread.

        Returns:
            True if the server is running, False if it could not bind
        """
        if self._running:
            return True

        try:
            self._server = HTTPServer(('0.0.0.0', self.port), self._create_request_handler())
            self._server.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        except OSError as e:
            self._log(
                f"Failed to start Prometheus server on port {self.port}: {e}. "
                "Plugin continues without metrics.",
                level='error'
            )
            return False

        self._server_thread = threading.Thread(
            target=self._server.serve_forever,
            daemon=True,
            name="batchopen-prometheus"
        )
        self._server_thread.start()
        self._running = True
        self._log(f"Prometheus metrics server started on port {self.port}")
        return True

    def stop_server(self):
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._running = False
            self._log("Prometheus metrics server stopped")

    def is_running(self) -> bool:
        return self._running


class MetricNames:
    """Standard metric names for cl-batch-open."""

    # Batch opener (Counters)
    OPEN_ATTEMPTS_TOTAL = "cl_batchopen_open_attempts_total"
    OPEN_SUCCESS_TOTAL = "cl_batchopen_open_success_total"
    OPEN_FAILURES_TOTAL = "cl_batchopen_open_failures_total"
    CONVERGENCE_ITERATIONS_TOTAL = "cl_batchopen_convergence_iterations_total"
    REJECTIONS_RECORDED_TOTAL = "cl_batchopen_rejections_recorded_total"
    FATAL_BATCHES_TOTAL = "cl_batchopen_fatal_batches_total"

    # Health (Gauges)
    LAST_BATCH_TIMESTAMP = "cl_batchopen_last_batch_timestamp_seconds"


METRIC_HELP = {
    MetricNames.OPEN_ATTEMPTS_TOTAL: "Peers that reached a terminal open result",
    MetricNames.OPEN_SUCCESS_TOTAL: "Channels funded successfully",
    MetricNames.OPEN_FAILURES_TOTAL: "Failed channel opens by rejection reason",
    MetricNames.CONVERGENCE_ITERATIONS_TOTAL: "Verify/initiate iterations run by the batch opener",
    MetricNames.REJECTIONS_RECORDED_TOTAL: "Rejections persisted against candidates, by reason",
    MetricNames.FATAL_BATCHES_TOTAL: "Batches aborted as fatal, by stage",
    MetricNames.LAST_BATCH_TIMESTAMP: "Unix timestamp of the last completed batch open",
}
