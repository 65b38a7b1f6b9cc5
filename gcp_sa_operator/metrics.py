"""Prometheus metrics and the metrics/health HTTP server."""

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

logger = logging.getLogger("gcp-service-account-operator")

SERVICE_ACCOUNT_TOTALS = Counter(
    'gcp_sa_operator_service_account_totals',
    'Number of reconciliations and deletions of annotated resources',
    ['namespace', 'status', 'initiator', 'type', 'mode'])
ACTIONS_TOTAL = Counter(
    'gcp_sa_operator_actions_total',
    'Number of create, retrieve, permissions, rotate, purge and delete actions',
    ['action', 'namespace', 'status', 'initiator', 'type', 'mode'])
KEYS_PURGED = Counter(
    'gcp_sa_operator_keys_purged_total', 'Total number of purged service account keys')
ERRORS_TOTAL = Counter(
    'gcp_sa_operator_errors_total', 'Total number of errors encountered')
RECONCILE_DURATION = Histogram(
    'gcp_sa_operator_reconcile_duration_seconds', 'Duration of reconciling a resource', ['type'])


def record_action(action, status, namespace, initiator, kind, mode):
    ACTIONS_TOTAL.labels(
        action=action, namespace=namespace, status=status,
        initiator=initiator, type=kind, mode=mode).inc()


def record_pass(status, namespace, initiator, kind, mode):
    SERVICE_ACCOUNT_TOTALS.labels(
        namespace=namespace, status=status, initiator=initiator, type=kind, mode=mode).inc()


class _Handler(BaseHTTPRequestHandler):

    def do_GET(self):
        if self.path == '/healthz':
            self._respond(200, 'application/json', json.dumps({"status": "healthy"}).encode())
        elif self.path == '/metrics':
            self._respond(200, CONTENT_TYPE_LATEST, generate_latest())
        else:
            self._respond(404, 'text/plain', b"Not Found")

    def _respond(self, status, content_type, body):
        self.send_response(status)
        self.send_header('Content-Type', content_type)
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        logger.debug(f"Metrics server: {format % args}")


class MetricsServer:
    """Serves /metrics and /healthz on a background thread."""

    def __init__(self, port=8000):
        self.port = port
        self.server = None
        self._thread = None

    def start(self):
        self.server = ThreadingHTTPServer(('', self.port), _Handler)
        self._thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self._thread.start()

    def stop(self):
        if self.server:
            self.server.shutdown()
            self.server.server_close()
