import time

import requests

from gcp_sa_operator.metrics import MetricsServer


def test_health_endpoint():
    """Test that the /healthz endpoint returns a healthy status"""
    server = MetricsServer(port=8001)
    server.start()

    # Give the server a moment to start
    time.sleep(0.5)

    try:
        response = requests.get('http://localhost:8001/healthz')
        assert response.status_code == 200
        assert response.headers['Content-Type'] == 'application/json'
        assert response.json() == {"status": "healthy"}
    finally:
        server.stop()


def test_metrics_endpoint():
    """Ensure the /metrics endpoint serves the Prometheus exposition format"""
    server = MetricsServer(port=8002)
    server.start()

    time.sleep(0.5)

    try:
        response = requests.get('http://localhost:8002/metrics')
        assert response.status_code == 200
        assert 'text/plain' in response.headers['Content-Type']
    finally:
        server.stop()


def test_404_for_unknown_path():
    """Test that unknown paths return 404"""
    server = MetricsServer(port=8003)
    server.start()

    time.sleep(0.5)

    try:
        response = requests.get('http://localhost:8003/unknown')
        assert response.status_code == 404
        assert response.content == b"Not Found"
    finally:
        server.stop()
