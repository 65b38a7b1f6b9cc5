"""Tests for the entry point and environment loading."""

import pytest
from unittest.mock import MagicMock, patch

from gcp_sa_operator import main as entrypoint
from gcp_sa_operator.errors import BackendError


@pytest.fixture
def environment(monkeypatch):
    monkeypatch.setenv('TEST_MODE', 'true')
    monkeypatch.setenv('SERVICE_ACCOUNT_PROJECT_ID', 'my-service-account-container')
    monkeypatch.setenv('LOCAL_PROJECT_ID', 'my-dev-project')
    monkeypatch.setenv('MODE', 'normal')
    monkeypatch.setenv('METRICS_PORT', '8004')


@pytest.fixture
def patched():
    with patch('gcp_sa_operator.main.load_dotenv') as mock_load_dotenv, \
            patch('gcp_sa_operator.main.MetricsServer') as mock_metrics_server, \
            patch('gcp_sa_operator.main.get_k8s_api') as mock_get_k8s_api, \
            patch('gcp_sa_operator.main.get_backend') as mock_get_backend, \
            patch('gcp_sa_operator.main.Operator') as mock_operator, \
            patch('gcp_sa_operator.main.signal.signal'):
        yield MagicMock(
            load_dotenv=mock_load_dotenv,
            metrics_server=mock_metrics_server,
            get_k8s_api=mock_get_k8s_api,
            get_backend=mock_get_backend,
            operator=mock_operator,
        )


def test_load_dotenv(environment, patched):
    """Test loading of environment variables and a clean shutdown."""
    with pytest.raises(SystemExit) as exc_info:
        entrypoint.main()

    assert exc_info.value.code == 0
    patched.load_dotenv.assert_called_once()
    patched.metrics_server.assert_called_once_with(port=8004)
    patched.get_backend.return_value.test_connection.assert_called_once()
    patched.operator.return_value.run.assert_called_once()
    patched.metrics_server.return_value.stop.assert_called_once()

    backend_name, config = patched.get_backend.call_args.args
    assert backend_name == 'google'
    assert config.owner_id == 'my-dev-project'


def test_invalid_configuration_exits(environment, patched, monkeypatch):
    monkeypatch.delenv('SERVICE_ACCOUNT_PROJECT_ID')

    with pytest.raises(SystemExit) as exc_info:
        entrypoint.main()

    assert exc_info.value.code == 1
    patched.metrics_server.assert_not_called()
    patched.operator.assert_not_called()


def test_backend_connection_failure_exits(environment, patched):
    patched.get_backend.return_value.test_connection.side_effect = BackendError("permission denied")

    with pytest.raises(SystemExit) as exc_info:
        entrypoint.main()

    assert exc_info.value.code == 1
    patched.operator.assert_not_called()
