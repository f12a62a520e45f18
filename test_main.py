import pytest
from unittest.mock import patch
from datetime import timedelta
from config import Config, OpenVPNConfig, SessionSourceConfig
from main import build_app, main, parse_args
from session_source import HttpSessionSource
from vpn_profile import PlaceholderCredentials, ProxyCredentials
import tempfile
import os

@pytest.fixture
def test_config():
    """Create config pointing at a temporary database"""
    db_dir = tempfile.mkdtemp()
    db_path = os.path.join(db_dir, 'portal.db')

    config = Config(
        database=db_path,
        openvpn=OpenVPNConfig(server="vpn.example.com"),
        session_source=SessionSourceConfig(
            url="http://127.0.0.1:9000/vpnstatus",
            poll_interval=timedelta(seconds=30),
            timeout=timedelta(seconds=5)
        )
    )

    yield config

    if os.path.exists(db_path):
        os.unlink(db_path)
    os.rmdir(db_dir)

def test_parse_args_defaults():
    """Test default CLI arguments"""
    args = parse_args([])
    assert args.config == '/etc/ovpn-portal.yaml'
    assert args.port == 8000

def test_build_app_wires_components(test_config):
    """Test that the app gets a reconciler and renderer built from config"""
    app = build_app(test_config)

    reconciler = app.state.reconciler
    assert isinstance(reconciler.source, HttpSessionSource)
    assert reconciler.source.url == "http://127.0.0.1:9000/vpnstatus"
    assert reconciler.source.timeout == 5
    assert reconciler.interval == 30
    assert isinstance(app.state.renderer.credentials, PlaceholderCredentials)
    assert os.path.exists(test_config.database)

    reconciler.source.close()

def test_build_app_with_profile_proxy(test_config):
    """Test that a configured profile proxy supplies credentials"""
    test_config.profile_proxy_url = "http://127.0.0.1:9100"

    app = build_app(test_config)

    credentials = app.state.renderer.credentials
    assert isinstance(credentials, ProxyCredentials)
    assert credentials.url == "http://127.0.0.1:9100"

@patch('main.uvicorn')
@patch('main.load_config')
def test_main_runs_server(mock_load_config, mock_uvicorn, test_config):
    """Test that main loads config and starts uvicorn"""
    mock_load_config.return_value = test_config

    main(['--config', '/tmp/portal.yaml', '--port', '8443'])

    mock_load_config.assert_called_once_with('/tmp/portal.yaml')
    mock_uvicorn.run.assert_called_once()
    assert mock_uvicorn.run.call_args.kwargs['port'] == 8443

@patch('main.uvicorn')
def test_main_exits_on_bad_config(mock_uvicorn):
    """Test that a missing config file exits before serving"""
    with pytest.raises(SystemExit) as exc_info:
        main(['--config', '/nonexistent/portal.yaml'])

    assert exc_info.value.code == 1
    mock_uvicorn.run.assert_not_called()
