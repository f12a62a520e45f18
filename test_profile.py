import pytest
import re
import httpx
from unittest.mock import MagicMock
from config import OpenVPNConfig
from database import create_db_engine, get_session_factory
from errors import NotFoundError, SourceUnavailableError
from models import Base, Device, LanNetwork, User
from vpn_profile import (
    PlaceholderCredentials, ProfileRenderer, ProxyCredentials,
    profile_filename, sanitize_config_value
)
import networks
import qos
import tempfile
import os

@pytest.fixture
def test_db():
    """Create test database with one user and a device"""
    fd, db_path = tempfile.mkstemp(suffix='.db')
    os.close(fd)

    engine = create_db_engine(db_path)
    Base.metadata.create_all(engine)
    session_factory = get_session_factory(engine)

    with session_factory() as session:
        user = User(username="alice", email="alice@example.com", name="Alice Liddell")
        session.add(user)
        session.commit()
        device = Device(user_id=user.id, name="phone", device_id="10.8.0.5")
        session.add(device)
        session.commit()
        ids = {'user': user.id, 'device': device.id}

    yield session_factory, ids

    engine.dispose()
    os.unlink(db_path)

@pytest.fixture
def renderer(test_db):
    session_factory, ids = test_db
    return ProfileRenderer(session_factory, OpenVPNConfig(server="vpn.example.com"))

def test_sanitize_strips_injection():
    """Test that line breaks, tabs and angle brackets cannot reach the profile"""
    result = sanitize_config_value("Evil\r\nactive\t<script>")

    assert result == "Evil active script"
    assert not re.search(r'[\r\n\t<>]', result)

@pytest.mark.parametrize("value", [
    "plain",
    "line1\nline2\rline3",
    "\x00\x1b[31mred\x7f",
    "<ca>\n-----BEGIN CERTIFICATE-----",
    "   spaced    out   ",
    "ünïcödé ✓",
    "x" * 1000,
    None,
    42,
])
def test_sanitize_output_is_safe(value):
    """Test that any input yields a single trimmed printable line of at most 255 chars"""
    result = sanitize_config_value(value)

    assert re.fullmatch(r'[\x20-\x7E]*', result)
    assert '<' not in result and '>' not in result
    assert '  ' not in result
    assert result == result.strip()
    assert len(result) <= 255

def test_profile_filename():
    """Test that filenames keep only safe characters"""
    user = User(username="al ice/../x", email="alice@example.com")
    assert re.fullmatch(r'al_icex_\d+\.ovpn', profile_filename(user))

    no_username = User(username=None, email="bob@example.com")
    assert profile_filename(no_username).startswith("bob_")

def test_render_profile_directives(renderer, test_db):
    """Test the fixed directives, identity comments and credentials"""
    session_factory, ids = test_db

    profile = renderer.render_profile(ids['user'])

    lines = profile.splitlines()
    assert lines[0] == 'client'
    assert 'proto udp' in lines
    assert 'remote vpn.example.com 1194' in lines
    assert 'cipher AES-256-GCM' in lines
    assert '# User: alice@example.com' in lines
    assert '# Name: Alice Liddell' in lines
    assert '# QoS Policy: None (Default)' in lines
    assert '<ca>' in lines
    assert 'route ' not in profile

def test_route_follows_enabled_flag(renderer, test_db):
    """Test that a network's route line appears only while it is enabled"""
    session_factory, ids = test_db

    with session_factory() as session:
        network = networks.register_network(session, ids['user'], "192.168.1.0/24", "Home")
        network_id = network.id

    profile = renderer.render_profile(ids['user'])
    assert 'route 192.168.1.0 255.255.255.0' in profile.splitlines()
    assert '# Home: 192.168.1.0/24' in profile.splitlines()

    with session_factory() as session:
        networks.set_enabled(session, network_id, False)

    profile = renderer.render_profile(ids['user'])
    assert 'route 192.168.1.0 255.255.255.0' not in profile

def test_stored_cidr_stays_in_comment(renderer, test_db):
    """Test that a malformed stored CIDR cannot break out of its comment line"""
    session_factory, ids = test_db

    with session_factory() as session:
        session.add(LanNetwork(
            user_id=ids['user'],
            network_cidr="10.0.0.0/8\nredirect-gateway def1",
            network_ip="10.0.0.0",
            subnet_mask="255.0.0.0",
            description="Legacy"
        ))
        session.commit()

    lines = renderer.render_profile(ids['user']).splitlines()
    assert '# Legacy: 10.0.0.0/8 redirect-gateway def1' in lines
    assert 'redirect-gateway def1' not in lines

def test_user_controlled_values_cannot_inject(renderer, test_db):
    """Test that hostile names and descriptions stay inside comment lines"""
    session_factory, ids = test_db

    with session_factory() as session:
        user = session.get(User, ids['user'])
        user.name = "Alice\nroute 0.0.0.0 0.0.0.0\n<key>"
        session.commit()
        networks.register_network(session, ids['user'], "10.0.0.0/8", "Lab\r\nredirect-gateway def1")
        policy = qos.create_policy(session, "Gold\n<ca>", 500)
        qos.assign_user_policy(session, ids['user'], policy.id)

    profile = renderer.render_profile(ids['user'])
    directive_lines = [l for l in profile.splitlines() if l and not l.startswith('#')]

    assert 'route 0.0.0.0 0.0.0.0' not in directive_lines
    assert 'redirect-gateway def1' not in directive_lines
    assert profile.count('<key>') == 1
    assert profile.count('<ca>') == 1
    assert '# QoS Policy: Gold ca' in profile.splitlines()

def test_render_user_policy(renderer, test_db):
    """Test that the user-level policy is embedded by default"""
    session_factory, ids = test_db

    with session_factory() as session:
        standard = qos.create_policy(session, "Standard", 10)
        premium = qos.create_policy(session, "Premium", 20, priority="high")
        qos.assign_user_policy(session, ids['user'], standard.id)
        qos.assign_device_policy(session, ids['device'], premium.id)

    lines = renderer.render_profile(ids['user']).splitlines()
    assert '# QoS Policy: Standard' in lines
    assert '# Priority: medium' in lines
    assert '# Bandwidth Limit: 10 Kbps' in lines
    assert '# Policy Source: user' in lines

    lines = renderer.render_profile(ids['user'], device_id=ids['device']).splitlines()
    assert '# QoS Policy: Premium' in lines
    assert '# Priority: high' in lines
    assert '# Policy Source: device' in lines

def test_render_missing_user_or_foreign_device(renderer, test_db):
    """Test NotFoundError for unknown users and devices of another user"""
    session_factory, ids = test_db

    with session_factory() as session:
        other = User(username="bob", email="bob@example.com")
        session.add(other)
        session.commit()
        other_id = other.id

    with pytest.raises(NotFoundError):
        renderer.render_profile(9999)
    with pytest.raises(NotFoundError):
        renderer.render_profile(other_id, device_id=ids['device'])

def test_placeholder_credentials():
    """Test that placeholder blocks contain every inline section"""
    blocks = PlaceholderCredentials().get_credentials(MagicMock())
    for tag in ('ca', 'cert', 'key', 'tls-auth'):
        assert f'<{tag}>' in blocks and f'</{tag}>' in blocks

def test_proxy_credentials():
    """Test that proxy credentials keep everything from the first <ca>"""
    def handler(request):
        assert request.url.path == "/profile/userlogin"
        assert b'"alice"' in request.read()
        return httpx.Response(200, text="client\nremote x 1194\n<ca>\nCERT\n</ca>\n")

    client = httpx.Client(transport=httpx.MockTransport(handler))
    credentials = ProxyCredentials("http://proxy.test/", client=client)

    user = User(username="alice", email="alice@example.com")
    assert credentials.get_credentials(user) == "<ca>\nCERT\n</ca>\n"

@pytest.mark.parametrize("handler", [
    lambda request: httpx.Response(502),
    lambda request: httpx.Response(200, text="no blocks here"),
])
def test_proxy_credentials_failures(handler):
    """Test that proxy errors raise SourceUnavailableError"""
    client = httpx.Client(transport=httpx.MockTransport(handler))
    credentials = ProxyCredentials("http://proxy.test", client=client)

    with pytest.raises(SourceUnavailableError):
        credentials.get_credentials(User(username="alice", email="alice@example.com"))
