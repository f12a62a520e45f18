import pytest
import time
from fastapi.testclient import TestClient
from config import OpenVPNConfig
from database import init_db, get_session_factory
from models import Device, User
from reconciler import Reconciler
from routes import create_app
from session_source import SessionRecord, StaticSessionSource
from unittest.mock import MagicMock
from vpn_profile import ProfileRenderer
import tempfile
import os

@pytest.fixture
def integration_app():
    """Create full application for integration testing"""
    fd, db_path = tempfile.mkstemp(suffix='.db')
    os.close(fd)

    engine = init_db(db_path)
    session_factory = get_session_factory(engine)

    with session_factory() as session:
        session.add_all([
            User(username="alice", email="alice@example.com", name="Alice"),
            User(username="bob", email="bob@example.com", name="Bob"),
        ])
        session.commit()

    # Mock config
    config = MagicMock()
    config.openvpn = OpenVPNConfig(server="vpn.example.com", protocol="tcp", port=443)

    source = StaticSessionSource()
    reconciler = Reconciler(session_factory, source, interval=0.05)
    renderer = ProfileRenderer(session_factory, config.openvpn)
    app = create_app(
        config,
        session_factory,
        reconciler=reconciler,
        renderer=renderer,
        start_reconciler=True
    )

    yield app, session_factory, source, reconciler

    engine.dispose()
    os.unlink(db_path)

def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False

def test_background_reconciler_tracks_presence(integration_app):
    """Test that the scheduled reconciler follows sessions while the app runs"""
    app, session_factory, source, reconciler = integration_app

    def active_addresses():
        with session_factory() as session:
            return {d.device_id for d in session.query(Device).filter(Device.is_active.is_(True))}

    with TestClient(app) as client:
        assert reconciler.running

        # 1. Alice connects
        source.sessions = [SessionRecord(username="alice", address="10.8.0.5", platform="android")]
        assert wait_for(lambda: active_addresses() == {"10.8.0.5"})

        response = client.get('/devices')
        assert response.status_code == 200
        devices = response.json()
        assert len(devices) == 1
        assert devices[0]['device_type'] == 'mobile'
        assert devices[0]['is_active'] is True

        # 2. Alice disconnects
        source.sessions = []
        assert wait_for(lambda: active_addresses() == set())

    assert not reconciler.running

def test_full_profile_lifecycle(integration_app):
    """Test policy, network and device state flowing into a rendered profile"""
    app, session_factory, source, reconciler = integration_app

    with TestClient(app) as client:
        # 1. Bob connects from a laptop
        source.sessions = [SessionRecord(username="bob@example.com", address="10.8.0.9")]
        response = client.post('/reconcile')
        assert response.status_code in (200, 409)
        assert wait_for(lambda: client.get('/devices').json() != [])

        device = client.get('/devices').json()[0]
        bob_id = device['user_id']

        # 2. Policies at both levels
        standard = client.post('/qos/policies', json={'name': 'Standard', 'bandwidth_limit': 10}).json()
        premium = client.post(
            '/qos/policies',
            json={'name': 'Premium', 'bandwidth_limit': 20, 'priority': 'high'}
        ).json()
        client.put(f"/users/{bob_id}/policy", json={'policy_id': standard['id']})
        client.put(f"/devices/{device['id']}/policy", json={'policy_id': premium['id']})

        effective = client.get(f"/devices/{device['id']}/policy").json()
        assert effective['policy']['name'] == 'Premium'
        assert effective['source'] == 'device'

        # 3. LAN network shows up as a route
        network = client.post(
            f"/users/{bob_id}/networks",
            json={'cidr': '192.168.1.0/24', 'description': 'Home'}
        ).json()

        profile = client.get(f"/users/{bob_id}/profile").text
        assert 'remote vpn.example.com 443' in profile
        assert 'proto tcp' in profile
        assert '# QoS Policy: Standard' in profile
        assert 'route 192.168.1.0 255.255.255.0' in profile

        device_profile = client.get(
            f"/users/{bob_id}/profile", params={'device_id': device['id']}
        ).text
        assert '# QoS Policy: Premium' in device_profile

        # 4. Disabling the network drops the route
        client.patch(f"/networks/{network['id']}", json={'enabled': False})
        profile = client.get(f"/users/{bob_id}/profile").text
        assert 'route 192.168.1.0' not in profile

        # 5. Deleting the device's policy falls back to the user level
        client.delete(f"/qos/policies/{premium['id']}")
        effective = client.get(f"/devices/{device['id']}/policy").json()
        assert effective['policy']['name'] == 'Standard'
        assert effective['source'] == 'user'
