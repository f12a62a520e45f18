import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from database import init_db, get_session_factory
from models import Device, DeviceType, QosPolicy, Priority, User, UserQosAssignment
import tempfile
import os

@pytest.fixture
def test_db():
    """Create temporary test database"""
    db_dir = tempfile.mkdtemp()
    db_path = os.path.join(db_dir, 'data', 'portal.db')

    engine = init_db(db_path)

    yield engine, db_path

    engine.dispose()
    os.unlink(db_path)
    os.rmdir(os.path.dirname(db_path))
    os.rmdir(db_dir)

def test_init_db_creates_tables(test_db):
    """Test that init_db creates every table, including the parent directory"""
    engine, db_path = test_db
    assert os.path.exists(db_path)

    with engine.connect() as conn:
        result = conn.execute(text("SELECT name FROM sqlite_master WHERE type='table'"))
        tables = {row[0] for row in result}

    assert {'users', 'devices', 'qos_policies', 'user_qos', 'device_qos', 'user_lan_networks'} <= tables

def test_foreign_keys_enforced(test_db):
    """Test that the SQLite foreign key pragma is on for every connection"""
    engine, db_path = test_db

    with engine.connect() as conn:
        assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1

def test_device_unique_per_user(test_db):
    """Test that the same identifier is allowed for two users but not twice for one"""
    engine, db_path = test_db
    session_factory = get_session_factory(engine)

    with session_factory() as session:
        alice = User(username="alice", email="alice@example.com")
        bob = User(username="bob", email="bob@example.com")
        session.add_all([alice, bob])
        session.commit()

        session.add_all([
            Device(user_id=alice.id, name="a", device_id="10.8.0.2"),
            Device(user_id=bob.id, name="b", device_id="10.8.0.2"),
        ])
        session.commit()

        session.add(Device(user_id=alice.id, name="dup", device_id="10.8.0.2"))
        with pytest.raises(IntegrityError):
            session.commit()
        session.rollback()

        devices = session.query(Device).all()
        assert len(devices) == 2
        assert all(d.device_type == DeviceType.DESKTOP for d in devices)
        assert all(d.is_active is False for d in devices)

def test_priority_stored_as_value(test_db):
    """Test that enum columns store their lowercase values"""
    engine, db_path = test_db
    session_factory = get_session_factory(engine)

    with session_factory() as session:
        session.add(QosPolicy(name="Premium", bandwidth_limit=10000, priority=Priority.HIGH))
        session.commit()

    with engine.connect() as conn:
        assert conn.execute(text("SELECT priority FROM qos_policies")).scalar() == "high"

def test_user_assignment_unique(test_db):
    """Test that a user can hold at most one policy row"""
    engine, db_path = test_db
    session_factory = get_session_factory(engine)

    with session_factory() as session:
        user = User(username="carol", email="carol@example.com")
        policy = QosPolicy(name="Basic", bandwidth_limit=1000)
        session.add_all([user, policy])
        session.commit()

        session.add(UserQosAssignment(user_id=user.id, qos_policy_id=policy.id))
        session.commit()

        session.add(UserQosAssignment(user_id=user.id, qos_policy_id=policy.id))
        with pytest.raises(IntegrityError):
            session.commit()
