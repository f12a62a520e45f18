from sqlalchemy import (
    Boolean, Column, DateTime, Enum, ForeignKey, Integer, String, Text, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, UTC
import enum

Base = declarative_base()

def utcnow():
    return datetime.now(UTC)

class DeviceType(str, enum.Enum):
    DESKTOP = "desktop"
    LAPTOP = "laptop"
    MOBILE = "mobile"
    TABLET = "tablet"

class Priority(str, enum.Enum):
    """QoS priority, ordered low < medium < high"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self]

PRIORITY_RANK = {Priority.LOW: 0, Priority.MEDIUM: 1, Priority.HIGH: 2}

def _enum_values(enum_cls):
    return [member.value for member in enum_cls]

class User(Base):
    """
    Subscriber identity. Owned by the account system; read-only here.

    Attributes:
        id: Primary key
        username: VPN login name reported by the session source
        email: Account email, also accepted as a VPN login
        name: Display name
    """
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(255), unique=True, nullable=True)
    email = Column(String(255), unique=True, nullable=False)
    name = Column(String(255), nullable=True)

    devices = relationship('Device', back_populates='user', cascade='all, delete-orphan')

    def __repr__(self):
        return f"<User(id={self.id}, username={self.username}, email={self.email})>"

class Device(Base):
    """
    An endpoint observed connecting to the VPN.

    Unique per (user_id, device_id): VPN addresses are recycled across users,
    so the identifier alone must not be unique.

    Attributes:
        id: Primary key
        user_id: Owning user
        name: Human-readable label
        device_id: Identifier (VPN-assigned address, or real address as fallback)
        device_type: desktop/laptop/mobile/tablet
        last_connected: Start of the most recent observed session
        last_ip: Address the most recent session came from
        is_active: True while a session for this device is reported
    """
    __tablename__ = 'devices'
    __table_args__ = (
        UniqueConstraint('user_id', 'device_id', name='unique_user_device'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    device_id = Column(String(255), nullable=False)
    device_type = Column(
        Enum(DeviceType, values_callable=_enum_values, name='device_type'),
        nullable=False,
        default=DeviceType.DESKTOP
    )
    last_connected = Column(DateTime, nullable=True)
    last_ip = Column(String(45), nullable=True)
    is_active = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    user = relationship('User', back_populates='devices')
    policy_assignment = relationship(
        'DeviceQosAssignment', back_populates='device', uselist=False, cascade='all'
    )

    def __repr__(self):
        return f"<Device(user={self.user_id}, device_id={self.device_id}, active={self.is_active})>"

class QosPolicy(Base):
    """
    Named bandwidth/priority profile.

    Attributes:
        name: Unique policy name
        bandwidth_limit: Rate limit in Kbps
        priority: low/medium/high
    """
    __tablename__ = 'qos_policies'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False)
    bandwidth_limit = Column(Integer, nullable=False)
    priority = Column(
        Enum(Priority, values_callable=_enum_values, name='priority'),
        nullable=False,
        default=Priority.MEDIUM
    )
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    user_assignments = relationship(
        'UserQosAssignment', back_populates='policy', cascade='all, delete-orphan'
    )
    device_assignments = relationship(
        'DeviceQosAssignment', back_populates='policy', cascade='all, delete-orphan'
    )

    def __repr__(self):
        return f"<QosPolicy(name={self.name}, limit={self.bandwidth_limit}, priority={self.priority})>"

class UserQosAssignment(Base):
    """At most one policy per user"""
    __tablename__ = 'user_qos'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, unique=True)
    qos_policy_id = Column(Integer, ForeignKey('qos_policies.id', ondelete='CASCADE'), nullable=False)
    assigned_at = Column(DateTime, nullable=False, default=utcnow)

    policy = relationship('QosPolicy', back_populates='user_assignments')

class DeviceQosAssignment(Base):
    """At most one policy per device, with who assigned it and why"""
    __tablename__ = 'device_qos'

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(Integer, ForeignKey('devices.id', ondelete='CASCADE'), nullable=False, unique=True)
    qos_policy_id = Column(Integer, ForeignKey('qos_policies.id', ondelete='CASCADE'), nullable=False)
    assigned_at = Column(DateTime, nullable=False, default=utcnow)
    assigned_by = Column(Integer, ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    notes = Column(Text, nullable=True)

    policy = relationship('QosPolicy', back_populates='device_assignments')
    device = relationship('Device', back_populates='policy_assignment')

class LanNetwork(Base):
    """
    User-declared LAN network pushed as a route in the user's profile.

    network_ip and subnet_mask are derived from network_cidr and must only be
    written through networks.py, which recomputes them from the CIDR.
    """
    __tablename__ = 'user_lan_networks'
    __table_args__ = (
        UniqueConstraint('user_id', 'network_cidr', name='unique_user_network'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    network_cidr = Column(String(18), nullable=False)
    network_ip = Column(String(15), nullable=False)
    subnet_mask = Column(String(15), nullable=False)
    description = Column(String(255), nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<LanNetwork(user={self.user_id}, cidr={self.network_cidr}, enabled={self.enabled})>"
