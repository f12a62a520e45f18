"""
Device registry.

Devices are created by the reconciler the first time a (user, identifier) pair
is seen connected; there is no manual registration.
"""
from datetime import datetime, UTC
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import List, Optional, Tuple
import logging

from errors import NotFoundError
from models import Device, DeviceType, User

logger = logging.getLogger(__name__)

def detect_device_type(platform: Optional[str]) -> DeviceType:
    """
    Map a client-reported platform string to a device type.

    Args:
        platform: Platform string such as "android", "win", "mac", "ios"

    Returns:
        DeviceType, desktop when unknown
    """
    if not platform:
        return DeviceType.DESKTOP

    platform = platform.lower()
    if 'android' in platform:
        return DeviceType.MOBILE
    if 'ipad' in platform:
        return DeviceType.TABLET
    if 'ios' in platform or 'iphone' in platform:
        return DeviceType.MOBILE
    if 'mac' in platform:
        return DeviceType.LAPTOP
    return DeviceType.DESKTOP

def default_device_name(
    username: str,
    device_type: DeviceType,
    identifier: str,
    platform: Optional[str] = None
) -> str:
    platform_info = f" - {platform}" if platform else ""
    return f"{username}'s {device_type.value}{platform_info} ({identifier})"

def resolve_user(session: Session, identity: str) -> Optional[User]:
    """Find the user a VPN login belongs to (username or email)"""
    return session.query(User).filter(
        or_(User.username == identity, User.email == identity)
    ).first()

def get_device(session: Session, device_id: int) -> Device:
    device = session.get(Device, device_id)
    if device is None:
        raise NotFoundError(f"Device {device_id} not found")
    return device

def find_device(session: Session, user_id: int, identifier: str) -> Optional[Device]:
    return session.query(Device).filter_by(user_id=user_id, device_id=identifier).first()

def list_devices(session: Session, user_id: Optional[int] = None, active_only: bool = False) -> List[Device]:
    """List devices newest first, optionally for one user or only active ones"""
    query = session.query(Device)
    if user_id is not None:
        query = query.filter_by(user_id=user_id)
    if active_only:
        query = query.filter(Device.is_active.is_(True))
    return query.order_by(Device.created_at.desc(), Device.id.desc()).all()

def count_active_devices(session: Session, user_id: int) -> int:
    return session.query(func.count(Device.id)).filter(
        Device.user_id == user_id,
        Device.is_active.is_(True)
    ).scalar()

def _naive_utc(value: datetime) -> datetime:
    # SQLite DateTime columns come back naive; store UTC without tzinfo so
    # re-applying the same sighting is a no-op
    if value.tzinfo is not None:
        value = value.astimezone(UTC).replace(tzinfo=None)
    return value

def _apply_sighting(device: Device, last_ip: Optional[str], connected_at: Optional[datetime],
                    device_type: Optional[DeviceType]):
    device.is_active = True
    device.last_ip = last_ip
    if connected_at is not None:
        device.last_connected = connected_at
    if device_type is not None:
        device.device_type = device_type

def record_sighting(
    session: Session,
    user_id: int,
    identifier: str,
    name: str,
    last_ip: Optional[str] = None,
    connected_at: Optional[datetime] = None,
    device_type: Optional[DeviceType] = None
) -> Tuple[Device, bool]:
    """
    Mark a (user, identifier) device active, creating it on first sight.

    Creation is insert-or-fetch-and-update: if another writer inserted the
    same pair first, the unique constraint rejects our insert and we update
    the existing row instead.

    Args:
        session: Database session
        user_id: Owning user
        identifier: Device identifier (VPN address)
        name: Name used only when the device is created
        last_ip: Address the session came from
        connected_at: Session start; new devices default to now, existing
            devices keep their previous value when it is missing
        device_type: Overwrites the stored type when given

    Returns:
        Tuple of (device, created)
    """
    if connected_at is not None:
        connected_at = _naive_utc(connected_at)

    device = find_device(session, user_id, identifier)
    if device is None:
        device = Device(
            user_id=user_id,
            device_id=identifier,
            name=name,
            device_type=device_type or DeviceType.DESKTOP,
            last_ip=last_ip,
            last_connected=connected_at or _naive_utc(datetime.now(UTC)),
            is_active=True
        )
        session.add(device)
        try:
            session.commit()
            logger.info(f"Created device {identifier} for user {user_id}")
            return device, True
        except IntegrityError:
            session.rollback()
            device = session.query(Device).filter_by(user_id=user_id, device_id=identifier).first()
            if device is None:
                # Not a lost race (e.g. the owner was deleted mid-cycle)
                raise
            logger.info(f"Device {identifier} for user {user_id} was created concurrently, updating it")

    _apply_sighting(device, last_ip, connected_at, device_type)
    session.commit()
    logger.debug(f"Updated device {device.id} ({identifier}) for user {user_id}")
    return device, False

def mark_inactive(session: Session, device: Device) -> None:
    """Flip a device to inactive. Last-seen fields keep the last real connection."""
    device.is_active = False
    session.commit()
    logger.info(f"Device {device.id} ({device.device_id}) for user {device.user_id} is now inactive")
