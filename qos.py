"""
QoS policy store and effective policy resolution.

A device's effective policy is its own device-level assignment if one exists,
otherwise its owner's user-level assignment, otherwise none. Resolution always
reads current rows; nothing is cached.
"""
from dataclasses import dataclass
from datetime import datetime, UTC
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional
import logging

from errors import ConflictError, NotFoundError, ValidationError
from models import Device, DeviceQosAssignment, Priority, QosPolicy, User, UserQosAssignment

logger = logging.getLogger(__name__)

SOURCE_DEVICE = "device"
SOURCE_USER = "user"

MAX_POLICY_NAME_LENGTH = 100

@dataclass
class EffectivePolicy:
    """Resolved policy and the level it came from ("device" or "user")"""
    policy: QosPolicy
    source: str
    assigned_at: Optional[datetime] = None

def _check_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Policy name is required", field='name')
    name = name.strip()
    if len(name) > MAX_POLICY_NAME_LENGTH:
        raise ValidationError(
            f"Policy name must be at most {MAX_POLICY_NAME_LENGTH} characters", field='name'
        )
    return name

def _check_bandwidth(bandwidth_limit: Any) -> int:
    if isinstance(bandwidth_limit, bool) or not isinstance(bandwidth_limit, int) or bandwidth_limit <= 0:
        raise ValidationError("Bandwidth limit must be a positive integer", field='bandwidth_limit')
    return bandwidth_limit

def _check_priority(priority: Any) -> Priority:
    try:
        return Priority(priority)
    except ValueError:
        allowed = ', '.join(p.value for p in Priority)
        raise ValidationError(f"Priority must be one of: {allowed}", field='priority')

def _ensure_unique_name(session: Session, name: str, exclude_id: int = None):
    query = session.query(QosPolicy).filter(func.lower(QosPolicy.name) == name.lower())
    if exclude_id is not None:
        query = query.filter(QosPolicy.id != exclude_id)
    if query.first() is not None:
        raise ConflictError(f"A QoS policy named '{name}' already exists")

def _commit_policy(session: Session, name: str):
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise ConflictError(f"A QoS policy named '{name}' already exists")

def create_policy(
    session: Session,
    name: str,
    bandwidth_limit: int,
    priority: str = Priority.MEDIUM.value,
    description: Optional[str] = None
) -> QosPolicy:
    """
    Create a QoS policy.

    Args:
        session: Database session
        name: Unique policy name (compared case-insensitively)
        bandwidth_limit: Positive rate limit in Kbps
        priority: low, medium or high
        description: Optional free text

    Returns:
        The created QosPolicy

    Raises:
        ValidationError: If any field is invalid
        ConflictError: If the name is taken
    """
    name = _check_name(name)
    bandwidth_limit = _check_bandwidth(bandwidth_limit)
    priority = _check_priority(priority)
    _ensure_unique_name(session, name)

    policy = QosPolicy(
        name=name,
        bandwidth_limit=bandwidth_limit,
        priority=priority,
        description=description
    )
    session.add(policy)
    _commit_policy(session, name)

    logger.info(f"Created QoS policy {policy.name} (id={policy.id}, limit={bandwidth_limit}, priority={priority.value})")
    return policy

def get_policy(session: Session, policy_id: int) -> QosPolicy:
    policy = session.get(QosPolicy, policy_id)
    if policy is None:
        raise NotFoundError(f"QoS policy {policy_id} not found")
    return policy

def update_policy(
    session: Session,
    policy_id: int,
    name: Optional[str] = None,
    bandwidth_limit: Optional[int] = None,
    priority: Optional[str] = None,
    description: Optional[str] = None
) -> QosPolicy:
    """Administrative edit; only the given fields change"""
    policy = get_policy(session, policy_id)

    if name is not None:
        name = _check_name(name)
        _ensure_unique_name(session, name, exclude_id=policy.id)
        policy.name = name
    if bandwidth_limit is not None:
        policy.bandwidth_limit = _check_bandwidth(bandwidth_limit)
    if priority is not None:
        policy.priority = _check_priority(priority)
    if description is not None:
        policy.description = description

    _commit_policy(session, policy.name)
    logger.info(f"Updated QoS policy {policy.id} ({policy.name})")
    return policy

def delete_policy(session: Session, policy_id: int) -> None:
    """Delete a policy together with every user and device assignment of it"""
    policy = get_policy(session, policy_id)
    name = policy.name
    session.delete(policy)
    session.commit()
    logger.info(f"Deleted QoS policy {policy_id} ({name})")

def list_policies(session: Session) -> List[QosPolicy]:
    """All policies, highest priority first, then by name"""
    policies = session.query(QosPolicy).all()
    return sorted(policies, key=lambda p: (-Priority(p.priority).rank, p.name))

def _upsert_assignment(session: Session, model, key: Dict[str, int], values: Dict[str, Any]):
    """
    Insert or replace the single assignment row identified by key.

    A concurrent insert of the same key surfaces as IntegrityError; the losing
    writer rolls back and updates the row that won. Any other IntegrityError
    propagates.
    """
    assignment = session.query(model).filter_by(**key).first()
    if assignment is None:
        assignment = model(**key, **values)
        session.add(assignment)
        try:
            session.commit()
            return assignment
        except IntegrityError:
            session.rollback()
            assignment = session.query(model).filter_by(**key).first()
            if assignment is None:
                # Not a lost race; some other constraint rejected the row
                raise
            logger.debug(f"Concurrent {model.__tablename__} insert for {key}, updating instead")

    for field, value in values.items():
        setattr(assignment, field, value)
    session.commit()
    return assignment

def assign_user_policy(session: Session, user_id: int, policy_id: int) -> UserQosAssignment:
    """
    Assign a policy to a user, replacing any existing user-level assignment.

    Raises:
        NotFoundError: If the user or policy does not exist
    """
    if session.get(User, user_id) is None:
        raise NotFoundError(f"User {user_id} not found")
    get_policy(session, policy_id)

    assignment = _upsert_assignment(
        session,
        UserQosAssignment,
        {'user_id': user_id},
        {'qos_policy_id': policy_id, 'assigned_at': datetime.now(UTC)}
    )
    logger.info(f"Assigned QoS policy {policy_id} to user {user_id}")
    return assignment

def remove_user_policy(session: Session, user_id: int) -> bool:
    """Returns True if an assignment was removed"""
    removed = session.query(UserQosAssignment).filter_by(user_id=user_id).delete()
    session.commit()
    if removed:
        logger.info(f"Removed QoS policy from user {user_id}")
    return removed > 0

def assign_device_policy(
    session: Session,
    device_id: int,
    policy_id: int,
    assigned_by: Optional[int] = None,
    note: Optional[str] = None
) -> DeviceQosAssignment:
    """
    Assign a policy to a single device, overriding its owner's policy.

    Args:
        session: Database session
        device_id: Device primary key
        policy_id: Policy to assign
        assigned_by: Admin user id recorded for audit
        note: Free-text reason

    Raises:
        NotFoundError: If the device, policy or assigning user does not exist
    """
    if session.get(Device, device_id) is None:
        raise NotFoundError(f"Device {device_id} not found")
    get_policy(session, policy_id)
    if assigned_by is not None and session.get(User, assigned_by) is None:
        raise NotFoundError(f"User {assigned_by} not found")

    assignment = _upsert_assignment(
        session,
        DeviceQosAssignment,
        {'device_id': device_id},
        {
            'qos_policy_id': policy_id,
            'assigned_at': datetime.now(UTC),
            'assigned_by': assigned_by,
            'notes': note
        }
    )
    logger.info(f"Assigned QoS policy {policy_id} to device {device_id} (by={assigned_by})")
    return assignment

def remove_device_policy(session: Session, device_id: int) -> bool:
    removed = session.query(DeviceQosAssignment).filter_by(device_id=device_id).delete()
    session.commit()
    if removed:
        logger.info(f"Removed QoS policy from device {device_id}")
    return removed > 0

def get_user_policy(session: Session, user_id: int) -> Optional[EffectivePolicy]:
    """User-level policy only, ignoring any device overrides"""
    assignment = session.query(UserQosAssignment).filter_by(user_id=user_id).first()
    if assignment is None:
        return None
    return EffectivePolicy(assignment.policy, SOURCE_USER, assignment.assigned_at)

def get_device_policy(session: Session, device_id: int) -> Optional[EffectivePolicy]:
    """Device-level policy only, without falling back to the owner"""
    assignment = session.query(DeviceQosAssignment).filter_by(device_id=device_id).first()
    if assignment is None:
        return None
    return EffectivePolicy(assignment.policy, SOURCE_DEVICE, assignment.assigned_at)

def resolve_effective_policy(session: Session, device_id: int) -> Optional[EffectivePolicy]:
    """
    Resolve the policy that applies to a device.

    Args:
        session: Database session
        device_id: Device primary key

    Returns:
        EffectivePolicy with source "device" or "user", or None when neither
        level has an assignment (or the device does not exist)
    """
    device_policy = get_device_policy(session, device_id)
    if device_policy is not None:
        return device_policy

    device = session.get(Device, device_id)
    if device is None:
        return None

    return get_user_policy(session, device.user_id)

def list_users_by_policy(session: Session, policy_id: int) -> List[User]:
    get_policy(session, policy_id)
    return session.query(User).join(
        UserQosAssignment, UserQosAssignment.user_id == User.id
    ).filter(UserQosAssignment.qos_policy_id == policy_id).order_by(User.id).all()

def list_devices_by_policy(session: Session, policy_id: int) -> List[Device]:
    get_policy(session, policy_id)
    return session.query(Device).join(
        DeviceQosAssignment, DeviceQosAssignment.device_id == Device.id
    ).filter(DeviceQosAssignment.qos_policy_id == policy_id).order_by(Device.id).all()

def get_policy_stats(session: Session) -> Dict[str, int]:
    counts = dict(
        session.query(QosPolicy.priority, func.count(QosPolicy.id)).group_by(QosPolicy.priority).all()
    )
    return {
        'total_policies': sum(counts.values()),
        'high_priority': counts.get(Priority.HIGH, 0),
        'medium_priority': counts.get(Priority.MEDIUM, 0),
        'low_priority': counts.get(Priority.LOW, 0),
        'users_with_policies': session.query(func.count(UserQosAssignment.id)).scalar(),
        'devices_with_policies': session.query(func.count(DeviceQosAssignment.id)).scalar(),
    }
