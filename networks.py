"""
Per-user LAN network registry.

Networks are pushed to the user's VPN profile as route directives. The derived
network_ip/subnet_mask columns are always recomputed from the CIDR here.
"""
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import Dict, List, Optional
import logging

from cidr import parse_cidr
from errors import ConflictError, NotFoundError, ValidationError
from models import LanNetwork, User

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 255

COMMON_NETWORKS = [
    {'cidr': '192.168.0.0/24', 'description': 'Home Network (Class C - 192.168.0.x)'},
    {'cidr': '192.168.1.0/24', 'description': 'Home Network (Class C - 192.168.1.x)'},
    {'cidr': '10.0.0.0/24', 'description': 'Office Network (Class A - 10.0.0.x)'},
    {'cidr': '10.0.1.0/24', 'description': 'Office Network (Class A - 10.0.1.x)'},
    {'cidr': '172.16.0.0/24', 'description': 'Private Network (Class B - 172.16.0.x)'},
    {'cidr': '192.168.0.0/16', 'description': 'Large Home Network (All 192.168.x.x)'},
    {'cidr': '10.0.0.0/8', 'description': 'Large Private Network (All 10.x.x.x)'},
]

def _check_description(description: Optional[str]) -> Optional[str]:
    if description is None:
        return None
    description = description.strip()
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(
            f"Description must be at most {MAX_DESCRIPTION_LENGTH} characters",
            field='description'
        )
    return description or None

def _ensure_unique_cidr(session: Session, user_id: int, cidr: str, exclude_id: int = None):
    query = session.query(LanNetwork).filter_by(user_id=user_id, network_cidr=cidr)
    if exclude_id is not None:
        query = query.filter(LanNetwork.id != exclude_id)
    if query.first() is not None:
        raise ConflictError(f"Network {cidr} is already registered for user {user_id}")

def _commit_network(session: Session, network: LanNetwork):
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise ConflictError(
            f"Network {network.network_cidr} is already registered for user {network.user_id}"
        )

def register_network(
    session: Session,
    user_id: int,
    cidr: str,
    description: Optional[str] = None
) -> LanNetwork:
    """
    Register a routable LAN network for a user.

    Args:
        session: Database session
        user_id: Owning user
        cidr: Network in CIDR notation (e.g., "192.168.1.0/24")
        description: Optional label shown in the profile comments

    Returns:
        The created LanNetwork (enabled)

    Raises:
        ValidationError: If the CIDR or description is invalid
        NotFoundError: If the user does not exist
        ConflictError: If the user already registered this CIDR
    """
    network_ip, subnet_mask = parse_cidr(cidr)
    description = _check_description(description)

    if session.get(User, user_id) is None:
        raise NotFoundError(f"User {user_id} not found")

    _ensure_unique_cidr(session, user_id, cidr)

    network = LanNetwork(
        user_id=user_id,
        network_cidr=cidr,
        network_ip=network_ip,
        subnet_mask=subnet_mask,
        description=description,
        enabled=True
    )
    session.add(network)
    _commit_network(session, network)

    logger.info(f"Registered LAN network {cidr} for user {user_id}")
    return network

def get_network(session: Session, network_id: int) -> LanNetwork:
    network = session.get(LanNetwork, network_id)
    if network is None:
        raise NotFoundError(f"LAN network {network_id} not found")
    return network

def update_network(
    session: Session,
    network_id: int,
    cidr: Optional[str] = None,
    description: Optional[str] = None,
    enabled: Optional[bool] = None
) -> LanNetwork:
    """
    Update a network. Changing the CIDR recomputes the address and mask.

    Raises:
        NotFoundError: If the network does not exist
        ValidationError: If the new CIDR or description is invalid
        ConflictError: If the new CIDR duplicates another network of the same user
    """
    network = get_network(session, network_id)

    if cidr is not None and cidr != network.network_cidr:
        network_ip, subnet_mask = parse_cidr(cidr)
        _ensure_unique_cidr(session, network.user_id, cidr, exclude_id=network.id)
        network.network_cidr = cidr
        network.network_ip = network_ip
        network.subnet_mask = subnet_mask

    if description is not None:
        network.description = _check_description(description)

    if enabled is not None:
        network.enabled = enabled

    _commit_network(session, network)
    logger.info(f"Updated LAN network {network_id}: cidr={network.network_cidr}, enabled={network.enabled}")
    return network

def set_enabled(session: Session, network_id: int, enabled: bool) -> LanNetwork:
    """Enable or disable a network without touching its CIDR"""
    return update_network(session, network_id, enabled=enabled)

def delete_network(session: Session, network_id: int) -> None:
    network = get_network(session, network_id)
    cidr = network.network_cidr
    session.delete(network)
    session.commit()
    logger.info(f"Deleted LAN network {network_id} ({cidr})")

def list_networks(session: Session, user_id: int, enabled_only: bool = False) -> List[LanNetwork]:
    """
    List a user's networks in creation order.

    Args:
        session: Database session
        user_id: Owning user
        enabled_only: Return only enabled networks

    Returns:
        List of LanNetwork rows
    """
    query = session.query(LanNetwork).filter_by(user_id=user_id)
    if enabled_only:
        query = query.filter(LanNetwork.enabled.is_(True))
    return query.order_by(LanNetwork.id).all()

def list_enabled(session: Session, user_id: int) -> List[LanNetwork]:
    return list_networks(session, user_id, enabled_only=True)

def get_network_stats(session: Session, user_id: int) -> Dict[str, int]:
    total = session.query(func.count(LanNetwork.id)).filter_by(user_id=user_id).scalar()
    enabled = session.query(func.count(LanNetwork.id)).filter(
        LanNetwork.user_id == user_id,
        LanNetwork.enabled.is_(True)
    ).scalar()
    return {
        'total_networks': total,
        'enabled_networks': enabled,
        'disabled_networks': total - enabled
    }
