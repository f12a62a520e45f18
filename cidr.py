import re
from typing import Tuple

from errors import ValidationError

CIDR_PATTERN = re.compile(r'([0-9]{1,3}\.){3}[0-9]{1,3}/[0-9]{1,2}')

def is_valid_cidr(cidr: str) -> bool:
    """
    Check an IPv4 CIDR string like "192.168.1.0/24".

    Args:
        cidr: Network in CIDR notation

    Returns:
        True if the string has four octets in 0-255 and a prefix in 0-32
    """
    if not isinstance(cidr, str) or not CIDR_PATTERN.fullmatch(cidr):
        return False

    address, prefix = cidr.split('/')
    if any(int(octet) > 255 for octet in address.split('.')):
        return False

    return 0 <= int(prefix) <= 32

def prefix_to_mask(prefix: int) -> str:
    """Dotted-quad subnet mask for a prefix length, e.g. 24 -> 255.255.255.0"""
    bits = (0xFFFFFFFF << (32 - prefix)) & 0xFFFFFFFF if prefix else 0
    return '.'.join(str((bits >> shift) & 0xFF) for shift in (24, 16, 8, 0))

def parse_cidr(cidr: str) -> Tuple[str, str]:
    """
    Split a CIDR string into its network address and subnet mask.

    The address is returned as written; host bits are not cleared.

    Args:
        cidr: Network in CIDR notation (e.g., "192.168.1.0/24")

    Returns:
        Tuple of (network_ip, subnet_mask)

    Raises:
        ValidationError: If the CIDR is malformed or out of range
    """
    if not is_valid_cidr(cidr):
        raise ValidationError(
            f"Invalid CIDR notation: {cidr!r} (expected a.b.c.d/0-32 with octets 0-255)",
            field='cidr'
        )

    network_ip, prefix = cidr.split('/')
    return network_ip, prefix_to_mask(int(prefix))

def cidr_from_mask(network_ip: str, subnet_mask: str) -> str:
    """
    Rebuild a CIDR string from a stored address and mask.

    Raises:
        ValidationError: If the mask is not a contiguous run of leading ones
    """
    try:
        octets = [int(part) for part in subnet_mask.split('.')]
    except ValueError:
        raise ValidationError(f"Invalid subnet mask: {subnet_mask!r}", field='subnet_mask')

    if len(octets) != 4 or any(o < 0 or o > 255 for o in octets):
        raise ValidationError(f"Invalid subnet mask: {subnet_mask!r}", field='subnet_mask')

    bits = (octets[0] << 24) | (octets[1] << 16) | (octets[2] << 8) | octets[3]
    prefix = bin(bits).count('1')
    if prefix_to_mask(prefix) != subnet_mask:
        raise ValidationError(f"Non-contiguous subnet mask: {subnet_mask!r}", field='subnet_mask')

    return f"{network_ip}/{prefix}"
