import yaml
from pathlib import Path
from dataclasses import dataclass
import re
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse

DEFAULT_CONFIG_PATH = "/etc/ovpn-portal.yaml"
DEFAULT_DATABASE_PATH = "/var/lib/ovpn-portal/portal.db"

@dataclass
class OpenVPNConfig:
    """Fixed client directives written into every profile"""
    server: str
    port: int = 1194
    protocol: str = "udp"
    cipher: str = "AES-256-GCM"
    auth: str = "SHA256"

@dataclass
class SessionSourceConfig:
    """Where and how often connected sessions are polled"""
    url: str
    clientinfo_url: Optional[str] = None
    poll_interval: timedelta = timedelta(seconds=60)
    timeout: timedelta = timedelta(seconds=10)

@dataclass
class Config:
    """Main application configuration"""
    database: str
    openvpn: OpenVPNConfig
    session_source: SessionSourceConfig
    profile_proxy_url: Optional[str] = None

def parse_duration(duration_str: str) -> timedelta:
    """
    Parse duration string like '45s', '30m', '1h', '2h30m'.

    Args:
        duration_str: Duration string with hour, minute and/or second parts

    Returns:
        timedelta object

    Raises:
        ValueError: If format is invalid
    """
    if isinstance(duration_str, int) and not isinstance(duration_str, bool):
        duration_str = f"{duration_str}s"

    if not isinstance(duration_str, str) or not re.fullmatch(r'(\d+h)?(\d+m)?(\d+s)?', duration_str.strip()):
        raise ValueError(f"Invalid duration format: {duration_str}")

    total_seconds = 0

    # Match hours
    hour_match = re.search(r'(\d+)h', duration_str)
    if hour_match:
        total_seconds += int(hour_match.group(1)) * 3600

    # Match minutes
    min_match = re.search(r'(\d+)m', duration_str)
    if min_match:
        total_seconds += int(min_match.group(1)) * 60

    # Match seconds
    sec_match = re.search(r'(\d+)s', duration_str)
    if sec_match:
        total_seconds += int(sec_match.group(1))

    if total_seconds == 0:
        raise ValueError(f"Invalid duration format: {duration_str}")

    return timedelta(seconds=total_seconds)

def _validate_url(value, field: str) -> str:
    parsed = urlparse(value) if isinstance(value, str) else None
    if parsed is None or parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise ValueError(f"{field}: invalid URL '{value}'")
    return value

def _parse_openvpn(data: dict) -> OpenVPNConfig:
    if 'server' not in data:
        raise ValueError("openvpn: missing required field: server")

    # Validate port type and range
    port = data.get('port', 1194)
    if not isinstance(port, int) or isinstance(port, bool):
        raise ValueError("openvpn: port must be an integer")
    if port < 1 or port > 65535:
        raise ValueError("openvpn: port must be between 1 and 65535")

    protocol = data.get('protocol', 'udp')
    if protocol not in ('udp', 'tcp'):
        raise ValueError(f"openvpn: protocol must be 'udp' or 'tcp', got '{protocol}'")

    return OpenVPNConfig(
        server=str(data['server']),
        port=port,
        protocol=protocol,
        cipher=str(data.get('cipher', 'AES-256-GCM')),
        auth=str(data.get('auth', 'SHA256'))
    )

def _parse_session_source(data: dict) -> SessionSourceConfig:
    if 'url' not in data:
        raise ValueError("session_source: missing required field: url")

    clientinfo_url = data.get('clientinfo_url')
    if clientinfo_url is not None:
        clientinfo_url = _validate_url(clientinfo_url, 'session_source.clientinfo_url')

    try:
        poll_interval = parse_duration(data.get('poll_interval', '60s'))
        timeout = parse_duration(data.get('timeout', '10s'))
    except ValueError as e:
        raise ValueError(f"session_source: {e}")

    if timeout > poll_interval:
        raise ValueError("session_source: timeout must not exceed poll_interval")

    return SessionSourceConfig(
        url=_validate_url(data['url'], 'session_source.url'),
        clientinfo_url=clientinfo_url,
        poll_interval=poll_interval,
        timeout=timeout
    )

def load_config(path: str = DEFAULT_CONFIG_PATH) -> Config:
    """
    Load and validate configuration file.

    Args:
        path: Path to YAML configuration file

    Returns:
        Config object

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with config_path.open() as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict):
        raise ValueError("Config file must contain a mapping")

    # Validate required sections
    if not isinstance(data.get('openvpn'), dict):
        raise ValueError("Missing 'openvpn' section in config")
    if not isinstance(data.get('session_source'), dict):
        raise ValueError("Missing 'session_source' section in config")

    profile_proxy_url = None
    profile_proxy = data.get('profile_proxy')
    if profile_proxy:
        if not isinstance(profile_proxy, dict) or 'url' not in profile_proxy:
            raise ValueError("profile_proxy: missing required field: url")
        profile_proxy_url = _validate_url(profile_proxy['url'], 'profile_proxy.url')

    return Config(
        database=str(data.get('database', DEFAULT_DATABASE_PATH)),
        openvpn=_parse_openvpn(data['openvpn']),
        session_source=_parse_session_source(data['session_source']),
        profile_proxy_url=profile_proxy_url
    )
