"""
Session source: the external feed of currently connected VPN sessions.

The reconciler only depends on the SessionSource protocol. HttpSessionSource
talks to the status endpoint exposed next to the OpenVPN server; any transport
error or malformed payload raises SourceUnavailableError so that the whole
cycle is abandoned.
"""
from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional, Protocol
import logging

import httpx

from errors import SourceUnavailableError

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class SessionRecord:
    """One connected session from a single poll"""
    username: str
    address: str
    connected_since: Optional[datetime] = None
    real_address: Optional[str] = None
    platform: Optional[str] = None

class SessionSource(Protocol):
    def fetch_sessions(self) -> List[SessionRecord]:
        ...

class StaticSessionSource:
    """Session source returning a fixed list; used offline and in tests"""

    def __init__(self, sessions: Optional[List[SessionRecord]] = None):
        self.sessions = list(sessions or [])

    def fetch_sessions(self) -> List[SessionRecord]:
        return list(self.sessions)

def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a connection start time into a naive UTC datetime.

    Accepts epoch seconds (int/float or numeric string) and ISO-8601 text.

    Raises:
        ValueError: If the value cannot be interpreted
    """
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        parsed = datetime.fromtimestamp(int(value), UTC)
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC).replace(tzinfo=None)
    return parsed

def _strip_port(address: Optional[str]) -> Optional[str]:
    # OpenVPN reports real addresses as "ip:port"
    if not address:
        return None
    if address.count(':') == 1:
        return address.split(':', 1)[0]
    return address

def _require_str(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Missing or invalid '{field}' in session entry")
    return value.strip()

def parse_vpnstatus(payload: Dict[str, Any]) -> List[SessionRecord]:
    """
    Parse the OpenVPN Access Server vpnstatus document.

    Format: {daemon: {"client_list_header": {column: index}, "client_list": [[...], ...]}}

    Sessions without a virtual address fall back to the real address as the
    device identifier.
    """
    records = []
    for daemon, daemon_data in payload.items():
        if not isinstance(daemon_data, dict):
            raise ValueError(f"Daemon '{daemon}' entry is not an object")

        client_list = daemon_data.get('client_list') or []
        if not client_list:
            continue

        headers = daemon_data.get('client_list_header')
        if not isinstance(headers, dict) or 'Username' not in headers:
            raise ValueError(f"Daemon '{daemon}' has no usable client_list_header")

        def column(row, name):
            index = headers.get(name)
            if index is None or index >= len(row):
                return None
            return row[index]

        for row in client_list:
            if not isinstance(row, list):
                raise ValueError(f"Daemon '{daemon}' client row is not a list")

            real_ip = _strip_port(column(row, 'Real Address'))
            address = column(row, 'Virtual Address') or real_ip
            records.append(SessionRecord(
                username=_require_str(column(row, 'Username'), 'Username'),
                address=_require_str(address, 'Virtual Address'),
                connected_since=parse_timestamp(column(row, 'Connected Since (time_t)')
                                                or column(row, 'Connected Since')),
                real_address=real_ip
            ))

    return records

def parse_session_list(payload: List[Any]) -> List[SessionRecord]:
    """Parse a plain JSON list of {"username", "address", "connected_since", ...} objects"""
    records = []
    for entry in payload:
        if not isinstance(entry, dict):
            raise ValueError("Session entry is not an object")
        records.append(SessionRecord(
            username=_require_str(entry.get('username'), 'username'),
            address=_require_str(entry.get('address'), 'address'),
            connected_since=parse_timestamp(entry.get('connected_since')),
            real_address=_strip_port(entry.get('real_address')),
            platform=entry.get('platform')
        ))
    return records

def parse_sessions(payload: Any) -> List[SessionRecord]:
    """
    Parse a status payload in either supported shape.

    Raises:
        ValueError: If the payload is malformed
    """
    if isinstance(payload, list):
        return parse_session_list(payload)
    if isinstance(payload, dict):
        return parse_vpnstatus(payload)
    raise ValueError(f"Unexpected status payload type: {type(payload).__name__}")

class HttpSessionSource:
    """
    Session source backed by an HTTP status endpoint.

    Args:
        url: Status endpoint (GET, JSON)
        timeout: Seconds before the request is abandoned
        clientinfo_url: Optional endpoint returning [{"vpn_ip", "platform"}]
            used to fill in the platform of each session
        client: Optional httpx.Client to reuse
    """

    def __init__(self, url: str, timeout: float = 10.0, clientinfo_url: str = None,
                 client: httpx.Client = None):
        self.url = url
        self.timeout = timeout
        self.clientinfo_url = clientinfo_url
        self._client = client or httpx.Client(timeout=timeout)

    def close(self):
        self._client.close()

    def _get_json(self, url: str) -> Any:
        response = self._client.get(url, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def fetch_sessions(self) -> List[SessionRecord]:
        """
        Fetch and parse the current session list.

        Raises:
            SourceUnavailableError: On timeout, transport error, non-2xx status
                or a payload that cannot be parsed
        """
        try:
            payload = self._get_json(self.url)
        except httpx.HTTPStatusError as e:
            raise SourceUnavailableError(
                f"Session source returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise SourceUnavailableError(f"Session source unreachable: {e}") from e
        except ValueError as e:
            raise SourceUnavailableError(f"Session source returned invalid JSON: {e}") from e

        try:
            records = parse_sessions(payload)
        except (ValueError, TypeError, OverflowError) as e:
            raise SourceUnavailableError(f"Malformed session payload: {e}") from e

        if self.clientinfo_url and records:
            records = self._with_platforms(records)

        logger.debug(f"Fetched {len(records)} session(s) from {self.url}")
        return records

    def _with_platforms(self, records: List[SessionRecord]) -> List[SessionRecord]:
        # Platform data only refines device types; presence never depends on it
        try:
            info = self._get_json(self.clientinfo_url)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Failed to fetch client info from {self.clientinfo_url}: {e}")
            return records

        if not isinstance(info, list):
            logger.warning("Ignoring client info payload that is not a list")
            return records

        platforms = {
            entry['vpn_ip']: entry.get('platform')
            for entry in info
            if isinstance(entry, dict) and entry.get('vpn_ip')
        }
        return [
            SessionRecord(
                username=record.username,
                address=record.address,
                connected_since=record.connected_since,
                real_address=record.real_address,
                platform=platforms.get(record.address, record.platform)
            )
            for record in records
        ]
