"""
Device presence reconciler.

Each cycle pulls the full session list, marks every reported (user,
identifier) device active, then marks previously active devices that were not
reported inactive. A failed fetch aborts the cycle before any write.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, UTC
import logging
import threading
import time
from typing import Optional, Set, Tuple

from devices import default_device_name, detect_device_type, mark_inactive, record_sighting, resolve_user
from errors import SourceUnavailableError
from models import Device
from session_source import SessionSource

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 60

@dataclass
class ReconcileResult:
    """Outcome of one reconciliation cycle"""
    created: int = 0
    updated: int = 0
    deactivated: int = 0
    unknown_users: Set[str] = field(default_factory=set)
    duration_ms: float = 0
    timestamp: Optional[datetime] = None

class CycleInProgressError(Exception):
    """Raised by run_once when another cycle holds the reentrancy guard"""
    pass

class Reconciler:
    """
    Reconciles a SessionSource into the device store.

    Args:
        session_factory: SQLAlchemy session factory
        source: Session source to poll
        interval: Seconds between scheduled cycles
    """

    def __init__(self, session_factory, source: SessionSource, interval: float = DEFAULT_POLL_INTERVAL):
        self.session_factory = session_factory
        self.source = source
        self.interval = interval
        self._guard = threading.Lock()
        self._task: Optional[asyncio.Task] = None
        self._cycle: Optional[asyncio.Future] = None
        self.last_result: Optional[ReconcileResult] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def run_once(self) -> ReconcileResult:
        """
        Run one full pull-then-diff cycle.

        Returns:
            ReconcileResult with counts of affected devices

        Raises:
            SourceUnavailableError: If the session source failed; nothing was written
            CycleInProgressError: If another cycle is still running
        """
        if not self._guard.acquire(blocking=False):
            raise CycleInProgressError("A reconciliation cycle is already running")
        try:
            result = self._reconcile()
            self.last_result = result
            return result
        finally:
            self._guard.release()

    def _reconcile(self) -> ReconcileResult:
        start_time = time.perf_counter()
        result = ReconcileResult(timestamp=datetime.now(UTC))

        # Fetch everything before touching the store
        records = self.source.fetch_sessions()
        logger.info(f"Found {len(records)} active VPN session(s)")

        present: Set[Tuple[int, str]] = set()

        with self.session_factory() as session:
            for record in records:
                user = resolve_user(session, record.username)
                if user is None:
                    if record.username not in result.unknown_users:
                        logger.warning(f"User not found for VPN session: {record.username}")
                    result.unknown_users.add(record.username)
                    continue

                user_id = user.id
                key = (user_id, record.address)
                if key in present:
                    continue
                present.add(key)

                device_type = detect_device_type(record.platform) if record.platform else None
                _, created = record_sighting(
                    session,
                    user_id=user_id,
                    identifier=record.address,
                    name=default_device_name(
                        record.username,
                        device_type or detect_device_type(None),
                        record.address,
                        record.platform
                    ),
                    last_ip=record.real_address or record.address,
                    connected_at=record.connected_since,
                    device_type=device_type
                )
                if created:
                    result.created += 1
                else:
                    result.updated += 1

            # Only after every present device is active: diff against the active set
            active_devices = session.query(Device).filter(Device.is_active.is_(True)).all()
            for device in active_devices:
                if (device.user_id, device.device_id) not in present:
                    mark_inactive(session, device)
                    result.deactivated += 1

        result.duration_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"Reconciliation complete: created={result.created}, updated={result.updated}, "
            f"deactivated={result.deactivated}, duration={result.duration_ms:.1f}ms"
        )
        return result

    async def _tick(self):
        try:
            await asyncio.to_thread(self.run_once)
        except SourceUnavailableError as e:
            logger.error(f"Session source unavailable, skipping cycle: {e}")
        except CycleInProgressError:
            logger.warning("Previous reconciliation cycle still running, skipping tick")
        except Exception as e:
            logger.error(f"Error in reconciliation cycle: {e}", exc_info=True)

    async def run_forever(self):
        """
        Tick every `interval` seconds, starting immediately.

        A tick that fires while the previous cycle is still in flight is
        skipped instead of starting an overlapping cycle.
        """
        logger.info(f"Starting VPN presence reconciler (interval: {self.interval}s)")
        while True:
            if self._cycle is not None and not self._cycle.done():
                logger.warning("Previous reconciliation cycle still running, skipping tick")
            else:
                self._cycle = asyncio.ensure_future(self._tick())
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task:
        """Schedule the reconciler on the running event loop"""
        if self.running:
            logger.warning("Reconciler is already running")
            return self._task
        self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self, timeout: float = 10.0):
        """
        Cancel the scheduled task and any in-flight cycle.

        The worker thread of an in-flight poll cannot be interrupted; it is
        abandoned and bounded by the session source timeout.
        """
        for task in (self._task, self._cycle):
            if task is not None and not task.done():
                task.cancel()

        pending = [t for t in (self._task, self._cycle) if t is not None]
        if pending:
            await asyncio.wait(pending, timeout=timeout)

        self._task = None
        self._cycle = None
        logger.info("VPN presence reconciler stopped")
