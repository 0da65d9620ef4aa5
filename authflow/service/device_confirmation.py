from __future__ import annotations

import asyncio
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from authflow.config import Settings
from authflow.logging import get_logger
from authflow.service.delivery import DeviceConfirmationChannel, Dispatcher
from authflow.service.errors import AlreadyResolvedError, NotFoundError
from authflow.storage.models import (
    ConfirmationStatus,
    DeviceConfirmation,
    DeviceContext,
    DeviceTrust,
    Principal,
    utcnow,
)
from authflow.storage.protocol import AuthStore

logger = get_logger(__name__)


class DeviceConfirmationCoordinator:
    """Out-of-band confirmation of a login from an untrusted device.

    A login waits on an in-process ``asyncio.Event`` until the record's
    absolute deadline. ``resolve`` (called by the companion channel) moves
    the stored record with a compare-and-set and wakes local waiters; a
    waiter in another worker sees the result when its own timeout CAS loses.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        channel: Optional[DeviceConfirmationChannel] = None,
        dispatcher: Optional[Dispatcher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.channel = channel
        self.dispatcher = dispatcher or Dispatcher()
        self._clock = clock or utcnow
        self._waiters: Dict[str, List[Tuple[asyncio.AbstractEventLoop, asyncio.Event]]] = {}
        self._waiters_lock = threading.Lock()

    def _now(self) -> datetime:
        return self._clock()

    def requires_confirmation(self, principal: Principal, device_context: DeviceContext) -> bool:
        if not self.settings.device_confirmation_enabled:
            return False
        if device_context.device_id in (principal.trusted_devices or []):
            return False
        return (device_context.platform or "").lower() in self.settings.device_confirmation_platforms

    def request_confirmation(self, principal_id: str, device_id: str) -> DeviceConfirmation:
        now = self._now()
        confirmation = DeviceConfirmation(
            callback_id=str(uuid.uuid4()),
            device_id=device_id,
            principal_id=principal_id,
            status=ConfirmationStatus.PENDING,
            created_at=now,
            deadline_at=now + timedelta(seconds=self.settings.device_confirmation_timeout_seconds),
        )
        self.store.create_device_confirmation(confirmation)
        logger.info(
            "device_confirmation_requested",
            principal_id=principal_id,
            device_id=device_id,
            callback_id=confirmation.callback_id,
            deadline_at=confirmation.deadline_at.isoformat(),
        )
        if self.channel is not None:
            self.dispatcher.submit(
                self.channel.notify(confirmation),
                event="device_confirmation_notify",
                callback_id=confirmation.callback_id,
            )
        return confirmation

    def _get(self, callback_id: str) -> DeviceConfirmation:
        record = self.store.get_device_confirmation(callback_id)
        if record is None:
            raise NotFoundError("confirmation not found", detail={"callback_id": callback_id})
        return record

    # ------------------------------------------------------------------
    # Waiter registry
    # ------------------------------------------------------------------

    def _register(self, callback_id: str) -> asyncio.Event:
        event = asyncio.Event()
        entry = (asyncio.get_running_loop(), event)
        with self._waiters_lock:
            self._waiters.setdefault(callback_id, []).append(entry)
        return event

    def _unregister(self, callback_id: str, event: asyncio.Event) -> None:
        with self._waiters_lock:
            entries = [e for e in self._waiters.get(callback_id, []) if e[1] is not event]
            if entries:
                self._waiters[callback_id] = entries
            else:
                self._waiters.pop(callback_id, None)

    def _signal(self, callback_id: str) -> None:
        with self._waiters_lock:
            entries = list(self._waiters.get(callback_id, []))
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        for loop, event in entries:
            if loop is current:
                event.set()
            elif not loop.is_closed():
                loop.call_soon_threadsafe(event.set)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _expire_if_due(self, record: DeviceConfirmation, now: datetime) -> DeviceConfirmation:
        if record.status != ConfirmationStatus.PENDING or now < record.deadline_at:
            return record
        changed, current = self.store.transition_device_confirmation(
            record.callback_id, to_status=ConfirmationStatus.TIMED_OUT, now=now
        )
        if changed:
            logger.info(
                "device_confirmation_timed_out",
                callback_id=record.callback_id,
                principal_id=record.principal_id,
            )
        return current or record

    def resolve(self, callback_id: str, *, approved: bool = True) -> DeviceConfirmation:
        now = self._now()
        record = self._expire_if_due(self._get(callback_id), now)

        if record.status == ConfirmationStatus.PENDING:
            target = ConfirmationStatus.CONFIRMED if approved else ConfirmationStatus.REJECTED
            changed, current = self.store.transition_device_confirmation(
                callback_id, to_status=target, now=now
            )
            if changed and current is not None:
                logger.info(
                    "device_confirmation_resolved",
                    callback_id=callback_id,
                    principal_id=current.principal_id,
                    status=current.status,
                )
                self._signal(callback_id)
                return current
            record = current or self._get(callback_id)

        upgraded = False
        if approved and record.status == ConfirmationStatus.TIMED_OUT:
            upgraded = self._late_upgrade(record)
        logger.info(
            "device_confirmation_already_resolved",
            callback_id=callback_id,
            status=record.status,
            trust_upgraded=upgraded,
        )
        raise AlreadyResolvedError(
            "confirmation already resolved",
            detail={
                "callback_id": callback_id,
                "status": record.status,
                "trust_upgraded": upgraded,
            },
        )

    def _late_upgrade(self, record: DeviceConfirmation) -> bool:
        """Flag a fallback session as confirmed after the fact; tokens stay as issued."""
        if not self.settings.allow_late_confirmation_upgrade or not record.family_id:
            return False
        family = self.store.get_token_family(record.family_id)
        if family is None or family.revoked or family.device_trust != DeviceTrust.UNCONFIRMED:
            return False
        self.store.update_family_trust(record.family_id, DeviceTrust.CONFIRMED_LATE)
        logger.info(
            "device_confirmation_late_upgrade",
            callback_id=record.callback_id,
            family_id=record.family_id,
        )
        return True

    async def await_confirmation(self, callback_id: str) -> DeviceConfirmation:
        record = self._get(callback_id)
        if record.is_terminal:
            return record
        event = self._register(callback_id)
        try:
            # Re-read after registering so a resolve in between is not missed
            record = self._get(callback_id)
            if record.status == ConfirmationStatus.PENDING:
                remaining = (record.deadline_at - self._now()).total_seconds()
                if remaining > 0:
                    try:
                        await asyncio.wait_for(event.wait(), timeout=remaining)
                    except asyncio.TimeoutError:
                        pass
        finally:
            self._unregister(callback_id, event)

        record = self._get(callback_id)
        if record.status != ConfirmationStatus.PENDING:
            return record
        changed, current = self.store.transition_device_confirmation(
            callback_id, to_status=ConfirmationStatus.TIMED_OUT, now=self._now()
        )
        if changed:
            logger.info(
                "device_confirmation_fallback",
                callback_id=callback_id,
                principal_id=record.principal_id,
                device_id=record.device_id,
            )
        # A lost CAS means another worker resolved it first; that result stands
        return current or record

    def attach_family(self, callback_id: str, family_id: str) -> None:
        self.store.set_confirmation_family(callback_id, family_id)

    def status(self, callback_id: str) -> Dict[str, Any]:
        record = self._get(callback_id)
        now = self._now()
        status = record.status
        if status == ConfirmationStatus.PENDING and now >= record.deadline_at:
            status = ConfirmationStatus.TIMED_OUT
        remaining = 0.0
        if status == ConfirmationStatus.PENDING:
            remaining = max(0.0, (record.deadline_at - now).total_seconds())
        return {
            "callback_id": record.callback_id,
            "device_id": record.device_id,
            "status": status,
            "deadline_at": record.deadline_at.isoformat(),
            "resolved_at": record.resolved_at.isoformat() if record.resolved_at else None,
            "remaining_seconds": round(remaining, 3),
        }
