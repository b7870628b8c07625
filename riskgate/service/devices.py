from __future__ import annotations

import time
from typing import Callable, List, Optional

from riskgate.logging import get_logger
from riskgate.service.fingerprint import DeviceInfo
from riskgate.storage.common import Keys, StateStore
from riskgate.storage.models import DeviceRegistration

logger = get_logger(__name__)

TRUSTED_DEVICE_TRUST = 0.9
DEFAULT_DEVICE_TRUST = 0.5
TRUSTED_RISK_SCORE = 0.1
UNTRUSTED_RISK_SCORE = 0.5


class DeviceRegistry:
    """Per-user registered devices; records never expire on their own."""

    def __init__(self, state: StateStore, *, clock: Callable[[], float] = time.time) -> None:
        self.state = state
        self._clock = clock

    async def get(self, user_id: str, device_id: str) -> Optional[DeviceRegistration]:
        raw = await self.state.get_json(Keys.device(user_id, device_id))
        return DeviceRegistration.from_record(raw) if raw else None

    async def is_registered(self, user_id: str, device_id: str) -> bool:
        return await self.get(user_id, device_id) is not None

    async def trust_level(self, user_id: str, device_id: str) -> float:
        return self.trust_of(await self.get(user_id, device_id))

    @staticmethod
    def trust_of(registration: Optional[DeviceRegistration]) -> float:
        """0.0 unregistered, 0.9 trusted, else the stored risk score."""
        if registration is None:
            return 0.0
        if registration.trusted:
            return TRUSTED_DEVICE_TRUST
        return registration.risk_score or DEFAULT_DEVICE_TRUST

    async def register(
        self, user_id: str, device: DeviceInfo, *, trusted: bool
    ) -> DeviceRegistration:
        now = self._clock()
        existing = await self.get(user_id, device.device_id)
        if existing is not None:
            # Re-registering never downgrades a trusted device
            existing.trusted = existing.trusted or trusted
            existing.risk_score = TRUSTED_RISK_SCORE if existing.trusted else existing.risk_score
            existing.last_used = now
            existing.fingerprint_metadata = device.metadata()
            await self.state.set_json(Keys.device(user_id, device.device_id), existing.to_record())
            return existing

        registration = DeviceRegistration(
            device_id=device.device_id,
            user_id=user_id,
            display_name=device.display_name,
            trusted=trusted,
            risk_score=TRUSTED_RISK_SCORE if trusted else UNTRUSTED_RISK_SCORE,
            registered_at=now,
            last_used=now,
            fingerprint_metadata=device.metadata(),
        )
        await self.state.set_json(
            Keys.device(user_id, device.device_id), registration.to_record()
        )
        await self.state.add_member(Keys.user_devices(user_id), device.device_id)
        logger.info(
            "device_registered",
            user_id=user_id,
            device_id=device.device_id,
            trusted=trusted,
        )
        return registration

    async def touch(self, user_id: str, device_id: str) -> Optional[DeviceRegistration]:
        registration = await self.get(user_id, device_id)
        if registration is None:
            return None
        registration.last_used = self._clock()
        await self.state.set_json(Keys.device(user_id, device_id), registration.to_record())
        return registration

    async def set_trust(
        self, user_id: str, device_id: str, trusted: bool
    ) -> Optional[DeviceRegistration]:
        registration = await self.get(user_id, device_id)
        if registration is None:
            return None
        registration.trusted = trusted
        registration.risk_score = TRUSTED_RISK_SCORE if trusted else UNTRUSTED_RISK_SCORE
        await self.state.set_json(Keys.device(user_id, device_id), registration.to_record())
        logger.info("device_trust_changed", user_id=user_id, device_id=device_id, trusted=trusted)
        return registration

    async def list_devices(self, user_id: str) -> List[DeviceRegistration]:
        devices: List[DeviceRegistration] = []
        for device_id in await self.state.members(Keys.user_devices(user_id)):
            registration = await self.get(user_id, device_id)
            if registration is not None:
                devices.append(registration)
        return sorted(devices, key=lambda reg: reg.last_used, reverse=True)

    async def remove(self, user_id: str, device_id: str) -> bool:
        removed = await self.state.delete(Keys.device(user_id, device_id))
        await self.state.remove_member(Keys.user_devices(user_id), device_id)
        if removed:
            logger.info("device_removed", user_id=user_id, device_id=device_id)
        return removed
