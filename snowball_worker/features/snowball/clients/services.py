"""
External collaborators: domain reputation, email verification and
notification delivery. Each is a ``Protocol`` plus an HTTP implementation.
"""

from typing import Any, Protocol

from snowball_worker.config import Settings, settings as default_settings

from .http import JsonServiceClient


class DomainReputationService(Protocol):
    async def check(self, domain: str) -> float: ...


class EmailVerificationService(Protocol):
    async def verify(self, address: str) -> bool: ...


class NotificationSender(Protocol):
    async def send(self, owner_id: str, template: str, data: dict[str, Any]) -> None: ...


class HttpDomainReputationService(JsonServiceClient):
    service_name = "reputation"

    @classmethod
    def from_settings(cls, app_settings: Settings | None = None) -> "HttpDomainReputationService":
        cfg = app_settings or default_settings
        return cls(cfg.REPUTATION_SERVICE_URL, cfg.REPUTATION_SERVICE_API_KEY, app_settings=cfg)

    async def check(self, domain: str) -> float:
        data = await self._post_with_retry("/v1/reputation", {"domain": domain}, "check")
        return float(data.get("score", 0.0))


class HttpEmailVerificationService(JsonServiceClient):
    service_name = "verification"

    @classmethod
    def from_settings(cls, app_settings: Settings | None = None) -> "HttpEmailVerificationService":
        cfg = app_settings or default_settings
        return cls(
            cfg.VERIFICATION_SERVICE_URL, cfg.VERIFICATION_SERVICE_API_KEY, app_settings=cfg
        )

    async def verify(self, address: str) -> bool:
        data = await self._post_with_retry("/v1/verify", {"email": address}, "verify")
        return bool(data.get("valid", False))


class HttpNotificationSender(JsonServiceClient):
    service_name = "notifications"

    @classmethod
    def from_settings(cls, app_settings: Settings | None = None) -> "HttpNotificationSender":
        cfg = app_settings or default_settings
        return cls(
            cfg.NOTIFICATION_SERVICE_URL, cfg.NOTIFICATION_SERVICE_API_KEY, app_settings=cfg
        )

    async def send(self, owner_id: str, template: str, data: dict[str, Any]) -> None:
        await self._post_with_retry(
            "/v1/notifications",
            {"userId": owner_id, "template": template, "data": data},
            "send",
        )
