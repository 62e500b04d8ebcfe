import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import httpx

from app.core.config import Settings, get_settings
from app.schemas.scheduler import Channel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendOutcome:
    success: bool
    error_detail: Optional[str] = None

    @classmethod
    def ok(cls) -> "SendOutcome":
        return cls(success=True)

    @classmethod
    def failure(cls, detail: str) -> "SendOutcome":
        return cls(success=False, error_detail=detail)


class ChannelAdapter(ABC):
    """Delivers one channel's payload to one recipient.

    Implementations report delivery problems through the returned outcome.
    Raising is tolerated (the coordinator records it as a failed send) but
    never aborts the run.
    """

    channel: Channel

    @abstractmethod
    async def send(self, recipient_id: str, payload: Any) -> SendOutcome:
        raise NotImplementedError


class HttpGatewayAdapter(ChannelAdapter):
    """Hands messages to an HTTP delivery gateway, one POST per recipient."""

    def __init__(
        self,
        channel: Channel,
        endpoint_url: str,
        auth_token: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.channel = Channel(channel)
        self.endpoint_url = endpoint_url
        self.auth_token = auth_token
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    async def send(self, recipient_id: str, payload: Any) -> SendOutcome:
        body = payload.model_dump(mode="json") if hasattr(payload, "model_dump") else dict(payload)
        data = {
            "channel": self.channel.value,
            "recipient_id": recipient_id,
            "payload": body,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.endpoint_url, headers=self._headers(), json=data)
                response.raise_for_status()
        except Exception as exc:
            logger.error(
                "Failed to hand %s message for recipient %s to gateway: %s",
                self.channel.value,
                recipient_id,
                exc,
            )
            return SendOutcome.failure(str(exc) or exc.__class__.__name__)

        # Gateways may accept the request yet refuse the recipient
        if response.content:
            try:
                result = response.json()
            except ValueError:
                result = None
            if isinstance(result, dict) and result.get("success") is False:
                return SendOutcome.failure(str(result.get("error") or "rejected by gateway"))

        return SendOutcome.ok()


class ChannelAdapterRegistry:
    def __init__(self, adapters: Optional[Iterable[ChannelAdapter]] = None) -> None:
        self._adapters: Dict[Channel, ChannelAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: ChannelAdapter) -> None:
        self._adapters[Channel(adapter.channel)] = adapter

    def get(self, channel: Channel) -> Optional[ChannelAdapter]:
        return self._adapters.get(Channel(channel))

    def channels(self) -> List[Channel]:
        return [channel for channel in Channel if channel in self._adapters]

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ChannelAdapterRegistry":
        settings = settings or get_settings()
        registry = cls()
        for channel_value, url in settings.gateway_urls().items():
            if not url:
                continue
            registry.register(
                HttpGatewayAdapter(
                    Channel(channel_value),
                    url,
                    auth_token=settings.gateway_auth_token,
                    timeout=settings.dispatch_send_timeout_seconds,
                )
            )
        logger.info(
            "Channel adapters configured for: %s",
            ", ".join(c.value for c in registry.channels()) or "none",
        )
        return registry
