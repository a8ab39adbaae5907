"""
Devices client for listing and claiming devices.
"""

from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime

import httpx
from pydantic import BaseModel, ConfigDict

from ..auth.session import TokenStore
from ..shared.config import SparkCloudConfig
from ..shared.errors import PreconditionError, ServiceError
from ..shared.http import bearer_headers, send_request
from ..shared.logging import get_logger


class Device(BaseModel):
    """A device as reported by the cloud. Offline devices carry partial data."""

    model_config = ConfigDict(extra="allow")

    id: str
    name: Optional[str] = None
    connected: bool = False
    last_app: Optional[str] = None
    last_heard: Optional[datetime] = None
    last_ip_address: Optional[str] = None
    product_id: Optional[int] = None
    variables: Dict[str, Any] = {}
    functions: List[str] = []


class DevicesClient:
    """Device management calls. Every call needs an active session."""

    def __init__(self, config: SparkCloudConfig, http_client: httpx.AsyncClient, token_store: TokenStore):
        self.config = config
        self.http_client = http_client
        self.token_store = token_store
        self.logger = get_logger("spark_cloud.devices.client")

    def _auth_headers(self) -> Dict[str, str]:
        token = self.token_store.access_token
        if not token:
            raise PreconditionError("No active session; log in first")
        return bearer_headers(token)

    async def get_devices(self) -> List[Device]:
        """Get all devices claimed by the session user."""
        body = await send_request(
            self.http_client,
            "GET",
            self.config.url("/v1/devices"),
            context="list devices",
            logger=self.logger,
            headers=self._auth_headers(),
        )
        if not isinstance(body, list):
            raise ServiceError("Device list response was not a list")
        return [Device.model_validate(item) for item in body]

    async def list_device_ids(self) -> List[str]:
        """IDs of the devices claimed by the session user."""
        return [device.id for device in await self.get_devices()]

    async def get_device(self, device_id: str) -> Device:
        """Get a single device. Slow for offline devices."""
        if not device_id:
            raise PreconditionError("device_id is required")

        body = await send_request(
            self.http_client,
            "GET",
            self.config.url(f"/v1/devices/{device_id}"),
            context="get device",
            logger=self.logger,
            headers=self._auth_headers(),
        )
        return Device.model_validate(body)

    async def claim_device(self, device_id: str):
        """Claim a device to the session user, without a claim code."""
        if not device_id:
            raise PreconditionError("device_id is required")

        body = await send_request(
            self.http_client,
            "POST",
            self.config.url("/v1/devices"),
            context="claim device",
            logger=self.logger,
            headers=self._auth_headers(),
            data={"id": device_id},
        )
        if body.get("ok") is False:
            raise ServiceError("Claim rejected", details={"errors": body.get("errors")})
        self.logger.info("Device claimed", device_id=device_id)

    async def generate_claim_code(self) -> Tuple[str, List[str]]:
        """Get a short-lived claim code plus the IDs of devices already claimed."""
        body = await send_request(
            self.http_client,
            "POST",
            self.config.url("/v1/device_claims"),
            context="generate claim code",
            logger=self.logger,
            headers=self._auth_headers(),
        )
        claim_code = body.get("claim_code")
        if not claim_code:
            raise ServiceError("Claim code response carried no claim_code")
        return claim_code, list(body.get("device_ids") or [])
