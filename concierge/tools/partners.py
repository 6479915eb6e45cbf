from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional
import logging

import httpx

from concierge.config import LOG_LEVEL, PARTNER_API_URL, PARTNER_TIMEOUT

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s: %(message)s"))
    logger.addHandler(handler)
logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
logger.propagate = False

DEFAULT_ADULTS = 2


@dataclass
class TransferDefaults:
    pickup_time: str = "10:00"
    transfer_type: str = "PRIVATE"
    direction: str = "ONE_WAY"


class PartnerSearch:
    """
    Thin async client for the partner activities / transfers search services.
    Results are returned verbatim; HTTP failures surface as ``httpx.HTTPError``.
    """

    def __init__(
        self,
        base_url: str = PARTNER_API_URL,
        *,
        timeout: float = PARTNER_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        transfer_defaults: Optional[TransferDefaults] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.transfer_defaults = transfer_defaults or TransferDefaults()

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(f"{self.base_url}/{path}", json=payload)
            response.raise_for_status()
            data = response.json()
        return data if isinstance(data, dict) else {}

    @staticmethod
    def activities_payload(draft: Mapping[str, Any]) -> Dict[str, Any]:
        return {
            "destination": draft.get("destination"),
            "from": draft.get("checkIn"),
            "to": draft.get("checkOut"),
            "adults": draft.get("adults") or DEFAULT_ADULTS,
            "children": 0,
            "language": "en",
        }

    def transfers_payload(self, draft: Mapping[str, Any]) -> Dict[str, Any]:
        destination = draft.get("destination")
        return {
            "pickupLocation": f"{destination} Airport",
            "dropoffLocation": f"{destination} City Center",
            "pickupDate": draft.get("checkIn"),
            "pickupTime": self.transfer_defaults.pickup_time,
            "adults": draft.get("adults") or DEFAULT_ADULTS,
            "children": 0,
            "transferType": self.transfer_defaults.transfer_type,
            "direction": self.transfer_defaults.direction,
        }

    async def search_activities(self, draft: Mapping[str, Any]) -> List[Any]:
        logger.info("Searching activities for %s", draft.get("destination"))
        data = await self._post("activities", self.activities_payload(draft))
        return list(data.get("activities") or [])

    async def search_transfers(self, draft: Mapping[str, Any]) -> List[Any]:
        logger.info("Searching transfers for %s", draft.get("destination"))
        data = await self._post("transfers", self.transfers_payload(draft))
        return list(data.get("transfers") or [])
