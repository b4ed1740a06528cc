"""
Messaging gateway boundary.

The engine depends only on the `DeliveryGateway` capability set. The
shipped implementation talks to a WAHA-style WhatsApp HTTP bridge; the
session handshake itself lives in that bridge, not here.
"""
import logging
from enum import Enum
from typing import Dict, List, Optional, Protocol, runtime_checkable

import requests

from reminder_engine.core.config import settings
from .contacts import phone_candidates
from .errors import DeliveryUnreachable, GatewayDisconnected, TransientSendFailure

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    NOT_CONNECTED = "not_connected"
    RECONNECTING = "reconnecting"


@runtime_checkable
class DeliveryGateway(Protocol):
    def connection_state(self) -> ConnectionState: ...

    def is_reachable(self, address: str) -> bool: ...

    def send(self, address: str, content: str) -> bool: ...


# WAHA session statuses
_SESSION_STATES = {
    "WORKING": ConnectionState.CONNECTED,
    "STARTING": ConnectionState.RECONNECTING,
    "SCAN_QR_CODE": ConnectionState.RECONNECTING,
    "STOPPED": ConnectionState.NOT_CONNECTED,
    "FAILED": ConnectionState.NOT_CONNECTED,
}


def _json_body(r: requests.Response) -> dict:
    try:
        body = r.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class HttpDeliveryGateway:
    """DeliveryGateway over the WhatsApp HTTP bridge.

    Every call is bounded by `timeout`; timeouts and other transport errors are
    raised as TransientSendFailure.
    """

    chat_suffix = "@c.us"

    def __init__(
        self,
        base_url: Optional[str] = None,
        session_name: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        http: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or settings.GATEWAY_BASE_URL).rstrip("/")
        self.session_name = session_name or settings.GATEWAY_SESSION
        self.api_key = api_key if api_key is not None else settings.GATEWAY_API_KEY
        self.timeout = timeout or settings.GATEWAY_TIMEOUT_SECONDS
        self.http = http or requests.Session()

    def _build_headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-Api-Key"] = self.api_key
        return headers

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            return self.http.request(method, url, headers=self._build_headers(), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise TransientSendFailure(f"{method} {path}: {e}") from e

    def connection_state(self) -> ConnectionState:
        try:
            r = self._request("GET", f"/api/sessions/{self.session_name}")
        except TransientSendFailure as e:
            logger.warning(f"⚠️  [Gateway] Session status unavailable: {e}")
            return ConnectionState.NOT_CONNECTED
        if r.status_code != 200:
            return ConnectionState.NOT_CONNECTED
        status = str(_json_body(r).get("status", "")).upper()
        return _SESSION_STATES.get(status, ConnectionState.NOT_CONNECTED)

    def is_reachable(self, address: str) -> bool:
        r = self._request(
            "GET",
            "/api/contacts/check-exists",
            params={"phone": address, "session": self.session_name},
        )
        if r.status_code != 200:
            return False
        return bool(_json_body(r).get("numberExists"))

    def send(self, address: str, content: str) -> bool:
        r = self._request(
            "POST",
            "/api/sendText",
            json={"session": self.session_name, "chatId": f"{address}{self.chat_suffix}", "text": content},
        )
        return 200 <= r.status_code < 300


def deliver(
    gateway: DeliveryGateway,
    raw_address: str,
    content: str,
    country_code: Optional[str] = None,
) -> str:
    """Send `content` to the first candidate form of `raw_address` that works.

    Returns the candidate that received the message. Raises
    GatewayDisconnected without attempting anything when the gateway is not
    connected, TransientSendFailure when every candidate failed and at least
    one attempt timed out, DeliveryUnreachable otherwise.
    """
    state = gateway.connection_state()
    if state is not ConnectionState.CONNECTED:
        raise GatewayDisconnected(f"gateway state is {state.value}")

    candidates: List[str] = phone_candidates(raw_address, country_code)
    if not candidates:
        raise DeliveryUnreachable(f"unrecognised address format: {raw_address!r}")

    transient: Optional[TransientSendFailure] = None
    for candidate in candidates:
        try:
            if not gateway.is_reachable(candidate):
                logger.info(f"🔎 [Gateway] Candidate {candidate} not registered")
                continue
            if gateway.send(candidate, content):
                logger.info(f"✅ [Gateway] Message delivered to {candidate}")
                return candidate
            logger.warning(f"❌ [Gateway] Send rejected for candidate {candidate}")
        except TransientSendFailure as e:
            logger.warning(f"❌ [Gateway] Candidate {candidate} failed: {e}")
            transient = e

    if transient is not None:
        raise TransientSendFailure(f"all candidates failed for {raw_address!r}") from transient
    raise DeliveryUnreachable(f"no candidate of {raw_address!r} accepted the message")
