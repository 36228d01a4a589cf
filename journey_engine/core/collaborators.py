"""
Narrow interfaces to the systems the engine drives but does not own.

Messaging transport, CRM actions, AI providers, outbound HTTP, contact lookup
and wake scheduling are all reached through the classes below. Default
implementations are provided for running the service standalone; production
deployments substitute their own.
"""

import json
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Optional

import requests

from ..models.core import WakeCondition, WebhookAuth
from .exceptions import TransientExecutorError
from .logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class DeliveryReceipt:
    delivery_id: str
    status: str = "sent"


@dataclass(frozen=True)
class WebhookResponse:
    status_code: int
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class MessagingClient:
    """Outbound message transport."""

    def send(self, phone_number: str, content: Dict[str, Any]) -> DeliveryReceipt:
        raise NotImplementedError


class ActionClient:
    """Contact-side effects such as tagging or field updates."""

    def apply_action(self, contact_id: str, action_type: str, params: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError


class AIClient:
    """Classification or generation over a piece of text."""

    def classify(self, text: str, kind: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        raise NotImplementedError


class WebhookClient:
    """Outbound HTTP calls. Network failures and timeouts raise TransientExecutorError."""

    def call(self, url: str, method: str, auth: Optional[WebhookAuth], body: Any,
             headers: Dict[str, str], timeout: int) -> WebhookResponse:
        raise NotImplementedError


class ContactDirectory:
    """Read access to contact records (phone, name, tags, custom fields)."""

    def get_contact(self, contact_id: str) -> Dict[str, Any]:
        raise NotImplementedError


class WakeScheduler:
    """Receives wake conditions of suspended executions."""

    def schedule_wake(self, execution_id: str, wake_condition: WakeCondition) -> None:
        raise NotImplementedError


class LoggingMessagingClient(MessagingClient):
    """Logs messages instead of delivering them, keeping the most recent ``history`` in ``sent``."""

    def __init__(self, history: int = 1000):
        self.sent: Deque[Dict[str, Any]] = deque(maxlen=history)
        self._lock = threading.Lock()

    def send(self, phone_number: str, content: Dict[str, Any]) -> DeliveryReceipt:
        receipt = DeliveryReceipt(delivery_id=str(uuid.uuid4()), status="sent")
        with self._lock:
            self.sent.append({"phone_number": phone_number, "content": content,
                              "delivery_id": receipt.delivery_id})
        logger.info(f"Message queued for {phone_number} ({receipt.delivery_id})")
        return receipt


class LoggingActionClient(ActionClient):
    """Records actions in the log instead of applying them."""

    def apply_action(self, contact_id: str, action_type: str, params: Dict[str, Any]) -> Dict[str, Any]:
        logger.info(f"Action {action_type} for contact {contact_id}: {params}")
        return {"applied": True, "action_type": action_type}


class NullAIClient(AIClient):
    """Placeholder provider returning an empty result for every request."""

    def classify(self, text: str, kind: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        logger.warning(f"No AI provider configured; returning empty {kind} result")
        return {"kind": kind, "result": None, "provider": "none"}


class InMemoryContactDirectory(ContactDirectory):
    """Contact records kept in a dict. Unknown contacts resolve to an empty record."""

    def __init__(self, contacts: Optional[Dict[str, Dict[str, Any]]] = None):
        self._contacts: Dict[str, Dict[str, Any]] = dict(contacts or {})
        self._lock = threading.Lock()

    def upsert(self, contact_id: str, record: Dict[str, Any]) -> None:
        with self._lock:
            self._contacts[contact_id] = dict(record)

    def get_contact(self, contact_id: str) -> Dict[str, Any]:
        with self._lock:
            return dict(self._contacts.get(contact_id, {"id": contact_id}))


class RequestsWebhookClient(WebhookClient):
    """WebhookClient backed by ``requests``."""

    def __init__(self, session: Optional[requests.Session] = None):
        self._session = session or requests.Session()

    def call(self, url: str, method: str, auth: Optional[WebhookAuth], body: Any,
             headers: Dict[str, str], timeout: int) -> WebhookResponse:
        method = (method or "POST").upper()
        request_headers = {"Content-Type": "application/json", **(headers or {})}
        basic_auth = None

        if auth is not None:
            if auth.type == "bearer" and auth.token:
                request_headers.setdefault("Authorization", f"Bearer {auth.token}")
            elif auth.type == "basic" and auth.username:
                basic_auth = (auth.username, auth.password or "")
            elif auth.type == "api_key" and auth.api_key:
                request_headers[auth.api_key_header] = auth.api_key

        data_kwargs: Dict[str, Any] = {}
        if method != "GET" and body is not None:
            if isinstance(body, (dict, list)):
                data_kwargs["json"] = body
            else:
                data_kwargs["data"] = str(body).encode("utf-8")

        try:
            resp = self._session.request(
                method, url, headers=request_headers, timeout=timeout, auth=basic_auth, **data_kwargs
            )
        except requests.Timeout as e:
            raise TransientExecutorError(f"Webhook {method} {url} timed out after {timeout}s") from e
        except requests.RequestException as e:
            raise TransientExecutorError(f"Webhook {method} {url} failed: {e!s}") from e

        try:
            parsed = resp.json()
        except ValueError:
            parsed = resp.text

        logger.debug(f"Webhook {method} {url} -> {resp.status_code}")
        return WebhookResponse(status_code=resp.status_code, body=parsed, headers=dict(resp.headers))


def summarize(payload: Any, limit: int = 500) -> str:
    """Short printable rendering of a payload for logs and error messages."""
    text = payload if isinstance(payload, str) else json.dumps(payload, default=str)
    return text if len(text) <= limit else text[:limit] + "..."
