"""Mail transports: SendGrid v3 HTTP API and a log-only transport."""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

import httpx
import structlog

logger = structlog.get_logger()

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"


class TransportError(Exception):
    """Send failed; the email queue retries it."""
    pass


@dataclass
class SendReceipt:
    """Delivery handle returned by a transport."""

    message_id: str
    recipient: str
    status_code: Optional[int] = None


class Transport(ABC):
    @abstractmethod
    def send(self, to: str, subject: str, body: str, metadata: Optional[Dict[str, str]] = None) -> SendReceipt:
        """Hand a message to the transport."""

    def close(self):
        pass


class SendGridTransport(Transport):
    """SendGrid v3 ``mail/send`` with open/click tracking enabled."""

    def __init__(
        self,
        api_key: str,
        from_email: str,
        from_name: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        if not api_key:
            raise ValueError("SENDGRID_API_KEY environment variable not set")
        if not from_email:
            raise ValueError("FROM_EMAIL environment variable not set")
        self.from_email = from_email
        self.from_name = from_name
        self.client = client or httpx.Client(timeout=timeout)
        self.headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        self.log = logger.bind(component="transport", provider="sendgrid")

    def _payload(self, to: str, subject: str, body: str, metadata: Optional[Dict[str, str]]) -> Dict:
        sender = {"email": self.from_email}
        if self.from_name:
            sender["name"] = self.from_name
        personalization = {"to": [{"email": to}]}
        if metadata:
            # custom_args come back on every webhook event
            personalization["custom_args"] = {key: str(value) for key, value in metadata.items()}
        return {
            "personalizations": [personalization],
            "from": sender,
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
            "tracking_settings": {
                "click_tracking": {"enable": True},
                "open_tracking": {"enable": True},
            },
        }

    def send(self, to: str, subject: str, body: str, metadata: Optional[Dict[str, str]] = None) -> SendReceipt:
        try:
            response = self.client.post(SENDGRID_SEND_URL, json=self._payload(to, subject, body, metadata), headers=self.headers)
        except httpx.RequestError as e:
            raise TransportError(f"SendGrid request failed: {e}") from e

        if response.status_code not in (200, 201, 202):
            raise TransportError(f"SendGrid returned status code {response.status_code}: {response.text[:200]}")

        message_id = response.headers.get("X-Message-Id")
        if not message_id:
            raise TransportError("SendGrid response carried no X-Message-Id")

        self.log.info("Email handed to SendGrid", recipient=to, message_id=message_id, status=response.status_code)
        return SendReceipt(message_id=message_id, recipient=to, status_code=response.status_code)

    def close(self):
        self.client.close()


class LoggingTransport(Transport):
    """Logs messages instead of sending them (development, dry runs)."""

    def __init__(self):
        self.sent = []
        self.log = logger.bind(component="transport", provider="log")

    def send(self, to: str, subject: str, body: str, metadata: Optional[Dict[str, str]] = None) -> SendReceipt:
        message_id = f"log-{uuid.uuid4().hex}"
        self.sent.append({"to": to, "subject": subject, "body": body, "metadata": metadata or {}, "message_id": message_id})
        self.log.info("Email logged (not sent)", recipient=to, subject=subject, message_id=message_id)
        return SendReceipt(message_id=message_id, recipient=to)


def create_transport(config: Dict, env: Dict[str, Optional[str]]) -> Transport:
    """
    Build the configured transport.

    Args:
        config: ``transport`` config section (``provider``: sendgrid | log)
        env: SENDGRID_API_KEY / FROM_EMAIL / FROM_NAME values
    """
    provider = (config or {}).get("provider", "log")
    if provider == "sendgrid":
        return SendGridTransport(
            api_key=env.get("SENDGRID_API_KEY"),
            from_email=env.get("FROM_EMAIL"),
            from_name=env.get("FROM_NAME"),
            timeout=float((config or {}).get("timeout_seconds", 30)),
        )
    if provider == "log":
        return LoggingTransport()
    raise ValueError(f"Unknown transport provider: {provider}")
