"""
SMS gateway client using httpx sync client.
Sync interface for Celery workers; every call goes through the "sms_gateway" breaker.
"""
import logging
import time

import httpx
import pybreaker

from app.core.config import settings
from app.services.circuit_breaker import get_circuit_breaker
from app.utils.metrics import sms_request_duration_seconds, sms_requests_total


logger = logging.getLogger(__name__)


class SmsGatewayError(Exception):
    pass


class SmsClient:
    """
    Posts {recipient, sender, text} to the configured gateway. The gateway
    resolves the recipient channel (e.g. "model:<id>") to a phone number.
    """

    def __init__(self, breaker: pybreaker.CircuitBreaker | None = None) -> None:
        self._url = settings.sms_gateway_url
        self._token = settings.sms_gateway_token
        self._client: httpx.Client | None = None
        self._breaker = breaker

    @property
    def client(self) -> httpx.Client:
        """Lazy initialization of httpx client."""
        if self._client is None:
            headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
            self._client = httpx.Client(timeout=settings.http_client_timeout, headers=headers)
        return self._client

    @property
    def breaker(self) -> pybreaker.CircuitBreaker:
        if self._breaker is None:
            self._breaker = get_circuit_breaker("sms_gateway")
        return self._breaker

    @property
    def enabled(self) -> bool:
        return bool(self._url)

    def _post(self, payload: dict) -> dict:
        resp = self.client.post(self._url, json=payload)
        if resp.status_code >= 400:
            raise SmsGatewayError(f"{resp.status_code}: {resp.text[:200]}")
        try:
            return resp.json()
        except ValueError:
            return {}

    def send(self, recipient: str, text: str) -> dict:
        """Send one SMS. Raises on gateway error or when the breaker is open."""
        start = time.time()
        payload = {"recipient": recipient, "sender": settings.sms_sender_name, "text": text}
        try:
            result = self.breaker.call(self._post, payload)
        except (httpx.HTTPError, SmsGatewayError, pybreaker.CircuitBreakerError) as e:
            sms_requests_total.labels(status="error").inc()
            sms_request_duration_seconds.observe(time.time() - start)
            logger.warning("sms_send_failed", extra={"error": str(e)})
            raise
        sms_requests_total.labels(status="success").inc()
        sms_request_duration_seconds.observe(time.time() - start)
        return result

    def close(self) -> None:
        """Close httpx client."""
        if self._client is not None:
            try:
                self._client.close()
            except httpx.HTTPError as e:
                logger.warning("Failed to close client", extra={"error": str(e)})
            finally:
                self._client = None
