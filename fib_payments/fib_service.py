import logging
from decimal import Decimal

import requests

from fib_payments.config import FibSettings
from fib_payments.exceptions import (
    AuthenticationError,
    PaymentCancellationError,
    PaymentCreationError,
    PaymentStatusError,
    RefundError,
)
from fib_payments.token_cache import TokenCache

logger = logging.getLogger(__name__)

TOKEN_PATH = "/auth/realms/fib-online-shop/protocol/openid-connect/token"
PAYMENTS_PATH = "/protected/v1/payments"

DEFAULT_TOKEN_LIFETIME = 3600
TOKEN_SAFETY_MARGIN = 300
MIN_TOKEN_TTL = 300


def _is_success(response) -> bool:
    return 200 <= response.status_code < 300


def token_ttl(expires_in) -> int:
    """Seconds to keep a token that the provider says lives ``expires_in``."""
    return max(MIN_TOKEN_TTL, int(expires_in) - TOKEN_SAFETY_MARGIN)


class FibPaymentClient:
    """
    Client for the FIB online-shop payments API.

    Holds no token itself: the bearer token lives in ``cache`` under a key
    per environment, so every client built on the same cache shares it.
    A 401 drops the cached token, re-authenticates once and resends once.
    """

    def __init__(self, settings: FibSettings, cache: TokenCache, session: requests.Session = None):
        self.settings = settings
        self.cache = cache
        self.session = session or requests.Session()
        if not settings.verify_ssl:
            logger.warning(
                "TLS certificate verification is disabled for FIB (%s)", settings.environment
            )

    @property
    def cache_key(self) -> str:
        return f"fib_access_token_{self.settings.environment}"

    def authenticate(self) -> str:
        try:
            response = self.session.request(
                "POST",
                f"{self.settings.base_url}{TOKEN_PATH}",
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.settings.client_id,
                    "client_secret": self.settings.client_secret,
                },
                verify=self.settings.verify_ssl,
                timeout=self.settings.timeout,
            )
        except requests.RequestException as exc:
            logger.error("FIB authentication error: %s", exc)
            raise AuthenticationError(f"FIB authentication request failed: {exc}") from exc

        if not _is_success(response):
            logger.error(
                "FIB authentication failed: status=%s body=%s", response.status_code, response.text
            )
            raise AuthenticationError(
                f"FIB authentication failed with status {response.status_code}: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        token_data = self._json(response, AuthenticationError, "authentication")
        access_token = token_data.get("access_token")
        expires_in = token_data.get("expires_in") or DEFAULT_TOKEN_LIFETIME
        try:
            cached_for = token_ttl(expires_in)
        except (TypeError, ValueError):
            cached_for = None
        if not access_token or cached_for is None:
            logger.error("FIB authentication returned an unusable token: body=%s", response.text)
            raise AuthenticationError(
                "FIB authentication response has no usable access_token",
                status_code=response.status_code,
                body=response.text,
            )
        self.cache.set(self.cache_key, access_token, cached_for)
        logger.info("FIB token cached: expires_in=%s cached_for=%s", expires_in, cached_for)
        return access_token

    def create(self, amount, description: str = "") -> dict:
        if isinstance(amount, Decimal):
            amount = float(amount)
        response = self._call(
            "POST",
            PAYMENTS_PATH,
            PaymentCreationError,
            json={
                "monetaryValue": {"amount": amount, "currency": self.settings.currency},
                "statusCallbackUrl": self.settings.callback_url,
                "description": description,
            },
        )
        self._raise_unless(_is_success(response), response, PaymentCreationError, "create payment")
        data = self._json(response, PaymentCreationError, "create payment")
        if not data.get("paymentId"):
            raise PaymentCreationError(
                "FIB response has no paymentId",
                status_code=response.status_code,
                body=response.text,
            )
        return data

    def status(self, payment_id: str) -> dict:
        response = self._call("GET", f"{PAYMENTS_PATH}/{payment_id}/status", PaymentStatusError)
        self._raise_unless(_is_success(response), response, PaymentStatusError, "get payment status")
        return self._json(response, PaymentStatusError, "get payment status")

    def cancel(self, payment_id: str) -> bool:
        response = self._call("POST", f"{PAYMENTS_PATH}/{payment_id}/cancel", PaymentCancellationError)
        self._raise_unless(_is_success(response), response, PaymentCancellationError, "cancel payment")
        return True

    def refund(self, payment_id: str) -> bool:
        response = self._call("POST", f"{PAYMENTS_PATH}/{payment_id}/refund", RefundError)
        # Refunds are asynchronous on FIB's side: only 202 Accepted counts.
        self._raise_unless(response.status_code == 202, response, RefundError, "refund payment")
        return True

    def _access_token(self) -> str:
        return self.cache.get(self.cache_key) or self.authenticate()

    def _call(self, method: str, path: str, error_cls, **kwargs):
        response = self._send(method, path, self._access_token(), error_cls, **kwargs)
        if response.status_code == 401:
            logger.info("FIB rejected the cached token, re-authenticating")
            self.cache.delete(self.cache_key)
            response = self._send(method, path, self.authenticate(), error_cls, **kwargs)
        return response

    def _send(self, method: str, path: str, token: str, error_cls, **kwargs):
        try:
            return self.session.request(
                method,
                f"{self.settings.base_url}{path}",
                headers={"Authorization": f"Bearer {token}"},
                verify=self.settings.verify_ssl,
                timeout=self.settings.timeout,
                **kwargs,
            )
        except requests.RequestException as exc:
            logger.error("FIB request %s %s failed: %s", method, path, exc)
            raise error_cls(f"FIB request failed: {exc}") from exc

    @staticmethod
    def _json(response, error_cls, action: str) -> dict:
        try:
            data = response.json()
        except ValueError as exc:
            logger.error("FIB %s returned invalid JSON: body=%s", action, response.text)
            raise error_cls(
                f"FIB {action} returned invalid JSON",
                status_code=response.status_code,
                body=response.text,
            ) from exc
        if not isinstance(data, dict):
            raise error_cls(
                f"FIB {action} returned an unexpected body",
                status_code=response.status_code,
                body=response.text,
            )
        return data

    @staticmethod
    def _raise_unless(ok: bool, response, error_cls, action: str) -> None:
        if ok:
            return
        logger.error(
            "FIB %s failed: status=%s body=%s", action, response.status_code, response.text
        )
        raise error_cls(
            f"FIB {action} failed with status {response.status_code}: {response.text}",
            status_code=response.status_code,
            body=response.text,
        )
