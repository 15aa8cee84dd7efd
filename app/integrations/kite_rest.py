from __future__ import annotations

import csv
import hashlib
import io
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests

from app.errors import TIMEOUT, CatalogFetchFailure, CredentialExchangeFailure

logger = logging.getLogger(__name__)


class KiteRestClient:
    """Minimal Kite Connect REST client: session token exchange and instrument dump."""

    _API_VERSION = "3"

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        *,
        access_token: str = "",
        session: Optional[Any] = None,
        base_url: str = "https://api.kite.trade",
        login_url: str = "https://kite.trade/connect/login",
        timeout: float = 10.0,
    ) -> None:
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.login_url_base = login_url
        self.session = session or requests
        self.timeout = timeout
        self._access_token = access_token

    @property
    def access_token(self) -> str:
        return self._access_token

    def set_access_token(self, access_token: str) -> None:
        self._access_token = access_token

    def login_url(self) -> str:
        return f"{self.login_url_base}?{urlencode({'api_key': self.api_key, 'v': self._API_VERSION})}"

    def checksum(self, request_token: str) -> str:
        raw = f"{self.api_key}{request_token}{self.api_secret}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def _headers(self) -> Dict[str, str]:
        headers = {"X-Kite-Version": self._API_VERSION}
        if self._access_token:
            headers["Authorization"] = f"token {self.api_key}:{self._access_token}"
        return headers

    def generate_session(self, request_token: str) -> str:
        """Exchange a one-time request token for an access token."""
        if not self.api_key or not self.api_secret:
            raise CredentialExchangeFailure("api key/secret are not configured")

        try:
            response = self.session.post(
                f"{self.base_url}/session/token",
                headers={"X-Kite-Version": self._API_VERSION},
                data={
                    "api_key": self.api_key,
                    "request_token": request_token,
                    "checksum": self.checksum(request_token),
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except requests.Timeout as exc:
            raise CredentialExchangeFailure(f"session token exchange timed out: {exc}", kind=TIMEOUT) from exc
        except (requests.RequestException, ValueError) as exc:
            raise CredentialExchangeFailure(f"session token exchange failed: {exc}") from exc

        data = payload.get("data") if isinstance(payload, dict) else None
        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not access_token:
            message = payload.get("message") if isinstance(payload, dict) else None
            raise CredentialExchangeFailure(f"missing access_token in response: {message or 'no message'}")

        self._access_token = str(access_token)
        return self._access_token

    @staticmethod
    def parse_instruments(text: str) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        for row in csv.DictReader(io.StringIO(text)):
            token = row.get("instrument_token")
            symbol = row.get("tradingsymbol")
            if not token or not symbol:
                continue
            try:
                row["instrument_token"] = int(token)
            except ValueError:
                continue
            rows.append(row)
        return rows

    def get_instruments(self, exchange: str = "NSE") -> List[Dict[str, Any]]:
        """Download the full instrument catalog for one exchange."""
        try:
            response = self.session.get(
                f"{self.base_url}/instruments/{exchange}",
                headers=self._headers(),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.Timeout as exc:
            raise CatalogFetchFailure(f"instrument dump timed out: {exc}", kind=TIMEOUT) from exc
        except requests.RequestException as exc:
            raise CatalogFetchFailure(f"instrument dump failed: {exc}") from exc

        rows = self.parse_instruments(response.text)
        logger.debug("[REST][instruments] exchange=%s rows=%d", exchange, len(rows))
        return rows
