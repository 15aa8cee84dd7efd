import hashlib
import unittest
from unittest.mock import MagicMock

import requests

from app.errors import CatalogFetchFailure, CredentialExchangeFailure
from app.integrations.kite_rest import KiteRestClient

_INSTRUMENTS_CSV = (
    "instrument_token,exchange_token,tradingsymbol,name,last_price,expiry,strike,tick_size,lot_size,instrument_type,segment,exchange\n"
    "408065,1594,INFY,INFOSYS,0,,0,0.05,1,EQ,NSE,NSE\n"
    "2953217,11536,TCS,TATA CONSULTANCY SERV LT,0,,0,0.05,1,EQ,NSE,NSE\n"
    "bad,1,BROKEN,BROKEN ROW,0,,0,0.05,1,EQ,NSE,NSE\n"
)


def _client(session, **kwargs):
    return KiteRestClient(
        api_key="api-key",
        api_secret="api-secret",
        session=session,
        base_url="https://example.test",
        **kwargs,
    )


class TestKiteRestClient(unittest.TestCase):
    def test_generate_session_uses_kite_checksum_contract(self):
        session = MagicMock()
        token_response = MagicMock()
        token_response.json.return_value = {"status": "success", "data": {"access_token": "access-123"}}
        token_response.raise_for_status.return_value = None
        session.post.return_value = token_response

        client = _client(session)
        access_token = client.generate_session("req-1")

        expected_checksum = hashlib.sha256(b"api-keyreq-1api-secret").hexdigest()
        self.assertEqual(access_token, "access-123")
        self.assertEqual(client.access_token, "access-123")
        session.post.assert_called_once_with(
            "https://example.test/session/token",
            headers={"X-Kite-Version": "3"},
            data={
                "api_key": "api-key",
                "request_token": "req-1",
                "checksum": expected_checksum,
            },
            timeout=10.0,
        )

    def test_generate_session_http_error_is_exchange_failure(self):
        session = MagicMock()
        error_response = MagicMock()
        error_response.raise_for_status.side_effect = requests.HTTPError("403 Forbidden")
        session.post.return_value = error_response

        with self.assertRaises(CredentialExchangeFailure):
            _client(session).generate_session("req-1")

    def test_generate_session_without_token_in_payload_fails(self):
        session = MagicMock()
        response = MagicMock()
        response.json.return_value = {"status": "error", "message": "Token is invalid or has expired."}
        response.raise_for_status.return_value = None
        session.post.return_value = response

        with self.assertRaises(CredentialExchangeFailure) as ctx:
            _client(session).generate_session("req-1")

        self.assertIn("Token is invalid", str(ctx.exception))

    def test_generate_session_requires_configured_secret(self):
        session = MagicMock()
        client = KiteRestClient(api_key="api-key", api_secret="", session=session)

        with self.assertRaises(CredentialExchangeFailure):
            client.generate_session("req-1")
        session.post.assert_not_called()

    def test_get_instruments_parses_csv_and_sends_auth_header(self):
        session = MagicMock()
        response = MagicMock()
        response.text = _INSTRUMENTS_CSV
        response.raise_for_status.return_value = None
        session.get.return_value = response

        client = _client(session, access_token="access-123")
        rows = client.get_instruments("NSE")

        self.assertEqual([r["tradingsymbol"] for r in rows], ["INFY", "TCS"])
        self.assertEqual(rows[0]["instrument_token"], 408065)
        session.get.assert_called_once_with(
            "https://example.test/instruments/NSE",
            headers={"X-Kite-Version": "3", "Authorization": "token api-key:access-123"},
            timeout=10.0,
        )

    def test_get_instruments_timeout_is_timeout_kind(self):
        session = MagicMock()
        session.get.side_effect = requests.Timeout("read timed out")

        with self.assertRaises(CatalogFetchFailure) as ctx:
            _client(session, timeout=2.5).get_instruments("NSE")

        self.assertEqual(ctx.exception.kind, "TIMEOUT")
        self.assertEqual(session.get.call_args.kwargs["timeout"], 2.5)

    def test_get_instruments_connection_error_is_catalog_failure(self):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("dns")

        with self.assertRaises(CatalogFetchFailure) as ctx:
            _client(session).get_instruments("NSE")

        self.assertEqual(ctx.exception.kind, "CATALOG_FETCH_FAILURE")

    def test_login_url_carries_api_key_and_version(self):
        client = _client(MagicMock())

        self.assertEqual(client.login_url(), "https://kite.trade/connect/login?api_key=api-key&v=3")


if __name__ == "__main__":
    unittest.main()
