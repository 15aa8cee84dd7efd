import struct
import unittest
from decimal import Decimal

from app.integrations.kite_ws import KiteWsClient, chunked, parse_binary


def _frame(*packets: bytes) -> bytes:
    out = struct.pack(">H", len(packets))
    for packet in packets:
        out += struct.pack(">H", len(packet)) + packet
    return out


def _ltp_packet(token: int, raw_price: int) -> bytes:
    return struct.pack(">II", token, raw_price)


class TestKiteWsParser(unittest.TestCase):
    def test_parse_ltp_packets_for_equity_segment(self):
        payload = _frame(_ltp_packet(408065, 145025), _ltp_packet(2953217, 390010))

        ticks = parse_binary(payload)

        self.assertEqual(len(ticks), 2)
        self.assertEqual(ticks[0]["instrument_token"], 408065)
        self.assertEqual(ticks[0]["last_price"], Decimal("1450.25"))
        self.assertEqual(ticks[0]["mode"], "ltp")
        self.assertEqual(ticks[1]["instrument_token"], 2953217)
        self.assertEqual(ticks[1]["last_price"], Decimal("3900.10"))

    def test_currency_segment_uses_wider_divisor(self):
        token = (1234 << 8) | 3
        ticks = parse_binary(_frame(_ltp_packet(token, 834500000)))

        self.assertEqual(ticks[0]["last_price"], Decimal("83.45"))

    def test_quote_packet_reads_leading_fields_only(self):
        packet = _ltp_packet(408065, 100000) + b"\x00" * 36
        ticks = parse_binary(_frame(packet))

        self.assertEqual(ticks[0]["last_price"], Decimal("1000"))
        self.assertEqual(ticks[0]["mode"], "quote")

    def test_heartbeat_frame_yields_no_ticks(self):
        self.assertEqual(parse_binary(b"\x00"), [])
        self.assertEqual(parse_binary(b""), [])

    def test_truncated_frame_yields_no_ticks(self):
        payload = _frame(_ltp_packet(408065, 145025))[:-3]

        self.assertEqual(parse_binary(payload), [])

    def test_truncated_packet_keeps_ticks_parsed_before_it(self):
        payload = _frame(_ltp_packet(408065, 145025), _ltp_packet(2953217, 390010))[:-3]

        ticks = parse_binary(payload)

        self.assertEqual([t["instrument_token"] for t in ticks], [408065])
        self.assertEqual(ticks[0]["last_price"], Decimal("1450.25"))

    def test_missing_packet_header_keeps_earlier_ticks(self):
        payload = struct.pack(">H", 3) + struct.pack(">H", 8) + _ltp_packet(408065, 145025)

        ticks = parse_binary(payload)

        self.assertEqual(len(ticks), 1)

    def test_chunked_splits_into_fixed_batches(self):
        batches = chunked(list(range(45)), 20)

        self.assertEqual([len(b) for b in batches], [20, 20, 5])
        self.assertEqual(batches[2], [40, 41, 42, 43, 44])

    def test_text_error_message_is_recorded_not_dispatched(self):
        received = []
        client = KiteWsClient(on_ticks=received.append)

        ticks = client.handle_raw_message('{"type": "error", "data": "invalid token"}')

        self.assertEqual(ticks, [])
        self.assertEqual(received, [])
        self.assertEqual(client.last_error, "invalid token")

    def test_binary_message_dispatches_ticks(self):
        received = []
        client = KiteWsClient(on_ticks=received.append)

        client.handle_raw_message(_frame(_ltp_packet(408065, 145025)))

        self.assertEqual(len(received), 1)
        self.assertEqual(received[0][0]["instrument_token"], 408065)

    def test_partial_frame_still_dispatches_good_ticks(self):
        received = []
        client = KiteWsClient(on_ticks=received.append)

        client.handle_raw_message(_frame(_ltp_packet(408065, 145025), _ltp_packet(2953217, 390010))[:-1])

        self.assertEqual([t["instrument_token"] for t in received[0]], [408065])


if __name__ == "__main__":
    unittest.main()
