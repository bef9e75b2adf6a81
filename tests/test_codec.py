from datetime import datetime

import pytest

from scoreboard.codec import JsonCodec, decode_payload, encode_payload, RAW_MARKER, ZLIB_MARKER


def test_small_payload_is_passthrough():
    payload = encode_payload({"a": 1}, JsonCodec(), compress=True, threshold=1024)
    assert payload == RAW_MARKER + '{"a":1}'
    assert decode_payload(payload, JsonCodec()) == {"a": 1}


def test_payload_over_threshold_is_compressed_and_reversible():
    value = {"rankings": ["x" * 40] * 100}
    payload = encode_payload(value, JsonCodec(), compress=True, threshold=1024)
    assert payload.startswith(ZLIB_MARKER)
    assert len(payload) < len(JsonCodec().dumps(value))
    assert decode_payload(payload, JsonCodec()) == value


def test_datetimes_are_written_as_iso_strings():
    when = datetime(2025, 3, 3, 12, 30, 0)
    payload = encode_payload({"at": when}, JsonCodec())
    assert decode_payload(payload, JsonCodec()) == {"at": "2025-03-03T12:30:00"}


def test_unknown_marker_and_corrupt_data_raise_value_error():
    with pytest.raises(ValueError):
        decode_payload("{}", JsonCodec())
    with pytest.raises(ValueError):
        decode_payload(ZLIB_MARKER + "not-base64-zlib", JsonCodec())


def test_unserializable_value_raises_type_error():
    with pytest.raises(TypeError):
        encode_payload({"s": {1, 2}}, JsonCodec())
