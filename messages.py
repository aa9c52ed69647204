"""
Inbound frame normalization.

Text frames must hold a JSON object. Objects without a "timestamp" key get the
current wall-clock time in milliseconds, and the re-encoded text is what the
relay stores and broadcasts. Binary frames pass through untouched.
"""
import json
import time
from dataclasses import dataclass

from errors import MalformedPayload, UnsupportedPayload

TIMESTAMP_FIELD = 'timestamp'


@dataclass(frozen=True)
class Message:
    payload: str | bytes

    @property
    def binary(self):
        return isinstance(self.payload, bytes)


def now_ms():
    return int(time.time() * 1000)


def _reject_constant(name):
    raise MalformedPayload(f'non-standard JSON constant: {name}')


def decode_record(payload):
    """Parse a text payload into a dict, or raise a payload error."""
    if isinstance(payload, (bytes, bytearray, memoryview)):
        raise UnsupportedPayload(f'binary frame ({len(payload)} bytes) is not a record')
    try:
        record = json.loads(payload, parse_constant=_reject_constant)
    except (ValueError, RecursionError) as e:
        raise MalformedPayload(f'invalid JSON: {e}') from e
    if not isinstance(record, dict):
        raise MalformedPayload(f'expected a JSON object, got {type(record).__name__}')
    return record


def encode_record(record):
    """Canonical text form. Anything that would not survive as UTF-8 JSON is malformed."""
    try:
        text = json.dumps(record, separators=(',', ':'), ensure_ascii=False, allow_nan=False)
        text.encode('utf-8')
    except ValueError as e:
        # lone surrogates from \u escapes, or overflowed floats like 1e400
        raise MalformedPayload(f'cannot re-encode record: {e}') from e
    return text


def normalize(frame, clock=now_ms):
    """Turn a raw frame into the Message that gets stored and broadcast."""
    if isinstance(frame, (bytes, bytearray, memoryview)):
        return Message(bytes(frame))

    record = decode_record(frame)
    if TIMESTAMP_FIELD not in record:
        record[TIMESTAMP_FIELD] = clock()
    return Message(encode_record(record))
