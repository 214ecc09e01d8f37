#!/usr/bin/env python3
"""
wire_codec.py

Text payload format for integer vectors sent between meters:

    <n>$<v0>*<v1>*...*<v(n-1)>*

n is the non-negative element count and every vK is a signed decimal integer
followed by '*'. An empty vector is "0$".

parse() never raises: it returns a ParseResult carrying either the values or an
error message. decode() raises FormatError for anything parse() rejects.
"""

import re

from errors import FormatError

COUNT_SEPARATOR = "$"
VALUE_TERMINATOR = "*"

_COUNT_RE = re.compile(r"\d+")
_VALUE_RE = re.compile(r"[+-]?\d+")


class ParseResult:
    """Outcome of parsing one payload."""

    def __init__(self, values=None, error=None):
        self.values = values
        self.error = error

    @property
    def ok(self):
        return self.error is None

    def __repr__(self):
        if self.ok:
            return f"ParseResult(values={self.values})"
        return f"ParseResult(error={self.error!r})"


def encode(values):
    """Serialize an ordered sequence of ints."""
    values = [int(v) for v in values]
    body = "".join(f"{v}{VALUE_TERMINATOR}" for v in values)
    return f"{len(values)}{COUNT_SEPARATOR}{body}"


def encode_bytes(values):
    return encode(values).encode("ascii")


def parse(payload):
    """
    Parse a payload (str or ASCII bytes) into a ParseResult.
    """
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = bytes(payload).decode("ascii")
        except UnicodeDecodeError:
            return ParseResult(error="payload is not ASCII")
    if not isinstance(payload, str):
        return ParseResult(error=f"unsupported payload type {type(payload).__name__}")

    head, sep, body = payload.partition(COUNT_SEPARATOR)
    if not sep:
        return ParseResult(error=f"missing '{COUNT_SEPARATOR}' after count")
    if not _COUNT_RE.fullmatch(head):
        return ParseResult(error=f"count {head!r} is not a non-negative integer")
    declared = int(head)

    if body == "":
        tokens = []
    elif body.endswith(VALUE_TERMINATOR):
        tokens = body[:-1].split(VALUE_TERMINATOR)
    else:
        return ParseResult(error=f"last value not terminated by '{VALUE_TERMINATOR}'")

    values = []
    for position, token in enumerate(tokens):
        if not _VALUE_RE.fullmatch(token):
            return ParseResult(error=f"token {position} ({token!r}) is not an integer")
        values.append(int(token))

    if len(values) != declared:
        return ParseResult(error=f"declared {declared} values, found {len(values)}")
    return ParseResult(values=values)


def decode(payload):
    """Parse a payload, raising FormatError if it is malformed."""
    result = parse(payload)
    if not result.ok:
        raise FormatError(result.error)
    return result.values
