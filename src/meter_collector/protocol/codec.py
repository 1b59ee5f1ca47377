"""Register word decoding.

32-bit values use big-endian word order (high word first), the common
layout for energy meters.
"""

from __future__ import annotations

import math
import struct
from typing import Sequence

from meter_collector.catalog.models import DataType, RegisterMapping
from meter_collector.errors import ProtocolDecodeError


def decode_register(mapping: RegisterMapping, words: Sequence[int]) -> float:
    """Decode the raw words of one register mapping into a scaled value."""
    if len(words) < mapping.count:
        raise ProtocolDecodeError(
            mapping.address, f"expected {mapping.count} words, got {len(words)}"
        )
    words = list(words[: mapping.count])
    for w in words:
        if not 0 <= w <= 0xFFFF:
            raise ProtocolDecodeError(mapping.address, f"word out of range: {w}")
    if mapping.scale == 0:
        raise ProtocolDecodeError(mapping.address, "scale is zero")

    dt = mapping.data_type
    if dt == DataType.UINT16:
        raw: float = words[0]
    elif dt == DataType.INT16:
        raw = words[0] - 0x10000 if words[0] >= 0x8000 else words[0]
    elif dt == DataType.UINT32:
        raw = (words[0] << 16) | words[1]
    elif dt == DataType.INT32:
        combined = (words[0] << 16) | words[1]
        raw = combined - 0x100000000 if combined >= 0x80000000 else combined
    elif dt == DataType.FLOAT32:
        raw = struct.unpack(">f", struct.pack(">HH", words[0], words[1]))[0]
        if math.isnan(raw) or math.isinf(raw):
            raise ProtocolDecodeError(mapping.address, f"non-finite float: {raw}")
    else:
        raise ProtocolDecodeError(mapping.address, f"unsupported data type {dt}")

    return raw / mapping.scale


def decode_block(
    mappings: Sequence[RegisterMapping], start: int, words: Sequence[int]
) -> tuple[dict[RegisterMapping, float], dict[RegisterMapping, ProtocolDecodeError]]:
    """Decode every mapping out of a block of words read from ``start``."""
    values: dict[RegisterMapping, float] = {}
    errors: dict[RegisterMapping, ProtocolDecodeError] = {}
    for mapping in mappings:
        offset = mapping.address - start
        try:
            if offset < 0:
                raise ProtocolDecodeError(mapping.address, "outside of read block")
            values[mapping] = decode_register(mapping, words[offset : offset + mapping.count])
        except ProtocolDecodeError as e:
            errors[mapping] = e
    return values, errors


def plan_spans(
    mappings: Sequence[RegisterMapping], max_registers: int
) -> list[tuple[int, int, list[RegisterMapping]]]:
    """Group mappings into (start, count, members) read requests.

    Consecutive mappings share one request while the covered span stays
    within ``max_registers`` words.
    """
    spans: list[tuple[int, int, list[RegisterMapping]]] = []
    start = end = 0
    members: list[RegisterMapping] = []
    for mapping in sorted(mappings, key=lambda m: m.address):
        if members and max(end, mapping.end) - start <= max_registers:
            end = max(end, mapping.end)
            members.append(mapping)
            continue
        if members:
            spans.append((start, end - start, members))
        start, end, members = mapping.address, mapping.end, [mapping]
    if members:
        spans.append((start, end - start, members))
    return spans
