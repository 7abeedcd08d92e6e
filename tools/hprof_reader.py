#!/usr/bin/env python3
# -*- coding:utf-8 -*-
"""
HPROF binary reader primitives.

- Identifier: pointer-width aware object/class reference
- HprofCursor: bounds-checked big-endian reader with record regions and rewind
- read_header: magic string, identifier size and timestamp
"""

import struct
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime


SUPPORTED_ID_SIZES = (4, 8)
MAGIC_LENGTH = 18


class HprofFormatError(Exception):
    """Input is not a well-formed binary HPROF file."""


def check_id_size(id_size):
    if id_size not in SUPPORTED_ID_SIZES:
        raise HprofFormatError('pointer size %r is invalid.' % (id_size,))
    return id_size


@dataclass(frozen=True, order=True)
class Identifier:
    """Object or class id, masked to the pointer width it was read with."""
    value: int
    width: int = field(default=4)

    def __post_init__(self):
        check_id_size(self.width)
        object.__setattr__(self, 'value', self.value & ((1 << (8 * self.width)) - 1))

    def is_null(self):
        return self.value == 0

    def __str__(self):
        return format(self.value, 'x')


@dataclass
class HprofHeader:
    magic: str
    id_size: int
    timestamp_ms: int

    @property
    def created(self):
        try:
            return datetime.fromtimestamp(self.timestamp_ms / 1000)
        except (OverflowError, OSError, ValueError):
            return None


class HprofCursor:
    """Sequential reader over a bytes-like object or an mmap."""

    _U2 = struct.Struct('>H')
    _U4 = struct.Struct('>I')
    _U8 = struct.Struct('>Q')

    def __init__(self, data, id_size=None):
        self.data = data
        self.pos = 0
        self._end = len(data)
        self.id_size = None
        if id_size is not None:
            self.set_id_size(id_size)

    def set_id_size(self, id_size):
        self.id_size = check_id_size(id_size)

    def tell(self):
        return self.pos

    def remaining(self):
        """Bytes left before the end of the current region."""
        return self._end - self.pos

    def at_end(self):
        return self.pos >= self._end

    def rewind(self):
        self.pos = 0
        self._end = len(self.data)

    def _take(self, length):
        if length < 0 or self.pos + length > self._end:
            raise HprofFormatError(
                'read of %d bytes at offset %d overruns region ending at %d'
                % (length, self.pos, self._end))
        start = self.pos
        self.pos += length
        return start

    def read_u1(self):
        return self.data[self._take(1)]

    def read_u2(self):
        return self._U2.unpack_from(self.data, self._take(2))[0]

    def read_u4(self):
        return self._U4.unpack_from(self.data, self._take(4))[0]

    def read_u8(self):
        return self._U8.unpack_from(self.data, self._take(8))[0]

    def read_int(self, length):
        start = self._take(length)
        return int.from_bytes(self.data[start:start + length], byteorder='big', signed=False)

    def read_bytes(self, length):
        start = self._take(length)
        return bytes(self.data[start:start + length])

    def skip(self, length):
        self._take(length)

    def read_id(self):
        if self.id_size is None:
            raise HprofFormatError('identifier read before the header set the pointer size')
        if self.id_size == 4:
            return Identifier(self.read_u4(), 4)
        return Identifier(self.read_u8(), 8)

    @contextmanager
    def region(self, length):
        """Limit reads to the next `length` bytes; leaves the cursor at the region end."""
        end = self.pos + length
        if length < 0 or end > self._end:
            raise HprofFormatError(
                'record of %d bytes at offset %d runs past the end of input (%d)'
                % (length, self.pos, self._end))
        outer_end = self._end
        self._end = end
        try:
            yield end
        finally:
            self._end = outer_end
        self.pos = end


def read_header(cursor):
    """Read the file header and configure the cursor's identifier size."""
    magic_bytes = cursor.read_bytes(MAGIC_LENGTH + 1)
    if magic_bytes[MAGIC_LENGTH] != 0:
        raise HprofFormatError('input may not be a binary hprof file (bad magic terminator)')
    magic = magic_bytes[:MAGIC_LENGTH].decode('ascii', 'replace')
    id_size = cursor.read_u4()
    cursor.set_id_size(id_size)
    timestamp_ms = cursor.read_u8()
    return HprofHeader(magic, id_size, timestamp_ms)
