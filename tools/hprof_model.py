#!/usr/bin/env python3
# -*- coding:utf-8 -*-
"""HPROF data model shared by the converter passes."""

import enum
from dataclasses import dataclass, field
from typing import List, Optional

from hprof_reader import HprofFormatError, Identifier


class BasicType(enum.Enum):
    OBJECT = 2
    BOOLEAN = 4
    CHAR = 5
    FLOAT = 6
    DOUBLE = 7
    BYTE = 8
    SHORT = 9
    INT = 10
    LONG = 11

    @classmethod
    def from_code(cls, code):
        try:
            return cls(code)
        except ValueError:
            raise HprofFormatError('unknown basic type code %d' % code) from None

    @property
    def type_name(self):
        return self.name.lower()

    def size(self, id_size):
        if self is BasicType.OBJECT:
            return id_size
        return _PRIMITIVE_SIZES[self]

    def read(self, cursor):
        """Consume one value of this type; objects come back as an Identifier."""
        if self is BasicType.OBJECT:
            return cursor.read_id()
        return cursor.read_int(_PRIMITIVE_SIZES[self])


_PRIMITIVE_SIZES = {
    BasicType.BOOLEAN: 1,
    BasicType.CHAR: 2,
    BasicType.FLOAT: 4,
    BasicType.DOUBLE: 8,
    BasicType.BYTE: 1,
    BasicType.SHORT: 2,
    BasicType.INT: 4,
    BasicType.LONG: 8,
}


class Pass(enum.Enum):
    METADATA = 1
    EMIT = 2


@dataclass(frozen=True)
class FieldSpec:
    name_id: Identifier
    name: Optional[str]
    basic_type: BasicType


@dataclass
class ClassInfo:
    """Layout of one class: only the fields it declares itself."""
    class_id: Identifier
    super_id: Identifier
    instance_size: int
    fields: List[FieldSpec] = field(default_factory=list)


@dataclass
class ConvertOptions:
    emit_output: bool = False
    include_header_size: bool = True
    dump_char_arrays: bool = False
    resolve_strings: bool = False
    dump_names: bool = False


@dataclass
class RecordCounts:
    classes: int = 0
    instances: int = 0
    object_arrays: int = 0
    primitive_arrays: int = 0
    roots: int = 0
    strings: int = 0
    load_classes: int = 0
    skipped_records: int = 0

    def summary(self):
        return '%d classes, %d instances, %d obj arrays %d primitive arrays' % (
            self.classes, self.instances, self.object_arrays, self.primitive_arrays)


@dataclass
class ConversionResult:
    path: str
    success: bool
    counts: RecordCounts
    output_path: Optional[str] = None
    error: Optional[str] = None
