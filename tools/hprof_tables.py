#!/usr/bin/env python3
# -*- coding:utf-8 -*-
"""
Per-file lookup tables used by both converter passes.

- NameTable: string records (id -> text)
- ClassTable: class-load mapping and class layouts from class dumps
- StringResolver: java.lang.String -> char[] correlation
- ConversionContext: everything above, scoped to one input file
"""

from dataclasses import dataclass, field
from typing import Optional

from hprof_model import Pass, RecordCounts
from hprof_reader import HprofFormatError

UNKNOWN_NAME = 'null'
STRING_CLASS_NAMES = ('java.lang.String', 'java/lang/String')


class MissingClassError(KeyError):
    """A class in an instance's inheritance chain has no class dump."""

    def __init__(self, class_id):
        super().__init__(class_id)
        self.class_id = class_id

    def __str__(self):
        return 'no class dump for %s' % self.class_id


class NameTable:
    def __init__(self):
        self._names = {}

    def add(self, name_id, text):
        self._names[name_id] = text

    def get(self, name_id, default=None):
        return self._names.get(name_id, default)


class ClassTable:
    def __init__(self):
        self._name_ids = {}  # class object id -> class name string id
        self._classes = {}   # class id -> ClassInfo

    def add_load_class(self, class_id, name_id):
        self._name_ids[class_id] = name_id

    def add_class(self, info):
        self._classes[info.class_id] = info

    def get_class(self, class_id):
        return self._classes.get(class_id)

    def class_name(self, class_id, names):
        name_id = self._name_ids.get(class_id)
        if name_id is None:
            return UNKNOWN_NAME
        return names.get(name_id, UNKNOWN_NAME)

    def walk_fields(self, class_id):
        """Yield (declaring class id, FieldSpec) from the leaf class up to the root."""
        seen = set()
        current = class_id
        while not current.is_null():
            if current in seen:
                raise HprofFormatError('class hierarchy of %s loops at %s' % (class_id, current))
            seen.add(current)
            info = self._classes.get(current)
            if info is None:
                raise MissingClassError(current)
            for spec in info.fields:
                yield current, spec
            current = info.super_id


def is_string_class(class_name):
    return class_name in STRING_CLASS_NAMES


class StringResolver:
    """Matches String instances to the char arrays holding their text."""

    def __init__(self):
        self.char_arrays = {}  # char[] id -> text
        self.pending = {}      # String id -> char[] id

    def cache_char_array(self, array_id, text):
        self.char_arrays[array_id] = text

    def resolve(self, string_id, array_id):
        text = self.char_arrays.get(array_id)
        if text is None:
            self.pending[string_id] = array_id
        return text

    def finish(self):
        resolved = []
        unresolved = []
        for string_id in sorted(self.pending):
            array_id = self.pending[string_id]
            text = self.char_arrays.get(array_id)
            if text is None:
                unresolved.append((string_id, array_id))
            else:
                resolved.append((string_id, text))
        self.pending.clear()
        return resolved, unresolved


@dataclass
class ConversionContext:
    path: str
    id_size: Optional[int] = None
    current_pass: Pass = Pass.METADATA
    names: NameTable = field(default_factory=NameTable)
    classes: ClassTable = field(default_factory=ClassTable)
    strings: StringResolver = field(default_factory=StringResolver)
    counts: RecordCounts = field(default_factory=RecordCounts)

    def class_name(self, class_id):
        return self.classes.class_name(class_id, self.names)
