"""Builds binary HPROF byte streams for the tests."""

import io
from contextlib import contextmanager

OBJECT = 2
BOOLEAN = 4
CHAR = 5
FLOAT = 6
DOUBLE = 7
BYTE = 8
SHORT = 9
INT = 10
LONG = 11

PRIMITIVE_SIZES = {BOOLEAN: 1, CHAR: 2, FLOAT: 4, DOUBLE: 8, BYTE: 1, SHORT: 2, INT: 4, LONG: 8}


class Buffer:
    def __init__(self, id_size=4):
        self._buffer = io.BytesIO()
        self.id_size = id_size

    def write(self, data):
        self._buffer.write(data)

    def writeU1(self, value):
        self._buffer.write(value.to_bytes(1, "big", signed=False))

    def writeU2(self, value):
        self._buffer.write(value.to_bytes(2, "big", signed=False))

    def writeU4(self, value):
        self._buffer.write(value.to_bytes(4, "big", signed=False))

    def writeU8(self, value):
        self._buffer.write(value.to_bytes(8, "big", signed=False))

    def writeId(self, value):
        self._buffer.write(value.to_bytes(self.id_size, "big", signed=False))

    def writeValue(self, type_code, value):
        if type_code == OBJECT:
            self.writeId(value)
        else:
            self._buffer.write(value.to_bytes(PRIMITIVE_SIZES[type_code], "big", signed=False))

    def getvalue(self):
        return self._buffer.getvalue()

    def reset(self):
        self._buffer = io.BytesIO()

    @contextmanager
    def new_record(self, record_type):
        self.writeU1(record_type)
        self.writeU4(0)  # No time difference
        mark = self._buffer.tell()
        self.writeU4(0)  # Length, fixed up below
        yield
        cur = self._buffer.tell()
        self._buffer.seek(mark, io.SEEK_SET)
        self.writeU4(cur - mark - 4)
        self._buffer.seek(cur, io.SEEK_SET)


def field_bytes(id_size, values):
    """Instance field payload from [(type_code, value), ...]."""
    buf = Buffer(id_size)
    for type_code, value in values:
        buf.writeValue(type_code, value)
    return buf.getvalue()


class HprofBuilder:
    def __init__(self, id_size=4, magic=b"JAVA PROFILE 1.0.2", timestamp=1204000000000):
        self.id_size = id_size
        self.out = Buffer(id_size)
        self.out.write(magic + b"\0")
        self.out.writeU4(id_size)
        self.out.writeU8(timestamp)
        self.heap = Buffer(id_size)

    # top-level records

    def string(self, string_id, text):
        with self.out.new_record(0x01):
            self.out.writeId(string_id)
            self.out.write(text.encode("utf-8"))
        return self

    def load_class(self, class_id, name_id, serial=1):
        with self.out.new_record(0x02):
            self.out.writeU4(serial)
            self.out.writeId(class_id)
            self.out.writeU4(0)  # stack trace serial
            self.out.writeId(name_id)
        return self

    def record(self, tag, body):
        with self.out.new_record(tag):
            self.out.write(body)
        return self

    def truncated_record(self, tag, declared_length, body=b""):
        self.out.writeU1(tag)
        self.out.writeU4(0)
        self.out.writeU4(declared_length)
        self.out.write(body)
        return self

    def heap_dump(self, tag=0x0C):
        """Wrap the heap sub-records written so far in one heap dump record."""
        self.record(tag, self.heap.getvalue())
        self.heap.reset()
        return self

    def to_bytes(self):
        return self.out.getvalue()

    def write_to(self, path):
        with open(path, "wb") as f:
            f.write(self.to_bytes())
        return path

    # heap dump sub-records

    def root_unknown(self, obj_id):
        self.heap.writeU1(0xFF)
        self.heap.writeId(obj_id)
        return self

    def root_jni_global(self, obj_id, ref_id):
        self.heap.writeU1(0x01)
        self.heap.writeId(obj_id)
        self.heap.writeId(ref_id)
        return self

    def root_jni_local(self, obj_id, thread_serial, frame):
        self.heap.writeU1(0x02)
        self.heap.writeId(obj_id)
        self.heap.writeU4(thread_serial)
        self.heap.writeU4(frame)
        return self

    def root_java_frame(self, obj_id, thread_serial, frame):
        self.heap.writeU1(0x03)
        self.heap.writeId(obj_id)
        self.heap.writeU4(thread_serial)
        self.heap.writeU4(frame)
        return self

    def root_native_stack(self, obj_id, thread_serial):
        self.heap.writeU1(0x04)
        self.heap.writeId(obj_id)
        self.heap.writeU4(thread_serial)
        return self

    def root_sticky_class(self, obj_id):
        self.heap.writeU1(0x05)
        self.heap.writeId(obj_id)
        return self

    def root_thread_block(self, obj_id, thread_serial):
        self.heap.writeU1(0x06)
        self.heap.writeId(obj_id)
        self.heap.writeU4(thread_serial)
        return self

    def root_monitor_used(self, obj_id):
        self.heap.writeU1(0x07)
        self.heap.writeId(obj_id)
        return self

    def root_thread_object(self, obj_id, thread_serial, stack_serial=0):
        self.heap.writeU1(0x08)
        self.heap.writeId(obj_id)
        self.heap.writeU4(thread_serial)
        self.heap.writeU4(stack_serial)
        return self

    def class_dump(self, class_id, super_id=0, loader_id=0, domain_id=0, instance_size=0,
                   constants=(), statics=(), fields=()):
        h = self.heap
        h.writeU1(0x20)
        h.writeId(class_id)
        h.writeU4(0)  # stack trace serial
        h.writeId(super_id)
        h.writeId(loader_id)
        h.writeId(0)  # signers
        h.writeId(domain_id)
        h.writeId(0)  # reserved
        h.writeId(0)  # reserved
        h.writeU4(instance_size)
        h.writeU2(len(constants))
        for index, type_code, value in constants:
            h.writeU2(index)
            h.writeU1(type_code)
            h.writeValue(type_code, value)
        h.writeU2(len(statics))
        for name_id, type_code, value in statics:
            h.writeId(name_id)
            h.writeU1(type_code)
            h.writeValue(type_code, value)
        h.writeU2(len(fields))
        for name_id, type_code in fields:
            h.writeId(name_id)
            h.writeU1(type_code)
        return self

    def instance_dump(self, obj_id, class_id, values=(), payload=None):
        if payload is None:
            payload = field_bytes(self.id_size, values)
        self.heap.writeU1(0x21)
        self.heap.writeId(obj_id)
        self.heap.writeU4(0)  # stack trace serial
        self.heap.writeId(class_id)
        self.heap.writeU4(len(payload))
        self.heap.write(payload)
        return self

    def object_array(self, array_id, elem_class_id, elements):
        self.heap.writeU1(0x22)
        self.heap.writeId(array_id)
        self.heap.writeU4(0)  # stack trace serial
        self.heap.writeU4(len(elements))
        self.heap.writeId(elem_class_id)
        for elem in elements:
            self.heap.writeId(elem)
        return self

    def primitive_array(self, array_id, type_code, count, payload):
        self.heap.writeU1(0x23)
        self.heap.writeId(array_id)
        self.heap.writeU4(0)  # stack trace serial
        self.heap.writeU4(count)
        self.heap.writeU1(type_code)
        self.heap.write(payload)
        return self

    def heap_byte(self, value):
        self.heap.writeU1(value)
        return self
