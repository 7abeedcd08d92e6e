#!/usr/bin/env python3
# -*- coding:utf-8 -*-
"""
Binary HPROF -> ASCII HPROF converter.

The file is scanned twice over the same memory map:
- pass 1 collects strings, class-load records and class layouts and writes
  the ROOT and CLS blocks
- pass 2 resolves instance fields through the class hierarchy and writes
  the OBJ and ARR blocks

Output goes to <file>.txt, an existing one is kept as <file>.txt.prev.
"""

import argparse
import logging
import mmap
import os
import struct
import sys
import time

from hprof_model import BasicType, ClassInfo, ConversionResult, ConvertOptions, FieldSpec, Pass
from hprof_reader import HprofCursor, HprofFormatError, read_header
from hprof_tables import UNKNOWN_NAME, ConversionContext, MissingClassError, is_string_class
from hprof_text_writer import HprofOutputError, HprofTextWriter

logger = logging.getLogger(__name__)

OUT_OF_MEMORY_TEXT = '__out_of_memory_error__'
PROGRESS_INTERVAL = 10000


def decode_char_array(payload):
    """Big-endian UTF-16 payload of a char[] -> (code units, text)."""
    count = len(payload) // 2
    units = struct.unpack('>%dH' % count, payload[:count * 2])
    return units, payload[:count * 2].decode('utf-16-be', 'replace')


class HprofConverter:
    """Converts one binary HPROF file. A fresh instance holds no state from other files."""

    # HPROF record tags
    TAG_STRING = 0x01
    TAG_LOAD_CLASS = 0x02
    TAG_UNLOAD_CLASS = 0x03
    TAG_STACK_FRAME = 0x04
    TAG_STACK_TRACE = 0x05
    TAG_ALLOC_SITES = 0x06
    TAG_HEAP_SUMMARY = 0x07
    TAG_START_THREAD = 0x0A
    TAG_END_THREAD = 0x0B
    TAG_HEAP_DUMP = 0x0C
    TAG_CPU_SAMPLES = 0x0D
    TAG_CONTROL_SETTINGS = 0x0E
    TAG_LOCKSTATS_WAIT_TIME = 0x10
    TAG_LOCKSTATS_HOLD_TIME = 0x11
    TAG_HEAP_DUMP_SEGMENT = 0x1C
    TAG_HEAP_DUMP_END = 0x2C

    # Heap dump sub-record tags
    HEAP_TAG_ROOT_UNKNOWN = 0xFF
    HEAP_TAG_ROOT_JNI_GLOBAL = 0x01
    HEAP_TAG_ROOT_JNI_LOCAL = 0x02
    HEAP_TAG_ROOT_JAVA_FRAME = 0x03
    HEAP_TAG_ROOT_NATIVE_STACK = 0x04
    HEAP_TAG_ROOT_STICKY_CLASS = 0x05
    HEAP_TAG_ROOT_THREAD_BLOCK = 0x06
    HEAP_TAG_ROOT_MONITOR_USED = 0x07
    HEAP_TAG_ROOT_THREAD_OBJECT = 0x08
    HEAP_TAG_CLASS_DUMP = 0x20
    HEAP_TAG_INSTANCE_DUMP = 0x21
    HEAP_TAG_OBJECT_ARRAY_DUMP = 0x22
    HEAP_TAG_PRIMITIVE_ARRAY_DUMP = 0x23

    def __init__(self, filename, options=None, console=None):
        self.filename = filename
        self.options = options or ConvertOptions()
        self.console = console or sys.stdout
        self.ctx = None
        self.cursor = None
        self.writer = None
        self.print_progress = False
        self.n_processed = 0

    # ==================== Driver ====================

    def convert(self):
        """Run both passes; returns a ConversionResult instead of raising on bad input."""
        self.ctx = ConversionContext(self.filename)
        try:
            with open(self.filename, 'rb') as f:
                data = self.mapFile(f)
                try:
                    self.cursor = HprofCursor(data)

                    t0 = time.time()
                    self.runPass(Pass.METADATA)
                    logger.info("pass 1 took %.3f s.", time.time() - t0)
                    logger.info("%s", self.ctx.counts.summary())

                    t0 = time.time()
                    self.runPass(Pass.EMIT)
                    self.reconcileStrings()
                    if self.writer:
                        self.writer.finish()
                    logger.info("pass 2 took %.3f s.", time.time() - t0)
                finally:
                    self.cursor = None
                    if isinstance(data, mmap.mmap):
                        data.close()
        except (HprofFormatError, HprofOutputError, OSError) as e:
            logger.error("converting %s failed: %s", self.filename, e)
            return ConversionResult(self.filename, False, self.ctx.counts,
                                    self.writer.output_path if self.writer else None, str(e))
        finally:
            if self.writer:
                self.writer.close()
        return ConversionResult(self.filename, True, self.ctx.counts,
                                self.writer.output_path if self.writer else None)

    def mapFile(self, f):
        if os.fstat(f.fileno()).st_size == 0:
            return b''
        return mmap.mmap(f.fileno(), 0, access=mmap.ACCESS_READ)

    def runPass(self, pass_):
        self.ctx.current_pass = pass_
        self.cursor.rewind()
        header = read_header(self.cursor)
        if pass_ is Pass.METADATA:
            self.ctx.id_size = header.id_size
            logger.info("%s", header.magic)
            logger.info("pointer size %d", header.id_size)
            logger.info("ts %s %x", header.created, header.timestamp_ms)
            if self.options.emit_output:
                self.writer = HprofTextWriter.open_for(self.filename)
        else:
            self.n_processed = 0
            self.print_progress = (logger.isEnabledFor(logging.INFO)
                                   and not self.options.dump_char_arrays
                                   and not self.options.resolve_strings)
            if self.print_progress:
                logger.info("Progress (. for %d records)", PROGRESS_INTERVAL)
        self.readRecords()

    def reconcileStrings(self):
        """Print Strings whose char[] only showed up after the String itself."""
        if not self.options.resolve_strings:
            return
        resolved, unresolved = self.ctx.strings.finish()
        for string_id, text in resolved:
            print("S: %s %s" % (string_id, text), file=self.console)
        for string_id, array_id in unresolved:
            logger.error("could not find char[] %s for String %s", array_id, string_id)

    @property
    def first_pass(self):
        return self.ctx.current_pass is Pass.METADATA

    # ==================== Top-level records ====================

    def readRecords(self):
        """Read all top-level records of the current pass"""
        while not self.cursor.at_end():
            tag = self.readInt(1)
            self.readInt(4)  # time
            length = self.readInt(4)
            with self.cursor.region(length):
                if tag == self.TAG_STRING:
                    self.readString(length)
                elif tag == self.TAG_LOAD_CLASS:
                    self.readLoadClass()
                elif tag == self.TAG_HEAP_DUMP:
                    self.readHeapDump()
                elif tag == self.TAG_HEAP_DUMP_SEGMENT:
                    raise HprofFormatError(
                        'segmented heap dump (tag 0x%02x) at offset %d is not supported'
                        % (tag, self.cursor.tell()))
                else:
                    logger.debug("skipping record tag 0x%02x, %d bytes", tag, length)
                    if self.first_pass:
                        self.ctx.counts.skipped_records += 1

    def readString(self, length):
        """Read UTF8 string record"""
        id_size = self.ctx.id_size
        if length < id_size:
            logger.warning("string record of %d bytes at offset %d is shorter than an id",
                         length, self.cursor.tell())
            return
        name_id = self.readId()
        try:
            text = self.cursor.read_bytes(length - id_size).decode('utf-8', 'replace')
        except MemoryError:
            logger.error("MemoryError decoding %d byte string %s", length - id_size, name_id)
            text = OUT_OF_MEMORY_TEXT
        self.ctx.names.add(name_id, text)
        if self.first_pass:
            self.ctx.counts.strings += 1
            if self.options.dump_names:
                print("name %s %s" % (name_id, text), file=self.console)

    def readLoadClass(self):
        """Read class load record"""
        class_serial = self.readInt(4)
        class_id = self.readId()
        stack_trace_serial = self.readInt(4)
        name_id = self.readId()
        logger.debug("class sn %x id %s stktn %x nid %s %s",
                     class_serial, class_id, stack_trace_serial, name_id, self.ctx.names.get(name_id))
        self.ctx.classes.add_load_class(class_id, name_id)
        if self.first_pass:
            self.ctx.counts.load_classes += 1

    def readHeapDump(self):
        """Read the heap dump sub-records up to the end of the record"""
        while not self.cursor.at_end():
            tag = self.readInt(1)

            if tag == self.HEAP_TAG_ROOT_UNKNOWN:
                self.readGcRootUnknown()
            elif tag == self.HEAP_TAG_ROOT_THREAD_OBJECT:
                self.readGcRootThreadObject()
            elif tag == self.HEAP_TAG_ROOT_JNI_GLOBAL:
                self.readGcRootJniGlobal()
            elif tag == self.HEAP_TAG_ROOT_JNI_LOCAL:
                self.readGcRootJniLocal()
            elif tag == self.HEAP_TAG_ROOT_JAVA_FRAME:
                self.readGcRootJavaFrame()
            elif tag == self.HEAP_TAG_ROOT_NATIVE_STACK:
                self.readGcRootNativeStack()
            elif tag == self.HEAP_TAG_ROOT_STICKY_CLASS:
                self.readGcRootStickyClass()
            elif tag == self.HEAP_TAG_ROOT_THREAD_BLOCK:
                self.readGcRootThreadBlock()
            elif tag == self.HEAP_TAG_ROOT_MONITOR_USED:
                self.readGcRootMonitorUsed()
            elif tag == self.HEAP_TAG_CLASS_DUMP:
                self.readClassDump()
            elif tag == self.HEAP_TAG_INSTANCE_DUMP:
                self.readInstanceDump()
                self.tickProgress()
            elif tag == self.HEAP_TAG_OBJECT_ARRAY_DUMP:
                self.readObjectArrayDump()
                self.tickProgress()
            elif tag == self.HEAP_TAG_PRIMITIVE_ARRAY_DUMP:
                self.readPrimitiveArrayDump()
                self.tickProgress()
            else:
                raise HprofFormatError('Unknown heapdump sub record type 0x%02x at offset %d'
                                       % (tag, self.cursor.tell() - 1))

        if self.print_progress and self.n_processed >= PROGRESS_INTERVAL:
            print("", file=self.console)

    def tickProgress(self):
        if self.first_pass:
            return
        self.n_processed += 1
        if self.print_progress and self.n_processed % PROGRESS_INTERVAL == 0:
            print(".", end="", file=self.console, flush=True)

    # ==================== GC roots ====================

    def add_gc_root(self, obj_id, kind=None, **attrs):
        """Count the root on pass 1 and write it when it has an ASCII form"""
        if not self.first_pass:
            return
        self.ctx.counts.roots += 1
        if kind and self.writer:
            self.writer.root(obj_id, kind, **attrs)

    def readGcRootUnknown(self):
        """ROOT_UNKNOWN: id"""
        obj_id = self.readId()
        logger.debug("HPROF_GC_ROOT_UNKNOWN %s", obj_id)
        self.add_gc_root(obj_id, 'unknown')

    def readGcRootThreadObject(self):
        """ROOT_THREAD_OBJ: id, thread_serial, stack_trace_serial"""
        obj_id = self.readId()
        thread_serial = self.readInt(4)
        self.readInt(4)  # stack trace serial
        logger.debug("HPROF_GC_ROOT_THREAD_OBJ %s", obj_id)
        self.add_gc_root(obj_id, 'thread', id=format(thread_serial, 'x'), trace=0)

    def readGcRootJniGlobal(self):
        """ROOT_JNI_GLOBAL: id, jni_global_ref_id"""
        obj_id = self.readId()
        jni_ref_id = self.readId()
        logger.debug("HPROF_GC_ROOT_JNI_GLOBAL %s grid %s", obj_id, jni_ref_id)
        self.add_gc_root(obj_id, 'JNI global ref', id=0, trace=0)

    def readGcRootJniLocal(self):
        """ROOT_JNI_LOCAL: id, thread_serial, frame_num"""
        obj_id = self.readId()
        thread_serial = self.readInt(4)
        frame_num = self.readInt(4)
        logger.debug("HPROF_GC_ROOT_JNI_LOCAL %s tsn %x frn %x", obj_id, thread_serial, frame_num)
        self.add_gc_root(obj_id)

    def readGcRootJavaFrame(self):
        """ROOT_JAVA_FRAME: id, thread_serial, frame_num"""
        obj_id = self.readId()
        thread_serial = self.readInt(4)
        frame_num = self.readInt(4)
        logger.debug("HPROF_GC_ROOT_JAVA_FRAME %s tsn %x frn %x", obj_id, thread_serial, frame_num)
        self.add_gc_root(obj_id, 'Java stack', thread=format(thread_serial, 'x'), frame=0)

    def readGcRootNativeStack(self):
        """ROOT_NATIVE_STACK: id, thread_serial"""
        obj_id = self.readId()
        thread_serial = self.readInt(4)
        logger.debug("HPROF_GC_ROOT_NATIVE_STACK %s thrsn %x", obj_id, thread_serial)
        self.add_gc_root(obj_id)

    def readGcRootStickyClass(self):
        """ROOT_STICKY_CLASS: id"""
        obj_id = self.readId()
        logger.debug("HPROF_GC_ROOT_STICKY_CLASS %s", obj_id)
        if self.first_pass:
            self.add_gc_root(obj_id, 'system class', name=self.ctx.class_name(obj_id))

    def readGcRootThreadBlock(self):
        """ROOT_THREAD_BLOCK: id, thread_serial"""
        obj_id = self.readId()
        thread_serial = self.readInt(4)
        logger.debug("HPROF_GC_ROOT_THREAD_BLOCK %s thrsn %d", obj_id, thread_serial)
        self.add_gc_root(obj_id, 'thread block', thread=thread_serial)

    def readGcRootMonitorUsed(self):
        """ROOT_MONITOR_USED: id"""
        obj_id = self.readId()
        logger.debug("HPROF_GC_ROOT_MONITOR_USED %s", obj_id)
        self.add_gc_root(obj_id, 'busy monitor')

    # ==================== Classes and objects ====================

    def readClassDump(self):
        """Read class dump; the layout is only recorded on pass 1"""
        class_id = self.readId()
        self.readInt(4)  # stack trace serial
        super_class_id = self.readId()
        class_loader_id = self.readId()
        self.readId()  # signers
        protection_domain_id = self.readId()
        self.readId()  # reserved
        self.readId()  # reserved
        instance_size = self.readInt(4)

        emit = self.first_pass and self.writer is not None
        if emit:
            self.writer.class_header(class_id, self.ctx.class_name(class_id))
            for label, ref_id in (('super', super_class_id),
                                  ('loader', class_loader_id),
                                  ('domain', protection_domain_id)):
                if not ref_id.is_null():
                    self.writer.class_ref(label, ref_id)

        logger.debug("HPROF_GC_CLASS_DUMP %s super %s isz %d", class_id, super_class_id, instance_size)

        # constant pool values are not dumped
        for _ in range(self.readInt(2)):
            self.readInt(2)  # index
            BasicType.from_code(self.readInt(1)).read(self.cursor)

        for _ in range(self.readInt(2)):
            name_id = self.readId()
            basic_type = BasicType.from_code(self.readInt(1))
            value = basic_type.read(self.cursor)
            if emit and basic_type is BasicType.OBJECT and not value.is_null():
                self.writer.static_field(self.ctx.names.get(name_id, UNKNOWN_NAME), value)

        # the layout from pass 1 is kept, pass 2 only steps over it
        fields = []
        for _ in range(self.readInt(2)):
            name_id = self.readId()
            basic_type = BasicType.from_code(self.readInt(1))
            if self.first_pass:
                fields.append(FieldSpec(name_id, self.ctx.names.get(name_id), basic_type))

        if self.first_pass:
            self.ctx.classes.add_class(ClassInfo(class_id, super_class_id, instance_size, fields))
            self.ctx.counts.classes += 1

    def readInstanceDump(self):
        """INSTANCE_DUMP: id, stack_trace_serial, class_id, bytes_following, field bytes"""
        obj_id = self.readId()
        self.readInt(4)  # stack trace serial
        class_id = self.readId()
        bytes_following = self.readInt(4)
        logger.debug("HPROF_GC_INSTANCE_DUMP %s cls %s follow %d", obj_id, class_id, bytes_following)

        if self.first_pass:
            self.cursor.skip(bytes_following)
            self.ctx.counts.instances += 1
            return

        field_data = HprofCursor(self.cursor.read_bytes(bytes_following), self.ctx.id_size)
        self.writeInstance(obj_id, class_id, field_data)

    def writeInstance(self, obj_id, class_id, field_data):
        """Walk the class chain over the instance's field bytes (leaf class fields first)"""
        class_name = self.ctx.class_name(class_id)
        class_info = self.ctx.classes.get_class(class_id)
        if class_info is None:
            logger.error("no class dump for %s (class of instance %s)", class_id, obj_id)

        if self.writer:
            size = class_info.instance_size if class_info else 0
            if self.options.include_header_size:
                size += self.ctx.id_size * 2
            self.writer.instance(obj_id, size, class_name, class_id)

        track_string = self.options.resolve_strings and is_string_class(class_name)
        try:
            for _, spec in self.ctx.classes.walk_fields(class_id):
                value = spec.basic_type.read(field_data)
                if spec.basic_type is not BasicType.OBJECT or value.is_null():
                    continue
                name = self.fieldName(spec)
                if self.writer:
                    self.writer.instance_field(name, value)
                if track_string and name == 'value':
                    self.resolveString(obj_id, value)
        except MissingClassError as e:
            logger.error("instance %s of %s: %s, remaining fields skipped", obj_id, class_name, e)
            return

        if field_data.remaining():
            logger.error("instance %s of %s: fields cover %d of %d bytes",
                         obj_id, class_name, field_data.tell(), len(field_data.data))

    def fieldName(self, spec):
        if spec.name is not None:
            return spec.name
        return self.ctx.names.get(spec.name_id, UNKNOWN_NAME)

    def resolveString(self, string_id, array_id):
        text = self.ctx.strings.resolve(string_id, array_id)
        if text is not None:
            print("S: %s %s" % (string_id, text), file=self.console)

    def readObjectArrayDump(self):
        """OBJ_ARRAY_DUMP: id, stack_trace_serial, length, element_class_id, elements"""
        array_id = self.readId()
        self.readInt(4)  # stack trace serial
        length = self.readInt(4)
        elem_class_id = self.readId()
        id_size = self.ctx.id_size
        logger.debug("HPROF_GC_OBJ_ARRAY_DUMP id %s nelms %d ecls %s", array_id, length, elem_class_id)

        if self.first_pass or not self.writer:
            self.cursor.skip(length * id_size)
            if self.first_pass:
                self.ctx.counts.object_arrays += 1
            return

        size = 4 * id_size + id_size * length
        if self.options.include_header_size:
            size += id_size * 4
        self.writer.object_array(array_id, size, length, self.ctx.class_name(elem_class_id), elem_class_id)
        for index in range(length):
            elem_id = self.readId()
            if not elem_id.is_null():
                self.writer.array_element(index, elem_id)

    def readPrimitiveArrayDump(self):
        """PRIM_ARRAY_DUMP: id, stack_trace_serial, length, element type, data"""
        array_id = self.readId()
        self.readInt(4)  # stack trace serial
        length = self.readInt(4)
        type_code = self.readInt(1)
        elem_type = BasicType.from_code(type_code)
        if elem_type is BasicType.OBJECT:
            raise HprofFormatError('Unexpected primitive array element type %d for %s' % (type_code, array_id))
        size = length * elem_type.size(self.ctx.id_size)
        logger.debug("HPROF_GC_PRIM_ARRAY_DUMP id %s elms %d type %s", array_id, length, elem_type.type_name)

        if self.first_pass:
            self.cursor.skip(size)
            self.ctx.counts.primitive_arrays += 1
            return

        payload = self.cursor.read_bytes(size)
        if elem_type is BasicType.CHAR and (self.options.dump_char_arrays or self.options.resolve_strings):
            self.readCharArray(array_id, payload)

        if self.writer:
            if self.options.include_header_size:
                size += self.ctx.id_size * 2 + 4
            self.writer.primitive_array(array_id, size, length, elem_type.type_name)

    def readCharArray(self, array_id, payload):
        units, text = decode_char_array(payload)
        if self.options.resolve_strings:
            self.ctx.strings.cache_char_array(array_id, text)
        if self.options.dump_char_arrays:
            print("%s: %s // %d %s" % (array_id, text, len(units), ' '.join(format(u, 'x') for u in units)),
                  file=self.console)
            print(' '.join(format(b, 'x') for b in payload), file=self.console)

    # ==================== Utility Methods ====================

    def readInt(self, length):
        return self.cursor.read_int(length)

    def readId(self):
        return self.cursor.read_id()


def convert_file(path, options=None, console=None):
    return HprofConverter(path, options, console).convert()


def convert_files(paths, options=None, console=None):
    """Convert files one at a time; missing paths are reported and skipped."""
    results = []
    for path in paths:
        if not os.path.exists(path):
            logger.error("file %s was not found.", path)
            continue
        results.append(convert_file(path, options, console))
    return results


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Convert binary HPROF heap dumps to ASCII HPROF text.\n"
                    "Only heap dump records are converted.",
        epilog="Examples:\n"
               "  python3 hprof_converter.py heap.hprof\n"
               "  python3 hprof_converter.py -c heap.hprof other.hprof\n"
               "  python3 hprof_converter.py --dump-string -q heap.hprof",
        formatter_class=argparse.RawTextHelpFormatter
    )
    parser.add_argument('files', nargs='*', help='binary hprof file(s)')
    parser.add_argument('-c', '--convert', action='store_true',
                        help='write <file>.txt; without it the files are only parsed')
    parser.add_argument('--dump-string', action='store_true', help='print java.lang.String values to stdout')
    parser.add_argument('--dump-char-array', action='store_true', help='print char[] contents to stdout')
    parser.add_argument('--dump-name', action='store_true', help='print string records to stdout')
    parser.add_argument('--no-header-size', action='store_true',
                        help='do not add object header sizes to OBJ/ARR sizes')
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument('-v', '--verbose', action='store_true', help='log every record (DEBUG)')
    verbosity.add_argument('-q', '--quiet', action='store_true', help='only log warnings and errors')
    args = parser.parse_args(argv)

    if not args.files:
        parser.print_help()
        return 0

    if args.verbose:
        level = logging.DEBUG
    elif args.quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    logging.basicConfig(level=level, format='%(levelname)s %(name)s: %(message)s')

    options = ConvertOptions(
        emit_output=args.convert,
        include_header_size=not args.no_header_size,
        dump_char_arrays=args.dump_char_array,
        resolve_strings=args.dump_string,
        dump_names=args.dump_name,
    )
    results = convert_files(args.files, options)
    if len(results) == len(args.files) and all(r.success for r in results):
        return 0
    return 1


if __name__ == '__main__':
    sys.exit(main())
