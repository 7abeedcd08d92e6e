#!/usr/bin/env python3
# -*- coding:utf-8 -*-
"""ASCII HPROF output: banner, ROOT/CLS/OBJ/ARR blocks and the .txt/.txt.prev files."""

import logging
import os

logger = logging.getLogger(__name__)

OUTPUT_SUFFIX = '.txt'
BACKUP_SUFFIX = '.prev'

ASCII_HPROF_HEADER = """JAVA PROFILE 1.0.1, created Sun Mar  9 20:47:24 2008

Header for -agentlib:hprof (or -Xrunhprof) ASCII Output (JDK 5.0 JVMTI based)

@(#)jvm.hprof.txt        1.5 06/01/28

 Copyright (c) 2006 Sun Microsystems, Inc. All  Rights Reserved.

WARNING!  This file format is under development, and is subject to
change without notice.

This file contains the following types of records:

THREAD START
THREAD END      mark the lifetime of Java threads

TRACE           represents a Java stack trace.  Each trace consists
                of a series of stack frames.  Other records refer to
                TRACEs to identify (1) where object allocations have
                taken place, (2) the frames in which GC roots were
                found, and (3) frequently executed methods.

HEAP DUMP       is a complete snapshot of all live objects in the Java
                heap.  Following distinctions are made:

                ROOT    root set as determined by GC
                CLS     classes 
                OBJ     instances
                ARR     arrays

SITES           is a sorted list of allocation sites.  This identifies
                the most heavily allocated object types, and the TRACE
                at which those allocations occurred.

CPU SAMPLES     is a statistical profile of program execution.  The VM
                periodically samples all running threads, and assigns
                a quantum to active TRACEs in those threads.  Entries
                in this record are TRACEs ranked by the percentage of
                total quanta they consumed; top-ranked TRACEs are
                typically hot spots in the program.

CPU TIME        is a profile of program execution obtained by measuring
                the time spent in individual methods (excluding the time
                spent in callees), as well as by counting the number of
                times each method is called. Entries in this record are
                TRACEs ranked by the percentage of total CPU time. The
                "count" field indicates the number of times each TRACE 
                is invoked.

MONITOR TIME    is a profile of monitor contention obtained by measuring
                the time spent by a thread waiting to enter a monitor.
                Entries in this record are TRACEs ranked by the percentage
                of total monitor contention time and a brief description
                of the monitor.  The "count" field indicates the number of 
                times the monitor was contended at that TRACE.

MONITOR DUMP    is a complete snapshot of all the monitors and threads in 
                the System.

HEAP DUMP, SITES, CPU SAMPLES|TIME and MONITOR DUMP|TIME records are generated 
at program exit.  They can also be obtained during program execution by typing 
Ctrl-\\ (on Solaris) or by typing Ctrl-Break (on Win32).

--------
"""

HEAP_DUMP_BEGIN = 'HEAP DUMP BEGIN (0 objects, 0 bytes) Sun Mar  9 20:47:55 2008'
HEAP_DUMP_END = 'HEAP DUMP END'


class HprofOutputError(Exception):
    """The output file could not be prepared."""


def output_path_for(input_path):
    return input_path + OUTPUT_SUFFIX


def backup_existing_output(output_path):
    """Move an existing output file to <output>.prev, replacing any older backup."""
    if not os.path.exists(output_path):
        return None
    backup_path = output_path + BACKUP_SUFFIX
    logger.info("convert target file %s already exists, renaming to %s", output_path, backup_path)
    try:
        os.replace(output_path, backup_path)
    except OSError as e:
        raise HprofOutputError('could not rename %s to %s: %s' % (output_path, backup_path, e)) from e
    return backup_path


class HprofTextWriter:
    def __init__(self, stream, output_path=None):
        self.stream = stream
        self.output_path = output_path

    @classmethod
    def open_for(cls, input_path):
        output_path = output_path_for(input_path)
        backup_existing_output(output_path)
        logger.info("ASCII hprof output is %s", output_path)
        writer = cls(open(output_path, 'w', encoding='utf-8'), output_path)
        writer.write_banner()
        return writer

    def _line(self, text):
        self.stream.write(text)
        self.stream.write('\n')

    def write_banner(self):
        self._line(ASCII_HPROF_HEADER)
        self._line(HEAP_DUMP_BEGIN)
        self.stream.flush()

    def root(self, obj_id, kind, **attrs):
        details = ''.join(', %s=%s' % (key, value) for key, value in attrs.items())
        self._line('ROOT %s (kind=<%s>%s)' % (obj_id, kind, details))

    def class_header(self, class_id, name):
        self._line('CLS %s (name=%s, trace=0)' % (class_id, name))

    def class_ref(self, label, ref_id):
        self._line('\t%s\t%s' % (label, ref_id))

    def static_field(self, name, ref_id):
        self._line('\tstatic %s\t%s' % (name, ref_id))

    def instance(self, obj_id, size, class_name, class_id):
        self._line('OBJ %s (sz=%d, trace=0, class=%s@%s)' % (obj_id, size, class_name, class_id))

    def instance_field(self, name, ref_id):
        self._line('\t%s\t%s' % (name, ref_id))

    def object_array(self, array_id, size, length, elem_class_name, elem_class_id):
        self._line('ARR %s (sz=%d, trace=0, nelems=%d, elem type=%s@%s)'
                   % (array_id, size, length, elem_class_name, elem_class_id))

    def array_element(self, index, ref_id):
        self._line('\t[%d]\t%s' % (index, ref_id))

    def primitive_array(self, array_id, size, length, type_name):
        self._line('ARR %s (sz=%d, trace=0, nelems=%d, elem type=%s)' % (array_id, size, length, type_name))

    def finish(self):
        self._line(HEAP_DUMP_END)
        self.close()

    def close(self):
        if not self.stream.closed:
            self.stream.flush()
            self.stream.close()
