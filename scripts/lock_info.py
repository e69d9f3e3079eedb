#!/usr/bin/env python3
#
# Script to aggregate and report kernel mutex contention measured with
# bpftrace.
#
# Example:
# sudo ./scripts/lock_info.py -c 'make -j8' lock.out -s2 -n10
# ./scripts/lock_info.py lock.out -S6 -Ckernfs_iop_permission+39
#
# Copyright (c) 2022, The littlefs authors.
# SPDX-License-Identifier: BSD-3-Clause
#

# prevent local imports
__import__('sys').path.pop(0)

import collections as co
import errno
import os
import shlex
import signal
import subprocess as sp
import sys
import tempfile
import time


DATA_FILE = '/tmp/lock_data.out'
BPFTRACE_PATH = ['bpftrace']
SETTLE = 5
# holds longer than this are assumed to be stale, in ns
HOLD_LIMIT = 1000000000

# bpftrace maps, in the order they are printed
SECTIONS = [
    ('acq_avg',    '@aq_report_avg',   'mutex aq avg'),
    ('acq_max',    '@aq_report_max',   'mutex aq max'),
    ('acq_count',  '@aq_report_count', 'mutex aq count'),
    ('hold_avg',   '@hl_report_avg',   'mutex hold avg'),
    ('hold_max',   '@hl_report_max',   'mutex hold max'),
    ('hold_count', '@hl_report_count', 'mutex hold count'),
]

# sort options, indexed by -S
SORTS = [
    'hold_count', 'hold_max', 'hold_avg', 'hold_total',
    'acq_count', 'acq_max', 'acq_avg', 'acq_total']
SORT_DEFAULT = 7

CALLER_WIDTH = 48
FIELD_WIDTH = 15


def cdiv(a, b):
    # C-style division, truncates towards zero
    q = abs(a) // abs(b)
    return q if (a < 0) == (b < 0) else -q

def frame_name(frame):
    # strip indentation and anything after the symbol+offset
    return frame.lstrip().split(' ', 1)[0]


# per-stack measurements
class LockStack(co.namedtuple('LockStack', [
        'stack', 'called_from',
        'acq_avg', 'acq_max', 'acq_count', 'acq_total',
        'hold_avg', 'hold_max', 'hold_count', 'hold_total'])):
    __slots__ = ()
    def __new__(cls, stack=(), called_from=(),
            acq_avg=0, acq_max=0, acq_count=0, acq_total=0,
            hold_avg=0, hold_max=0, hold_count=0, hold_total=0):
        return super().__new__(cls, tuple(stack), tuple(called_from),
                int(acq_avg), int(acq_max), int(acq_count), int(acq_total),
                int(hold_avg), int(hold_max), int(hold_count),
                int(hold_total))

# measurements consolidated by caller
class LockResult(co.namedtuple('LockResult', [
        'called_from',
        'acq_avg', 'acq_max', 'acq_count', 'acq_total',
        'hold_avg', 'hold_max', 'hold_count', 'hold_total'])):
    _sort = SORTS

    __slots__ = ()
    def __new__(cls, called_from=(),
            acq_avg=0, acq_max=0, acq_count=0, acq_total=0,
            hold_avg=0, hold_max=0, hold_count=0, hold_total=0):
        return super().__new__(cls, tuple(called_from),
                int(acq_avg), int(acq_max), int(acq_count), int(acq_total),
                int(hold_avg), int(hold_max), int(hold_count),
                int(hold_total))

    def __add__(self, other):
        # merge running averages, weighted by count
        #
        # note this truncates at each step, so the result depends on
        # the order results are added in
        def merge(avg, count, avg_, count_):
            count__ = count + count_
            if not count__:
                return avg, count__
            return cdiv(avg*count + avg_*count_, count__), count__

        acq_avg, acq_count = merge(
                self.acq_avg, self.acq_count,
                other.acq_avg, other.acq_count)
        hold_avg, hold_count = merge(
                self.hold_avg, self.hold_count,
                other.hold_avg, other.hold_count)
        return LockResult(self.called_from,
                acq_avg, max(self.acq_max, other.acq_max), acq_count, 0,
                hold_avg, max(self.hold_max, other.hold_max), hold_count, 0)


def openio(path, mode='r', buffering=-1):
    # allow '-' for stdin
    if path == '-':
        return os.fdopen(os.dup(sys.stdin.fileno()), mode, buffering)
    else:
        return open(path, mode, buffering)

# generate a bpftrace script that measures mutex_lock/mutex_unlock
def bpftrace_script():
    rule = '=' * 40
    lines = [
        '#!/usr/bin/env bpftrace',
        '',
        'kprobe:mutex_lock',
        '{',
        '\t@track[tid] = 1;',
        '\t@stack[tid, @lock_depth[tid]] = kstack();',
        '\t@time[tid] = nsecs;',
        '\t@lock_depth[tid] = @lock_depth[tid] + 1;',
        '}',
        '',
        'kretprobe:mutex_lock',
        '/ @track[tid] == 1 /',
        '{',
        '\t$now = nsecs;',
        '\tif ($now > @time[tid]) {',
        '\t\t@aq_report_avg[@stack[tid, @lock_depth[tid] - 1]]'
            ' = avg($now - @time[tid]);',
        '\t\t@aq_report_max[@stack[tid, @lock_depth[tid] - 1]]'
            ' = max($now - @time[tid]);',
        '\t\t@aq_report_count[@stack[tid, @lock_depth[tid] - 1]]'
            ' = count();',
        '\t}',
        '\t@time_held[tid, @lock_depth[tid] - 1] = nsecs;',
        '\t@track[tid] = 0;',
        '}',
        '',
        'kprobe:mutex_unlock',
        '/ @lock_depth[tid] > 0 /',
        '{',
        '\t$now = nsecs;',
        '\t@lock_depth[tid] = @lock_depth[tid] - 1;',
        '\tif ($now > @time_held[tid, @lock_depth[tid]]) {',
        '\t\t$held = $now - @time_held[tid, @lock_depth[tid]];',
        '\t\tif ($held < %d) {' % HOLD_LIMIT,
        '\t\t\t@hl_report_avg[@stack[tid, @lock_depth[tid]]]'
            ' = avg($held);',
        '\t\t\t@hl_report_max[@stack[tid, @lock_depth[tid]]]'
            ' = max($held);',
        '\t\t\t@hl_report_count[@stack[tid, @lock_depth[tid]]]'
            ' = count();',
        '\t\t}',
        '\t}',
        '\tdelete(@stack[tid, @lock_depth[tid]]);',
        '\tdelete(@time_held[tid, @lock_depth[tid]]);',
        '}',
        '',
        'END',
        '{']

    # print each map under a banner, the report parser depends on this
    for _, map, title in SECTIONS:
        lines.extend([
            '\tprintf("%s\\n");' % rule,
            '\tprintf("%s\\n");' % title,
            '\tprintf("%s\\n");' % rule,
            '\tprint(%s);' % map])
    lines.extend([
        '\tprintf("%s\\n");' % rule,
        '\tprintf("END OF DATA\\n");',
        '\tprintf("%s\\n");' % rule])

    # don't let bpftrace dump anything else after us
    for map in ['@track', '@stack', '@time', '@time_held', '@lock_depth']:
        lines.append('\tclear(%s);' % map)
    for _, map, _ in SECTIONS:
        lines.append('\tclear(%s);' % map)
    lines.append('}')

    return '\n'.join(lines) + '\n'

# run bpftrace around a command, storing its maps in trace_path
def record(command, trace_path=DATA_FILE, *,
        bpftrace_path=BPFTRACE_PATH,
        settle=SETTLE,
        **args):
    with tempfile.NamedTemporaryFile('w', suffix='.bt') as s:
        s.write(bpftrace_script())
        s.flush()

        cmd = bpftrace_path + [s.name]
        if args.get('verbose'):
            print(' '.join(shlex.quote(c) for c in cmd))

        with open(trace_path, 'w') as f:
            # bpftrace gets its own session, so ctrl-C only stops the
            # command, we signal bpftrace ourselves
            try:
                tracer = sp.Popen(cmd,
                        stdout=f,
                        start_new_session=True,
                        close_fds=False)
            except OSError as e:
                print('error: %s: %s' % (bpftrace_path[0], e.strerror),
                        file=sys.stderr)
                return -1

            try:
                # give bpftrace a chance to attach its probes
                try:
                    time.sleep(settle)
                except KeyboardInterrupt:
                    print('warning: interrupted before running command',
                            file=sys.stderr)
                    return errno.EOWNERDEAD
                if tracer.poll() is not None:
                    print('error: bpftrace exited with %d' % tracer.returncode,
                            file=sys.stderr)
                    return tracer.returncode or -1

                # run our command
                if args.get('verbose'):
                    print(command)
                try:
                    err = sp.call(command, shell=True, close_fds=False)
                    if err:
                        print('warning: command exited with %d' % err,
                                file=sys.stderr)
                except KeyboardInterrupt:
                    print('warning: command interrupted', file=sys.stderr)

            finally:
                # bpftrace only prints its maps once it sees SIGINT
                if tracer.poll() is None:
                    tracer.send_signal(signal.SIGINT)
                tracer.wait()

    if tracer.returncode != 0:
        print('error: bpftrace exited with %d' % tracer.returncode,
                file=sys.stderr)
        return tracer.returncode

    return 0


class Parser:
    def __init__(self, f, path='-'):
        self.f = f
        self.path = path
        self.lineno = 0

    class Error(Exception):
        pass

    def error(self, line, msg='malformed line'):
        raise Parser.Error('%s:%d: %s: %r' % (
                self.path, self.lineno, msg, line))

    def readline(self):
        line = self.f.readline()
        if not line:
            raise Parser.Error('%s:%d: unexpected end of file' % (
                    self.path, self.lineno))
        self.lineno += 1
        return line

    def chomp(self, line):
        # stack and value lines must be complete
        if not line.endswith('\n'):
            self.error(line)
        return line[:-1]

def collect_lock_info(f, *,
        depth=1,
        path='-',
        **args):
    if depth < 1:
        raise ValueError('stack depth must be at least 1, got %r' % depth)

    p = Parser(f, path)
    results = {}

    def commit(field, stack, value):
        stack = tuple(stack)
        r = results.get(stack)
        if r is None:
            # the first frame is the lock itself, blame whoever called it
            called_from = stack[1:1+depth] or stack[:1]
            results[stack] = LockStack(stack, called_from,
                    **{field: value})
        else:
            # the same stack may show up more than once, accumulate
            results[stack] = r._replace(
                    **{field: getattr(r, field) + value})

    # skip bpftrace's preamble, up to and including the first banner rule
    while not p.readline().startswith('='):
        pass

    for field, _, _ in SECTIONS:
        # skip the section's title and closing rule
        p.readline()
        p.readline()

        stack = None
        while True:
            line = p.readline()
            # end of section?
            if line.startswith('='):
                break
            # nothing recorded?
            if '[]' in line:
                continue
            # start of a new stack?
            if line.startswith('@'):
                stack = []
                continue

            line = p.chomp(line)
            # end of a stack, this holds our measurement
            if line.startswith(']'):
                if stack is None:
                    p.error(line, 'unexpected end of stack')
                _, sep, value = line.partition(':')
                if not sep:
                    p.error(line)
                try:
                    value = int(value)
                except ValueError:
                    p.error(line, 'malformed value')
                if stack:
                    commit(field, stack, value)
                stack = None
                continue

            if not line.strip():
                continue
            if stack is None:
                p.error(line, 'unexpected frame')
            stack.append(line.strip())

    return results

def collect(trace_path, *,
        depth=1,
        **args):
    with openio(trace_path) as f:
        return collect_lock_info(f, depth=depth, path=trace_path)


def fold(results):
    # organize results into conflicts, visiting in a stable order
    folding = co.OrderedDict()
    for r in sorted(results, key=lambda r: (r.called_from, r.stack)):
        if r.called_from not in folding:
            folding[r.called_from] = []
        folding[r.called_from].append(r)

    # merge conflicts, starting from an empty result
    folded = []
    for name, rs in folding.items():
        folded.append(sum(rs, start=LockResult(name)))

    return folded

def totals(results):
    return [r._replace(
                acq_total=r.acq_avg*r.acq_count,
                hold_total=r.hold_avg*r.hold_count)
            for r in results]

def sort_code(sort):
    if sort is None:
        return SORT_DEFAULT
    if not 0 <= sort < len(LockResult._sort):
        print('warning: invalid sort option %d, defaulting to %d' % (
                    sort, SORT_DEFAULT),
                file=sys.stderr)
        return SORT_DEFAULT
    return sort

def rank(results, *,
        sort=SORT_DEFAULT,
        caller=None,
        number=None):
    k = LockResult._sort[sort_code(sort)]

    # sort by caller first so ties are deterministic, note that python's
    # sort is stable
    results = sorted(results, key=lambda r: r.called_from)
    results.sort(key=lambda r: getattr(r, k), reverse=True)

    # only show a specific caller?
    if caller is not None:
        results = [r for r in results
                if r.called_from and frame_name(r.called_from[0]) == caller]

    if number is not None:
        results = results[:max(number, 0)]

    return results

def table(results, *,
        f=None):
    if f is None:
        f = sys.stdout

    print('%*s%s' % (
                CALLER_WIDTH, 'caller',
                ''.join('%*s' % (FIELD_WIDTH, h) for h in [
                    '# holds', 'Hold Max (ns)', 'Hold Avg (ns)',
                    '# ACQs', 'ACQs Max (ns)', 'ACQs Avg (ns)'])),
            file=f)

    for r in results:
        print('%*s%s' % (
                    CALLER_WIDTH, r.called_from[0],
                    ''.join('%*d' % (FIELD_WIDTH, getattr(r, k)) for k in [
                        'hold_count', 'hold_max', 'hold_avg',
                        'acq_count', 'acq_max', 'acq_avg'])),
                file=f)

        # show the rest of the stack we attributed to
        for frame in r.called_from[1:]:
            print('%*s' % (CALLER_WIDTH, frame), file=f)


def report(trace_path=DATA_FILE, *,
        depth=1,
        sort=None,
        caller=None,
        number=None,
        output=None,
        **args):
    sort = sort_code(sort)

    if depth < 1:
        print('error: stack depth must be at least 1, got %d' % depth,
                file=sys.stderr)
        sys.exit(-1)

    # find measurements
    try:
        results = collect(trace_path, depth=depth, **args)
    except OSError as e:
        print('error: %s: %s' % (trace_path, e.strerror),
                file=sys.stderr)
        sys.exit(-1)
    except Parser.Error as e:
        print('error: %s' % e,
                file=sys.stderr)
        sys.exit(-1)

    # fold by caller
    results = fold(results.values())

    # sort and filter
    results = rank(totals(results),
            sort=sort,
            caller=caller,
            number=number)

    # write the report, falling back to stdout
    f = sys.stdout
    if output is not None and output != '-':
        try:
            f = open(output, 'w')
        except OSError as e:
            print('warning: could not open %s (%s), falling back to stdout' % (
                        output, e.strerror),
                    file=sys.stderr)

    try:
        table(results, f=f)
    finally:
        if f is not sys.stdout:
            f.close()


def main(trace_path=DATA_FILE, *,
        command=None,
        **args):
    # run a command under bpftrace first?
    if command:
        if trace_path == '-':
            print("error: can't record to stdin, specify a trace file",
                    file=sys.stderr)
            return -1
        err = record(command, trace_path, **args)
        if err:
            return err

    return report(trace_path, **args)


if __name__ == "__main__":
    import argparse
    parser = argparse.ArgumentParser(
            description="Aggregate and report kernel mutex contention "
                "measured with bpftrace.",
            allow_abbrev=False)
    parser.add_argument(
            'trace_path',
            nargs='?',
            help="bpftrace output to read, and to write with -c. "
                "Defaults to %r." % DATA_FILE)
    parser.add_argument(
            '-v', '--verbose',
            action='store_true',
            help="Output commands that run behind the scenes.")
    parser.add_argument(
            '-o', '--output',
            help="File to write the report to. Defaults to stdout.")
    parser.add_argument(
            '-s', '--depth',
            type=lambda x: int(x, 0),
            help="Depth of the stack to attribute measurements to. "
                "Defaults to 1.")
    parser.add_argument(
            '-S', '--sort',
            type=lambda x: int(x, 0),
            help="Sort by this field, 0: # holds, 1: hold max, 2: hold avg, "
                "3: hold total, 4: # acqs, 5: acq max, 6: acq avg, "
                "7: acq total (avg * count). Defaults to %d." % SORT_DEFAULT)
    parser.add_argument(
            '-C', '--caller',
            help="Only show stacks where the lock was called from this "
                "function.")
    parser.add_argument(
            '-n', '--number',
            type=lambda x: int(x, 0),
            help="Number of callers to show.")

    # record flags
    record_parser = parser.add_argument_group('record options')
    record_parser.add_argument(
            '-c', '--command',
            help="Command to run under bpftrace before reporting.")
    record_parser.add_argument(
            '--bpftrace-path',
            type=lambda x: x.split(),
            help="Path to the bpftrace executable, may include flags. "
                "Defaults to %r." % BPFTRACE_PATH)
    record_parser.add_argument(
            '--settle',
            type=float,
            help="Seconds to wait for bpftrace to attach before running the "
                "command. Defaults to %r." % SETTLE)

    args = parser.parse_intermixed_args()
    sys.exit(main(**{k: v
            for k, v in vars(args).items()
            if v is not None}))
