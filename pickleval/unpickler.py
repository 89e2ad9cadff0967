import codecs
import io
import logging
import sys
from struct import unpack

from .errors import (
    DepthError, MalformedError, MemoError, MissingMarkError, StackSizeError,
    StackUnderflowError, TextDecodingError, TruncatedError, UnhashableError,
    UnsupportedOpcodeError,
)
from .memo import MemoTable
from .opcodes import (
    ADDITEMS, APPEND, APPENDS, BINBYTES, BINBYTES8, BINFLOAT, BINGET, BININT,
    BININT1, BININT2, BINPERSID, BINPUT, BINSTRING, BINUNICODE, BINUNICODE8, BUILD,
    BY_CODE, BYTEARRAY8, DICT, DUP, EMPTY_DICT, EMPTY_LIST, EMPTY_SET, EMPTY_TUPLE,
    EXT1, EXT2, EXT4, FLOAT, FRAME, FROZENSET, GET, GLOBAL, INST, INT, LIST, LONG,
    LONG1, LONG4, LONG_BINGET, LONG_BINPUT, MARK, MEMOIZE, NEWFALSE, NEWOBJ,
    NEWOBJ_EX, NEWTRUE, NEXT_BUFFER, NONE, OBJ, PERSID, POP, POP_MARK, PROTO, PUT,
    READONLY_BUFFER, REDUCE, SETITEM, SETITEMS, SHORT_BINBYTES, SHORT_BINSTRING,
    SHORT_BINUNICODE, STACK_GLOBAL, STOP, STRING, TUPLE, TUPLE1, TUPLE2, TUPLE3,
    UNICODE, ArgKind, DEFAULT_MAX_DEPTH, HIGHEST_PROTOCOL, decode_long, opcodes_for,
)
from .value import NEWOBJ as NEWOBJ_CALL, NEWOBJ_EX as NEWOBJ_EX_CALL
from .value import PY2_MODULES, RECONSTRUCTORS, Global, Object, children

log = logging.getLogger(__name__)

DEFAULT_MAX_STACK = 1_000_000

# Protocol assumed until a PROTO opcode says otherwise.
NEGOTIATED_DEFAULT = 1


# An instance of _Stop is raised by Unpickler.load_stop() in response to
# the STOP opcode, passing the object that is the result of unpickling.
class _Stop(Exception):
    def __init__(self, value):
        self.value = value


class _Unframer:

    def __init__(self, file_read, file_readline):
        self.file_read = file_read
        self.file_readline = file_readline
        self.current_frame = None
        self.offset = 0

    def read(self, n):
        if self.current_frame:
            data = self.current_frame.read(n)
            if not data and n != 0:
                self.current_frame = None
                data = self.file_read(n)
            elif len(data) < n:
                raise TruncatedError("pickle exhausted before end of frame", self.offset)
        else:
            data = self.file_read(n)
        self.offset += len(data)
        return data

    def readline(self):
        if self.current_frame:
            data = self.current_frame.readline()
            if not data:
                self.current_frame = None
                data = self.file_readline()
            elif data[-1] != b'\n'[0]:
                raise TruncatedError("pickle exhausted before end of frame", self.offset)
        else:
            data = self.file_readline()
        self.offset += len(data)
        return data

    def load_frame(self, frame_size):
        if self.current_frame and self.current_frame.read() != b'':
            raise MalformedError("beginning of a new frame before end of current frame",
                                 self.offset)
        data = self.file_read(frame_size)
        if len(data) < frame_size:
            raise TruncatedError("pickle exhausted before end of frame", self.offset)
        self.current_frame = io.BytesIO(data)


def _fold_encode(args):
    if len(args) == 2 and type(args[0]) is str and args[1] in ("latin1", "latin-1"):
        try:
            return args[0].encode("latin1")
        except UnicodeEncodeError:
            pass
    return _NO_FOLD


def _fold_bytes(args):
    if not args:
        return b''
    if len(args) == 1 and type(args[0]) is bytes:
        return args[0]
    return _NO_FOLD


def _fold_bytearray(args):
    if not args:
        return bytearray()
    if len(args) == 1 and type(args[0]) in (bytes, bytearray):
        return bytearray(args[0])
    if len(args) == 2 and type(args[0]) is str and type(args[1]) is str:
        try:
            return bytearray(args[0], args[1])
        except (LookupError, UnicodeError):
            pass
    return _NO_FOLD


def _fold_set(args):
    if not args:
        return set()
    if len(args) == 1 and type(args[0]) is list:
        try:
            return set(args[0])
        except TypeError:
            pass
    return _NO_FOLD


def _fold_frozenset(args):
    value = _fold_set(args)
    if value is _NO_FOLD:
        return value
    return frozenset(value)


_NO_FOLD = object()

_NESTED = frozenset({list, tuple, set, frozenset, dict, Object})


def _refuse(name):
    def load_refused(self, arg):
        raise self._fail(UnsupportedOpcodeError, "%s is not supported: it needs a runtime "
                         "lookup this codec does not perform" % name)
    return load_refused


# Builtin constructors older protocols use for values that later protocols
# write natively.  Folding produces the native value; nothing is called.
_FOLDS = {
    Global("_codecs", "encode"): _fold_encode,
    Global("builtins", "bytes"): _fold_bytes,
    Global("builtins", "bytearray"): _fold_bytearray,
    Global("builtins", "set"): _fold_set,
    Global("builtins", "frozenset"): _fold_frozenset,
}


class Unpickler:

    def __init__(self, file, *, fix_imports=True, encoding="ASCII", errors="strict",
                 buffers=None, max_depth=DEFAULT_MAX_DEPTH, max_stack=DEFAULT_MAX_STACK,
                 memoize_all=False, reconstructors=RECONSTRUCTORS):
        """This takes a binary file for reading a pickle data stream.

        The protocol version of the pickle is detected from the PROTO opcode;
        a stream without one is read as protocol 0/1.

        *encoding* and *errors* say how to decode 8-bit string instances
        written by Python 2; *encoding* can be 'bytes' to keep them as bytes.
        *errors* also selects how invalid UTF-8 in text operands is handled:
        'strict' refuses it, any other error handler decodes leniently.

        *buffers* is an iterable of buffer-enabled objects consumed, in
        order, by NEXT_BUFFER opcodes in a protocol 5 stream.

        *max_depth* bounds the MARK nesting while the stream runs and the
        container nesting of the result; *max_stack* bounds the operand stack.
        """
        try:
            self._unframer = _Unframer(file.read, file.readline)
        except AttributeError:
            raise TypeError("file must have 'read' and 'readline' attributes")
        if encoding != "bytes":
            codecs.lookup(encoding)
        self._buffers = iter(buffers) if buffers is not None else None
        self.memo = MemoTable()
        self.encoding = encoding
        self.errors = errors
        self.fix_imports = fix_imports
        self.max_depth = max_depth
        self.max_stack = max_stack
        self.memoize_all = memoize_all
        self.reconstructors = frozenset(reconstructors)
        self.proto = NEGOTIATED_DEFAULT
        self._opcodes = opcodes_for(self.proto)
        self.stack = []
        self.marks = []
        self._depths = {}
        self._pos = 0
        log.debug("unpickler limits: max_depth=%d, max_stack=%d, memoize_all=%s",
                  max_depth, max_stack, memoize_all)

    def load(self):
        """Read a pickled object representation from the open file.

        Return the value graph the stream describes.
        """
        self.proto = NEGOTIATED_DEFAULT
        self._opcodes = opcodes_for(self.proto)
        self.stack = []
        self.marks = []
        self._depths = {}
        unframer = self._unframer
        read = unframer.read
        readers = self._readers
        dispatch = self.dispatch
        try:
            while True:
                self._pos = unframer.offset
                key = read(1)
                if not key:
                    raise TruncatedError("pickle data was truncated", self._pos)
                info = self._opcodes.get(key)
                if info is None:
                    info = BY_CODE.get(key)
                    if info is None:
                        raise self._fail(UnsupportedOpcodeError, "invalid load key, %r" % key)
                    if key != PROTO:
                        raise self._fail(UnsupportedOpcodeError,
                                         "opcode %s requires protocol %d, stream is protocol %d"
                                         % (info.name, info.proto, self.proto))
                arg = readers[info.arg](self)
                dispatch[key](self, arg)
        except _Stop as stopinst:
            value = stopinst.value
        except Exception:
            self.memo.clear()
            raise
        finally:
            self.stack = []
            self.marks = []
            self._depths = {}
        log.debug("unpickled %s value, protocol %d, %d memo entries",
                  type(value).__name__, self.proto, len(self.memo))
        return value

    def _fail(self, cls, msg):
        return cls(msg, self._pos)

    # Operand readers

    def _read_exact(self, n):
        if n > sys.maxsize:
            raise self._fail(MalformedError, "operand length exceeds sys.maxsize")
        data = self._unframer.read(n)
        if len(data) < n:
            raise TruncatedError("pickle data was truncated", self._unframer.offset)
        return data

    def _read_line(self):
        data = self._unframer.readline()
        if not data.endswith(b'\n'):
            raise TruncatedError("pickle data was truncated", self._unframer.offset)
        return data[:-1]

    def _read_length(self, fmt, size):
        n, = unpack(fmt, self._read_exact(size))
        if n < 0:
            raise self._fail(MalformedError, "negative byte count")
        return n

    _readers = {
        ArgKind.NONE: lambda self: None,
        ArgKind.UINT1: lambda self: self._read_exact(1)[0],
        ArgKind.UINT2: lambda self: unpack('<H', self._read_exact(2))[0],
        ArgKind.INT4: lambda self: unpack('<i', self._read_exact(4))[0],
        ArgKind.UINT4: lambda self: unpack('<I', self._read_exact(4))[0],
        ArgKind.UINT8: lambda self: unpack('<Q', self._read_exact(8))[0],
        ArgKind.DECIMALNL: lambda self: self._read_line(),
        ArgKind.FLOATNL: lambda self: self._read_line(),
        ArgKind.STRINGNL: lambda self: self._read_line(),
        ArgKind.UNICODESTRINGNL: lambda self: self._read_line(),
        ArgKind.NAMENL_PAIR: lambda self: (self._read_line(), self._read_line()),
        ArgKind.BYTES1: lambda self: self._read_exact(self._read_exact(1)[0]),
        ArgKind.BYTES4: lambda self: self._read_exact(self._read_length('<I', 4)),
        ArgKind.BYTES8: lambda self: self._read_exact(self._read_length('<Q', 8)),
        ArgKind.STRING4: lambda self: self._read_exact(self._read_length('<i', 4)),
        ArgKind.LONG1: lambda self: decode_long(self._read_exact(self._read_exact(1)[0])),
        ArgKind.LONG4: lambda self: decode_long(self._read_exact(self._read_length('<i', 4))),
        ArgKind.FLOAT8: lambda self: unpack('>d', self._read_exact(8))[0],
    }

    # Stack helpers.  ``marks`` holds the stack length at each open MARK;
    # nothing below the last mark may be popped except by pop_mark.

    def _floor(self):
        return self.marks[-1] if self.marks else 0

    def _push(self, value):
        if len(self.stack) >= self.max_stack:
            raise self._fail(StackSizeError, "operand stack exceeds %d items" % self.max_stack)
        self.stack.append(value)

    def _pop(self):
        if len(self.stack) <= self._floor():
            raise self._fail(StackUnderflowError, "unpickling stack underflow")
        return self.stack.pop()

    def _top(self):
        if len(self.stack) <= self._floor():
            raise self._fail(StackUnderflowError, "unpickling stack underflow")
        return self.stack[-1]

    def _pop_mark(self):
        if not self.marks:
            raise self._fail(MissingMarkError, "could not find MARK")
        k = self.marks.pop()
        items = self.stack[k:]
        del self.stack[k:]
        return items

    def _new(self, value):
        if self.memoize_all:
            self.memo.track(value)
        return value

    # Tuples, frozensets and objects are hashed as dict keys and set items
    # before STOP, and hashing recurses through them.  Their nesting is
    # bounded as they are built; mutable containers count as one level since
    # hashing stops there.

    def _depth_of(self, value):
        entry = self._depths.get(id(value))
        if entry is not None and entry[0] is value:
            return entry[1]
        return 1 if type(value) in _NESTED else 0

    def _nested(self, value, items):
        depth = 1 + max(map(self._depth_of, items), default=0)
        if depth > self.max_depth:
            raise self._fail(DepthError, "nesting depth exceeds %d" % self.max_depth)
        self._depths[id(value)] = (value, depth)
        return value

    def _parse_int(self, data):
        try:
            return int(data, 0)
        except ValueError:
            raise self._fail(MalformedError, "invalid integer literal %r" % data) from None

    def _decode_string(self, value):
        if self.encoding == "bytes":
            return value
        try:
            return value.decode(self.encoding, self.errors)
        except UnicodeDecodeError as e:
            raise self._fail(TextDecodingError, "cannot decode string: %s" % e) from None

    def _text(self, data):
        if self.errors == "strict":
            try:
                return str(data, "utf-8", "surrogatepass")
            except UnicodeDecodeError as e:
                raise self._fail(TextDecodingError, "invalid UTF-8 text: %s" % e) from None
        return str(data, "utf-8", self.errors)

    def _check_depth(self, root):
        """Refuse a result nested deeper than max_depth, without recursing.

        Every container counts, empty ones included, as the pickler counts them.
        """
        limit = self.max_depth
        seen = set()
        todo = [(root, 1)]
        while todo:
            obj, depth = todo.pop()
            if type(obj) not in _NESTED or id(obj) in seen:
                continue
            if depth > limit:
                raise self._fail(DepthError, "nesting depth exceeds %d" % limit)
            seen.add(id(obj))
            todo.extend((kid, depth + 1) for kid in children(obj))

    def find_class(self, module, name):
        if self.proto < 3 and self.fix_imports:
            module = PY2_MODULES.get(module, module)
        return Global(module, name)

    def _object(self, func, args):
        if not isinstance(func, (Global, Object)):
            raise self._fail(MalformedError, "callable must be a global or an object, not %s"
                             % type(func).__name__)
        if type(args) is not tuple:
            raise self._fail(MalformedError, "argument must be a tuple, not %s"
                             % type(args).__name__)
        self._nested(args, args)
        obj = Object(func, args, reconstructors=self.reconstructors)
        return self._new(self._nested(obj, (func, args)))

    dispatch = {}

    def load_proto(self, proto):
        if not 0 <= proto <= HIGHEST_PROTOCOL:
            raise self._fail(MalformedError, "unsupported pickle protocol: %d" % proto)
        self.proto = proto
        self._opcodes = opcodes_for(proto)
        log.debug("stream negotiated protocol %d", proto)
    dispatch[PROTO] = load_proto

    def load_frame(self, frame_size):
        if frame_size > sys.maxsize:
            raise self._fail(MalformedError, "frame size > sys.maxsize: %d" % frame_size)
        self._unframer.load_frame(frame_size)
        log.debug("loaded frame of %d bytes at offset %d", frame_size, self._pos)
    dispatch[FRAME] = load_frame

    for code in (PERSID, BINPERSID, EXT1, EXT2, EXT4):
        dispatch[code] = _refuse(BY_CODE[code].name)
    del code

    def load_none(self, arg):
        self._push(None)
    dispatch[NONE] = load_none

    def load_false(self, arg):
        self._push(False)
    dispatch[NEWFALSE] = load_false

    def load_true(self, arg):
        self._push(True)
    dispatch[NEWTRUE] = load_true

    def load_int(self, data):
        if data == b'00':
            val = False
        elif data == b'01':
            val = True
        else:
            val = self._parse_int(data)
        self._push(val)
    dispatch[INT] = load_int

    def load_long(self, data):
        if data[-1:] == b'L':
            data = data[:-1]
        self._push(self._parse_int(data))
    dispatch[LONG] = load_long

    def load_number(self, value):
        self._push(value)
    dispatch[BININT] = load_number
    dispatch[BININT1] = load_number
    dispatch[BININT2] = load_number
    dispatch[LONG1] = load_number
    dispatch[LONG4] = load_number
    dispatch[BINFLOAT] = load_number

    def load_float(self, data):
        try:
            val = float(data)
        except ValueError:
            raise self._fail(MalformedError, "invalid float literal %r" % data) from None
        self._push(val)
    dispatch[FLOAT] = load_float

    def load_string(self, data):
        # Strip outermost quotes
        if len(data) >= 2 and data[0] == data[-1] and data[0] in b'"\'':
            data = data[1:-1]
        else:
            raise self._fail(MalformedError, "the STRING opcode argument must be quoted")
        try:
            value = codecs.escape_decode(data)[0]
        except ValueError as e:
            raise self._fail(MalformedError, "invalid STRING escape: %s" % e) from None
        self._push(self._decode_string(value))
    dispatch[STRING] = load_string

    def load_binstring(self, data):
        self._push(self._decode_string(data))
    dispatch[BINSTRING] = load_binstring
    dispatch[SHORT_BINSTRING] = load_binstring

    def load_binbytes(self, data):
        self._push(data)
    dispatch[BINBYTES] = load_binbytes
    dispatch[SHORT_BINBYTES] = load_binbytes
    dispatch[BINBYTES8] = load_binbytes

    def load_bytearray8(self, data):
        self._push(self._new(bytearray(data)))
    dispatch[BYTEARRAY8] = load_bytearray8

    def load_next_buffer(self, arg):
        if self._buffers is None:
            raise self._fail(MalformedError, "pickle stream refers to out-of-band data "
                             "but no *buffers* argument was given")
        try:
            buf = next(self._buffers)
        except StopIteration:
            raise self._fail(MalformedError, "not enough out-of-band buffers") from None
        self._push(self._new(bytearray(buf)))
    dispatch[NEXT_BUFFER] = load_next_buffer

    def load_readonly_buffer(self, arg):
        buf = self._top()
        if type(buf) is bytearray:
            if self.memoize_all:
                self.memo.untrack(buf)
            self.stack[-1] = self._new(bytes(buf))
    dispatch[READONLY_BUFFER] = load_readonly_buffer

    def load_unicode(self, data):
        try:
            self._push(str(data, 'raw-unicode-escape'))
        except UnicodeDecodeError as e:
            raise self._fail(TextDecodingError, "invalid UNICODE argument: %s" % e) from None
    dispatch[UNICODE] = load_unicode

    def load_binunicode(self, data):
        self._push(self._text(data))
    dispatch[BINUNICODE] = load_binunicode
    dispatch[BINUNICODE8] = load_binunicode
    dispatch[SHORT_BINUNICODE] = load_binunicode

    def load_tuple(self, arg):
        items = self._pop_mark()
        self._push(self._nested(tuple(items), items))
    dispatch[TUPLE] = load_tuple

    def load_empty_tuple(self, arg):
        self._push(())
    dispatch[EMPTY_TUPLE] = load_empty_tuple

    def load_tuple1(self, arg):
        a = self._pop()
        self._push(self._nested((a,), (a,)))
    dispatch[TUPLE1] = load_tuple1

    def load_tuple2(self, arg):
        b = self._pop()
        a = self._pop()
        self._push(self._nested((a, b), (a, b)))
    dispatch[TUPLE2] = load_tuple2

    def load_tuple3(self, arg):
        c = self._pop()
        b = self._pop()
        a = self._pop()
        self._push(self._nested((a, b, c), (a, b, c)))
    dispatch[TUPLE3] = load_tuple3

    def load_empty_list(self, arg):
        self._push(self._new([]))
    dispatch[EMPTY_LIST] = load_empty_list

    def load_empty_dictionary(self, arg):
        self._push(self._new({}))
    dispatch[EMPTY_DICT] = load_empty_dictionary

    def load_empty_set(self, arg):
        self._push(self._new(set()))
    dispatch[EMPTY_SET] = load_empty_set

    def load_frozenset(self, arg):
        items = self._pop_mark()
        try:
            value = frozenset(items)
        except TypeError as e:
            raise self._fail(UnhashableError, "frozenset item is unhashable: %s" % e) from None
        except RecursionError:
            raise self._fail(DepthError, "frozenset item nested too deeply") from None
        self._push(self._new(self._nested(value, items)))
    dispatch[FROZENSET] = load_frozenset

    def load_list(self, arg):
        self._push(self._new(self._pop_mark()))
    dispatch[LIST] = load_list

    def load_dict(self, arg):
        items = self._pop_mark()
        d = self._new({})
        self._setitems(d, items)
        self._push(d)
    dispatch[DICT] = load_dict

    def load_inst(self, names):
        module, name = (self._name(part) for part in names)
        args = tuple(self._pop_mark())
        self._push(self._object(self.find_class(module, name), args))
    dispatch[INST] = load_inst

    def load_obj(self, arg):
        args = self._pop_mark()
        if not args:
            raise self._fail(MalformedError, "OBJ needs a class")
        cls = args.pop(0)
        self._push(self._object(cls, tuple(args)))
    dispatch[OBJ] = load_obj

    def load_newobj(self, arg):
        args = self._pop()
        cls = self._pop()
        if type(args) is not tuple:
            raise self._fail(MalformedError, "NEWOBJ arguments must be a tuple, not %s"
                             % type(args).__name__)
        self._push(self._object(NEWOBJ_CALL, (cls,) + args))
    dispatch[NEWOBJ] = load_newobj

    def load_newobj_ex(self, arg):
        kwargs = self._pop()
        args = self._pop()
        cls = self._pop()
        if type(args) is not tuple or type(kwargs) is not dict:
            raise self._fail(MalformedError, "NEWOBJ_EX needs a tuple and a dict, not %s and %s"
                             % (type(args).__name__, type(kwargs).__name__))
        self._push(self._object(NEWOBJ_EX_CALL, (cls, args, kwargs)))
    dispatch[NEWOBJ_EX] = load_newobj_ex

    def _name(self, data):
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise self._fail(TextDecodingError, "invalid global name: %s" % e) from None

    def load_global(self, names):
        module, name = (self._name(part) for part in names)
        klass = self.find_class(module, name)
        self._push(klass)
    dispatch[GLOBAL] = load_global

    def load_stack_global(self, arg):
        name = self._pop()
        module = self._pop()
        if type(name) is not str or type(module) is not str:
            raise self._fail(MalformedError, "STACK_GLOBAL requires str")
        self._push(self.find_class(module, name))
    dispatch[STACK_GLOBAL] = load_stack_global

    def load_reduce(self, arg):
        args = self._pop()
        func = self._pop()
        fold = _FOLDS.get(func) if type(func) is Global and type(args) is tuple else None
        if fold is not None:
            try:
                value = fold(args)
            except RecursionError:
                raise self._fail(DepthError, "set item nested too deeply") from None
            if value is not _NO_FOLD:
                if type(value) is frozenset:
                    value = self._nested(value, value)
                if type(value) in (bytearray, set, frozenset):
                    value = self._new(value)
                self._push(value)
                return
        self._push(self._object(func, args))
    dispatch[REDUCE] = load_reduce

    def load_pop(self, arg):
        if len(self.stack) > self._floor():
            self.stack.pop()
        elif self.marks:
            self.marks.pop()
        else:
            raise self._fail(StackUnderflowError, "unpickling stack underflow")
    dispatch[POP] = load_pop

    def load_pop_mark(self, arg):
        self._pop_mark()
    dispatch[POP_MARK] = load_pop_mark

    def load_dup(self, arg):
        self._push(self._top())
    dispatch[DUP] = load_dup

    def _memo_get(self, i):
        if i < 0 or i not in self.memo:
            raise self._fail(MemoError, "missing memo id %d" % i)
        self._push(self.memo.get(i))

    def _memo_put(self, i):
        if i < 0:
            raise self._fail(MalformedError, "negative PUT argument")
        self.memo.put(i, self._top())

    def load_get(self, data):
        self._memo_get(self._parse_int(data))
    dispatch[GET] = load_get

    def load_binget(self, i):
        self._memo_get(i)
    dispatch[BINGET] = load_binget
    dispatch[LONG_BINGET] = load_binget

    def load_put(self, data):
        self._memo_put(self._parse_int(data))
    dispatch[PUT] = load_put

    def load_binput(self, i):
        self._memo_put(i)
    dispatch[BINPUT] = load_binput
    dispatch[LONG_BINPUT] = load_binput

    def load_memoize(self, arg):
        self._memo_put(len(self.memo))
    dispatch[MEMOIZE] = load_memoize

    def _extend(self, target, items):
        if type(target) is list:
            target.extend(items)
        elif type(target) is Object:
            if target.listitems is None:
                target.listitems = []
            target.listitems.extend(items)
        else:
            raise self._fail(MalformedError, "cannot append to %s" % type(target).__name__)

    def load_append(self, arg):
        value = self._pop()
        self._extend(self._top(), [value])
    dispatch[APPEND] = load_append

    def load_appends(self, arg):
        items = self._pop_mark()
        self._extend(self._top(), items)
    dispatch[APPENDS] = load_appends

    def _setitems(self, target, items):
        if len(items) % 2:
            raise self._fail(MalformedError, "odd number of items for SETITEMS")
        if type(target) is dict:
            d = target
        elif type(target) is Object:
            if target.dictitems is None:
                target.dictitems = {}
            d = target.dictitems
        else:
            raise self._fail(MalformedError, "cannot set items on %s" % type(target).__name__)
        try:
            for i in range(0, len(items), 2):
                d[items[i]] = items[i + 1]
        except TypeError as e:
            raise self._fail(UnhashableError, "dict key is unhashable: %s" % e) from None
        except RecursionError:
            raise self._fail(DepthError, "dict key nested too deeply") from None

    def load_setitem(self, arg):
        value = self._pop()
        key = self._pop()
        self._setitems(self._top(), [key, value])
    dispatch[SETITEM] = load_setitem

    def load_setitems(self, arg):
        items = self._pop_mark()
        self._setitems(self._top(), items)
    dispatch[SETITEMS] = load_setitems

    def load_additems(self, arg):
        items = self._pop_mark()
        set_obj = self._top()
        if type(set_obj) is not set:
            raise self._fail(MalformedError, "cannot add items to %s" % type(set_obj).__name__)
        try:
            set_obj.update(items)
        except TypeError as e:
            raise self._fail(UnhashableError, "set item is unhashable: %s" % e) from None
        except RecursionError:
            raise self._fail(DepthError, "set item nested too deeply") from None
    dispatch[ADDITEMS] = load_additems

    def load_build(self, arg):
        state = self._pop()
        inst = self._top()
        if type(inst) is not Object:
            raise self._fail(MalformedError, "BUILD target must be a reconstructed object, "
                             "not %s" % type(inst).__name__)
        inst.build(state)
    dispatch[BUILD] = load_build

    def load_mark(self, arg):
        if len(self.marks) >= self.max_depth:
            raise self._fail(DepthError, "nesting depth exceeds %d" % self.max_depth)
        self.marks.append(len(self.stack))
    dispatch[MARK] = load_mark

    def load_stop(self, arg):
        if self.marks:
            raise self._fail(MalformedError, "STOP with an open MARK")
        value = self._pop()
        self._check_depth(value)
        raise _Stop(value)
    dispatch[STOP] = load_stop


def _load(file, **options):
    return Unpickler(file, **options).load()


def _loads(data, **options):
    if isinstance(data, str):
        raise TypeError("Can't load pickle from unicode string")
    file = io.BytesIO(data)
    return Unpickler(file, **options).load()


load = _load
loads = _loads
