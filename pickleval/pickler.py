import io
import logging
from itertools import islice
from struct import pack

from .errors import EncoderInvariantError, PicklingError, ProtocolSupportError
from .memo import MemoTable, identity
from .opcodes import (
    APPEND, APPENDS, BINBYTES, BINBYTES8, BINFLOAT, BINGET, BININT, BININT1, BININT2,
    BINPUT, BINUNICODE, BINUNICODE8, BUILD, BY_CODE, BYTEARRAY8, DEFAULT_MAX_DEPTH,
    DEFAULT_PROTOCOL,
    DICT, EMPTY_DICT, EMPTY_LIST, EMPTY_SET, EMPTY_TUPLE, ADDITEMS, FLOAT, FRAME,
    FROZENSET, GET, GLOBAL, HIGHEST_PROTOCOL, INT, LIST, LONG, LONG1, LONG4,
    LONG_BINGET, LONG_BINPUT, MARK, MEMOIZE, NEWFALSE, NEWOBJ, NEWOBJ_EX, NEWTRUE,
    NEXT_BUFFER, NONE, POP, POP_MARK, PROTO, PUT, READONLY_BUFFER, REDUCE, SETITEM,
    SETITEMS, SHORT_BINBYTES, SHORT_BINUNICODE, STACK_GLOBAL, STOP, TUPLE, TUPLE1,
    TUPLE2, TUPLE3, UNICODE, encode_long, opcodes_for,
)
from .value import NEWOBJ as NEWOBJ_CALL, NEWOBJ_EX as NEWOBJ_EX_CALL, PY3_MODULES
from .value import Global, Kind, Object, children, kind_of

log = logging.getLogger(__name__)

BATCHSIZE = 1000

_CODECS_ENCODE = Global("_codecs", "encode")
_BYTES = Global("builtins", "bytes")
_LATIN1 = "latin1"

_MEMOIZED = frozenset({
    Kind.BYTES, Kind.STRING, Kind.BYTEARRAY, Kind.LIST, Kind.TUPLE, Kind.SET,
    Kind.FROZENSET, Kind.DICT, Kind.GLOBAL, Kind.OBJECT,
})
_NESTING = frozenset({
    Kind.LIST, Kind.TUPLE, Kind.SET, Kind.FROZENSET, Kind.DICT, Kind.OBJECT,
})
_SCALARS = (type(None), bool, int, float)
# Written and memoized before their items.
_MEMOIZED_FIRST = frozenset({list, dict, set, Object})
_LEAVE = object()

_tuplesize2code = [EMPTY_TUPLE, TUPLE1, TUPLE2, TUPLE3]


def find_shared(root):
    """Return the memo keys of values reachable from *root* more than once.

    Values are visited in the order the pickler writes them.  A cycle that
    closes on a tuple or frozenset marks every value along it: those are only
    memoized after their items, so the pickler enters them a second time and
    has to find the rest of the cycle in the memo.
    """
    seen = set()
    shared = set()
    path = []
    position = {}
    todo = [root]
    while todo:
        obj = todo.pop()
        if obj is _LEAVE:
            del position[identity(path.pop())]
            continue
        if isinstance(obj, _SCALARS):
            continue
        key = identity(obj)
        if key in seen:
            shared.add(key)
            start = position.get(key)
            if start is not None and type(obj) not in _MEMOIZED_FIRST:
                shared.update(identity(x) for x in path[start:])
            continue
        seen.add(key)
        position[key] = len(path)
        path.append(obj)
        todo.append(_LEAVE)
        todo.extend(reversed(list(children(obj))))
    return shared


class _Framer:
    _FRAME_SIZE_MIN = 4
    _FRAME_SIZE_TARGET = 64 * 1024

    def __init__(self, file_write):
        self.file_write = file_write
        self.current_frame = None

    def start_framing(self):
        self.current_frame = io.BytesIO()

    def end_framing(self):
        if self.current_frame and self.current_frame.tell() > 0:
            self.commit_frame(force=True)
            self.current_frame = None

    def commit_frame(self, force=False):
        if self.current_frame:
            f = self.current_frame
            if f.tell() >= self._FRAME_SIZE_TARGET or force:
                data = f.getbuffer()
                write = self.file_write
                if len(data) >= self._FRAME_SIZE_MIN:
                    write(FRAME + pack("<Q", len(data)))
                write(data)
                self.current_frame = io.BytesIO()

    def write(self, data):
        if self.current_frame:
            return self.current_frame.write(data)
        else:
            return self.file_write(data)

    def write_large_bytes(self, header, payload):
        write = self.file_write
        if self.current_frame:
            self.commit_frame(force=True)
        write(header)
        write(payload)


class Pickler:
    """Write a value graph as a pickle stream.

    With ``memoize_all`` (the default) every memoizable value gets a memo
    entry on first emission, which reproduces the reference pickler's output
    for plain data.  Without it an identity pass runs first and only values
    reached more than once (aliases and cycles) are memoized.

    Bad options fail early as they do for the standard pickler: an unknown
    protocol or a ``buffer_callback`` below protocol 5 is a ``ValueError``
    (not a :class:`ProtocolSupportError`, which is reserved for values the
    target protocol cannot express).
    """

    def __init__(self, file, protocol=None, *, fix_imports=True, buffer_callback=None,
                 memoize_all=True, max_depth=DEFAULT_MAX_DEPTH):
        if protocol is None:
            protocol = DEFAULT_PROTOCOL
        if protocol < 0:
            protocol = HIGHEST_PROTOCOL
        elif not 0 <= protocol <= HIGHEST_PROTOCOL:
            raise ValueError("pickle protocol must be <= %d" % HIGHEST_PROTOCOL)
        if buffer_callback is not None and protocol < 5:
            raise ValueError("buffer_callback needs protocol >= 5")
        self._buffer_callback = buffer_callback
        try:
            self._file_write = file.write
        except AttributeError:
            raise TypeError("file must have a 'write' attribute")
        self.framer = _Framer(self._file_write)
        self.write = self.framer.write
        self._write_large_bytes = self.framer.write_large_bytes
        self.memo = MemoTable()
        self.proto = int(protocol)
        self.bin = protocol >= 1
        self.fix_imports = fix_imports and protocol < 3
        self.memoize_all = memoize_all
        self.max_depth = max_depth
        self._opcodes = opcodes_for(self.proto)
        self._shared = None
        self._reducing = set()
        self._depth = 0
        log.debug("pickler at protocol %d, memoize_all=%s, max_depth=%d",
                  self.proto, memoize_all, max_depth)

    def clear_memo(self):
        self.memo.clear()

    def dump(self, obj):
        if not self.memoize_all:
            self._shared = find_shared(obj)
        try:
            if self.proto >= 2:
                self._op(PROTO, pack("<B", self.proto))
            if self.proto >= 4:
                self.framer.start_framing()
            self.save(obj)
            self._op(STOP)
            self.framer.end_framing()
        except OSError as e:
            raise PicklingError("failed writing pickle data: %s" % e) from e
        finally:
            self._shared = None
            self._reducing.clear()
            self._depth = 0
        log.debug("pickled %s value at protocol %d, %d memo entries",
                  type(obj).__name__, self.proto, len(self.memo))

    def _check(self, code):
        if code not in self._opcodes:
            raise EncoderInvariantError("opcode %s is not defined at protocol %d"
                                        % (BY_CODE[code].name, self.proto))

    def _op(self, code, arg=b''):
        self._check(code)
        self.write(code + arg)

    def _large(self, code, header, payload):
        self._check(code)
        self._write_large_bytes(code + header, payload)

    def memoize(self, obj):
        if self._shared is not None and identity(obj) not in self._shared:
            return
        if self.memo.id_of(obj) is not None:
            raise EncoderInvariantError("%s value memoized twice" % type(obj).__name__)
        idx = self.memo.memoize(obj)
        self.write(self.put(idx))

    def put(self, idx):
        if self.proto >= 4:
            self._check(MEMOIZE)
            return MEMOIZE
        elif self.bin:
            if idx < 256:
                return BINPUT + pack("<B", idx)
            else:
                return LONG_BINPUT + pack("<I", idx)
        else:
            return PUT + repr(idx).encode("ascii") + b'\n'

    def get(self, i):
        if self.bin:
            if i < 256:
                return BINGET + pack("<B", i)
            else:
                return LONG_BINGET + pack("<I", i)
        return GET + repr(i).encode("ascii") + b'\n'

    def save(self, obj):
        self.framer.commit_frame()
        try:
            kind = kind_of(obj)
        except TypeError:
            raise PicklingError("Unsupported type: %s" % type(obj).__name__) from None
        if kind in _MEMOIZED:
            x = self.memo.id_of(obj)
            if x is not None:
                self.write(self.get(x))
                return
        if kind.min_protocol > self.proto:
            raise ProtocolSupportError(kind, kind.min_protocol, self.proto)
        if kind not in _NESTING:
            self.dispatch[kind](self, obj)
            return
        self._depth += 1
        try:
            if self._depth > self.max_depth:
                raise PicklingError("nesting depth exceeds %d" % self.max_depth)
            self.dispatch[kind](self, obj)
        finally:
            self._depth -= 1

    dispatch = {}

    def save_none(self, obj):
        self._op(NONE)
    dispatch[Kind.NONE] = save_none

    def save_bool(self, obj):
        if self.proto >= 2:
            self._op(NEWTRUE if obj else NEWFALSE)
        else:
            self._op(INT, b'01\n' if obj else b'00\n')
    dispatch[Kind.BOOL] = save_bool

    def save_long(self, obj):
        if self.bin:
            if obj >= 0:
                if obj <= 0xff:
                    self._op(BININT1, pack("<B", obj))
                    return
                if obj <= 0xffff:
                    self._op(BININT2, pack("<H", obj))
                    return
            if -0x80000000 <= obj <= 0x7fffffff:
                self._op(BININT, pack("<i", obj))
                return
        if self.proto >= 2:
            encoded = encode_long(obj)
            n = len(encoded)
            if n < 256:
                self._op(LONG1, pack("<B", n) + encoded)
            else:
                self._op(LONG4, pack("<i", n) + encoded)
            return
        if -0x80000000 <= obj <= 0x7fffffff:
            self._op(INT, repr(obj).encode("ascii") + b'\n')
        else:
            self._op(LONG, repr(obj).encode("ascii") + b'L\n')
    dispatch[Kind.INT] = save_long
    dispatch[Kind.LONG] = save_long

    def save_float(self, obj):
        if self.bin:
            self._op(BINFLOAT, pack('>d', obj))
        else:
            self._op(FLOAT, repr(obj).encode("ascii") + b'\n')
    dispatch[Kind.FLOAT] = save_float

    def _save_out_of_band(self, obj):
        if self._buffer_callback is None:
            return False
        if self._buffer_callback(memoryview(obj)):
            return False
        self._op(NEXT_BUFFER)
        if type(obj) is bytes:
            self._op(READONLY_BUFFER)
        self.memoize(obj)
        return True

    def save_bytes(self, obj):
        if self.proto < 3:
            if not obj:
                self.save_reduce(_BYTES, (), obj=obj)
            else:
                self.save_reduce(_CODECS_ENCODE, (str(obj, 'latin1'), _LATIN1), obj=obj)
            return
        if self._save_out_of_band(obj):
            return
        n = len(obj)
        if n <= 0xff:
            self._op(SHORT_BINBYTES, pack("<B", n) + obj)
        elif n > 0xffffffff:
            if self.proto < 4:
                raise ProtocolSupportError(Kind.BYTES, 4, self.proto)
            self._large(BINBYTES8, pack("<Q", n), obj)
        elif n >= self.framer._FRAME_SIZE_TARGET:
            self._large(BINBYTES, pack("<I", n), obj)
        else:
            self._op(BINBYTES, pack("<I", n) + obj)
        self.memoize(obj)
    dispatch[Kind.BYTES] = save_bytes

    def save_bytearray(self, obj):
        if self._save_out_of_band(obj):
            return
        n = len(obj)
        if n >= self.framer._FRAME_SIZE_TARGET:
            self._large(BYTEARRAY8, pack("<Q", n), obj)
        else:
            self._op(BYTEARRAY8, pack("<Q", n) + obj)
        self.memoize(obj)
    dispatch[Kind.BYTEARRAY] = save_bytearray

    def save_str(self, obj):
        if self.bin:
            encoded = obj.encode('utf-8', 'surrogatepass')
            n = len(encoded)
            if n <= 0xff and self.proto >= 4:
                self._op(SHORT_BINUNICODE, pack("<B", n) + encoded)
            elif n > 0xffffffff:
                if self.proto < 4:
                    raise ProtocolSupportError(Kind.STRING, 4, self.proto)
                self._large(BINUNICODE8, pack("<Q", n), encoded)
            elif n >= self.framer._FRAME_SIZE_TARGET:
                self._large(BINUNICODE, pack("<I", n), encoded)
            else:
                self._op(BINUNICODE, pack("<I", n) + encoded)
        else:
            tmp = obj.replace("\\", "\\u005c").replace("\0", "\\u0000").replace("\n", "\\u000a").replace("\r", "\\u000d").replace("\x1a", "\\u001a")
            self._op(UNICODE, tmp.encode('raw-unicode-escape') + b'\n')
        self.memoize(obj)
    dispatch[Kind.STRING] = save_str

    def save_tuple(self, obj):
        if not obj:
            if self.bin:
                self._op(EMPTY_TUPLE)
            else:
                self._op(MARK)
                self._op(TUPLE)
            return
        n = len(obj)
        save = self.save
        if n <= 3 and self.proto >= 2:
            for element in obj:
                save(element)
            # Saving the elements may have memoized this tuple through a
            # recursive reference; fetch that copy instead of building another.
            x = self.memo.id_of(obj)
            if x is not None:
                for _ in range(n):
                    self._op(POP)
                self.write(self.get(x))
            else:
                self._op(_tuplesize2code[n])
                self.memoize(obj)
            return
        self._op(MARK)
        for element in obj:
            save(element)
        x = self.memo.id_of(obj)
        if x is not None:
            if self.bin:
                self._op(POP_MARK)
            else:
                for _ in range(n + 1):
                    self._op(POP)
            self.write(self.get(x))
            return
        self._op(TUPLE)
        self.memoize(obj)
    dispatch[Kind.TUPLE] = save_tuple

    def save_list(self, obj):
        if self.bin:
            self._op(EMPTY_LIST)
        else:
            self._op(MARK)
            self._op(LIST)
        self.memoize(obj)
        if self.bin and len(obj) > 1:
            self._batch_list_exact(obj)
        else:
            self._batch_appends(obj)
    dispatch[Kind.LIST] = save_list

    def _batch_list_exact(self, obj):
        # A plain list is always written in MARK ... APPENDS batches,
        # including a trailing batch of one.
        save = self.save
        total = 0
        while True:
            self._op(MARK)
            for x in obj[total:total + BATCHSIZE]:
                save(x)
            total += BATCHSIZE
            self._op(APPENDS)
            if total >= len(obj):
                return

    def _batch_appends(self, items):
        save = self.save
        if not self.bin:
            for x in items:
                save(x)
                self._op(APPEND)
            return
        it = iter(items)
        while True:
            tmp = list(islice(it, BATCHSIZE))
            n = len(tmp)
            if n > 1:
                self._op(MARK)
                for x in tmp:
                    save(x)
                self._op(APPENDS)
            elif n:
                save(tmp[0])
                self._op(APPEND)
            if n < BATCHSIZE:
                return

    def save_dict(self, obj):
        if self.bin:
            self._op(EMPTY_DICT)
        else:
            self._op(MARK)
            self._op(DICT)
        self.memoize(obj)
        if not obj:
            return
        if not self.bin:
            self._batch_setitems(obj.items())
        elif len(obj) == 1:
            (k, v), = obj.items()
            self.save(k)
            self.save(v)
            self._op(SETITEM)
        else:
            self._batch_dict_exact(obj)
    dispatch[Kind.DICT] = save_dict

    def _batch_dict_exact(self, obj):
        # Batches repeat while the previous one was full, so a dict of
        # exactly BATCHSIZE items ends with an empty MARK SETITEMS.
        save = self.save
        it = iter(obj.items())
        while True:
            self._op(MARK)
            n = 0
            for k, v in islice(it, BATCHSIZE):
                save(k)
                save(v)
                n += 1
            self._op(SETITEMS)
            if n < BATCHSIZE:
                return

    def _batch_setitems(self, items):
        save = self.save
        if not self.bin:
            for k, v in items:
                save(k)
                save(v)
                self._op(SETITEM)
            return
        it = iter(items)
        while True:
            tmp = list(islice(it, BATCHSIZE))
            n = len(tmp)
            if n > 1:
                self._op(MARK)
                for k, v in tmp:
                    save(k)
                    save(v)
                self._op(SETITEMS)
            elif n:
                k, v = tmp[0]
                save(k)
                save(v)
                self._op(SETITEM)
            if n < BATCHSIZE:
                return

    def save_set(self, obj):
        self._op(EMPTY_SET)
        self.memoize(obj)
        if not obj:
            return
        it = iter(obj)
        while True:
            self._op(MARK)
            n = 0
            for item in islice(it, BATCHSIZE):
                self.save(item)
                n += 1
            self._op(ADDITEMS)
            if n < BATCHSIZE:
                return
    dispatch[Kind.SET] = save_set

    def save_frozenset(self, obj):
        self._op(MARK)
        for item in obj:
            self.save(item)
        x = self.memo.id_of(obj)
        if x is not None:
            self._op(POP_MARK)
            self.write(self.get(x))
            return
        self._op(FROZENSET)
        self.memoize(obj)
    dispatch[Kind.FROZENSET] = save_frozenset

    def save_global(self, obj):
        module_name, name = obj.module, obj.name
        if self.proto >= 4:
            self.save(module_name)
            self.save(name)
            self._op(STACK_GLOBAL)
        else:
            if self.fix_imports:
                module_name = PY3_MODULES.get(module_name, module_name)
            encoding = "utf-8" if self.proto >= 3 else "ascii"
            if "\n" in module_name or "\n" in name:
                raise PicklingError("can't pickle global %s: newline in name" % (obj,))
            try:
                self._op(GLOBAL, bytes(module_name, encoding) + b'\n' +
                         bytes(name, encoding) + b'\n')
            except UnicodeEncodeError:
                raise PicklingError("can't pickle global %s with protocol %d"
                                    % (obj, self.proto)) from None
        self.memoize(obj)
    dispatch[Kind.GLOBAL] = save_global

    def save_object(self, obj):
        key = id(obj)
        if key in self._reducing:
            raise PicklingError("can't pickle %s object: it is reachable from its own "
                                "reconstructor arguments" % (obj.callable,))
        self._reducing.add(key)
        try:
            self.save_reduce(obj.callable, obj.args, obj.state, obj.listitems,
                             obj.dictitems, obj=obj)
        finally:
            self._reducing.discard(key)
    dispatch[Kind.OBJECT] = save_object

    def save_reduce(self, func, args, state=None, listitems=None, dictitems=None, *, obj=None):
        save = self.save
        if (self.proto >= 4 and func == NEWOBJ_EX_CALL and len(args) == 3
                and type(args[1]) is tuple and type(args[2]) is dict):
            cls, cls_args, kwargs = args
            save(cls)
            save(cls_args)
            save(kwargs)
            self._op(NEWOBJ_EX)
        elif self.proto >= 2 and func == NEWOBJ_CALL and args:
            save(args[0])
            save(args[1:])
            self._op(NEWOBJ)
        else:
            save(func)
            save(args)
            self._op(REDUCE)
        if obj is not None:
            x = self.memo.id_of(obj)
            if x is not None:
                self._op(POP)
                self.write(self.get(x))
            else:
                self.memoize(obj)
        if listitems is not None:
            self._batch_appends(listitems)
        if dictitems is not None:
            self._batch_setitems(dictitems.items())
        if state is not None:
            save(state)
            self._op(BUILD)


def _dump(obj, file, protocol=None, *, fix_imports=True, buffer_callback=None, **options):
    Pickler(file, protocol, fix_imports=fix_imports, buffer_callback=buffer_callback,
            **options).dump(obj)


def _dumps(obj, protocol=None, *, fix_imports=True, buffer_callback=None, **options):
    f = io.BytesIO()
    Pickler(f, protocol, fix_imports=fix_imports, buffer_callback=buffer_callback,
            **options).dump(obj)
    return f.getvalue()


dump = _dump
dumps = _dumps
