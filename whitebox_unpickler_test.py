import datetime
import io
import pickle
from collections import OrderedDict

import pytest

import pickleval
from pickleval import (
    DepthError, Global, MalformedError, MemoError, MissingMarkError, Object,
    StackSizeError, StackUnderflowError, TextDecodingError, TruncatedError,
    UnhashableError, Unpickler, UnpicklingError, UnsupportedOpcodeError,
)

PROTOCOLS = range(pickle.HIGHEST_PROTOCOL + 1)


class Point:
    def __init__(self, x):
        self.x = x


class KwPoint:
    def __new__(cls, *, x):
        self = super().__new__(cls)
        self.x = x
        return self

    def __getnewargs_ex__(self):
        return (), {"x": self.x}


def from_stdlib(obj, protocol):
    return pickleval.loads(pickle.dumps(obj, protocol=protocol))


@pytest.mark.parametrize("protocol", PROTOCOLS)
def test_plain_data(protocol):
    cases = [
        None, True, False, 0, 1, -1, 255, 65536, 2**31, -2**63, 2**64, -2**200,
        0.0, 1.5, float('inf'), "", "abc", "你好", "a\\b\nc\r\x00\x1a", "\ud800",
        b"", b"abc", bytes(range(256)),
        [], [1, [2, 3]], (), (1,), (1, 2, 3, 4), {}, {"a": 1, 2: [3]},
        {"x": {"y": {"z": (1, "2", 3.0)}}},
    ]
    for obj in cases:
        value = from_stdlib(obj, protocol)
        assert value == obj
        assert type(value) is type(obj)


@pytest.mark.parametrize("protocol", PROTOCOLS)
def test_sets_fold_at_every_protocol(protocol):
    for obj in [set(), {1, 2, 3}, frozenset(), frozenset({"a", "b"})]:
        value = from_stdlib(obj, protocol)
        assert value == obj
        assert type(value) is type(obj)


@pytest.mark.parametrize("protocol", PROTOCOLS)
def test_bytearray_folds(protocol):
    value = from_stdlib(bytearray(b"ab\x00\xff"), protocol)
    assert value == bytearray(b"ab\x00\xff")
    assert type(value) is bytearray


def test_nan():
    for protocol in PROTOCOLS:
        value = from_stdlib(float('nan'), protocol)
        assert value != value


@pytest.mark.parametrize("protocol", PROTOCOLS)
def test_aliasing(protocol):
    a = []
    value = from_stdlib([a, a], protocol)
    assert value[0] is value[1]
    value[0].append(1)
    assert value[1] == [1]


@pytest.mark.parametrize("protocol", PROTOCOLS)
def test_cycles(protocol):
    lst = []
    lst.append(lst)
    value = from_stdlib(lst, protocol)
    assert len(value) == 1
    assert value[0] is value

    a = [1, 2]
    b = [3, 4]
    a.append(b)
    b.append(a)
    a2, b2 = from_stdlib((a, b), protocol)
    assert a2[2] is b2
    assert b2[2] is a2

    d = {}
    d["self"] = d
    value = from_stdlib(d, protocol)
    assert value["self"] is value


@pytest.mark.parametrize("protocol", PROTOCOLS)
def test_recursive_tuple(protocol):
    lst = []
    t = (lst, 1)
    lst.append(t)
    value = from_stdlib(t, protocol)
    assert value[0][0] is value


@pytest.mark.parametrize("protocol", PROTOCOLS)
def test_globals_are_not_imported(protocol):
    assert from_stdlib(len, protocol) == Global("builtins", "len")
    assert from_stdlib(OrderedDict, protocol) == Global("collections", "OrderedDict")


def test_fix_imports():
    data = b"c__builtin__\nlen\n."
    assert pickleval.loads(data) == Global("builtins", "len")
    assert pickleval.loads(data, fix_imports=False) == Global("__builtin__", "len")
    assert pickleval.loads(b"\x80\x03c__builtin__\nlen\n.") == Global("__builtin__", "len")


def test_reduce_is_not_executed():
    value = pickleval.loads(b"cos\nsystem\n(S'echo hi'\ntR.")
    assert value == Object(Global("os", "system"), ("echo hi",))


@pytest.mark.parametrize("protocol", PROTOCOLS)
def test_reduce(protocol):
    value = from_stdlib(datetime.date(2020, 1, 2), protocol)
    assert value == Object(Global("datetime", "date"), (b"\x07\xe4\x01\x02",))


@pytest.mark.parametrize("protocol", [2, 3, 4, 5])
def test_newobj(protocol):
    value = from_stdlib(Point(1), protocol)
    assert value == Object(pickleval.NEWOBJ, (Global(__name__, "Point"),), state={"x": 1})


@pytest.mark.parametrize("protocol", [0, 1])
def test_reconstructor_mapping(protocol):
    value = from_stdlib(Point(1), protocol)
    assert type(value) is Object
    assert value.callable == pickleval.RECONSTRUCTOR
    assert value.args[0] == Global(__name__, "Point")
    assert value["x"] == 1
    assert "x" in value
    assert list(value) == ["x"]


def test_reconstructor_allow_list():
    data = pickle.dumps(Point(1), protocol=0)
    value = pickleval.loads(data, reconstructors=())
    assert not value.is_mapping
    with pytest.raises(TypeError):
        value["x"]


def test_newobj_ex():
    value = from_stdlib(KwPoint(x=3), 4)
    assert value.callable == pickleval.NEWOBJ_EX
    assert value.args == (Global(__name__, "KwPoint"), (), {"x": 3})


def test_object_items():
    value = from_stdlib(OrderedDict([("a", 1), ("b", 2)]), 2)
    assert value.callable == Global("collections", "OrderedDict")
    assert value.dictitems == {"a": 1, "b": 2}


def test_python2_strings():
    assert pickleval.loads(b"S'abc'\np0\n.") == "abc"
    assert pickleval.loads(b"S'abc'\n.", encoding="bytes") == b"abc"
    assert pickleval.loads(b"S'\\xe9'\n.", encoding="latin1") == "\xe9"
    assert pickleval.loads(b"T\x03\x00\x00\x00abc.") == "abc"
    assert pickleval.loads(b"U\x03abc.", encoding="bytes") == b"abc"
    with pytest.raises(TextDecodingError):
        pickleval.loads(b"S'\\xe9'\n.")


def test_unquoted_string():
    with pytest.raises(MalformedError):
        pickleval.loads(b"Sabc\n.")


def test_negative_binstring_length():
    with pytest.raises(MalformedError):
        pickleval.loads(b"T\xff\xff\xff\xffabc.")


def test_text_strictness():
    data = b"\x80\x02X\x01\x00\x00\x00\xff."
    with pytest.raises(TextDecodingError):
        pickleval.loads(data)
    assert pickleval.loads(data, errors="replace") == "\ufffd"


def test_int_opcodes():
    assert pickleval.loads(b"I01\n.") is True
    assert pickleval.loads(b"I00\n.") is False
    assert pickleval.loads(b"I42\n.") == 42
    assert pickleval.loads(b"L123L\n.") == 123
    assert pickleval.loads(b"\x80\x02\x8a\x00.") == 0
    with pytest.raises(MalformedError):
        pickleval.loads(b"Ifoo\n.")


def test_missing_memo_id():
    with pytest.raises(MemoError) as info:
        pickleval.loads(b"\x80\x02h\x05.")
    assert "missing memo id 5" in str(info.value)
    assert info.value.offset == 2
    with pytest.raises(MemoError):
        pickleval.loads(b"g7\n.")


def test_negative_put():
    with pytest.raises(MalformedError):
        pickleval.loads(b"Np-1\n.")


def test_opcode_beyond_protocol():
    with pytest.raises(UnsupportedOpcodeError):
        pickleval.loads(b"\x8f.")
    with pytest.raises(UnsupportedOpcodeError):
        pickleval.loads(b"\x80\x02\x8f.")
    assert pickleval.loads(b"\x80\x04\x8f.") == set()


def test_unknown_opcode():
    with pytest.raises(UnsupportedOpcodeError):
        pickleval.loads(b"\xff.")


def test_unsupported_protocol():
    with pytest.raises(MalformedError):
        pickleval.loads(b"\x80\x06N.")


def test_refused_opcodes():
    with pytest.raises(UnsupportedOpcodeError):
        pickleval.loads(b"Pfoo\n.")
    with pytest.raises(UnsupportedOpcodeError):
        pickleval.loads(b"\x80\x02\x82\x01.")


def test_truncated():
    for data in [b"", b"\x80\x02K", b"\x80\x02N", b"\x80\x02X\x05\x00\x00\x00ab", b"I12"]:
        with pytest.raises(TruncatedError):
            pickleval.loads(data)
    with pytest.raises(EOFError):
        pickleval.loads(b"")


def test_stack_underflow():
    with pytest.raises(StackUnderflowError):
        pickleval.loads(b".")
    with pytest.raises(StackUnderflowError):
        pickleval.loads(b"a.")
    with pytest.raises(StackUnderflowError):
        pickleval.loads(b"\x80\x02N(\x85.")


def test_missing_mark():
    with pytest.raises(MissingMarkError):
        pickleval.loads(b"\x80\x02Nt.")
    with pytest.raises(MissingMarkError):
        pickleval.loads(b"\x80\x021.")


def test_open_mark_at_stop():
    with pytest.raises(MalformedError):
        pickleval.loads(b"\x80\x02N(.")


def test_pop_mark_and_pop():
    assert pickleval.loads(b"\x80\x02N(K\x01K\x021.") is None
    # POP with nothing above the mark discards the mark
    assert pickleval.loads(b"\x80\x02N(0.") is None


def test_unhashable_key():
    with pytest.raises(UnhashableError):
        pickleval.loads(b"\x80\x02}]Ns.")
    with pytest.raises(UnhashableError):
        pickleval.loads(b"\x80\x04(]\x91.")


def test_odd_setitems():
    with pytest.raises(MalformedError):
        pickleval.loads(b"\x80\x02}(Nu.")


def test_bad_targets():
    with pytest.raises(MalformedError):
        pickleval.loads(b"\x80\x02]}b.")
    with pytest.raises(MalformedError):
        pickleval.loads(b"\x80\x02NNa.")
    with pytest.raises(MalformedError):
        pickleval.loads(b"\x80\x02K\x01)R.")
    with pytest.raises(MalformedError):
        pickleval.loads(b"\x80\x02cm\nf\nNR.")


def test_depth_guard():
    x = []
    for _ in range(500):
        x = [x]
    data = pickle.dumps(x, protocol=2)
    with pytest.raises(DepthError):
        pickleval.loads(data)
    assert pickleval.loads(data, max_depth=600) == x


def test_mark_depth_guard():
    with pytest.raises(DepthError):
        pickleval.loads(b"(" * 300 + b"l" * 300 + b".")
    expected = []
    for _ in range(19):
        expected = [expected]
    assert pickleval.loads(b"(" * 20 + b"l" * 20 + b".") == expected


def test_depth_counts_empty_containers():
    x = []
    for _ in range(199):
        x = [x]
    assert pickleval.loads(pickleval.dumps(x, protocol=2)) == x
    x = [x]
    with pytest.raises(pickleval.PicklingError):
        pickleval.dumps(x, protocol=2)
    with pytest.raises(DepthError):
        pickleval.loads(pickle.dumps(x, protocol=2))


def test_deep_tuple_key():
    data = b"\x80\x02}N" + b"\x85" * 100000 + b"Ns."
    with pytest.raises(DepthError) as info:
        pickleval.loads(data)
    # the 201st TUPLE1 is refused before anything is hashed
    assert info.value.offset == 204
    value = pickleval.loads(b"\x80\x02}N" + b"\x85" * 150 + b"Ns.")
    assert len(value) == 1


def test_deep_tuple_set_items():
    deep = b"N" + b"\x85" * 100000
    with pytest.raises(DepthError):
        pickleval.loads(b"\x80\x04\x8f(" + deep + b"\x90.")
    with pytest.raises(DepthError):
        pickleval.loads(b"\x80\x04(" + deep + b"\x91.")


def test_deep_object_key():
    data = b"\x80\x02}cm\nf\n" + b")R" * 5000 + b"Ns."
    with pytest.raises(DepthError):
        pickleval.loads(data)
    value = pickleval.loads(b"\x80\x02}cm\nf\n" + b")R" * 50 + b"Ns.")
    key, = value
    assert isinstance(key, Object)


def test_stack_limit():
    with pytest.raises(StackSizeError):
        pickleval.loads(b"\x80\x02" + b"N" * 20 + b".", max_stack=10)


def test_frames():
    obj = ["x" * 70000, b"y" * 70000, list(range(20000)), {"k": "v" * 100}]
    assert from_stdlib(obj, 4) == obj
    assert from_stdlib(obj, 5) == obj


def test_frame_inside_frame():
    data = (b"\x80\x04\x95\x0a\x00\x00\x00\x00\x00\x00\x00"
            b"\x95\x01\x00\x00\x00\x00\x00\x00\x00N.")
    with pytest.raises(MalformedError):
        pickleval.loads(data)


def test_truncated_frame():
    with pytest.raises(TruncatedError):
        pickleval.loads(b"\x80\x04\x95\x10\x00\x00\x00\x00\x00\x00\x00N.")


def test_out_of_band_buffers():
    buffers = []
    data = pickle.dumps(pickle.PickleBuffer(b"abc"), protocol=5,
                        buffer_callback=buffers.append)
    assert pickleval.loads(data, buffers=buffers) == b"abc"
    buffers = []
    data = pickle.dumps(pickle.PickleBuffer(bytearray(b"abc")), protocol=5,
                        buffer_callback=buffers.append)
    assert pickleval.loads(data, buffers=buffers) == bytearray(b"abc")
    with pytest.raises(MalformedError):
        pickleval.loads(data)
    with pytest.raises(MalformedError):
        pickleval.loads(data, buffers=[])


def test_memoize_all():
    data = pickleval.dumps([[1], {"a": 2}], protocol=2, memoize_all=False)
    unpickler = Unpickler(io.BytesIO(data), memoize_all=True)
    value = unpickler.load()
    assert unpickler.memo.id_of(value) is not None
    assert unpickler.memo.id_of(value[0]) is not None
    assert unpickler.memo.id_of(value[1]) is not None
    assert len(unpickler.memo) == 0

    unpickler = Unpickler(io.BytesIO(data))
    value = unpickler.load()
    assert unpickler.memo.id_of(value[0]) is None


def test_memoize_all_readonly_buffer():
    unpickler = Unpickler(io.BytesIO(b"\x80\x05\x97\x98."), buffers=[bytearray(b"abc")],
                          memoize_all=True)
    value = unpickler.load()
    assert value == b"abc"
    assert type(value) is bytes
    assert unpickler.memo.id_of(value) is not None


def test_memo_cleared_on_error():
    unpickler = Unpickler(io.BytesIO(b"\x80\x02]q\x00h\x05."))
    with pytest.raises(MemoError):
        unpickler.load()
    assert len(unpickler.memo) == 0


def test_several_pickles_in_one_file():
    f = io.BytesIO()
    pickle.dump([1], f, protocol=2)
    pickle.dump("two", f, protocol=0)
    f.seek(0)
    unpickler = Unpickler(f)
    assert unpickler.load() == [1]
    assert unpickler.load() == "two"


def test_offset_on_errors():
    with pytest.raises(UnpicklingError) as info:
        pickleval.loads(b"\x80\x02N\xff")
    assert info.value.offset == 3
    assert "at offset 3" in str(info.value)


def test_invalid_file():
    with pytest.raises(TypeError):
        Unpickler(object())


def test_str_input():
    with pytest.raises(TypeError):
        pickleval.loads("N.")


def test_unknown_encoding():
    with pytest.raises(LookupError):
        Unpickler(io.BytesIO(b"N."), encoding="no-such-codec")
