"""Opcode table for pickle protocols 0 through 5.

Both directions consult the same rows: the decoder to read operands and to
refuse opcodes the stream has not negotiated, the encoder to make sure it
never writes an opcode its target protocol lacks.
"""

from dataclasses import dataclass
from enum import Enum

HIGHEST_PROTOCOL = 5
DEFAULT_PROTOCOL = 4

# Nesting limit shared by both directions.
DEFAULT_MAX_DEPTH = 200

# Pickle opcodes
MARK           = b'('
STOP           = b'.'
POP            = b'0'
POP_MARK       = b'1'
DUP            = b'2'
FLOAT          = b'F'
INT            = b'I'
BININT         = b'J'
BININT1        = b'K'
LONG           = b'L'
BININT2        = b'M'
NONE           = b'N'
PERSID         = b'P'
BINPERSID      = b'Q'
REDUCE         = b'R'
STRING         = b'S'
BINSTRING      = b'T'
SHORT_BINSTRING= b'U'
UNICODE        = b'V'
BINUNICODE     = b'X'
APPEND         = b'a'
BUILD          = b'b'
GLOBAL         = b'c'
DICT           = b'd'
EMPTY_DICT     = b'}'
APPENDS        = b'e'
GET            = b'g'
BINGET         = b'h'
INST           = b'i'
LONG_BINGET    = b'j'
LIST           = b'l'
EMPTY_LIST     = b']'
OBJ            = b'o'
PUT            = b'p'
BINPUT         = b'q'
LONG_BINPUT    = b'r'
SETITEM        = b's'
TUPLE          = b't'
EMPTY_TUPLE    = b')'
SETITEMS       = b'u'
BINFLOAT       = b'G'
TRUE           = b'I01\n'  # not an opcode; INT with a magic argument
FALSE          = b'I00\n'

# Protocol 2
PROTO          = b'\x80'
NEWOBJ         = b'\x81'
EXT1           = b'\x82'
EXT2           = b'\x83'
EXT4           = b'\x84'
TUPLE1         = b'\x85'
TUPLE2         = b'\x86'
TUPLE3         = b'\x87'
NEWTRUE        = b'\x88'
NEWFALSE       = b'\x89'
LONG1          = b'\x8a'
LONG4          = b'\x8b'

# Protocol 3
BINBYTES       = b'B'
SHORT_BINBYTES = b'C'

# Protocol 4
SHORT_BINUNICODE = b'\x8c'
BINUNICODE8      = b'\x8d'
BINBYTES8        = b'\x8e'
EMPTY_SET        = b'\x8f'
ADDITEMS         = b'\x90'
FROZENSET        = b'\x91'
NEWOBJ_EX        = b'\x92'
STACK_GLOBAL     = b'\x93'
MEMOIZE          = b'\x94'
FRAME            = b'\x95'

# Protocol 5
BYTEARRAY8       = b'\x96'
NEXT_BUFFER      = b'\x97'
READONLY_BUFFER  = b'\x98'


class ArgKind(Enum):
    NONE = "none"
    UINT1 = "uint1"
    UINT2 = "uint2"
    INT4 = "int4"
    UINT4 = "uint4"
    UINT8 = "uint8"
    DECIMALNL = "decimalnl"            # text line holding an int
    FLOATNL = "floatnl"
    STRINGNL = "stringnl"              # quoted repr-style line
    UNICODESTRINGNL = "unicodestringnl"  # raw-unicode-escape line
    NAMENL_PAIR = "namenl_pair"        # module line + name line
    BYTES1 = "bytes1"                  # u1 length prefix
    BYTES4 = "bytes4"                  # u4 length prefix
    BYTES8 = "bytes8"                  # u8 length prefix
    STRING4 = "string4"                # signed int4 length prefix
    LONG1 = "long1"
    LONG4 = "long4"
    FLOAT8 = "float8"


class Effect(Enum):
    PUSH = "push"
    MEMO_GET = "memo_get"
    MEMO_PUT = "memo_put"
    BUILD = "build"                    # pop items, push a new value
    MUTATE = "mutate"                  # change the value on top of the stack
    DISCARD = "discard"
    CONTROL = "control"


@dataclass(frozen=True)
class OpcodeInfo:
    name: str
    code: bytes
    arg: ArgKind
    effect: Effect
    proto: int


def _op(name, code, arg, effect, proto):
    return OpcodeInfo(name, code, arg, effect, proto)


A, E = ArgKind, Effect

OPCODES = [
    # protocol 0
    _op("MARK", MARK, A.NONE, E.CONTROL, 0),
    _op("STOP", STOP, A.NONE, E.CONTROL, 0),
    _op("POP", POP, A.NONE, E.DISCARD, 0),
    _op("DUP", DUP, A.NONE, E.PUSH, 0),
    _op("FLOAT", FLOAT, A.FLOATNL, E.PUSH, 0),
    _op("INT", INT, A.DECIMALNL, E.PUSH, 0),
    _op("LONG", LONG, A.DECIMALNL, E.PUSH, 0),
    _op("NONE", NONE, A.NONE, E.PUSH, 0),
    _op("PERSID", PERSID, A.DECIMALNL, E.PUSH, 0),
    _op("REDUCE", REDUCE, A.NONE, E.BUILD, 0),
    _op("STRING", STRING, A.STRINGNL, E.PUSH, 0),
    _op("UNICODE", UNICODE, A.UNICODESTRINGNL, E.PUSH, 0),
    _op("APPEND", APPEND, A.NONE, E.MUTATE, 0),
    _op("BUILD", BUILD, A.NONE, E.MUTATE, 0),
    _op("GLOBAL", GLOBAL, A.NAMENL_PAIR, E.PUSH, 0),
    _op("DICT", DICT, A.NONE, E.BUILD, 0),
    _op("GET", GET, A.DECIMALNL, E.MEMO_GET, 0),
    _op("INST", INST, A.NAMENL_PAIR, E.BUILD, 0),
    _op("LIST", LIST, A.NONE, E.BUILD, 0),
    _op("PUT", PUT, A.DECIMALNL, E.MEMO_PUT, 0),
    _op("SETITEM", SETITEM, A.NONE, E.MUTATE, 0),
    _op("TUPLE", TUPLE, A.NONE, E.BUILD, 0),
    # protocol 1
    _op("BININT", BININT, A.INT4, E.PUSH, 1),
    _op("POP_MARK", POP_MARK, A.NONE, E.DISCARD, 1),
    _op("BININT1", BININT1, A.UINT1, E.PUSH, 1),
    _op("BININT2", BININT2, A.UINT2, E.PUSH, 1),
    _op("BINPERSID", BINPERSID, A.NONE, E.BUILD, 1),
    _op("BINSTRING", BINSTRING, A.STRING4, E.PUSH, 1),
    _op("SHORT_BINSTRING", SHORT_BINSTRING, A.BYTES1, E.PUSH, 1),
    _op("BINUNICODE", BINUNICODE, A.BYTES4, E.PUSH, 1),
    _op("EMPTY_DICT", EMPTY_DICT, A.NONE, E.PUSH, 1),
    _op("APPENDS", APPENDS, A.NONE, E.MUTATE, 1),
    _op("BINGET", BINGET, A.UINT1, E.MEMO_GET, 1),
    _op("LONG_BINGET", LONG_BINGET, A.UINT4, E.MEMO_GET, 1),
    _op("EMPTY_LIST", EMPTY_LIST, A.NONE, E.PUSH, 1),
    _op("OBJ", OBJ, A.NONE, E.BUILD, 1),
    _op("BINPUT", BINPUT, A.UINT1, E.MEMO_PUT, 1),
    _op("LONG_BINPUT", LONG_BINPUT, A.UINT4, E.MEMO_PUT, 1),
    _op("EMPTY_TUPLE", EMPTY_TUPLE, A.NONE, E.PUSH, 1),
    _op("SETITEMS", SETITEMS, A.NONE, E.MUTATE, 1),
    _op("BINFLOAT", BINFLOAT, A.FLOAT8, E.PUSH, 1),
    # protocol 2
    _op("PROTO", PROTO, A.UINT1, E.CONTROL, 2),
    _op("NEWOBJ", NEWOBJ, A.NONE, E.BUILD, 2),
    _op("EXT1", EXT1, A.UINT1, E.PUSH, 2),
    _op("EXT2", EXT2, A.UINT2, E.PUSH, 2),
    _op("EXT4", EXT4, A.INT4, E.PUSH, 2),
    _op("TUPLE1", TUPLE1, A.NONE, E.BUILD, 2),
    _op("TUPLE2", TUPLE2, A.NONE, E.BUILD, 2),
    _op("TUPLE3", TUPLE3, A.NONE, E.BUILD, 2),
    _op("NEWTRUE", NEWTRUE, A.NONE, E.PUSH, 2),
    _op("NEWFALSE", NEWFALSE, A.NONE, E.PUSH, 2),
    _op("LONG1", LONG1, A.LONG1, E.PUSH, 2),
    _op("LONG4", LONG4, A.LONG4, E.PUSH, 2),
    # protocol 3
    _op("BINBYTES", BINBYTES, A.BYTES4, E.PUSH, 3),
    _op("SHORT_BINBYTES", SHORT_BINBYTES, A.BYTES1, E.PUSH, 3),
    # protocol 4
    _op("SHORT_BINUNICODE", SHORT_BINUNICODE, A.BYTES1, E.PUSH, 4),
    _op("BINUNICODE8", BINUNICODE8, A.BYTES8, E.PUSH, 4),
    _op("BINBYTES8", BINBYTES8, A.BYTES8, E.PUSH, 4),
    _op("EMPTY_SET", EMPTY_SET, A.NONE, E.PUSH, 4),
    _op("ADDITEMS", ADDITEMS, A.NONE, E.MUTATE, 4),
    _op("FROZENSET", FROZENSET, A.NONE, E.BUILD, 4),
    _op("NEWOBJ_EX", NEWOBJ_EX, A.NONE, E.BUILD, 4),
    _op("STACK_GLOBAL", STACK_GLOBAL, A.NONE, E.BUILD, 4),
    _op("MEMOIZE", MEMOIZE, A.NONE, E.MEMO_PUT, 4),
    _op("FRAME", FRAME, A.UINT8, E.CONTROL, 4),
    # protocol 5
    _op("BYTEARRAY8", BYTEARRAY8, A.BYTES8, E.PUSH, 5),
    _op("NEXT_BUFFER", NEXT_BUFFER, A.NONE, E.PUSH, 5),
    _op("READONLY_BUFFER", READONLY_BUFFER, A.NONE, E.MUTATE, 5),
]

del A, E

BY_CODE = {info.code: info for info in OPCODES}
BY_NAME = {info.name: info for info in OPCODES}

_by_protocol = {}


def opcodes_for(proto):
    """Return ``{code: OpcodeInfo}`` for every opcode defined at or below *proto*."""
    if not 0 <= proto <= HIGHEST_PROTOCOL:
        raise ValueError("pickle protocol must be <= %d" % HIGHEST_PROTOCOL)
    table = _by_protocol.get(proto)
    if table is None:
        table = {info.code: info for info in OPCODES if info.proto <= proto}
        _by_protocol[proto] = table
    return table


def encode_long(x):
    if x == 0:
        return b''
    nbytes = (x.bit_length() >> 3) + 1
    result = x.to_bytes(nbytes, byteorder='little', signed=True)
    if x < 0 and nbytes > 1:
        if result[-1] == 0xff and (result[-2] & 0x80) != 0:
            result = result[:-1]
    return result


def decode_long(data):
    return int.from_bytes(data, byteorder='little', signed=True)
