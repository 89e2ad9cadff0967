"""Pickle wire format codec (protocols 0-5) over a plain value graph.

Decoding never imports modules or calls reconstructors: classes come back as
:class:`Global` and reconstructed instances as :class:`Object`.
"""

from .errors import (
    DepthError, EncoderInvariantError, MalformedError, MemoError, MissingMarkError,
    PickleError, PicklingError, ProtocolSupportError, StackSizeError,
    StackUnderflowError, TextDecodingError, TruncatedError, UnhashableError,
    UnpicklingError, UnsupportedOpcodeError,
)
from .memo import MemoTable
from .opcodes import DEFAULT_MAX_DEPTH, DEFAULT_PROTOCOL, HIGHEST_PROTOCOL, opcodes_for
from .pickler import BATCHSIZE, Pickler, dump, dumps
from .unpickler import DEFAULT_MAX_STACK, Unpickler, load, loads
from .value import (
    NEWOBJ, NEWOBJ_EX, RECONSTRUCTOR, RECONSTRUCTORS, Global, Kind, Object, StateView,
    kind_of,
)

__all__ = [
    "PickleError", "PicklingError", "UnpicklingError", "ProtocolSupportError",
    "EncoderInvariantError", "TruncatedError", "MalformedError",
    "UnsupportedOpcodeError", "StackUnderflowError", "MissingMarkError", "MemoError",
    "TextDecodingError", "UnhashableError", "DepthError", "StackSizeError",
    "Pickler", "Unpickler", "dump", "dumps", "load", "loads",
    "Global", "Object", "StateView", "Kind", "kind_of", "MemoTable", "opcodes_for",
    "NEWOBJ", "NEWOBJ_EX", "RECONSTRUCTOR", "RECONSTRUCTORS",
    "HIGHEST_PROTOCOL", "DEFAULT_PROTOCOL", "DEFAULT_MAX_DEPTH", "DEFAULT_MAX_STACK",
    "BATCHSIZE",
]
