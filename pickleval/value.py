"""The value graph that decoding produces and encoding consumes.

Plain data is represented by the matching Python builtins: ``None``, ``bool``,
``int``, ``float``, ``bytes``, ``str``, ``bytearray``, ``list``, ``tuple``,
``set``, ``frozenset`` and ``dict``.  Python objects already are shared
handles, so aliasing and cycles need no extra wrapper: two positions holding
the same ``list`` hold the same instance, and ``is`` tells identity apart from
``==``.

Two classes cover what has no builtin shape:

* :class:`Global` names a class or callable by module and qualified name.  It
  is never imported.
* :class:`Object` is what a reconstructor call (REDUCE, NEWOBJ, INST, ...)
  would have produced: the callable, its arguments and the state later applied
  with BUILD.  Nothing is ever called.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
import reprlib

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1


class Kind(Enum):
    NONE = "none"
    BOOL = "bool"
    INT = "int"
    LONG = "long"
    FLOAT = "float"
    BYTES = "bytes"
    STRING = "string"
    BYTEARRAY = "bytearray"
    LIST = "list"
    TUPLE = "tuple"
    SET = "set"
    FROZENSET = "frozenset"
    DICT = "dict"
    GLOBAL = "global"
    OBJECT = "object"

    @property
    def min_protocol(self):
        return _MIN_PROTOCOL.get(self, 0)

    @property
    def shared(self):
        """True for the mutable container kinds that may alias or form cycles."""
        return self in _SHARED


_MIN_PROTOCOL = {Kind.SET: 4, Kind.FROZENSET: 4, Kind.BYTEARRAY: 5}
_SHARED = frozenset({Kind.LIST, Kind.DICT, Kind.SET, Kind.BYTEARRAY, Kind.OBJECT})


@dataclass(frozen=True)
class Global:
    """Reference to a named type or callable: ``module`` and qualified ``name``."""
    module: str
    name: str

    def __str__(self):
        return "%s.%s" % (self.module, self.name)


NEWOBJ = Global("copyreg", "__newobj__")
NEWOBJ_EX = Global("copyreg", "__newobj_ex__")
RECONSTRUCTOR = Global("copyreg", "_reconstructor")

# Reconstructor callables whose dict state makes an Object readable as a mapping.
RECONSTRUCTORS = frozenset({RECONSTRUCTOR, Global("copy_reg", "_reconstructor")})

# Python 2 module names still written by protocols 0-2 (fix_imports).
PY2_MODULES = {"__builtin__": "builtins", "copy_reg": "copyreg"}
PY3_MODULES = {v: k for k, v in PY2_MODULES.items()}


class Object:
    """Result of applying a reconstructor: ``callable(*args)`` then BUILD ``state``.

    ``listitems`` and ``dictitems`` hold what APPEND(S) and SETITEM(S) added to
    the reconstructed instance (list and dict subclasses are pickled that way).

    When ``callable`` is one of ``reconstructors`` and ``state`` is a dict the
    object can be read like that dict: ``obj["a"]``, ``"a" in obj``,
    ``list(obj)``.  Encoding always writes the object form.
    """

    __slots__ = ("callable", "args", "state", "listitems", "dictitems",
                 "reconstructors", "__weakref__")

    def __init__(self, callable, args=(), state=None, listitems=None, dictitems=None,
                 *, reconstructors=RECONSTRUCTORS):
        if not isinstance(args, tuple):
            raise TypeError("Object args must be a tuple, not %s" % type(args).__name__)
        self.callable = callable
        self.args = args
        self.state = state
        self.listitems = listitems
        self.dictitems = dictitems
        self.reconstructors = reconstructors

    def build(self, state):
        """Apply a BUILD: merge dict state into dict state, otherwise replace."""
        if isinstance(self.state, dict) and isinstance(state, dict):
            self.state.update(state)
        else:
            self.state = state

    def __eq__(self, other):
        if not isinstance(other, Object):
            return NotImplemented
        return (self.callable, self.args, self.state, self.listitems, self.dictitems) == \
            (other.callable, other.args, other.state, other.listitems, other.dictitems)

    def __hash__(self):
        return hash(self.callable)

    @reprlib.recursive_repr()
    def __repr__(self):
        parts = [repr(self.callable), repr(self.args)]
        if self.state is not None:
            parts.append("state=%r" % (self.state,))
        if self.listitems is not None:
            parts.append("listitems=%r" % (self.listitems,))
        if self.dictitems is not None:
            parts.append("dictitems=%r" % (self.dictitems,))
        return "Object(%s)" % ", ".join(parts)

    # mapping overlay

    @property
    def is_mapping(self):
        return self.callable in self.reconstructors and isinstance(self.state, dict)

    def as_mapping(self):
        """Return a read-only view of the state dict, or None if not mapping-capable."""
        if self.is_mapping:
            return StateView(self.state)
        return None

    def _mapping(self):
        if not self.is_mapping:
            raise TypeError("%s object is not readable as a mapping" % (self.callable,))
        return self.state

    def __bool__(self):
        return True

    def __getitem__(self, key):
        return self._mapping()[key]

    def __contains__(self, key):
        return key in self._mapping()

    def __iter__(self):
        return iter(self._mapping())

    def __len__(self):
        return len(self._mapping())

    def keys(self):
        return self._mapping().keys()

    def values(self):
        return self._mapping().values()

    def items(self):
        return self._mapping().items()

    def get(self, key, default=None):
        return self._mapping().get(key, default)


class StateView(Mapping):
    __slots__ = ("_state",)

    def __init__(self, state):
        self._state = state

    def __getitem__(self, key):
        return self._state[key]

    def __iter__(self):
        return iter(self._state)

    def __len__(self):
        return len(self._state)

    def __repr__(self):
        return "StateView(%r)" % (self._state,)


_KINDS = {
    type(None): Kind.NONE,
    bool: Kind.BOOL,
    float: Kind.FLOAT,
    bytes: Kind.BYTES,
    str: Kind.STRING,
    bytearray: Kind.BYTEARRAY,
    list: Kind.LIST,
    tuple: Kind.TUPLE,
    set: Kind.SET,
    frozenset: Kind.FROZENSET,
    dict: Kind.DICT,
    Global: Kind.GLOBAL,
    Object: Kind.OBJECT,
}


def kind_of(value):
    """Return the :class:`Kind` of *value*; ``TypeError`` if it is not a pickle value.

    Only exact builtin types qualify.  Subclasses (``OrderedDict``, ``IntEnum``
    members, ...) have to be described with :class:`Object` instead.
    """
    t = type(value)
    if t is int:
        return Kind.INT if INT64_MIN <= value <= INT64_MAX else Kind.LONG
    kind = _KINDS.get(t)
    if kind is None:
        raise TypeError("not a pickle value: %s" % t.__name__)
    return kind


def children(value):
    """Direct child values of *value*, in the order the encoder writes them."""
    t = type(value)
    if t is list or t is tuple:
        return value
    if t is dict:
        return [x for item in value.items() for x in item]
    if t is set or t is frozenset:
        return value
    if t is Object:
        out = [value.callable, value.args]
        if value.listitems is not None:
            out.extend(value.listitems)
        if value.dictitems is not None:
            for item in value.dictitems.items():
                out.extend(item)
        if value.state is not None:
            out.append(value.state)
        return out
    return ()
