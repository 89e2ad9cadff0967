from .value import Global


def identity(value):
    """Memo key for *value*: globals by name, everything else by object identity."""
    if type(value) is Global:
        return value
    return id(value)


class MemoTable:
    """Bidirectional memo id <-> value association.

    The decoder fills it from PUT/BINPUT/MEMOIZE and reads it back on GET.  The
    encoder assigns ids itself with :meth:`memoize` and looks values up by
    identity with :meth:`id_of`.  Stored values are kept alive, so the
    ``id()`` of a memoized value cannot be reused while the table exists.
    """

    def __init__(self):
        self._values = {}
        self._ids = {}
        self._size = 0
        self._tracked = 0

    def put(self, idx, value):
        if idx < 0:
            raise ValueError("negative memo id %d" % idx)
        if idx in self._values:
            old = identity(self._values[idx])
            if self._ids.get(old) == idx:
                del self._ids[old]
        else:
            self._size += 1
        self._values[idx] = value
        self._ids[identity(value)] = idx

    def get(self, idx):
        return self._values[idx]

    def memoize(self, value):
        """Register *value* under the next free id and return that id."""
        idx = self._size
        self.put(idx, value)
        return idx

    def track(self, value):
        """Index *value* by identity under a negative id no stream can name."""
        key = identity(value)
        if key in self._ids:
            return self._ids[key]
        self._tracked += 1
        idx = -self._tracked
        self._values[idx] = value
        self._ids[key] = idx
        return idx

    def untrack(self, value):
        """Drop *value* from the identity index if it is only tracked."""
        key = identity(value)
        idx = self._ids.get(key)
        if idx is not None and idx < 0:
            del self._ids[key]
            del self._values[idx]

    def id_of(self, value):
        return self._ids.get(identity(value))

    def clear(self):
        self._values.clear()
        self._ids.clear()
        self._size = 0
        self._tracked = 0

    def __contains__(self, idx):
        return idx in self._values

    def __len__(self):
        return self._size

    def __repr__(self):
        return "<MemoTable %d entries>" % self._size
