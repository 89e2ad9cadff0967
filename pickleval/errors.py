class PickleError(Exception): pass
class PicklingError(PickleError): pass


class ProtocolSupportError(PicklingError):
    """A value kind cannot be written at the requested protocol."""

    def __init__(self, kind, required, protocol):
        super().__init__("cannot pickle %s value at protocol %d: requires protocol %d or higher"
                         % (kind.value, protocol, required))
        self.kind = kind
        self.required = required
        self.protocol = protocol


class EncoderInvariantError(PicklingError): pass


class UnpicklingError(PickleError):
    """Decode failure. ``offset`` is the stream position of the failing opcode."""

    def __init__(self, msg, offset=None):
        if offset is not None:
            msg = "%s at offset %d" % (msg, offset)
        super().__init__(msg)
        self.offset = offset


class TruncatedError(UnpicklingError, EOFError): pass
class MalformedError(UnpicklingError): pass
class UnsupportedOpcodeError(UnpicklingError): pass
class StackUnderflowError(UnpicklingError): pass
class MissingMarkError(UnpicklingError): pass
class MemoError(UnpicklingError): pass
class TextDecodingError(UnpicklingError): pass
class UnhashableError(UnpicklingError): pass
class DepthError(UnpicklingError): pass
class StackSizeError(UnpicklingError): pass
