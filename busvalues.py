"""
Value model for the BusObjects D-Bus object framework: protocol constants,
wire types and their signatures, the closed Variant type, and the derivation
of argument-marshaling plans from the annotations of method handlers.
"""
#+
# Copyright 2017-2018 Lawrence D'Oliveiro <ldo@geek-central.gen.nz>.
# Licensed under the GNU Lesser General Public License v2.1 or later.
#-

import re
import inspect
import types
import typing
import collections.abc

class DBUS :
    "useful definitions from the D-Bus protocol specification."

    # Primitive types
    TYPE_BYTE = ord('y') # 8-bit unsigned integer
    TYPE_BOOLEAN = ord('b') # boolean
    TYPE_INT16 = ord('n') # 16-bit signed integer
    TYPE_UINT16 = ord('q') # 16-bit unsigned integer
    TYPE_INT32 = ord('i') # 32-bit signed integer
    TYPE_UINT32 = ord('u') # 32-bit unsigned integer
    TYPE_INT64 = ord('x') # 64-bit signed integer
    TYPE_UINT64 = ord('t') # 64-bit unsigned integer
    TYPE_DOUBLE = ord('d') # 8-byte double in IEEE 754 format
    TYPE_STRING = ord('s') # UTF-8 encoded, nul-terminated Unicode string
    TYPE_OBJECT_PATH = ord('o') # D-Bus object path
    TYPE_SIGNATURE = ord('g') # D-Bus type signature
    TYPE_UNIX_FD = ord('h') # unix file descriptor

    # Compound types
    TYPE_ARRAY = ord('a') # D-Bus array type
    TYPE_VARIANT = ord('v') # D-Bus variant type

    # characters other than typecodes that appear in type signatures
    STRUCT_BEGIN_CHAR = ord('(') # start of a struct type in a type signature
    STRUCT_END_CHAR = ord(')') # end of a struct type in a type signature
    DICT_ENTRY_BEGIN_CHAR = ord('{') # start of a dict entry type in a type signature
    DICT_ENTRY_END_CHAR = ord('}') # end of a dict entry type in a type signature

    MAXIMUM_NAME_LENGTH = 255 # max length in bytes of a bus name, interface or member (object paths are unlimited)
    MAXIMUM_SIGNATURE_LENGTH = 255 # fits in a byte
    MAXIMUM_TYPE_RECURSION_DEPTH = 32

    def int_subtype(i, bits, signed) :
        "returns integer i after checking that it fits in the given number of bits."
        if signed :
            lo = - 1 << bits - 1
            hi = (1 << bits - 1) - 1
        else :
            lo = 0
            hi = (1 << bits) - 1
        #end if
        if i < lo or i > hi :
            raise ValueError \
              (
                "%d not in range of %s %d-bit value" % (i, ("unsigned", "signed")[signed], bits)
              )
        #end if
        return \
            i
    #end int_subtype

    int_bits = \
        { # (bits, signed) for the various D-Bus integer types
            TYPE_BYTE : (8, False),
            TYPE_INT16 : (16, True),
            TYPE_UINT16 : (16, False),
            TYPE_INT32 : (32, True),
            TYPE_UINT32 : (32, False),
            TYPE_INT64 : (64, True),
            TYPE_UINT64 : (64, False),
        }

    # subclasses for distinguishing various special kinds of D-Bus values:

    class ObjectPath(str) :
        "an object path string."

        def __repr__(self) :
            return \
                "%s(%s)" % (self.__class__.__name__, super().__repr__())
        #end __repr__

    #end ObjectPath

    class Signature(str) :
        "a type-signature string."

        def __repr__(self) :
            return \
                "%s(%s)" % (self.__class__.__name__, super().__repr__())
        #end __repr__

    #end Signature

    class UnixFD(int) :
        "a file-descriptor integer."

        def __repr__(self) :
            return \
                "%s(%s)" % (self.__class__.__name__, super().__repr__())
        #end __repr__

    #end UnixFD

    # Types of message

    MESSAGE_TYPE_INVALID = 0 # never a valid message type
    MESSAGE_TYPE_METHOD_CALL = 1
    MESSAGE_TYPE_METHOD_RETURN = 2
    MESSAGE_TYPE_ERROR = 3
    MESSAGE_TYPE_SIGNAL = 4

    # Errors
    ERROR_FAILED = "org.freedesktop.DBus.Error.Failed" # generic error
    ERROR_DISCONNECTED = "org.freedesktop.DBus.Error.Disconnected"
    ERROR_INVALID_ARGS = "org.freedesktop.DBus.Error.InvalidArgs"
    ERROR_UNKNOWN_METHOD = "org.freedesktop.DBus.Error.UnknownMethod"
    ERROR_UNKNOWN_OBJECT = "org.freedesktop.DBus.Error.UnknownObject"
    ERROR_UNKNOWN_INTERFACE = "org.freedesktop.DBus.Error.UnknownInterface"
    ERROR_UNKNOWN_PROPERTY = "org.freedesktop.DBus.Error.UnknownProperty"

    # XML introspection format
    INTROSPECT_1_0_XML_PUBLIC_IDENTIFIER = "-//freedesktop//DTD D-BUS Object Introspection 1.0//EN"
    INTROSPECT_1_0_XML_SYSTEM_IDENTIFIER = "http://www.freedesktop.org/standards/dbus/1.0/introspect.dtd"
    INTROSPECT_1_0_XML_DOCTYPE_DECL_NODE = \
        (
            "<!DOCTYPE node PUBLIC \""
        +
            INTROSPECT_1_0_XML_PUBLIC_IDENTIFIER
        +
            "\"\n\"" + INTROSPECT_1_0_XML_SYSTEM_IDENTIFIER
        +
            "\">\n"
        )

    # Interfaces, these #define don't do much other than catch typos at compile time
    INTERFACE_INTROSPECTABLE = "org.freedesktop.DBus.Introspectable" # interface supported by introspectable objects
    INTERFACE_PROPERTIES = "org.freedesktop.DBus.Properties" # interface supported by objects with properties
    INTERFACE_PEER = "org.freedesktop.DBus.Peer" # interface supported by most dbus peers

#end DBUS

class DBUSX :
    "additional definitions not part of the official interfaces"

    INTERFACE_OBJECT_MANAGER = "org.freedesktop.DBus.ObjectManager"

#end DBUSX

class DBusError(Exception) :
    "for raising an exception that reports a D-Bus error name and accompanying message."

    def __init__(self, name, message) :
        self.name = name
        self.message = message
        self.args = ("%s -- %s" % (name, message),)
    #end __init__

#end DBusError

#+
# Names and paths
#-

_element_pat = "[A-Za-z_][A-Za-z0-9_]*"
_path_re = re.compile(r"^(?:/|(?:/[A-Za-z0-9_]+)+)$")
_dotted_name_re = re.compile(r"^%s(?:\.%s)+$" % (_element_pat, _element_pat))
_member_re = re.compile(r"^%s$" % _element_pat)

def validate_path(path) :
    "checks that path is a valid D-Bus object path, raising ValueError if not."
    if not isinstance(path, str) :
        raise TypeError("object path must be a string")
    #end if
    if _path_re.match(path) == None :
        raise ValueError("invalid object path “%s”" % path)
    #end if
    return \
        path
#end validate_path

def _validate_name(name, pattern, kind) :
    if not isinstance(name, str) :
        raise TypeError("%s name must be a string" % kind)
    #end if
    if len(name) > DBUS.MAXIMUM_NAME_LENGTH or pattern.match(name) == None :
        raise ValueError("invalid %s name “%s”" % (kind, name))
    #end if
    return \
        name
#end _validate_name

def validate_interface(name) :
    return \
        _validate_name(name, _dotted_name_re, "interface")
#end validate_interface

def validate_error_name(name) :
    return \
        _validate_name(name, _dotted_name_re, "error")
#end validate_error_name

def validate_member(name) :
    return \
        _validate_name(name, _member_re, "member")
#end validate_member

def split_path(path) :
    "convenience routine for splitting a path into a list of components."
    if isinstance(path, (tuple, list)) :
        result = path # assume already split
    elif path == "/" :
        result = []
    else :
        if not path.startswith("/") or path.endswith("/") :
            raise ValueError("invalid path %s" % repr(path))
        #end if
        result = path.split("/")[1:]
    #end if
    return \
        result
#end split_path

def unsplit_path(path) :
    "converts a list of path components back to a path string."
    if isinstance(path, str) :
        result = path
    else :
        result = "".join("/" + component for component in path)
        if result == "" :
            result = "/"
        #end if
    #end if
    return \
        result
#end unsplit_path

#+
# Wire types
#-

class Type :
    "base class for all D-Bus wire types. Each type knows its signature and" \
    " how to validate a Python value for it; validate returns a freshly-built" \
    " normalized copy of the value."

    __slots__ = ()

    @property
    def signature(self) :
        raise NotImplementedError("subclass forgot to override signature")
    #end signature

    def validate(self, val) :
        raise NotImplementedError("subclass forgot to override validate")
    #end validate

    def __eq__(self, other) :
        return \
            isinstance(other, Type) and self.signature == other.signature
    #end __eq__

    def __hash__(self) :
        return \
            hash(self.signature)
    #end __hash__

    def __repr__(self) :
        return \
            "%s(%s)" % (type(self).__name__, repr(self.signature))
    #end __repr__

#end Type

class BasicType(Type) :
    "a basic (non-container) type, identified by its type code."

    __slots__ = ("code",)

    def __init__(self, code) :
        if chr(code) not in _basic_codes :
            raise ValueError("“%s” is not a basic type code" % chr(code))
        #end if
        self.code = code
    #end __init__

    @property
    def signature(self) :
        return \
            chr(self.code)
    #end signature

    def validate(self, val) :
        code = self.code
        if code in DBUS.int_bits :
            if not isinstance(val, int) or isinstance(val, bool) :
                raise TypeError("expecting an integer for “%s”, not %s" % (self.signature, repr(val)))
            #end if
            bits, signed = DBUS.int_bits[code]
            result = DBUS.int_subtype(int(val), bits, signed)
        elif code == DBUS.TYPE_BOOLEAN :
            if not isinstance(val, bool) :
                raise TypeError("expecting a bool, not %s" % repr(val))
            #end if
            result = val
        elif code == DBUS.TYPE_DOUBLE :
            if not isinstance(val, (int, float)) or isinstance(val, bool) :
                raise TypeError("expecting a number, not %s" % repr(val))
            #end if
            result = float(val)
        elif code == DBUS.TYPE_UNIX_FD :
            if not isinstance(val, int) or isinstance(val, bool) or val < 0 :
                raise TypeError("expecting a file descriptor, not %s" % repr(val))
            #end if
            result = DBUS.UnixFD(val)
        else :
            if not isinstance(val, str) :
                raise TypeError("expecting a string for “%s”, not %s" % (self.signature, repr(val)))
            #end if
            if "\0" in val :
                raise ValueError("D-Bus strings cannot contain nul characters")
            #end if
            if code == DBUS.TYPE_OBJECT_PATH :
                result = DBUS.ObjectPath(validate_path(val))
            elif code == DBUS.TYPE_SIGNATURE :
                parse_signature(val)
                result = DBUS.Signature(val)
            else :
                result = str(val)
            #end if
        #end if
        return \
            result
    #end validate

#end BasicType

class VariantType(Type) :
    "the variant type; values are Variant instances."

    __slots__ = ()

    @property
    def signature(self) :
        return \
            chr(DBUS.TYPE_VARIANT)
    #end signature

    def validate(self, val) :
        if isinstance(val, Variant) :
            result = val
        elif isinstance(val, (list, tuple)) and len(val) == 2 :
            # (signature, value) pair
            result = Variant(val[0], val[1])
        else :
            raise TypeError("expecting a Variant or (signature, value) pair, not %s" % repr(val))
        #end if
        return \
            result
    #end validate

#end VariantType

class ArrayType(Type) :
    "an array of elements all of the same type. Arrays of bytes are normalized" \
    " to Python bytes objects."

    __slots__ = ("elttype",)

    def __init__(self, elttype) :
        if not isinstance(elttype, Type) :
            raise TypeError("array element type must be a Type")
        #end if
        self.elttype = elttype
    #end __init__

    @property
    def signature(self) :
        return \
            chr(DBUS.TYPE_ARRAY) + self.elttype.signature
    #end signature

    def validate(self, val) :
        if self.elttype == BYTE and isinstance(val, (bytes, bytearray)) :
            result = bytes(val)
        else :
            if not isinstance(val, (tuple, list, bytes, bytearray)) :
                raise TypeError("expecting a sequence for “%s”, not %s" % (self.signature, repr(val)))
            #end if
            result = list(self.elttype.validate(elt) for elt in val)
            if self.elttype == BYTE :
                result = bytes(result)
            #end if
        #end if
        return \
            result
    #end validate

#end ArrayType

class DictType(Type) :
    "an array of dict entries, represented in Python as a dict. A sequence of" \
    " (key, value) pairs is also accepted; order of entries is preserved."

    __slots__ = ("keytype", "valuetype")

    def __init__(self, keytype, valuetype) :
        if not isinstance(keytype, BasicType) :
            raise TypeError("dict key type must be a basic type")
        #end if
        if not isinstance(valuetype, Type) :
            raise TypeError("dict value type must be a Type")
        #end if
        self.keytype = keytype
        self.valuetype = valuetype
    #end __init__

    @property
    def signature(self) :
        return \
            "%s%s%s%s%s" % \
                (
                    chr(DBUS.TYPE_ARRAY),
                    chr(DBUS.DICT_ENTRY_BEGIN_CHAR),
                    self.keytype.signature,
                    self.valuetype.signature,
                    chr(DBUS.DICT_ENTRY_END_CHAR),
                )
    #end signature

    def validate(self, val) :
        if isinstance(val, collections.abc.Mapping) :
            items = val.items()
        elif isinstance(val, (tuple, list)) :
            items = val
        else :
            raise TypeError("expecting a dict for “%s”, not %s" % (self.signature, repr(val)))
        #end if
        result = {}
        for item in items :
            if not isinstance(item, (tuple, list)) or len(item) != 2 :
                raise TypeError("dict entries must be (key, value) pairs, not %s" % repr(item))
            #end if
            result[self.keytype.validate(item[0])] = self.valuetype.validate(item[1])
        #end for
        return \
            result
    #end validate

#end DictType

class StructType(Type) :
    "a fixed sequence of one or more fields, represented in Python as a tuple."

    __slots__ = ("elttypes",)

    def __init__(self, *types) :
        if len(types) == 0 :
            raise ValueError("struct must have at least one field")
        #end if
        for elttype in types :
            if not isinstance(elttype, Type) :
                raise TypeError("struct field types must be Types")
            #end if
        #end for
        self.elttypes = tuple(types)
    #end __init__

    @property
    def signature(self) :
        return \
            (
                chr(DBUS.STRUCT_BEGIN_CHAR)
            +
                "".join(t.signature for t in self.elttypes)
            +
                chr(DBUS.STRUCT_END_CHAR)
            )
    #end signature

    def validate(self, val) :
        if not isinstance(val, (tuple, list)) or len(val) != len(self.elttypes) :
            raise TypeError \
              (
                "expecting a sequence of %d values for “%s”, not %s" % (len(self.elttypes), self.signature, repr(val))
              )
        #end if
        return \
            tuple(t.validate(v) for t, v in zip(self.elttypes, val))
    #end validate

#end StructType

_basic_codes = "ybnqiuxtdsogh"

BYTE = BasicType(DBUS.TYPE_BYTE)
BOOLEAN = BasicType(DBUS.TYPE_BOOLEAN)
INT16 = BasicType(DBUS.TYPE_INT16)
UINT16 = BasicType(DBUS.TYPE_UINT16)
INT32 = BasicType(DBUS.TYPE_INT32)
UINT32 = BasicType(DBUS.TYPE_UINT32)
INT64 = BasicType(DBUS.TYPE_INT64)
UINT64 = BasicType(DBUS.TYPE_UINT64)
DOUBLE = BasicType(DBUS.TYPE_DOUBLE)
STRING = BasicType(DBUS.TYPE_STRING)
OBJECT_PATH = BasicType(DBUS.TYPE_OBJECT_PATH)
SIGNATURE = BasicType(DBUS.TYPE_SIGNATURE)
UNIX_FD = BasicType(DBUS.TYPE_UNIX_FD)
VARIANT = VariantType()

#+
# Signatures
#-

def parse_signature(signature) :
    "parses a signature string into a list of Type objects, one per complete type."

    def parse_one(pos, depth) :
        if depth > DBUS.MAXIMUM_TYPE_RECURSION_DEPTH :
            raise ValueError("signature “%s” nests too deeply" % signature)
        #end if
        if pos >= len(signature) :
            raise ValueError("signature “%s” ends prematurely" % signature)
        #end if
        code = signature[pos]
        pos += 1
        if code in _basic_codes :
            result = BasicType(ord(code))
        elif code == chr(DBUS.TYPE_VARIANT) :
            result = VARIANT
        elif code == chr(DBUS.TYPE_ARRAY) :
            if pos < len(signature) and signature[pos] == chr(DBUS.DICT_ENTRY_BEGIN_CHAR) :
                keytype, pos = parse_one(pos + 1, depth + 1)
                if not isinstance(keytype, BasicType) :
                    raise ValueError("dict key in “%s” must be a basic type" % signature)
                #end if
                valuetype, pos = parse_one(pos, depth + 1)
                if pos >= len(signature) or signature[pos] != chr(DBUS.DICT_ENTRY_END_CHAR) :
                    raise ValueError("unterminated dict entry in “%s”" % signature)
                #end if
                pos += 1
                result = DictType(keytype, valuetype)
            else :
                elttype, pos = parse_one(pos, depth + 1)
                result = ArrayType(elttype)
            #end if
        elif code == chr(DBUS.STRUCT_BEGIN_CHAR) :
            fields = []
            while True :
                if pos >= len(signature) :
                    raise ValueError("unterminated struct in “%s”" % signature)
                #end if
                if signature[pos] == chr(DBUS.STRUCT_END_CHAR) :
                    pos += 1
                    break
                #end if
                field, pos = parse_one(pos, depth + 1)
                fields.append(field)
            #end while
            if len(fields) == 0 :
                raise ValueError("empty struct in “%s”" % signature)
            #end if
            result = StructType(*fields)
        else :
            raise ValueError("invalid type code “%s” in signature “%s”" % (code, signature))
        #end if
        return \
            result, pos
    #end parse_one

#begin parse_signature
    if isinstance(signature, Type) :
        result = [signature]
    elif isinstance(signature, (tuple, list)) :
        result = list(signature)
        for elt in result :
            if not isinstance(elt, Type) :
                raise TypeError("signature sequence must contain only Types")
            #end if
        #end for
    elif isinstance(signature, str) :
        if len(signature) > DBUS.MAXIMUM_SIGNATURE_LENGTH :
            raise ValueError("signature is too long")
        #end if
        result = []
        pos = 0
        while pos < len(signature) :
            elt, pos = parse_one(pos, 0)
            result.append(elt)
        #end while
    else :
        raise TypeError("signature must be a string or sequence of Types")
    #end if
    return \
        result
#end parse_signature

def parse_single_signature(signature) :
    "parses a signature that must consist of exactly one complete type."
    result = parse_signature(signature)
    if len(result) != 1 :
        raise ValueError("expecting exactly one complete type, got %s" % repr(signature))
    #end if
    return \
        result[0]
#end parse_single_signature

def unparse_signature(types) :
    "converts a Type or sequence of Types back to a signature string."
    if isinstance(types, Type) :
        types = [types]
    #end if
    return \
        "".join(t.signature for t in types)
#end unparse_signature

def validate_values(signature, values) :
    "validates a sequence of values against a signature, returning the normalized" \
    " values. Raises TypeError or ValueError on mismatch."
    types = parse_signature(signature)
    if len(values) != len(types) :
        raise TypeError \
          (
            "signature “%s” needs %d values, got %d" % (unparse_signature(types), len(types), len(values))
          )
    #end if
    return \
        list(t.validate(v) for t, v in zip(types, values))
#end validate_values

#+
# Variants
#-

def _frozen(value) :
    # read-only copy of a validated value.
    if isinstance(value, (list, tuple)) :
        result = tuple(_frozen(elt) for elt in value)
    elif isinstance(value, dict) :
        result = types.MappingProxyType(dict((key, _frozen(elt)) for key, elt in value.items()))
    else :
        result = value
    #end if
    return \
        result
#end _frozen

class Variant :
    "a value tagged with its D-Bus type. Variants are immutable, all the way down:" \
    " arrays are held as tuples and dicts as read-only mappings. They compare" \
    " equal only if both the type and the value are equal. Only values" \
    " representable as D-Bus types can be wrapped."

    __slots__ = ("type", "value")

    def __init__(self, type, value) :
        if isinstance(type, str) :
            type = parse_single_signature(type)
        elif not isinstance(type, Type) :
            raise TypeError("variant type must be a Type or signature string")
        #end if
        object.__setattr__(self, "type", type)
        object.__setattr__(self, "value", _frozen(type.validate(value)))
    #end __init__

    def __setattr__(self, name, value) :
        raise AttributeError("Variant objects are immutable")
    #end __setattr__

    @classmethod
    def of(celf, value) :
        "wraps a plain Python value in a Variant, inferring its type. int always" \
        " maps to “i”; construct the Variant explicitly for other integer widths" \
        " or for containers."
        if isinstance(value, Variant) :
            result = value
        else :
            for pytype, dbustype in _implicit_types :
                if isinstance(value, pytype) :
                    break
                #end if
            else :
                raise TypeError \
                  (
                    "no implicit D-Bus type for %s; wrap it in a Variant" % repr(value)
                  )
            #end for
            result = celf(dbustype, value)
        #end if
        return \
            result
    #end of

    @property
    def signature(self) :
        return \
            self.type.signature
    #end signature

    def __eq__(self, other) :
        return \
            (
                isinstance(other, Variant)
            and
                self.type == other.type
            and
                self.value == other.value
            )
    #end __eq__

    def __hash__(self) :
        return \
            hash(self.type)
    #end __hash__

    def __repr__(self) :
        return \
            "%s(%s, %s)" % (type(self).__name__, repr(self.signature), repr(self.value))
    #end __repr__

#end Variant

_implicit_types = \
    ( # order matters: subclasses before their bases
        (bool, BOOLEAN),
        (DBUS.UnixFD, UNIX_FD),
        (int, INT32),
        (float, DOUBLE),
        (DBUS.ObjectPath, OBJECT_PATH),
        (DBUS.Signature, SIGNATURE),
        (str, STRING),
        ((bytes, bytearray), ArrayType(BYTE)),
    )

#+
# Argument marshaling
#-

def def_attr_class(name, attrs) :
    "defines a class with read/write attributes with names from the sequence attrs." \
    " Objects of this class can be coerced to lists or tuples, compared for equality," \
    " and attributes can also be accessed by index, like a list."

    class result :
        __slots__ = tuple(attrs)

        def __init__(self, **kwargs) :
            for name in type(self).__slots__ :
                setattr(self, name, kwargs.pop(name, None))
            #end for
            if len(kwargs) != 0 :
                raise TypeError("unexpected attributes: %s" % ", ".join(sorted(kwargs)))
            #end if
        #end __init__

        def __repr__(self) :
            return \
                "%s(%s)" % \
                    (
                        type(self).__name__,
                        ", ".join
                          (
                            "%s = %s" % (name, repr(getattr(self, name)))
                            for name in type(self).__slots__
                          ),
                    )
        #end __repr__

        def __eq__(self, other) :
            return \
                type(other) == type(self) and tuple(self) == tuple(other)
        #end __eq__

        __hash__ = None

        def __len__(self) :
            return \
                len(type(self).__slots__)
        #end __len__

        def __getitem__(self, i) :
            return \
                getattr(self, type(self).__slots__[i])
        #end __getitem__

    #end class

#begin def_attr_class
    result.__name__ = name
    return \
        result
#end def_attr_class

Argument = def_attr_class("Argument", ("direction", "name", "type"))
  # one formal parameter or result slot: direction is "in", "out" or None
  # (for signal args), type is the signature string.

_annotation_types = \
    {
        bool : BOOLEAN,
        int : INT32,
        float : DOUBLE,
        str : STRING,
        bytes : ArrayType(BYTE),
        DBUS.ObjectPath : OBJECT_PATH,
        DBUS.Signature : SIGNATURE,
        DBUS.UnixFD : UNIX_FD,
        Variant : VARIANT,
    }

def type_from_annotation(annot) :
    "returns the Type corresponding to a handler parameter annotation: either a" \
    " Type instance, a signature string, a supported Python class, or a" \
    " list[T], dict[K, V] or tuple[...] built from those."
    if isinstance(annot, Type) :
        result = annot
    elif isinstance(annot, str) :
        try :
            result = parse_single_signature(annot)
        except ValueError as err :
            raise TypeError("annotation %s is not a single-type signature: %s" % (repr(annot), err))
        #end try
    elif isinstance(annot, type) and annot in _annotation_types :
        result = _annotation_types[annot]
    else :
        origin = typing.get_origin(annot)
        args = typing.get_args(annot)
        if origin in (list, collections.abc.Sequence) and len(args) == 1 :
            result = ArrayType(type_from_annotation(args[0]))
        elif origin in (dict, collections.abc.Mapping) and len(args) == 2 :
            result = DictType(type_from_annotation(args[0]), type_from_annotation(args[1]))
        elif origin == tuple and len(args) != 0 and Ellipsis not in args :
            result = StructType(*(type_from_annotation(a) for a in args))
        else :
            raise TypeError("cannot derive a D-Bus type from annotation %s" % repr(annot))
        #end if
    #end if
    return \
        result
#end type_from_annotation

def _result_types(annot) :
    # a tuple return annotation denotes multiple result slots.
    if annot is inspect.Signature.empty or annot is None or annot is type(None) :
        result = []
    elif isinstance(annot, tuple) :
        result = list(type_from_annotation(a) for a in annot)
    elif typing.get_origin(annot) == tuple :
        args = tuple(a for a in typing.get_args(annot) if a != ())
        if Ellipsis in args :
            raise TypeError("variable-length tuple is not a valid result annotation")
        #end if
        result = list(type_from_annotation(a) for a in args)
    else :
        result = [type_from_annotation(annot)]
    #end if
    return \
        result
#end _result_types

class CallPlan :
    "the marshaling plan for a method handler: the ordered wire types of its" \
    " arguments and of its results. Derived once when the handler is registered."

    __slots__ = ("in_types", "out_types")

    def __init__(self, in_types, out_types) :
        self.in_types = tuple(parse_signature(in_types))
        self.out_types = tuple(parse_signature(out_types))
    #end __init__

    @classmethod
    def from_handler(celf, handler, in_signature = None, out_signature = None) :
        "derives a plan from the annotations of handler. Explicit signature strings," \
        " where given, take precedence over the annotations for that side. Raises" \
        " TypeError if a type cannot be determined."
        if not callable(handler) :
            raise TypeError("handler must be callable")
        #end if
        if in_signature == None or out_signature == None :
            try :
                try :
                    # resolves postponed annotations (PEP 563); plain signature
                    # strings do not evaluate, and are taken as they stand
                    sig = inspect.signature(handler, eval_str = True)
                except (NameError, SyntaxError) :
                    sig = inspect.signature(handler)
                #end try
            except ValueError :
                raise TypeError \
                  (
                    "cannot inspect handler %s; specify in_signature and out_signature" % repr(handler)
                  )
            #end try
        #end if
        if in_signature != None :
            in_types = parse_signature(in_signature)
        else :
            in_types = []
            for param in sig.parameters.values() :
                if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD) :
                    raise TypeError \
                      (
                        "handler parameter “%s” is variadic; specify in_signature" % param.name
                      )
                #end if
                if param.kind == param.KEYWORD_ONLY :
                    if param.default is param.empty :
                        raise TypeError("keyword-only parameter “%s” needs a default" % param.name)
                    #end if
                    continue
                #end if
                if param.annotation is param.empty :
                    raise TypeError \
                      (
                        "handler parameter “%s” of %s is not annotated" % (param.name, getattr(handler, "__name__", repr(handler)))
                      )
                #end if
                in_types.append(type_from_annotation(param.annotation))
            #end for
        #end if
        if out_signature != None :
            out_types = parse_signature(out_signature)
        else :
            out_types = _result_types(sig.return_annotation)
        #end if
        return \
            celf(in_types, out_types)
    #end from_handler

    @property
    def in_signature(self) :
        return \
            unparse_signature(self.in_types)
    #end in_signature

    @property
    def out_signature(self) :
        return \
            unparse_signature(self.out_types)
    #end out_signature

    def unpack_args(self, message) :
        "extracts the handler arguments from message as a tuple. Raises TypeError or" \
        " ValueError if the message body does not match."
        if len(self.in_types) == 0 :
            # nothing to unpack, leave the message alone
            result = ()
        else :
            result = tuple(message.unpack(self.in_types))
        #end if
        return \
            result
    #end unpack_args

    def pack_result(self, reply, result) :
        "appends the handler result to the reply message. A single result slot takes" \
        " the handler result as is; several slots need a sequence of that length."
        nr_results = len(self.out_types)
        if nr_results == 0 :
            if result != None :
                raise ValueError("handler declares no results but returned %s" % repr(result))
            #end if
        elif nr_results == 1 :
            reply.pack(self.out_types, result)
        else :
            if not isinstance(result, (tuple, list)) or len(result) != nr_results :
                raise ValueError \
                  (
                    "handler must return a sequence of %d results, not %s" % (nr_results, repr(result))
                  )
            #end if
            reply.pack(self.out_types, *result)
        #end if
    #end pack_result

    def get_args(self) :
        "returns the list of Argument descriptors for introspection, built afresh" \
        " on each call."
        result = []
        for direction, prefix, types in \
            (
                ("in", "arg", self.in_types),
                ("out", "out", self.out_types),
            ) \
        :
            for i, t in enumerate(types) :
                result.append(Argument(direction = direction, name = "%s_%d" % (prefix, i), type = t.signature))
            #end for
        #end for
        return \
            result
    #end get_args

#end CallPlan
