"""
GGUF value decoding.

Two layers live here:

- ``StreamDecoder``: the primitive codec. Reads fixed-width integers and
  floats from a binary stream in the file's byte order, and reads the
  "version-width" unsigned integers (32-bit in GGUF v1, 64-bit in v2/v3)
  through a reader bound once per file.
- The metadata value codec: ``read_value`` decodes one self-describing
  typed value into a ``MetadataValue``; ``GGUFMetadata`` is the read-only
  key/value mapping built from those values, with typed accessors.
"""

import struct
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, Dict, Iterator, Optional, Tuple

from gguf_types import (
    ByteOrder,
    FileType,
    GGUFInvalidBoolError,
    GGUFInvalidTypeError,
    GGUFNotFoundError,
    GGUFParseError,
    GGUFTruncatedError,
    GGUFTypeMismatchError,
    GGUFValueType,
    GGUFVersionError,
)


# Maximum reasonable string length: 100MB
MAX_STRING_LENGTH = 100 * 1024 * 1024

# Reads larger than this are checked against the bytes left in the stream
# before anything is allocated.
LARGE_READ_THRESHOLD = 64 * 1024 * 1024

ALIGNMENT_KEY = 'general.alignment'
FILE_TYPE_KEY = 'general.file_type'

# Version -> struct code of the count/length/offset integers
UINT_CODES: Dict[int, str] = {
    1: 'I',  # widened to 64-bit on read
    2: 'Q',
    3: 'Q',
}

SUPPORTED_VERSIONS = tuple(sorted(UINT_CODES))

# Fixed-width scalar kinds: (struct code, size in bytes)
SCALAR_FORMATS: Dict[GGUFValueType, Tuple[str, int]] = {
    GGUFValueType.UINT8: ('B', 1),
    GGUFValueType.INT8: ('b', 1),
    GGUFValueType.UINT16: ('H', 2),
    GGUFValueType.INT16: ('h', 2),
    GGUFValueType.UINT32: ('I', 4),
    GGUFValueType.INT32: ('i', 4),
    GGUFValueType.UINT64: ('Q', 8),
    GGUFValueType.INT64: ('q', 8),
    GGUFValueType.FLOAT32: ('f', 4),
    GGUFValueType.FLOAT64: ('d', 8),
}

NUMERIC_TYPES = frozenset(SCALAR_FORMATS)

# Characters stripped from both ends of every decoded string
STRING_TRIM_CHARS = '\x00\t\n\v\f\r '


# ============================================================================
# Primitive Codec
# ============================================================================

class StreamDecoder:
    """
    Primitive reader over a seekable binary stream.

    Every read either returns exactly the requested bytes or raises
    ``GGUFTruncatedError``; ``OSError`` from the underlying stream is
    reported the same way.

    ``read_uint`` is the version-width unsigned reader. It starts out as
    64-bit and is rebound by ``bind_version`` once the header has been read.
    """

    def __init__(
        self,
        stream: BinaryIO,
        byte_order: ByteOrder = ByteOrder.LITTLE,
        source: str = '<stream>',
        max_string_length: int = MAX_STRING_LENGTH,
    ):
        self.stream = stream
        self.byte_order = byte_order
        self.source = source
        self.max_string_length = max_string_length
        self.version: Optional[int] = None
        self.read_uint: Callable[[str], int] = self.read_u64

    def bind_version(self, version: int) -> None:
        """Select the count/length/offset width for a GGUF version."""
        try:
            code = UINT_CODES[version]
        except KeyError:
            raise GGUFVersionError(
                f"Unsupported GGUF version in file '{self.source}': {version} "
                f"(supported versions: {', '.join(str(v) for v in SUPPORTED_VERSIONS)})",
                version=version,
            ) from None

        self.version = version
        self.read_uint = self.read_u32 if code == 'I' else self.read_u64

    def tell(self) -> int:
        try:
            return self.stream.tell()
        except OSError as e:
            raise GGUFTruncatedError(f"Cannot determine position in file '{self.source}': {e}") from e

    def _remaining(self, position: int) -> Optional[int]:
        try:
            end = self.stream.seek(0, 2)
            self.stream.seek(position)
        except (OSError, ValueError):
            return None
        return max(end - position, 0)

    def read_exact(self, size: int, what: str) -> bytes:
        """
        Read exactly ``size`` bytes.

        Args:
            size: Number of bytes to read
            what: Description of the field, used in error messages

        Raises:
            GGUFTruncatedError: If fewer bytes are available or the stream fails
        """
        position = self.tell()

        if size > LARGE_READ_THRESHOLD:
            remaining = self._remaining(position)
            if remaining is not None and remaining < size:
                raise GGUFTruncatedError(
                    f"Unexpected end of file '{self.source}' at position {position}: "
                    f"expected to read {size} bytes for {what}, only {remaining} bytes available"
                )

        try:
            data = self.stream.read(size)
        except OSError as e:
            raise GGUFTruncatedError(
                f"Read error in file '{self.source}' at position {position} "
                f"while reading {what}: {e}"
            ) from e

        if data is None or len(data) < size:
            got = 0 if data is None else len(data)
            raise GGUFTruncatedError(
                f"Unexpected end of file '{self.source}' at position {position}: "
                f"expected to read {size} bytes for {what}, only {got} bytes available"
            )
        return data

    def read_scalar(self, code: str, what: str):
        """Read one fixed-width value; ``code`` is a ``struct`` format letter."""
        size = struct.calcsize('<' + code)
        data = self.read_exact(size, what)
        return struct.unpack(self.byte_order.prefix + code, data)[0]

    def read_many(self, code: str, count: int, what: str) -> tuple:
        """Read ``count`` consecutive fixed-width values in one read."""
        if count == 0:
            return ()
        size = struct.calcsize('<' + code)
        data = self.read_exact(size * count, what)
        return struct.unpack(f"{self.byte_order.prefix}{count}{code}", data)

    def read_u32(self, what: str) -> int:
        return self.read_scalar('I', what)

    def read_u64(self, what: str) -> int:
        return self.read_scalar('Q', what)

    def read_string(self, what: str = 'string') -> str:
        """
        Read a length-prefixed string.

        GGUF strings are encoded as:
        - version-width unsigned integer: length of the string in bytes
        - bytes: UTF-8 encoded string data

        Leading and trailing ASCII whitespace and NUL bytes are stripped.
        Bytes that are not valid UTF-8 are replaced rather than rejected.

        Raises:
            GGUFTruncatedError: If the file ends before the string is fully read
            GGUFParseError: If the string length exceeds ``max_string_length``
        """
        position = self.tell()
        length = self.read_uint(f"{what} length")

        if length > self.max_string_length:
            raise GGUFParseError(
                f"Invalid string length in file '{self.source}' at position {position}: "
                f"length {length} exceeds maximum allowed length {self.max_string_length}"
            )

        if length == 0:
            return ''

        data = self.read_exact(length, f"{what} data")
        return data.decode('utf-8', errors='replace').strip(STRING_TRIM_CHARS)


# ============================================================================
# Metadata Values
# ============================================================================

@dataclass(frozen=True)
class MetadataValue:
    """
    One decoded metadata value.

    ``type`` is the wire kind. Scalars carry a Python ``int``, ``float``,
    ``bool`` or ``str`` in ``value``; arrays carry a tuple of such values and
    set ``element_type``. The ``general.file_type`` entry keeps its wire kind
    (UINT32) but its value is promoted to ``FileType``.
    """
    type: GGUFValueType
    value: Any
    element_type: Optional[GGUFValueType] = None

    @property
    def is_array(self) -> bool:
        return self.type == GGUFValueType.ARRAY

    def kind_name(self) -> str:
        """Human readable kind, e.g. ``uint32`` or ``array[string]``."""
        if self.is_array:
            return f"array[{self.element_type.name.lower()}]"
        return self.type.name.lower()


def read_value_type(decoder: StreamDecoder, what: str = 'metadata value type') -> GGUFValueType:
    """Read a 32-bit type code and map it to ``GGUFValueType``."""
    position = decoder.tell()
    code = decoder.read_u32(what)
    try:
        return GGUFValueType(code)
    except ValueError:
        raise GGUFInvalidTypeError(
            f"Invalid metadata type in file '{decoder.source}' at position {position}: "
            f"type code {code} is not a valid GGUF type",
            type_code=code,
        ) from None


def _check_bool(decoder: StreamDecoder, byte: int, position: int) -> bool:
    if byte not in (0, 1):
        raise GGUFInvalidBoolError(
            f"Invalid bool value in file '{decoder.source}' at position {position}: "
            f"expected 0 or 1, got {byte}",
            byte=byte,
        )
    return byte == 1


def read_scalar_value(decoder: StreamDecoder, value_type: GGUFValueType) -> Any:
    """
    Read a single non-array value of the given kind.

    Returns:
        The parsed value in appropriate Python type:
        - int for UINT8, INT8, UINT16, INT16, UINT32, INT32, UINT64, INT64
        - float for FLOAT32, FLOAT64
        - bool for BOOL
        - str for STRING
    """
    position = decoder.tell()

    if value_type in SCALAR_FORMATS:
        code, _ = SCALAR_FORMATS[value_type]
        return decoder.read_scalar(code, value_type.name.lower())

    if value_type == GGUFValueType.BOOL:
        return _check_bool(decoder, decoder.read_scalar('B', 'bool'), position)

    if value_type == GGUFValueType.STRING:
        return decoder.read_string()

    raise GGUFInvalidTypeError(
        f"Invalid scalar type in file '{decoder.source}' at position {position}: "
        f"{value_type.name} cannot be read as a scalar",
        type_code=int(value_type),
    )


def read_array_elements(decoder: StreamDecoder, element_type: GGUFValueType, length: int) -> tuple:
    """Read ``length`` elements of ``element_type``; numeric kinds use one bulk read."""
    position = decoder.tell()

    if element_type in SCALAR_FORMATS:
        code, _ = SCALAR_FORMATS[element_type]
        return decoder.read_many(code, length, f"array of {length} {element_type.name.lower()}")

    if element_type == GGUFValueType.BOOL:
        raw = decoder.read_many('B', length, f"array of {length} bool")
        return tuple(_check_bool(decoder, b, position + i) for i, b in enumerate(raw))

    if element_type == GGUFValueType.STRING:
        return tuple(decoder.read_string('array string') for _ in range(length))

    raise GGUFInvalidTypeError(
        f"Invalid array element type in file '{decoder.source}' at position {position}: "
        f"nested arrays are not allowed",
        type_code=int(element_type),
    )


def read_value(decoder: StreamDecoder) -> MetadataValue:
    """
    Read one typed metadata value: a type code followed by its payload.

    Arrays are encoded as:
    - uint32: element type code (any kind except ARRAY)
    - version-width unsigned integer: number of elements
    - elements: values of the element type, back to back

    Raises:
        GGUFInvalidTypeError: If a type code is unknown or an array is nested
        GGUFInvalidBoolError: If a bool byte is not 0 or 1
        GGUFTruncatedError: If the file ends before the value is fully read
    """
    value_type = read_value_type(decoder)

    if value_type != GGUFValueType.ARRAY:
        return MetadataValue(value_type, read_scalar_value(decoder, value_type))

    element_type = read_value_type(decoder, 'array element type')
    if element_type == GGUFValueType.ARRAY:
        raise GGUFInvalidTypeError(
            f"Invalid array element type in file '{decoder.source}' at position {decoder.tell() - 4}: "
            f"nested arrays are not allowed",
            type_code=int(element_type),
        )

    length = decoder.read_uint('array length')
    return MetadataValue(
        GGUFValueType.ARRAY,
        read_array_elements(decoder, element_type, length),
        element_type,
    )


# ============================================================================
# Metadata Mapping
# ============================================================================

class GGUFMetadata(Mapping):
    """
    Read-only mapping of metadata keys to ``MetadataValue``.

    Missing keys raise ``GGUFNotFoundError`` (a ``KeyError``), so ``get`` and
    ``in`` behave like a dict. The ``get_*`` accessors return plain Python
    values and raise ``GGUFTypeMismatchError`` instead of coercing a value of
    the wrong kind.
    """

    def __init__(self, entries: Optional[Dict[str, MetadataValue]] = None):
        self._entries: Dict[str, MetadataValue] = dict(entries or {})

    def __getitem__(self, key: str) -> MetadataValue:
        try:
            return self._entries[key]
        except KeyError:
            raise GGUFNotFoundError(f"Metadata key '{key}' not found") from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"GGUFMetadata({len(self._entries)} keys)"

    def _mismatch(self, key: str, wanted: str, found: MetadataValue) -> GGUFTypeMismatchError:
        return GGUFTypeMismatchError(
            f"Metadata value '{key}' is not of type {wanted}, type is {found.kind_name()}"
        )

    def get_value(self, key: str, value_type: Optional[GGUFValueType] = None) -> Any:
        """
        Return the Python value stored under ``key``.

        Args:
            key: The metadata key to retrieve
            value_type: If given, the stored kind must be exactly this one

        Raises:
            GGUFNotFoundError: If the key doesn't exist
            GGUFTypeMismatchError: If ``value_type`` doesn't match the stored kind
        """
        entry = self[key]
        if value_type is not None and entry.type != value_type:
            raise self._mismatch(key, GGUFValueType(value_type).name.lower(), entry)
        return entry.value

    def get_string(self, key: str) -> str:
        return self.get_value(key, GGUFValueType.STRING)

    def get_bool(self, key: str) -> bool:
        return self.get_value(key, GGUFValueType.BOOL)

    def get_array(self, key: str, element_type: Optional[GGUFValueType] = None) -> tuple:
        """Return an array value, optionally requiring a specific element kind."""
        entry = self[key]
        if not entry.is_array:
            raise self._mismatch(key, 'array', entry)
        if element_type is not None and entry.element_type != element_type:
            raise self._mismatch(key, f"array[{GGUFValueType(element_type).name.lower()}]", entry)
        return entry.value

    def get_number(self, key: str, cast: Callable[[Any], Any] = int) -> Any:
        """
        Return any numeric value cast with ``cast``.

        Useful when the exact integer or float width doesn't matter. Bool,
        string and array values are not numbers.
        """
        entry = self[key]
        if entry.type not in NUMERIC_TYPES:
            raise self._mismatch(key, 'number', entry)
        try:
            return cast(entry.value)
        except (ValueError, OverflowError) as e:
            raise GGUFTypeMismatchError(
                f"Metadata value '{key}' ({entry.value!r}) cannot be cast: {e}"
            ) from e

    def get_int(self, key: str) -> int:
        return self.get_number(key, int)

    def get_float(self, key: str) -> float:
        return self.get_number(key, float)

    def get_file_type(self) -> FileType:
        """Return the promoted ``general.file_type`` value."""
        entry = self[FILE_TYPE_KEY]
        if not isinstance(entry.value, FileType):
            raise self._mismatch(FILE_TYPE_KEY, 'file type (uint32)', entry)
        return entry.value

    def to_dict(self) -> Dict[str, Any]:
        """Plain ``{key: value}`` view with arrays as lists."""
        return {
            key: list(entry.value) if entry.is_array else entry.value
            for key, entry in self._entries.items()
        }
