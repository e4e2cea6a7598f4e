"""
GGUF type definitions.

This module holds everything the decoder needs to know about the GGUF type
system without touching a byte stream:

- metadata value type codes (``GGUFValueType``)
- tensor element encodings (``GGMLType``) and the quantization size model
- the ``general.file_type`` enumeration (``FileType``)
- byte order handling (``ByteOrder``)
- the exception hierarchy shared by all GGUF modules
"""

from enum import Enum, IntEnum
from types import MappingProxyType
from typing import Iterable, Mapping, NamedTuple, Optional


# ============================================================================
# Type Enumerations
# ============================================================================

class GGUFValueType(IntEnum):
    """Metadata value types in GGUF format."""
    UINT8 = 0
    INT8 = 1
    UINT16 = 2
    INT16 = 3
    UINT32 = 4
    INT32 = 5
    FLOAT32 = 6
    BOOL = 7
    STRING = 8
    ARRAY = 9
    # Added in v2
    UINT64 = 10
    INT64 = 11
    FLOAT64 = 12


class GGMLType(IntEnum):
    """
    Tensor element encodings in GGML/GGUF format.

    Codes are sparse. A descriptor may carry a code that is not listed here;
    such codes still decode to a (pseudo) member so the tensor table can be
    read, and only fail once a size or offset is computed for that tensor.
    """
    F32 = 0
    F16 = 1
    Q4_0 = 2
    Q4_1 = 3
    Q5_0 = 6
    Q5_1 = 7
    Q8_0 = 8
    Q8_1 = 9
    Q2_K = 10
    Q3_K = 11
    Q4_K = 12
    Q5_K = 13
    Q6_K = 14
    Q8_K = 15
    I8 = 16
    I16 = 17
    I32 = 18

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, int) and not isinstance(value, bool):
            member = int.__new__(cls, value)
            member._name_ = f"GGML({value})"
            member._value_ = value
            return member
        return None

    @property
    def is_known(self) -> bool:
        """True if this code is one of the declared encodings."""
        return self._name_ in type(self).__members__


class FileType(IntEnum):
    """
    Type of the majority of the tensors in the file.

    Promoted from the ``general.file_type`` metadata entry. Names match the
    ones llama.cpp prints.
    """
    ALL_F32 = 0
    MOSTLY_F16 = 1
    MOSTLY_Q4_0 = 2
    MOSTLY_Q4_1 = 3
    MOSTLY_Q4_1_SOME_F16 = 4
    MOSTLY_Q4_2 = 5  # support removed from llama.cpp/ggml
    MOSTLY_Q4_3 = 6  # support removed from llama.cpp/ggml
    MOSTLY_Q8_0 = 7
    MOSTLY_Q5_0 = 8
    MOSTLY_Q5_1 = 9
    MOSTLY_Q2_K = 10
    MOSTLY_Q3_KS = 11
    MOSTLY_Q3_KM = 12
    MOSTLY_Q3_KL = 13
    MOSTLY_Q4_KS = 14
    MOSTLY_Q4_KM = 15
    MOSTLY_Q5_KS = 16
    MOSTLY_Q5_KM = 17
    MOSTLY_Q6_K = 18

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, int) and not isinstance(value, bool):
            member = int.__new__(cls, value)
            member._name_ = "UNKNOWN"
            member._value_ = value
            return member
        return None

    def __str__(self) -> str:
        return self._name_


class ByteOrder(Enum):
    """Byte order of a GGUF file; the value is the ``struct`` prefix."""
    LITTLE = '<'
    BIG = '>'

    @property
    def prefix(self) -> str:
        return self.value


# ============================================================================
# Quantization Size Model
# ============================================================================

class TypeSize(NamedTuple):
    """Block geometry of one tensor element encoding."""
    type_size: int   # bytes per block
    block_size: int  # elements per block


QK4_0 = 32
QK4_1 = 32
QK5_0 = 32
QK5_1 = 32
QK8_0 = 32
QK8_1 = 32
QK_K = 256
K_SCALE_SIZE = 12

# Maps tensor types to (type_size, block_size) tuples
# type_size: bytes per block
# block_size: number of elements per block
TYPE_SIZES: Mapping[GGMLType, TypeSize] = MappingProxyType({
    # Standard types
    GGMLType.F32: TypeSize(4, 1),
    GGMLType.F16: TypeSize(2, 1),
    GGMLType.I8: TypeSize(1, 1),
    GGMLType.I16: TypeSize(2, 1),
    GGMLType.I32: TypeSize(4, 1),

    # Quantized types: fp16 scale(s), then packed quants
    GGMLType.Q4_0: TypeSize(2 + QK4_0 // 2, QK4_0),              # 18
    GGMLType.Q4_1: TypeSize(2 * 2 + QK4_1 // 2, QK4_1),          # 20
    GGMLType.Q5_0: TypeSize(2 + 4 + QK5_0 // 2, QK5_0),          # 22
    GGMLType.Q5_1: TypeSize(2 * 2 + 4 + QK5_1 // 2, QK5_1),      # 24
    GGMLType.Q8_0: TypeSize(2 + QK8_0, QK8_0),                   # 34
    GGMLType.Q8_1: TypeSize(2 * 2 + QK8_1, QK8_1),               # 36

    # K-quants: 256-element super-blocks
    GGMLType.Q2_K: TypeSize(QK_K // 16 + QK_K // 4 + 2 * 2, QK_K),               # 84
    GGMLType.Q3_K: TypeSize(QK_K // 8 + QK_K // 4 + 12 + 2, QK_K),               # 110
    GGMLType.Q4_K: TypeSize(2 * 2 + K_SCALE_SIZE + QK_K // 2, QK_K),             # 144
    GGMLType.Q5_K: TypeSize(2 * 2 + K_SCALE_SIZE + QK_K // 8 + QK_K // 2, QK_K), # 176
    GGMLType.Q6_K: TypeSize(QK_K // 2 + QK_K // 4 + QK_K // 16 + 2, QK_K),       # 210
    GGMLType.Q8_K: TypeSize(4 + QK_K + QK_K // 16 * 2, QK_K),                    # 292
})


def element_count(dims: Iterable[int]) -> int:
    """Product of all dimensions; a scalar tensor (no dims) holds one element."""
    n = 1
    for d in dims:
        n *= d
    return n


def tensor_nbytes(ggml_type: int, dims: Iterable[int], name: Optional[str] = None) -> int:
    """
    Calculate the size in bytes of a tensor's data.

    Formula: (n_elements // block_size) * type_size

    The division is an integer division. A shape whose element count is not
    a multiple of the block size loses the remainder, which is what ggml's
    own packing assumes (quantized rows are always block aligned).

    Args:
        ggml_type: Tensor element encoding code
        dims: Dimension sizes, outer-to-inner as stored
        name: Tensor name, used only in the error message

    Returns:
        Size of tensor data in bytes

    Raises:
        GGUFUnknownTensorTypeError: If the encoding is not in TYPE_SIZES
    """
    try:
        type_size, block_size = TYPE_SIZES[ggml_type]
    except KeyError:
        label = f" for tensor '{name}'" if name is not None else ""
        raise GGUFUnknownTensorTypeError(
            f"Unknown tensor type {GGMLType(ggml_type).name} (code {int(ggml_type)}){label}: "
            f"block geometry is not known",
            type_code=int(ggml_type),
        ) from None

    return (element_count(dims) // block_size) * type_size


# ============================================================================
# Exception Classes
# ============================================================================

class GGUFFileError(Exception):
    """Base exception for all GGUF-related errors."""
    pass


class GGUFInvalidMagicError(GGUFFileError):
    """Raised when the magic number doesn't match GGUF format."""

    def __init__(self, message: str, magic: bytes = b''):
        super().__init__(message)
        self.magic = magic


class GGUFVersionError(GGUFFileError):
    """Raised when an unsupported GGUF version is encountered."""

    def __init__(self, message: str, version: Optional[int] = None):
        super().__init__(message)
        self.version = version


class GGUFParseError(GGUFFileError):
    """Raised when a generic parsing error occurs."""
    pass


class GGUFTruncatedError(GGUFFileError):
    """Raised when the file ends unexpectedly or the stream fails to read."""
    pass


class GGUFInvalidTypeError(GGUFFileError):
    """Raised when an invalid metadata type code is encountered."""

    def __init__(self, message: str, type_code: Optional[int] = None):
        super().__init__(message)
        self.type_code = type_code


class GGUFInvalidBoolError(GGUFFileError):
    """Raised when a bool is encoded as a byte other than 0 or 1."""

    def __init__(self, message: str, byte: Optional[int] = None):
        super().__init__(message)
        self.byte = byte


class GGUFAlignmentError(GGUFFileError):
    """Raised when ``general.alignment`` is not a usable Uint32."""
    pass


class GGUFUnknownTensorTypeError(GGUFFileError):
    """Raised when a tensor's element encoding has no known block geometry."""

    def __init__(self, message: str, type_code: Optional[int] = None):
        super().__init__(message)
        self.type_code = type_code


class GGUFNotFoundError(GGUFFileError, KeyError):
    """Raised when a metadata key or tensor name is not present."""

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return str(self.args[0]) if self.args else ''


class GGUFTypeMismatchError(GGUFFileError, TypeError):
    """Raised when a typed accessor is used on a value of another kind."""
    pass
