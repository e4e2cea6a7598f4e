"""
Test helpers that encode GGUF byte streams.

Used only by the test suite; the library itself never writes GGUF. Supports
versions 1-3 and both byte orders so the decoder can be exercised without
fixture files.
"""

import struct
from typing import Any, List, Optional, Sequence, Tuple

from gguf_types import TYPE_SIZES, GGUFValueType, tensor_nbytes
from gguf_values import SCALAR_FORMATS


GGUF_MAGIC = b'GGUF'


def uint_code(version: int) -> str:
    return 'I' if version == 1 else 'Q'


def encode_uint(value: int, version: int = 3, order: str = '<') -> bytes:
    """Encode a version-width unsigned integer (count, length or offset)."""
    return struct.pack(order + uint_code(version), value)


def encode_string(text: str, version: int = 3, order: str = '<') -> bytes:
    data = text.encode('utf-8')
    return encode_uint(len(data), version, order) + data


def encode_raw_string(data: bytes, version: int = 3, order: str = '<') -> bytes:
    return encode_uint(len(data), version, order) + data


def encode_scalar(value_type: int, value: Any, version: int = 3, order: str = '<') -> bytes:
    """Encode a scalar payload (no type code)."""
    value_type = GGUFValueType(value_type)
    if value_type in SCALAR_FORMATS:
        code, _ = SCALAR_FORMATS[value_type]
        return struct.pack(order + code, value)
    if value_type == GGUFValueType.BOOL:
        return struct.pack('B', int(value))
    if value_type == GGUFValueType.STRING:
        return encode_string(value, version, order)
    raise ValueError(f"not a scalar type: {value_type}")


def encode_value(
    value_type: int,
    value: Any,
    element_type: Optional[int] = None,
    version: int = 3,
    order: str = '<',
) -> bytes:
    """Encode a typed value: type code, then payload."""
    out = struct.pack(order + 'I', value_type)
    if value_type == GGUFValueType.ARRAY:
        out += struct.pack(order + 'I', element_type)
        out += encode_uint(len(value), version, order)
        for element in value:
            out += encode_scalar(element_type, element, version, order)
        return out
    return out + encode_scalar(value_type, value, version, order)


def encode_tensor_info(
    name: str,
    dims: Sequence[int],
    ggml_type: int,
    offset: int,
    version: int = 3,
    order: str = '<',
) -> bytes:
    out = encode_string(name, version, order)
    out += struct.pack(order + 'I', len(dims))
    for d in dims:
        out += encode_uint(d, version, order)
    out += struct.pack(order + 'I', ggml_type)
    out += encode_uint(offset, version, order)
    return out


def align(position: int, alignment: int) -> int:
    return (position + alignment - 1) // alignment * alignment


class GGUFBuilder:
    """
    Accumulates metadata and tensors, then encodes a complete GGUF file.

    Tensor offsets are assigned back to back, each aligned to the file's
    alignment, unless an explicit offset is given.
    """

    def __init__(self, version: int = 3, order: str = '<', alignment: int = 32):
        self.version = version
        self.order = order
        self.alignment = alignment
        self.metadata: List[Tuple[str, int, Any, Optional[int]]] = []
        self.tensors: List[Tuple[str, Tuple[int, ...], int, int, bytes]] = []
        self._next_offset = 0

    def add_metadata(self, key: str, value_type: int, value: Any, element_type: Optional[int] = None) -> 'GGUFBuilder':
        self.metadata.append((key, value_type, value, element_type))
        return self

    def add_tensor(
        self,
        name: str,
        dims: Sequence[int],
        ggml_type: int,
        data: Optional[bytes] = None,
        offset: Optional[int] = None,
    ) -> 'GGUFBuilder':
        if data is None:
            size = tensor_nbytes(ggml_type, dims) if ggml_type in TYPE_SIZES else 0
            data = bytes((len(self.tensors) + i) % 251 for i in range(size))
        if offset is None:
            offset = align(self._next_offset, self.alignment)
        self._next_offset = offset + len(data)
        self.tensors.append((name, tuple(dims), ggml_type, offset, data))
        return self

    def header_bytes(self) -> bytes:
        """Everything up to the end of the tensor descriptor table."""
        v, o = self.version, self.order
        out = GGUF_MAGIC
        out += struct.pack(o + 'I', v)
        out += encode_uint(len(self.tensors), v, o)
        out += encode_uint(len(self.metadata), v, o)
        for key, value_type, value, element_type in self.metadata:
            out += encode_string(key, v, o)
            out += encode_value(value_type, value, element_type, v, o)
        for name, dims, ggml_type, offset, _ in self.tensors:
            out += encode_tensor_info(name, dims, ggml_type, offset, v, o)
        return out

    def data_offset(self) -> int:
        return align(len(self.header_bytes()), self.alignment)

    def build(self) -> bytes:
        """The complete file: header, padding, then tensor data at each offset."""
        header = self.header_bytes()
        out = bytearray(header)
        out += b'\x00' * (align(len(header), self.alignment) - len(header))
        base = len(out)
        for _, _, _, offset, data in self.tensors:
            end = base + offset + len(data)
            if len(out) < end:
                out += b'\x00' * (end - len(out))
            out[base + offset:end] = data
        return bytes(out)


def encode_container(container) -> bytes:
    """
    Re-serialize a decoded container up to the end of its tensor table.

    Used by the round-trip tests: for inputs whose strings carry no
    leading/trailing whitespace or NUL, this reproduces the original prefix.
    """
    v = container.version
    o = container.byte_order.prefix
    out = GGUF_MAGIC
    out += struct.pack(o + 'I', v)
    out += encode_uint(len(container.tensors), v, o)
    out += encode_uint(len(container.metadata), v, o)
    for key, entry in container.metadata.items():
        out += encode_string(key, v, o)
        out += encode_value(entry.type, entry.value, entry.element_type, v, o)
    for info in container.tensors:
        out += encode_tensor_info(info.name, info.dims, info.ggml_type, info.offset, v, o)
    return out
