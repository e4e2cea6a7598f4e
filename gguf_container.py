"""
GGUF Container - decoding of GGUF (GPT-Generated Unified Format) files.

A GGUF file is laid out as:

- 4 bytes: magic ``GGUF``
- 4 bytes: version (1, 2 or 3). Version 3 files may be big-endian; the
  high byte of the version field is non-zero in that case.
- version-width: tensor_count, metadata_kv_count
  (32-bit in version 1, 64-bit in versions 2 and 3)
- metadata_kv_count key/value pairs
- tensor_count tensor descriptors
- padding up to ``general.alignment`` (default 32)
- tensor data, located by each descriptor's relative offset

``open_gguf`` decodes everything up to the tensor data eagerly and returns
an immutable ``GGUFContainer``. ``GGUFReader`` wraps a file path, keeps the
file open for tensor data access and hands out bounded ``TensorSection``
views.
"""

import io
import logging
import os
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Dict, List, Optional, Tuple, Union

from gguf_types import (
    ByteOrder,
    FileType,
    GGMLType,
    GGUFAlignmentError,
    GGUFFileError,
    GGUFInvalidMagicError,
    GGUFNotFoundError,
    GGUFParseError,
    GGUFTruncatedError,
    GGUFValueType,
    element_count,
    tensor_nbytes,
)
from gguf_values import (
    ALIGNMENT_KEY,
    FILE_TYPE_KEY,
    MAX_STRING_LENGTH,
    GGUFMetadata,
    MetadataValue,
    StreamDecoder,
    read_value,
)

logger = logging.getLogger(__name__)


GGUF_MAGIC = b'GGUF'
DEFAULT_ALIGNMENT = 32


# ============================================================================
# Decoded Structures
# ============================================================================

@dataclass(frozen=True)
class TensorInfo:
    """
    One entry of the tensor descriptor table.

    ``offset`` is relative to the start of the tensor data region, not to the
    start of the file; see ``GGUFContainer.byte_range``.
    """
    name: str
    dims: Tuple[int, ...]
    ggml_type: GGMLType
    offset: int

    @property
    def n_dims(self) -> int:
        return len(self.dims)

    @property
    def n_elements(self) -> int:
        """Total number of elements (1 for a scalar tensor)."""
        return element_count(self.dims)

    @property
    def n_bytes(self) -> int:
        """
        Size of the tensor data in bytes.

        Raises:
            GGUFUnknownTensorTypeError: If the element encoding is not known
        """
        return tensor_nbytes(self.ggml_type, self.dims, self.name)


@dataclass(frozen=True)
class GGUFContainer:
    """Fully decoded header, metadata and tensor table of one GGUF file."""
    version: int
    byte_order: ByteOrder
    metadata: GGUFMetadata
    tensors: Tuple[TensorInfo, ...]
    alignment: int
    data_offset: int
    source: str = field(default='<stream>', compare=False)

    def tensor_names(self) -> List[str]:
        return [t.name for t in self.tensors]

    def find_tensor(self, name: str) -> TensorInfo:
        """
        Return the first tensor descriptor named ``name``.

        The format does not require unique names; later duplicates are
        unreachable by name but still present in ``tensors``.

        Raises:
            GGUFNotFoundError: If no tensor has that name
        """
        for info in self.tensors:
            if info.name == name:
                return info
        raise GGUFNotFoundError(f"Tensor '{name}' not found")

    def tensor_offset(self, tensor: TensorInfo) -> int:
        """Absolute file offset where the tensor's data begins."""
        return self.data_offset + tensor.offset

    def byte_range(self, tensor: Union[TensorInfo, str]) -> Tuple[int, int]:
        """
        Absolute ``(offset, length)`` of a tensor's data.

        The data occupies ``[offset, offset + length)`` in the file.

        Args:
            tensor: A descriptor from this container, or a tensor name

        Raises:
            GGUFNotFoundError: If a name is given and no tensor has it
            GGUFUnknownTensorTypeError: If the element encoding is not known
        """
        if isinstance(tensor, str):
            tensor = self.find_tensor(tensor)
        return self.tensor_offset(tensor), tensor.n_bytes

    def total_tensor_bytes(self) -> int:
        """
        Sum of the data sizes of all tensors.

        Useful for progress reporting while reading the whole data region.
        """
        return sum(t.n_bytes for t in self.tensors)

    @property
    def file_type(self) -> Optional[FileType]:
        """The promoted ``general.file_type``, or None if absent or not a Uint32."""
        entry = self.metadata.get(FILE_TYPE_KEY)
        if entry is not None and isinstance(entry.value, FileType):
            return entry.value
        return None


# ============================================================================
# Header Parser
# ============================================================================

def _read_header(decoder: StreamDecoder) -> Tuple[int, int, int]:
    """
    Read and validate magic, version and byte order, then the two counts.

    Returns:
        (version, tensor_count, metadata_kv_count)
    """
    position = decoder.tell()

    magic = decoder.read_exact(4, 'magic number')
    if magic != GGUF_MAGIC:
        raise GGUFInvalidMagicError(
            f"Invalid GGUF magic number in file '{decoder.source}' at position {position}: "
            f"expected {GGUF_MAGIC!r}, got {magic!r}",
            magic=magic,
        )

    # The last byte of the version field is zero for any small little-endian
    # version, so a non-zero value marks a big-endian file.
    version_bytes = decoder.read_exact(4, 'version')
    decoder.byte_order = ByteOrder.BIG if version_bytes[3] != 0 else ByteOrder.LITTLE

    version = int.from_bytes(
        version_bytes, 'big' if decoder.byte_order is ByteOrder.BIG else 'little'
    )
    decoder.bind_version(version)

    tensor_count = decoder.read_uint('tensor_count')
    metadata_kv_count = decoder.read_uint('metadata_kv_count')

    logger.debug(
        "%s: GGUF v%d, %s-endian, %d tensors, %d metadata entries",
        decoder.source, version, decoder.byte_order.name.lower(), tensor_count, metadata_kv_count,
    )
    return version, tensor_count, metadata_kv_count


def _read_metadata(decoder: StreamDecoder, metadata_kv_count: int) -> Dict[str, MetadataValue]:
    """
    Parse all metadata key-value pairs.

    Each pair is encoded as:
    - key: length-prefixed string
    - value: type code followed by the value (see ``read_value``)

    Duplicate keys overwrite earlier ones. A Uint32 ``general.file_type`` is
    promoted to ``FileType``.
    """
    entries: Dict[str, MetadataValue] = {}

    for _ in range(metadata_kv_count):
        key = decoder.read_string('metadata key')
        try:
            value = read_value(decoder)
        except GGUFFileError as e:
            e.args = (f"{e.args[0]} (metadata key: '{key}')",) + e.args[1:]
            raise

        if key == FILE_TYPE_KEY and value.type == GGUFValueType.UINT32:
            value = MetadataValue(value.type, FileType(value.value))

        if key in entries:
            logger.warning("%s: duplicate metadata key '%s', keeping the last value", decoder.source, key)
        entries[key] = value

    return entries


def _resolve_alignment(decoder: StreamDecoder, entries: Dict[str, MetadataValue]) -> int:
    entry = entries.get(ALIGNMENT_KEY)
    if entry is None:
        return DEFAULT_ALIGNMENT

    if entry.type != GGUFValueType.UINT32:
        raise GGUFAlignmentError(
            f"Invalid alignment type in file '{decoder.source}': "
            f"'{ALIGNMENT_KEY}' must be uint32, got {entry.kind_name()}"
        )
    if entry.value == 0:
        raise GGUFAlignmentError(
            f"Invalid alignment in file '{decoder.source}': '{ALIGNMENT_KEY}' must not be 0"
        )
    return entry.value


def _read_tensor_info(decoder: StreamDecoder, tensor_count: int) -> List[TensorInfo]:
    """
    Parse all tensor descriptors.

    Each descriptor is encoded as:
    - name: length-prefixed string
    - n_dims: uint32 number of dimensions
    - dims: n_dims version-width dimension sizes
    - type: uint32 element encoding code (unknown codes are kept)
    - offset: version-width offset from the tensor data section start
    """
    tensors: List[TensorInfo] = []
    seen = set()
    previous_offset = 0

    for _ in range(tensor_count):
        name = decoder.read_string('tensor name')
        n_dims = decoder.read_u32(f"n_dims (tensor: '{name}')")
        dims = tuple(decoder.read_uint(f"dimension {i} (tensor: '{name}')") for i in range(n_dims))
        ggml_type = GGMLType(decoder.read_u32(f"tensor type (tensor: '{name}')"))
        offset = decoder.read_uint(f"offset (tensor: '{name}')")

        if name in seen:
            logger.warning("%s: duplicate tensor name '%s', lookups return the first", decoder.source, name)
        if offset < previous_offset:
            logger.warning(
                "%s: tensor '%s' offset %d is below the previous tensor's offset %d",
                decoder.source, name, offset, previous_offset,
            )
        seen.add(name)
        previous_offset = offset

        tensors.append(TensorInfo(name=name, dims=dims, ggml_type=ggml_type, offset=offset))

    return tensors


def align_offset(position: int, alignment: int) -> int:
    """Smallest multiple of ``alignment`` that is >= ``position``."""
    return (position + alignment - 1) // alignment * alignment


def open_gguf(
    stream: BinaryIO,
    source: Optional[str] = None,
    max_string_length: int = MAX_STRING_LENGTH,
) -> GGUFContainer:
    """
    Decode a GGUF header, metadata and tensor table from ``stream``.

    The stream must be binary, seekable and positioned at the start of the
    GGUF data. On return it is positioned at the end of the tensor table.
    Nothing partially decoded is returned: any error aborts the whole call.

    Args:
        stream: Seekable binary stream
        source: Name used in error messages (defaults to the stream's name)
        max_string_length: Upper bound on any single string length

    Returns:
        The decoded GGUFContainer

    Raises:
        GGUFInvalidMagicError: If the stream does not start with ``GGUF``
        GGUFVersionError: If the version is not 1, 2 or 3
        GGUFTruncatedError: If the stream ends early or fails to read
        GGUFInvalidTypeError: If a metadata type code is unknown
        GGUFInvalidBoolError: If a bool is not encoded as 0 or 1
        GGUFAlignmentError: If ``general.alignment`` is not a non-zero Uint32
        GGUFParseError: If a length is malformed
    """
    if source is None:
        source = str(getattr(stream, 'name', '<stream>'))

    decoder = StreamDecoder(stream, source=source, max_string_length=max_string_length)

    version, tensor_count, metadata_kv_count = _read_header(decoder)
    entries = _read_metadata(decoder, metadata_kv_count)
    alignment = _resolve_alignment(decoder, entries)
    tensors = _read_tensor_info(decoder, tensor_count)

    data_offset = align_offset(decoder.tell(), alignment)
    logger.debug("%s: alignment %d, tensor data at offset %d", source, alignment, data_offset)

    return GGUFContainer(
        version=version,
        byte_order=decoder.byte_order,
        metadata=GGUFMetadata(entries),
        tensors=tuple(tensors),
        alignment=alignment,
        data_offset=data_offset,
        source=source,
    )


# ============================================================================
# Tensor Data Access
# ============================================================================

class TensorSection(io.RawIOBase):
    """
    Read-only, seekable view of ``length`` bytes starting at ``offset``.

    The view keeps its own position and repositions the shared stream before
    every read, so several sections over the same stream can be read in turn.
    They must not be read from different threads at the same time.
    """

    def __init__(self, stream: BinaryIO, offset: int, length: int, name: str = ''):
        super().__init__()
        self._stream = stream
        self.offset = offset
        self.length = length
        self.name = name
        self._pos = 0

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def tell(self) -> int:
        return self._pos

    def seek(self, pos: int, whence: int = io.SEEK_SET) -> int:
        if whence == io.SEEK_SET:
            new = pos
        elif whence == io.SEEK_CUR:
            new = self._pos + pos
        elif whence == io.SEEK_END:
            new = self.length + pos
        else:
            raise ValueError(f"invalid whence ({whence})")
        if new < 0:
            raise ValueError(f"negative seek position {new}")
        self._pos = new
        return self._pos

    def readinto(self, buffer) -> int:
        if self.closed:
            raise ValueError("I/O operation on closed section")
        remaining = self.length - self._pos
        if remaining <= 0:
            return 0
        view = memoryview(buffer).cast('B')
        size = min(len(view), remaining)
        self._stream.seek(self.offset + self._pos)
        data = self._stream.read(size)
        n = len(data)
        view[:n] = data
        self._pos += n
        return n


class GGUFReader:
    """
    Reader for GGUF (GPT-Generated Unified Format) files.

    Opening the reader decodes the header, metadata and tensor table; the
    file stays open so tensor data can be read afterwards.

    Usage:
        with GGUFReader('model.gguf') as reader:
            metadata = reader.get_metadata()
            tensors = reader.list_tensors()
            data = reader.get_tensor_data('token_embd.weight')
    """

    def __init__(
        self,
        filepath: Union[str, 'os.PathLike[str]'],
        max_string_length: int = MAX_STRING_LENGTH,
        cache_tensor_data: bool = True,
    ):
        """
        Initialize the GGUF reader with a file path.

        Args:
            filepath: Path to the GGUF file to read
            max_string_length: Upper bound on any single string length
            cache_tensor_data: Keep tensor bytes returned by get_tensor_data
        """
        self.filepath = os.fspath(filepath)
        self.max_string_length = max_string_length
        self.cache_tensor_data = cache_tensor_data
        self.file: Optional[BinaryIO] = None
        self.container: Optional[GGUFContainer] = None
        self.tensor_data_cache: Dict[str, bytes] = {}

    def __enter__(self) -> 'GGUFReader':
        """
        Context manager entry - opens and parses the file.

        Raises:
            GGUFFileError: If the file doesn't exist or cannot be opened
            GGUFInvalidMagicError: If the file is not a valid GGUF file
            GGUFTruncatedError: If the file is truncated
        """
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return None

    def open(self) -> GGUFContainer:
        """Open the file and decode it; calling it again is a no-op."""
        if self.container is not None:
            return self.container

        try:
            self.file = open(self.filepath, 'rb')
        except FileNotFoundError as e:
            raise GGUFFileError(f"File not found: '{self.filepath}'") from e
        except OSError as e:
            raise GGUFFileError(f"Cannot open '{self.filepath}': {e}") from e

        try:
            self.container = open_gguf(
                self.file, source=self.filepath, max_string_length=self.max_string_length
            )
        except Exception:
            self.close()
            raise
        return self.container

    def close(self) -> None:
        if self.file is not None:
            self.file.close()
            self.file = None
        self.container = None
        self.tensor_data_cache.clear()

    def _require_container(self) -> GGUFContainer:
        if self.container is None:
            raise GGUFParseError("File is not open")
        return self.container

    # ------------------------------------------------------------------------
    # Metadata and tensor table
    # ------------------------------------------------------------------------

    def get_version(self) -> int:
        return self._require_container().version

    def get_metadata(self) -> GGUFMetadata:
        return self._require_container().metadata

    def get_metadata_value(self, key: str) -> Any:
        """
        Return the Python value of a metadata entry.

        Raises:
            GGUFNotFoundError: If the key doesn't exist in metadata
        """
        return self._require_container().metadata.get_value(key)

    def list_tensors(self) -> List[str]:
        return self._require_container().tensor_names()

    def get_tensor_count(self) -> int:
        return len(self._require_container().tensors)

    def get_tensor_info(self, name: str) -> TensorInfo:
        return self._require_container().find_tensor(name)

    # ------------------------------------------------------------------------
    # Tensor data
    # ------------------------------------------------------------------------

    def open_tensor(self, name: str) -> TensorSection:
        """
        Return a bounded, seekable view of a tensor's data.

        Raises:
            GGUFNotFoundError: If the tensor name doesn't exist
            GGUFUnknownTensorTypeError: If the element encoding is not known
        """
        container = self._require_container()
        offset, length = container.byte_range(name)
        return TensorSection(self.file, offset, length, name=name)

    def get_tensor_data(self, name: str) -> bytes:
        """
        Return raw tensor data as bytes.

        The data is cached after the first read unless the reader was built
        with ``cache_tensor_data=False``.

        Raises:
            GGUFNotFoundError: If the tensor name doesn't exist
            GGUFUnknownTensorTypeError: If the element encoding is not known
            GGUFTruncatedError: If the file ends before all tensor data is read
        """
        if name in self.tensor_data_cache:
            return self.tensor_data_cache[name]

        section = self.open_tensor(name)
        try:
            data = section.read(section.length)
        except OSError as e:
            raise GGUFTruncatedError(
                f"Read error in file '{self.filepath}' at position {section.offset} "
                f"for tensor '{name}': {e}"
            ) from e

        if len(data) < section.length:
            raise GGUFTruncatedError(
                f"Unexpected end of file '{self.filepath}' at position {section.offset}: "
                f"expected to read {section.length} bytes for tensor '{name}', "
                f"only {len(data)} bytes available"
            )

        if self.cache_tensor_data:
            self.tensor_data_cache[name] = data
        return data
