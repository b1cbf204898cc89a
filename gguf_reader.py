"""
GGUF Reader - decoding of GGUF (GPT-Generated Unified Format) containers.

This module reads a GGUF container from an in-memory byte source: the header,
the typed key/value metadata table, the tensor descriptor table and the aligned
tensor data section. Tensor payloads are never copied or dequantized; each
tensor is bound to a lazy view over the underlying buffer.
"""

import logging
import struct
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

GGUF_MAGIC = b'GGUF'

# Used when the container has no 'general.alignment' metadata entry
DEFAULT_ALIGNMENT = 32

# Number of elements in a K-quant super-block
QK_K = 256


# ============================================================================
# Type Enumerations
# ============================================================================

class GGUFValueType:
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
    UINT64 = 10
    INT64 = 11
    FLOAT64 = 12


class GGMLType:
    """Tensor quantization types in GGML/GGUF format."""
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


# ============================================================================
# Quantization Size Table
# ============================================================================

# Maps quantization types to (block_size, type_size, dtype) tuples
# block_size: number of elements per block
# type_size: bytes per block
# dtype: element type name, empty for packed block formats
GGML_QUANT_SIZES: Dict[int, Tuple[int, int, str]] = {
    GGMLType.F32: (1, 4, 'float32'),
    GGMLType.F16: (1, 2, 'float16'),
    GGMLType.Q4_0: (32, 2 + 16, ''),
    GGMLType.Q4_1: (32, 2 + 2 + 16, ''),
    GGMLType.Q5_0: (32, 2 + 4 + 16, ''),
    GGMLType.Q5_1: (32, 2 + 2 + 4 + 16, ''),
    GGMLType.Q8_0: (32, 2 + 32, ''),
    GGMLType.Q8_1: (32, 4 + 4 + 32, ''),
    GGMLType.Q2_K: (QK_K, 2 + 2 + QK_K // 16 + QK_K // 4, ''),
    GGMLType.Q3_K: (QK_K, 2 + QK_K // 4 + QK_K // 8 + 12, ''),
    GGMLType.Q4_K: (QK_K, 2 + 2 + QK_K // 2 + 12, ''),
    GGMLType.Q5_K: (QK_K, 2 + 2 + QK_K // 2 + QK_K // 8 + 12, ''),
    GGMLType.Q6_K: (QK_K, 2 + QK_K // 2 + QK_K // 4 + QK_K // 16, ''),
    GGMLType.Q8_K: (QK_K, 4 + QK_K + QK_K // 8, ''),
    GGMLType.I8: (1, 4, 'int8'),
    GGMLType.I16: (1, 2, 'int16'),
    GGMLType.I32: (1, 4, 'int32'),
}


# ============================================================================
# Exception Classes
# ============================================================================

class GGUFFileError(Exception):
    """Base exception for all GGUF-related errors."""
    pass


class GGUFInvalidMagicError(GGUFFileError):
    """Raised when the signature doesn't match GGUF format."""
    pass


class GGUFTruncatedError(GGUFFileError):
    """Raised when the byte source ends unexpectedly."""
    pass


class GGUFInvalidTypeError(GGUFFileError):
    """Raised when an unsupported metadata value type code is encountered."""
    pass


class GGUFUnsupportedQuantizationError(GGUFFileError):
    """Raised when a tensor uses a quantization type missing from GGML_QUANT_SIZES."""
    pass


class GGUFInvalidAlignmentError(GGUFFileError):
    """Raised when 'general.alignment' is not a non-negative integer."""
    pass


def tensor_byte_size(tensor_type: int, ne: List[int], name: Optional[str] = None) -> int:
    """
    Calculate the size in bytes of a tensor's data.

    Formula: floor(n_elements * type_size / block_size)

    Args:
        tensor_type: GGML quantization type code
        ne: Dimension sizes of the tensor
        name: Tensor name to report in errors

    Returns:
        Size of tensor data in bytes

    Raises:
        GGUFUnsupportedQuantizationError: If tensor_type is not in GGML_QUANT_SIZES
    """
    if tensor_type not in GGML_QUANT_SIZES:
        context = f" (tensor: '{name}')" if name is not None else ""
        raise GGUFUnsupportedQuantizationError(
            f"Unsupported tensor quantization type {tensor_type}{context}"
        )
    block_size, type_size, _ = GGML_QUANT_SIZES[tensor_type]
    n_elements = 1
    for dim in ne:
        n_elements *= dim
    return (n_elements * type_size) // block_size


# ============================================================================
# Byte Source
# ============================================================================

class ByteStream:
    """
    Seekable, finite-length byte source over an in-memory buffer.

    The buffer is wrapped in a memoryview, so reads and sub-streams are views
    into the original object rather than copies.
    """

    def __init__(self, buffer):
        view = memoryview(buffer)
        if view.format != 'B' or view.ndim != 1:
            view = view.cast('B')
        self._buffer = view
        self._position = 0
        self.length = len(view)

    @property
    def position(self) -> int:
        return self._position

    def tell(self) -> int:
        return self._position

    def seek(self, position: int) -> None:
        if position > self.length:
            raise GGUFTruncatedError(
                f"Unexpected end of stream: cannot seek to position {position}, "
                f"stream length is {self.length}"
            )
        self._position = position

    def skip(self, offset: int) -> None:
        self.seek(self._position + offset)

    def peek(self, length: Optional[int] = None) -> memoryview:
        """Return up to length bytes at the cursor without advancing it."""
        end = self.length if length is None else min(self._position + length, self.length)
        return self._buffer[self._position:end]

    def read(self, length: int) -> memoryview:
        """
        Read exactly length bytes and advance the cursor.

        Raises:
            GGUFTruncatedError: If fewer than length bytes remain
        """
        position = self._position
        available = self.length - position
        if length > available:
            raise GGUFTruncatedError(
                f"Unexpected end of stream at position {position}: "
                f"expected to read {length} bytes, only {available} bytes available"
            )
        self._position = position + length
        return self._buffer[position:self._position]

    def stream(self, length: int) -> 'ByteStream':
        """Return a sub-stream over the next length bytes and advance past them."""
        return ByteStream(self.read(length))


# ============================================================================
# Descriptors
# ============================================================================

class MetadataEntry(NamedTuple):
    """A decoded metadata key/value pair with its GGUF value type code."""
    name: str
    type: int
    value: Any


class TensorInfo:
    """
    Tensor descriptor from the tensor table.

    'offset' is relative to the aligned data section. 'dtype' and 'data' are
    filled in once the data section has been located; 'data' stays None when
    the container holds no tensor data.
    """

    def __init__(self, name: str, ne: List[int], tensor_type: int, offset: int):
        self.name = name
        self.ne = ne
        self.type = tensor_type
        self.offset = offset
        self.dtype: Optional[str] = None
        self.data: Optional[ByteStream] = None

    @property
    def n_dims(self) -> int:
        return len(self.ne)

    @property
    def n_elements(self) -> int:
        n_elements = 1
        for dim in self.ne:
            n_elements *= dim
        return n_elements

    @property
    def n_bytes(self) -> int:
        return tensor_byte_size(self.type, self.ne, self.name)

    def __repr__(self) -> str:
        return (
            f"TensorInfo(name={self.name!r}, ne={self.ne!r}, type={self.type}, "
            f"offset={self.offset}, dtype={self.dtype!r})"
        )


# ============================================================================
# GGUFStreamReader Class
# ============================================================================

class GGUFStreamReader:
    """Little-endian primitive and typed-value decoding over a ByteStream."""

    # Scalar value types decoded directly with struct.unpack
    SCALAR_FORMATS = {
        GGUFValueType.UINT32: ('<I', 4),
        GGUFValueType.INT32: ('<i', 4),
        GGUFValueType.FLOAT32: ('<f', 4),
    }

    def __init__(self, stream: ByteStream):
        self._stream = stream

    @property
    def position(self) -> int:
        return self._stream.tell()

    def seek(self, position: int) -> None:
        self._stream.seek(position)

    def read(self, length: int) -> memoryview:
        return self._stream.read(length)

    def stream(self, length: int) -> ByteStream:
        return self._stream.stream(length)

    def byte(self) -> int:
        return self._stream.read(1)[0]

    def uint32(self) -> int:
        return struct.unpack('<I', self._stream.read(4))[0]

    def int32(self) -> int:
        return struct.unpack('<i', self._stream.read(4))[0]

    def uint64(self) -> int:
        return struct.unpack('<Q', self._stream.read(8))[0]

    def float32(self) -> float:
        return struct.unpack('<f', self._stream.read(4))[0]

    def string(self) -> str:
        """
        Read a length-prefixed string.

        GGUF strings are encoded as:
        - uint64: length of the string in bytes
        - bytes: string data

        Each byte maps to one character; no encoding validation is done.
        """
        length = self.uint64()
        return bytes(self._stream.read(length)).decode('latin-1')

    def value(self, value_type: int) -> Any:
        """
        Read a single metadata value based on its type.

        Arrays are encoded as a uint32 element type, a uint64 element count
        and that many values of the element type. Arrays of arrays are
        decoded recursively.

        Args:
            value_type: The GGUF value type code (from GGUFValueType)

        Returns:
            int, float, bool, str or list depending on value_type

        Raises:
            GGUFInvalidTypeError: If value_type is not supported
            GGUFTruncatedError: If the stream ends before the value is read
        """
        if value_type in self.SCALAR_FORMATS:
            fmt, size = self.SCALAR_FORMATS[value_type]
            return struct.unpack(fmt, self._stream.read(size))[0]
        elif value_type == GGUFValueType.BOOL:
            return self.byte() != 0
        elif value_type == GGUFValueType.STRING:
            return self.string()
        elif value_type == GGUFValueType.ARRAY:
            element_type = self.uint32()
            length = self.uint64()
            return [self.value(element_type) for _ in range(length)]
        raise GGUFInvalidTypeError(
            f"Unsupported GGUF value type {value_type} at position {self.position}"
        )

    def entry(self) -> MetadataEntry:
        """Read one metadata entry: name, uint32 value type, value."""
        name = self.string()
        value_type = self.uint32()
        return MetadataEntry(name, value_type, self.value(value_type))

    def tensor(self) -> TensorInfo:
        """
        Read one tensor descriptor.

        Each record is encoded as:
        - name: length-prefixed string
        - n_dims: uint32 number of dimensions
        - dims: n_dims uint64 dimension sizes
        - type: uint32 quantization type code
        - offset: uint64 offset from the data section start
        """
        name = self.string()
        n_dims = self.uint32()
        ne = [self.uint64() for _ in range(n_dims)]
        tensor_type = self.uint32()
        offset = self.uint64()
        return TensorInfo(name, ne, tensor_type, offset)


# ============================================================================
# GGUFReader Class
# ============================================================================

class GGUFReader:
    """
    Reader for GGUF containers held by a ByteStream.

    Usage:
        reader = GGUFReader.open(ByteStream(buffer))
        if reader is not None:
            reader.read()
            metadata = reader.metadata
            data = reader.get_tensor_data('token_embd.weight')
    """

    def __init__(self, stream: ByteStream):
        """
        Initialize the reader over a byte source.

        Args:
            stream: The byte source; borrowed for the duration of read()
        """
        self._stream = stream
        self.header: Dict[str, Any] = {}
        self.format: Optional[str] = None
        self.metadata: Dict[str, Any] = {}
        self.metadata_types: Dict[str, int] = {}
        self.tensors: Dict[str, TensorInfo] = {}
        self.alignment: int = DEFAULT_ALIGNMENT
        self.tensor_data_base: int = 0

    @classmethod
    def open(cls, stream: Optional[ByteStream]) -> Optional['GGUFReader']:
        """
        Return a reader if the stream starts with the GGUF signature, else None.

        A mismatching signature is not an error here; it only means another
        decoder should be tried.
        """
        if stream is not None and stream.length > 4:
            if bytes(stream.peek(4)) == GGUF_MAGIC:
                return cls(stream)
        return None

    def read(self) -> None:
        """
        Decode the whole container.

        On success the header, format, metadata and tensors are published
        on the reader and the stream cursor is reset to position 0. On
        failure nothing is published and the exception propagates.

        Raises:
            GGUFInvalidMagicError: If the signature is not GGUF
            GGUFInvalidTypeError: If a metadata value type is unsupported
            GGUFUnsupportedQuantizationError: If a tensor type is unknown
            GGUFInvalidAlignmentError: If general.alignment is not a non-negative integer
            GGUFTruncatedError: If the stream ends before decoding completes
        """
        reader = GGUFStreamReader(self._stream)
        header = self._read_header(reader)
        metadata: Dict[str, Any] = {}
        metadata_types: Dict[str, int] = {}
        tensors: Dict[str, TensorInfo] = {}
        alignment = DEFAULT_ALIGNMENT
        tensor_data_base = 0

        if header['version'] >= 2:
            header['tensor_count'] = reader.uint64()
            header['metadata_kv_count'] = reader.uint64()
            logger.debug(
                "GGUF v%d: %d tensors, %d metadata entries",
                header['version'], header['tensor_count'], header['metadata_kv_count'],
            )
            for _ in range(header['metadata_kv_count']):
                entry = reader.entry()
                metadata[entry.name] = entry.value
                metadata_types[entry.name] = entry.type
            for _ in range(header['tensor_count']):
                tensor = reader.tensor()
                tensors[tensor.name] = tensor

            alignment, tensor_data_base = self._calculate_alignment(reader, metadata, metadata_types)
            if tensor_data_base < self._stream.length:
                self._read_tensor_data(reader, tensors, tensor_data_base)
            else:
                logger.debug(
                    "Data section base %d is at or beyond end of stream (%d bytes), "
                    "tensor data not bound", tensor_data_base, self._stream.length,
                )
        else:
            logger.debug("GGUF v%d container has no readable entries", header['version'])

        self._stream.seek(0)

        self.header = header
        self.format = f"GGUF v{header['version']}"
        self.metadata = metadata
        self.metadata_types = metadata_types
        self.tensors = tensors
        self.alignment = alignment
        self.tensor_data_base = tensor_data_base

    def get_version(self) -> int:
        """Return the GGUF format version, 0 before read()."""
        return self.header.get('version', 0)

    def get_metadata_value(self, key: str) -> Any:
        """
        Return a specific metadata value by key.

        Raises:
            KeyError: If the key doesn't exist in metadata
        """
        return self.metadata[key]

    def list_tensors(self) -> List[str]:
        """Return the tensor names in table order."""
        return list(self.tensors)

    def get_tensor_info(self, name: str) -> TensorInfo:
        """
        Return a tensor descriptor by name.

        Raises:
            KeyError: If the tensor name doesn't exist
        """
        if name not in self.tensors:
            raise KeyError(f"Tensor '{name}' not found")
        return self.tensors[name]

    def get_tensor_data(self, name: str) -> memoryview:
        """
        Return the raw bytes of a tensor as a view into the byte source.

        Raises:
            KeyError: If the tensor name doesn't exist
            GGUFTruncatedError: If the container holds no tensor data
        """
        tensor = self.get_tensor_info(name)
        if tensor.data is None:
            raise GGUFTruncatedError(
                f"No data for tensor '{name}': data section at position "
                f"{self.tensor_data_base} is beyond end of stream ({self._stream.length} bytes)"
            )
        return tensor.data.peek()

    # ========================================================================
    # Internal Parsing Methods
    # ========================================================================

    def _read_header(self, reader: GGUFStreamReader) -> Dict[str, Any]:
        """
        Read and validate the signature and version.

        Raises:
            GGUFInvalidMagicError: If the signature doesn't match GGUF format
        """
        position = reader.position
        magic = bytes(reader.read(4))
        if magic != GGUF_MAGIC:
            raise GGUFInvalidMagicError(
                f"Invalid GGUF signature at position {position}: "
                f"expected {GGUF_MAGIC!r}, got {magic!r}"
            )
        return {'magic': magic, 'version': reader.uint32()}

    def _calculate_alignment(self, reader: GGUFStreamReader, metadata: Dict[str, Any],
                             metadata_types: Dict[str, int]) -> Tuple[int, int]:
        """
        Calculate the aligned base offset of the tensor data section.

        An absent or zero 'general.alignment' means DEFAULT_ALIGNMENT.

        Returns:
            (alignment, tensor_data_base)

        Raises:
            GGUFInvalidAlignmentError: If 'general.alignment' is not a
                non-negative integer
        """
        alignment = metadata.get('general.alignment', DEFAULT_ALIGNMENT)
        if isinstance(alignment, bool) or not isinstance(alignment, int) or alignment < 0:
            raise GGUFInvalidAlignmentError(
                f"Invalid general.alignment {alignment!r} "
                f"(value type {metadata_types.get('general.alignment')})"
            )
        alignment = alignment or DEFAULT_ALIGNMENT
        position = reader.position
        padding = position % alignment
        if padding != 0:
            position += alignment - padding
        logger.debug("Tensor data section at %d (alignment %d)", position, alignment)
        return alignment, position

    def _read_tensor_data(self, reader: GGUFStreamReader, tensors: Dict[str, TensorInfo],
                          tensor_data_base: int) -> None:
        """
        Resolve dtype and bind a lazy data view for every tensor.

        Raises:
            GGUFUnsupportedQuantizationError: If a tensor type is unknown
            GGUFTruncatedError: If a tensor's data runs past the end of stream
        """
        for tensor in tensors.values():
            reader.seek(tensor_data_base + tensor.offset)
            n_bytes = tensor.n_bytes
            _, _, dtype = GGML_QUANT_SIZES[tensor.type]
            tensor.dtype = dtype or '?'
            tensor.data = reader.stream(n_bytes)
