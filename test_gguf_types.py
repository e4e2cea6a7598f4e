"""
Tests for GGUF type definitions: enumerations, the quantization size model
and the exception hierarchy.
"""

import pytest
from hypothesis import given, strategies as st

from gguf_types import (
    TYPE_SIZES,
    ByteOrder,
    FileType,
    GGMLType,
    GGUFAlignmentError,
    GGUFFileError,
    GGUFInvalidBoolError,
    GGUFInvalidMagicError,
    GGUFInvalidTypeError,
    GGUFNotFoundError,
    GGUFParseError,
    GGUFTruncatedError,
    GGUFTypeMismatchError,
    GGUFUnknownTensorTypeError,
    GGUFValueType,
    GGUFVersionError,
    element_count,
    tensor_nbytes,
)


# ============================================================================
# Test Type Definitions
# ============================================================================

def test_gguf_value_type_constants():
    """Test that GGUFValueType enumeration has all required constants."""
    assert GGUFValueType.UINT8 == 0
    assert GGUFValueType.INT8 == 1
    assert GGUFValueType.UINT16 == 2
    assert GGUFValueType.INT16 == 3
    assert GGUFValueType.UINT32 == 4
    assert GGUFValueType.INT32 == 5
    assert GGUFValueType.FLOAT32 == 6
    assert GGUFValueType.BOOL == 7
    assert GGUFValueType.STRING == 8
    assert GGUFValueType.ARRAY == 9
    assert GGUFValueType.UINT64 == 10
    assert GGUFValueType.INT64 == 11
    assert GGUFValueType.FLOAT64 == 12


def test_ggml_type_constants():
    """Test that GGMLType enumeration has all required constants."""
    assert GGMLType.F32 == 0
    assert GGMLType.F16 == 1
    assert GGMLType.Q4_0 == 2
    assert GGMLType.Q4_1 == 3
    assert GGMLType.Q5_0 == 6
    assert GGMLType.Q5_1 == 7
    assert GGMLType.Q8_0 == 8
    assert GGMLType.Q8_1 == 9
    assert GGMLType.Q2_K == 10
    assert GGMLType.Q3_K == 11
    assert GGMLType.Q4_K == 12
    assert GGMLType.Q5_K == 13
    assert GGMLType.Q6_K == 14
    assert GGMLType.Q8_K == 15
    assert GGMLType.I8 == 16
    assert GGMLType.I16 == 17
    assert GGMLType.I32 == 18


def test_ggml_type_unknown_code_is_kept():
    """Codes 4 and 5 (removed Q4_2/Q4_3) and anything above 18 still decode."""
    for code in (4, 5, 19, 1000):
        member = GGMLType(code)
        assert int(member) == code
        assert member.name == f"GGML({code})"
        assert not member.is_known

    assert GGMLType(2).is_known
    assert GGMLType(2) is GGMLType.Q4_0


def test_file_type_names():
    assert FileType(0) is FileType.ALL_F32
    assert str(FileType.MOSTLY_Q4_KM) == 'MOSTLY_Q4_KM'
    assert FileType(15) == 15
    assert str(FileType(99)) == 'UNKNOWN'
    assert FileType(99) == 99


def test_byte_order_prefix():
    assert ByteOrder.LITTLE.prefix == '<'
    assert ByteOrder.BIG.prefix == '>'


def test_type_sizes_mapping():
    """Test that TYPE_SIZES contains ggml's block geometry for every type."""
    # Standard types
    assert TYPE_SIZES[GGMLType.F32] == (4, 1)
    assert TYPE_SIZES[GGMLType.F16] == (2, 1)
    assert TYPE_SIZES[GGMLType.I8] == (1, 1)
    assert TYPE_SIZES[GGMLType.I16] == (2, 1)
    assert TYPE_SIZES[GGMLType.I32] == (4, 1)

    # Quantized types
    assert TYPE_SIZES[GGMLType.Q4_0] == (18, 32)
    assert TYPE_SIZES[GGMLType.Q4_1] == (20, 32)
    assert TYPE_SIZES[GGMLType.Q5_0] == (22, 32)
    assert TYPE_SIZES[GGMLType.Q5_1] == (24, 32)
    assert TYPE_SIZES[GGMLType.Q8_0] == (34, 32)
    assert TYPE_SIZES[GGMLType.Q8_1] == (36, 32)
    assert TYPE_SIZES[GGMLType.Q2_K] == (84, 256)
    assert TYPE_SIZES[GGMLType.Q3_K] == (110, 256)
    assert TYPE_SIZES[GGMLType.Q4_K] == (144, 256)
    assert TYPE_SIZES[GGMLType.Q5_K] == (176, 256)
    assert TYPE_SIZES[GGMLType.Q6_K] == (210, 256)
    assert TYPE_SIZES[GGMLType.Q8_K] == (292, 256)

    assert len(TYPE_SIZES) == 17


def test_type_sizes_is_read_only():
    with pytest.raises(TypeError):
        TYPE_SIZES[GGMLType(4)] = (1, 1)


def test_type_sizes_named_fields():
    geometry = TYPE_SIZES[GGMLType.Q4_K]
    assert geometry.type_size == 144
    assert geometry.block_size == 256


# ============================================================================
# Test Size Model
# ============================================================================

def test_element_count_scalar_is_one():
    assert element_count([]) == 1
    assert element_count(()) == 1


def test_element_count_product():
    assert element_count([4096, 32000]) == 4096 * 32000
    assert element_count([2, 3, 4, 5]) == 120
    assert element_count([7, 0, 3]) == 0


def test_tensor_nbytes_q4_0_example():
    """64 values of Q4_0 are two 18-byte blocks."""
    assert tensor_nbytes(GGMLType.Q4_0, [64]) == 36


def test_tensor_nbytes_accepts_plain_int_code():
    assert tensor_nbytes(2, [64]) == 36


def test_tensor_nbytes_standard_types():
    assert tensor_nbytes(GGMLType.F32, [4096]) == 4096 * 4
    assert tensor_nbytes(GGMLType.F16, [32, 8]) == 32 * 8 * 2
    assert tensor_nbytes(GGMLType.I8, [10]) == 10
    assert tensor_nbytes(GGMLType.I16, [10]) == 20
    assert tensor_nbytes(GGMLType.I32, [10]) == 40


def test_tensor_nbytes_scalar_tensor():
    assert tensor_nbytes(GGMLType.F32, []) == 4


def test_tensor_nbytes_k_quant():
    assert tensor_nbytes(GGMLType.Q6_K, [4096, 4096]) == (4096 * 4096 // 256) * 210


def test_tensor_nbytes_drops_partial_block():
    """A shape that is not block aligned loses its trailing partial block."""
    assert tensor_nbytes(GGMLType.Q4_0, [33]) == 18
    assert tensor_nbytes(GGMLType.Q4_0, [31]) == 0
    assert tensor_nbytes(GGMLType.Q2_K, [300]) == 84


def test_tensor_nbytes_unknown_type():
    with pytest.raises(GGUFUnknownTensorTypeError) as exc_info:
        tensor_nbytes(GGMLType(4), [32], name='blk.0.weight')

    assert exc_info.value.type_code == 4
    assert "blk.0.weight" in str(exc_info.value)
    assert "GGML(4)" in str(exc_info.value)


@given(
    ggml_type=st.sampled_from(list(TYPE_SIZES.keys())),
    blocks=st.integers(min_value=0, max_value=10_000),
    rows=st.integers(min_value=1, max_value=64),
)
def test_property_block_aligned_size(ggml_type, blocks, rows):
    """For block-aligned shapes the size is exactly blocks * type_size."""
    type_size, block_size = TYPE_SIZES[ggml_type]
    dims = [blocks * block_size, rows]
    assert tensor_nbytes(ggml_type, dims) == blocks * rows * type_size


@given(code=st.integers(min_value=0, max_value=0xFFFFFFFF).filter(
    lambda c: c not in {int(t) for t in TYPE_SIZES}))
def test_property_unknown_codes_fail_size_lookup(code):
    with pytest.raises(GGUFUnknownTensorTypeError):
        tensor_nbytes(GGMLType(code), [256])


# ============================================================================
# Test Exception Classes
# ============================================================================

def test_exception_hierarchy():
    """Test that all custom exceptions inherit from GGUFFileError."""
    for exc in (
        GGUFInvalidMagicError,
        GGUFVersionError,
        GGUFParseError,
        GGUFTruncatedError,
        GGUFInvalidTypeError,
        GGUFInvalidBoolError,
        GGUFAlignmentError,
        GGUFUnknownTensorTypeError,
        GGUFNotFoundError,
        GGUFTypeMismatchError,
    ):
        assert issubclass(exc, GGUFFileError)
    assert issubclass(GGUFFileError, Exception)


def test_accessor_errors_match_builtin_idioms():
    assert issubclass(GGUFNotFoundError, KeyError)
    assert issubclass(GGUFTypeMismatchError, TypeError)


def test_not_found_error_message_is_not_quoted():
    err = GGUFNotFoundError("Tensor 'x' not found")
    assert str(err) == "Tensor 'x' not found"


def test_exception_attributes():
    assert GGUFInvalidMagicError("bad", magic=b'GGML').magic == b'GGML'
    assert GGUFVersionError("bad", version=7).version == 7
    assert GGUFInvalidTypeError("bad", type_code=13).type_code == 13
    assert GGUFInvalidBoolError("bad", byte=2).byte == 2
