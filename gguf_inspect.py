#!/usr/bin/env python3
"""
Inspect a GGUF file from the command line.

Prints the header, every metadata entry (sorted by key) and the tensor
table. Arrays are summarized as ``[length]kind`` rather than printed.

Usage:
    gguf-inspect model.gguf
    gguf-inspect model.gguf --tensor token_embd.weight
"""

import argparse
import logging
import sys
from typing import List, Optional, TextIO

from gguf_container import GGUFContainer, GGUFReader, TensorInfo
from gguf_types import GGUFFileError
from gguf_values import MetadataValue

logger = logging.getLogger(__name__)


def format_value(entry: MetadataValue) -> str:
    """Render one metadata value for display."""
    if entry.is_array:
        return f"[{len(entry.value)}]{entry.element_type.name.lower()}"
    if isinstance(entry.value, str) and len(entry.value) > 60:
        return repr(entry.value[:57] + '...')
    if isinstance(entry.value, str):
        return repr(entry.value)
    return str(entry.value)


def format_tensor(info: TensorInfo) -> str:
    dims = '×'.join(str(d) for d in info.dims) or 'scalar'
    return f"{info.name}: {info.ggml_type.name.lower()} [{dims}]"


def print_container(container: GGUFContainer, out: TextIO) -> None:
    print(f"GGUF version: {container.version}", file=out)
    print(f"Byte order: {container.byte_order.name.lower()}", file=out)
    print(f"Alignment: {container.alignment}", file=out)
    print(f"Tensor data offset: {container.data_offset}", file=out)
    print(file=out)

    for key in sorted(container.metadata):
        print(f"Metadata: {key}: {format_value(container.metadata[key])}", file=out)

    if container.metadata:
        print(file=out)

    for info in container.tensors:
        print(f"Tensor: {format_tensor(info)}", file=out)

    try:
        total = container.total_tensor_bytes()
    except GGUFFileError as e:
        logger.warning("Cannot compute total tensor size: %s", e)
    else:
        print(file=out)
        print(f"Total tensor bytes: {total:,}", file=out)


def print_tensor(container: GGUFContainer, name: str, out: TextIO) -> None:
    info = container.find_tensor(name)
    offset, length = container.byte_range(info)
    print(f"Tensor: {format_tensor(info)}", file=out)
    print(f"  Elements: {info.n_elements:,}", file=out)
    print(f"  Relative offset: {info.offset}", file=out)
    print(f"  Byte range: [{offset}, {offset + length})", file=out)
    print(f"  Size: {length:,} bytes", file=out)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='gguf-inspect',
        description='Print the metadata and tensor table of a GGUF file.',
    )
    parser.add_argument('path', help='Path to the GGUF file')
    parser.add_argument('--tensor', metavar='NAME', help='Only show the byte range of this tensor')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')
    return parser


def main(argv: Optional[List[str]] = None, out: TextIO = sys.stdout) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(levelname)s %(name)s: %(message)s',
    )

    try:
        with GGUFReader(args.path) as reader:
            if args.tensor:
                print_tensor(reader.container, args.tensor, out)
            else:
                print_container(reader.container, out)
    except GGUFFileError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
