#!/usr/bin/env python3
"""
Inspect a GGUF model file.

Prints the container format, model name, architecture and top-level metadata,
and optionally the assembled layers and the tensor table.

Usage:
  python inspect_gguf.py model.gguf --layers --tensors
"""

import argparse
import logging
import sys
from typing import Any, List, Optional

from ggml_model import GGMLModel, ModelFactory, quantization_name
from gguf_reader import ByteStream, GGUFFileError, GGUFReader

logger = logging.getLogger(__name__)


def format_value(value: Any) -> str:
    """Abbreviate long lists and strings for display."""
    if isinstance(value, list) and len(value) > 3:
        return f"[{value[0]!r}, {value[1]!r}, ... ({len(value)} items)]"
    if isinstance(value, str) and len(value) > 50:
        return value[:47] + "..."
    return str(value)


def print_summary(model: GGMLModel) -> None:
    print(f"Format:       {model.format}")
    if model.name is not None:
        print(f"Name:         {model.name}")
    if model.runtime is not None:
        print(f"Architecture: {model.runtime}")
    if model.description is not None:
        print(f"Description:  {format_value(model.description)}")
    if model.metadata:
        print()
        print("Metadata:")
        for key, value in model.metadata.items():
            print(f"  {key}: {format_value(value)}")


def print_layers(model: GGMLModel) -> None:
    print()
    print("Layers:")
    for node in model.graphs[0].nodes:
        print(f"  [{node.type}] {node.name or '(parameters)'}")
        for attribute in node.attributes:
            print(f"    {attribute.name} = {format_value(attribute.value)}")
        for argument in node.inputs:
            value = argument.value[0]
            quantization = f" {value.quantization}" if value.quantization else ""
            print(f"    {argument.name}: {value.type}{quantization}")


def print_tensors(reader: GGUFReader) -> None:
    print()
    print("Tensors:")
    for tensor in reader.tensors.values():
        size = f"{tensor.n_bytes:,} bytes" if tensor.data is not None else "no data"
        print(f"  {tensor.name}: {tensor.dtype} {tensor.ne} {quantization_name(tensor.type)} ({size})")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Inspect a GGUF model file.")
    parser.add_argument("path", help="Path to the .gguf file")
    parser.add_argument("--layers", action="store_true", help="Print assembled layers")
    parser.add_argument("--tensors", action="store_true", help="Print the tensor table")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(asctime)s] [%(levelname)s] %(name)s - %(message)s",
    )

    try:
        with open(args.path, 'rb') as f:
            buffer = f.read()
    except OSError as e:
        print(f"Error reading {args.path}: {e}", file=sys.stderr)
        return 1

    factory = ModelFactory()
    reader = factory.match(ByteStream(buffer))
    if reader is None:
        print(f"Not a GGUF file: {args.path}", file=sys.stderr)
        return 1

    try:
        model = factory.open(reader)
    except GGUFFileError as e:
        print(f"Error decoding {args.path}: {type(e).__name__}: {e}", file=sys.stderr)
        return 1
    logger.debug("Decoded %s with %d tensors", args.path, len(reader.tensors))

    print_summary(model)
    if args.layers:
        print_layers(model)
    if args.tensors:
        print_tensors(reader)
    return 0


if __name__ == '__main__':
    sys.exit(main())
