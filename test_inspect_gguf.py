"""
Tests for the inspect_gguf command line tool.
"""

import struct

import pytest

from gguf_reader import GGMLType
from inspect_gguf import format_value, main


def encode_string(value):
    data = value.encode('latin-1')
    return struct.pack('<Q', len(data)) + data


def write_demo_gguf(path, tensor_type=GGMLType.Q8_0):
    content = b'GGUF' + struct.pack('<IQQ', 3, 1, 4)
    content += encode_string('general.architecture') + struct.pack('<I', 8) + encode_string('llama')
    content += encode_string('general.name') + struct.pack('<I', 8) + encode_string('Demo Model')
    content += encode_string('general.license') + struct.pack('<I', 8) + encode_string('mit')
    content += encode_string('llama.context_length') + struct.pack('<II', 4, 2048)
    content += encode_string('blk.0.ffn_down.weight') + struct.pack('<IQIQ', 1, 32, tensor_type, 0)
    content += b'\x00' * ((32 - len(content) % 32) % 32)
    content += b'\x00' * 34
    path.write_bytes(content)
    return path


def test_format_value():
    assert format_value(5) == '5'
    assert format_value([1, 2, 3]) == '[1, 2, 3]'
    assert format_value(list(range(10))) == '[0, 1, ... (10 items)]'
    assert format_value('x' * 60) == 'x' * 47 + '...'


def test_main_summary(tmp_path, capsys):
    path = write_demo_gguf(tmp_path / 'demo.gguf')
    assert main([str(path)]) == 0
    out = capsys.readouterr().out
    assert 'GGUF v3' in out
    assert 'Demo Model' in out
    assert 'Architecture: llama' in out
    assert 'license: mit' in out


def test_main_layers_and_tensors(tmp_path, capsys):
    path = write_demo_gguf(tmp_path / 'demo.gguf')
    assert main([str(path), '--layers', '--tensors']) == 0
    out = capsys.readouterr().out
    assert '[Parameters] (parameters)' in out
    assert 'llama.context_length = 2048' in out
    assert '[Weights] blk.0.ffn_down' in out
    assert 'weight: ?[32] Q8_0' in out
    assert 'blk.0.ffn_down.weight: ? [32] Q8_0 (34 bytes)' in out


def test_main_not_gguf(tmp_path, capsys):
    path = tmp_path / 'other.bin'
    path.write_bytes(b'ABCD' + b'\x00' * 32)
    assert main([str(path)]) == 1
    assert 'Not a GGUF file' in capsys.readouterr().err


def test_main_decode_error(tmp_path, capsys):
    path = write_demo_gguf(tmp_path / 'bad.gguf', tensor_type=99)
    assert main([str(path)]) == 1
    err = capsys.readouterr().err
    assert 'GGUFUnsupportedQuantizationError' in err
    assert '99' in err


def test_main_missing_file(tmp_path, capsys):
    assert main([str(tmp_path / 'missing.gguf')]) == 1
    assert 'Error reading' in capsys.readouterr().err


def test_main_requires_path():
    with pytest.raises(SystemExit) as exc_info:
        main([])
    assert exc_info.value.code == 2
