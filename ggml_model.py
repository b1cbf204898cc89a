"""
GGML Model - groups decoded GGUF entries into layers and a node graph.

Dotted metadata and tensor names are split at their last '.' into a layer key
and a parameter name. Tokenizer metadata, architecture parameters and tensors
become typed layers; each layer becomes one node of a single graph.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from gguf_reader import ByteStream, GGMLType, GGUFReader, TensorInfo

logger = logging.getLogger(__name__)


# ============================================================================
# Enumerations
# ============================================================================

class LayerType:
    """Layer classifications."""
    TOKENIZER = 'Tokenizer'
    PARAMETERS = 'Parameters'
    WEIGHTS = 'Weights'


# Reverse lookup of GGMLType names by code
GGML_TYPE_NAMES: Dict[int, str] = {
    value: name for name, value in vars(GGMLType).items() if not name.startswith('_')
}


def quantization_name(tensor_type: int) -> Any:
    """Return the GGMLType name for a code, or the code itself if unknown."""
    return GGML_TYPE_NAMES.get(tensor_type, tensor_type)


def split_name(name: str) -> Tuple[str, str]:
    """
    Split a dotted name at its last '.' into (prefix, parameter).

    Names without a '.' are returned whole as the prefix with an empty
    parameter.
    """
    index = name.rfind('.')
    if index < 0:
        return name, ''
    return name[:index], name[index + 1:]


# ============================================================================
# Layers
# ============================================================================

class Layer:
    """A group of metadata values and tensors sharing a name prefix."""

    def __init__(self):
        self.type: Optional[str] = None
        self.metadata: Dict[str, Any] = {}
        self.weights: Dict[str, TensorInfo] = {}


class LayerMap(dict):
    """Layers keyed by name prefix, in order of first access."""

    def get_or_create(self, key: str) -> Layer:
        layer = self.get(key)
        if layer is None:
            layer = Layer()
            self[key] = layer
        return layer


# ============================================================================
# GGMLModel Class
# ============================================================================

class GGMLModel:
    """
    Model view over a decoded GGUF container.

    Reserved 'general.*' keys become model attributes ('name', 'runtime',
    'description') or top-level metadata ('author', 'license');
    'general.file_type' and 'general.quantization_version' are dropped.
    The remaining metadata is grouped first, then every tensor is grouped,
    and the tensor pass always sets the layer type to Weights even when
    the same prefix already holds Tokenizer or Parameters metadata.
    """

    def __init__(self, reader: GGUFReader):
        """
        Build the model from a reader whose read() has completed.

        Args:
            reader: A GGUFReader with format, metadata and tensors populated
        """
        self.format = reader.format
        self.name: Optional[str] = None
        self.runtime: Optional[Any] = None
        self.description: Optional[str] = None
        self.metadata: Dict[str, Any] = {}

        metadata: Dict[str, Any] = {}
        for name, value in reader.metadata.items():
            if name == 'general.name':
                self.name = value
            elif name == 'general.architecture':
                self.runtime = value
            elif name == 'general.description':
                self.description = value
            elif name == 'general.author':
                self.metadata['author'] = value
            elif name == 'general.license':
                self.metadata['license'] = value
            elif name in ('general.file_type', 'general.quantization_version'):
                continue
            else:
                metadata[name] = value

        layers = LayerMap()
        for name, value in metadata.items():
            if name.startswith('tokenizer.'):
                key, param = split_name(name)
                layer = layers.get_or_create(key)
                layer.type = LayerType.TOKENIZER
                layer.metadata[param] = value
            elif self.runtime and name.startswith(f'{self.runtime}.'):
                layer = layers.get_or_create('')
                layer.type = LayerType.PARAMETERS
                layer.metadata[name] = value
            else:
                self.metadata[name] = value

        for name, tensor in reader.tensors.items():
            key, param = split_name(name)
            layer = layers.get_or_create(key)
            layer.type = LayerType.WEIGHTS
            layer.weights[param] = tensor

        logger.debug("Assembled %d layers from %d tensors", len(layers), len(reader.tensors))
        self.layers = layers
        self.graphs = [Graph(layers)]


# ============================================================================
# Graph Classes
# ============================================================================

class Graph:
    """Nodes for every layer, in layer order."""

    def __init__(self, layers: LayerMap):
        self.nodes: List[Node] = [Node(name, layer) for name, layer in layers.items()]
        self.inputs: List[Argument] = []
        self.outputs: List[Argument] = []


class Node:
    """One layer: weights become inputs, metadata becomes attributes."""

    def __init__(self, name: str, layer: Layer):
        self.name = name
        self.type = layer.type
        self.inputs: List[Argument] = []
        self.outputs: List[Argument] = []
        self.attributes: List[Attribute] = []
        for param, weight in layer.weights.items():
            tensor = Tensor(weight)
            value = Value(weight.name, tensor)
            self.inputs.append(Argument(param, [value]))
        for param, value in layer.metadata.items():
            self.attributes.append(Attribute(param, value))


class Argument:
    """A named node input holding a list of values."""

    def __init__(self, name: str, value: List['Value']):
        self.name = name
        self.value = value


class Value:
    """A tensor reference with its type and quantization label."""

    def __init__(self, name: str, tensor: 'Tensor'):
        self.name = name
        self.type = tensor.type
        self.quantization = tensor.quantization
        self.initializer = tensor


class Attribute:
    """A metadata name and value attached to a node."""

    def __init__(self, name: str, value: Any):
        self.name = name
        self.value = value


class TensorShape:
    """Ordered tensor dimensions."""

    def __init__(self, dimensions: List[int]):
        self.dimensions = dimensions

    def __str__(self) -> str:
        return '[' + ','.join(str(dimension) for dimension in self.dimensions) + ']'


class TensorType:
    """Element type name and shape of a tensor."""

    def __init__(self, data_type: Optional[str], shape: TensorShape):
        self.data_type = data_type
        self.shape = shape

    def __str__(self) -> str:
        return (self.data_type or '?') + str(self.shape)


class Tensor:
    """
    Presentation wrapper for a tensor descriptor.

    'quantization' is None for F32 and F16. Raw values are exposed only for
    float32 and float16 element types, as little-endian bytes.
    """

    def __init__(self, tensor: TensorInfo):
        self.type = TensorType(tensor.dtype, TensorShape(list(tensor.ne)))
        self.quantization = None
        if tensor.type not in (GGMLType.F32, GGMLType.F16):
            self.quantization = quantization_name(tensor.type)
        self.encoding: Optional[str] = None
        self._data: Optional[ByteStream] = None
        if tensor.dtype in ('float32', 'float16'):
            self.encoding = '<'
            self._data = tensor.data

    @property
    def values(self) -> Optional[memoryview]:
        if self._data is not None:
            return self._data.peek()
        return None


# ============================================================================
# Model Factory
# ============================================================================

class ModelFactory:
    """Entry point for hosts: sniff a byte source, then decode it into a model."""

    def match(self, stream: Optional[ByteStream]) -> Optional[GGUFReader]:
        return GGUFReader.open(stream)

    def open(self, target: GGUFReader) -> GGMLModel:
        target.read()
        return GGMLModel(target)
