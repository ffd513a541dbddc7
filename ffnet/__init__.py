"""
ffnet package
~~~~~~~~~~~~~

Fully-connected feed-forward neural networks trained by backpropagation
with momentum. Contains the neuron-level network implementation, the
trainer, JSON and SQLite persistence, dataset files, and an API server.
"""

from .activation import Activation, Sigmoid, Tanh, Linear, get_activation, register_activation
from .dataset import Sample, load_dataset, save_dataset
from .exceptions import (
    NetworkError,
    InputSizeMismatchError,
    NullActivationError,
    PersistenceParseError,
    DatasetError
)
from .network import Network
from .neuron import Neuron
from .trainer import Trainer

__version__ = "1.0.0"
