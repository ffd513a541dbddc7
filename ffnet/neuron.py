"""
neuron.py
~~~~~~~~~

The neuron: the unit holding weights, momentum memory and the transient
signals of a forward/backward pass.
"""

import threading
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .activation import Activation
from .exceptions import NullActivationError

DEFAULT_MOMENTUM = 0.9


class Neuron:
    """
    A single neuron of a feed-forward network.

    Attributes:
        bias: Constant subtracted from the weighted input sum
        weights: One weight per predecessor (``[1.0]`` in the input layer)
        delta_w: Previous weight change, the momentum memory
        learning_rate: Stored and persisted; not used by ``update``
        momentum: Fraction of the previous change kept in the next one
        activation: Shared activation function, ``None`` after a load
        activation_name: Name the activation is persisted under
        inputs: ``(layer_index, neuron_index)`` of every predecessor
        net_input, output, error: Transient pass signals (never persisted)
    """

    def __init__(
        self,
        bias: float,
        activation: Optional[Activation],
        weights: Sequence[float] = (1.0,),
        delta_w: Optional[Sequence[float]] = None,
        learning_rate: float = 0.0,
        momentum: float = DEFAULT_MOMENTUM,
        activation_name: Optional[str] = None
    ):
        self.bias = float(bias)
        self.weights = np.array(weights, dtype=float)
        if delta_w is None:
            self.delta_w = np.zeros_like(self.weights)
        else:
            self.delta_w = np.array(delta_w, dtype=float)
        self.learning_rate = float(learning_rate)
        self.momentum = float(momentum)
        self.activation = activation
        if activation_name is None:
            activation_name = activation.name if activation is not None else ''
        self.activation_name = activation_name
        self.inputs: List[Tuple[int, int]] = []

        self.net_input = 0.0
        self.output = 0.0
        self.error = 0.0
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    def set_activation(self, activation: Activation) -> None:
        self.activation = activation
        self.activation_name = activation.name

    def _require_activation(self) -> Activation:
        if self.activation is None:
            raise NullActivationError(
                f"No activation function attached "
                f"(stored name: '{self.activation_name}')"
            )
        return self.activation

    # ------------------------------------------------------------------
    # Forward / backward
    # ------------------------------------------------------------------

    def fire(self, excitation: float) -> float:
        """Set ``net_input`` from the weighted excitation and activate."""
        activation = self._require_activation()
        self.net_input = -self.bias + excitation
        self.output = activation.activate(self.net_input)
        return self.output

    def add_error(self, value: float) -> None:
        """Accumulate a downstream error contribution under the lock."""
        with self._lock:
            self.error += value

    def update(self, predecessors: Sequence['Neuron']) -> None:
        """
        Propagate this neuron's error to its predecessors and adjust weights.

        Must run only once ``self.error`` is final. Each predecessor's error
        is written under that predecessor's lock; the weight and ``delta_w``
        writes belong to this neuron alone.

        Args:
            predecessors: The neurons of the previous layer, in weight order
        """
        if not predecessors:
            return
        activation = self._require_activation()
        for k, pred in enumerate(predecessors):
            pred.add_error(
                activation.derivative(pred.net_input) * self.error * self.weights[k]
            )
            self.delta_w[k] = self.error * pred.output + self.momentum * self.delta_w[k]
            self.weights[k] += self.delta_w[k]

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Static state only: transient signals and links are left out."""
        return {
            'bias': self.bias,
            'weights': self.weights,
            'delta_weights': self.delta_w,
            'learning_rate': self.learning_rate,
            'momentum': self.momentum,
            'activation_name': self.activation_name
        }

    def __getstate__(self) -> Dict[str, Any]:
        state = self.__dict__.copy()
        del state['_lock']
        return state

    def __setstate__(self, state: Dict[str, Any]) -> None:
        self.__dict__.update(state)
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return (
            f"Neuron(fan_in={len(self.inputs)}, bias={self.bias}, "
            f"activation='{self.activation_name}')"
        )
