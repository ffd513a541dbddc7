"""
network.py
~~~~~~~~~~

A fully-connected feed-forward neural network built from individual
neurons, trained by backpropagation with momentum.

Layer 0 is the input layer: its neurons pass the external input through a
single fixed weight of 1.0. Every neuron of a later layer is connected to
every neuron of the layer before it. Predecessors are referenced by
``(layer_index, neuron_index)`` pairs, so the layer lists are the only
owners of neurons and persisting a network never has to untangle links.
"""

import logging
from concurrent.futures import Executor
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import numpy as np

from .activation import Activation, get_activation
from .exceptions import InputSizeMismatchError, NullActivationError, PersistenceParseError
from .neuron import Neuron

logger = logging.getLogger(__name__)

DEFAULT_BIAS = 1.0


class Network:
    """
    Feed-forward network of neurons.

    Attributes:
        layers: List of layers, each a list of Neuron objects
        sizes: Number of neurons in each layer

    Example:
        >>> net = Network([1, 8, 1], 'sigmoid', seed=42)
        >>> len(net.compute_output([0.5]))
        1
    """

    def __init__(
        self,
        layer_sizes: Sequence[int],
        activation: Union[Activation, str],
        bias: float = DEFAULT_BIAS,
        rng: Optional[np.random.Generator] = None,
        seed: Optional[int] = None
    ):
        """
        Build the layers and draw the initial weights.

        Args:
            layer_sizes: Neurons per layer, input layer first
            activation: Activation instance or registered name, shared by
                all neurons
            bias: Constant bias of every neuron
            rng: Random generator for the initial weights
            seed: Seed for a new generator when ``rng`` is not given

        Raises:
            ValueError: If there are fewer than two layers, a size is not
                a positive integer, or both ``rng`` and ``seed`` are given
        """
        sizes = list(layer_sizes)
        _validate_sizes(sizes)
        if isinstance(activation, str):
            activation = get_activation(activation)
        if rng is not None and seed is not None:
            raise ValueError("Pass either rng or seed, not both")
        if rng is None:
            rng = np.random.default_rng(seed)

        self.layers: List[List[Neuron]] = []
        for i, size in enumerate(sizes):
            layer = []
            for _ in range(size):
                if i == 0:
                    neuron = Neuron(bias, activation)
                else:
                    # Uniform in [0, 1) per weight
                    neuron = Neuron(bias, activation, weights=rng.random(sizes[i - 1]))
                layer.append(neuron)
            self.layers.append(layer)
        self._link()

        logger.debug(f"Created network {sizes} with {activation.name} activation")

    @property
    def sizes(self) -> List[int]:
        return [len(layer) for layer in self.layers]

    @property
    def output_layer(self) -> List[Neuron]:
        return self.layers[-1]

    def __repr__(self) -> str:
        return f"Network({self.sizes})"

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def _link(self) -> None:
        """
        Point every neuron at the neurons of the previous layer.

        Index ``k`` of a neuron's inputs is neuron ``k`` of the layer below,
        matching the order of its weights.
        """
        for i, layer in enumerate(self.layers):
            for neuron in layer:
                if i == 0:
                    neuron.inputs = []
                else:
                    neuron.inputs = [(i - 1, k) for k in range(len(self.layers[i - 1]))]

    def predecessors(self, neuron: Neuron) -> List[Neuron]:
        """Resolve a neuron's input references to the neurons themselves."""
        return [self.layers[layer][index] for layer, index in neuron.inputs]

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    def set_activation(self, activation: Union[Activation, str]) -> None:
        """
        Attach an activation function to every neuron.

        Required after :meth:`load`, which restores only the activation name.
        """
        if isinstance(activation, str):
            activation = get_activation(activation)
        for layer in self.layers:
            for neuron in layer:
                neuron.set_activation(activation)

    def restore_activation(self) -> None:
        """Reattach activations by resolving each neuron's stored name."""
        resolved: Dict[str, Activation] = {}
        for layer in self.layers:
            for neuron in layer:
                name = neuron.activation_name
                if name not in resolved:
                    resolved[name] = get_activation(name)
                neuron.set_activation(resolved[name])

    def check_activation(self) -> None:
        """
        Raises:
            NullActivationError: If any neuron has no activation attached
        """
        for i, layer in enumerate(self.layers):
            for j, neuron in enumerate(layer):
                if neuron.activation is None:
                    raise NullActivationError(
                        f"Neuron {j} of layer {i} has no activation function; "
                        f"call set_activation() after loading a network"
                    )

    # ------------------------------------------------------------------
    # Forward evaluation
    # ------------------------------------------------------------------

    def feed_forward(
        self,
        input_vector: Sequence[float],
        executor: Optional[Executor] = None
    ) -> None:
        """
        Compute ``net_input`` and ``output`` of every neuron, input layer first.

        Neurons of one layer only read the previous layer, so with an
        ``executor`` each layer is evaluated in parallel.
        """
        for i, layer in enumerate(self.layers):
            if i == 0:
                for j, neuron in enumerate(layer):
                    neuron.fire(neuron.weights[0] * input_vector[j])
                continue

            def fire(neuron: Neuron) -> float:
                outputs = np.array([pred.output for pred in self.predecessors(neuron)])
                return neuron.fire(float(np.dot(neuron.weights, outputs)))

            self.map_neurons(fire, layer, executor)

    def compute_output(
        self,
        input_vector: Sequence[float],
        executor: Optional[Executor] = None
    ) -> List[float]:
        """
        Run an input vector through the network.

        Args:
            input_vector: One value per input neuron

        Returns:
            A new list with the outputs of the output layer

        Raises:
            InputSizeMismatchError: If the vector length differs from the
                input layer size
            NullActivationError: If an activation has not been attached
        """
        if len(input_vector) != len(self.layers[0]):
            raise InputSizeMismatchError(len(self.layers[0]), len(input_vector))
        self.check_activation()

        self.feed_forward(input_vector, executor)
        return [neuron.output for neuron in self.output_layer]

    @staticmethod
    def map_neurons(fn: Callable[[Neuron], Any], layer: List[Neuron], executor: Optional[Executor]) -> None:
        if executor is None:
            for neuron in layer:
                fn(neuron)
        else:
            # Consume the iterator so the layer completes and errors surface
            list(executor.map(fn, layer))

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def train(
        self,
        dataset: Sequence,
        callback: Callable[[float], bool],
        workers: Optional[int] = None
    ) -> None:
        """
        Train until ``callback`` returns False.

        Args:
            dataset: Ordered ``(input, label)`` pairs
            callback: Called with the mean loss of every epoch; returning
                False stops training
            workers: Threads per layer; ``None`` trains sequentially
        """
        from .trainer import Trainer

        Trainer(self, workers=workers).train(dataset, callback)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Static per-neuron state, layer by layer."""
        return {'layers': [[neuron.to_dict() for neuron in layer] for layer in self.layers]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Network':
        """
        Rebuild a network from :meth:`to_dict` output.

        Activations are not attached; the stored names are kept on the
        neurons for :meth:`restore_activation`.

        Raises:
            PersistenceParseError: If the data is malformed or violates the
                layer size invariants
        """
        try:
            raw_layers = data['layers']
            layers = [
                [
                    Neuron(
                        bias=record['bias'],
                        activation=None,
                        weights=record['weights'],
                        delta_w=record['delta_weights'],
                        learning_rate=record['learning_rate'],
                        momentum=record['momentum'],
                        activation_name=str(record['activation_name'])
                    )
                    for record in raw_layer
                ]
                for raw_layer in raw_layers
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceParseError(f"Malformed network data: {e!r}") from e

        try:
            _validate_sizes([len(layer) for layer in layers])
        except ValueError as e:
            raise PersistenceParseError(str(e)) from e

        for i, layer in enumerate(layers):
            fan_in = 1 if i == 0 else len(layers[i - 1])
            for j, neuron in enumerate(layer):
                if neuron.weights.ndim != 1 or len(neuron.weights) != fan_in:
                    raise PersistenceParseError(
                        f"Neuron {j} of layer {i} has {neuron.weights.size} "
                        f"weights, expected {fan_in}"
                    )
                if neuron.delta_w.shape != neuron.weights.shape:
                    raise PersistenceParseError(
                        f"Neuron {j} of layer {i} has {neuron.delta_w.size} "
                        f"delta weights, expected {fan_in}"
                    )

        net = cls.__new__(cls)
        net.layers = layers
        net._link()
        return net

    def save(self, path: str) -> None:
        """Write the network to a JSON file; see :mod:`ffnet.model_persistence`."""
        from .model_persistence import save_network_file

        save_network_file(self, path)

    @classmethod
    def load(cls, path: str, activation: Union[Activation, str, None] = None) -> 'Network':
        """
        Read a network written by :meth:`save`.

        Without ``activation`` the network cannot be evaluated until
        :meth:`set_activation` is called.
        """
        from .model_persistence import load_network_file

        return load_network_file(path, activation)


def _validate_sizes(sizes: List[int]) -> None:
    if len(sizes) < 2:
        raise ValueError(
            f"A network needs at least an input and an output layer, got {sizes}"
        )
    for size in sizes:
        if isinstance(size, bool) or not isinstance(size, (int, np.integer)) or size < 1:
            raise ValueError(f"Layer sizes must be positive integers, got {sizes}")
