"""
trainer.py
~~~~~~~~~~

Backpropagation with momentum over a network of neurons.

For every example the trainer runs the forward pass, clears the error
signals, computes the output layer errors (updating each output neuron as
soon as its error is known) and then updates the remaining layers from the
last hidden layer down to the input layer. A layer is finished before the
layer below it starts, because its updates are what complete the errors of
the layer below.
"""

import logging
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from contextlib import contextmanager
from typing import TYPE_CHECKING, Callable, Generator, List, Optional, Sequence

from .exceptions import DatasetError
from .neuron import Neuron

if TYPE_CHECKING:
    from .network import Network

logger = logging.getLogger(__name__)

TrainingCallback = Callable[[float], bool]


class Trainer:
    """
    Drives training epochs over a fixed, ordered dataset.

    Attributes:
        network: The network being trained
        workers: Threads used per layer, or ``None`` for sequential passes
        epochs: Number of completed epochs
        history: Mean loss of every completed epoch
    """

    def __init__(self, network: 'Network', workers: Optional[int] = None):
        if workers is not None and workers < 1:
            raise ValueError(f"workers must be a positive integer, got {workers}")
        self.network = network
        self.workers = workers
        self.epochs = 0
        self.history: List[float] = []

    @contextmanager
    def _executor(self) -> Generator[Optional[Executor], None, None]:
        if self.workers is None:
            yield None
        else:
            with ThreadPoolExecutor(max_workers=self.workers) as executor:
                yield executor

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def train(self, dataset: Sequence, callback: TrainingCallback) -> None:
        """
        Run epochs until ``callback`` returns False.

        The callback receives each epoch's mean loss. There is no epoch
        limit or convergence test here: stopping is entirely up to the
        callback, which is consulted once per completed epoch.

        Raises:
            DatasetError: If the dataset is empty or a label has the wrong size
            InputSizeMismatchError: If an input has the wrong size
            NullActivationError: If the network has no activation attached
        """
        logger.info(
            f"Training network {self.network.sizes} on {len(dataset)} examples"
        )
        start = time.time()
        with self._executor() as executor:
            keep_going = True
            while keep_going:
                loss = self._run_epoch(dataset, executor)
                keep_going = bool(callback(loss))

        logger.info(
            f"Training stopped after {self.epochs} epochs "
            f"({time.time() - start:.2f}s), last loss {self.history[-1]:.6f}"
        )

    def run_epoch(self, dataset: Sequence) -> float:
        """Train on every example once, in order; return the mean loss."""
        with self._executor() as executor:
            return self._run_epoch(dataset, executor)

    # ------------------------------------------------------------------
    # Epoch and example
    # ------------------------------------------------------------------

    def _run_epoch(self, dataset: Sequence, executor: Optional[Executor]) -> float:
        if len(dataset) == 0:
            raise DatasetError("Cannot train on an empty dataset")
        self.network.check_activation()

        total = 0.0
        for index, (input_vector, label) in enumerate(dataset):
            if len(label) != len(self.network.output_layer):
                raise DatasetError(
                    f"Example {index}: label size {len(label)} does not match "
                    f"output layer size {len(self.network.output_layer)}"
                )
            total += self._train_example(input_vector, label, executor)

        loss = total / len(dataset)
        self.epochs += 1
        self.history.append(loss)
        logger.debug(f"Epoch {self.epochs}: mean loss {loss:.6f}")
        return loss

    def _train_example(self, input_vector, label, executor: Optional[Executor]) -> float:
        self.network.compute_output(input_vector, executor)
        self._zero_errors()
        loss = self._update_output_layer(label, executor)
        for i in range(len(self.network.layers) - 2, -1, -1):
            self._update_layer(i, executor)
        return loss

    def _zero_errors(self) -> None:
        for layer in self.network.layers:
            for neuron in layer:
                neuron.error = 0.0

    def _update_output_layer(self, label: Sequence[float], executor: Optional[Executor]) -> float:
        """Set the output errors, update each output neuron, return the loss."""
        network = self.network
        layer = network.output_layer

        def output_step(j: int) -> float:
            neuron = layer[j]
            diff = label[j] - neuron.output
            neuron.error = neuron.activation.derivative(neuron.net_input) * diff
            neuron.update(network.predecessors(neuron))
            return diff * diff / 2

        if executor is None:
            losses = [output_step(j) for j in range(len(layer))]
        else:
            losses = list(executor.map(output_step, range(len(layer))))
        return sum(losses)

    def _update_layer(self, layer_index: int, executor: Optional[Executor]) -> None:
        network = self.network

        def update(neuron: Neuron) -> None:
            neuron.update(network.predecessors(neuron))

        network.map_neurons(update, network.layers[layer_index], executor)
