"""
activation.py
~~~~~~~~~~~~~

Activation functions for the network neurons.

An activation is stateless and shared by every neuron of a network. Only
its ``name`` is persisted, so every variant is registered by name and
reattached after load through :func:`get_activation`.
"""

from typing import Dict, List, Type

import numpy as np


class Activation:
    """
    Base class for activation functions.

    Subclasses provide ``activate`` and ``derivative``; both take the
    pre-activation value ``x`` (the derivative is *not* evaluated at the
    activated output).
    """

    name = ''

    def activate(self, x: float) -> float:
        raise NotImplementedError()

    def derivative(self, x: float) -> float:
        raise NotImplementedError()

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class Sigmoid(Activation):
    """Logistic sigmoid, ``1 / (1 + e^-x)``."""

    name = 'sigmoid'

    def activate(self, x: float) -> float:
        return float(1.0 / (1.0 + np.exp(-x)))

    def derivative(self, x: float) -> float:
        fx = self.activate(x)
        return fx * (1.0 - fx)


class Tanh(Activation):
    """Hyperbolic tangent."""

    name = 'tanh'

    def activate(self, x: float) -> float:
        return float(np.tanh(x))

    def derivative(self, x: float) -> float:
        return 1.0 - self.activate(x) ** 2


class Linear(Activation):
    """Identity activation."""

    name = 'linear'

    def activate(self, x: float) -> float:
        return float(x)

    def derivative(self, x: float) -> float:
        return 1.0


_REGISTRY: Dict[str, Type[Activation]] = {}


def register_activation(cls: Type[Activation]) -> Type[Activation]:
    """
    Register an activation class under its ``name``.

    Can be used as a class decorator. Re-registering a name replaces the
    previous class.

    Raises:
        ValueError: If the class has no name
    """
    if not cls.name:
        raise ValueError(f"Activation {cls.__name__} must define a name")
    _REGISTRY[cls.name] = cls
    return cls


def get_activation(name: str) -> Activation:
    """
    Resolve a registered activation name to an instance.

    Args:
        name: Registered activation name, e.g. ``'sigmoid'``

    Returns:
        A new instance of the registered class

    Raises:
        ValueError: If the name is not registered
    """
    try:
        return _REGISTRY[name]()
    except KeyError:
        raise ValueError(
            f"Unknown activation '{name}'. "
            f"Available: {', '.join(available_activations())}"
        ) from None


def available_activations() -> List[str]:
    """Return the registered activation names, sorted."""
    return sorted(_REGISTRY)


for _cls in (Sigmoid, Tanh, Linear):
    register_activation(_cls)
