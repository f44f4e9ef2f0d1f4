# Reusable network building blocks
# FORBIDDEN: env.*, training.*, logging, pathlib

import torch
import torch.nn as nn
from typing import List


ACTIVATIONS = {
    "relu": nn.ReLU,
    "leaky_relu": nn.LeakyReLU,
    "sigmoid": nn.Sigmoid,
    "tanh": nn.Tanh,
    "elu": nn.ELU,
    "gelu": nn.GELU,
}


def get_activation(name: str) -> nn.Module:
    """Get activation function by name.

    Args:
        name: Activation name (see ACTIVATIONS)

    Returns:
        Activation module
    """
    if name not in ACTIVATIONS:
        raise ValueError(f"Unknown activation: {name}. Available: {list(ACTIVATIONS.keys())}")
    return ACTIVATIONS[name]()


class MLP(nn.Module):
    """Multi-layer perceptron.

    Linear (+ LayerNorm) + activation per hidden layer, with an optional
    linear output layer. Without the output layer the network ends on the
    last hidden activation, which is how shared trunks are built.
    """

    def __init__(
        self,
        input_dim: int,
        hidden_dims: List[int],
        output_dim: int = 0,
        activation: str = "relu",
        layer_norm: bool = False,
        output_layer: bool = True,
    ):
        super().__init__()

        if not hidden_dims and not output_layer:
            raise ValueError("MLP needs at least one hidden layer or an output layer")

        layers = []
        in_dim = input_dim

        for h_dim in hidden_dims:
            layers.append(nn.Linear(in_dim, h_dim))
            if layer_norm:
                layers.append(nn.LayerNorm(h_dim))
            layers.append(get_activation(activation))
            in_dim = h_dim

        if output_layer:
            layers.append(nn.Linear(in_dim, output_dim))
            self.output_dim = output_dim
        else:
            self.output_dim = in_dim

        self.network = nn.Sequential(*layers)
        self._init_weights()

    def _init_weights(self):
        """Initialize weights with orthogonal initialization."""
        for m in self.modules():
            if isinstance(m, nn.Linear):
                nn.init.orthogonal_(m.weight, gain=1.0)
                nn.init.zeros_(m.bias)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.network(x)
