# Named models with their own optimizers
# FORBIDDEN: env.*, training.*, logging, pathlib

import copy
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

import torch
import torch.nn as nn
from torch.nn.utils import parameters_to_vector

from .blocks import MLP


OPTIMIZERS = {
    "adam": torch.optim.Adam,
    "adamw": torch.optim.AdamW,
    "adagrad": torch.optim.Adagrad,
    "rmsprop": torch.optim.RMSprop,
    "sgd": torch.optim.SGD,
}


def make_optimizer(name: str, params, lr: float) -> torch.optim.Optimizer:
    """Create optimizer by name.

    Args:
        name: Optimizer name (see OPTIMIZERS)
        params: Parameters to optimize
        lr: Initial learning rate

    Returns:
        Optimizer instance
    """
    if name not in OPTIMIZERS:
        raise ValueError(f"Unknown optimizer: {name}. Available: {list(OPTIMIZERS.keys())}")
    return OPTIMIZERS[name](params, lr=lr)


@dataclass
class ModelConfig:
    """Architecture and optimizer for one model."""
    layer_sizes: List[int] = field(default_factory=lambda: [256, 256, 256])
    activation: str = "relu"
    layer_norm: bool = False
    output_layer: bool = True
    optimizer: str = "adam"
    num_inputs: int = 0
    num_outputs: int = 0

    def is_valid(self) -> bool:
        return self.num_inputs > 0 and (len(self.layer_sizes) > 0 or self.output_layer)


class Model(nn.Module):
    """MLP with a name and an owned optimizer.

    The optimizer starts with lr=0; the learner sets the real rate.
    """

    def __init__(
        self,
        name: str,
        config: ModelConfig,
        device: torch.device = torch.device("cpu"),
    ):
        super().__init__()

        if not config.is_valid():
            raise ValueError(f"Failed to create model \"{name}\" with invalid config: {config}")

        self.name = name
        self.config = copy.copy(config)
        self.device = torch.device(device)

        self.network = MLP(
            input_dim=config.num_inputs,
            hidden_dims=list(config.layer_sizes),
            output_dim=config.num_outputs,
            activation=config.activation,
            layer_norm=config.layer_norm,
            output_layer=config.output_layer,
        )
        if not config.output_layer:
            self.config.num_outputs = self.network.output_dim

        self.to(self.device)
        self.optimizer = make_optimizer(config.optimizer, self.parameters(), lr=0.0)

    @property
    def num_outputs(self) -> int:
        return self.config.num_outputs

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.network(x)

    def set_lr(self, lr: float) -> None:
        for param_group in self.optimizer.param_groups:
            param_group["lr"] = lr

    def step_optim(self) -> None:
        """Apply the accumulated gradients and clear them."""
        self.optimizer.step()
        self.optimizer.zero_grad(set_to_none=True)

    def copy_params(self) -> torch.Tensor:
        """Flat CPU copy of all parameters."""
        return parameters_to_vector(self.parameters()).detach().cpu().clone()

    def param_count(self) -> int:
        return sum(p.numel() for p in self.parameters() if p.requires_grad)

    def param_sizes(self) -> List[int]:
        return [p.numel() for p in self.parameters()]

    def clone(self) -> "Model":
        """Copy with identical parameters and a fresh optimizer."""
        cloned = Model(self.name, self.config, self.device)
        cloned.load_state_dict(self.state_dict())
        return cloned


class ModelSet:
    """Models resolved by name ("shared_head", "policy", "critic")."""

    def __init__(self, models: Optional[List[Model]] = None):
        self._models: Dict[str, Model] = {}
        for model in models or []:
            self.add(model)

    def add(self, model: Model) -> None:
        self._models[model.name] = model

    def get(self, name: str) -> Optional[Model]:
        return self._models.get(name)

    def __getitem__(self, name: str) -> Model:
        return self._models[name]

    def __contains__(self, name: str) -> bool:
        return name in self._models

    def __iter__(self) -> Iterator[Model]:
        return iter(self._models.values())

    def __len__(self) -> int:
        return len(self._models)

    def names(self) -> List[str]:
        return list(self._models.keys())

    def step_optims(self) -> None:
        for model in self:
            model.step_optim()

    def zero_grads(self) -> None:
        for model in self:
            model.optimizer.zero_grad(set_to_none=True)

    def clone_all(self) -> "ModelSet":
        return ModelSet([model.clone() for model in self])

    def eval(self) -> "ModelSet":
        for model in self:
            model.eval()
        return self
