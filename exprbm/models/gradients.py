# Copyright 2025 NeuroBM Contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Gradient records mirroring the parameter layout of an RBM."""

from dataclasses import dataclass
from numbers import Number
from typing import Callable, Dict
import operator
import torch


@dataclass
class RBMGradient:
    """
    Gradient of a scalar with respect to every RBM parameter.

    `visible` and `hidden` map each layer's parameter names to tensors of the
    parameter's shape; `weights` has the shape of the weight tensor.
    Records combine elementwise with +, - and scalar * or /.
    """

    visible: Dict[str, torch.Tensor]
    hidden: Dict[str, torch.Tensor]
    weights: torch.Tensor

    def _zip(self, other: "RBMGradient", op: Callable) -> "RBMGradient":
        if set(self.visible) != set(other.visible) or set(self.hidden) != set(other.hidden):
            raise ValueError("Cannot combine gradients of differently parameterized RBMs")
        return RBMGradient(
            visible={name: op(value, other.visible[name]) for name, value in self.visible.items()},
            hidden={name: op(value, other.hidden[name]) for name, value in self.hidden.items()},
            weights=op(self.weights, other.weights),
        )

    def _map(self, op: Callable) -> "RBMGradient":
        return RBMGradient(
            visible={name: op(value) for name, value in self.visible.items()},
            hidden={name: op(value) for name, value in self.hidden.items()},
            weights=op(self.weights),
        )

    def __add__(self, other):
        if not isinstance(other, RBMGradient):
            return NotImplemented
        return self._zip(other, operator.add)

    def __sub__(self, other):
        if not isinstance(other, RBMGradient):
            return NotImplemented
        return self._zip(other, operator.sub)

    def __mul__(self, scale):
        if not isinstance(scale, Number):
            return NotImplemented
        return self._map(lambda value: value * scale)

    __rmul__ = __mul__

    def __truediv__(self, scale):
        if not isinstance(scale, Number):
            return NotImplemented
        return self._map(lambda value: value / scale)

    def __neg__(self):
        return self._map(operator.neg)

    def clone(self) -> "RBMGradient":
        return self._map(torch.clone)

    def flatten(self) -> Dict[str, torch.Tensor]:
        """Gradients keyed like `RBM.named_parameters()`."""
        flat = {f"visible.{name}": value for name, value in self.visible.items()}
        flat.update({f"hidden.{name}": value for name, value in self.hidden.items()})
        flat["weights"] = self.weights
        return flat

    def norm(self) -> Dict[str, float]:
        return {name: value.norm().item() for name, value in self.flatten().items()}

    @classmethod
    def zeros_like(cls, rbm) -> "RBMGradient":
        return cls(
            visible={name: torch.zeros_like(value) for name, value in rbm.visible.parameter_dict().items()},
            hidden={name: torch.zeros_like(value) for name, value in rbm.hidden.parameter_dict().items()},
            weights=torch.zeros_like(rbm.weights),
        )
