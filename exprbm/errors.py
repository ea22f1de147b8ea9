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
"""Exception hierarchy for ExpRBM."""


class RBMError(Exception):
    """Base class for all ExpRBM errors."""


class ShapeMismatchError(RBMError, ValueError):
    """A tensor does not match the layer, RBM or batch shape it is used with."""


class DomainError(RBMError, ValueError):
    """A parameter or configuration lies outside the domain where a quantity is defined."""


class GradientConsistencyError(RBMError, AssertionError):
    """Two gradient computations that must agree differ beyond tolerance."""
