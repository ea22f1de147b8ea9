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
"""
Configuration management for ExpRBM.

This module provides typed training configurations and utilities for loading,
validating, merging and saving experiment configuration files.

Features:
- Dataclass configurations passed explicitly to every training entry point
- YAML/JSON loading with dotted-path overrides
- Environment variable substitution (${VAR} or ${VAR:default})
- JSON-schema validation
- Configuration comparison and diff

Usage:
    from exprbm.configs import ConfigManager

    config = ConfigManager.load('experiments/pcd_binary.yaml',
                                overrides={'training.optimizer.lr': 0.02})
    training = ConfigManager.training_config(config)
    rbm = ConfigManager.build_rbm(config)
"""

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple, Union
from pathlib import Path
from datetime import datetime
import copy
import json
import logging
import os

import torch
import yaml
from jsonschema import validate, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class OptimizerConfig:
    """Settings of the parameter-update rule."""

    name: str = "adam"
    lr: float = 1e-3
    betas: Tuple[float, float] = (0.9, 0.999)
    momentum: float = 0.0
    eps: float = 1e-8
    weight_decay: float = 0.0

    def __post_init__(self):
        if self.lr <= 0:
            raise ValueError(f"Learning rate must be positive, got {self.lr}")
        self.betas = tuple(self.betas)


@dataclass
class RegularizationConfig:
    """Penalty coefficients; zero disables a term entirely."""

    l2_fields: float = 0.0
    l1_weights: float = 0.0
    l2_weights: float = 0.0
    l2l1_weights: float = 0.0

    def is_active(self) -> bool:
        return any(getattr(self, f.name) != 0 for f in fields(self))


@dataclass
class TrainingConfig:
    """
    Settings shared by the contrastive-divergence trainers.

    Attributes:
        epochs: Passes over the data
        batch_size: Minibatch size (also the number of fantasy chains)
        steps: Gibbs sweeps per minibatch
        shuffle: Whether to reshuffle minibatches every epoch
        optimizer: Update-rule settings
        regularization: Penalty coefficients
        center_alpha: Decay of the hidden-mean moving average (centered PCD)
        center_visible: Whether to center visible units (centered PCD)
        center_hidden: Whether to center hidden units (centered PCD)
        evaluate_lpl: Whether to record the log-pseudolikelihood every epoch
        verbose: Whether to show progress bars
    """

    epochs: int = 1
    batch_size: int = 1
    steps: int = 1
    shuffle: bool = True
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    regularization: RegularizationConfig = field(default_factory=RegularizationConfig)
    center_alpha: float = 0.5
    center_visible: bool = True
    center_hidden: bool = True
    evaluate_lpl: bool = True
    verbose: bool = False

    def __post_init__(self):
        for name in ("epochs", "batch_size", "steps"):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 1:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")
        if not 0 <= self.center_alpha < 1:
            raise ValueError(f"center_alpha must lie in [0, 1), got {self.center_alpha}")
        if isinstance(self.optimizer, dict):
            self.optimizer = OptimizerConfig(**self.optimizer)
        if isinstance(self.regularization, dict):
            self.regularization = RegularizationConfig(**self.regularization)

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "TrainingConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown training options: {sorted(unknown)}")
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        values = asdict(self)
        values["optimizer"]["betas"] = list(values["optimizer"]["betas"])
        return values


class ConfigManager:
    """Configuration management for ExpRBM experiments."""

    LAYER_TYPE_NAMES = ["binary", "spin", "potts", "gaussian", "relu", "drelu", "prelu", "xrelu"]

    _LAYER_SCHEMA = {
        "type": "object",
        "properties": {
            "type": {"type": "string", "enum": LAYER_TYPE_NAMES},
            "shape": {"type": "array", "items": {"type": "integer", "minimum": 0}, "minItems": 1}
        },
        "required": ["type", "shape"]
    }

    # Configuration schema for validation
    CONFIG_SCHEMA = {
        "type": "object",
        "properties": {
            "name": {"type": "string"},
            "description": {"type": "string"},
            "model": {
                "type": "object",
                "properties": {
                    "visible": _LAYER_SCHEMA,
                    "hidden": _LAYER_SCHEMA,
                    "dtype": {"type": "string", "enum": ["float32", "float64"]}
                },
                "required": ["visible", "hidden"]
            },
            "training": {
                "type": "object",
                "properties": {
                    "algorithm": {"type": "string", "enum": ["cd", "rdm", "pcd", "pcd_centered", "train_norm"]},
                    "epochs": {"type": "integer", "minimum": 1},
                    "batch_size": {"type": "integer", "minimum": 1},
                    "steps": {"type": "integer", "minimum": 1},
                    "center_alpha": {"type": "number", "minimum": 0, "exclusiveMaximum": 1},
                    "optimizer": {
                        "type": "object",
                        "properties": {
                            "name": {"type": "string", "enum": ["adam", "sgd"]},
                            "lr": {"type": "number", "exclusiveMinimum": 0},
                            "momentum": {"type": "number", "minimum": 0}
                        }
                    },
                    "regularization": {
                        "type": "object",
                        "properties": {
                            "l2_fields": {"type": "number", "minimum": 0},
                            "l1_weights": {"type": "number", "minimum": 0},
                            "l2_weights": {"type": "number", "minimum": 0},
                            "l2l1_weights": {"type": "number", "minimum": 0}
                        },
                        "additionalProperties": False
                    }
                }
            },
            "data": {"type": "object"},
            "evaluation": {"type": "object"},
            "random_seed": {"type": "integer"}
        },
        "required": ["name", "model", "training"]
    }

    @classmethod
    def load(
        cls,
        config_path: Union[str, Path],
        overrides: Optional[Dict[str, Any]] = None,
        validate_config: bool = True
    ) -> Dict[str, Any]:
        """
        Load configuration with optional overrides.

        Args:
            config_path: Path to configuration file
            overrides: Dictionary of parameter overrides in dot notation
            validate_config: Whether to validate the configuration

        Returns:
            Loaded and processed configuration dictionary
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r') as f:
            if config_path.suffix.lower() in ['.yaml', '.yml']:
                config = yaml.safe_load(f)
            elif config_path.suffix.lower() == '.json':
                config = json.load(f)
            else:
                raise ValueError(f"Unsupported config format: {config_path.suffix}")

        logger.info(f"Loaded base configuration from {config_path}")

        if overrides:
            config = cls._apply_overrides(config, overrides)
            logger.info(f"Applied {len(overrides)} parameter overrides")

        config = cls._substitute_env_vars(config)

        if validate_config:
            cls.validate(config)

        config['_metadata'] = {
            'loaded_from': str(config_path),
            'loaded_at': datetime.now().isoformat(),
            'overrides_applied': overrides is not None
        }

        return config

    @classmethod
    def validate(cls, config: Dict[str, Any]) -> None:
        """
        Validate configuration against schema.

        Args:
            config: Configuration dictionary to validate

        Raises:
            ValidationError: If configuration is invalid
        """
        try:
            validate(instance=config, schema=cls.CONFIG_SCHEMA)
            logger.info("Configuration validation passed")
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e.message}")
            raise

    @classmethod
    def save(
        cls,
        config: Dict[str, Any],
        output_path: Union[str, Path],
        format: str = 'yaml',
        include_metadata: bool = True
    ) -> None:
        """
        Save configuration to file.

        Args:
            config: Configuration dictionary to save
            output_path: Output file path
            format: Output format ('yaml' or 'json')
            include_metadata: Whether to include metadata in output
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        save_config = copy.deepcopy(config)

        if not include_metadata and '_metadata' in save_config:
            del save_config['_metadata']

        with open(output_path, 'w') as f:
            if format.lower() == 'yaml':
                yaml.safe_dump(save_config, f, default_flow_style=False, indent=2)
            elif format.lower() == 'json':
                json.dump(save_config, f, indent=2)
            else:
                raise ValueError(f"Unsupported format: {format}")

        logger.info(f"Saved configuration to {output_path}")

    @classmethod
    def merge(cls, *configs: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merge multiple configurations with deep merging.

        Args:
            *configs: Configuration dictionaries to merge

        Returns:
            Merged configuration dictionary
        """
        if not configs:
            return {}

        result = copy.deepcopy(configs[0])

        for config in configs[1:]:
            result = cls._deep_merge(result, config)

        return result

    @classmethod
    def diff(cls, config1: Dict[str, Any], config2: Dict[str, Any]) -> Dict[str, Any]:
        """
        Compare two configurations and return differences.

        Args:
            config1: First configuration
            config2: Second configuration

        Returns:
            Dictionary with 'added', 'removed' and 'changed' entries keyed by dotted path
        """
        differences = {
            'added': {},
            'removed': {},
            'changed': {}
        }

        cls._find_differences(config1, config2, differences, '')

        return differences

    @classmethod
    def training_config(cls, config: Dict[str, Any]) -> TrainingConfig:
        """Build the TrainingConfig described by the 'training' section."""
        training = {k: v for k, v in config.get('training', {}).items() if k != 'algorithm'}
        return TrainingConfig.from_dict(training)

    @classmethod
    def build_rbm(cls, config: Dict[str, Any]):
        """
        Build an RBM with default layer parameters and zero weights.

        Args:
            config: Configuration with a 'model' section

        Returns:
            RBM instance (initialize it with exprbm.training.initialize_)
        """
        from ..models import LAYER_TYPES, RBM

        model = config['model']
        dtype = getattr(torch, model.get('dtype', 'float32'))
        layers = []
        for role in ('visible', 'hidden'):
            layer_config = model[role]
            layer_type = layer_config['type'].lower()
            if layer_type not in LAYER_TYPES:
                raise ValueError(f"Unknown layer type: {layer_config['type']}")
            layers.append(LAYER_TYPES[layer_type].from_shape(*layer_config['shape'], dtype=dtype))
        visible, hidden = layers
        weights = torch.zeros(*visible.shape, *hidden.shape, dtype=dtype)
        logger.info(
            f"Built RBM: {type(visible).__name__}{tuple(visible.shape)} - "
            f"{type(hidden).__name__}{tuple(hidden.shape)}"
        )
        return RBM(visible, hidden, weights)

    @staticmethod
    def _apply_overrides(config: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
        """Apply parameter overrides using dot notation."""
        result = copy.deepcopy(config)

        for key, value in overrides.items():
            ConfigManager._set_nested_value(result, key, value)

        return result

    @staticmethod
    def _substitute_env_vars(config: Dict[str, Any]) -> Dict[str, Any]:
        """Substitute environment variables in configuration values."""
        def substitute_recursive(obj):
            if isinstance(obj, dict):
                return {k: substitute_recursive(v) for k, v in obj.items()}
            elif isinstance(obj, list):
                return [substitute_recursive(item) for item in obj]
            elif isinstance(obj, str) and obj.startswith('${') and obj.endswith('}'):
                env_var = obj[2:-1]
                default_value = None
                if ':' in env_var:
                    env_var, default_value = env_var.split(':', 1)
                return os.getenv(env_var, default_value)
            else:
                return obj

        return substitute_recursive(config)

    @staticmethod
    def _deep_merge(dict1: Dict[str, Any], dict2: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = copy.deepcopy(dict1)

        for key, value in dict2.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = ConfigManager._deep_merge(result[key], value)
            else:
                result[key] = copy.deepcopy(value)

        return result

    @staticmethod
    def _set_nested_value(config: Dict[str, Any], key_path: str, value: Any) -> None:
        """Set nested value using dot notation."""
        keys = key_path.split('.')
        current = config

        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    @staticmethod
    def _find_differences(dict1: Dict[str, Any], dict2: Dict[str, Any],
                          differences: Dict[str, Any], path: str) -> None:
        """Recursively find differences between dictionaries."""
        for key in dict1.keys() | dict2.keys():
            if key == '_metadata':
                continue
            key_path = f"{path}.{key}" if path else str(key)
            if key not in dict2:
                differences['removed'][key_path] = dict1[key]
            elif key not in dict1:
                differences['added'][key_path] = dict2[key]
            elif isinstance(dict1[key], dict) and isinstance(dict2[key], dict):
                ConfigManager._find_differences(dict1[key], dict2[key], differences, key_path)
            elif dict1[key] != dict2[key]:
                differences['changed'][key_path] = (dict1[key], dict2[key])


# Utility functions for common configuration tasks
def load_config(config_path: str, **kwargs) -> Dict[str, Any]:
    """Convenience function to load configuration."""
    return ConfigManager.load(config_path, **kwargs)


def save_config(config: Dict[str, Any], output_path: str, **kwargs) -> None:
    """Convenience function to save configuration."""
    ConfigManager.save(config, output_path, **kwargs)
