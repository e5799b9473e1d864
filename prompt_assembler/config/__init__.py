"""Configuration loading and validation."""

from .models import (
    AssemblyConfig,
    NamesBehavior,
    PromptDefinition,
    PromptOrderEntry,
)
from .loader import ConfigLoader, ConfigLoadError, ConfigValidationError

__all__ = [
    "AssemblyConfig",
    "NamesBehavior",
    "PromptDefinition",
    "PromptOrderEntry",
    "ConfigLoader",
    "ConfigLoadError",
    "ConfigValidationError",
]
