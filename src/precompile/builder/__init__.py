"""
This package contains the orchestrator that turns declarative package
descriptions into versioned, debug and release xcframework artifacts.
"""

from .config import Settings
from .context import BuildContext
from .exceptions import (
    BuildError,
    CompositionError,
    ConfigurationError,
    DependencyError,
    ToolchainError,
    VerificationError,
)
from .models import BuildFlavor, PackageSource, Product, Target
from .packaging.orchestrator import BuildOptions, BuildOrchestrator

__all__ = [
    "BuildContext",
    "BuildError",
    "BuildFlavor",
    "BuildOptions",
    "BuildOrchestrator",
    "CompositionError",
    "ConfigurationError",
    "DependencyError",
    "PackageSource",
    "Product",
    "Settings",
    "Target",
    "ToolchainError",
    "VerificationError",
]
