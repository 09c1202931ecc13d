"""
updatectl - Dependency update pull requests driven by an external update engine.

This package builds Job Definitions for the update engine, runs it as a
subprocess, and reconciles its output against pull requests on the hosting
platform.

Key modules:
- core.config: Configuration loading and validation
- core.schema: Frozen dataclass definitions (UpdatectlConfig, JobDefinition, etc.)
- core.branch_name: Deterministic branch names
- core.job_builder: Job Definition construction
- core.reconciler: Output reconciliation
- engine.cli: Update engine invocation
- host.client: Hosting platform REST client
- cli.run: Run driver and console script
- logging_utils: Logging configuration

Usage:
    updatectl -f updatectl.yaml
"""

__version__ = "0.1.0"

# Logging utilities (should be first)
from .logging_utils import SecretMaskingFilter, setup_logging

# Core modules
from .core.branch_name import get_branch_name_for_update
from .core.config import load_config
from .core.errors import ConfigurationError, EngineError, HttpRequestError, UpdatectlError
from .core.job_builder import JobBuilder
from .core.schema import JobDefinition, UpdatectlConfig
from .engine.cli import UpdateEngine
from .host.client import HostClient
from .core.reconciler import OutputReconciler, OutputResult

__all__ = [
    # Version
    "__version__",
    # Logging
    "setup_logging",
    "SecretMaskingFilter",
    # Config
    "load_config",
    "UpdatectlConfig",
    # Errors
    "UpdatectlError",
    "ConfigurationError",
    "EngineError",
    "HttpRequestError",
    # Jobs
    "get_branch_name_for_update",
    "JobBuilder",
    "JobDefinition",
    # Engine
    "UpdateEngine",
    # Host
    "HostClient",
    # Reconciliation
    "OutputReconciler",
    "OutputResult",
]
