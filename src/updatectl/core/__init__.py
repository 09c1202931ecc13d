# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Core modules for updatectl.

This package contains:
- config: Configuration loading and validation
- schema: Frozen dataclass schemas (UpdatectlConfig, JobDefinition, etc.)
- errors: Exception hierarchy
- branch_name: Deterministic pull request branch names
- job_builder: Job Definition construction
- reconciler: Engine output to pull request operations (import directly;
  it depends on updatectl.host)
"""

from .branch_name import get_branch_name_for_update, sanitize_ref
from .config import load_config
from .errors import ConfigurationError, EngineError, HttpRequestError, UpdatectlError
from .job_builder import JobBuilder
from .schema import JobDefinition, UpdateConfig, UpdatectlConfig

__all__ = [
    "get_branch_name_for_update",
    "sanitize_ref",
    "load_config",
    "ConfigurationError",
    "EngineError",
    "HttpRequestError",
    "UpdatectlError",
    "JobBuilder",
    "JobDefinition",
    "UpdateConfig",
    "UpdatectlConfig",
]
