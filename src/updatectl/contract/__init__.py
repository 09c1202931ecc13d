# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Typed contract between the update engine, the reconciler and the run driver."""

from updatectl.contract.enums import ChangeType, CloseReason, MergeStrategy, OutputType, RunResult
from updatectl.contract.outputs import (
    OUTPUT_DATA_MODELS,
    ChangedDependency,
    ClosePullRequestData,
    CreatePullRequestData,
    DependencyFile,
    DependencyListData,
    EngineModel,
    JobErrorData,
    OutputRecord,
    UnknownOutputData,
    UpdatePullRequestData,
    parse_output_data,
)

__all__ = [
    "ChangeType",
    "CloseReason",
    "MergeStrategy",
    "OutputType",
    "RunResult",
    "OUTPUT_DATA_MODELS",
    "ChangedDependency",
    "ClosePullRequestData",
    "CreatePullRequestData",
    "DependencyFile",
    "DependencyListData",
    "EngineModel",
    "JobErrorData",
    "OutputRecord",
    "UnknownOutputData",
    "UpdatePullRequestData",
    "parse_output_data",
]
