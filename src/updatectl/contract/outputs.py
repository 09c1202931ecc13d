# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Output record models for the update engine's scenario file.

Each record in the engine's output list is `{type, expect: {data}}`. The
envelope is validated when the file is read; the payload is validated against
the model registered for its type when the record is reconciled. Types that
are not registered fall back to UnknownOutputData so new engine vocabulary
never breaks a run.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from updatectl.contract.enums import OutputType


class EngineModel(BaseModel):
    """Base for engine payloads: hyphenated aliases, unknown keys kept."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class OutputRecord(EngineModel):
    """One `{type, data}` record, in emission order."""

    type: str
    data: dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# update_dependency_list
# ============================================================================


class DependencyRequirement(EngineModel):
    file: str
    groups: list[str] | None = None
    requirement: str | None = None


class ListedDependency(EngineModel):
    name: str
    version: str | None = None
    requirements: list[DependencyRequirement] | None = None


class DependencyListData(EngineModel):
    dependencies: list[ListedDependency] | None = None
    dependency_files: list[str] = Field(default_factory=list)
    last_updated: datetime | None = None


# ============================================================================
# create/update/close pull request
# ============================================================================


class ChangedDependency(EngineModel):
    name: str
    version: str | None = None
    previous_version: str | None = Field(default=None, alias="previous-version")
    directory: str | None = None
    removed: bool = False


class DependencyFile(EngineModel):
    name: str
    directory: str = "/"
    content: str | None = None
    content_encoding: str = "utf-8"
    deleted: bool = False
    operation: str | None = None
    type: str = "file"


class DependencyGroupRef(EngineModel):
    name: str


class CreatePullRequestData(EngineModel):
    base_commit_sha: str | None = Field(default=None, alias="base-commit-sha")
    dependencies: list[ChangedDependency] = Field(default_factory=list)
    updated_dependency_files: list[DependencyFile] = Field(default_factory=list, alias="updated-dependency-files")
    pr_title: str = Field(default="", alias="pr-title")
    pr_body: str | None = Field(default=None, alias="pr-body")
    commit_message: str | None = Field(default=None, alias="commit-message")
    dependency_group: DependencyGroupRef | None = Field(default=None, alias="dependency-group")


class UpdatePullRequestData(EngineModel):
    base_commit_sha: str | None = Field(default=None, alias="base-commit-sha")
    dependency_names: list[str] = Field(default_factory=list, alias="dependency-names")
    updated_dependency_files: list[DependencyFile] = Field(default_factory=list, alias="updated-dependency-files")
    pr_title: str | None = Field(default=None, alias="pr-title")
    pr_body: str | None = Field(default=None, alias="pr-body")
    commit_message: str | None = Field(default=None, alias="commit-message")
    dependency_group: DependencyGroupRef | None = Field(default=None, alias="dependency-group")


class ClosePullRequestData(EngineModel):
    dependency_names: list[str] = Field(default_factory=list, alias="dependency-names")
    reason: str | None = None


# ============================================================================
# bookkeeping records
# ============================================================================


class MarkAsProcessedData(EngineModel):
    base_commit_sha: str | None = Field(default=None, alias="base-commit-sha")


class JobErrorData(EngineModel):
    error_type: str | None = Field(default=None, alias="error-type")
    error_details: dict[str, Any] | None = Field(default=None, alias="error-details")


class IncrementMetricData(EngineModel):
    metric: str | None = None
    tags: dict[str, Any] | None = None


class UnknownOutputData(EngineModel):
    """Catch-all payload for record types this version does not know."""


OUTPUT_DATA_MODELS: dict[str, type[EngineModel]] = {
    OutputType.UPDATE_DEPENDENCY_LIST.value: DependencyListData,
    OutputType.CREATE_PULL_REQUEST.value: CreatePullRequestData,
    OutputType.UPDATE_PULL_REQUEST.value: UpdatePullRequestData,
    OutputType.CLOSE_PULL_REQUEST.value: ClosePullRequestData,
    OutputType.MARK_AS_PROCESSED.value: MarkAsProcessedData,
    OutputType.RECORD_ECOSYSTEM_VERSIONS.value: UnknownOutputData,
    OutputType.RECORD_ECOSYSTEM_META.value: UnknownOutputData,
    OutputType.RECORD_UPDATE_JOB_ERROR.value: JobErrorData,
    OutputType.RECORD_UPDATE_JOB_UNKNOWN_ERROR.value: JobErrorData,
    OutputType.INCREMENT_METRIC.value: IncrementMetricData,
}


def parse_output_data(record: OutputRecord) -> EngineModel:
    """Validate a record's payload against the model registered for its type.

    Raises:
        pydantic.ValidationError: If the payload does not match its schema
    """
    model = OUTPUT_DATA_MODELS.get(record.type, UnknownOutputData)
    return model.model_validate(record.data)
