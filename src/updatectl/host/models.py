# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Hosting platform data model.

Pull requests opened by updatectl carry their identity as custom properties:
the package manager and a JSON document listing the dependencies (optionally
wrapped in a dependency group). Later runs match engine output against these
properties instead of keeping a database.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from marshmallow import EXCLUDE, ValidationError

from updatectl.contract.enums import ChangeType, MergeStrategy
from updatectl.core.schema import (
    ExistingGroupPullRequest,
    ExistingPullRequest,
    ExistingPullRequestDependency,
    dependency_names_of,
)

logger = logging.getLogger(__name__)

PROPERTY_PACKAGE_MANAGER = "Dependabot.PackageManager"
PROPERTY_DEPENDENCIES = "Dependabot.Dependencies"
PROPERTY_SOURCE_REF_NAME = "Microsoft.Git.PullRequest.SourceRefName"

EMPTY_OBJECT_ID = "0" * 40


def normalize_branch_name(branch: Optional[str]) -> Optional[str]:
    """Strip the refs/heads/ prefix from a branch reference."""
    if branch is None:
        return None
    return branch[len("refs/heads/"):] if branch.startswith("refs/heads/") else branch


def normalize_file_path(path: str) -> str:
    """Repository-rooted path with forward slashes, e.g. 'a\\b.txt' -> '/a/b.txt'."""
    path = path.replace("\\", "/")
    if path.startswith("./"):
        path = path[1:]
    if not path.startswith("/"):
        path = "/" + path
    return path


# ============================================================================
# Pull request identity
# ============================================================================


def dump_pull_request_identity(identity: ExistingPullRequest) -> str:
    """Serialize a dependency identity for the PROPERTY_DEPENDENCIES property."""
    if isinstance(identity, ExistingGroupPullRequest):
        data = ExistingGroupPullRequest.Schema().dump(identity)
    else:
        data = ExistingPullRequestDependency.Schema(many=True).dump(identity)
    return json.dumps(data)


def parse_pull_request_identity(value: Optional[str]) -> Optional[ExistingPullRequest]:
    """Parse a PROPERTY_DEPENDENCIES value. Returns None for missing or malformed values."""
    if not value:
        return None
    try:
        data = json.loads(value)
        if isinstance(data, list):
            return list(ExistingPullRequestDependency.Schema(many=True).load(data, unknown=EXCLUDE))
        if isinstance(data, dict):
            return ExistingGroupPullRequest.Schema().load(data, unknown=EXCLUDE)
    except (json.JSONDecodeError, ValidationError) as e:
        logger.debug(f"Ignoring malformed dependency identity {value!r}: {e}")
        return None
    return None


@dataclass(frozen=True)
class PullRequestProperty:
    name: str
    value: str


@dataclass
class PullRequestRecord:
    """An active pull request and its custom properties."""

    id: int
    properties: List[PullRequestProperty] = field(default_factory=list)

    def get_property(self, name: str) -> Optional[str]:
        for prop in self.properties:
            if prop.name == name:
                return prop.value
        return None

    @property
    def package_manager(self) -> Optional[str]:
        return self.get_property(PROPERTY_PACKAGE_MANAGER)

    @property
    def source_branch(self) -> Optional[str]:
        return normalize_branch_name(self.get_property(PROPERTY_SOURCE_REF_NAME))

    @property
    def identity(self) -> Optional[ExistingPullRequest]:
        return parse_pull_request_identity(self.get_property(PROPERTY_DEPENDENCIES))

    @property
    def dependency_names(self) -> Optional[frozenset[str]]:
        identity = self.identity
        if identity is None:
            return None
        return frozenset(dependency_names_of(identity))

    def matches(self, package_manager: str, dependency_names: Sequence[str]) -> bool:
        """Same package manager and exactly the same set of dependency names."""
        if self.package_manager != package_manager:
            return False
        names = self.dependency_names
        return names is not None and names == frozenset(dependency_names)


def find_pull_request(
    records: Sequence[PullRequestRecord], package_manager: str, dependency_names: Sequence[str]
) -> Optional[PullRequestRecord]:
    """First record whose identity matches, or None."""
    for record in records:
        if record.matches(package_manager, dependency_names):
            return record
    return None


# ============================================================================
# Requests
# ============================================================================


@dataclass(frozen=True)
class Author:
    email: str
    name: str


@dataclass(frozen=True)
class FileChange:
    """One file change in a push; content is None for deletions."""

    change_type: ChangeType
    path: str
    content: Optional[str] = None
    encoding: str = "utf-8"


@dataclass(frozen=True)
class AutoComplete:
    merge_strategy: MergeStrategy = MergeStrategy.SQUASH
    ignore_policy_config_ids: List[int] = field(default_factory=list)


@dataclass(frozen=True)
class CreatePullRequest:
    project: str
    repository: str
    source_branch: str
    target_branch: str
    base_commit: str
    author: Author
    title: str
    description: str
    commit_message: str
    changes: List[FileChange]
    properties: List[PullRequestProperty] = field(default_factory=list)
    auto_complete: Optional[AutoComplete] = None
    assignees: List[str] = field(default_factory=list)
    reviewers: List[str] = field(default_factory=list)
    labels: List[str] = field(default_factory=list)
    work_item: Optional[int] = None


@dataclass(frozen=True)
class UpdatePullRequest:
    project: str
    repository: str
    pull_request_id: int
    commit: str
    author: Author
    changes: List[FileChange]
    skip_if_draft: bool = True
    skip_if_commits_from_other_authors: bool = True
    skip_if_not_behind_target_branch: bool = True


@dataclass(frozen=True)
class AbandonPullRequest:
    project: str
    repository: str
    pull_request_id: int
    comment: Optional[str] = None
    delete_source_branch: bool = True


@dataclass(frozen=True)
class ApprovePullRequest:
    project: str
    repository: str
    pull_request_id: int
