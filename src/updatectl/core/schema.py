#!/usr/bin/env python3
# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Frozen dataclass schema definitions for updatectl.

Uses marshmallow_dataclass for type-safe configuration with validation.
All classes are frozen (immutable) after creation.

Two families live here:
- Runner configuration (updatectl.yaml): UpdatectlConfig and its sections.
  The `updates` entries use the hyphenated keys of a dependabot.yml update
  block.
- Job Definition (the update engine's input file): JobDefinition, JobSpec,
  JobSource, Credential, ... dumped with hyphenated wire names and with
  unset (None) values dropped.
"""

import dataclasses
from dataclasses import field
from typing import Annotated, Any, ClassVar, Dict, List, Optional, Type, Union
from urllib.parse import urlparse

import yaml
from marshmallow import Schema, ValidationError, fields, post_dump, validate
from marshmallow_dataclass import dataclass

from updatectl.contract.enums import MergeStrategy

# ============================================================================
# Constants
# ============================================================================

DEFAULT_ENGINE_PACKAGE = "github.com/dependabot/cli/cmd/dependabot@latest"
DEFAULT_AUTHOR_EMAIL = "noreply@github.com"
DEFAULT_AUTHOR_NAME = "dependabot[bot]"
DEFAULT_OPEN_PULL_REQUESTS_LIMIT = 5
MAX_UPDATER_RUN_TIME = 2700

# Credential fields that never leave the credentials section
SENSITIVE_CREDENTIAL_FIELDS = ("username", "password", "token", "key", "auth_key")

ECOSYSTEM_PACKAGE_MANAGERS: Dict[str, str] = {
    "docker-compose": "docker_compose",
    "dotnet-sdk": "dotnet_sdk",
    "github-actions": "github_actions",
    "gitsubmodule": "submodules",
    "gomod": "go_modules",
    "mix": "hex",
    "npm": "npm_and_yarn",
    "pipenv": "pip",
    "pip-compile": "pip",
    "poetry": "pip",
    "pnpm": "npm_and_yarn",
    "yarn": "npm_and_yarn",
}


def package_manager_for(ecosystem: str) -> str:
    """Map a dependabot.yml package-ecosystem to the engine's package manager name."""
    return ECOSYSTEM_PACKAGE_MANAGERS.get(ecosystem, ecosystem)


def _key(data_key: str, **kwargs: Any) -> Any:
    """dataclasses.field with a hyphenated wire name."""
    return field(metadata={"data_key": data_key}, **kwargs)


# ============================================================================
# Marshmallow Custom Fields
# ============================================================================


class StringListField(fields.Field):
    """Accepts either a single string or a list of strings; always loads a list."""

    def _deserialize(self, value: Any, attr: Optional[str], data: Any, **kwargs: Any) -> Optional[List[str]]:
        if value is None:
            return None
        if isinstance(value, str):
            return [value]
        if isinstance(value, list) and all(isinstance(v, str) for v in value):
            return list(value)
        raise ValidationError("Expected a string or a list of strings")

    def _serialize(self, value: Any, attr: Optional[str], obj: Any, **kwargs: Any) -> Optional[List[str]]:
        if value is None:
            return None
        return list(value)


class WireSchema(Schema):
    """Base schema for engine input documents: omit unset values on dump."""

    @post_dump
    def remove_none_values(self, data: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        return {k: v for k, v in data.items() if v is not None}


# ============================================================================
# Runner Configuration (updatectl.yaml)
# ============================================================================


@dataclass(frozen=True)
class HostConfig:
    """Hosting platform connection settings."""

    organization_url: str = field(metadata={"validate": validate.URL(require_tld=False)})
    project: str
    repository: str
    access_token: str
    access_user: Optional[str] = None
    github_token: Optional[str] = None
    api_version: str = "5.0"
    timeout_seconds: float = 60.0

    Schema: ClassVar[Type[Schema]] = Schema

    @property
    def _url(self):
        return urlparse(self.organization_url)

    @property
    def _path_segments(self) -> List[str]:
        return [segment for segment in self._url.path.split("/") if segment]

    @property
    def organization(self) -> str:
        """Organization name: last path segment, or the subdomain of *.visualstudio.com URLs."""
        segments = self._path_segments
        if segments:
            return segments[-1]
        return (self._url.hostname or "").split(".")[0]

    @property
    def virtual_directory(self) -> str:
        """Collection path prefix used by on-premises servers (e.g. 'tfs')."""
        return "/".join(self._path_segments[:-1])

    @property
    def hostname(self) -> str:
        hostname = self._url.hostname or ""
        if hostname.lower().endswith(".visualstudio.com"):
            return "dev.azure.com"
        return hostname

    @property
    def organization_api_url(self) -> str:
        """Organization URL with a trailing slash, used as the REST base."""
        return self.organization_url.rstrip("/") + "/"

    @property
    def api_endpoint(self) -> str:
        """Server root (plus virtual directory) handed to the engine as `api-endpoint`."""
        url = self._url
        root = f"{url.scheme}://{url.netloc}/"
        if self.virtual_directory:
            root += f"{self.virtual_directory}/"
        return root

    @property
    def identity_api_url(self) -> str:
        """Identity service base; cloud organizations resolve identities on vssps."""
        hostname = (self._url.hostname or "").lower()
        if hostname == "dev.azure.com" or hostname.endswith(".visualstudio.com"):
            return f"https://vssps.dev.azure.com/{self.organization}/"
        return self.organization_api_url

    @property
    def repository_slug(self) -> str:
        """Repository identifier in the engine's `repo` syntax."""
        slug = f"{self.organization}/{self.project}/_git/{self.repository}"
        if self.virtual_directory:
            slug = f"{self.virtual_directory}/{slug}"
        return slug


@dataclass(frozen=True)
class ReconcileOptions:
    """Policy switches for turning engine outputs into pull request changes."""

    dry_run: bool = False
    skip_pull_requests: bool = False
    abandon_unwanted_pull_requests: bool = True
    comment_pull_requests: bool = False
    set_auto_complete: bool = False
    merge_strategy: str = field(
        default=MergeStrategy.SQUASH.value,
        metadata={"validate": validate.OneOf([m.value for m in MergeStrategy])},
    )
    auto_complete_ignore_config_ids: List[int] = field(default_factory=list)
    auto_approve: bool = False
    auto_approve_user_token: Optional[str] = None
    author_email: str = DEFAULT_AUTHOR_EMAIL
    author_name: str = DEFAULT_AUTHOR_NAME
    store_dependency_list: bool = False
    dependency_list_dir: str = "./dependency-lists"
    target_update_ids: List[int] = field(default_factory=list)

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True)
class EngineOptions:
    """How the update engine is installed and launched."""

    package: str = DEFAULT_ENGINE_PACKAGE
    updater_image: Optional[str] = None
    proxy_image: Optional[str] = None
    collector_image: Optional[str] = None
    collector_config: Optional[str] = None
    timeout_minutes: Optional[int] = field(default=None, metadata={"validate": validate.Range(min=1)})
    experiments: Dict[str, Any] = field(default_factory=dict)
    jobs_root: Optional[str] = None
    security_advisories_file: Optional[str] = None
    flamegraph: bool = False
    debug: bool = False

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True)
class AllowCondition:
    dependency_name: Optional[str] = _key("dependency-name", default=None)
    dependency_type: Optional[str] = _key("dependency-type", default=None)
    update_type: Optional[str] = _key("update-type", default=None)

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True)
class IgnoreRule:
    dependency_name: Optional[str] = _key("dependency-name", default=None)
    versions: Optional[Annotated[List[str], StringListField()]] = None
    update_types: Optional[List[str]] = _key("update-types", default=None)
    source: Optional[str] = None

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True)
class GroupConfig:
    """A dependabot.yml dependency group rule."""

    applies_to: Optional[str] = _key("applies-to", default=None)
    dependency_type: Optional[str] = _key("dependency-type", default=None)
    patterns: Optional[List[str]] = None
    exclude_patterns: Optional[List[str]] = _key("exclude-patterns", default=None)
    update_types: Optional[List[str]] = _key("update-types", default=None)

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True)
class CommitMessageConfig:
    prefix: Optional[str] = None
    prefix_development: Optional[str] = _key("prefix-development", default=None)
    include: Optional[str] = None

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True)
class BranchNameConfig:
    separator: str = "/"

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True)
class UpdateConfig:
    """One update block: a package ecosystem in one or more directories."""

    package_ecosystem: str = _key("package-ecosystem")
    directory: Optional[str] = None
    directories: Optional[List[str]] = None
    target_branch: Optional[str] = _key("target-branch", default=None)
    open_pull_requests_limit: int = field(
        default=DEFAULT_OPEN_PULL_REQUESTS_LIMIT,
        metadata={"data_key": "open-pull-requests-limit", "validate": validate.Range(min=0)},
    )
    versioning_strategy: Optional[str] = _key("versioning-strategy", default=None)
    allow: Optional[List[AllowCondition]] = None
    ignore: Optional[List[IgnoreRule]] = None
    groups: Optional[Dict[str, GroupConfig]] = None
    commit_message: Optional[CommitMessageConfig] = _key("commit-message", default=None)
    registries: Optional[List[str]] = None
    insecure_external_code_execution: Optional[str] = _key("insecure-external-code-execution", default=None)
    vendor: Optional[bool] = None
    assignees: Optional[List[str]] = None
    reviewers: Optional[List[str]] = None
    labels: Optional[List[str]] = None
    milestone: Optional[int] = None
    pull_request_branch_name: Optional[BranchNameConfig] = _key("pull-request-branch-name", default=None)

    Schema: ClassVar[Type[Schema]] = Schema

    @property
    def package_manager(self) -> str:
        return package_manager_for(self.package_ecosystem)

    @property
    def security_updates_only(self) -> bool:
        """An open pull request limit of zero means only security updates are wanted."""
        return self.open_pull_requests_limit == 0

    @property
    def branch_separator(self) -> str:
        if self.pull_request_branch_name is None:
            return "/"
        return self.pull_request_branch_name.separator


@dataclass(frozen=True)
class RegistryConfig:
    """A private package registry declared at the top level of the config."""

    type: str
    url: Optional[str] = None
    host: Optional[str] = None
    registry: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    key: Optional[str] = None
    organization: Optional[str] = None
    repo: Optional[str] = None
    auth_key: Optional[str] = _key("auth-key", default=None)
    public_key_fingerprint: Optional[str] = _key("public-key-fingerprint", default=None)
    replaces_base: Optional[bool] = _key("replaces-base", default=None)

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True)
class UpdatectlConfig:
    """Complete runner configuration (frozen, immutable).

    This is the configuration type returned by load_config().
    """

    host: HostConfig
    updates: List[UpdateConfig] = field(metadata={"validate": validate.Length(min=1)})
    reconcile: ReconcileOptions = field(default_factory=ReconcileOptions)
    engine: EngineOptions = field(default_factory=EngineOptions)
    registries: Dict[str, RegistryConfig] = field(default_factory=dict)

    Schema: ClassVar[Type[Schema]] = Schema


# ============================================================================
# Job Definition (engine input file)
# ============================================================================


@dataclass(frozen=True, base_schema=WireSchema)
class JobSource:
    provider: str
    repo: str
    hostname: Optional[str] = None
    api_endpoint: Optional[str] = _key("api-endpoint", default=None)
    branch: Optional[str] = None
    commit: Optional[str] = None
    directory: Optional[str] = None
    directories: Optional[List[str]] = None

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True, base_schema=WireSchema)
class AllowedUpdate:
    dependency_name: Optional[str] = _key("dependency-name", default=None)
    dependency_type: Optional[str] = _key("dependency-type", default=None)
    update_type: Optional[str] = _key("update-type", default=None)

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True, base_schema=WireSchema)
class IgnoreCondition:
    dependency_name: Optional[str] = _key("dependency-name", default=None)
    source: Optional[str] = None
    update_types: Optional[List[str]] = _key("update-types", default=None)
    version_requirement: Optional[str] = _key("version-requirement", default=None)

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True, base_schema=WireSchema)
class GroupRules:
    patterns: List[str] = field(default_factory=lambda: ["*"])
    exclude_patterns: Optional[List[str]] = _key("exclude-patterns", default=None)
    dependency_type: Optional[str] = _key("dependency-type", default=None)
    update_types: Optional[List[str]] = _key("update-types", default=None)

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True, base_schema=WireSchema)
class DependencyGroup:
    name: str
    rules: GroupRules
    applies_to: Optional[str] = _key("applies-to", default=None)

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True, base_schema=WireSchema)
class SecurityAdvisory:
    """A known vulnerability for one dependency.

    The same record is read from the advisories file, which may additionally
    carry descriptive fields; only the version ranges matter to the engine.
    """

    dependency_name: str = _key("dependency-name")
    affected_versions: List[str] = _key("affected-versions", default_factory=list)
    patched_versions: List[str] = _key("patched-versions", default_factory=list)
    unaffected_versions: List[str] = _key("unaffected-versions", default_factory=list)
    title: Optional[str] = None
    description: Optional[str] = None
    source_name: Optional[str] = _key("source-name", default=None)
    source_url: Optional[str] = _key("source-url", default=None)

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True, base_schema=WireSchema)
class ExistingPullRequestDependency:
    dependency_name: str = _key("dependency-name")
    dependency_version: Optional[str] = _key("dependency-version", default=None)
    directory: Optional[str] = None
    dependency_removed: Optional[bool] = _key("dependency-removed", default=None)

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True, base_schema=WireSchema)
class ExistingGroupPullRequest:
    dependency_group_name: str = _key("dependency-group-name")
    dependencies: List[ExistingPullRequestDependency] = field(default_factory=list)

    Schema: ClassVar[Type[Schema]] = Schema


# A pull request identity: the flat dependency list of an ungrouped update,
# or the group record of a grouped one.
ExistingPullRequest = Union[List[ExistingPullRequestDependency], ExistingGroupPullRequest]


def dependency_names_of(pull_request: ExistingPullRequest) -> List[str]:
    dependencies = pull_request.dependencies if isinstance(pull_request, ExistingGroupPullRequest) else pull_request
    return [d.dependency_name for d in dependencies]


@dataclass(frozen=True, base_schema=WireSchema)
class CommitMessageOptions:
    prefix: Optional[str] = None
    prefix_development: Optional[str] = _key("prefix-development", default=None)
    include_scope: Optional[bool] = _key("include-scope", default=None)

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True, base_schema=WireSchema)
class Credential:
    """One credential record handed to the engine's proxy."""

    type: str
    host: Optional[str] = None
    url: Optional[str] = None
    registry: Optional[str] = None
    index_url: Optional[str] = _key("index-url", default=None)
    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    key: Optional[str] = None
    auth_key: Optional[str] = _key("auth-key", default=None)
    organization: Optional[str] = None
    repo: Optional[str] = None
    public_key_fingerprint: Optional[str] = _key("public-key-fingerprint", default=None)
    replaces_base: Optional[bool] = _key("replaces-base", default=None)

    Schema: ClassVar[Type[Schema]] = Schema

    def without_secrets(self) -> "Credential":
        """Copy with every sensitive field cleared, for `credentials-metadata`."""
        return dataclasses.replace(self, **{name: None for name in SENSITIVE_CREDENTIAL_FIELDS})

    @property
    def secrets(self) -> List[str]:
        return [getattr(self, name) for name in SENSITIVE_CREDENTIAL_FIELDS[1:] if getattr(self, name)]


@dataclass(frozen=True, base_schema=WireSchema)
class JobSpec:
    """The `job` section of the engine input file."""

    id: str
    package_manager: str = _key("package-manager")
    source: JobSource = field(default_factory=lambda: JobSource(provider="azure", repo=""))
    updating_a_pull_request: Optional[bool] = _key("updating-a-pull-request", default=None)
    dependency_group_to_refresh: Optional[str] = _key("dependency-group-to-refresh", default=None)
    dependency_groups: Optional[List[DependencyGroup]] = _key("dependency-groups", default=None)
    dependencies: Optional[List[str]] = None
    allowed_updates: Optional[List[AllowedUpdate]] = _key("allowed-updates", default=None)
    ignore_conditions: Optional[List[IgnoreCondition]] = _key("ignore-conditions", default=None)
    security_updates_only: Optional[bool] = _key("security-updates-only", default=None)
    security_advisories: Optional[List[SecurityAdvisory]] = _key("security-advisories", default=None)
    existing_pull_requests: Optional[List[List[ExistingPullRequestDependency]]] = _key(
        "existing-pull-requests", default=None
    )
    existing_group_pull_requests: Optional[List[ExistingGroupPullRequest]] = _key(
        "existing-group-pull-requests", default=None
    )
    commit_message_options: Optional[CommitMessageOptions] = _key("commit-message-options", default=None)
    experiments: Optional[Dict[str, Any]] = None
    reject_external_code: Optional[bool] = _key("reject-external-code", default=None)
    requirements_update_strategy: Optional[str] = _key("requirements-update-strategy", default=None)
    lockfile_only: Optional[bool] = _key("lockfile-only", default=None)
    vendor_dependencies: Optional[bool] = _key("vendor-dependencies", default=None)
    update_subdependencies: Optional[bool] = _key("update-subdependencies", default=None)
    max_updater_run_time: Optional[int] = _key("max-updater-run-time", default=None)
    proxy_log_response_body_on_auth_failure: Optional[bool] = _key(
        "proxy-log-response-body-on-auth-failure", default=None
    )
    credentials_metadata: Optional[List[Credential]] = _key("credentials-metadata", default=None)
    debug: Optional[bool] = None

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True, base_schema=WireSchema)
class JobDefinition:
    """The complete engine input document: `{job, credentials}`."""

    job: JobSpec
    credentials: List[Credential] = field(default_factory=list)

    Schema: ClassVar[Type[Schema]] = Schema

    @property
    def id(self) -> str:
        return self.job.id

    def to_dict(self) -> Dict[str, Any]:
        return self.Schema().dump(self)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False, default_flow_style=False)
