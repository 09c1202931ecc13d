# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Deterministic branch names for dependency update pull requests.

Names have the shape:

    dependabot/{ecosystem}/{target-branch}/{directory}/{dependency-segment}

where the dependency segment is `{name}-{version}` for a single dependency,
`{name}-removed` for a single removed dependency and `{group-or-multi}-{hash}`
otherwise. The hash covers the sorted `name-version` pairs, so member order
never changes the name but member versions do.
"""

import hashlib
import re
from collections.abc import Mapping, Sequence
from typing import Any

BRANCH_PREFIX = "dependabot"
HASH_LENGTH = 10

_INVALID_REF_CHARS = re.compile(r"[^A-Za-z0-9/_.\-]")
_DOTS = re.compile(r"\.+")


def _field(dependency: Mapping[str, Any] | Any, *names: str) -> Any:
    """Read the first present attribute/key out of a dependency record."""
    for name in names:
        if isinstance(dependency, Mapping):
            if dependency.get(name) is not None:
                return dependency[name]
        elif getattr(dependency, name, None) is not None:
            return getattr(dependency, name)
    return None


def _dependency_name(dependency: Mapping[str, Any] | Any) -> str:
    return str(_field(dependency, "dependency-name", "dependency_name", "name") or "")


def _dependency_version(dependency: Mapping[str, Any] | Any) -> str:
    version = _field(dependency, "dependency-version", "dependency_version", "version")
    return "" if version is None else str(version)


def _is_removed(dependency: Mapping[str, Any] | Any) -> bool:
    return bool(_field(dependency, "removed"))


def dependency_set_hash(dependencies: Sequence[Mapping[str, Any] | Any]) -> str:
    """Short digest identifying a set of (name, version) pairs.

    Args:
        dependencies: Dependency records (mappings or objects)

    Returns:
        First HASH_LENGTH hex characters of the MD5 of the sorted pairs
    """
    pairs = sorted(f"{_dependency_name(d)}-{_dependency_version(d)}" for d in dependencies)
    return hashlib.md5(",".join(pairs).encode("utf-8")).hexdigest()[:HASH_LENGTH]


def sanitize_ref(ref: str, separator: str = "/") -> str:
    """Make a branch name safe for use as a git ref.

    Steps, in order: drop characters outside [A-Za-z0-9/_.-], collapse
    repeated separators, collapse repeated dots, rewrite a path component
    starting with '.' to start with 'dot-', strip a trailing dot.
    """
    ref = _INVALID_REF_CHARS.sub("", ref)
    if separator:
        ref = re.sub(f"{re.escape(separator)}+", separator, ref)
    ref = _DOTS.sub(".", ref)
    if separator:
        ref = ref.replace(f"{separator}.", f"{separator}dot-")
    return ref.rstrip(".")


def get_branch_name_for_update(
    ecosystem: str,
    target_branch: str | None,
    directory: str | None,
    group_name: str | None,
    dependencies: Sequence[Mapping[str, Any] | Any],
    separator: str = "/",
) -> str:
    """Build the branch name for an update pull request.

    Args:
        ecosystem: Package ecosystem (e.g. "npm", "nuget")
        target_branch: Branch the pull request merges into (omitted when None)
        directory: Manifest directory; "/" contributes no segment
        group_name: Dependency group name, when the update is grouped
        dependencies: Changed dependencies, as `{dependency-name,
            dependency-version, removed}` mappings or objects with
            `name`/`version`/`removed` attributes
        separator: Segment separator

    Returns:
        Sanitized branch name
    """
    if group_name or len(dependencies) != 1:
        leaf = f"{group_name or 'multi'}-{dependency_set_hash(dependencies)}"
    else:
        dependency = dependencies[0]
        if _is_removed(dependency):
            leaf = f"{_dependency_name(dependency)}-removed"
        else:
            version = re.sub(r"[\[\]]", "", _dependency_version(dependency))
            leaf = f"{_dependency_name(dependency)}-{version}"

    segments = [BRANCH_PREFIX, ecosystem]
    if target_branch:
        segments.append(target_branch)
    if directory:
        normalized = directory.strip("/")
        if normalized:
            segments.append(normalized.replace("/", separator))
    segments.append(leaf)

    return sanitize_ref(separator.join(segments), separator)
