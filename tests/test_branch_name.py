# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Tests for pull request branch naming."""

import re

import pytest

from updatectl.contract.outputs import ChangedDependency
from updatectl.core.branch_name import dependency_set_hash, get_branch_name_for_update, sanitize_ref


def dep(name, version, removed=False):
    record = {"dependency-name": name, "dependency-version": version}
    if removed:
        record["removed"] = True
    return record


class TestSingleDependency:
    """Branch names for a single, ungrouped dependency."""

    def test_full_name_with_directory(self):
        """Ecosystem, target branch, directory and name-version are all present."""
        name = get_branch_name_for_update("npm", "main", "/packages/ui", None, [dep("lodash", "4.17.21")])

        assert name == "dependabot/npm/main/packages/ui/lodash-4.17.21"

    def test_root_directory_adds_no_segment(self):
        name = get_branch_name_for_update("npm", "main", "/", None, [dep("lodash", "4.17.21")])

        assert name == "dependabot/npm/main/lodash-4.17.21"

    def test_missing_target_branch_adds_no_segment(self):
        name = get_branch_name_for_update("npm", None, "/", None, [dep("lodash", "4.17.21")])

        assert name == "dependabot/npm/lodash-4.17.21"

    def test_removed_dependency(self):
        """A single removed dependency is named '{name}-removed'."""
        name = get_branch_name_for_update("npm", "main", "/", None, [dep("react", None, removed=True)])

        assert name == "dependabot/npm/main/react-removed"

    def test_brackets_stripped_from_version(self):
        name = get_branch_name_for_update("nuget", "main", "/", None, [dep("Newtonsoft.Json", "[13.0.1]")])

        assert name == "dependabot/nuget/main/Newtonsoft.Json-13.0.1"

    def test_accepts_engine_dependency_models(self):
        """Pydantic dependency records work as well as mappings."""
        dependency = ChangedDependency(name="lodash", version="4.17.21")

        name = get_branch_name_for_update("npm", "main", "/", None, [dependency])

        assert name == "dependabot/npm/main/lodash-4.17.21"

    def test_custom_separator(self):
        name = get_branch_name_for_update("npm", "main", "/packages/ui", None, [dep("lodash", "4.17.21")], "-")

        assert name == "dependabot-npm-main-packages-ui-lodash-4.17.21"


class TestGroupedDependencies:
    """Branch names for groups and multi-dependency updates."""

    def test_group_name_with_hash(self):
        name = get_branch_name_for_update(
            "nuget", "develop", "/", "microsoft", [dep("Microsoft.A", "1.0.0"), dep("Microsoft.B", "2.0.0")]
        )

        assert re.fullmatch(r"dependabot/nuget/develop/microsoft-[0-9a-f]{10}", name)

    def test_ungrouped_multiple_dependencies_use_multi(self):
        name = get_branch_name_for_update("npm", "main", "/", None, [dep("a", "1"), dep("b", "2")])

        assert re.fullmatch(r"dependabot/npm/main/multi-[0-9a-f]{10}", name)

    def test_member_order_does_not_change_hash(self):
        """The dependency set is hashed with set semantics."""
        first = get_branch_name_for_update("npm", "main", "/", "g", [dep("a", "1"), dep("b", "2")])
        second = get_branch_name_for_update("npm", "main", "/", "g", [dep("b", "2"), dep("a", "1")])

        assert first == second

    def test_member_version_changes_hash(self):
        first = get_branch_name_for_update("npm", "main", "/", "g", [dep("a", "1"), dep("b", "2")])
        second = get_branch_name_for_update("npm", "main", "/", "g", [dep("a", "1"), dep("b", "3")])

        assert first != second

    def test_deterministic(self):
        deps = [dep("a", "1"), dep("b", "2")]

        assert get_branch_name_for_update("npm", "main", "/", "g", deps) == get_branch_name_for_update(
            "npm", "main", "/", "g", deps
        )

    def test_group_with_single_dependency_still_hashed(self):
        name = get_branch_name_for_update("npm", "main", "/", "g", [dep("a", "1")])

        assert name == f"dependabot/npm/main/g-{dependency_set_hash([dep('a', '1')])}"


class TestSanitizeRef:
    """Git ref sanitization."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("dependabot/npm/@types/node-1.0", "dependabot/npm/types/node-1.0"),
            ("dependabot//npm///x-1", "dependabot/npm/x-1"),
            ("dependabot/npm/x-1..2", "dependabot/npm/x-1.2"),
            ("dependabot/npm/.hidden-1", "dependabot/npm/dot-hidden-1"),
            ("dependabot/npm/x-1.", "dependabot/npm/x-1"),
            ("dependabot/npm/a b~c^d:e", "dependabot/npm/abcde"),
        ],
    )
    def test_sanitize(self, raw, expected):
        assert sanitize_ref(raw) == expected

    @pytest.mark.parametrize(
        "raw",
        ["dependabot//.x..y.", "a/./b", "weird name/...", "ok/branch-1.2.3"],
    )
    def test_idempotent(self, raw):
        """Sanitizing twice gives the same result as sanitizing once."""
        once = sanitize_ref(raw)

        assert sanitize_ref(once) == once
