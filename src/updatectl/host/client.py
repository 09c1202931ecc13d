# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
REST client for the hosting platform's Git and identity APIs.

Every request goes through one retrying sender: gateway errors (502, 503,
504) and transport timeouts are retried with a fixed delay, anything else
fails immediately with the status code attached. Public operations never
raise; they log and return None/False/empty so the reconciler can report a
failed output and move on.
"""

import base64
import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from updatectl.contract.enums import ChangeType
from updatectl.core.errors import HttpRequestError
from updatectl.core.schema import HostConfig
from updatectl.host.models import (
    EMPTY_OBJECT_ID,
    PROPERTY_PACKAGE_MANAGER,
    AbandonPullRequest,
    ApprovePullRequest,
    CreatePullRequest,
    FileChange,
    PullRequestProperty,
    PullRequestRecord,
    UpdatePullRequest,
    normalize_branch_name,
    normalize_file_path,
)

logger = logging.getLogger(__name__)

API_VERSION = "5.0"
APPROVAL_API_VERSION = "7.1"
RETRYABLE_STATUS_CODES = frozenset({502, 503, 504})
DEFAULT_RETRY_DELAY = 3.0
DEFAULT_MAX_RETRIES = 3
MAX_MERGE_COMMIT_MESSAGE_LENGTH = 3500
APPROVE_VOTE = 10

_GUID = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


def is_guid(value: str) -> bool:
    return bool(_GUID.match(value))


def merge_commit_message(pull_request_id: int, title: str, description: str) -> str:
    """Auto-complete merge message, truncated to the platform limit."""
    message = f"Merged PR {pull_request_id}: {title}\n\n{description}"
    return message[:MAX_MERGE_COMMIT_MESSAGE_LENGTH]


def encode_change(change: FileChange) -> Dict[str, Any]:
    """Push API representation of one file change (content base64-encoded)."""
    payload: Dict[str, Any] = {
        "changeType": change.change_type.value,
        "item": {"path": normalize_file_path(change.path)},
    }
    if change.change_type != ChangeType.DELETE:
        content = change.content or ""
        if change.encoding != "base64":
            content = base64.b64encode(content.encode("utf-8")).decode("ascii")
        payload["newContent"] = {"content": content, "contentType": "base64encoded"}
    return payload


class HostClient:
    """Client for one organization on the hosting platform.

    Args:
        organization_url: Organization base URL (e.g. https://dev.azure.com/contoso/)
        access_token: Personal access token
        identity_api_url: Identity service base URL (default: organization_url)
        api_version: REST API version sent with every request
        timeout: Per-request timeout in seconds
        retry_delay: Fixed delay between retries in seconds
        max_retries: Retries after the initial attempt
        session: requests.Session to use (default: a new one)
        sleep: Sleep function, replaceable in tests
    """

    def __init__(
        self,
        organization_url: str,
        access_token: str,
        identity_api_url: Optional[str] = None,
        api_version: str = API_VERSION,
        timeout: float = 60.0,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        max_retries: int = DEFAULT_MAX_RETRIES,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.organization_url = organization_url.rstrip("/") + "/"
        self.identity_api_url = (identity_api_url or self.organization_url).rstrip("/") + "/"
        self.api_version = api_version
        self.timeout = timeout
        self.retry_delay = retry_delay
        self.max_retries = max_retries
        self.session = session or requests.Session()
        self.session.auth = ("", access_token)
        self.session.headers.update({"Accept": "application/json"})
        self._sleep = sleep
        self._user_id: Optional[str] = None
        self._identity_cache: Dict[str, Optional[str]] = {}

    @classmethod
    def from_config(cls, host: HostConfig, access_token: Optional[str] = None) -> "HostClient":
        """Create a client from host settings, optionally with a different token."""
        return cls(
            organization_url=host.organization_api_url,
            access_token=access_token or host.access_token,
            identity_api_url=host.identity_api_url,
            api_version=host.api_version,
            timeout=host.timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _repo_url(self, project: str, repository: str, path: str = "") -> str:
        return f"{self.organization_url}{project}/_apis/git/repositories/{repository}{path}"

    def _send(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        api_version: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Send a request, retrying transient failures.

        Returns:
            Decoded JSON body, or None for an empty body

        Raises:
            HttpRequestError: On a non-retryable failure or when retries are exhausted
        """
        query = {"api-version": api_version or self.api_version}
        query.update(params or {})

        for attempt in range(self.max_retries + 1):
            try:
                response = self.session.request(
                    method, url, params=query, json=json, headers=headers, timeout=self.timeout
                )
            except requests.exceptions.Timeout as e:
                failure = HttpRequestError(f"{method} {url} timed out: {e}")
            except requests.exceptions.RequestException as e:
                raise HttpRequestError(f"{method} {url} failed: {e}") from e
            else:
                if response.status_code in RETRYABLE_STATUS_CODES:
                    failure = HttpRequestError(
                        f"{method} {url} failed: HTTP {response.status_code}", response.status_code
                    )
                elif response.status_code >= 400:
                    raise HttpRequestError(
                        f"{method} {url} failed: HTTP {response.status_code} {response.text[:500]}",
                        response.status_code,
                    )
                else:
                    if not response.content:
                        return None
                    try:
                        return response.json()
                    except ValueError as e:
                        raise HttpRequestError(
                            f"{method} {url} returned a non-JSON body: HTTP {response.status_code}",
                            response.status_code,
                        ) from e

            if attempt >= self.max_retries:
                raise failure
            logger.warning(
                f"{failure}; retrying in {self.retry_delay:g}s (attempt {attempt + 1} of {self.max_retries})"
            )
            self._sleep(self.retry_delay)

        # Loop always returns or raises
        raise HttpRequestError(f"{method} {url} failed")

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def get_user_id(self) -> str:
        """Id of the authenticated user.

        Raises:
            HttpRequestError: If the connection data cannot be read
        """
        if self._user_id is None:
            data = self._send("GET", f"{self.organization_url}_apis/connectionData")
            user_id = ((data or {}).get("authenticatedUser") or {}).get("id")
            if not user_id:
                raise HttpRequestError("Could not determine the authenticated user")
            self._user_id = user_id
        return self._user_id

    def resolve_identity(self, identifier: str) -> Optional[str]:
        """Resolve an email or display name to an identity id. GUIDs are returned as-is."""
        if is_guid(identifier):
            return identifier
        if identifier in self._identity_cache:
            return self._identity_cache[identifier]

        try:
            data = self._send(
                "GET",
                f"{self.identity_api_url}_apis/identities",
                params={"searchFilter": "General", "filterValue": identifier, "queryMembership": "None"},
            )
            matches = (data or {}).get("value") or []
            identity_id = matches[0].get("id") if matches else None
        except HttpRequestError as e:
            logger.error(f"Failed to resolve identity '{identifier}': {e}")
            identity_id = None

        if identity_id is None:
            logger.warning(f"No identity found for '{identifier}'")
        self._identity_cache[identifier] = identity_id
        return identity_id

    # ------------------------------------------------------------------
    # Repository queries
    # ------------------------------------------------------------------

    def get_default_branch(self, project: str, repository: str) -> Optional[str]:
        """Default branch name (without refs/heads/), or None on failure."""
        try:
            data = self._send("GET", self._repo_url(project, repository))
            return normalize_branch_name((data or {}).get("defaultBranch"))
        except (HttpRequestError, KeyError) as e:
            logger.error(f"Failed to get default branch for {project}/{repository}: {e}")
            logger.debug("Default branch lookup failure", exc_info=True)
            return None

    def get_branch_names(self, project: str, repository: str) -> Optional[List[str]]:
        """All branch names, or None on failure."""
        try:
            data = self._send("GET", self._repo_url(project, repository, "/refs"), params={"filter": "heads/"})
            return [normalize_branch_name(ref["name"]) for ref in (data or {}).get("value") or []]
        except (HttpRequestError, KeyError) as e:
            logger.error(f"Failed to list branches for {project}/{repository}: {e}")
            logger.debug("Branch listing failure", exc_info=True)
            return None

    def get_active_pull_requests_with_properties(
        self, project: str, repository: str, creator_id: str
    ) -> List[PullRequestRecord]:
        """Active pull requests created by creator_id that carry updatectl properties."""
        try:
            data = self._send(
                "GET",
                self._repo_url(project, repository, "/pullrequests"),
                params={"searchCriteria.status": "active", "searchCriteria.creatorId": creator_id},
            )
            records: List[PullRequestRecord] = []
            for pr in (data or {}).get("value") or []:
                pr_id = pr["pullRequestId"]
                props = self._send("GET", self._repo_url(project, repository, f"/pullRequests/{pr_id}/properties"))
                properties = [
                    PullRequestProperty(name=name, value=str(entry.get("$value")))
                    for name, entry in ((props or {}).get("value") or {}).items()
                    if isinstance(entry, dict)
                ]
                record = PullRequestRecord(id=pr_id, properties=properties)
                if record.get_property(PROPERTY_PACKAGE_MANAGER) is not None:
                    records.append(record)
            return records
        except (HttpRequestError, KeyError) as e:
            logger.error(f"Failed to list active pull requests for {project}/{repository}: {e}")
            logger.debug("Pull request listing failure", exc_info=True)
            return []

    # ------------------------------------------------------------------
    # Pull request operations
    # ------------------------------------------------------------------

    def _push(
        self,
        project: str,
        repository: str,
        branch_ref: str,
        old_object_id: str,
        message: str,
        author: Any,
        changes: List[FileChange],
    ) -> Any:
        return self._send(
            "POST",
            self._repo_url(project, repository, "/pushes"),
            json={
                "refUpdates": [{"name": branch_ref, "oldObjectId": old_object_id}],
                "commits": [
                    {
                        "comment": message,
                        "author": {"email": author.email, "name": author.name},
                        "changes": [encode_change(change) for change in changes],
                    }
                ],
            },
        )

    def _update_ref(self, project: str, repository: str, name: str, old_object_id: str, new_object_id: str) -> None:
        data = self._send(
            "POST",
            self._repo_url(project, repository, "/refs"),
            json=[{"name": name, "oldObjectId": old_object_id, "newObjectId": new_object_id}],
        )
        results = (data or {}).get("value") or []
        if not results or not results[0].get("success"):
            raise HttpRequestError(f"Failed to update ref {name}: {results[0] if results else 'no result'}")

    def create_pull_request(self, request: CreatePullRequest) -> Optional[int]:
        """Push the changes to a new branch and open a pull request for it.

        Returns:
            The new pull request id, or None if any step failed
        """
        project, repository = request.project, request.repository
        try:
            user_id = self.get_user_id()

            reviewers = []
            for identifier in request.assignees:
                identity_id = self.resolve_identity(identifier)
                if identity_id:
                    reviewers.append({"id": identity_id, "isRequired": True, "isFlagged": True})
            for identifier in request.reviewers:
                identity_id = self.resolve_identity(identifier)
                if identity_id:
                    reviewers.append({"id": identity_id})

            source_ref = f"refs/heads/{request.source_branch}"
            self._push(
                project,
                repository,
                source_ref,
                request.base_commit,
                request.commit_message,
                request.author,
                request.changes,
            )

            body: Dict[str, Any] = {
                "sourceRefName": source_ref,
                "targetRefName": f"refs/heads/{request.target_branch}",
                "title": request.title,
                "description": request.description,
                "reviewers": reviewers,
                "labels": [{"name": label} for label in request.labels],
            }
            if request.work_item is not None:
                body["workItemRefs"] = [{"id": str(request.work_item)}]
            pr = self._send("POST", self._repo_url(project, repository, "/pullrequests"), json=body)
            pr_id = (pr or {}).get("pullRequestId")
            if not pr_id:
                raise HttpRequestError("Pull request was not created")

            if request.properties:
                self._send(
                    "PATCH",
                    self._repo_url(project, repository, f"/pullRequests/{pr_id}/properties"),
                    json=[{"op": "add", "path": f"/{p.name}", "value": p.value} for p in request.properties],
                    headers={"Content-Type": "application/json-patch+json"},
                )

            if request.auto_complete is not None:
                self._send(
                    "PATCH",
                    self._repo_url(project, repository, f"/pullrequests/{pr_id}"),
                    json={
                        "autoCompleteSetBy": {"id": user_id},
                        "completionOptions": {
                            "autoCompleteIgnoreConfigIds": list(request.auto_complete.ignore_policy_config_ids),
                            "deleteSourceBranch": True,
                            "mergeCommitMessage": merge_commit_message(pr_id, request.title, request.description),
                            "mergeStrategy": request.auto_complete.merge_strategy.value,
                            "transitionWorkItems": False,
                        },
                    },
                )

            logger.info(f"Created pull request #{pr_id}: {request.title}")
            return pr_id
        except (HttpRequestError, KeyError, ValueError) as e:
            logger.error(f"Failed to create pull request for {request.source_branch}: {e}")
            logger.debug("Pull request creation failure", exc_info=True)
            return None

    def update_pull_request(self, request: UpdatePullRequest) -> bool:
        """Rebase a pull request's branch onto a new commit and push the changes.

        Drafts, branches with foreign commits and branches that are not
        behind their target are left alone and reported as success.
        """
        project, repository = request.project, request.repository
        pr_id = request.pull_request_id
        try:
            pr = self._send("GET", self._repo_url(project, repository, f"/pullrequests/{pr_id}")) or {}
            if request.skip_if_draft and pr.get("isDraft"):
                logger.warning(f"Skipping update of pull request #{pr_id}: it is a draft")
                return True

            if request.skip_if_commits_from_other_authors:
                commits = self._send("GET", self._repo_url(project, repository, f"/pullRequests/{pr_id}/commits")) or {}
                foreign = [
                    c
                    for c in commits.get("value") or []
                    if ((c.get("author") or {}).get("email") or "").lower() != request.author.email.lower()
                ]
                if foreign:
                    logger.warning(f"Skipping update of pull request #{pr_id}: it has commits from other authors")
                    return True

            source_ref = pr["sourceRefName"]
            source_branch = normalize_branch_name(source_ref)
            target_branch = normalize_branch_name(pr["targetRefName"])

            if request.skip_if_not_behind_target_branch:
                stats = self._send(
                    "GET",
                    self._repo_url(project, repository, "/stats/branches"),
                    params={
                        "name": source_branch,
                        "baseVersionDescriptor.versionType": "branch",
                        "baseVersionDescriptor.version": target_branch,
                    },
                ) or {}
                if stats.get("behindCount", 0) == 0:
                    logger.info(f"Skipping update of pull request #{pr_id}: not behind '{target_branch}'")
                    return True

            self._update_ref(
                project,
                repository,
                source_ref,
                (pr.get("lastMergeSourceCommit") or {}).get("commitId", EMPTY_OBJECT_ID),
                request.commit,
            )

            if pr.get("mergeStatus") == "conflicts":
                message = "Resolve merge conflicts"
            else:
                message = f"Rebase '{source_branch}' onto '{target_branch}'"
            self._push(project, repository, source_ref, request.commit, message, request.author, request.changes)

            logger.info(f"Updated pull request #{pr_id}")
            return True
        except (HttpRequestError, KeyError, ValueError) as e:
            logger.error(f"Failed to update pull request #{pr_id}: {e}")
            logger.debug("Pull request update failure", exc_info=True)
            return False

    def approve_pull_request(self, request: ApprovePullRequest) -> bool:
        """Cast an approving vote as the authenticated user."""
        pr_id = request.pull_request_id
        try:
            user_id = self.get_user_id()
            self._send(
                "PUT",
                self._repo_url(request.project, request.repository, f"/pullRequests/{pr_id}/reviewers/{user_id}"),
                json={"vote": APPROVE_VOTE, "isReapprove": True},
                api_version=APPROVAL_API_VERSION,
            )
            logger.info(f"Approved pull request #{pr_id}")
            return True
        except HttpRequestError as e:
            logger.error(f"Failed to approve pull request #{pr_id}: {e}")
            logger.debug("Pull request approval failure", exc_info=True)
            return False

    def abandon_pull_request(self, request: AbandonPullRequest) -> bool:
        """Abandon a pull request, optionally commenting first, and delete its branch."""
        project, repository = request.project, request.repository
        pr_id = request.pull_request_id
        try:
            user_id = self.get_user_id()

            if request.comment:
                self._send(
                    "POST",
                    self._repo_url(project, repository, f"/pullRequests/{pr_id}/threads"),
                    json={
                        "status": "closed",
                        "comments": [{"author": {"id": user_id}, "content": request.comment, "commentType": "system"}],
                    },
                )

            pr = self._send(
                "PATCH",
                self._repo_url(project, repository, f"/pullrequests/{pr_id}"),
                json={"status": "abandoned", "closedBy": {"id": user_id}},
            ) or {}

            if request.delete_source_branch and pr.get("sourceRefName"):
                self._update_ref(
                    project,
                    repository,
                    pr["sourceRefName"],
                    (pr.get("lastMergeSourceCommit") or {}).get("commitId", EMPTY_OBJECT_ID),
                    EMPTY_OBJECT_ID,
                )

            logger.info(f"Abandoned pull request #{pr_id}")
            return True
        except HttpRequestError as e:
            logger.error(f"Failed to abandon pull request #{pr_id}: {e}")
            logger.debug("Pull request abandon failure", exc_info=True)
            return False
