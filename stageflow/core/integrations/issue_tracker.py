"""
Stageflow Issue Tracker Integration
===================================

GraphQL client for Linear, used to import assigned issues as tasks.

Network errors, HTTP 429 and 5xx are retried with backoff. HTTP 401 is
an invalid API key and fails immediately.
"""

from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog

from stageflow.core.config import Settings, settings as default_settings
from stageflow.core.errors import (
    InvalidCredentialsError,
    IssueTrackerError,
    IssueTrackerHTTPError,
)
from stageflow.core.pipeline.collaborators import IssuePage, IssueTracker, TrackerIssue
from stageflow.core.retry import RetryPolicy, with_retry

logger = structlog.get_logger()


# ==========================================================================
# Queries
# ==========================================================================

VIEWER_QUERY = "{ viewer { name organization { id name } } }"

TEAMS_QUERY = "{ viewer { teams { nodes { id name key } } } }"

PROJECTS_QUERY = """query ($teamId: String!) {
  team(id: $teamId) {
    projects(first: 100) {
      nodes { id name }
    }
  }
}"""

ASSIGNED_ISSUES_QUERY = """query ($filter: IssueFilter, $first: Int!, $after: String) {
  viewer {
    assignedIssues(filter: $filter, first: $first, after: $after) {
      nodes {
        id
        identifier
        title
        description
        priority
        url
        state { name }
        branchName
      }
      pageInfo {
        hasNextPage
        endCursor
      }
    }
  }
}"""

ISSUE_DETAIL_QUERY = """query ($id: String!, $first: Int!) {
  issue(id: $id) {
    id
    identifier
    title
    description
    priority
    url
    state { name }
    branchName
    comments(first: $first) {
      nodes {
        body
        user { name }
        createdAt
      }
    }
  }
}"""


@dataclass
class ViewerInfo:
    """Result of an API key check."""
    valid: bool
    name: str = ""
    org_name: str = ""
    error: Optional[str] = None


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, IssueTrackerHTTPError):
        return exc.status == 429 or exc.status >= 500
    return False


def _issue_from_node(node: dict[str, Any]) -> TrackerIssue:
    state = node.get("state") or {}
    return TrackerIssue(
        id=node["id"],
        identifier=node.get("identifier") or "",
        title=node.get("title") or "",
        description=node.get("description") or "",
        url=node.get("url"),
        state=state.get("name") or "Unknown",
        priority=node.get("priority"),
        branch_name=node.get("branchName"),
    )


# ==========================================================================
# Client
# ==========================================================================

class LinearIssueTracker(IssueTracker):
    """
    Linear GraphQL client.

    Pass `client` to share an httpx.AsyncClient (or a mocked one in
    tests); otherwise the tracker owns one and close() disposes it.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        config: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or default_settings
        self.api_key = api_key or self.config.ISSUE_TRACKER_API_KEY
        self.api_url = self.config.ISSUE_TRACKER_API_URL
        self.page_size = self.config.ISSUE_TRACKER_PAGE_SIZE
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self.config.ISSUE_TRACKER_TIMEOUT)
        self.retry_policy = RetryPolicy(
            max_attempts=self.config.ISSUE_TRACKER_MAX_RETRIES,
            base_delay=self.config.ISSUE_TRACKER_BASE_DELAY,
            max_delay=self.config.ISSUE_TRACKER_MAX_DELAY,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "LinearIssueTracker":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _post(self, query: str, variables: Optional[dict[str, Any]]) -> dict[str, Any]:
        payload: dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        response = await self._client.post(
            self.api_url,
            json=payload,
            headers={"Authorization": self.api_key or ""},
        )
        if response.status_code == 401:
            raise InvalidCredentialsError("Invalid API key")
        if response.is_error:
            raise IssueTrackerHTTPError(
                f"Issue tracker API error: {response.status_code}",
                response.status_code,
            )

        body = response.json()
        errors = body.get("errors") or []
        if errors:
            raise IssueTrackerError(errors[0].get("message", "Unknown GraphQL error"))
        return body.get("data") or {}

    async def query(self, query: str, variables: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """
        Run a GraphQL query with retry.

        Raises:
            InvalidCredentialsError: HTTP 401
            IssueTrackerHTTPError: non-2xx after retries
            IssueTrackerError: GraphQL errors in the response
        """
        if not self.api_key:
            raise InvalidCredentialsError("No issue tracker API key configured")

        return await with_retry(
            lambda: self._post(query, variables),
            should_retry=is_retryable,
            policy=self.retry_policy,
            operation="issue_tracker.query",
        )

    async def verify_api_key(self) -> ViewerInfo:
        """Check the API key. Never raises for tracker errors."""
        try:
            data = await self.query(VIEWER_QUERY)
        except (InvalidCredentialsError, IssueTrackerError, httpx.HTTPError) as e:
            logger.warning("issue_tracker_key_invalid", error=str(e))
            return ViewerInfo(valid=False, error=str(e))

        viewer = data["viewer"]
        return ViewerInfo(
            valid=True,
            name=viewer.get("name") or "",
            org_name=(viewer.get("organization") or {}).get("name") or "",
        )

    async def fetch_teams(self) -> list[dict[str, str]]:
        data = await self.query(TEAMS_QUERY)
        return data["viewer"]["teams"]["nodes"]

    async def fetch_projects(self, team_id: str) -> list[dict[str, str]]:
        data = await self.query(PROJECTS_QUERY, {"teamId": team_id})
        return data["team"]["projects"]["nodes"]

    async def fetch_assigned_issues(
        self,
        team_id: Optional[str] = None,
        project_id: Optional[str] = None,
        after: Optional[str] = None,
    ) -> IssuePage:
        """One page of open issues assigned to the API key's user."""
        issue_filter: dict[str, Any] = {
            "state": {"type": {"nin": ["completed", "canceled"]}},
        }
        if team_id:
            issue_filter["team"] = {"id": {"eq": team_id}}
        if project_id:
            issue_filter["project"] = {"id": {"eq": project_id}}

        variables: dict[str, Any] = {"filter": issue_filter, "first": self.page_size}
        if after:
            variables["after"] = after

        data = await self.query(ASSIGNED_ISSUES_QUERY, variables)
        assigned = data["viewer"]["assignedIssues"]
        page_info = assigned.get("pageInfo") or {}

        logger.info("issue_tracker_issues_fetched", count=len(assigned["nodes"]))
        return IssuePage(
            issues=[_issue_from_node(node) for node in assigned["nodes"]],
            has_next_page=bool(page_info.get("hasNextPage")),
            end_cursor=page_info.get("endCursor"),
        )

    async def fetch_issue_detail(self, issue_id: str) -> TrackerIssue:
        """Issue with its description and comments as "author: body"."""
        data = await self.query(ISSUE_DETAIL_QUERY, {"id": issue_id, "first": self.page_size})
        node = data["issue"]
        issue = _issue_from_node(node)
        issue.comments = [
            f"{(comment.get('user') or {}).get('name') or 'Unknown'}: {comment.get('body', '')}"
            for comment in (node.get("comments") or {}).get("nodes", [])
        ]
        return issue
