"""
Async Linear GraphQL client.
Issues are listed per team with cursor pagination; the caller decides how to merge teams.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from errors import AuthenticationError, LinearAPIError
from normalize.models import DateWindow
from storage.retry import perform_request_with_retries

logger = logging.getLogger(__name__)

LINEAR_API_URL = "https://api.linear.app/graphql"
PAGE_SIZE = 100

ISSUE_FIELDS = """
  id
  title
  state { name type }
  createdAt
  completedAt
  canceledAt
  labels { nodes { name } }
  assignee { displayName }
  url
  team { name }
"""

TEAMS_QUERY = """
query {
  teams(first: 250) {
    nodes {
      id
      name
    }
  }
}
"""

ISSUES_IN_WINDOW_QUERY = """
query($teamId: ID!, $after: DateTimeOrDuration!, $before: DateTimeOrDuration!, $cursor: String) {
  issues(
    filter: {
      team: { id: { eq: $teamId } }
      createdAt: { gte: $after, lte: $before }
    }
    first: %d
    after: $cursor
  ) {
    nodes { %s }
    pageInfo { hasNextPage endCursor }
  }
}
""" % (PAGE_SIZE, ISSUE_FIELDS)

OPEN_ISSUES_QUERY = """
query($teamId: ID!, $cursor: String) {
  issues(
    filter: {
      team: { id: { eq: $teamId } }
      state: { type: { nin: ["completed", "canceled"] } }
    }
    first: %d
    after: $cursor
  ) {
    nodes { %s }
    pageInfo { hasNextPage endCursor }
  }
}
""" % (PAGE_SIZE, ISSUE_FIELDS)


class LinearClient:
    """Minimal Linear GraphQL client: one request primitive plus team and issue listings."""

    def __init__(self, api_key: str, url: str = None, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self.api_key = api_key
        self.url = url or LINEAR_API_URL
        self.timeout = timeout
        self.headers = {"Authorization": self.api_key or "", "Content-Type": "application/json"}
        self._client = http_client
        self._owns_client = http_client is None

    async def __aenter__(self) -> "LinearClient":
        _ = self.client
        return self

    async def __aexit__(self, *args):
        await self.aclose()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def request(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """POST a GraphQL document; raises LinearAPIError on HTTP failure or a GraphQL errors array."""
        resp = await perform_request_with_retries(
            self.client, 'POST', self.url, headers=self.headers, json_body={"query": query, "variables": variables or {}}
        )
        if resp.status_code in (401, 403):
            raise AuthenticationError(f"Linear rejected the API key: {resp.status_code} {resp.reason_phrase}", resp.status_code)
        if not resp.is_success:
            raise LinearAPIError(f"Linear API error: {resp.status_code} {resp.reason_phrase}", resp.status_code)
        data = resp.json()
        errors = data.get('errors')
        if errors:
            raise LinearAPIError(f"Linear GraphQL error: {errors[0].get('message')}", resp.status_code)
        return data

    async def get_teams(self) -> List[Dict[str, Any]]:
        data = await self.request(TEAMS_QUERY)
        return ((data.get('data') or {}).get('teams') or {}).get('nodes') or []

    async def _paginate_issues(self, query: str, variables: Dict[str, Any]) -> List[Dict[str, Any]]:
        nodes: List[Dict[str, Any]] = []
        cursor = None
        while True:
            data = await self.request(query, dict(variables, cursor=cursor))
            connection = (data.get('data') or {}).get('issues') or {}
            nodes.extend(connection.get('nodes') or [])
            page_info = connection.get('pageInfo') or {}
            if not page_info.get('hasNextPage'):
                break
            cursor = page_info.get('endCursor')
        return nodes

    async def get_team_issues(self, team_id: str, window: DateWindow) -> List[Dict[str, Any]]:
        variables = {"teamId": team_id, "after": window.from_date.isoformat(), "before": window.to_date.isoformat()}
        return await self._paginate_issues(ISSUES_IN_WINDOW_QUERY, variables)

    async def get_team_open_issues(self, team_id: str) -> List[Dict[str, Any]]:
        return await self._paginate_issues(OPEN_ISSUES_QUERY, {"teamId": team_id})
