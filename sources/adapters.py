"""
Issue source adapters: one per backend, each reducing its backend to NormalizedIssue.

Adapters are plain classes satisfying the IssueSourceAdapter protocol; they wrap a wire
client rather than inheriting from a base class. A fetch failure for one repository or one
team is logged and turned into an empty result.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional, Protocol

from errors import ConfigurationError, SourceFetchError
from ingest.github import GitHubClient
from ingest.linear import LinearClient
from normalize.models import SOURCE_GITHUB, SOURCE_LINEAR, DateWindow, NormalizedIssue
from normalize.util import is_pull_request, normalize_github_issue, normalize_linear_issue
from sources.config import IssueSourceConfig

logger = logging.getLogger(__name__)


class RepoRef(NamedTuple):
    owner: str
    repo: str

    def __str__(self):
        return f"{self.owner}/{self.repo}"


class IssueSourceAdapter(Protocol):
    source: str
    # True when the backend is queried once for the whole organization
    organization_wide: bool

    async def get_issues(self, scope: Optional[RepoRef], window: DateWindow) -> List[NormalizedIssue]:
        ...

    async def get_current_open_issues(self, scope: Optional[RepoRef]) -> List[NormalizedIssue]:
        ...

    def transform_to_standard_format(self, raw: Dict[str, Any]) -> NormalizedIssue:
        ...

    def validate_config(self, config: Optional[IssueSourceConfig]) -> bool:
        ...


class GitHubIssueAdapter:
    """Per-repository issues from the GitHub REST API, with pull requests filtered out."""

    source = SOURCE_GITHUB
    organization_wide = False

    def __init__(self, client: GitHubClient):
        self.client = client

    async def get_issues(self, scope: RepoRef, window: DateWindow) -> List[NormalizedIssue]:
        try:
            raw = await self.client.get_issues(scope.owner, scope.repo, since=window.from_date.isoformat())
        except SourceFetchError as ex:
            logger.warning("Failed to get issues for %s: %s", scope, ex)
            return []
        issues = [self.transform_to_standard_format(i) for i in raw if not is_pull_request(i)]
        return [i for i in issues if window.contains(i.created_at)]

    async def get_current_open_issues(self, scope: RepoRef) -> List[NormalizedIssue]:
        try:
            raw = await self.client.get_current_open_issues(scope.owner, scope.repo)
        except SourceFetchError as ex:
            logger.warning("Failed to get open issues for %s: %s", scope, ex)
            return []
        return [self.transform_to_standard_format(i) for i in raw if not is_pull_request(i)]

    def transform_to_standard_format(self, raw: Dict[str, Any]) -> NormalizedIssue:
        return normalize_github_issue(raw)

    def validate_config(self, config: Optional[IssueSourceConfig] = None) -> bool:
        # GitHub issues reuse the client's token; nothing else is required
        return True


class LinearIssueAdapter:
    """
    Organization-wide issues from Linear, gathered across every team the API key can see.

    Teams are fetched concurrently, each with its own pagination loop. A team that fails
    contributes no issues instead of failing the whole listing.
    Without a client one is created from the API key; whoever holds the adapter closes it.
    """

    source = SOURCE_LINEAR
    organization_wide = True

    def __init__(self, config: IssueSourceConfig, client: Optional[LinearClient] = None):
        self.validate_config(config)
        self.config = config
        self.client = client or LinearClient(config.api_key)

    def validate_config(self, config: Optional[IssueSourceConfig]) -> bool:
        if config is None or not config.api_key:
            raise ConfigurationError('Linear API key is required')
        return True

    async def _get_teams(self) -> List[Dict[str, Any]]:
        try:
            return await self.client.get_teams()
        except SourceFetchError as ex:
            logger.warning("Failed to fetch Linear teams, falling back to empty list: %s", ex)
            return []

    async def _collect(self, fetch: Callable[[str], Awaitable[List[Dict[str, Any]]]], what: str) -> List[Dict[str, Any]]:
        teams = await self._get_teams()

        async def for_team(team: Dict[str, Any]) -> List[Dict[str, Any]]:
            try:
                return await fetch(team['id'])
            except SourceFetchError as ex:
                logger.warning("Failed to fetch %s for team %s: %s", what, team.get('name'), ex)
                return []

        per_team = await asyncio.gather(*(for_team(t) for t in teams))
        return [node for nodes in per_team for node in nodes]

    async def get_issues(self, scope: Optional[RepoRef], window: DateWindow) -> List[NormalizedIssue]:
        raw = await self._collect(lambda team_id: self.client.get_team_issues(team_id, window), 'issues')
        return [self.transform_to_standard_format(i) for i in raw]

    async def get_current_open_issues(self, scope: Optional[RepoRef]) -> List[NormalizedIssue]:
        raw = await self._collect(self.client.get_team_open_issues, 'open issues')
        return [self.transform_to_standard_format(i) for i in raw]

    def transform_to_standard_format(self, raw: Dict[str, Any]) -> NormalizedIssue:
        return normalize_linear_issue(raw)
