"""
Source-agnostic issue queries for the organization aggregator.
"""
import logging
from typing import List, Optional

from errors import ConfigurationError
from ingest.github import GitHubClient
from ingest.linear import LinearClient
from normalize.models import SOURCE_GITHUB, DateWindow, NormalizedIssue
from sources.adapters import GitHubIssueAdapter, IssueSourceAdapter, RepoRef
from sources.config import IssueSourceConfig
from sources.factory import create_issue_adapter

logger = logging.getLogger(__name__)


class MultiSourceIssueService:
    """
    Routes per-repository issue queries to GitHub or to the configured external backend.

    An organization-wide backend (Linear) answers only for the caller flagged is_first_unit, which is
    the aggregator's organization-wide unit; every repository query gets an empty result so the
    organization's issues are counted once.
    """

    def __init__(self, github_adapter: IssueSourceAdapter, external_adapter: Optional[IssueSourceAdapter] = None,
                 config: Optional[IssueSourceConfig] = None):
        self.github_adapter = github_adapter
        self.external_adapter = external_adapter
        self.config = config or IssueSourceConfig()

    @classmethod
    def from_config(cls, config: Optional[IssueSourceConfig], github_client: GitHubClient,
                    linear_client: Optional[LinearClient] = None) -> "MultiSourceIssueService":
        config = config or IssueSourceConfig()
        external = create_issue_adapter(config, github_client, linear_client) if config.enabled else None
        return cls(GitHubIssueAdapter(github_client), external, config)

    @property
    def active_adapter(self) -> IssueSourceAdapter:
        if self.config.enabled and self.external_adapter is not None:
            return self.external_adapter
        return self.github_adapter

    def uses_organization_wide_source(self) -> bool:
        return bool(getattr(self.active_adapter, 'organization_wide', False))

    async def get_issues_for_repo(self, repo_name: str, window: DateWindow, is_first_unit: bool = False) -> List[NormalizedIssue]:
        adapter = self.active_adapter
        if adapter.organization_wide:
            if not is_first_unit:
                return []
            logger.info("Fetching organization-wide %s issues", adapter.source)
            return await adapter.get_issues(None, window)
        return await adapter.get_issues(self.parse_repo_name(repo_name), window)

    async def get_current_open_issues_for_repo(self, repo_name: str, is_first_unit: bool = False) -> List[NormalizedIssue]:
        adapter = self.active_adapter
        if adapter.organization_wide:
            if not is_first_unit:
                return []
            return await adapter.get_current_open_issues(None)
        return await adapter.get_current_open_issues(self.parse_repo_name(repo_name))

    def get_issue_source_for_repo(self, repo_name: str) -> str:
        return self.config.provider if self.config.enabled and self.config.provider else SOURCE_GITHUB

    def parse_repo_name(self, repo_name: str) -> RepoRef:
        if '/' in repo_name:
            owner, _, repo = repo_name.partition('/')
            if owner and repo and '/' not in repo:
                return RepoRef(owner, repo)
        elif repo_name and self.config.default_owner:
            return RepoRef(self.config.default_owner, repo_name)
        raise ConfigurationError(
            f"Cannot parse repository name: {repo_name}. Please provide owner/repo format or configure default_owner."
        )

    def is_external_enabled(self) -> bool:
        return bool(self.config.enabled)

    def get_external_provider(self) -> Optional[str]:
        return self.config.provider or None
