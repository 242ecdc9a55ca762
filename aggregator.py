"""
Organization aggregation: fan out per repository, merge the partial results, cache the aggregate.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from errors import ConfigurationError
from ingest.github import GitHubClient
from ingest.linear import LinearClient
from normalize.models import (
    BucketSize,
    CacheKey,
    DateWindow,
    IssueActivity,
    MemberSummary,
    NormalizedIssue,
    OrganizationAggregate,
    PullRequestActivity,
    RepoStatSnapshot,
    RepoSummary,
    STATE_CLOSED,
)
from normalize.util import parse_timestamp
from scoring.metrics import (
    calculate_issue_stats,
    calculate_yearly_stats,
    categorize_pr_types,
    commits_by_author,
    count_commits_in_window,
    merge_bucket_stats,
)
from scoring.utils import bucket_count, choose_bucket_size
from sources.config import PROVIDER_LINEAR, IssueSourceConfig
from sources.service import MultiSourceIssueService
from storage.cache import OrganizationCache

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class OrganizationAggregator:
    """
    Entry point for one organization report.

    Every non-fork repository is fetched concurrently; a repository whose fetch fails is logged
    and left out of the aggregate while the others proceed. An organization-wide issue source
    is queried once, beside the repositories, as its own unit. Configuration errors and
    credential rejection on the organization listings reach the caller.
    """

    def __init__(self, github_client: GitHubClient, issue_service: MultiSourceIssueService,
                 cache: Optional[OrganizationCache] = None, bucket_size: Optional[Union[BucketSize, str]] = None):
        self.github_client = github_client
        self.issue_service = issue_service
        self.cache = cache
        self.bucket_size = bucket_size
        # Linear clients created by update_external_config; closed by aclose()
        self._owned_clients: List[LinearClient] = []

    async def __aenter__(self) -> "OrganizationAggregator":
        return self

    async def __aexit__(self, *args):
        await self.aclose()

    async def aclose(self):
        while self._owned_clients:
            await self._owned_clients.pop().aclose()

    async def get_organization(self, org_name: str, window: DateWindow, on_progress: Optional[ProgressCallback] = None,
                               force_refresh: bool = False) -> OrganizationAggregate:
        """Return the aggregate for org_name over window, from the cache when a fresh entry exists."""
        if not org_name:
            raise ConfigurationError("Organization name is required")
        key = CacheKey.for_window(org_name, window)
        if self.cache is not None and not force_refresh:
            cached = self.cache.get(key)
            if cached is not None:
                logger.info("using cached aggregate for %s", org_name)
                return cached

        # the service in effect when the call starts serves the whole call
        issue_service = self.issue_service
        size = choose_bucket_size(window, self.bucket_size)

        members, all_repos = await asyncio.gather(
            self.github_client.get_members(org_name),
            self.github_client.get_repos(org_name),
        )
        repos = [r for r in all_repos if not r.get('fork')]
        for repo in repos:
            issue_service.parse_repo_name(self._full_name(org_name, repo))
        logger.info("aggregating %d repositories of %s (%d forks skipped)", len(repos), org_name, len(all_repos) - len(repos))

        total = len(repos)
        processed = 0

        async def unit(repo: Dict[str, Any]) -> RepoStatSnapshot:
            nonlocal processed
            try:
                return await self._fetch_repo(issue_service, org_name, repo, window, size)
            finally:
                processed += 1
                if on_progress is not None:
                    on_progress(processed, total)

        organization_issues, *results = await asyncio.gather(
            self._fetch_organization_issues(issue_service, org_name, window, size),
            *(unit(r) for r in repos),
            return_exceptions=True,
        )
        if isinstance(organization_issues, ConfigurationError):
            raise organization_issues
        if isinstance(organization_issues, BaseException):
            logger.warning("Failed to get organization-wide issues for %s: %s", org_name, organization_issues)
            organization_issues = None

        snapshots: List[RepoStatSnapshot] = []
        for repo, result in zip(repos, results):
            if isinstance(result, ConfigurationError):
                raise result
            if isinstance(result, BaseException):
                logger.warning("Failed to get stats for %s: %s", repo.get('name'), result)
                continue
            snapshots.append(result)

        aggregate = self._merge(org_name, window, size, members, snapshots, organization_issues)
        if self.cache is not None:
            self.cache.save(key, aggregate)
        return aggregate

    @staticmethod
    def _full_name(org_name: str, repo: Dict[str, Any]) -> str:
        return repo.get('full_name') or f"{org_name}/{repo.get('name')}"

    @staticmethod
    def _issue_activity(issues: List[NormalizedIssue], open_count: int, window: DateWindow, size: BucketSize) -> IssueActivity:
        in_window = [i for i in issues if window.contains(i.created_at)]
        closed = [i for i in in_window if i.state == STATE_CLOSED]
        return IssueActivity(
            opened=len(in_window),
            closed=len(closed),
            closed_titles=[{'id': i.id, 'title': i.title} for i in closed],
            bucket_stats=calculate_issue_stats(issues, window, open_count, size),
        )

    async def _fetch_organization_issues(self, issue_service: MultiSourceIssueService, org_name: str,
                                         window: DateWindow, size: BucketSize) -> Optional[IssueActivity]:
        """The organization-wide unit: the only caller flagged is_first_unit. None without such a source."""
        if not issue_service.uses_organization_wide_source():
            return None
        issues, open_issues = await asyncio.gather(
            issue_service.get_issues_for_repo(org_name, window, is_first_unit=True),
            issue_service.get_current_open_issues_for_repo(org_name, is_first_unit=True),
        )
        return self._issue_activity(issues, len(open_issues), window, size)

    async def _fetch_repo(self, issue_service: MultiSourceIssueService, org_name: str, repo: Dict[str, Any],
                          window: DateWindow, size: BucketSize) -> RepoStatSnapshot:
        full_name = self._full_name(org_name, repo)
        owner, name = issue_service.parse_repo_name(full_name)
        contributor_stats, pull_requests, issues, open_issues = await asyncio.gather(
            self.github_client.get_contributor_stats(owner, name),
            self.github_client.get_pull_requests(owner, name, window),
            issue_service.get_issues_for_repo(full_name, window),
            issue_service.get_current_open_issues_for_repo(full_name),
        )

        pr_activity = PullRequestActivity(
            opened=len(pull_requests),
            closed=sum(1 for pr in pull_requests if pr.get('state') == STATE_CLOSED),
            types=categorize_pr_types(pull_requests),
            records=list(pull_requests),
        )
        return RepoStatSnapshot(
            name=repo.get('name') or name,
            stars=int(repo.get('stargazers_count') or 0),
            contributor_stats=contributor_stats,
            issues=self._issue_activity(issues, len(open_issues), window, size),
            pull_requests=pr_activity,
            created_at=parse_timestamp(repo.get('created_at')),
            archived_at=parse_timestamp(repo.get('archived_at')),
        )

    @staticmethod
    def _merge(org_name: str, window: DateWindow, size: BucketSize, members: List[Dict[str, Any]],
               snapshots: List[RepoStatSnapshot], organization_issues: Optional[IssueActivity] = None) -> OrganizationAggregate:
        member_commits: Dict[str, int] = {}
        for snapshot in snapshots:
            for login, commits in commits_by_author(snapshot.contributor_stats, window).items():
                member_commits[login] = member_commits.get(login, 0) + commits

        member_summaries = tuple(
            MemberSummary(
                login=m.get('login'),
                contributions=member_commits.get(m.get('login'), 0),
                avatar_url=m.get('avatar_url'),
                html_url=m.get('html_url'),
            )
            for m in members if m.get('login')
        )
        repo_summaries = tuple(
            RepoSummary(
                name=s.name,
                stars=s.stars,
                contributors=len(s.contributor_stats) if isinstance(s.contributor_stats, list) else 0,
                closed_issues=s.issues.closed,
                commit_count=count_commits_in_window(s.contributor_stats, window),
                closed_issue_titles=tuple(s.issues.closed_titles),
            )
            for s in snapshots
        )
        series = [s.issues.bucket_stats for s in snapshots]
        if organization_issues is not None:
            series.append(organization_issues.bucket_stats)
        issue_stats = merge_bucket_stats(series, length=bucket_count(window, size))
        pull_requests = tuple(pr for s in snapshots for pr in s.pull_requests.records)

        return OrganizationAggregate(
            org_name=org_name,
            window=window,
            bucket_size=size,
            repos=repo_summaries,
            members=member_summaries,
            yearly_stats=calculate_yearly_stats(snapshots, window, organization_issues),
            issue_stats=tuple(issue_stats),
            pull_requests=pull_requests,
            organization_closed_issue_titles=tuple(organization_issues.closed_titles) if organization_issues is not None else (),
        )

    def is_external_enabled(self) -> bool:
        return self.issue_service.is_external_enabled()

    def get_external_provider(self) -> Optional[str]:
        return self.issue_service.get_external_provider()

    def get_issue_source_for_repo(self, repo_name: str) -> str:
        return self.issue_service.get_issue_source_for_repo(repo_name)

    def update_external_config(self, new_config: Union[IssueSourceConfig, Mapping[str, Any]],
                               linear_client: Optional[LinearClient] = None):
        """
        Replace the issue-source configuration for subsequent calls.
        Without linear_client a Linear configuration gets a client owned by this aggregator and
        closed by aclose().
        Raises ConfigurationError (and keeps the current configuration) when the new one is invalid.
        """
        if not isinstance(new_config, IssueSourceConfig):
            new_config = IssueSourceConfig.from_mapping(new_config)
        owned = None
        if linear_client is None and new_config.enabled and new_config.provider == PROVIDER_LINEAR and new_config.api_key:
            linear_client = owned = LinearClient(new_config.api_key)
        self.issue_service = MultiSourceIssueService.from_config(new_config, self.github_client, linear_client)
        if owned is not None:
            self._owned_clients.append(owned)
        logger.info("issue source set to %s", new_config.provider if new_config.enabled else 'github')
