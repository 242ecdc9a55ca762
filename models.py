"""
Read model over an OrganizationAggregate for the CLI and report renderers.
"""
from typing import Any, Dict, List, Optional, Sequence

from normalize.models import DateWindow, MemberSummary, OrganizationAggregate, PeriodStats, RepoSummary, TimeBucketStat


class Organization:
    """
    Represents one organization's activity over a date window.
    """
    def __init__(self, name: str, repos: Sequence[RepoSummary], members: Sequence[MemberSummary], yearly_stats: PeriodStats,
                 issue_stats: Sequence[TimeBucketStat] = (), pull_requests: Sequence[Dict[str, Any]] = (),
                 window: Optional[DateWindow] = None, organization_closed_issue_titles: Sequence[Dict[str, str]] = ()):
        self.name = name
        self.repos = list(repos)
        self.members = list(members)
        self.yearly_stats = yearly_stats
        self.issue_stats = list(issue_stats)
        self.pull_requests = list(pull_requests)
        self.window = window
        self.organization_closed_issue_titles = list(organization_closed_issue_titles)

    @classmethod
    def from_aggregate(cls, aggregate: OrganizationAggregate) -> "Organization":
        return cls(
            aggregate.org_name,
            aggregate.repos,
            aggregate.members,
            aggregate.yearly_stats,
            aggregate.issue_stats,
            aggregate.pull_requests,
            aggregate.window,
            aggregate.organization_closed_issue_titles,
        )

    def total_stars(self) -> int:
        return sum(r.stars for r in self.repos)

    def most_popular_repos(self, limit: int = 5) -> List[Dict[str, Any]]:
        ranked = sorted(self.repos, key=lambda r: r.stars, reverse=True)[:limit]
        return [{'name': r.name, 'stars': r.stars} for r in ranked]

    def most_active_repos(self, limit: int = 5) -> List[Dict[str, Any]]:
        ranked = sorted(self.repos, key=lambda r: r.commit_count, reverse=True)[:limit]
        return [{'name': r.name, 'commit_count': r.commit_count, 'closed_issues': r.closed_issues} for r in ranked]

    def most_active_members(self, limit: int = 5) -> List[Dict[str, Any]]:
        ranked = sorted(self.members, key=lambda m: m.contributions, reverse=True)[:limit]
        return [{'login': m.login, 'contributions': m.contributions} for m in ranked]

    def pull_request_type_stats(self) -> Dict[str, int]:
        """PR type histogram ordered by count, largest first."""
        types = self.yearly_stats.pull_request_types or {}
        return dict(sorted(types.items(), key=lambda kv: kv[1], reverse=True))

    def closed_issue_titles(self) -> List[Dict[str, str]]:
        titles: List[Dict[str, str]] = []
        for repo in self.repos:
            titles.extend(repo.closed_issue_titles)
        titles.extend(self.organization_closed_issue_titles)
        return titles

    def pull_requests_with_images(self) -> List[Dict[str, Any]]:
        return [pr for pr in self.pull_requests if pr.get('images')]

    def __str__(self):
        return (f"Organization: {self.name}\nRepositories: {len(self.repos)}\nMembers: {len(self.members)}\n"
                f"Stars: {self.total_stars()}\nCommits: {self.yearly_stats.commits}")
