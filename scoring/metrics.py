"""
Pure statistics over normalized issues, pull requests and contributor series.
Produces burn-up series, pull request type histograms and the period roll-up.
"""
from datetime import datetime, timezone
from itertools import accumulate
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from normalize.models import (
    BucketSize,
    DateWindow,
    IssueActivity,
    NormalizedIssue,
    PeriodStats,
    RepoStatSnapshot,
    TimeBucketStat,
)
from .utils import bucket_count, bucket_index, choose_bucket_size

UNKNOWN_PR_TYPE = 'unknown'


def calculate_issue_stats(
    issues: Sequence[NormalizedIssue],
    window: DateWindow,
    current_open_issue_count: int,
    bucket_size: Optional[Union[BucketSize, str]] = None,
) -> List[TimeBucketStat]:
    """
    Compute one burn-up bucket per day (or month) of the window.

    The running total starts from issues created before the window that were still open
    at its start. After the forward pass every total is shifted by the same padding so the
    last bucket equals current_open_issue_count, the independently observed open count.
    """
    size = choose_bucket_size(window, bucket_size)
    count = bucket_count(window, size)
    opened = [0] * count
    closed = [0] * count

    pre_existing_open = sum(
        1 for issue in issues
        if issue.created_at is not None and issue.created_at < window.from_date and (issue.closed_at is None or issue.closed_at >= window.from_date)
    )

    for issue in issues:
        if window.contains(issue.created_at):
            idx = bucket_index(issue.created_at, window, size)
            if 0 <= idx < count:
                opened[idx] += 1
        if window.contains(issue.closed_at):
            idx = bucket_index(issue.closed_at, window, size)
            if 0 <= idx < count:
                closed[idx] += 1

    totals = list(accumulate((o - c for o, c in zip(opened, closed)), initial=pre_existing_open))[1:]
    padding = current_open_issue_count - totals[-1]
    return [TimeBucketStat(opened=o, closed=c, total=t + padding) for o, c, t in zip(opened, closed, totals)]


def _pr_type(pr: Dict[str, Any]) -> str:
    ref = (pr.get('head') or {}).get('ref')
    if not ref or '/' not in ref:
        return UNKNOWN_PR_TYPE
    prefix = ref.split('/', 1)[0].lower()
    return prefix or UNKNOWN_PR_TYPE


def categorize_pr_types(prs: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    """Histogram of closed pull requests by branch prefix (feature/..., fix/...)."""
    types: Dict[str, int] = {}
    for pr in prs or []:
        if pr.get('state') != 'closed':
            continue
        kind = _pr_type(pr)
        types[kind] = types.get(kind, 0) + 1
    return types


def merge_histograms(histograms: Iterable[Dict[str, int]]) -> Dict[str, int]:
    merged: Dict[str, int] = {}
    for hist in histograms:
        for kind, n in (hist or {}).items():
            merged[kind] = merged.get(kind, 0) + n
    return merged


def merge_bucket_stats(series_list: Iterable[Sequence[TimeBucketStat]], length: Optional[int] = None) -> List[TimeBucketStat]:
    """Index-wise sum of per-repository bucket series."""
    series_list = [s for s in series_list if s]
    if length is None:
        length = max((len(s) for s in series_list), default=0)
    opened = [0] * length
    closed = [0] * length
    total = [0] * length
    for series in series_list:
        for i, stat in enumerate(series[:length]):
            opened[i] += stat.opened
            closed[i] += stat.closed
            total[i] += stat.total
    return [TimeBucketStat(o, c, t) for o, c, t in zip(opened, closed, total)]


def _contributors(contributor_stats: Any) -> List[Dict[str, Any]]:
    # GitHub answers {} instead of a list while statistics are still being computed
    if not isinstance(contributor_stats, list):
        return []
    return [c for c in contributor_stats if isinstance(c, dict)]


def _week_commits_in_window(contributor: Dict[str, Any], window: DateWindow) -> int:
    total = 0
    for week in contributor.get('weeks') or []:
        week_start = datetime.fromtimestamp(week.get('w', 0), tz=timezone.utc)
        if window.contains(week_start):
            total += int(week.get('c') or 0)
    return total


def count_commits_in_window(contributor_stats: Any, window: DateWindow) -> int:
    """Sum weekly commit counts whose week start lies in the window."""
    return sum(_week_commits_in_window(c, window) for c in _contributors(contributor_stats))


def commits_by_author(contributor_stats: Any, window: DateWindow) -> Dict[str, int]:
    per_author: Dict[str, int] = {}
    for contributor in _contributors(contributor_stats):
        login = (contributor.get('author') or {}).get('login')
        if not login:
            continue
        per_author[login] = per_author.get(login, 0) + _week_commits_in_window(contributor, window)
    return per_author


def calculate_yearly_stats(snapshots: Sequence[RepoStatSnapshot], window: DateWindow,
                           organization_issues: Optional[IssueActivity] = None) -> PeriodStats:
    """
    Roll commits, issue/PR counts, PR types and repository lifecycle events up across repositories.
    organization_issues carries the counts of an organization-wide issue source, added once.
    """
    org_issues = organization_issues or IssueActivity()
    return PeriodStats(
        repositories_created=sum(1 for s in snapshots if window.contains(s.created_at)),
        repositories_archived=sum(1 for s in snapshots if window.contains(s.archived_at)),
        commits=sum(count_commits_in_window(s.contributor_stats, window) for s in snapshots),
        issues_opened=sum(s.issues.opened for s in snapshots) + org_issues.opened,
        issues_closed=sum(s.issues.closed for s in snapshots) + org_issues.closed,
        pull_requests_opened=sum(s.pull_requests.opened for s in snapshots),
        pull_requests_closed=sum(s.pull_requests.closed for s in snapshots),
        pull_request_types=merge_histograms(s.pull_requests.types for s in snapshots),
    )
