"""
Normalized data model shared by the issue sources, the stats calculations and the cache.

Every issue backend is reduced to NormalizedIssue; every aggregation run produces one
OrganizationAggregate. Both are frozen once built.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

from errors import ConfigurationError

STATE_OPEN = "open"
STATE_CLOSED = "closed"

SOURCE_GITHUB = "github"
SOURCE_LINEAR = "linear"


class BucketSize(str, Enum):
    DAY = "day"
    MONTH = "month"


def as_utc(value: datetime) -> datetime:
    """Return value as an aware UTC datetime; naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _coerce_window_bound(value: Union[str, date, datetime], end_of_day: bool) -> datetime:
    if isinstance(value, str):
        text = value.strip()
        if len(text) == 10:
            value = date.fromisoformat(text)
        else:
            value = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if isinstance(value, datetime):
        return as_utc(value)
    bound = time.max if end_of_day else time.min
    return datetime.combine(value, bound, tzinfo=timezone.utc)


@dataclass(frozen=True)
class NormalizedIssue:
    """
    Source-agnostic issue produced by an adapter's transform step.
    """
    id: str
    title: str
    state: str  # open/closed
    created_at: datetime
    closed_at: Optional[datetime] = None
    labels: FrozenSet[str] = frozenset()
    assignee: Optional[str] = None
    url: str = ""
    source: str = SOURCE_GITHUB  # github/linear
    team: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.state == STATE_OPEN


@dataclass(frozen=True)
class DateWindow:
    """
    Closed query interval [from_date, to_date] in UTC.
    """
    from_date: datetime
    to_date: datetime

    def __post_init__(self):
        object.__setattr__(self, "from_date", as_utc(self.from_date))
        object.__setattr__(self, "to_date", as_utc(self.to_date))
        if self.to_date < self.from_date:
            raise ConfigurationError(f"Invalid date window: {self.to_date.isoformat()} is before {self.from_date.isoformat()}")

    @classmethod
    def from_dates(cls, from_date: Union[str, date, datetime], to_date: Union[str, date, datetime]) -> "DateWindow":
        """Build a window from calendar dates (YYYY-MM-DD) or datetimes; a bare end date covers its whole day."""
        try:
            start = _coerce_window_bound(from_date, end_of_day=False)
            end = _coerce_window_bound(to_date, end_of_day=True)
        except ValueError as exc:
            raise ConfigurationError(f"Cannot parse date window {from_date!r} - {to_date!r}: {exc}") from exc
        return cls(start, end)

    def contains(self, moment: Optional[datetime]) -> bool:
        if moment is None:
            return False
        return self.from_date <= moment <= self.to_date

    def to_dict(self) -> Dict[str, str]:
        return {"from_date": self.from_date.isoformat(), "to_date": self.to_date.isoformat()}

    @classmethod
    def from_dict(cls, raw: Dict[str, str]) -> "DateWindow":
        return cls(datetime.fromisoformat(raw["from_date"]), datetime.fromisoformat(raw["to_date"]))


@dataclass(frozen=True)
class TimeBucketStat:
    """One bucket of a burn-up series; total is the cumulative open count after the bucket."""
    opened: int = 0
    closed: int = 0
    total: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"opened": self.opened, "closed": self.closed, "total": self.total}


@dataclass
class IssueActivity:
    opened: int = 0
    closed: int = 0
    closed_titles: List[Dict[str, str]] = field(default_factory=list)
    bucket_stats: List[TimeBucketStat] = field(default_factory=list)


@dataclass
class PullRequestActivity:
    opened: int = 0
    closed: int = 0
    types: Dict[str, int] = field(default_factory=dict)
    records: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class RepoStatSnapshot:
    """
    Per-repository intermediate result of one aggregation run.

    contributor_stats is the raw GitHub weekly series; only each contributor's
    author login and (w, c) week pairs are read from it.
    """
    name: str
    stars: int
    contributor_stats: List[Dict[str, Any]]
    issues: IssueActivity
    pull_requests: PullRequestActivity
    created_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None


@dataclass(frozen=True)
class RepoSummary:
    name: str
    stars: int = 0
    contributors: int = 0
    closed_issues: int = 0
    commit_count: int = 0
    closed_issue_titles: Tuple[Dict[str, str], ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "stars": self.stars,
            "contributors": self.contributors,
            "closed_issues": self.closed_issues,
            "commit_count": self.commit_count,
            "closed_issue_titles": list(self.closed_issue_titles),
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "RepoSummary":
        return cls(
            name=raw["name"],
            stars=raw.get("stars", 0),
            contributors=raw.get("contributors", 0),
            closed_issues=raw.get("closed_issues", 0),
            commit_count=raw.get("commit_count", 0),
            closed_issue_titles=tuple(raw.get("closed_issue_titles") or ()),
        )


@dataclass(frozen=True)
class MemberSummary:
    login: str
    contributions: int = 0
    avatar_url: Optional[str] = None
    html_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"login": self.login, "contributions": self.contributions, "avatar_url": self.avatar_url, "html_url": self.html_url}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "MemberSummary":
        return cls(raw["login"], raw.get("contributions", 0), raw.get("avatar_url"), raw.get("html_url"))


@dataclass(frozen=True)
class PeriodStats:
    """Period roll-up across all repositories of one aggregation."""
    repositories_created: int = 0
    repositories_archived: int = 0
    commits: int = 0
    issues_opened: int = 0
    issues_closed: int = 0
    pull_requests_opened: int = 0
    pull_requests_closed: int = 0
    pull_request_types: Dict[str, int] = field(default_factory=dict, hash=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repositories": {"created": self.repositories_created, "archived": self.repositories_archived},
            "commits": self.commits,
            "issues": {"opened": self.issues_opened, "closed": self.issues_closed},
            "pull_requests": {
                "opened": self.pull_requests_opened,
                "closed": self.pull_requests_closed,
                "types": dict(self.pull_request_types),
            },
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "PeriodStats":
        repositories = raw.get("repositories") or {}
        issues = raw.get("issues") or {}
        prs = raw.get("pull_requests") or {}
        return cls(
            repositories_created=repositories.get("created", 0),
            repositories_archived=repositories.get("archived", 0),
            commits=raw.get("commits", 0),
            issues_opened=issues.get("opened", 0),
            issues_closed=issues.get("closed", 0),
            pull_requests_opened=prs.get("opened", 0),
            pull_requests_closed=prs.get("closed", 0),
            pull_request_types=dict(prs.get("types") or {}),
        )


@dataclass(frozen=True)
class OrganizationAggregate:
    """
    The cached unit: everything one get_organization call produces.
    """
    org_name: str
    window: DateWindow
    bucket_size: BucketSize
    repos: Tuple[RepoSummary, ...]
    members: Tuple[MemberSummary, ...]
    yearly_stats: PeriodStats
    issue_stats: Tuple[TimeBucketStat, ...]
    pull_requests: Tuple[Dict[str, Any], ...] = ()
    # closed issues of an organization-wide source, not attributed to any repository
    organization_closed_issue_titles: Tuple[Dict[str, str], ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "org_name": self.org_name,
            "window": self.window.to_dict(),
            "bucket_size": self.bucket_size.value,
            "repos": [r.to_dict() for r in self.repos],
            "members": [m.to_dict() for m in self.members],
            "yearly_stats": self.yearly_stats.to_dict(),
            "issue_stats": [b.to_dict() for b in self.issue_stats],
            "pull_requests": list(self.pull_requests),
            "organization_closed_issue_titles": list(self.organization_closed_issue_titles),
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "OrganizationAggregate":
        return cls(
            org_name=raw["org_name"],
            window=DateWindow.from_dict(raw["window"]),
            bucket_size=BucketSize(raw.get("bucket_size", BucketSize.DAY.value)),
            repos=tuple(RepoSummary.from_dict(r) for r in raw.get("repos") or []),
            members=tuple(MemberSummary.from_dict(m) for m in raw.get("members") or []),
            yearly_stats=PeriodStats.from_dict(raw.get("yearly_stats") or {}),
            issue_stats=tuple(TimeBucketStat(**b) for b in raw.get("issue_stats") or []),
            pull_requests=tuple(raw.get("pull_requests") or []),
            organization_closed_issue_titles=tuple(raw.get("organization_closed_issue_titles") or ()),
        )


@dataclass(frozen=True)
class CacheKey:
    """Identity of a cached aggregate: organization plus query window."""
    org_name: str
    from_date: str
    to_date: str

    @classmethod
    def for_window(cls, org_name: str, window: DateWindow) -> "CacheKey":
        return cls(org_name, window.from_date.isoformat(), window.to_date.isoformat())

    def as_string(self) -> str:
        return f"{self.org_name}:{self.from_date}:{self.to_date}"
