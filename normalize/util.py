"""
Normalization utility helpers.
Small helpers to normalize raw GitHub and Linear payloads into normalize.models entities.
"""
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional, Union

from normalize.models import (
    NormalizedIssue,
    SOURCE_GITHUB,
    SOURCE_LINEAR,
    STATE_CLOSED,
    STATE_OPEN,
    as_utc,
)

# Linear workflow state names; anything else is treated as open
LINEAR_STATE_MAP = {
    'Todo': STATE_OPEN,
    'In Progress': STATE_OPEN,
    'In Review': STATE_OPEN,
    'Done': STATE_CLOSED,
    'Canceled': STATE_CLOSED,
    'Cancelled': STATE_CLOSED,
}


def parse_timestamp(value: Union[str, int, float, date, datetime, None]) -> Optional[datetime]:
    """Parse an ISO-8601 string, epoch seconds or date into an aware UTC datetime (None passes through)."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    text = str(value).strip()
    if len(text) == 10:
        d = date.fromisoformat(text)
        return datetime(d.year, d.month, d.day, tzinfo=timezone.utc)
    return as_utc(datetime.fromisoformat(text.replace('Z', '+00:00')))


def is_pull_request(raw: Dict[str, Any]) -> bool:
    """GitHub's issues listing also returns pull requests; they carry a pull_request member."""
    return bool(raw.get('pull_request'))


def map_linear_state(state_name: Optional[str]) -> str:
    return LINEAR_STATE_MAP.get(state_name or '', STATE_OPEN)


def normalize_github_issue(raw: Dict[str, Any]) -> NormalizedIssue:
    """Create a NormalizedIssue from a raw GitHub REST issue dict."""
    labels = frozenset(
        (lbl.get('name') if isinstance(lbl, dict) else str(lbl)) for lbl in (raw.get('labels') or []) if lbl
    )
    assignee = (raw.get('assignee') or {}).get('login')
    state = STATE_CLOSED if raw.get('state') == STATE_CLOSED else STATE_OPEN
    return NormalizedIssue(
        id=str(raw.get('id') or raw.get('number') or ''),
        title=raw.get('title') or '',
        state=state,
        created_at=parse_timestamp(raw.get('created_at')),
        closed_at=parse_timestamp(raw.get('closed_at')),
        labels=labels,
        assignee=assignee,
        url=raw.get('html_url') or '',
        source=SOURCE_GITHUB,
    )


def normalize_linear_issue(raw: Dict[str, Any]) -> NormalizedIssue:
    """Create a NormalizedIssue from a raw Linear GraphQL issue node.
    Cancelled issues may have no completedAt; canceledAt is used as their close time.
    """
    state_name = (raw.get('state') or {}).get('name')
    labels = frozenset(n.get('name') for n in ((raw.get('labels') or {}).get('nodes') or []) if n.get('name'))
    team = (raw.get('team') or {}).get('name')
    return NormalizedIssue(
        id=str(raw.get('id') or ''),
        title=raw.get('title') or '',
        state=map_linear_state(state_name),
        created_at=parse_timestamp(raw.get('createdAt')),
        closed_at=parse_timestamp(raw.get('completedAt') or raw.get('canceledAt')),
        labels=labels,
        assignee=(raw.get('assignee') or {}).get('displayName'),
        url=raw.get('url') or '',
        source=SOURCE_LINEAR,
        team=team,
    )
