"""
Report renderer: generate text, Markdown, HTML, CSV and JSON summaries of an Organization.
Markdown and HTML are rendered with Jinja2 templates defined in this module.
"""

import csv
import io
import json
from typing import Any, Dict, Optional

from jinja2 import Environment, DictLoader, select_autoescape

from models import Organization

MARKDOWN_TEMPLATE = """# {{ org.name }} activity{% if window %} ({{ window.from_date.date() }} to {{ window.to_date.date() }}){% endif %}


- Repositories: **{{ org.repos|length }}**
- Members: **{{ org.members|length }}**
- Stars: **{{ org.total_stars() }}**
- Commits: **{{ stats.commits }}**
- Issues: **{{ stats.issues_opened }}** opened / **{{ stats.issues_closed }}** closed
- Pull requests: **{{ stats.pull_requests_opened }}** opened / **{{ stats.pull_requests_closed }}** closed
- Repositories created / archived: **{{ stats.repositories_created }}** / **{{ stats.repositories_archived }}**

## Most popular repositories

{% for r in org.most_popular_repos(limit) %}
- {{ r.name }} ({{ r.stars }} stars)
{% else %}
_No repositories._
{% endfor %}

## Most active repositories

{% for r in org.most_active_repos(limit) %}
- {{ r.name }}: {{ r.commit_count }} commits, {{ r.closed_issues }} closed issues
{% else %}
_No repositories._
{% endfor %}

## Most active members

{% for m in org.most_active_members(limit) %}
- {{ m.login }}: {{ m.contributions }} commits
{% else %}
_No members._
{% endfor %}

## Pull request types

{% for kind, n in org.pull_request_type_stats().items() %}
- {{ kind }}: {{ n }}
{% else %}
_No closed pull requests._
{% endfor %}
{% if org.issue_stats %}

## Open issues (burn-up)

| bucket | opened | closed | total |
|---|---|---|---|
{% for b in org.issue_stats %}
| {{ loop.index0 }} | {{ b.opened }} | {{ b.closed }} | {{ b.total }} |
{% endfor %}
{% endif %}
"""

HTML_TEMPLATE = """<html><body>
<h1>{{ org.name }} activity</h1>
{% if window %}<p>{{ window.from_date.date() }} to {{ window.to_date.date() }}</p>{% endif %}
<ul>
<li>Repositories: {{ org.repos|length }}</li>
<li>Members: {{ org.members|length }}</li>
<li>Stars: {{ org.total_stars() }}</li>
<li>Commits: {{ stats.commits }}</li>
<li>Issues opened/closed: {{ stats.issues_opened }}/{{ stats.issues_closed }}</li>
<li>Pull requests opened/closed: {{ stats.pull_requests_opened }}/{{ stats.pull_requests_closed }}</li>
</ul>
<h2>Most active members</h2>
<ol>
{% for m in org.most_active_members(limit) %}<li>{{ m.login }} ({{ m.contributions }})</li>
{% endfor %}</ol>
<h2>Pull requests with images</h2>
{% for pr in org.pull_requests_with_images() %}<div class="pr"><h3>{{ pr.title }}</h3>
{% for src in pr.images %}<img src="{{ src }}" alt="{{ pr.title }}">
{% endfor %}</div>
{% else %}<p>No pull request images.</p>
{% endfor %}
</body></html>
"""

_env = Environment(
    loader=DictLoader({'summary.md': MARKDOWN_TEMPLATE, 'summary.html': HTML_TEMPLATE}),
    autoescape=select_autoescape(['html']),
    trim_blocks=True,
)


def render_text(org: Organization, limit: int = 5) -> str:
    """Render a simple plain-text summary."""
    lines = [str(org)]
    stats = org.yearly_stats
    lines.append(f"Issues opened/closed: {stats.issues_opened}/{stats.issues_closed}")
    lines.append(f"Pull requests opened/closed: {stats.pull_requests_opened}/{stats.pull_requests_closed}")
    if org.issue_stats:
        lines.append(f"Open issues at end of window: {org.issue_stats[-1].total}")
    top = org.most_active_members(limit)
    if top:
        lines.append("Top members: " + ", ".join(f"{m['login']} ({m['contributions']})" for m in top))
    types = org.pull_request_type_stats()
    if types:
        lines.append("PR types: " + ", ".join(f"{k}={v}" for k, v in types.items()))
    return "\n".join(lines)


def render_markdown(org: Organization, limit: int = 5) -> str:
    tmpl = _env.get_template('summary.md')
    return tmpl.render(org=org, stats=org.yearly_stats, window=org.window, limit=limit)


def render_html(org: Organization, limit: int = 5) -> str:
    tmpl = _env.get_template('summary.html')
    return tmpl.render(org=org, stats=org.yearly_stats, window=org.window, limit=limit)


def render_csv(org: Organization) -> str:
    """One row per repository."""
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(['name', 'stars', 'contributors', 'commit_count', 'closed_issues'])
    for r in org.repos:
        writer.writerow([r.name, r.stars, r.contributors, r.commit_count, r.closed_issues])
    return output.getvalue()


def render_json(org: Organization) -> str:
    """Export the organization summary, the period roll-up and the burn-up series as JSON."""
    data: Dict[str, Any] = {
        'name': org.name,
        'window': org.window.to_dict() if org.window else None,
        'total_stars': org.total_stars(),
        'repos': [r.to_dict() for r in org.repos],
        'members': [m.to_dict() for m in org.members],
        'yearly_stats': org.yearly_stats.to_dict(),
        'issue_stats': [b.to_dict() for b in org.issue_stats],
        'pull_request_types': org.pull_request_type_stats(),
    }
    return json.dumps(data, indent=2)


def render(org: Optional[Organization], fmt: str = 'text', limit: int = 5) -> str:
    """Main render function."""
    if org is None:
        return ''
    fmt_l = (fmt or 'text').lower()
    if fmt_l in ('md', 'markdown'):
        return render_markdown(org, limit)
    if fmt_l in ('html', 'htm'):
        return render_html(org, limit)
    if fmt_l == 'csv':
        return render_csv(org)
    if fmt_l in ('json', 'js'):
        return render_json(org)
    return render_text(org, limit)
