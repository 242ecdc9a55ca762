"""
Select the concrete issue adapter from an IssueSourceConfig.
"""
from typing import Optional

from errors import ConfigurationError
from ingest.github import GitHubClient
from ingest.linear import LinearClient
from sources.adapters import GitHubIssueAdapter, IssueSourceAdapter, LinearIssueAdapter
from sources.config import PROVIDER_GITHUB, PROVIDER_LINEAR, IssueSourceConfig


def create_issue_adapter(
    config: Optional[IssueSourceConfig], github_client: GitHubClient, linear_client: Optional[LinearClient] = None
) -> IssueSourceAdapter:
    """Return the GitHub adapter unless an external provider is enabled; validates credentials up front."""
    if config is None or not config.enabled:
        return GitHubIssueAdapter(github_client)
    if config.provider == PROVIDER_LINEAR:
        return LinearIssueAdapter(config, client=linear_client)
    if config.provider == PROVIDER_GITHUB:
        return GitHubIssueAdapter(github_client)
    raise ConfigurationError(f"Unsupported adapter type: {config.provider}")
