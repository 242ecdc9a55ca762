"""
Sources package: issue backends behind one source-agnostic query surface.
"""

from .adapters import GitHubIssueAdapter, IssueSourceAdapter, LinearIssueAdapter, RepoRef
from .config import IssueSourceConfig, load_issue_source_config
from .factory import create_issue_adapter
from .service import MultiSourceIssueService

__all__ = [
    "GitHubIssueAdapter",
    "IssueSourceAdapter",
    "LinearIssueAdapter",
    "RepoRef",
    "IssueSourceConfig",
    "load_issue_source_config",
    "create_issue_adapter",
    "MultiSourceIssueService",
]
