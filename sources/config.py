"""
Issue-source configuration: which backend serves issues and with which credentials.
Loaded from a YAML file (camelCase or snake_case keys) with environment overrides.
"""
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import yaml

from errors import ConfigurationError

PROVIDER_GITHUB = 'github'
PROVIDER_LINEAR = 'linear'
SUPPORTED_PROVIDERS = (PROVIDER_GITHUB, PROVIDER_LINEAR)

# environment overrides
ENV_CONFIG_PATH = 'ORGPULSE_ISSUE_CONFIG'
ENV_PROVIDER = 'ORGPULSE_ISSUE_PROVIDER'
ENV_LINEAR_API_KEY = 'LINEAR_API_KEY'


@dataclass(frozen=True)
class IssueSourceConfig:
    enabled: bool = False
    provider: Optional[str] = None
    credentials: Dict[str, str] = field(default_factory=dict, hash=False)
    default_owner: Optional[str] = None

    @property
    def api_key(self) -> Optional[str]:
        return self.credentials.get('apiKey') or self.credentials.get('api_key')

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "IssueSourceConfig":
        """Build a config from a plain mapping such as {'enabled': True, 'provider': 'linear', 'credentials': {'apiKey': ...}}."""
        raw = raw or {}
        credentials = raw.get('credentials') or {}
        if not isinstance(credentials, Mapping):
            raise ConfigurationError("Issue source 'credentials' must be a mapping")
        provider = raw.get('provider')
        return cls(
            enabled=bool(raw.get('enabled', False)),
            provider=str(provider).lower() if provider else None,
            credentials={str(k): str(v) for k, v in credentials.items() if v is not None},
            default_owner=raw.get('defaultOwner') or raw.get('default_owner'),
        )


def load_issue_source_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> IssueSourceConfig:
    """
    Load the issue-source configuration.

    The YAML file (path argument or ORGPULSE_ISSUE_CONFIG) is read first; ORGPULSE_ISSUE_PROVIDER
    then enables and selects a provider and LINEAR_API_KEY fills in the Linear credentials.
    """
    env = os.environ if environ is None else environ
    path = path or env.get(ENV_CONFIG_PATH)
    data: Dict[str, Any] = {}
    if path:
        if not os.path.exists(path):
            raise ConfigurationError(f"Issue source config file not found at: {path}")
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as ex:
            raise ConfigurationError(f"Failed to parse issue source config {path}: {ex}") from ex
        if not isinstance(data, dict):
            raise ConfigurationError(f"Issue source config {path} must contain a mapping")

    provider = env.get(ENV_PROVIDER)
    if provider:
        data['provider'] = provider
        data['enabled'] = True
    api_key = env.get(ENV_LINEAR_API_KEY)
    if api_key and (data.get('provider') or '').lower() == PROVIDER_LINEAR:
        credentials = dict(data.get('credentials') or {})
        credentials.setdefault('apiKey', api_key)
        data['credentials'] = credentials
    return IssueSourceConfig.from_mapping(data)
