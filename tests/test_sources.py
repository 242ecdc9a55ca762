import unittest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from errors import ConfigurationError, GitHubAPIError, LinearAPIError
from normalize.models import DateWindow
from sources.adapters import GitHubIssueAdapter, LinearIssueAdapter, RepoRef
from sources.config import IssueSourceConfig, load_issue_source_config
from sources.factory import create_issue_adapter
from sources.service import MultiSourceIssueService

LINEAR_CONFIG = IssueSourceConfig(enabled=True, provider='linear', credentials={'apiKey': 'lin_key'})


def _linear_node(node_id, created, state='Todo', completed=None):
    return {
        'id': node_id,
        'title': f"Linear {node_id}",
        'state': {'name': state},
        'createdAt': created,
        'completedAt': completed,
        'labels': {'nodes': []},
        'team': {'name': 'Core'},
    }


class TestGitHubIssueAdapter(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.client = MagicMock()
        self.adapter = GitHubIssueAdapter(self.client)
        self.window = DateWindow.from_dates('2025-01-01', '2025-01-31')

    async def test_issues_exclude_pull_requests_and_out_of_window(self):
        self.client.get_issues = AsyncMock(return_value=[
            {'id': 1, 'title': 'in window', 'state': 'open', 'created_at': '2025-01-10T00:00:00Z'},
            {'id': 2, 'title': 'a PR', 'state': 'open', 'created_at': '2025-01-10T00:00:00Z', 'pull_request': {}},
            {'id': 3, 'title': 'old but updated', 'state': 'closed', 'created_at': '2024-06-01T00:00:00Z',
             'closed_at': '2025-01-05T00:00:00Z'},
        ])
        issues = await self.adapter.get_issues(RepoRef('acme', 'api'), self.window)
        self.assertEqual([i.title for i in issues], ['in window'])
        self.client.get_issues.assert_awaited_once_with('acme', 'api', since=self.window.from_date.isoformat())

    async def test_fetch_failure_degrades_to_empty(self):
        self.client.get_issues = AsyncMock(side_effect=GitHubAPIError('boom', 500))
        with self.assertLogs('sources.adapters', level='WARNING'):
            self.assertEqual(await self.adapter.get_issues(RepoRef('acme', 'api'), self.window), [])

    async def test_current_open_issues(self):
        self.client.get_current_open_issues = AsyncMock(return_value=[
            {'id': 1, 'title': 'open', 'state': 'open', 'created_at': '2020-01-01T00:00:00Z'},
        ])
        issues = await self.adapter.get_current_open_issues(RepoRef('acme', 'api'))
        self.assertEqual(len(issues), 1)
        self.assertTrue(issues[0].is_open)

    def test_validate_config(self):
        self.assertTrue(self.adapter.validate_config(None))
        self.assertFalse(self.adapter.organization_wide)


class TestLinearIssueAdapter(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.client = MagicMock()
        self.client.get_teams = AsyncMock(return_value=[{'id': 't1', 'name': 'Core'}, {'id': 't2', 'name': 'Ops'}])
        self.adapter = LinearIssueAdapter(LINEAR_CONFIG, client=self.client)
        self.window = DateWindow.from_dates('2025-01-01', '2025-01-31')

    def test_api_key_is_required(self):
        with self.assertRaises(ConfigurationError) as ctx:
            LinearIssueAdapter(IssueSourceConfig(enabled=True, provider='linear'))
        self.assertEqual(str(ctx.exception), 'Linear API key is required')

    async def test_issues_gathered_across_teams(self):
        async def team_issues(team_id, window):
            return [_linear_node(f"{team_id}-1", '2025-01-02T00:00:00.000Z', 'Done', '2025-01-03T00:00:00.000Z')]

        self.client.get_team_issues = AsyncMock(side_effect=team_issues)
        issues = await self.adapter.get_issues(None, self.window)
        self.assertEqual(sorted(i.id for i in issues), ['t1-1', 't2-1'])
        self.assertTrue(all(i.source == 'linear' and not i.is_open for i in issues))

    async def test_failing_team_is_skipped(self):
        async def team_issues(team_id, window):
            if team_id == 't2':
                raise LinearAPIError('Linear API error: 500 Internal Server Error', 500)
            return [_linear_node('ok', '2025-01-02T00:00:00.000Z')]

        self.client.get_team_issues = AsyncMock(side_effect=team_issues)
        with self.assertLogs('sources.adapters', level='WARNING'):
            issues = await self.adapter.get_issues(None, self.window)
        self.assertEqual([i.id for i in issues], ['ok'])

    async def test_team_listing_failure_gives_empty(self):
        self.client.get_teams = AsyncMock(side_effect=LinearAPIError('Linear GraphQL error: nope'))
        self.client.get_team_open_issues = AsyncMock()
        self.assertEqual(await self.adapter.get_current_open_issues(None), [])
        self.client.get_team_open_issues.assert_not_awaited()

    async def test_open_issues(self):
        self.client.get_team_open_issues = AsyncMock(return_value=[_linear_node('x', '2024-01-01T00:00:00.000Z', 'In Progress')])
        issues = await self.adapter.get_current_open_issues(None)
        self.assertEqual(len(issues), 2)
        self.assertTrue(all(i.is_open for i in issues))


class TestFactory(unittest.TestCase):
    def setUp(self):
        self.github = MagicMock()

    def test_disabled_config_uses_github(self):
        adapter = create_issue_adapter(IssueSourceConfig(enabled=False, provider='linear'), self.github)
        self.assertIsInstance(adapter, GitHubIssueAdapter)
        self.assertIsInstance(create_issue_adapter(None, self.github), GitHubIssueAdapter)

    def test_linear_provider(self):
        adapter = create_issue_adapter(LINEAR_CONFIG, self.github, linear_client=MagicMock())
        self.assertIsInstance(adapter, LinearIssueAdapter)

    def test_github_provider(self):
        adapter = create_issue_adapter(IssueSourceConfig(enabled=True, provider='github'), self.github)
        self.assertIsInstance(adapter, GitHubIssueAdapter)

    def test_unsupported_provider(self):
        with self.assertRaises(ConfigurationError) as ctx:
            create_issue_adapter(IssueSourceConfig(enabled=True, provider='jira'), self.github)
        self.assertIn('Unsupported adapter type: jira', str(ctx.exception))


class FakeOrgWideAdapter:
    source = 'linear'
    organization_wide = True

    def __init__(self, issues=None):
        self.issues = issues or []
        self.scopes = []

    async def get_issues(self, scope, window):
        self.scopes.append(scope)
        return list(self.issues)

    async def get_current_open_issues(self, scope):
        return [i for i in self.issues if i.is_open]


class TestMultiSourceIssueService(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.github_adapter = MagicMock()
        self.github_adapter.organization_wide = False
        self.github_adapter.get_issues = AsyncMock(return_value=['gh'])
        self.window = DateWindow.from_dates('2025-01-01', '2025-01-31')

    def test_parse_repo_name(self):
        service = MultiSourceIssueService(self.github_adapter)
        self.assertEqual(service.parse_repo_name('acme/api'), RepoRef('acme', 'api'))
        owned = MultiSourceIssueService(self.github_adapter, config=IssueSourceConfig(default_owner='acme'))
        self.assertEqual(owned.parse_repo_name('web'), RepoRef('acme', 'web'))

    def test_parse_repo_name_without_owner_fails(self):
        service = MultiSourceIssueService(self.github_adapter)
        for bad in ('api', '/api', 'acme/', 'a/b/c', ''):
            with self.assertRaises(ConfigurationError):
                service.parse_repo_name(bad)

    async def test_github_source_is_queried_per_repository(self):
        service = MultiSourceIssueService(self.github_adapter)
        self.assertEqual(await service.get_issues_for_repo('acme/api', self.window), ['gh'])
        self.github_adapter.get_issues.assert_awaited_once_with(RepoRef('acme', 'api'), self.window)
        self.assertEqual(service.get_issue_source_for_repo('acme/api'), 'github')
        self.assertFalse(service.is_external_enabled())
        self.assertIsNone(service.get_external_provider())

    async def test_organization_wide_source_only_serves_first_unit(self):
        issues = [
            MagicMock(is_open=True),
            MagicMock(is_open=False),
        ]
        external = FakeOrgWideAdapter(issues)
        service = MultiSourceIssueService(self.github_adapter, external, LINEAR_CONFIG)
        first = await service.get_issues_for_repo('acme/api', self.window, is_first_unit=True)
        rest = await service.get_issues_for_repo('acme/web', self.window, is_first_unit=False)
        self.assertEqual(len(first), 2)
        self.assertEqual(rest, [])
        self.assertEqual(external.scopes, [None])
        self.assertEqual(len(await service.get_current_open_issues_for_repo('acme/api', is_first_unit=True)), 1)
        self.assertEqual(await service.get_current_open_issues_for_repo('acme/web'), [])
        self.github_adapter.get_issues.assert_not_awaited()
        self.assertTrue(service.uses_organization_wide_source())
        self.assertEqual(service.get_issue_source_for_repo('acme/api'), 'linear')
        self.assertEqual(service.get_external_provider(), 'linear')

    def test_from_config_validates_credentials(self):
        with self.assertRaises(ConfigurationError):
            MultiSourceIssueService.from_config(IssueSourceConfig(enabled=True, provider='linear'), MagicMock())
        service = MultiSourceIssueService.from_config(LINEAR_CONFIG, MagicMock(), linear_client=MagicMock())
        self.assertIsInstance(service.external_adapter, LinearIssueAdapter)
        self.assertTrue(service.is_external_enabled())


class TestIssueSourceConfig(unittest.TestCase):
    def test_from_mapping_accepts_camel_case(self):
        config = IssueSourceConfig.from_mapping({
            'enabled': True, 'provider': 'Linear', 'credentials': {'apiKey': 'k'}, 'defaultOwner': 'acme',
        })
        self.assertEqual(config.provider, 'linear')
        self.assertEqual(config.api_key, 'k')
        self.assertEqual(config.default_owner, 'acme')

    def test_from_mapping_defaults(self):
        config = IssueSourceConfig.from_mapping(None)
        self.assertFalse(config.enabled)
        self.assertIsNone(config.api_key)


def test_load_issue_source_config_from_yaml(tmp_path):
    path = tmp_path / 'issues.yaml'
    path.write_text("enabled: true\nprovider: linear\ncredentials:\n  api_key: from-file\ndefault_owner: acme\n", encoding='utf-8')
    config = load_issue_source_config(str(path), environ={})
    assert config.enabled
    assert config.provider == 'linear'
    assert config.api_key == 'from-file'
    assert config.default_owner == 'acme'


def test_load_issue_source_config_env_overrides():
    config = load_issue_source_config(environ={'ORGPULSE_ISSUE_PROVIDER': 'linear', 'LINEAR_API_KEY': 'env-key'})
    assert config.enabled
    assert config.provider == 'linear'
    assert config.api_key == 'env-key'


def test_load_issue_source_config_errors(tmp_path):
    with pytest.raises(ConfigurationError):
        load_issue_source_config(str(tmp_path / 'missing.yaml'), environ={})
    bad = tmp_path / 'bad.yaml'
    bad.write_text("enabled: [unclosed\n", encoding='utf-8')
    with pytest.raises(ConfigurationError):
        load_issue_source_config(str(bad), environ={})


def test_load_issue_source_config_empty_environment():
    config = load_issue_source_config(environ={})
    assert config == IssueSourceConfig()
