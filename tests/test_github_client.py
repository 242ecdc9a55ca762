import unittest

import httpx

from errors import AuthenticationError, GitHubAPIError
from ingest.github import GitHubClient, extract_image_urls
from normalize.models import DateWindow
from storage.retry import configure_retry, reset_retry_configuration

NEXT_LINK = '<https://api.github.com/orgs/acme/members?page=2&per_page=100>; rel="next"'


class TestExtractImageUrls(unittest.TestCase):
    def test_ordered_and_deduplicated(self):
        urls = extract_image_urls(
            'before ![one](https://img/1.png) after',
            None,
            '![two](https://img/2.png) ![again](https://img/1.png)',
        )
        self.assertEqual(urls, ['https://img/1.png', 'https://img/2.png'])

    def test_no_images(self):
        self.assertEqual(extract_image_urls('plain text', ''), [])


class TestGitHubClient(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        configure_retry(backoff_base=0, backoff_jitter=0, max_backoff=0)
        self.requests = []

    def tearDown(self):
        reset_retry_configuration()

    def _client(self, handler):
        def recording(request):
            self.requests.append(request)
            return handler(request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(recording))
        return GitHubClient('secret-token', http_client=http)

    async def test_pagination_follows_next_link(self):
        def handler(request):
            if request.url.params.get('page') == '1':
                return httpx.Response(200, json=[{'login': 'alice'}], headers={'Link': NEXT_LINK})
            return httpx.Response(200, json=[{'login': 'bob'}])

        client = self._client(handler)
        members = await client.get_members('acme')
        self.assertEqual([m['login'] for m in members], ['alice', 'bob'])
        self.assertEqual(len(self.requests), 2)
        self.assertEqual(self.requests[0].headers['Authorization'], 'Bearer secret-token')
        self.assertEqual(self.requests[0].url.params['per_page'], '100')

    async def test_rejected_token_raises_authentication_error(self):
        client = self._client(lambda request: httpx.Response(401, json={'message': 'Bad credentials'}))
        with self.assertRaises(AuthenticationError) as ctx:
            await client.get_repos('acme')
        self.assertEqual(ctx.exception.status, 401)

    async def test_forbidden_without_rate_limit_is_authentication_error(self):
        client = self._client(lambda request: httpx.Response(403, json={'message': 'Forbidden'}))
        with self.assertRaises(AuthenticationError):
            await client.get_members('acme')

    async def test_server_error_raises_api_error(self):
        client = self._client(lambda request: httpx.Response(500, text='boom'))
        with self.assertRaises(GitHubAPIError) as ctx:
            await client.get_issues('acme', 'api')
        self.assertEqual(ctx.exception.status, 500)

    async def test_issue_listing_parameters(self):
        client = self._client(lambda request: httpx.Response(200, json=[]))
        await client.get_issues('acme', 'api', since='2025-01-01T00:00:00+00:00')
        params = self.requests[0].url.params
        self.assertEqual(self.requests[0].url.path, '/repos/acme/api/issues')
        self.assertEqual(params['state'], 'all')
        self.assertEqual(params['since'], '2025-01-01T00:00:00+00:00')

    async def test_current_open_issues_exclude_pull_requests(self):
        payload = [{'number': 1, 'state': 'open'}, {'number': 2, 'state': 'open', 'pull_request': {'url': 'x'}}]
        client = self._client(lambda request: httpx.Response(200, json=payload))
        issues = await client.get_current_open_issues('acme', 'api')
        self.assertEqual([i['number'] for i in issues], [1])
        self.assertEqual(self.requests[0].url.params['state'], 'open')

    async def test_pull_requests_in_window_carry_images(self):
        def handler(request):
            path = request.url.path
            if path == '/repos/acme/api/pulls':
                return httpx.Response(200, json=[
                    {'number': 1, 'state': 'closed', 'created_at': '2025-01-05T00:00:00Z', 'body': '![s](https://img/1.png)'},
                    {'number': 2, 'state': 'closed', 'created_at': '2024-12-01T00:00:00Z', 'body': None},
                ])
            if path == '/repos/acme/api/issues/1/comments':
                return httpx.Response(200, json=[{'body': '![x](https://img/2.png) ![s](https://img/1.png)'}])
            if path == '/repos/acme/api/pulls/1/comments':
                return httpx.Response(200, json=[{'body': '![r](https://img/3.png)'}])
            return httpx.Response(404, json={'message': 'Not Found'})

        client = self._client(handler)
        window = DateWindow.from_dates('2025-01-01', '2025-01-31')
        prs = await client.get_pull_requests('acme', 'api', window)
        self.assertEqual(len(prs), 1)
        self.assertEqual(prs[0]['images'], ['https://img/1.png', 'https://img/2.png', 'https://img/3.png'])

    async def test_pull_request_comment_failure_keeps_body_images(self):
        def handler(request):
            if request.url.path == '/repos/acme/api/pulls':
                return httpx.Response(200, json=[
                    {'number': 7, 'state': 'closed', 'created_at': '2025-01-05T00:00:00Z', 'body': '![s](https://img/1.png)'},
                ])
            return httpx.Response(500, text='boom')

        client = self._client(handler)
        prs = await client.get_pull_requests('acme', 'api')
        self.assertEqual(prs[0]['images'], ['https://img/1.png'])

    async def test_contributor_stats_retry_while_pending(self):
        responses = [httpx.Response(202, json={}), httpx.Response(200, json=[{'author': {'login': 'alice'}, 'weeks': []}])]
        client = self._client(lambda request: responses.pop(0))
        stats = await client.get_contributor_stats('acme', 'api', delay=0)
        self.assertEqual(stats[0]['author']['login'], 'alice')
        self.assertEqual(len(self.requests), 2)

    async def test_contributor_stats_give_up_after_bounded_retries(self):
        client = self._client(lambda request: httpx.Response(202, json={}))
        with self.assertLogs('ingest.github', level='WARNING'):
            stats = await client.get_contributor_stats('acme', 'api', retries=2, delay=0)
        self.assertEqual(stats, [])
        self.assertEqual(len(self.requests), 3)

    async def test_contributor_stats_failure_degrades_to_empty(self):
        client = self._client(lambda request: httpx.Response(500, text='boom'))
        self.assertEqual(await client.get_contributor_stats('acme', 'api', delay=0), [])

    async def test_external_client_is_not_closed(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[])))
        async with GitHubClient('t', http_client=http) as client:
            await client.get_members('acme')
        self.assertFalse(http.is_closed)
        await http.aclose()


if __name__ == '__main__':
    unittest.main()
