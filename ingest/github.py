"""
Async GitHub REST client used by the issue adapters and the organization aggregator.
Every listing is paginated exhaustively by following the Link rel="next" header.
"""
import asyncio
import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from errors import AuthenticationError, GitHubAPIError, SourceFetchError
from normalize.models import DateWindow
from normalize.util import is_pull_request, parse_timestamp
from storage.retry import perform_request_with_retries

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
PER_PAGE = 100

# GitHub answers 202 while contributor statistics are being computed
STATS_PENDING_RETRIES = 3
STATS_PENDING_DELAY = 1.0

IMAGE_PATTERN = re.compile(r"!\[.*?\]\((.*?)\)")


def extract_image_urls(*texts: Optional[str]) -> List[str]:
    """Return markdown image URLs found in the given texts, first occurrence order, without duplicates."""
    seen: Dict[str, None] = {}
    for text in texts:
        for url in IMAGE_PATTERN.findall(text or ''):
            url = url.strip()
            if url:
                seen.setdefault(url, None)
    return list(seen)


class GitHubClient:
    """Simple GitHub client to fetch members, repositories, issues, pull requests and contributor stats."""

    def __init__(self, token: Optional[str] = None, base_url: str = None, http_client: Optional[httpx.AsyncClient] = None,
                 per_page: int = PER_PAGE, timeout: float = 30.0):
        self.token = token
        self.base_url = (base_url or GITHUB_API_URL).rstrip('/')
        self.per_page = per_page
        self.timeout = timeout
        self.headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.token:
            self.headers["Authorization"] = f"Bearer {self.token}"
        self._client = http_client
        self._owns_client = http_client is None

    async def __aenter__(self) -> "GitHubClient":
        _ = self.client
        return self

    async def __aexit__(self, *args):
        await self.aclose()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), follow_redirects=True)
        return self._client

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        url = path if path.startswith('http') else f"{self.base_url}{path}"
        resp = await perform_request_with_retries(self.client, 'GET', url, headers=self.headers, params=params)
        status = resp.status_code
        if status < 400:
            return resp
        try:
            message = (resp.json() or {}).get('message') or resp.text
        except ValueError:
            message = resp.text
        rate_limited = resp.headers.get('X-RateLimit-Remaining') == '0'
        if status == 401 or (status == 403 and not rate_limited):
            raise AuthenticationError(f"GitHub rejected the credentials for {url}: {message}", status)
        raise GitHubAPIError(f"GitHub API error {status} for {url}: {message}", status)

    async def get_all_pages(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Fetch every page of a listing endpoint and return the concatenated items."""
        items: List[Dict[str, Any]] = []
        page = 1
        while True:
            query = dict(params or {})
            query.update({"page": page, "per_page": self.per_page})
            resp = await self._get(path, query)
            data = resp.json()
            if not isinstance(data, list):
                raise GitHubAPIError(f"Expected a list from {path}, got {type(data).__name__}", resp.status_code)
            items.extend(data)
            if 'next' not in resp.links:
                break
            page += 1
        return items

    async def get_members(self, org: str) -> List[Dict[str, Any]]:
        return await self.get_all_pages(f"/orgs/{org}/members")

    async def get_repos(self, org: str) -> List[Dict[str, Any]]:
        return await self.get_all_pages(f"/orgs/{org}/repos", {"sort": "updated", "type": "all"})

    async def get_issues(self, owner: str, repo: str, since: Optional[str] = None) -> List[Dict[str, Any]]:
        """Issues (and pull requests, as GitHub lists them together) updated since the given ISO timestamp."""
        params = {"state": "all"}
        if since:
            params["since"] = since
        return await self.get_all_pages(f"/repos/{owner}/{repo}/issues", params)

    async def get_current_open_issues(self, owner: str, repo: str) -> List[Dict[str, Any]]:
        issues = await self.get_all_pages(f"/repos/{owner}/{repo}/issues", {"state": "open"})
        return [i for i in issues if not is_pull_request(i)]

    async def get_pull_requests(self, owner: str, repo: str, window: Optional[DateWindow] = None) -> List[Dict[str, Any]]:
        """Closed pull requests created in the window, each with an 'images' list gathered from body and comments."""
        prs = await self.get_all_pages(
            f"/repos/{owner}/{repo}/pulls", {"state": "closed", "sort": "created", "direction": "desc"}
        )
        if window is not None:
            prs = [pr for pr in prs if window.contains(parse_timestamp(pr.get('created_at')))]
        return list(await asyncio.gather(*(self._with_images(owner, repo, pr) for pr in prs)))

    async def _with_images(self, owner: str, repo: str, pr: Dict[str, Any]) -> Dict[str, Any]:
        number = pr.get('number')
        try:
            comments, review_comments = await asyncio.gather(
                self.get_all_pages(f"/repos/{owner}/{repo}/issues/{number}/comments"),
                self.get_all_pages(f"/repos/{owner}/{repo}/pulls/{number}/comments"),
            )
        except SourceFetchError as ex:
            logger.debug("could not read comments of %s/%s#%s: %s", owner, repo, number, ex)
            comments, review_comments = [], []
        bodies = [pr.get('body')] + [c.get('body') for c in comments] + [c.get('body') for c in review_comments]
        enriched = dict(pr)
        enriched['images'] = extract_image_urls(*bodies)
        return enriched

    async def get_contributor_stats(self, owner: str, repo: str, retries: int = STATS_PENDING_RETRIES,
                                    delay: float = STATS_PENDING_DELAY) -> List[Dict[str, Any]]:
        """Weekly commit series per contributor; [] when GitHub keeps answering 202 or the call fails."""
        path = f"/repos/{owner}/{repo}/stats/contributors"
        for attempt in range(retries + 1):
            try:
                resp = await self._get(path)
            except SourceFetchError as ex:
                logger.warning("Failed to get contributor stats for %s/%s: %s", owner, repo, ex)
                return []
            if resp.status_code == 202:
                if attempt < retries:
                    await asyncio.sleep(delay)
                    continue
                logger.warning("Contributor stats for %s/%s still being computed after %d retries", owner, repo, retries)
                return []
            if resp.status_code == 204:
                return []
            data = resp.json()
            return data if isinstance(data, list) else []
        return []
