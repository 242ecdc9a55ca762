"""
CLI entry point for orgpulse. Wires the pipeline: ingest -> normalize -> score -> cache -> report
"""

import argparse
import asyncio
import json
import logging
import os
import sys
import webbrowser
from datetime import datetime, timezone
from typing import Optional

from aggregator import OrganizationAggregator
from errors import AuthenticationError, ConfigurationError
from ingest.github import GitHubClient
from ingest.linear import LinearClient
from models import Organization
from normalize.models import DateWindow, OrganizationAggregate
from report.renderer import render
from sources.config import PROVIDER_LINEAR, IssueSourceConfig, load_issue_source_config
from sources.service import MultiSourceIssueService
from storage.cache import DEFAULT_TTL_SECONDS, OrganizationCache
from storage.retry import configure_retry

logger = logging.getLogger(__name__)


def _print_json(obj):
    print(json.dumps(obj, indent=2, default=str))


def _print_cache_stats(cache: OrganizationCache):
    stats = cache.stats()
    stats['path'] = cache.path
    _print_json(stats)


def _clear_cache(cache: OrganizationCache, force: bool):
    if not force:
        confirm = input(f"Are you sure you want to clear the cache at {cache.path}? This cannot be undone. [y/N]: ")
        if confirm.strip().lower() not in ("y", "yes"):
            print("Aborted cache clear.")
            return
    cache.clear()
    print(f"Cleared cache at {cache.path}")


def _open_cache(args) -> OrganizationCache:
    ttl_seconds = args.cache_ttl * 3600.0 if args.cache_ttl is not None else DEFAULT_TTL_SECONDS
    return OrganizationCache(args.cache or "orgpulse_cache.db", ttl_seconds=ttl_seconds, quota_bytes=args.cache_quota)


def _handle_cache_actions(args) -> bool:
    """Run --cache-info / --cache-clear if requested. Returns True when the CLI should exit afterwards."""
    if not (args.cache_info or args.cache_clear):
        return False
    with _open_cache(args) as cache:
        if args.cache_info:
            _print_cache_stats(cache)
        if args.cache_clear:
            _clear_cache(cache, args.force)
    return True


def _resolve_tokens(args, parser):
    """Resolve credentials from CLI args or environment variables and attach them to args.
    Calls parser.error() if the GitHub token is missing.
    """
    args.github_token = args.github_token or os.getenv('GITHUB_TOKEN')
    args.linear_api_key = args.linear_api_key or os.getenv('LINEAR_API_KEY')
    if not args.github_token:
        parser.error('Missing required token: github_token (CLI flag --github-token or env GITHUB_TOKEN)')


def _build_issue_config(args) -> IssueSourceConfig:
    """Combine the issue-source YAML/env configuration with the --issue-provider and --linear-api-key flags."""
    config = load_issue_source_config(args.issue_config or None)
    if not args.issue_provider and not args.linear_api_key:
        return config
    raw = {
        'enabled': config.enabled or bool(args.issue_provider),
        'provider': args.issue_provider or config.provider,
        'credentials': dict(config.credentials),
        'default_owner': config.default_owner,
    }
    if args.linear_api_key:
        raw['credentials']['apiKey'] = args.linear_api_key
    return IssueSourceConfig.from_mapping(raw)


def _parse_window(args) -> DateWindow:
    return DateWindow.from_dates(args.start, args.end)


def _print_progress(current: int, total: int):
    print(f"\rProcessed {current}/{total} repositories", end="" if current < total else "\n", file=sys.stderr, flush=True)


async def run_aggregation(args, issue_config: IssueSourceConfig, cache: Optional[OrganizationCache]) -> OrganizationAggregate:
    """Fetch (or load from cache) the organization aggregate described by args."""
    window = _parse_window(args)
    bucket_size = None if args.bucket == 'auto' else args.bucket
    linear = None
    if issue_config.enabled and issue_config.provider == PROVIDER_LINEAR and issue_config.api_key:
        linear = LinearClient(issue_config.api_key)
    async with GitHubClient(args.github_token) as github:
        try:
            service = MultiSourceIssueService.from_config(issue_config, github, linear)
            aggregator = OrganizationAggregator(github, service, cache=cache, bucket_size=bucket_size)
            logger.info("issue source for %s: %s", args.org, aggregator.get_issue_source_for_repo(args.org))
            progress = None if args.quiet else _print_progress
            return await aggregator.get_organization(args.org, window, on_progress=progress, force_refresh=args.refresh)
        finally:
            if linear is not None:
                await linear.aclose()


def _open_file_in_browser(path: str):
    """Open a file URL in the system default web browser."""
    webbrowser.open("file://" + os.path.abspath(path))


def write_output(fmt: str, rendered: str, args):
    """Write output to file or stdout and optionally open HTML in browser."""
    if fmt in ("html", "md", "csv") or args.out_file.strip():
        out_path = args.out_file.strip() or f"orgpulse_{args.org}_{datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%SZ')}.{fmt}"
        out_dir = os.path.dirname(out_path)
        if out_dir:
            os.makedirs(out_dir, exist_ok=True)
        with open(out_path, "w", encoding="utf-8", newline="") as f:
            f.write(rendered)
        print(f"Wrote report to {out_path}")
        if args.open and fmt == "html":
            _open_file_in_browser(out_path)
    else:
        print(rendered)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Organization activity report for GitHub (issues optionally from Linear)")
    parser.add_argument("--org", type=str, help="GitHub organization name")
    parser.add_argument("--start", "--from", dest="start", type=str, help="Start date (YYYY-MM-DD)")
    parser.add_argument("--end", "--to", dest="end", type=str, help="End date (YYYY-MM-DD)")
    parser.add_argument("--bucket", choices=("auto", "day", "month"), default="auto", help="Burn-up bucket size (auto picks from the window length)")
    parser.add_argument("--output", type=str, choices=("text", "md", "html", "csv", "json"), default="text", help="Output format")
    parser.add_argument("--out-file", type=str, default="", help="Output file path. If omitted, text/json go to stdout and other formats get a default name")
    parser.add_argument("--open", action="store_true", help="Open the generated HTML report in the default browser")
    parser.add_argument("--github-token", type=str, help="GitHub token (or env GITHUB_TOKEN)")
    parser.add_argument("--linear-api-key", type=str, help="Linear API key (or env LINEAR_API_KEY)")
    parser.add_argument("--issue-provider", choices=("github", "linear"), help="Issue source; enables the external provider when set")
    parser.add_argument("--issue-config", type=str, default="", help="YAML file with the issue source configuration (or env ORGPULSE_ISSUE_CONFIG)")
    parser.add_argument("--cache", type=str, default="", help="Path to SQLite cache file (optional)")
    parser.add_argument("--cache-ttl", type=float, default=None, help="Cache TTL in hours (overrides ORGPULSE_CACHE_TTL_HOURS env, default 24)")
    parser.add_argument("--cache-quota", type=int, default=None, help="Maximum cached payload size in bytes")
    parser.add_argument("--cache-info", action="store_true", help="Show cache statistics (uses --cache or the default orgpulse_cache.db)")
    parser.add_argument("--cache-clear", action="store_true", help="Clear the persistent cache (uses --cache or the default orgpulse_cache.db)")
    parser.add_argument("--refresh", action="store_true", help="Ignore a cached aggregate and fetch again")
    parser.add_argument("--force", action="store_true", help="Clear the cache without confirmation")
    # retry/backoff knobs: optional CLI overrides. Environment variables ORGPULSE_MAX_RETRIES, ORGPULSE_BACKOFF_BASE,
    # ORGPULSE_BACKOFF_JITTER, ORGPULSE_MAX_BACKOFF may also be used to set defaults.
    parser.add_argument("--max-retries", type=int, default=None, help="Maximum attempts for HTTP requests (overrides ORGPULSE_MAX_RETRIES env)")
    parser.add_argument("--backoff-base", type=float, default=None, help="Base backoff seconds (overrides ORGPULSE_BACKOFF_BASE env)")
    parser.add_argument("--backoff-jitter", type=float, default=None, help="Jitter seconds added to backoff (overrides ORGPULSE_BACKOFF_JITTER env)")
    parser.add_argument("--max-backoff", type=float, default=None, help="Maximum backoff cap in seconds (overrides ORGPULSE_MAX_BACKOFF env)")
    parser.add_argument("--quiet", action="store_true", help="Do not print progress to stderr")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Apply runtime retry/backoff configuration (CLI flags take precedence over environment variables)
    configure_retry(max_retries=args.max_retries, backoff_base=args.backoff_base, backoff_jitter=args.backoff_jitter, max_backoff=args.max_backoff)

    if _handle_cache_actions(args):
        return

    missing = [flag for flag, value in (("--org", args.org), ("--start", args.start), ("--end", args.end)) if not value]
    if missing:
        parser.error("the following arguments are required: " + ", ".join(missing))

    # Resolve tokens (CLI flags take precedence over environment variables)
    _resolve_tokens(args, parser)

    cache = _open_cache(args) if args.cache else None
    try:
        issue_config = _build_issue_config(args)
        aggregate = asyncio.run(run_aggregation(args, issue_config, cache))
    except ConfigurationError as ex:
        parser.error(str(ex))
    except AuthenticationError as ex:
        print(f"Authentication failed: {ex}", file=sys.stderr)
        raise SystemExit(1)
    finally:
        if cache is not None:
            cache.close()

    rendered = render(Organization.from_aggregate(aggregate), fmt=args.output)
    write_output(args.output, rendered, args)


if __name__ == "__main__":
    main()
