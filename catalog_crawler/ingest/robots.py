"""robots.txt policy cache.

Fetches, parses and caches crawl rules per origin and answers whether a
given path may be fetched by a given user agent.
"""

import re
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

import httpx

from catalog_crawler.config import Settings, settings as default_settings
from catalog_crawler.logging_config import get_logger

logger = get_logger(__name__, component="policy-cache")


@dataclass
class RobotsRule:
    """Rule group for one user agent."""

    user_agent: str
    allow: List[str] = field(default_factory=list)
    disallow: List[str] = field(default_factory=list)
    crawl_delay_ms: Optional[int] = None


@dataclass
class PolicyVerdict:
    """Result of evaluating a URL against robots.txt."""

    allowed: bool
    crawl_delay_ms: Optional[int] = None
    matched_rule: Optional[str] = None


def permissive_rules() -> List[RobotsRule]:
    """Rule set used when no policy can be determined."""
    return [RobotsRule(user_agent="*", allow=["/"], disallow=[])]


def parse_robots_txt(robots_text: str) -> List[RobotsRule]:
    """
    Parse robots.txt into rule groups.

    Every ``user-agent`` line opens a new group; directives before the
    first group, blank lines and comments are ignored.
    """
    rules: List[RobotsRule] = []
    current: Optional[RobotsRule] = None

    for raw_line in robots_text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue

        directive, sep, value = line.partition(":")
        directive = directive.strip().lower()
        value = value.strip()
        if not sep or not directive or not value:
            continue

        if directive == "user-agent":
            if current is not None:
                rules.append(current)
            current = RobotsRule(user_agent=value.lower())
        elif current is None:
            continue
        elif directive == "allow":
            current.allow.append(value)
        elif directive == "disallow":
            current.disallow.append(value)
        elif directive == "crawl-delay":
            try:
                current.crawl_delay_ms = int(float(value) * 1000)
            except ValueError:
                logger.debug(f"Ignoring invalid crawl-delay: {value}")

    if current is not None:
        rules.append(current)

    return rules


def path_matches(path: str, pattern: str) -> bool:
    """
    Match a URL path against a robots.txt path pattern.

    ``*`` matches any run of characters and a trailing ``$`` anchors the
    pattern to the end of the path; otherwise the pattern is a prefix.
    """
    if pattern == path:
        return True

    anchored = pattern.endswith("$")
    if anchored:
        pattern = pattern[:-1]

    if "*" in pattern or anchored:
        regex = re.escape(pattern).replace(r"\*", ".*")
        if anchored:
            regex += r"\Z"
        return re.match(regex, path) is not None

    return path.startswith(pattern)


def select_rule(rules: List[RobotsRule], user_agent: str) -> Optional[RobotsRule]:
    """Pick the exact user-agent group, else the wildcard group."""
    normalized = user_agent.lower()
    for rule in rules:
        if rule.user_agent == normalized:
            return rule
    for rule in rules:
        if rule.user_agent == "*":
            return rule
    return None


def evaluate_rule(rule: RobotsRule, path: str) -> PolicyVerdict:
    """
    Apply a rule group to a path.

    Disallow patterns are checked first and win over any allow pattern that
    also matches; there is no longest-match resolution.
    """
    for pattern in rule.disallow:
        if path_matches(path, pattern):
            return PolicyVerdict(allowed=False, matched_rule=f"Disallow: {pattern}")

    for pattern in rule.allow:
        if path_matches(path, pattern):
            return PolicyVerdict(
                allowed=True,
                crawl_delay_ms=rule.crawl_delay_ms,
                matched_rule=f"Allow: {pattern}",
            )

    return PolicyVerdict(allowed=True, crawl_delay_ms=rule.crawl_delay_ms)


class PolicyCache:
    """
    Per-origin robots.txt cache.

    Entries live for ``robots_cache_ttl_seconds``. Lookups and inserts are
    not atomic: concurrent first access to an origin can fetch robots.txt
    twice, and the later write simply replaces an identical entry.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or default_settings
        self.ttl_seconds = self.settings.robots_cache_ttl_seconds
        self._cache: Dict[str, Tuple[List[RobotsRule], float]] = {}
        self._http_client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.settings.robots_request_timeout,
                follow_redirects=True,
                headers={"User-Agent": self.settings.user_agent},
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    def clear(self) -> None:
        """Drop every cached policy."""
        self._cache.clear()

    def _store(self, origin: str, rules: List[RobotsRule]) -> None:
        self._cache[origin] = (rules, time.monotonic() + self.ttl_seconds)

    async def get_rules(self, origin: str) -> List[RobotsRule]:
        """
        Return the rule groups for an origin, fetching robots.txt if needed.

        A non-2xx answer caches the permissive default. A network error
        returns the permissive default without caching it.
        """
        cached = self._cache.get(origin)
        if cached and cached[1] > time.monotonic():
            return cached[0]

        robots_url = f"{origin}/robots.txt"
        client = await self._get_client()

        try:
            logger.info(f"Fetching robots.txt: {robots_url}")
            response = await client.get(robots_url)
        except httpx.HTTPError as e:
            logger.error(f"Error fetching {robots_url}: {type(e).__name__}: {e}")
            return permissive_rules()

        if not response.is_success:
            logger.warning(
                f"robots.txt not found or inaccessible: {robots_url} (HTTP {response.status_code})"
            )
            rules = permissive_rules()
            self._store(origin, rules)
            return rules

        rules = parse_robots_txt(response.text)
        self._store(origin, rules)
        logger.debug(f"Parsed {len(rules)} robots.txt groups for {origin}")
        return rules

    async def evaluate(self, url: str, user_agent: Optional[str] = None) -> PolicyVerdict:
        """
        Decide whether ``user_agent`` may fetch ``url``.

        Args:
            url: Absolute URL to check
            user_agent: Agent token matched against robots.txt groups

        Returns:
            PolicyVerdict; allowed when no rule applies or evaluation fails
        """
        agent = user_agent or self.settings.robots_user_agent
        try:
            parsed = urlparse(url)
            if not parsed.scheme or not parsed.netloc:
                raise ValueError(f"Not an absolute URL: {url}")
            origin = f"{parsed.scheme}://{parsed.netloc}"
            path = parsed.path or "/"

            rules = await self.get_rules(origin)
            rule = select_rule(rules, agent)
            if rule is None:
                return PolicyVerdict(allowed=True)

            verdict = evaluate_rule(rule, path)
            if not verdict.allowed:
                logger.debug(
                    f"URL blocked by robots.txt: {url} ({verdict.matched_rule}, agent={rule.user_agent})"
                )
            return verdict

        except Exception as e:
            logger.error(f"Error checking robots.txt for {url}: {e}")
            return PolicyVerdict(allowed=True)
