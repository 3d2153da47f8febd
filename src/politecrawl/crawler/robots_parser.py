"""
robots.txt parsing, matching and per-host caching.

Parsing and matching are delegated to ``robotstxt``: the rule with the longest
matching pattern wins, an Allow wins a tie, ``*`` matches any run of
characters and a trailing ``$`` anchors the pattern at the end of the URL.

Fetching is fail-open. A missing, unreachable, oversized or unparseable
robots.txt results in permissive rules.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Tuple
from urllib.parse import urlsplit

import robotstxt
import structlog

from politecrawl.protocols import PolitenessHook, RequestExecutor
from politecrawl.utils.urls import host_of, robots_url

logger = structlog.get_logger(__name__)

MAX_ROBOTS_BYTES = 512 * 1024


@dataclass(frozen=True)
class RobotsRules:
    """Rules that apply to our user agent on one host."""

    allow: Tuple[str, ...] = ()
    disallow: Tuple[str, ...] = ()
    crawl_delay: Optional[float] = None
    sitemaps: Tuple[str, ...] = ()
    raw_groups: Tuple[str, ...] = ()
    matched_agent: Optional[str] = None
    robots_file: Optional[robotstxt.RobotsFile] = field(default=None, repr=False, compare=False)

    @classmethod
    def permissive(cls) -> "RobotsRules":
        return cls()

    @property
    def is_permissive(self) -> bool:
        return not self.disallow


def _agent_token(user_agent: str) -> str:
    """Product name of a User-Agent string, e.g. ``politecrawl`` for ``PoliteCrawl/1.0 (+url)``."""
    token = user_agent.strip().split(None, 1)[0] if user_agent.strip() else ""
    return token.split("/", 1)[0].lower()


def _select_agent(groups: Iterable[str], user_agent: str) -> Optional[str]:
    """Group naming our product (any version) if there is one, else ``*``."""
    product = _agent_token(user_agent)
    named = sorted(g for g in groups if g != "*" and product and g.split("/", 1)[0] == product)
    if named:
        # An unversioned group beats a versioned one.
        return product if product in named else named[0]
    if "*" in groups:
        return "*"
    return None


def _crawl_delays(content: str) -> Dict[str, float]:
    """Crawl-delay per user-agent token. ``robotstxt`` does not keep this directive."""
    delays: Dict[str, float] = {}
    agents: list[str] = []
    in_agent_lines = False

    for raw_line in content.splitlines():
        key, sep, value = raw_line.split("#", 1)[0].partition(":")
        if not sep:
            continue
        key = key.strip().lower()
        value = value.strip()
        if key == "sitemap":
            continue
        if key == "user-agent":
            token = value.split()[0].lower() if value else ""
            agents = agents + [token] if in_agent_lines else [token]
            in_agent_lines = True
            continue
        in_agent_lines = False
        if key != "crawl-delay":
            continue
        try:
            delay = float(value)
        except ValueError:
            logger.debug("Ignoring malformed crawl-delay", value=value)
            continue
        if delay < 0:
            continue
        for agent in agents:
            delays[agent] = max(delay, delays.get(agent, delay))
    return delays


class RobotsPolicy:
    """Stateless robots.txt loader and matcher."""

    @staticmethod
    def load(content: str, user_agent: str) -> RobotsRules:
        """
        Parse robots.txt content into the rules that apply to ``user_agent``.

        A group naming our product takes precedence over ``*``. Records for the
        same agent are merged. Never raises.
        """
        try:
            robots_file = robotstxt.RobotsFile(content)
        except Exception as e:
            logger.warning("Unparseable robots.txt, allowing all", error=str(e))
            return RobotsRules.permissive()

        delays = _crawl_delays(content)
        groups = set(robots_file.rule_blocks) | set(delays)
        matched = _select_agent(groups, user_agent)
        block = robots_file.rule_blocks.get(matched, []) if matched else []
        sitemaps = tuple(dict.fromkeys(sitemap.url for sitemap in robots_file.sitemaps if sitemap.url))

        return RobotsRules(
            allow=tuple(rule[2] for rule in block if rule[0] == "Allow" and rule[2]),
            disallow=tuple(rule[2] for rule in block if rule[0] == "Disallow" and rule[2]),
            crawl_delay=delays.get(matched) if matched else None,
            sitemaps=sitemaps,
            raw_groups=tuple(sorted(groups)),
            matched_agent=matched,
            robots_file=robots_file,
        )

    @staticmethod
    def is_allowed(url: str, rules: RobotsRules) -> bool:
        """Longest matching pattern wins, Allow wins ties. ``/robots.txt`` is always allowed."""
        if rules.robots_file is None or rules.matched_agent is None or not rules.disallow:
            return True
        if urlsplit(url).path == "/robots.txt":
            return True
        verdict = rules.robots_file.test_url(url, rules.matched_agent)
        return not verdict.get("disallowed", False)

    @staticmethod
    def crawl_delay(rules: RobotsRules) -> Optional[float]:
        return rules.crawl_delay


class RobotsCache:
    """
    Loads robots.txt once per host for the duration of a crawl.

    Concurrent requests for the same host share a single fetch through a
    per-host lock with a double-checked cache. When a politeness hook is given
    it is awaited before each robots.txt request.
    """

    def __init__(
        self,
        executor: RequestExecutor,
        user_agent: str,
        timeout: float = 10.0,
        politeness: Optional[PolitenessHook] = None,
    ) -> None:
        self._executor = executor
        self._politeness = politeness
        self.user_agent = user_agent
        self.timeout = timeout
        self._rules: Dict[str, RobotsRules] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self.fetches = 0
        self.fallbacks = 0
        self.blocked = 0

    def _get_host_lock(self, host: str) -> asyncio.Lock:
        if host not in self._locks:
            self._locks[host] = asyncio.Lock()
        return self._locks[host]

    async def rules_for(self, url: str) -> RobotsRules:
        host = host_of(url)
        cached = self._rules.get(host)
        if cached is not None:
            return cached

        async with self._get_host_lock(host):
            cached = self._rules.get(host)
            if cached is not None:
                return cached
            rules = await self._fetch_rules(url, host)
            self._rules[host] = rules
            return rules

    async def _fetch_rules(self, url: str, host: str) -> RobotsRules:
        location = robots_url(url)
        if self._politeness is not None and not await self._politeness(location):
            logger.debug("robots.txt fetch abandoned after cancellation", host=host)
            return RobotsRules.permissive()

        self.fetches += 1
        try:
            response = await self._executor.send(
                location,
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout,
            )
        except Exception as e:
            self.fallbacks += 1
            logger.warning("Failed to fetch robots.txt, allowing all", host=host, error=str(e))
            return RobotsRules.permissive()

        if 400 <= response.status < 500:
            logger.debug("No robots.txt found", host=host, status=response.status)
            return RobotsRules.permissive()
        if not response.is_success:
            self.fallbacks += 1
            logger.warning("robots.txt returned an error status, allowing all", host=host, status=response.status)
            return RobotsRules.permissive()
        if len(response.body) > MAX_ROBOTS_BYTES:
            self.fallbacks += 1
            logger.warning("robots.txt is too large, allowing all", host=host, size=len(response.body))
            return RobotsRules.permissive()

        rules = RobotsPolicy.load(response.text(), self.user_agent)
        logger.debug(
            "Loaded robots.txt",
            host=host,
            agent=rules.matched_agent,
            disallow=len(rules.disallow),
            allow=len(rules.allow),
            crawl_delay=rules.crawl_delay,
        )
        return rules

    async def is_allowed(self, url: str) -> bool:
        rules = await self.rules_for(url)
        allowed = RobotsPolicy.is_allowed(url, rules)
        if not allowed:
            self.blocked += 1
        return allowed

    def stats(self) -> Dict[str, Any]:
        return {
            "hosts": len(self._rules),
            "fetches": self.fetches,
            "fallbacks": self.fallbacks,
            "blocked": self.blocked,
        }
