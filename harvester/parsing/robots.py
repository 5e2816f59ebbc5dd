"""Robots.txt parsing, caching and per-host policy resolution.

Features:
- Parse robots.txt files into agent-keyed rule groups
- Longest-match evaluation with ``*`` and ``$`` patterns
- Crawl-delay directives
- Host-keyed TTL cache with single-flight refresh
- Allow-all fallback when the declaration cannot be fetched or parsed

Reference: https://www.robotstxt.org/robotstxt.html
"""

from __future__ import annotations

import logging
import re
import threading
from concurrent.futures import Future
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Dict, List

import requests

from harvester.parsing.url_scope import extract_host, url_path

if TYPE_CHECKING:
    from harvester.knowledge.pipeline.throttle import HostThrottle

logger = logging.getLogger(__name__)


@dataclass
class RobotRule:
    """A single rule from robots.txt.

    Attributes:
        path: The path pattern (may contain * and $)
        allowed: True for Allow, False for Disallow
    """
    path: str
    allowed: bool

    def matches(self, path: str) -> bool:
        """Check if this rule matches the given URL path.

        Patterns are prefix matches unless they end with ``$``, so
        ``/admin/`` matches ``/admin/x`` but not ``/adminx``.
        """
        pattern = self.path

        # Empty Disallow matches nothing, empty Allow matches everything
        if not pattern:
            return self.allowed

        regex = ["^"]
        for i, char in enumerate(pattern):
            if char == "*":
                regex.append(".*")
            elif char == "$" and i == len(pattern) - 1:
                regex.append("$")
            else:
                regex.append(re.escape(char))

        return re.match("".join(regex), path) is not None


@dataclass
class RobotRuleset:
    """Rules for one user-agent group.

    Attributes:
        user_agent: The agent token this group applies to
        rules: Rules in order of appearance
        crawl_delay: Crawl-delay value in seconds (if specified)
    """
    user_agent: str
    rules: List[RobotRule] = field(default_factory=list)
    crawl_delay: float | None = None

    def is_allowed(self, path: str) -> bool:
        """The longest matching rule wins; on equal length Allow wins."""
        matching = [(len(rule.path), rule.allowed) for rule in self.rules if rule.matches(path)]
        if not matching:
            return True
        matching.sort(reverse=True)
        return matching[0][1]

    def disallowed_paths(self) -> List[str]:
        seen: List[str] = []
        for rule in self.rules:
            if not rule.allowed and rule.path and rule.path not in seen:
                seen.append(rule.path)
        return seen


@dataclass
class RobotsTxt:
    """Parsed robots.txt file."""
    rulesets: Dict[str, RobotRuleset] = field(default_factory=dict)
    sitemaps: List[str] = field(default_factory=list)

    def get_ruleset(self, user_agent: str) -> RobotRuleset | None:
        """Select the group that applies to ``user_agent``.

        Exact (case-insensitive) match first, then the longest group token
        contained in the agent string, then ``*``.
        """
        agent = user_agent.lower()

        for token, ruleset in self.rulesets.items():
            if token.lower() == agent:
                return ruleset

        partial = [
            (len(token), token, ruleset)
            for token, ruleset in self.rulesets.items()
            if token != "*" and token.lower() in agent
        ]
        if partial:
            partial.sort(key=lambda entry: (-entry[0], entry[1]))
            return partial[0][2]

        return self.rulesets.get("*")


def parse_robots_txt(content: str) -> RobotsTxt:
    """Parse robots.txt content.

    Consecutive ``User-agent`` lines share the rules that follow them;
    groups repeated for the same agent are merged.
    """
    robots = RobotsTxt()
    current_agents: List[str] = []
    current_rules: List[RobotRule] = []
    current_delay: float | None = None

    def finalize_group() -> None:
        nonlocal current_agents, current_rules, current_delay
        for agent in current_agents:
            if agent not in robots.rulesets:
                robots.rulesets[agent] = RobotRuleset(
                    user_agent=agent,
                    rules=current_rules.copy(),
                    crawl_delay=current_delay,
                )
            else:
                robots.rulesets[agent].rules.extend(current_rules)
                if current_delay is not None:
                    robots.rulesets[agent].crawl_delay = current_delay
        current_agents = []
        current_rules = []
        current_delay = None

    group_has_directives = False
    for raw in content.splitlines():
        line = raw.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue

        directive, _, value = line.partition(":")
        directive = directive.strip().lower()
        value = value.strip()

        if directive == "user-agent":
            if group_has_directives:
                finalize_group()
                group_has_directives = False
            current_agents.append(value)

        elif directive in ("disallow", "allow"):
            if current_agents:
                current_rules.append(RobotRule(path=value, allowed=directive == "allow"))
                group_has_directives = True

        elif directive == "crawl-delay":
            if current_agents:
                try:
                    current_delay = max(0.0, float(value))
                except ValueError:
                    logger.debug("Ignoring non-numeric Crawl-delay %r", value)
                group_has_directives = True

        elif directive == "sitemap":
            if value:
                robots.sitemaps.append(value)

    if current_agents:
        finalize_group()

    return robots


@dataclass
class RobotsPolicy:
    """Resolved politeness policy for one host.

    Attributes:
        host: Host key the policy was resolved for.
        ruleset: The rule group applying to our agent, or None (allow all).
        exists: Whether the host served a robots declaration.
        fetched_at: When the declaration was fetched.
        expires_at: Cache expiry.
        error: Failure description when the policy is an allow-all fallback.
    """
    host: str
    ruleset: RobotRuleset | None = None
    exists: bool = False
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: datetime | None = None
    error: str | None = None

    @classmethod
    def allow_all(cls, host: str, error: str | None = None, **kwargs) -> "RobotsPolicy":
        return cls(host=host, ruleset=None, exists=False, error=error, **kwargs)

    def is_allowed(self, path_or_url: str) -> bool:
        if self.ruleset is None:
            return True
        path = url_path(path_or_url) if "://" in path_or_url else (path_or_url or "/")
        return self.ruleset.is_allowed(path)

    def crawl_delay(self, default: float = 0.0) -> float:
        """Declared Crawl-delay in seconds, else ``default``."""
        if self.ruleset is not None and self.ruleset.crawl_delay is not None:
            return self.ruleset.crawl_delay
        return default

    def disallowed_paths(self) -> List[str]:
        return self.ruleset.disallowed_paths() if self.ruleset else []

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class PolicyCache:
    """Host-keyed policy cache with expiry.

    Thread-safe; entries past ``expires_at`` are treated as missing.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._entries: Dict[str, RobotsPolicy] = {}
        self._lock = threading.Lock()

    def now(self) -> datetime:
        return self._clock()

    def get(self, host: str) -> RobotsPolicy | None:
        with self._lock:
            policy = self._entries.get(host)
            if policy is None:
                return None
            if policy.is_expired(self._clock()):
                del self._entries[host]
                return None
            return policy

    def put(self, policy: RobotsPolicy) -> None:
        with self._lock:
            self._entries[policy.host] = policy

    def invalidate(self, host: str | None = None) -> None:
        with self._lock:
            if host is None:
                self._entries.clear()
            else:
                self._entries.pop(host, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RobotsPolicyResolver:
    """Fetches, caches and evaluates robots declarations per host.

    Concurrent ``resolve`` calls for the same uncached host share one
    in-flight fetch. Resolution never raises: any failure yields an
    allow-all policy cached for ``failure_ttl``.

    When a ``throttle`` is given, the robots.txt request takes the same
    per-host slot as page requests, so the first page fetch after it still
    waits out the politeness interval.

    Usage:
        resolver = RobotsPolicyResolver(PolicyCache(), user_agent="MyBot/1.0")
        policy = resolver.resolve("https://example.com/page")
        if policy.is_allowed("/page"):
            ...
    """

    def __init__(
        self,
        cache: PolicyCache | None = None,
        session: requests.Session | None = None,
        user_agent: str = "*",
        timeout: float = 5.0,
        ttl: timedelta = timedelta(hours=24),
        failure_ttl: timedelta = timedelta(hours=1),
        throttle: HostThrottle | None = None,
    ) -> None:
        self.cache = cache or PolicyCache()
        self.session = session or requests.Session()
        self.user_agent = user_agent
        self.timeout = timeout
        self.ttl = ttl
        self.failure_ttl = failure_ttl
        self.throttle = throttle
        self._inflight: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self.fetch_count = 0

    def resolve(self, url_or_host: str) -> RobotsPolicy:
        host = extract_host(url_or_host)
        cached = self.cache.get(host)
        if cached is not None:
            return cached

        with self._lock:
            cached = self.cache.get(host)
            if cached is not None:
                return cached
            future = self._inflight.get(host)
            leader = future is None
            if leader:
                future = Future()
                self._inflight[host] = future

        if not leader:
            return future.result()

        try:
            policy = self._fetch_policy(url_or_host, host)
            self.cache.put(policy)
            future.set_result(policy)
        except BaseException as exc:
            future.set_exception(exc)
            raise
        finally:
            with self._lock:
                self._inflight.pop(host, None)
        return policy

    def _robots_url(self, url_or_host: str, host: str) -> str:
        scheme = url_or_host.split("://", 1)[0].lower() if "://" in url_or_host else "https"
        return f"{scheme}://{host}/robots.txt"

    def _fallback(self, host: str, reason: str) -> RobotsPolicy:
        now = self.cache.now()
        logger.warning("robots.txt unavailable for %s (%s); allowing all", host, reason)
        return RobotsPolicy.allow_all(host, error=reason, fetched_at=now, expires_at=now + self.failure_ttl)

    def _fetch_policy(self, url_or_host: str, host: str) -> RobotsPolicy:
        robots_url = self._robots_url(url_or_host, host)
        self.fetch_count += 1
        slot = self.throttle.slot(host, 0.0) if self.throttle is not None else nullcontext()
        try:
            with slot:
                response = self.session.get(
                    robots_url,
                    timeout=self.timeout,
                    headers={"User-Agent": self.user_agent},
                )
        except requests.Timeout:
            return self._fallback(host, "timeout")
        except requests.RequestException as exc:
            return self._fallback(host, f"request failed: {exc}")

        now = self.cache.now()
        status = response.status_code
        if 400 <= status < 500:
            logger.debug("No robots.txt for %s (HTTP %d)", host, status)
            return RobotsPolicy.allow_all(host, fetched_at=now, expires_at=now + self.ttl)
        if not 200 <= status < 300:
            return self._fallback(host, f"HTTP {status}")

        content_type = response.headers.get("Content-Type", "").lower()
        try:
            text = response.text
        except (UnicodeDecodeError, LookupError) as exc:
            return self._fallback(host, f"undecodable body: {exc}")
        if "html" in content_type and text.lstrip().startswith("<"):
            return self._fallback(host, "malformed declaration (HTML body)")

        try:
            parsed = parse_robots_txt(text)
        except Exception as exc:
            return self._fallback(host, f"malformed declaration: {exc}")

        return RobotsPolicy(
            host=host,
            ruleset=parsed.get_ruleset(self.user_agent),
            exists=True,
            fetched_at=now,
            expires_at=now + self.ttl,
        )
