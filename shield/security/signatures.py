"""
Threat Signatures
=================
Threat signature model and the signature provider that keeps a compiled
pattern set fresh from an external threat feed.

Features:
- Curated built-in high-risk signatures merged with feed signatures
- Per-signature compilation, malformed patterns are skipped
- Feed patterns matched under a time budget
- TTL-cached signature list with forced refresh
- Fixed fallback pattern set when the feed or cache is unavailable
- Concurrent refreshes coalesced behind a single fetch
"""

import regex
import asyncio
import hashlib
import logging
import threading
from datetime import datetime
from types import MappingProxyType
from typing import Optional, List, Dict, Any, Tuple, Callable, Sequence, Mapping
from dataclasses import dataclass
from enum import Enum
from abc import ABC, abstractmethod

import httpx

from ..clock import Clock, SystemClock
from ..errors import TransientDependencyError, SignatureConfigurationError

logger = logging.getLogger(__name__)


class ThreatCategory(Enum):
    """Threat categories a signature can belong to."""
    XSS = "xss"
    SQL_INJECTION = "sql_injection"
    COMMAND_INJECTION = "command_injection"
    PATH_TRAVERSAL = "path_traversal"
    MALWARE = "malware"
    PHISHING = "phishing"


CORE_CATEGORIES: Tuple[ThreatCategory, ...] = (
    ThreatCategory.XSS,
    ThreatCategory.SQL_INJECTION,
    ThreatCategory.COMMAND_INJECTION,
    ThreatCategory.PATH_TRAVERSAL,
)


class Severity(Enum):
    """Violation severity, ordered low to critical."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]

    @property
    def is_blocking(self) -> bool:
        """High and critical violations block the request."""
        return self.rank >= SEVERITY_RANK[Severity.HIGH]


SEVERITY_RANK: Dict[Severity, int] = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}

# Used when a feed indicator does not carry its own severity
DEFAULT_CATEGORY_SEVERITY: Dict[ThreatCategory, Severity] = {
    ThreatCategory.XSS: Severity.HIGH,
    ThreatCategory.SQL_INJECTION: Severity.CRITICAL,
    ThreatCategory.COMMAND_INJECTION: Severity.CRITICAL,
    ThreatCategory.PATH_TRAVERSAL: Severity.HIGH,
    ThreatCategory.MALWARE: Severity.CRITICAL,
    ThreatCategory.PHISHING: Severity.HIGH,
}


@dataclass(frozen=True)
class ThreatSignature:
    """A named pattern for one threat category."""
    id: str
    category: ThreatCategory
    pattern: str
    severity: Severity
    description: str
    source: str
    last_updated: float


@dataclass(frozen=True)
class CompiledSignature:
    """A signature together with its compiled matcher."""
    signature: ThreatSignature
    matcher: regex.Pattern

    def matches(self, text: str, timeout: Optional[float] = None) -> bool:
        """Search text; raises TimeoutError if timeout seconds elapse first."""
        return self.matcher.search(text, concurrent=True, timeout=timeout) is not None


class CompiledPatternSet:
    """
    Immutable mapping from category to ordered compiled signatures.

    A set is fully built before anyone can see it; refreshing produces a new
    instance instead of mutating this one.
    """

    def __init__(
        self,
        patterns: Mapping[ThreatCategory, Sequence[CompiledSignature]],
        origin: str = "feed",
    ):
        self._patterns = MappingProxyType({
            category: tuple(patterns.get(category, ()))
            for category in ThreatCategory
        })
        self.origin = origin

    def patterns(self, category: ThreatCategory) -> Tuple[CompiledSignature, ...]:
        return self._patterns[category]

    def items(self):
        return self._patterns.items()

    def counts(self) -> Dict[str, int]:
        return {category.value: len(compiled) for category, compiled in self._patterns.items()}

    @property
    def is_fallback(self) -> bool:
        return self.origin == "fallback"

    def __len__(self) -> int:
        return sum(len(compiled) for compiled in self._patterns.values())


def compile_signature(signature: ThreatSignature) -> CompiledSignature:
    """Compile one signature, raising SignatureConfigurationError if invalid."""
    try:
        matcher = regex.compile(signature.pattern, regex.IGNORECASE)
    except (regex.error, TypeError) as e:
        raise SignatureConfigurationError(signature.id, str(e)) from e
    return CompiledSignature(signature=signature, matcher=matcher)


def compile_signatures(
    signatures: Sequence[ThreatSignature],
    origin: str = "feed",
) -> CompiledPatternSet:
    """Compile signatures, skipping any that fail."""
    patterns: Dict[ThreatCategory, List[CompiledSignature]] = {c: [] for c in ThreatCategory}

    for signature in signatures:
        try:
            compiled = compile_signature(signature)
        except SignatureConfigurationError as e:
            logger.warning(f"Invalid regex pattern skipped: {signature.pattern!r} ({e})")
            continue
        patterns[signature.category].append(compiled)

    return CompiledPatternSet(patterns, origin=origin)


def _signature(
    sig_id: str,
    category: ThreatCategory,
    pattern: str,
    severity: Severity,
    description: str,
    source: str,
) -> ThreatSignature:
    return ThreatSignature(
        id=sig_id,
        category=category,
        pattern=pattern,
        severity=severity,
        description=description,
        source=source,
        last_updated=0.0,
    )


CURATED_SIGNATURES: Tuple[ThreatSignature, ...] = (
    _signature(
        "curated_xss_1", ThreatCategory.XSS, r'javascript:\s*[^\s]',
        Severity.CRITICAL, "JavaScript protocol XSS attempt", "Curated",
    ),
    _signature(
        "curated_sqli_1", ThreatCategory.SQL_INJECTION, r'\b(waitfor|delay)\s+',
        Severity.CRITICAL, "SQL time-based injection", "Curated",
    ),
    _signature(
        "curated_cmd_1", ThreatCategory.COMMAND_INJECTION, r';\s*(rm|del|format)\s+',
        Severity.CRITICAL, "Destructive command injection", "Curated",
    ),
    _signature(
        "curated_path_1", ThreatCategory.PATH_TRAVERSAL, r'(\.\.[/\\]){3,}',
        Severity.HIGH, "Deep path traversal attempt", "Curated",
    ),
)


FALLBACK_SIGNATURES: Tuple[ThreatSignature, ...] = (
    _signature("fallback_xss_1", ThreatCategory.XSS,
               r'<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>',
               Severity.HIGH, "Script tag", "fallback"),
    _signature("fallback_xss_2", ThreatCategory.XSS, r'javascript:\s*[^;]',
               Severity.HIGH, "JavaScript protocol", "fallback"),
    _signature("fallback_xss_3", ThreatCategory.XSS, r'on\w+\s*=\s*[\'"]',
               Severity.HIGH, "Inline event handler", "fallback"),
    _signature("fallback_sqli_1", ThreatCategory.SQL_INJECTION,
               r'(\b(SELECT|INSERT|UPDATE|DELETE|DROP)\s+)',
               Severity.CRITICAL, "SQL statement keyword", "fallback"),
    _signature("fallback_sqli_2", ThreatCategory.SQL_INJECTION, r'\bUNION\s+(ALL\s+)?SELECT\b',
               Severity.CRITICAL, "UNION based injection", "fallback"),
    _signature("fallback_sqli_3", ThreatCategory.SQL_INJECTION, r'(;\s*(DROP|DELETE)\s+)',
               Severity.CRITICAL, "Stacked destructive query", "fallback"),
    _signature("fallback_cmd_1", ThreatCategory.COMMAND_INJECTION, r'(;\s*(rm|cat|ls|ps|kill)\s+)',
               Severity.CRITICAL, "Chained shell command", "fallback"),
    _signature("fallback_cmd_2", ThreatCategory.COMMAND_INJECTION, r'(\|\s*(rm|cat|ls)\s+)',
               Severity.CRITICAL, "Piped shell command", "fallback"),
    _signature("fallback_cmd_3", ThreatCategory.COMMAND_INJECTION, r'(&&\s*(rm|del)\s+)',
               Severity.CRITICAL, "Conditional shell command", "fallback"),
    _signature("fallback_path_1", ThreatCategory.PATH_TRAVERSAL, r'(\.\.[/\\]){2,}',
               Severity.HIGH, "Relative path traversal", "fallback"),
    _signature("fallback_path_2", ThreatCategory.PATH_TRAVERSAL, r'[/\\]etc[/\\]passwd',
               Severity.HIGH, "Unix password file", "fallback"),
    _signature("fallback_path_3", ThreatCategory.PATH_TRAVERSAL, r'[/\\]windows[/\\]system32',
               Severity.HIGH, "Windows system directory", "fallback"),
)

_FALLBACK_PATTERN_SET = compile_signatures(FALLBACK_SIGNATURES, origin="fallback")


def fallback_pattern_set() -> CompiledPatternSet:
    """Fixed pattern set covering the four core categories."""
    return _FALLBACK_PATTERN_SET


# =============================================================================
# Threat feeds
# =============================================================================

@dataclass
class FeedIndicator:
    """Raw indicator as delivered by a threat feed."""
    indicator: str
    type: str
    description: str = ""
    created: Optional[str] = None
    severity: Optional[str] = None


class ThreatFeed(ABC):
    """Abstract external threat feed."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Feed name, used as the signature source label."""
        pass

    @abstractmethod
    async def fetch(self) -> List[FeedIndicator]:
        """Fetch indicators. Raises TransientDependencyError on failure."""
        pass


class StaticThreatFeed(ThreatFeed):
    """Feed serving a fixed list of indicators."""

    def __init__(self, indicators: Sequence[FeedIndicator], name: str = "static"):
        self._indicators = list(indicators)
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    async def fetch(self) -> List[FeedIndicator]:
        return list(self._indicators)


class HttpThreatFeed(ThreatFeed):
    """
    HTTP threat feed returning OTX-style pulse JSON.

    Expected payload:
        {"indicators": [{"indicator": "...", "type": "xss",
                         "description": "...", "created": "..."}]}

    Example:
        feed = HttpThreatFeed(
            "https://otx.example.com/api/v1/pulses/web",
            api_key=os.getenv("THREAT_FEED_API_KEY"),
        )
    """

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        name: str = "AlienVault OTX",
        timeout_seconds: float = 5.0,
        api_key_header: str = "X-OTX-API-KEY",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.api_key_header = api_key_header
        self._name = name
        self._transport = transport

    @property
    def name(self) -> str:
        return self._name

    async def fetch(self) -> List[FeedIndicator]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers[self.api_key_header] = self.api_key

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.get(self.url, headers=headers)
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransientDependencyError(self._name, f"fetch failed: {e}", e) from e

        indicators = payload.get("indicators") if isinstance(payload, dict) else None
        if not isinstance(indicators, list):
            raise TransientDependencyError(self._name, "response has no indicator list")

        return [
            FeedIndicator(
                indicator=item["indicator"],
                type=str(item.get("type", "")),
                description=str(item.get("description", "")),
                created=item.get("created"),
                severity=item.get("severity"),
            )
            for item in indicators
            if isinstance(item, dict) and isinstance(item.get("indicator"), str)
        ]


def _parse_timestamp(value: Optional[str], default: float) -> float:
    if not value:
        return default
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return default


def signature_from_indicator(indicator: FeedIndicator, source: str, now: float) -> ThreatSignature:
    """Convert a feed indicator, raising SignatureConfigurationError if unusable."""
    sig_id = "feed_" + hashlib.sha256(
        f"{source}:{indicator.type}:{indicator.indicator}".encode()
    ).hexdigest()[:16]

    try:
        category = ThreatCategory(indicator.type.lower())
    except ValueError:
        raise SignatureConfigurationError(sig_id, f"unknown category {indicator.type!r}")

    severity = DEFAULT_CATEGORY_SEVERITY[category]
    if indicator.severity:
        try:
            severity = Severity(indicator.severity.lower())
        except ValueError:
            logger.debug(f"Ignoring unknown severity {indicator.severity!r} for {sig_id}")

    return ThreatSignature(
        id=sig_id,
        category=category,
        pattern=indicator.indicator,
        severity=severity,
        description=indicator.description or f"{category.value} indicator",
        source=source,
        last_updated=_parse_timestamp(indicator.created, now),
    )


# =============================================================================
# Signature cache
# =============================================================================

class SignatureCache(ABC):
    """Abstract store for the fetched signature list."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Tuple[ThreatSignature, ...]]:
        pass

    @abstractmethod
    async def set(self, key: str, signatures: Tuple[ThreatSignature, ...], ttl_seconds: float):
        pass

    @abstractmethod
    async def delete(self, key: str):
        pass


class InMemorySignatureCache(SignatureCache):
    """In-process signature cache with TTL expiry."""

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._entries: Dict[str, Tuple[Tuple[ThreatSignature, ...], float]] = {}
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[Tuple[ThreatSignature, ...]]:
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                return None
            signatures, expires_at = item
            if self._clock.now() >= expires_at:
                del self._entries[key]
                return None
            return signatures

    async def set(self, key: str, signatures: Tuple[ThreatSignature, ...], ttl_seconds: float):
        with self._lock:
            self._entries[key] = (tuple(signatures), self._clock.now() + ttl_seconds)

    async def delete(self, key: str):
        with self._lock:
            self._entries.pop(key, None)


# =============================================================================
# Signature provider
# =============================================================================

class SignatureProvider:
    """
    Keeps a compiled threat pattern set, refreshed from a feed.

    get_signatures() never raises: on any feed or cache failure it returns
    the fixed fallback set and waits retry_backoff_seconds before trying
    the feed again.

    Example:
        provider = SignatureProvider(feed=HttpThreatFeed(url))
        patterns = await provider.get_signatures()
        for compiled in patterns.patterns(ThreatCategory.XSS):
            ...
    """

    CACHE_KEY = "threat_signatures"
    DEFAULT_TTL_SECONDS = 86400

    def __init__(
        self,
        feed: Optional[ThreatFeed] = None,
        cache: Optional[SignatureCache] = None,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        timeout_seconds: float = 5.0,
        retry_backoff_seconds: float = 60.0,
        curated_signatures: Optional[Sequence[ThreatSignature]] = None,
        on_signatures_loaded: Optional[Callable[[int, int], None]] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize signature provider.

        Args:
            feed: External threat feed; None uses curated signatures only
            cache: Signature list cache (in-memory by default)
            ttl_seconds: How long a fetched signature list stays fresh
            timeout_seconds: Bound on each feed and cache call
            retry_backoff_seconds: Fallback period after a failed fetch
            curated_signatures: Built-in signatures merged with the feed
            on_signatures_loaded: Receives (fetched_count, valid_count)
            clock: Time source
        """
        self.feed = feed
        self.ttl_seconds = ttl_seconds
        self.timeout_seconds = timeout_seconds
        self.retry_backoff_seconds = retry_backoff_seconds
        self.curated_signatures = tuple(
            CURATED_SIGNATURES if curated_signatures is None else curated_signatures
        )
        self._clock = clock or SystemClock()
        self._cache = cache or InMemorySignatureCache(clock=self._clock)
        self._on_signatures_loaded = on_signatures_loaded

        # (signature tuple, compiled set) swapped as one reference
        self._compiled_state: Optional[Tuple[Tuple[ThreatSignature, ...], CompiledPatternSet]] = None
        self._fallback_until = 0.0
        self._serving_fallback = False
        self._refresh_lock = asyncio.Lock()

    @property
    def serving_fallback(self) -> bool:
        """True while the last lookup fell back to the fixed pattern set."""
        return self._serving_fallback

    async def get_signatures(self) -> CompiledPatternSet:
        """
        Return the current compiled pattern set.

        The lookup runs in its own task: a caller that is cancelled or times
        out stops waiting, but the fetch still finishes and a failure still
        starts the retry backoff.
        """
        return await asyncio.shield(self._resolve_signatures())

    async def _resolve_signatures(self) -> CompiledPatternSet:
        try:
            cached = await self._cached_signatures()
            if cached is not None:
                return self._compiled_for(cached)

            if self._in_backoff():
                return fallback_pattern_set()

            async with self._refresh_lock:
                # Another task may have refreshed while we waited
                cached = await self._cached_signatures()
                if cached is not None:
                    return self._compiled_for(cached)
                if self._in_backoff():
                    return fallback_pattern_set()
                return await self._load()

        except Exception as e:
            reason = "timed out" if isinstance(e, asyncio.TimeoutError) else str(e)
            logger.warning(f"Failed to load threat signatures, using fallback patterns: {reason}")
            self._fallback_until = self._clock.now() + self.retry_backoff_seconds
            self._serving_fallback = True
            return fallback_pattern_set()

    async def refresh_signatures(self) -> CompiledPatternSet:
        """Drop the cached list and fetch again."""
        logger.info("Force refreshing threat signatures")
        try:
            await asyncio.wait_for(self._cache.delete(self.CACHE_KEY), timeout=self.timeout_seconds)
        except Exception as e:
            logger.warning(f"Failed to clear signature cache: {e}")
        self._fallback_until = 0.0

        patterns = await self.get_signatures()
        if not patterns.is_fallback:
            logger.info("Threat signatures refreshed successfully")
        return patterns

    async def get_stats(self) -> Dict[str, Any]:
        """Statistics about the cached signature list."""
        try:
            cached = await self._cached_signatures()
        except Exception:
            cached = None

        signatures = cached or ()
        return {
            "total_signatures": len(signatures),
            "last_updated": max((s.last_updated for s in signatures), default=None),
            "feed_sources": sorted({s.source for s in signatures}),
            "cache_hit": cached is not None,
            "serving_fallback": self._serving_fallback,
        }

    def _in_backoff(self) -> bool:
        return self._clock.now() < self._fallback_until

    async def _cached_signatures(self) -> Optional[Tuple[ThreatSignature, ...]]:
        return await asyncio.wait_for(
            self._cache.get(self.CACHE_KEY),
            timeout=self.timeout_seconds,
        )

    def _compiled_for(self, signatures: Tuple[ThreatSignature, ...]) -> CompiledPatternSet:
        state = self._compiled_state
        if state is not None and (state[0] is signatures or state[0] == signatures):
            return state[1]

        compiled = compile_signatures(signatures)
        self._compiled_state = (signatures, compiled)
        self._serving_fallback = False
        return compiled

    async def _load(self) -> CompiledPatternSet:
        logger.info("Fetching latest threat signatures")
        signatures = await self._fetch_signatures()
        compiled = compile_signatures(signatures)

        await asyncio.wait_for(
            self._cache.set(self.CACHE_KEY, signatures, self.ttl_seconds),
            timeout=self.timeout_seconds,
        )
        self._compiled_state = (signatures, compiled)
        self._serving_fallback = False
        self._fallback_until = 0.0

        logger.info(f"Loaded {len(signatures)} threat signatures ({len(compiled)} valid)")
        self._emit_counts(len(signatures), len(compiled))
        return compiled

    async def _fetch_signatures(self) -> Tuple[ThreatSignature, ...]:
        signatures: List[ThreatSignature] = []

        if self.feed is not None:
            indicators = await asyncio.wait_for(self.feed.fetch(), timeout=self.timeout_seconds)
            now = self._clock.now()
            for indicator in indicators:
                try:
                    signatures.append(signature_from_indicator(indicator, self.feed.name, now))
                except SignatureConfigurationError as e:
                    logger.warning(f"Skipping feed indicator: {e}")

        signatures.extend(self.curated_signatures)
        return tuple(signatures)

    def _emit_counts(self, fetched: int, valid: int):
        if self._on_signatures_loaded is None:
            return
        try:
            self._on_signatures_loaded(fetched, valid)
        except Exception as e:
            logger.warning(f"Signature count callback failed: {e}")


__all__ = [
    'ThreatCategory',
    'CORE_CATEGORIES',
    'Severity',
    'SEVERITY_RANK',
    'DEFAULT_CATEGORY_SEVERITY',
    'ThreatSignature',
    'CompiledSignature',
    'CompiledPatternSet',
    'compile_signature',
    'compile_signatures',
    'CURATED_SIGNATURES',
    'FALLBACK_SIGNATURES',
    'fallback_pattern_set',
    'FeedIndicator',
    'ThreatFeed',
    'StaticThreatFeed',
    'HttpThreatFeed',
    'signature_from_indicator',
    'SignatureCache',
    'InMemorySignatureCache',
    'SignatureProvider',
]
