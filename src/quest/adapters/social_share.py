"""Social-share verification.

Checks that a submitted post URL is on an allowed platform and publicly
reachable. Reachability is the base guarantee; matching post content would
need per-platform API credentials this adapter does not assume.
"""

from typing import Any, Optional
from urllib.parse import urlsplit

import httpx

from src.logging_utils import get_logger
from src.models import (
    IncentiveDefinition,
    IncentiveType,
    SocialShareEvidence,
    VerificationResult,
)
from src.quest.verifier import Verifier

logger = get_logger(__name__)

ALLOWED_PLATFORMS = frozenset(
    {
        "twitter.com",
        "x.com",
        "instagram.com",
        "facebook.com",
        "linkedin.com",
        "threads.net",
    }
)


class SocialShareVerifier(Verifier):
    """Verifies public social posts by platform allowlist and a HEAD probe."""

    incentive_type = IncentiveType.SOCIAL_SHARE
    evidence_model = SocialShareEvidence
    evidence_reasons = {"url": "Missing or invalid URL"}

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        allowed_platforms: frozenset[str] = ALLOWED_PLATFORMS,
        timeout: float = 10.0,
    ):
        """Initialize the adapter.

        Args:
            http_client: Client used for the probe. When omitted a short-lived
                client is opened per probe.
            allowed_platforms: Hostnames (without ``www.``) accepted as platforms.
            timeout: Probe timeout in seconds when no client is injected.
        """
        self.http_client = http_client
        self.allowed_platforms = frozenset(allowed_platforms)
        self.timeout = timeout

    async def verify(
        self,
        purchase_id: str,
        evidence: Any,
        incentive: Optional[IncentiveDefinition] = None,
    ) -> VerificationResult:
        parsed, reason = self.parse_evidence(evidence)
        if parsed is None:
            return VerificationResult.rejected(reason)

        url = parsed.url.strip()
        try:
            parts = urlsplit(url)
            hostname = parts.hostname if parts.scheme in ("http", "https") else None
        except ValueError:
            hostname = None
        if not hostname:
            return VerificationResult.rejected("URL is not parseable")

        platform = hostname.lower().removeprefix("www.")
        if platform not in self._allowed_for(incentive):
            return VerificationResult.rejected(f'Platform "{platform}" is not on the allowlist')

        try:
            response = await self._probe(url)
        except httpx.InvalidURL:
            return VerificationResult.rejected("URL is not parseable")
        except httpx.HTTPError as e:
            logger.warning(f"Reachability probe failed for {url}: {e}")
            return VerificationResult.pending_manual(
                "Could not reach URL; queued for manual review", retryable=True
            )

        if not response.is_success:
            return VerificationResult.rejected(
                f"URL returned HTTP {response.status_code}; post may be private or deleted"
            )

        return VerificationResult.verified(
            "Public post URL confirmed reachable on allowed platform",
            metadata={"platform": platform, "url": url},
            awarded_bps=self.awarded_bps(incentive),
        )

    async def _probe(self, url: str) -> httpx.Response:
        if self.http_client is not None:
            return await self.http_client.head(url, follow_redirects=True)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.head(url, follow_redirects=True)

    def validate_config(self, config: dict[str, Any]) -> list[str]:
        platforms = config.get("platforms")
        if platforms is None:
            return []
        if not isinstance(platforms, list) or not all(isinstance(p, str) for p in platforms):
            return ["platforms must be a list of hostnames"]
        unknown = sorted({p.lower().removeprefix("www.") for p in platforms} - self.allowed_platforms)
        if unknown:
            return [f"platforms not supported: {', '.join(unknown)}"]
        return []

    def _allowed_for(self, incentive: Optional[IncentiveDefinition]) -> frozenset[str]:
        # An incentive may narrow the allowlist, never widen it
        platforms = incentive.verification_config.get("platforms") if incentive else None
        if not platforms:
            return self.allowed_platforms
        return self.allowed_platforms & {p.lower().removeprefix("www.") for p in platforms}
