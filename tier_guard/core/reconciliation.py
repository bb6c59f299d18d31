"""
Usage reconciliation.

Repairs undercounted ledger totals, mostly from streamed responses, against
the organization usage report of the upstream provider. Corrections only
ever add tokens.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import httpx

from ..config.loader import DEFAULT_UPSTREAM_URL
from ..log import get_logger
from ..storage.models import Tier
from .errors import ClientInputError, ReconciliationError
from .ledger import Clock, Correction, QuotaLedger, parse_day
from .tiers import TierClassifier

logger = get_logger(__name__)

USAGE_REPORT_PATH = "/v1/organization/usage/completions"
SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class UsageResult:
    """One (day, model) aggregate of the upstream usage report."""
    model: Optional[str]
    input_tokens: int
    output_tokens: int
    num_model_requests: int = 0
    input_cached_tokens: int = 0
    project_id: Optional[str] = None
    start_time: Optional[int] = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class ReconciliationResult:
    """Outcome of one reconciliation run."""
    date: str
    tiers: Dict[Tier, Correction]
    details: List[str] = field(default_factory=list)
    applied: bool = True

    @property
    def total_added(self) -> int:
        return sum(correction.added for correction in self.tiers.values())

    def to_dict(self) -> dict:
        body = {"success": True, "date": self.date, "applied": self.applied}
        for tier, correction in self.tiers.items():
            body[tier.value] = correction.to_dict()
        body["details"] = list(self.details)
        return body


def day_bounds(day: str) -> Tuple[int, int]:
    """Epoch seconds of [00:00 UTC, next 00:00 UTC) for a YYYY-MM-DD day."""
    start = datetime.fromisoformat(day).replace(tzinfo=timezone.utc)
    start_ts = int(start.timestamp())
    return start_ts, start_ts + SECONDS_PER_DAY


def _parse_result(row: dict, start_time: Optional[int]) -> UsageResult:
    input_tokens = row.get("input_tokens") or 0
    output_tokens = row.get("output_tokens") or 0
    if not isinstance(input_tokens, int) or not isinstance(output_tokens, int):
        raise ValueError(f"non-integer token counts in usage result: {row!r}")
    return UsageResult(
        model=row.get("model"),
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        num_model_requests=row.get("num_model_requests") or 0,
        input_cached_tokens=row.get("input_cached_tokens") or 0,
        project_id=row.get("project_id"),
        start_time=start_time,
    )


class UsageReportClient:
    """Client of the organization usage report endpoint.

    Needs an admin key, distinct from the key used to forward requests.
    """

    def __init__(
        self,
        admin_key: Optional[str],
        base_url: str = DEFAULT_UPSTREAM_URL,
        client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
    ):
        self.admin_key = admin_key
        self.base_url = base_url.rstrip("/")
        self._client = client
        self.timeout = timeout

    def fetch_usage(self, start_time: int, end_time: int) -> List[UsageResult]:
        """Fetch per-model usage for [start_time, end_time).

        Follows the ``next_page`` cursor until the report is exhausted; no
        row is returned unless every page was read.

        Args:
            start_time: Start of the interval, epoch seconds
            end_time: End of the interval, epoch seconds

        Returns:
            All usage rows of the interval

        Raises:
            ReconciliationError: On missing key, HTTP, transport or format errors
        """
        if not self.admin_key:
            raise ReconciliationError(
                "OPENAI_ADMIN_KEY is required for usage reconciliation. Get one from "
                "https://platform.openai.com/settings/organization/admin-keys"
            )

        if self._client is not None:
            return self._fetch_all(self._client, start_time, end_time)
        with httpx.Client(base_url=self.base_url, timeout=self.timeout) as http:
            return self._fetch_all(http, start_time, end_time)

    def _fetch_all(self, http: httpx.Client, start_time: int, end_time: int) -> List[UsageResult]:
        params = {
            "start_time": start_time,
            "end_time": end_time,
            "bucket_width": "1d",
            "group_by": "model",
        }
        headers = {
            "Authorization": f"Bearer {self.admin_key}",
            "Content-Type": "application/json",
        }

        results: List[UsageResult] = []
        seen_cursors = set()
        cursor: Optional[str] = None
        page_count = 0

        while True:
            page_count += 1
            page_params = dict(params)
            if cursor:
                page_params["page"] = cursor

            try:
                response = http.get(USAGE_REPORT_PATH, params=page_params, headers=headers)
            except httpx.HTTPError as e:
                raise ReconciliationError(f"Failed to fetch usage from OpenAI: {e}") from e

            if response.status_code != 200:
                raise ReconciliationError(
                    f"Failed to fetch usage from OpenAI: {response.status_code} - {response.text}"
                )

            try:
                data = response.json()
                buckets = data["data"]
                for bucket in buckets:
                    for row in bucket.get("results", []):
                        results.append(_parse_result(row, bucket.get("start_time")))
                cursor = data.get("next_page")
                has_more = bool(data.get("has_more"))
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                raise ReconciliationError(f"Malformed usage response on page {page_count}: {e}") from e

            logger.debug(
                "Usage page %d: %d bucket(s), next page %s",
                page_count, len(buckets), cursor or "none",
            )

            if not cursor:
                if has_more:
                    raise ReconciliationError(
                        f"Usage response page {page_count} has more data but no next_page cursor"
                    )
                break
            if cursor in seen_cursors:
                raise ReconciliationError(f"Usage pagination repeated cursor {cursor!r}")
            seen_cursors.add(cursor)

        logger.info("Fetched %d usage result(s) across %d page(s)", len(results), page_count)
        return results


class Reconciler:
    """Brings the ledger up to the upstream provider's usage report."""

    def __init__(
        self,
        ledger: QuotaLedger,
        classifier: TierClassifier,
        report_client: UsageReportClient,
        clock: Optional[Clock] = None,
    ):
        self.ledger = ledger
        self.classifier = classifier
        self.report_client = report_client
        self.clock = clock or ledger.clock

    def aggregate(self, results: List[UsageResult]) -> Tuple[Dict[Tier, int], List[str]]:
        """Sum tokens per tier and build a per-model breakdown.

        Returns:
            Token total per tier and one human readable line per model
        """
        totals: Dict[Tier, int] = {tier: 0 for tier in Tier}
        per_model: Dict[str, int] = defaultdict(int)
        model_tiers: Dict[str, Tier] = {}

        for result in results:
            model = result.model or "unknown"
            tier = self.classifier.classify(model)
            totals[tier] += result.total_tokens
            per_model[model] += result.total_tokens
            model_tiers[model] = tier

        details = [
            f"{model} ({model_tiers[model].value}): {tokens:,} tokens"
            for model, tokens in sorted(per_model.items())
        ]
        return totals, details

    def reconcile(self, day=None) -> ReconciliationResult:
        """Reconcile the ledger with the upstream usage of a day.

        Each tier's counter is raised by max(0, upstream - local). A local
        counter above the upstream total is left as is.

        Args:
            day: date or YYYY-MM-DD string, today (UTC) by default

        Returns:
            Before/after/added per tier and the per-model breakdown

        Raises:
            ClientInputError: If ``day`` is not a valid date
            ReconciliationError: If the report could not be fetched in full
        """
        try:
            target = parse_day(day, self.clock)
        except ValueError as e:
            raise ClientInputError(str(e)) from e

        logger.info("Reconciling usage for %s...", target)
        self.ledger.check_and_rollover()

        start_time, end_time = day_bounds(target)
        try:
            results = self.report_client.fetch_usage(start_time, end_time)
        except ReconciliationError as e:
            logger.error("Reconciliation failed: %s", e)
            raise

        totals, details = self.aggregate(results)

        if target != self.ledger.current_date():
            # The ledger only holds the current day; other days are report only.
            logger.info("Ledger is on %s, %s is reported without corrections", self.ledger.current_date(), target)
            tiers = {}
            for tier in Tier:
                used = self.ledger.get(tier).tokens_used
                tiers[tier] = Correction(before=used, after=used, added=0, upstream=totals[tier])
            return ReconciliationResult(date=target, tiers=tiers, details=details, applied=False)

        tiers = self.ledger.correct_upward(totals, target)
        result = ReconciliationResult(date=target, tiers=tiers, details=details)
        if result.total_added > 0:
            logger.info("Reconciliation complete: Added %s tokens", f"{result.total_added:,}")
        else:
            logger.info("Reconciliation complete: No updates needed")
        return result
