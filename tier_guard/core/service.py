"""
Proxy service.

Wires admission, forwarding, accounting and reconciliation together and
exposes the operations used by the HTTP layer and the CLI.
"""

import json
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Union

from ..config.loader import TierGuardConfig, get_admin_key, get_api_key
from ..log import get_logger
from ..storage.models import Tier
from ..storage.repository import UsageRepository
from .accounting import Accountant, RequestOutcome
from .admission import AdmissionController
from .errors import (
    AccountingError,
    AccountingInconsistencyError,
    ClientInputError,
    QuotaExceededError,
    TierGuardError,
)
from .forwarding import StreamedBody, UpstreamForwarder
from .history import MAX_PAGE_SIZE, HistoryLog, HistoryPage
from .ledger import Clock, QuotaLedger, UsageStats
from .reconciliation import ReconciliationResult, Reconciler, UsageReportClient
from .tiers import classifier_from_config

logger = get_logger(__name__)

SERVICE_NAME = "OpenAI Token Tracking Proxy"
SERVICE_VERSION = "1.0.0"


@dataclass
class ProxyResponse:
    """Response handed back to the HTTP layer."""
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: Union[bytes, StreamedBody] = b""

    @property
    def is_streaming(self) -> bool:
        return not isinstance(self.body, bytes)

    def json(self) -> Any:
        """Decode a non-streaming JSON body."""
        return json.loads(self.body)

    def close(self) -> None:
        """Release a streamed body the caller stopped reading."""
        if self.is_streaming:
            self.body.close()


def error_response(error: TierGuardError) -> ProxyResponse:
    """Render an error the way the upstream API reports its own."""
    return ProxyResponse(
        status=error.status_code,
        headers={"Content-Type": "application/json"},
        body=json.dumps(error.to_response_body()).encode("utf-8"),
    )


def _parse_payload(raw_body: Union[bytes, str, None]) -> Dict[str, Any]:
    if not raw_body:
        return {}
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise ClientInputError("Invalid request body") from e
    if not isinstance(payload, dict):
        raise ClientInputError("Invalid request body")
    return payload


class TierGuardService:
    """The token tracking proxy."""

    def __init__(
        self,
        ledger: QuotaLedger,
        history: HistoryLog,
        admission: AdmissionController,
        accountant: Accountant,
        reconciler: Reconciler,
        forwarder: UpstreamForwarder,
    ):
        self.ledger = ledger
        self.history = history
        self.admission = admission
        self.accountant = accountant
        self.reconciler = reconciler
        self.forwarder = forwarder
        self._accounting_errors = 0
        self._errors_lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: TierGuardConfig,
        api_key: Optional[str] = None,
        admin_key: Optional[str] = None,
        clock: Optional[Clock] = None,
        forwarder: Optional[UpstreamForwarder] = None,
        report_client: Optional[UsageReportClient] = None,
    ) -> "TierGuardService":
        """Build the service and its collaborators from configuration.

        Keys default to the OPENAI_API_KEY and OPENAI_ADMIN_KEY environment
        variables.
        """
        repository = UsageRepository(config.database_path)
        limits = {Tier(name): limit for name, limit in config.limits.items()}
        ledger = QuotaLedger(repository, limits, clock)
        history = HistoryLog(repository)
        classifier = classifier_from_config(config)

        if forwarder is None:
            forwarder = UpstreamForwarder(
                api_key or get_api_key(),
                base_url=config.upstream.base_url,
                timeout=config.upstream.timeout,
            )
        if report_client is None:
            report_client = UsageReportClient(
                admin_key or get_admin_key(),
                base_url=config.upstream.base_url,
            )

        return cls(
            ledger=ledger,
            history=history,
            admission=AdmissionController(ledger, classifier),
            accountant=Accountant(ledger, history, ledger.clock),
            reconciler=Reconciler(ledger, classifier, report_client),
            forwarder=forwarder,
        )

    def initialize(self) -> None:
        """Create tables and tier records; safe to call on every start."""
        self.ledger.initialize()

    def admit_and_forward(
        self,
        raw_body: Union[bytes, str, None],
        headers: Optional[Mapping[str, str]] = None,
        path: str = "/v1/chat/completions",
        method: str = "POST",
    ) -> ProxyResponse:
        """Admit, forward and account a client request.

        Client errors, quota denials and upstream failures are turned into
        error responses. Accounting failures are logged and counted; the
        client still receives the upstream response.

        Args:
            raw_body: Raw JSON body of the client request
            headers: Client request headers
            path: Request path, forwarded as is
            method: HTTP method

        Returns:
            The upstream response, or an error response
        """
        try:
            payload = _parse_payload(raw_body)
            model = payload.get("model")
            decision = self.admission.admit(model)
        except TierGuardError as e:
            return error_response(e)

        if not decision.allowed:
            return error_response(QuotaExceededError(decision.reason, decision))

        is_streaming = payload.get("stream") is True

        try:
            upstream = self.forwarder.forward(method, path, payload, headers, stream=is_streaming)
        except TierGuardError as e:
            return error_response(e)

        self._account(RequestOutcome(
            model=model,
            tier=decision.tier,
            path=path,
            status=upstream.status,
            is_streaming=is_streaming,
            response_body=upstream.content,
            day=decision.day,
        ))

        if is_streaming:
            return ProxyResponse(status=upstream.status, headers=upstream.headers, body=upstream.chunks)
        return ProxyResponse(status=upstream.status, headers=upstream.headers, body=upstream.content)

    def _account(self, outcome: RequestOutcome) -> None:
        try:
            self.accountant.account(outcome)
        except AccountingInconsistencyError as e:
            self._count_accounting_error()
            logger.error("Accounting inconsistency: %s", e)
        except AccountingError as e:
            self._count_accounting_error()
            logger.error("Accounting failed: %s", e)

    def _count_accounting_error(self) -> None:
        with self._errors_lock:
            self._accounting_errors += 1

    @property
    def accounting_errors(self) -> int:
        """Number of requests whose usage could not be fully recorded."""
        return self._accounting_errors

    def get_usage_stats(self) -> UsageStats:
        """Usage of every tier for the current UTC day."""
        return self.ledger.usage_stats()

    def get_history(self, limit: int = 100, offset: int = 0) -> HistoryPage:
        """A page of request history, newest first.

        Limits above the maximum page size are capped.

        Raises:
            ClientInputError: If limit < 1 or offset < 0
        """
        try:
            return self.history.page(min(limit, MAX_PAGE_SIZE), offset)
        except ValueError as e:
            raise ClientInputError(str(e)) from e

    def get_stats(self) -> dict:
        """Usage stats plus request and accounting error counts."""
        return {
            "usage": self.get_usage_stats().to_dict(),
            "totalRequests": self.history.count(),
            "accountingErrors": self.accounting_errors,
        }

    def reconcile(self, day=None) -> ReconciliationResult:
        """Reconcile the ledger with the upstream usage report."""
        return self.reconciler.reconcile(day)

    def health(self) -> dict:
        """Liveness check with the current UTC instant."""
        return {
            "status": "ok",
            "timestamp": self.ledger.clock().isoformat(),
        }

    def describe(self) -> dict:
        """Name, version and endpoints of the proxy."""
        return {
            "name": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "status": "running",
            "endpoints": {
                "health": "/api/health",
                "usage": "/api/usage",
                "history": "/api/history",
                "stats": "/api/stats",
                "reconcile": "/api/reconcile",
                "proxy": "/v1/*",
            },
        }

    def close(self) -> None:
        self.forwarder.close()
