# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Request orchestration with quota-aware failover.

For one user-visible request the orchestrator walks the candidate list from
the FailoverSelector:

    select candidate -> attempt -> success
                                -> quota failure -> next candidate
                                -> hard failure  -> propagate

Quota failures only move on to the next credential when load balancing is
enabled for the provider and nothing has been streamed to the caller yet.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Set

from ..accounts.registry import AccountRegistry
from ..accounts.types import Account
from ..config import RelayConfig
from ..error_handler import (
    CandidatesExhaustedError,
    ClassifiedError,
    ErrorCategory,
    MissingCredentialsError,
    NoAvailableAccountsError,
    RelayError,
    RequestErrorAccumulator,
    classify_error,
    mask_credential,
)
from ..failure_logger import log_failure
from ..notifications import ChangeEvent
from ..quota.store import QuotaStateStore
from ..selection.failover import FailoverSelector
from ..streaming.events import StreamOutcome
from ..streaming.normalizer import EventSink, StreamNormalizer
from ..streaming.signatures import ThoughtSignatureCache
from ..utils.cancellation import CancellationToken
from ..utils.rate_limiter import RateLimiter
from .cache import ClientCache
from .transport import ChatRequest, HttpTransport

lib_logger = logging.getLogger("relay_library")


@dataclass
class AttemptRecord:
    credential_id: str
    category: Optional[ErrorCategory] = None
    message: str = ""


@dataclass
class RequestResult:
    """What happened to one request, for callers and the CLI."""

    outcome: StreamOutcome
    credential_id: str
    attempts: List[AttemptRecord] = field(default_factory=list)
    pinned: bool = False

    @property
    def failed_over(self) -> bool:
        return len(self.attempts) > 1


class RequestOrchestrator:
    """
    Runs chat requests against a provider's credentials.

    Collaborators are passed in explicitly; only the registry is required.

    Usage:
        orchestrator = RequestOrchestrator(registry, config=config)
        result = await orchestrator.execute("anthropic", request, sink=print)
        await orchestrator.aclose()
    """

    def __init__(
        self,
        registry: AccountRegistry,
        quota_store=None,
        selector: Optional[FailoverSelector] = None,
        config: Optional[RelayConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
        client_cache: Optional[ClientCache] = None,
        signature_cache: Optional[ThoughtSignatureCache] = None,
        http_transport=None,
        clock: Callable[[], float] = time.time,
    ):
        self._registry = registry
        self._quota = quota_store or registry.quota_store or QuotaStateStore(clock=clock)
        self._selector = selector or FailoverSelector(registry, self._quota, clock=clock)
        self._config = config or RelayConfig()
        self._rate_limiter = rate_limiter or RateLimiter(
            self._config.rate_limit_requests, self._config.rate_limit_window_ms
        )
        self.clients = client_cache or ClientCache()
        self.signature_cache = signature_cache or ThoughtSignatureCache()
        # Optional httpx transport (e.g. httpx.MockTransport) for every client
        self._http_transport = http_transport
        self._clock = clock
        self._pending_invalidations: Set["asyncio.Future"] = set()
        self._unsubscribe = registry.subscribe(self._on_account_change)

    # =========================================================================
    # CLIENT CACHE
    # =========================================================================

    def _on_account_change(self, event: ChangeEvent) -> None:
        """Drops cached clients of removed or no longer usable accounts."""
        state = event.new_state
        if not event.credential_id:
            return
        if state is None or (isinstance(state, Account) and not state.is_usable(self._clock())):
            task = asyncio.ensure_future(
                self.clients.invalidate(event.credential_id, event.provider)
            )
            self._pending_invalidations.add(task)
            task.add_done_callback(self._invalidation_done)

    def _invalidation_done(self, task: "asyncio.Future") -> None:
        self._pending_invalidations.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            lib_logger.warning(f"Failed to drop cached client: {error}")

    async def _get_transport(self, provider: str, account: Account, dialect: str) -> HttpTransport:
        async def factory() -> HttpTransport:
            secret = await self._registry.get_credentials(account.id)
            api_key = secret.get("api_key") or secret.get("access_token") or ""
            api_base = (
                secret.get("api_base")
                or account.metadata.get("api_base")
                or self._config.api_base_for(provider)
            )
            if not api_base:
                raise RelayError(
                    f"No API base configured for provider '{provider}'. "
                    f"Set {provider.upper()}_API_BASE."
                )
            return HttpTransport(
                provider,
                dialect,
                api_base,
                api_key,
                timeout=self._config.request_timeout,
                http_transport=self._http_transport,
            )

        transport = await self.clients.get(provider, account.id, factory)
        if transport.dialect != dialect:
            await self.clients.invalidate(account.id, provider)
            transport = await self.clients.get(provider, account.id, factory)
        return transport

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def execute(
        self,
        provider: str,
        request: ChatRequest,
        sink: Optional[EventSink] = None,
        cancel: Optional[CancellationToken] = None,
        dialect: Optional[str] = None,
        output_thinking: bool = True,
    ) -> RequestResult:
        """
        Streams one request, failing over between credentials on quota errors.

        Args:
            provider: Provider whose credentials are used
            request: The chat request; request.model selects routing
            sink: Receives normalized events as they are produced
            cancel: Cooperative cancellation; a cancelled request returns
                normally with outcome.cancelled set
            dialect: Wire dialect, defaults to the provider's configured one
            output_thinking: Forward reasoning content to the sink

        Returns:
            RequestResult for the successful (or cancelled) attempt

        Raises:
            NoAvailableAccountsError: The provider has no credentials at all
            CandidatesExhaustedError: Every candidate hit a quota error
            Exception: Any hard failure, unchanged
        """
        model = request.model
        dialect = dialect or self._config.dialect_for(provider)
        load_balance = self._registry.is_load_balance_enabled(provider)

        candidates = self._selector.candidates(provider, model)
        if not candidates:
            raise NoAvailableAccountsError(provider, model)

        default = self._registry.get_default(provider)
        pinned_id = self._registry.get_assigned_credential(provider, model)
        accumulator = RequestErrorAccumulator()
        attempts: List[AttemptRecord] = []
        last_error: Optional[BaseException] = None
        quota_failures = 0

        for attempt_number, account in enumerate(candidates, start=1):
            if cancel is not None and cancel.is_cancelled:
                break

            lib_logger.info(
                f"[{provider}] {model} using account '{account.display_name}' "
                f"({mask_credential(account.id)}), attempt {attempt_number}/{len(candidates)}"
            )
            await self._rate_limiter.throttle(provider)
            normalizer = StreamNormalizer(
                dialect,
                sink=sink,
                output_thinking=output_thinking,
                signature_cache=self.signature_cache,
            )
            record = AttemptRecord(account.id)
            attempts.append(record)

            try:
                transport = await self._get_transport(provider, account, dialect)
                async with transport.stream(request) as response:
                    outcome = await self._consume(normalizer, response, cancel)
            except asyncio.CancelledError:
                raise
            except Exception as error:
                if cancel is not None and cancel.is_cancelled:
                    lib_logger.info(f"[{provider}] Request cancelled during attempt {attempt_number}")
                    normalizer.outcome.cancelled = True
                    return RequestResult(normalizer.outcome, account.id, attempts)

                classified = classify_error(error, provider)
                record.category = classified.category
                record.message = classified.message
                accumulator.record_error(account.id, classified)
                last_error = error
                self._log_failure(account, provider, model, attempt_number, error, classified)

                if classified.category == ErrorCategory.QUOTA:
                    quota_failures += 1
                    await self._quota.mark_exceeded(
                        account.id,
                        provider,
                        reset_delay_hint=classified.retry_after,
                        affected_model=model,
                        error=classified.message,
                    )
                    if not load_balance:
                        lib_logger.warning(
                            f"[{provider}] Account {account.display_name} rate limited; "
                            f"load balancing is off, not switching"
                        )
                        raise
                    if normalizer.events_emitted:
                        lib_logger.warning(
                            f"[{provider}] Account {account.display_name} failed mid-stream; "
                            f"output already delivered, not switching"
                        )
                        raise
                    lib_logger.warning(
                        f"[{provider}] Account {account.display_name} quota exhausted, switching..."
                    )
                    continue

                if self._is_skippable(error):
                    lib_logger.warning(
                        f"[{provider}] Skipping account {account.display_name}: {classified.message}"
                    )
                    continue

                await self._quota.record_failure(account.id, provider, classified.message)
                raise

            await self._quota.record_success(account.id, provider)
            pinned = await self._maybe_pin(provider, model, account, attempts, default, pinned_id)
            lib_logger.info(f"[{provider}] {model} request completed")
            return RequestResult(outcome, account.id, attempts, pinned)

        if cancel is not None and cancel.is_cancelled:
            outcome = StreamOutcome(cancelled=True)
            return RequestResult(outcome, attempts[-1].credential_id if attempts else "", attempts)

        if quota_failures and last_error is not None:
            raise CandidatesExhaustedError(
                provider,
                model,
                last_error,
                accumulator.total_credentials_tried,
                accumulator.build_summary(),
            ) from last_error
        if last_error is not None:
            raise last_error
        raise NoAvailableAccountsError(provider, model)

    async def _consume(
        self,
        normalizer: StreamNormalizer,
        response,
        cancel: Optional[CancellationToken],
    ) -> StreamOutcome:
        outcome = await normalizer.run(response.aiter_bytes(), cancel)
        if outcome.cancelled:
            # Abort the connection instead of draining the rest of the body
            await response.aclose()
        return outcome

    @staticmethod
    def _is_skippable(error: BaseException) -> bool:
        """Credential problems that say nothing about the next account."""
        return isinstance(error, MissingCredentialsError)

    async def _maybe_pin(
        self,
        provider: str,
        model: str,
        account: Account,
        attempts: List[AttemptRecord],
        default: Optional[Account],
        pinned_id: Optional[str],
    ) -> bool:
        """
        Pins the winning account for the model after routing away from the
        usual choice, either by failing over or by skipping a cooling default.
        """
        if pinned_id == account.id:
            return False
        switched = len(attempts) > 1
        bypassed_default = default is not None and default.id != account.id
        if not (switched or bypassed_default):
            return False
        if not self._registry.is_load_balance_enabled(provider):
            return False
        lib_logger.info(
            f"[{provider}] Saving account '{account.display_name}' as preferred for model {model}"
        )
        await self._registry.set_assigned_credential(provider, model, account.id)
        return True

    def _log_failure(
        self,
        account: Account,
        provider: str,
        model: str,
        attempt: int,
        error: BaseException,
        classified: ClassifiedError,
    ) -> None:
        if self._config.enable_failure_log:
            log_failure(account.id, provider, model, attempt, error, classified)

    async def aclose(self) -> None:
        self._unsubscribe()
        if self._pending_invalidations:
            await asyncio.gather(*list(self._pending_invalidations), return_exceptions=True)
        await self.clients.aclose()
