"""
Decision Orchestrator — sequences every signal into one auditable verdict.

    RECEIVED → EXPIRY_CHECKED → DEDUPLICATED → FATIGUE_CHECKED
             → RULE_EVALUATED → [CLASSIFIER_INVOKED] → RESOLVED

Every path ends in RESOLVED with a Decision. Dependency failures are turned
into fallbacks by the DegradationPolicy; the only exception a caller can see
from evaluate() is InvariantViolation, which means this module is broken.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
import inspect
import time
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence

from notification_triage.config import TriageSettings, get_settings
from notification_triage.engine.audit import AuditLog
from notification_triage.engine.classifier import BoundedClassifier
from notification_triage.engine.dedup import EXACT, NEAR, NOT_DUPLICATE, DedupEngine, DuplicateVerdict
from notification_triage.engine.degradation import (
    CLASSIFIER, DEDUP, EMBEDDING, FATIGUE, PREFERENCES, RECORD,
    DegradationPolicy, Fallback,
)
from notification_triage.engine.errors import DependencyUnavailable, InvariantViolation
from notification_triage.engine.fatigue import FatigueTracker, FatigueVerdict
from notification_triage.engine.models import (
    Decision, EvaluationContext, NotificationEvent, Stage, Verdict, utcnow,
)
from notification_triage.engine.preferences import PreferenceStore
from notification_triage.engine.rules import DeferPolicy, RuleSpec, RulesEngine
from notification_triage.engine.scheduler import Scheduler
from notification_triage.engine.snapshots import RuleRegistry, RuleSnapshot
from notification_triage.engine.store import HistoryStore
from notification_triage.engine.validation import validate_event
from notification_triage.logging import get_logger

logger = get_logger(__name__)

# plain callables or coroutine functions
DecisionSink = Callable[[Decision], Any]


class Budget:
    """Wall-clock allowance shared by every suspension point of one evaluation."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.deadline = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self.deadline - self._clock())


@dataclass
class _Run:
    event: NotificationEvent
    snapshot: RuleSnapshot
    now: datetime
    budget: Budget
    context: EvaluationContext = field(default_factory=EvaluationContext)
    reasons: List[str] = field(default_factory=list)
    trace: List[Stage] = field(default_factory=list)
    rule: Optional[RuleSpec] = None
    defer_policy: Optional[DeferPolicy] = None
    retry_after: Optional[float] = None
    duplicate: bool = False
    digest_key: Optional[str] = None
    fallback: bool = False
    claimed: bool = False
    reserved: bool = False

    def enter(self, stage: Stage):
        self.trace.append(stage)

    def note(self, fragment: str):
        self.reasons.append(fragment)


class DecisionOrchestrator:
    def __init__(
        self,
        store: HistoryStore,
        registry: RuleRegistry,
        classifier: Optional[BoundedClassifier] = None,
        preferences: Optional[PreferenceStore] = None,
        settings: Optional[TriageSettings] = None,
        audit: Optional[AuditLog] = None,
        sinks: Iterable[DecisionSink] = (),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        s = self.settings
        self.registry = registry
        self.classifier = classifier
        self.preferences = preferences
        self.audit = audit if audit is not None else AuditLog()
        self.sinks: List[DecisionSink] = list(sinks)
        self._clock = clock

        self.dedup = DedupEngine(
            store,
            embedder=classifier if s.near_dup_enabled else None,
            ttl_seconds=s.dedupe_ttl_seconds,
            near_k=s.near_dup_k,
            near_window_seconds=s.near_dup_window_seconds,
            near_threshold=s.near_dup_threshold,
        )
        self.fatigue = FatigueTracker(
            store,
            channel_caps=s.channel_hourly_caps,
            default_channel_cap=s.default_channel_hourly_cap,
            global_cap=s.global_hourly_cap,
            burst_threshold=s.burst_threshold,
            burst_window_minutes=s.burst_window_minutes,
            cooldown_seconds=s.cooldown_seconds,
        )
        self.rules = RulesEngine()
        self.scheduler = Scheduler(s.default_defer_minutes, s.digest_hour_utc)
        self.policy = DegradationPolicy(Verdict.parse(s.classifier_fallback_verdict))
        self.near_dup_verdict = Verdict.parse(s.near_dup_verdict)

        if registry.current.version == 0:
            registry.refresh()

    @property
    def budget_seconds(self) -> float:
        return self.settings.rule_path_budget + self.settings.classifier_timeout

    # ── Entry points ─────────────────────────────────────────

    async def evaluate(self, event: NotificationEvent) -> Decision:
        run = _Run(
            event=event,
            snapshot=self.registry.current,
            now=self._clock(),
            budget=Budget(self.budget_seconds),
        )
        run.enter(Stage.RECEIVED)
        verdict = await self._decide(run)
        decision = self._resolve(run, verdict)
        await self._finalize(run, decision)
        return decision

    async def evaluate_payload(self, payload: Mapping[str, Any]) -> Decision:
        """Validate then evaluate. Raises ValidationError for bad payloads."""
        return await self.evaluate(validate_event(payload, now=self._clock()))

    async def evaluate_many(self, events: Sequence[NotificationEvent]) -> List[Decision]:
        return list(await asyncio.gather(*(self.evaluate(e) for e in events)))

    # ── Pipeline ─────────────────────────────────────────────

    async def _decide(self, run: _Run) -> Verdict:
        event, ctx = run.event, run.context

        # ── STEP 1: Expiry ────────────────────────────────────
        if event.is_expired(run.now):
            run.note("stale: expired before evaluation")
            return Verdict.SUPPRESS
        run.enter(Stage.EXPIRY_CHECKED)
        self._load_preferences(run)

        # ── STEP 2: Deduplication ─────────────────────────────
        dup = await self._deduplicate(run)
        run.enter(Stage.DEDUPLICATED)
        if dup.kind == EXACT:
            run.duplicate = True
            run.note(f"exact duplicate of event {dup.matched_event_id}")
            return Verdict.SUPPRESS
        if dup.kind == NEAR:
            return self._near_duplicate(run, dup)

        # ── STEP 3: Fatigue ───────────────────────────────────
        # Counters are loaded first so rule conditions can see them; the
        # rule match is needed here only for its override_fatigue flag.
        fatigue = self._check_fatigue(run)
        match = self.rules.evaluate(run.snapshot.rules, ctx.facts(event, run.now), event.metadata)
        run.enter(Stage.FATIGUE_CHECKED)
        if fatigue.exceeded:
            if match.matched and match.rule.override_fatigue:
                run.note(f"fatigue cap exceeded ({fatigue.scope}) but overridden by rule {match.rule.name}")
            else:
                if fatigue.cap:
                    run.note(f"fatigue cap exceeded ({fatigue.scope} {fatigue.count}/{fatigue.cap})")
                    run.retry_after = self._retry_after(run, fatigue)
                else:
                    run.note(f"fatigue cap exceeded ({fatigue.scope})")
                return Verdict.DEFER

        # ── STEP 4: Rules ─────────────────────────────────────
        run.enter(Stage.RULE_EVALUATED)
        if match.matched:
            run.rule = match.rule
            run.defer_policy = match.rule.defer
            run.note(f"matched rule {match.rule.name}")
            return match.rule.action

        # ── STEP 5: Classifier ────────────────────────────────
        run.enter(Stage.CLASSIFIER_INVOKED)
        return await self._classify(run)

    def _load_preferences(self, run: _Run):
        if self.preferences is None:
            return
        try:
            prefs = self.preferences.get(run.event.user_id)
        except DependencyUnavailable as e:
            self._degrade(run, PREFERENCES, e)
            return
        ctx = run.context
        ctx.dnd_active = prefs.dnd_active(run.now)
        ctx.dnd_until = prefs.dnd_until if ctx.dnd_active else None
        ctx.opted_out_channels = prefs.opted_out_channels

    async def _deduplicate(self, run: _Run) -> DuplicateVerdict:
        try:
            exact = self.dedup.check_exact(run.event, run.context)
        except DependencyUnavailable as e:
            self._degrade(run, DEDUP, e)
            return NOT_DUPLICATE
        run.claimed = not exact.is_duplicate
        if exact.is_duplicate or not self.dedup.near_enabled:
            return exact

        try:
            return await self.dedup.check_near(run.event, run.context, run.now, run.budget.remaining())
        except DependencyUnavailable as e:
            self._degrade(run, DEDUP if e.dependency == "history store" else EMBEDDING, e)
            return NOT_DUPLICATE

    def _near_duplicate(self, run: _Run, dup: DuplicateVerdict) -> Verdict:
        run.duplicate = True
        event = run.event
        if self.settings.digest_batching and dup.merge:
            window = self.settings.near_dup_window_seconds
            bucket = int(run.now.timestamp() // window)
            run.digest_key = f"digest:{event.user_id}:{event.source}:{bucket}"
            run.retry_after = window - run.now.timestamp() % window
            run.note(f"near-duplicate (similarity={dup.score:.2f}) merged into digest {run.digest_key}")
            return Verdict.DEFER
        run.note(f"near-duplicate (similarity={dup.score:.2f}) of event {dup.matched_event_id}")
        return self.near_dup_verdict

    def _check_fatigue(self, run: _Run) -> FatigueVerdict:
        try:
            verdict = self.fatigue.evaluate(run.event, run.context)
        except DependencyUnavailable as e:
            fb = self._degrade(run, FATIGUE, e)
            return FatigueVerdict(exceeded=bool(fb.exceeded), scope="unverified")
        run.reserved = verdict.reserved
        return verdict

    def _retry_after(self, run: _Run, fatigue: FatigueVerdict) -> Optional[float]:
        try:
            return self.fatigue.retry_after(run.event, fatigue.scope)
        except DependencyUnavailable:
            return None

    async def _classify(self, run: _Run) -> Verdict:
        if self.classifier is None:
            fb = self._degrade(run, CLASSIFIER, DependencyUnavailable("classifier", "not configured"))
            return fb.verdict
        try:
            result = await self.classifier.classify(run.event, run.context, run.budget.remaining())
        except DependencyUnavailable as e:
            fb = self._degrade(run, CLASSIFIER, e)
            return fb.verdict
        run.context.classifier_result = result
        run.note(f"classifier: {result.verdict.value} (confidence={result.confidence:.2f})")
        return result.verdict

    def _degrade(self, run: _Run, stage: str, error: DependencyUnavailable) -> Fallback:
        fb = self.policy.handle(stage, error, run.event)
        run.context.degraded[stage] = fb.kind
        run.fallback = True
        run.note(fb.reason)
        logger.warning(
            "Degraded %s: %s", stage, error,
            extra={"event_id": run.event.id, "fallback": fb.reason},
        )
        return fb

    # ── Resolver ─────────────────────────────────────────────

    def _resolve(self, run: _Run, verdict: Verdict) -> Decision:
        run.enter(Stage.RESOLVED)
        event, ctx = run.event, run.context

        if verdict == Verdict.SUPPRESS and event.is_critical:
            verdict = Verdict.DEFER
            run.defer_policy = None
            run.retry_after = 0.0
            run.note("critical downgrade-not-suppress")

        scheduled_for = None
        if verdict == Verdict.DEFER:
            scheduled_for, clamped = self.scheduler.schedule(
                event, ctx, run.now, run.defer_policy, run.retry_after
            )
            if clamped:
                run.note("deferral clamped to expiry")

        decision = Decision(
            event_id=event.id,
            user_id=event.user_id,
            verdict=verdict,
            reason="; ".join(run.reasons),
            priority_hint=event.priority_hint,
            rule_matched=run.rule.name if run.rule else None,
            classifier_confidence=ctx.classifier_result.confidence if ctx.classifier_result else None,
            similarity_score=ctx.similarity_score if run.duplicate else None,
            scheduled_for=scheduled_for,
            digest_key=run.digest_key,
            fallback_mode=run.fallback,
            snapshot_version=run.snapshot.version,
            trace=tuple(run.trace),
            decided_at=run.now,
        )

        if decision.verdict == Verdict.SUPPRESS and event.is_critical:
            logger.critical("Critical event suppressed", extra={"event_id": event.id})
            raise InvariantViolation(f"critical event {event.id} resolved to SUPPRESS")
        if (decision.scheduled_for is None) != (decision.verdict != Verdict.DEFER):
            raise InvariantViolation(f"scheduled_for/verdict mismatch on event {event.id}")
        return decision

    async def _finalize(self, run: _Run, decision: Decision):
        event = run.event
        record = (
            decision.verdict in (Verdict.SEND_NOW, Verdict.DEFER) and not run.duplicate
        ) or (
            decision.verdict == Verdict.SUPPRESS and run.rule is not None and run.rule.record_always
        )

        # dedup and fatigue writes fail independently
        try:
            if record:
                self.dedup.record(event, run.context, run.now)
            elif run.claimed:
                self.dedup.release(event)
        except DependencyUnavailable as e:
            self._write_skipped("dedup", e, event)
        try:
            if decision.verdict == Verdict.SEND_NOW:
                if run.reserved:
                    self.fatigue.commit_send(event, run.now)
                else:
                    self.fatigue.record_send(event, run.now)
            elif run.reserved:
                self.fatigue.release(event)
        except DependencyUnavailable as e:
            self._write_skipped("fatigue", e, event)

        logger.info(
            "Decision %s for event %s: %s", decision.verdict.value, event.id, decision.reason,
            extra={"user_id": event.user_id, "rule": decision.rule_matched},
        )
        self.audit.record(decision)
        for sink in self.sinks:
            try:
                result = sink(decision)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Decision sink %r failed", sink, extra={"event_id": event.id})

    def _write_skipped(self, target: str, error: DependencyUnavailable, event: NotificationEvent):
        fb = self.policy.handle(RECORD, error, event)
        logger.warning("%s %s", target, fb.reason, extra={"event_id": event.id})


def build_orchestrator(
    settings: Optional[TriageSettings] = None,
    store: Optional[HistoryStore] = None,
    provider=None,
    classifier=None,
    preferences: Optional[PreferenceStore] = None,
    **kwargs,
) -> DecisionOrchestrator:
    """
    Wire a DecisionOrchestrator from settings, filling in the in-memory
    collaborators for anything not supplied. `classifier` may be a raw
    ClassifierPort; it is wrapped in a BoundedClassifier here.
    """
    from notification_triage.engine.classifier import CircuitBreaker, HeuristicClassifier
    from notification_triage.engine.preferences import InMemoryPreferenceStore
    from notification_triage.engine.snapshots import JsonFileConfigProvider, StaticConfigProvider
    from notification_triage.engine.store import InMemoryHistoryStore

    settings = settings or get_settings()
    if provider is None:
        provider = (
            JsonFileConfigProvider(settings.rules_file) if settings.rules_file else StaticConfigProvider()
        )
    port = classifier if classifier is not None else HeuristicClassifier()
    if not isinstance(port, BoundedClassifier):
        port = BoundedClassifier(
            port,
            timeout=settings.classifier_timeout,
            embedding_timeout=settings.embedding_timeout,
            breaker=CircuitBreaker(settings.breaker_failure_threshold, settings.breaker_reset_seconds),
            embedding_breaker=CircuitBreaker(settings.breaker_failure_threshold, settings.breaker_reset_seconds),
            max_concurrency=settings.classifier_max_concurrency,
        )
    return DecisionOrchestrator(
        store=store if store is not None else InMemoryHistoryStore(),
        registry=RuleRegistry(provider),
        classifier=port,
        preferences=preferences if preferences is not None else InMemoryPreferenceStore(),
        settings=settings,
        **kwargs,
    )
