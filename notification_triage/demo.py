#!/usr/bin/env python3
"""
Notification Triage — Live Demo

Run: python -m notification_triage.demo [--no-pause]
"""

import argparse
import asyncio
from datetime import timedelta

from notification_triage.engine.classifier import HeuristicClassifier
from notification_triage.engine.models import NotificationEvent, Verdict, utcnow
from notification_triage.engine.orchestrator import build_orchestrator

CYAN  = "\033[96m"
GREEN = "\033[92m"
YELLOW= "\033[93m"
RED   = "\033[91m"
BOLD  = "\033[1m"
DIM   = "\033[2m"
RESET = "\033[0m"

ICONS = {Verdict.SEND_NOW: f"{GREEN}NOW{RESET}", Verdict.DEFER: f"{YELLOW}LATER{RESET}", Verdict.SUPPRESS: f"{RED}NEVER{RESET}"}


class SlowClassifier(HeuristicClassifier):
    """Answers after two seconds, far past any deadline."""

    async def classify(self, event, context, deadline):
        await asyncio.sleep(2)
        return await super().classify(event, context, deadline)


def banner(text):
    print(f"\n{CYAN}{BOLD}{'─'*60}")
    print(f"  {text}")
    print(f"{'─'*60}{RESET}")


def show(decision):
    print(f"  Decision : {ICONS[decision.verdict]}")
    print(f"  Reason   : {decision.reason}")
    if decision.rule_matched:
        print(f"  Rule     : {decision.rule_matched}")
    if decision.similarity_score is not None:
        print(f"  Similar  : {decision.similarity_score:.2f}")
    if decision.scheduled_for:
        print(f"  Deliver  : {decision.scheduled_for.isoformat(timespec='minutes')}")
    if decision.fallback_mode:
        print(f"  {YELLOW}FALLBACK MODE{RESET}")


async def run(pause):
    engine = build_orchestrator()

    # ─────────────────────────────────────────────
    banner("SCENARIO 1 — Account breach for a user already at the fatigue cap")
    for i in range(5):
        engine.fatigue.record_send(NotificationEvent("u1", "message", "push", message=f"hi {i}"), utcnow())
    pause()
    show(await engine.evaluate(NotificationEvent(
        user_id="u1",
        event_type="account_breach",
        channel="push",
        title="New login from an unknown device",
        message="Your password was used from a new location.",
        source="auth_service",
        priority_hint="critical",
    )))

    # ─────────────────────────────────────────────
    banner("SCENARIO 2 — Promotion after 3 sends this hour")
    for i in range(3):
        engine.fatigue.record_send(NotificationEvent("u2", "message", "email", message=f"hi {i}"), utcnow())
    pause()
    promo = dict(user_id="u2", event_type="promo", channel="push",
                 message="Weekend sale, 30% off everything!", source="marketing")
    show(await engine.evaluate(NotificationEvent(**promo)))

    print(f"\n  {DIM}Same promotion, but marked critical:{RESET}")
    show(await engine.evaluate(NotificationEvent(**promo, priority_hint="critical")))

    # ─────────────────────────────────────────────
    banner("SCENARIO 3 — Exact duplicate (producer retry)")
    pause()
    msg = dict(user_id="u3", event_type="message", channel="push", source="messaging",
               title="Sarah: are you free tomorrow?", message="Sarah sent you a message.",
               dedupe_key="msg_sarah_001")
    show(await engine.evaluate(NotificationEvent(**msg)))
    show(await engine.evaluate(NotificationEvent(**msg)))

    # ─────────────────────────────────────────────
    banner("SCENARIO 4 — Near-duplicate wording from another service")
    pause()
    show(await engine.evaluate(NotificationEvent(
        user_id="u3", event_type="message", channel="push", source="messaging_v2",
        title="Sarah: are you free tomorrow", message="Sarah sent you a message",
    )))

    # ─────────────────────────────────────────────
    banner("SCENARIO 5 — Expired before evaluation")
    pause()
    now = utcnow()
    show(await engine.evaluate(NotificationEvent(
        user_id="u4", event_type="reminder", channel="push", message="Standup in 5 minutes",
        received_at=now - timedelta(minutes=10), expires_at=now - timedelta(minutes=1),
    )))

    # ─────────────────────────────────────────────
    banner("SCENARIO 6 — Classifier times out")
    pause()
    slow = build_orchestrator(classifier=SlowClassifier())
    show(await slow.evaluate(NotificationEvent(
        user_id="u5", event_type="billing", channel="email",
        message="Your subscription payment could not be processed.", priority_hint="high",
    )))

    # ─────────────────────────────────────────────
    banner("DEMO COMPLETE — Audit Log Summary")
    stats = engine.audit.stats()
    print(f"""
  Total events evaluated : {stats['total_evaluated']}
  Sent NOW               : {stats['by_verdict']['NOW']}
  Deferred LATER         : {stats['by_verdict']['LATER']}
  Suppressed NEVER       : {stats['by_verdict']['NEVER']}

  Suppression rate       : {stats['suppression_rate']}%
  Deferral rate          : {stats['deferred_rate']}%
""")

    print(f"""
{GREEN}{BOLD}To run as an API server:{RESET}
  uvicorn notification_triage.api.server:app --port 8000

Then test with curl:
  curl -X POST http://localhost:8000/v1/notifications/evaluate \\
    -H "Content-Type: application/json" \\
    -d '{{"user_id":"u1","event_type":"message","channel":"push","message":"Hello","priority_hint":"high"}}'

  curl http://localhost:8000/v1/health
  curl http://localhost:8000/v1/stats
""")


def main():
    parser = argparse.ArgumentParser(description="Walk through the triage scenarios")
    parser.add_argument("--no-pause", action="store_true", help="run without waiting for ENTER")
    args = parser.parse_args()

    def pause(msg="Press ENTER to continue..."):
        if not args.no_pause:
            input(f"\n{DIM}{msg}{RESET}")

    asyncio.run(run(pause))


if __name__ == "__main__":
    main()
