from datetime import datetime, timedelta, timezone

from registration_defense import AdminControls, DefenseConfig, RegistrationOrchestrator
from registration_defense.captcha import StaticCaptchaVerifier
from registration_defense.reputation import StaticReputationFeed
from registration_defense.webhook import LoggingAlertSink


def main() -> None:
    now = datetime.now(timezone.utc)
    alerts = LoggingAlertSink()
    orchestrator = RegistrationOrchestrator(
        DefenseConfig(),
        reputation_feed=StaticReputationFeed(vpn_ranges=["203.0.113.0/24"], bad_subnets=["192.0.2.0/24"]),
        captcha=StaticCaptchaVerifier(),
        alerts=alerts,
    )
    admin = AdminControls(orchestrator)

    print("Single client signing up repeatedly:")
    for i, name in enumerate(["alice", "bob", "carol", "dave", "erin", "frank"]):
        decision = orchestrator.evaluate_attempt("198.51.100.20", f"{name}@example.com", now=now + timedelta(seconds=i))
        print(f"- {name}: {decision.outcome.value} {decision.reason.value if decision.reason else ''}")

    disposable = orchestrator.evaluate_attempt("198.51.100.21", "temp@mailinator.com", now=now)
    print("Disposable domain:", disposable.outcome.value, disposable.reason.value)

    print("Distributed sign-up burst from 150 addresses...")
    for i in range(150):
        orchestrator.evaluate_attempt(
            f"10.20.{i}.1",
            f"member{i}x@example.com",
            now=now + timedelta(seconds=10 + 0.3 * i),
        )

    state = admin.policy(now + timedelta(minutes=1))
    print("Defense mode:", state.mode.label)
    for transition in reversed(admin.transitions()):
        print(f"- {transition.from_mode.label} -> {transition.to_mode.label}: {transition.reason}")
    print("Alerts raised:", [alert.severity for alert in alerts.sent])

    metrics = admin.get_metrics(now - timedelta(minutes=1), now + timedelta(minutes=5), now=now + timedelta(minutes=1))
    print("Attempts:", metrics["total_attempts"], "outcomes:", metrics["outcomes"])

    restored = admin.restore_normal("burst over", operator="demo", now=now + timedelta(minutes=2))
    print("After operator restore:", restored.mode.label)


if __name__ == "__main__":
    main()
