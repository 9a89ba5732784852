from prometheus_client import Counter


WEBHOOK_EVENTS = Counter("onboarding_webhook_events_total", "Webhook deliveries processed", ["provider", "status"])
EVENTS_APPLIED = Counter("onboarding_events_applied_total", "Onboarding events applied", ["result"])
REMINDERS = Counter("onboarding_reminders_total", "Reminder dispatch outcomes", ["result"])
DOWNSTREAM_SYNC = Counter("onboarding_downstream_sync_total", "Downstream orchestration outcomes", ["target", "status"])
