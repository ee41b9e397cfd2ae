# shared/metrics.py

from prometheus_client import Counter, Gauge

MESSAGES_SCHEDULED = Counter('channel_scheduler_messages_scheduled_total', 'Total messages scheduled')
MESSAGES_CANCELLED = Counter('channel_scheduler_messages_cancelled_total', 'Total messages cancelled')
MESSAGES_SENT = Counter('channel_scheduler_messages_sent_total', 'Total scheduled messages delivered')
DELIVERY_FAILURES = Counter('channel_scheduler_delivery_failures_total', 'Total failed delivery attempts')
SWEEPS_RUN = Counter('channel_scheduler_sweeps_total', 'Total due-sweep cycles completed')
PENDING_MESSAGES = Gauge('channel_scheduler_pending_messages', 'Number of pending scheduled messages')
