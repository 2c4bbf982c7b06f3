from inbox_triage.features.triage.senders.service import SenderBehaviorService, time_decay

__all__ = ["SenderBehaviorService", "time_decay"]
