from inbox_triage.features.triage.trust.service import TrustController

__all__ = ["TrustController"]
