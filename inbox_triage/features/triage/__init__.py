"""
Email triage feature: sender statistics, tiered prediction, trust-gated
autonomy and the approval queue. ``TriageSession`` is the entry point.
"""
