"""Email triage decision engine: sender statistics, ensemble prediction and trust-gated autonomy."""

__version__ = "0.1.0"
