"""Group fleet orchestrator - keeps an audience spread across capacity-limited WhatsApp groups."""

__version__ = "1.0.0"
