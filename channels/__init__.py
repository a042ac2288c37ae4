"""Send capabilities for email jobs."""
from channels.email_sender import EmailSender, SenderMetrics
from channels.registry import SendCapability, SenderRegistry

__all__ = ["EmailSender", "SenderMetrics", "SendCapability", "SenderRegistry"]
