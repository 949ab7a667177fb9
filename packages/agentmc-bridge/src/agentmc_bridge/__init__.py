"""AgentMC realtime bridge runtime for OpenClaw-style coding agents."""

__version__ = "0.1.0"
