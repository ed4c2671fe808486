"""Vertex Proxy: OpenAI-compatible reverse proxy in front of Vertex AI."""

__version__ = "0.1.0"
