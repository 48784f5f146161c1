"""ChatLLM -- on-device model lifecycle and streaming inference."""

__version__ = "0.1.0"
