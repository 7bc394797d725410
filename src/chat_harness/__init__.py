"""Chat Harness: agentic turn execution over interchangeable LLM backends."""

__version__ = "0.1.0"
