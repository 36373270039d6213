"""stream-relay: stream LLM chat completions across length-limited segments."""

__version__ = "0.1.0"
__title__ = "stream-relay"
