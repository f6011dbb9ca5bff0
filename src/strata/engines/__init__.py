"""LLM backends used by the summarizer."""
