"""strata: tiered working memory (NOW / RECENT / MEMORY) for coding agents."""

__version__ = "0.1.0"
