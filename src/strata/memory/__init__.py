"""Tiered working memory.

Layout of a memory root:

    NOW-<timestamp>.md      live session transcripts
    RECENT.md               digest of the last few consolidated sessions
    MEMORY.md               index of every consolidated session
    MEMORY-<date>.md        per-day shards with full session summaries
    consolidation.log       audit trail of consolidation runs
    .current                name of the active NOW file
    .memory.lock / .now.lock  advisory writer locks
"""
