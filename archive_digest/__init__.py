"""
Core package for archive-digest.

Turns a chat conversation export into per-thread files, topic chunks,
chunk summaries with a shared glossary, and thread-level rollups. Each
stage lives in its own module so the pieces can be driven separately:
splitting, linearization, chunking, summarization and rollup.
"""

__all__ = [
    "cli",
    "config_types",
    "errors",
    "fileio",
    "glossary",
    "index",
    "linearize",
    "llm",
    "llm_backends",
    "models",
    "prompts",
    "splitter",
    "stages",
    "chunker",
    "turns",
    "windows",
    "executor",
]
