"""
shellwise: natural-language terminal command pipeline.

Turns free-text requests into shell commands, gates risky ones behind
approval, runs them under a security policy, interprets their output
and learns from the accumulated history.
"""

__version__ = "1.0.0"
