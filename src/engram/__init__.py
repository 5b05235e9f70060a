"""
Engram - garbage-collected memory for coding agents.

Facts contributed by an agent start out ephemeral. Every time they are
surfaced into context they are *reviewed*; every time they are actually
used they are *tapped*. An on-demand GC pass expires facts that keep
being shown but never used, and promotes the ones that earn their place.
"""

__version__ = "0.3.0"
