"""
Fresher — a fresh-context development loop.

Each iteration spawns a coding agent with a fixed prompt, classifies its
streamed output, persists loop state and decides whether to go again.
"""

from fresher.identity import __codename__, __tagline__, __version__

__all__ = ["__codename__", "__tagline__", "__version__"]
