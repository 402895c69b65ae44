"""Member import service package.

Kept as a regular package so test discovery and ``pip install -e .`` resolve
``app`` the same way.
"""

__all__: list[str] = []
