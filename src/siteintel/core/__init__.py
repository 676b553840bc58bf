"""Core schema helpers for siteintel."""

from .keys import *  # noqa: F401,F403 re-export stable keys

__all__ = [
    name
    for name in globals()
    if name.startswith(("METHOD_", "SOURCE_", "RES_", "ARTIFACT_"))
]
