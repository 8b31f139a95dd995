"""mp3cd

Encoding scheduler and burn flow for capacity-constrained MP3 CDs.
See `DESIGN.md` for the architecture.
"""

__all__ = [
    "__version__",
]

# Keep in sync with pyproject.toml
__version__ = "0.1.0"
