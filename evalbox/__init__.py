"""evalbox - Evaluate AI models on tasks with Docker-sandboxed tools."""

__version__ = "0.1.0"

from evalbox.config import Config

__all__ = ["Config", "__version__"]
