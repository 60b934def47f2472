from .atomic_file import AtomicFileWriter
from .graceful_shutdown import GracefulShutdown

__all__ = [
    "AtomicFileWriter",
    "GracefulShutdown",
]
