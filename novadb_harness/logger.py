import logging

from rich.console import Console
from rich.logging import RichHandler

# Shared console for coloured progress lines and outcome panels
console = Console()

LOG_FORMAT = "%(message)s"
DATE_FORMAT = "[%X]"


def setup_logging(verbose: bool = False) -> None:
    """Route harness logging through rich, at DEBUG when verbose."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )
    # redis-py is chatty at DEBUG about every connection
    logging.getLogger("redis").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
