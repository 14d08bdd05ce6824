from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler


def configure_logging(level: str = "INFO", console: Console | None = None) -> None:
    """Route every module logger through a single rich handler on stderr."""
    handler = RichHandler(console=console or Console(stderr=True), rich_tracebacks=True, show_path=False)
    logging.basicConfig(level=level.upper(), format="%(name)s: %(message)s", datefmt="[%X]",
                        handlers=[handler], force=True)
    for noisy in ("httpx", "httpcore", "hpack", "aiohttp.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
