"""codeseek: local semantic code search."""

import logging
import os
import sys
from typing import Optional

__version__ = "0.1.0"


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging; the level defaults to CODESEEK_LOG_LEVEL or INFO."""
    level = (level or os.getenv("CODESEEK_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )
    # Chatty third-party loggers
    for name in ("httpx", "urllib3", "sentence_transformers", "filelock"):
        logging.getLogger(name).setLevel(logging.WARNING)
