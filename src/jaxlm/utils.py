import contextlib
import time
from typing import Generator

import termcolor
from loguru import logger


@contextlib.contextmanager
def stopwatch(label: str = "unlabeled block") -> Generator[None, None, None]:
    """Context manager for measuring runtime."""
    start_time = time.time()
    logger.info("Running ({})", label)
    yield
    logger.info(
        "{} seconds ({})",
        termcolor.colored(f"{time.time() - start_time:.4f}", attrs=["bold"]),
        label,
    )
