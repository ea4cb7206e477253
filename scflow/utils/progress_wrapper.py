"""
Progress reporting for long-running black box computations.

Leiden on a large graph, marker testing over every cluster and JackStraw
replicates can all run for minutes without output. ``with_periodic_progress``
keeps a background thread emitting "still working" messages until the
wrapped block finishes.
"""

import threading
import time
from contextlib import contextmanager
from typing import Callable, Optional

from scflow.utils.logger import get_logger

logger = get_logger(__name__)

ProgressCallback = Callable[[str], None]


def format_elapsed_time(seconds: int) -> str:
    """Format elapsed seconds as ``45s``, ``2m`` or ``1m 15s``."""
    if seconds < 60:
        return f"{seconds}s"
    minutes, remaining_seconds = divmod(seconds, 60)
    if remaining_seconds == 0:
        return f"{minutes}m"
    return f"{minutes}m {remaining_seconds}s"


@contextmanager
def with_periodic_progress(
    operation_name: str,
    progress_callback: Optional[ProgressCallback] = None,
    update_interval: float = 15,
    show_elapsed: bool = True,
):
    """
    Context manager that emits periodic progress messages for a code block.

    Args:
        operation_name: Name of the operation (e.g., "Running JackStraw")
        progress_callback: Callable receiving each message; when omitted the
                           messages go to the debug log
        update_interval: Seconds between updates
        show_elapsed: Whether to include elapsed time in messages

    Usage:
        with with_periodic_progress("Finding marker genes", callback):
            sc.tl.rank_genes_groups(adata, "leiden", method="wilcoxon")
    """
    if progress_callback is None:

        def progress_callback(message: str) -> None:
            logger.debug(f"Progress: {message}")

    stop_event = threading.Event()

    def progress_updater():
        start_time = time.time()
        progress_callback(f"{operation_name}...")

        while not stop_event.wait(update_interval):
            elapsed_seconds = int(time.time() - start_time)
            if show_elapsed and elapsed_seconds > 0:
                message = (
                    f"Still {operation_name.lower()} "
                    f"({format_elapsed_time(elapsed_seconds)} elapsed)..."
                )
            else:
                message = f"Still {operation_name.lower()}..."
            progress_callback(message)

    progress_thread = threading.Thread(target=progress_updater, daemon=True)
    progress_thread.start()

    try:
        yield
    finally:
        stop_event.set()
        progress_thread.join(timeout=1.0)
        progress_callback(f"{operation_name} completed")
