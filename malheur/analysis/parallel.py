"""
Thread-pool helper for the embarrassingly parallel stages.

Vector construction and kernel matrix blocks are independent per item, so
they are fanned out over a ThreadPoolExecutor. Results come back in input
order and the first failure is re-raised in the caller.
"""

from concurrent.futures import ThreadPoolExecutor, Future, as_completed
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from ..utils.logging_setup import get_logger

logger = get_logger(__name__)

T = TypeVar('T')
R = TypeVar('R')


class ParallelExecutor:
    """
    Ordered map over a thread pool.

    With a single worker no pool is created and items are processed inline.
    """

    def __init__(self, max_workers: Optional[int] = None):
        """
        Initialize executor.

        Args:
            max_workers: Number of worker threads (default 1)
        """
        self.max_workers = max(1, int(max_workers or 1))
        self._executor: Optional[ThreadPoolExecutor] = None

    def __enter__(self):
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.shutdown()

    def start(self):
        """Start the pool."""
        if self._executor is None and self.max_workers > 1:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers,
                thread_name_prefix='malheur'
            )

    def shutdown(self, wait: bool = True):
        """Shutdown the pool."""
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

    def map(self, func: Callable[[T], R], items: Sequence[T]) -> List[R]:
        """
        Map function over items.

        Args:
            func: Function to apply
            items: Items to process

        Returns:
            List of results in original order
        """
        items = list(items)
        if not items:
            return []

        if self.max_workers == 1 or len(items) == 1:
            return [func(item) for item in items]

        self.start()
        futures: Dict[Future, int] = {
            self._executor.submit(func, item): i for i, item in enumerate(items)
        }

        results: List[Any] = [None] * len(items)
        try:
            for future in as_completed(futures):
                results[futures[future]] = future.result()
        except Exception:
            for future in futures:
                future.cancel()
            raise

        return results

    def run(self, func: Callable[[T], None], items: Sequence[T]) -> None:
        """Apply a side-effecting function to every item."""
        self.map(func, items)
