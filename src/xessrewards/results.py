"""
xessrewards/results.py

Result type for best-effort operations.

Some writes are nice to have (marking a batch FAILED after the real error,
refreshing bookkeeping counters). They must never mask the primary outcome,
so instead of raising they return a BestEffort that records what happened.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger("xessrewards.results")


@dataclass
class BestEffort:
    """Outcome of a logged, non-fatal operation."""
    name: str
    ok: bool
    value: Any = None
    error: Optional[str] = None

    @classmethod
    def attempt(cls, name: str, fn: Callable[..., Any], *args, **kwargs) -> "BestEffort":
        """
        Run fn, logging (not raising) any Exception.

        Args:
            name: Short label used in logs
            fn: Callable to run

        Returns:
            BestEffort with ok=False and the error text on failure
        """
        try:
            value = fn(*args, **kwargs)
        except Exception as e:
            logger.warning(f"Best-effort {name} failed: {e}")
            return cls(name=name, ok=False, error=str(e))
        return cls(name=name, ok=True, value=value)
