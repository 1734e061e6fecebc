"""Console output formatting utilities for buildgate."""

from __future__ import annotations

import sys
from typing import Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_worker_started(
        self,
        queue: str,
        redis_url: str,
        poll_interval: float,
        slots: int,
    ) -> None:
        """Print worker start information."""
        print("\nWORKER STARTED")
        print(f"Queue: {queue}")
        print(f"Store: {redis_url}")
        print(f"Slots: {slots}")
        print(f"Polling every: {poll_interval}s")
        print()

    def print_gate(
        self,
        job_id: str,
        running: Optional[str],
        ttl: Optional[int],
        last_running: Optional[str],
        waiting: list[int],
    ) -> None:
        """Print the gate state of one job."""
        print(f"\nJOB {job_id}")
        if running is not None:
            print(f"Running build: {running} (lock expires in {ttl}s)")
        else:
            print("Running build: none")
        if last_running is not None:
            print(f"Last admitted: {last_running}")
        if waiting:
            print(f"Waiting: {', '.join(str(b) for b in waiting)}")
        else:
            print("Waiting: none")

    def print_sweep(self, reaped: list[str]) -> None:
        """Print the outcome of a reaper sweep."""
        print("\nSWEEP COMPLETE")
        if reaped:
            print(f"Timed out: {', '.join(reaped)}")
        else:
            print("Timed out: none")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
