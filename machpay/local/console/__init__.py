"""
This module initializes the console package.

The progress indicators are exported here because the installer draws
with them; the command handlers live in `handler` and the dispatcher in
`process`, and are imported from there by the entry point.
"""

from .progress import ProgressReader, Spinner, StepProgress

__all__ = ["ProgressReader", "Spinner", "StepProgress"]
