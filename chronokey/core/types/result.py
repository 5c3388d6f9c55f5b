# core/types/result.py
"""
Result types for infrastructure operations.

Store and queue methods return ``Result[T, E]`` instead of raising for
operational failures; see ``chronokey.core.store.result_types`` and
``chronokey.core.queue.result_types`` for the error payloads.
"""

from result import Err, Ok, Result, is_err, is_ok

__all__ = ['Result', 'Ok', 'Err', 'is_ok', 'is_err']
