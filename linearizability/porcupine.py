#!/usr/bin/env python3
"""
Porcupine Checker Interface
Matching the porcupine library's Operation and Model types

This module defines the types exchanged with a porcupine-style linearizability
checker. The checker itself is external: it receives a list of Operations and a
Model, explores candidate total orders of the operations, and calls back into
Model.Step for every operation it tries to linearize.
"""

import time
from typing import Any, Callable, Optional, Tuple
from dataclasses import dataclass


@dataclass
class Operation:
    """Single operation for linearizability checking"""
    Input: Any          # Request sent by the client
    Output: Any         # Response observed by the client
    Call: int           # Time when operation was called (nanoseconds)
    Return: int         # Time when operation returned (nanoseconds)
    ClientId: int       # Logical client that performed the operation


@dataclass(frozen=True)
class Model:
    """
    Sequential specification handed to the checker

    Init returns the initial (opaque) model state. Step returns whether the
    observed output is legal for the given state and the state after it.
    Equal lets the checker recognise states it has already visited and
    DescribeOperation renders an operation when a history is rejected.
    """
    Init: Callable[[], Any]
    Step: Callable[[Any, Any, Any], Tuple[bool, Any]]
    Equal: Optional[Callable[[Any, Any], bool]] = None
    DescribeOperation: Optional[Callable[[Any, Any], str]] = None


# Global time reference for monotonic timestamps
t0 = time.monotonic_ns()


def get_time() -> int:
    """Get current time in nanoseconds since t0"""
    return time.monotonic_ns() - t0
