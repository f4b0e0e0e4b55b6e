"""Per-type precedence arithmetic.

Each dependency type maps to a pair of functions: the forward bound it puts
on the successor's earliest start, and the backward bound it puts on the
predecessor's latest finish. All values are whole days.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from wbs_engine.core.model import DependencyType


@dataclass(frozen=True)
class Timing:
    start: int
    finish: int


# (predecessor timing, successor duration, lag) -> lower bound on successor start
ForwardFn = Callable[[Timing, int, int], int]
# (successor timing, predecessor duration, lag) -> upper bound on predecessor finish
BackwardFn = Callable[[Timing, int, int], int]


def _fs_forward(pred: Timing, succ_duration: int, lag: int) -> int:
    return pred.finish + lag


def _ss_forward(pred: Timing, succ_duration: int, lag: int) -> int:
    return pred.start + lag


def _ff_forward(pred: Timing, succ_duration: int, lag: int) -> int:
    return pred.finish + lag - succ_duration


def _sf_forward(pred: Timing, succ_duration: int, lag: int) -> int:
    return pred.start + lag - succ_duration


def _fs_backward(succ: Timing, pred_duration: int, lag: int) -> int:
    return succ.start - lag


def _ss_backward(succ: Timing, pred_duration: int, lag: int) -> int:
    return succ.start - lag + pred_duration


def _ff_backward(succ: Timing, pred_duration: int, lag: int) -> int:
    return succ.finish - lag


def _sf_backward(succ: Timing, pred_duration: int, lag: int) -> int:
    return succ.finish - lag + pred_duration


FORWARD: dict[DependencyType, ForwardFn] = {
    DependencyType.FS: _fs_forward,
    DependencyType.SS: _ss_forward,
    DependencyType.FF: _ff_forward,
    DependencyType.SF: _sf_forward,
}

BACKWARD: dict[DependencyType, BackwardFn] = {
    DependencyType.FS: _fs_backward,
    DependencyType.SS: _ss_backward,
    DependencyType.FF: _ff_backward,
    DependencyType.SF: _sf_backward,
}


def forward_bound(type: DependencyType, pred: Timing, succ_duration: int, lag: int) -> int:
    return FORWARD[type](pred, succ_duration, lag)


def backward_bound(type: DependencyType, succ: Timing, pred_duration: int, lag: int) -> int:
    return BACKWARD[type](succ, pred_duration, lag)
