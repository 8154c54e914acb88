from __future__ import annotations

from enum import Enum


class FlowKind(str, Enum):
    SEND = "send"
    STAKE = "stake"
    SWAP = "swap"


class FlowStep(str, Enum):
    SELECT_ASSET = "select_asset"
    SELECT_COUNTER_ASSET = "select_counter_asset"
    ENTER_RECIPIENT = "enter_recipient"
    ENTER_AMOUNT = "enter_amount"
    CONFIRM = "confirm"
    EXECUTED = "executed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STEPS = frozenset({FlowStep.EXECUTED, FlowStep.CANCELLED, FlowStep.FAILED})

STEP_SEQUENCES: dict[FlowKind, tuple[FlowStep, ...]] = {
    FlowKind.SEND: (
        FlowStep.SELECT_ASSET,
        FlowStep.ENTER_RECIPIENT,
        FlowStep.ENTER_AMOUNT,
        FlowStep.CONFIRM,
    ),
    FlowKind.STAKE: (
        FlowStep.SELECT_ASSET,
        FlowStep.ENTER_AMOUNT,
        FlowStep.CONFIRM,
    ),
    FlowKind.SWAP: (
        FlowStep.SELECT_ASSET,
        FlowStep.ENTER_AMOUNT,
        FlowStep.SELECT_COUNTER_ASSET,
        FlowStep.CONFIRM,
    ),
}


def initial_step(kind: FlowKind) -> FlowStep:
    return STEP_SEQUENCES[kind][0]


def next_step(kind: FlowKind, current: FlowStep) -> FlowStep:
    steps = STEP_SEQUENCES[kind]
    index = steps.index(current)
    if index + 1 >= len(steps):
        raise ValueError(f"{current.value} has no successor in the {kind.value} flow")
    return steps[index + 1]


def can_transition(kind: FlowKind, current: FlowStep, target: FlowStep) -> bool:
    if current in TERMINAL_STEPS:
        return False
    if current == target:
        return True
    if target in (FlowStep.CANCELLED, FlowStep.FAILED):
        return True
    if current == FlowStep.CONFIRM:
        return target == FlowStep.EXECUTED
    steps = STEP_SEQUENCES[kind]
    if current not in steps:
        return False
    return next_step(kind, current) == target
