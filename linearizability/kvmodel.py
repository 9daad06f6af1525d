#!/usr/bin/env python3
"""
Porcupine Model for etcd KV Operations
Matching the etcd linearizability model

This module defines the state machine used to check linearizability of
get/put/delete/txn histories recorded against etcd.

Requests that failed with an error may or may not have been persisted, so the
model does not track a single state. It tracks every state that is still
consistent with the history observed so far (PossibleStates):
- a failed request keeps each state and adds the state it would produce
- a successful request keeps only the states that would have produced the
  observed response
"""

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from kvrpc import (
    KvOperation, KvOperationResult, KvRequest, KvResponse, OpType,
)
from porcupine import Model

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KvState:
    """Single hypothesis about the store: its revision and key-value pairs"""
    Revision: int
    KeyValues: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        # Never share the mapping with another state
        object.__setattr__(self, "KeyValues", dict(self.KeyValues))


# Every state the store may be in; empty until the first successful request
PossibleStates = Tuple[KvState, ...]


def kv_init() -> PossibleStates:
    """Initial model state: nothing is known about the store yet"""
    return ()


def step(states: PossibleStates, request: KvRequest, response: KvResponse) -> Tuple[bool, PossibleStates]:
    """
    State transition function for KV requests

    Args:
        states: States the store may be in before the request
        request: Request sent by the client
        response: Response observed by the client

    Returns:
        (valid, new_states) - whether some state could have produced the
        response, and the states the store may be in afterwards. When the
        response is not valid the states are returned unchanged.
    """
    if len(states) == 0:
        # First request of the history
        if response.Err is not None:
            return True, states
        return True, (init_state(request, response),)

    if response.Err is not None:
        return True, apply_failed_request(states, request)

    new_states = apply_request(states, request, response)
    if not new_states:
        logger.debug("No possible state matches %s, states: %s",
                     describe_request_response(request, response), states)
        return False, states
    return True, new_states


def init_state(request: KvRequest, response: KvResponse) -> KvState:
    """
    Reconstruct the store state from the first successful response

    The revision is taken from the response. Values read by Get and written
    by Put become the key-value pairs; Delete tells nothing about the store.
    """
    key_values: Dict[str, str] = {}
    if response.TxnFailure:
        return KvState(response.Revision, key_values)

    if len(response.Result) != len(request.Ops):
        raise Exception(f"Response has {len(response.Result)} results for "
                        f"{len(request.Ops)} operations")

    for op, op_resp in zip(request.Ops, response.Result):
        if op.Type is OpType.GET:
            if op_resp.Value != "":
                key_values[op.Key] = op_resp.Value
        elif op.Type is OpType.PUT:
            key_values[op.Key] = op.Value
        elif op.Type is OpType.DELETE:
            pass
        else:
            raise Exception(f"Unknown operation: {op.Type}")
    return KvState(response.Revision, key_values)


def apply_failed_request(states: PossibleStates, request: KvRequest) -> PossibleStates:
    """
    Handle a request that failed with an error

    It's unknown whether the request was persisted, so both outcomes stay
    possible: every state is kept and the state it would lead to is added.
    """
    applied = [apply_request_to_single_state(s, request)[0] for s in states]
    return tuple(states) + tuple(applied)


def apply_request(states: PossibleStates, request: KvRequest, response: KvResponse) -> PossibleStates:
    """Apply a successful request, keeping only states that predict the observed response"""
    new_states: List[KvState] = []
    for s in states:
        new_state, expect_response = apply_request_to_single_state(s, request)
        if expect_response == response:
            new_states.append(new_state)
    return tuple(new_states)


def apply_request_to_single_state(s: KvState, request: KvRequest) -> Tuple[KvState, KvResponse]:
    """
    Apply a request to one state

    Returns:
        (new_state, response) - the state after the request and the response
        the store would have returned. The input state is never modified.
    """
    for cond in request.Conds:
        if s.KeyValues.get(cond.Key, "") != cond.ExpectedValue:
            return s, KvResponse(Revision=s.Revision, TxnFailure=True)

    key_values = dict(s.KeyValues)
    results: List[KvOperationResult] = []
    increase_revision = False
    for op in request.Ops:
        if op.Type is OpType.GET:
            results.append(KvOperationResult(Value=key_values.get(op.Key, "")))
        elif op.Type is OpType.PUT:
            key_values[op.Key] = op.Value
            increase_revision = True
            results.append(KvOperationResult())
        elif op.Type is OpType.DELETE:
            if op.Key in key_values:
                del key_values[op.Key]
                increase_revision = True
                results.append(KvOperationResult(Deleted=1))
            else:
                results.append(KvOperationResult(Deleted=0))
        else:
            raise Exception(f"Unsupported operation: {op.Type}")

    # A request is atomic, the revision moves at most once
    revision = s.Revision + 1 if increase_revision else s.Revision
    return KvState(revision, key_values), KvResponse(Revision=revision, Result=tuple(results))


def _state_key(s: KvState):
    return s.Revision, frozenset(s.KeyValues.items())


def kv_equal(states1: PossibleStates, states2: PossibleStates) -> bool:
    """Check if two sets of possible states hold the same states, ignoring order"""
    return Counter(map(_state_key, states1)) == Counter(map(_state_key, states2))


def deduplicate_states(states: PossibleStates) -> PossibleStates:
    """Drop states equal to an earlier state, keeping the first occurrence"""
    seen = set()
    unique: List[KvState] = []
    for s in states:
        key = _state_key(s)
        if key not in seen:
            seen.add(key)
            unique.append(s)
    return tuple(unique)


def describe_request_response(request: KvRequest, response: KvResponse) -> str:
    """Render a request and its response for failure reports"""
    prefix = describe_operations(request.Ops)
    if request.Conds:
        conds = " && ".join(f"{c.Key}=={_quote(c.ExpectedValue)}" for c in request.Conds)
        prefix = f"if({conds}).then({prefix})"
    return f"{prefix} -> {describe_response(request.Ops, response)}"


def describe_operations(ops) -> str:
    return ", ".join(describe_operation(op) for op in ops)


def describe_operation(op: KvOperation) -> str:
    if op.Type is OpType.GET:
        return f"get({_quote(op.Key)})"
    if op.Type is OpType.PUT:
        return f"put({_quote(op.Key)}, {_quote(op.Value)})"
    if op.Type is OpType.DELETE:
        return f"delete({_quote(op.Key)})"
    return f"<! unknown op: {op.Type!r} !>"


def describe_response(ops, response: KvResponse) -> str:
    if response.Err is not None:
        return f"err: {_quote(response.Err)}"
    if response.TxnFailure:
        return f"txn failed, rev: {response.Revision}"
    parts = [describe_operation_result(op.Type, result)
             for op, result in zip(ops, response.Result)]
    parts.append(f"rev: {response.Revision}")
    return ", ".join(parts)


def describe_operation_result(op_type: OpType, result: KvOperationResult) -> str:
    if op_type is OpType.GET:
        if result.Value == "":
            return "nil"
        return _quote(result.Value)
    if op_type is OpType.PUT:
        return "ok"
    if op_type is OpType.DELETE:
        return f"deleted: {result.Deleted}"
    return f"<! unknown op: {op_type!r} !>"


def _quote(s: str) -> str:
    return json.dumps(s, ensure_ascii=False)


def MakeKvModel(deduplicate: bool = False) -> Model:
    """
    Create the porcupine model for KV requests

    Args:
        deduplicate: Drop duplicate possible states after every step. This
            only bounds memory, the verdicts are the same either way.

    Returns:
        Model bundling Init, Step, Equal and DescribeOperation
    """
    def kv_step(states: PossibleStates, request: KvRequest, response: KvResponse) -> Tuple[bool, PossibleStates]:
        ok, new_states = step(states, request, response)
        if ok and deduplicate:
            new_states = deduplicate_states(new_states)
        return ok, new_states

    return Model(
        Init=kv_init,
        Step=kv_step,
        Equal=kv_equal,
        DescribeOperation=describe_request_response,
    )
