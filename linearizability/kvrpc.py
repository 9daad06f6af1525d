#!/usr/bin/env python3
"""
KV Request and Response Types
Matching the etcd v3 KV API subset exercised by the linearizability tests

A request is a list of operations guarded by zero or more conditions. With no
conditions it is applied unconditionally; with one condition it models a
single-key compare-and-set transaction. Responses carry one result per
operation and the store revision after the request.
"""

from enum import Enum
from dataclasses import dataclass
from typing import Optional, Tuple


class OpType(Enum):
    """Operation types"""
    GET = "get"
    PUT = "put"
    DELETE = "delete"


@dataclass(frozen=True)
class KvCondition:
    """Compare clause of a transaction; "" expects the key to be absent or empty"""
    Key: str
    ExpectedValue: str


@dataclass(frozen=True)
class KvOperation:
    """Single point operation"""
    Type: OpType
    Key: str
    Value: str = ""     # Only used by Put


@dataclass(frozen=True)
class KvRequest:
    """Request sent to the store"""
    Ops: Tuple[KvOperation, ...]
    Conds: Tuple[KvCondition, ...] = ()


@dataclass(frozen=True)
class KvOperationResult:
    """Per-operation result"""
    Value: str = ""     # Value read by Get, "" if the key is absent
    Deleted: int = 0    # Number of keys removed by Delete


@dataclass(frozen=True)
class KvResponse:
    """
    Response observed by the client

    Err is set when the call failed and its effect on the store is unknown.
    TxnFailure is set when a transaction's conditions did not hold; Result is
    then empty and Revision is the unchanged store revision.
    """
    Err: Optional[str] = None
    Revision: int = 0
    TxnFailure: bool = False
    Result: Tuple[KvOperationResult, ...] = ()


def get_request(key: str) -> KvRequest:
    return KvRequest(Ops=(KvOperation(OpType.GET, key),))


def get_response(value: str, revision: int) -> KvResponse:
    return KvResponse(Result=(KvOperationResult(Value=value),), Revision=revision)


def failed_response(err) -> KvResponse:
    """Response for a call that returned an error; err may be an exception or its text"""
    return KvResponse(Err=str(err))


def put_request(key: str, value: str) -> KvRequest:
    return KvRequest(Ops=(KvOperation(OpType.PUT, key, value),))


def put_response(revision: int) -> KvResponse:
    return KvResponse(Result=(KvOperationResult(),), Revision=revision)


def delete_request(key: str) -> KvRequest:
    return KvRequest(Ops=(KvOperation(OpType.DELETE, key),))


def delete_response(deleted: int, revision: int) -> KvResponse:
    return KvResponse(Result=(KvOperationResult(Deleted=deleted),), Revision=revision)


def txn_request(key: str, expect_value: str, new_value: str) -> KvRequest:
    """if key == expect_value then put(key, new_value)"""
    return KvRequest(
        Conds=(KvCondition(key, expect_value),),
        Ops=(KvOperation(OpType.PUT, key, new_value),),
    )


def txn_response(succeeded: bool, revision: int) -> KvResponse:
    result: Tuple[KvOperationResult, ...] = ()
    if succeeded:
        result = (KvOperationResult(),)
    return KvResponse(Result=result, TxnFailure=not succeeded, Revision=revision)
