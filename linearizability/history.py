#!/usr/bin/env python3
"""
Operation History Recorder
Matching the etcd linearizability history

Records the requests a traffic worker sends to etcd, together with the time
they were called and returned, as porcupine Operations.

Requests that returned an error are kept apart from successful ones: it's
unknown whether they were persisted and when, so their return time is only
filled in by Operations(), once the whole history is known.
"""

import dataclasses
import logging
import threading
from typing import List, Optional, Sequence, Union
from typing_extensions import Protocol

from kvrpc import (
    KvRequest, KvResponse, delete_request, delete_response, failed_response,
    get_request, get_response, put_request, put_response, txn_request,
    txn_response,
)
from porcupine import Operation

logger = logging.getLogger(__name__)


class IIdProvider(Protocol):
    """Source of logical client ids"""
    def ClientId(self) -> int:
        """Return an id that was not returned before"""
        ...


class ResponseHeader(Protocol):
    revision: int


class KeyValue(Protocol):
    value: Union[str, bytes]


class GetResponse(Protocol):
    header: Optional[ResponseHeader]
    kvs: Sequence[KeyValue]


class PutResponse(Protocol):
    header: Optional[ResponseHeader]


class DeleteResponse(Protocol):
    header: Optional[ResponseHeader]
    deleted: int


class TxnResponse(Protocol):
    header: Optional[ResponseHeader]
    succeeded: bool


class IdProvider:
    """Thread-safe id source shared by the recorders of all workers"""

    def __init__(self, start: int = 0):
        self.mu = threading.Lock()
        self.next_id = start

    def ClientId(self) -> int:
        with self.mu:
            client_id = self.next_id
            self.next_id += 1
            return client_id


def MakeIdProvider(start: int = 0) -> IdProvider:
    return IdProvider(start)


class History:
    """
    Recorded operations

    Failed requests are kept separate because their return time is unknown.
    """

    def __init__(self, successful: Optional[List[Operation]] = None,
                 failed: Optional[List[Operation]] = None):
        self.successful: List[Operation] = successful if successful is not None else []
        self.failed: List[Operation] = failed if failed is not None else []

    def Len(self) -> int:
        """Get number of recorded operations"""
        return len(self.successful) + len(self.failed)

    def Merge(self, other: "History") -> "History":
        """Combine histories recorded by different workers"""
        return History(
            successful=self.successful + other.successful,
            failed=self.failed + other.failed,
        )

    def Operations(self) -> List[Operation]:
        """
        Get operations for the linearizability checker

        Failed requests don't have a known return time. Infinity is simulated
        by returning them right after the latest successful request. Failed
        requests called after that point are dropped.
        """
        operations = list(self.successful)
        max_time = 0
        for op in self.successful:
            if op.Return > max_time:
                max_time = op.Return

        dropped = 0
        for op in self.failed:
            if op.Call > max_time:
                dropped += 1
                continue
            operations.append(dataclasses.replace(op, Return=max_time + 1))

        if dropped:
            logger.info(f"Dropped {dropped} failed operations called after the last successful return")
        return operations


class AppendableHistory(History):
    """
    History recorded by a single traffic worker

    Not safe for concurrent use; give every worker its own instance and
    Merge them once traffic stops.
    """

    def __init__(self, ids: IIdProvider):
        super().__init__()
        self.idProvider = ids
        # id of the next operation, replaced after every failed request
        self.id = ids.ClientId()

    def AppendGet(self, key: str, start: int, end: int, resp: Optional[GetResponse],
                  err: Optional[BaseException] = None):
        request = get_request(key)
        if err is not None:
            self._append_failed(request, start, err)
            return
        read_data = ""
        if resp is not None and len(resp.kvs) == 1:
            read_data = _to_str(resp.kvs[0].value)
        self._append_successful(request, start, end, get_response(read_data, _revision(resp)))

    def AppendPut(self, key: str, value: str, start: int, end: int,
                  resp: Optional[PutResponse], err: Optional[BaseException] = None):
        request = put_request(key, value)
        if err is not None:
            self._append_failed(request, start, err)
            return
        self._append_successful(request, start, end, put_response(_revision(resp)))

    def AppendDelete(self, key: str, start: int, end: int,
                     resp: Optional[DeleteResponse], err: Optional[BaseException] = None):
        request = delete_request(key)
        if err is not None:
            self._append_failed(request, start, err)
            return
        deleted = 0
        if resp is not None and resp.header is not None:
            deleted = resp.deleted
        self._append_successful(request, start, end, delete_response(deleted, _revision(resp)))

    def AppendTxn(self, key: str, expect_value: str, new_value: str, start: int, end: int,
                  resp: Optional[TxnResponse], err: Optional[BaseException] = None):
        request = txn_request(key, expect_value, new_value)
        if err is not None:
            self._append_failed(request, start, err)
            return
        succeeded = resp is not None and resp.succeeded
        self._append_successful(request, start, end, txn_response(succeeded, _revision(resp)))

    def _append_successful(self, request: KvRequest, start: int, end: int, response: KvResponse):
        self.successful.append(Operation(
            Input=request,
            Output=response,
            Call=start,
            Return=end,
            ClientId=self.id,
        ))

    def _append_failed(self, request: KvRequest, start: int, err: BaseException):
        self.failed.append(Operation(
            Input=request,
            Output=failed_response(err),
            Call=start,
            Return=0,  # For failed requests we don't know when they really finished
            ClientId=self.id,
        ))
        # Operations of a single client need to be sequential. As the return
        # time of a failed request is unknown, later requests use a new client id.
        old_id = self.id
        self.id = self.idProvider.ClientId()
        logger.debug(f"Request {request} failed with {err!r}, client {old_id} replaced by {self.id}")


def _revision(resp) -> int:
    if resp is not None and resp.header is not None:
        return resp.header.revision
    return 0


def _to_str(value: Union[str, bytes]) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value
