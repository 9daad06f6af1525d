#!/usr/bin/env python3
"""
History Recorder Test Suite

Uses stand-ins shaped like the etcd v3 client responses.
"""

import logging
import threading
import unittest
from dataclasses import dataclass, field
from typing import List, Optional

from history import AppendableHistory, History, MakeIdProvider
from kvrpc import (
    delete_request, delete_response, failed_response, get_request,
    get_response, put_request, put_response, txn_request, txn_response,
)
from kvmodel import MakeKvModel
from porcupine import Operation, get_time

# Configure logging
logging.basicConfig(level=logging.WARNING)  # Reduce noise during tests
logger = logging.getLogger(__name__)


@dataclass
class Header:
    revision: int


@dataclass
class KV:
    value: bytes


@dataclass
class FakeGetResponse:
    header: Optional[Header]
    kvs: List[KV] = field(default_factory=list)


@dataclass
class FakePutResponse:
    header: Optional[Header]


@dataclass
class FakeDeleteResponse:
    header: Optional[Header]
    deleted: int = 0


@dataclass
class FakeTxnResponse:
    header: Optional[Header]
    succeeded: bool = False


class TestAppendableHistory(unittest.TestCase):
    """Mapping of client calls onto operations"""

    def setUp(self):
        self.ids = MakeIdProvider()
        self.h = AppendableHistory(self.ids)

    def test_first_client_id_drawn_at_creation(self):
        self.assertEqual(self.h.id, 0)
        other = AppendableHistory(self.ids)
        self.assertEqual(other.id, 1)

    def test_append_get(self):
        self.h.AppendGet("key", 10, 20, FakeGetResponse(Header(5), [KV(b"v")]))
        self.h.AppendGet("missing", 30, 40, FakeGetResponse(Header(5)))
        self.assertEqual(self.h.successful, [
            Operation(Input=get_request("key"), Output=get_response("v", 5),
                      Call=10, Return=20, ClientId=0),
            Operation(Input=get_request("missing"), Output=get_response("", 5),
                      Call=30, Return=40, ClientId=0),
        ])
        self.assertEqual(self.h.failed, [])

    def test_append_put(self):
        self.h.AppendPut("key", "1", 10, 20, FakePutResponse(Header(6)), None)
        op = self.h.successful[0]
        self.assertEqual(op.Input, put_request("key", "1"))
        self.assertEqual(op.Output, put_response(6))

    def test_missing_header_reports_revision_zero(self):
        self.h.AppendPut("key", "1", 10, 20, FakePutResponse(None), None)
        self.assertEqual(self.h.successful[0].Output, put_response(0))

    def test_append_delete(self):
        self.h.AppendDelete("key", 10, 20, FakeDeleteResponse(Header(7), deleted=1), None)
        self.h.AppendDelete("key", 30, 40, FakeDeleteResponse(Header(7), deleted=0), None)
        self.assertEqual([op.Output for op in self.h.successful],
                         [delete_response(1, 7), delete_response(0, 7)])
        self.assertEqual(self.h.successful[0].Input, delete_request("key"))

    def test_append_txn(self):
        self.h.AppendTxn("key", "1", "2", 10, 20, FakeTxnResponse(Header(8), succeeded=True), None)
        self.h.AppendTxn("key", "1", "2", 30, 40, FakeTxnResponse(Header(8), succeeded=False), None)
        self.assertEqual(self.h.successful[0].Input, txn_request("key", "1", "2"))
        self.assertEqual([op.Output for op in self.h.successful],
                         [txn_response(True, 8), txn_response(False, 8)])

    def test_failed_request_changes_client_id(self):
        self.h.AppendPut("key", "1", 10, 20, FakePutResponse(Header(1)), None)
        self.h.AppendPut("key", "2", 30, 40, None, TimeoutError("context deadline exceeded"))
        self.h.AppendGet("key", 50, 60, FakeGetResponse(Header(1), [KV(b"1")]))

        self.assertEqual(len(self.h.failed), 1)
        failed = self.h.failed[0]
        self.assertEqual(failed.Input, put_request("key", "2"))
        self.assertEqual(failed.Output, failed_response("context deadline exceeded"))
        self.assertEqual(failed.Call, 30)
        self.assertEqual(failed.Return, 0)
        self.assertEqual(failed.ClientId, 0)
        self.assertEqual(self.h.successful[1].ClientId, 1)
        self.assertEqual(self.h.id, 1)

    def test_every_failed_operation_type_is_recorded(self):
        err = ConnectionError("unavailable")
        self.h.AppendGet("a", 1, 2, None, err)
        self.h.AppendPut("a", "1", 3, 4, None, err)
        self.h.AppendDelete("a", 5, 6, None, err)
        self.h.AppendTxn("a", "1", "2", 7, 8, None, err)
        self.assertEqual([op.ClientId for op in self.h.failed], [0, 1, 2, 3])
        self.assertEqual(self.h.id, 4)
        self.assertEqual(self.h.successful, [])

    def test_string_values(self):
        self.h.AppendGet("key", 10, 20, FakeGetResponse(Header(5), [KV("text")]))
        self.assertEqual(self.h.successful[0].Output, get_response("text", 5))


class TestHistoryOperations(unittest.TestCase):
    """Merging histories and closing failed operations"""

    def make_history(self, ids, start: int) -> AppendableHistory:
        h = AppendableHistory(ids)
        h.AppendPut("key", "1", start, start + 10, FakePutResponse(Header(1)), None)
        h.AppendPut("key", "2", start + 20, start + 30, None, Exception("failed"))
        h.AppendGet("key", start + 40, start + 50, FakeGetResponse(Header(1), [KV(b"1")]))
        return h

    def test_merge_and_operations(self):
        ids = MakeIdProvider()
        h1 = self.make_history(ids, 0)
        h2 = self.make_history(ids, 100)
        merged = h1.Merge(h2)

        self.assertEqual(merged.Len(), h1.Len() + h2.Len())
        operations = merged.Operations()
        self.assertEqual(len(operations),
                         len(h1.successful) + len(h1.failed) + len(h2.successful) + len(h2.failed))

        max_return = max(op.Return for op in merged.successful)
        self.assertEqual(max_return, 150)
        failed_inputs = {op.Input for op in merged.failed}
        for op in operations:
            if op.Output.Err is not None:
                self.assertIn(op.Input, failed_inputs)
                self.assertEqual(op.Return, max_return + 1)

    def test_merge_does_not_modify_inputs(self):
        ids = MakeIdProvider()
        h1 = self.make_history(ids, 0)
        h2 = self.make_history(ids, 100)
        merged = h1.Merge(h2)
        merged.Operations()
        self.assertEqual(len(h1.successful), 2)
        self.assertEqual(len(h1.failed), 1)
        self.assertEqual(h1.failed[0].Return, 0)

    def test_failed_operation_called_after_last_return_is_dropped(self):
        h = History(
            successful=[Operation(get_request("k"), get_response("", 1), 10, 20, 0)],
            failed=[
                Operation(put_request("k", "1"), failed_response("failed"), 15, 0, 1),
                Operation(put_request("k", "2"), failed_response("failed"), 21, 0, 2),
            ],
        )
        operations = h.Operations()
        self.assertEqual(len(operations), 2)
        self.assertEqual(operations[1].Input, put_request("k", "1"))
        self.assertEqual(operations[1].Return, 21)

    def test_empty_history(self):
        self.assertEqual(History().Operations(), [])

    def test_operations_step_through_model(self):
        """Replaying operations in call order is accepted by the model"""
        ids = MakeIdProvider()
        h = AppendableHistory(ids)
        start = get_time()
        h.AppendPut("key", "1", start, start + 1, FakePutResponse(Header(1)), None)
        h.AppendPut("key", "2", start + 2, 0, None, Exception("failed"))
        h.AppendGet("key", start + 3, start + 4, FakeGetResponse(Header(2), [KV(b"2")]))

        model = MakeKvModel()
        state = model.Init()
        for op in sorted(h.Operations(), key=lambda o: o.Call):
            accepted, state = model.Step(state, op.Input, op.Output)
            self.assertTrue(accepted, model.DescribeOperation(op.Input, op.Output))


class TestIdProvider(unittest.TestCase):

    def test_ids_unique_across_threads(self):
        ids = MakeIdProvider(start=100)
        results: List[int] = []
        mu = threading.Lock()

        def worker():
            for _ in range(100):
                client_id = ids.ClientId()
                with mu:
                    results.append(client_id)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(sorted(results), list(range(100, 900)))


if __name__ == "__main__":
    unittest.main(verbosity=2)
