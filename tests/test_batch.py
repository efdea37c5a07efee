import threading
import time
from unittest.mock import MagicMock

import pytest

from batch import ItemStatus, convert_batch, convert_sequential
from conversion_service import ConversionService

pytestmark = pytest.mark.integration


@pytest.fixture
def factory(mapping_set, schema_manager):
    def build():
        return ConversionService(mapping_set, schema_manager=schema_manager)
    return build


def test_results_keep_input_order(factory, minimal_utilmd, two_message_utilmd):
    inputs = [two_message_utilmd, minimal_utilmd, two_message_utilmd.encode("utf-8")]
    results = convert_batch(inputs, factory, max_workers=3)
    assert [r.index for r in results] == [0, 1, 2]
    assert all(r.ok for r in results)
    assert [len(r.data["messages"]) for r in results] == [2, 1, 2]


def test_failed_item_does_not_stop_the_batch(factory, minimal_utilmd):
    results = convert_batch([minimal_utilmd, "garbage", minimal_utilmd], factory, max_workers=2)
    assert [r.status for r in results] == [ItemStatus.COMPLETED, ItemStatus.FAILED, ItemStatus.COMPLETED]
    assert results[1].error_code == "UNTERMINATED_SEGMENT"
    assert results[1].data is None


def test_factory_failure(minimal_utilmd):
    def broken_factory():
        raise RuntimeError("no schemas")

    results = convert_batch([minimal_utilmd], broken_factory, max_workers=1)
    assert results[0].status == ItemStatus.FAILED
    assert results[0].error_code == "INTERNAL_ERROR"
    assert "no schemas" in results[0].error


def test_unexpected_exception_in_conversion(minimal_utilmd):
    service = MagicMock()
    service.convert.side_effect = KeyError("boom")
    results = convert_batch([minimal_utilmd], lambda: service, max_workers=1)
    assert results[0].status == ItemStatus.FAILED
    assert results[0].error_code == "INTERNAL_ERROR"


def test_service_without_interchange(minimal_utilmd):
    service = MagicMock()
    service.convert.return_value = None
    results = convert_sequential([minimal_utilmd], service)
    assert results[0].status == ItemStatus.FAILED
    assert results[0].error_code == "INTERNAL_ERROR"
    assert results[0].data is None


def test_timeout(minimal_utilmd):
    service = MagicMock()
    service.convert.side_effect = lambda data: time.sleep(0.5)
    results = convert_batch([minimal_utilmd, minimal_utilmd], lambda: service, max_workers=1, timeout=0.05)
    assert [r.status for r in results] == [ItemStatus.TIMED_OUT, ItemStatus.TIMED_OUT]
    assert results[0].error_code == "TIMEOUT"


def test_one_service_per_worker(factory, minimal_utilmd):
    calls = []
    lock = threading.Lock()

    def counting_factory():
        with lock:
            calls.append(threading.get_ident())
        return factory()

    results = convert_batch([minimal_utilmd] * 8, counting_factory, max_workers=2)
    assert all(r.ok for r in results)
    assert 1 <= len(calls) <= 2


def test_empty_batch(factory):
    assert convert_batch([], factory) == []


def test_sequential(factory, minimal_utilmd):
    results = convert_sequential([minimal_utilmd, "garbage"], factory())
    assert [r.ok for r in results] == [True, False]
    assert results[0].duration_ms >= 0
