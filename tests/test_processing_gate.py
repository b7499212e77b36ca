import pytest
from pydantic import ValidationError

from app.core.errors import GateBusyError, LockMisuseError
from app.services.processing_gate import ProcessingGate


pytestmark = pytest.mark.anyio


def test_try_acquire_is_single_flight():
    gate = ProcessingGate()
    assert gate.try_acquire(current_step="parsing", current_email="po@acme.com") is True
    assert gate.try_acquire(current_step="other") is False

    status = gate.get_status()
    assert status.is_processing is True
    assert status.current_step == "parsing"
    assert status.current_email == "po@acme.com"


def test_release_resets_status():
    gate = ProcessingGate()
    gate.try_acquire(current_po="PO-1001", item_total=4)
    gate.update(item_index=3, current_step="matching items")

    gate.release()

    status = gate.get_status()
    assert status.is_processing is False
    assert status.current_step == "idle"
    assert status.current_po == ""
    assert status.item_index == 0
    assert status.item_total == 0
    assert gate.try_acquire() is True


def test_update_without_holding_raises():
    gate = ProcessingGate()
    with pytest.raises(LockMisuseError):
        gate.update(current_step="matching")

    gate.try_acquire()
    gate.release()
    with pytest.raises(LockMisuseError):
        gate.update(item_index=1)


def test_unknown_status_field_rejected():
    gate = ProcessingGate()
    with pytest.raises(ValueError):
        gate.try_acquire(current_stage="typo")
    assert gate.is_held is False


def test_status_snapshot_is_a_copy():
    gate = ProcessingGate()
    gate.try_acquire(current_step="a")
    snapshot = gate.get_status()
    gate.update(current_step="b")
    assert snapshot.current_step == "a"


def test_status_serializes_camel_case():
    gate = ProcessingGate()
    gate.try_acquire(current_po="PO-7", item_total=2)
    payload = gate.get_status().model_dump(by_alias=True)
    assert payload == {
        "isProcessing": True,
        "currentStep": "idle",
        "currentEmail": "",
        "currentPO": "PO-7",
        "itemIndex": 0,
        "itemTotal": 2,
    }


async def test_held_context_releases_on_error():
    gate = ProcessingGate()
    with pytest.raises(RuntimeError):
        async with gate.held(current_step="resolving"):
            assert gate.is_held
            raise RuntimeError("boom")
    assert gate.is_held is False


async def test_held_context_busy():
    gate = ProcessingGate()
    gate.try_acquire()
    with pytest.raises(GateBusyError):
        async with gate.held():
            pass
    # the failed attempt must not release the holder's gate
    assert gate.is_held is True


def test_status_values_are_validated():
    gate = ProcessingGate()
    with pytest.raises(ValidationError):
        gate.try_acquire(item_total="x")
    assert gate.is_held is False

    gate.try_acquire(current_po="PO-9", item_total="4")
    assert gate.get_status().item_total == 4
    with pytest.raises(ValidationError):
        gate.update(item_index="first")
    assert gate.get_status().item_index == 0
    assert gate.get_status().current_po == "PO-9"
