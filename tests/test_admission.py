import pytest

from mattermost_operator.admission import AdmissionLimiter

from .conftest import make_installation


def counter(value):
    calls = []

    async def count_active():
        calls.append(value)
        return value

    count_active.calls = calls
    return count_active


@pytest.mark.asyncio
@pytest.mark.parametrize("state", ["reconciling", "ready"])
async def test_active_installations_are_always_admitted(state):
    count_active = counter(100)
    limiter = AdmissionLimiter(count_active, max_reconciling=1, requeue_delay=20)

    async with limiter.admit(make_installation(status={"state": state})) as admission:
        assert admission.granted
        assert limiter.in_flight == 0

    assert count_active.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [None, {"state": "stable"}])
async def test_admission_holds_a_slot_until_the_pass_completes(status):
    limiter = AdmissionLimiter(counter(0), max_reconciling=2, requeue_delay=20)

    async with limiter.admit(make_installation(status=status)) as admission:
        assert admission.granted
        assert admission.requeue_after is None
        assert limiter.in_flight == 1

    assert limiter.in_flight == 0


@pytest.mark.asyncio
async def test_admission_is_denied_at_the_limit():
    limiter = AdmissionLimiter(counter(3), max_reconciling=3, requeue_delay=20)

    async with limiter.admit(make_installation()) as admission:
        assert not admission.granted
        assert admission.requeue_after == 20
        assert limiter.in_flight == 0


@pytest.mark.asyncio
async def test_in_flight_passes_count_towards_the_limit():
    limiter = AdmissionLimiter(counter(1), max_reconciling=2, requeue_delay=5)

    async with limiter.admit(make_installation(name="first")) as first:
        assert first.granted
        async with limiter.admit(make_installation(name="second")) as second:
            assert not second.granted
            assert second.requeue_after == 5

    async with limiter.admit(make_installation(name="second")) as second:
        assert second.granted


@pytest.mark.asyncio
async def test_slot_is_released_when_the_pass_fails():
    limiter = AdmissionLimiter(counter(0), max_reconciling=1, requeue_delay=20)

    with pytest.raises(RuntimeError):
        async with limiter.admit(make_installation()) as admission:
            assert admission.granted
            raise RuntimeError("pass failed")

    assert limiter.in_flight == 0
