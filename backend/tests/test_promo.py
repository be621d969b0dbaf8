import asyncio

import pytest

from paygate.admission import promo as promo_module
from paygate.admission.promo import FREE_PROMO_CODE, FREE_PROMO_USES, PromoCheck
from paygate.payment.errors import DuplicateEntityError, MalformedInputError, NotFoundError

from conftest import run


def test_consume_counts_down_to_exhausted(promo_store):
    run(promo_store.create("SAVE50", 2))

    first = run(promo_store.consume("save50"))
    second = run(promo_store.consume("  Save50 "))
    third = run(promo_store.consume("SAVE50"))

    assert (first.status, first.remaining_uses) == (PromoCheck.VALID, 1)
    assert (second.status, second.remaining_uses) == (PromoCheck.VALID, 0)
    assert third.status is PromoCheck.EXHAUSTED
    assert run(promo_store.repository.get("save50")).remaining_uses == 0


def test_unknown_or_empty_code_is_invalid(promo_store):
    assert run(promo_store.consume("nope")).status is PromoCheck.INVALID
    assert run(promo_store.consume("")).status is PromoCheck.INVALID
    assert run(promo_store.consume(None)).status is PromoCheck.INVALID


def test_concurrent_consumers_never_overdraw(promo_store):
    run(promo_store.create("rush", 3))

    async def scenario():
        return await asyncio.gather(*(promo_store.consume("rush") for _ in range(10)))

    results = run(scenario())
    assert sum(r.status is PromoCheck.VALID for r in results) == 3
    assert sum(r.status is PromoCheck.EXHAUSTED for r in results) == 7
    assert run(promo_store.repository.get("rush")).remaining_uses == 0


def test_create_rejects_duplicates_and_bad_counts(promo_store):
    run(promo_store.create("launch", 5))
    with pytest.raises(DuplicateEntityError):
        run(promo_store.create("LAUNCH", 1))
    with pytest.raises(MalformedInputError):
        run(promo_store.create("zero", 0))
    with pytest.raises(MalformedInputError):
        run(promo_store.create("  ", 1))


def test_generate_makes_hex_codes(promo_store):
    record = run(promo_store.generate(10))
    assert len(record.code) == 8
    int(record.code, 16)
    assert record.remaining_uses == record.max_uses == 10


def test_generate_retries_on_collision(promo_store, monkeypatch):
    run(promo_store.create("0000beef", 1))
    codes = iter(["0000beef", "0000cafe"])
    monkeypatch.setattr(promo_module.secrets, "token_hex", lambda n: next(codes))
    assert run(promo_store.generate(2)).code == "0000cafe"


def test_free_code_is_created_then_refilled(promo_store):
    created = run(promo_store.create_free())
    assert (created.code, created.remaining_uses) == (FREE_PROMO_CODE, FREE_PROMO_USES)

    run(promo_store.consume("free"))
    refilled = run(promo_store.create_free())
    assert refilled.id == created.id
    assert refilled.remaining_uses == FREE_PROMO_USES


def test_seed_leaves_existing_code_alone(promo_store):
    run(promo_store.seed("BOOT", 3))
    run(promo_store.consume("boot"))
    seeded = run(promo_store.seed("boot", 3))
    assert seeded.remaining_uses == 2
    assert run(promo_store.seed("", 3)) is None


def test_list_reset_and_delete(promo_store):
    spent = run(promo_store.create("spent", 1))
    live = run(promo_store.create("live", 4))
    run(promo_store.consume("spent"))

    assert [r.code for r in run(promo_store.list_active())] == ["live"]

    reset = run(promo_store.reset(spent.id, 3))
    assert reset.remaining_uses == 3
    assert {r.code for r in run(promo_store.list_active())} == {"live", "spent"}

    run(promo_store.delete(live.id))
    assert run(promo_store.consume("live")).status is PromoCheck.INVALID
    with pytest.raises(NotFoundError):
        run(promo_store.delete(live.id))
    with pytest.raises(NotFoundError):
        run(promo_store.reset("missing", 1))
    with pytest.raises(MalformedInputError):
        run(promo_store.reset(spent.id, -1))
