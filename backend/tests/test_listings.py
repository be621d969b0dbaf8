from datetime import timedelta

import pytest
from pymongo.errors import DuplicateKeyError

from paygate.admission.gate import RejectReason
from paygate.admission.mongo import MongoAdmissionRepository, _from_doc, _to_doc, _use_tls
from paygate.admission.repository import AdmissionRecord, ClaimState, Listing, utcnow
from paygate.listings.service import ListingDraft, ListingService, parse_coordinates
from paygate.payment.errors import MalformedInputError, NotFoundError
from paygate.subscriptions.service import SubscriptionService, normalize_email

from conftest import hex_reference, run


def draft(**overrides):
    fields = dict(
        building_name="Ashton Asoke",
        coordinates="13.7384, 100.5604",
        floor="12",
        sqm=35,
        cost=25000,
        description="One bedroom, city view",
    )
    fields.update(overrides)
    return ListingDraft(**fields)


@pytest.fixture
def listings(repositories, gate, test_config):
    return ListingService(repositories.listings, gate, test_config)


@pytest.fixture
def subscriptions(repositories, gate, test_config):
    return SubscriptionService(repositories.subscriptions, gate, test_config)


def test_parse_coordinates():
    assert parse_coordinates(" 13.7, 100.5 ") == (13.7, 100.5)
    for bad in ("13.7", "a, b", "91, 0", "0, 181", ""):
        with pytest.raises(MalformedInputError):
            parse_coordinates(bad)


def test_paid_listing_is_published(listings, fake_chain):
    reference = hex_reference(1)
    fake_chain.pay(reference, 1_000_000)

    result = run(listings.publish(draft(), reference, "base"))

    listing = result.entity
    assert result.admitted
    assert listing.reference == reference
    assert (listing.latitude, listing.longitude) == (13.7384, 100.5604)
    assert listing.payment_network == "base"
    assert timedelta(days=29) < listing.expires_at - listing.created_at <= timedelta(days=30)


def test_six_month_listing_lives_180_days(listings, fake_chain):
    reference = hex_reference(1)
    fake_chain.pay(reference, 1_000_000)
    listing = run(listings.publish(draft(six_months=True), reference, "base")).entity
    assert timedelta(days=179) < listing.expires_at - listing.created_at <= timedelta(days=180)


def test_republishing_returns_the_same_listing(listings, fake_chain, repositories):
    reference = hex_reference(1)
    fake_chain.pay(reference, 1_000_000)

    first = run(listings.publish(draft(), reference, "base"))
    second = run(listings.publish(draft(description="changed"), reference, "base"))

    assert second.replayed
    assert second.entity.id == first.entity.id
    assert second.entity.description == "One bedroom, city view"
    assert len(run(repositories.listings.list_all())) == 1


def test_replaying_a_deleted_listing_is_not_found(listings, fake_chain):
    reference = hex_reference(7)
    fake_chain.pay(reference, 1_000_000)
    listing = run(listings.publish(draft(), reference, "base")).entity
    run(listings.delete(listing.id))

    with pytest.raises(NotFoundError):
        run(listings.publish(draft(), reference, "base"))


def test_publish_can_wait_for_confirmation(listings, fake_chain):
    reference = hex_reference(8)
    fake_chain.pay(reference, 1_000_000)
    fake_chain.failures = 1

    result = run(listings.publish(draft(), reference, "base", wait=True))
    assert result.admitted
    assert fake_chain.fetch_calls == 2


def test_waiting_publish_times_out_unpaid(listings, repositories):
    result = run(listings.publish(draft(), hex_reference(9), "base", wait=True))
    assert result.reason is RejectReason.TIMEOUT
    assert result.error_message == "Invalid payment"
    assert run(repositories.listings.list_all()) == []


def test_unpaid_listing_is_rejected(listings, repositories):
    result = run(listings.publish(draft(), hex_reference(1), "base"))
    assert not result.admitted
    assert result.error_message == "Invalid payment"
    assert run(repositories.listings.list_all()) == []


def test_promo_listing(listings, promo_store):
    run(promo_store.create("launch", 1))
    result = run(listings.publish(draft(), "promo-1", "base", promo_code="LAUNCH"))
    assert result.admitted
    assert result.entity.promo_code == "launch"

    exhausted = run(listings.publish(draft(), "promo-2", "base", promo_code="launch"))
    assert exhausted.reason is RejectReason.PROMO_EXHAUSTED


def test_bad_draft_is_rejected_before_admission(listings, repositories):
    with pytest.raises(MalformedInputError):
        run(listings.publish(draft(sqm=0), hex_reference(1), "base"))
    assert run(repositories.admissions.get(hex_reference(1))) is None


def test_grouping_dashboard_and_purge(listings, repositories):
    now = utcnow()
    for name, expires in [("A", now + timedelta(days=3)), ("B", now - timedelta(days=1)), ("A", now - timedelta(days=2))]:
        run(
            repositories.listings.insert(
                Listing(
                    building_name=name,
                    latitude=0.0,
                    longitude=0.0,
                    floor="1",
                    sqm=20,
                    cost=100,
                    description="",
                    youtube_link="",
                    reference=f"ref-{name}-{expires.isoformat()}",
                    payment_network="base",
                    expires_at=expires,
                )
            )
        )

    grouped = run(listings.grouped_by_building())
    assert {k: len(v) for k, v in grouped.items()} == {"A": 2, "B": 1}
    assert len(run(listings.for_building("A"))) == 2

    summary = run(listings.dashboard(now))
    assert (summary["total"], summary["active"], summary["expired"]) == (3, 1, 2)

    assert run(listings.purge_expired(now)) == 2
    remaining = run(repositories.listings.list_all())
    assert [l.building_name for l in remaining] == ["A"]

    run(listings.delete(remaining[0].id))
    with pytest.raises(NotFoundError):
        run(listings.delete(remaining[0].id))


# --- Subscriptions ----------------------------------------------------------------------

def test_subscription_for_a_year(subscriptions, fake_chain):
    reference = hex_reference(5)
    fake_chain.pay(reference, 1_000_000)

    result = run(subscriptions.subscribe(" Buyer@Example.com ", reference, "base"))
    assert result.admitted
    assert result.entity.email == "buyer@example.com"
    assert result.entity.expires_at - result.entity.created_at > timedelta(days=364)
    assert [s.id for s in run(subscriptions.active_for("buyer@example.com"))] == [result.entity.id]


def test_replaying_a_removed_subscription_is_not_found(subscriptions, repositories, fake_chain):
    reference = hex_reference(5)
    fake_chain.pay(reference, 1_000_000)
    run(subscriptions.subscribe("buyer@example.com", reference, "base"))
    repositories.subscriptions._subscriptions.clear()

    with pytest.raises(NotFoundError):
        run(subscriptions.subscribe("buyer@example.com", reference, "base"))


def test_listing_reference_cannot_buy_a_subscription(listings, subscriptions, fake_chain):
    reference = hex_reference(6)
    fake_chain.pay(reference, 1_000_000)
    run(listings.publish(draft(), reference, "base"))

    result = run(subscriptions.subscribe("buyer@example.com", reference, "base"))
    assert not result.admitted
    assert result.reason is RejectReason.INVALID_PAYMENT


def test_normalize_email():
    assert normalize_email("A@B.co") == "a@b.co"
    with pytest.raises(MalformedInputError):
        normalize_email("not-an-email")


# --- Mongo document mapping -------------------------------------------------------------

def test_mongo_tls_detection():
    assert _use_tls("mongodb+srv://user:pw@cluster.mongodb.net/db")
    assert _use_tls("mongodb://host:27017/?tls=true")
    assert not _use_tls("mongodb://localhost:27017")


def test_mongo_documents_use_underscore_id():
    record = AdmissionRecord(reference="ref", purpose="listing", state=ClaimState.BURNED)
    doc = _to_doc(record)
    assert doc["state"] == "burned"
    assert "_id" not in doc

    listing = Listing(
        building_name="A", latitude=1.0, longitude=2.0, floor="1", sqm=1, cost=1, description="",
        youtube_link="", reference="r", payment_network="solana", expires_at=utcnow(),
    )
    doc = _to_doc(listing)
    assert doc["_id"] == listing.id
    assert _from_doc(Listing, dict(doc, extra="ignored")) == listing


class FakeAdmissionsCollection:
    """Enough of a motor collection for the claim path, holding one existing claim."""

    def __init__(self, existing):
        self.existing = existing

    async def insert_one(self, doc):
        raise DuplicateKeyError("E11000 duplicate key error")

    async def find_one_and_replace(self, filter, replacement):
        if self.existing["state"] == filter["state"] and self.existing["claimed_at"] <= filter["claimed_at"]["$lte"]:
            previous, self.existing = self.existing, replacement
            return previous
        return None

    async def find_one(self, filter):
        return self.existing


def test_mongo_claim_takes_over_only_lapsed_claims():
    now = utcnow()
    held = AdmissionRecord(reference="ref", purpose="listing", claimed_at=now - timedelta(hours=1))
    collection = FakeAdmissionsCollection(_to_doc(held))
    repo = MongoAdmissionRepository({"admissions": collection})
    fresh = AdmissionRecord(reference="ref", purpose="listing")

    existing = run(repo.claim(fresh, stale_before=now - timedelta(hours=2)))
    assert existing.state is ClaimState.PENDING
    assert existing.claimed_at == held.claimed_at

    assert run(repo.claim(fresh, stale_before=now - timedelta(minutes=15))) is None
    assert collection.existing["claimed_at"] == fresh.claimed_at
