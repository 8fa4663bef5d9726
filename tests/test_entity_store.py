"""Tests for the EntityStore orchestrator – in-memory stores, no database required."""

import asyncio

import pytest

from dualvault.entity_store import EntityStore
from dualvault.errors import (
    ConsistencyGapError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from dualvault.services.schema_registry import SchemaRegistry
from dualvault.stores.memory import InMemoryRecordStore


def _make_patient(**overrides):
    record = {
        "firstName": "John",
        "lastName": "Doe",
        "email": "john@x.com",
        "diagnosis": "Hypertension",
    }
    record.update(overrides)
    return record


def _without_timestamps(entity):
    return {k: v for k, v in entity.items() if k not in ("createdAt", "updatedAt")}


class CountingStore(InMemoryRecordStore):
    def __init__(self, key_field):
        super().__init__(key_field)
        self.reads = 0

    async def find_by_id(self, record_id):
        self.reads += 1
        return await super().find_by_id(record_id)


class FailingStore(InMemoryRecordStore):
    """Clinical store whose writes fail once ``broken`` is set."""

    def __init__(self, key_field="pseudonym"):
        super().__init__(key_field)
        self.broken = False

    async def create(self, data):
        if self.broken:
            raise StoreError("clinical database unavailable")
        return await super().create(data)

    async def update(self, record_id, data):
        if self.broken:
            raise StoreError("clinical database unavailable")
        return await super().update(record_id, data)

    async def delete(self, record_id):
        if self.broken:
            raise StoreError("clinical database unavailable")
        await super().delete(record_id)


# ---------------------------------------------------------------------------
# Scenario and round trip
# ---------------------------------------------------------------------------


async def test_john_doe_scenario(patients, identity_store, clinical_store):
    created = await patients.create(_make_patient())
    entity_id, pseudonym = created["id"], created["pseudonym"]

    identity_row = await identity_store.find_by_id(entity_id)
    assert {"firstName", "lastName", "email"} <= identity_row.keys()
    assert "diagnosis" not in identity_row
    assert identity_row["pseudonym"] == pseudonym

    clinical_row = await clinical_store.find_by_id(pseudonym)
    assert clinical_row == {"pseudonym": pseudonym, "diagnosis": "Hypertension"}
    assert "firstName" not in clinical_row

    found = await patients.find_by_id(entity_id)
    for key, value in _make_patient().items():
        assert found[key] == value

    await patients.delete(entity_id)
    assert await identity_store.find_by_id(entity_id) is None
    assert await clinical_store.find_by_id(pseudonym) is None
    assert await patients.find_by_id(entity_id) is None


async def test_round_trip_equals_create_result(patients, cache):
    created = await patients.create(_make_patient(tags=["a", "b"], visits=3))

    # Served from cache
    assert await patients.find_by_id(created["id"]) == created

    # Re-merged from both stores
    await cache.invalidate(patients.cache_key(created["id"]))
    assert await patients.find_by_id(created["id"]) == created


async def test_create_stamps_timestamps_and_id(patients):
    created = await patients.create(_make_patient())

    assert created["id"].startswith("patient-")
    assert created["createdAt"] == created["updatedAt"]
    assert created["createdAt"].endswith("+00:00")


async def test_create_without_sensitive_fields_skips_clinical_store(patients, clinical_store):
    created = await patients.create({"firstName": "Ann", "source": "import"})

    assert len(clinical_store) == 0
    assert created["source"] == "import"
    assert await patients.find_by_id(created["id"]) == created


async def test_create_rejects_caller_pseudonym(patients, identity_store):
    with pytest.raises(ValidationError):
        await patients.create(_make_patient(pseudonym="pseudo_mine"))
    assert len(identity_store) == 0


async def test_find_by_id_missing_returns_none(patients):
    assert await patients.find_by_id("patient-does-not-exist") is None


async def test_identity_fields_win_on_collision():
    merged = EntityStore._merge({"id": "1", "code": "identity"}, {"pseudonym": "p", "code": "clinical"})
    assert merged["code"] == "identity"


# ---------------------------------------------------------------------------
# Cache behaviour
# ---------------------------------------------------------------------------


async def test_cache_hit_does_not_touch_stores(cache, classifier):
    identity, clinical = CountingStore("id"), CountingStore("pseudonym")
    store = EntityStore("Patient", identity, clinical, cache, classifier)
    created = await store.create(_make_patient())

    assert await store.find_by_id(created["id"]) == created
    assert identity.reads == 0
    assert clinical.reads == 0


async def test_cache_miss_repopulates_cache(patients, cache):
    created = await patients.create(_make_patient())
    key = patients.cache_key(created["id"])
    await cache.invalidate(key)

    await patients.find_by_id(created["id"])
    assert await cache.get(key) is not None


async def test_update_is_visible_on_next_read(patients):
    created = await patients.create(_make_patient())
    await patients.find_by_id(created["id"])  # warm the cache

    await patients.update(created["id"], {"email": "new@x.com", "diagnosis": "Resolved"})
    found = await patients.find_by_id(created["id"])

    assert found["email"] == "new@x.com"
    assert found["diagnosis"] == "Resolved"


async def test_update_invalidates_cache_even_for_clinical_only_change(patients, cache):
    created = await patients.create(_make_patient())
    await patients.update(created["id"], {"diagnosis": "Resolved"})

    assert await cache.get(patients.cache_key(created["id"])) is None


async def test_update_and_delete_invalidate_ids_with_glob_characters(patients):
    created = await patients.create(_make_patient(id="mrn[7]", diagnosis="Flu"))
    await patients.find_by_id("mrn[7]")  # warm the cache

    await patients.update("mrn[7]", {"diagnosis": "Resolved"})
    assert (await patients.find_by_id("mrn[7]"))["diagnosis"] == "Resolved"

    await patients.delete(created["id"])
    assert await patients.find_by_id("mrn[7]") is None


# ---------------------------------------------------------------------------
# Pseudonym linkage
# ---------------------------------------------------------------------------


async def test_pseudonym_stable_across_updates(patients, clinical_store):
    created = await patients.create(_make_patient())
    pseudonym = created["pseudonym"]

    for i in range(5):
        updated = await patients.update(created["id"], {"diagnosis": f"Stage {i}", "lastName": f"Doe{i}"})
        assert updated["pseudonym"] == pseudonym

    assert len(clinical_store) == 1
    assert (await clinical_store.find_by_id(pseudonym))["diagnosis"] == "Stage 4"
    assert (await patients.find_by_id(created["id"]))["pseudonym"] == pseudonym


async def test_update_creates_clinical_record_when_first_sensitive_field_arrives(patients, clinical_store):
    created = await patients.create({"firstName": "Ann"})
    assert len(clinical_store) == 0

    updated = await patients.update(created["id"], {"allergies": ["penicillin"]})

    assert updated["allergies"] == ["penicillin"]
    assert await clinical_store.find_by_id(created["pseudonym"]) == {
        "pseudonym": created["pseudonym"],
        "allergies": ["penicillin"],
    }


async def test_update_refreshes_updated_at_only(patients):
    created = await patients.create(_make_patient())
    updated = await patients.update(created["id"], {"firstName": "Johnny"})

    assert updated["createdAt"] == created["createdAt"]
    assert updated["updatedAt"] >= created["updatedAt"]
    assert updated["diagnosis"] == "Hypertension"


async def test_update_missing_entity_raises_not_found(patients):
    with pytest.raises(NotFoundError):
        await patients.update("patient-missing", {"firstName": "x"})


async def test_update_rejects_immutable_fields(patients):
    created = await patients.create(_make_patient())

    with pytest.raises(ValidationError) as excinfo:
        await patients.update(created["id"], {"pseudonym": "pseudo_other", "id": "x"})
    assert len(excinfo.value.errors) == 2


async def test_concurrent_creates_get_distinct_ids_and_pseudonyms(patients):
    created = await asyncio.gather(
        *(patients.create(_make_patient(firstName=f"Patient{i}")) for i in range(10))
    )

    assert len({e["id"] for e in created}) == 10
    assert len({e["pseudonym"] for e in created}) == 10


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


async def test_find_merges_clinical_data(patients):
    await patients.create(_make_patient(firstName="A"))
    await patients.create(_make_patient(firstName="B", lastName="Roe"))
    await patients.create({"firstName": "C", "lastName": "Doe"})

    results = await patients.find({"lastName": "Doe"})

    assert {r["firstName"] for r in results} == {"A", "C"}
    by_name = {r["firstName"]: r for r in results}
    assert by_name["A"]["diagnosis"] == "Hypertension"
    assert "diagnosis" not in by_name["C"]


async def test_find_cannot_filter_on_clinical_fields(patients):
    await patients.create(_make_patient())

    with pytest.raises(ValidationError, match="diagnosis"):
        await patients.find({"diagnosis": "Hypertension"})


async def test_find_with_empty_query_returns_all(patients):
    await patients.create(_make_patient())
    await patients.create(_make_patient(firstName="Jane"))

    assert len(await patients.find()) == 2


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------


async def test_compliance_delete_retains_clinical_record(patients, clinical_store):
    created = await patients.create(_make_patient())
    await patients.find_by_id(created["id"])  # warm the cache

    await patients.delete(created["id"], retain_sensitive=True)

    assert await patients.find_by_id(created["id"]) is None
    retained = await patients.find_clinical(created["pseudonym"])
    assert retained == {"pseudonym": created["pseudonym"], "diagnosis": "Hypertension"}
    assert "firstName" not in retained
    assert len(clinical_store) == 1


async def test_delete_missing_entity_raises_not_found(patients):
    with pytest.raises(NotFoundError):
        await patients.delete("patient-missing")


async def test_find_clinical_rejects_malformed_pseudonym(patients):
    with pytest.raises(ValidationError):
        await patients.find_clinical("not-a-pseudonym")


# ---------------------------------------------------------------------------
# Schema-bound stores
# ---------------------------------------------------------------------------


async def test_schema_validation_reports_every_problem_before_io(
    patient_schema, identity_store, clinical_store, cache, classifier
):
    schema = SchemaRegistry().register("Patient", patient_schema)
    store = EntityStore("Patient", identity_store, clinical_store, cache, classifier, schema=schema)

    with pytest.raises(ValidationError) as excinfo:
        await store.create({"lastName": 7, "active": "yes"})

    assert len(excinfo.value.errors) == 4  # firstName, diagnosis, lastName, active
    assert len(identity_store) == 0
    assert len(clinical_store) == 0


async def test_schema_classification_and_defaults(
    patient_schema, identity_store, clinical_store, cache, classifier
):
    schema = SchemaRegistry().register("Patient", patient_schema)
    store = EntityStore("Patient", identity_store, clinical_store, cache, classifier, schema=schema)

    created = await store.create(
        {"firstName": "Jane", "lastName": "Doe", "diagnosis": "Asthma", "notes": "call back"}
    )
    clinical_row = await clinical_store.find_by_id(created["pseudonym"])
    identity_row = await identity_store.find_by_id(created["id"])

    # 'notes' matches no pattern but is declared sensitive
    assert clinical_row["notes"] == "call back"
    assert clinical_row["medications"] == []
    assert identity_row["region"] == "EU"
    assert "notes" not in identity_row


async def test_schema_partial_validation_on_update(
    patient_schema, identity_store, clinical_store, cache, classifier
):
    schema = SchemaRegistry().register("Patient", patient_schema)
    store = EntityStore("Patient", identity_store, clinical_store, cache, classifier, schema=schema)
    created = await store.create({"firstName": "Jane", "lastName": "Doe", "diagnosis": "Asthma"})

    with pytest.raises(ValidationError):
        await store.update(created["id"], {"diagnosis": None})

    updated = await store.update(created["id"], {"email": "jane@example.com"})
    assert updated["email"] == "jane@example.com"


# ---------------------------------------------------------------------------
# Compensation when the clinical store fails
# ---------------------------------------------------------------------------


async def test_failed_clinical_create_removes_identity_record(identity_store, cache, classifier):
    clinical = FailingStore()
    clinical.broken = True
    store = EntityStore("Patient", identity_store, clinical, cache, classifier)

    with pytest.raises(StoreError, match="unavailable"):
        await store.create(_make_patient())

    assert len(identity_store) == 0
    assert await store.find({}) == []


async def test_failed_clinical_update_restores_identity_fields(identity_store, cache, classifier):
    clinical = FailingStore()
    store = EntityStore("Patient", identity_store, clinical, cache, classifier)
    created = await store.create({"firstName": "John", "lastName": "Doe", "diagnosis": "Hypertension"})
    before = await identity_store.find_by_id(created["id"])

    clinical.broken = True
    with pytest.raises(StoreError):
        await store.update(
            created["id"], {"lastName": "Smith", "email": "j@x.com", "diagnosis": "Changed"}
        )

    identity_row = await identity_store.find_by_id(created["id"])
    assert identity_row == before
    assert "email" not in identity_row
    assert await cache.get(store.cache_key(created["id"])) is None


async def test_failed_clinical_delete_restores_identity_record(identity_store, cache, classifier):
    clinical = FailingStore()
    store = EntityStore("Patient", identity_store, clinical, cache, classifier)
    created = await store.create(_make_patient())

    clinical.broken = True
    with pytest.raises(StoreError):
        await store.delete(created["id"])

    clinical.broken = False
    assert await store.find_by_id(created["id"]) == created


async def test_failed_compensation_raises_consistency_gap(cache, classifier):
    class UndeletableStore(InMemoryRecordStore):
        async def delete(self, record_id):
            raise StoreError("identity database unavailable")

    identity = UndeletableStore("id")
    clinical = FailingStore()
    clinical.broken = True
    store = EntityStore("Patient", identity, clinical, cache, classifier)

    with pytest.raises(ConsistencyGapError) as excinfo:
        await store.create(_make_patient())

    gap = excinfo.value
    assert gap.operation == "create"
    assert gap.entity_id.startswith("patient-")
    assert isinstance(gap.__cause__, StoreError)
    assert len(identity) == 1
