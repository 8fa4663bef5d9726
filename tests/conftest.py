"""Shared fixtures: in-memory stores, cache and a schema-less Patient store."""

import pytest

from dualvault.entity_store import EntityStore
from dualvault.services.cache import InMemoryCache
from dualvault.services.classifier import FieldClassifier
from dualvault.services.pseudonym import SecretsPseudonymGenerator
from dualvault.stores.memory import InMemoryRecordStore


@pytest.fixture
def generator():
    return SecretsPseudonymGenerator()


@pytest.fixture
def classifier(generator):
    return FieldClassifier(generator)


@pytest.fixture
def identity_store():
    return InMemoryRecordStore(key_field="id")


@pytest.fixture
def clinical_store():
    return InMemoryRecordStore(key_field="pseudonym")


@pytest.fixture
def cache():
    return InMemoryCache(max_size=100, default_ttl_seconds=300)


@pytest.fixture
def patients(identity_store, clinical_store, cache, classifier):
    return EntityStore("Patient", identity_store, clinical_store, cache, classifier)


@pytest.fixture
def patient_schema():
    return {
        "identity": {
            "firstName": {"type": "string", "required": True},
            "lastName": {"type": "string", "required": True},
            "email": {"type": "string"},
            "dateOfBirth": {"type": "date"},
        },
        "sensitive": {
            "diagnosis": {"type": "string", "required": True},
            "medications": {"type": "string_array", "default": []},
            "notes": {"type": "string"},
        },
        "metadata": {
            "region": {"type": "string", "default": "EU"},
            "active": {"type": "boolean"},
        },
    }
