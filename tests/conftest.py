"""Pytest configuration and shared fixtures.

This module provides centralized test fixtures for:
- Database engine and session factory (PostgreSQL or temporary SQLite)
- Repository and lifecycle service instances
- Security contexts for each role
- HTTP client for API testing
- Common FHIR test data
"""

import os

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import fhirstore.models  # noqa: F401  (registers tables on Base.metadata)
from fhirstore.database import Base
from fhirstore.main import app
from fhirstore.projections.extractors import register_all_projections
from fhirstore.repositories import ResourceRepository
from fhirstore.routes.resources import get_resource_service
from fhirstore.schemas.security import SecurityContext
from fhirstore.services import ResourceService

# Truly concurrent transactions need a server database
requires_postgres = pytest.mark.skipif(
    not os.environ.get("DATABASE_TEST_URL"),
    reason="DATABASE_TEST_URL (PostgreSQL) not set",
)


@pytest.fixture(autouse=True)
def projections():
    """Ensure every resource type is registered for each test."""
    register_all_projections()


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """Create test database engine with automatic schema management.

    Creates all tables before tests, drops them after.
    Uses DATABASE_TEST_URL env var if set, otherwise a temporary SQLite file.
    """
    db_url = os.environ.get("DATABASE_TEST_URL") or f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"
    engine = create_async_engine(db_url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def repository(session_maker) -> ResourceRepository:
    """Versioned store over the test database."""
    return ResourceRepository(session_maker, transaction_timeout=10.0)


@pytest.fixture
def service(repository) -> ResourceService:
    """Lifecycle service with default policies."""
    return ResourceService(repository)


# =============================================================================
# Security Contexts
# =============================================================================


@pytest.fixture
def system_context() -> SecurityContext:
    return SecurityContext.system()


@pytest.fixture
def admin_context() -> SecurityContext:
    return SecurityContext.admin("admin-1")


@pytest.fixture
def clinician_context() -> SecurityContext:
    return SecurityContext.clinician("dr-smith", organization_id="org-1")


# =============================================================================
# HTTP Client Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def client(service):
    """Async test client for the FastAPI app with the test database.

    Overrides the app's service dependency so API tests share the
    database used by the other fixtures.
    """
    app.dependency_overrides[get_resource_service] = lambda: service

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.pop(get_resource_service, None)


@pytest.fixture
def admin_headers() -> dict[str, str]:
    """Gateway headers for an Admin caller."""
    return {"X-User-Id": "admin-1", "X-User-Roles": "Admin"}


@pytest.fixture
def clinician_headers() -> dict[str, str]:
    """Gateway headers for a Clinician caller."""
    return {"X-User-Id": "dr-smith", "X-User-Roles": "Clinician", "X-Organization-Id": "org-1"}


# =============================================================================
# FHIR Test Data
# =============================================================================


@pytest.fixture
def patient_body() -> dict:
    """A typical FHIR Patient."""
    return {
        "resourceType": "Patient",
        "identifier": [{"system": "http://hospital.example.org/mrn", "value": "MRN-1001"}],
        "active": True,
        "name": [{"use": "official", "family": "Doe", "given": ["John"]}],
        "gender": "male",
        "birthDate": "1980-04-12",
        "managingOrganization": {"reference": "Organization/org-1"},
    }


def observation_body(patient_id: str, **overrides) -> dict:
    """Build a heart-rate Observation for a patient."""
    body = {
        "resourceType": "Observation",
        "status": "final",
        "category": [
            {
                "coding": [
                    {
                        "system": "http://terminology.hl7.org/CodeSystem/observation-category",
                        "code": "vital-signs",
                    }
                ]
            }
        ],
        "code": {"coding": [{"system": "http://loinc.org", "code": "8867-4", "display": "Heart rate"}]},
        "subject": {"reference": f"Patient/{patient_id}"},
        "effectiveDateTime": "2024-03-15T10:30:00Z",
        "valueQuantity": {"value": 72, "unit": "beats/min"},
    }
    body.update(overrides)
    return body


def condition_body(patient_id: str, **overrides) -> dict:
    """Build an active hypertension Condition for a patient."""
    body = {
        "resourceType": "Condition",
        "clinicalStatus": {
            "coding": [
                {
                    "system": "http://terminology.hl7.org/CodeSystem/condition-clinical",
                    "code": "active",
                }
            ]
        },
        "code": {"coding": [{"system": "http://snomed.info/sct", "code": "38341003"}]},
        "subject": {"reference": f"Patient/{patient_id}"},
        "onsetDateTime": "2019-06-01",
    }
    body.update(overrides)
    return body


def encounter_body(patient_id: str, **overrides) -> dict:
    """Build a finished ambulatory Encounter for a patient."""
    body = {
        "resourceType": "Encounter",
        "status": "finished",
        "class": {
            "system": "http://terminology.hl7.org/CodeSystem/v3-ActCode",
            "code": "AMB",
        },
        "subject": {"reference": f"Patient/{patient_id}"},
        "period": {"start": "2024-03-15T09:00:00Z", "end": "2024-03-15T10:00:00Z"},
    }
    body.update(overrides)
    return body
