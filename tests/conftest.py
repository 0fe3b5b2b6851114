"""Pytest configuration: project root on sys.path, in-memory database, API client."""

import base64
import os
import sys
from datetime import datetime, timedelta

# Project root = parent directory of this tests/ folder
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session

from concrete_jobs.db import get_engine, make_engine
from concrete_jobs.executors import JobExecutorRegistry
from concrete_jobs.main import app, get_registry
from concrete_jobs.models import JobStatus, JobType
from concrete_jobs.schemas import JobResponse
from concrete_jobs.service import JobService
from concrete_jobs.settings import settings


def basic_auth_header(user: str, password: str) -> dict:
    token = base64.b64encode(f"{user}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


@pytest.fixture
def engine():
    # one shared connection so every session sees the same in-memory db
    return make_engine("sqlite://", poolclass=StaticPool)


@pytest.fixture
def registry():
    return JobExecutorRegistry()


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture
def service(session, registry):
    return JobService(session, registry)


@pytest.fixture
def make_job():
    """Build a JobResponse as the client side sees it."""
    base = datetime(2024, 5, 1, 12, 0, 0)

    def _make(job_id="job-1", status=JobStatus.PENDING, job_type=JobType.IMAGE_ENRICHMENT, minute=0, **fields):
        fields.setdefault("created_at", base + timedelta(minutes=minute))
        return JobResponse(id=job_id, job_type=job_type, status=status, **fields)

    return _make


@pytest.fixture
def client(engine, registry):
    app.dependency_overrides[get_engine] = lambda: engine
    app.dependency_overrides[get_registry] = lambda: registry
    with TestClient(app, headers=basic_auth_header(settings.BASIC_USER, settings.BASIC_PASS)) as c:
        yield c
    app.dependency_overrides.clear()
