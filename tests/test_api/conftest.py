"""Fixtures for the HTTP API tests.

The app runs in-process through httpx's ASGI transport. Each request gets
its own session from the test database, committed on success the same way
the production dependency does.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

import httpx
import pytest_asyncio

from milestone_escrow.api.deps import get_db_session
from milestone_escrow.domain.enums import ContractStatus, DesignStatus
from milestone_escrow.infrastructure.database.orm_models import (
    ContractAgreement,
    DesignVersion,
    Milestone,
    Project,
)
from milestone_escrow.main import create_app

PAYER_HEADERS = {"X-User-Id": "homeowner-1", "X-User-Role": "HOMEOWNER"}
PAYEE_HEADERS = {"X-User-Id": "contractor-1", "X-User-Role": "CONTRACTOR"}


@dataclass(frozen=True)
class Seeded:
    project_id: str
    milestone_ids: list[str]


@pytest_asyncio.fixture
async def app(session_factory):  # noqa: ANN001, ANN201
    app = create_app()

    async def _session():  # noqa: ANN202
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db_session] = _session
    app.state.payment_provider.register_payout_account("contractor-1", "acct_contractor_1")
    return app


@pytest_asyncio.fixture
async def client(app):  # noqa: ANN001, ANN201
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest_asyncio.fixture
async def seeded(session_factory) -> Seeded:  # noqa: ANN001
    """A permit-ready project with two milestones, committed."""
    async with session_factory() as session:
        project = Project(name="Bathroom remodel", owner_id="homeowner-1")
        session.add(project)
        await session.flush()
        session.add_all(
            [
                ContractAgreement(project_id=project.id, status=ContractStatus.FULLY_SIGNED.value),
                DesignVersion(
                    project_id=project.id,
                    version=1,
                    status=DesignStatus.APPROVED_FOR_PERMIT.value,
                ),
            ]
        )
        milestones = [
            Milestone(project_id=project.id, name="Demo", amount=Decimal("2000.00"), sort_order=1),
            Milestone(project_id=project.id, name="Tile", amount=Decimal("3000.00"), sort_order=2),
        ]
        session.add_all(milestones)
        await session.commit()
        return Seeded(str(project.id), [str(m.id) for m in milestones])


@pytest_asyncio.fixture
async def funded(client, seeded) -> dict:  # noqa: ANN001
    """Create and fund a $5,000 agreement over HTTP; returns the agreement body."""
    created = await client.post(
        "/api/v1/agreements",
        json={
            "project_id": seeded.project_id,
            "payer_id": "homeowner-1",
            "payee_id": "contractor-1",
            "total_amount": "5000.00",
        },
        headers=PAYER_HEADERS,
    )
    assert created.status_code == 201, created.text
    funded = await client.post(
        f"/api/v1/agreements/{created.json()['id']}/fund",
        json={"provider_payment_id": "pi_api_1"},
        headers=PAYER_HEADERS,
    )
    assert funded.status_code == 200, funded.text
    return funded.json()
