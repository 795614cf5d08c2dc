"""Shared test fixtures for the milestone escrow test suite.

Provides:
    - An in-memory SQLite database (aiosqlite) with SAVEPOINT support
    - A ProjectFactory for seeding collaborator state (projects, contracts,
      designs, readiness, milestones, closeouts, disputes)
    - Ready-made actors and a simulated payment provider
    - A funded $10,000 project with three milestones
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from milestone_escrow.domain.enums import (
    CloseoutStatus,
    ContractStatus,
    DesignStatus,
    MilestoneStatus,
    ProjectStatus,
    ReadinessStatus,
    UserRole,
)
from milestone_escrow.domain.identity import Actor
from milestone_escrow.infrastructure.database.orm_models import (
    Base,
    Closeout,
    ContractAgreement,
    DesignVersion,
    Dispute,
    EscrowAgreement,
    Milestone,
    Project,
    ReadinessItem,
)
from milestone_escrow.services.escrow_ledger import EscrowLedger
from milestone_escrow.services.payment_service import SimulatedPaymentProvider

PAYER_ID = "homeowner-1"
PAYEE_ID = "contractor-1"


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine():
    """A fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):  # noqa: ANN001
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):  # noqa: ANN001
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine) -> async_sessionmaker[AsyncSession]:  # noqa: ANN001
    return async_sessionmaker(
        bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest_asyncio.fixture
async def session(session_factory):  # noqa: ANN001
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Actors and provider
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Actors:
    payer: Actor
    payee: Actor
    admin: Actor
    project_manager: Actor
    automation: Actor
    stranger: Actor


@pytest.fixture
def actors() -> Actors:
    return Actors(
        payer=Actor(PAYER_ID, UserRole.HOMEOWNER),
        payee=Actor(PAYEE_ID, UserRole.CONTRACTOR),
        admin=Actor("admin-1", UserRole.ADMIN),
        project_manager=Actor("pm-1", UserRole.PROJECT_MANAGER),
        automation=Actor("ocr-bot", UserRole.AUTOMATION),
        stranger=Actor("someone-else", UserRole.HOMEOWNER),
    )


@pytest.fixture
def provider() -> SimulatedPaymentProvider:
    """Simulated provider with the payee's payout account connected."""
    provider = SimulatedPaymentProvider()
    provider.register_payout_account(PAYEE_ID, "acct_contractor_1")
    return provider


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------


class ProjectFactory:
    """Writes collaborator-owned rows the way upstream services would."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def project(
        self, owner_id: str = PAYER_ID, status: ProjectStatus = ProjectStatus.IN_PROGRESS
    ) -> Project:
        project = Project(name="Kitchen remodel", owner_id=owner_id, status=status.value)
        self.session.add(project)
        await self.session.flush()
        return project

    async def contract(
        self, project: Project, status: ContractStatus = ContractStatus.FULLY_SIGNED
    ) -> ContractAgreement:
        contract = ContractAgreement(project_id=project.id, status=status.value)
        self.session.add(contract)
        await self.session.flush()
        return contract

    async def design(
        self,
        project: Project,
        version: int = 1,
        status: DesignStatus = DesignStatus.APPROVED_FOR_PERMIT,
    ) -> DesignVersion:
        design = DesignVersion(project_id=project.id, version=version, status=status.value)
        self.session.add(design)
        await self.session.flush()
        return design

    async def readiness(
        self,
        project: Project,
        title: str,
        status: ReadinessStatus = ReadinessStatus.COMPLETED,
        required: bool = True,
    ) -> ReadinessItem:
        item = ReadinessItem(
            project_id=project.id, title=title, status=status.value, required=required
        )
        self.session.add(item)
        await self.session.flush()
        return item

    async def milestone(
        self,
        project: Project,
        name: str,
        amount: str,
        sort_order: int = 0,
        status: MilestoneStatus = MilestoneStatus.PENDING,
    ) -> Milestone:
        milestone = Milestone(
            project_id=project.id,
            name=name,
            amount=Decimal(amount),
            sort_order=sort_order,
            status=status.value,
        )
        self.session.add(milestone)
        await self.session.flush()
        return milestone

    async def closeout(
        self,
        project: Project,
        status: CloseoutStatus = CloseoutStatus.COMPLETED,
        final_payment_released: bool = True,
    ) -> Closeout:
        closeout = Closeout(
            project_id=project.id,
            status=status.value,
            final_payment_released=final_payment_released,
        )
        self.session.add(closeout)
        await self.session.flush()
        return closeout

    async def dispute(self, project: Project, status: str = "OPEN") -> Dispute:
        dispute = Dispute(
            project_id=project.id, status=status, raised_by=PAYER_ID, reason="Work quality"
        )
        self.session.add(dispute)
        await self.session.flush()
        return dispute


@pytest.fixture
def factory(session: AsyncSession) -> ProjectFactory:
    return ProjectFactory(session)


@dataclass
class FundedProject:
    project: Project
    agreement: EscrowAgreement
    milestones: list[Milestone]

    @property
    def foundation(self) -> Milestone:
        return self.milestones[0]


@pytest_asyncio.fixture
async def funded_project(
    session: AsyncSession, factory: ProjectFactory, actors: Actors
) -> FundedProject:
    """$10,000 agreement, funded, with $3,000 / $4,000 / $3,000 milestones."""
    project = await factory.project()
    await factory.contract(project)
    await factory.design(project)
    milestones = [
        await factory.milestone(project, "Foundation", "3000.00", sort_order=1),
        await factory.milestone(project, "Framing", "4000.00", sort_order=2),
        await factory.milestone(project, "Finishes", "3000.00", sort_order=3),
    ]

    ledger = EscrowLedger(session)
    agreement = await ledger.create_agreement(
        project_id=project.id,
        payer_id=PAYER_ID,
        payee_id=PAYEE_ID,
        total_amount="10000.00",
        actor=actors.payer,
    )
    agreement = await ledger.fund_agreement(agreement.id, actors.payer, provider_payment_id="pi_test_1")
    return FundedProject(project=project, agreement=agreement, milestones=milestones)
